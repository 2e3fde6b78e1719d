"""
Confidence calibration and trial-level status derivation.
"""

from pydantic import BaseModel, Field, model_validator
from typing import Iterable, List, Sequence
from enum import Enum

from ..core.config import settings
from ..schemas.trial import CriterionMatchResult, ExclusionStrength, TrialStatus


class ConfidenceDecision(str, Enum):
    EXCLUDE = "exclude"  # trust the verdict
    REVIEW = "review"    # keep it, but flag for an admin
    IGNORE = "ignore"    # too weak to act on


class ConfidenceThresholds(BaseModel):
    """Calibration points for semantic (AI-derived) confidences."""
    exclude: float = Field(0.8, ge=0.0, le=1.0)
    review: float = Field(0.5, ge=0.0, le=1.0)
    ignore: float = Field(0.3, ge=0.0, le=1.0)

    @model_validator(mode="after")
    def _ordered(self) -> "ConfidenceThresholds":
        if not (self.exclude >= self.review >= self.ignore):
            raise ValueError("Thresholds must satisfy exclude >= review >= ignore")
        return self

    @classmethod
    def from_settings(cls) -> "ConfidenceThresholds":
        return cls(
            exclude=settings.CONFIDENCE_EXCLUDE,
            review=settings.CONFIDENCE_REVIEW,
            ignore=settings.CONFIDENCE_IGNORE,
        )

    def classify(self, confidence: float) -> ConfidenceDecision:
        if confidence >= self.exclude:
            return ConfidenceDecision.EXCLUDE
        if confidence >= self.ignore:
            return ConfidenceDecision.REVIEW
        return ConfidenceDecision.IGNORE

    def is_low_confidence(self, result: CriterionMatchResult) -> bool:
        """An externally reasoned verdict below the review threshold."""
        return result.requires_ai and result.confidence < self.review


def derive_trial_status(
    results: Sequence[CriterionMatchResult],
    thresholds: ConfidenceThresholds,
) -> TrialStatus:
    """
    Compute a trial's status from its criterion verdicts.

    Logic:
    - Any failed inclusion or matched exclusion, plus a low-confidence
      AI verdict anywhere in the trial -> NEEDS_REVIEW
    - Any failed inclusion or matched exclusion -> INELIGIBLE
    - A low-confidence AI verdict alone -> NEEDS_REVIEW
    - Otherwise -> ELIGIBLE
    """
    has_ineligibility = any(r.causes_ineligibility() for r in results)
    has_low_confidence = any(thresholds.is_low_confidence(r) for r in results)

    if has_ineligibility and has_low_confidence:
        return TrialStatus.NEEDS_REVIEW
    if has_ineligibility:
        return TrialStatus.INELIGIBLE
    if has_low_confidence:
        return TrialStatus.NEEDS_REVIEW
    return TrialStatus.ELIGIBLE


def failure_reasons(results: Iterable[CriterionMatchResult]) -> List[str]:
    reasons = []
    for result in results:
        if not result.causes_ineligibility():
            continue
        label = result.raw_text or result.criterion_id
        if result.exclusion_strength == ExclusionStrength.INCLUSION:
            reasons.append(f"Failed inclusion: {label}")
        else:
            reasons.append(f"Matched exclusion: {label}")
    return reasons


def sort_by_confidence(trials: list) -> list:
    """Descending by mean criterion confidence; ties keep insertion order."""
    return sorted(trials, key=lambda t: -t.confidence_score)
