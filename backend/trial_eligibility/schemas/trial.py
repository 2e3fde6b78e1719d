import math
from pydantic import BaseModel, ConfigDict, Field, field_validator
from typing import Any, Dict, List, Optional
from datetime import datetime
from enum import Enum

from .patient import PatientResponse
from .review import ReviewPayload


class ExclusionStrength(str, Enum):
    INCLUSION = "inclusion"
    EXCLUSION = "exclusion"
    MANDATORY_EXCLUSION = "mandatory_exclude"

    @classmethod
    def parse(cls, value: Any) -> "ExclusionStrength":
        """Map the record's label onto a strength. Unknown or missing labels count as exclusion."""
        text = str(value or "").strip().lower().replace("-", "_")
        if text == "inclusion":
            return cls.INCLUSION
        if text in ("mandatory_exclude", "mandatory_exclusion", "mandatory"):
            return cls.MANDATORY_EXCLUSION
        return cls.EXCLUSION


class TrialStatus(str, Enum):
    ELIGIBLE = "eligible"
    INELIGIBLE = "ineligible"
    NEEDS_REVIEW = "needs_review"


def _coerce_str_list(value: Any) -> List[str]:
    if value is None:
        return []
    if isinstance(value, str):
        value = [value]
    if not isinstance(value, (list, tuple, set)):
        return []
    return [str(item).strip() for item in value if isinstance(item, (str, int, float)) and str(item).strip()]


class Timeframe(BaseModel):
    """A span of time attached to a condition, e.g. "within 12 weeks of last use"."""
    amount: Optional[float] = None
    unit: str = "weeks"
    relation: Optional[str] = None  # within, after, before, for
    reference: Optional[str] = None

    @field_validator("amount", mode="before")
    @classmethod
    def _parse_amount(cls, value: Any) -> Optional[float]:
        try:
            return float(value) if value is not None else None
        except (TypeError, ValueError):
            return None

    @field_validator("unit", mode="before")
    @classmethod
    def _default_unit(cls, value: Any) -> str:
        return str(value).strip().lower() if value else "weeks"

    @field_validator("relation", "reference", mode="before")
    @classmethod
    def _text(cls, value: Any) -> Optional[str]:
        if isinstance(value, bool) or not isinstance(value, (str, int, float)):
            return None
        return str(value).strip() or None


class Condition(BaseModel):
    """
    One structured condition of a criterion, or one answered patient slot.

    The typed fields are the ones the matching cascade compares as terms.
    Numeric category fields (AGE_MIN, BSA_THRESHOLD, ...) are kept as extra
    attributes and read through `value()`.
    """
    model_config = ConfigDict(extra="allow", frozen=True)

    CONDITION_TYPE: List[str] = Field(default_factory=list)
    CONDITION_PATTERN: List[str] = Field(default_factory=list)
    TREATMENT_TYPE: List[str] = Field(default_factory=list)
    TREATMENT_PATTERN: List[str] = Field(default_factory=list)
    INFECTION_TYPE: List[str] = Field(default_factory=list)
    VARIANT_TYPE: List[str] = Field(default_factory=list)
    SEVERITY: Optional[str] = None
    TIMEFRAME: Optional[Timeframe] = None

    @field_validator(
        "CONDITION_TYPE", "CONDITION_PATTERN", "TREATMENT_TYPE",
        "TREATMENT_PATTERN", "INFECTION_TYPE", "VARIANT_TYPE",
        mode="before"
    )
    @classmethod
    def _lists(cls, value: Any) -> List[str]:
        return _coerce_str_list(value)

    @field_validator("SEVERITY", mode="before")
    @classmethod
    def _severity(cls, value: Any) -> Optional[str]:
        if isinstance(value, (list, tuple)):
            value = next((v for v in value if isinstance(v, str)), None)
        return value.strip() if isinstance(value, str) and value.strip() else None

    @field_validator("TIMEFRAME", mode="before")
    @classmethod
    def _timeframe(cls, value: Any) -> Optional[Dict[str, Any]]:
        if isinstance(value, Timeframe):
            return value
        return value if isinstance(value, dict) else None

    @classmethod
    def lenient(cls, data: Any) -> "Condition":
        return cls.model_validate(data if isinstance(data, dict) else {})

    def value(self, name: str) -> Any:
        if name in type(self).model_fields:
            return getattr(self, name)
        return (self.model_extra or {}).get(name)


class Criterion(BaseModel):
    """One eligibility rule of a trial, as loaded from the trial database."""
    model_config = ConfigDict(extra="allow", frozen=True, populate_by_name=True)

    id: str
    nct_id: str
    raw_text: str = ""
    exclusion_strength: ExclusionStrength = Field(
        ExclusionStrength.EXCLUSION, alias="EXCLUSION_STRENGTH"
    )
    cluster_code: Optional[str] = None
    conditions: List[Condition] = Field(default_factory=list)

    @field_validator("id", "nct_id", mode="before")
    @classmethod
    def _ids(cls, value: Any) -> str:
        return str(value).strip() if value is not None else ""

    @field_validator("raw_text", mode="before")
    @classmethod
    def _raw_text(cls, value: Any) -> str:
        return value if isinstance(value, str) else ""

    @field_validator("exclusion_strength", mode="before")
    @classmethod
    def _strength(cls, value: Any) -> ExclusionStrength:
        return ExclusionStrength.parse(value)

    @field_validator("conditions", mode="before")
    @classmethod
    def _conditions(cls, value: Any) -> List[Any]:
        if not isinstance(value, list):
            return []
        return [item for item in value if isinstance(item, dict)]

    @property
    def is_inclusion(self) -> bool:
        return self.exclusion_strength == ExclusionStrength.INCLUSION

    def effective_conditions(self) -> List[Condition]:
        """Structured conditions; records without a `conditions` list act as their own condition."""
        if self.conditions:
            return list(self.conditions)
        return [Condition.lenient(self.model_extra or {})]

    def get(self, name: str) -> Any:
        """Look a category field up on the criterion itself, then on its conditions."""
        extra = self.model_extra or {}
        if extra.get(name) is not None:
            return extra[name]
        for condition in self.conditions:
            found = condition.value(name)
            if found not in (None, []):
                return found
        return None


class CriterionMatchResult(BaseModel):
    """Verdict for one criterion against one patient."""
    model_config = ConfigDict(frozen=True)

    criterion_id: str
    nct_id: str
    cluster_code: Optional[str] = None
    matches: bool
    confidence: float = 1.0
    exclusion_strength: ExclusionStrength = ExclusionStrength.EXCLUSION
    requires_ai: bool = False
    ai_reasoning: Optional[str] = None
    ai_error: bool = False
    raw_text: str = ""
    patient_value: str = ""
    confidence_reason: str = ""
    needs_admin_review: bool = False
    match_method: str = ""
    review_payload: Optional[ReviewPayload] = None

    @field_validator("confidence", mode="before")
    @classmethod
    def _clamp(cls, value: Any) -> float:
        try:
            value = float(value)
        except (TypeError, ValueError):
            return 0.0
        if not math.isfinite(value):
            return 0.0
        return max(0.0, min(1.0, value))

    def causes_ineligibility(self) -> bool:
        if self.exclusion_strength == ExclusionStrength.INCLUSION:
            return not self.matches  # Failed inclusion
        return self.matches  # Matched exclusion

    def status_label(self) -> str:
        if self.exclusion_strength == ExclusionStrength.INCLUSION:
            return "Meets inclusion requirement" if self.matches else "Fails inclusion requirement"
        return "Matches exclusion criterion" if self.matches else "Does not match exclusion"


class TrialEligibilityResult(BaseModel):
    """Aggregated result for a patient-trial match."""
    model_config = ConfigDict(frozen=True)

    nct_id: str
    status: TrialStatus
    criteria: List[CriterionMatchResult] = Field(default_factory=list)
    failure_reasons: List[str] = Field(default_factory=list)

    @property
    def confidence_score(self) -> float:
        if not self.criteria:
            return 1.0
        return round(sum(c.confidence for c in self.criteria) / len(self.criteria), 3)

    @property
    def failed_inclusions(self) -> List[CriterionMatchResult]:
        return [c for c in self.criteria
                if c.exclusion_strength == ExclusionStrength.INCLUSION and not c.matches]

    @property
    def matched_exclusions(self) -> List[CriterionMatchResult]:
        return [c for c in self.criteria
                if c.exclusion_strength != ExclusionStrength.INCLUSION and c.matches]

    @property
    def flagged_criteria(self) -> List[CriterionMatchResult]:
        return [c for c in self.criteria if c.requires_ai]

    @property
    def review_items(self) -> List[CriterionMatchResult]:
        return [c for c in self.criteria if c.needs_admin_review]

    @property
    def total_criteria(self) -> int:
        return len(self.criteria)

    @property
    def flagged_count(self) -> int:
        return len(self.flagged_criteria)

    def summary(self) -> Dict[str, Any]:
        return {
            "nct_id": self.nct_id,
            "status": self.status.value,
            "confidence": self.confidence_score,
            "total_criteria": self.total_criteria,
            "flagged_count": self.flagged_count,
            "failed_inclusions": [c.model_dump() for c in self.failed_inclusions],
            "matched_exclusions": [c.model_dump() for c in self.matched_exclusions],
            "failure_reasons": list(self.failure_reasons),
        }


class PatientMatchResults(BaseModel):
    """Terminal artifact of one matching request."""
    patient_response: PatientResponse
    eligible_trials: List[TrialEligibilityResult] = Field(default_factory=list)
    ineligible_trials: List[TrialEligibilityResult] = Field(default_factory=list)
    needs_review_trials: List[TrialEligibilityResult] = Field(default_factory=list)
    timestamp: datetime = Field(default_factory=datetime.utcnow)

    @property
    def total_trials_evaluated(self) -> int:
        return len(self.eligible_trials) + len(self.ineligible_trials) + len(self.needs_review_trials)

    def summary(self) -> Dict[str, Any]:
        total = self.total_trials_evaluated
        return {
            "timestamp": self.timestamp.isoformat(),
            "total_evaluated": total,
            "eligible": len(self.eligible_trials),
            "ineligible": len(self.ineligible_trials),
            "needs_review": len(self.needs_review_trials),
            "eligibility_rate": round(len(self.eligible_trials) / total * 100, 1) if total else 0.0,
        }
