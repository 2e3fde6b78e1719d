"""
Trial Matcher

Aggregates cluster verdicts into per-trial and per-patient results:

1. evaluate_criterion: one criterion, never raises
2. evaluate_trial: all criteria of a trial concurrently, then status derivation
3. match_patient: all trials concurrently, bucketed and sorted by confidence

Results are accumulated per request; the only side channel is the review
queue, which receives flagged items after the whole run has completed.
"""

import asyncio
import logging
from typing import Any, Iterable, List, Optional, Protocol, Set

from ..core.config import settings
from ..schemas.patient import ClusterCode, PatientResponse
from ..schemas.review import PendingReview, ReviewPayload
from ..schemas.trial import (
    Criterion,
    CriterionMatchResult,
    PatientMatchResults,
    TrialEligibilityResult,
    TrialStatus,
)
from .calibration import ConfidenceThresholds, derive_trial_status, failure_reasons, sort_by_confidence
from .cascade import MatchingCascade
from .evaluators import EvaluationContext, MISSING_DATA_CONFIDENCE, evaluate_cluster
from .trial_database import TrialDatabase

logger = logging.getLogger(__name__)


class ReviewSink(Protocol):
    def add_review(self, payload: ReviewPayload, patient_id: str = "unknown") -> PendingReview:
        ...


class TrialMatcher:
    """Matches one patient response against every trial in a TrialDatabase."""

    def __init__(
        self,
        database: TrialDatabase,
        cascade: Optional[MatchingCascade] = None,
        review_queue: Optional[ReviewSink] = None,
    ):
        self.database = database
        self.cascade = cascade or MatchingCascade()
        self.review_queue = review_queue

    @property
    def thresholds(self) -> ConfidenceThresholds:
        return self.cascade.thresholds

    def all_trial_ids(self) -> Set[str]:
        return set(self.database.trial_ids())

    # -------------------------------------------------------------------------
    # CRITERION
    # -------------------------------------------------------------------------

    async def evaluate_criterion(
        self,
        criterion: Criterion,
        patient_response: Any,
        cluster: Optional[ClusterCode] = None,
    ) -> CriterionMatchResult:
        patient = PatientResponse.from_payload(patient_response)
        cluster = cluster or ClusterCode.parse(criterion.cluster_code)
        base = dict(
            criterion_id=criterion.id,
            nct_id=criterion.nct_id,
            cluster_code=cluster.value if cluster else criterion.cluster_code,
            exclusion_strength=criterion.exclusion_strength,
            raw_text=criterion.raw_text,
        )

        try:
            if cluster is None:
                raise ValueError(f"Unknown cluster code {criterion.cluster_code!r}")
            verdict = await evaluate_cluster(cluster, criterion, EvaluationContext(patient, self.cascade))
        except Exception:
            logger.exception("Error evaluating criterion %s (%s)", criterion.id, criterion.nct_id)
            return CriterionMatchResult(
                **base,
                matches=False,
                confidence=MISSING_DATA_CONFIDENCE,
                confidence_reason="Error during evaluation",
            )

        return CriterionMatchResult(
            **base,
            matches=verdict.matches,
            confidence=verdict.confidence,
            requires_ai=verdict.requires_ai,
            ai_reasoning=verdict.ai_reasoning,
            ai_error=verdict.ai_error,
            patient_value=verdict.patient_value,
            confidence_reason=verdict.confidence_reason,
            needs_admin_review=verdict.needs_admin_review,
            match_method=verdict.match_method,
            review_payload=verdict.review_payload,
        )

    # -------------------------------------------------------------------------
    # TRIAL
    # -------------------------------------------------------------------------

    def build_trial_result(self, nct_id: str, results: List[CriterionMatchResult]) -> TrialEligibilityResult:
        """Pure reduction of criterion verdicts into a trial result."""
        return TrialEligibilityResult(
            nct_id=nct_id,
            status=derive_trial_status(results, self.thresholds),
            criteria=results,
            failure_reasons=failure_reasons(results),
        )

    async def evaluate_trial(self, nct_id: str, patient_response: Any) -> TrialEligibilityResult:
        patient = PatientResponse.from_payload(patient_response)
        criteria = self.database.criteria_for(nct_id)
        results = await asyncio.gather(*(
            self.evaluate_criterion(criterion, patient, cluster) for cluster, criterion in criteria
        ))
        trial = self.build_trial_result(nct_id, list(results))
        logger.debug("Trial %s: %s (%d criteria, confidence %.3f)",
                     nct_id, trial.status.value, trial.total_criteria, trial.confidence_score)
        return trial

    # -------------------------------------------------------------------------
    # PATIENT
    # -------------------------------------------------------------------------

    async def match_patient(self, patient_response: Any) -> PatientMatchResults:
        patient = PatientResponse.from_payload(patient_response)
        trial_ids = self.database.trial_ids()
        trials = await asyncio.gather(*(self.evaluate_trial(nct_id, patient) for nct_id in trial_ids))

        buckets = {status: [] for status in TrialStatus}
        for trial in trials:
            buckets[trial.status].append(trial)

        results = PatientMatchResults(
            patient_response=patient,
            eligible_trials=sort_by_confidence(buckets[TrialStatus.ELIGIBLE]),
            ineligible_trials=sort_by_confidence(buckets[TrialStatus.INELIGIBLE]),
            needs_review_trials=sort_by_confidence(buckets[TrialStatus.NEEDS_REVIEW]),
        )
        self._submit_reviews(trials)
        logger.info("Matched patient against %d trials: %s", len(trial_ids), results.summary())
        return results

    def _submit_reviews(self, trials: Iterable[TrialEligibilityResult]) -> None:
        if self.review_queue is None:
            return
        for trial in trials:
            for item in trial.review_items:
                if item.review_payload is not None:
                    self.review_queue.add_review(item.review_payload)


def create_matcher(
    database: Optional[TrialDatabase] = None,
    semantic_client: Any = None,
    review_queue: Optional[ReviewSink] = None,
) -> TrialMatcher:
    """Factory using settings for anything not passed in."""
    if database is None:
        if not settings.TRIAL_DATABASE_PATH:
            raise ValueError("No trial database given and TRIAL_DATABASE_PATH is not set")
        database = TrialDatabase.from_json_file(settings.TRIAL_DATABASE_PATH)
    return TrialMatcher(database, MatchingCascade(semantic_client=semantic_client), review_queue)
