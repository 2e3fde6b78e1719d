"""
Clinical Trial Matching Module

Cluster evaluators, the exact -> heuristic -> semantic matching cascade and
the trial/patient aggregator.
"""

from .knowledge import (
    # Knowledge resolver
    KnowledgeResolver,
    MedicalKnowledge,
    DrugInfo,
    DRUG_CLASSES,
    direct_string_match,
    normalize_term,
)
from .calibration import (
    ConfidenceDecision,
    ConfidenceThresholds,
    derive_trial_status,
)
from .cascade import (
    MatchingCascade,
    MatchOutcome,
    Vocabulary,
)
from .evaluators import (
    ClusterVerdict,
    EvaluationContext,
    EVALUATORS,
    evaluate_cluster,
)
from .trial_database import TrialDatabase, TrialDatabaseError
from .matcher import TrialMatcher, create_matcher

# Global instances
from .knowledge import knowledge_resolver
from .numeric import THRESHOLD_PATTERNS

__all__ = [
    "KnowledgeResolver",
    "MedicalKnowledge",
    "DrugInfo",
    "DRUG_CLASSES",
    "direct_string_match",
    "normalize_term",
    "ConfidenceDecision",
    "ConfidenceThresholds",
    "derive_trial_status",
    "MatchingCascade",
    "MatchOutcome",
    "Vocabulary",
    "ClusterVerdict",
    "EvaluationContext",
    "EVALUATORS",
    "evaluate_cluster",
    "TrialDatabase",
    "TrialDatabaseError",
    "TrialMatcher",
    "create_matcher",
    "knowledge_resolver",
    "THRESHOLD_PATTERNS",
]
