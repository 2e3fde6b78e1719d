"""
Term Matching Cascade

Compares patient terms against criterion terms with strategies applied in a
fixed order, stopping at the first success:

1. Exact: normalized equality, or the same canonical drug (alias lookup)
2. Heuristic: drug-class membership, word-level containment, synonym group
3. Semantic: one call per patient term to an external reasoning client,
   only when a client is configured and enabled

Strategies 1-2 are plain functions of (patient_term, criterion_term,
resolver) so they can be tested and reordered on their own.
"""

import asyncio
import logging
import re
from typing import Callable, Optional, Protocol, Sequence, Tuple
from dataclasses import dataclass
from enum import Enum

from ..core.config import settings
from ..schemas.semantic import SemanticVerdict
from .calibration import ConfidenceThresholds
from .knowledge import KnowledgeResolver, direct_string_match, knowledge_resolver, normalize_term

logger = logging.getLogger(__name__)


class Vocabulary(str, Enum):
    CONDITION = "condition"  # comorbidities, infections, variants
    DRUG = "drug"            # treatment history


@dataclass
class MatchOutcome:
    """Result of one cascade run."""
    matched: bool
    confidence: float
    method: str
    patient_term: Optional[str] = None
    criterion_term: Optional[str] = None
    requires_ai: bool = False
    reasoning: Optional[str] = None
    error: bool = False
    verified: bool = True
    suggested_class: Optional[str] = None


class SemanticMatcher(Protocol):
    async def semantic_match(self, patient_term: str, criterion_term: str,
                             context: str = "medical term") -> SemanticVerdict:
        ...


TermStrategy = Callable[[str, str, KnowledgeResolver], Optional[MatchOutcome]]


# =============================================================================
# PURE STRATEGIES
# =============================================================================

def exact_match(patient_term: str, criterion_term: str, resolver: KnowledgeResolver) -> Optional[MatchOutcome]:
    if normalize_term(patient_term) and normalize_term(patient_term) == normalize_term(criterion_term):
        return MatchOutcome(True, 1.0, "exact", patient_term, criterion_term)
    return None


def alias_match(patient_term: str, criterion_term: str, resolver: KnowledgeResolver) -> Optional[MatchOutcome]:
    if resolver.drugs_match(patient_term, criterion_term):
        return MatchOutcome(True, 1.0, "alias", patient_term, criterion_term)
    return None


def drug_class_match(patient_term: str, criterion_term: str, resolver: KnowledgeResolver) -> Optional[MatchOutcome]:
    if resolver.belongs_to_class(patient_term, criterion_term):
        return MatchOutcome(True, 0.92, "drug_class", patient_term, criterion_term)
    return None


def substring_match(patient_term: str, criterion_term: str, resolver: KnowledgeResolver) -> Optional[MatchOutcome]:
    patient, criterion = normalize_term(patient_term), normalize_term(criterion_term)
    if not patient or not criterion:
        return None
    shorter, longer = sorted((patient, criterion), key=len)
    # Anchored at a word start ("mi" never matches inside "chemotherapy");
    # inflected endings are allowed, so "tumor" matches "malignant tumors"
    if len(shorter) >= 4 and re.search(rf"(?<![a-z0-9]){re.escape(shorter)}", longer):
        return MatchOutcome(True, 0.88, "substring", patient_term, criterion_term)
    return None


def synonym_match(patient_term: str, criterion_term: str, resolver: KnowledgeResolver) -> Optional[MatchOutcome]:
    if resolver.are_synonyms(patient_term, criterion_term):
        return MatchOutcome(True, 0.85, "synonym", patient_term, criterion_term)
    return None


def direct_unverified_match(patient_term: str, criterion_term: str,
                            resolver: KnowledgeResolver) -> Optional[MatchOutcome]:
    """String match for a term the resolver does not know. Always needs review."""
    if direct_string_match(patient_term, [criterion_term]) is not None:
        return MatchOutcome(True, 0.9, "direct_unverified", patient_term, criterion_term, verified=False)
    return None


# Global strategy order
STRATEGY_ORDER: Tuple[TermStrategy, ...] = (
    exact_match,
    alias_match,
    drug_class_match,
    substring_match,
    synonym_match,
    direct_unverified_match,
)

CONDITION_STRATEGIES = (exact_match, substring_match, synonym_match)
KNOWN_DRUG_STRATEGIES = (exact_match, alias_match, drug_class_match)
UNKNOWN_DRUG_STRATEGIES = (direct_unverified_match,)


# =============================================================================
# CASCADE
# =============================================================================

class MatchingCascade:
    """Runs the strategy list, then the optional semantic step."""

    def __init__(
        self,
        resolver: Optional[KnowledgeResolver] = None,
        semantic_client: Optional[SemanticMatcher] = None,
        thresholds: Optional[ConfidenceThresholds] = None,
        timeout: Optional[float] = None,
        ai_confidence_cap: Optional[float] = None,
        enabled: Optional[bool] = None,
        strategy_order: Sequence[TermStrategy] = STRATEGY_ORDER,
    ):
        self.resolver = resolver or knowledge_resolver
        self.semantic_client = semantic_client
        self.thresholds = thresholds or ConfidenceThresholds.from_settings()
        self.timeout = timeout if timeout is not None else settings.SEMANTIC_TIMEOUT_SECONDS
        self.ai_confidence_cap = ai_confidence_cap if ai_confidence_cap is not None else settings.AI_CONFIDENCE_CAP
        self.enabled = settings.AI_MATCHING_ENABLED if enabled is None else enabled
        self.strategy_order = tuple(strategy_order)

    @property
    def semantic_enabled(self) -> bool:
        return self.enabled and self.semantic_client is not None

    def strategies_for(self, vocabulary: Vocabulary, patient_term: str) -> Tuple[TermStrategy, ...]:
        if vocabulary == Vocabulary.DRUG:
            if self.resolver.is_known(patient_term):
                return KNOWN_DRUG_STRATEGIES
            return UNKNOWN_DRUG_STRATEGIES
        return CONDITION_STRATEGIES

    # -------------------------------------------------------------------------
    # PURE PART
    # -------------------------------------------------------------------------

    def match_terms(
        self,
        patient_terms: Sequence[str],
        criterion_terms: Sequence[str],
        vocabulary: Vocabulary = Vocabulary.CONDITION,
    ) -> Optional[MatchOutcome]:
        """
        Apply strategies in order across every term pair. Returns the first
        success, or None when no strategy matches.
        """
        patient_terms = [t for t in patient_terms if normalize_term(t)]
        criterion_terms = [t for t in criterion_terms if normalize_term(t)]
        if not patient_terms or not criterion_terms:
            return None

        allowed = {term: self.strategies_for(vocabulary, term) for term in patient_terms}
        for strategy in self.strategy_order:
            for patient_term in patient_terms:
                if strategy not in allowed[patient_term]:
                    continue
                for criterion_term in criterion_terms:
                    outcome = strategy(patient_term, criterion_term, self.resolver)
                    if outcome is not None:
                        return outcome
        return None

    # -------------------------------------------------------------------------
    # SEMANTIC PART
    # -------------------------------------------------------------------------

    async def ask(self, patient_term: str, criterion_term: str, context: str) -> SemanticVerdict:
        """One guarded call to the semantic client. Never raises except on cancellation."""
        try:
            verdict = await asyncio.wait_for(
                self.semantic_client.semantic_match(patient_term, criterion_term, context),
                timeout=self.timeout,
            )
        except asyncio.TimeoutError:
            logger.warning("Semantic match timed out after %.1fs: %r vs %r",
                           self.timeout, patient_term, criterion_term)
            return SemanticVerdict.failure("timeout")
        except Exception as e:
            logger.warning("Semantic match failed for %r vs %r: %s", patient_term, criterion_term, e)
            return SemanticVerdict.failure(f"transport error: {e}")

        if isinstance(verdict, SemanticVerdict):
            return verdict
        try:
            return SemanticVerdict.from_reply(verdict)
        except ValueError as e:
            logger.warning("Semantic client returned an invalid verdict %r: %s", verdict, e)
            return SemanticVerdict.failure(f"parse error: {e}")

    async def match_semantic(
        self,
        patient_terms: Sequence[str],
        criterion_terms: Sequence[str],
        context: str,
    ) -> Optional[MatchOutcome]:
        """
        Ask the semantic client about each patient term against the joined
        criterion terms. Returns None when the step is disabled or has
        nothing to compare, a matched outcome on the first accepted verdict,
        and otherwise an unmatched outcome whose `error` flag says whether
        any call failed.
        """
        patient_terms = [t for t in patient_terms if normalize_term(t)]
        criterion_terms = [t for t in criterion_terms if normalize_term(t)]
        if not self.semantic_enabled or not patient_terms or not criterion_terms:
            return None

        joined = ", ".join(criterion_terms)
        reasons = []
        errors = 0
        for patient_term in patient_terms:
            verdict = await self.ask(patient_term, joined, context)
            if verdict.error:
                errors += 1
                reasons.append(verdict.reasoning)
                continue
            if verdict.match and verdict.confidence >= self.thresholds.ignore:
                return MatchOutcome(
                    matched=True,
                    confidence=min(verdict.confidence, self.ai_confidence_cap),
                    method="semantic",
                    patient_term=patient_term,
                    criterion_term=joined,
                    requires_ai=True,
                    reasoning=verdict.reasoning,
                    suggested_class=verdict.suggested_class,
                )
            reasons.append(verdict.reasoning)

        return MatchOutcome(
            matched=False,
            confidence=0.0,
            method="semantic_error" if errors else "semantic",
            criterion_term=joined,
            requires_ai=True,
            reasoning="; ".join(r for r in reasons if r) or None,
            error=errors > 0,
        )

    async def match(
        self,
        patient_terms: Sequence[str],
        criterion_terms: Sequence[str],
        context: str = "medical term",
        vocabulary: Vocabulary = Vocabulary.CONDITION,
    ) -> Optional[MatchOutcome]:
        """Full cascade: pure strategies first, semantic step only if they all fail."""
        outcome = self.match_terms(patient_terms, criterion_terms, vocabulary)
        if outcome is not None:
            return outcome
        return await self.match_semantic(patient_terms, criterion_terms, context)
