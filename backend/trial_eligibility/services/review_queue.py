"""
Unverified-match review queue.

PendingReviewStore keeps review items; DrugApprovalService applies admin
decisions and, on approval, registers the drug with the KnowledgeResolver.
"""

import logging
import threading
import uuid
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple, Union

from ..matching.knowledge import DRUG_CLASSES, KnowledgeResolver, knowledge_resolver, normalize_term
from ..schemas.review import (
    ApprovalDecision,
    PendingReview,
    ReviewDecisionResult,
    ReviewPayload,
    ReviewStatus,
)

logger = logging.getLogger(__name__)


class PendingReviewStore:
    """In-process review log. One item per (drug, trial, criterion)."""

    def __init__(self):
        self._reviews: Dict[str, PendingReview] = {}
        self._keys: Dict[Tuple[str, str, str], str] = {}
        self._lock = threading.Lock()

    @staticmethod
    def _dedupe_key(drug_name: str, trial_id: str, criterion_id: str) -> Tuple[str, str, str]:
        return normalize_term(drug_name), trial_id, criterion_id

    def add_review(self, payload: Union[ReviewPayload, Dict[str, Any]], patient_id: str = "unknown") -> PendingReview:
        """Queue a review. A repeat for the same drug, trial and criterion returns the existing item."""
        if not isinstance(payload, ReviewPayload):
            payload = ReviewPayload.model_validate(payload)

        key = self._dedupe_key(payload.drug_name, payload.nct_id, payload.criterion_id)
        with self._lock:
            existing_id = self._keys.get(key)
            if existing_id is not None:
                logger.debug("Duplicate review for %r in %s/%s, skipping",
                             payload.drug_name, payload.nct_id, payload.criterion_id)
                return self._reviews[existing_id]

            review = PendingReview(
                id=f"review_{uuid.uuid4().hex[:12]}",
                drug_name=payload.drug_name,
                trial_id=payload.nct_id,
                criterion_id=payload.criterion_id,
                patient_id=patient_id,
                match_method=payload.match_method,
                ai_suggestion=payload.ai_suggestion,
            )
            self._reviews[review.id] = review
            self._keys[key] = review.id

        logger.info("Queued review %s for %r (%s, %s)", review.id, review.drug_name, review.trial_id, review.match_method)
        return review

    def get_review(self, review_id: str) -> Optional[PendingReview]:
        return self._reviews.get(review_id)

    def get_all_reviews(self) -> List[PendingReview]:
        return list(self._reviews.values())

    def get_reviews_by_status(self, status: ReviewStatus) -> List[PendingReview]:
        return [r for r in self._reviews.values() if r.status == status]

    def list_pending(self) -> List[PendingReview]:
        return self.get_reviews_by_status(ReviewStatus.PENDING)

    def resolve(self, review_id: str, status: ReviewStatus,
                admin_action: Optional[Dict[str, Any]] = None) -> Tuple[Optional[PendingReview], Optional[str]]:
        """
        Move a pending review to `status`. Returns (review, error): the
        updated item on success, or the current item (None when missing)
        with the reason nothing changed. Only one caller can resolve an item.
        """
        with self._lock:
            review = self._reviews.get(review_id)
            if review is None:
                return None, "Review not found"
            if review.status != ReviewStatus.PENDING:
                return review, "Review already processed"
            updated = review.model_copy(update={
                "status": status,
                "admin_action": admin_action or {"action": status.value, "timestamp": datetime.utcnow().isoformat()},
            })
            self._reviews[review_id] = updated
        return updated, None

    def clear(self) -> None:
        with self._lock:
            self._reviews.clear()
            self._keys.clear()

    def get_stats(self) -> Dict[str, int]:
        reviews = list(self._reviews.values())
        stats = {"total": len(reviews)}
        for status in ReviewStatus:
            stats[status.value] = sum(1 for r in reviews if r.status == status)
        return stats


class DrugApprovalService:
    """Admin decisions over the review store."""

    def __init__(self, store: Optional[PendingReviewStore] = None,
                 resolver: Optional[KnowledgeResolver] = None):
        self.store = store or PendingReviewStore()
        self.resolver = resolver or knowledge_resolver

    def approve_review(self, review_id: str,
                       decision: Union[ApprovalDecision, Dict[str, Any], None] = None) -> ReviewDecisionResult:
        """
        Approve a pending review: mark the review approved, then register the
        drug (class from the decision, else the AI suggestion, else Unknown).
        """
        if not isinstance(decision, ApprovalDecision):
            decision = ApprovalDecision.model_validate(decision or {})
        review = self.store.get_review(review_id)
        if review is None:
            return ReviewDecisionResult(success=False, error="Review not found")

        drug_class = decision.drug_class or (review.ai_suggestion.drug_class if review.ai_suggestion else None) \
            or "Unknown"
        updated, error = self.store.resolve(review_id, ReviewStatus.APPROVED, {
            "action": "approved",
            "drug_class": drug_class,
            "timestamp": datetime.utcnow().isoformat(),
            "admin_id": decision.admin_id,
        })
        if error:
            return ReviewDecisionResult(success=False, error=error, review=updated)

        # Registered only by the caller that won the transition
        info = self.resolver.register_drug(
            review.drug_name,
            drug_class,
            is_biologic=decision.is_biologic,
            approved_by=decision.admin_id,
            ai_suggested=review.ai_suggestion is not None,
        )
        logger.info("Review %s approved: %r as %s by %s", review_id, review.drug_name, drug_class, decision.admin_id)
        return ReviewDecisionResult(
            success=True,
            review=updated,
            drug_info={"name": review.drug_name, "class": info.drug_class, "is_biologic": info.is_biologic},
        )

    def reject_review(self, review_id: str, reason: Optional[str] = None,
                      admin_id: str = "admin") -> ReviewDecisionResult:
        updated, error = self.store.resolve(review_id, ReviewStatus.REJECTED, {
            "action": "rejected",
            "reason": reason or "Admin rejected",
            "timestamp": datetime.utcnow().isoformat(),
            "admin_id": admin_id,
        })
        if error:
            return ReviewDecisionResult(success=False, error=error, review=updated)
        logger.info("Review %s rejected: %r (%s)", review_id, updated.drug_name, reason or "Admin rejected")
        return ReviewDecisionResult(success=True, review=updated)

    def get_pending_reviews_with_context(self) -> List[Dict[str, Any]]:
        items = []
        for review in self.store.list_pending():
            suggestion = review.ai_suggestion
            item = review.model_dump()
            item.update({
                "suggested_class": suggestion.drug_class if suggestion else "Unknown",
                "suggested_confidence": suggestion.confidence if suggestion else None,
                "suggested_reasoning": suggestion.reasoning if suggestion else None,
                "available_classes": list(DRUG_CLASSES),
            })
            items.append(item)
        return items

    def get_dashboard_stats(self) -> Dict[str, int]:
        stats = self.store.get_stats()
        stats["approved_drugs_in_database"] = len(self.resolver.approved_drugs)
        return stats


# Global instances
pending_review_store = PendingReviewStore()
drug_approval_service = DrugApprovalService(pending_review_store)
