from pydantic import BaseModel, Field
from typing import Any, Dict, Optional
from datetime import datetime
from enum import Enum


class ReviewStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class AISuggestion(BaseModel):
    """Classification proposed by the semantic collaborator for an unknown term."""
    drug_class: str = Field("Unknown", alias="class")
    confidence: Optional[float] = None
    reasoning: Optional[str] = None

    model_config = {"populate_by_name": True}


class ReviewPayload(BaseModel):
    """Context attached to a criterion result that needs human confirmation."""
    drug_name: str
    criterion_id: str
    nct_id: str
    matched_with: Optional[str] = None
    match_method: str = "unknown"
    ai_suggestion: Optional[AISuggestion] = None


class PendingReview(BaseModel):
    """A queued request for an admin to classify an unresolved term."""
    id: str
    drug_name: str
    trial_id: str
    criterion_id: str
    patient_id: str = "unknown"
    match_method: str = "unknown"
    ai_suggestion: Optional[AISuggestion] = None
    status: ReviewStatus = ReviewStatus.PENDING
    created_at: datetime = Field(default_factory=datetime.utcnow)
    admin_action: Optional[Dict[str, Any]] = None


class ApprovalDecision(BaseModel):
    """Admin input when approving a review."""
    drug_class: Optional[str] = None
    is_biologic: bool = False
    admin_id: str = "admin"


class ReviewDecisionResult(BaseModel):
    """Outcome of an approve/reject call."""
    success: bool
    error: Optional[str] = None
    review: Optional[PendingReview] = None
    drug_info: Optional[Dict[str, Any]] = None
