from pydantic import BaseModel, Field, field_validator
from typing import Any, Optional


class SemanticQuery(BaseModel):
    """One request to the semantic-reasoning collaborator."""
    patient_term: str
    criterion_term: str
    context: str = Field("medical term", description="Domain of the terms, e.g. 'medical condition'")


class SemanticVerdict(BaseModel):
    """
    Structured answer from the semantic-reasoning collaborator.

    `error` marks transport failures, timeouts and unparseable output so they
    stay distinguishable from a genuine "no match" answer.
    """
    match: bool = False
    confidence: float = 0.0
    reasoning: str = ""
    suggested_class: Optional[str] = None
    error: bool = False
    from_cache: bool = False

    @field_validator("confidence", mode="before")
    @classmethod
    def _clamp(cls, value: Any) -> float:
        try:
            value = float(value)
        except (TypeError, ValueError):
            return 0.0
        if value != value:  # NaN
            return 0.0
        return max(0.0, min(1.0, value))

    @classmethod
    def from_reply(cls, data: Any) -> "SemanticVerdict":
        """
        Build a verdict from a raw reply object. The reply must carry a
        boolean match ("match" or "matches"), a numeric confidence and a
        string reasoning; anything else raises ValueError.
        """
        if not isinstance(data, dict):
            raise ValueError("Response is not an object")

        match = data.get("match", data.get("matches"))
        confidence = data.get("confidence")
        reasoning = data.get("reasoning")
        if not isinstance(match, bool) \
                or isinstance(confidence, bool) or not isinstance(confidence, (int, float)) \
                or not isinstance(reasoning, str):
            raise ValueError("Invalid response structure")

        suggested = data.get("suggested_class", data.get("suggestedClass"))
        return cls(
            match=match,
            confidence=confidence,
            reasoning=reasoning,
            suggested_class=suggested if isinstance(suggested, str) and suggested else None,
        )

    @classmethod
    def failure(cls, reason: str) -> "SemanticVerdict":
        return cls(match=False, confidence=0.0, reasoning=reason, error=True)
