from pydantic import BaseModel, Field, field_validator
from typing import Any, Dict, List, Optional
from datetime import datetime
from enum import Enum


class ClusterCode(str, Enum):
    """Criterion categories, each answered by one patient slot."""
    AGE = "AGE"  # Age
    BMI = "BMI"  # Weight / BMI
    CMB = "CMB"  # Comorbidities
    PTH = "PTH"  # Prior treatment history
    AIC = "AIC"  # Active infections
    AAO = "AAO"  # Affected area / clinical measurements
    SEV = "SEV"  # Disease severity
    CPD = "CPD"  # Disease duration
    NPV = "NPV"  # Disease variant
    BIO = "BIO"  # Biomarkers
    FLR = "FLR"  # Flare history

    @classmethod
    def parse(cls, value: Any) -> Optional["ClusterCode"]:
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().upper())
        except ValueError:
            return None


class PatientResponse(BaseModel):
    """
    Answered questionnaire slots for one matching request.

    `responses` maps a cluster code to the slot (a mapping) or, for the
    list-valued clusters (CMB, PTH, AIC), to a list of slots.
    """
    responses: Dict[str, Any] = Field(default_factory=dict)
    timestamp: Optional[datetime] = None
    version: Optional[str] = None

    @field_validator("responses", mode="before")
    @classmethod
    def _normalize_keys(cls, value: Any) -> Dict[str, Any]:
        if not isinstance(value, dict):
            return {}
        return {str(key).strip().upper(): slot for key, slot in value.items()}

    @field_validator("timestamp", mode="before")
    @classmethod
    def _parse_timestamp(cls, value: Any) -> Optional[datetime]:
        """Metadata only: anything unreadable becomes None."""
        if value is None or isinstance(value, datetime):
            return value
        if isinstance(value, str):
            try:
                return datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
            except ValueError:
                return None
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            try:
                return datetime.fromtimestamp(value / 1000 if value > 1e11 else value)
            except (OverflowError, OSError, ValueError):
                return None
        return None

    @field_validator("version", mode="before")
    @classmethod
    def _version_text(cls, value: Any) -> Optional[str]:
        if value is None or isinstance(value, (dict, list)):
            return None
        return str(value)

    @classmethod
    def from_payload(cls, payload: Any) -> "PatientResponse":
        """Accept either {responses, timestamp, version} or the bare cluster mapping."""
        if isinstance(payload, cls):
            return payload
        if not isinstance(payload, dict):
            return cls()
        if "responses" in payload:
            return cls.model_validate(payload)
        return cls(responses=payload)

    def slot(self, cluster: ClusterCode) -> Any:
        """Return the raw slot for a cluster, or None when unanswered."""
        return self.responses.get(cluster.value)

    def slot_list(self, cluster: ClusterCode) -> Optional[List[Dict[str, Any]]]:
        """Return a list-valued slot, or None when missing or not a list."""
        value = self.slot(cluster)
        if isinstance(value, dict):
            return [value]
        if not isinstance(value, list):
            return None
        return [item for item in value if isinstance(item, dict)]
