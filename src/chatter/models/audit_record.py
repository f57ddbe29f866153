"""AuditRecord model for permission and tool decisions."""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator


class EventType(str, Enum):
    """Audit event type enumeration."""

    SECURITY = "security"


class ResultStatus(str, Enum):
    """Operation result status enumeration."""

    BLOCKED = "blocked"


class AuditRecord(BaseModel):
    """Log entry for a security-relevant decision taken during a session."""

    record_id: str = Field(default_factory=lambda: str(uuid4()), description="Unique identifier for the audit record")
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc), description="When the event occurred")
    event_type: EventType = Field(..., description="Type of event")
    session_id: Optional[str] = Field(None, description="Related conversation session")
    action: str = Field(..., description="Specific action or operation performed")
    result: ResultStatus = Field(..., description="Outcome of the action")
    reason: Optional[str] = Field(None, description="Rationale for the decision")
    metadata: Dict[str, Any] = Field(default_factory=dict, description="Additional event metadata")

    class Config:
        """Pydantic configuration."""

        use_enum_values = True

    @field_validator('action')
    @classmethod
    def validate_action(cls, v):
        """Validate action is not empty."""
        if not v.strip():
            raise ValueError("action cannot be empty")
        return v.strip()
