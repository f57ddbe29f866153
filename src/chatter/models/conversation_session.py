"""ConversationSession model holding the transcript and model selection."""

from datetime import datetime, timezone
from enum import Enum
from typing import List, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, PrivateAttr, field_validator, model_validator

from chatter.models.message import Message, MessageRole


class ModelProvider(str, Enum):
    """Supported model providers."""

    GEMINI = "gemini"
    OLLAMA = "ollama"

    @property
    def requires_api_key(self) -> bool:
        return self == ModelProvider.GEMINI


class SessionBusyError(Exception):
    """Raised when a session is changed while a turn is in flight."""
    pass


def _normalize_instruction(value: Optional[str]) -> Optional[str]:
    if value is not None and not value.strip():
        return None
    return value


class ConversationSession(BaseModel):
    """Ordered transcript plus system instruction and model selection.

    During a turn the session is owned by the agent orchestrator; the
    operations that change it from outside raise SessionBusyError until the
    turn has finished.
    """

    id: str = Field(
        default_factory=lambda: str(uuid4()),
        description="Unique identifier for the conversation session"
    )

    model: str = Field(
        ...,
        min_length=1,
        description="Model name used for requests"
    )

    provider: ModelProvider = Field(
        default=ModelProvider.GEMINI,
        description="Provider serving the model"
    )

    system_instruction: Optional[str] = Field(
        default=None,
        description="Active system instruction"
    )

    history: List[Message] = Field(
        default_factory=list,
        description="Ordered transcript"
    )

    created_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
        description="Session creation timestamp"
    )

    updated_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
        description="Last modification timestamp"
    )

    _turn_active: bool = PrivateAttr(default=False)

    class Config:
        """Pydantic configuration."""
        use_enum_values = True

    @field_validator('system_instruction')
    @classmethod
    def normalize_system_instruction(cls, v):
        """Blank instructions are stored as None."""
        return _normalize_instruction(v)

    @model_validator(mode='after')
    def validate_timestamps(self):
        """Ensure updated_at is not before created_at."""
        if self.updated_at < self.created_at:
            raise ValueError("updated_at cannot be before created_at")
        return self

    @property
    def turn_active(self) -> bool:
        """Whether a turn currently owns the session."""
        return self._turn_active

    def begin_turn(self) -> None:
        """Mark the session as owned by an in-flight turn."""
        if self._turn_active:
            raise SessionBusyError(f"Session {self.id} already has a turn in progress")
        self._turn_active = True

    def end_turn(self) -> None:
        self._turn_active = False

    def ensure_idle(self, operation: str = "modify") -> None:
        """Raise SessionBusyError if a turn is running."""
        if self._turn_active:
            raise SessionBusyError(f"Cannot {operation} session {self.id} while a turn is in progress")

    def touch(self) -> None:
        self.updated_at = datetime.now(timezone.utc)

    def add_message(self, message: Message) -> None:
        """Append a message to the transcript."""
        self.history.append(message)
        self.touch()

    def extend_messages(self, messages: List[Message]) -> None:
        """Append several messages in order."""
        if not messages:
            return
        self.history.extend(messages)
        self.touch()

    def clear_history(self) -> None:
        """Remove all messages, keeping model and system instruction."""
        self.ensure_idle("clear")
        self.history = []
        self.touch()

    def set_system_instruction(self, instruction: Optional[str]) -> None:
        self.ensure_idle("change the system instruction of")
        self.system_instruction = _normalize_instruction(instruction)
        self.touch()

    def set_model(self, model: str) -> None:
        self.ensure_idle("change the model of")
        if not model or not model.strip():
            raise ValueError("Model name cannot be empty")
        self.model = model.strip()
        self.touch()

    def get_history(self) -> List[Message]:
        """Copy of the transcript."""
        return list(self.history)

    def message_count(self, role: Optional[MessageRole] = None) -> int:
        """Count messages, optionally of one role."""
        if role is None:
            return len(self.history)
        return sum(1 for message in self.history if message.role == role)

    def last_message(self) -> Optional[Message]:
        return self.history[-1] if self.history else None

    def get_session_summary(self) -> dict:
        """Summary used by the /info command."""
        return {
            "id": self.id,
            "provider": self.provider,
            "model": self.model,
            "system_instruction": self.system_instruction,
            "messages": len(self.history),
            "user_messages": self.message_count(MessageRole.USER),
            "assistant_messages": self.message_count(MessageRole.ASSISTANT),
            "tool_messages": self.message_count(MessageRole.TOOL),
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat()
        }
