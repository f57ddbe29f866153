"""Message model for the conversation transcript."""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, model_validator

from chatter.models.tool_call import ToolCall, ToolResult


class MessageRole(str, Enum):
    """Message role enumeration."""

    USER = "user"
    ASSISTANT = "assistant"
    SYSTEM = "system"
    TOOL = "tool"


class Message(BaseModel):
    """
    One entry of the conversation transcript.

    Messages are immutable once built. Assistant messages may carry the tool
    calls the model requested; tool messages reference the call they answer.
    """

    role: MessageRole = Field(..., description="Message role")
    content: str = Field(default="", description="Text content or tool output")
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc), description="When the message was created")
    tool_calls: List[ToolCall] = Field(default_factory=list, description="Tool calls requested by an assistant message")
    tool_call_id: Optional[str] = Field(None, description="Call answered by a tool message")
    tool_name: Optional[str] = Field(None, description="Tool that produced a tool message")
    is_error: bool = Field(default=False, description="Whether a tool message reports a failure")

    class Config:
        """Pydantic configuration."""

        use_enum_values = True
        frozen = True

    @model_validator(mode='after')
    def validate_role_fields(self):
        """Tool-specific fields must match the role."""
        if self.tool_calls and self.role != MessageRole.ASSISTANT:
            raise ValueError("Only assistant messages can carry tool calls")
        if self.role == MessageRole.TOOL and not self.tool_call_id:
            raise ValueError("Tool messages require tool_call_id")
        return self

    @classmethod
    def user(cls, content: str) -> "Message":
        return cls(role=MessageRole.USER, content=content)

    @classmethod
    def assistant(cls, content: str, tool_calls: Optional[List[ToolCall]] = None) -> "Message":
        return cls(role=MessageRole.ASSISTANT, content=content, tool_calls=tool_calls or [])

    @classmethod
    def system(cls, content: str) -> "Message":
        return cls(role=MessageRole.SYSTEM, content=content)

    @classmethod
    def from_tool_result(cls, result: ToolResult) -> "Message":
        """Convert a ToolResult into its transcript message."""
        return cls(
            role=MessageRole.TOOL,
            content=result.text,
            tool_call_id=result.call_id,
            tool_name=result.tool_name,
            is_error=not result.success
        )

    def tool_payload(self) -> Dict[str, Any]:
        """Result echo for tool messages: `{"call_id", "output"|"error"}`."""
        key = "error" if self.is_error else "output"
        return {"call_id": self.tool_call_id, key: self.content}

    @property
    def has_tool_calls(self) -> bool:
        return bool(self.tool_calls)
