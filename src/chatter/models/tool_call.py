"""ToolCall and ToolResult models exchanged between provider and tool registry."""

import json
from typing import Any, Dict, List, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator


def generate_call_id() -> str:
    """Generate an identifier for tool calls the provider did not label."""
    return f"call_{uuid4().hex[:12]}"


class ToolCall(BaseModel):
    """A single tool invocation requested by the model."""

    name: str = Field(..., description="Name of the tool to execute")
    arguments: Dict[str, Any] = Field(default_factory=dict, description="Tool-specific arguments")
    call_id: str = Field(default_factory=generate_call_id, description="Identifier linking call and result")
    argument_error: Optional[str] = Field(None, description="Why the provider's arguments could not be parsed")

    class Config:
        """Pydantic configuration."""

        frozen = True

    @field_validator('name')
    @classmethod
    def validate_name(cls, v):
        """Tool names must be non-empty."""
        if not v or not v.strip():
            raise ValueError("Tool name cannot be empty")
        return v.strip()

    @field_validator('call_id')
    @classmethod
    def validate_call_id(cls, v):
        """Blank provider ids are replaced with a generated one."""
        if not v or not v.strip():
            return generate_call_id()
        return v.strip()

    def to_contract(self) -> Dict[str, Any]:
        """Provider-neutral `{"name", "arguments"}` form."""
        return {"name": self.name, "arguments": dict(self.arguments)}


class ToolResult(BaseModel):
    """Outcome of executing one ToolCall.

    ``output`` is the text handed back to the model on success, ``error`` the
    description on failure. ``data`` keeps the structured result for display.
    """

    call_id: str = Field(..., description="Identifier of the originating call")
    tool_name: str = Field(..., description="Tool that produced the result")
    success: bool = Field(..., description="Whether the tool succeeded")
    message: str = Field(default="", description="Short human-readable summary")
    output: str = Field(default="", description="Text returned to the model")
    error: Optional[str] = Field(None, description="Failure description")
    data: Dict[str, Any] = Field(default_factory=dict, description="Structured result data")
    modified_files: List[str] = Field(default_factory=list, description="Files written by the tool")

    @classmethod
    def ok(
        cls,
        call: ToolCall,
        message: str,
        data: Optional[Dict[str, Any]] = None,
        modified_files: Optional[List[str]] = None
    ) -> "ToolResult":
        """Build a successful result whose output is the JSON tool payload."""
        data = data or {}
        modified_files = modified_files or []
        payload = {
            "tool": call.name,
            "success": True,
            "message": message,
            "data": data,
            "modified_files": modified_files
        }
        return cls(
            call_id=call.call_id,
            tool_name=call.name,
            success=True,
            message=message,
            output=json.dumps(payload, ensure_ascii=False, default=str),
            data=data,
            modified_files=modified_files
        )

    @classmethod
    def failure(cls, call: ToolCall, error: str) -> "ToolResult":
        """Build a failed result."""
        return cls(
            call_id=call.call_id,
            tool_name=call.name,
            success=False,
            message=error,
            error=error
        )

    def to_payload(self) -> Dict[str, str]:
        """Echo form sent back to the provider."""
        if self.success:
            return {"call_id": self.call_id, "output": self.output}
        return {"call_id": self.call_id, "error": self.error or "Tool execution failed"}

    @property
    def text(self) -> str:
        """Output on success, error description otherwise."""
        return self.output if self.success else (self.error or "")
