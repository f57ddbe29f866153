"""StreamChunk model for incremental provider output."""

from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, Field

from chatter.models.tool_call import ToolCall


class ChunkKind(str, Enum):
    """Kinds of stream chunks."""

    TEXT = "text"
    TOOL_CALL = "tool_call"
    END = "end"
    ERROR = "error"


class StreamChunk(BaseModel):
    """One incremental unit of provider output. Never persisted."""

    kind: ChunkKind = Field(..., description="Chunk variant")
    text: str = Field(default="", description="Text delta for text chunks")
    tool_calls: List[ToolCall] = Field(default_factory=list, description="Tool calls for tool_call chunks")
    error: Optional[str] = Field(None, description="Error description for error chunks")

    class Config:
        """Pydantic configuration."""

        frozen = True

    @classmethod
    def text_delta(cls, text: str) -> "StreamChunk":
        return cls(kind=ChunkKind.TEXT, text=text)

    @classmethod
    def tool_request(cls, tool_calls: List[ToolCall]) -> "StreamChunk":
        return cls(kind=ChunkKind.TOOL_CALL, tool_calls=list(tool_calls))

    @classmethod
    def end(cls) -> "StreamChunk":
        return cls(kind=ChunkKind.END)

    @classmethod
    def failure(cls, error: str) -> "StreamChunk":
        return cls(kind=ChunkKind.ERROR, error=error)
