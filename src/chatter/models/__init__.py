"""Chatter Data Models.

This package contains the data models for the chat client: transcript
messages, tool calls and results, stream chunks, the conversation session,
the agent turn state machine and audit records.
"""

from .tool_call import ToolCall, ToolResult, generate_call_id
from .message import Message, MessageRole
from .conversation_session import ConversationSession, ModelProvider, SessionBusyError
from .stream_chunk import StreamChunk, ChunkKind
from .turn_state import TurnRecord, TurnState, AbortReason, VALID_TRANSITIONS
from .audit_record import AuditRecord, EventType, ResultStatus

__all__ = [
    # ToolCall
    "ToolCall",
    "ToolResult",
    "generate_call_id",
    # Message
    "Message",
    "MessageRole",
    # ConversationSession
    "ConversationSession",
    "ModelProvider",
    "SessionBusyError",
    # StreamChunk
    "StreamChunk",
    "ChunkKind",
    # TurnRecord
    "TurnRecord",
    "TurnState",
    "AbortReason",
    "VALID_TRANSITIONS",
    # AuditRecord
    "AuditRecord",
    "EventType",
    "ResultStatus",
]
