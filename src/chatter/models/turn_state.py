"""TurnRecord model with the agent loop state machine."""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional
from uuid import uuid4

from pydantic import BaseModel, Field


class TurnState(str, Enum):
    """Agent loop state enumeration."""

    IDLE = "idle"
    STREAMING = "streaming"
    EXECUTING_TOOL = "executing_tool"
    COMPLETED = "completed"
    ABORTED = "aborted"


class AbortReason(str, Enum):
    """Why a turn ended in the aborted state."""

    CANCELLED = "cancelled"
    ITERATION_LIMIT = "iteration_limit"
    PROVIDER_ERROR = "provider_error"


VALID_TRANSITIONS: Dict[TurnState, List[TurnState]] = {
    TurnState.IDLE: [TurnState.STREAMING, TurnState.ABORTED],
    TurnState.STREAMING: [TurnState.EXECUTING_TOOL, TurnState.COMPLETED, TurnState.ABORTED],
    TurnState.EXECUTING_TOOL: [TurnState.STREAMING, TurnState.ABORTED],
    TurnState.COMPLETED: [],  # Terminal state
    TurnState.ABORTED: []     # Terminal state
}


class TurnRecord(BaseModel):
    """
    State and outcome of one user turn.

    The orchestrator drives the record through the transition table; the
    finished record is returned to the caller as the turn result.
    """

    turn_id: str = Field(default_factory=lambda: str(uuid4()), description="Unique identifier for the turn")
    session_id: str = Field(..., description="Session the turn belongs to")
    state: TurnState = Field(default=TurnState.IDLE, description="Current loop state")
    iterations: int = Field(default=0, ge=0, description="Completed tool round-trips")
    max_iterations: int = Field(default=6, ge=1, description="Tool round-trip cap")
    abort_reason: Optional[AbortReason] = Field(None, description="Reason for an aborted turn")
    error: Optional[str] = Field(None, description="Diagnostic for an aborted turn")
    assistant_text: str = Field(default="", description="Final assistant text of a completed turn")
    tools_executed: int = Field(default=0, ge=0, description="Tool calls executed during the turn")
    transitions: List[Dict[str, Any]] = Field(default_factory=list, description="Transition log")
    started_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc), description="Turn start")
    finished_at: Optional[datetime] = Field(None, description="Turn end")

    def transition_to(self, new_state: TurnState, reason: Optional[str] = None) -> bool:
        """
        Move to a new state following the transition table.

        Args:
            new_state: Target state
            reason: Optional reason recorded in the transition log

        Returns:
            True if the transition was valid and applied
        """
        current = TurnState(self.state)
        if new_state not in VALID_TRANSITIONS[current]:
            return False

        self.state = new_state
        now = datetime.now(timezone.utc)
        self.transitions.append({
            "from_state": current.value,
            "to_state": new_state.value,
            "timestamp": now.isoformat(),
            "reason": reason
        })

        if self.is_terminal:
            self.finished_at = now

        return True

    def abort(self, reason: AbortReason, error: Optional[str] = None) -> bool:
        """Transition to ABORTED with a reason."""
        if not self.transition_to(TurnState.ABORTED, reason.value):
            return False
        self.abort_reason = reason
        self.error = error
        return True

    @property
    def is_terminal(self) -> bool:
        return TurnState(self.state) in (TurnState.COMPLETED, TurnState.ABORTED)

    @property
    def can_iterate(self) -> bool:
        """Whether another tool round-trip is within the cap."""
        return self.iterations < self.max_iterations

    @property
    def completed(self) -> bool:
        return self.state == TurnState.COMPLETED

    @property
    def aborted(self) -> bool:
        return self.state == TurnState.ABORTED

    @property
    def duration_seconds(self) -> Optional[float]:
        if self.finished_at is None:
            return None
        return (self.finished_at - self.started_at).total_seconds()
