"""Agent orchestrator driving one user turn through the tool loop."""

import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Tuple

from opentelemetry.trace import Status, StatusCode
from pydantic import BaseModel, Field

from chatter.lib.logging_config import get_audit_logger
from chatter.lib.observability import get_tracer, turn_span_attributes
from chatter.models.conversation_session import ConversationSession, SessionBusyError
from chatter.models.message import Message
from chatter.models.stream_chunk import ChunkKind, StreamChunk
from chatter.models.tool_call import ToolCall, ToolResult
from chatter.models.turn_state import AbortReason, TurnRecord, TurnState
from chatter.services.base_provider_adapter import BaseProviderAdapter
from chatter.services.tool_registry import ToolRegistry


logger = logging.getLogger(__name__)

DEFAULT_MAX_TOOL_ITERATIONS = 6
MAX_TOOL_HISTORY = 100

TextCallback = Callable[[str], None]
ToolCallback = Callable[[ToolCall, ToolResult], None]


class AgentStatus(BaseModel):
    """Snapshot of agent mode for the /agent status command."""

    enabled: bool = Field(..., description="Whether tools are offered to the model")
    tools_executed: int = Field(default=0, description="Tool calls executed since startup")
    working_directory: str = Field(..., description="Base directory for relative paths")
    dry_run_mode: bool = Field(default=False, description="Whether mutating tools only preview")
    available_tools: List[str] = Field(default_factory=list, description="Registered tool names")
    allowed_paths: List[str] = Field(default_factory=list, description="Allowed roots")
    forbidden_paths: List[str] = Field(default_factory=list, description="Forbidden roots")
    max_tool_iterations: int = Field(..., description="Tool round-trips allowed per turn")


class ToolHistoryEntry(BaseModel):
    """One executed tool call."""

    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    session_id: str
    tool_name: str
    call_id: str
    arguments: Dict[str, Any] = Field(default_factory=dict)
    success: bool
    message: str = ""
    modified_files: List[str] = Field(default_factory=list)


class AgentOrchestrator:
    """Runs user turns: streams the model, executes requested tools, repeats.

    The turn state machine is held in a TurnRecord. Messages produced during
    a turn are staged until the first commit, so a turn that aborts before
    anything was committed leaves the transcript as it was.
    """

    def __init__(
        self,
        adapter: BaseProviderAdapter,
        registry: ToolRegistry,
        max_tool_iterations: int = DEFAULT_MAX_TOOL_ITERATIONS,
        agent_enabled: bool = False
    ):
        """Initialize the orchestrator.

        Args:
            adapter: Provider adapter used for streaming
            registry: Tool registry executing tool calls
            max_tool_iterations: Tool round-trips allowed per user turn
            agent_enabled: Whether tools are offered to the model
        """
        if max_tool_iterations < 1:
            raise ValueError("max_tool_iterations must be at least 1")
        self.logger = logging.getLogger(__name__)
        self.audit_logger = get_audit_logger()
        self.adapter = adapter
        self.registry = registry
        self.max_tool_iterations = max_tool_iterations
        self._agent_enabled = agent_enabled
        # One adapter and one cancellation event, so one turn at a time
        self._turn_lock = asyncio.Lock()
        self._cancel_event: Optional[asyncio.Event] = None
        self._current_turn: Optional[TurnRecord] = None
        self._tools_executed = 0
        self._tool_history: List[ToolHistoryEntry] = []

    # Agent mode

    @property
    def agent_enabled(self) -> bool:
        return self._agent_enabled

    def set_agent_enabled(self, enabled: bool, session_id: Optional[str] = None) -> None:
        """Toggle agent mode; takes effect at the next turn."""
        if enabled == self._agent_enabled:
            return
        self._agent_enabled = enabled
        self.audit_logger.log_policy_event(
            event_type="agent_mode_changed",
            action="enable_agent" if enabled else "disable_agent",
            decision="allow" if enabled else "deny",
            reason="Operator toggled agent mode",
            session_id=session_id
        )
        self.logger.info(f"Agent mode {'enabled' if enabled else 'disabled'}")

    def set_dry_run(self, enabled: bool) -> None:
        self.registry.dry_run = enabled
        self.logger.info(f"Dry-run mode {'enabled' if enabled else 'disabled'}")

    def allow_path(self, path: str) -> str:
        return str(self.registry.guard.allow(path))

    def forbid_path(self, path: str) -> str:
        return str(self.registry.guard.forbid(path))

    def check_path(self, path: str) -> Dict[str, Any]:
        """Permission decision for a path, without touching the filesystem."""
        return self.registry.guard.check(path, access_type="check")

    def status(self) -> AgentStatus:
        snapshot = self.registry.guard.snapshot()
        return AgentStatus(
            enabled=self._agent_enabled,
            tools_executed=self._tools_executed,
            working_directory=str(self.registry.working_directory),
            dry_run_mode=self.registry.dry_run,
            available_tools=self.registry.available_tools(),
            allowed_paths=snapshot["allowed_paths"],
            forbidden_paths=snapshot["forbidden_paths"],
            max_tool_iterations=self.max_tool_iterations
        )

    def get_tool_history(self, limit: Optional[int] = None) -> List[ToolHistoryEntry]:
        """Executed tool calls, oldest first."""
        return self._tool_history[-limit:] if limit else list(self._tool_history)

    def clear_history(self) -> None:
        """Forget the tool execution history."""
        self._tool_history.clear()

    # Turn control

    @property
    def turn_in_progress(self) -> bool:
        return self._current_turn is not None

    @property
    def current_turn(self) -> Optional[TurnRecord]:
        return self._current_turn

    def cancel_turn(self) -> bool:
        """Request cancellation of the running turn.

        A running tool finishes first; no further tool starts and the turn
        ends as aborted. Returns False when no turn is running.
        """
        if self._cancel_event is None or self._cancel_event.is_set():
            return False
        self._cancel_event.set()
        self.logger.info("Turn cancellation requested")
        return True

    async def run_turn(
        self,
        session: ConversationSession,
        user_text: str,
        on_text: Optional[TextCallback] = None,
        on_tool: Optional[ToolCallback] = None
    ) -> TurnRecord:
        """Run one user turn to completion or abortion.

        Args:
            session: Session receiving the turn's messages
            user_text: User input
            on_text: Called with each text delta as it arrives
            on_tool: Called after each tool execution

        Returns:
            The finished TurnRecord

        Raises:
            ValueError: If the user text is empty
            SessionBusyError: If the session or this orchestrator already has
                a turn in progress
        """
        if not user_text or not user_text.strip():
            raise ValueError("User message cannot be empty")

        if session.turn_active:
            raise SessionBusyError(f"Session {session.id} already has a turn in progress")
        if self._turn_lock.locked():
            raise SessionBusyError("Another turn is already in progress")

        async with self._turn_lock:
            session.begin_turn()
            record = TurnRecord(session_id=session.id, max_iterations=self.max_tool_iterations)
            self._current_turn = record
            self._cancel_event = asyncio.Event()

            tracer = get_tracer()
            attributes = turn_span_attributes(
                session.id, self.adapter.provider_name, session.model, self._agent_enabled
            )
            try:
                with tracer.start_as_current_span("chatter.turn", attributes=attributes) as span:
                    await self._sync_model(session)
                    await self._drive(session, record, user_text, on_text, on_tool)

                    span.set_attribute("chatter.turn_state", TurnState(record.state).value)
                    span.set_attribute("chatter.iterations", record.iterations)
                    if record.aborted:
                        span.set_status(Status(StatusCode.ERROR, record.error or "aborted"))
            finally:
                session.end_turn()
                self._current_turn = None
                self._cancel_event = None

        state = TurnState(record.state).value
        duration = record.duration_seconds
        self.audit_logger.log_turn_event(
            session_id=session.id,
            turn_id=record.turn_id,
            state=state,
            iterations=record.iterations,
            tools_executed=record.tools_executed,
            abort_reason=AbortReason(record.abort_reason).value if record.abort_reason else None,
            duration_ms=int(duration * 1000) if duration is not None else None
        )
        self.logger.info(f"Turn {record.turn_id} finished as {state} after {record.iterations} tool iterations")
        return record

    async def _sync_model(self, session: ConversationSession) -> None:
        if self.adapter.model != session.model:
            self.adapter.set_model(session.model)
            await self.adapter.refresh_capabilities()

    def _tool_schemas(self) -> Optional[List[Dict[str, Any]]]:
        if not self._agent_enabled:
            return None
        return self.registry.get_tool_schemas()

    async def _drive(
        self,
        session: ConversationSession,
        record: TurnRecord,
        user_text: str,
        on_text: Optional[TextCallback],
        on_tool: Optional[ToolCallback]
    ) -> None:
        pending: List[Message] = [Message.user(user_text)]

        def commit(message: Message) -> None:
            pending.append(message)
            session.extend_messages(pending)
            pending.clear()

        tools = self._tool_schemas()
        record.transition_to(TurnState.STREAMING, "user message")

        while True:
            outcome = await self._stream_response(session, record, pending, tools, on_text)
            if outcome is None:
                return
            text, calls = outcome

            if calls and tools is None:
                self.logger.warning(f"Ignoring {len(calls)} tool calls received while agent mode is off")
                calls = []

            if not calls:
                commit(Message.assistant(text))
                record.assistant_text = text
                record.transition_to(TurnState.COMPLETED, "response complete")
                return

            if not record.can_iterate:
                if text:
                    commit(Message.assistant(text))
                diagnostic = (
                    f"Tool iteration limit of {record.max_iterations} reached; "
                    f"{len(calls)} requested tool call(s) were not executed."
                )
                commit(Message.system(diagnostic))
                record.abort(AbortReason.ITERATION_LIMIT, diagnostic)
                self.logger.warning(f"Turn {record.turn_id}: {diagnostic}")
                return

            record.transition_to(TurnState.EXECUTING_TOOL, f"{len(calls)} tool calls")
            commit(Message.assistant(text, calls))

            for index, call in enumerate(calls):
                if self._cancel_event.is_set():
                    result = ToolResult.failure(call, "Tool call cancelled before execution")
                else:
                    # A running tool always runs to completion
                    execution = asyncio.ensure_future(self._execute_tool(session, record, call))
                    try:
                        result = await asyncio.shield(execution)
                    except asyncio.CancelledError:
                        self._cancel_event.set()
                        commit(Message.from_tool_result(await execution))
                        for skipped in calls[index + 1:]:
                            commit(Message.from_tool_result(
                                ToolResult.failure(skipped, "Tool call cancelled before execution")
                            ))
                        record.abort(AbortReason.CANCELLED, "Turn task cancelled during tool execution")
                        raise
                    if on_tool:
                        on_tool(call, result)
                commit(Message.from_tool_result(result))

            record.iterations += 1

            if self._cancel_event.is_set():
                record.abort(AbortReason.CANCELLED, "Turn cancelled by user")
                return

            record.transition_to(TurnState.STREAMING, "tool results sent")

    async def _stream_response(
        self,
        session: ConversationSession,
        record: TurnRecord,
        pending: List[Message],
        tools: Optional[List[Dict[str, Any]]],
        on_text: Optional[TextCallback]
    ) -> Optional[Tuple[str, List[ToolCall]]]:
        """Consume one provider stream.

        Returns the streamed text and the tool calls in arrival order, or
        None when the turn was aborted.
        """
        queue: asyncio.Queue = asyncio.Queue()
        messages = session.get_history() + pending
        producer = asyncio.create_task(
            self._produce(messages, session.system_instruction, tools, queue)
        )

        text_parts: List[str] = []
        calls: List[ToolCall] = []
        try:
            while True:
                chunk = await self._next_chunk(queue)
                if chunk is None:
                    record.abort(AbortReason.CANCELLED, "Turn cancelled by user")
                    return None

                kind = ChunkKind(chunk.kind)
                if kind == ChunkKind.TEXT:
                    text_parts.append(chunk.text)
                    if on_text:
                        on_text(chunk.text)
                elif kind == ChunkKind.TOOL_CALL:
                    calls.extend(chunk.tool_calls)
                elif kind == ChunkKind.ERROR:
                    record.abort(AbortReason.PROVIDER_ERROR, chunk.error)
                    self.logger.error(f"Turn {record.turn_id} provider error: {chunk.error}")
                    return None
                else:
                    return "".join(text_parts), calls
        finally:
            if not producer.done():
                producer.cancel()
            await asyncio.gather(producer, return_exceptions=True)

    async def _produce(
        self,
        messages: List[Message],
        system_instruction: Optional[str],
        tools: Optional[List[Dict[str, Any]]],
        queue: asyncio.Queue
    ) -> None:
        stream = self.adapter.start_turn(messages, system_instruction, tools)
        try:
            async for chunk in stream:
                await queue.put(chunk)
                if ChunkKind(chunk.kind) in (ChunkKind.END, ChunkKind.ERROR):
                    return
            await queue.put(StreamChunk.end())
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self.logger.exception("Provider stream failed")
            await queue.put(StreamChunk.failure(f"Provider stream failed: {e}"))
        finally:
            await stream.aclose()

    async def _next_chunk(self, queue: asyncio.Queue) -> Optional[StreamChunk]:
        """Next chunk in arrival order, or None once cancellation is requested."""
        if self._cancel_event.is_set():
            return None

        get_task = asyncio.ensure_future(queue.get())
        cancel_task = asyncio.ensure_future(self._cancel_event.wait())
        try:
            await asyncio.wait({get_task, cancel_task}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for task in (get_task, cancel_task):
                if not task.done():
                    task.cancel()

        if self._cancel_event.is_set():
            return None
        return get_task.result()

    async def _execute_tool(self, session: ConversationSession, record: TurnRecord, call: ToolCall) -> ToolResult:
        tracer = get_tracer()
        with tracer.start_as_current_span(
            "chatter.tool",
            attributes={"chatter.tool_name": call.name, "chatter.call_id": call.call_id}
        ) as span:
            result = await asyncio.to_thread(self.registry.execute, call, session.id)
            span.set_attribute("chatter.tool_success", result.success)
            if not result.success:
                span.set_status(Status(StatusCode.ERROR, result.error or "tool failed"))

        record.tools_executed += 1
        self._tools_executed += 1
        self._tool_history.append(ToolHistoryEntry(
            session_id=session.id,
            tool_name=call.name,
            call_id=call.call_id,
            arguments=call.arguments,
            success=result.success,
            message=result.message,
            modified_files=result.modified_files
        ))
        if len(self._tool_history) > MAX_TOOL_HISTORY:
            del self._tool_history[:-MAX_TOOL_HISTORY]
        return result
