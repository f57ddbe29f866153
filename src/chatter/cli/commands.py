"""Slash commands available inside the interactive chat."""

import logging
from typing import List

from pydantic import BaseModel

from chatter.models.conversation_session import ConversationSession, ModelProvider, SessionBusyError
from chatter.models.message import Message, MessageRole
from chatter.models.tool_call import ToolCall, ToolResult
from chatter.services.agent_orchestrator import AgentOrchestrator
from chatter.services.session_store import SessionPersistenceError, SessionStore


logger = logging.getLogger(__name__)

HISTORY_PREVIEW_LENGTH = 200

CHAT_HELP = """Available commands:
  /help                    - Show this help
  /clear                   - Clear conversation history
  /save [file]             - Save session (default: sessions directory)
  /load [file]             - Load session from file, or list saved sessions
  /model [name]            - Show or switch model
  /system [text|clear]     - Show, set or clear the system instruction
  /history                 - Show conversation history
  /info                    - Show session information
  /agent help              - Agent mode commands
  /quit, /exit             - Exit the chat"""

AGENT_HELP = """Agent commands:
  /agent on                - Enable agent mode
  /agent off               - Disable agent mode
  /agent status            - Show agent status
  /agent history           - Show tool execution history
  /agent clear             - Clear tool execution history
  /agent tools             - List available tools
  /agent config            - Show agent configuration
  /agent dry-run <on|off>  - Preview file changes without writing them
  /agent allow-path <path> - Allow tools to access a directory
  /agent forbid-path <path> - Forbid tools from accessing a directory
  /agent check-path <path> - Check whether tools may access a path
  /agent help              - Show this help"""


class CommandResult(BaseModel):
    """Outcome of a slash command."""

    output: str = ""
    exit: bool = False


def _preview(text: str, limit: int = HISTORY_PREVIEW_LENGTH) -> str:
    text = text.replace("\n", " ")
    return text if len(text) <= limit else f"{text[:limit]}..."


def format_message(message: Message) -> str:
    """One-line rendering of a transcript message."""
    role = MessageRole(message.role)
    if role == MessageRole.TOOL:
        status = "error" if message.is_error else "ok"
        return f"[tool:{message.tool_name} {status}] {_preview(message.content)}"
    if role == MessageRole.ASSISTANT and message.tool_calls:
        names = ", ".join(call.name for call in message.tool_calls)
        text = f"{_preview(message.content)} " if message.content else ""
        return f"[assistant] {text}(requested: {names})"
    return f"[{role.value}] {_preview(message.content)}"


def format_tool_result(call: ToolCall, result: ToolResult) -> str:
    """Human-readable summary of a tool execution."""
    if not result.success:
        return f"  {call.name} failed: {result.error}"

    data = result.data
    lines = [f"  {call.name}: {result.message}"]
    if data.get("dry_run"):
        return "\n".join(lines)

    if call.name == "read_file":
        lines.append(f"    path: {data.get('path')} ({data.get('size')} bytes)")
        if data.get("truncated"):
            lines.append(f"    {data.get('notice')}")
    elif call.name == "write_file":
        lines.append(f"    path: {data.get('path')} ({data.get('size')} bytes)")
    elif call.name == "update_file":
        lines.append(f"    path: {data.get('path')} ({data.get('operation')})")
    elif call.name == "search_files":
        for match in data.get("results", [])[:10]:
            lines.append(f"    {match['file']}:{match['line']}: {match['content']}")
        if data.get("matches_found", 0) > 10:
            lines.append(f"    ... and {data['matches_found'] - 10} more matches")
    elif call.name == "list_directory":
        entries = data.get("entries", [])
        for entry in entries[:20]:
            marker = "/" if entry["type"] == "directory" else ""
            lines.append(f"    {entry['path']}{marker}")
        if len(entries) > 20:
            lines.append(f"    ... and {len(entries) - 20} more entries")

    if data.get("backup_created"):
        lines.append(f"    backup: {data['backup_created']}")
    return "\n".join(lines)


class ChatCommandHandler:
    """Dispatches slash commands against the active session and orchestrator.

    ``session`` is replaced when a session is loaded; callers read it back
    after each command.
    """

    def __init__(
        self,
        session: ConversationSession,
        orchestrator: AgentOrchestrator,
        store: SessionStore
    ):
        self.logger = logging.getLogger(__name__)
        self.session = session
        self.orchestrator = orchestrator
        self.store = store

    @staticmethod
    def is_command(line: str) -> bool:
        return line.strip().startswith("/")

    async def handle(self, line: str) -> CommandResult:
        """Execute one command line such as ``/model gemini-2.5-pro``."""
        parts = line.strip().split(maxsplit=1)
        command = parts[0].lower() if parts else ""
        args = parts[1].strip() if len(parts) > 1 else ""

        handlers = {
            "/help": self._help,
            "/clear": self._clear,
            "/save": self._save,
            "/load": self._load,
            "/model": self._model,
            "/system": self._system,
            "/history": self._history,
            "/info": self._info,
            "/agent": self._agent,
            "/quit": self._quit,
            "/exit": self._quit,
        }

        handler = handlers.get(command)
        if handler is None:
            return CommandResult(output=f"Unknown command: {command}. Type /help for available commands.")

        try:
            return await handler(args)
        except (SessionBusyError, SessionPersistenceError, ValueError) as e:
            return CommandResult(output=f"Error: {e}")

    def _ensure_idle(self, operation: str) -> None:
        if self.orchestrator.turn_in_progress:
            raise SessionBusyError(f"Cannot {operation} while a turn is in progress")
        self.session.ensure_idle(operation)

    async def _help(self, args: str) -> CommandResult:
        return CommandResult(output=CHAT_HELP)

    async def _quit(self, args: str) -> CommandResult:
        return CommandResult(output="Goodbye!", exit=True)

    async def _clear(self, args: str) -> CommandResult:
        self._ensure_idle("clear the conversation")
        self.session.clear_history()
        return CommandResult(output="Conversation history cleared.")

    async def _save(self, args: str) -> CommandResult:
        self._ensure_idle("save the session")
        path = await self.store.save(self.session, args or None)
        return CommandResult(output=f"Session saved to {path}")

    async def _load(self, args: str) -> CommandResult:
        if not args:
            sessions = self.store.list_sessions()
            if not sessions:
                return CommandResult(output=f"No saved sessions in {self.store.sessions_dir}")
            lines = [f"Saved sessions in {self.store.sessions_dir}:"]
            lines.extend(f"  {entry['name']}" for entry in sessions)
            lines.append("Usage: /load <file>")
            return CommandResult(output="\n".join(lines))

        self._ensure_idle("load a session")
        loaded = await self.store.load(args)
        self.session = loaded

        output = f"Loaded session {loaded.id} ({len(loaded.history)} messages, model {loaded.model})"
        provider = ModelProvider(loaded.provider).value
        if provider != self.orchestrator.adapter.provider_name:
            output += (
                f"\nNote: session was created with {provider}; "
                f"continuing with {self.orchestrator.adapter.provider_name}"
            )
        return CommandResult(output=output)

    async def _model(self, args: str) -> CommandResult:
        if not args:
            return CommandResult(output=f"Current model: {self.session.model}")
        self._ensure_idle("switch model")
        self.session.set_model(args)
        return CommandResult(output=f"Switched to model: {self.session.model}")

    async def _system(self, args: str) -> CommandResult:
        if not args:
            if self.session.system_instruction:
                return CommandResult(output=f"Current system instruction: {self.session.system_instruction}")
            return CommandResult(output="No system instruction set")

        self._ensure_idle("change the system instruction")
        if args.lower() == "clear":
            self.session.set_system_instruction(None)
            return CommandResult(output="System instruction cleared.")
        self.session.set_system_instruction(args)
        return CommandResult(output="System instruction updated.")

    async def _history(self, args: str) -> CommandResult:
        history = self.session.get_history()
        if not history:
            return CommandResult(output="No conversation history")
        lines = [f"Conversation history ({len(history)} messages):"]
        lines.extend(format_message(message) for message in history)
        return CommandResult(output="\n".join(lines))

    async def _info(self, args: str) -> CommandResult:
        summary = self.session.get_session_summary()
        provider_info = self.orchestrator.adapter.get_provider_info()
        lines = [
            "Session Information:",
            f"  ID: {summary['id']}",
            f"  Provider: {provider_info['provider']}",
            f"  Model: {summary['model']}",
            f"  Function calling: {'yes' if provider_info['supports_function_calling'] else 'no'}",
            f"  Agent mode: {'on' if self.orchestrator.agent_enabled else 'off'}",
            f"  Messages: {summary['messages']}",
            f"  Created: {self.session.created_at.strftime('%Y-%m-%d %H:%M:%S UTC')}",
            f"  Updated: {self.session.updated_at.strftime('%Y-%m-%d %H:%M:%S UTC')}",
        ]
        if summary["system_instruction"]:
            lines.append(f"  System instruction: {_preview(summary['system_instruction'])}")
        return CommandResult(output="\n".join(lines))

    # Agent commands

    async def _agent(self, args: str) -> CommandResult:
        parts = args.split(maxsplit=1)
        sub = parts[0].lower() if parts else "help"
        value = parts[1].strip() if len(parts) > 1 else ""

        if sub in ("on", "enable"):
            self._ensure_idle("change agent mode")
            self.orchestrator.set_agent_enabled(True, self.session.id)
            output = "Agent mode enabled. Available tools: " + ", ".join(self.orchestrator.registry.available_tools())
            if not self.orchestrator.adapter.supports_function_calling:
                output += f"\nNote: model {self.session.model} does not report function calling support"
            return CommandResult(output=output)

        if sub in ("off", "disable"):
            self._ensure_idle("change agent mode")
            self.orchestrator.set_agent_enabled(False, self.session.id)
            return CommandResult(output="Agent mode disabled.")

        if sub == "status":
            return CommandResult(output=self._agent_status())

        if sub == "history":
            history = self.orchestrator.get_tool_history()
            if not history:
                return CommandResult(output="No tool execution history.")
            lines = ["Tool execution history:"]
            for i, entry in enumerate(history, start=1):
                status = "ok" if entry.success else "failed"
                lines.append(f"  {i}. {entry.tool_name} [{status}] {_preview(entry.message, 100)}")
            return CommandResult(output="\n".join(lines))

        if sub == "clear":
            self.orchestrator.clear_history()
            return CommandResult(output="Tool execution history cleared.")

        if sub == "tools":
            infos = self.orchestrator.registry.get_all_tool_info()
            return CommandResult(output="\n\n".join(info.format_description() for info in infos))

        if sub == "config":
            return CommandResult(output=self._agent_config())

        if sub == "dry-run":
            if value not in ("on", "off"):
                return CommandResult(output="Usage: /agent dry-run <on|off>")
            self._ensure_idle("change dry-run mode")
            self.orchestrator.set_dry_run(value == "on")
            if value == "on":
                return CommandResult(output="Dry-run mode enabled. No changes will be written.")
            return CommandResult(output="Dry-run mode disabled.")

        if sub in ("allow-path", "forbid-path", "check-path"):
            if not value:
                return CommandResult(output=f"Usage: /agent {sub} <path>")
            if sub == "allow-path":
                self._ensure_idle("change path permissions")
                return CommandResult(output=f"Allowed path: {self.orchestrator.allow_path(value)}")
            if sub == "forbid-path":
                self._ensure_idle("change path permissions")
                return CommandResult(output=f"Forbidden path: {self.orchestrator.forbid_path(value)}")
            decision = self.orchestrator.check_path(value)
            verdict = "allowed" if decision["allowed"] else "denied"
            return CommandResult(output=f"{decision['resolved_path']}: {verdict}\n  {decision['reason']}")

        if sub == "help":
            return CommandResult(output=AGENT_HELP)

        return CommandResult(output=f"Unknown agent command: {sub}. Type /agent help for available commands.")

    def _agent_status(self) -> str:
        status = self.orchestrator.status()
        lines = [
            "Agent Status:",
            f"  Enabled: {'yes' if status.enabled else 'no'}",
            f"  Tools executed: {status.tools_executed}",
            f"  Working directory: {status.working_directory}",
            f"  Dry run mode: {'yes' if status.dry_run_mode else 'no'}",
            f"  Max tool iterations: {status.max_tool_iterations}",
            f"  Available tools: {', '.join(status.available_tools)}",
        ]
        lines.extend(self._path_lines("Allowed paths", status.allowed_paths))
        lines.extend(self._path_lines("Forbidden paths", status.forbidden_paths))
        return "\n".join(lines)

    def _agent_config(self) -> str:
        registry = self.orchestrator.registry
        lines = [
            "Agent Configuration:",
            f"  Max tool iterations: {self.orchestrator.max_tool_iterations}",
            f"  Read cap: {registry.read_cap_bytes} bytes",
            f"  Max file size: {registry.max_file_size} bytes",
            f"  Auto backup: {'yes' if registry.auto_backup else 'no'}",
            f"  Dry run: {'yes' if registry.dry_run else 'no'}",
            f"  Allowed extensions: {', '.join(registry.allowed_extensions) or 'any'}",
        ]
        return "\n".join(lines)

    @staticmethod
    def _path_lines(title: str, paths: List[str]) -> List[str]:
        if not paths:
            return [f"  {title}: none"]
        return [f"  {title}:"] + [f"    {path}" for path in paths]
