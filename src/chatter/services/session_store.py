"""JSON persistence for conversation sessions."""

import json
import logging
import os
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import aiofiles
from pydantic import ValidationError

from chatter.lib.logging_config import get_audit_logger
from chatter.models.conversation_session import ConversationSession


logger = logging.getLogger(__name__)

FORMAT_VERSION = 1

_DOCUMENT_FIELDS = (
    "id", "provider", "model", "system_instruction", "history", "created_at", "updated_at"
)

# Keys without which a document cannot describe the conversation it came from
_REQUIRED_FIELDS = ("id", "model", "history")


class SessionPersistenceError(Exception):
    """Raised when a session document cannot be written or read back."""
    pass


class SessionStore:
    """Saves and loads sessions as self-describing JSON documents.

    Loading either returns a complete session or raises; a partially read
    document is never handed out.
    """

    def __init__(self, sessions_dir: Union[str, Path] = "~/.chatter/sessions"):
        self.logger = logging.getLogger(__name__)
        self.audit_logger = get_audit_logger()
        self.sessions_dir = Path(sessions_dir).expanduser()

    def default_path(self, session: ConversationSession) -> Path:
        """Auto-save location of a session."""
        return self.sessions_dir / f"session_{session.id}.json"

    def resolve_path(self, path: Union[str, Path]) -> Path:
        """Bare file names live in the sessions directory; other paths are used as given."""
        candidate = Path(path).expanduser()
        if not candidate.is_absolute() and candidate.parent == Path("."):
            candidate = self.sessions_dir / candidate
        if not candidate.suffix:
            candidate = candidate.with_suffix(".json")
        return candidate

    @staticmethod
    def serialize(session: ConversationSession) -> str:
        """Serialize a session to its JSON document."""
        data = session.model_dump(mode="json")
        document: Dict[str, Any] = {"format_version": FORMAT_VERSION}
        for field in _DOCUMENT_FIELDS:
            document[field] = data[field]
        return json.dumps(document, indent=2, ensure_ascii=False)

    @staticmethod
    def deserialize(text: str) -> ConversationSession:
        """Parse a session document.

        Raises:
            SessionPersistenceError: If the document is malformed, fails
                validation or was written by a newer format version
        """
        try:
            document = json.loads(text)
        except json.JSONDecodeError as e:
            raise SessionPersistenceError(f"Session file is not valid JSON: {e}")

        if not isinstance(document, dict):
            raise SessionPersistenceError("Session file must contain a JSON object")

        version = document.get("format_version", 1)
        if isinstance(version, bool) or not isinstance(version, int):
            raise SessionPersistenceError(f"Invalid format_version: {version!r}")
        if version > FORMAT_VERSION:
            raise SessionPersistenceError(
                f"Session file format version {version} is newer than supported version {FORMAT_VERSION}"
            )

        missing = [key for key in _REQUIRED_FIELDS if key not in document]
        if missing:
            raise SessionPersistenceError(f"Session file is missing required fields: {', '.join(missing)}")

        fields = {key: document[key] for key in _DOCUMENT_FIELDS if key in document}
        try:
            return ConversationSession(**fields)
        except ValidationError as e:
            raise SessionPersistenceError(f"Session file failed validation: {e}")

    async def save(self, session: ConversationSession, path: Optional[Union[str, Path]] = None) -> Path:
        """Write a session to disk.

        Args:
            session: Session to save; must not have a turn in progress
            path: Target file, the auto-save location by default

        Returns:
            Path of the written file

        Raises:
            SessionBusyError: If a turn is in progress
            SessionPersistenceError: If the file cannot be written
        """
        session.ensure_idle("save")
        target = self.resolve_path(path) if path else self.default_path(session)
        content = self.serialize(session)
        temp_file = target.with_name(f".{target.name}.tmp")

        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            async with aiofiles.open(temp_file, 'w', encoding='utf-8') as f:
                await f.write(content)
            os.replace(temp_file, target)
        except OSError as e:
            raise SessionPersistenceError(f"Failed to save session to {target}: {e}")

        self.logger.info(f"Saved session {session.id} to {target}")
        self.audit_logger.log_session_event(
            event_type="session_saved",
            session_id=session.id,
            action="save",
            result="success",
            metadata={"path": str(target), "messages": len(session.history)}
        )
        return target

    async def load(self, path: Union[str, Path]) -> ConversationSession:
        """Read a session document from disk.

        Raises:
            SessionPersistenceError: If the file is missing, unreadable or invalid
        """
        source = self.resolve_path(path)
        if not source.exists():
            raise SessionPersistenceError(f"Session file not found: {source}")

        try:
            async with aiofiles.open(source, 'r', encoding='utf-8') as f:
                content = await f.read()
        except (OSError, UnicodeDecodeError) as e:
            raise SessionPersistenceError(f"Failed to read session file {source}: {e}")

        session = self.deserialize(content)
        self.logger.info(f"Loaded session {session.id} from {source}")
        self.audit_logger.log_session_event(
            event_type="session_loaded",
            session_id=session.id,
            action="load",
            result="success",
            metadata={"path": str(source), "messages": len(session.history)}
        )
        return session

    def list_sessions(self) -> List[Dict[str, Any]]:
        """Session files in the sessions directory, newest first."""
        if not self.sessions_dir.exists():
            return []

        sessions = []
        for session_file in self.sessions_dir.glob("*.json"):
            try:
                stat = session_file.stat()
            except OSError:
                continue
            sessions.append({"name": session_file.name, "path": str(session_file), "modified": stat.st_mtime})

        sessions.sort(key=lambda x: x["modified"], reverse=True)
        return sessions
