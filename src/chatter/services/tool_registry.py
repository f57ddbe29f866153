"""Tool registry executing filesystem tools inside the permission guard."""

import fnmatch
import json
import logging
import os
import re
import shutil
import time
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from pydantic import BaseModel, Field

from chatter.lib.logging_config import get_audit_logger
from chatter.models.tool_call import ToolCall, ToolResult
from chatter.services.permission_guard import PermissionGuard


logger = logging.getLogger(__name__)

DEFAULT_READ_CAP_BYTES = 256 * 1024
DEFAULT_MAX_FILE_SIZE = 10 * 1024 * 1024
DEFAULT_MAX_SEARCH_RESULTS = 100
MAX_LIST_ENTRIES = 1000
MAX_SNIPPET_LENGTH = 200

TEXT_EXTENSIONS = {
    "txt", "md", "rs", "toml", "json", "yaml", "yml", "js", "ts", "py",
    "html", "css", "xml", "csv", "log", "cfg", "conf", "ini", "sh",
    "bash", "zsh", "fish", "ps1", "bat", "cmd", "c", "cpp", "h", "hpp",
    "java", "kt", "swift", "go", "rb", "php", "pl", "r", "sql", "dockerfile"
}

MUTATING_TOOLS = {"write_file", "update_file"}
FILE_LEVEL_TOOLS = {"read_file", "write_file", "update_file", "file_info"}


class ToolArgumentError(Exception):
    """Raised when tool arguments are missing, malformed or of the wrong type."""
    pass


class ToolPermissionError(Exception):
    """Raised when a tool targets a path the permission guard denies."""
    pass


class ToolInfo(BaseModel):
    """Name, description and JSON schema of a tool."""

    name: str = Field(..., description="Tool name")
    description: str = Field(..., description="What the tool does")
    parameters: Dict[str, Any] = Field(default_factory=dict, description="JSON schema of the arguments")

    def format_description(self) -> str:
        """Human-readable description including parameters."""
        desc = f"**{self.name}**: {self.description}"
        properties = self.parameters.get("properties") or {}
        if properties:
            desc += "\n\nParameters:"
            required = set(self.parameters.get("required", []))
            for param_name, param_info in properties.items():
                param_type = param_info.get("type", "unknown")
                param_desc = param_info.get("description", "No description")
                marker = " *required*" if param_name in required else ""
                desc += f"\n  - {param_name} ({param_type}){marker}: {param_desc}"
        return desc

    def to_declaration(self) -> Dict[str, Any]:
        """Provider-neutral function declaration."""
        return {
            "name": self.name,
            "description": self.description,
            "parameters": self.parameters
        }


TOOL_DEFINITIONS: List[ToolInfo] = [
    ToolInfo(
        name="read_file",
        description="Read the contents of a text file",
        parameters={
            "type": "object",
            "properties": {
                "path": {"type": "string", "description": "Path to the file to read"}
            },
            "required": ["path"]
        }
    ),
    ToolInfo(
        name="write_file",
        description="Write content to a file (creates or overwrites)",
        parameters={
            "type": "object",
            "properties": {
                "path": {"type": "string", "description": "Path to the file to write"},
                "content": {"type": "string", "description": "Content to write to the file"},
                "create_dirs": {
                    "type": "boolean",
                    "description": "Create missing parent directories (default: false)"
                }
            },
            "required": ["path", "content"]
        }
    ),
    ToolInfo(
        name="update_file",
        description="Update a file by replacing one exact occurrence of text, or by appending, prepending or inserting content",
        parameters={
            "type": "object",
            "properties": {
                "path": {"type": "string", "description": "Path to the file to update"},
                "operation": {
                    "type": "string",
                    "enum": ["replace", "append", "prepend", "insert_at_line"],
                    "description": "Type of update operation (default: replace)"
                },
                "search": {
                    "type": "string",
                    "description": "Exact text to replace; must occur exactly once unless replace_all is set"
                },
                "replacement": {
                    "type": "string",
                    "description": "Replacement text, or content to add for the other operations"
                },
                "replace_all": {
                    "type": "boolean",
                    "description": "Replace every occurrence of search (default: false)"
                },
                "line_number": {
                    "type": "integer",
                    "description": "Line number for insert_at_line operation (1-based)"
                }
            },
            "required": ["path"]
        }
    ),
    ToolInfo(
        name="search_files",
        description="Search for text patterns across files in a directory",
        parameters={
            "type": "object",
            "properties": {
                "pattern": {"type": "string", "description": "Text pattern or regex to search for"},
                "root": {"type": "string", "description": "Directory to search in (default: current directory)"},
                "file_pattern": {"type": "string", "description": "File name pattern to filter (e.g., '*.py', '*.txt')"},
                "case_sensitive": {
                    "type": "boolean",
                    "description": "Whether the search should be case sensitive (default: false)"
                },
                "max_results": {
                    "type": "integer",
                    "description": "Maximum number of results to return (default: 100)"
                }
            },
            "required": ["pattern"]
        }
    ),
    ToolInfo(
        name="list_directory",
        description="List files and directories in a given path",
        parameters={
            "type": "object",
            "properties": {
                "path": {"type": "string", "description": "Directory path to list (default: current directory)"},
                "recursive": {"type": "boolean", "description": "Whether to list recursively (default: false)"},
                "show_hidden": {"type": "boolean", "description": "Whether to show hidden files (default: false)"}
            }
        }
    ),
    ToolInfo(
        name="file_info",
        description="Get detailed information about a file or directory",
        parameters={
            "type": "object",
            "properties": {
                "path": {"type": "string", "description": "Path to the file or directory"}
            },
            "required": ["path"]
        }
    ),
]


_JSON_TYPES = {
    "string": (str,),
    "integer": (int,),
    "number": (int, float),
    "boolean": (bool,),
    "object": (dict,),
    "array": (list,),
}


def _json_type_name(value: Any) -> str:
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "boolean"
    if isinstance(value, int):
        return "integer"
    if isinstance(value, float):
        return "number"
    if isinstance(value, str):
        return "string"
    if isinstance(value, list):
        return "array"
    if isinstance(value, dict):
        return "object"
    return type(value).__name__


def _matches_json_type(value: Any, expected: Optional[str]) -> bool:
    if expected is None or expected not in _JSON_TYPES:
        return True
    if isinstance(value, bool) and expected != "boolean":
        return False
    return isinstance(value, _JSON_TYPES[expected])


def extract_argument_map(value: Any) -> Dict[str, Any]:
    """Normalize provider-supplied tool arguments into a mapping.

    Objects pass through, null becomes an empty mapping and strings are
    parsed as JSON objects. Anything else raises ToolArgumentError.
    """
    if value is None:
        return {}
    if isinstance(value, dict):
        return dict(value)
    if isinstance(value, str):
        if not value.strip():
            return {}
        try:
            parsed = json.loads(value)
        except json.JSONDecodeError as e:
            raise ToolArgumentError(f"Tool arguments are not valid JSON: {e}")
        if parsed is None:
            return {}
        if not isinstance(parsed, dict):
            raise ToolArgumentError(f"Tool arguments must be a JSON object, got {_json_type_name(parsed)}")
        return parsed
    raise ToolArgumentError(f"Tool arguments must be an object, got {_json_type_name(value)}")


def is_text_file(path: Path) -> bool:
    """Whether the file looks like text based on its extension."""
    name = path.name.lower()
    if name in ("dockerfile", "makefile"):
        return True
    return path.suffix.lower().lstrip('.') in TEXT_EXTENSIONS


def _epoch(timestamp: Optional[float]) -> Optional[int]:
    return int(timestamp) if timestamp is not None else None


class ToolRegistry:
    """Maps tool names to handlers and runs them under the permission guard.

    ``execute`` never raises: every failure is reported as a ToolResult with
    ``success=False``.
    """

    def __init__(
        self,
        guard: PermissionGuard,
        read_cap_bytes: int = DEFAULT_READ_CAP_BYTES,
        max_file_size: int = DEFAULT_MAX_FILE_SIZE,
        allowed_extensions: Optional[List[str]] = None,
        auto_backup: bool = True,
        dry_run: bool = False
    ):
        self.logger = logging.getLogger(__name__)
        self.audit_logger = get_audit_logger()
        self.guard = guard
        self.read_cap_bytes = read_cap_bytes
        self.max_file_size = max_file_size
        self.allowed_extensions = [ext.lower().lstrip('.') for ext in (allowed_extensions or [])]
        self.auto_backup = auto_backup
        self.dry_run = dry_run

        self._tools: Dict[str, ToolInfo] = {info.name: info for info in TOOL_DEFINITIONS}
        self._handlers: Dict[str, Callable[[ToolCall, Dict[str, Any]], ToolResult]] = {
            "read_file": self._read_file,
            "write_file": self._write_file,
            "update_file": self._update_file,
            "search_files": self._search_files,
            "list_directory": self._list_directory,
            "file_info": self._file_info,
        }

    @property
    def working_directory(self) -> Path:
        return self.guard.base_directory

    def available_tools(self) -> List[str]:
        """Names of registered tools, sorted."""
        return sorted(self._tools)

    def get_tool_info(self, name: str) -> Optional[ToolInfo]:
        return self._tools.get(name)

    def get_all_tool_info(self) -> List[ToolInfo]:
        return [self._tools[name] for name in self.available_tools()]

    def get_tool_schemas(self) -> List[Dict[str, Any]]:
        """Function declarations handed to providers."""
        return [info.to_declaration() for info in self.get_all_tool_info()]

    def validate_tool_call(self, call: ToolCall) -> None:
        """Check required parameters and JSON types against the tool schema.

        Raises:
            ToolArgumentError: If the call does not match the schema
        """
        info = self._tools.get(call.name)
        if info is None:
            raise ToolArgumentError(
                f"Unknown tool: {call.name}. Available tools: {', '.join(self.available_tools())}"
            )

        schema = info.parameters
        properties = schema.get("properties", {})
        for required in schema.get("required", []):
            if call.arguments.get(required) is None:
                raise ToolArgumentError(f"Missing required parameter '{required}' for tool {call.name}")

        for param_name, value in call.arguments.items():
            param_schema = properties.get(param_name)
            if param_schema is None or value is None:
                continue
            expected = param_schema.get("type")
            if not _matches_json_type(value, expected):
                raise ToolArgumentError(
                    f"Parameter '{param_name}' has type '{_json_type_name(value)}' but expected '{expected}'"
                )
            allowed_values = param_schema.get("enum")
            if allowed_values and value not in allowed_values:
                raise ToolArgumentError(
                    f"Parameter '{param_name}' must be one of: {', '.join(allowed_values)}"
                )

    def execute(self, call: ToolCall, session_id: Optional[str] = None) -> ToolResult:
        """Execute a tool call synchronously.

        Args:
            call: Tool call requested by the model
            session_id: Optional session identifier for the audit trail

        Returns:
            ToolResult describing success or the reason for failure
        """
        start = time.monotonic()
        try:
            if call.argument_error:
                raise ToolArgumentError(call.argument_error)
            self.validate_tool_call(call)
            handler = self._handlers[call.name]
            result = handler(call, call.arguments)
        except ToolArgumentError as e:
            result = ToolResult.failure(call, f"Invalid arguments for {call.name}: {e}")
        except ToolPermissionError as e:
            result = ToolResult.failure(call, str(e))
        except OSError as e:
            result = ToolResult.failure(call, f"I/O error in {call.name}: {e}")
        except Exception as e:
            self.logger.exception(f"Unexpected error executing tool {call.name}")
            result = ToolResult.failure(call, f"Unexpected error in {call.name}: {e}")

        elapsed_ms = int((time.monotonic() - start) * 1000)
        self.audit_logger.log_tool_event(
            tool_name=call.name,
            call_id=call.call_id,
            result="success" if result.success else "failure",
            execution_time_ms=elapsed_ms,
            session_id=session_id,
            metadata={"error": result.error} if result.error else {}
        )
        if result.success:
            self.logger.info(f"Tool {call.name} succeeded in {elapsed_ms}ms: {result.message}")
        else:
            self.logger.warning(f"Tool {call.name} failed: {result.error}")
        return result

    # Shared checks

    def _checked_path(self, call: ToolCall, raw_path: Any, access_type: str) -> Path:
        if not isinstance(raw_path, str) or not raw_path.strip():
            raise ToolArgumentError("Path must be a non-empty string")
        decision = self.guard.check(raw_path, access_type=access_type)
        if not decision["allowed"]:
            raise ToolPermissionError(decision["reason"])
        path = Path(decision["resolved_path"])
        if call.name in FILE_LEVEL_TOOLS and not path.is_dir():
            self._check_extension(path)
        return path

    def _check_extension(self, path: Path) -> None:
        # Names without a suffix (Makefile, .bashrc) are not restricted
        if not self.allowed_extensions or not path.suffix:
            return
        extension = path.suffix.lower().lstrip('.')
        if extension not in self.allowed_extensions:
            raise ToolPermissionError(
                f"File extension '{extension}' is not allowed. "
                f"Allowed extensions: {', '.join(self.allowed_extensions)}"
            )

    def _check_content_size(self, content: str) -> None:
        size = len(content.encode("utf-8"))
        if size > self.max_file_size:
            raise ToolArgumentError(
                f"Content size ({size} bytes) exceeds maximum allowed size ({self.max_file_size} bytes)"
            )

    def _dry_run_result(self, call: ToolCall, path: Path) -> ToolResult:
        return ToolResult.ok(
            call,
            f"[DRY RUN] Would execute {call.name} on {path}",
            {
                "dry_run": True,
                "tool": call.name,
                "path": str(path),
                "parameters": {k: v for k, v in call.arguments.items() if k != "content"}
            }
        )

    def _backup(self, path: Path) -> Optional[str]:
        """Copy an existing file to `<name>.backup_<timestamp>` before it is modified."""
        if not self.auto_backup or not path.is_file():
            return None
        timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
        backup_path = path.with_name(f"{path.name}.backup_{timestamp}")
        counter = 1
        while backup_path.exists():
            backup_path = path.with_name(f"{path.name}.backup_{timestamp}_{counter}")
            counter += 1
        shutil.copy2(path, backup_path)
        self.logger.info(f"Created backup {backup_path}")
        return str(backup_path)

    # Handlers

    def _read_file(self, call: ToolCall, args: Dict[str, Any]) -> ToolResult:
        path = self._checked_path(call, args["path"], "read")
        if not path.exists():
            return ToolResult.failure(call, f"File does not exist: {path}")
        if not path.is_file():
            return ToolResult.failure(call, f"Path is not a file: {path}")

        size = path.stat().st_size
        with open(path, "rb") as f:
            raw = f.read(self.read_cap_bytes)
        content = raw.decode("utf-8", errors="replace")
        truncated = size > self.read_cap_bytes

        data = {
            "path": str(path),
            "size": size,
            "bytes_read": len(raw),
            "content": content,
            "truncated": truncated
        }
        if truncated:
            notice = (
                f"File is {size} bytes; only the first {self.read_cap_bytes} bytes are included. "
                "Use search_files to locate specific content."
            )
            data["notice"] = notice
            return ToolResult.ok(call, f"Read {len(raw)} of {size} bytes from {path} (truncated)", data)

        return ToolResult.ok(call, f"Successfully read {size} bytes from {path}", data)

    def _write_file(self, call: ToolCall, args: Dict[str, Any]) -> ToolResult:
        path = self._checked_path(call, args["path"], "write")
        content = args["content"]
        create_dirs = bool(args.get("create_dirs", False))
        self._check_content_size(content)

        if path.is_dir():
            return ToolResult.failure(call, f"Path is a directory: {path}")
        if not path.parent.exists() and not create_dirs:
            return ToolResult.failure(
                call,
                f"Parent directory does not exist: {path.parent}. Set create_dirs to true to create it."
            )

        if self.dry_run:
            return self._dry_run_result(call, path)

        existed = path.exists()
        backup = self._backup(path) if existed else None
        if create_dirs:
            path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "w", encoding="utf-8", newline="") as f:
            f.write(content)

        size = len(content.encode("utf-8"))
        data = {"path": str(path), "size": size, "created": not existed}
        if backup:
            data["backup_created"] = backup
        return ToolResult.ok(call, f"Successfully wrote {size} bytes to {path}", data, [str(path)])

    def _update_file(self, call: ToolCall, args: Dict[str, Any]) -> ToolResult:
        path = self._checked_path(call, args["path"], "write")
        operation = args.get("operation") or "replace"

        if not path.exists():
            return ToolResult.failure(call, f"File does not exist: {path}")
        if not path.is_file():
            return ToolResult.failure(call, f"Path is not a file: {path}")

        with open(path, "r", encoding="utf-8", newline="") as f:
            original = f.read()

        replacement = args.get("replacement")
        replacements = 0

        if operation == "replace":
            search = args.get("search")
            if not search:
                raise ToolArgumentError("'search' is required and must be non-empty for the replace operation")
            replacement = replacement if replacement is not None else ""
            occurrences = original.count(search)
            if occurrences == 0:
                return ToolResult.failure(call, f"Search text not found in {path}")
            if occurrences > 1 and not args.get("replace_all", False):
                return ToolResult.failure(
                    call,
                    f"Search text is ambiguous: found {occurrences} matches in {path}. "
                    "Provide a longer, unique search string or set replace_all to true."
                )
            updated = original.replace(search, replacement)
            replacements = occurrences
        elif operation in ("append", "prepend"):
            if replacement is None:
                raise ToolArgumentError(f"'replacement' is required for the {operation} operation")
            if operation == "append":
                updated = f"{original}\n{replacement}" if original else replacement
            else:
                updated = f"{replacement}\n{original}" if original else replacement
        elif operation == "insert_at_line":
            line_number = args.get("line_number")
            if replacement is None or line_number is None:
                raise ToolArgumentError("'replacement' and 'line_number' are required for insert_at_line")
            lines = original.splitlines()
            if line_number < 1 or line_number > len(lines) + 1:
                return ToolResult.failure(call, f"Line number {line_number} is out of range (1-{len(lines) + 1})")
            lines.insert(line_number - 1, replacement)
            updated = "\n".join(lines)
            if original.endswith("\n"):
                updated += "\n"
        else:
            raise ToolArgumentError(f"Unknown operation: {operation}")

        self._check_content_size(updated)

        if self.dry_run:
            return self._dry_run_result(call, path)

        backup = self._backup(path)
        with open(path, "w", encoding="utf-8", newline="") as f:
            f.write(updated)

        data = {
            "path": str(path),
            "operation": operation,
            "replacements": replacements,
            "original_size": len(original.encode("utf-8")),
            "new_size": len(updated.encode("utf-8"))
        }
        if backup:
            data["backup_created"] = backup
        return ToolResult.ok(call, f"Successfully updated {path} using {operation} operation", data, [str(path)])

    def _search_files(self, call: ToolCall, args: Dict[str, Any]) -> ToolResult:
        pattern = args["pattern"]
        raw_root = args.get("root") or args.get("directory") or "."
        root = self._checked_path(call, raw_root, "read")
        file_pattern = args.get("file_pattern")
        case_sensitive = bool(args.get("case_sensitive", False))
        max_results = args.get("max_results") or DEFAULT_MAX_SEARCH_RESULTS
        if max_results < 1:
            raise ToolArgumentError("'max_results' must be at least 1")

        if not root.exists():
            return ToolResult.failure(call, f"Directory does not exist: {root}")
        if not root.is_dir():
            return ToolResult.failure(call, f"Path is not a directory: {root}")

        flags = 0 if case_sensitive else re.IGNORECASE
        try:
            regex = re.compile(pattern, flags)
        except re.error:
            # Invalid regex: search for the literal text
            regex = re.compile(re.escape(pattern), flags)

        results: List[Dict[str, Any]] = []
        files_searched = 0
        truncated = False

        for dirpath, dirnames, filenames in os.walk(root):
            current = Path(dirpath)
            dirnames[:] = sorted(d for d in dirnames if self.guard.is_allowed(current / d))

            for name in sorted(filenames):
                file_path = current / name
                if file_pattern and not fnmatch.fnmatch(name, file_pattern):
                    continue
                if not is_text_file(file_path) or not self.guard.is_allowed(file_path):
                    continue

                files_searched += 1
                try:
                    with open(file_path, "r", encoding="utf-8", errors="replace") as f:
                        for line_number, line in enumerate(f, start=1):
                            if regex.search(line):
                                results.append({
                                    "file": str(file_path),
                                    "line": line_number,
                                    "content": line.rstrip("\r\n")[:MAX_SNIPPET_LENGTH]
                                })
                                if len(results) >= max_results:
                                    truncated = True
                                    break
                except OSError as e:
                    self.logger.debug(f"Skipping unreadable file {file_path}: {e}")
                    continue

                if truncated:
                    break
            if truncated:
                break

        data = {
            "pattern": pattern,
            "root": str(root),
            "files_searched": files_searched,
            "matches_found": len(results),
            "truncated": truncated,
            "results": results
        }
        return ToolResult.ok(call, f"Found {len(results)} matches in {files_searched} files", data)

    def _list_directory(self, call: ToolCall, args: Dict[str, Any]) -> ToolResult:
        path = self._checked_path(call, args.get("path") or ".", "read")
        recursive = bool(args.get("recursive", False))
        show_hidden = bool(args.get("show_hidden", False))

        if not path.exists():
            return ToolResult.failure(call, f"Path does not exist: {path}")
        if not path.is_dir():
            return ToolResult.failure(call, f"Path is not a directory: {path}")

        entries: List[Dict[str, Any]] = []
        truncated = False

        def add_entry(entry: Path) -> bool:
            try:
                stat = entry.stat()
                size, modified = stat.st_size, _epoch(stat.st_mtime)
            except OSError:
                size, modified = 0, None
            entries.append({
                "name": entry.name,
                "path": str(entry.relative_to(path)),
                "type": "directory" if entry.is_dir() else "file",
                "size": size,
                "modified": modified
            })
            return len(entries) < MAX_LIST_ENTRIES

        if recursive:
            for dirpath, dirnames, filenames in os.walk(path):
                current = Path(dirpath)
                dirnames[:] = sorted(
                    d for d in dirnames
                    if (show_hidden or not d.startswith('.')) and self.guard.is_allowed(current / d)
                )
                names = list(dirnames) + sorted(
                    f for f in filenames
                    if (show_hidden or not f.startswith('.')) and self.guard.is_allowed(current / f)
                )
                for name in names:
                    if not add_entry(current / name):
                        truncated = True
                        break
                if truncated:
                    break
        else:
            for entry in sorted(path.iterdir(), key=lambda p: p.name):
                if not show_hidden and entry.name.startswith('.'):
                    continue
                if not self.guard.is_allowed(entry):
                    continue
                if not add_entry(entry):
                    truncated = True
                    break

        data = {
            "path": str(path),
            "recursive": recursive,
            "entry_count": len(entries),
            "truncated": truncated,
            "entries": entries
        }
        return ToolResult.ok(call, f"Listed {len(entries)} entries in {path}", data)

    def _file_info(self, call: ToolCall, args: Dict[str, Any]) -> ToolResult:
        path = self._checked_path(call, args["path"], "read")
        if not path.exists():
            return ToolResult.failure(call, f"Path does not exist: {path}")

        stat = path.stat()
        if path.is_dir():
            file_type = "directory"
        elif path.is_file():
            file_type = "file"
        else:
            file_type = "other"

        data: Dict[str, Any] = {
            "path": str(path),
            "name": path.name,
            "type": file_type,
            "size": stat.st_size,
            "readonly": not os.access(path, os.W_OK),
            "created": _epoch(getattr(stat, "st_birthtime", stat.st_ctime)),
            "modified": _epoch(stat.st_mtime),
            "accessed": _epoch(stat.st_atime)
        }

        if file_type == "file":
            if path.suffix:
                data["extension"] = path.suffix.lstrip('.')
            text = is_text_file(path)
            data["is_text"] = text
            if text and stat.st_size <= self.max_file_size:
                with open(path, "r", encoding="utf-8", errors="replace") as f:
                    data["line_count"] = sum(1 for _ in f)

        return ToolResult.ok(call, f"Retrieved information for {path}", data)
