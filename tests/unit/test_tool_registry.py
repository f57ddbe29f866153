"""
Unit tests for the tool registry.

Exercises every filesystem tool against a temporary workspace together
with argument validation, permission enforcement, dry-run and backups.
"""

import json

import pytest

from chatter.models.tool_call import ToolCall
from chatter.services.permission_guard import PermissionGuard
from chatter.services.tool_registry import (
    ToolArgumentError,
    ToolRegistry,
    extract_argument_map,
    is_text_file,
)


@pytest.fixture
def workspace(tmp_path):
    """Workspace with a few source files."""
    root = tmp_path / "workspace"
    (root / "src").mkdir(parents=True)
    (root / "secret").mkdir()
    (root / "src" / "main.py").write_text("def main():\n    # TODO: implement\n    pass\n")
    (root / "src" / "util.py").write_text("VALUE = 1\n")
    (root / "notes.md").write_text("todo list\nnothing here\n")
    (root / "config.json").write_text('{"debug": true}')
    (root / "secret" / "keys.txt").write_text("TODO rotate keys\n")
    (root / ".hidden").write_text("hidden")
    return root


@pytest.fixture
def guard(workspace):
    """Guard allowing the workspace except its secret directory."""
    return PermissionGuard(allowed=["."], forbidden=["secret"], base_directory=workspace)


@pytest.fixture
def registry(guard):
    """Registry with backups disabled unless a test enables them."""
    return ToolRegistry(guard, auto_backup=False)


def call(name, **arguments):
    return ToolCall(name=name, arguments=arguments)


class TestExtractArgumentMap:
    """Normalization of provider-supplied arguments."""

    def test_object_passes_through(self):
        assert extract_argument_map({"path": "a.txt"}) == {"path": "a.txt"}

    def test_none_becomes_empty_mapping(self):
        assert extract_argument_map(None) == {}

    def test_json_string_is_parsed(self):
        assert extract_argument_map('{"pattern": "TODO"}') == {"pattern": "TODO"}

    def test_blank_string_is_empty_mapping(self):
        assert extract_argument_map("  ") == {}

    def test_invalid_json_string_raises(self):
        with pytest.raises(ToolArgumentError):
            extract_argument_map("{not json")

    def test_json_array_raises(self):
        with pytest.raises(ToolArgumentError):
            extract_argument_map("[1, 2]")

    def test_other_types_raise(self):
        with pytest.raises(ToolArgumentError):
            extract_argument_map(42)


class TestRegistryMetadata:
    """Tool listing and schemas."""

    def test_available_tools(self, registry):
        assert registry.available_tools() == [
            "file_info", "list_directory", "read_file", "search_files", "update_file", "write_file"
        ]

    def test_schemas_are_function_declarations(self, registry):
        schemas = registry.get_tool_schemas()

        assert {schema["name"] for schema in schemas} == set(registry.available_tools())
        for schema in schemas:
            assert schema["parameters"]["type"] == "object"
            assert schema["description"]

    def test_format_description_marks_required(self, registry):
        text = registry.get_tool_info("read_file").format_description()

        assert text.startswith("**read_file**:")
        assert "path (string) *required*" in text

    def test_is_text_file(self, workspace):
        assert is_text_file(workspace / "src" / "main.py") is True
        assert is_text_file(workspace / "image.png") is False


class TestValidation:
    """Schema validation happens before any handler runs."""

    def test_unknown_tool_fails(self, registry):
        result = registry.execute(call("delete_everything"))

        assert result.success is False
        assert "Unknown tool" in result.error

    def test_missing_required_parameter(self, registry):
        result = registry.execute(call("read_file"))

        assert result.success is False
        assert "Missing required parameter 'path'" in result.error

    def test_wrong_type(self, registry):
        result = registry.execute(call("read_file", path=123))

        assert result.success is False
        assert "expected 'string'" in result.error

    def test_boolean_is_not_an_integer(self, registry):
        result = registry.execute(call("search_files", pattern="x", max_results=True))

        assert result.success is False
        assert "expected 'integer'" in result.error

    def test_enum_is_checked(self, registry):
        result = registry.execute(call("update_file", path="notes.md", operation="truncate"))

        assert result.success is False
        assert "must be one of" in result.error

    def test_argument_error_from_provider(self, registry):
        bad = ToolCall(name="read_file", argument_error="Tool arguments are not valid JSON")

        result = registry.execute(bad)

        assert result.success is False
        assert "not valid JSON" in result.error

    def test_result_carries_call_id(self, registry):
        request = call("read_file", path="notes.md")

        result = registry.execute(request)

        assert result.call_id == request.call_id
        assert result.tool_name == "read_file"


class TestPermissions:
    """Every path argument goes through the guard."""

    def test_absolute_path_outside_workspace_is_denied(self, registry):
        result = registry.execute(call("read_file", path="/etc/passwd"))

        assert result.success is False
        assert "Permission denied" in result.error

    def test_traversal_inside_workspace_is_allowed(self, registry):
        result = registry.execute(call("read_file", path="secret/../config.json"))

        assert result.success is True
        assert result.data["content"] == '{"debug": true}'

    def test_forbidden_directory_is_denied(self, registry):
        result = registry.execute(call("read_file", path="secret/keys.txt"))

        assert result.success is False
        assert "forbidden" in result.error

    def test_write_outside_workspace_is_denied(self, registry, tmp_path):
        target = tmp_path / "escape.txt"

        result = registry.execute(call("write_file", path=str(target), content="x"))

        assert result.success is False
        assert not target.exists()

    def test_extension_allow_list(self, guard):
        registry = ToolRegistry(guard, allowed_extensions=["md"], auto_backup=False)

        result = registry.execute(call("read_file", path="config.json"))

        assert result.success is False
        assert "extension 'json' is not allowed" in result.error

    def test_files_without_suffix_skip_extension_list(self, guard, workspace):
        (workspace / "Makefile").write_text("all:\n")
        registry = ToolRegistry(guard, allowed_extensions=["md"], auto_backup=False)

        assert registry.execute(call("read_file", path="Makefile")).success is True
        assert registry.execute(call("read_file", path=".hidden")).success is True


class TestReadFile:

    def test_reads_content(self, registry, workspace):
        result = registry.execute(call("read_file", path="src/util.py"))

        assert result.success is True
        assert result.data["content"] == "VALUE = 1\n"
        assert result.data["truncated"] is False
        payload = json.loads(result.output)
        assert payload["tool"] == "read_file"
        assert payload["data"]["size"] == 10

    def test_truncates_large_file(self, guard, workspace):
        (workspace / "big.txt").write_text("a" * 5000)
        registry = ToolRegistry(guard, read_cap_bytes=1024, auto_backup=False)

        result = registry.execute(call("read_file", path="big.txt"))

        assert result.success is True
        assert result.data["truncated"] is True
        assert result.data["bytes_read"] == 1024
        assert len(result.data["content"]) == 1024
        assert "5000 bytes" in result.data["notice"]

    def test_missing_file(self, registry):
        result = registry.execute(call("read_file", path="missing.txt"))

        assert result.success is False
        assert "does not exist" in result.error

    def test_directory_is_not_a_file(self, registry):
        result = registry.execute(call("read_file", path="src"))

        assert result.success is False
        assert "not a file" in result.error


class TestWriteFile:

    def test_creates_file(self, registry, workspace):
        result = registry.execute(call("write_file", path="new.txt", content="hello"))

        assert result.success is True
        assert (workspace / "new.txt").read_text() == "hello"
        assert result.data["created"] is True
        assert result.modified_files == [str((workspace / "new.txt").resolve())]

    def test_missing_parent_requires_create_dirs(self, registry, workspace):
        result = registry.execute(call("write_file", path="deep/dir/file.txt", content="x"))

        assert result.success is False
        assert "Parent directory does not exist" in result.error

    def test_create_dirs(self, registry, workspace):
        result = registry.execute(call("write_file", path="deep/dir/file.txt", content="x", create_dirs=True))

        assert result.success is True
        assert (workspace / "deep" / "dir" / "file.txt").read_text() == "x"

    def test_size_limit(self, guard):
        registry = ToolRegistry(guard, max_file_size=10, auto_backup=False)

        result = registry.execute(call("write_file", path="big.txt", content="x" * 11))

        assert result.success is False
        assert "exceeds maximum allowed size" in result.error

    def test_backup_before_overwrite(self, guard, workspace):
        registry = ToolRegistry(guard, auto_backup=True)

        result = registry.execute(call("write_file", path="notes.md", content="replaced"))

        assert result.success is True
        backup = result.data["backup_created"]
        assert ".backup_" in backup
        with open(backup) as f:
            assert f.read() == "todo list\nnothing here\n"
        assert (workspace / "notes.md").read_text() == "replaced"

    def test_dry_run_does_not_write(self, guard, workspace):
        registry = ToolRegistry(guard, dry_run=True, auto_backup=False)

        result = registry.execute(call("write_file", path="new.txt", content="hello"))

        assert result.success is True
        assert result.data["dry_run"] is True
        assert result.message.startswith("[DRY RUN]")
        assert not (workspace / "new.txt").exists()


class TestUpdateFile:

    def test_replace_unique_occurrence(self, registry, workspace):
        result = registry.execute(call("update_file", path="src/util.py", search="VALUE = 1", replacement="VALUE = 2"))

        assert result.success is True
        assert result.data["replacements"] == 1
        assert (workspace / "src" / "util.py").read_text() == "VALUE = 2\n"

    def test_search_not_found(self, registry):
        result = registry.execute(call("update_file", path="src/util.py", search="MISSING", replacement="x"))

        assert result.success is False
        assert "not found" in result.error

    def test_ambiguous_search_is_rejected(self, registry, workspace):
        (workspace / "dup.txt").write_text("a\na\n")

        result = registry.execute(call("update_file", path="dup.txt", search="a", replacement="b"))

        assert result.success is False
        assert "ambiguous" in result.error
        assert "2 matches" in result.error
        assert (workspace / "dup.txt").read_text() == "a\na\n"

    def test_replace_all(self, registry, workspace):
        (workspace / "dup.txt").write_text("a\na\n")

        result = registry.execute(
            call("update_file", path="dup.txt", search="a", replacement="b", replace_all=True)
        )

        assert result.success is True
        assert result.data["replacements"] == 2
        assert (workspace / "dup.txt").read_text() == "b\nb\n"

    def test_append(self, registry, workspace):
        registry.execute(call("update_file", path="src/util.py", operation="append", replacement="OTHER = 3"))

        assert (workspace / "src" / "util.py").read_text() == "VALUE = 1\n\nOTHER = 3"

    def test_prepend(self, registry, workspace):
        registry.execute(call("update_file", path="src/util.py", operation="prepend", replacement="# header"))

        assert (workspace / "src" / "util.py").read_text().startswith("# header\nVALUE = 1")

    def test_insert_at_line(self, registry, workspace):
        result = registry.execute(call(
            "update_file", path="src/main.py", operation="insert_at_line", replacement="import os", line_number=1
        ))

        assert result.success is True
        assert (workspace / "src" / "main.py").read_text().splitlines()[0] == "import os"

    def test_insert_at_line_out_of_range(self, registry):
        result = registry.execute(call(
            "update_file", path="src/util.py", operation="insert_at_line", replacement="x", line_number=10
        ))

        assert result.success is False
        assert "out of range" in result.error

    def test_dry_run_leaves_file(self, guard, workspace):
        registry = ToolRegistry(guard, dry_run=True, auto_backup=False)

        result = registry.execute(call("update_file", path="src/util.py", search="VALUE", replacement="OTHER"))

        assert result.success is True
        assert result.data["dry_run"] is True
        assert (workspace / "src" / "util.py").read_text() == "VALUE = 1\n"


class TestSearchFiles:

    def test_finds_matches_case_insensitive(self, registry):
        result = registry.execute(call("search_files", pattern="TODO", root="."))

        assert result.success is True
        files = {match["file"] for match in result.data["results"]}
        assert any(f.endswith("main.py") for f in files)
        assert any(f.endswith("notes.md") for f in files)

    def test_forbidden_directory_is_skipped(self, registry):
        result = registry.execute(call("search_files", pattern="TODO", root="."))

        assert not any("secret" in match["file"] for match in result.data["results"])

    def test_case_sensitive(self, registry):
        result = registry.execute(call("search_files", pattern="TODO", root=".", case_sensitive=True))

        assert [match["line"] for match in result.data["results"]] == [2]

    def test_file_pattern(self, registry):
        result = registry.execute(call("search_files", pattern="todo", file_pattern="*.md"))

        assert result.data["matches_found"] == 1
        assert result.data["results"][0]["file"].endswith("notes.md")

    def test_invalid_regex_falls_back_to_literal(self, registry, workspace):
        (workspace / "brackets.txt").write_text("call foo( now\n")

        result = registry.execute(call("search_files", pattern="foo("))

        assert result.success is True
        assert result.data["matches_found"] == 1

    def test_max_results(self, registry):
        result = registry.execute(call("search_files", pattern=".", max_results=2))

        assert result.data["matches_found"] == 2
        assert result.data["truncated"] is True

    def test_directory_alias(self, registry):
        result = registry.execute(call("search_files", pattern="VALUE", directory="src"))

        assert result.data["matches_found"] == 1

    def test_root_outside_workspace_is_denied(self, registry):
        result = registry.execute(call("search_files", pattern="root", root="/etc"))

        assert result.success is False
        assert "Permission denied" in result.error


class TestListDirectory:

    def test_lists_visible_entries(self, registry):
        result = registry.execute(call("list_directory", path="."))

        names = [entry["name"] for entry in result.data["entries"]]
        assert "src" in names
        assert "notes.md" in names
        assert ".hidden" not in names

    def test_forbidden_entries_are_hidden(self, registry):
        result = registry.execute(call("list_directory", path="."))

        assert "secret" not in [entry["name"] for entry in result.data["entries"]]

    def test_show_hidden(self, registry):
        result = registry.execute(call("list_directory", path=".", show_hidden=True))

        assert ".hidden" in [entry["name"] for entry in result.data["entries"]]

    def test_recursive(self, registry):
        result = registry.execute(call("list_directory", path=".", recursive=True))

        paths = [entry["path"] for entry in result.data["entries"]]
        assert "src/main.py" in [p.replace("\\", "/") for p in paths]
        assert not any(p.startswith("secret") for p in paths)

    def test_entry_types(self, registry):
        result = registry.execute(call("list_directory"))

        types = {entry["name"]: entry["type"] for entry in result.data["entries"]}
        assert types["src"] == "directory"
        assert types["config.json"] == "file"

    def test_not_a_directory(self, registry):
        result = registry.execute(call("list_directory", path="notes.md"))

        assert result.success is False
        assert "not a directory" in result.error


class TestFileInfo:

    def test_file(self, registry):
        result = registry.execute(call("file_info", path="src/main.py"))

        assert result.success is True
        assert result.data["type"] == "file"
        assert result.data["extension"] == "py"
        assert result.data["is_text"] is True
        assert result.data["line_count"] == 3

    def test_directory(self, registry):
        result = registry.execute(call("file_info", path="src"))

        assert result.data["type"] == "directory"
        assert "line_count" not in result.data

    def test_missing(self, registry):
        result = registry.execute(call("file_info", path="nope.txt"))

        assert result.success is False
        assert "does not exist" in result.error
