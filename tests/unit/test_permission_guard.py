"""
Unit tests for the permission guard.

Covers default deny, longest-match resolution between allowed and
forbidden roots, canonicalization of relative and traversal paths, and the
audit trail of denials.
"""

import os
import threading
from pathlib import Path

import pytest

from chatter.services.permission_guard import PermissionGuard


@pytest.fixture
def workspace(tmp_path):
    """Workspace with a nested project layout."""
    (tmp_path / "project" / "src").mkdir(parents=True)
    (tmp_path / "project" / "secret").mkdir()
    (tmp_path / "project" / "config.json").write_text("{}")
    (tmp_path / "outside").mkdir()
    return tmp_path


class TestDefaultDeny:
    """With no allowed roots every path is denied."""

    def test_empty_guard_denies_everything(self, workspace):
        guard = PermissionGuard(base_directory=workspace)

        assert guard.is_allowed(workspace) is False
        assert guard.is_allowed("/etc/passwd") is False

    def test_denial_reason_mentions_permission(self, workspace):
        guard = PermissionGuard(base_directory=workspace)

        result = guard.check("/etc/passwd")

        assert result["allowed"] is False
        assert "Permission denied" in result["reason"]
        assert result["matched_root"] is None

    def test_path_outside_allowed_root_is_denied(self, workspace):
        guard = PermissionGuard(allowed=[workspace / "project"], base_directory=workspace)

        assert guard.is_allowed(workspace / "outside" / "file.txt") is False


class TestLongestMatch:
    """Deepest matching root decides; forbidden wins ties."""

    def test_allowed_root_grants_descendants(self, workspace):
        guard = PermissionGuard(allowed=[workspace / "project"], base_directory=workspace)

        assert guard.is_allowed(workspace / "project") is True
        assert guard.is_allowed(workspace / "project" / "src" / "main.py") is True

    def test_forbidden_subdirectory_carves_out_exception(self, workspace):
        guard = PermissionGuard(
            allowed=[workspace / "project"],
            forbidden=[workspace / "project" / "secret"],
            base_directory=workspace
        )

        assert guard.is_allowed(workspace / "project" / "src") is True
        assert guard.is_allowed(workspace / "project" / "secret" / "key.pem") is False

    def test_deeper_allowed_root_overrides_forbidden_ancestor(self, workspace):
        guard = PermissionGuard(
            allowed=[workspace / "project" / "src"],
            forbidden=[workspace],
            base_directory=workspace
        )

        assert guard.is_allowed(workspace / "project" / "src" / "a.py") is True
        assert guard.is_allowed(workspace / "project" / "config.json") is False

    def test_forbidden_wins_at_equal_depth(self, workspace):
        root = workspace / "project"
        guard = PermissionGuard(allowed=[root], forbidden=[root], base_directory=workspace)

        result = guard.check(root / "config.json")

        assert result["allowed"] is False
        assert result["matched_root"] == str(root.resolve())

    def test_sibling_prefix_is_not_a_match(self, workspace):
        (workspace / "project-other").mkdir()
        guard = PermissionGuard(allowed=[workspace / "project"], base_directory=workspace)

        assert guard.is_allowed(workspace / "project-other" / "file.txt") is False

    def test_wildcard_forbidden_root_matches_any_segment(self, workspace):
        guard = PermissionGuard(
            allowed=[workspace], forbidden=[workspace / "*" / ".ssh"], base_directory=workspace
        )

        assert guard.is_allowed(workspace / "alice" / ".ssh" / "id_rsa") is False
        assert guard.is_allowed(workspace / "bob" / ".ssh") is False
        assert guard.is_allowed(workspace / "alice" / "notes.md") is True
        assert guard.is_allowed(workspace / ".ssh") is True

    def test_allowed_root_under_wildcard_forbidden_root(self, workspace):
        guard = PermissionGuard(
            allowed=[workspace, workspace / "alice" / ".ssh" / "public"],
            forbidden=[workspace / "*" / ".ssh"],
            base_directory=workspace
        )

        assert guard.is_allowed(workspace / "alice" / ".ssh" / "public" / "key.pub") is True
        assert guard.is_allowed(workspace / "alice" / ".ssh" / "id_rsa") is False


class TestCanonicalization:
    """Paths are judged after resolution against the base directory."""

    def test_relative_traversal_inside_allowed_root(self, workspace):
        project = workspace / "project"
        guard = PermissionGuard(allowed=["."], base_directory=project)

        result = guard.check("secret/../config.json")

        assert result["allowed"] is True
        assert result["resolved_path"] == str((project / "config.json").resolve())

    def test_traversal_out_of_allowed_root_is_denied(self, workspace):
        guard = PermissionGuard(allowed=["."], base_directory=workspace / "project")

        assert guard.is_allowed("../outside/file.txt") is False

    def test_nonexistent_path_under_allowed_root(self, workspace):
        guard = PermissionGuard(allowed=[workspace / "project"], base_directory=workspace)

        assert guard.is_allowed(workspace / "project" / "new" / "file.txt") is True

    @pytest.mark.skipif(not hasattr(os, "symlink"), reason="symlinks not supported")
    def test_symlink_escaping_allowed_root_is_denied(self, workspace):
        link = workspace / "project" / "link"
        try:
            link.symlink_to(workspace / "outside", target_is_directory=True)
        except OSError:
            pytest.skip("cannot create symlinks on this platform")

        guard = PermissionGuard(allowed=[workspace / "project"], base_directory=workspace)

        assert guard.is_allowed(link / "file.txt") is False


class TestPolicyChanges:
    """allow and forbid are additive and idempotent."""

    def test_allow_is_idempotent(self, workspace):
        guard = PermissionGuard(base_directory=workspace)

        first = guard.allow("project")
        second = guard.allow("project")

        assert first == second
        assert guard.allowed_paths == [str((workspace / "project").resolve())]

    def test_forbid_is_idempotent(self, workspace):
        guard = PermissionGuard(allowed=[workspace], base_directory=workspace)

        guard.forbid("outside")
        guard.forbid("outside")

        assert guard.forbidden_paths == [str((workspace / "outside").resolve())]

    def test_decision_is_stable_between_changes(self, workspace):
        guard = PermissionGuard(allowed=[workspace], base_directory=workspace)
        target = workspace / "project" / "config.json"

        decisions = {guard.is_allowed(target) for _ in range(5)}

        assert decisions == {True}

    def test_snapshot_lists_sorted_roots(self, workspace):
        guard = PermissionGuard(
            allowed=[workspace / "project", workspace / "outside"],
            base_directory=workspace
        )

        snapshot = guard.snapshot()

        assert snapshot["allowed_paths"] == sorted(snapshot["allowed_paths"])
        assert snapshot["forbidden_paths"] == []

    def test_concurrent_checks_see_consistent_sets(self, workspace):
        guard = PermissionGuard(allowed=[workspace], base_directory=workspace)
        errors = []

        def reader():
            for _ in range(200):
                try:
                    guard.is_allowed(workspace / "project" / "src")
                except Exception as e:  # pragma: no cover
                    errors.append(e)

        threads = [threading.Thread(target=reader) for _ in range(4)]
        for thread in threads:
            thread.start()
        for i in range(50):
            guard.forbid(workspace / f"dir{i}")
        for thread in threads:
            thread.join()

        assert errors == []
        assert len(guard.forbidden_paths) == 50


class TestAuditTrail:
    """Denied checks are recorded."""

    def test_denial_creates_audit_record(self, workspace):
        guard = PermissionGuard(base_directory=workspace)

        guard.check("/etc/passwd", access_type="read", session_id="session-1")

        records = guard.get_audit_records()
        assert len(records) == 1
        assert records[0].session_id == "session-1"
        assert records[0].action == "path_access_denied"
        assert records[0].event_type == "security"
        assert records[0].result == "blocked"
        assert records[0].metadata["access_type"] == "read"

    def test_allowed_check_is_not_recorded(self, workspace):
        guard = PermissionGuard(allowed=[workspace], base_directory=workspace)

        guard.check(workspace / "project")

        assert guard.get_audit_records() == []

    def test_base_directory_is_resolved(self, workspace):
        guard = PermissionGuard(base_directory=workspace)

        assert guard.base_directory == Path(workspace).resolve()
