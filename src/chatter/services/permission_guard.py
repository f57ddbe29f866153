"""Permission guard deciding which filesystem paths tools may touch."""

import fnmatch
import logging
import os
import threading
from pathlib import Path
from typing import Any, Dict, FrozenSet, Iterable, List, Optional, Tuple, Union

from chatter.lib.logging_config import get_audit_logger
from chatter.models.audit_record import AuditRecord, EventType, ResultStatus


logger = logging.getLogger(__name__)

PathLike = Union[str, os.PathLike]

MAX_AUDIT_RECORDS = 500


def _depth(path: Path) -> int:
    return len(path.parts)


def _is_within(path: Path, root: Path) -> bool:
    if any("*" in part for part in root.parts):
        # Wildcard roots such as /home/*/.ssh match one path segment per `*` segment
        return len(path.parts) >= len(root.parts) and all(
            fnmatch.fnmatchcase(part, pattern) for part, pattern in zip(path.parts, root.parts)
        )
    return path == root or root in path.parents


class PermissionGuard:
    """Directory allow/deny list with default deny.

    A path is accessible iff it has an allowed ancestor (or is one) that is
    strictly deeper than every forbidden ancestor. With no allowed ancestor
    the path is denied; at equal depth the forbidden root wins.
    """

    def __init__(
        self,
        allowed: Optional[Iterable[PathLike]] = None,
        forbidden: Optional[Iterable[PathLike]] = None,
        base_directory: Optional[PathLike] = None
    ):
        """Initialize the guard.

        Args:
            allowed: Initial allowed roots
            forbidden: Initial forbidden roots
            base_directory: Directory relative paths are resolved against,
                the process working directory by default
        """
        self.logger = logging.getLogger(__name__)
        self.audit_logger = get_audit_logger()
        self._lock = threading.RLock()
        self._base_directory = Path(base_directory or os.getcwd()).expanduser().resolve()
        self._allowed: FrozenSet[Path] = frozenset()
        self._forbidden: FrozenSet[Path] = frozenset()
        self._audit_records: List[AuditRecord] = []

        for root in allowed or []:
            self.allow(root)
        for root in forbidden or []:
            self.forbid(root)

    @property
    def base_directory(self) -> Path:
        return self._base_directory

    def resolve(self, path: PathLike) -> Path:
        """Canonical absolute form of a path.

        Symlinks are resolved and ``..`` collapsed; components that do not
        exist yet are kept as written.
        """
        candidate = Path(path).expanduser()
        if not candidate.is_absolute():
            candidate = self._base_directory / candidate
        return candidate.resolve(strict=False)

    def allow(self, root: PathLike) -> Path:
        """Add an allowed root. Adding the same root twice has no further effect."""
        resolved = self.resolve(root)
        with self._lock:
            self._allowed = self._allowed | {resolved}
        self.audit_logger.log_policy_event(
            event_type="path_allowed",
            action="allow_path",
            decision="allow",
            reason="Operator granted access",
            metadata={"root": str(resolved)}
        )
        self.logger.info(f"Allowed path root {resolved}")
        return resolved

    def forbid(self, root: PathLike) -> Path:
        """Add a forbidden root. Forbidding a path under an allowed root carves out an exception."""
        resolved = self.resolve(root)
        with self._lock:
            self._forbidden = self._forbidden | {resolved}
        self.audit_logger.log_policy_event(
            event_type="path_forbidden",
            action="forbid_path",
            decision="deny",
            reason="Operator revoked access",
            metadata={"root": str(resolved)}
        )
        self.logger.info(f"Forbidden path root {resolved}")
        return resolved

    def _snapshot_sets(self) -> Tuple[FrozenSet[Path], FrozenSet[Path]]:
        with self._lock:
            return self._allowed, self._forbidden

    @staticmethod
    def _deepest_match(path: Path, roots: Iterable[Path]) -> Optional[Path]:
        best: Optional[Path] = None
        for root in roots:
            if _is_within(path, root) and (best is None or _depth(root) > _depth(best)):
                best = root
        return best

    def _evaluate(self, path: PathLike) -> Dict[str, Any]:
        try:
            resolved = self.resolve(path)
        except (OSError, RuntimeError, ValueError) as e:
            return {
                "allowed": False,
                "reason": f"Cannot resolve path {path}: {e}",
                "resolved_path": str(path),
                "matched_root": None
            }

        allowed_roots, forbidden_roots = self._snapshot_sets()
        allowed_match = self._deepest_match(resolved, allowed_roots)
        forbidden_match = self._deepest_match(resolved, forbidden_roots)

        if allowed_match is None:
            return {
                "allowed": False,
                "reason": f"Permission denied: {resolved} is outside the allowed directories",
                "resolved_path": str(resolved),
                "matched_root": str(forbidden_match) if forbidden_match else None
            }

        if forbidden_match is not None and _depth(forbidden_match) >= _depth(allowed_match):
            return {
                "allowed": False,
                "reason": f"Permission denied: {resolved} is in forbidden directory {forbidden_match}",
                "resolved_path": str(resolved),
                "matched_root": str(forbidden_match)
            }

        return {
            "allowed": True,
            "reason": f"Path is within allowed directory {allowed_match}",
            "resolved_path": str(resolved),
            "matched_root": str(allowed_match)
        }

    def is_allowed(self, path: PathLike) -> bool:
        """Pure predicate: whether tools may access the path."""
        return self._evaluate(path)["allowed"]

    def check(
        self,
        path: PathLike,
        access_type: str = "read",
        session_id: Optional[str] = None
    ) -> Dict[str, Any]:
        """Validate access to a path and audit denials.

        Args:
            path: Requested path, absolute or relative to the base directory
            access_type: Kind of access, recorded in the audit trail
            session_id: Optional session identifier

        Returns:
            Validation result with allowed status, reason and resolved path
        """
        result = self._evaluate(path)
        if not result["allowed"]:
            self._create_audit_record(
                session_id, EventType.SECURITY, "path_access_denied",
                ResultStatus.BLOCKED, result["reason"], {
                    "requested_path": str(path),
                    "resolved_path": result["resolved_path"],
                    "access_type": access_type
                }
            )
            self.audit_logger.log_security_event(
                event_type="path_access_denied",
                severity="medium",
                description=result["reason"],
                session_id=session_id,
                metadata={"access_type": access_type, "resolved_path": result["resolved_path"]}
            )
        return result

    def snapshot(self) -> Dict[str, List[str]]:
        """Current allowed and forbidden roots, sorted."""
        allowed_roots, forbidden_roots = self._snapshot_sets()
        return {
            "allowed_paths": sorted(str(p) for p in allowed_roots),
            "forbidden_paths": sorted(str(p) for p in forbidden_roots)
        }

    @property
    def allowed_paths(self) -> List[str]:
        return self.snapshot()["allowed_paths"]

    @property
    def forbidden_paths(self) -> List[str]:
        return self.snapshot()["forbidden_paths"]

    def get_audit_records(self, limit: Optional[int] = None) -> List[AuditRecord]:
        """Most recent audit records, oldest first."""
        with self._lock:
            records = list(self._audit_records)
        return records[-limit:] if limit else records

    def _create_audit_record(
        self,
        session_id: Optional[str],
        event_type: EventType,
        action: str,
        result: ResultStatus,
        reason: str,
        metadata: Dict[str, Any]
    ) -> None:
        record = AuditRecord(
            event_type=event_type,
            session_id=session_id,
            action=action,
            result=result,
            reason=reason,
            metadata=metadata
        )
        with self._lock:
            self._audit_records.append(record)
            if len(self._audit_records) > MAX_AUDIT_RECORDS:
                del self._audit_records[:-MAX_AUDIT_RECORDS]
