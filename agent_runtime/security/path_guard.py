from __future__ import annotations

import os
from pathlib import Path


class PathGuardError(Exception):
    pass


# Refused even when the user approved an out-of-workspace path.
PROTECTED_PREFIXES = (
    "/usr",
    "/etc",
    "/bin",
    "/sbin",
    "/boot",
    "/private/etc",
    "c:/windows",
    "c:/program files",
    "c:/program files (x86)",
)


def resolve_path(workspace_root: str | Path | None, candidate_path: str) -> Path:
    """Resolve a tool path argument; relative paths are anchored at the workspace root."""
    if not candidate_path or not str(candidate_path).strip():
        raise PathGuardError("Path must not be empty")
    if "\x00" in str(candidate_path):
        raise PathGuardError(f"Invalid path {candidate_path!r}: embedded null byte")
    candidate = Path(os.path.expanduser(str(candidate_path)))
    if not candidate.is_absolute() and workspace_root is not None:
        candidate = Path(workspace_root) / candidate
    try:
        return candidate.resolve()
    except (OSError, ValueError) as exc:
        raise PathGuardError(f"Invalid path {candidate_path!r}: {exc}") from exc


def is_within_workspace(path: Path, workspace_root: str | Path | None) -> bool:
    if workspace_root is None:
        return True
    try:
        path.resolve().relative_to(Path(workspace_root).resolve())
    except ValueError:
        return False
    return True


def ensure_not_protected(path: Path) -> None:
    normalized = str(path).replace("\\", "/").lower().rstrip("/")
    for prefix in PROTECTED_PREFIXES:
        if normalized == prefix or normalized.startswith(prefix + "/"):
            raise PathGuardError(f"Access to system path '{path}' is not allowed")
