"""Data models for the sandbox lifecycle service."""

from .project import (
    BuildStatus,
    ExecResult,
    Fragment,
    Project,
    SandboxHandle,
    SnapshotRecord,
    WORKING_FRAGMENT_PREFIX,
    parse_files,
)

__all__ = [
    "BuildStatus",
    "ExecResult",
    "Fragment",
    "Project",
    "SandboxHandle",
    "SnapshotRecord",
    "WORKING_FRAGMENT_PREFIX",
    "parse_files",
]
