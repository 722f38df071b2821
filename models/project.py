"""
Data model for projects, fragments and live sandbox handles.

Field names follow the shared PostgreSQL schema (snake_case columns).
"""

import json
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Optional


# =============================================================================
# ENUMS
# =============================================================================

class BuildStatus(str, Enum):
    """Project build status."""
    AWAITING_SANDBOX = "AWAITING_SANDBOX"
    INITIALIZING = "INITIALIZING"
    GENERATING = "GENERATING"
    BUILDING = "BUILDING"
    READY = "READY"
    ERROR = "ERROR"


WORKING_FRAGMENT_PREFIX = "Work in progress"


# =============================================================================
# PERSISTED RECORDS
# =============================================================================

@dataclass
class Project:
    """A user's app and its current sandbox identity."""
    id: str
    sandbox_id: Optional[str] = None
    sandbox_url: Optional[str] = None
    sandbox_created_at: Optional[datetime] = None
    sandbox_expires_at: Optional[datetime] = None
    active_fragment_id: Optional[str] = None
    git_commit_hash: Optional[str] = None
    build_status: BuildStatus = BuildStatus.AWAITING_SANDBOX
    deployment_url: Optional[str] = None
    deployed_at: Optional[datetime] = None
    deployed_fragment_id: Optional[str] = None
    imported_from: Optional[str] = None  # e.g. "BASE44"; None for native projects
    template_name: Optional[str] = None

    @property
    def is_imported(self) -> bool:
        return self.imported_from is not None

    @property
    def has_sandbox(self) -> bool:
        return self.sandbox_id is not None

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> "Project":
        status = row.get("build_status") or BuildStatus.AWAITING_SANDBOX.value
        return cls(
            id=row["id"],
            sandbox_id=row.get("sandbox_id"),
            sandbox_url=row.get("sandbox_url"),
            sandbox_created_at=row.get("sandbox_created_at"),
            sandbox_expires_at=row.get("sandbox_expires_at"),
            active_fragment_id=row.get("active_fragment_id"),
            git_commit_hash=row.get("git_commit_hash"),
            build_status=BuildStatus(status),
            deployment_url=row.get("deployment_url"),
            deployed_at=row.get("deployed_at"),
            deployed_fragment_id=row.get("deployed_fragment_id"),
            imported_from=row.get("imported_from"),
            template_name=row.get("template_name"),
        )


@dataclass
class Fragment:
    """A persisted snapshot of a project's file tree."""
    id: str
    project_id: str
    title: Optional[str] = None
    files: dict[str, str] = field(default_factory=dict)
    snapshot_image_id: Optional[str] = None
    snapshot_created_at: Optional[datetime] = None
    snapshot_provider: Optional[str] = None
    git_commit_hash: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @property
    def is_working(self) -> bool:
        """Working fragments may still be mutated by tool calls."""
        return not self.title or self.title.startswith(WORKING_FRAGMENT_PREFIX)

    @property
    def snapshot(self) -> Optional["SnapshotRecord"]:
        if not self.snapshot_image_id:
            return None
        return SnapshotRecord(
            image_id=self.snapshot_image_id,
            created_at=self.snapshot_created_at,
            provider=self.snapshot_provider,
            fragment_id=self.id,
        )

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> "Fragment":
        return cls(
            id=row["id"],
            project_id=row["project_id"],
            title=row.get("title"),
            files=parse_files(row.get("files")),
            snapshot_image_id=row.get("snapshot_image_id"),
            snapshot_created_at=row.get("snapshot_created_at"),
            snapshot_provider=row.get("snapshot_provider"),
            git_commit_hash=row.get("git_commit_hash"),
            created_at=row.get("created_at"),
            updated_at=row.get("updated_at"),
        )


@dataclass
class SnapshotRecord:
    """A provider-side frozen filesystem image owned by a fragment."""
    image_id: str
    created_at: Optional[datetime]
    provider: Optional[str]
    fragment_id: str


# =============================================================================
# EPHEMERAL
# =============================================================================

@dataclass
class SandboxHandle:
    """A live connection to remote compute. Only id/url are ever persisted."""
    sandbox_id: str
    tunnels: dict[int, str] = field(default_factory=dict)  # container port -> public URL
    workdir: str = "/workspace"
    expires_at: Optional[datetime] = None

    def url_for(self, port: int) -> Optional[str]:
        return self.tunnels.get(port)


@dataclass
class ExecResult:
    """Result of a shell command run inside a sandbox."""
    stdout: str
    stderr: str
    exit_code: int

    @property
    def ok(self) -> bool:
        return self.exit_code == 0

    @property
    def output(self) -> str:
        return f"{self.stdout}{self.stderr}"


def parse_files(value: Any) -> dict[str, str]:
    """Fragment files may be stored as a JSON object or as a JSON string."""
    if value is None:
        return {}
    if isinstance(value, str):
        try:
            value = json.loads(value)
        except json.JSONDecodeError:
            return {}
    if isinstance(value, dict):
        return {str(k): v for k, v in value.items() if isinstance(v, str)}
    return {}
