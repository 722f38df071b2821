"""
Sandbox health checks.

A sandbox is broken when it is gone, unreachable, or missing one of the
files every generated Vite app needs to boot.
"""

import dataclasses
import logging
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional

from redis.exceptions import RedisError

from .cache import CacheService
from .database import ProjectStore
from .errors import ProviderError
from .provider import WORKSPACE_ROOT, SandboxProvider

logger = logging.getLogger(__name__)

EXCLUDED_DIRS = ("node_modules", ".git", "dist", "build", ".next", ".turbo", "coverage", ".cache", "tmp")
LIST_FILES_TIMEOUT_S = 30

VITE_CONFIG_RE = re.compile(r"^vite\.config\.(js|ts|mjs|cjs)$")
ENTRY_POINT_RE = re.compile(r"^(src/)?(main|app|index|App)\.(t|j)sx?$")
TS_CONFIG_RE = re.compile(r"^(tsconfig|jsconfig)(\.[^.]+)?\.json$")
TS_SOURCE_RE = re.compile(r"^src/.*\.(ts|tsx)$")


class HealthReason(str, Enum):
    HEALTHY = "healthy"
    NO_GENERATION_YET = "new-project-no-generation-yet"
    MISSING_SANDBOX = "missing-sandbox"
    SANDBOX_UNREACHABLE = "sandbox-unreachable"
    LIST_FILES_FAILED = "list-files-failed"
    MISSING_CRITICAL_FILES = "missing-critical-files"


@dataclass
class HealthReport:
    is_broken: bool
    reason: HealthReason
    missing_files: list[str] = field(default_factory=list)
    file_count: int = 0
    sandbox_id: Optional[str] = None

    def to_dict(self) -> dict:
        result = dataclasses.asdict(self)
        result["reason"] = self.reason.value
        return result


def list_files_command() -> str:
    pruned = " -o ".join(f"-name {name}" for name in EXCLUDED_DIRS)
    return f"cd {WORKSPACE_ROOT} && find . \\( {pruned} \\) -prune -o -type f -print"


def is_listed(path: str) -> bool:
    """Hidden files and directories are skipped, except .env files."""
    parts = path.split("/")
    for part in parts[:-1]:
        if part.startswith("."):
            return False
    name = parts[-1]
    return not name.startswith(".") or name.startswith(".env")


def parse_file_listing(output: str) -> list[str]:
    files = []
    for line in output.splitlines():
        path = line.strip()
        if path.startswith("./"):
            path = path[2:]
        if path and is_listed(path):
            files.append(path)
    return sorted(files)


def find_missing_critical_files(files: list[str]) -> list[str]:
    """Names of critical files absent from a workspace listing."""
    missing = []

    if "package.json" not in files:
        missing.append("package.json")

    if not any(VITE_CONFIG_RE.match(path) for path in files):
        missing.append("vite.config.(js|ts|mjs|cjs)")

    if not any(ENTRY_POINT_RE.match(path) for path in files):
        missing.append("src/main.tsx (entry point)")

    if any(TS_SOURCE_RE.match(path) for path in files):
        if not any(TS_CONFIG_RE.match(path) for path in files):
            missing.append("tsconfig.json")

    return missing


class SandboxHealthChecker:
    """Decides whether a project's sandbox needs recovery."""

    def __init__(
        self,
        provider: SandboxProvider,
        store: ProjectStore,
        cache: Optional[CacheService] = None,
    ):
        self.provider = provider
        self.store = store
        self.cache = cache

    async def list_files(self, sandbox_id: str) -> list[str]:
        """Workspace-relative paths of project files."""
        result = await self.provider.exec(sandbox_id, list_files_command(), timeout=LIST_FILES_TIMEOUT_S)
        if not result.ok:
            raise ProviderError(
                f"Failed to list files: {result.stderr.strip()}",
                sandbox_id=sandbox_id,
            )
        return parse_file_listing(result.stdout)

    async def check(self, project_id: str) -> HealthReport:
        report = await self._check(project_id)
        if report.is_broken:
            logger.warning(f"[HealthCheck] Project {project_id} is broken: {report.reason.value} {report.missing_files}")
        else:
            logger.debug(f"[HealthCheck] Project {project_id}: {report.reason.value}")
        await self._remember(project_id, report)
        return report

    async def _check(self, project_id: str) -> HealthReport:
        project = await self.store.get_project(project_id)
        if project is None or not project.sandbox_id:
            fragments = await self.store.list_fragments(project_id)
            if not fragments:
                return HealthReport(is_broken=False, reason=HealthReason.NO_GENERATION_YET)
            return HealthReport(is_broken=True, reason=HealthReason.MISSING_SANDBOX)

        sandbox_id = project.sandbox_id
        try:
            await self.provider.from_id(sandbox_id)
        except ProviderError as e:
            logger.info(f"[HealthCheck] Sandbox {sandbox_id} unreachable: {e}")
            return HealthReport(is_broken=True, reason=HealthReason.SANDBOX_UNREACHABLE, sandbox_id=sandbox_id)

        try:
            files = await self.list_files(sandbox_id)
        except ProviderError as e:
            logger.warning(f"[HealthCheck] Listing files failed for {sandbox_id}: {e}")
            return HealthReport(is_broken=True, reason=HealthReason.LIST_FILES_FAILED, sandbox_id=sandbox_id)

        missing = find_missing_critical_files(files)
        if missing:
            return HealthReport(
                is_broken=True,
                reason=HealthReason.MISSING_CRITICAL_FILES,
                missing_files=missing,
                file_count=len(files),
                sandbox_id=sandbox_id,
            )

        return HealthReport(
            is_broken=False,
            reason=HealthReason.HEALTHY,
            file_count=len(files),
            sandbox_id=sandbox_id,
        )

    async def _remember(self, project_id: str, report: HealthReport) -> None:
        if self.cache is None:
            return
        try:
            await self.cache.set_health(project_id, report.to_dict())
        except (RedisError, OSError) as e:
            logger.debug(f"[HealthCheck] Could not cache health for {project_id}: {e}")
