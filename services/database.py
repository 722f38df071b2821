"""
Project persistence for the sandbox lifecycle service.

ProjectStore is the interface every component depends on. DatabaseService
implements it with asyncpg against the shared PostgreSQL schema.

Sandbox identity fields (sandbox_id, sandbox_url, created/expires) are only
ever written together, through set_sandbox_identity() and
clear_sandbox_identity().
"""

import json
import logging
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Optional

import asyncpg

from config import settings
from models import BuildStatus, Fragment, Project

logger = logging.getLogger(__name__)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ProjectStore(ABC):
    """Read/update access to Project and Fragment records."""

    # =========================================================================
    # Project Operations
    # =========================================================================

    @abstractmethod
    async def get_project(self, project_id: str) -> Optional[Project]:
        ...

    @abstractmethod
    async def set_sandbox_identity(
        self,
        project_id: str,
        sandbox_id: str,
        sandbox_url: str,
        created_at: Optional[datetime] = None,
    ) -> None:
        """Write sandbox id and url as a pair. created_at=None keeps the stored value."""

    @abstractmethod
    async def clear_sandbox_identity(self, project_id: str) -> None:
        """Clear id, url, created_at and expires_at together."""

    @abstractmethod
    async def clear_sandbox_identity_by_sandbox(self, sandbox_id: str) -> int:
        """Clear identity on every project pointing at sandbox_id. Returns rows cleared."""

    @abstractmethod
    async def count_projects_with_sandbox(self, sandbox_id: str) -> int:
        ...

    @abstractmethod
    async def update_build_status(self, project_id: str, status: BuildStatus) -> None:
        ...

    @abstractmethod
    async def record_deployment(
        self,
        project_id: str,
        deployment_url: str,
        deployed_fragment_id: Optional[str],
    ) -> None:
        ...

    # =========================================================================
    # Fragment Operations
    # =========================================================================

    @abstractmethod
    async def get_fragment(self, fragment_id: str) -> Optional[Fragment]:
        ...

    @abstractmethod
    async def create_fragment(self, project_id: str, title: Optional[str], files: dict[str, str]) -> Fragment:
        ...

    @abstractmethod
    async def update_fragment_files(self, fragment_id: str, files: dict[str, str]) -> None:
        ...

    @abstractmethod
    async def finalize_fragment(
        self,
        fragment_id: str,
        title: str,
        git_commit_hash: Optional[str] = None,
    ) -> None:
        ...

    @abstractmethod
    async def list_fragments(self, project_id: str) -> list[Fragment]:
        """All fragments for a project, newest first by created_at."""

    @abstractmethod
    async def list_snapshot_fragments(self, project_id: str, provider: str) -> list[Fragment]:
        """Fragments with a live snapshot from provider, newest first by snapshot_created_at."""

    @abstractmethod
    async def set_fragment_snapshot(
        self,
        fragment_id: str,
        image_id: str,
        created_at: datetime,
        provider: str,
    ) -> None:
        ...

    @abstractmethod
    async def clear_fragment_snapshot(self, fragment_id: str) -> None:
        """Clear image id, created_at and provider together."""

    async def close(self) -> None:
        """Release connections held by this store."""


class DatabaseService(ProjectStore):
    """
    Async PostgreSQL store for projects and fragments.

    Tables:
    - projects
    - v2_fragments (files stored as JSONB)
    """

    def __init__(self, database_url: str | None = None):
        """Initialize database service."""
        self.database_url = database_url or settings.database_url
        self._pool: asyncpg.Pool | None = None

    async def connect(self) -> None:
        """Create connection pool."""
        if self._pool is None:
            self._pool = await asyncpg.create_pool(
                self.database_url,
                min_size=2,
                max_size=10,
                command_timeout=30,
            )
            logger.info("[Database] Connected to PostgreSQL")

    async def disconnect(self) -> None:
        """Close connection pool."""
        if self._pool:
            await self._pool.close()
            self._pool = None
            logger.info("[Database] Disconnected from PostgreSQL")

    async def close(self) -> None:
        await self.disconnect()

    async def _get_pool(self) -> asyncpg.Pool:
        """Get or create connection pool."""
        if self._pool is None:
            await self.connect()
        return self._pool  # type: ignore

    # =========================================================================
    # Project Operations
    # =========================================================================

    async def get_project(self, project_id: str) -> Optional[Project]:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            row = await conn.fetchrow(
                """
                SELECT * FROM projects WHERE id = $1
                """,
                project_id,
            )
            return Project.from_row(dict(row)) if row else None

    async def set_sandbox_identity(
        self,
        project_id: str,
        sandbox_id: str,
        sandbox_url: str,
        created_at: Optional[datetime] = None,
    ) -> None:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            await conn.execute(
                """
                UPDATE projects
                SET sandbox_id = $2,
                    sandbox_url = $3,
                    sandbox_created_at = COALESCE($4, sandbox_created_at),
                    sandbox_expires_at = NULL,
                    updated_at = NOW()
                WHERE id = $1
                """,
                project_id,
                sandbox_id,
                sandbox_url,
                created_at,
            )

    async def clear_sandbox_identity(self, project_id: str) -> None:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            await conn.execute(
                """
                UPDATE projects
                SET sandbox_id = NULL,
                    sandbox_url = NULL,
                    sandbox_created_at = NULL,
                    sandbox_expires_at = NULL,
                    updated_at = NOW()
                WHERE id = $1
                """,
                project_id,
            )

    async def clear_sandbox_identity_by_sandbox(self, sandbox_id: str) -> int:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            result = await conn.execute(
                """
                UPDATE projects
                SET sandbox_id = NULL,
                    sandbox_url = NULL,
                    sandbox_created_at = NULL,
                    sandbox_expires_at = NULL,
                    updated_at = NOW()
                WHERE sandbox_id = $1
                """,
                sandbox_id,
            )
            # asyncpg returns the command tag, e.g. "UPDATE 1"
            return int(result.split()[-1]) if result else 0

    async def count_projects_with_sandbox(self, sandbox_id: str) -> int:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            return await conn.fetchval(
                "SELECT COUNT(*) FROM projects WHERE sandbox_id = $1",
                sandbox_id,
            )

    async def update_build_status(self, project_id: str, status: BuildStatus) -> None:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            await conn.execute(
                """
                UPDATE projects
                SET build_status = $2, build_status_updated_at = NOW(), updated_at = NOW()
                WHERE id = $1
                """,
                project_id,
                status.value,
            )

    async def record_deployment(
        self,
        project_id: str,
        deployment_url: str,
        deployed_fragment_id: Optional[str],
    ) -> None:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            await conn.execute(
                """
                UPDATE projects
                SET deployment_url = $2,
                    deployed_at = NOW(),
                    deployed_fragment_id = $3,
                    updated_at = NOW()
                WHERE id = $1
                """,
                project_id,
                deployment_url,
                deployed_fragment_id,
            )

    # =========================================================================
    # Fragment Operations
    # =========================================================================

    async def get_fragment(self, fragment_id: str) -> Optional[Fragment]:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            row = await conn.fetchrow(
                "SELECT * FROM v2_fragments WHERE id = $1",
                fragment_id,
            )
            return Fragment.from_row(dict(row)) if row else None

    async def create_fragment(self, project_id: str, title: Optional[str], files: dict[str, str]) -> Fragment:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            row = await conn.fetchrow(
                """
                INSERT INTO v2_fragments (id, project_id, title, files, created_at, updated_at)
                VALUES (gen_random_uuid()::text, $1, $2, $3::jsonb, NOW(), NOW())
                RETURNING *
                """,
                project_id,
                title,
                json.dumps(files),
            )
            return Fragment.from_row(dict(row))

    async def update_fragment_files(self, fragment_id: str, files: dict[str, str]) -> None:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            await conn.execute(
                """
                UPDATE v2_fragments SET files = $2::jsonb, updated_at = NOW()
                WHERE id = $1
                """,
                fragment_id,
                json.dumps(files),
            )

    async def finalize_fragment(
        self,
        fragment_id: str,
        title: str,
        git_commit_hash: Optional[str] = None,
    ) -> None:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            await conn.execute(
                """
                UPDATE v2_fragments
                SET title = $2,
                    git_commit_hash = COALESCE($3, git_commit_hash),
                    updated_at = NOW()
                WHERE id = $1
                """,
                fragment_id,
                title,
                git_commit_hash,
            )

    async def list_fragments(self, project_id: str) -> list[Fragment]:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            rows = await conn.fetch(
                """
                SELECT * FROM v2_fragments
                WHERE project_id = $1
                ORDER BY created_at DESC
                """,
                project_id,
            )
            return [Fragment.from_row(dict(row)) for row in rows]

    async def list_snapshot_fragments(self, project_id: str, provider: str) -> list[Fragment]:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            rows = await conn.fetch(
                """
                SELECT id, project_id, title, snapshot_image_id,
                       snapshot_created_at, snapshot_provider, created_at
                FROM v2_fragments
                WHERE project_id = $1
                  AND snapshot_image_id IS NOT NULL
                  AND snapshot_provider = $2
                ORDER BY snapshot_created_at DESC
                """,
                project_id,
                provider,
            )
            return [Fragment.from_row(dict(row)) for row in rows]

    async def set_fragment_snapshot(
        self,
        fragment_id: str,
        image_id: str,
        created_at: datetime,
        provider: str,
    ) -> None:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            await conn.execute(
                """
                UPDATE v2_fragments
                SET snapshot_image_id = $2,
                    snapshot_created_at = $3,
                    snapshot_provider = $4
                WHERE id = $1
                """,
                fragment_id,
                image_id,
                created_at,
                provider,
            )

    async def clear_fragment_snapshot(self, fragment_id: str) -> None:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            await conn.execute(
                """
                UPDATE v2_fragments
                SET snapshot_image_id = NULL,
                    snapshot_created_at = NULL,
                    snapshot_provider = NULL
                WHERE id = $1
                """,
                fragment_id,
            )

    # =========================================================================
    # Health Check
    # =========================================================================

    async def health_check(self) -> dict:
        """Check PostgreSQL connection health."""
        try:
            pool = await self._get_pool()
            async with pool.acquire() as conn:
                await conn.fetchval("SELECT 1")
            return {"healthy": True}
        except Exception as e:
            return {"healthy": False, "error": str(e)}
