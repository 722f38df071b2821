"""
Filesystem snapshots of fragments and retention cleanup.
"""

import logging
from dataclasses import dataclass
from typing import Optional

from config import settings
from models import SnapshotRecord
from .database import ProjectStore, utcnow
from .errors import ProviderError, SandboxError
from .provider import SandboxProvider

logger = logging.getLogger(__name__)


@dataclass
class CleanupResult:
    deleted: int
    kept: int


class SnapshotManager:
    """Creates fragment snapshots and keeps only the newest N per project."""

    def __init__(
        self,
        provider: SandboxProvider,
        store: ProjectStore,
        keep_count: Optional[int] = None,
    ):
        self.provider = provider
        self.store = store
        self.keep_count = keep_count if keep_count is not None else settings.snapshot_keep_count

    async def create(
        self,
        sandbox_id: str,
        fragment_id: str,
        keep_count: Optional[int] = None,
    ) -> SnapshotRecord:
        """
        Snapshot the sandbox filesystem and attach it to the fragment.

        Retention cleanup runs afterwards; its failure is logged, never raised.
        """
        fragment = await self.store.get_fragment(fragment_id)
        if fragment is None:
            raise SandboxError(f"Fragment {fragment_id} not found", sandbox_id=sandbox_id)

        image_id = await self.provider.snapshot_filesystem(sandbox_id)
        created_at = utcnow()
        await self.store.set_fragment_snapshot(fragment_id, image_id, created_at, self.provider.name)
        logger.info(f"[SnapshotManager] Created snapshot {image_id} for fragment {fragment_id}")

        try:
            await self.cleanup(fragment.project_id, keep_count)
        except Exception as e:
            logger.warning(f"[SnapshotManager] Snapshot cleanup failed for {fragment.project_id}: {e}")

        return SnapshotRecord(
            image_id=image_id,
            created_at=created_at,
            provider=self.provider.name,
            fragment_id=fragment_id,
        )

    async def cleanup(self, project_id: str, keep_count: Optional[int] = None) -> CleanupResult:
        """
        Delete all but the newest keep_count snapshots for a project.

        Fragment snapshot fields are cleared even when the provider delete
        fails, so stale records never point at images we gave up on.
        """
        keep = keep_count if keep_count is not None else self.keep_count
        fragments = await self.store.list_snapshot_fragments(project_id, self.provider.name)

        if len(fragments) <= keep:
            return CleanupResult(deleted=0, kept=len(fragments))

        deleted = 0
        for fragment in fragments[keep:]:
            try:
                if fragment.snapshot_image_id:
                    await self.delete_snapshot(fragment.snapshot_image_id)
                await self.store.clear_fragment_snapshot(fragment.id)
                deleted += 1
            except Exception as e:
                # Continue with the remaining fragments
                logger.error(f"[SnapshotManager] Failed to clean up snapshot for fragment {fragment.id}: {e}")

        logger.info(f"[SnapshotManager] Cleaned up {deleted} old snapshots for project {project_id}")
        return CleanupResult(deleted=deleted, kept=min(len(fragments), keep))

    async def delete_snapshot(self, image_id: str) -> bool:
        """Best-effort provider delete."""
        try:
            await self.provider.delete_image(image_id)
            return True
        except ProviderError as e:
            logger.warning(f"[SnapshotManager] Failed to delete snapshot {image_id}: {e}")
            return False
