"""
Working fragment updates.

Tool calls write files into the sandbox first; the fragment record is then
updated in a detached task, merging the session's files over the files
already stored on the working fragment.
"""

import asyncio
import logging
from datetime import datetime
from typing import Optional

from models import WORKING_FRAGMENT_PREFIX, Fragment
from .background import spawn_background
from .database import ProjectStore
from .errors import FragmentNotFoundError
from .file_restorer import FileRestorer

logger = logging.getLogger(__name__)


def working_fragment_title(now: Optional[datetime] = None) -> str:
    timestamp = (now or datetime.now()).strftime("%Y-%m-%d %H:%M:%S")
    return f"{WORKING_FRAGMENT_PREFIX} - {timestamp}"


def is_durable(fragment: Fragment) -> bool:
    """Fragments with a snapshot or commit attached are never mutated."""
    return bool(fragment.snapshot_image_id or fragment.git_commit_hash)


class FragmentService:
    """
    Keeps the working fragment in step with files written to the sandbox.

    When an update names a fragment that no longer exists, FragmentNotFoundError
    is raised. With allow_fork=True a new working fragment is created instead
    and the loss of the old id is logged as an error.
    """

    def __init__(
        self,
        store: ProjectStore,
        restorer: FileRestorer,
        allow_fork: bool = False,
    ):
        self.store = store
        self.restorer = restorer
        self.allow_fork = allow_fork

    async def _create_working(self, project_id: str, files: dict[str, str]) -> str:
        fragment = await self.store.create_fragment(project_id, working_fragment_title(), files)
        logger.info(f"[Fragments] Created working fragment {fragment.id} with {len(files)} files")
        return fragment.id

    async def update_working_fragment(
        self,
        project_id: str,
        fragment_id: Optional[str],
        session_files: dict[str, str],
        action: str,
    ) -> Optional[str]:
        """Merge session files into the working fragment. Returns the fragment id written."""
        if not session_files:
            return fragment_id

        if fragment_id is None:
            return await self._create_working(project_id, dict(session_files))

        existing = await self.store.get_fragment(fragment_id)
        if existing is None or existing.project_id != project_id:
            if not self.allow_fork:
                logger.error(f"[Fragments] Fragment {fragment_id} not found for project {project_id} ({action})")
                raise FragmentNotFoundError(
                    f"Fragment {fragment_id} not found for project {project_id}",
                    fragment_id=fragment_id,
                )
            logger.error(
                f"[Fragments] Fragment {fragment_id} no longer exists, forking a new working fragment ({action})"
            )
            return await self._create_working(project_id, dict(session_files))

        merged = {**existing.files, **session_files}

        if is_durable(existing):
            logger.info(f"[Fragments] Fragment {fragment_id} is finalized, starting a new working fragment")
            return await self._create_working(project_id, merged)

        await self.store.update_fragment_files(fragment_id, merged)
        logger.info(
            f"[Fragments] Updated fragment {fragment_id} with {len(merged)} total files "
            f"({len(session_files)} modified in session) ({action})"
        )
        return fragment_id

    async def write_files(
        self,
        sandbox_id: str,
        project_id: str,
        fragment_id: Optional[str],
        files: dict[str, str],
    ) -> asyncio.Task:
        """
        Write files into the sandbox, then schedule the fragment update.

        The returned task is never required to be awaited; its failure is logged.
        """
        await self.restorer.restore_sequential(sandbox_id, files)
        return spawn_background(
            self.update_working_fragment(project_id, fragment_id, files, "write_files"),
            name=f"fragment-update:{project_id}",
        )

    async def finalize_fragment(
        self,
        fragment_id: str,
        title: str,
        git_commit_hash: Optional[str] = None,
    ) -> None:
        existing = await self.store.get_fragment(fragment_id)
        if existing is None:
            raise FragmentNotFoundError(f"Fragment {fragment_id} not found", fragment_id=fragment_id)
        await self.store.finalize_fragment(fragment_id, title, git_commit_hash)
        logger.info(f"[Fragments] Finalized fragment {fragment_id} as '{title}'")
