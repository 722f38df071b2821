"""
File restoration into sandboxes.

Materializes a flat path -> content map under /workspace. Content is either
UTF-8 text or a binary payload in one of two encodings that stored fragments
already rely on:
- "__BASE64__" followed by base64
- a data URL, "data:<mime>;base64,<payload>"
"""

import asyncio
import base64
import binascii
import logging
import posixpath
import re
from typing import Optional

from .database import ProjectStore
from .errors import ProviderError, RestorationError
from .provider import WORKSPACE_ROOT, SandboxProvider

logger = logging.getLogger(__name__)

BINARY_MARKER = "__BASE64__"
DATA_URL_PATTERN = re.compile(r"^data:[^;]+;base64,(.+)$", re.DOTALL)

BATCH_SIZE = 10  # concurrent writes per batch


def decode_file_content(content: str) -> bytes:
    """Decode stored content into the bytes that belong on disk."""
    if content.startswith(BINARY_MARKER):
        return base64.b64decode(content[len(BINARY_MARKER):])

    if content.startswith("data:"):
        match = DATA_URL_PATTERN.match(content)
        if match:
            return base64.b64decode(match.group(1))

    return content.encode("utf-8")


def encode_binary_content(data: bytes) -> str:
    """Encode binary file content with the marker token."""
    return BINARY_MARKER + base64.b64encode(data).decode("ascii")


def workspace_path(path: str) -> str:
    return f"{WORKSPACE_ROOT}/{path.lstrip('/')}"


class FileRestorer:
    """Writes file maps into a sandbox, sequentially or in concurrent batches."""

    def __init__(self, provider: SandboxProvider, store: Optional[ProjectStore] = None):
        self.provider = provider
        self.store = store

    async def _write_one(self, sandbox_id: str, path: str, content: str) -> None:
        full_path = workspace_path(path)
        try:
            data = decode_file_content(content)
        except (binascii.Error, ValueError) as e:
            raise RestorationError(
                f"Invalid binary payload for {path}", path=path, sandbox_id=sandbox_id
            ) from e

        try:
            await self.provider.write_file(sandbox_id, full_path, data)
        except ProviderError as e:
            raise RestorationError(
                f"Failed to write {path}: {e.message}", path=path, sandbox_id=sandbox_id
            ) from e

    async def restore_sequential(self, sandbox_id: str, files: dict[str, str]) -> int:
        """Per file: ensure the parent directory exists, then write."""
        logger.info(f"[FileRestorer] Restoring {len(files)} files sequentially into {sandbox_id}")

        for path, content in files.items():
            parent = posixpath.dirname(workspace_path(path))
            try:
                await self.provider.mkdir(sandbox_id, parent)
            except ProviderError as e:
                raise RestorationError(
                    f"Failed to create directory for {path}: {e.message}",
                    path=path,
                    sandbox_id=sandbox_id,
                ) from e
            await self._write_one(sandbox_id, path, content)

        return len(files)

    async def restore_batch(self, sandbox_id: str, files: dict[str, str]) -> int:
        """
        Create every parent directory in one request, then write files in
        concurrent batches of BATCH_SIZE.
        """
        paths = list(files)
        directories = sorted({
            posixpath.dirname(workspace_path(path)) for path in paths
        } - {WORKSPACE_ROOT})

        logger.info(
            f"[FileRestorer] Restoring {len(paths)} files in batches of {BATCH_SIZE} "
            f"({len(directories)} directories) into {sandbox_id}"
        )

        if directories:
            try:
                await self.provider.mkdir(sandbox_id, *directories)
            except ProviderError as e:
                raise RestorationError(
                    f"Failed to create directories: {e.message}", sandbox_id=sandbox_id
                ) from e

        written = 0
        for start in range(0, len(paths), BATCH_SIZE):
            batch = paths[start:start + BATCH_SIZE]
            await asyncio.gather(*(
                self._write_one(sandbox_id, path, files[path]) for path in batch
            ))
            written += len(batch)
            logger.info(f"[FileRestorer] Import file restore progress: {written}/{len(paths)}")

        return written

    async def restore_fragment(
        self,
        sandbox_id: str,
        fragment_id: str,
        project_id: str,
        batch: bool = False,
    ) -> int:
        """Restore a stored fragment after checking it belongs to the project."""
        if self.store is None:
            raise RestorationError("No project store configured for fragment restore", sandbox_id=sandbox_id)

        fragment = await self.store.get_fragment(fragment_id)
        if fragment is None:
            raise RestorationError(f"Fragment {fragment_id} not found", sandbox_id=sandbox_id)
        if fragment.project_id != project_id:
            raise RestorationError(
                f"Fragment {fragment_id} does not belong to project {project_id}",
                sandbox_id=sandbox_id,
            )

        if not fragment.files:
            logger.warning(f"[FileRestorer] Fragment {fragment_id} has no files to restore")
            return 0

        if batch:
            return await self.restore_batch(sandbox_id, fragment.files)
        return await self.restore_sequential(sandbox_id, fragment.files)
