"""
Remote sandbox provider interface and the Modal implementation.

Every component talks to remote compute through SandboxProvider, never
through a concrete SDK type. ModalSandboxProvider wraps the Modal SDK's
async (.aio) interface; tests use an in-memory fake.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Optional

import modal
import modal.exception
import modal.experimental

from models import ExecResult, SandboxHandle
from .errors import ProviderError, SandboxNotFoundError, TransientProviderError

logger = logging.getLogger(__name__)

WORKSPACE_ROOT = "/workspace"
BASE_IMAGE = "oven/bun:1"
MODAL_IMAGE_ID_PREFIX = "im-"

# Output limits
MAX_OUTPUT_SIZE = 50000  # 50KB


@dataclass
class SandboxSpec:
    """Resource request for a new sandbox."""
    image_ref: str  # registry tag or provider image id ("im-...")
    cpu: float = 1
    memory_mb: int = 2048
    timeout_s: int = 3600
    idle_timeout_s: int = 900
    workdir: str = WORKSPACE_ROOT
    encrypted_ports: list[int] = field(default_factory=lambda: [8000, 5173])
    env: dict[str, str] = field(default_factory=dict)


class SandboxProvider(ABC):
    """Capability interface for a remote sandbox provider."""

    name: str = "provider"

    @abstractmethod
    async def create(self, spec: SandboxSpec) -> SandboxHandle:
        """Create a sandbox and return a live handle."""

    @abstractmethod
    async def from_id(self, sandbox_id: str) -> SandboxHandle:
        """Reconnect to a running sandbox. Raises SandboxNotFoundError if gone."""

    @abstractmethod
    async def terminate(self, sandbox_id: str) -> None:
        """Terminate a sandbox."""

    @abstractmethod
    async def exec(self, sandbox_id: str, command: str, timeout: Optional[int] = None) -> ExecResult:
        """Run a shell command inside the sandbox."""

    @abstractmethod
    async def read_file(self, sandbox_id: str, path: str) -> bytes:
        """Read a file from the sandbox filesystem."""

    @abstractmethod
    async def write_file(self, sandbox_id: str, path: str, data: bytes) -> None:
        """Write a file into the sandbox filesystem (parent dir must exist)."""

    @abstractmethod
    async def tunnels(self, sandbox_id: str) -> dict[int, str]:
        """Active tunnels keyed by container port."""

    @abstractmethod
    async def snapshot_filesystem(self, sandbox_id: str) -> str:
        """Freeze the sandbox filesystem and return the new image id."""

    @abstractmethod
    async def delete_image(self, image_id: str) -> None:
        """Delete a previously created image."""

    async def close(self) -> None:
        """Release provider-side resources held by this client."""

    # Convenience helpers built on the primitives

    async def read_text(self, sandbox_id: str, path: str) -> str:
        data = await self.read_file(sandbox_id, path)
        return data.decode("utf-8")

    async def write_text(self, sandbox_id: str, path: str, content: str) -> None:
        await self.write_file(sandbox_id, path, content.encode("utf-8"))

    async def mkdir(self, sandbox_id: str, *paths: str) -> None:
        if not paths:
            return
        quoted = " ".join(shell_quote(p) for p in paths)
        result = await self.exec(sandbox_id, f"mkdir -p {quoted}")
        if not result.ok:
            raise ProviderError(
                f"mkdir failed: {result.stderr.strip()}",
                details={"paths": len(paths)},
                sandbox_id=sandbox_id,
            )

    async def file_exists(self, sandbox_id: str, path: str) -> bool:
        result = await self.exec(sandbox_id, f"test -f {shell_quote(path)}")
        return result.ok


def shell_quote(value: str) -> str:
    return "'" + value.replace("'", "'\"'\"'") + "'"


# =============================================================================
# Modal Implementation
# =============================================================================

class ModalSandboxProvider(SandboxProvider):
    """
    SandboxProvider backed by Modal Sandboxes.

    Construct once at startup and close at shutdown. Sandbox objects are
    cached by id so repeated operations skip the from_id round-trip.
    """

    name = "modal"

    def __init__(self, app_name: str = "shipper-sandboxes"):
        self.app_name = app_name
        self._app: Optional[Any] = None
        self._sandboxes: dict[str, Any] = {}  # sandbox_id -> modal.Sandbox
        self._lock = asyncio.Lock()

    async def _get_app(self) -> Any:
        """Get or create the Modal app."""
        if self._app is None:
            async with self._lock:
                if self._app is None:
                    self._app = await modal.App.lookup.aio(self.app_name, create_if_missing=True)
                    logger.info(f"[ModalProvider] Using Modal app: {self.app_name}")
        return self._app

    async def _get_sandbox(self, sandbox_id: str) -> Any:
        sandbox = self._sandboxes.get(sandbox_id)
        if sandbox is None:
            await self.from_id(sandbox_id)
            sandbox = self._sandboxes[sandbox_id]
        return sandbox

    @staticmethod
    def _image_for(image_ref: str) -> Any:
        if image_ref.startswith(MODAL_IMAGE_ID_PREFIX):
            return modal.Image.from_id(image_ref)
        return modal.Image.from_registry(image_ref)

    @staticmethod
    def _translate(exc: Exception, action: str, sandbox_id: Optional[str] = None) -> ProviderError:
        """Map Modal SDK exceptions onto the provider error taxonomy."""
        if isinstance(exc, ProviderError):
            return exc
        message = f"{action} failed: {exc}"
        if isinstance(exc, modal.exception.NotFoundError):
            return SandboxNotFoundError(message, sandbox_id=sandbox_id)
        if isinstance(exc, (
            modal.exception.ConnectionError,
            modal.exception.TimeoutError,
            asyncio.TimeoutError,
            ConnectionError,
        )):
            return TransientProviderError(message, sandbox_id=sandbox_id)
        return ProviderError(message, sandbox_id=sandbox_id)

    async def _read_tunnels(self, sandbox: Any) -> dict[int, str]:
        tunnels = await sandbox.tunnels.aio()
        return {int(port): tunnel.url for port, tunnel in tunnels.items()}

    async def create(self, spec: SandboxSpec) -> SandboxHandle:
        try:
            app = await self._get_app()
            sandbox = await modal.Sandbox.create.aio(
                app=app,
                image=self._image_for(spec.image_ref),
                timeout=spec.timeout_s,
                idle_timeout=spec.idle_timeout_s,
                workdir=spec.workdir,
                secrets=[modal.Secret.from_dict(spec.env)] if spec.env else [],
                memory=spec.memory_mb,
                cpu=spec.cpu,
                encrypted_ports=spec.encrypted_ports,
            )
        except Exception as e:
            raise self._translate(e, "Sandbox create") from e

        sandbox_id = sandbox.object_id
        self._sandboxes[sandbox_id] = sandbox
        logger.info(f"[ModalProvider] Created sandbox {sandbox_id} from {spec.image_ref}")
        return SandboxHandle(sandbox_id=sandbox_id, workdir=spec.workdir)

    async def from_id(self, sandbox_id: str) -> SandboxHandle:
        try:
            sandbox = await modal.Sandbox.from_id.aio(sandbox_id)
            # poll() returns None while the sandbox is still running
            exit_code = await sandbox.poll.aio()
        except Exception as e:
            self._sandboxes.pop(sandbox_id, None)
            raise self._translate(e, "Sandbox reconnect", sandbox_id) from e

        if exit_code is not None:
            self._sandboxes.pop(sandbox_id, None)
            raise SandboxNotFoundError(
                f"Sandbox has exited with code {exit_code}",
                sandbox_id=sandbox_id,
            )

        self._sandboxes[sandbox_id] = sandbox
        return SandboxHandle(sandbox_id=sandbox_id, workdir=WORKSPACE_ROOT)

    async def terminate(self, sandbox_id: str) -> None:
        try:
            sandbox = await self._get_sandbox(sandbox_id)
            await sandbox.terminate.aio()
        except Exception as e:
            raise self._translate(e, "Sandbox terminate", sandbox_id) from e
        finally:
            self._sandboxes.pop(sandbox_id, None)
        logger.info(f"[ModalProvider] Terminated sandbox {sandbox_id}")

    async def exec(self, sandbox_id: str, command: str, timeout: Optional[int] = None) -> ExecResult:
        try:
            sandbox = await self._get_sandbox(sandbox_id)
            kwargs = {"timeout": timeout} if timeout else {}
            process = await sandbox.exec.aio("bash", "-c", command, **kwargs)
            stdout = await process.stdout.read.aio()
            stderr = await process.stderr.read.aio()
            exit_code = await process.wait.aio()
        except Exception as e:
            raise self._translate(e, "Sandbox exec", sandbox_id) from e

        return ExecResult(
            stdout=stdout[:MAX_OUTPUT_SIZE],
            stderr=stderr[:MAX_OUTPUT_SIZE],
            exit_code=exit_code if exit_code is not None else 0,
        )

    async def read_file(self, sandbox_id: str, path: str) -> bytes:
        try:
            sandbox = await self._get_sandbox(sandbox_id)
            handle = await sandbox.open.aio(path, "rb")
            try:
                return await handle.read.aio()
            finally:
                await handle.close.aio()
        except Exception as e:
            raise self._translate(e, f"Read {path}", sandbox_id) from e

    async def write_file(self, sandbox_id: str, path: str, data: bytes) -> None:
        try:
            sandbox = await self._get_sandbox(sandbox_id)
            handle = await sandbox.open.aio(path, "wb")
            try:
                await handle.write.aio(data)
            finally:
                await handle.close.aio()
        except Exception as e:
            raise self._translate(e, f"Write {path}", sandbox_id) from e

    async def tunnels(self, sandbox_id: str) -> dict[int, str]:
        try:
            sandbox = await self._get_sandbox(sandbox_id)
            return await self._read_tunnels(sandbox)
        except Exception as e:
            raise self._translate(e, "Tunnel lookup", sandbox_id) from e

    async def snapshot_filesystem(self, sandbox_id: str) -> str:
        try:
            sandbox = await self._get_sandbox(sandbox_id)
            image = await sandbox.snapshot_filesystem.aio()
        except Exception as e:
            raise self._translate(e, "Filesystem snapshot", sandbox_id) from e
        logger.info(f"[ModalProvider] Snapshot {image.object_id} created from {sandbox_id}")
        return image.object_id

    async def delete_image(self, image_id: str) -> None:
        try:
            await modal.experimental.image_delete.aio(image_id)
        except Exception as e:
            raise self._translate(e, f"Image delete {image_id}") from e
        logger.info(f"[ModalProvider] Deleted image {image_id}")

    async def close(self) -> None:
        self._sandboxes.clear()
        self._app = None
        logger.info("[ModalProvider] Closed")
