"""
Sandbox provisioning.

Creates or reconnects a project's sandbox with features:
- Reconnection retry with exponential backoff (transient errors only)
- Stale identity clearing when the remote sandbox is gone
- Image selection (recovery > fragment snapshot > template snapshot > base)
- Redis distributed locking so only one instance creates a project's sandbox
- File restoration and imported-project fixups after a base-image boot

Each sandbox gets:
- 1 CPU core, 2GB RAM
- 1 hour absolute timeout, 15 minute idle timeout
- Encrypted tunnels for ports 8000 and 5173
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import AsyncIterator, Awaitable, Callable, Optional

from redis.exceptions import RedisError

from config import Settings, settings as default_settings
from models import ExecResult, Project, SandboxHandle
from .cache import CacheService
from .config_patcher import BASE44_SOURCE, ConfigPatcher
from .database import ProjectStore, utcnow
from .errors import ConfigurationError, ProviderError, ProvisioningError
from .file_restorer import FileRestorer
from .image_selector import ImageSelection, ImageSelector
from .provider import SandboxProvider, SandboxSpec

logger = logging.getLogger(__name__)

# =============================================================================
# Configuration Constants
# =============================================================================

# Reconnection configuration
RECONNECT_MAX_RETRIES = 2  # Total 3 attempts (1 initial + 2 retries)
RECONNECT_RETRY_DELAY_S = 1  # Base delay, doubles each retry

# Delay between sandbox creation and tunnel lookup
TUNNEL_DELAY_S = 2

# Imported projects install dependencies after restore
DEPENDENCY_INSTALL_TIMEOUT_S = 120

# Distributed lock wait
LOCK_WAIT_TIMEOUT_S = 120
LOCK_RETRY_INTERVAL_S = 1.0

TemplateFilesLoader = Callable[[str], Awaitable[dict[str, str]]]


@dataclass
class ProvisionOptions:
    """Options for get_or_create()."""
    fragment_id: Optional[str] = None
    template_name: Optional[str] = None
    recovery_image_id: Optional[str] = None
    force_new: bool = False
    files: Optional[dict[str, str]] = None  # restored when booting from the base image
    imported_from: Optional[str] = None


class SandboxProvisioner:
    """
    Creates, reconnects and terminates project sandboxes.

    The Project record's sandbox identity is written only after the remote
    sandbox is confirmed alive, and always as an id+url pair.
    """

    def __init__(
        self,
        provider: SandboxProvider,
        store: ProjectStore,
        image_selector: ImageSelector,
        restorer: FileRestorer,
        patcher: ConfigPatcher,
        cache: Optional[CacheService] = None,
        template_files_loader: Optional[TemplateFilesLoader] = None,
        config: Optional[Settings] = None,
        tunnel_delay_s: float = TUNNEL_DELAY_S,
        retry_delay_s: float = RECONNECT_RETRY_DELAY_S,
        lock_wait_timeout_s: float = LOCK_WAIT_TIMEOUT_S,
    ):
        self.provider = provider
        self.store = store
        self.image_selector = image_selector
        self.restorer = restorer
        self.patcher = patcher
        self.cache = cache
        self.template_files_loader = template_files_loader
        self.config = config or default_settings
        self.tunnel_delay_s = tunnel_delay_s
        self.retry_delay_s = retry_delay_s
        self.lock_wait_timeout_s = lock_wait_timeout_s
        self._local_locks: dict[str, asyncio.Lock] = {}

    # =========================================================================
    # Public API
    # =========================================================================

    async def get_or_create(
        self,
        project_id: str,
        options: Optional[ProvisionOptions] = None,
    ) -> SandboxHandle:
        """Reconnect to the project's sandbox, or create a new one."""
        options = options or ProvisionOptions()
        project = await self._load_project(project_id)

        observed_id = project.sandbox_id

        if observed_id and not options.force_new:
            handle = await self._reconnect(project, observed_id, options)
            if handle is not None:
                return handle
            observed_id = None

        async with self._creation_lock(project_id):
            # Another instance may have created a sandbox while we waited
            latest = await self._load_project(project_id)
            if (
                not options.force_new
                and latest.sandbox_id
                and latest.sandbox_id != observed_id
            ):
                logger.info(f"[SandboxProvisioner] Found sandbox {latest.sandbox_id} created while waiting for lock")
                handle = await self._reconnect(latest, latest.sandbox_id, options)
                if handle is not None:
                    return handle
                latest = await self._load_project(project_id)

            return await self._create(latest, options)

    async def terminate(self, sandbox_id: str) -> int:
        """
        Best-effort remote termination. The sandbox identity is always cleared
        from every project referencing it. Returns the number of projects cleared.
        """
        try:
            await self.provider.terminate(sandbox_id)
            logger.info(f"[SandboxProvisioner] Terminated sandbox {sandbox_id}")
        except Exception as e:
            logger.warning(f"[SandboxProvisioner] Failed to terminate sandbox {sandbox_id}: {e}")

        cleared = await self.store.clear_sandbox_identity_by_sandbox(sandbox_id)
        logger.info(f"[SandboxProvisioner] Cleared sandbox {sandbox_id} from {cleared} project(s)")
        return cleared

    async def execute(self, sandbox_id: str, command: str, timeout: Optional[int] = None) -> ExecResult:
        """Run a shell command in the sandbox."""
        result = await self.provider.exec(sandbox_id, command, timeout=timeout)
        if not result.ok:
            logger.debug(f"[SandboxProvisioner] Command exited {result.exit_code} in {sandbox_id}: {command[:80]}")
        return result

    # =========================================================================
    # Reconnection
    # =========================================================================

    async def _load_project(self, project_id: str) -> Project:
        project = await self.store.get_project(project_id)
        if project is None:
            raise ConfigurationError(f"Project {project_id} not found")
        return project

    async def _reconnect_with_retry(self, sandbox_id: str) -> SandboxHandle:
        """from_id with exponential backoff; not-found errors are raised immediately."""
        for attempt in range(RECONNECT_MAX_RETRIES + 1):
            try:
                return await self.provider.from_id(sandbox_id)
            except ProviderError as e:
                if not e.retryable or attempt >= RECONNECT_MAX_RETRIES:
                    raise
                delay = self.retry_delay_s * (2 ** attempt)
                logger.warning(
                    f"[SandboxProvisioner] Reconnect attempt {attempt + 1} for {sandbox_id} failed: {e}, "
                    f"retrying in {delay}s"
                )
                await asyncio.sleep(delay)
        raise ProvisioningError("Reconnect retries exhausted", sandbox_id=sandbox_id)

    async def _reconnect(
        self,
        project: Project,
        sandbox_id: str,
        options: ProvisionOptions,
    ) -> Optional[SandboxHandle]:
        """Returns a live handle, or None after clearing a stale identity."""
        try:
            handle = await self._reconnect_with_retry(sandbox_id)
        except ProviderError as e:
            logger.info(f"[SandboxProvisioner] Sandbox {sandbox_id} unavailable ({e.message}), clearing stale identity")
            await self.store.clear_sandbox_identity(project.id)
            return None

        try:
            handle.tunnels = await self.provider.tunnels(sandbox_id)
        except ProviderError as e:
            logger.warning(f"[SandboxProvisioner] Tunnel lookup failed for {sandbox_id}: {e}")

        if not project.sandbox_url:
            url = handle.url_for(self.config.dev_server_port)
            if url:
                await self.store.set_sandbox_identity(project.id, sandbox_id, url)
                logger.info(f"[SandboxProvisioner] Restored missing URL for {sandbox_id}: {url}")

        await self.patcher.apply_for_project(sandbox_id, options.imported_from or project.imported_from)

        logger.info(f"[SandboxProvisioner] Reconnected to sandbox {sandbox_id} for project {project.id}")
        return handle

    # =========================================================================
    # Distributed Locking
    # =========================================================================

    async def _acquire_distributed_lock(self, project_id: str) -> bool:
        """
        Acquire the Redis creation lock. Returns False (proceed without lock)
        when Redis is unavailable or the wait times out.
        """
        if self.cache is None:
            return False

        resource = f"sandbox:{project_id}"
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.lock_wait_timeout_s

        while loop.time() < deadline:
            try:
                if await self.cache.acquire_lock(resource):
                    logger.info(f"[SandboxProvisioner] Acquired lock for lock:{resource}")
                    return True
            except (RedisError, OSError) as e:
                # On Redis error, allow operation to proceed (graceful degradation)
                logger.warning(f"[SandboxProvisioner] Redis error acquiring lock: {e}, proceeding without lock")
                return False

            logger.debug(f"[SandboxProvisioner] Lock held by another process for {project_id}, retrying...")
            await asyncio.sleep(LOCK_RETRY_INTERVAL_S)

        logger.warning(f"[SandboxProvisioner] Lock acquisition timed out after {self.lock_wait_timeout_s}s for {project_id}")
        return False

    async def _release_distributed_lock(self, project_id: str) -> None:
        if self.cache is None:
            return
        try:
            await self.cache.release_lock(f"sandbox:{project_id}")
        except (RedisError, OSError) as e:
            logger.warning(f"[SandboxProvisioner] Failed to release lock for {project_id}: {e}")

    @asynccontextmanager
    async def _creation_lock(self, project_id: str) -> AsyncIterator[None]:
        local = self._local_locks.setdefault(project_id, asyncio.Lock())
        async with local:
            acquired = await self._acquire_distributed_lock(project_id)
            try:
                yield
            finally:
                if acquired:
                    await self._release_distributed_lock(project_id)

    # =========================================================================
    # Creation
    # =========================================================================

    def _sandbox_spec(self, image_ref: str, project_id: str) -> SandboxSpec:
        return SandboxSpec(
            image_ref=image_ref,
            cpu=self.config.sandbox_cpu,
            memory_mb=self.config.sandbox_memory_mb,
            timeout_s=self.config.sandbox_timeout_s,
            idle_timeout_s=self.config.sandbox_idle_timeout_s,
            encrypted_ports=list(self.config.sandbox_exposed_ports),
            env={"NODE_ENV": "development", "PROJECT_ID": project_id},
        )

    def _has_restore_source(self, options: ProvisionOptions, selection: ImageSelection) -> bool:
        return bool(
            options.fragment_id
            or options.files
            or (self.template_files_loader is not None and selection.template_name)
        )

    async def _create(self, project: Project, options: ProvisionOptions) -> SandboxHandle:
        selection = await self.image_selector.select(
            recovery_image_id=options.recovery_image_id,
            fragment_id=options.fragment_id,
            template_name=options.template_name or project.template_name,
        )

        # A bare base image is never handed out
        if selection.restoration_needed and not self._has_restore_source(options, selection):
            logger.error(
                f"[SandboxProvisioner] Template {selection.template_name} has no snapshot and "
                f"project {project.id} has no files to restore"
            )
            raise ConfigurationError(
                f'Template "{selection.template_name}" does not have a snapshot for environment '
                f'"{self.image_selector.environment}". All templates must have pre-built snapshots.',
                details={"project_id": project.id, "template_name": selection.template_name},
            )

        if project.sandbox_id:
            # force_new: stale or replaced identity must not survive a failed create
            await self.store.clear_sandbox_identity(project.id)

        spec = self._sandbox_spec(selection.image_ref, project.id)
        handle: Optional[SandboxHandle] = None
        try:
            handle = await self.provider.create(spec)
            await asyncio.sleep(self.tunnel_delay_s)
            handle.tunnels = await self.provider.tunnels(handle.sandbox_id)
        except ProviderError as e:
            if handle is not None:
                await self._discard(handle.sandbox_id)
            logger.error(f"[SandboxProvisioner] Failed to create sandbox for {project.id}: {e}")
            raise ProvisioningError(
                f"Failed to create sandbox: {e.message}",
                details={"project_id": project.id, "image": selection.image_ref},
            ) from e

        port = self.config.dev_server_port
        url = handle.url_for(port)
        if not url:
            await self._discard(handle.sandbox_id)
            logger.error(
                f"[SandboxProvisioner] Sandbox {handle.sandbox_id} has no tunnel for port {port} "
                f"(available: {sorted(handle.tunnels)})"
            )
            raise ProvisioningError(
                f"No tunnel for port {port} on new sandbox",
                sandbox_id=handle.sandbox_id,
                details={"project_id": project.id, "available_ports": sorted(handle.tunnels)},
            )

        await self.store.set_sandbox_identity(project.id, handle.sandbox_id, url, created_at=utcnow())
        logger.info(
            f"[SandboxProvisioner] Created sandbox {handle.sandbox_id} for project {project.id} "
            f"from {selection.source} image {selection.image_ref}"
        )

        imported_from = options.imported_from or project.imported_from
        if selection.restoration_needed:
            await self._restore(handle, project, options, selection, imported_from)
        else:
            await self.patcher.apply_for_project(handle.sandbox_id, imported_from)

        return handle

    async def _discard(self, sandbox_id: str) -> None:
        try:
            await self.provider.terminate(sandbox_id)
        except ProviderError as e:
            logger.warning(f"[SandboxProvisioner] Failed to discard half-created sandbox {sandbox_id}: {e}")

    # =========================================================================
    # Restoration
    # =========================================================================

    async def _restore(
        self,
        handle: SandboxHandle,
        project: Project,
        options: ProvisionOptions,
        selection: ImageSelection,
        imported_from: Optional[str],
    ) -> None:
        sandbox_id = handle.sandbox_id
        imported = bool(imported_from)

        if options.fragment_id:
            await self.restorer.restore_fragment(sandbox_id, options.fragment_id, project.id, batch=imported)
        elif options.files:
            if imported:
                await self.restorer.restore_batch(sandbox_id, options.files)
            else:
                await self.restorer.restore_sequential(sandbox_id, options.files)
        elif self.template_files_loader is not None and selection.template_name:
            files = await self.template_files_loader(selection.template_name)
            await self.restorer.restore_sequential(sandbox_id, files)

        if imported:
            await self._install_dependencies(sandbox_id, imported_from)
            await self.patcher.apply_for_project(sandbox_id, imported_from)

    async def _install_dependencies(self, sandbox_id: str, imported_from: Optional[str]) -> None:
        """Install dependencies for an imported project. Failures are non-fatal."""
        commands = ["cd /workspace && bun install"]
        if imported_from == BASE44_SOURCE:
            commands.append("cd /workspace && bun add @tanstack/react-query")

        for command in commands:
            try:
                result = await self.provider.exec(sandbox_id, command, timeout=DEPENDENCY_INSTALL_TIMEOUT_S)
            except ProviderError as e:
                logger.warning(f"[SandboxProvisioner] '{command}' failed in {sandbox_id}: {e}")
                continue
            if not result.ok:
                logger.warning(
                    f"[SandboxProvisioner] '{command}' exited {result.exit_code} in {sandbox_id}: "
                    f"{result.stderr.strip()[:500]}"
                )
