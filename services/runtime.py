"""
Service wiring and lifecycle.

Clients are constructed in init_services() and released in close_services(),
both called from the FastAPI lifespan. Nothing connects at import time.
"""

import logging
from dataclasses import dataclass
from typing import Optional

from redis.exceptions import RedisError

from config import Settings, settings as default_settings
from .background import drain_background
from .cache import CacheService
from .config_patcher import ConfigPatcher
from .database import DatabaseService, ProjectStore
from .deployment import DeploymentPipeline
from .dev_server import DevServerController
from .file_restorer import FileRestorer
from .fragments import FragmentService
from .health import SandboxHealthChecker
from .image_selector import ImageSelector
from .provider import ModalSandboxProvider, SandboxProvider
from .recovery import HealthRecoveryLoop
from .sandbox_manager import SandboxProvisioner, TemplateFilesLoader
from .snapshots import SnapshotManager

logger = logging.getLogger(__name__)


@dataclass
class SandboxServices:
    config: Settings
    provider: SandboxProvider
    store: ProjectStore
    cache: Optional[CacheService]
    image_selector: ImageSelector
    restorer: FileRestorer
    patcher: ConfigPatcher
    provisioner: SandboxProvisioner
    dev_server: DevServerController
    snapshots: SnapshotManager
    deployment: DeploymentPipeline
    health: SandboxHealthChecker
    recovery: HealthRecoveryLoop
    fragments: FragmentService


_services: Optional[SandboxServices] = None


def build_services(
    config: Settings,
    provider: SandboxProvider,
    store: ProjectStore,
    cache: Optional[CacheService] = None,
    template_files_loader: Optional[TemplateFilesLoader] = None,
) -> SandboxServices:
    """Assemble components around already-connected clients."""
    image_selector = ImageSelector(store, environment=config.snapshot_environment)
    restorer = FileRestorer(provider, store)
    patcher = ConfigPatcher(provider, port=config.dev_server_port)
    provisioner = SandboxProvisioner(
        provider,
        store,
        image_selector,
        restorer,
        patcher,
        cache=cache,
        template_files_loader=template_files_loader,
        config=config,
    )
    health = SandboxHealthChecker(provider, store, cache=cache)

    return SandboxServices(
        config=config,
        provider=provider,
        store=store,
        cache=cache,
        image_selector=image_selector,
        restorer=restorer,
        patcher=patcher,
        provisioner=provisioner,
        dev_server=DevServerController(provider, store),
        snapshots=SnapshotManager(provider, store, keep_count=config.snapshot_keep_count),
        deployment=DeploymentPipeline(provider, store, config=config),
        health=health,
        recovery=HealthRecoveryLoop(
            health,
            provisioner,
            store,
            strategy=config.recovery_strategy,
            poll_interval_s=config.health_poll_interval_s,
        ),
        fragments=FragmentService(store, restorer),
    )


async def init_services(
    config: Optional[Settings] = None,
    provider: Optional[SandboxProvider] = None,
    store: Optional[ProjectStore] = None,
    cache: Optional[CacheService] = None,
    template_files_loader: Optional[TemplateFilesLoader] = None,
) -> SandboxServices:
    """
    Connect clients and build the process-wide services.

    Without a template_files_loader, templates without a pre-built snapshot
    are rejected with ConfigurationError.
    """
    global _services
    if _services is not None:
        return _services

    config = config or default_settings

    if store is None:
        database = DatabaseService(config.database_url)
        await database.connect()
        store = database

    if cache is None and config.redis_url:
        cache = CacheService(config.redis_url)
        try:
            await cache.connect()
            logger.info("[Runtime] Connected to Redis")
        except (RedisError, OSError) as e:
            logger.warning(f"[Runtime] Redis unavailable, sandbox creation locks are process-local: {e}")
            cache = None

    if provider is None:
        provider = ModalSandboxProvider(config.modal_app_name)

    _services = build_services(config, provider, store, cache, template_files_loader)
    logger.info(f"[Runtime] Services ready (snapshot env: {config.snapshot_environment})")
    return _services


def get_services() -> SandboxServices:
    if _services is None:
        raise RuntimeError("Services not initialized; call init_services() first")
    return _services


async def close_services() -> None:
    """Stop polling, drain background tasks and close clients."""
    global _services
    services = _services
    if services is None:
        return
    _services = None

    await services.recovery.stop_all()
    await drain_background()

    if services.cache is not None:
        try:
            await services.cache.disconnect()
        except (RedisError, OSError) as e:
            logger.warning(f"[Runtime] Error closing Redis: {e}")

    await services.store.close()
    await services.provider.close()
    logger.info("[Runtime] Services closed")
