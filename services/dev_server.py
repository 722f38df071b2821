"""
Dev server control inside a sandbox.

start() launches the dev server in the background, waits a fixed interval
and reads the tunnel for the port. Monitoring injection is scheduled as a
detached task so its failure never fails start().
"""

import asyncio
import logging
import re
from typing import Optional

from config import settings
from .background import spawn_background
from .database import ProjectStore
from .errors import DevServerError, ProviderError
from .monitor import (
    MONITOR_DIR,
    MONITOR_SCRIPT_PATH,
    default_allowed_origins,
    generate_monitor_script,
    has_monitor_tag,
    inject_monitor_tag,
)
from .provider import WORKSPACE_ROOT, SandboxProvider

logger = logging.getLogger(__name__)

DEV_SERVER_LOG = "/tmp/vite.log"
INDEX_HTML_PATH = f"{WORKSPACE_ROOT}/index.html"

LAUNCH_DELAY_S = 5        # before reading the tunnel table
MONITOR_DELAY_S = 2       # let the dev server write index.html first
READY_TIMEOUT_S = 30
READY_POLL_INTERVAL_S = 1

PID_RE = re.compile(r"(\d+)\s*$")


def dev_server_command(port: int) -> str:
    """Launch the dev server detached, logging to DEV_SERVER_LOG, and print its PID."""
    return (
        f"cd {WORKSPACE_ROOT} && "
        f"nohup bun run dev --host 0.0.0.0 --port {port} > {DEV_SERVER_LOG} 2>&1 & echo $!"
    )


class DevServerController:
    """Starts and health-checks the app process inside a sandbox."""

    def __init__(
        self,
        provider: SandboxProvider,
        store: ProjectStore,
        allowed_origins: Optional[list[str]] = None,
        launch_delay_s: float = LAUNCH_DELAY_S,
        monitor_delay_s: float = MONITOR_DELAY_S,
    ):
        self.provider = provider
        self.store = store
        self.allowed_origins = allowed_origins or default_allowed_origins(settings.next_public_app_url)
        self.launch_delay_s = launch_delay_s
        self.monitor_delay_s = monitor_delay_s

    async def start(self, sandbox_id: str, project_id: str, port: int | None = None) -> str:
        """Launch the dev server and return its tunnel URL."""
        port = port or settings.dev_server_port

        try:
            result = await self.provider.exec(sandbox_id, dev_server_command(port))
        except ProviderError as e:
            raise DevServerError(
                f"Failed to launch dev server: {e.message}", port=port, sandbox_id=sandbox_id
            ) from e
        if not result.ok:
            raise DevServerError(
                f"Failed to launch dev server: {result.stderr.strip()}",
                port=port,
                sandbox_id=sandbox_id,
            )

        match = PID_RE.search(result.stdout.strip())
        if match:
            logger.info(f"[DevServer] Started dev server in {sandbox_id} with PID {match.group(1)}")
        else:
            logger.warning(f"[DevServer] Could not read dev server PID in {sandbox_id}")

        await asyncio.sleep(self.launch_delay_s)

        try:
            tunnels = await self.provider.tunnels(sandbox_id)
        except ProviderError as e:
            raise DevServerError(
                f"Failed to read tunnels: {e.message}", port=port, sandbox_id=sandbox_id
            ) from e
        url = tunnels.get(port)
        if not url:
            available = ", ".join(str(p) for p in sorted(tunnels)) or "none"
            raise DevServerError(
                f"No tunnel available for port {port}. Available ports: {available}",
                port=port,
                sandbox_id=sandbox_id,
            )

        await self.store.set_sandbox_identity(project_id, sandbox_id, url)
        logger.info(f"[DevServer] Dev server for {project_id} available at {url}")

        spawn_background(self.inject_monitoring(sandbox_id), name=f"monitor-inject:{sandbox_id}")
        return url

    async def wait_until_ready(
        self,
        sandbox_id: str,
        timeout_s: float = READY_TIMEOUT_S,
        interval_s: float = READY_POLL_INTERVAL_S,
    ) -> bool:
        """Poll for the generated index.html. Returns False on timeout instead of raising."""
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout_s

        while True:
            try:
                if await self.provider.file_exists(sandbox_id, INDEX_HTML_PATH):
                    return True
            except ProviderError as e:
                logger.debug(f"[DevServer] Readiness check failed for {sandbox_id}: {e}")

            if loop.time() + interval_s > deadline:
                break
            await asyncio.sleep(interval_s)

        logger.warning(f"[DevServer] {INDEX_HTML_PATH} not present after {timeout_s}s in {sandbox_id}")
        return False

    async def inject_monitoring(self, sandbox_id: str) -> bool:
        """
        Write the monitor script and reference it from index.html.

        Returns True if index.html was modified, False if it already had the tag.
        """
        await asyncio.sleep(self.monitor_delay_s)

        await self.provider.mkdir(sandbox_id, MONITOR_DIR)
        await self.provider.write_text(
            sandbox_id,
            MONITOR_SCRIPT_PATH,
            generate_monitor_script(self.allowed_origins),
        )

        html = await self.provider.read_text(sandbox_id, INDEX_HTML_PATH)
        if has_monitor_tag(html):
            logger.debug(f"[DevServer] Monitor already referenced in {sandbox_id}")
            return False

        await self.provider.write_text(sandbox_id, INDEX_HTML_PATH, inject_monitor_tag(html))
        logger.info(f"[DevServer] Injected monitor script into {sandbox_id}")
        return True
