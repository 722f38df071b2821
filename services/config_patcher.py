"""
Idempotent patches for generated config files in imported projects.

Each condition check and each mutation is a pure function over the file
text, so every step can be re-applied without changing an already patched
file. ConfigPatcher does the sandbox I/O and never raises.
"""

import logging
import re
from typing import Optional

from .provider import WORKSPACE_ROOT, SandboxProvider

logger = logging.getLogger(__name__)

DEV_SERVER_PORT = 5173

VITE_CONFIG_CANDIDATES = ("vite.config.ts", "vite.config.js", "vite.config.mjs")

BASE44_CLIENT_CANDIDATES = (
    "src/api/base44Client.js",
    "src/lib/base44Client.js",
    "src/base44Client.js",
    "lib/base44Client.js",
)

BASE44_SOURCE = "BASE44"

# Tunnel domain suffix plus known aliases
ALLOWED_HOSTS = ('".modal.host"', '"shipper.now"', '".localhost"')

NETWORK_HOST_RE = re.compile(r"""host:\s*['"](?:0\.0\.0\.0|::)['"]""")
ANY_STRING_HOST_RE = re.compile(r"""(?<![A-Za-z])host:\s*['"][^'"]*['"]""")
ALLOWED_HOSTS_TRUE_RE = re.compile(r"allowedHosts:\s*true")
ALLOWED_HOSTS_ARRAY_RE = re.compile(r"allowedHosts:\s*\[([\s\S]*?)\]")
SERVER_BLOCK_RE = re.compile(r"server:\s*\{")
EXPORT_DEFAULT_RE = re.compile(r"export default\s+defineConfig\(\{")
ANY_PORT_RE = re.compile(r"port:\s*\d+")

REQUIRES_AUTH_FALSE_RE = re.compile(r"requiresAuth:\s*false")
REQUIRES_AUTH_TRUE_RE = re.compile(r"requiresAuth:\s*true")


# =============================================================================
# Dev-server config: condition checks
# =============================================================================

def has_modal_host(content: str) -> bool:
    return "'.modal.host'" in content or '".modal.host"' in content


def has_network_host(content: str) -> bool:
    return NETWORK_HOST_RE.search(content) is not None


def has_correct_port(content: str, port: int = DEV_SERVER_PORT) -> bool:
    return re.search(rf"port:\s*{port}\b", content) is not None


def is_vite_config_patched(content: str, port: int = DEV_SERVER_PORT) -> bool:
    return has_modal_host(content) and has_network_host(content) and has_correct_port(content, port)


# =============================================================================
# Dev-server config: mutations
# =============================================================================

def _missing_hosts(existing: str) -> list[str]:
    return [host for host in ALLOWED_HOSTS if host not in existing and host.replace('"', "'") not in existing]


def patch_allowed_hosts(content: str, port: int = DEV_SERVER_PORT) -> str:
    """Widen or create the allowed-hosts list so tunnel domains are accepted."""
    if has_modal_host(content):
        return content

    # allowedHosts: true already accepts every host
    if ALLOWED_HOSTS_TRUE_RE.search(content):
        return content

    match = ALLOWED_HOSTS_ARRAY_RE.search(content)
    if match:
        inner = match.group(1)
        additions = _missing_hosts(inner)
        trimmed = re.sub(r"[\s,]*$", "", inner)
        if "\n" in inner:
            entries = [trimmed] if trimmed.strip() else []
            entries += [f"\n    {host}" for host in additions]
            replacement = "allowedHosts: [" + ",".join(entries) + "\n  ]"
        else:
            entries = [trimmed.strip()] if trimmed.strip() else []
            entries += additions
            replacement = "allowedHosts: [" + ", ".join(entries) + "]"
        return content[:match.start()] + replacement + content[match.end():]

    host_list = ", ".join(ALLOWED_HOSTS)

    if SERVER_BLOCK_RE.search(content):
        return SERVER_BLOCK_RE.sub(
            f"server: {{\n    allowedHosts: [{host_list}],",
            content,
            count=1,
        )

    if EXPORT_DEFAULT_RE.search(content):
        return EXPORT_DEFAULT_RE.sub(
            "export default defineConfig({\n"
            "  server: {\n"
            "    host: '0.0.0.0',\n"
            f"    port: {port},\n"
            f"    allowedHosts: [{host_list}],\n"
            "  },",
            content,
            count=1,
        )

    # Unexpected format: leave it alone
    return content


def ensure_network_host(content: str) -> str:
    """Make the dev server bind to all interfaces."""
    if has_network_host(content):
        return content

    if ANY_STRING_HOST_RE.search(content):
        return ANY_STRING_HOST_RE.sub("host: '0.0.0.0'", content, count=1)

    if ALLOWED_HOSTS_TRUE_RE.search(content):
        return ALLOWED_HOSTS_TRUE_RE.sub(
            "host: '0.0.0.0',\n    allowedHosts: true",
            content,
            count=1,
        )

    if SERVER_BLOCK_RE.search(content):
        return SERVER_BLOCK_RE.sub("server: {\n    host: '0.0.0.0',", content, count=1)

    return content


def ensure_dev_port(content: str, port: int = DEV_SERVER_PORT) -> str:
    """Make the dev server listen on the tunnel's expected port."""
    if has_correct_port(content, port):
        return content

    if ANY_PORT_RE.search(content):
        return ANY_PORT_RE.sub(f"port: {port}", content, count=1)

    if SERVER_BLOCK_RE.search(content):
        return SERVER_BLOCK_RE.sub(f"server: {{\n    port: {port},", content, count=1)

    return content


def patch_vite_config(content: str, port: int = DEV_SERVER_PORT) -> str:
    """Apply allowed-hosts, network-host and port patches in order."""
    if is_vite_config_patched(content, port):
        return content

    content = patch_allowed_hosts(content, port)
    content = ensure_network_host(content)
    content = ensure_dev_port(content, port)
    return content


# =============================================================================
# Legacy auth-client config
# =============================================================================

def patch_base44_client(content: str) -> str:
    """Turn off required auth in a Base44 client; ambiguous files are left alone."""
    if REQUIRES_AUTH_FALSE_RE.search(content):
        return content
    if REQUIRES_AUTH_TRUE_RE.search(content):
        return REQUIRES_AUTH_TRUE_RE.sub("requiresAuth: false", content)
    return content


# =============================================================================
# Sandbox I/O
# =============================================================================

class ConfigPatcher:
    """Applies the config patches inside a sandbox. Failures are logged, never raised."""

    def __init__(self, provider: SandboxProvider, port: int = DEV_SERVER_PORT):
        self.provider = provider
        self.port = port

    async def _find_file(self, sandbox_id: str, candidates: tuple[str, ...]) -> Optional[str]:
        for candidate in candidates:
            path = f"{WORKSPACE_ROOT}/{candidate}"
            if await self.provider.file_exists(sandbox_id, path):
                return path
        return None

    async def patch_vite(self, sandbox_id: str) -> bool:
        path = await self._find_file(sandbox_id, VITE_CONFIG_CANDIDATES)
        if path is None:
            logger.debug(f"[ConfigPatcher] No vite config found in {sandbox_id}")
            return False

        original = await self.provider.read_text(sandbox_id, path)
        patched = patch_vite_config(original, self.port)
        if patched == original:
            logger.debug(f"[ConfigPatcher] {path} already configured")
            return False

        await self.provider.write_text(sandbox_id, path, patched)
        logger.info(f"[ConfigPatcher] Patched {path} for sandbox networking")
        return True

    async def patch_auth_client(self, sandbox_id: str) -> bool:
        path = await self._find_file(sandbox_id, BASE44_CLIENT_CANDIDATES)
        if path is None:
            return False

        original = await self.provider.read_text(sandbox_id, path)
        patched = patch_base44_client(original)
        if patched == original:
            if "createClient(" in original and not REQUIRES_AUTH_FALSE_RE.search(original):
                logger.info(f"[ConfigPatcher] {path} has no requiresAuth flag, leaving as-is")
            return False

        await self.provider.write_text(sandbox_id, path, patched)
        logger.info(f"[ConfigPatcher] Disabled requiresAuth in {path}")
        return True

    async def apply_for_project(self, sandbox_id: str, imported_from: Optional[str]) -> None:
        """Best-effort fixups for imported projects; native projects are skipped."""
        if not imported_from:
            return

        try:
            await self.patch_vite(sandbox_id)
        except Exception as e:
            logger.warning(f"[ConfigPatcher] Vite config patch failed for {sandbox_id}: {e}")

        if imported_from != BASE44_SOURCE:
            return

        try:
            await self.patch_auth_client(sandbox_id)
        except Exception as e:
            logger.warning(f"[ConfigPatcher] Auth client patch failed for {sandbox_id}: {e}")
