"""Tests for imported-project config patches."""

import pytest

from services.config_patcher import (
    BASE44_SOURCE,
    ConfigPatcher,
    has_modal_host,
    is_vite_config_patched,
    patch_allowed_hosts,
    patch_base44_client,
    patch_vite_config,
)

PLAIN_CONFIG = """import { defineConfig } from 'vite'
import react from '@vitejs/plugin-react'

export default defineConfig({
  plugins: [react()],
})
"""

SERVER_CONFIG = """import { defineConfig } from 'vite'

export default defineConfig({
  server: {
    host: 'localhost',
    port: 3000,
  },
})
"""

ARRAY_CONFIG = """export default defineConfig({
  server: {
    host: '0.0.0.0',
    port: 5173,
    allowedHosts: ['example.com'],
  },
})
"""


class TestPatchViteConfig:
    """Pure vite config transformations."""

    def test_adds_server_block(self):
        patched = patch_vite_config(PLAIN_CONFIG)
        assert has_modal_host(patched)
        assert "host: '0.0.0.0'" in patched
        assert "port: 5173" in patched
        assert is_vite_config_patched(patched)

    def test_existing_server_block_rewritten(self):
        patched = patch_vite_config(SERVER_CONFIG)
        assert "host: '0.0.0.0'" in patched
        assert "port: 5173" in patched
        assert "port: 3000" not in patched
        assert has_modal_host(patched)

    def test_array_is_extended(self):
        patched = patch_allowed_hosts(ARRAY_CONFIG)
        assert "'example.com'" in patched
        assert '".modal.host"' in patched
        assert '"shipper.now"' in patched

    def test_allowed_hosts_true_is_kept(self):
        content = "export default defineConfig({\n  server: {\n    allowedHosts: true,\n  },\n})\n"
        assert patch_allowed_hosts(content) == content
        patched = patch_vite_config(content)
        assert "allowedHosts: true" in patched
        assert "host: '0.0.0.0'" in patched

    @pytest.mark.parametrize("content", [PLAIN_CONFIG, SERVER_CONFIG, ARRAY_CONFIG])
    def test_patch_is_idempotent(self, content):
        once = patch_vite_config(content)
        assert patch_vite_config(once) == once

    def test_unrecognized_format_untouched(self):
        content = "module.exports = {}\n"
        assert patch_vite_config(content) == content


class TestPatchBase44Client:
    """requiresAuth flag handling."""

    def test_true_becomes_false(self):
        content = "export const base44 = createClient({ appId: 'x', requiresAuth: true })"
        assert "requiresAuth: false" in patch_base44_client(content)

    def test_already_false_untouched(self):
        content = "createClient({ requiresAuth: false })"
        assert patch_base44_client(content) == content

    def test_no_flag_untouched(self):
        content = "createClient({ appId: 'x' })"
        assert patch_base44_client(content) == content


class TestConfigPatcher:
    """Sandbox I/O around the pure patches."""

    @pytest.mark.asyncio
    async def test_native_projects_are_skipped(self, provider):
        sandbox = provider.add_sandbox("sb-1", {"vite.config.ts": PLAIN_CONFIG})
        patcher = ConfigPatcher(provider)

        await patcher.apply_for_project("sb-1", None)

        assert sandbox.text("/workspace/vite.config.ts") == PLAIN_CONFIG
        assert provider.exec_log == []

    @pytest.mark.asyncio
    async def test_imported_project_vite_patched_once(self, provider):
        sandbox = provider.add_sandbox("sb-1", {"vite.config.js": PLAIN_CONFIG})
        patcher = ConfigPatcher(provider)

        assert await patcher.patch_vite("sb-1") is True
        patched = sandbox.text("/workspace/vite.config.js")
        assert is_vite_config_patched(patched)

        assert await patcher.patch_vite("sb-1") is False
        assert sandbox.text("/workspace/vite.config.js") == patched

    @pytest.mark.asyncio
    async def test_base44_auth_client_patched(self, provider):
        sandbox = provider.add_sandbox("sb-1", {
            "vite.config.ts": PLAIN_CONFIG,
            "src/api/base44Client.js": "export const base44 = createClient({ requiresAuth: true })\n",
        })
        patcher = ConfigPatcher(provider)

        await patcher.apply_for_project("sb-1", BASE44_SOURCE)

        assert "requiresAuth: false" in sandbox.text("/workspace/src/api/base44Client.js")

    @pytest.mark.asyncio
    async def test_other_imports_leave_auth_client(self, provider):
        client = "export const base44 = createClient({ requiresAuth: true })\n"
        sandbox = provider.add_sandbox("sb-1", {"vite.config.ts": PLAIN_CONFIG, "src/api/base44Client.js": client})
        patcher = ConfigPatcher(provider)

        await patcher.apply_for_project("sb-1", "GITHUB")

        assert sandbox.text("/workspace/src/api/base44Client.js") == client

    @pytest.mark.asyncio
    async def test_missing_config_is_not_an_error(self, provider):
        provider.add_sandbox("sb-1")
        patcher = ConfigPatcher(provider)

        await patcher.apply_for_project("sb-1", BASE44_SOURCE)
