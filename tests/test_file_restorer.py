"""Tests for file restoration into sandboxes."""

import base64

import pytest

from services.errors import ProviderError, RestorationError
from services.file_restorer import (
    BINARY_MARKER,
    FileRestorer,
    decode_file_content,
    encode_binary_content,
)

PNG_BYTES = b"\x89PNG\r\n\x1a\n\x00\x00binary"


class TestDecodeFileContent:
    """Content encodings stored on fragments."""

    def test_plain_text(self):
        assert decode_file_content("hello\n") == b"hello\n"

    def test_marker_binary(self):
        encoded = BINARY_MARKER + base64.b64encode(PNG_BYTES).decode()
        assert decode_file_content(encoded) == PNG_BYTES

    def test_data_url_binary(self):
        encoded = "data:image/png;base64," + base64.b64encode(PNG_BYTES).decode()
        assert decode_file_content(encoded) == PNG_BYTES

    def test_text_starting_with_data_is_text(self):
        assert decode_file_content("data: not a url") == b"data: not a url"

    def test_encode_uses_marker(self):
        assert encode_binary_content(PNG_BYTES).startswith(BINARY_MARKER)
        assert decode_file_content(encode_binary_content(PNG_BYTES)) == PNG_BYTES


class TestRestoreSequential:
    """One directory check and one write per file."""

    @pytest.mark.asyncio
    async def test_writes_nested_files(self, provider):
        sandbox = provider.add_sandbox("sb-1")
        restorer = FileRestorer(provider)

        count = await restorer.restore_sequential("sb-1", {
            "src/components/Button.tsx": "export const Button = () => null\n",
            "public/logo.png": encode_binary_content(PNG_BYTES),
        })

        assert count == 2
        assert sandbox.text("/workspace/src/components/Button.tsx").startswith("export const Button")
        assert sandbox.files["/workspace/public/logo.png"] == PNG_BYTES

    @pytest.mark.asyncio
    async def test_restore_is_idempotent(self, provider):
        sandbox = provider.add_sandbox("sb-1")
        restorer = FileRestorer(provider)
        files = {"src/App.tsx": "export default function App() {}\n", "README.md": "# App\n"}

        await restorer.restore_sequential("sb-1", files)
        first = dict(sandbox.files)
        await restorer.restore_sequential("sb-1", files)

        assert sandbox.files == first

    @pytest.mark.asyncio
    async def test_write_failure_raises_restoration_error(self, provider):
        provider.add_sandbox("sb-1")
        provider.write_errors["/workspace/src/App.tsx"] = ProviderError("disk full")
        restorer = FileRestorer(provider)

        with pytest.raises(RestorationError) as exc_info:
            await restorer.restore_sequential("sb-1", {"src/App.tsx": "x"})

        assert exc_info.value.path == "src/App.tsx"
        assert isinstance(exc_info.value.__cause__, ProviderError)

    @pytest.mark.asyncio
    async def test_invalid_base64_raises_restoration_error(self, provider):
        provider.add_sandbox("sb-1")
        restorer = FileRestorer(provider)

        with pytest.raises(RestorationError):
            await restorer.restore_sequential("sb-1", {"logo.png": BINARY_MARKER + "not base64!!"})


class TestRestoreBatch:
    """Directories created in one request, files written concurrently."""

    @pytest.mark.asyncio
    async def test_single_mkdir_excluding_workspace_root(self, provider):
        sandbox = provider.add_sandbox("sb-1")
        restorer = FileRestorer(provider)
        files = {f"src/pages/Page{i}.tsx": f"export const Page{i} = 1\n" for i in range(25)}
        files["package.json"] = "{}"
        files["src/lib/api.ts"] = "export {}\n"

        count = await restorer.restore_batch("sb-1", files)

        assert count == 27
        mkdirs = provider.commands("mkdir -p")
        assert len(mkdirs) == 1
        assert "'/workspace/src/pages'" in mkdirs[0]
        assert "'/workspace/src/lib'" in mkdirs[0]
        assert "'/workspace'" not in mkdirs[0]
        assert len(sandbox.workspace_files()) == 27

    @pytest.mark.asyncio
    async def test_root_only_files_skip_mkdir(self, provider):
        provider.add_sandbox("sb-1")
        restorer = FileRestorer(provider)

        await restorer.restore_batch("sb-1", {"package.json": "{}", "index.html": "<html></html>"})

        assert provider.commands("mkdir -p") == []


class TestRestoreFragment:
    """Fragment ownership and lookups."""

    @pytest.mark.asyncio
    async def test_restores_owned_fragment(self, provider, store):
        sandbox = provider.add_sandbox("sb-1")
        store.add_project("p1")
        store.add_fragment("f1", "p1", {"src/main.tsx": "import './App'\n"})
        restorer = FileRestorer(provider, store)

        count = await restorer.restore_fragment("sb-1", "f1", "p1")

        assert count == 1
        assert "src/main.tsx" in sandbox.workspace_files()

    @pytest.mark.asyncio
    async def test_rejects_fragment_of_other_project(self, provider, store):
        provider.add_sandbox("sb-1")
        store.add_project("p1")
        store.add_project("p2")
        store.add_fragment("f2", "p2", {"src/main.tsx": "x"})
        restorer = FileRestorer(provider, store)

        with pytest.raises(RestorationError) as exc_info:
            await restorer.restore_fragment("sb-1", "f2", "p1")

        assert "does not belong" in exc_info.value.message

    @pytest.mark.asyncio
    async def test_missing_fragment(self, provider, store):
        provider.add_sandbox("sb-1")
        restorer = FileRestorer(provider, store)

        with pytest.raises(RestorationError):
            await restorer.restore_fragment("sb-1", "missing", "p1")
