"""Tests for working fragment updates."""

import pytest

from models import WORKING_FRAGMENT_PREFIX
from services.errors import FragmentNotFoundError
from services.file_restorer import FileRestorer
from services.fragments import FragmentService, is_durable, working_fragment_title


@pytest.fixture
def fragments(provider, store):
    return FragmentService(store, FileRestorer(provider, store))


class TestWorkingFragment:
    """Merging session files into the working fragment."""

    @pytest.mark.asyncio
    async def test_session_files_merged_over_existing(self, store, fragments):
        store.add_project("p1")
        store.add_fragment("f1", "p1", {"a.ts": "old a", "b.ts": "b"}, title=working_fragment_title())

        result = await fragments.update_working_fragment("p1", "f1", {"a.ts": "new a", "c.ts": "c"}, "write_file")

        assert result == "f1"
        assert store.fragments["f1"].files == {"a.ts": "new a", "b.ts": "b", "c.ts": "c"}

    @pytest.mark.asyncio
    async def test_empty_session_is_noop(self, store, fragments):
        store.add_project("p1")
        store.add_fragment("f1", "p1", {"a.ts": "a"})

        assert await fragments.update_working_fragment("p1", "f1", {}, "noop") == "f1"
        assert store.fragments["f1"].updated_at is None

    @pytest.mark.asyncio
    async def test_creates_fragment_when_none(self, store, fragments):
        store.add_project("p1")

        fragment_id = await fragments.update_working_fragment("p1", None, {"a.ts": "a"}, "write_file")

        fragment = store.fragments[fragment_id]
        assert fragment.project_id == "p1"
        assert fragment.title.startswith(WORKING_FRAGMENT_PREFIX)
        assert fragment.is_working

    @pytest.mark.asyncio
    async def test_missing_fragment_raises(self, store, fragments):
        store.add_project("p1")

        with pytest.raises(FragmentNotFoundError) as exc_info:
            await fragments.update_working_fragment("p1", "gone", {"a.ts": "a"}, "write_file")

        assert exc_info.value.fragment_id == "gone"

    @pytest.mark.asyncio
    async def test_fragment_of_other_project_raises(self, store, fragments):
        store.add_project("p1")
        store.add_project("p2")
        store.add_fragment("f2", "p2", {"x.ts": "x"})

        with pytest.raises(FragmentNotFoundError):
            await fragments.update_working_fragment("p1", "f2", {"a.ts": "a"}, "write_file")

        assert store.fragments["f2"].files == {"x.ts": "x"}

    @pytest.mark.asyncio
    async def test_missing_fragment_forks_when_allowed(self, provider, store):
        store.add_project("p1")
        service = FragmentService(store, FileRestorer(provider, store), allow_fork=True)

        fragment_id = await service.update_working_fragment("p1", "gone", {"a.ts": "a"}, "write_file")

        assert fragment_id != "gone"
        assert store.fragments[fragment_id].files == {"a.ts": "a"}

    @pytest.mark.asyncio
    async def test_durable_fragment_is_never_mutated(self, store, fragments):
        store.add_project("p1")
        store.add_fragment("f1", "p1", {"a.ts": "a"}, title="Add login", git_commit_hash="abc123")

        fragment_id = await fragments.update_working_fragment("p1", "f1", {"b.ts": "b"}, "write_file")

        assert fragment_id != "f1"
        assert store.fragments["f1"].files == {"a.ts": "a"}
        assert store.fragments[fragment_id].files == {"a.ts": "a", "b.ts": "b"}

    def test_is_durable(self, store):
        assert is_durable(store.add_fragment("s", "p1", snapshot_image_id="im-1"))
        assert is_durable(store.add_fragment("g", "p1", git_commit_hash="abc"))
        assert not is_durable(store.add_fragment("w", "p1"))


class TestWriteFiles:
    """Sandbox first, fragment record afterwards."""

    @pytest.mark.asyncio
    async def test_sandbox_written_before_fragment_update(self, provider, store, fragments):
        sandbox = provider.add_sandbox("sb-1")
        store.add_project("p1", sandbox_id="sb-1")
        store.add_fragment("f1", "p1", {"a.ts": "a"})

        task = await fragments.write_files("sb-1", "p1", "f1", {"src/b.ts": "b"})

        assert sandbox.workspace_files() == {"src/b.ts": "b"}
        assert await task == "f1"
        assert store.fragments["f1"].files == {"a.ts": "a", "src/b.ts": "b"}

    @pytest.mark.asyncio
    async def test_background_failure_does_not_raise(self, provider, store, fragments):
        provider.add_sandbox("sb-1")
        store.add_project("p1", sandbox_id="sb-1")

        task = await fragments.write_files("sb-1", "p1", "gone", {"a.ts": "a"})

        with pytest.raises(FragmentNotFoundError):
            await task
        assert "a.ts" in provider.sandboxes["sb-1"].workspace_files()


class TestFinalize:
    """Finalizing names a fragment and stops further mutation."""

    @pytest.mark.asyncio
    async def test_finalize(self, store, fragments):
        store.add_project("p1")
        store.add_fragment("f1", "p1", title=working_fragment_title())

        await fragments.finalize_fragment("f1", "Add dark mode", git_commit_hash="def456")

        fragment = store.fragments["f1"]
        assert fragment.title == "Add dark mode"
        assert not fragment.is_working
        assert is_durable(fragment)

    @pytest.mark.asyncio
    async def test_finalize_missing(self, fragments):
        with pytest.raises(FragmentNotFoundError):
            await fragments.finalize_fragment("gone", "title")
