"""
Pytest configuration and fixtures for sandbox lifecycle tests.

Provides in-memory stand-ins for the remote sandbox provider, the project
store and Redis so every component can be exercised without network access.
"""

import dataclasses
import os
import posixpath
import shlex
import sys
from datetime import datetime, timedelta, timezone
from typing import Optional

import pytest

# Add the parent directory to the path so we can import services
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from models import BuildStatus, ExecResult, Fragment, Project, SandboxHandle  # noqa: E402
from services.database import ProjectStore  # noqa: E402
from services.errors import ProviderError, SandboxNotFoundError  # noqa: E402
from services.provider import WORKSPACE_ROOT, SandboxProvider, SandboxSpec  # noqa: E402


@pytest.fixture(autouse=True)
def set_test_env():
    """Set environment variables for testing."""
    os.environ.setdefault("NODE_ENV", "test")
    os.environ.setdefault("DATABASE_URL", "postgresql://localhost:5432/shipper_test")
    os.environ.setdefault("REDIS_URL", "redis://localhost:6379/15")
    yield


# =============================================================================
# Fake sandbox provider
# =============================================================================

class FakeSandbox:
    def __init__(self, sandbox_id: str, files: Optional[dict[str, bytes]] = None, ports=(8000, 5173)):
        self.sandbox_id = sandbox_id
        self.files: dict[str, bytes] = dict(files or {})
        self.dirs: set[str] = {"/", WORKSPACE_ROOT, "/tmp"}
        for path in self.files:
            self._add_parents(path)
        self.tunnels = {port: f"https://{sandbox_id}-{port}.modal.host" for port in ports}
        self.alive = True
        self.spec: Optional[SandboxSpec] = None

    def _add_parents(self, path: str) -> None:
        parent = posixpath.dirname(path)
        while parent and parent not in self.dirs:
            self.dirs.add(parent)
            parent = posixpath.dirname(parent)

    def mkdir(self, path: str) -> None:
        self.dirs.add(path)
        self._add_parents(path)

    def text(self, path: str) -> str:
        return self.files[path].decode("utf-8")

    def workspace_files(self) -> dict[str, str]:
        prefix = WORKSPACE_ROOT + "/"
        return {
            path[len(prefix):]: data.decode("utf-8", errors="replace")
            for path, data in self.files.items()
            if path.startswith(prefix)
        }


class FakeSandboxProvider(SandboxProvider):
    """
    In-memory SandboxProvider.

    Shell commands used by the services (mkdir -p, test -f/-d, find, rm -f,
    the dev server launch) are interpreted against the fake filesystem.
    Anything else succeeds with empty output unless scripted via script().
    """

    name = "modal"

    def __init__(self):
        self.sandboxes: dict[str, FakeSandbox] = {}
        self.images: dict[str, dict[str, bytes]] = {}
        self.created: list[SandboxSpec] = []
        self.terminated: list[str] = []
        self.deleted_images: list[str] = []
        self.exec_log: list[tuple[str, str]] = []
        self.from_id_calls = 0
        self.from_id_errors: list[Exception] = []
        self.create_error: Optional[Exception] = None
        self.terminate_error: Optional[Exception] = None
        self.delete_image_error: Optional[Exception] = None
        self.write_errors: dict[str, Exception] = {}
        self.tunnels_error: Optional[Exception] = None
        self.tunnel_ports = (8000, 5173)
        self._scripts: list[tuple[str, list[ExecResult]]] = []
        self._counter = 0

    # -- test helpers --------------------------------------------------------

    def add_sandbox(self, sandbox_id: str, files: Optional[dict[str, str]] = None) -> FakeSandbox:
        encoded = {f"{WORKSPACE_ROOT}/{path}": content.encode("utf-8") for path, content in (files or {}).items()}
        sandbox = FakeSandbox(sandbox_id, encoded, self.tunnel_ports)
        self.sandboxes[sandbox_id] = sandbox
        return sandbox

    def add_image(self, image_id: str, files: dict[str, str]) -> None:
        self.images[image_id] = {f"{WORKSPACE_ROOT}/{path}": content.encode("utf-8") for path, content in files.items()}

    def script(self, fragment: str, *results: ExecResult) -> None:
        """Queue results for commands containing fragment. The last result repeats."""
        self._scripts.append((fragment, list(results)))

    def commands(self, fragment: str = "") -> list[str]:
        return [command for _, command in self.exec_log if fragment in command]

    def _live(self, sandbox_id: str) -> FakeSandbox:
        sandbox = self.sandboxes.get(sandbox_id)
        if sandbox is None or not sandbox.alive:
            raise SandboxNotFoundError("Sandbox not found", sandbox_id=sandbox_id)
        return sandbox

    # -- SandboxProvider -----------------------------------------------------

    async def create(self, spec: SandboxSpec) -> SandboxHandle:
        if self.create_error is not None:
            raise self.create_error
        self._counter += 1
        sandbox_id = f"sb-new-{self._counter}"
        sandbox = FakeSandbox(sandbox_id, self.images.get(spec.image_ref, {}), self.tunnel_ports)
        sandbox.spec = spec
        self.sandboxes[sandbox_id] = sandbox
        self.created.append(spec)
        return SandboxHandle(sandbox_id=sandbox_id, workdir=spec.workdir)

    async def from_id(self, sandbox_id: str) -> SandboxHandle:
        self.from_id_calls += 1
        if self.from_id_errors:
            raise self.from_id_errors.pop(0)
        self._live(sandbox_id)
        return SandboxHandle(sandbox_id=sandbox_id)

    async def terminate(self, sandbox_id: str) -> None:
        if self.terminate_error is not None:
            raise self.terminate_error
        sandbox = self._live(sandbox_id)
        sandbox.alive = False
        self.terminated.append(sandbox_id)

    async def exec(self, sandbox_id: str, command: str, timeout: Optional[int] = None) -> ExecResult:
        sandbox = self._live(sandbox_id)
        self.exec_log.append((sandbox_id, command))

        for fragment, results in self._scripts:
            if fragment in command:
                result = results.pop(0) if len(results) > 1 else results[0]
                if isinstance(result, Exception):
                    raise result
                return result

        return self._builtin(sandbox, command)

    def _builtin(self, sandbox: FakeSandbox, command: str) -> ExecResult:
        if command.startswith("mkdir -p "):
            for path in shlex.split(command)[2:]:
                sandbox.mkdir(path)
            return ExecResult("", "", 0)

        if command.startswith("test -f "):
            path = shlex.split(command)[2]
            return ExecResult("", "", 0 if path in sandbox.files else 1)

        if command.startswith("test -d "):
            path = shlex.split(command)[2]
            return ExecResult("", "", 0 if path in sandbox.dirs else 1)

        if command.startswith("rm -f "):
            for path in shlex.split(command)[2:]:
                sandbox.files.pop(path, None)
            return ExecResult("", "", 0)

        if "find ." in command:
            listing = "\n".join(f"./{path}" for path in sorted(sandbox.workspace_files()))
            return ExecResult(listing + "\n", "", 0)

        if "bun run dev" in command and "echo $!" in command:
            return ExecResult("4242\n", "", 0)

        return ExecResult("", "", 0)

    async def read_file(self, sandbox_id: str, path: str) -> bytes:
        sandbox = self._live(sandbox_id)
        if path not in sandbox.files:
            raise ProviderError(f"Read {path} failed: no such file", sandbox_id=sandbox_id)
        return sandbox.files[path]

    async def write_file(self, sandbox_id: str, path: str, data: bytes) -> None:
        sandbox = self._live(sandbox_id)
        if path in self.write_errors:
            raise self.write_errors[path]
        if posixpath.dirname(path) not in sandbox.dirs:
            raise ProviderError(f"Write {path} failed: parent directory missing", sandbox_id=sandbox_id)
        sandbox.files[path] = data

    async def tunnels(self, sandbox_id: str) -> dict[int, str]:
        if self.tunnels_error is not None:
            raise self.tunnels_error
        return dict(self._live(sandbox_id).tunnels)

    async def snapshot_filesystem(self, sandbox_id: str) -> str:
        sandbox = self._live(sandbox_id)
        self._counter += 1
        image_id = f"im-snap-{self._counter}"
        self.images[image_id] = dict(sandbox.files)
        return image_id

    async def delete_image(self, image_id: str) -> None:
        if self.delete_image_error is not None:
            raise self.delete_image_error
        self.images.pop(image_id, None)
        self.deleted_images.append(image_id)


# =============================================================================
# In-memory project store
# =============================================================================

BASE_TIME = datetime(2025, 1, 1, tzinfo=timezone.utc)


class InMemoryProjectStore(ProjectStore):
    """ProjectStore over plain dicts. Records every identity write for assertions."""

    def __init__(self):
        self.projects: dict[str, Project] = {}
        self.fragments: dict[str, Fragment] = {}
        self.identity_writes: list[tuple[str, Optional[str], Optional[str]]] = []
        self._tick = 0

    def _next_time(self) -> datetime:
        self._tick += 1
        return BASE_TIME + timedelta(minutes=self._tick)

    # -- test helpers --------------------------------------------------------

    def add_project(self, project_id: str, **fields) -> Project:
        project = Project(id=project_id, **fields)
        self.projects[project_id] = project
        return project

    def add_fragment(self, fragment_id: str, project_id: str, files=None, **fields) -> Fragment:
        fields.setdefault("created_at", self._next_time())
        fragment = Fragment(id=fragment_id, project_id=project_id, files=dict(files or {}), **fields)
        self.fragments[fragment_id] = fragment
        return fragment

    # -- projects ------------------------------------------------------------

    async def get_project(self, project_id: str) -> Optional[Project]:
        project = self.projects.get(project_id)
        # Callers get a row snapshot, never the stored record
        return dataclasses.replace(project) if project is not None else None

    async def set_sandbox_identity(self, project_id, sandbox_id, sandbox_url, created_at=None) -> None:
        project = self.projects[project_id]
        project.sandbox_id = sandbox_id
        project.sandbox_url = sandbox_url
        if created_at is not None:
            project.sandbox_created_at = created_at
        project.sandbox_expires_at = None
        self.identity_writes.append((project_id, sandbox_id, sandbox_url))

    async def clear_sandbox_identity(self, project_id: str) -> None:
        project = self.projects[project_id]
        project.sandbox_id = None
        project.sandbox_url = None
        project.sandbox_created_at = None
        project.sandbox_expires_at = None
        self.identity_writes.append((project_id, None, None))

    async def clear_sandbox_identity_by_sandbox(self, sandbox_id: str) -> int:
        cleared = 0
        for project in self.projects.values():
            if project.sandbox_id == sandbox_id:
                await self.clear_sandbox_identity(project.id)
                cleared += 1
        return cleared

    async def count_projects_with_sandbox(self, sandbox_id: str) -> int:
        return sum(1 for p in self.projects.values() if p.sandbox_id == sandbox_id)

    async def update_build_status(self, project_id: str, status: BuildStatus) -> None:
        self.projects[project_id].build_status = status

    async def record_deployment(self, project_id, deployment_url, deployed_fragment_id) -> None:
        project = self.projects[project_id]
        project.deployment_url = deployment_url
        project.deployed_at = self._next_time()
        project.deployed_fragment_id = deployed_fragment_id

    # -- fragments -----------------------------------------------------------

    async def get_fragment(self, fragment_id: str) -> Optional[Fragment]:
        fragment = self.fragments.get(fragment_id)
        return dataclasses.replace(fragment, files=dict(fragment.files)) if fragment is not None else None

    async def create_fragment(self, project_id, title, files) -> Fragment:
        fragment_id = f"frag-new-{len(self.fragments) + 1}"
        return self.add_fragment(fragment_id, project_id, files, title=title)

    async def update_fragment_files(self, fragment_id, files) -> None:
        fragment = self.fragments[fragment_id]
        fragment.files = dict(files)
        fragment.updated_at = self._next_time()

    async def finalize_fragment(self, fragment_id, title, git_commit_hash=None) -> None:
        fragment = self.fragments[fragment_id]
        fragment.title = title
        fragment.git_commit_hash = git_commit_hash

    async def list_fragments(self, project_id: str) -> list[Fragment]:
        fragments = [f for f in self.fragments.values() if f.project_id == project_id]
        return sorted(fragments, key=lambda f: f.created_at, reverse=True)

    async def list_snapshot_fragments(self, project_id: str, provider: str) -> list[Fragment]:
        fragments = [
            f for f in self.fragments.values()
            if f.project_id == project_id and f.snapshot_image_id and f.snapshot_provider == provider
        ]
        return sorted(fragments, key=lambda f: f.snapshot_created_at, reverse=True)

    async def set_fragment_snapshot(self, fragment_id, image_id, created_at, provider) -> None:
        fragment = self.fragments[fragment_id]
        fragment.snapshot_image_id = image_id
        fragment.snapshot_created_at = created_at
        fragment.snapshot_provider = provider

    async def clear_fragment_snapshot(self, fragment_id: str) -> None:
        fragment = self.fragments[fragment_id]
        fragment.snapshot_image_id = None
        fragment.snapshot_created_at = None
        fragment.snapshot_provider = None


# =============================================================================
# Fake Redis
# =============================================================================

class FakeRedis:
    """The subset of redis.asyncio.Redis used by CacheService."""

    def __init__(self):
        self.data: dict[str, str] = {}
        self.ttls: dict[str, int] = {}
        self.fail_with: Optional[Exception] = None

    def _check(self) -> None:
        if self.fail_with is not None:
            raise self.fail_with

    async def ping(self) -> bool:
        self._check()
        return True

    async def set(self, key, value, nx=False, ex=None):
        self._check()
        if nx and key in self.data:
            return None
        self.data[key] = value
        if ex is not None:
            self.ttls[key] = ex
        return True

    async def get(self, key):
        self._check()
        return self.data.get(key)

    async def delete(self, key) -> int:
        self._check()
        self.ttls.pop(key, None)
        return 1 if self.data.pop(key, None) is not None else 0

    async def exists(self, key) -> int:
        self._check()
        return 1 if key in self.data else 0

    async def expire(self, key, ttl) -> bool:
        self._check()
        self.ttls[key] = ttl
        return True

    async def info(self, section=None) -> dict:
        self._check()
        return {"redis_version": "7.2.0", "connected_clients": 1, "used_memory_human": "1M"}

    async def aclose(self) -> None:
        return None


# =============================================================================
# Fixtures
# =============================================================================

@pytest.fixture
def provider() -> FakeSandboxProvider:
    return FakeSandboxProvider()


@pytest.fixture
def store() -> InMemoryProjectStore:
    return InMemoryProjectStore()


@pytest.fixture
def fake_redis() -> FakeRedis:
    return FakeRedis()


@pytest.fixture
def vite_app_files() -> dict[str, str]:
    """A minimal generated Vite + React app."""
    return {
        "package.json": '{"name": "blog", "scripts": {"dev": "vite", "build": "vite build"}}',
        "vite.config.ts": "import { defineConfig } from 'vite'\nexport default defineConfig({\n  plugins: [],\n})\n",
        "index.html": "<!doctype html>\n<html>\n  <head>\n    <title>Blog</title>\n  </head>\n  <body>\n    <div id=\"root\"></div>\n  </body>\n</html>\n",
        "tsconfig.json": '{"compilerOptions": {"strict": true}}',
        "src/main.tsx": "import React from 'react'\n",
        "src/App.tsx": "export default function App() { return null }\n",
    }
