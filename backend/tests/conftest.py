"""
Shared fixtures for the workbench test suite.

Everything runs in-process: memory slots, an in-memory project, a fake
sandbox provider and a hand-driven clock.
"""
import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from workbench.config import Settings
from workbench.errors import SandboxProviderError
from workbench.files import ProjectFiles
from workbench.persistence.slots import MemorySlotStore
from workbench.persistence.store import PersistenceStore
from workbench.sandbox.lifecycle import ClockStore
from workbench.services import build_services


class ManualClock:
    def __init__(self, start: datetime | None = None):
        self.now = start or datetime(2025, 1, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now = self.now + timedelta(seconds=seconds)


class FakeProvider:
    """Records calls; individual steps can be made to fail or hang."""

    def __init__(self):
        self.created: list[str] = []
        self.applied: list[tuple[str, list, list]] = []
        self.restarted: list[str] = []
        self.stopped: list[str] = []
        self.files: dict[tuple[str, str], str] = {}
        self.fail: set[str] = set()
        self.hang: set[str] = set()
        self.delay: dict[str, float] = {}

    async def _maybe(self, step: str) -> None:
        if step in self.delay:
            await asyncio.sleep(self.delay[step])
        if step in self.hang:
            await asyncio.sleep(3600)
        if step in self.fail:
            raise SandboxProviderError(f"{step} exploded")

    async def create_sandbox(self) -> str:
        await self._maybe("create")
        sandbox_id = f"sbx_{len(self.created) + 1}"
        self.created.append(sandbox_id)
        return sandbox_id

    async def apply_files(self, sandbox_id, files, packages) -> int:
        await self._maybe("apply")
        self.applied.append((sandbox_id, list(files), list(packages)))
        for f in files:
            self.files[(sandbox_id, f.path)] = f.content
        return len(files)

    async def restart_preview(self, sandbox_id):
        await self._maybe("restart")
        self.restarted.append(sandbox_id)
        return f"https://{sandbox_id}.preview.test"

    async def read_file(self, sandbox_id, path):
        await self._maybe("read")
        try:
            return self.files[(sandbox_id, path)]
        except KeyError:
            raise FileNotFoundError(path)

    async def write_file(self, sandbox_id, path, content):
        await self._maybe("write")
        self.files[(sandbox_id, path)] = content

    async def stop(self, sandbox_id):
        self.stopped.append(sandbox_id)


LIFETIME = timedelta(minutes=15)
WARNING = timedelta(minutes=2)


@pytest.fixture
def clock():
    return ManualClock()


@pytest.fixture
def slots():
    return MemorySlotStore()


@pytest.fixture
def store(slots):
    return PersistenceStore(slots, prefix="test")


@pytest.fixture
def project_files():
    return ProjectFiles()


@pytest.fixture
def provider():
    return FakeProvider()


@pytest.fixture
def clocks(slots, clock):
    return ClockStore(slots, lifetime=LIFETIME, warning_threshold=WARNING, now=clock, prefix="test")


@pytest.fixture
def test_settings(tmp_path):
    return Settings(
        storage_backend="memory",
        storage_dir=str(tmp_path / "slots"),
        storage_prefix="test",
        project_root=str(tmp_path / "project"),
        sandbox_poll_seconds=0.01,
        sandbox_call_timeout_seconds=1.0,
    )


@pytest.fixture
def services(test_settings, slots, project_files, provider, clocks):
    return build_services(
        test_settings, slots=slots, files=project_files, provider=provider, clocks=clocks
    )
