"""Pytest configuration for dispatchhub tests."""

from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Optional

import pytest
from loguru import logger

from dispatchhub.adapters.base_adapter import BaseAdapter, InterruptControl, ResizableHandle
from dispatchhub.core.db import Db
from dispatchhub.core.event_channel import Subscription
from dispatchhub.core.history import HistoryStore
from dispatchhub.core.layout import LayoutRepository
from dispatchhub.core.models import AdapterConfig, EventType, JsonDict, SessionEvent, SessionType
from dispatchhub.core.registry import SessionRegistry
from dispatchhub.core.task_registry import TaskRegistry

# Keep test output clean; individual tests add sinks when they assert on logs
logger.remove()


def pytest_collection_modifyitems(config, items):
    """Set per-marker timeouts: unit=2s, integration=10s."""
    for item in items:
        if "unit" in item.keywords:
            item.add_marker(pytest.mark.timeout(2))
        elif "integration" in item.keywords:
            item.add_marker(pytest.mark.timeout(10))


# ==================== Fake backends ====================


class FakeInterrupt(InterruptControl):
    def __init__(self) -> None:
        self.count = 0

    async def interrupt(self) -> None:
        self.count += 1


class FakeHandle(ResizableHandle):
    """In-memory backend: records input, emits whatever the test pushes."""

    def __init__(self, config: AdapterConfig, session_type: SessionType, interruptible: bool = True) -> None:
        super().__init__(config, close_timeout=0.5)
        self.session_type = session_type
        self.writes: list[object] = []
        self.sizes: list[tuple[int, int]] = []
        self.shutdown_calls = 0
        self.fail_writes = False
        self.write_gate: Optional[asyncio.Event] = None
        if interruptible:
            self.interrupt_control = FakeInterrupt()

    def push(self, event_type: EventType, payload: Optional[JsonDict] = None) -> None:
        self._emit(event_type, payload)

    def crash(self, message: str = "backend died") -> None:
        self._fail(message)

    def exit(self, exit_code: int = 0) -> None:
        self._emit(EventType.CLOSED, {"reason": "exited", "exit_code": exit_code})

    async def _write(self, data: object) -> None:
        if self.write_gate is not None:
            await self.write_gate.wait()
            if self.closing:
                raise OSError("backend killed mid-write")
        if self.fail_writes:
            raise OSError("pipe closed")
        self.writes.append(data)

    def block_writes(self) -> asyncio.Event:
        """Make writes hang, like a PTY whose foreground job stopped reading."""
        self.write_gate = asyncio.Event()
        return self.write_gate

    async def _resize(self, cols: int, rows: int) -> None:
        self.sizes.append((cols, rows))

    async def _shutdown(self) -> None:
        self.shutdown_calls += 1

    async def _release(self) -> None:
        # A killed backend unblocks any write stuck on it
        if self.write_gate is not None:
            self.write_gate.set()


class FakeAdapter(BaseAdapter):
    def __init__(self, session_type: SessionType, interruptible: bool = True) -> None:
        self.session_type = session_type
        self.interruptible = interruptible
        self.handles: list[FakeHandle] = []
        self.fail_with: Optional[Exception] = None
        self.commands: Optional[list[str]] = None

    def available_commands(self, working_directory: str) -> Optional[list[str]]:
        return self.commands

    async def create(self, config: AdapterConfig) -> FakeHandle:
        if self.fail_with is not None:
            raise self.fail_with
        handle = FakeHandle(config, self.session_type, interruptible=self.interruptible)
        self.handles.append(handle)
        return handle

    @property
    def last(self) -> FakeHandle:
        return self.handles[-1]


async def collect_until(subscription: Subscription, event_type: str, timeout: float = 1.0) -> list[SessionEvent]:
    """Drain a subscription until an event of `event_type` arrives."""
    seen: list[SessionEvent] = []

    async def _drain() -> None:
        async for event in subscription:
            seen.append(event)
            if event.type == event_type:
                return

    await asyncio.wait_for(_drain(), timeout=timeout)
    return seen


# ==================== Fixtures ====================


@pytest.fixture
def history_store(tmp_path: Path) -> HistoryStore:
    return HistoryStore(tmp_path / "history")


@pytest.fixture
async def db():
    database = Db(":memory:")
    await database.initialize()
    yield database
    await database.close()


@pytest.fixture
def layout(db: Db) -> LayoutRepository:
    return LayoutRepository(db)


@pytest.fixture
def fake_adapters() -> dict[SessionType, FakeAdapter]:
    return {
        SessionType.TERMINAL: FakeAdapter(SessionType.TERMINAL),
        SessionType.AI_AGENT: FakeAdapter(SessionType.AI_AGENT, interruptible=False),
        SessionType.FILE_EDITOR: FakeAdapter(SessionType.FILE_EDITOR, interruptible=False),
    }


@pytest.fixture
async def registry(fake_adapters, history_store, db, layout, tmp_path):
    reg = SessionRegistry(
        fake_adapters,
        history_store,
        db=db,
        layout=layout,
        tasks=TaskRegistry(),
        default_working_directory=str(tmp_path),
    )
    await reg.initialize()
    yield reg
    await reg.shutdown(timeout=0.5)
