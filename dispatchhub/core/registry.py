"""Session registry - owns every live session and its backend handle.

One registry instance is created by the daemon and threaded through the API
layer; there is no module-level session map. Mutating operations on one id are
serialized by a per-id asyncio.Lock so unrelated sessions never wait on each
other.
"""

from __future__ import annotations

import asyncio
import uuid
from collections import Counter, OrderedDict
from dataclasses import dataclass, field
from typing import Mapping, Optional

import aiosqlite
from loguru import logger

from dispatchhub.adapters.base_adapter import BaseAdapter, ResizableHandle, SessionHandle
from dispatchhub.constants import RETIRED_SESSIONS_KEPT, SHUTDOWN_TIMEOUT_S
from dispatchhub.core.db import Db
from dispatchhub.core.errors import (
    AdapterInitFailed,
    BackendUnavailable,
    BadRequest,
    DispatchError,
    NotFound,
)
from dispatchhub.core.event_channel import EventChannel, Subscription
from dispatchhub.core.history import HistoryPage, HistoryStore
from dispatchhub.core.layout import LayoutRepository
from dispatchhub.core.models import (
    AdapterConfig,
    EventType,
    JsonDict,
    Session,
    SessionEvent,
    SessionStatus,
    SessionStatusInfo,
    SessionType,
    utc_now,
)
from dispatchhub.core.task_registry import TaskRegistry


@dataclass
class LiveSession:
    """A session together with the runtime state that only exists while it runs."""

    session: Session
    handle: SessionHandle
    channel: EventChannel
    lock: asyncio.Lock
    seq: int = 0
    closing: bool = False
    terminal: Optional[SessionEvent] = None
    pump: Optional[asyncio.Task[None]] = field(default=None, repr=False)

    @property
    def session_id(self) -> str:
        return self.session.session_id

    def next_seq(self) -> int:
        self.seq += 1
        return self.seq


def _working_directory(options: JsonDict, default: str) -> str:
    for name in ("working_directory", "workingDirectory", "cwd"):
        value = options.get(name)
        if isinstance(value, str) and value:
            return value
    return default


class SessionRegistry:
    """In-memory map of session id -> live session, plus lifecycle operations."""

    def __init__(
        self,
        adapters: Mapping[SessionType, BaseAdapter],
        history: HistoryStore,
        db: Optional[Db] = None,
        layout: Optional[LayoutRepository] = None,
        tasks: Optional[TaskRegistry] = None,
        default_working_directory: str = "~",
        retired_kept: int = RETIRED_SESSIONS_KEPT,
    ) -> None:
        self.adapters = dict(adapters)
        self.history = history
        self.db = db
        self.layout = layout
        self.tasks = tasks or TaskRegistry()
        self.default_working_directory = default_working_directory
        self.retired_kept = retired_kept
        self._live: dict[str, LiveSession] = {}
        self._retired: OrderedDict[str, Session] = OrderedDict()
        self._locks: dict[str, asyncio.Lock] = {}
        self._created_total = 0
        self._retired_total = 0
        self._history_failures = 0

    async def initialize(self) -> None:
        """Reconcile persisted records left behind by a previous run."""
        if self.db is not None:
            await self.db.mark_orphaned_sessions()

    # ==================== Persistence helpers ====================

    async def _persist(self, session: Session) -> None:
        if self.db is None:
            return
        try:
            await self.db.upsert_session(session)
        except (aiosqlite.Error, RuntimeError) as exc:
            logger.error("Failed to persist session {}: {}", session.session_id[:8], exc)

    def _lock_for(self, session_id: str) -> asyncio.Lock:
        lock = self._locks.get(session_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[session_id] = lock
        return lock

    def _remember_retired(self, session: Session) -> None:
        """Keep the most recent ended sessions in memory; the Db answers for older ones."""
        self._retired_total += 1
        self._retired[session.session_id] = session
        self._retired.move_to_end(session.session_id)
        while len(self._retired) > self.retired_kept:
            self._retired.popitem(last=False)
        self._locks.pop(session.session_id, None)

    def _new_session_id(self) -> str:
        while True:
            session_id = str(uuid.uuid4())
            if session_id not in self._live and session_id not in self._retired:
                return session_id

    # ==================== Event publication ====================

    async def _publish(self, live: LiveSession, event: SessionEvent) -> None:
        """Assign seq, fan out to subscribers, then append to history."""
        event.seq = live.next_seq()
        live.channel.publish(event)
        try:
            await self.history.append_event(live.session_id, event.to_dict())
        except DispatchError as exc:
            self._history_failures += 1
            logger.warning("History write failed for {} seq={}: {}", live.session_id[:8], event.seq, exc)

    async def _set_status(self, live: LiveSession, target: SessionStatus, announce: bool = True) -> bool:
        current = live.session.status
        if current == target:
            return True
        if not current.can_transition(target):
            logger.warning(
                "Session {} ignoring transition {} -> {}", live.session_id[:8], current.value, target.value
            )
            return False
        live.session.status = target
        logger.info("Session {} {} -> {}", live.session_id[:8], current.value, target.value)
        if announce and not target.is_terminal:
            await self._publish(live, SessionEvent(type=EventType.STATUS.value, payload={"status": target.value}))
        return True

    async def _pump(self, live: LiveSession) -> None:
        """Drain the handle's events into history and subscribers."""
        terminal: Optional[SessionEvent] = None
        try:
            async for event in live.handle.events():
                await self._publish(live, event)
                if event.is_terminal:
                    terminal = event
                    live.terminal = event
                    break
        finally:
            live.channel.close()

        # A close in progress finishes the bookkeeping itself
        if terminal is None or live.closing:
            return

        # Backend ended on its own
        async with live.lock:
            if self._live.get(live.session_id) is not live or live.closing:
                return
            if terminal.type == EventType.ERRORED.value:
                await self._set_status(live, SessionStatus.ERRORED)
            else:
                await self._set_status(live, SessionStatus.CLOSING, announce=False)
                await self._set_status(live, SessionStatus.CLOSED)
            await self._retire(live)
            await live.handle.close()

    async def _retire(self, live: LiveSession) -> None:
        session = live.session
        session.closed_at = utc_now()
        self._live.pop(session.session_id, None)
        self._remember_retired(session)
        if self.db is not None:
            try:
                await self.db.update_session_status(session.session_id, session.status)
            except (aiosqlite.Error, RuntimeError) as exc:
                logger.error("Failed to persist status for {}: {}", session.session_id[:8], exc)

    # ==================== Lookup ====================

    def get_session(self, session_id: str) -> LiveSession:
        """Return the live session.

        Raises:
            NotFound: id is not live
        """
        live = self._live.get(session_id)
        if live is None:
            raise NotFound(f"Session {session_id} not found")
        return live

    async def _require_live(self, session_id: str) -> LiveSession:
        live = self._live.get(session_id)
        if live is not None:
            return live
        ended = await self._known_session(session_id)
        if ended is not None:
            raise BackendUnavailable(f"Session {session_id} is {ended.status.value}")
        raise NotFound(f"Session {session_id} not found")

    def list_sessions(self) -> list[Session]:
        return [live.session for live in self._live.values()]

    async def _known_session(self, session_id: str) -> Optional[Session]:
        live = self._live.get(session_id)
        if live is not None:
            return live.session
        retired = self._retired.get(session_id)
        if retired is not None:
            return retired
        if self.db is not None:
            return await self.db.get_session(session_id)
        return None

    async def session_status(self, session_id: str) -> SessionStatusInfo:
        """Status of a live, retired or persisted session.

        Raises:
            NotFound: id was never seen
        """
        session = await self._known_session(session_id)
        if session is None:
            raise NotFound(f"Session {session_id} not found")

        commands: Optional[list[str]] = None
        if session.session_type == SessionType.AI_AGENT and session_id in self._live:
            adapter = self.adapters.get(session.session_type)
            if adapter is not None:
                commands = adapter.available_commands(session.working_directory)

        return SessionStatusInfo(
            session_id=session.session_id,
            status=session.status,
            session_type=session.session_type,
            working_directory=session.working_directory,
            created_at=session.created_at.isoformat(),
            available_commands=commands,
        )

    # ==================== Lifecycle ====================

    async def create_session(self, session_type: str, options: Optional[JsonDict] = None) -> str:
        """Start a backend and return the new session id once it is running.

        Raises:
            BadRequest: unknown session type or unusable options
            AdapterInitFailed: the backend could not start
        """
        session_id, _ = await self._start_session(session_type, options, subscribe=False)
        return session_id

    async def create_session_subscribed(
        self, session_type: str, options: Optional[JsonDict] = None
    ) -> tuple[str, Subscription]:
        """Like create_session, but the subscription sees the session's very first event."""
        session_id, subscription = await self._start_session(session_type, options, subscribe=True)
        assert subscription is not None
        return session_id, subscription

    async def _start_session(
        self, session_type: str, options: Optional[JsonDict], subscribe: bool
    ) -> tuple[str, Optional[Subscription]]:
        try:
            kind = SessionType(session_type)
        except ValueError as exc:
            raise BadRequest(f"Unknown session type: {session_type!r}") from exc
        adapter = self.adapters.get(kind)
        if adapter is None:
            raise BadRequest(f"Session type {kind.value} is not enabled")
        if options is None:
            options = {}
        if not isinstance(options, dict):
            raise BadRequest("options must be an object")

        session_id = self._new_session_id()
        session = Session(
            session_id=session_id,
            session_type=kind,
            working_directory=_working_directory(options, self.default_working_directory),
            options=options,
        )

        async with self._lock_for(session_id):
            self._created_total += 1
            await self._persist(session)
            config = AdapterConfig(session_id=session_id, working_directory=session.working_directory, options=options)
            try:
                handle = await adapter.create(config)
            except Exception as exc:
                session.status = SessionStatus.ERRORED
                session.closed_at = utc_now()
                self._remember_retired(session)
                await self._persist(session)
                logger.warning("Session {} ({}) failed to start: {}", session_id[:8], kind.value, exc)
                if isinstance(exc, (BadRequest, AdapterInitFailed)):
                    raise
                raise AdapterInitFailed(f"{kind.value} backend failed to start: {exc}") from exc

            live = LiveSession(
                session=session,
                handle=handle,
                channel=EventChannel(session_id),
                lock=self._lock_for(session_id),
            )
            subscription = live.channel.subscribe() if subscribe else None
            live.pump = self.tasks.spawn(self._pump(live), name=f"pump-{session_id[:8]}", key=session_id)
            await self._set_status(live, SessionStatus.RUNNING)
            # Visible to lookups and close only once running
            self._live[session_id] = live
            await self._persist(session)

        logger.info("Session {} created ({}) in {}", session_id[:8], kind.value, session.working_directory)
        return session_id, subscription

    async def send_input(self, session_id: str, data: object) -> None:
        """Deliver input and record it once the backend accepted it.

        Raises:
            NotFound: id was never seen
            BackendUnavailable: session ended, or the backend failed or was closed mid-write
            BadRequest: input the backend cannot accept
        """
        live = await self._require_live(session_id)
        async with live.lock:
            live = await self._require_live(session_id)
            if not await live.handle.write(data):
                raise BackendUnavailable(f"Session {session_id} did not accept the input")
            await self._publish(live, SessionEvent(type=EventType.INPUT.value, payload={"data": data}))

    async def resize(self, session_id: str, cols: int, rows: int) -> None:
        live = await self._require_live(session_id)
        async with live.lock:
            live = await self._require_live(session_id)
            if not isinstance(live.handle, ResizableHandle):
                logger.debug("Session {} is not resizable, ignoring resize", session_id[:8])
                return
            await live.handle.resize(cols, rows)

    async def interrupt(self, session_id: str) -> None:
        live = await self._require_live(session_id)
        async with live.lock:
            live = await self._require_live(session_id)
            await live.handle.interrupt()

    async def close_session(self, session_id: str) -> SessionStatus:
        """Close a session and return its final status.

        Closing an id that already ended returns its terminal status.

        Raises:
            NotFound: id was never seen
        """
        live = self._live.get(session_id)
        if live is None:
            session = await self._known_session(session_id)
            if session is None:
                raise NotFound(f"Session {session_id} not found")
            return session.status

        if not live.closing:
            live.closing = True
            # A backend that already ended has announced its own terminal event
            await self._set_status(live, SessionStatus.CLOSING, announce=not live.handle.terminated)

        # Outside the session lock: a write blocked on the backend holds it until the backend dies
        await live.handle.close()
        # Terminal event lands in history before close returns
        if live.pump is not None and not live.pump.done():
            await asyncio.wait([live.pump], timeout=live.handle.close_timeout)

        async with live.lock:
            if self._live.get(session_id) is not live:
                ended = await self._known_session(session_id)
                return ended.status if ended is not None else SessionStatus.CLOSED
            final = SessionStatus.CLOSED
            if live.terminal is not None and live.terminal.type == EventType.ERRORED.value:
                final = SessionStatus.ERRORED
            await self._set_status(live, final)
            await self._retire(live)

        logger.info("Session {} {}", session_id[:8], final.value)
        return final

    async def delete_session(self, session_id: str) -> None:
        """Close if live, then drop history, layout placement and the session record.

        Raises:
            NotFound: nothing is known about the id
        """
        known = await self._known_session(session_id)
        had_history = self.history.exists(session_id)
        if known is None and not had_history:
            raise NotFound(f"Session {session_id} not found")

        if session_id in self._live:
            await self.close_session(session_id)

        async with self._lock_for(session_id):
            await self.history.delete(session_id)
            if self.layout is not None:
                await self.layout.remove_session(session_id)
            if self.db is not None:
                await self.db.delete_session(session_id)
            self._retired.pop(session_id, None)
        self._locks.pop(session_id, None)
        logger.info("Session {} deleted", session_id[:8])

    def subscribe(self, session_id: str) -> Subscription:
        """Live events from now on; backlog comes from history.

        Raises:
            NotFound: id is not live
        """
        return self.get_session(session_id).channel.subscribe()

    async def read_history(
        self,
        session_id: str,
        n: Optional[int] = None,
        tail: bool = True,
        after_seq: Optional[int] = None,
    ) -> HistoryPage:
        return await self.history.read_history(session_id, n=n, tail=tail, after_seq=after_seq)

    def stats(self) -> JsonDict:
        by_type = Counter(live.session.session_type.value for live in self._live.values())
        by_status = Counter(live.session.status.value for live in self._live.values())
        return {
            "live": len(self._live),
            "retired": self._retired_total,
            "createdTotal": self._created_total,
            "byType": dict(by_type),
            "byStatus": dict(by_status),
            "subscribers": sum(live.channel.subscriber_count() for live in self._live.values()),
            "historyWriteFailures": self._history_failures,
            "tasks": self.tasks.task_count(),
        }

    async def shutdown(self, timeout: float = SHUTDOWN_TIMEOUT_S) -> None:
        """Close every live session, then cancel leftover tasks."""
        session_ids = list(self._live)
        if session_ids:
            logger.info("Closing {} live session(s)", len(session_ids))
            results = await asyncio.gather(
                *(self.close_session(session_id) for session_id in session_ids),
                return_exceptions=True,
            )
            for session_id, result in zip(session_ids, results):
                if isinstance(result, BaseException):
                    logger.error("Failed to close session {} on shutdown: {}", session_id[:8], result)
        await self.tasks.shutdown(timeout=timeout)
