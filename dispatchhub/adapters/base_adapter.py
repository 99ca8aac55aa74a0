"""Base adapter interface for dispatchhub execution backends.

An adapter turns one AdapterConfig into a running SessionHandle. The handle is
the only thing the registry talks to: input goes in through `write()`, output
comes out of `events()`, and `close()` tears the backend down.
"""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from typing import AsyncIterator, Optional

from loguru import logger

from dispatchhub.constants import DEFAULT_CLOSE_TIMEOUT_S
from dispatchhub.core.errors import BackendUnavailable, BadRequest, DispatchError
from dispatchhub.core.models import AdapterConfig, EventType, JsonDict, SessionEvent, SessionType


class InterruptControl(ABC):
    """Cancellation primitive for the backend's current turn.

    Handles only carry one when the backend negotiated a mode in which the
    primitive is valid; absence means the capability does not exist.
    """

    @abstractmethod
    async def interrupt(self) -> None:
        """Ask the backend to stop what it is doing without ending the session."""


class SessionHandle(ABC):
    """Running backend bound to one session.

    Subclasses implement `_write`, `_shutdown`, `_force_kill` and `_release`;
    the base class owns the event queue, the terminal-event bookkeeping and the
    close protocol (signal, wait up to close_timeout, force kill, release).
    """

    session_type: SessionType

    def __init__(self, config: AdapterConfig, close_timeout: float = DEFAULT_CLOSE_TIMEOUT_S) -> None:
        self.session_id = config.session_id
        self.working_directory = config.working_directory
        self.options = dict(config.options)
        self.close_timeout = close_timeout
        self.interrupt_control: Optional[InterruptControl] = None
        self._queue: asyncio.Queue[SessionEvent] = asyncio.Queue()
        self._terminated = False
        self._closing = False
        self._closed = False
        self._close_lock = asyncio.Lock()
        self._stream_taken = False

    # ==================== State ====================

    @property
    def terminated(self) -> bool:
        """True once `closed` or `errored` has been emitted."""
        return self._terminated

    @property
    def closing(self) -> bool:
        return self._closing

    @property
    def resizable(self) -> bool:
        return False

    @property
    def can_interrupt(self) -> bool:
        return self.interrupt_control is not None

    # ==================== Event stream ====================

    def _emit(self, event_type: EventType, payload: Optional[JsonDict] = None) -> None:
        if self._terminated:
            logger.trace("Session {} dropped {} after terminal event", self.session_id[:8], event_type.value)
            return
        event = SessionEvent(type=event_type.value, payload=payload or {})
        if event.is_terminal:
            self._terminated = True
        self._queue.put_nowait(event)

    def _fail(self, message: str, **details: object) -> None:
        """Emit the single terminal `errored` event for this handle."""
        if self._terminated:
            return
        logger.warning("Session {} backend failed: {}", self.session_id[:8], message)
        payload: JsonDict = {"message": message}
        payload.update(details)
        self._emit(EventType.ERRORED, payload)

    async def events(self) -> AsyncIterator[SessionEvent]:
        """Yield events in emission order; ends after `closed` or `errored`.

        The stream can be consumed once.
        """
        if self._stream_taken:
            raise RuntimeError(f"Event stream for session {self.session_id} already consumed")
        self._stream_taken = True
        while True:
            event = await self._queue.get()
            yield event
            if event.is_terminal:
                return

    # ==================== Operations ====================

    async def write(self, data: object) -> bool:
        """Forward input to the backend.

        Returns:
            True once the backend accepted the input. False when a backend
            fault became the `errored` event or a concurrent close cut the
            write short.

        Raises:
            BackendUnavailable: the backend already terminated
            BadRequest: input the backend cannot accept
        """
        if self._terminated or self._closing:
            raise BackendUnavailable(f"Session {self.session_id} backend is not running")
        try:
            await self._write(data)
        except DispatchError:
            raise
        except Exception as exc:  # noqa: BLE001 - backend faults become an errored event
            if self._closing:
                logger.debug("Session {} write interrupted by close: {}", self.session_id[:8], exc)
            else:
                self._fail(f"write failed: {exc}", error_type=type(exc).__name__)
            return False
        return True

    async def interrupt(self) -> None:
        if self.interrupt_control is None:
            raise BadRequest(f"{self.session_type.value} session does not support interrupt in this mode")
        if self._terminated or self._closing:
            raise BackendUnavailable(f"Session {self.session_id} backend is not running")
        try:
            await self.interrupt_control.interrupt()
        except DispatchError:
            raise
        except Exception as exc:  # noqa: BLE001 - backend faults become an errored event
            if not self._closing:
                self._fail(f"interrupt failed: {exc}", error_type=type(exc).__name__)

    async def close(self) -> None:
        """Stop the backend and release resources. Idempotent; never raises."""
        async with self._close_lock:
            if self._closed:
                return
            self._closing = True
            already_terminated = self._terminated
            try:
                if not already_terminated:
                    try:
                        await asyncio.wait_for(self._shutdown(), timeout=self.close_timeout)
                    except asyncio.TimeoutError:
                        logger.warning(
                            "Session {} backend ignored shutdown for {:.1f}s, forcing",
                            self.session_id[:8],
                            self.close_timeout,
                        )
                        await self._force_kill()
            except Exception as exc:  # noqa: BLE001 - close must not raise
                logger.opt(exception=exc).warning("Session {} shutdown error: {}", self.session_id[:8], exc)
            finally:
                try:
                    await self._release()
                except Exception as exc:  # noqa: BLE001 - close must not raise
                    logger.opt(exception=exc).warning("Session {} release error: {}", self.session_id[:8], exc)
                self._closed = True
                self._emit(EventType.CLOSED, {"reason": "closed"})
            logger.debug("Session {} handle closed", self.session_id[:8])

    # ==================== Variant hooks ====================

    @abstractmethod
    async def _write(self, data: object) -> None:
        """Deliver input to the backend."""

    @abstractmethod
    async def _shutdown(self) -> None:
        """Signal the backend and wait for it to exit (bounded by the caller)."""

    async def _force_kill(self) -> None:
        """Kill a backend that ignored `_shutdown`."""

    async def _release(self) -> None:
        """Free remaining resources (reader tasks, pipes, descriptors)."""


class ResizableHandle(SessionHandle):
    """Handle whose backend has a window size."""

    @property
    def resizable(self) -> bool:
        return True

    async def resize(self, cols: int, rows: int) -> None:
        if not isinstance(cols, int) or not isinstance(rows, int) or cols <= 0 or rows <= 0:
            raise BadRequest(f"Invalid terminal size {cols}x{rows}")
        if self._terminated or self._closing:
            raise BackendUnavailable(f"Session {self.session_id} backend is not running")
        try:
            await self._resize(cols, rows)
        except DispatchError:
            raise
        except Exception as exc:  # noqa: BLE001 - backend faults become an errored event
            if not self._closing:
                self._fail(f"resize failed: {exc}", error_type=type(exc).__name__)

    @abstractmethod
    async def _resize(self, cols: int, rows: int) -> None:
        """Apply the new size to the backend."""


class BaseAdapter(ABC):
    """Factory for one backend variant."""

    session_type: SessionType

    def available_commands(self, working_directory: str) -> Optional[list[str]]:
        """Commands already known for this configuration, without probing."""
        return None

    @abstractmethod
    async def create(self, config: AdapterConfig) -> SessionHandle:
        """Start a backend for `config` and return its running handle.

        Raises:
            AdapterInitFailed: the backend could not start
        """
