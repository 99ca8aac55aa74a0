"""Terminal adapter - an interactive shell in a PTY driven by pexpect."""

from __future__ import annotations

import asyncio
import os
import signal
from typing import Optional

import pexpect
from loguru import logger

from dispatchhub.adapters.base_adapter import BaseAdapter, InterruptControl, ResizableHandle
from dispatchhub.config import TerminalConfig
from dispatchhub.constants import TERMINAL_READ_CHUNK, TERMINAL_READ_TIMEOUT_S
from dispatchhub.core.errors import AdapterInitFailed, BadRequest
from dispatchhub.core.models import AdapterConfig, EventType, SessionType

_EXIT_POLL_S = 0.05


class _CtrlC(InterruptControl):
    def __init__(self, child: pexpect.spawn) -> None:
        self._child = child

    async def interrupt(self) -> None:
        await asyncio.to_thread(self._child.sendintr)


class TerminalHandle(ResizableHandle):
    """Shell process attached to a pseudo-terminal."""

    session_type = SessionType.TERMINAL

    def __init__(self, config: AdapterConfig, child: pexpect.spawn, close_timeout: float) -> None:
        super().__init__(config, close_timeout)
        self._child = child
        self._signalled = False
        self._reader: Optional[asyncio.Task[None]] = None
        self.interrupt_control = _CtrlC(child)

    @property
    def pid(self) -> Optional[int]:
        return self._child.pid

    def start(self) -> None:
        self._reader = asyncio.create_task(self._read_loop(), name=f"terminal-read-{self.session_id[:8]}")

    def _read_chunk(self) -> str:
        try:
            return self._child.read_nonblocking(size=TERMINAL_READ_CHUNK, timeout=TERMINAL_READ_TIMEOUT_S)
        except pexpect.TIMEOUT:
            return ""

    async def _read_loop(self) -> None:
        while True:
            try:
                chunk = await asyncio.to_thread(self._read_chunk)
            except pexpect.EOF:
                break
            except (pexpect.ExceptionPexpect, OSError, ValueError) as exc:
                if not self._closing:
                    self._fail(f"terminal read failed: {exc}")
                return
            if chunk:
                self._emit(EventType.OUTPUT, {"data": chunk})

        if self._closing:
            return
        await asyncio.to_thread(self._reap)
        exit_code = self._child.exitstatus
        signal_status = self._child.signalstatus
        if signal_status is not None and not self._signalled:
            self._fail(f"shell killed by signal {signal_status}", signal=signal_status)
        else:
            logger.info("Terminal {} exited (code={})", self.session_id[:8], exit_code)
            self._emit(EventType.CLOSED, {"reason": "exited", "exit_code": exit_code})

    def _reap(self) -> None:
        if not self._child.closed:
            self._child.close(force=True)

    async def _write(self, data: object) -> None:
        if not isinstance(data, str):
            raise BadRequest("terminal input must be a string")
        await asyncio.to_thread(self._child.send, data)

    async def _resize(self, cols: int, rows: int) -> None:
        await asyncio.to_thread(self._child.setwinsize, rows, cols)
        logger.debug("Terminal {} resized to {}x{}", self.session_id[:8], cols, rows)

    async def _shutdown(self) -> None:
        if not self._child.isalive():
            return
        self._signalled = True
        self._child.kill(signal.SIGHUP)
        while self._child.isalive():
            await asyncio.sleep(_EXIT_POLL_S)

    async def _force_kill(self) -> None:
        if self._child.isalive():
            self._child.kill(signal.SIGKILL)

    async def _release(self) -> None:
        if self._reader is not None and not self._reader.done():
            self._reader.cancel()
            try:
                await self._reader
            except asyncio.CancelledError:
                pass
        await asyncio.to_thread(self._reap)


class TerminalAdapter(BaseAdapter):
    """Spawns the configured shell for terminal sessions.

    Recognised options: `cols`, `rows`, `env` (extra environment variables).
    """

    session_type = SessionType.TERMINAL

    def __init__(self, terminal_config: TerminalConfig) -> None:
        self.config = terminal_config

    def _spawn(self, cwd: str, cols: int, rows: int, env: dict[str, str]) -> pexpect.spawn:
        return pexpect.spawn(
            self.config.shell,
            encoding="utf-8",
            codec_errors="replace",
            echo=False,
            dimensions=(rows, cols),
            cwd=cwd,
            env=env,
        )

    async def create(self, config: AdapterConfig) -> TerminalHandle:
        cwd = os.path.expanduser(config.working_directory)
        if not os.path.isdir(cwd):
            raise AdapterInitFailed(f"Working directory does not exist: {config.working_directory}")

        cols = config.options.get("cols", self.config.cols)
        rows = config.options.get("rows", self.config.rows)
        if not isinstance(cols, int) or not isinstance(rows, int) or cols <= 0 or rows <= 0:
            raise AdapterInitFailed(f"Invalid terminal size {cols}x{rows}")

        env = dict(os.environ)
        env.setdefault("TERM", "xterm-256color")
        extra_env = config.options.get("env")
        if isinstance(extra_env, dict):
            env.update({str(k): str(v) for k, v in extra_env.items()})

        try:
            child = await asyncio.to_thread(self._spawn, cwd, cols, rows, env)
        except (pexpect.ExceptionPexpect, OSError) as exc:
            raise AdapterInitFailed(f"Failed to start shell {self.config.shell}: {exc}") from exc

        handle = TerminalHandle(config, child, self.config.close_timeout)
        handle.start()
        logger.info("Terminal {} started: {} (pid={}) in {}", config.session_id[:8], self.config.shell, child.pid, cwd)
        return handle
