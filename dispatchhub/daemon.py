"""dispatchhub main daemon."""

import asyncio
import atexit
import fcntl
import os
import signal
import sys
from pathlib import Path
from typing import Optional, TextIO

from loguru import logger

from dispatchhub.adapters.agent_adapter import AgentAdapter
from dispatchhub.adapters.base_adapter import BaseAdapter
from dispatchhub.adapters.file_editor_adapter import FileEditorAdapter
from dispatchhub.adapters.terminal_adapter import TerminalAdapter
from dispatchhub.api.gateway import ChannelGateway
from dispatchhub.api_server import APIServer
from dispatchhub.config import Config, load_config
from dispatchhub.constants import SHUTDOWN_TIMEOUT_S
from dispatchhub.core.cache import CommandCache
from dispatchhub.core.db import Db
from dispatchhub.core.history import HistoryStore
from dispatchhub.core.layout import LayoutRepository
from dispatchhub.core.models import SessionType
from dispatchhub.core.registry import SessionRegistry
from dispatchhub.core.task_registry import TaskRegistry
from dispatchhub.logging_config import setup_logging

PID_FILENAME = "dispatchhub.pid"


class DaemonLockError(Exception):
    """Raised when another daemon instance is already running."""


def build_adapters(cfg: Config, command_cache: Optional[CommandCache] = None) -> dict[SessionType, BaseAdapter]:
    """One adapter per session type."""
    return {
        SessionType.TERMINAL: TerminalAdapter(cfg.terminal),
        SessionType.AI_AGENT: AgentAdapter(cfg.agent, command_cache),
        SessionType.FILE_EDITOR: FileEditorAdapter(cfg.editor),
    }


class DispatchDaemon:
    """Owns storage, the session registry and the API server for one process."""

    def __init__(self, cfg: Config) -> None:
        self.config = cfg
        self.pid_file = cfg.storage.root / PID_FILENAME
        self.pid_file_handle: Optional[TextIO] = None
        self.shutdown_event = asyncio.Event()

        self.db = Db(cfg.storage.db_path)
        self.history = HistoryStore(
            cfg.storage.history_dir,
            tail_window_bytes=cfg.history.tail_window_bytes,
            full_window_bytes=cfg.history.full_window_bytes,
            default_lines=cfg.history.default_lines,
            fsync=cfg.history.fsync,
        )
        self.layout = LayoutRepository(self.db)
        self.command_cache = CommandCache(cfg.agent.command_cache_ttl)
        self.tasks = TaskRegistry()
        self.registry = SessionRegistry(
            build_adapters(cfg, self.command_cache),
            self.history,
            db=self.db,
            layout=self.layout,
            tasks=self.tasks,
        )
        self.gateway = ChannelGateway(self.registry, cfg.auth.key, tasks=self.tasks)
        self.api_server = APIServer(
            self.registry,
            self.gateway,
            layout=self.layout,
            auth_key=cfg.auth.key,
            host=cfg.server.host,
            port=cfg.server.port,
        )

    def _acquire_lock(self) -> None:
        """Take an exclusive fcntl lock on the PID file.

        Raises:
            DaemonLockError: If another daemon instance is already running
        """
        try:
            self.pid_file.parent.mkdir(parents=True, exist_ok=True)
            # "a+" keeps the inode so the lock survives a deleted file
            self.pid_file_handle = open(self.pid_file, "a+", encoding="utf-8")
            try:
                fcntl.flock(self.pid_file_handle.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
            except BlockingIOError as exc:
                self.pid_file_handle.close()
                self.pid_file_handle = None
                try:
                    existing_pid = self.pid_file.read_text(encoding="utf-8").strip()
                except OSError:
                    existing_pid = "unknown"
                raise DaemonLockError(
                    f"Another daemon instance is already running (PID: {existing_pid}). "
                    f"Stop it first or remove {self.pid_file} if it's stale."
                ) from exc

            self.pid_file_handle.seek(0)
            self.pid_file_handle.truncate()
            self.pid_file_handle.write(str(os.getpid()))
            self.pid_file_handle.flush()
            logger.debug("Acquired daemon lock (PID: {})", os.getpid())
            atexit.register(self._release_lock)
        except OSError as e:
            if self.pid_file_handle:
                self.pid_file_handle.close()
                self.pid_file_handle = None
            raise DaemonLockError(f"Failed to acquire lock: {e}") from e

    def _release_lock(self) -> None:
        try:
            if self.pid_file_handle:
                self.pid_file_handle.close()
                self.pid_file_handle = None
                logger.debug("Released daemon lock")
                if self.pid_file.exists():
                    self.pid_file.unlink()
        except OSError as e:
            logger.error("Failed to release lock: {}", e)

    async def start(self) -> None:
        if not self.config.auth.key:
            logger.warning("No auth key configured (DISPATCH_KEY); every client will be rejected")
        await self.db.initialize()
        await self.registry.initialize()
        await self.api_server.start()
        logger.info("dispatchhub started (data dir: {})", self.config.storage.root)

    async def stop(self) -> None:
        """Close every session, then the API server, then storage."""
        logger.info("dispatchhub stopping")
        await self.registry.shutdown(SHUTDOWN_TIMEOUT_S)
        await self.api_server.stop()
        await self.db.close()
        logger.info("dispatchhub stopped")


async def main() -> None:
    """Main entry point."""
    cfg = load_config()
    setup_logging(level=cfg.log_level, log_dir=cfg.storage.log_dir)

    daemon = DispatchDaemon(cfg)

    def signal_handler(signum: int, _frame: object) -> None:
        sig_name = signal.Signals(signum).name
        logger.info("Received {} signal...", sig_name)
        daemon.shutdown_event.set()

    signal.signal(signal.SIGTERM, signal_handler)
    signal.signal(signal.SIGINT, signal_handler)

    exit_code = 0
    started = False
    try:
        daemon._acquire_lock()
        await daemon.start()
        started = True
        await daemon.shutdown_event.wait()
    except DaemonLockError as e:
        logger.error(str(e))
        exit_code = 1
    except Exception as e:  # noqa: BLE001 - top-level boundary, exit non-zero
        logger.opt(exception=e).error("Unexpected error: {}", e)
        exit_code = 1
    finally:
        if started or daemon.pid_file_handle is not None:
            try:
                await daemon.stop()
            except Exception as e:  # noqa: BLE001 - shutdown must reach the lock release
                logger.error("Error during daemon stop: {}", e)
            finally:
                daemon._release_lock()

    if exit_code:
        sys.exit(exit_code)


def run() -> None:
    """Console-script entry point."""
    asyncio.run(main())


if __name__ == "__main__":
    run()
