"""Append-only per-session event logs with byte-bounded tail reads.

Each session gets `<history_dir>/<session_id>.jsonl`, one JSON record per line.
Reads never load more than a fixed byte window from the end of the file, so
reconnect catch-up costs the same no matter how long a session has run.
"""

from __future__ import annotations

import asyncio
import json
import os
import re
from collections import Counter
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import AsyncIterator, Optional, cast

from loguru import logger

from dispatchhub.constants import (
    HISTORY_DEFAULT_LINES,
    HISTORY_FULL_WINDOW_BYTES,
    HISTORY_READ_CHUNK_BYTES,
    HISTORY_SUFFIX,
    HISTORY_TAIL_WINDOW_BYTES,
    SESSION_ID_PATTERN,
)
from dispatchhub.core.errors import BadRequest, HistoryWriteError, ServiceUnavailable
from dispatchhub.core.models import JsonDict, event_role

_SESSION_ID_RE = re.compile(SESSION_ID_PATTERN)


def validate_session_id(session_id: str) -> str:
    """Reject ids that are unsafe to use as a file name."""
    if not isinstance(session_id, str) or not _SESSION_ID_RE.fullmatch(session_id):
        raise BadRequest(f"Invalid session id: {session_id!r}")
    return session_id


@dataclass
class HistorySummary:
    count: int = 0
    by_role: dict[str, int] = field(default_factory=dict)
    last_at: Optional[str] = None

    def to_dict(self) -> JsonDict:
        return {"count": self.count, "byRole": dict(self.by_role), "lastAt": self.last_at}


@dataclass
class HistoryPage:
    """Ordered parsed records plus a small summary of them."""

    session_id: str
    records: list[JsonDict]
    summary: HistorySummary

    def to_dict(self) -> JsonDict:
        return {
            "sessionId": self.session_id,
            "records": self.records,
            "summary": self.summary.to_dict(),
        }


def summarize(records: list[JsonDict]) -> HistorySummary:
    roles: Counter[str] = Counter()
    last_at: Optional[str] = None
    for record in records:
        role = record.get("role")
        if not isinstance(role, str):
            role = event_role(str(record.get("type", "")), record.get("payload"))
        roles[role] += 1
        timestamp = record.get("timestamp")
        if isinstance(timestamp, str):
            last_at = timestamp
    return HistorySummary(count=len(records), by_role=dict(roles), last_at=last_at)


def _read_window_lines(
    path: Path,
    max_bytes: int,
    max_lines: Optional[int] = None,
    chunk_size: int = HISTORY_READ_CHUNK_BYTES,
) -> list[str]:
    """Return complete lines found in the last `max_bytes` of `path`.

    Reads backward in chunks and stops early once `max_lines` complete lines
    are in hand. A line cut by the window start is dropped; a trailing line
    without a newline counts as a line.
    """
    if max_bytes <= 0 or (max_lines is not None and max_lines <= 0):
        return []
    try:
        size = path.stat().st_size
    except FileNotFoundError:
        return []
    if size == 0:
        return []

    floor = max(0, size - max_bytes)
    pos = size
    buf = b""
    with open(path, "rb") as f:
        while pos > floor:
            step = min(chunk_size, pos - floor)
            pos -= step
            f.seek(pos)
            buf = f.read(step) + buf
            if max_lines is not None and buf.rstrip(b"\n").count(b"\n") >= max_lines:
                break

        first_complete = pos == 0
        if not first_complete:
            f.seek(pos - 1)
            first_complete = f.read(1) == b"\n"

    parts = buf.split(b"\n")
    if not first_complete:
        parts = parts[1:]
    lines = [part.decode("utf-8", errors="replace") for part in parts if part.strip()]
    if max_lines is not None:
        lines = lines[-max_lines:]
    return lines


def _parse_records(lines: list[str]) -> list[JsonDict]:
    records: list[JsonDict] = []
    for line in lines:
        try:
            value: object = json.loads(line)
        except json.JSONDecodeError:
            continue
        if isinstance(value, dict):
            records.append(cast(JsonDict, value))
    return records


def _record_seq(record: JsonDict) -> int:
    seq = record.get("seq")
    if isinstance(seq, int) and not isinstance(seq, bool):
        return seq
    return -1


@dataclass
class _SessionLock:
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    users: int = 0


class HistoryStore:
    """Durable, ordered append log per session."""

    def __init__(
        self,
        history_dir: Path,
        tail_window_bytes: int = HISTORY_TAIL_WINDOW_BYTES,
        full_window_bytes: int = HISTORY_FULL_WINDOW_BYTES,
        default_lines: int = HISTORY_DEFAULT_LINES,
        fsync: bool = False,
    ) -> None:
        self.history_dir = Path(history_dir)
        self.tail_window_bytes = tail_window_bytes
        self.full_window_bytes = full_window_bytes
        self.default_lines = default_lines
        self.fsync = fsync
        self._locks: dict[str, _SessionLock] = {}

    def path_for(self, session_id: str) -> Path:
        return self.history_dir / f"{validate_session_id(session_id)}{HISTORY_SUFFIX}"

    @asynccontextmanager
    async def _locked(self, session_id: str) -> AsyncIterator[None]:
        """Per-session lock, dropped from the map once nobody holds or awaits it."""
        entry = self._locks.get(session_id)
        if entry is None:
            entry = _SessionLock()
            self._locks[session_id] = entry
        entry.users += 1
        try:
            async with entry.lock:
                yield
        finally:
            entry.users -= 1
            if entry.users == 0 and self._locks.get(session_id) is entry:
                del self._locks[session_id]

    def _append_sync(self, path: Path, line: str) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "a", encoding="utf-8") as f:
            f.write(line)
            if self.fsync:
                f.flush()
                os.fsync(f.fileno())

    async def append_event(self, session_id: str, record: JsonDict) -> None:
        """Append one record; appends for the same session keep call order.

        Raises:
            BadRequest: session id unusable as a file name
            HistoryWriteError: the write failed
        """
        path = self.path_for(session_id)
        try:
            line = json.dumps(record, ensure_ascii=False, default=str) + "\n"
        except (TypeError, ValueError) as exc:
            raise HistoryWriteError(f"Unserializable history record for {session_id}: {exc}") from exc

        async with self._locked(session_id):
            try:
                await asyncio.to_thread(self._append_sync, path, line)
            except OSError as exc:
                logger.error("History append failed for {}: {}", session_id[:8], exc)
                raise HistoryWriteError(f"History write failed for {session_id}: {exc}") from exc

    async def read_tail(self, session_id: str, max_lines: int, max_bytes: int) -> list[str]:
        """Last `max_lines` complete lines within the final `max_bytes` of the log.

        A missing log is a valid, empty history.
        """
        path = self.path_for(session_id)
        try:
            return await asyncio.to_thread(_read_window_lines, path, max_bytes, max_lines)
        except OSError as exc:
            logger.warning("History read failed for {}: {}", session_id[:8], exc)
            raise ServiceUnavailable(f"History read failed for {session_id}: {exc}") from exc

    async def _read_window(self, session_id: str) -> list[JsonDict]:
        path = self.path_for(session_id)
        try:
            lines = await asyncio.to_thread(_read_window_lines, path, self.full_window_bytes)
        except OSError as exc:
            logger.warning("History read failed for {}: {}", session_id[:8], exc)
            raise ServiceUnavailable(f"History read failed for {session_id}: {exc}") from exc
        return _parse_records(lines)

    async def read_history(
        self,
        session_id: str,
        n: Optional[int] = None,
        tail: bool = True,
        after_seq: Optional[int] = None,
    ) -> HistoryPage:
        """Parsed records for replay.

        Args:
            session_id: Session whose log to read
            n: Number of records (None: default_lines for tail reads, all otherwise)
            tail: Last `n` records of the short window, else first `n` of the full window
            after_seq: Only records with a larger seq, oldest first; `n` then caps
                the page so a client can resume from the last seq it received

        Returns:
            HistoryPage with records in write order
        """
        if n is not None and n < 0:
            raise BadRequest("n must be >= 0")
        if after_seq is not None and after_seq < 0:
            raise BadRequest("afterSeq must be >= 0")

        if after_seq is not None:
            records = [r for r in await self._read_window(session_id) if _record_seq(r) > after_seq]
            if n is not None:
                records = records[:n]
        elif tail:
            lines = await self.read_tail(session_id, n if n is not None else self.default_lines, self.tail_window_bytes)
            records = _parse_records(lines)
        else:
            records = await self._read_window(session_id)
            if n is not None:
                records = records[:n]

        return HistoryPage(session_id=session_id, records=records, summary=summarize(records))

    async def delete(self, session_id: str) -> bool:
        """Remove a session's log. Returns False when there was none."""
        path = self.path_for(session_id)
        async with self._locked(session_id):
            try:
                await asyncio.to_thread(path.unlink)
            except FileNotFoundError:
                return False
        logger.debug("Deleted history for {}", session_id[:8])
        return True

    def exists(self, session_id: str) -> bool:
        return self.path_for(session_id).exists()
