"""File editor adapter - bridges one file under the session's working directory."""

from __future__ import annotations

import asyncio
import json
import os
import tempfile
from pathlib import Path

from loguru import logger

from dispatchhub.adapters.base_adapter import BaseAdapter, SessionHandle
from dispatchhub.config import EditorConfig
from dispatchhub.core.errors import AdapterInitFailed, BadRequest
from dispatchhub.core.models import AdapterConfig, EventType, JsonDict, SessionType


def resolve_inside(root: Path, relative: str) -> Path:
    """Resolve `relative` against `root`, refusing paths that escape it."""
    candidate = (root / relative).resolve()
    if candidate != root and root not in candidate.parents:
        raise AdapterInitFailed(f"Path escapes working directory: {relative}")
    return candidate


def _atomic_write(path: Path, content: str) -> None:
    fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(content)
            f.flush()
            os.fsync(f.fileno())
        if path.exists():
            os.chmod(tmp_name, path.stat().st_mode & 0o7777)
        os.replace(tmp_name, path)
    except BaseException:
        Path(tmp_name).unlink(missing_ok=True)
        raise


class FileEditorHandle(SessionHandle):
    """Load/save bridge for a single text file."""

    session_type = SessionType.FILE_EDITOR

    def __init__(self, config: AdapterConfig, path: Path, max_file_bytes: int) -> None:
        super().__init__(config)
        self.path = path
        self.max_file_bytes = max_file_bytes

    def _snapshot_sync(self) -> JsonDict:
        if not self.path.exists():
            return {"path": str(self.path), "content": "", "size": 0, "mtime": None, "exists": False}
        stat = self.path.stat()
        if stat.st_size > self.max_file_bytes:
            raise BadRequest(f"File too large to edit: {stat.st_size} bytes (max {self.max_file_bytes})")
        content = self.path.read_text(encoding="utf-8", errors="replace")
        return {
            "path": str(self.path),
            "content": content,
            "size": stat.st_size,
            "mtime": stat.st_mtime,
            "exists": True,
        }

    async def load(self, **extra: object) -> None:
        snapshot = await asyncio.to_thread(self._snapshot_sync)
        snapshot.update(extra)
        self._emit(EventType.FILE, snapshot)

    @staticmethod
    def _parse_op(data: object) -> JsonDict:
        if isinstance(data, str):
            try:
                data = json.loads(data)
            except json.JSONDecodeError as exc:
                raise BadRequest(f"editor input must be a JSON object: {exc}") from exc
        if not isinstance(data, dict):
            raise BadRequest("editor input must be a JSON object")
        return data

    async def _write(self, data: object) -> None:
        op = self._parse_op(data)
        kind = op.get("op")
        if kind == "reload":
            await self.load(reloaded=True)
            return
        if kind != "save":
            raise BadRequest(f"Unknown editor op: {kind!r}")

        content = op.get("content")
        if not isinstance(content, str):
            raise BadRequest("save requires string content")
        if len(content.encode("utf-8")) > self.max_file_bytes:
            raise BadRequest(f"Content exceeds {self.max_file_bytes} bytes")

        await asyncio.to_thread(_atomic_write, self.path, content)
        stat = self.path.stat()
        logger.info("Editor {} saved {} ({} bytes)", self.session_id[:8], self.path, stat.st_size)
        self._emit(
            EventType.FILE,
            {"path": str(self.path), "size": stat.st_size, "mtime": stat.st_mtime, "saved": True},
        )

    async def _shutdown(self) -> None:
        return None


class FileEditorAdapter(BaseAdapter):
    """Opens `options.path` (relative to the working directory) for editing."""

    session_type = SessionType.FILE_EDITOR

    def __init__(self, editor_config: EditorConfig) -> None:
        self.config = editor_config

    async def create(self, config: AdapterConfig) -> FileEditorHandle:
        root = Path(config.working_directory).expanduser().resolve()
        if not root.is_dir():
            raise AdapterInitFailed(f"Working directory does not exist: {config.working_directory}")

        relative = config.options.get("path")
        if not isinstance(relative, str) or not relative:
            raise AdapterInitFailed("file-editor sessions need options.path")
        path = resolve_inside(root, relative)
        if path.is_dir():
            raise AdapterInitFailed(f"Not a file: {relative}")

        handle = FileEditorHandle(config, path, self.config.max_file_bytes)
        try:
            await handle.load()
        except BadRequest as exc:
            raise AdapterInitFailed(str(exc)) from exc
        except OSError as exc:
            raise AdapterInitFailed(f"Cannot read {relative}: {exc}") from exc
        logger.info("Editor {} opened {}", config.session_id[:8], path)
        return handle
