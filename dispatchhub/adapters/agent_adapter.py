"""AI agent adapter - drives the agent CLI over JSON lines.

Two input modes are negotiated when the session is created:

- `stream-json`: one long-lived CLI process; every write is a JSON user
  message on stdin. Only this mode can interrupt a running turn (a
  `control_request` with subtype `interrupt`).
- `prompt`: every write runs a one-shot `-p <text>` turn that resumes the
  agent's own conversation id. There is nothing to interrupt.
"""

from __future__ import annotations

import asyncio
import json
import os
import shutil
import uuid
from collections import deque
from typing import Coroutine, Iterable, Optional, Sequence

from loguru import logger

from dispatchhub.adapters.base_adapter import BaseAdapter, InterruptControl, SessionHandle
from dispatchhub.config import AgentConfig
from dispatchhub.constants import (
    AGENT_INPUT_MODE_PROMPT,
    AGENT_INPUT_MODE_STREAM,
    AGENT_INPUT_MODES,
    AGENT_STDERR_TAIL_LINES,
    AGENT_STDOUT_LIMIT_BYTES,
    AGENT_STREAM_FLAGS,
    AGENT_STREAM_INPUT_FLAGS,
)
from dispatchhub.core.cache import CommandCache, command_cache_key
from dispatchhub.core.errors import AdapterInitFailed, BadRequest, DispatchError, ServiceUnavailable
from dispatchhub.core.models import AdapterConfig, EventType, JsonDict, SessionType

# option name -> (camelCase alias, CLI flag)
_VALUE_OPTIONS = {
    "model": ("model", "--model"),
    "permission_mode": ("permissionMode", "--permission-mode"),
    "max_turns": ("maxTurns", "--max-turns"),
    "append_system_prompt": ("appendSystemPrompt", "--append-system-prompt"),
}


def _option(options: JsonDict, name: str, alias: Optional[str] = None) -> object:
    value = options.get(name)
    if value is None and alias:
        value = options.get(alias)
    return value


def option_flags(options: JsonDict) -> list[str]:
    """Translate session options into CLI flags."""
    flags: list[str] = []
    for name, (alias, flag) in _VALUE_OPTIONS.items():
        value = _option(options, name, alias)
        if value is not None and value != "":
            flags.extend([flag, str(value)])
    tools = _option(options, "allowed_tools", "allowedTools")
    if isinstance(tools, (list, tuple)) and tools:
        flags.extend(["--allowedTools", ",".join(str(t) for t in tools)])
    return flags


def build_agent_command(
    binary: str,
    input_mode: str,
    extra_flags: Iterable[str] = (),
    prompt: Optional[str] = None,
    resume: Optional[str] = None,
) -> list[str]:
    """Build the argv for one agent CLI invocation."""
    if input_mode == AGENT_INPUT_MODE_STREAM:
        cmd = [binary, "-p", *AGENT_STREAM_FLAGS, *AGENT_STREAM_INPUT_FLAGS]
    elif input_mode == AGENT_INPUT_MODE_PROMPT:
        if prompt is None:
            raise ValueError("prompt mode needs a prompt")
        cmd = [binary, "-p", prompt, *AGENT_STREAM_FLAGS]
    else:
        raise ValueError(f"Unknown agent input mode: {input_mode}")
    if resume:
        cmd.extend(["--resume", resume])
    cmd.extend(extra_flags)
    return cmd


def user_message(text: str) -> JsonDict:
    return {"type": "user", "message": {"role": "user", "content": [{"type": "text", "text": text}]}}


def control_request(subtype: str) -> JsonDict:
    return {
        "type": "control_request",
        "request_id": f"req_{uuid.uuid4().hex[:12]}",
        "request": {"subtype": subtype},
    }


def _encode_line(message: JsonDict) -> bytes:
    return (json.dumps(message, ensure_ascii=False) + "\n").encode("utf-8")


def extract_commands(message: JsonDict) -> Optional[list[str]]:
    """Pull slash command names out of an initialize response or init message.

    Returns None when the message carries no command list.
    """
    if message.get("type") == "control_response":
        response = message.get("response")
        if not isinstance(response, dict):
            return None
        inner = response.get("response")
        body = inner if isinstance(inner, dict) else response
        raw = body.get("commands")
    elif message.get("type") == "system" and message.get("subtype") == "init":
        raw = message.get("slash_commands")
    else:
        return None
    if not isinstance(raw, list):
        return None

    names: list[str] = []
    for item in raw:
        name = item.get("name") if isinstance(item, dict) else item
        if isinstance(name, str) and name:
            names.append(name)
    return names


async def _terminate(proc: asyncio.subprocess.Process, timeout: float) -> None:
    if proc.returncode is not None:
        return
    try:
        proc.terminate()
        await asyncio.wait_for(proc.wait(), timeout=timeout)
    except ProcessLookupError:
        return
    except asyncio.TimeoutError:
        proc.kill()
        await proc.wait()


async def discover_agent_commands(
    binary: str,
    cwd: str,
    timeout: float,
    extra_flags: Sequence[str] = (),
) -> list[str]:
    """Ask a throwaway agent CLI process which slash commands it supports.

    Raises:
        ServiceUnavailable: the CLI could not start or did not answer in time
    """
    cmd = build_agent_command(binary, AGENT_INPUT_MODE_STREAM, extra_flags)
    try:
        proc = await asyncio.create_subprocess_exec(
            *cmd,
            cwd=cwd,
            stdin=asyncio.subprocess.PIPE,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.DEVNULL,
            limit=AGENT_STDOUT_LIMIT_BYTES,
        )
    except OSError as exc:
        raise ServiceUnavailable(f"Agent CLI {binary} could not start: {exc}") from exc

    async def _read_commands() -> list[str]:
        assert proc.stdout is not None
        while True:
            line = await proc.stdout.readline()
            if not line:
                raise ServiceUnavailable("Agent CLI exited before reporting commands")
            try:
                message: object = json.loads(line)
            except json.JSONDecodeError:
                continue
            if isinstance(message, dict):
                commands = extract_commands(message)
                if commands is not None:
                    return commands

    try:
        assert proc.stdin is not None
        proc.stdin.write(_encode_line(control_request("initialize")))
        await proc.stdin.drain()
        commands = await asyncio.wait_for(_read_commands(), timeout=timeout)
    except asyncio.TimeoutError as exc:
        raise ServiceUnavailable(f"Agent CLI command discovery timed out after {timeout:.0f}s") from exc
    except (BrokenPipeError, ConnectionResetError) as exc:
        raise ServiceUnavailable(f"Agent CLI closed its input during discovery: {exc}") from exc
    finally:
        await _terminate(proc, timeout=2.0)

    logger.debug("Discovered {} agent commands in {}", len(commands), cwd)
    return commands


class _StreamInterrupt(InterruptControl):
    def __init__(self, handle: "AgentHandle") -> None:
        self._handle = handle

    async def interrupt(self) -> None:
        await self._handle.send_control("interrupt")


class AgentHandle(SessionHandle):
    """One agent CLI conversation."""

    session_type = SessionType.AI_AGENT

    def __init__(
        self,
        config: AdapterConfig,
        agent_config: AgentConfig,
        input_mode: str,
        extra_flags: list[str],
        cwd: str,
        env: dict[str, str],
    ) -> None:
        super().__init__(config, agent_config.close_timeout)
        self.agent_config = agent_config
        self.input_mode = input_mode
        self.cwd = cwd
        self._extra_flags = extra_flags
        self._env = env
        self.agent_session_id: Optional[str] = None
        resume = _option(config.options, "resume")
        if isinstance(resume, str) and resume:
            self.agent_session_id = resume
        self._proc: Optional[asyncio.subprocess.Process] = None
        self._tasks: set[asyncio.Task[None]] = set()
        self._stderr_tail: deque[str] = deque(maxlen=AGENT_STDERR_TAIL_LINES)
        if input_mode == AGENT_INPUT_MODE_STREAM:
            self.interrupt_control = _StreamInterrupt(self)

    @property
    def turn_running(self) -> bool:
        return self._proc is not None and self._proc.returncode is None

    def emit_commands(self, commands: list[str], from_cache: bool) -> None:
        """Publish the discovered slash commands on this session's stream."""
        self._emit(EventType.COMMANDS, {"commands": commands, "fromCache": from_cache})

    def spawn_task(self, coro: Coroutine[object, object, None], name: str) -> asyncio.Task[None]:
        task: asyncio.Task[None] = asyncio.create_task(coro, name=f"{name}-{self.session_id[:8]}")
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _spawn(self, cmd: list[str]) -> asyncio.subprocess.Process:
        proc = await asyncio.create_subprocess_exec(
            *cmd,
            cwd=self.cwd,
            env=self._env,
            stdin=asyncio.subprocess.PIPE if self.input_mode == AGENT_INPUT_MODE_STREAM else asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            limit=AGENT_STDOUT_LIMIT_BYTES,
        )
        logger.debug("Agent {} spawned pid={} ({})", self.session_id[:8], proc.pid, self.input_mode)
        self._proc = proc
        self.spawn_task(self._run_process(proc), name="agent-run")
        return proc

    async def start(self) -> None:
        """Start the long-lived process (stream mode only)."""
        if self.input_mode != AGENT_INPUT_MODE_STREAM:
            return
        cmd = build_agent_command(
            self.agent_config.binary,
            self.input_mode,
            [*self._extra_flags, *self.agent_config.flags],
            resume=self.agent_session_id,
        )
        await self._spawn(cmd)

    # ==================== Output ====================

    def _handle_line(self, raw: bytes) -> None:
        text = raw.decode("utf-8", errors="replace").rstrip("\r\n")
        if not text.strip():
            return
        try:
            message: object = json.loads(text)
        except json.JSONDecodeError:
            self._emit(EventType.OUTPUT, {"data": text})
            return
        if not isinstance(message, dict):
            self._emit(EventType.OUTPUT, {"data": text})
            return

        if message.get("type") == "control_response":
            logger.trace("Agent {} control response: {}", self.session_id[:8], message)
            return
        if message.get("type") == "system" and message.get("subtype") == "init":
            agent_session = message.get("session_id")
            if isinstance(agent_session, str) and agent_session:
                self.agent_session_id = agent_session
        self._emit(EventType.MESSAGE, message)

    async def _drain_stderr(self, proc: asyncio.subprocess.Process) -> None:
        assert proc.stderr is not None
        while True:
            line = await proc.stderr.readline()
            if not line:
                return
            text = line.decode("utf-8", errors="replace").rstrip()
            if text:
                self._stderr_tail.append(text)
                logger.trace("Agent {} stderr: {}", self.session_id[:8], text)

    async def _run_process(self, proc: asyncio.subprocess.Process) -> None:
        assert proc.stdout is not None
        stderr_task = asyncio.create_task(self._drain_stderr(proc))
        try:
            while True:
                line = await proc.stdout.readline()
                if not line:
                    break
                self._handle_line(line)
        except (ValueError, asyncio.LimitOverrunError) as exc:
            if not self._closing:
                self._fail(f"agent output unreadable: {exc}")
            return
        finally:
            if not stderr_task.done() and self._closing:
                stderr_task.cancel()

        returncode = await proc.wait()
        await asyncio.gather(stderr_task, return_exceptions=True)
        if self._closing:
            return

        if returncode != 0:
            self._fail(
                f"agent exited with code {returncode}",
                exit_code=returncode,
                stderr="\n".join(self._stderr_tail),
            )
        elif self.input_mode == AGENT_INPUT_MODE_STREAM:
            logger.info("Agent {} exited", self.session_id[:8])
            self._emit(EventType.CLOSED, {"reason": "exited", "exit_code": 0})
        else:
            self._emit(EventType.STATUS, {"turn": "complete", "agentSessionId": self.agent_session_id})

    # ==================== Input ====================

    async def _write(self, data: object) -> None:
        if isinstance(data, dict) and isinstance(data.get("text"), str):
            data = data["text"]
        if not isinstance(data, str):
            raise BadRequest("agent input must be text")

        if self.input_mode == AGENT_INPUT_MODE_STREAM:
            await self._send_line(user_message(data))
            return

        if self.turn_running:
            raise BadRequest("previous agent turn is still running")
        cmd = build_agent_command(
            self.agent_config.binary,
            self.input_mode,
            [*self._extra_flags, *self.agent_config.flags],
            prompt=data,
            resume=self.agent_session_id,
        )
        self._stderr_tail.clear()
        await self._spawn(cmd)

    async def _send_line(self, message: JsonDict) -> None:
        proc = self._proc
        if proc is None or proc.stdin is None or proc.returncode is not None:
            raise BrokenPipeError("agent process is not accepting input")
        proc.stdin.write(_encode_line(message))
        await proc.stdin.drain()

    async def send_control(self, subtype: str) -> None:
        """Send a control request on the stream-json channel."""
        if self.input_mode != AGENT_INPUT_MODE_STREAM:
            raise BadRequest(f"control requests need {AGENT_INPUT_MODE_STREAM} input mode")
        logger.info("Agent {} control request: {}", self.session_id[:8], subtype)
        await self._send_line(control_request(subtype))

    # ==================== Teardown ====================

    async def _shutdown(self) -> None:
        proc = self._proc
        if proc is None or proc.returncode is not None:
            return
        if proc.stdin is not None and not proc.stdin.is_closing():
            proc.stdin.close()
        try:
            proc.terminate()
        except ProcessLookupError:
            return
        await proc.wait()

    async def _force_kill(self) -> None:
        proc = self._proc
        if proc is not None and proc.returncode is None:
            try:
                proc.kill()
            except ProcessLookupError:
                return
            await proc.wait()

    async def _release(self) -> None:
        tasks = [task for task in self._tasks if task is not asyncio.current_task()]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)


class AgentAdapter(BaseAdapter):
    """Starts agent CLI sessions and publishes their slash commands.

    Recognised options: `input_mode`, `model`, `permission_mode`, `max_turns`,
    `allowed_tools`, `append_system_prompt`, `resume`, `discover_commands`.
    """

    session_type = SessionType.AI_AGENT

    def __init__(self, agent_config: AgentConfig, command_cache: Optional[CommandCache] = None) -> None:
        self.config = agent_config
        self.command_cache = command_cache

    def cache_key(self, working_directory: str) -> str:
        return command_cache_key(working_directory, self.config.binary)

    def available_commands(self, working_directory: str) -> Optional[list[str]]:
        if self.command_cache is None:
            return None
        return self.command_cache.peek(self.cache_key(working_directory))

    async def fetch_commands(self, working_directory: str) -> list[str]:
        return await discover_agent_commands(
            self.config.binary,
            os.path.expanduser(working_directory),
            self.config.discovery_timeout,
            self.config.flags,
        )

    async def _discover(self, handle: AgentHandle) -> None:
        if self.command_cache is None:
            return
        key = self.cache_key(handle.working_directory)
        try:
            lookup = await self.command_cache.get_or_fetch(key, lambda: self.fetch_commands(handle.working_directory))
        except (DispatchError, OSError) as exc:
            logger.warning("Command discovery failed for {}: {}", handle.session_id[:8], exc)
            return
        handle.emit_commands(lookup.commands, lookup.from_cache)

    async def create(self, config: AdapterConfig) -> AgentHandle:
        cwd = os.path.expanduser(config.working_directory)
        if not os.path.isdir(cwd):
            raise AdapterInitFailed(f"Working directory does not exist: {config.working_directory}")

        input_mode = _option(config.options, "input_mode", "inputMode") or self.config.input_mode
        if input_mode not in AGENT_INPUT_MODES:
            raise BadRequest(f"input_mode must be one of {AGENT_INPUT_MODES}")

        if shutil.which(self.config.binary) is None:
            raise AdapterInitFailed(f"Agent CLI not found: {self.config.binary}")

        env = dict(os.environ)
        extra_env = config.options.get("env")
        if isinstance(extra_env, dict):
            env.update({str(k): str(v) for k, v in extra_env.items()})

        handle = AgentHandle(config, self.config, str(input_mode), option_flags(config.options), cwd, env)
        try:
            await handle.start()
        except OSError as exc:
            raise AdapterInitFailed(f"Agent CLI {self.config.binary} could not start: {exc}") from exc

        if _option(config.options, "discover_commands", "discoverCommands") is not False:
            handle.spawn_task(self._discover(handle), name="agent-commands")

        logger.info("Agent {} started in {} ({} mode)", config.session_id[:8], cwd, input_mode)
        return handle
