"""Data models for dispatchhub sessions and their event streams."""

from __future__ import annotations

import json
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Optional

JsonDict = dict[str, object]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def now_iso() -> str:
    return utc_now().isoformat()


class SessionType(str, Enum):
    """Closed set of backend variants a session can be bound to."""

    TERMINAL = "terminal"
    AI_AGENT = "ai-agent"
    FILE_EDITOR = "file-editor"


class SessionStatus(str, Enum):
    STARTING = "starting"
    RUNNING = "running"
    CLOSING = "closing"
    CLOSED = "closed"
    ERRORED = "errored"

    @property
    def is_terminal(self) -> bool:
        return self in (SessionStatus.CLOSED, SessionStatus.ERRORED)

    def can_transition(self, target: "SessionStatus") -> bool:
        return target in _TRANSITIONS[self]


_TRANSITIONS: dict[SessionStatus, frozenset[SessionStatus]] = {
    SessionStatus.STARTING: frozenset({SessionStatus.RUNNING, SessionStatus.ERRORED}),
    SessionStatus.RUNNING: frozenset({SessionStatus.CLOSING, SessionStatus.ERRORED}),
    SessionStatus.CLOSING: frozenset({SessionStatus.CLOSED, SessionStatus.ERRORED}),
    SessionStatus.CLOSED: frozenset(),
    SessionStatus.ERRORED: frozenset(),
}


class EventType(str, Enum):
    STATUS = "status"
    OUTPUT = "output"
    MESSAGE = "message"
    COMMANDS = "commands"
    FILE = "file"
    INPUT = "input"
    CLOSED = "closed"
    ERRORED = "errored"

    @property
    def is_terminal(self) -> bool:
        return self in (EventType.CLOSED, EventType.ERRORED)


# Agent JSON messages carry their own role in "type"
_AGENT_ROLES = frozenset({"user", "assistant", "system", "result"})


def event_role(event_type: str, payload: object) -> str:
    """Classify an event for the per-role history summary."""
    if event_type == EventType.INPUT.value:
        return "user"
    if event_type == EventType.MESSAGE.value:
        if isinstance(payload, dict):
            kind = payload.get("type")
            if isinstance(kind, str) and kind in _AGENT_ROLES:
                return kind
        return "assistant"
    if event_type == EventType.OUTPUT.value:
        return "assistant"
    return "system"


@dataclass
class SessionEvent:
    """One item of a session's outbound stream."""

    type: str
    payload: JsonDict = field(default_factory=dict)
    timestamp: str = field(default_factory=now_iso)
    seq: int = 0

    @property
    def is_terminal(self) -> bool:
        return self.type in (EventType.CLOSED.value, EventType.ERRORED.value)

    @property
    def role(self) -> str:
        return event_role(self.type, self.payload)

    def to_dict(self) -> JsonDict:
        return {
            "seq": self.seq,
            "type": self.type,
            "role": self.role,
            "payload": self.payload,
            "timestamp": self.timestamp,
        }

    @classmethod
    def from_dict(cls, data: JsonDict) -> "SessionEvent":
        payload = data.get("payload")
        seq = data.get("seq")
        timestamp = data.get("timestamp")
        return cls(
            type=str(data.get("type", "")),
            payload=payload if isinstance(payload, dict) else {"value": payload},
            timestamp=timestamp if isinstance(timestamp, str) else now_iso(),
            seq=seq if isinstance(seq, int) else 0,
        )


@dataclass
class AdapterConfig:
    """Everything an adapter needs to start one backend."""

    session_id: str
    working_directory: str
    options: JsonDict = field(default_factory=dict)


@dataclass
class Session:
    """Represents one logical interactive session."""

    session_id: str
    session_type: SessionType
    working_directory: str
    status: SessionStatus = SessionStatus.STARTING
    created_at: datetime = field(default_factory=utc_now)
    closed_at: Optional[datetime] = None
    options: JsonDict = field(default_factory=dict)

    def to_dict(self) -> JsonDict:
        """Convert session to dictionary for JSON serialization and DB storage."""
        data: JsonDict = asdict(self)
        data["session_type"] = self.session_type.value
        data["status"] = self.status.value
        data["created_at"] = self.created_at.isoformat()
        data["closed_at"] = self.closed_at.isoformat() if self.closed_at else None
        data["options"] = json.dumps(self.options)
        return data

    @classmethod
    def from_dict(cls, data: JsonDict) -> "Session":
        """Create session from dictionary (from database/JSON)."""
        created_raw = data.get("created_at")
        closed_raw = data.get("closed_at")
        options_raw = data.get("options")
        options: JsonDict = {}
        if isinstance(options_raw, str) and options_raw:
            loaded = json.loads(options_raw)
            if isinstance(loaded, dict):
                options = loaded
        elif isinstance(options_raw, dict):
            options = options_raw

        return cls(
            session_id=str(data["session_id"]),
            session_type=SessionType(str(data["session_type"])),
            working_directory=str(data.get("working_directory") or "~"),
            status=SessionStatus(str(data.get("status") or SessionStatus.STARTING.value)),
            created_at=datetime.fromisoformat(created_raw) if isinstance(created_raw, str) else utc_now(),
            closed_at=datetime.fromisoformat(closed_raw) if isinstance(closed_raw, str) else None,
            options=options,
        )


@dataclass(frozen=True)
class SessionStatusInfo:
    """Answer to a status query; also valid for sessions that are no longer live."""

    session_id: str
    status: SessionStatus
    session_type: Optional[SessionType] = None
    working_directory: Optional[str] = None
    created_at: Optional[str] = None
    available_commands: Optional[list[str]] = None

    def to_dict(self) -> JsonDict:
        data: JsonDict = {
            "sessionId": self.session_id,
            "status": self.status.value,
            "sessionType": self.session_type.value if self.session_type else None,
            "workingDirectory": self.working_directory,
            "createdAt": self.created_at,
        }
        if self.available_commands is not None:
            data["availableCommands"] = list(self.available_commands)
        return data
