"""Wire models for the control channel and the REST surface.

Field names are snake_case in Python and camelCase on the wire.
"""

from __future__ import annotations

import json
from typing import Annotated, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError
from pydantic.alias_generators import to_camel

from dispatchhub.core.errors import BadRequest
from dispatchhub.core.models import JsonDict

MessageId = Union[str, int, None]


class _WireModel(BaseModel):  # type: ignore[explicit-any]
    model_config = ConfigDict(frozen=True, alias_generator=to_camel, populate_by_name=True)


# ==================== Control messages ====================


class AuthMessage(_WireModel):
    type: Literal["auth"]
    id: MessageId = None
    key: str


class CreateSessionMessage(_WireModel):
    type: Literal["create-session"]
    id: MessageId = None
    session_type: str = Field(..., min_length=1)
    options: dict[str, object] = Field(default_factory=dict)  # guard: loose-dict - backend options


class _SessionMessage(_WireModel):
    id: MessageId = None
    session_id: str = Field(..., min_length=1, max_length=128)


class SessionInputMessage(_SessionMessage):
    type: Literal["session.input"]
    data: Union[str, dict[str, object]]  # guard: loose-dict - editor ops


class SessionResizeMessage(_SessionMessage):
    type: Literal["session.resize"]
    cols: int = Field(..., gt=0, le=1000)
    rows: int = Field(..., gt=0, le=1000)


class SessionInterruptMessage(_SessionMessage):
    type: Literal["session.interrupt"]


class SessionCloseMessage(_SessionMessage):
    type: Literal["session.close"]


class SessionStatusMessage(_SessionMessage):
    type: Literal["session.status"]


class SessionSubscribeMessage(_SessionMessage):
    type: Literal["session.subscribe"]


class SessionUnsubscribeMessage(_SessionMessage):
    type: Literal["session.unsubscribe"]


class SessionHistoryMessage(_SessionMessage):
    type: Literal["session.history"]
    n: Optional[int] = Field(default=None, ge=0)
    tail: bool = True
    after_seq: Optional[int] = Field(default=None, ge=0)


ControlMessage = Annotated[
    Union[
        AuthMessage,
        CreateSessionMessage,
        SessionInputMessage,
        SessionResizeMessage,
        SessionInterruptMessage,
        SessionCloseMessage,
        SessionStatusMessage,
        SessionSubscribeMessage,
        SessionUnsubscribeMessage,
        SessionHistoryMessage,
    ],
    Field(discriminator="type"),
]

_CONTROL_ADAPTER: TypeAdapter[ControlMessage] = TypeAdapter(ControlMessage)

CONTROL_TYPES = frozenset(
    {
        "auth",
        "create-session",
        "session.input",
        "session.resize",
        "session.interrupt",
        "session.close",
        "session.status",
        "session.subscribe",
        "session.unsubscribe",
        "session.history",
    }
)


def decode_frame(raw: Union[str, bytes, JsonDict]) -> JsonDict:
    """Parse one inbound frame into a JSON object.

    Raises:
        BadRequest: not JSON, or not an object
    """
    if isinstance(raw, dict):
        return raw
    try:
        value: object = json.loads(raw)
    except (json.JSONDecodeError, UnicodeDecodeError) as exc:
        raise BadRequest(f"Malformed JSON: {exc}") from exc
    if not isinstance(value, dict):
        raise BadRequest("Control message must be a JSON object")
    return value


def message_id_of(frame: JsonDict) -> MessageId:
    value = frame.get("id")
    return value if isinstance(value, (str, int)) and not isinstance(value, bool) else None


def _describe(exc: ValidationError) -> str:
    parts = []
    for error in exc.errors():
        loc = ".".join(str(p) for p in error.get("loc", ()))
        parts.append(f"{loc}: {error.get('msg')}" if loc else str(error.get("msg")))
    return "; ".join(parts) or "invalid message"


def parse_control_message(frame: JsonDict) -> ControlMessage:
    """Validate a decoded frame against the control message union.

    Raises:
        BadRequest: unknown type or invalid fields
    """
    kind = frame.get("type")
    if kind not in CONTROL_TYPES:
        raise BadRequest(f"Unknown message type: {kind!r}")
    try:
        return _CONTROL_ADAPTER.validate_python(frame)
    except ValidationError as exc:
        raise BadRequest(_describe(exc)) from exc


# ==================== Replies ====================


def reply_ok(message_id: MessageId, data: Optional[JsonDict] = None) -> JsonDict:
    return {"type": "reply", "id": message_id, "ok": True, "data": data or {}}


def reply_error(message_id: MessageId, error: JsonDict) -> JsonDict:
    return {"type": "reply", "id": message_id, "ok": False, "error": error}


def session_event_frame(session_id: str, event: JsonDict) -> JsonDict:
    return {"type": "session.event", "sessionId": session_id, "event": event}


# ==================== REST ====================


class SessionDTO(_WireModel):
    """Live session as listed by the REST API."""

    session_id: str
    session_type: str
    working_directory: str
    status: str
    created_at: str


class SessionListResponse(_WireModel):
    sessions: list[SessionDTO]


class LayoutPutRequest(_WireModel):
    """Tile placement; `runId` is the legacy name of `sessionId`."""

    session_id: Optional[str] = None
    run_id: Optional[str] = None
    client_id: str = Field(..., min_length=1)
    tile_id: str = Field(..., min_length=1)


class LayoutResponse(_WireModel):
    client_id: str
    layout: dict[str, str]


class HealthResponse(_WireModel):
    status: Literal["ok"] = "ok"
    version: str
    live_sessions: int
