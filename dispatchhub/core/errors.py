"""Error taxonomy shared by the registry, adapters and the channel gateway.

Every error that can reach a client carries a stable `kind` string so UIs can
branch on it without parsing the message text.
"""

from __future__ import annotations


class DispatchError(Exception):
    """Base class for client-visible failures."""

    kind = "DispatchError"
    http_status = 500

    def __init__(self, message: str = "") -> None:
        super().__init__(message or self.kind)
        self.message = message or self.kind

    def to_dict(self) -> dict[str, str]:
        return {"kind": self.kind, "message": self.message}


class Unauthenticated(DispatchError):
    """No or invalid credential on a gated operation."""

    kind = "Unauthenticated"
    http_status = 401


class NotFound(DispatchError):
    """Unknown session id."""

    kind = "NotFound"
    http_status = 404


class AdapterInitFailed(DispatchError):
    """Backend could not start."""

    kind = "AdapterInitFailed"
    http_status = 502


class BackendUnavailable(DispatchError):
    """Operation on a backend that already terminated."""

    kind = "BackendUnavailable"
    http_status = 409


class ServiceUnavailable(DispatchError):
    """A dependent external service (agent CLI, storage) is down."""

    kind = "ServiceUnavailable"
    http_status = 503


class BadRequest(DispatchError):
    """Malformed control message or invalid arguments."""

    kind = "BadRequest"
    http_status = 400


class HistoryWriteError(ServiceUnavailable):
    """Appending to a session history log failed."""


ERROR_KINDS = (
    Unauthenticated.kind,
    NotFound.kind,
    AdapterInitFailed.kind,
    BackendUnavailable.kind,
    ServiceUnavailable.kind,
    BadRequest.kind,
)
