"""Channel gateway - one client connection, many session subscriptions.

The gateway knows nothing about WebSockets: the transport hands it a `send`
coroutine per connection and feeds it raw frames. Every inbound control message
gets exactly one reply; session events are pushed only to connections
subscribed to that session.
"""

from __future__ import annotations

import asyncio
import itertools
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Optional, Union

from loguru import logger

from dispatchhub.api.auth import verify_key
from dispatchhub.api.models import (
    AuthMessage,
    ControlMessage,
    CreateSessionMessage,
    MessageId,
    SessionCloseMessage,
    SessionHistoryMessage,
    SessionInputMessage,
    SessionInterruptMessage,
    SessionResizeMessage,
    SessionStatusMessage,
    SessionSubscribeMessage,
    SessionUnsubscribeMessage,
    decode_frame,
    message_id_of,
    parse_control_message,
    reply_error,
    reply_ok,
    session_event_frame,
)
from dispatchhub.constants import WS_SEND_TIMEOUT_S
from dispatchhub.core.errors import BadRequest, DispatchError, ServiceUnavailable, Unauthenticated
from dispatchhub.core.event_channel import Subscription
from dispatchhub.core.history import validate_session_id
from dispatchhub.core.models import JsonDict
from dispatchhub.core.registry import SessionRegistry
from dispatchhub.core.task_registry import TaskRegistry

SendFn = Callable[[JsonDict], Awaitable[None]]

_connection_ids = itertools.count(1)


@dataclass
class Connection:
    """Per-connection gateway state."""

    send: SendFn
    connection_id: int = field(default_factory=lambda: next(_connection_ids))
    authenticated: bool = False
    subscriptions: dict[str, Subscription] = field(default_factory=dict)
    forwarders: dict[str, asyncio.Task[None]] = field(default_factory=dict)
    send_lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    closed: bool = False

    @property
    def task_key(self) -> str:
        return f"conn-{self.connection_id}"


class ChannelGateway:
    """Demultiplexes control messages to the registry and fans events out."""

    def __init__(
        self,
        registry: SessionRegistry,
        auth_key: str,
        tasks: Optional[TaskRegistry] = None,
        send_timeout: float = WS_SEND_TIMEOUT_S,
    ) -> None:
        self.registry = registry
        self.auth_key = auth_key
        self.tasks = tasks or registry.tasks
        self.send_timeout = send_timeout
        self._connections: dict[int, Connection] = {}

    @property
    def connection_count(self) -> int:
        return len(self._connections)

    def connect(self, send: SendFn) -> Connection:
        conn = Connection(send=send)
        self._connections[conn.connection_id] = conn
        logger.info("Client connection {} opened (total: {})", conn.connection_id, len(self._connections))
        return conn

    async def disconnect(self, conn: Connection) -> None:
        """Drop every subscription of the connection. Sessions keep running."""
        conn.closed = True
        for session_id in list(conn.subscriptions):
            self._detach(conn, session_id)
        await self.tasks.cancel(conn.task_key)
        self._connections.pop(conn.connection_id, None)
        logger.info("Client connection {} closed (total: {})", conn.connection_id, len(self._connections))

    # ==================== Outbound ====================

    async def _send(self, conn: Connection, payload: JsonDict) -> bool:
        if conn.closed:
            return False
        try:
            async with conn.send_lock:
                await asyncio.wait_for(conn.send(payload), timeout=self.send_timeout)
            return True
        except asyncio.TimeoutError:
            logger.warning("Send to connection {} timed out", conn.connection_id)
            return False
        except Exception as exc:  # noqa: BLE001 - any transport failure means the client is gone
            logger.debug("Send to connection {} failed: {}", conn.connection_id, exc)
            return False

    async def _forward(self, conn: Connection, session_id: str, subscription: Subscription) -> None:
        try:
            async for event in subscription:
                if not await self._send(conn, session_event_frame(session_id, event.to_dict())):
                    break
        finally:
            subscription.unsubscribe()
            if conn.subscriptions.get(session_id) is subscription:
                del conn.subscriptions[session_id]
                conn.forwarders.pop(session_id, None)

    def _attach(self, conn: Connection, session_id: str, subscription: Subscription) -> None:
        conn.subscriptions[session_id] = subscription

    def _start_forwarders(self, conn: Connection) -> None:
        for session_id, subscription in conn.subscriptions.items():
            if session_id in conn.forwarders:
                continue
            conn.forwarders[session_id] = self.tasks.spawn(
                self._forward(conn, session_id, subscription),
                name=f"forward-{conn.connection_id}-{session_id[:8]}",
                key=conn.task_key,
            )

    def _detach(self, conn: Connection, session_id: str) -> bool:
        subscription = conn.subscriptions.pop(session_id, None)
        forwarder = conn.forwarders.pop(session_id, None)
        if subscription is not None:
            subscription.unsubscribe()
        if forwarder is not None and not forwarder.done():
            forwarder.cancel()
        return subscription is not None

    # ==================== Inbound ====================

    async def handle_message(self, conn: Connection, raw: Union[str, bytes, JsonDict]) -> JsonDict:
        """Process one frame, send its reply, and return that reply."""
        message_id: MessageId = None
        try:
            frame = decode_frame(raw)
            message_id = message_id_of(frame)
            if not conn.authenticated and frame.get("type") != "auth":
                raise Unauthenticated("Authenticate first")
            message = parse_control_message(frame)
            data = await self._dispatch(conn, message)
            reply = reply_ok(message_id, data)
        except DispatchError as exc:
            logger.debug("Connection {} request failed: {} {}", conn.connection_id, exc.kind, exc.message)
            reply = reply_error(message_id, exc.to_dict())
        except Exception as exc:  # noqa: BLE001 - one bad request must not drop the connection
            logger.opt(exception=exc).error("Connection {} unexpected error: {}", conn.connection_id, exc)
            reply = reply_error(message_id, ServiceUnavailable("Internal error").to_dict())

        await self._send(conn, reply)
        # Events for a session go out only after the reply that named it
        self._start_forwarders(conn)
        return reply

    async def _dispatch(self, conn: Connection, message: ControlMessage) -> JsonDict:
        registry = self.registry

        if isinstance(message, AuthMessage):
            if conn.authenticated:
                raise BadRequest("Already authenticated")
            if not verify_key(self.auth_key, message.key):
                logger.warning("Connection {} failed authentication", conn.connection_id)
                raise Unauthenticated("Invalid key")
            conn.authenticated = True
            logger.info("Connection {} authenticated", conn.connection_id)
            return {"authenticated": True}

        if isinstance(message, CreateSessionMessage):
            session_id, subscription = await registry.create_session_subscribed(message.session_type, message.options)
            self._attach(conn, session_id, subscription)
            return {"sessionId": session_id}

        if isinstance(message, SessionInputMessage):
            await registry.send_input(message.session_id, message.data)
            return {}

        if isinstance(message, SessionResizeMessage):
            await registry.resize(message.session_id, message.cols, message.rows)
            return {}

        if isinstance(message, SessionInterruptMessage):
            await registry.interrupt(message.session_id)
            return {}

        if isinstance(message, SessionCloseMessage):
            status = await registry.close_session(message.session_id)
            return {"status": status.value}

        if isinstance(message, SessionStatusMessage):
            info = await registry.session_status(message.session_id)
            return info.to_dict()

        if isinstance(message, SessionSubscribeMessage):
            if message.session_id not in conn.subscriptions:
                self._attach(conn, message.session_id, registry.subscribe(message.session_id))
            return {}

        if isinstance(message, SessionUnsubscribeMessage):
            self._detach(conn, message.session_id)
            return {}

        if isinstance(message, SessionHistoryMessage):
            validate_session_id(message.session_id)
            page = await registry.read_history(
                message.session_id, n=message.n, tail=message.tail, after_seq=message.after_seq
            )
            return page.to_dict()

        raise BadRequest(f"Unsupported message type: {message.type}")
