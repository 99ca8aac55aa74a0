"""API server for dispatchhub - REST routes plus the `/ws` control channel."""

from __future__ import annotations

import asyncio
import json
from typing import Optional

import uvicorn
from fastapi import FastAPI, Request, WebSocket, WebSocketDisconnect
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from loguru import logger

from dispatchhub import __version__
from dispatchhub.api.gateway import ChannelGateway
from dispatchhub.api.models import HealthResponse
from dispatchhub.api.routes import router
from dispatchhub.constants import (
    API_DEFAULT_HOST,
    API_DEFAULT_PORT,
    API_STOP_TIMEOUT_S,
    API_TIMEOUT_KEEP_ALIVE_S,
    API_WS_PING_INTERVAL_S,
    API_WS_PING_TIMEOUT_S,
)
from dispatchhub.core.errors import BadRequest, DispatchError
from dispatchhub.core.layout import LayoutRepository
from dispatchhub.core.models import JsonDict
from dispatchhub.core.registry import SessionRegistry


class APIServer:
    """HTTP API server on host:port."""

    def __init__(
        self,
        registry: SessionRegistry,
        gateway: ChannelGateway,
        layout: Optional[LayoutRepository] = None,
        auth_key: str = "",
        host: str = API_DEFAULT_HOST,
        port: int = API_DEFAULT_PORT,
    ) -> None:
        self.registry = registry
        self.gateway = gateway
        self.host = host
        self.port = port
        self.app = FastAPI(title="dispatchhub API", version=__version__)
        self.app.state.registry = registry
        self.app.state.layout = layout
        self.app.state.auth_key = auth_key
        self.server: uvicorn.Server | None = None
        self.server_task: asyncio.Task[object] | None = None
        self._ws_clients: set[WebSocket] = set()
        self._setup_exception_handlers()
        self._setup_routes()

    def _setup_exception_handlers(self) -> None:
        @self.app.exception_handler(DispatchError)
        async def dispatch_error_handler(_request: Request, exc: DispatchError) -> JSONResponse:  # pyright: ignore
            return JSONResponse(status_code=exc.http_status, content={"error": exc.to_dict()})

        @self.app.exception_handler(RequestValidationError)
        async def validation_error_handler(  # pyright: ignore
            _request: Request, exc: RequestValidationError
        ) -> JSONResponse:
            error = BadRequest(json.dumps(exc.errors(), default=str))
            return JSONResponse(status_code=error.http_status, content={"error": error.to_dict()})

    def _setup_routes(self) -> None:
        @self.app.get("/health", response_model=HealthResponse, response_model_by_alias=True)
        async def health() -> HealthResponse:  # pyright: ignore
            """Liveness check (no auth)."""
            return HealthResponse(version=__version__, live_sessions=len(self.registry.list_sessions()))

        self.app.include_router(router)

        @self.app.websocket("/ws")
        async def websocket_endpoint(websocket: WebSocket) -> None:  # pyright: ignore
            """Control channel: auth, session operations and live events."""
            await self._handle_websocket(websocket)

    async def _handle_websocket(self, websocket: WebSocket) -> None:
        await websocket.accept()
        self._ws_clients.add(websocket)

        async def send(payload: JsonDict) -> None:
            await websocket.send_json(payload)

        conn = self.gateway.connect(send)
        try:
            while True:
                message = await websocket.receive_text()
                await self.gateway.handle_message(conn, message)
        except WebSocketDisconnect:
            logger.debug("WebSocket client {} disconnected", conn.connection_id)
        finally:
            self._ws_clients.discard(websocket)
            await self.gateway.disconnect(conn)

    async def start(self) -> None:
        """Start uvicorn in a background task and wait until it is listening."""
        if self.server_task and not self.server_task.done():
            logger.warning("API server already running; skipping start")
            return

        config = uvicorn.Config(
            self.app,
            host=self.host,
            port=self.port,
            log_level="warning",
            ws_ping_interval=API_WS_PING_INTERVAL_S,
            ws_ping_timeout=API_WS_PING_TIMEOUT_S,
            timeout_keep_alive=API_TIMEOUT_KEEP_ALIVE_S,
        )
        self.server = uvicorn.Server(config)
        server = self.server

        # Run server in background task. Avoid uvicorn's signal handling to keep daemon in control.
        serve_coro = server._serve() if hasattr(server, "_serve") else server.serve()
        self.server_task = asyncio.create_task(serve_coro)

        max_retries = 50  # 5 seconds total
        for _ in range(max_retries):
            if server.started:
                break
            if self.server_task.done():
                exc = self.server_task.exception()
                raise RuntimeError("API server exited during startup") from exc
            await asyncio.sleep(0.1)
        if not server.started:
            raise TimeoutError("API server failed to start within timeout")

        logger.info("API server listening on {}:{}", self.host, self.port)

    async def stop(self) -> None:
        """Close WebSocket clients and stop uvicorn."""
        logger.info("API server stopping")
        for ws in list(self._ws_clients):
            try:
                await asyncio.wait_for(ws.close(), timeout=1.0)
            except (asyncio.TimeoutError, RuntimeError) as e:
                logger.debug("Error closing WebSocket: {}", e)
        self._ws_clients.clear()

        server = self.server
        if server:
            if server.started:
                server.should_exit = True
            elif self.server_task:
                self.server_task.cancel()

        if self.server_task:
            try:
                await asyncio.wait_for(self.server_task, timeout=API_STOP_TIMEOUT_S)
            except asyncio.TimeoutError:
                logger.warning("Timed out stopping API server; cancelling task")
                self.server_task.cancel()
                try:
                    await self.server_task
                except asyncio.CancelledError:
                    pass
            except asyncio.CancelledError:
                pass
        self.server_task = None
