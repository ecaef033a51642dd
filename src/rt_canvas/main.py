from __future__ import annotations

import logging
import uuid
from contextlib import asynccontextmanager
from typing import Any, Awaitable, Callable, Dict, Optional

from fastapi import FastAPI, WebSocket
from starlette.requests import Request
from starlette.responses import Response

from rt_canvas.api.routes import router as api_router
from rt_canvas.core.config import Settings, get_settings
from rt_canvas.core.metrics import SyncMetrics
from rt_canvas.services.session import SessionManager
from rt_canvas.ws.transport import PEER_PATH, StarletteTransport


logger = logging.getLogger(__name__)

LifecycleHook = Callable[[SessionManager], Awaitable[Any]]


def create_app(
    manager: Optional[SessionManager] = None,
    settings: Optional[Settings] = None,
    on_startup: Optional[LifecycleHook] = None,
    on_shutdown: Optional[LifecycleHook] = None,
) -> FastAPI:
    """Node app: peer websocket listener plus a small inspection API."""
    settings = settings or get_settings()
    manager = manager or SessionManager(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if on_startup is not None:
            await on_startup(manager)
        yield
        if on_shutdown is not None:
            await on_shutdown(manager)
        await manager.close_all()

    app = FastAPI(title=settings.app_name, version=settings.app_version, lifespan=lifespan)
    app.state.sessions = manager

    @app.middleware("http")
    async def add_request_id(request: Request, call_next) -> Response:
        request_id = request.headers.get("x-request-id") or str(uuid.uuid4())
        request.state.request_id = request_id
        response = await call_next(request)
        response.headers["x-request-id"] = request_id
        return response

    @app.get("/healthz")
    async def healthz() -> Dict[str, Any]:
        return {"status": "ok"}

    @app.get("/readyz")
    async def readyz() -> Dict[str, Any]:
        return {"status": "ready", "sessions": len(manager.sessions())}

    @app.get("/metrics")
    async def metrics() -> Response:
        combined = SyncMetrics.combine(s.metrics for s in manager.sessions())
        return Response(content=combined.render_prometheus(), media_type="text/plain")

    app.include_router(api_router)

    @app.websocket(PEER_PATH)
    async def ws_peer(doc_id: str, websocket: WebSocket) -> None:
        session = manager.get(doc_id)
        if session is None:
            await websocket.close(code=4404)
            return
        await websocket.accept()
        await session.accept(StarletteTransport(websocket))

    return app
