import asyncio
import logging

from fastapi import FastAPI, HTTPException, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.staticfiles import StaticFiles
from prometheus_fastapi_instrumentator import Instrumentator
from starlette.middleware.gzip import GZipMiddleware
from starlette.requests import Request as StarletteRequest
from starlette.responses import Response as StarletteResponse

try:
    import orjson  # type: ignore
    from fastapi.responses import ORJSONResponse  # type: ignore
    _ORJSON_AVAILABLE = True
except Exception:
    _ORJSON_AVAILABLE = False

from . import config
from .auth import get_current_agent, is_public_path, parse_access_token
from .automation import AutomationClient
from .db import DatabaseManager, utc_now_iso
from .dedup import RecentSendCache
from .gateway import EvolutionClient
from .observability.context import (
    get_agent_username as _get_agent_username,
    get_conversation as _get_conversation,
    get_request_id as _get_request_id,
    reset_agent_username as _reset_agent_username,
    reset_request_id as _reset_request_id,
    set_agent_username as _set_agent_username,
    set_request_id as _set_request_id,
)
from .observability.logging import configure_logging as _configure_logging
from .realtime import ConnectionManager
from .routes import (
    create_auth_router,
    create_conversations_router,
    create_dashboard_router,
    create_knowledge_router,
    create_messages_router,
    create_quick_replies_router,
    create_settings_router,
    create_tags_router,
)
from .runtime import InboxRuntime
from .webhook import MessageProcessor, create_webhook_router

try:
    _configure_logging(
        level=config.LOG_LEVEL,
        request_id_getter=_get_request_id,
        agent_getter=_get_agent_username,
        conversation_getter=_get_conversation,
    )
except Exception:
    # Fallback to minimal logging if something goes wrong during import.
    logging.basicConfig(
        level=getattr(logging, config.LOG_LEVEL, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )

logger = logging.getLogger(__name__)

db_manager = DatabaseManager()
connection_manager = ConnectionManager()
runtime = InboxRuntime(
    db_manager=db_manager,
    connection_manager=connection_manager,
    gateway=EvolutionClient(),
    automation=AutomationClient(),
    recent_sends=RecentSendCache(ttl=config.ECHO_DEDUP_TTL_SECONDS),
    public_url=config.PUBLIC_URL,
    upload_dir=config.UPLOAD_DIR,
)
runtime.processor = MessageProcessor(runtime)

# FastAPI app
app = FastAPI(
    title="WhatsApp Dashboard API",
    default_response_class=(ORJSONResponse if _ORJSON_AVAILABLE else JSONResponse),
)
app.include_router(create_webhook_router(runtime))
app.include_router(create_conversations_router(runtime))
app.include_router(create_messages_router(runtime))
app.include_router(create_tags_router(runtime))
app.include_router(create_settings_router(runtime))
app.include_router(create_quick_replies_router(runtime))
app.include_router(create_knowledge_router(runtime))
app.include_router(create_auth_router(runtime))
app.include_router(create_dashboard_router(runtime))


# ── Request context: request_id (for tracing) ──────────────────────
@app.middleware("http")
async def request_id_middleware(request: StarletteRequest, call_next):
    incoming = (request.headers.get("x-request-id") or "").strip()
    rid, tok = _set_request_id(incoming or None)
    try:
        resp: StarletteResponse = await call_next(request)
        resp.headers["X-Request-Id"] = rid
        return resp
    finally:
        _reset_request_id(tok)


# ── Auth middleware: protect API routes by default ─────────────────
@app.middleware("http")
async def _auth_middleware(request: StarletteRequest, call_next):
    if config.DISABLE_AUTH or request.method == "OPTIONS" or is_public_path(request.url.path):
        return await call_next(request)
    try:
        agent = await get_current_agent(request)  # type: ignore[arg-type]
    except HTTPException as exc:
        return JSONResponse(status_code=exc.status_code, content={"detail": exc.detail})
    request.state.agent = agent
    tok = _set_agent_username(str(agent.get("username") or ""))
    try:
        return await call_next(request)
    finally:
        _reset_agent_username(tok)


@app.exception_handler(Exception)
async def _unhandled_exception(request: StarletteRequest, exc: Exception):
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    content = {"success": False, "error": "Internal server error"}
    if config.ENVIRONMENT == "development":
        content["detail"] = str(exc)
    return JSONResponse(status_code=500, content=content)


# Expose Prometheus metrics
Instrumentator().instrument(app).expose(app, endpoint="/metrics")

# Serve stored media (inbound downloads, agent uploads, knowledge files)
config.UPLOAD_DIR.mkdir(parents=True, exist_ok=True)
app.mount("/uploads", StaticFiles(directory=str(config.UPLOAD_DIR)), name="uploads")

app.add_middleware(
    CORSMiddleware,
    allow_origins=config.CORS_ALLOWED_ORIGINS or ["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Compression for faster responses
app.add_middleware(GZipMiddleware, minimum_size=500)


@app.on_event("startup")
async def startup():
    logging.getLogger("httpx").setLevel(logging.WARNING)
    db = runtime.db_manager
    await db.init_db()
    logger.info(
        "Started (db=%s gateway_configured=%s automation_configured=%s public_url=%s)",
        "postgres" if db.use_postgres else "sqlite",
        runtime.gateway.configured,
        runtime.automation.configured,
        runtime.public_url,
    )
    if not runtime.gateway.configured:
        logger.warning("EVOLUTION_API_URL/KEY/INSTANCE_NAME not fully set; agent sends go through the automation webhook")


@app.get("/health")
async def health():
    db = runtime.db_manager
    try:
        db_ok = await asyncio.wait_for(db.ping(), timeout=config.HEALTH_DB_TIMEOUT_SECONDS)
    except Exception as exc:
        logger.warning("Health DB ping failed: %s", exc)
        db_ok = False
    return {
        "status": "ok" if db_ok else "degraded",
        "timestamp": utc_now_iso(),
        "database": {"backend": "postgres" if db.use_postgres else "sqlite", "ok": db_ok},
        "gateway": {"configured": bool(getattr(runtime.gateway, "configured", False))},
        "automation": {"configured": bool(getattr(runtime.automation, "configured", False))},
        "websocket_clients": runtime.connection_manager.active_count(),
    }


@app.websocket("/ws")
async def websocket_endpoint(websocket: WebSocket):
    """Real-time channel. Clients send {"type": "subscribe"|"unsubscribe", "channel": ...}."""
    if config.DISABLE_AUTH:
        ws_agent = {"username": "admin"}
    else:
        token = websocket.cookies.get(config.ACCESS_COOKIE_NAME)
        ws_agent = parse_access_token(token or "")
        # Fallback: allow token via query string when cookies are blocked.
        if not ws_agent:
            ws_agent = parse_access_token(websocket.query_params.get("token") or "")
        if not ws_agent:
            logger.warning("WS auth failed: missing/invalid cookie and no valid token query")
            await websocket.accept()
            await websocket.close(code=4401)
            return

    manager = runtime.connection_manager
    await manager.connect(websocket, client_info={"agent": ws_agent.get("username")})
    try:
        while True:
            data = await websocket.receive_json()
            if not isinstance(data, dict):
                continue
            kind = data.get("type")
            channel = str(data.get("channel") or "")
            if kind == "ping":
                await websocket.send_json({"event": "pong", "data": {"timestamp": utc_now_iso()}})
            elif not channel:
                continue
            elif kind == "subscribe":
                manager.subscribe(websocket, channel)
                await websocket.send_json({"event": "subscribed", "channel": channel, "data": {}})
            elif kind == "unsubscribe":
                manager.unsubscribe(websocket, channel)
                await websocket.send_json({"event": "unsubscribed", "channel": channel, "data": {}})
    except WebSocketDisconnect:
        pass
    except ValueError:
        logger.info("WS client sent a non-JSON frame; closing")
    finally:
        manager.disconnect(websocket)
