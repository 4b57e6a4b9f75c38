import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Optional

import socketio
from fastapi import FastAPI, Header, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field

from watchsync.config import Settings
from watchsync.errors import SyncError, ValidationError
from watchsync.models.protocol import ERROR, Join, Leave, parse_message
from watchsync.services import media
from watchsync.services.broadcaster import EventBroadcaster, SnapshotCache
from watchsync.services.dispatcher import SyncService
from watchsync.services.identity import build_role_lookup
from watchsync.services.presence import PresenceTracker
from watchsync.services.session import SessionStore

settings = Settings.from_env()

# Configure logging
logging.basicConfig(level=settings.log_level)
logger = logging.getLogger(__name__)

# Global mapping for SID -> (session id, viewer id) to resolve the caller of socket events
sid_session_map = {}

origins = settings.allowed_origins
sio = socketio.AsyncServer(async_mode='asgi', cors_allowed_origins=origins if origins != ["*"] else "*")

store = SessionStore(settings)
service = SyncService(
    store=store,
    presence=PresenceTracker(store),
    broadcaster=EventBroadcaster(sio, SnapshotCache(ttl=settings.snapshot_cache_ttl)),
    role_lookup=build_role_lookup(settings),
)


async def sweep_loop(interval: float):
    while True:
        await asyncio.sleep(interval)
        try:
            report = await service.sweep()
            if report.evicted_viewers or report.removed_sessions:
                logger.info(
                    f"Sweep evicted viewers in {len(report.evicted_viewers)} session(s), "
                    f"removed {len(report.removed_sessions)} session(s)"
                )
        except Exception as e:
            logger.error(f"Error in sweep: {e}", exc_info=True)


@asynccontextmanager
async def lifespan(app: FastAPI):
    task = asyncio.create_task(sweep_loop(settings.sweep_interval))
    yield
    task.cancel()
    try:
        await task
    except asyncio.CancelledError:
        pass


app = FastAPI(title="watchsync", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

socket_app = socketio.ASGIApp(sio, app)


@app.exception_handler(SyncError)
async def sync_error_handler(request: Request, exc: SyncError):
    if exc.status_code >= 500:
        logger.error(f"{request.url.path} failed: {exc.message}")
    else:
        logger.warning(f"{request.url.path} rejected ({exc.code}): {exc.message}")
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    messages = [f"{'.'.join(str(p) for p in e['loc'][1:])}: {e['msg']}" for e in exc.errors()]
    return JSONResponse(
        status_code=400,
        content=ValidationError(" | ".join(messages) or "Malformed request").to_dict(),
    )


@app.exception_handler(Exception)
async def internal_error_handler(request: Request, exc: Exception):
    logger.error(f"Unexpected error on {request.url.path}: {exc}", exc_info=True)
    return JSONResponse(status_code=500, content={"error": "Internal error", "code": "internal"})


# REST API
class SessionEvent(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    session_id: str = Field(alias="sessionId", min_length=1)
    event: str = Field(min_length=1)
    data: Optional[dict] = None


@app.get("/health")
async def health():
    return {"status": "ok", "sessions": len(store)}


@app.get("/session-state")
async def session_state(sessionId: Optional[str] = None, viewerId: Optional[str] = None):
    if not sessionId:
        raise ValidationError("sessionId is required")
    return await service.snapshot(sessionId, viewerId)


@app.post("/session-event")
async def session_event(
    body: SessionEvent,
    x_viewer_id: Optional[str] = Header(default=None),
    x_socket_id: Optional[str] = Header(default=None),
):
    message = parse_message(body.event, body.data)
    outcome = await service.handle(body.session_id, message, x_viewer_id)

    # Let the caller's socket receive the room broadcasts from now on
    if x_socket_id and isinstance(message, Join):
        if sio.manager.is_connected(x_socket_id, "/"):
            await sio.enter_room(x_socket_id, body.session_id)
            await _bind_socket(x_socket_id, body.session_id, message.viewer.id)
        else:
            logger.warning(f"Socket {x_socket_id} not connected, {message.viewer.id} joined over HTTP only")

    response = {
        "success": True,
        "sessionId": body.session_id,
        "state": outcome.session.full_snapshot(),
    }
    if outcome.item is not None:
        response["accepted"] = outcome.accepted
        response["item"] = outcome.item.to_wire()
    return response


@app.get("/media/resolve")
async def resolve_media(url: Optional[str] = None):
    if not url:
        raise ValidationError("url is required")
    return await media.resolve_media(url, settings.proxy_url)


# Socket Events
def _caller(sid, session_id):
    entry = sid_session_map.get(sid)
    if entry and entry[0] == session_id:
        return entry[1]
    return None


async def _bind_socket(sid, session_id, viewer_id):
    previous = sid_session_map.get(sid)
    sid_session_map[sid] = (session_id, viewer_id)
    if previous and previous[0] != session_id:
        # One session per socket
        await sio.leave_room(sid, previous[0])
        await service.handle(previous[0], Leave(viewer_id=previous[1]), previous[1])
        logger.info(f"Socket {sid} moved from session {previous[0]} to {session_id}")


async def _dispatch(sid, event, data):
    data = data if isinstance(data, dict) else {}
    session_id = data.get("sessionId")

    try:
        if not session_id or not isinstance(session_id, str):
            raise ValidationError("sessionId is required")

        message = parse_message(event, data)

        if isinstance(message, Join):
            was_member = _caller(sid, session_id) is not None
            await sio.enter_room(sid, session_id)
            try:
                outcome = await service.handle(session_id, message, None)
            except SyncError:
                if not was_member:
                    await sio.leave_room(sid, session_id)
                raise
            await _bind_socket(sid, session_id, message.viewer.id)
            logger.info(f"Socket {sid} joined session {session_id} as {message.viewer.id}")
            return outcome

        if event == "requestSync":
            # A reconnect may have lost the room membership
            await sio.enter_room(sid, session_id)

        outcome = await service.handle(session_id, message, _caller(sid, session_id))

        if isinstance(message, Leave) and _caller(sid, session_id) == message.viewer_id:
            sid_session_map.pop(sid, None)
            await sio.leave_room(sid, session_id)
        return outcome
    except SyncError as e:
        logger.warning(f"Rejected {event} from {sid} in {session_id}: {e.message}")
        await service.broadcaster.send_to(sid, ERROR, {"sessionId": session_id, **e.to_dict(), "event": event})
    except Exception as e:
        logger.error(f"Error in {event}: {e}", exc_info=True)
        await service.broadcaster.send_to(sid, ERROR, {"sessionId": session_id, "error": "Internal error", "code": "internal", "event": event})


@sio.event
async def connect(sid, environ):
    logger.info(f"Client {sid} connected")


@sio.event
async def disconnect(sid, reason=None):
    # Presence is kept until an explicit leave or the TTL sweep
    entry = sid_session_map.pop(sid, None)
    if entry:
        logger.info(f"Client {sid} ({entry[1]}) disconnected from session {entry[0]}")
    else:
        logger.info(f"Client {sid} disconnected")


@sio.event
async def join(sid, data):
    await _dispatch(sid, "join", data)


@sio.event
async def leave(sid, data):
    await _dispatch(sid, "leave", data)


@sio.event
async def heartbeat(sid, data):
    await _dispatch(sid, "heartbeat", data)


@sio.event
async def play(sid, data):
    await _dispatch(sid, "play", data)


@sio.event
async def pause(sid, data):
    await _dispatch(sid, "pause", data)


@sio.event
async def seek(sid, data):
    await _dispatch(sid, "seek", data)


@sio.event
async def advance(sid, data):
    await _dispatch(sid, "advance", data)


@sio.on("addMedia")
async def add_media(sid, data):
    await _dispatch(sid, "addMedia", data)


@sio.on("requestSync")
async def request_sync(sid, data):
    await _dispatch(sid, "requestSync", data)


@sio.on("updateProgress")
async def update_progress(sid, data):
    await _dispatch(sid, "updateProgress", data)
