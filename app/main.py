"""
FastAPI application for real-time collaborative code rooms.
Security-hardened with rate limiting, CORS, trusted hosts and input validation.
"""
import json
import logging
import time
import uuid
from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException, Request, WebSocket, WebSocketDisconnect, Query
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.trustedhost import TrustedHostMiddleware
from slowapi import Limiter, _rate_limit_exceeded_handler
from slowapi.util import get_remote_address
from slowapi.errors import RateLimitExceeded
from starlette.middleware.base import BaseHTTPMiddleware

import settings
from models import ShareRequest, ShareResponse, SharedCodeResponse
from room_manager import RoomManager
from room_models import ERROR, HealthResponse, RoomInfo, parse_event
from security import sanitize_input, validate_room_key, log_security_event
from store import StoreError, build_store

# Configure logging
logging.basicConfig(
    level=logging.DEBUG if settings.DEBUG else logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

# Rate limiter setup
limiter = Limiter(key_func=get_remote_address)


# ============ LIFESPAN CONTEXT ============
@asynccontextmanager
async def lifespan(app):
    """Open the durable store, start the room manager and its workers."""
    store = build_store(settings.STORE_BACKEND)
    await store.init()
    manager = RoomManager(store)
    manager.start_background_tasks()
    app.state.room_manager = manager
    logger.info(f"Room server started (store backend: {settings.STORE_BACKEND})")
    yield
    logger.info("Room server shutting down")
    await manager.close()
    await store.close()


app = FastAPI(title="Code Rooms", docs_url=None, redoc_url=None, lifespan=lifespan)
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.ALLOWED_ORIGINS,
    allow_credentials=True,
    allow_methods=["GET", "POST"],
    allow_headers=["*"],
)


# Security Headers Middleware
class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        response = await call_next(request)
        # Prevent content type sniffing
        response.headers["X-Content-Type-Options"] = "nosniff"
        # Prevent clickjacking
        response.headers["X-Frame-Options"] = "DENY"
        # Control referrer info
        response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
        # JSON API only; no documents are served
        response.headers["Content-Security-Policy"] = "default-src 'none'; frame-ancestors 'none';"
        # HSTS - enforce HTTPS in production
        if not settings.DEBUG:
            response.headers["Strict-Transport-Security"] = "max-age=31536000; includeSubDomains"
        return response

app.add_middleware(SecurityHeadersMiddleware)

# Trusted Host Middleware - prevent host header attacks
app.add_middleware(TrustedHostMiddleware, allowed_hosts=settings.ALLOWED_HOSTS)


def get_manager(request) -> RoomManager:
    return request.app.state.room_manager


@app.get("/health", response_model=HealthResponse)
async def health(request: Request):
    """Liveness plus a few coordinator counters."""
    stats = get_manager(request).stats()
    return HealthResponse(
        status="ok",
        rooms=stats["rooms"],
        connections=stats["connections"],
        pending_timers=stats["pending_timers"],
        stats=stats,
    )


# ============ SHARE LINK ENDPOINTS ============

@app.post("/share", response_model=ShareResponse)
@limiter.limit("10/minute")  # Rate limit: 10 shares per minute
async def create_share(request: Request, share: ShareRequest):
    """Create an anonymous share link for a code snapshot."""
    manager = get_manager(request)
    share_id, expires_at = await manager.shares.create(share.content)
    return ShareResponse(
        share_id=share_id,
        url=f"{settings.SHARE_BASE_URL}{share_id}",
        expires_at=expires_at.isoformat(),
    )


@app.get("/share/{share_id}", response_model=SharedCodeResponse)
@limiter.limit("30/minute")  # Rate limit: 30 access attempts per minute
async def load_share(request: Request, share_id: str):
    """Load a shared snapshot by id."""
    code = sanitize_input(share_id, max_length=16).strip().upper()
    if len(code) < 4:
        raise HTTPException(status_code=400, detail="Valid share id required")

    content = await get_manager(request).shares.load(code)
    if content is None:
        log_security_event("invalid_share_id", {"share_id": code[:3] + "***"})
        raise HTTPException(status_code=404, detail="Shared code not found")
    return SharedCodeResponse(share_id=code, content=content)


# ============ ROOM ENDPOINTS ============

@app.get("/room/{room_key}/info", response_model=RoomInfo)
@limiter.limit("60/minute")
async def get_room_info(request: Request, room_key: str):
    """Get room status information."""
    if not validate_room_key(room_key):
        raise HTTPException(status_code=400, detail="Invalid room key")

    manager = get_manager(request)
    try:
        async with manager.rooms.locked(room_key) as room:
            if room is None:
                raise HTTPException(status_code=404, detail="Room not found")
            return RoomInfo(
                room_key=room.key,
                members=list(room.members),
                host=room.host,
                user_count=room.user_count,
                languages=sorted(room.code_by_language),
                commit_count=len(room.commit_log),
                created_at=room.created_at,
                last_active=time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime(room.last_active)),
            )
    except StoreError:
        raise HTTPException(status_code=503, detail="Room temporarily unavailable")


@app.websocket("/ws/room/{room_key}")
async def websocket_room(websocket: WebSocket, room_key: str, user: str = Query("Anonymous")):
    """
    WebSocket endpoint for real-time room collaboration.
    Connect with: ws://host/ws/room/my-room?user=YourName

    Connecting joins the room; every frame afterwards is a JSON event
    ({"type": "code-update", "language": "python", "content": "..."} etc).
    """
    manager = get_manager(websocket)
    if not validate_room_key(room_key):
        log_security_event("invalid_room_key", {"room_key": room_key[:70]})
        await websocket.close(code=4001, reason="Invalid room key")
        return

    # Sanitize username to prevent XSS
    safe_user = sanitize_input(user, max_length=settings.MAX_NAME_LENGTH).strip() or "Anonymous"
    connection_id = uuid.uuid4().hex

    await websocket.accept()
    try:
        await manager.join(room_key, safe_user, connection_id=connection_id, websocket=websocket)
    except StoreError:
        await websocket.close(code=1011, reason="Room temporarily unavailable")
        return

    try:
        # Rate limiting: WS_MESSAGE_LIMIT frames per WS_MESSAGE_WINDOW seconds
        message_timestamps = []

        # Listen for events
        while True:
            data = await websocket.receive_text()

            now = time.time()
            message_timestamps = [t for t in message_timestamps if now - t < settings.WS_MESSAGE_WINDOW]
            if len(message_timestamps) >= settings.WS_MESSAGE_LIMIT:
                log_security_event("ws_rate_limited", {"room": room_key, "connection": connection_id[:8]})
                await websocket.send_text(json.dumps({
                    "type": ERROR,
                    "message": "Rate limit exceeded. Please slow down."
                }))
                continue
            message_timestamps.append(now)

            try:
                message = json.loads(data)
            except json.JSONDecodeError:
                continue  # Ignore malformed frames
            if not isinstance(message, dict):
                continue

            # The connection decides who and where; clients cannot spoof either
            message.update(room_key=room_key, identity=safe_user, connection_id=connection_id)
            event = parse_event(message)
            if event is None or event.type == "join":
                continue

            await manager.handle_event(event)
            if event.type == "leave":
                await websocket.close(code=1000)
                break

    except WebSocketDisconnect:
        pass
    finally:
        await manager.disconnect(connection_id)


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
