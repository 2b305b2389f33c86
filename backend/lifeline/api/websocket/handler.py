import logging

import socketio

from lifeline.config import get_settings

logger = logging.getLogger(__name__)
_settings = get_settings()

# Use Redis manager so Celery workers can emit events via the same bus
_redis_mgr = socketio.AsyncRedisManager(_settings.REDIS_URL)
sio = socketio.AsyncServer(
    async_mode="asgi",
    cors_allowed_origins="*",
    client_manager=_redis_mgr,
)

DASHBOARD_ROOM = "dashboard"


def user_room(user_id) -> str:
    return f"user_{user_id}"


@sio.event
async def connect(sid, environ):
    logger.info("Socket.IO client connected: %s", sid)


@sio.event
async def disconnect(sid):
    logger.info("Socket.IO client disconnected: %s", sid)


@sio.event
async def join_user(sid, data):
    """User or helper joins their personal room for notifications."""
    user_id = (data or {}).get("user_id")
    if user_id:
        await sio.enter_room(sid, user_room(user_id))
        await sio.emit("joined", {"room": user_room(user_id)}, to=sid)


@sio.event
async def join_dashboard(sid, data=None):
    """Join the operator dashboard room (all emergency activity)."""
    await sio.enter_room(sid, DASHBOARD_ROOM)
    await sio.emit("joined", {"room": DASHBOARD_ROOM}, to=sid)


# --- Emit functions (called from the notification sink) ---

async def notify_user(user_id: str, event: str, data: dict):
    """Send an event to a specific user or helper."""
    await sio.emit(event, data, room=user_room(user_id))


async def broadcast_dashboard(event: str, data: dict):
    """Mirror emergency activity to connected operator dashboards."""
    await sio.emit(event, data, room=DASHBOARD_ROOM)
