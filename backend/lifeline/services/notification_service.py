"""
Notification sinks — best-effort fan-out of emergency events.

The lifecycle service only sees the ``NotificationSink`` protocol. A send
never raises into the caller: failures and timeouts are logged and reported
as ``False``.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Protocol

from lifeline.config import get_settings

logger = logging.getLogger(__name__)

# Event kinds
SOS_ALERT = "sos_alert"
HELPER_REQUEST = "helper_request"
HELPER_ACCEPTED = "helper_accepted"
HELPER_ARRIVING = "helper_arriving"
HELPER_ARRIVED = "helper_arrived"
EMERGENCY_RESOLVED = "emergency_resolved"
EMERGENCY_MESSAGE = "emergency_message"


class NotificationSink(Protocol):
    async def notify(self, recipient_id: str, event_kind: str, payload: dict[str, Any]) -> bool:
        ...


class SocketIONotificationSink:
    """Pushes events to the recipient's Socket.IO room and the dashboard."""

    async def notify(self, recipient_id: str, event_kind: str, payload: dict[str, Any]) -> bool:
        from lifeline.api.websocket.handler import notify_user, broadcast_dashboard

        await notify_user(recipient_id, event_kind, payload)
        await broadcast_dashboard(event_kind, {"recipient_id": recipient_id, **payload})
        return True


class RedisBusNotificationSink:
    """Publishes events on the Socket.IO Redis bus from outside the server.

    Celery runs every task on a fresh event loop, so workers cannot share
    the server's loop-bound ``AsyncRedisManager``. They emit through a
    synchronous write-only ``socketio.RedisManager`` on a worker thread.
    """

    def __init__(self, manager):
        self.manager = manager

    def _emit(self, recipient_id: str, event_kind: str, payload: dict[str, Any]) -> None:
        from lifeline.api.websocket.handler import DASHBOARD_ROOM, user_room

        self.manager.emit(event_kind, payload, room=user_room(recipient_id))
        self.manager.emit(event_kind, {"recipient_id": recipient_id, **payload}, room=DASHBOARD_ROOM)

    async def notify(self, recipient_id: str, event_kind: str, payload: dict[str, Any]) -> bool:
        await asyncio.to_thread(self._emit, recipient_id, event_kind, payload)
        return True


async def send_best_effort(
    sink: NotificationSink,
    recipient_id: str,
    event_kind: str,
    payload: dict[str, Any],
    *,
    timeout: float | None = None,
) -> bool:
    """Deliver one notification; never raises."""
    if timeout is None:
        timeout = get_settings().NOTIFICATION_TIMEOUT_SECONDS
    try:
        delivered = await asyncio.wait_for(sink.notify(recipient_id, event_kind, payload), timeout)
    except asyncio.TimeoutError:
        logger.warning("Notification %s to %s timed out after %.1fs", event_kind, recipient_id, timeout)
        return False
    except Exception:
        logger.exception("Failed to send %s notification to %s", event_kind, recipient_id)
        return False
    return bool(delivered)


async def fan_out(
    sink: NotificationSink,
    recipient_ids: list[str],
    event_kind: str,
    payload: dict[str, Any],
) -> int:
    """Notify each recipient independently. Returns the number delivered."""
    sent = 0
    for recipient_id in recipient_ids:
        if await send_best_effort(sink, recipient_id, event_kind, payload):
            sent += 1
    return sent


_default_sink: NotificationSink = SocketIONotificationSink()


def get_notifier() -> NotificationSink:
    """FastAPI dependency; overridden in tests."""
    return _default_sink
