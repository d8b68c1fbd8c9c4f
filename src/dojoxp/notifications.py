"""Notification sink: persist in-app notifications and push them over Redis pub/sub.

Delivery beyond the pub/sub channel (WebSocket fan-out, web push) is
handled by other services subscribed to ``ws:user:*``.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from dojoxp.db.models import Notification

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class NotificationPayload:
    user_id: str
    title: str
    message: str
    type: str
    related_id: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)


class NotificationService:
    """Writes notifications in the caller's transaction.

    Rows are only flushed by ``send``; the caller pushes them with
    ``publish_pending`` once its commit succeeded, or drops them with
    ``discard_pending`` after a rollback.
    """

    def __init__(self, db: AsyncSession, redis: object | None = None) -> None:
        self.db = db
        self.redis = redis
        self._pending: list[Notification] = []

    async def send(self, payload: NotificationPayload) -> Notification:
        notification = Notification(
            user_id=payload.user_id,
            title=payload.title,
            message=payload.message,
            type=payload.type,
            related_id=payload.related_id,
            notification_metadata=dict(payload.metadata),
        )
        self.db.add(notification)
        await self.db.flush()  # Assign notification.id for the push

        self._pending.append(notification)
        return notification

    async def publish_pending(self) -> None:
        """Push every notification sent since the last publish or discard."""
        pending, self._pending = self._pending, []
        for notification in pending:
            await push_notification_to_user(self.redis, notification)

    def discard_pending(self) -> None:
        self._pending = []


async def push_notification_to_user(redis: object | None, notification: Notification) -> None:
    """Publish a formatted notification dict to ws:user:{user_id}.

    The notification must already be flushed (have an ``id``). Push
    failures are logged and swallowed; the row is the source of truth.
    """
    if redis is None:
        return

    ws_payload = {
        "event": "notification",
        "data": {
            "id": str(notification.id),
            "type": notification.type,
            "title": notification.title,
            "message": notification.message,
            "relatedId": notification.related_id,
            "metadata": notification.notification_metadata,
            "timestamp": (
                notification.created_at.isoformat()
                if notification.created_at
                else None
            ),
            "read": False,
        },
    }
    try:
        await redis.publish(  # type: ignore[attr-defined]
            f"ws:user:{notification.user_id}",
            json.dumps(ws_payload),
        )
    except Exception:
        logger.warning(
            "Failed to push notification via ws:user:%s",
            notification.user_id,
            exc_info=True,
        )
