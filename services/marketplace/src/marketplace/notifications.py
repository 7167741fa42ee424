from __future__ import annotations

import logging

from fastapi.concurrency import run_in_threadpool

from marketplace.models import Notification
from marketplace.realtime import BroadcastHub
from marketplace.repository import MarketplaceRepository

LOGGER = logging.getLogger("jkit.marketplace.notifications")

EVENT_NOTIFICATION = "notification"


class NotificationService:
    def __init__(self, repository: MarketplaceRepository, hub: BroadcastHub) -> None:
        self.repository = repository
        self.hub = hub

    async def notify(self, recipient_username: str, message: str, link: str = "#") -> Notification | None:
        """Persist a notification and push it to the recipient if they are online.

        Offline recipients find it unread on their next session. Failures are
        logged and swallowed.
        """
        try:
            notification = await run_in_threadpool(
                self.repository.create_notification,
                recipient_username,
                message,
                link,
            )
        except Exception:
            LOGGER.exception("failed to send notification to %s", recipient_username)
            return None
        delivered = self.hub.send(
            recipient_username,
            EVENT_NOTIFICATION,
            notification.model_dump(mode="json"),
        )
        LOGGER.debug(
            "notification %s for %s stored (live=%s)",
            notification.notification_id,
            recipient_username,
            delivered,
        )
        return notification
