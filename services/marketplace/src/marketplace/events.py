from __future__ import annotations

import logging
from typing import Any

from fastapi.concurrency import run_in_threadpool

from marketplace.models import EventContext, EventLog, EventLogCreate, EventTarget
from marketplace.realtime import BroadcastHub
from marketplace.repository import MarketplaceRepository

LOGGER = logging.getLogger("jkit.marketplace.events")

EVENT_LOG_CREATED = "event_log_created"


class EventLogService:
    """Append-only audit trail. Recording never raises into the caller."""

    def __init__(self, repository: MarketplaceRepository, hub: BroadcastHub) -> None:
        self.repository = repository
        self.hub = hub

    async def record(
        self,
        event_type: str,
        actor_username: str,
        details: dict[str, Any] | None = None,
        *,
        target: EventTarget | None = None,
        context: EventContext | None = None,
    ) -> EventLog | None:
        try:
            entry = EventLogCreate(
                event_type=event_type,
                actor_username=actor_username,
                details=details or {},
                target=target,
                context=context,
            )
            saved = await run_in_threadpool(self.repository.append_event_log, entry)
        except Exception:
            LOGGER.exception("failed to log event %s for %s", event_type, actor_username)
            return None
        self.hub.broadcast(EVENT_LOG_CREATED, saved.model_dump(mode="json"))
        return saved
