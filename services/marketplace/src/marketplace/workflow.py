"""Job categorization.

A freshly created job carries the ``Uncategorized`` placeholder. The workflow
asks the classifier for a category, resolves it to a stored category (creating
it when needed), records the job title as a job type of that category and
finally writes the category onto the job. A direct hire is only told about the
job once that write has happened.

If the classifier fails the job keeps its placeholder; an admin can rerun the
same steps through ``run`` at any time without creating duplicate categories or
job types.
"""

from __future__ import annotations

import json
import logging

from fastapi.concurrency import run_in_threadpool

from marketplace.classifier import CategoryClassifier
from marketplace.lifecycle import is_direct_hire
from marketplace.models import CONTENT_CATEGORIES, CONTENT_JOBS, CategorizationOutcome
from marketplace.notifications import NotificationService
from marketplace.realtime import BroadcastHub
from marketplace.repository import MarketplaceRepository

LOGGER = logging.getLogger("jkit.marketplace.workflow")

EVENT_CONTENT_CREATED = "content_created"
EVENT_CONTENT_UPDATED = "content_updated"
EVENT_CONTENT_DELETED = "content_deleted"


class JobNotFoundError(KeyError):
    pass


class CategorizationWorkflow:
    def __init__(
        self,
        repository: MarketplaceRepository,
        classifier: CategoryClassifier,
        hub: BroadcastHub,
        notifications: NotificationService,
    ) -> None:
        self.repository = repository
        self.classifier = classifier
        self.hub = hub
        self.notifications = notifications

    async def run(self, job_id: str, *, notify_direct_hire: bool = False) -> CategorizationOutcome:
        job = await run_in_threadpool(self.repository.get_job, job_id)
        if job is None:
            raise JobNotFoundError(job_id)

        known_names = await run_in_threadpool(self.repository.list_category_names)
        suggestion = await self.classifier.suggest(job.title, job.description, known_names)

        category, created = await run_in_threadpool(
            self.repository.get_or_create_category,
            suggestion.name,
            seed_job_title=job.title,
        )
        if created and not suggestion.is_new:
            LOGGER.warning(
                "category %r suggested as existing was missing and has been created",
                suggestion.name,
            )
        elif not created and suggestion.is_new:
            LOGGER.info("category %r already exists, reusing it", category.name)

        updated = False
        if not created:
            result = await run_in_threadpool(self.repository.add_job_type, category.name, job.title)
            if result is None:
                LOGGER.warning("category %r was deleted during categorization, recreating it", category.name)
                category, created = await run_in_threadpool(
                    self.repository.get_or_create_category,
                    suggestion.name,
                    seed_job_title=job.title,
                )
                if not created:
                    result = await run_in_threadpool(self.repository.add_job_type, category.name, job.title)
            if result is not None:
                category, updated = result

        categorized = await run_in_threadpool(
            self.repository.set_job_category,
            job.job_id,
            category.name,
        )
        if categorized is None:
            raise JobNotFoundError(job_id)

        LOGGER.info(
            json.dumps(
                {
                    "event": "job_categorized",
                    "job_id": categorized.job_id,
                    "category": category.name,
                    "category_created": created,
                    "category_updated": updated,
                }
            )
        )

        if created:
            self._broadcast(EVENT_CONTENT_CREATED, CONTENT_CATEGORIES, category.model_dump(mode="json"))
        elif updated:
            self._broadcast(EVENT_CONTENT_UPDATED, CONTENT_CATEGORIES, category.model_dump(mode="json"))
        self._broadcast(EVENT_CONTENT_UPDATED, CONTENT_JOBS, categorized.model_dump(mode="json"))

        if notify_direct_hire and is_direct_hire(categorized):
            await self.notifications.notify(
                categorized.assigned_to,
                f'You have been hired for the job: "{categorized.title}"! '
                "Please accept or decline the offer in your dashboard.",
                "#dashboard",
            )

        return CategorizationOutcome(
            job=categorized,
            category=category,
            category_created=created,
            category_updated=updated,
        )

    def _broadcast(self, event: str, content_type: str, data: dict) -> None:
        self.hub.broadcast(event, {"type": content_type, "data": data})
