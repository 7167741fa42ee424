from __future__ import annotations

import asyncio
import contextlib
import logging
from dataclasses import dataclass

from marketplace.classifier import ClassificationError
from marketplace.workflow import CategorizationWorkflow, JobNotFoundError

LOGGER = logging.getLogger("jkit.marketplace.worker")


@dataclass
class CategorizationJob:
    job_id: str
    requested_by: str | None = None


class CategorizationWorker:
    """Runs categorization workflows detached from the request that created the job.

    Each queued job gets its own task, so one slow classifier call does not hold
    up the others. ``queue.join()`` returns once every queued workflow finished.
    """

    def __init__(self, workflow: CategorizationWorkflow) -> None:
        self.workflow = workflow
        self.queue: asyncio.Queue[CategorizationJob] = asyncio.Queue()
        self._inflight: set[asyncio.Task[None]] = set()

    async def enqueue(self, job: CategorizationJob) -> int:
        await self.queue.put(job)
        return self.queue.qsize()

    async def run(self) -> None:
        while True:
            job = await self.queue.get()
            task = asyncio.create_task(self._process(job))
            self._inflight.add(task)
            task.add_done_callback(self._finish)

    async def _process(self, job: CategorizationJob) -> None:
        requester = job.requested_by or "system"
        LOGGER.info("categorizing job %s posted by %s", job.job_id, requester)
        try:
            await self.workflow.run(job.job_id, notify_direct_hire=True)
        except ClassificationError as exc:
            LOGGER.warning(
                "categorization of job %s (posted by %s) aborted, job stays uncategorized: %s",
                job.job_id,
                requester,
                exc,
            )
        except JobNotFoundError:
            LOGGER.warning(
                "job %s (posted by %s) disappeared before categorization finished",
                job.job_id,
                requester,
            )
        except Exception:
            LOGGER.exception("categorization of job %s (posted by %s) failed", job.job_id, requester)

    def _finish(self, task: asyncio.Task[None]) -> None:
        self._inflight.discard(task)
        self.queue.task_done()

    async def shutdown(self) -> None:
        for task in list(self._inflight):
            task.cancel()
        for task in list(self._inflight):
            with contextlib.suppress(asyncio.CancelledError):
                await task
