"""Job status workflow.

Every status change goes through :func:`transition`, which consults the
explicit transition table and keeps the assignment invariant of :class:`Job`
(assigned/in-progress jobs have an assignee, open jobs have none).
"""

from __future__ import annotations

from common.utils import now_utc_iso

from marketplace.models import Job, JobStatus

JOB_TRANSITIONS: dict[JobStatus, frozenset[JobStatus]] = {
    "open": frozenset({"assigned", "closed"}),
    "assigned": frozenset({"in-progress", "open", "closed"}),
    "in-progress": frozenset({"closed"}),
    "closed": frozenset(),
}


class InvalidTransitionError(ValueError):
    def __init__(self, current: JobStatus, target: JobStatus, reason: str | None = None) -> None:
        self.current = current
        self.target = target
        message = f"Cannot move job from '{current}' to '{target}'."
        if reason:
            message = f"{message} {reason}"
        super().__init__(message)


def can_transition(current: JobStatus, target: JobStatus) -> bool:
    return target in JOB_TRANSITIONS[current]


def transition(job: Job, target: JobStatus, *, assigned_to: str | None = None) -> Job:
    if not can_transition(job.status, target):
        raise InvalidTransitionError(job.status, target)

    update: dict[str, object] = {"status": target, "updated_at": now_utc_iso()}
    if target == "assigned":
        if not assigned_to:
            raise InvalidTransitionError(job.status, target, "An assignee is required.")
        update["assigned_to"] = assigned_to
        update["applicants"] = []
    elif target == "open":
        update["assigned_to"] = None
    elif target == "in-progress" and assigned_to and assigned_to != job.assigned_to:
        raise InvalidTransitionError(
            job.status,
            target,
            f"Only the assignee '{job.assigned_to}' can start this job.",
        )
    return job.model_copy(update=update)


def is_direct_hire(job: Job) -> bool:
    return job.status == "assigned" and job.assigned_to is not None
