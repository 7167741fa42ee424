from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import os
import secrets
import tempfile
import threading
import time
import uuid
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any

from common.utils import new_identifier, normalize_whitespace, now_utc_iso
from fastapi import (
    BackgroundTasks,
    FastAPI,
    HTTPException,
    Query,
    Request,
    WebSocket,
    WebSocketDisconnect,
)
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ValidationError

from marketplace.classifier import (
    CategoryClassifier,
    ClassificationError,
    CompletionClient,
    build_completion_client,
)
from marketplace.events import EventLogService
from marketplace.lifecycle import InvalidTransitionError, transition
from marketplace.models import (
    ADMIN_CATEGORY_TYPES,
    CONTENT_AGENCIES,
    CONTENT_AGENCY_REQUESTS,
    CONTENT_CATEGORIES,
    CONTENT_JOBS,
    CONTENT_RATINGS,
    UNCATEGORIZED,
    Agency,
    AgencyCreateRequest,
    AgencyRequest,
    AgencyRequestDecision,
    ApplicantDecisionRequest,
    CategorizationOutcome,
    CategoryConfigRequest,
    CategoryCreateRequest,
    CategoryRenameRequest,
    ChatMessage,
    ChatMessageIn,
    CleanupResponse,
    EventContext,
    EventLog,
    EventTarget,
    Follow,
    Job,
    JobCategory,
    JobCreateRequest,
    JobStatus,
    JobStatusUpdateRequest,
    JobTypeRenameRequest,
    JobTypeRequest,
    MarkReadRequest,
    MessageResponse,
    Notification,
    Rating,
    RatingCreateRequest,
    RatingSummary,
)
from marketplace.notifications import NotificationService
from marketplace.realtime import BroadcastHub, WebSocketChannel
from marketplace.repository import DuplicateError, MarketplaceRepository
from marketplace.site_content import SiteContentStore
from marketplace.worker import CategorizationJob, CategorizationWorker
from marketplace.workflow import (
    EVENT_CONTENT_CREATED,
    EVENT_CONTENT_DELETED,
    EVENT_CONTENT_UPDATED,
    CategorizationWorkflow,
    JobNotFoundError,
)

DEFAULT_DB_PATH = os.path.join(tempfile.gettempdir(), "jkit-marketplace", "marketplace.sqlite3")
PENDING_CATEGORY_LABEL = "Pending AI Categorization"

EVENT_CHAT_MESSAGE = "chat_message"
EVENT_ERROR = "error"
EVENT_FOLLOW_UPDATED = "follow_updated"
EVENT_SETTINGS_UPDATED = "settings_updated"
EVENT_ABOUT_CONTENT_UPDATED = "about_content_updated"
EVENT_AGENCY_JOIN_REQUEST_RECEIVED = "agency_join_request_received"

UNMATCHED_ROUTE = "<unmatched>"

LOGGER = logging.getLogger("jkit.marketplace")


class MetricsSnapshot(BaseModel):
    generated_at: str
    totals: dict[str, int]
    endpoints: dict[str, dict[str, float | int]]


class MetricsStore:
    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._totals = {"requests": 0, "errors": 0}
        self._endpoints: dict[str, dict[str, float | int]] = {}

    def observe(self, *, method: str, path: str, status_code: int, duration_ms: float) -> None:
        key = f"{method} {path}"
        bucket = f"{status_code // 100}xx"
        with self._lock:
            self._totals["requests"] += 1
            if status_code >= 400:
                self._totals["errors"] += 1
            endpoint = self._endpoints.setdefault(
                key,
                {"count": 0, "2xx": 0, "4xx": 0, "5xx": 0, "latency_ms_sum": 0.0, "latency_ms_avg": 0.0},
            )
            endpoint["count"] = int(endpoint["count"]) + 1
            if bucket in ("2xx", "4xx", "5xx"):
                endpoint[bucket] = int(endpoint[bucket]) + 1
            endpoint["latency_ms_sum"] = float(endpoint["latency_ms_sum"]) + duration_ms
            endpoint["latency_ms_avg"] = float(endpoint["latency_ms_sum"]) / int(endpoint["count"])

    def snapshot(self) -> MetricsSnapshot:
        with self._lock:
            return MetricsSnapshot(
                generated_at=now_utc_iso(),
                totals=dict(self._totals),
                endpoints={key: dict(value) for key, value in self._endpoints.items()},
            )


def route_template(request: Request) -> str:
    """Metrics key for a request: the matched route's path template, not the concrete URL."""
    route = request.scope.get("route")
    if route is None:
        return UNMATCHED_ROUTE
    return getattr(route, "path", UNMATCHED_ROUTE)


def create_app(
    *,
    database_path: str | None = None,
    data_dir: str | None = None,
    admin_api_key: str | None = None,
    completion_client: CompletionClient | None = None,
) -> FastAPI:
    resolved_path = database_path or os.getenv("MARKETPLACE_DB_PATH", DEFAULT_DB_PATH)
    resolved_data_dir = data_dir or os.getenv("MARKETPLACE_DATA_DIR", "") or str(Path(resolved_path).parent)
    resolved_admin_key = (admin_api_key or os.getenv("MARKETPLACE_ADMIN_API_KEY", "")).strip() or None
    client = completion_client if completion_client is not None else build_completion_client()

    repository = MarketplaceRepository(database_path=resolved_path)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await run_in_threadpool(repository.connect)
        hub = BroadcastHub()
        notifications = NotificationService(repository, hub)
        classifier = CategoryClassifier(client)
        workflow = CategorizationWorkflow(repository, classifier, hub, notifications)
        worker = CategorizationWorker(workflow)

        app.state.repository = repository
        app.state.hub = hub
        app.state.notifications = notifications
        app.state.events = EventLogService(repository, hub)
        app.state.workflow = workflow
        app.state.worker = worker
        app.state.site_content = SiteContentStore(resolved_data_dir)
        app.state.admin_api_key = resolved_admin_key
        app.state.metrics = MetricsStore()
        if not classifier.enabled:
            LOGGER.warning("no completion client configured, new jobs will stay %s", UNCATEGORIZED)

        worker_task = asyncio.create_task(worker.run())
        try:
            yield
        finally:
            worker_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await worker_task
            await worker.shutdown()
            hub.close()
            await run_in_threadpool(repository.close)

    app = FastAPI(title="J-KIT Marketplace", version="0.1.0", lifespan=lifespan)

    @app.exception_handler(DuplicateError)
    async def duplicate_handler(request: Request, exc: DuplicateError) -> JSONResponse:
        return JSONResponse(status_code=409, content={"detail": str(exc)})

    @app.exception_handler(InvalidTransitionError)
    async def transition_handler(request: Request, exc: InvalidTransitionError) -> JSONResponse:
        return JSONResponse(status_code=409, content={"detail": str(exc)})

    @app.middleware("http")
    async def observability_middleware(request: Request, call_next):
        request_id = request.headers.get("x-request-id") or str(uuid.uuid4())
        request.state.request_id = request_id
        started = time.perf_counter()

        try:
            response = await call_next(request)
        except Exception as exc:
            duration_ms = (time.perf_counter() - started) * 1000
            request.app.state.metrics.observe(
                method=request.method,
                path=route_template(request),
                status_code=500,
                duration_ms=duration_ms,
            )
            LOGGER.exception(
                json.dumps(
                    {
                        "event": "request_complete",
                        "request_id": request_id,
                        "method": request.method,
                        "path": request.url.path,
                        "status_code": 500,
                        "duration_ms": round(duration_ms, 3),
                        "error": str(exc),
                    }
                )
            )
            return JSONResponse(
                status_code=500,
                content={"detail": "Internal Server Error", "request_id": request_id},
                headers={"x-request-id": request_id},
            )

        duration_ms = (time.perf_counter() - started) * 1000
        request.app.state.metrics.observe(
            method=request.method,
            path=route_template(request),
            status_code=response.status_code,
            duration_ms=duration_ms,
        )
        response.headers["x-request-id"] = request_id
        LOGGER.info(
            json.dumps(
                {
                    "event": "request_complete",
                    "request_id": request_id,
                    "method": request.method,
                    "path": request.url.path,
                    "status_code": response.status_code,
                    "duration_ms": round(duration_ms, 3),
                    "source_ip": request.client.host if request.client else None,
                }
            )
        )
        return response

    def require_actor(request: Request) -> str:
        username = request.headers.get("x-username", "").strip()
        if not username:
            raise HTTPException(status_code=401, detail="Unauthorized")
        return username

    def require_admin(request: Request) -> str:
        expected: str | None = request.app.state.admin_api_key
        if expected:
            provided = request.headers.get("x-api-key", "")
            if not provided or not secrets.compare_digest(provided, expected):
                raise HTTPException(status_code=401, detail="Unauthorized")
        return request.headers.get("x-username", "").strip() or "admin"

    async def record_event(
        request: Request,
        event_type: str,
        actor: str,
        details: dict[str, Any] | None = None,
        *,
        target_id: str | None = None,
        target_model: str | None = None,
    ) -> EventLog | None:
        target = EventTarget(id=target_id, model=target_model) if target_id else None
        context = EventContext(
            ip_address=request.client.host if request.client else None,
            user_agent=request.headers.get("user-agent"),
        )
        return await request.app.state.events.record(
            event_type,
            actor,
            details,
            target=target,
            context=context,
        )

    def broadcast_content(request: Request, event: str, content_type: str, data: dict[str, Any]) -> None:
        request.app.state.hub.broadcast(event, {"type": content_type, "data": data})

    async def load_job(request: Request, job_id: str) -> Job:
        job = await run_in_threadpool(request.app.state.repository.get_job, job_id)
        if job is None:
            raise HTTPException(status_code=404, detail="Job not found")
        return job

    async def save_job(request: Request, job: Job) -> Job:
        saved = await run_in_threadpool(request.app.state.repository.save_job, job)
        if saved is None:
            raise HTTPException(status_code=404, detail="Job not found")
        return saved

    @app.get("/health")
    async def health() -> dict[str, str]:
        return {"status": "ok", "service": "marketplace"}

    @app.get("/metrics", response_model=MetricsSnapshot)
    async def metrics(request: Request) -> MetricsSnapshot:
        return request.app.state.metrics.snapshot()

    # Jobs

    @app.post("/jobs", response_model=Job, status_code=201)
    async def create_job(
        payload: JobCreateRequest,
        request: Request,
        background_tasks: BackgroundTasks,
    ) -> Job:
        actor = require_actor(request)
        title = normalize_whitespace(payload.title)
        if not title:
            raise HTTPException(status_code=400, detail="A job title is required.")
        assigned_to = (payload.assigned_to or "").strip() or None
        if assigned_to == actor:
            raise HTTPException(status_code=400, detail="You cannot hire yourself.")

        now = now_utc_iso()
        job = Job(
            job_id=payload.job_id or new_identifier("job"),
            title=title,
            description=payload.description.strip(),
            category=UNCATEGORIZED,
            status="assigned" if assigned_to else "open",
            posted_by=actor,
            assigned_to=assigned_to,
            location=payload.location,
            price=payload.price,
            created_at=now,
            updated_at=now,
        )
        job = await run_in_threadpool(request.app.state.repository.create_job, job)

        await record_event(
            request,
            "JOB_CREATED",
            actor,
            {"title": job.title, "category": PENDING_CATEGORY_LABEL, "direct_hire": assigned_to is not None},
            target_id=job.job_id,
            target_model="Job",
        )
        broadcast_content(request, EVENT_CONTENT_CREATED, CONTENT_JOBS, job.model_dump(mode="json"))
        background_tasks.add_task(
            request.app.state.worker.enqueue,
            CategorizationJob(job_id=job.job_id, requested_by=actor),
        )
        return job

    @app.get("/jobs", response_model=list[Job])
    async def list_jobs(
        request: Request,
        limit: int = Query(default=100, ge=1, le=500),
        status: JobStatus | None = Query(default=None),
        category: str | None = Query(default=None),
    ) -> list[Job]:
        return await run_in_threadpool(
            request.app.state.repository.list_jobs,
            limit=limit,
            status=status,
            category=category,
        )

    @app.get("/jobs/{job_id}", response_model=Job)
    async def get_job(job_id: str, request: Request) -> Job:
        return await load_job(request, job_id)

    @app.post("/jobs/{job_id}/apply", response_model=Job)
    async def apply_to_job(job_id: str, request: Request) -> Job:
        actor = require_actor(request)
        job = await load_job(request, job_id)
        if job.posted_by == actor:
            raise HTTPException(status_code=400, detail="You cannot apply to your own job.")
        if job.status != "open":
            raise HTTPException(status_code=400, detail="This job is no longer accepting applications.")
        if actor in job.applicants:
            raise HTTPException(status_code=409, detail="You have already applied for this job.")

        updated = await run_in_threadpool(request.app.state.repository.add_applicant, job_id, actor)
        if updated is None:
            raise HTTPException(status_code=400, detail="This job is no longer accepting applications.")

        await record_event(
            request,
            "JOB_APPLICATION_RECEIVED",
            actor,
            {"title": updated.title, "posted_by": updated.posted_by},
            target_id=job_id,
            target_model="Job",
        )
        await request.app.state.notifications.notify(
            updated.posted_by,
            f'{actor} has applied for your job: "{updated.title}".',
            "#dashboard",
        )
        broadcast_content(request, EVENT_CONTENT_UPDATED, CONTENT_JOBS, updated.model_dump(mode="json"))
        return updated

    @app.post("/jobs/{job_id}/applicants/{username}/handle", response_model=Job)
    async def handle_applicant(
        job_id: str,
        username: str,
        payload: ApplicantDecisionRequest,
        request: Request,
    ) -> Job:
        actor = require_actor(request)
        job = await load_job(request, job_id)
        if job.posted_by != actor:
            raise HTTPException(status_code=403, detail="Only the job poster can handle applicants.")
        if username not in job.applicants:
            raise HTTPException(status_code=400, detail="This user has not applied for the job.")

        notifications: NotificationService = request.app.state.notifications
        if payload.action == "accept":
            others = [applicant for applicant in job.applicants if applicant != username]
            updated = await save_job(request, transition(job, "assigned", assigned_to=username))
            await record_event(
                request,
                "JOB_STATUS_UPDATED",
                actor,
                {"title": updated.title, "from": job.status, "to": updated.status, "assigned_to": username},
                target_id=job_id,
                target_model="Job",
            )
            await notifications.notify(
                username,
                f'Congratulations! You have been hired for the job: "{updated.title}".',
                "#dashboard",
            )
            for applicant in others:
                await notifications.notify(
                    applicant,
                    f'The job "{updated.title}" has been filled by another applicant.',
                )
        else:
            remaining = [applicant for applicant in job.applicants if applicant != username]
            updated = await save_job(
                request,
                job.model_copy(update={"applicants": remaining, "updated_at": now_utc_iso()}),
            )
            await notifications.notify(
                username,
                f'Your application for "{updated.title}" was not selected.',
            )

        broadcast_content(request, EVENT_CONTENT_UPDATED, CONTENT_JOBS, updated.model_dump(mode="json"))
        return updated

    @app.put("/jobs/{job_id}/status", response_model=Job)
    async def update_job_status(
        job_id: str,
        payload: JobStatusUpdateRequest,
        request: Request,
    ) -> Job:
        actor = require_actor(request)
        job = await load_job(request, job_id)
        target = payload.status

        # The assignee answers an offer; everything else belongs to the poster.
        assignee_move = target == "in-progress" or (target == "open" and job.status == "assigned")
        if assignee_move and actor != job.assigned_to:
            raise HTTPException(status_code=403, detail="Only the assigned worker can respond to this offer.")
        if not assignee_move and actor != job.posted_by:
            raise HTTPException(status_code=403, detail="Only the job poster can change this job's status.")

        updated = await save_job(
            request,
            transition(job, target, assigned_to=payload.assigned_to if target == "assigned" else None),
        )
        await record_event(
            request,
            "JOB_STATUS_UPDATED",
            actor,
            {
                "title": updated.title,
                "from": job.status,
                "to": updated.status,
                "assigned_to": updated.assigned_to,
            },
            target_id=job_id,
            target_model="Job",
        )

        notifications: NotificationService = request.app.state.notifications
        if target == "in-progress":
            await notifications.notify(
                job.posted_by,
                f'{actor} accepted your job offer for "{job.title}".',
                "#dashboard",
            )
        elif target == "open" and job.status == "assigned":
            await notifications.notify(
                job.posted_by,
                f'{actor} declined your job offer for "{job.title}".',
                "#dashboard",
            )
        elif target == "assigned" and updated.assigned_to:
            await notifications.notify(
                updated.assigned_to,
                f'You have been hired for the job: "{updated.title}"! '
                "Please accept or decline the offer in your dashboard.",
                "#dashboard",
            )
        elif target == "closed" and job.assigned_to:
            await notifications.notify(
                job.assigned_to,
                f'The job "{job.title}" has been marked as completed.',
            )

        broadcast_content(request, EVENT_CONTENT_UPDATED, CONTENT_JOBS, updated.model_dump(mode="json"))
        return updated

    @app.delete("/jobs/{job_id}", response_model=MessageResponse)
    async def delete_job(job_id: str, request: Request) -> MessageResponse:
        actor = require_actor(request)
        job = await load_job(request, job_id)
        if job.posted_by != actor:
            raise HTTPException(status_code=403, detail="Only the job poster can delete this job.")
        deleted = await run_in_threadpool(request.app.state.repository.delete_job, job_id)
        if deleted is None:
            raise HTTPException(status_code=404, detail="Job not found")

        await record_event(
            request,
            "JOB_DELETED",
            actor,
            {"title": deleted.title},
            target_id=job_id,
            target_model="Job",
        )
        request.app.state.hub.broadcast(EVENT_CONTENT_DELETED, {"type": CONTENT_JOBS, "id": job_id})
        return MessageResponse(message="Job deleted successfully.")

    # Categories

    @app.get("/job-categories", response_model=list[JobCategory])
    async def list_job_categories(request: Request) -> list[JobCategory]:
        return await run_in_threadpool(request.app.state.repository.list_categories)

    @app.post("/admin/jobs/{job_id}/recategorize", response_model=CategorizationOutcome)
    async def recategorize_job(job_id: str, request: Request) -> CategorizationOutcome:
        actor = require_admin(request)
        try:
            outcome = await request.app.state.workflow.run(job_id)
        except JobNotFoundError as exc:
            raise HTTPException(status_code=404, detail="Job not found") from exc
        except ClassificationError as exc:
            raise HTTPException(status_code=502, detail=f"Categorization failed: {exc}") from exc

        await record_event(
            request,
            "JOB_RECATEGORIZED",
            actor,
            {
                "title": outcome.job.title,
                "category": outcome.category.name,
                "category_created": outcome.category_created,
            },
            target_id=job_id,
            target_model="Job",
        )
        return outcome

    @app.post("/admin/jobs/cleanup-duplicates", response_model=CleanupResponse)
    async def cleanup_duplicate_jobs(request: Request) -> CleanupResponse:
        actor = require_admin(request)
        job_ids = await run_in_threadpool(request.app.state.repository.delete_duplicate_jobs)
        for job_id in job_ids:
            request.app.state.hub.broadcast(EVENT_CONTENT_DELETED, {"type": CONTENT_JOBS, "id": job_id})
        await record_event(request, "ADMIN_JOB_CLEANUP", actor, {"deleted": len(job_ids)})
        return CleanupResponse(deleted=len(job_ids), job_ids=job_ids)

    @app.post("/admin/job-categories", response_model=JobCategory, status_code=201)
    async def create_job_category(payload: CategoryCreateRequest, request: Request) -> JobCategory:
        actor = require_admin(request)
        name = normalize_whitespace(payload.name)
        if not name:
            raise HTTPException(status_code=400, detail="A category name is required.")
        try:
            category = await run_in_threadpool(
                request.app.state.repository.create_category,
                name,
                types=ADMIN_CATEGORY_TYPES,
            )
        except DuplicateError as exc:
            raise HTTPException(status_code=409, detail="A category with this name already exists.") from exc

        await record_event(
            request,
            "CATEGORY_CREATED",
            actor,
            {"name": category.name},
            target_id=category.name,
            target_model="JobCategory",
        )
        broadcast_content(request, EVENT_CONTENT_CREATED, CONTENT_CATEGORIES, category.model_dump(mode="json"))
        return category

    @app.put("/admin/job-categories/{name}", response_model=JobCategory)
    async def rename_job_category(name: str, payload: CategoryRenameRequest, request: Request) -> JobCategory:
        actor = require_admin(request)
        new_name = normalize_whitespace(payload.new_name)
        if not new_name:
            raise HTTPException(status_code=400, detail="A category name is required.")
        try:
            category = await run_in_threadpool(request.app.state.repository.rename_category, name, new_name)
        except DuplicateError as exc:
            raise HTTPException(status_code=409, detail="A category with this name already exists.") from exc
        if category is None:
            raise HTTPException(status_code=404, detail="Category not found")

        await record_event(
            request,
            "CATEGORY_UPDATED",
            actor,
            {"previous_name": name, "name": category.name},
            target_id=category.name,
            target_model="JobCategory",
        )
        request.app.state.hub.broadcast(
            EVENT_CONTENT_UPDATED,
            {"type": CONTENT_CATEGORIES, "data": category.model_dump(mode="json"), "previous_name": name},
        )
        return category

    @app.delete("/admin/job-categories/{name}", response_model=MessageResponse)
    async def delete_job_category(name: str, request: Request) -> MessageResponse:
        actor = require_admin(request)
        deleted = await run_in_threadpool(request.app.state.repository.delete_category, name)
        if not deleted:
            raise HTTPException(status_code=404, detail="Category not found")
        await record_event(
            request,
            "CATEGORY_DELETED",
            actor,
            {"name": name},
            target_id=name,
            target_model="JobCategory",
        )
        request.app.state.hub.broadcast(EVENT_CONTENT_DELETED, {"type": CONTENT_CATEGORIES, "id": name})
        return MessageResponse(message="Category deleted successfully.")

    @app.post("/admin/job-categories/{name}/jobs", response_model=JobCategory)
    async def add_category_job_type(name: str, payload: JobTypeRequest, request: Request) -> JobCategory:
        actor = require_admin(request)
        job_name = normalize_whitespace(payload.name)
        if not job_name:
            raise HTTPException(status_code=400, detail="A job type name is required.")
        result = await run_in_threadpool(
            request.app.state.repository.add_job_type,
            name,
            job_name,
            image_path=payload.image_path,
        )
        if result is None:
            raise HTTPException(status_code=404, detail="Category not found")
        category, appended = result
        if not appended:
            raise HTTPException(status_code=409, detail="This job type already exists in the category.")

        await record_event(
            request,
            "CATEGORY_UPDATED",
            actor,
            {"name": category.name, "added_job": job_name},
            target_id=category.name,
            target_model="JobCategory",
        )
        broadcast_content(request, EVENT_CONTENT_UPDATED, CONTENT_CATEGORIES, category.model_dump(mode="json"))
        return category

    @app.delete("/admin/job-categories/{name}/jobs/{job_name}", response_model=JobCategory)
    async def remove_category_job_type(name: str, job_name: str, request: Request) -> JobCategory:
        actor = require_admin(request)
        result = await run_in_threadpool(request.app.state.repository.remove_job_type, name, job_name)
        if result is None:
            raise HTTPException(status_code=404, detail="Category not found")
        category, removed = result
        if not removed:
            raise HTTPException(status_code=404, detail="Job type not found in this category")

        await record_event(
            request,
            "CATEGORY_UPDATED",
            actor,
            {"name": category.name, "removed_job": job_name},
            target_id=category.name,
            target_model="JobCategory",
        )
        broadcast_content(request, EVENT_CONTENT_UPDATED, CONTENT_CATEGORIES, category.model_dump(mode="json"))
        return category

    @app.put("/admin/job-categories/{name}/jobs/{job_name}", response_model=JobCategory)
    async def rename_category_job_type(
        name: str,
        job_name: str,
        payload: JobTypeRenameRequest,
        request: Request,
    ) -> JobCategory:
        actor = require_admin(request)
        new_name = normalize_whitespace(payload.new_name)
        if not new_name:
            raise HTTPException(status_code=400, detail="A job type name is required.")
        try:
            result = await run_in_threadpool(
                request.app.state.repository.rename_job_type,
                name,
                job_name,
                new_name,
            )
        except DuplicateError as exc:
            raise HTTPException(status_code=409, detail="This job type already exists in the category.") from exc
        if result is None:
            raise HTTPException(status_code=404, detail="Category not found")
        category, renamed = result
        if not renamed:
            raise HTTPException(status_code=404, detail="Job type not found in this category")

        await record_event(
            request,
            "CATEGORY_UPDATED",
            actor,
            {"name": category.name, "renamed_job": job_name, "new_job_name": new_name},
            target_id=category.name,
            target_model="JobCategory",
        )
        broadcast_content(request, EVENT_CONTENT_UPDATED, CONTENT_CATEGORIES, category.model_dump(mode="json"))
        return category

    @app.put("/admin/job-categories/{name}/config", response_model=JobCategory)
    async def configure_job_category(name: str, payload: CategoryConfigRequest, request: Request) -> JobCategory:
        actor = require_admin(request)
        job_images = {entry.name: entry.image_path for entry in payload.jobs} if payload.jobs else None
        category = await run_in_threadpool(
            request.app.state.repository.configure_category,
            name,
            image_path=payload.image_path,
            use_category_default_image=payload.use_category_default_image,
            job_images=job_images,
        )
        if category is None:
            raise HTTPException(status_code=404, detail="Category not found")

        await record_event(
            request,
            "CATEGORY_UPDATED",
            actor,
            {"name": category.name, "configuration": payload.model_dump(exclude_none=True)},
            target_id=category.name,
            target_model="JobCategory",
        )
        broadcast_content(request, EVENT_CONTENT_UPDATED, CONTENT_CATEGORIES, category.model_dump(mode="json"))
        return category

    # Event log

    @app.get("/admin/event-logs", response_model=list[EventLog])
    async def list_event_logs(
        request: Request,
        limit: int = Query(default=100, ge=1, le=1000),
        event_type: str | None = Query(default=None),
    ) -> list[EventLog]:
        require_admin(request)
        return await run_in_threadpool(
            request.app.state.repository.list_event_logs,
            limit=limit,
            event_type=event_type,
        )

    @app.delete("/admin/event-logs")
    async def delete_event_logs(request: Request) -> dict[str, int]:
        actor = require_admin(request)
        deleted = await run_in_threadpool(request.app.state.repository.delete_event_logs)
        LOGGER.info(json.dumps({"event": "event_logs_cleared", "actor": actor, "deleted": deleted}))
        return {"deleted": deleted}

    # Site content

    @app.get("/settings")
    async def read_settings(request: Request) -> dict[str, Any]:
        return await run_in_threadpool(request.app.state.site_content.read_settings)

    @app.put("/admin/settings")
    async def update_settings(payload: dict[str, Any], request: Request) -> dict[str, Any]:
        actor = require_admin(request)
        settings = await run_in_threadpool(request.app.state.site_content.update_settings, payload)
        await record_event(request, "SETTINGS_UPDATED", actor, {"keys": sorted(payload)})
        request.app.state.hub.broadcast(EVENT_SETTINGS_UPDATED, settings)
        return settings

    @app.get("/about-content")
    async def read_about_content(request: Request) -> dict[str, Any]:
        return await run_in_threadpool(request.app.state.site_content.read_about_content)

    @app.put("/admin/about-content")
    async def replace_about_content(payload: dict[str, Any], request: Request) -> dict[str, Any]:
        require_admin(request)
        content = await run_in_threadpool(request.app.state.site_content.replace_about_content, payload)
        request.app.state.hub.broadcast(EVENT_ABOUT_CONTENT_UPDATED, content)
        return content

    # Notifications

    @app.get("/notifications", response_model=list[Notification])
    async def list_notifications(
        request: Request,
        unread_only: bool = Query(default=False),
        limit: int = Query(default=50, ge=1, le=500),
    ) -> list[Notification]:
        actor = require_actor(request)
        return await run_in_threadpool(
            request.app.state.repository.list_notifications,
            actor,
            unread_only=unread_only,
            limit=limit,
        )

    @app.post("/notifications/mark-read")
    async def mark_notifications_read(payload: MarkReadRequest, request: Request) -> dict[str, int]:
        actor = require_actor(request)
        updated = await run_in_threadpool(
            request.app.state.repository.mark_notifications_read,
            actor,
            payload.notification_ids,
        )
        return {"updated": updated}

    # Ratings and follows

    @app.post("/ratings", response_model=Rating, status_code=201)
    async def create_rating(payload: RatingCreateRequest, request: Request) -> Rating:
        actor = require_actor(request)
        job = await load_job(request, payload.job_id)
        if job.posted_by != actor:
            raise HTTPException(status_code=403, detail="Only the job poster can rate the worker.")
        if job.status != "closed":
            raise HTTPException(status_code=400, detail="Ratings can only be left for completed jobs.")
        if payload.rated_username != job.assigned_to:
            raise HTTPException(status_code=400, detail="You can only rate the worker assigned to this job.")
        try:
            rating = await run_in_threadpool(
                request.app.state.repository.create_rating,
                job_id=job.job_id,
                rated_username=payload.rated_username,
                rater_username=actor,
                rating=payload.rating,
                comment=payload.comment,
            )
        except DuplicateError as exc:
            raise HTTPException(
                status_code=409,
                detail="You have already submitted a rating for this job.",
            ) from exc

        await record_event(
            request,
            "USER_RATED",
            actor,
            {"rated_username": rating.rated_username, "rating": rating.rating},
            target_id=job.job_id,
            target_model="Job",
        )
        await request.app.state.notifications.notify(
            rating.rated_username,
            f'{actor} rated you {rating.rating}/5 for the job "{job.title}".',
            f"#profile/{rating.rated_username}",
        )
        broadcast_content(request, EVENT_CONTENT_CREATED, CONTENT_RATINGS, rating.model_dump(mode="json"))
        return rating

    @app.get("/users/{username}/ratings", response_model=RatingSummary)
    async def get_rating_summary(username: str, request: Request) -> RatingSummary:
        return await run_in_threadpool(request.app.state.repository.rating_summary, username)

    @app.post("/users/{username}/follow", response_model=Follow, status_code=201)
    async def follow_user(username: str, request: Request) -> Follow:
        actor = require_actor(request)
        if username == actor:
            raise HTTPException(status_code=400, detail="You cannot follow yourself.")
        try:
            follow = await run_in_threadpool(request.app.state.repository.create_follow, username, actor)
        except DuplicateError as exc:
            raise HTTPException(status_code=409, detail="You are already following this user.") from exc

        await record_event(
            request,
            "USER_FOLLOWED",
            actor,
            {"user": username},
            target_id=username,
            target_model="User",
        )
        await request.app.state.notifications.notify(
            username,
            f"{actor} started following you.",
            f"#profile/{actor}",
        )
        request.app.state.hub.broadcast(
            EVENT_FOLLOW_UPDATED,
            {"user": username, "follower": actor, "following": True},
        )
        return follow

    @app.delete("/users/{username}/follow", response_model=MessageResponse)
    async def unfollow_user(username: str, request: Request) -> MessageResponse:
        actor = require_actor(request)
        removed = await run_in_threadpool(request.app.state.repository.delete_follow, username, actor)
        if not removed:
            raise HTTPException(status_code=404, detail="You are not following this user.")
        request.app.state.hub.broadcast(
            EVENT_FOLLOW_UPDATED,
            {"user": username, "follower": actor, "following": False},
        )
        return MessageResponse(message="Unfollowed successfully.")

    @app.get("/users/{username}/followers", response_model=list[Follow])
    async def list_followers(username: str, request: Request) -> list[Follow]:
        return await run_in_threadpool(request.app.state.repository.list_followers, username)

    # Agencies

    @app.post("/agencies", response_model=Agency, status_code=201)
    async def create_agency(payload: AgencyCreateRequest, request: Request) -> Agency:
        actor = require_actor(request)
        name = normalize_whitespace(payload.name)
        if not name:
            raise HTTPException(status_code=400, detail="An agency name is required.")
        agency = await run_in_threadpool(
            request.app.state.repository.create_agency,
            Agency(
                agency_id=payload.agency_id or new_identifier("agency"),
                name=name,
                owner=actor,
                members=[actor],
                created_at=now_utc_iso(),
            ),
        )
        await record_event(
            request,
            "AGENCY_CREATED",
            actor,
            {"name": agency.name},
            target_id=agency.agency_id,
            target_model="Agency",
        )
        broadcast_content(request, EVENT_CONTENT_CREATED, CONTENT_AGENCIES, agency.model_dump(mode="json"))
        return agency

    @app.get("/agencies/{agency_id}", response_model=Agency)
    async def get_agency(agency_id: str, request: Request) -> Agency:
        agency = await run_in_threadpool(request.app.state.repository.get_agency, agency_id)
        if agency is None:
            raise HTTPException(status_code=404, detail="Agency not found")
        return agency

    @app.post("/agencies/{agency_id}/requests", response_model=AgencyRequest, status_code=201)
    async def request_agency_membership(agency_id: str, request: Request) -> AgencyRequest:
        actor = require_actor(request)
        agency = await get_agency(agency_id, request)
        if actor in agency.members:
            raise HTTPException(status_code=400, detail="You are already a member of this agency.")
        try:
            join_request = await run_in_threadpool(
                request.app.state.repository.create_agency_request,
                AgencyRequest(
                    request_id=new_identifier("agreq"),
                    agency_id=agency_id,
                    username=actor,
                    requested_at=now_utc_iso(),
                ),
            )
        except DuplicateError as exc:
            raise HTTPException(status_code=409, detail="You have already sent a request to this agency.") from exc

        await record_event(
            request,
            "AGENCY_JOIN_REQUEST_SENT",
            actor,
            {"agency": agency.name},
            target_id=agency_id,
            target_model="Agency",
        )
        payload = join_request.model_dump(mode="json")
        request.app.state.hub.send(agency.owner, EVENT_AGENCY_JOIN_REQUEST_RECEIVED, payload)
        await request.app.state.notifications.notify(
            agency.owner,
            f"{actor} has requested to join your agency {agency.name}.",
            f"#agency/{agency_id}",
        )
        broadcast_content(request, EVENT_CONTENT_CREATED, CONTENT_AGENCY_REQUESTS, payload)
        return join_request

    @app.post("/agencies/{agency_id}/requests/{username}/handle", response_model=AgencyRequest)
    async def handle_agency_request(
        agency_id: str,
        username: str,
        payload: AgencyRequestDecision,
        request: Request,
    ) -> AgencyRequest:
        actor = require_actor(request)
        agency = await get_agency(agency_id, request)
        if agency.owner != actor:
            raise HTTPException(status_code=403, detail="Only the agency owner can handle join requests.")
        repository: MarketplaceRepository = request.app.state.repository
        join_request = await run_in_threadpool(repository.get_agency_request, agency_id, username)
        if join_request is None:
            raise HTTPException(status_code=404, detail="Join request not found")
        if join_request.status != "pending":
            raise HTTPException(status_code=409, detail="This request has already been handled.")

        accepted = payload.action == "accept"
        if accepted:
            agency = await run_in_threadpool(repository.add_agency_member, agency_id, username)
        handled = await run_in_threadpool(
            repository.set_agency_request_status,
            join_request.request_id,
            "accepted" if accepted else "rejected",
        )
        if handled is None:
            raise HTTPException(status_code=404, detail="Join request not found")

        await record_event(
            request,
            "AGENCY_JOIN_REQUEST_ACCEPTED" if accepted else "AGENCY_JOIN_REQUEST_REJECTED",
            actor,
            {"agency": agency.name, "username": username},
            target_id=agency_id,
            target_model="Agency",
        )
        verdict = "accepted" if accepted else "rejected"
        await request.app.state.notifications.notify(
            username,
            f"Your request to join {agency.name} has been {verdict}.",
            f"#agency/{agency_id}",
        )
        broadcast_content(request, EVENT_CONTENT_UPDATED, CONTENT_AGENCY_REQUESTS, handled.model_dump(mode="json"))
        if accepted:
            broadcast_content(request, EVENT_CONTENT_UPDATED, CONTENT_AGENCIES, agency.model_dump(mode="json"))
        return handled

    @app.delete("/agencies/{agency_id}/members/{username}", response_model=Agency)
    async def remove_agency_member(agency_id: str, username: str, request: Request) -> Agency:
        actor = require_actor(request)
        agency = await get_agency(agency_id, request)
        if agency.owner != actor:
            raise HTTPException(status_code=403, detail="You are not authorized to manage this agency.")
        if agency.owner == username:
            raise HTTPException(status_code=400, detail="Agency owner cannot be removed.")
        result = await run_in_threadpool(request.app.state.repository.remove_agency_member, agency_id, username)
        if result is None:
            raise HTTPException(status_code=404, detail="Agency not found")
        agency, removed = result
        if not removed:
            raise HTTPException(status_code=404, detail=f"User '{username}' is not a member of this agency.")

        await record_event(
            request,
            "AGENCY_MEMBER_REMOVED",
            actor,
            {"agency": agency.name, "username": username},
            target_id=agency_id,
            target_model="Agency",
        )
        await request.app.state.notifications.notify(
            username,
            f'You have been removed from the agency: "{agency.name}".',
            f"#agency/{agency_id}",
        )
        broadcast_content(request, EVENT_CONTENT_UPDATED, CONTENT_AGENCIES, agency.model_dump(mode="json"))
        return agency

    # Chat

    @app.get("/chat/history/{username}", response_model=list[ChatMessage])
    async def chat_history(
        username: str,
        request: Request,
        limit: int = Query(default=500, ge=1, le=2000),
    ) -> list[ChatMessage]:
        actor = require_actor(request)
        return await run_in_threadpool(
            request.app.state.repository.list_conversation,
            actor,
            username,
            limit=limit,
        )

    @app.websocket("/ws")
    async def realtime_socket(websocket: WebSocket) -> None:
        await websocket.accept()
        hub: BroadcastHub = websocket.app.state.hub
        channel = WebSocketChannel(websocket)
        pump = asyncio.create_task(channel.pump())
        try:
            while True:
                raw = await websocket.receive_text()
                try:
                    message = json.loads(raw)
                except ValueError:
                    channel.deliver(EVENT_ERROR, {"detail": "Messages must be JSON objects."})
                    continue
                if not isinstance(message, dict):
                    channel.deliver(EVENT_ERROR, {"detail": "Messages must be JSON objects."})
                    continue

                event = message.get("event")
                data = message.get("data")
                if event == "init":
                    username = str(data or "").strip()
                    if not username:
                        channel.deliver(EVENT_ERROR, {"detail": "init requires a username."})
                        continue
                    hub.announce(username, channel)
                elif event == "chat":
                    await relay_chat(websocket, channel, data)
                else:
                    channel.deliver(EVENT_ERROR, {"detail": f"Unknown event: {event!r}"})
        except WebSocketDisconnect:
            LOGGER.debug("channel %s disconnected", channel.channel_id)
        finally:
            hub.withdraw(channel)
            pump.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await pump

    async def relay_chat(websocket: WebSocket, channel: WebSocketChannel, data: Any) -> None:
        hub: BroadcastHub = websocket.app.state.hub
        sender = hub.username_for(channel)
        if sender is None:
            channel.deliver(EVENT_ERROR, {"detail": "Send init before chatting."})
            return
        try:
            incoming = ChatMessageIn.model_validate(data)
        except ValidationError:
            channel.deliver(EVENT_ERROR, {"detail": "chat requires a recipient and content."})
            return
        message = await run_in_threadpool(
            websocket.app.state.repository.create_message,
            sender,
            incoming.recipient,
            incoming.content,
        )
        payload = message.model_dump(mode="json")
        if incoming.recipient != sender:
            hub.send(incoming.recipient, EVENT_CHAT_MESSAGE, payload)
        channel.deliver(EVENT_CHAT_MESSAGE, payload)

    return app


app = create_app()
