from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, model_validator

UNCATEGORIZED = "Uncategorized"
DEFAULT_CATEGORY_TYPES = ["Informal", "Formal", "Temporary"]
ADMIN_CATEGORY_TYPES = ["Formal", "Informal"]

JobStatus = Literal["open", "assigned", "in-progress", "closed"]
JOB_STATUSES: tuple[JobStatus, ...] = ("open", "assigned", "in-progress", "closed")

EventType = Literal[
    "USER_SIGNUP",
    "USER_LOGIN",
    "USER_LOGOUT",
    "USER_RATED",
    "USER_FOLLOWED",
    "JOB_CREATED",
    "JOB_STATUS_UPDATED",
    "JOB_RECATEGORIZED",
    "JOB_DELETED",
    "JOB_APPLICATION_RECEIVED",
    "ADMIN_JOB_CLEANUP",
    "CATEGORY_CREATED",
    "CATEGORY_UPDATED",
    "CATEGORY_DELETED",
    "PROFILE_UPDATED",
    "AGENCY_CREATED",
    "AGENCY_UPDATED",
    "AGENCY_JOIN_REQUEST_SENT",
    "AGENCY_JOIN_REQUEST_ACCEPTED",
    "AGENCY_JOIN_REQUEST_REJECTED",
    "AGENCY_MEMBER_REMOVED",
    "SETTINGS_UPDATED",
]

# Entity kinds carried in content_created / content_updated / content_deleted.
CONTENT_JOBS = "jobs"
CONTENT_CATEGORIES = "jobCategories"
CONTENT_AGENCIES = "agencies"
CONTENT_AGENCY_REQUESTS = "agencyRequests"
CONTENT_RATINGS = "ratings"


class Job(BaseModel):
    job_id: str
    title: str
    description: str = ""
    category: str = UNCATEGORIZED
    status: JobStatus = "open"
    posted_by: str
    assigned_to: str | None = None
    applicants: list[str] = Field(default_factory=list)
    location: str | None = None
    price: float | None = None
    created_at: str
    updated_at: str

    @model_validator(mode="after")
    def validate_assignment(self) -> Job:
        if self.status in ("assigned", "in-progress") and not self.assigned_to:
            raise ValueError(f"A job in status '{self.status}' must have an assignee.")
        if self.status == "open" and self.assigned_to is not None:
            raise ValueError("An open job cannot have an assignee.")
        return self


class JobCreateRequest(BaseModel):
    job_id: str | None = Field(default=None, min_length=3, max_length=64, pattern=r"^[a-zA-Z0-9_-]+$")
    title: str = Field(..., min_length=1, max_length=200)
    description: str = Field(default="", max_length=5000)
    location: str | None = None
    price: float | None = Field(default=None, ge=0)
    assigned_to: str | None = Field(
        default=None,
        description="Direct hire: assign a worker at creation and skip the applicant flow.",
    )


class JobStatusUpdateRequest(BaseModel):
    status: JobStatus
    assigned_to: str | None = None


class ApplicantDecisionRequest(BaseModel):
    action: Literal["accept", "reject"]


class JobType(BaseModel):
    name: str
    image_path: str = ""


class JobCategory(BaseModel):
    name: str
    types: list[str] = Field(default_factory=list)
    jobs: list[JobType] = Field(default_factory=list)
    image_path: str = ""
    use_category_default_image: bool = True
    created_at: str
    updated_at: str


class CategoryCreateRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=120)


class CategoryRenameRequest(BaseModel):
    new_name: str = Field(..., min_length=1, max_length=120)


class JobTypeRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=200)
    image_path: str = ""


class JobTypeRenameRequest(BaseModel):
    new_name: str = Field(..., min_length=1, max_length=200)


class CategoryConfigRequest(BaseModel):
    image_path: str | None = None
    use_category_default_image: bool | None = None
    jobs: list[JobType] | None = None


class CategorySuggestion(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    name: str = Field(..., min_length=1)
    is_new: bool = Field(..., alias="isNew")


class Notification(BaseModel):
    notification_id: int
    recipient_username: str
    message: str
    link: str = "#"
    is_read: bool = False
    created_at: str


class MarkReadRequest(BaseModel):
    notification_ids: list[int] = Field(..., min_length=1)


class EventTarget(BaseModel):
    id: str | None = None
    model: str | None = None


class EventContext(BaseModel):
    ip_address: str | None = None
    user_agent: str | None = None


class EventLogCreate(BaseModel):
    event_type: EventType
    actor_username: str = Field(..., min_length=1)
    details: dict[str, Any] = Field(default_factory=dict)
    target: EventTarget | None = None
    context: EventContext | None = None


class EventLog(EventLogCreate):
    event_id: int
    created_at: str


class ChatMessageIn(BaseModel):
    recipient: str = Field(..., min_length=1)
    content: str = Field(..., min_length=1, max_length=4000)


class ChatMessage(BaseModel):
    message_id: int
    sender: str
    recipient: str
    content: str
    timestamp: str


class RatingCreateRequest(BaseModel):
    job_id: str
    rated_username: str
    rating: int = Field(..., ge=1, le=5)
    comment: str | None = Field(default=None, max_length=500)


class Rating(BaseModel):
    rating_id: int
    job_id: str
    rated_username: str
    rater_username: str
    rating: int
    comment: str | None = None
    created_at: str


class RatingSummary(BaseModel):
    username: str
    average_rating: float | None = None
    rating_count: int = 0


class Follow(BaseModel):
    user: str
    follower: str
    created_at: str


class AgencyCreateRequest(BaseModel):
    agency_id: str | None = Field(default=None, min_length=3, max_length=64, pattern=r"^[a-zA-Z0-9_-]+$")
    name: str = Field(..., min_length=1, max_length=120)


class Agency(BaseModel):
    agency_id: str
    name: str
    owner: str
    members: list[str] = Field(default_factory=list)
    created_at: str


class AgencyRequest(BaseModel):
    request_id: str
    agency_id: str
    username: str
    status: Literal["pending", "accepted", "rejected"] = "pending"
    requested_at: str


class AgencyRequestDecision(BaseModel):
    action: Literal["accept", "reject"]


class CategorizationOutcome(BaseModel):
    job: Job
    category: JobCategory
    category_created: bool
    category_updated: bool


class MessageResponse(BaseModel):
    message: str


class CleanupResponse(BaseModel):
    deleted: int
    job_ids: list[str] = Field(default_factory=list)
