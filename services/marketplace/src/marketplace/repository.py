from __future__ import annotations

import json
import sqlite3
import threading
from pathlib import Path
from typing import Any

from common.utils import names_match, now_utc_iso

from marketplace.models import (
    DEFAULT_CATEGORY_TYPES,
    Agency,
    AgencyRequest,
    ChatMessage,
    EventLog,
    EventLogCreate,
    Follow,
    Job,
    JobCategory,
    JobType,
    Notification,
    Rating,
    RatingSummary,
)

UNIQUE_VIOLATIONS = {"SQLITE_CONSTRAINT_UNIQUE", "SQLITE_CONSTRAINT_PRIMARYKEY"}


def is_unique_violation(exc: sqlite3.IntegrityError) -> bool:
    if getattr(exc, "sqlite_errorname", "") in UNIQUE_VIOLATIONS:
        return True
    return "UNIQUE constraint failed" in str(exc)


class DuplicateError(Exception):
    """A write collided with a uniqueness constraint."""

    def __init__(self, entity: str, key: str) -> None:
        self.entity = entity
        self.key = key
        super().__init__(f"{entity} already exists: {key}")


class MarketplaceRepository:
    def __init__(self, database_path: str) -> None:
        self.database_path = Path(database_path)
        self._connection: sqlite3.Connection | None = None
        self._lock = threading.RLock()

    @property
    def connection(self) -> sqlite3.Connection:
        if self._connection is None:
            raise RuntimeError("Database connection is not initialized")
        return self._connection

    def connect(self) -> None:
        with self._lock:
            self.database_path.parent.mkdir(parents=True, exist_ok=True)
            self._connection = sqlite3.connect(self.database_path, check_same_thread=False)
            self._connection.row_factory = sqlite3.Row
            self._connection.executescript(
                """
                CREATE TABLE IF NOT EXISTS jobs (
                    job_id TEXT PRIMARY KEY,
                    title TEXT NOT NULL,
                    description TEXT NOT NULL DEFAULT '',
                    category TEXT NOT NULL,
                    status TEXT NOT NULL,
                    posted_by TEXT NOT NULL,
                    assigned_to TEXT,
                    applicants_json TEXT NOT NULL DEFAULT '[]',
                    location TEXT,
                    price REAL,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS job_categories (
                    name TEXT PRIMARY KEY,
                    types_json TEXT NOT NULL DEFAULT '[]',
                    jobs_json TEXT NOT NULL DEFAULT '[]',
                    image_path TEXT NOT NULL DEFAULT '',
                    use_category_default_image INTEGER NOT NULL DEFAULT 1,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS notifications (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    recipient_username TEXT NOT NULL,
                    message TEXT NOT NULL,
                    link TEXT NOT NULL DEFAULT '#',
                    is_read INTEGER NOT NULL DEFAULT 0,
                    created_at TEXT NOT NULL
                );
                CREATE INDEX IF NOT EXISTS idx_notifications_recipient
                    ON notifications (recipient_username);

                CREATE TABLE IF NOT EXISTS event_logs (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    event_type TEXT NOT NULL,
                    actor_username TEXT NOT NULL,
                    details_json TEXT NOT NULL,
                    target_json TEXT,
                    context_json TEXT,
                    created_at TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS messages (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    sender TEXT NOT NULL,
                    recipient TEXT NOT NULL,
                    content TEXT NOT NULL,
                    timestamp TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS ratings (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    job_id TEXT NOT NULL,
                    rated_username TEXT NOT NULL,
                    rater_username TEXT NOT NULL,
                    rating INTEGER NOT NULL,
                    comment TEXT,
                    created_at TEXT NOT NULL,
                    UNIQUE (job_id, rater_username)
                );

                CREATE TABLE IF NOT EXISTS followers (
                    user TEXT NOT NULL,
                    follower TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    UNIQUE (user, follower)
                );

                CREATE TABLE IF NOT EXISTS agencies (
                    agency_id TEXT PRIMARY KEY,
                    name TEXT NOT NULL,
                    owner TEXT NOT NULL,
                    members_json TEXT NOT NULL DEFAULT '[]',
                    created_at TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS agency_requests (
                    request_id TEXT PRIMARY KEY,
                    agency_id TEXT NOT NULL,
                    username TEXT NOT NULL,
                    status TEXT NOT NULL DEFAULT 'pending',
                    requested_at TEXT NOT NULL,
                    UNIQUE (agency_id, username)
                );
                """
            )
            self._connection.commit()

    def close(self) -> None:
        with self._lock:
            if self._connection is None:
                return
            self._connection.close()
            self._connection = None

    def _insert(self, entity: str, key: str, sql: str, params: tuple[Any, ...]) -> sqlite3.Cursor:
        try:
            cursor = self.connection.execute(sql, params)
        except sqlite3.IntegrityError as exc:
            if is_unique_violation(exc):
                raise DuplicateError(entity, key) from exc
            raise
        self.connection.commit()
        return cursor

    # Jobs

    def create_job(self, job: Job) -> Job:
        with self._lock:
            self._insert(
                "job",
                job.job_id,
                """
                INSERT INTO jobs (
                    job_id,
                    title,
                    description,
                    category,
                    status,
                    posted_by,
                    assigned_to,
                    applicants_json,
                    location,
                    price,
                    created_at,
                    updated_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    job.job_id,
                    job.title,
                    job.description,
                    job.category,
                    job.status,
                    job.posted_by,
                    job.assigned_to,
                    json.dumps(job.applicants),
                    job.location,
                    job.price,
                    job.created_at,
                    job.updated_at,
                ),
            )
            return job

    def get_job(self, job_id: str) -> Job | None:
        with self._lock:
            row = self.connection.execute(
                "SELECT * FROM jobs WHERE job_id = ?",
                (job_id,),
            ).fetchone()
            return self._to_job(row) if row else None

    def list_jobs(
        self,
        *,
        limit: int,
        status: str | None = None,
        category: str | None = None,
    ) -> list[Job]:
        with self._lock:
            query = "SELECT * FROM jobs"
            params: list[Any] = []
            filters: list[str] = []
            if status:
                filters.append("status = ?")
                params.append(status)
            if category:
                filters.append("category = ?")
                params.append(category)
            if filters:
                query += " WHERE " + " AND ".join(filters)
            query += " ORDER BY created_at DESC LIMIT ?"
            params.append(limit)
            cursor = self.connection.execute(query, tuple(params))
            return [self._to_job(row) for row in cursor.fetchall()]

    def save_job(self, job: Job) -> Job | None:
        with self._lock:
            cursor = self.connection.execute(
                """
                UPDATE jobs SET
                    title = ?,
                    description = ?,
                    status = ?,
                    assigned_to = ?,
                    applicants_json = ?,
                    location = ?,
                    price = ?,
                    updated_at = ?
                WHERE job_id = ?
                """,
                (
                    job.title,
                    job.description,
                    job.status,
                    job.assigned_to,
                    json.dumps(job.applicants),
                    job.location,
                    job.price,
                    job.updated_at,
                    job.job_id,
                ),
            )
            self.connection.commit()
            if cursor.rowcount == 0:
                return None
            return self.get_job(job.job_id)

    def add_applicant(self, job_id: str, username: str) -> Job | None:
        with self._lock:
            job = self.get_job(job_id)
            if job is None or job.status != "open":
                return None
            if username not in job.applicants:
                self.connection.execute(
                    "UPDATE jobs SET applicants_json = ?, updated_at = ? WHERE job_id = ?",
                    (json.dumps([*job.applicants, username]), now_utc_iso(), job_id),
                )
                self.connection.commit()
            return self.get_job(job_id)

    def set_job_category(self, job_id: str, category: str) -> Job | None:
        with self._lock:
            cursor = self.connection.execute(
                "UPDATE jobs SET category = ?, updated_at = ? WHERE job_id = ?",
                (category, now_utc_iso(), job_id),
            )
            self.connection.commit()
            if cursor.rowcount == 0:
                return None
            return self.get_job(job_id)

    def delete_job(self, job_id: str) -> Job | None:
        with self._lock:
            job = self.get_job(job_id)
            if job is None:
                return None
            self.connection.execute("DELETE FROM jobs WHERE job_id = ?", (job_id,))
            self.connection.commit()
            return job

    def delete_duplicate_jobs(self) -> list[str]:
        """Remove older copies of jobs sharing poster, title (any case) and location."""
        with self._lock:
            rows = self.connection.execute(
                """
                SELECT job_id, posted_by, lower(title) AS title_key, COALESCE(location, '') AS location_key
                FROM jobs
                ORDER BY created_at DESC, rowid DESC
                """
            ).fetchall()
            seen: set[tuple[str, str, str]] = set()
            duplicate_ids: list[str] = []
            for row in rows:
                group = (row["posted_by"], row["title_key"], row["location_key"])
                if group in seen:
                    duplicate_ids.append(row["job_id"])
                else:
                    seen.add(group)
            if duplicate_ids:
                self.connection.executemany(
                    "DELETE FROM jobs WHERE job_id = ?",
                    [(job_id,) for job_id in duplicate_ids],
                )
                self.connection.commit()
            return duplicate_ids

    def _to_job(self, row: sqlite3.Row) -> Job:
        payload = dict(row)
        payload["applicants"] = json.loads(payload.pop("applicants_json") or "[]")
        return Job(**payload)

    # Job categories

    def list_categories(self) -> list[JobCategory]:
        with self._lock:
            cursor = self.connection.execute("SELECT * FROM job_categories ORDER BY name")
            return [self._to_category(row) for row in cursor.fetchall()]

    def list_category_names(self) -> list[str]:
        with self._lock:
            cursor = self.connection.execute("SELECT name FROM job_categories ORDER BY name")
            return [row["name"] for row in cursor.fetchall()]

    def get_category(self, name: str) -> JobCategory | None:
        with self._lock:
            row = self.connection.execute(
                "SELECT * FROM job_categories WHERE name = ?",
                (name,),
            ).fetchone()
            return self._to_category(row) if row else None

    def find_category(self, name: str) -> JobCategory | None:
        """Case-insensitive lookup, preferring an exact match."""
        with self._lock:
            row = self.connection.execute(
                """
                SELECT * FROM job_categories
                WHERE name = ? COLLATE NOCASE
                ORDER BY name = ? DESC
                LIMIT 1
                """,
                (name, name),
            ).fetchone()
            return self._to_category(row) if row else None

    def create_category(
        self,
        name: str,
        *,
        types: list[str] | None = None,
        jobs: list[JobType] | None = None,
    ) -> JobCategory:
        with self._lock:
            if self.find_category(name) is not None:
                raise DuplicateError("job category", name)
            now = now_utc_iso()
            self._insert(
                "job category",
                name,
                """
                INSERT INTO job_categories (name, types_json, jobs_json, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?)
                """,
                (
                    name,
                    json.dumps(types if types is not None else DEFAULT_CATEGORY_TYPES),
                    json.dumps([job.model_dump() for job in jobs or []]),
                    now,
                    now,
                ),
            )
            return self.get_category(name)

    def get_or_create_category(self, name: str, *, seed_job_title: str) -> tuple[JobCategory, bool]:
        """Return the category called ``name``, creating it seeded with one job type if absent.

        The boolean is True only for the call that inserted the row, so
        concurrent callers settling on the same new name all converge on a
        single category.
        """
        with self._lock:
            existing = self.find_category(name)
            if existing is not None:
                return existing, False
            now = now_utc_iso()
            cursor = self.connection.execute(
                """
                INSERT INTO job_categories (name, types_json, jobs_json, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT(name) DO NOTHING
                """,
                (
                    name,
                    json.dumps(DEFAULT_CATEGORY_TYPES),
                    json.dumps([JobType(name=seed_job_title).model_dump()]),
                    now,
                    now,
                ),
            )
            self.connection.commit()
            return self.get_category(name), cursor.rowcount == 1

    def add_job_type(
        self,
        category_name: str,
        job_name: str,
        *,
        image_path: str = "",
    ) -> tuple[JobCategory, bool] | None:
        with self._lock:
            category = self.get_category(category_name)
            if category is None:
                return None
            if any(names_match(entry.name, job_name) for entry in category.jobs):
                return category, False
            jobs = [*category.jobs, JobType(name=job_name, image_path=image_path)]
            self._write_category_jobs(category_name, jobs)
            return self.get_category(category_name), True

    def remove_job_type(self, category_name: str, job_name: str) -> tuple[JobCategory, bool] | None:
        with self._lock:
            category = self.get_category(category_name)
            if category is None:
                return None
            jobs = [entry for entry in category.jobs if not names_match(entry.name, job_name)]
            if len(jobs) == len(category.jobs):
                return category, False
            self._write_category_jobs(category_name, jobs)
            return self.get_category(category_name), True

    def rename_job_type(
        self,
        category_name: str,
        job_name: str,
        new_name: str,
    ) -> tuple[JobCategory, bool] | None:
        with self._lock:
            category = self.get_category(category_name)
            if category is None:
                return None
            if not any(names_match(entry.name, job_name) for entry in category.jobs):
                return category, False
            if any(
                names_match(entry.name, new_name) and not names_match(entry.name, job_name)
                for entry in category.jobs
            ):
                raise DuplicateError("job type", new_name)
            jobs = [
                entry.model_copy(update={"name": new_name}) if names_match(entry.name, job_name) else entry
                for entry in category.jobs
            ]
            self._write_category_jobs(category_name, jobs)
            return self.get_category(category_name), True

    def configure_category(
        self,
        name: str,
        *,
        image_path: str | None = None,
        use_category_default_image: bool | None = None,
        job_images: dict[str, str] | None = None,
    ) -> JobCategory | None:
        """Update the display settings of a category.

        Only the given fields change. ``job_images`` maps job-type names to
        image paths; names that are not job types of the category are ignored.
        """
        with self._lock:
            category = self.get_category(name)
            if category is None:
                return None
            jobs = category.jobs
            if job_images:
                jobs = [
                    entry.model_copy(update={"image_path": job_images[entry.name]})
                    if entry.name in job_images
                    else entry
                    for entry in category.jobs
                ]
            self.connection.execute(
                """
                UPDATE job_categories
                SET image_path = ?, use_category_default_image = ?, jobs_json = ?, updated_at = ?
                WHERE name = ?
                """,
                (
                    category.image_path if image_path is None else image_path,
                    int(
                        category.use_category_default_image
                        if use_category_default_image is None
                        else use_category_default_image
                    ),
                    json.dumps([entry.model_dump() for entry in jobs]),
                    now_utc_iso(),
                    name,
                ),
            )
            self.connection.commit()
            return self.get_category(name)

    def _write_category_jobs(self, category_name: str, jobs: list[JobType]) -> None:
        self.connection.execute(
            "UPDATE job_categories SET jobs_json = ?, updated_at = ? WHERE name = ?",
            (json.dumps([entry.model_dump() for entry in jobs]), now_utc_iso(), category_name),
        )
        self.connection.commit()

    def rename_category(self, name: str, new_name: str) -> JobCategory | None:
        with self._lock:
            if self.get_category(name) is None:
                return None
            clash = self.find_category(new_name)
            if clash is not None and clash.name != name:
                raise DuplicateError("job category", new_name)
            try:
                self.connection.execute(
                    "UPDATE job_categories SET name = ?, updated_at = ? WHERE name = ?",
                    (new_name, now_utc_iso(), name),
                )
            except sqlite3.IntegrityError as exc:
                if is_unique_violation(exc):
                    raise DuplicateError("job category", new_name) from exc
                raise
            self.connection.execute(
                "UPDATE jobs SET category = ? WHERE category = ?",
                (new_name, name),
            )
            self.connection.commit()
            return self.get_category(new_name)

    def delete_category(self, name: str) -> bool:
        with self._lock:
            cursor = self.connection.execute("DELETE FROM job_categories WHERE name = ?", (name,))
            self.connection.commit()
            return cursor.rowcount > 0

    def _to_category(self, row: sqlite3.Row) -> JobCategory:
        return JobCategory(
            name=row["name"],
            types=json.loads(row["types_json"] or "[]"),
            jobs=[JobType(**entry) for entry in json.loads(row["jobs_json"] or "[]")],
            image_path=row["image_path"],
            use_category_default_image=bool(row["use_category_default_image"]),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    # Notifications

    def create_notification(self, recipient_username: str, message: str, link: str) -> Notification:
        with self._lock:
            created_at = now_utc_iso()
            cursor = self.connection.execute(
                """
                INSERT INTO notifications (recipient_username, message, link, created_at)
                VALUES (?, ?, ?, ?)
                """,
                (recipient_username, message, link, created_at),
            )
            self.connection.commit()
            return Notification(
                notification_id=int(cursor.lastrowid),
                recipient_username=recipient_username,
                message=message,
                link=link,
                created_at=created_at,
            )

    def list_notifications(
        self,
        recipient_username: str,
        *,
        unread_only: bool = False,
        limit: int = 100,
    ) -> list[Notification]:
        with self._lock:
            query = """
                SELECT
                    id AS notification_id,
                    recipient_username,
                    message,
                    link,
                    is_read,
                    created_at
                FROM notifications
                WHERE recipient_username = ?
            """
            if unread_only:
                query += " AND is_read = 0"
            query += " ORDER BY id DESC LIMIT ?"
            cursor = self.connection.execute(query, (recipient_username, limit))
            return [Notification(**dict(row)) for row in cursor.fetchall()]

    def mark_notifications_read(self, recipient_username: str, notification_ids: list[int]) -> int:
        with self._lock:
            placeholders = ", ".join("?" for _ in notification_ids)
            cursor = self.connection.execute(
                f"""
                UPDATE notifications SET is_read = 1
                WHERE recipient_username = ? AND id IN ({placeholders})
                """,
                (recipient_username, *notification_ids),
            )
            self.connection.commit()
            return cursor.rowcount

    # Event logs

    def append_event_log(self, entry: EventLogCreate) -> EventLog:
        with self._lock:
            created_at = now_utc_iso()
            cursor = self.connection.execute(
                """
                INSERT INTO event_logs (
                    event_type,
                    actor_username,
                    details_json,
                    target_json,
                    context_json,
                    created_at
                )
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (
                    entry.event_type,
                    entry.actor_username,
                    json.dumps(entry.details),
                    entry.target.model_dump_json() if entry.target else None,
                    entry.context.model_dump_json() if entry.context else None,
                    created_at,
                ),
            )
            self.connection.commit()
            return EventLog(
                event_id=int(cursor.lastrowid),
                created_at=created_at,
                **entry.model_dump(),
            )

    def list_event_logs(self, *, limit: int, event_type: str | None = None) -> list[EventLog]:
        with self._lock:
            query = "SELECT * FROM event_logs"
            params: list[Any] = []
            if event_type:
                query += " WHERE event_type = ?"
                params.append(event_type)
            query += " ORDER BY id DESC LIMIT ?"
            params.append(limit)
            cursor = self.connection.execute(query, tuple(params))
            return [
                EventLog(
                    event_id=row["id"],
                    event_type=row["event_type"],
                    actor_username=row["actor_username"],
                    details=json.loads(row["details_json"]),
                    target=json.loads(row["target_json"]) if row["target_json"] else None,
                    context=json.loads(row["context_json"]) if row["context_json"] else None,
                    created_at=row["created_at"],
                )
                for row in cursor.fetchall()
            ]

    def delete_event_logs(self) -> int:
        with self._lock:
            cursor = self.connection.execute("DELETE FROM event_logs")
            self.connection.commit()
            return cursor.rowcount

    # Chat

    def create_message(self, sender: str, recipient: str, content: str) -> ChatMessage:
        with self._lock:
            timestamp = now_utc_iso()
            cursor = self.connection.execute(
                "INSERT INTO messages (sender, recipient, content, timestamp) VALUES (?, ?, ?, ?)",
                (sender, recipient, content, timestamp),
            )
            self.connection.commit()
            return ChatMessage(
                message_id=int(cursor.lastrowid),
                sender=sender,
                recipient=recipient,
                content=content,
                timestamp=timestamp,
            )

    def list_conversation(self, first: str, second: str, *, limit: int = 500) -> list[ChatMessage]:
        with self._lock:
            cursor = self.connection.execute(
                """
                SELECT id AS message_id, sender, recipient, content, timestamp
                FROM messages
                WHERE (sender = ? AND recipient = ?) OR (sender = ? AND recipient = ?)
                ORDER BY id ASC
                LIMIT ?
                """,
                (first, second, second, first, limit),
            )
            return [ChatMessage(**dict(row)) for row in cursor.fetchall()]

    # Ratings

    def create_rating(
        self,
        *,
        job_id: str,
        rated_username: str,
        rater_username: str,
        rating: int,
        comment: str | None,
    ) -> Rating:
        with self._lock:
            created_at = now_utc_iso()
            cursor = self._insert(
                "rating",
                f"{job_id}:{rater_username}",
                """
                INSERT INTO ratings (job_id, rated_username, rater_username, rating, comment, created_at)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (job_id, rated_username, rater_username, rating, comment, created_at),
            )
            return Rating(
                rating_id=int(cursor.lastrowid),
                job_id=job_id,
                rated_username=rated_username,
                rater_username=rater_username,
                rating=rating,
                comment=comment,
                created_at=created_at,
            )

    def rating_summary(self, username: str) -> RatingSummary:
        with self._lock:
            row = self.connection.execute(
                """
                SELECT AVG(rating) AS average_rating, COUNT(1) AS rating_count
                FROM ratings
                WHERE rated_username = ?
                """,
                (username,),
            ).fetchone()
            average = row["average_rating"]
            return RatingSummary(
                username=username,
                average_rating=round(float(average), 1) if average is not None else None,
                rating_count=int(row["rating_count"]),
            )

    # Follow edges

    def create_follow(self, user: str, follower: str) -> Follow:
        with self._lock:
            created_at = now_utc_iso()
            self._insert(
                "follow",
                f"{follower}->{user}",
                "INSERT INTO followers (user, follower, created_at) VALUES (?, ?, ?)",
                (user, follower, created_at),
            )
            return Follow(user=user, follower=follower, created_at=created_at)

    def delete_follow(self, user: str, follower: str) -> bool:
        with self._lock:
            cursor = self.connection.execute(
                "DELETE FROM followers WHERE user = ? AND follower = ?",
                (user, follower),
            )
            self.connection.commit()
            return cursor.rowcount > 0

    def list_followers(self, user: str) -> list[Follow]:
        with self._lock:
            cursor = self.connection.execute(
                "SELECT user, follower, created_at FROM followers WHERE user = ? ORDER BY created_at",
                (user,),
            )
            return [Follow(**dict(row)) for row in cursor.fetchall()]

    # Agencies

    def create_agency(self, agency: Agency) -> Agency:
        with self._lock:
            self._insert(
                "agency",
                agency.agency_id,
                """
                INSERT INTO agencies (agency_id, name, owner, members_json, created_at)
                VALUES (?, ?, ?, ?, ?)
                """,
                (
                    agency.agency_id,
                    agency.name,
                    agency.owner,
                    json.dumps(agency.members),
                    agency.created_at,
                ),
            )
            return agency

    def get_agency(self, agency_id: str) -> Agency | None:
        with self._lock:
            row = self.connection.execute(
                "SELECT * FROM agencies WHERE agency_id = ?",
                (agency_id,),
            ).fetchone()
            if row is None:
                return None
            payload = dict(row)
            payload["members"] = json.loads(payload.pop("members_json") or "[]")
            return Agency(**payload)

    def add_agency_member(self, agency_id: str, username: str) -> Agency | None:
        with self._lock:
            agency = self.get_agency(agency_id)
            if agency is None:
                return None
            if username not in agency.members:
                self.connection.execute(
                    "UPDATE agencies SET members_json = ? WHERE agency_id = ?",
                    (json.dumps([*agency.members, username]), agency_id),
                )
                self.connection.commit()
            return self.get_agency(agency_id)

    def remove_agency_member(self, agency_id: str, username: str) -> tuple[Agency, bool] | None:
        with self._lock:
            agency = self.get_agency(agency_id)
            if agency is None:
                return None
            if username not in agency.members:
                return agency, False
            self.connection.execute(
                "UPDATE agencies SET members_json = ? WHERE agency_id = ?",
                (json.dumps([member for member in agency.members if member != username]), agency_id),
            )
            self.connection.commit()
            return self.get_agency(agency_id), True

    def create_agency_request(self, request: AgencyRequest) -> AgencyRequest:
        with self._lock:
            self._insert(
                "agency request",
                f"{request.agency_id}:{request.username}",
                """
                INSERT INTO agency_requests (request_id, agency_id, username, status, requested_at)
                VALUES (?, ?, ?, ?, ?)
                """,
                (
                    request.request_id,
                    request.agency_id,
                    request.username,
                    request.status,
                    request.requested_at,
                ),
            )
            return request

    def get_agency_request(self, agency_id: str, username: str) -> AgencyRequest | None:
        with self._lock:
            row = self.connection.execute(
                "SELECT * FROM agency_requests WHERE agency_id = ? AND username = ?",
                (agency_id, username),
            ).fetchone()
            return AgencyRequest(**dict(row)) if row else None

    def set_agency_request_status(self, request_id: str, status: str) -> AgencyRequest | None:
        with self._lock:
            self.connection.execute(
                "UPDATE agency_requests SET status = ? WHERE request_id = ?",
                (status, request_id),
            )
            self.connection.commit()
            row = self.connection.execute(
                "SELECT * FROM agency_requests WHERE request_id = ?",
                (request_id,),
            ).fetchone()
            return AgencyRequest(**dict(row)) if row else None
