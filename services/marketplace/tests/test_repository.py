from __future__ import annotations

import threading
from pathlib import Path

import pytest
from common.utils import now_utc_iso
from marketplace.models import DEFAULT_CATEGORY_TYPES, UNCATEGORIZED, Agency, EventLogCreate, Job
from marketplace.repository import DuplicateError, MarketplaceRepository

pytestmark = pytest.mark.unit


@pytest.fixture
def repository(tmp_path: Path):
    repo = MarketplaceRepository(str(tmp_path / "marketplace.sqlite3"))
    repo.connect()
    yield repo
    repo.close()


def make_job(job_id: str, title: str = "House Painting", **overrides) -> Job:
    now = now_utc_iso()
    fields = {
        "job_id": job_id,
        "title": title,
        "posted_by": "alice",
        "created_at": now,
        "updated_at": now,
    }
    fields.update(overrides)
    return Job(**fields)


def test_create_job_persists_placeholder_category(repository: MarketplaceRepository) -> None:
    repository.create_job(make_job("job-1"))

    stored = repository.get_job("job-1")
    assert stored is not None
    assert stored.category == UNCATEGORIZED
    assert stored.status == "open"
    assert stored.applicants == []


def test_create_job_rejects_duplicate_id(repository: MarketplaceRepository) -> None:
    repository.create_job(make_job("job-1"))

    with pytest.raises(DuplicateError):
        repository.create_job(make_job("job-1", title="Another"))


def test_data_survives_reconnect(tmp_path: Path) -> None:
    db_path = str(tmp_path / "marketplace.sqlite3")
    first = MarketplaceRepository(db_path)
    first.connect()
    first.create_job(make_job("job-1"))
    first.create_category("Skilled Trades")
    first.close()

    second = MarketplaceRepository(db_path)
    second.connect()
    try:
        assert second.get_job("job-1") is not None
        assert second.list_category_names() == ["Skilled Trades"]
    finally:
        second.close()


def test_add_applicant_only_for_open_jobs(repository: MarketplaceRepository) -> None:
    repository.create_job(make_job("job-1"))
    repository.create_job(make_job("job-2", status="assigned", assigned_to="bob"))

    updated = repository.add_applicant("job-1", "bob")
    again = repository.add_applicant("job-1", "bob")

    assert updated is not None and updated.applicants == ["bob"]
    assert again is not None and again.applicants == ["bob"]
    assert repository.add_applicant("job-2", "carol") is None
    assert repository.add_applicant("missing", "carol") is None


def test_get_or_create_category_creates_once(repository: MarketplaceRepository) -> None:
    created, was_created = repository.get_or_create_category("Pet Care", seed_job_title="Dog Walking")
    reused, reused_created = repository.get_or_create_category("pet care", seed_job_title="Pet Sitting")

    assert was_created is True
    assert created.types == DEFAULT_CATEGORY_TYPES
    assert [entry.name for entry in created.jobs] == ["Dog Walking"]
    assert reused_created is False
    assert reused.name == "Pet Care"
    assert repository.list_category_names() == ["Pet Care"]


def test_get_or_create_category_from_many_threads(repository: MarketplaceRepository) -> None:
    results: list[bool] = []
    barrier = threading.Barrier(8)

    def worker(index: int) -> None:
        barrier.wait()
        _, created = repository.get_or_create_category("Pet Care", seed_job_title=f"Job {index}")
        results.append(created)

    threads = [threading.Thread(target=worker, args=(index,)) for index in range(8)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert results.count(True) == 1
    assert repository.list_category_names() == ["Pet Care"]


def test_add_job_type_is_case_insensitive(repository: MarketplaceRepository) -> None:
    repository.get_or_create_category("Skilled Trades", seed_job_title="House Painting")

    category, appended = repository.add_job_type("Skilled Trades", "house  painting")
    assert appended is False
    assert [entry.name for entry in category.jobs] == ["House Painting"]

    category, appended = repository.add_job_type("Skilled Trades", "Plumbing")
    assert appended is True
    assert [entry.name for entry in category.jobs] == ["House Painting", "Plumbing"]

    assert repository.add_job_type("Missing", "Plumbing") is None


def test_remove_job_type(repository: MarketplaceRepository) -> None:
    repository.get_or_create_category("Skilled Trades", seed_job_title="House Painting")

    category, removed = repository.remove_job_type("Skilled Trades", "HOUSE PAINTING")
    assert removed is True
    assert category.jobs == []

    _, removed_again = repository.remove_job_type("Skilled Trades", "House Painting")
    assert removed_again is False


def test_create_category_rejects_case_insensitive_clash(repository: MarketplaceRepository) -> None:
    repository.create_category("Domestic Work")

    with pytest.raises(DuplicateError):
        repository.create_category("domestic work")


def test_rename_category_moves_jobs_and_detects_clash(repository: MarketplaceRepository) -> None:
    repository.create_category("Domestic Work")
    repository.create_category("Skilled Trades")
    repository.create_job(make_job("job-1"))
    repository.set_job_category("job-1", "Domestic Work")

    renamed = repository.rename_category("Domestic Work", "Home Services")

    assert renamed is not None and renamed.name == "Home Services"
    assert repository.get_job("job-1").category == "Home Services"
    assert repository.rename_category("Missing", "Anything") is None
    with pytest.raises(DuplicateError):
        repository.rename_category("Home Services", "skilled trades")


def test_delete_duplicate_jobs_keeps_newest(repository: MarketplaceRepository) -> None:
    repository.create_job(make_job("job-1", location="Riga", created_at="2026-01-01T00:00:00+00:00"))
    repository.create_job(
        make_job("job-2", title="house painting", location="Riga", created_at="2026-01-02T00:00:00+00:00")
    )
    repository.create_job(make_job("job-3", location="Tallinn"))

    deleted = repository.delete_duplicate_jobs()

    assert deleted == ["job-1"]
    assert repository.get_job("job-2") is not None
    assert repository.get_job("job-3") is not None


def test_notifications_are_per_recipient(repository: MarketplaceRepository) -> None:
    first = repository.create_notification("bob", "Hello", "#")
    repository.create_notification("bob", "Again", "#dashboard")
    repository.create_notification("carol", "Not yours", "#")

    assert repository.mark_notifications_read("carol", [first.notification_id]) == 0
    assert repository.mark_notifications_read("bob", [first.notification_id]) == 1

    unread = repository.list_notifications("bob", unread_only=True)
    assert [item.message for item in unread] == ["Again"]
    assert len(repository.list_notifications("bob")) == 2


def test_event_log_roundtrip_and_cleanup(repository: MarketplaceRepository) -> None:
    repository.append_event_log(
        EventLogCreate(event_type="JOB_CREATED", actor_username="alice", details={"title": "House Painting"})
    )
    repository.append_event_log(EventLogCreate(event_type="USER_FOLLOWED", actor_username="bob"))

    created = repository.list_event_logs(limit=10, event_type="JOB_CREATED")
    assert len(created) == 1
    assert created[0].details == {"title": "House Painting"}
    assert repository.delete_event_logs() == 2
    assert repository.list_event_logs(limit=10) == []


def test_rating_is_unique_per_job_and_rater(repository: MarketplaceRepository) -> None:
    repository.create_rating(job_id="job-1", rated_username="bob", rater_username="alice", rating=5, comment=None)
    repository.create_rating(job_id="job-2", rated_username="bob", rater_username="alice", rating=4, comment="ok")

    with pytest.raises(DuplicateError):
        repository.create_rating(
            job_id="job-1",
            rated_username="bob",
            rater_username="alice",
            rating=1,
            comment=None,
        )

    summary = repository.rating_summary("bob")
    assert summary.rating_count == 2
    assert summary.average_rating == 4.5


def test_follow_edge_is_unique(repository: MarketplaceRepository) -> None:
    repository.create_follow("bob", "alice")

    with pytest.raises(DuplicateError):
        repository.create_follow("bob", "alice")

    assert [edge.follower for edge in repository.list_followers("bob")] == ["alice"]
    assert repository.delete_follow("bob", "alice") is True
    assert repository.delete_follow("bob", "alice") is False


def test_conversation_includes_both_directions(repository: MarketplaceRepository) -> None:
    repository.create_message("alice", "bob", "Hi Bob")
    repository.create_message("bob", "alice", "Hi Alice")
    repository.create_message("carol", "bob", "Unrelated")

    conversation = repository.list_conversation("bob", "alice")

    assert [message.content for message in conversation] == ["Hi Bob", "Hi Alice"]


def test_rename_job_type(repository: MarketplaceRepository) -> None:
    repository.get_or_create_category("Skilled Trades", seed_job_title="House Painting")
    repository.add_job_type("Skilled Trades", "Plumbing", image_path="/img/pipe.png")

    category, renamed = repository.rename_job_type("Skilled Trades", "plumbing", "Pipe Fitting")
    assert renamed is True
    assert [(entry.name, entry.image_path) for entry in category.jobs] == [
        ("House Painting", ""),
        ("Pipe Fitting", "/img/pipe.png"),
    ]

    _, renamed = repository.rename_job_type("Skilled Trades", "Roofing", "Roof Repair")
    assert renamed is False
    assert repository.rename_job_type("Missing", "Plumbing", "Pipes") is None
    with pytest.raises(DuplicateError):
        repository.rename_job_type("Skilled Trades", "Pipe Fitting", "house painting")

    # Changing only the case of a job type is not a clash with itself.
    category, renamed = repository.rename_job_type("Skilled Trades", "Pipe Fitting", "pipe fitting")
    assert renamed is True
    assert category.jobs[1].name == "pipe fitting"


def test_configure_category_updates_only_given_fields(repository: MarketplaceRepository) -> None:
    repository.get_or_create_category("Skilled Trades", seed_job_title="House Painting")
    repository.add_job_type("Skilled Trades", "Plumbing")

    configured = repository.configure_category(
        "Skilled Trades",
        use_category_default_image=False,
        job_images={"Plumbing": "/img/pipe.png", "Roofing": "/img/roof.png"},
    )

    assert configured is not None
    assert configured.use_category_default_image is False
    assert configured.image_path == ""
    assert [(entry.name, entry.image_path) for entry in configured.jobs] == [
        ("House Painting", ""),
        ("Plumbing", "/img/pipe.png"),
    ]

    configured = repository.configure_category("Skilled Trades", image_path="/img/trades.png")
    assert configured.image_path == "/img/trades.png"
    assert configured.use_category_default_image is False
    assert configured.jobs[1].image_path == "/img/pipe.png"
    assert repository.configure_category("Missing", image_path="/img/x.png") is None


def test_remove_agency_member(repository: MarketplaceRepository) -> None:
    repository.create_agency(
        Agency(agency_id="acme", name="Acme Helpers", owner="alice", members=["alice", "bob"], created_at=now_utc_iso())
    )

    agency, removed = repository.remove_agency_member("acme", "bob")
    assert removed is True
    assert agency.members == ["alice"]

    _, removed_again = repository.remove_agency_member("acme", "bob")
    assert removed_again is False
    assert repository.remove_agency_member("missing", "bob") is None
