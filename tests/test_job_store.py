"""Tests for the job store and stage transitions."""

from datetime import timedelta

import pytest
from sqlalchemy import event
from sqlalchemy.orm import sessionmaker

from conftest import NOW, make_issue, vector
from dupescan.models.duplicate import DuplicatePair
from dupescan.models.job import JobItem
from dupescan.services.job_state import (
    StageTransitionError,
    advance_stage,
    mark_cancelled,
    percent,
    to_snapshot,
)
from dupescan.services.job_store import JobStore


def test_create_job_enters_stage_one(test_db, repository):
    store = JobStore(test_db)

    job = store.create_job(repository.id, NOW)
    store.commit()

    assert job.status == "fetching"
    assert job.stage_number == 1
    assert job.processing_stage == "fetching"
    assert store.find_active_job(repository.id).id == job.id


def test_upsert_items_is_idempotent(test_db, make_job):
    job = make_job(stage_number=1, status="fetching")
    store = JobStore(test_db)

    assert store.upsert_items(job.id, [make_issue(1), make_issue(2)]) == 2
    item = store.items(job.id)[0]
    item.embedding_status = "completed"
    item.embedding = vector(1)
    store.commit()

    assert store.upsert_items(job.id, [make_issue(1), make_issue(2), make_issue(3)]) == 1
    store.commit()

    items = store.items(job.id)
    assert [i.issue_number for i in items] == [1, 2, 3]
    assert items[0].embedding_status == "completed"
    assert items[2].embedding_status == "pending"


def test_overlapping_upserts_keep_one_row_per_issue(test_db, make_job):
    job = make_job(stage_number=1, status="fetching")
    job_id = job.id
    other_db = sessionmaker(autocommit=False, autoflush=False, bind=test_db.get_bind())()

    def concurrent_writer(orm_execute_state):
        other = JobStore(other_db)
        assert other.upsert_items(job_id, [make_issue(2), make_issue(3)]) == 2
        other.commit()

    # The other writer lands its page while this upsert is underway
    event.listen(test_db, "do_orm_execute", concurrent_writer, once=True)
    try:
        store = JobStore(test_db)
        assert store.upsert_items(job_id, [make_issue(1), make_issue(2), make_issue(3), make_issue(4)]) == 2
        store.commit()
    finally:
        other_db.close()

    assert [item.issue_number for item in JobStore(test_db).items(job_id)] == [1, 2, 3, 4]


def test_item_filters(test_db, make_job):
    job = make_job(item_count=4)
    store = JobStore(test_db)
    items = store.items(job.id)
    items[0].embedding_status = "error"
    items[0].retry_count = 1
    items[1].embedding_status = "error"
    items[1].retry_count = 3
    items[2].embedding_status = "completed"
    store.commit()

    assert store.count_items(job.id) == 4
    assert store.count_items(job.id, status="pending") == 1
    assert store.count_items(job.id, status="error", retry_below=3) == 1
    assert store.count_items(job.id, status="error", retry_at_least=3) == 1
    assert [i.issue_number for i in store.items(job.id, limit=2)] == [1, 2]


def test_reset_stale_items(test_db, make_job):
    job = make_job(item_count=3)
    store = JobStore(test_db)
    stale, fresh, unstamped = store.items(job.id)
    for item in (stale, fresh, unstamped):
        item.embedding_status = "processing"
    stale.processed_at = NOW - timedelta(minutes=6)
    fresh.processed_at = NOW - timedelta(minutes=1)
    unstamped.processed_at = None
    store.commit()

    assert store.reset_stale_items(job.id, NOW - timedelta(minutes=5)) == 2
    store.commit()

    assert stale.embedding_status == "pending"
    assert unstamped.embedding_status == "pending"
    assert fresh.embedding_status == "processing"


def test_delete_items_removes_pairs(test_db, make_job):
    job = make_job(item_count=2)
    store = JobStore(test_db)
    first, second = store.items(job.id)
    test_db.add(DuplicatePair(job_id=job.id, source_item_id=first.id, duplicate_item_id=second.id, confidence_score=0.95))
    store.commit()

    assert store.delete_items(job.id) == 2
    store.commit()

    assert test_db.query(JobItem).count() == 0
    assert test_db.query(DuplicatePair).count() == 0


def test_stage_number_never_decreases(test_db, make_job):
    job = make_job(stage_number=2, item_count=0)

    assert advance_stage(job, 2, NOW) is False
    with pytest.raises(StageTransitionError):
        advance_stage(job, 1, NOW)

    job.stage_progress = 80.0
    assert advance_stage(job, 3, NOW) is True
    assert (job.stage_number, job.processing_stage, job.status) == (3, "analyzing", "analyzing")
    assert job.stage_progress == 0.0
    assert job.stage_started_at == NOW


def test_snapshot_stage_projection(test_db, make_job):
    job = make_job(stage_number=2, item_count=0)

    states = [stage.state for stage in to_snapshot(job).stages]
    assert states == ["completed", "active", "pending", "pending"]

    mark_cancelled(job, "Analysis cancelled by user", NOW)
    snapshot = to_snapshot(job)
    assert snapshot.phase == "cancelled"
    assert [stage.state for stage in snapshot.stages] == ["completed", "error", "pending", "pending"]


def test_percent_bounds():
    assert percent(0, 0) == 100.0
    assert percent(50, 120) == pytest.approx(41.6667, rel=1e-3)
    assert percent(130, 120) == 100.0
