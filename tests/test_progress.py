"""Tests for job change notifications and the progress feed."""

import uuid

import pytest

from dupescan.schemas.analysis import JobSnapshot
from dupescan.services.progress import JobEventBus, ProgressFeed

JOB_ID = uuid.uuid4()


def snapshot(phase="processing", embedded=0):
    return JobSnapshot(
        job_id=JOB_ID,
        phase=phase,
        stage_number=2,
        processing_stage="embedding",
        stage_progress=embedded * 10.0,
        processed_issues_count=10,
        total_issues_count=10,
        embedded_issues_count=embedded,
    )


@pytest.fixture
def bus():
    bus = JobEventBus()
    bus.install()
    yield bus
    bus.uninstall()


def test_feed_polls_without_bus_and_drops_repeats():
    reads = [snapshot(), snapshot(), snapshot(embedded=5), snapshot(phase="completed", embedded=10)]
    sleeps = []
    feed = ProgressFeed(lambda repository_id: reads.pop(0), poll_interval=2.0, sleep=sleeps.append)

    seen = list(feed.watch(1))

    assert [(s.phase, s.embedded_issues_count) for s in seen] == [
        ("processing", 0),
        ("processing", 5),
        ("completed", 10),
    ]
    assert sleeps == [2.0, 2.0, 2.0]


def test_feed_ends_when_job_disappears():
    feed = ProgressFeed(lambda repository_id: None, sleep=lambda s: None)

    assert list(feed.watch(1)) == []


def test_committed_job_changes_are_published(test_db, make_job, bus):
    job = make_job(item_count=0)
    subscription = bus.subscribe(job.repository_id)

    job.embedded_issues_count = 3
    test_db.commit()

    assert subscription.wait(0) is True
    subscription.close()


def test_rolled_back_changes_are_not_published(test_db, make_job, bus):
    job = make_job(item_count=0)
    subscription = bus.subscribe(job.repository_id)

    job.embedded_issues_count = 3
    test_db.flush()
    test_db.rollback()
    test_db.commit()

    assert subscription.wait(0) is False
    subscription.close()


def test_watch_with_bus_wakes_on_publish(bus):
    reads = [snapshot(), snapshot(phase="completed", embedded=10)]
    feed = ProgressFeed(lambda repository_id: reads.pop(0), bus=bus, heartbeat=30.0)

    watch = feed.watch(7)
    assert next(watch).phase == "processing"

    bus.publish(7)
    assert next(watch).phase == "completed"
    with pytest.raises(StopIteration):
        next(watch)


def test_closing_watch_cancels_subscription(bus):
    feed = ProgressFeed(lambda repository_id: snapshot(), bus=bus, heartbeat=0.01)

    watch = feed.watch(3)
    next(watch)
    assert bus._subscribers[3]

    watch.close()
    assert 3 not in bus._subscribers
