"""Tests for the analysis driver."""

from datetime import timedelta

import httpx
import pytest

from conftest import NOW, github_handler, make_issue
from dupescan.models.job import AnalysisJob, JobItem
from dupescan.services.driver import (
    AnalysisDriver,
    RepositoryNotFoundError,
    cancel_analysis,
    enforce_deadlines,
    get_job_status,
)
from dupescan.services.github_client import GitHubAPIError, GitHubClient, GitHubSession
from dupescan.services.job_store import JobStore


def make_driver(db, handler, handoffs=None):
    client = GitHubClient(
        GitHubSession("ghp_test"),
        base_url="https://api.github.test",
        transport=httpx.MockTransport(handler),
        sleep=lambda seconds: None,
    )
    on_handoff = handoffs.append if handoffs is not None else None
    return AnalysisDriver(db, client, on_handoff=on_handoff, clock=lambda: NOW)


def test_fetch_stage_pages_through_issues_and_hands_off(test_db, repository):
    issues = [make_issue(n) for n in range(1, 121)]
    pages, handoffs = [], []
    driver = make_driver(test_db, github_handler(issues, pages), handoffs)

    snapshot = driver.start_or_resume(repository.id)

    assert pages == [1, 2, 3]
    assert snapshot.phase == "processing"
    assert snapshot.stage_number == 2
    assert snapshot.processing_stage == "embedding"
    assert snapshot.stage_progress == 0.0
    assert snapshot.processed_issues_count == 120
    assert snapshot.total_issues_count == 120
    assert test_db.query(JobItem).count() == 120
    assert handoffs == [snapshot.job_id]
    assert repository.last_analysis_timestamp == NOW


def test_pull_requests_are_not_items(test_db, repository):
    issues = [make_issue(1), make_issue(2, pull_request=True), make_issue(3)]
    driver = make_driver(test_db, github_handler(issues))

    snapshot = driver.start_or_resume(repository.id)

    numbers = sorted(n for (n,) in test_db.query(JobItem.issue_number))
    assert numbers == [1, 3]
    assert snapshot.processed_issues_count == 3
    assert snapshot.total_issues_count == 2


def test_second_start_returns_running_job(test_db, repository):
    issues = [make_issue(n) for n in range(1, 11)]
    pages = []
    driver = make_driver(test_db, github_handler(issues, pages))

    first = driver.start_or_resume(repository.id)
    second = driver.start_or_resume(repository.id)

    assert second.job_id == first.job_id
    assert second.stage_number == 2
    assert test_db.query(AnalysisJob).count() == 1
    assert pages == [1, 2]


def test_fetching_job_is_observed_not_refetched(test_db, repository, make_job):
    job = make_job(stage_number=1, status="fetching", processed_issues_count=100, total_issues_count=250)
    requests = []

    def handler(request):
        requests.append(request.url.path)
        return httpx.Response(200, json=[])

    snapshot = make_driver(test_db, handler).start_or_resume(repository.id)

    assert requests == []
    assert snapshot.job_id == job.id
    assert snapshot.phase == "fetching"
    assert snapshot.processed_issues_count == 100
    assert test_db.query(AnalysisJob).count() == 1


def test_fetch_stage_continues_from_next_page(test_db, repository, make_job):
    issues = [make_issue(n) for n in range(1, 121)]
    job = make_job(stage_number=1, status="fetching", processed_issues_count=100, total_issues_count=120)
    JobStore(test_db).upsert_items(job.id, issues[:100])
    test_db.commit()

    pages = []
    make_driver(test_db, github_handler(issues, pages)).run_fetch_stage(job, repository)

    assert pages == [2, 3]
    assert job.stage_number == 2
    assert job.total_issues_count == 120
    assert test_db.query(JobItem).count() == 120


def test_stale_job_is_replaced(test_db, repository, make_job):
    stale = make_job(item_count=5, last_processed_at=NOW - timedelta(minutes=6))
    stale_id = stale.id
    issues = [make_issue(n) for n in range(1, 4)]

    snapshot = make_driver(test_db, github_handler(issues)).start_or_resume(repository.id)

    old = test_db.get(AnalysisJob, stale_id)
    assert old.status == "failed"
    assert old.error == "Job timed out"
    assert test_db.query(JobItem).filter(JobItem.job_id == stale_id).count() == 0
    assert snapshot.job_id != stale_id
    assert snapshot.total_issues_count == 3


def test_cancelled_job_is_not_revived(test_db, repository, make_job):
    cancelled = make_job(status="cancelled", item_count=2)

    snapshot = make_driver(test_db, github_handler([make_issue(1)])).start_or_resume(repository.id)

    assert snapshot.job_id != cancelled.id
    assert test_db.query(AnalysisJob).count() == 2


def test_cancel_during_fetch_stops_paging(test_db, repository):
    issues = [make_issue(n) for n in range(1, 251)]
    pages, handoffs = [], []

    def cancel_on_second_page(page):
        if page == 2:
            test_db.query(AnalysisJob).update({AnalysisJob.status: "cancelled"}, synchronize_session=False)

    driver = make_driver(test_db, github_handler(issues, pages, on_page=cancel_on_second_page), handoffs)
    snapshot = driver.start_or_resume(repository.id)

    assert pages == [1, 2]
    assert snapshot.phase == "cancelled"
    assert snapshot.stage_number == 1
    assert handoffs == []


def test_github_failure_fails_job(test_db, repository):
    def handler(request):
        if request.url.path == "/repos/acme/widgets":
            return httpx.Response(200, json={"open_issues_count": 5})
        return httpx.Response(410, json={"message": "Issues are disabled"})

    with pytest.raises(GitHubAPIError):
        make_driver(test_db, handler).start_or_resume(repository.id)

    job = test_db.query(AnalysisJob).one()
    assert job.status == "failed"
    assert "410" in job.error


def test_unknown_repository(test_db):
    with pytest.raises(RepositoryNotFoundError):
        make_driver(test_db, github_handler([])).start_or_resume(999)


def test_job_past_time_limit_is_cancelled_on_read(test_db, repository, make_job):
    make_job(item_count=3, created_at=NOW - timedelta(minutes=16))

    snapshot = get_job_status(test_db, repository.id, clock=lambda: NOW)

    assert snapshot.phase == "cancelled"
    assert snapshot.error == "Analysis exceeded maximum time limit of 15 minutes"


def test_stage_two_watchdog(test_db, repository, make_job):
    job = make_job(item_count=3, stage_started_at=NOW - timedelta(seconds=31))
    store = JobStore(test_db)

    assert enforce_deadlines(store, job, NOW) is True
    assert job.status == "failed"
    assert "did not start within 30 seconds" in job.error


def test_stage_two_watchdog_ignores_started_work(test_db, repository, make_job):
    job = make_job(item_count=3, stage_started_at=NOW - timedelta(seconds=31))
    store = JobStore(test_db)
    store.items(job.id)[0].embedding_status = "processing"
    store.flush()

    assert enforce_deadlines(store, job, NOW) is False
    assert job.status == "processing"


def test_cancel_analysis(test_db, repository, make_job):
    make_job(item_count=2)

    snapshot = cancel_analysis(test_db, repository.id, clock=lambda: NOW)

    assert snapshot.phase == "cancelled"
    assert snapshot.error == "Analysis cancelled by user"
    assert cancel_analysis(test_db, repository.id, clock=lambda: NOW) is None
