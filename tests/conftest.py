"""Pytest configuration and fixtures."""

import os

os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("OPENAI_API_KEY", "test-key")

from datetime import datetime, timedelta  # noqa: E402
from typing import Dict, List, Optional  # noqa: E402

import httpx  # noqa: E402
import pytest  # noqa: E402
from sqlalchemy import create_engine  # noqa: E402
from sqlalchemy.orm import sessionmaker  # noqa: E402
from sqlalchemy.pool import StaticPool  # noqa: E402

from dupescan import models  # noqa: E402,F401
from dupescan.config import settings  # noqa: E402
from dupescan.database import Base  # noqa: E402
from dupescan.models.job import AnalysisJob, JobItem  # noqa: E402
from dupescan.models.repository import Repository  # noqa: E402

NOW = datetime(2024, 6, 1, 12, 0, 0)


class FakeClock:
    """Manually advanced clock whose sleep moves time forward."""

    def __init__(self, start: float = 0.0):
        self.now = start
        self.sleeps: List[float] = []

    def __call__(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


class FakeEmbeddingClient:
    """Embedding client returning one-hot vectors keyed by issue title."""

    def __init__(self, vectors: Optional[Dict[str, List[float]]] = None, missing=(), error: Exception = None):
        self.vectors = vectors or {}
        self.missing = set(missing)
        self.error = error
        self.calls: List[List[str]] = []
        self.issued = 0

    def create_embedding_batch(self, texts):
        self.calls.append(list(texts))
        if self.error is not None:
            raise self.error

        result = []
        for text in texts:
            title = text.split("\n\n", 1)[0]
            if title in self.missing:
                result.append(None)
            else:
                self.issued += 1
                result.append(self.vectors.get(title) or vector(self.issued))
        return result


def vector(*hot: int, scale: float = 1.0) -> List[float]:
    """A vector of the configured dimension with ones at the given positions."""
    values = [0.0] * settings.EMBED_DIM
    for position in hot:
        values[position % settings.EMBED_DIM] = scale
    return values


def make_issue(number: int, title: Optional[str] = None, body: str = "", pull_request: bool = False) -> dict:
    issue = {"number": number, "title": title or f"Issue {number}", "body": body}
    if pull_request:
        issue["pull_request"] = {"url": f"https://api.github.com/repos/acme/widgets/pulls/{number}"}
    return issue


def github_handler(issues: List[dict], requested_pages: Optional[List[int]] = None, on_page=None):
    """MockTransport handler serving one repository and its paged issue listing."""

    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path == "/repos/acme/widgets":
            return httpx.Response(200, json={"full_name": "acme/widgets", "private": False, "open_issues_count": len(issues)})

        if request.url.path == "/repos/acme/widgets/issues":
            page = int(request.url.params.get("page", "1"))
            per_page = int(request.url.params.get("per_page", "100"))
            if requested_pages is not None:
                requested_pages.append(page)
            if on_page is not None:
                on_page(page)
            start = (page - 1) * per_page
            return httpx.Response(200, json=issues[start:start + per_page])

        return httpx.Response(404, json={"message": "Not Found"})

    return handler


@pytest.fixture(scope="function")
def test_db():
    """Create a test database for each test."""
    # Use in-memory SQLite for testing, shared across threads for TestClient
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)

    TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    db = TestingSessionLocal()

    yield db

    db.close()
    engine.dispose()


@pytest.fixture
def fake_clock():
    return FakeClock()


@pytest.fixture
def repository(test_db):
    """A tracked repository."""
    repo = Repository(owner="acme", name="widgets", full_name="acme/widgets", is_private=False)
    test_db.add(repo)
    test_db.commit()
    return repo


@pytest.fixture
def make_job(test_db, repository):
    """Factory for jobs with ``item_count`` pending items."""

    def factory(stage_number: int = 2, status: str = "processing", item_count: int = 0, **fields) -> AnalysisJob:
        stage_names = {1: "fetching", 2: "embedding", 3: "analyzing", 4: "reporting"}
        values = dict(
            repository_id=repository.id,
            status=status,
            processing_stage=stage_names[stage_number],
            stage_number=stage_number,
            stage_progress=0.0,
            total_issues_count=item_count,
            processed_issues_count=item_count,
            created_at=NOW - timedelta(minutes=1),
            stage_started_at=NOW - timedelta(seconds=5),
            last_processed_at=NOW - timedelta(seconds=5),
        )
        values.update(fields)
        job = AnalysisJob(**values)
        test_db.add(job)
        test_db.flush()

        for number in range(1, item_count + 1):
            test_db.add(JobItem(job_id=job.id, issue_number=number, issue_title=f"Issue {number}", issue_body=""))
        test_db.commit()
        return job

    return factory
