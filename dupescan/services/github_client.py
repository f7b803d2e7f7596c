"""Rate-limited GitHub REST client with typed retry outcomes."""

import logging
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Union

import httpx
from tenacity import Retrying, before_sleep_log, retry_if_result, stop_after_attempt, wait_exponential

from dupescan.config import settings
from dupescan.services.errors import CriticalError
from dupescan.services.rate_limit import TokenBucket

logger = logging.getLogger(__name__)

RETRYABLE_STATUS_CODES = (500, 502, 503, 504)


class GitHubError(Exception):
    """Base class for GitHub client errors."""


class GitHubAPIError(GitHubError):
    """GitHub answered with an error status or could not be reached."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class CredentialExpiredError(GitHubError, CriticalError):
    """The GitHub credential is missing or expired; re-authentication is required."""


@dataclass(frozen=True)
class Success:
    """The attempt returned a usable body."""

    value: Any


@dataclass(frozen=True)
class Retry:
    """The attempt failed in a way another attempt may fix."""

    error: GitHubError


@dataclass(frozen=True)
class Fatal:
    """The attempt failed for good; retrying cannot help."""

    error: Exception


Outcome = Union[Success, Retry, Fatal]


class GitHubSession:
    """Credential context shared by every client acting for one GitHub user.

    Holds the token, the per-credential request budget and the callbacks to
    run when the credential changes. Clients never cache the token themselves,
    so invalidating the session affects all of them at once.
    """

    def __init__(
        self,
        token: Optional[str],
        user_id: str = "default",
        bucket: Optional[TokenBucket] = None,
    ):
        """Initialize the session."""
        self.user_id = user_id
        self._token = token or None
        self.bucket = bucket or TokenBucket(
            settings.GITHUB_RATE_LIMIT, settings.GITHUB_RATE_WINDOW_SECONDS
        )
        self._listeners: List[Callable[["GitHubSession"], None]] = []
        self._lock = threading.Lock()

    @property
    def token(self) -> Optional[str]:
        return self._token

    def subscribe(self, callback: Callable[["GitHubSession"], None]) -> Callable[[], None]:
        """Register a credential-change callback; returns an unsubscribe function."""
        with self._lock:
            self._listeners.append(callback)

        def unsubscribe():
            with self._lock:
                if callback in self._listeners:
                    self._listeners.remove(callback)

        return unsubscribe

    def update_token(self, token: str) -> None:
        """Install a fresh credential."""
        self._token = token or None
        self._notify()

    def invalidate(self) -> None:
        """Forget the credential so later calls require re-authentication."""
        logger.warning(f"Invalidating GitHub credential for user {self.user_id}")
        self._token = None
        self._notify()

    def _notify(self) -> None:
        with self._lock:
            listeners = list(self._listeners)
        for callback in listeners:
            callback(self)


class GitHubClient:
    """Client for the GitHub REST API with rate limiting and retries."""

    def __init__(
        self,
        session: GitHubSession,
        base_url: Optional[str] = None,
        max_attempts: Optional[int] = None,
        transport: Optional[httpx.BaseTransport] = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.time,
    ):
        """Initialize the GitHub client."""
        self.session = session
        self.base_url = base_url or settings.GITHUB_API_URL
        self.max_attempts = max_attempts or settings.GITHUB_MAX_ATTEMPTS
        self.transport = transport
        self._sleep = sleep
        self._clock = clock

    def _build_headers(self, token: str) -> Dict[str, str]:
        """Build HTTP headers for GitHub."""
        return {
            "Authorization": f"Bearer {token}",
            "Accept": "application/vnd.github+json",
            "X-GitHub-Api-Version": "2022-11-28",
        }

    def _attempt(self, path: str, params: Optional[Dict[str, Any]] = None) -> Outcome:
        """Perform one rate-limited GET and classify the result."""
        token = self.session.token
        if not token:
            return Fatal(CredentialExpiredError("GitHub credential expired; re-authentication required"))

        self.session.bucket.acquire()

        try:
            with httpx.Client(base_url=self.base_url, timeout=30.0, transport=self.transport) as client:
                response = client.get(path, params=params, headers=self._build_headers(token))
        except httpx.TransportError as e:
            logger.warning(f"GitHub request {path} failed: {e}")
            return Retry(GitHubAPIError(f"GitHub request failed: {e}"))

        return self._classify(path, response)

    def _classify(self, path: str, response: httpx.Response) -> Outcome:
        """Map an HTTP response onto Success, Retry or Fatal."""
        status = response.status_code

        if status < 400:
            return Success(response.json())

        if status == 401:
            logger.warning("GitHub returned 401, credential expired")
            self.session.invalidate()
            return Fatal(CredentialExpiredError("GitHub credential expired; re-authentication required"))

        reset = response.headers.get("x-ratelimit-reset")
        if status == 403 and reset:
            try:
                wait_time = int(reset) - self._clock()
            except ValueError:
                logger.warning(f"Unreadable x-ratelimit-reset header {reset!r}, retrying without waiting")
                wait_time = 0
            if wait_time > 0:
                logger.warning(f"GitHub rate limit exceeded, waiting {wait_time:.0f}s until reset")
                self._sleep(wait_time)
            return Retry(GitHubAPIError("GitHub rate limit exceeded", status_code=status))

        if status in RETRYABLE_STATUS_CODES:
            logger.warning(f"Retryable error {status} from GitHub for {path}")
            return Retry(GitHubAPIError(f"GitHub server error: {status}", status_code=status))

        return Fatal(GitHubAPIError(f"GitHub API error: {status} for {path}", status_code=status))

    def with_retry(self, operation: Callable[[], Outcome]) -> Any:
        """
        Run an operation until it succeeds, fails fatally, or runs out of attempts.

        Args:
            operation: Callable returning an Outcome

        Returns:
            The Success value

        Raises:
            GitHubError: The fatal error, or the last retryable error
        """
        retrying = Retrying(
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_exponential(multiplier=1),
            retry=retry_if_result(lambda outcome: isinstance(outcome, Retry)),
            retry_error_callback=lambda retry_state: retry_state.outcome.result(),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            sleep=self._sleep,
        )
        outcome = retrying(operation)

        if isinstance(outcome, Success):
            return outcome.value
        raise outcome.error

    def request(self, path: str, params: Optional[Dict[str, Any]] = None) -> Any:
        """GET a path and return the parsed body."""
        return self.with_retry(lambda: self._attempt(path, params))

    # Repository operations
    def get_repository(self, owner: str, repo: str) -> Dict[str, Any]:
        return self.request(f"/repos/{owner}/{repo}")

    def list_issues(
        self,
        owner: str,
        repo: str,
        state: str = "open",
        labels: Optional[str] = None,
        per_page: int = 100,
        page: int = 1,
    ) -> List[Dict[str, Any]]:
        """List one page of issues (pull requests included, as GitHub returns them)."""
        params: Dict[str, Any] = {"state": state, "per_page": per_page, "page": page}
        if labels:
            params["labels"] = labels
        return self.request(f"/repos/{owner}/{repo}/issues", params)

    def check_repository_access(self, owner: str, repo: str) -> Dict[str, Any]:
        """Check whether the credential can see a repository."""
        try:
            data = self.get_repository(owner, repo)
        except GitHubAPIError as e:
            if e.status_code == 404:
                return {"has_access": False, "is_private": None, "permissions": None}
            raise

        return {
            "has_access": True,
            "is_private": data.get("private"),
            "permissions": data.get("permissions"),
        }
