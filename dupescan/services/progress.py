"""Job change notifications and the progress feed built on them."""

import logging
import threading
import time
from collections import defaultdict
from typing import Callable, Dict, Iterator, List, Optional

from sqlalchemy import event
from sqlalchemy.orm import Session

from dupescan.config import settings
from dupescan.models.job import AnalysisJob
from dupescan.schemas.analysis import JobSnapshot
from dupescan.services.job_state import TERMINAL_STATUSES

logger = logging.getLogger(__name__)


class Subscription:
    """Wake-up signal for one watcher of one repository."""

    def __init__(self, bus: "JobEventBus", repository_id: int):
        self.bus = bus
        self.repository_id = repository_id
        self._event = threading.Event()

    def notify(self) -> None:
        self._event.set()

    def wait(self, timeout: float) -> bool:
        """Block until notified or ``timeout`` elapses; True if notified."""
        notified = self._event.wait(timeout)
        self._event.clear()
        return notified

    def close(self) -> None:
        self.bus.unsubscribe(self)

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()


class JobEventBus:
    """In-process notifications of committed job changes, keyed by repository.

    Job inserts and updates are collected before each flush and announced only
    after the transaction commits; a rollback discards them.
    """

    def __init__(self):
        """Initialize the bus."""
        self._lock = threading.Lock()
        self._subscribers: Dict[int, List[Subscription]] = defaultdict(list)
        self._pending_key = f"dupescan.job_events.{id(self)}"
        self._installed = False

    def subscribe(self, repository_id: int) -> Subscription:
        subscription = Subscription(self, repository_id)
        with self._lock:
            self._subscribers[repository_id].append(subscription)
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        with self._lock:
            subscribers = self._subscribers.get(subscription.repository_id, [])
            if subscription in subscribers:
                subscribers.remove(subscription)
            if not subscribers:
                self._subscribers.pop(subscription.repository_id, None)

    def publish(self, repository_id: int) -> None:
        with self._lock:
            subscribers = list(self._subscribers.get(repository_id, []))
        for subscription in subscribers:
            subscription.notify()

    def install(self) -> None:
        """Start listening to job writes on every session."""
        if self._installed:
            return
        event.listen(Session, "before_flush", self._on_before_flush)
        event.listen(Session, "after_commit", self._on_commit)
        event.listen(Session, "after_soft_rollback", self._on_rollback)
        self._installed = True
        logger.info("Job event bus installed")

    def uninstall(self) -> None:
        if not self._installed:
            return
        event.remove(Session, "before_flush", self._on_before_flush)
        event.remove(Session, "after_commit", self._on_commit)
        event.remove(Session, "after_soft_rollback", self._on_rollback)
        self._installed = False

    def _on_before_flush(self, session: Session, flush_context, instances) -> None:
        for target in list(session.new) + list(session.dirty):
            if not isinstance(target, AnalysisJob):
                continue
            if target in session.new or session.is_modified(target):
                session.info.setdefault(self._pending_key, set()).add(target.repository_id)

    def _on_commit(self, session: Session) -> None:
        for repository_id in session.info.pop(self._pending_key, set()):
            self.publish(repository_id)

    def _on_rollback(self, session: Session, previous_transaction) -> None:
        session.info.pop(self._pending_key, None)


class ProgressFeed:
    """Single source of job progress updates for one watcher.

    Snapshots are always re-read through ``load_snapshot``; notifications
    only decide when to read. With a bus the feed wakes on every committed
    change and re-checks on a slow heartbeat; without one it polls.
    Consecutive identical snapshots are dropped.
    """

    def __init__(
        self,
        load_snapshot: Callable[[int], Optional[JobSnapshot]],
        bus: Optional[JobEventBus] = None,
        poll_interval: Optional[float] = None,
        heartbeat: Optional[float] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        """Initialize the feed."""
        self.load_snapshot = load_snapshot
        self.bus = bus
        self.poll_interval = poll_interval or settings.PROGRESS_POLL_INTERVAL
        self.heartbeat = heartbeat or settings.PROGRESS_HEARTBEAT_SECONDS
        self._sleep = sleep

    def watch(self, repository_id: int, stop_event: Optional[threading.Event] = None) -> Iterator[JobSnapshot]:
        """
        Yield snapshots of the repository's job until it reaches a terminal phase.

        Closing the iterator cancels the subscription.

        Args:
            repository_id: Repository to watch
            stop_event: Optional event that ends the watch early

        Yields:
            JobSnapshot on every observed change
        """
        subscription = self.bus.subscribe(repository_id) if self.bus is not None else None
        last: Optional[JobSnapshot] = None

        try:
            while stop_event is None or not stop_event.is_set():
                snapshot = self.load_snapshot(repository_id)
                if snapshot is None:
                    return

                if snapshot != last:
                    last = snapshot
                    yield snapshot

                if snapshot.phase in TERMINAL_STATUSES:
                    return

                if subscription is not None:
                    subscription.wait(self.heartbeat)
                else:
                    self._sleep(self.poll_interval)
        finally:
            if subscription is not None:
                subscription.close()
