"""In-process priority job queue with leases, delayed retries and exhaustion.

Jobs are served by priority tier (urgent > high > normal > low) and FIFO
within a tier. A claim takes a lease on the job; if the claiming worker dies
and the lease expires, the job becomes claimable again, giving at-least-once
processing. A nack with retry schedules the job after an exponential backoff
delay until the retry policy is exhausted, at which point the job is moved to
the terminal FAILED state and the exhaustion is surfaced through logging, the
audit trail and an optional hook.
"""

import heapq
import itertools
import logging
import threading
import time
from collections import OrderedDict
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from trustlens.models import Priority, new_id
from trustlens.utils.audit import AuditLogger, get_audit_logger
from trustlens.utils.exceptions import JobRetryExhausted, RecordNotFound
from trustlens.utils.retry import RetryPolicy

logger = logging.getLogger(__name__)


class EntryState(str, Enum):
    """Queue-level state of a job entry."""
    WAITING = "WAITING"
    DELAYED = "DELAYED"
    ACTIVE = "ACTIVE"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"


@dataclass
class QueueEntry:
    """A job held by the queue.

    Attributes:
        job_id: Identifier of the queued job
        payload: Arbitrary job data handed to the worker
        priority: Priority tier
        state: Current queue state
        attempts: Number of times the job has been claimed
        available_at: Clock time at which a delayed job becomes claimable
        lease_expires_at: Clock time at which an active claim lapses
        last_error: Error message from the latest failed attempt
    """
    job_id: str
    payload: Any
    priority: Priority
    state: EntryState = EntryState.WAITING
    attempts: int = 0
    available_at: float = 0.0
    lease_expires_at: Optional[float] = None
    last_error: Optional[str] = None
    enqueued_at: float = 0.0
    cancel_event: threading.Event = field(default_factory=threading.Event)

    @property
    def cancel_requested(self) -> bool:
        return self.cancel_event.is_set()


@dataclass(frozen=True)
class ClaimedJob:
    """What a worker receives from ``claim``."""
    job_id: str
    payload: Any
    priority: Priority
    attempt: int
    cancel_event: threading.Event


class JobQueue:
    """Thread-safe priority queue for one queue class.

    Args:
        name: Queue class name (analysis, webhook, billing)
        retry_policy: Attempt count and backoff for nacked jobs
        lease_seconds: How long a claim stays valid without ack/nack
        clock: Monotonic clock for delays and leases (injectable for tests)
        on_exhausted: Optional callback receiving (entry, JobRetryExhausted)
        audit: Audit logger (default: global audit logger)
        retain_finished: Completed or cancelled entries kept for lookup; older
            ones are dropped. Failed entries are always kept.
    """

    def __init__(
        self,
        name: str,
        retry_policy: Optional[RetryPolicy] = None,
        lease_seconds: float = 300.0,
        clock: Callable[[], float] = time.monotonic,
        on_exhausted: Optional[Callable[[QueueEntry, JobRetryExhausted], None]] = None,
        audit: Optional[AuditLogger] = None,
        retain_finished: int = 1000,
    ):
        if retain_finished < 0:
            raise ValueError("retain_finished must be non-negative")
        self.name = name
        self.retry_policy = retry_policy or RetryPolicy()
        self.lease_seconds = lease_seconds
        self._clock = clock
        self._on_exhausted = on_exhausted
        self._audit = audit
        self.retain_finished = retain_finished

        self._cond = threading.Condition(threading.Lock())
        self._entries: Dict[str, QueueEntry] = {}
        self._leased: Dict[str, QueueEntry] = {}
        self._finished: "OrderedDict[str, None]" = OrderedDict()
        self._ready: List[tuple] = []  # (rank, seq, job_id)
        self._delayed: List[tuple] = []  # (available_at, seq, job_id)
        self._seq = itertools.count()
        self._exhausted: List[tuple] = []
        self._closed = False

    @property
    def audit(self) -> AuditLogger:
        if self._audit is None:
            self._audit = get_audit_logger()
        return self._audit

    # ------------------------------------------------------------------
    # Producer side
    # ------------------------------------------------------------------

    def enqueue(
        self,
        payload: Any,
        priority: Priority = Priority.NORMAL,
        delay_ms: int = 0,
        job_id: Optional[str] = None,
    ) -> str:
        """Add a job to the queue.

        Args:
            payload: Job data handed to the worker on claim
            priority: Priority tier
            delay_ms: Milliseconds before the job becomes claimable
            job_id: Optional explicit id (default: new UUID)

        Returns:
            The job id
        """
        if delay_ms < 0:
            raise ValueError("delay_ms must be non-negative")

        job_id = job_id or new_id()

        with self._cond:
            existing = self._entries.get(job_id)
            if existing is not None and existing.state in (
                EntryState.WAITING, EntryState.DELAYED, EntryState.ACTIVE
            ):
                raise ValueError(f"Job {job_id} is already queued on '{self.name}'")
            self._finished.pop(job_id, None)

            now = self._clock()
            entry = QueueEntry(
                job_id=job_id,
                payload=payload,
                priority=Priority(priority),
                enqueued_at=now,
            )
            self._entries[job_id] = entry

            if delay_ms > 0:
                self._schedule(entry, now + delay_ms / 1000.0)
            else:
                self._make_ready(entry)

            self._cond.notify_all()

        logger.debug(f"[{self.name}] enqueued {job_id} priority={entry.priority.value} delay_ms={delay_ms}")
        return job_id

    # ------------------------------------------------------------------
    # Consumer side
    # ------------------------------------------------------------------

    def claim(self, timeout: Optional[float] = None) -> Optional[ClaimedJob]:
        """Take the next available job, blocking until one is ready.

        Args:
            timeout: Maximum seconds to wait; None waits until work arrives
                or the queue is closed, 0 never blocks

        Returns:
            ClaimedJob, or None on timeout or when the queue is closed
        """
        try:
            return self._claim(timeout)
        finally:
            self._flush_exhausted()

    def _claim(self, timeout: Optional[float]) -> Optional[ClaimedJob]:
        wait_until = None if timeout is None else time.monotonic() + timeout

        with self._cond:
            while True:
                if self._closed:
                    return None

                now = self._clock()
                self._promote_due(now)
                self._reclaim_expired(now)

                entry = self._pop_ready()
                if entry is not None:
                    entry.state = EntryState.ACTIVE
                    entry.attempts += 1
                    entry.lease_expires_at = now + self.lease_seconds
                    self._leased[entry.job_id] = entry
                    logger.debug(f"[{self.name}] claimed {entry.job_id} attempt={entry.attempts}")
                    return ClaimedJob(
                        job_id=entry.job_id,
                        payload=entry.payload,
                        priority=entry.priority,
                        attempt=entry.attempts,
                        cancel_event=entry.cancel_event,
                    )

                wait = self._next_wakeup(now)
                if wait_until is not None:
                    remaining = wait_until - time.monotonic()
                    if remaining <= 0:
                        return None
                    wait = remaining if wait is None else min(wait, remaining)
                self._cond.wait(wait)

    def ack(self, job_id: str) -> None:
        """Mark a claimed job as completed."""
        with self._cond:
            entry = self._require(job_id)
            if entry.state != EntryState.ACTIVE:
                logger.warning(f"[{self.name}] ack for {job_id} in state {entry.state.value} ignored")
                return
            entry.state = EntryState.COMPLETED
            self._release(entry)
            self._retire(entry)
            self._cond.notify_all()

        logger.debug(f"[{self.name}] acked {job_id}")

    def nack(self, job_id: str, retry: bool = True, error: Optional[str] = None) -> EntryState:
        """Release a claimed job after a failed attempt.

        With ``retry`` the job is rescheduled after the policy's backoff
        delay, unless its attempts are exhausted. Without ``retry`` it fails
        terminally.

        Returns:
            The job's new state
        """
        exhausted = None

        with self._cond:
            entry = self._require(job_id)
            if entry.state != EntryState.ACTIVE:
                logger.warning(f"[{self.name}] nack for {job_id} in state {entry.state.value} ignored")
                return entry.state

            entry.last_error = error
            self._release(entry)

            if retry and not self.retry_policy.is_exhausted(entry.attempts):
                delay = self.retry_policy.delay_for(entry.attempts)
                self._schedule(entry, self._clock() + delay)
                logger.info(
                    f"[{self.name}] job {job_id} attempt {entry.attempts} failed, "
                    f"retrying in {delay:.2f}s: {error}"
                )
            else:
                entry.state = EntryState.FAILED
                if retry:
                    exhausted = JobRetryExhausted(job_id, self.name, entry.attempts, error)
                else:
                    logger.warning(f"[{self.name}] job {job_id} failed without retry: {error}")

            self._cond.notify_all()
            state = entry.state

        if exhausted is not None:
            self._surface_exhaustion(entry, exhausted)

        return state

    def cancel(self, job_id: str) -> bool:
        """Cancel a job.

        A waiting or delayed job is removed at once. An active job gets its
        cancel flag set; the worker running it stops at the next stage
        boundary and acks it as cancelled.

        Returns:
            True if the job was cancelled or flagged, False if already finished
        """
        with self._cond:
            entry = self._require(job_id)
            entry.cancel_event.set()

            if entry.state in (EntryState.WAITING, EntryState.DELAYED):
                entry.state = EntryState.CANCELLED
                self._retire(entry)
                self._cond.notify_all()
                logger.info(f"[{self.name}] cancelled queued job {job_id}")
                return True
            if entry.state == EntryState.ACTIVE:
                logger.info(f"[{self.name}] cancellation requested for active job {job_id}")
                return True
            return False

    def mark_cancelled(self, job_id: str) -> None:
        """Finish an active job whose worker observed a cancellation."""
        with self._cond:
            entry = self._require(job_id)
            if entry.state == EntryState.ACTIVE:
                entry.state = EntryState.CANCELLED
                self._release(entry)
                self._retire(entry)
                self._cond.notify_all()

    def close(self) -> None:
        """Stop handing out work; blocked claims return None."""
        with self._cond:
            self._closed = True
            self._cond.notify_all()

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    def get(self, job_id: str) -> QueueEntry:
        """Look up an entry; completed or cancelled ones past the retention limit are gone."""
        with self._cond:
            return self._require(job_id)

    def stats(self) -> Dict[str, int]:
        """Count entries per state."""
        counts = {state.value.lower(): 0 for state in EntryState}
        with self._cond:
            self._promote_due(self._clock())
            for entry in self._entries.values():
                counts[entry.state.value.lower()] += 1
        return counts

    def failed_jobs(self) -> List[QueueEntry]:
        """Entries that ended in the terminal FAILED state."""
        with self._cond:
            return [e for e in self._entries.values() if e.state == EntryState.FAILED]

    def pending_count(self) -> int:
        """Jobs not yet finished (waiting, delayed or active)."""
        with self._cond:
            return sum(
                1 for e in self._entries.values()
                if e.state in (EntryState.WAITING, EntryState.DELAYED, EntryState.ACTIVE)
            )

    def join(self, timeout: Optional[float] = None) -> bool:
        """Block until no job is waiting, delayed or active.

        Returns:
            True if the queue drained, False on timeout
        """
        wait_until = None if timeout is None else time.monotonic() + timeout
        with self._cond:
            while True:
                busy = any(
                    e.state in (EntryState.WAITING, EntryState.DELAYED, EntryState.ACTIVE)
                    for e in self._entries.values()
                )
                if not busy:
                    return True
                if wait_until is None:
                    self._cond.wait(0.5)
                    continue
                remaining = wait_until - time.monotonic()
                if remaining <= 0:
                    return False
                self._cond.wait(min(remaining, 0.5))

    # ------------------------------------------------------------------
    # Internals (caller holds the lock)
    # ------------------------------------------------------------------

    def _require(self, job_id: str) -> QueueEntry:
        entry = self._entries.get(job_id)
        if entry is None:
            raise RecordNotFound("Queue job", job_id)
        return entry

    def _make_ready(self, entry: QueueEntry) -> None:
        entry.state = EntryState.WAITING
        heapq.heappush(self._ready, (entry.priority.rank, next(self._seq), entry.job_id))

    def _schedule(self, entry: QueueEntry, available_at: float) -> None:
        entry.state = EntryState.DELAYED
        entry.available_at = available_at
        heapq.heappush(self._delayed, (available_at, next(self._seq), entry.job_id))

    def _pop_ready(self) -> Optional[QueueEntry]:
        while self._ready:
            _, _, job_id = heapq.heappop(self._ready)
            entry = self._entries.get(job_id)
            # Stale heap items are skipped (cancelled or already re-queued).
            if entry is not None and entry.state == EntryState.WAITING:
                return entry
        return None

    def _promote_due(self, now: float) -> None:
        while self._delayed and self._delayed[0][0] <= now:
            _, _, job_id = heapq.heappop(self._delayed)
            entry = self._entries.get(job_id)
            if entry is not None and entry.state == EntryState.DELAYED and entry.available_at <= now:
                self._make_ready(entry)

    def _release(self, entry: QueueEntry) -> None:
        entry.lease_expires_at = None
        self._leased.pop(entry.job_id, None)

    def _retire(self, entry: QueueEntry) -> None:
        """Remember a completed or cancelled entry, dropping the oldest beyond the limit."""
        self._finished[entry.job_id] = None
        self._finished.move_to_end(entry.job_id)
        while len(self._finished) > self.retain_finished:
            job_id, _ = self._finished.popitem(last=False)
            self._entries.pop(job_id, None)

    def _reclaim_expired(self, now: float) -> None:
        expired = [
            e for e in self._leased.values()
            if e.lease_expires_at is not None and e.lease_expires_at <= now
        ]
        for entry in expired:
            self._release(entry)
            entry.last_error = "lease expired"
            if self.retry_policy.is_exhausted(entry.attempts):
                entry.state = EntryState.FAILED
                error = JobRetryExhausted(entry.job_id, self.name, entry.attempts, entry.last_error)
                # Surfaced by _flush_exhausted once the lock is released.
                self._exhausted.append((entry, error))
            else:
                logger.warning(
                    f"[{self.name}] lease on {entry.job_id} expired after attempt "
                    f"{entry.attempts}, job is claimable again"
                )
                self._make_ready(entry)

    def _next_wakeup(self, now: float) -> Optional[float]:
        candidates = []
        if self._delayed:
            candidates.append(self._delayed[0][0] - now)
        leases = [e.lease_expires_at for e in self._leased.values() if e.lease_expires_at is not None]
        if leases:
            candidates.append(min(leases) - now)
        if not candidates:
            return None
        return max(0.01, min(candidates))

    def _flush_exhausted(self) -> None:
        with self._cond:
            pending, self._exhausted = self._exhausted, []
        for entry, error in pending:
            self._surface_exhaustion(entry, error)

    def _surface_exhaustion(self, entry: QueueEntry, error: JobRetryExhausted) -> None:
        logger.error(str(error))
        self.audit.log_retry_exhausted(entry.job_id, self.name, entry.attempts, entry.last_error)
        if self._on_exhausted is not None:
            try:
                self._on_exhausted(entry, error)
            except Exception as e:
                logger.error(f"[{self.name}] exhaustion hook failed for {entry.job_id}: {e}", exc_info=True)


def queue_health(queues: Dict[str, JobQueue]) -> Dict[str, Any]:
    """Summarize queue state with operator alerts.

    Alerts are raised for more than 10 failed jobs on any queue, more than
    100 waiting analysis jobs and more than 50 waiting webhook jobs.
    """
    waiting_limits = {"analysis": 100, "webhook": 50}
    report: Dict[str, Any] = {"status": "healthy", "queues": {}, "alerts": []}

    for name, queue in queues.items():
        stats = queue.stats()
        report["queues"][name] = stats
        waiting = stats["waiting"] + stats["delayed"]

        if stats["failed"] > 10:
            report["alerts"].append(f"High failure rate in {name} queue: {stats['failed']} failed jobs")
        limit = waiting_limits.get(name)
        if limit is not None and waiting > limit:
            report["alerts"].append(f"{name} queue backlog: {waiting} waiting jobs")

    if report["alerts"]:
        report["status"] = "degraded"
    return report
