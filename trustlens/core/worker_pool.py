"""Bounded worker pools pulling from a JobQueue.

Each queue class (analysis, webhook, billing) gets its own pool with its own
concurrency. Workers are stateless threads: they claim a job, run the handler
and ack it. A handler exception nacks the job for retry and never takes the
worker down with it.
"""

import logging
import threading
from typing import Any, Callable, List, Optional

from trustlens.core.queue import ClaimedJob, JobQueue
from trustlens.utils.exceptions import JobCancelled, StorageError

logger = logging.getLogger(__name__)

Handler = Callable[[ClaimedJob], Any]


class WorkerPool:
    """Fixed-size pool of worker threads for one queue.

    Args:
        queue: Queue the workers claim from
        handler: Callable run for each claimed job
        concurrency: Number of worker threads
        poll_interval: Seconds a worker blocks in claim before checking for stop
    """

    def __init__(
        self,
        queue: JobQueue,
        handler: Handler,
        concurrency: int = 1,
        poll_interval: float = 0.5,
    ):
        if concurrency < 1:
            raise ValueError("concurrency must be at least 1")

        self.queue = queue
        self.handler = handler
        self.concurrency = concurrency
        self.poll_interval = poll_interval

        self._stop = threading.Event()
        self._threads: List[threading.Thread] = []
        self._lock = threading.Lock()
        self.processed = 0
        self.failed = 0

    @property
    def running(self) -> bool:
        return any(t.is_alive() for t in self._threads)

    def start(self) -> None:
        """Start the worker threads. Calling start twice is a no-op."""
        if self.running:
            return

        self._stop.clear()
        self._threads = [
            threading.Thread(
                target=self._run,
                name=f"{self.queue.name}-worker-{i}",
                daemon=True,
            )
            for i in range(self.concurrency)
        ]
        for thread in self._threads:
            thread.start()

        logger.info(f"WorkerPool for '{self.queue.name}' started with {self.concurrency} workers")

    def stop(self, timeout: Optional[float] = None) -> None:
        """Signal the workers to stop and wait for them to finish their current job."""
        self._stop.set()
        for thread in self._threads:
            thread.join(timeout)
        logger.info(
            f"WorkerPool for '{self.queue.name}' stopped "
            f"(processed={self.processed}, failed={self.failed})"
        )

    def run_once(self, timeout: Optional[float] = 0) -> bool:
        """Claim and process a single job on the calling thread.

        Returns:
            True if a job was processed, False if none was available
        """
        claimed = self.queue.claim(timeout=timeout)
        if claimed is None:
            return False
        self._process(claimed)
        return True

    def _run(self) -> None:
        while not self._stop.is_set():
            claimed = self.queue.claim(timeout=self.poll_interval)
            if claimed is None:
                continue
            self._process(claimed)

    def _process(self, claimed: ClaimedJob) -> None:
        try:
            self.handler(claimed)
        except JobCancelled as e:
            logger.info(f"[{self.queue.name}] {e}")
            self.queue.mark_cancelled(claimed.job_id)
        except StorageError as e:
            logger.error(f"[{self.queue.name}] storage failure on job {claimed.job_id}: {e}")
            self._count_failure()
            self.queue.nack(claimed.job_id, retry=True, error=str(e))
        except Exception as e:
            logger.error(
                f"[{self.queue.name}] unexpected error on job {claimed.job_id} "
                f"(attempt {claimed.attempt}): {e}",
                exc_info=True,
            )
            self._count_failure()
            self.queue.nack(claimed.job_id, retry=True, error=f"{type(e).__name__}: {e}")
        else:
            with self._lock:
                self.processed += 1
            self.queue.ack(claimed.job_id)

    def _count_failure(self) -> None:
        with self._lock:
            self.failed += 1
