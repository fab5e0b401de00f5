"""In-process at-least-once emission queue.

One job per invoice: the invoice id is the job id, so a duplicate enqueue of a
job that is still queued or running is ignored. Each job runs its attempts
sequentially on a worker thread with the shared retry policy; only temporary
failures are retried.
"""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass

from emissor_nfe.services.retry import RetryPolicy, emission_policy, retry_call

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class EmissionJob:
    invoice_id: str
    order_id: int
    reference: str
    company_id: int
    nature_id: int
    payload: dict | None = None


JobHandler = Callable[[EmissionJob, int], object]
FailureHook = Callable[[EmissionJob, Exception], None]


class TaskQueue:
    """Worker pool consuming emission jobs.

    *handler* receives the job and the 1-indexed attempt number. *on_failure*
    runs once when a job ends in failure (non-retryable error or exhausted
    attempts).
    """

    def __init__(
        self,
        handler: JobHandler,
        *,
        policy: RetryPolicy | None = None,
        max_workers: int = 4,
        on_failure: FailureHook | None = None,
        sleep_func: Callable[[float], object] = time.sleep,
    ) -> None:
        self._handler = handler
        self._policy = policy or emission_policy()
        self._on_failure = on_failure
        self._sleep = sleep_func
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="emission")
        self._active: dict[str, Future] = {}
        self._lock = threading.Lock()

    def enqueue(self, job: EmissionJob) -> bool:
        """Schedule *job*. Returns False if the same invoice is already queued or running."""
        with self._lock:
            if job.invoice_id in self._active:
                logger.debug("Job %s already active, ignoring duplicate", job.invoice_id)
                return False
            future = self._executor.submit(self._run, job)
            self._active[job.invoice_id] = future
        future.add_done_callback(lambda _f, key=job.invoice_id: self._release(key))
        return True

    def _release(self, invoice_id: str) -> None:
        with self._lock:
            self._active.pop(invoice_id, None)

    def _run(self, job: EmissionJob) -> None:
        try:
            retry_call(lambda attempt: self._handler(job, attempt), self._policy, sleep_func=self._sleep)
        except Exception as exc:
            logger.error("Job %s failed: %s", job.invoice_id, exc)
            if self._on_failure is not None:
                self._on_failure(job, exc)

    @property
    def pending(self) -> int:
        with self._lock:
            return len(self._active)

    def drain(self, timeout: float | None = None) -> None:
        """Block until every job enqueued so far has finished."""
        with self._lock:
            futures = list(self._active.values())
        for future in futures:
            future.result(timeout=timeout)

    def shutdown(self, wait: bool = True) -> None:
        self._executor.shutdown(wait=wait)
