from __future__ import annotations

import threading

import pytest

from emissor_nfe.services.exceptions import GatewayPermanentError, GatewayTemporaryError
from emissor_nfe.services.retry import emission_policy
from emissor_nfe.services.task_queue import EmissionJob, TaskQueue


def _job(invoice_id: str = "inv-1") -> EmissionJob:
    return EmissionJob(
        invoice_id=invoice_id, order_id=42, reference="PEDIDO-42-1", company_id=1, nature_id=3
    )


@pytest.fixture
def make_queue():
    queues: list[TaskQueue] = []

    def _make(handler, **kw):
        kw.setdefault("policy", emission_policy(3))
        queue = TaskQueue(handler, sleep_func=lambda _: None, **kw)
        queues.append(queue)
        return queue

    yield _make
    for queue in queues:
        queue.shutdown()


class TestTaskQueue:
    def test_runs_job_with_attempt(self, make_queue):
        seen = []
        queue = make_queue(lambda job, attempt: seen.append((job.invoice_id, attempt)))
        assert queue.enqueue(_job()) is True
        queue.drain(timeout=5)
        assert seen == [("inv-1", 1)]
        assert queue.pending == 0

    def test_duplicate_ignored_while_active(self, make_queue):
        release = threading.Event()
        started = threading.Event()
        calls = []

        def handler(job, attempt):
            calls.append(job.invoice_id)
            started.set()
            release.wait(5)

        queue = make_queue(handler)
        assert queue.enqueue(_job()) is True
        assert started.wait(5)
        assert queue.enqueue(_job()) is False
        assert queue.enqueue(_job("inv-2")) is True
        release.set()
        queue.drain(timeout=5)
        assert sorted(calls) == ["inv-1", "inv-2"]

    def test_same_invoice_accepted_after_finish(self, make_queue):
        calls = []
        queue = make_queue(lambda job, attempt: calls.append(attempt))
        queue.enqueue(_job())
        queue.drain(timeout=5)
        assert queue.enqueue(_job()) is True
        queue.drain(timeout=5)
        assert calls == [1, 1]

    def test_temporary_failures_retried_until_exhausted(self, make_queue):
        attempts = []
        failures = []

        def handler(job, attempt):
            attempts.append(attempt)
            raise GatewayTemporaryError("429")

        queue = make_queue(handler, on_failure=lambda job, exc: failures.append((job, exc)))
        queue.enqueue(_job())
        queue.drain(timeout=5)
        assert attempts == [1, 2, 3]
        assert len(failures) == 1
        assert isinstance(failures[0][1], GatewayTemporaryError)

    def test_recovers_after_temporary_failure(self, make_queue):
        failures = []

        def handler(job, attempt):
            if attempt == 1:
                raise GatewayTemporaryError("503")
            return "ok"

        queue = make_queue(handler, on_failure=lambda job, exc: failures.append(exc))
        queue.enqueue(_job())
        queue.drain(timeout=5)
        assert failures == []

    def test_permanent_failure_not_retried(self, make_queue):
        attempts = []
        failures = []

        def handler(job, attempt):
            attempts.append(attempt)
            raise GatewayPermanentError("422")

        queue = make_queue(handler, on_failure=lambda job, exc: failures.append(exc))
        queue.enqueue(_job())
        queue.drain(timeout=5)
        assert attempts == [1]
        assert len(failures) == 1

    def test_failure_without_hook(self, make_queue):
        def handler(job, attempt):
            raise RuntimeError("boom")

        queue = make_queue(handler)
        queue.enqueue(_job())
        queue.drain(timeout=5)
        assert queue.pending == 0
