"""Tests for the durable work queue and the worker pool retry policy."""

import time
from pathlib import Path

from statement_importer.core.db import Database
from statement_importer.core.errors import InputQualityError, TransientError
from statement_importer.workers.pool import RetryPolicy, WorkerPool
from statement_importer.workers.queue import BURIED, DONE, LEASED, QUEUED, QueuedItem, WorkQueue, queue_stats


class FakeClock:
    """Manually advanced clock."""

    def __init__(self) -> None:
        """Start at an arbitrary fixed time."""
        self.now = 1000.0

    def __call__(self) -> float:
        """Return the current fake time."""
        return self.now


def _queue(db: Database, clock: FakeClock, lease_seconds: float = 30.0) -> WorkQueue:
    return WorkQueue(db, "test", lease_seconds, clock=clock)


def test_enqueue_is_idempotent_per_key(db: Database) -> None:
    """The same key is never queued twice while pending."""
    queue = _queue(db, FakeClock())
    if not queue.enqueue("job-1", {"n": 1}):
        msg = "First enqueue should add the item"
        raise AssertionError(msg)
    if queue.enqueue("job-1", {"n": 2}) or queue.enqueue("job-1", {"n": 3}, force=True):
        msg = "A pending item must not be enqueued again"
        raise AssertionError(msg)
    if queue.stats() != {QUEUED: 1}:
        msg = f"Unexpected stats {queue.stats()}"
        raise AssertionError(msg)


def test_force_requeues_finished_items(db: Database) -> None:
    """Done items are only requeued with force, with a fresh payload and attempt count."""
    queue = _queue(db, FakeClock())
    queue.enqueue("job-1", {"n": 1})
    item = queue.claim("worker")
    queue.ack(item.id)
    if queue.enqueue("job-1", {"n": 2}):
        msg = "A done item must not be requeued without force"
        raise AssertionError(msg)
    if not queue.enqueue("job-1", {"n": 2}, force=True):
        msg = "A done item should be requeued with force"
        raise AssertionError(msg)
    again = queue.claim("worker")
    if again is None or again.payload != {"n": 2} or again.attempts != 1:
        msg = f"Unexpected requeued item {again}"
        raise AssertionError(msg)


def test_claim_leases_and_expired_leases_are_redelivered(db: Database) -> None:
    """A leased item is invisible until its lease expires."""
    clock = FakeClock()
    queue = _queue(db, clock, lease_seconds=30.0)
    queue.enqueue("job-1", {"n": 1})
    first = queue.claim("worker-a")
    if first is None or first.attempts != 1 or first.key != "job-1":
        msg = f"Unexpected first claim {first}"
        raise AssertionError(msg)
    if queue.claim("worker-b") is not None:
        msg = "A leased item must not be claimed twice"
        raise AssertionError(msg)
    clock.now += 31
    second = queue.claim("worker-b")
    if second is None or second.id != first.id or second.attempts != 2:  # noqa: PLR2004
        msg = f"Expected redelivery after lease expiry, got {second}"
        raise AssertionError(msg)
    if queue.stats() != {LEASED: 1}:
        msg = f"Unexpected stats {queue.stats()}"
        raise AssertionError(msg)


def test_release_delays_and_bury_parks(db: Database) -> None:
    """Released items wait for their delay; buried items are never claimed again."""
    clock = FakeClock()
    queue = _queue(db, clock)
    queue.enqueue("a", {})
    queue.enqueue("b", {}, delay=5)
    if queue.claim("w").key != "a":
        msg = "Expected the due item first"
        raise AssertionError(msg)
    if queue.claim("w") is not None:
        msg = "Delayed item claimed before it was due"
        raise AssertionError(msg)
    clock.now += 5
    item = queue.claim("w")
    queue.release(item.id, delay=10, error="boom")
    clock.now += 9
    if queue.claim("w") is not None:
        msg = "Released item claimed before its delay"
        raise AssertionError(msg)
    clock.now += 1
    item = queue.claim("w")
    queue.bury(item.id, "gave up")
    if queue.claim("w") is not None:
        msg = "Buried item must not be claimed"
        raise AssertionError(msg)
    if queue_stats(db) != {"test": {LEASED: 1, BURIED: 1}}:
        msg = f"Unexpected stats {queue_stats(db)}"
        raise AssertionError(msg)


def test_retry_policy() -> None:
    """Only retryable pipeline errors are retried, with exponential backoff."""
    policy = RetryPolicy(max_attempts=3, base_delay=2.0)
    if [policy.delay_for(n) for n in (1, 2, 3)] != [2.0, 4.0, 8.0]:
        msg = "Unexpected backoff schedule"
        raise AssertionError(msg)
    if not policy.should_retry(1, TransientError("down")):
        msg = "Transient errors should be retried"
        raise AssertionError(msg)
    if policy.should_retry(3, TransientError("down")):
        msg = "The last attempt must not be retried"
        raise AssertionError(msg)
    if policy.should_retry(1, InputQualityError("bad file")) or policy.should_retry(1, ValueError("bug")):
        msg = "Non-retryable errors must not be retried"
        raise AssertionError(msg)


def test_pool_retries_then_gives_up(db: Database) -> None:
    """A transient failure is redelivered until attempts run out, then handed to on_give_up."""
    queue = _queue(db, FakeClock())
    attempts: list[int] = []
    given_up: list[tuple[str, Exception]] = []

    def handler(item: QueuedItem) -> None:
        attempts.append(item.attempts)
        msg = "storage unavailable"
        raise TransientError(msg)

    pool = WorkerPool(
        queue,
        handler,
        concurrency=1,
        retry_policy=RetryPolicy(max_attempts=3, base_delay=0.0),
        on_give_up=lambda item, exc: given_up.append((item.key, exc)),
    )
    queue.enqueue("job-1", {})
    pool.run_until_idle()
    if attempts != [1, 2, 3]:
        msg = f"Expected three deliveries, got {attempts}"
        raise AssertionError(msg)
    if len(given_up) != 1 or given_up[0][0] != "job-1":
        msg = f"Expected one give-up call, got {given_up}"
        raise AssertionError(msg)
    if queue.stats() != {BURIED: 1}:
        msg = f"Unexpected stats {queue.stats()}"
        raise AssertionError(msg)


def test_pool_fails_fast_on_permanent_errors(db: Database) -> None:
    """Input-quality errors and unexpected exceptions are not retried."""
    queue = _queue(db, FakeClock())
    calls: list[str] = []

    def handler(item: QueuedItem) -> None:
        calls.append(item.key)
        if item.key == "ok":
            return
        if item.key == "bad":
            msg = "unreadable"
            raise InputQualityError(msg)
        msg = "bug"
        raise ValueError(msg)

    pool = WorkerPool(queue, handler, concurrency=2, retry_policy=RetryPolicy(3, 0.0))
    for key in ("ok", "bad", "bug"):
        queue.enqueue(key, {})
    processed = pool.run_until_idle()
    if processed != 3 or calls != ["ok", "bad", "bug"]:  # noqa: PLR2004
        msg = f"Expected each item once, got {calls}"
        raise AssertionError(msg)
    if queue.stats() != {DONE: 1, BURIED: 2}:
        msg = f"Unexpected stats {queue.stats()}"
        raise AssertionError(msg)


def test_pool_start_and_stop(tmp_path: Path) -> None:
    """The threaded pool drains the queue and stops cleanly."""
    db = Database(f"sqlite:///{tmp_path}/queue.db")
    db.init_db()
    queue = WorkQueue(db, "threaded")
    seen: list[str] = []
    pool = WorkerPool(
        queue,
        lambda item: seen.append(item.key),
        concurrency=2,
        retry_policy=RetryPolicy(1, 0.0),
        poll_interval=0.01,
    )
    for key in ("a", "b", "c"):
        queue.enqueue(key, {})
    pool.start()
    try:
        for _ in range(500):
            if queue.stats() == {DONE: 3}:
                break
            time.sleep(0.01)
    finally:
        pool.stop()
    if sorted(seen) != ["a", "b", "c"]:
        msg = f"Expected every item processed once, got {seen}"
        raise AssertionError(msg)
