"""Bounded worker pools that drain a ``WorkQueue``.

A dispatcher thread claims items while a slot is free and hands them to a ``ThreadPoolExecutor``
of the same size. Each item runs its handler once per delivery; a retryable failure is released
back to the queue with exponential backoff until the retry policy gives up.
"""

import concurrent.futures
import threading
import uuid
from collections.abc import Callable
from typing import NamedTuple

from statement_importer.core.errors import ImportPipelineError
from statement_importer.core.utils import get_logger
from statement_importer.workers.queue import QueuedItem, WorkQueue

logger = get_logger("statement-importer.worker")

Handler = Callable[[QueuedItem], None]
GiveUpHandler = Callable[[QueuedItem, Exception], None]


class RetryPolicy(NamedTuple):
    """How many deliveries an item gets and how long to wait between them."""

    max_attempts: int
    base_delay: float

    def delay_for(self, attempt: int) -> float:
        """Backoff before the delivery that follows ``attempt`` (1-based)."""
        return self.base_delay * 2 ** (attempt - 1)

    def should_retry(self, attempt: int, exc: Exception) -> bool:
        """Whether a failure on ``attempt`` deserves another delivery."""
        return isinstance(exc, ImportPipelineError) and exc.retryable and attempt < self.max_attempts


class WorkerPool:
    """Fixed-size pool consuming one queue."""

    def __init__(
        self,
        queue: WorkQueue,
        handler: Handler,
        *,
        concurrency: int,
        retry_policy: RetryPolicy,
        poll_interval: float = 0.5,
        on_give_up: GiveUpHandler | None = None,
        name: str | None = None,
    ) -> None:
        """Configure the pool; nothing runs until ``start`` or ``run_until_idle``."""
        self.queue = queue
        self.handler = handler
        self.concurrency = max(1, concurrency)
        self.retry_policy = retry_policy
        self.poll_interval = poll_interval
        self.on_give_up = on_give_up
        self.name = name or f"{queue.name}-pool"
        self.worker_id = f"{self.name}-{uuid.uuid4().hex[:8]}"
        self._slots = threading.BoundedSemaphore(self.concurrency)
        self._stop = threading.Event()
        self._executor: concurrent.futures.ThreadPoolExecutor | None = None
        self._dispatcher: threading.Thread | None = None

    def process(self, item: QueuedItem) -> bool:
        """Run the handler for one delivery and settle the item; return True on success."""
        logger.info(f"[{self.name}] item {item.key} (attempt {item.attempts})")
        try:
            self.handler(item)
        except Exception as exc:
            self._settle_failure(item, exc)
            return False
        self.queue.ack(item.id)
        return True

    def _settle_failure(self, item: QueuedItem, exc: Exception) -> None:
        if not isinstance(exc, ImportPipelineError):
            logger.exception(f"[{self.name}] unexpected error on item {item.key}")
        if self.retry_policy.should_retry(item.attempts, exc):
            delay = self.retry_policy.delay_for(item.attempts)
            logger.warning(f"[{self.name}] item {item.key} failed ({exc}); retrying in {delay:g}s")
            self.queue.release(item.id, delay, str(exc))
            return
        logger.error(f"[{self.name}] giving up on item {item.key} after {item.attempts} attempts: {exc}")
        if self.on_give_up is not None:
            try:
                self.on_give_up(item, exc)
            except Exception:
                logger.exception(f"[{self.name}] give-up handler failed for item {item.key}")
                self.queue.release(item.id, self.retry_policy.delay_for(item.attempts), str(exc))
                return
        self.queue.bury(item.id, str(exc))

    def run_until_idle(self, max_items: int | None = None) -> int:
        """Process due items on the calling thread until none is left; return how many ran."""
        processed = 0
        while max_items is None or processed < max_items:
            item = self.queue.claim(self.worker_id)
            if item is None:
                break
            self.process(item)
            processed += 1
        return processed

    def _run_slot(self, item: QueuedItem) -> None:
        try:
            self.process(item)
        finally:
            self._slots.release()

    def _dispatch(self) -> None:
        while not self._stop.is_set():
            if not self._slots.acquire(timeout=self.poll_interval):
                continue
            try:
                item = self.queue.claim(self.worker_id)
            except Exception:
                logger.exception(f"[{self.name}] claim failed")
                item = None
            if item is None:
                self._slots.release()
                self._stop.wait(self.poll_interval)
                continue
            self._executor.submit(self._run_slot, item)

    def start(self) -> None:
        """Start the dispatcher thread and the executor."""
        if self._dispatcher is not None:
            return
        self._stop.clear()
        self._executor = concurrent.futures.ThreadPoolExecutor(
            max_workers=self.concurrency, thread_name_prefix=self.name
        )
        self._dispatcher = threading.Thread(target=self._dispatch, name=f"{self.name}-dispatcher", daemon=True)
        self._dispatcher.start()
        logger.info(f"[{self.name}] started with {self.concurrency} workers")

    def stop(self, wait: bool = True) -> None:
        """Stop claiming new items and, with ``wait``, let in-flight items finish."""
        self._stop.set()
        if self._dispatcher is not None:
            self._dispatcher.join()
            self._dispatcher = None
        if self._executor is not None:
            self._executor.shutdown(wait=wait)
            self._executor = None
        logger.info(f"[{self.name}] stopped")
