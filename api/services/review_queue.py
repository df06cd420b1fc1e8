"""In-memory FIFO queue with a single worker.

At most one review runs at a time across all repositories, so two jobs can
never mutate working copies concurrently. The queue is not durable: pending
jobs are lost on restart.

All methods must be called from the event loop thread. ``enqueue`` never
awaits between checking the worker state and popping the head, which makes
the Idle -> Processing transition atomic with respect to other enqueues.
"""

import asyncio
import logging
from collections import deque
from typing import Awaitable, Callable, Optional

from common.job_models import ReviewRequest

logger = logging.getLogger(__name__)

ReviewHandler = Callable[[ReviewRequest], Awaitable[None]]


class ReviewQueue:
    def __init__(self, handler: ReviewHandler):
        self._handler = handler
        self._pending: deque[ReviewRequest] = deque()
        self._worker: Optional[asyncio.Task] = None
        self._current: Optional[ReviewRequest] = None
        self._idle = asyncio.Event()
        self._idle.set()
        self.processed_count = 0

    @property
    def pending_count(self) -> int:
        """Jobs waiting; the job being processed is not counted."""
        return len(self._pending)

    @property
    def is_processing(self) -> bool:
        return self._worker is not None

    @property
    def current(self) -> Optional[ReviewRequest]:
        return self._current

    def enqueue(self, request: ReviewRequest) -> int:
        """Append ``request`` and return its 1-based position among waiting jobs."""
        self._pending.append(request)
        position = len(self._pending)
        logger.info(f"PR added to queue: {request.title} (queue size: {position})")

        if self._worker is None:
            head = self._pending.popleft()
            self._idle.clear()
            self._worker = asyncio.get_running_loop().create_task(
                self._drain(head), name="review-queue-worker"
            )
        return position

    async def _drain(self, job: ReviewRequest) -> None:
        next_job: Optional[ReviewRequest] = job
        try:
            while next_job is not None:
                self._current = next_job
                logger.info(
                    f"Processing PR from queue: {next_job.title} ({len(self._pending)} remaining)"
                )
                try:
                    await self._handler(next_job)
                except Exception:
                    logger.exception(f"Review job for {next_job.repository_name} failed")
                finally:
                    self.processed_count += 1
                    self._current = None

                next_job = self._pending.popleft() if self._pending else None
        finally:
            self._worker = None
            self._idle.set()

    async def wait_idle(self) -> None:
        """Wait until the worker has drained the queue."""
        await self._idle.wait()

    async def shutdown(self) -> None:
        """Cancel the worker; the in-flight job is cancelled and waiting jobs are dropped."""
        worker = self._worker
        dropped = len(self._pending)
        self._pending.clear()
        if worker is None:
            return
        worker.cancel()
        try:
            await worker
        except asyncio.CancelledError:
            pass
        if dropped:
            logger.warning(f"Dropped {dropped} queued review(s) on shutdown")
