"""Bounded-concurrency consumer for a :class:`TaskQueue`."""

import asyncio
import logging
from typing import Awaitable, Callable

from static_engine.tasks.task_queue import QueuedTask, TaskQueue

logger = logging.getLogger(__name__)

TaskHandler = Callable[[QueuedTask], Awaitable[None]]


class WorkerPool:
    """Runs at most ``concurrency`` task handlers at a time.

    A handler that returns normally completes the task; a handler that
    raises hands the error to the queue, which schedules a retry or marks
    the task failed.
    """

    def __init__(
        self,
        queue: TaskQueue,
        handler: TaskHandler,
        concurrency: int = 2,
        poll_interval: float = 1.0,
    ):
        if concurrency < 1:
            raise ValueError("concurrency must be at least 1")
        self.queue = queue
        self.handler = handler
        self.concurrency = concurrency
        self.poll_interval = poll_interval
        self._slots = asyncio.Semaphore(concurrency)
        self._running: set[asyncio.Task] = set()
        self._loop_task: asyncio.Task | None = None
        self._stopping = False

    @property
    def is_running(self) -> bool:
        return self._loop_task is not None and not self._loop_task.done()

    @property
    def active_count(self) -> int:
        return len(self._running)

    async def start(self) -> None:
        """Recover stalled tasks and begin consuming."""
        if self.is_running:
            return
        self._stopping = False
        await self.queue.recover_stalled()
        self._loop_task = asyncio.create_task(self._consume())
        logger.info(f"Worker pool started (concurrency={self.concurrency})")

    async def stop(self, timeout: float | None = 30.0) -> None:
        """Stop claiming new tasks and wait for in-flight ones.

        Tasks still running after ``timeout`` are cancelled. The handler sees
        the cancellation and settles its own state; the queue keeps the task
        ``active`` and the next ``start()`` re-delivers it.
        """
        self._stopping = True
        if self._loop_task:
            self._loop_task.cancel()
            try:
                await self._loop_task
            except asyncio.CancelledError:
                pass
            self._loop_task = None

        if self._running:
            done, pending = await asyncio.wait(set(self._running), timeout=timeout)
            for task in pending:
                task.cancel()
            if pending:
                await asyncio.gather(*pending, return_exceptions=True)
                logger.warning(f"Cancelled {len(pending)} in-flight task(s) on shutdown")

        logger.info("Worker pool stopped")

    async def drain(self) -> int:
        """Process runnable tasks until none are left, then return.

        Does not wait for tasks whose retry is scheduled in the future.

        Returns:
            Number of tasks processed
        """
        processed = 0
        while True:
            await self._slots.acquire()
            task = await self.queue.claim_next()
            if task is None:
                self._slots.release()
                if not self._running:
                    return processed
                await asyncio.wait(set(self._running), return_when=asyncio.FIRST_COMPLETED)
                continue
            self._spawn(task)
            processed += 1

    async def _consume(self) -> None:
        while not self._stopping:
            await self._slots.acquire()
            # The slot belongs to the spawned runner once _spawn succeeds
            spawned = False
            try:
                task = await self.queue.claim_next()
                if task is not None:
                    self._spawn(task)
                    spawned = True
            except Exception as e:
                logger.error(f"Failed to claim task: {e}")
                await asyncio.sleep(self.poll_interval)
                continue
            finally:
                if not spawned:
                    self._slots.release()

            if task is None:
                await self.queue.wait_for_task(self.poll_interval)

    def _spawn(self, task: QueuedTask) -> None:
        runner = asyncio.create_task(self._run(task))
        self._running.add(runner)
        runner.add_done_callback(self._running.discard)

    async def _run(self, task: QueuedTask) -> None:
        try:
            logger.info(
                f"Processing task {task.id} ({task.task_type}), "
                f"attempt {task.attempt}/{task.options.attempts}"
            )
            try:
                await self.handler(task)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                await self.queue.fail(task, str(e) or type(e).__name__)
            else:
                await self.queue.complete(task)
        finally:
            self._slots.release()
