"""
Task Sequencer - FIFO single-consumer task chain

Serializes every mutating playback operation so that commands issued in
rapid succession (double-tapped next/prev, a UI effect firing during a
provider swap) and provider events (end, error) run strictly in submission
order, one at a time, each to completion.

Architecture:
- One asyncio.Queue of pending tasks per sequencer
- One consumer task, started lazily on the first enqueue
- Run-to-completion: there is no mid-task cancellation
- A failing task is logged and settles its future with None;
  the chain keeps running

Usage:
    sequencer = TaskSequencer("playback")

    await sequencer.enqueue(lambda: do_play(), label="play")

Tasks must NOT await the future of another task enqueued on the same
sequencer; that task can only start after the current one finishes.
Call the internal coroutine directly instead.
"""

import asyncio
from typing import Any, Awaitable, Callable, Optional, Tuple
from loguru import logger


TaskFactory = Callable[[], Awaitable[Any]]


class TaskSequencer:
    """
    FIFO task chain with a single consumer.

    Attributes:
        name: Name used in log messages
        completed_tasks: Number of tasks that finished without raising
        failed_tasks: Number of tasks that raised (logged, chain continued)
    """

    def __init__(self, name: str = "playback"):
        self.name = name
        self.completed_tasks = 0
        self.failed_tasks = 0
        self._queue: Optional[asyncio.Queue] = None
        self._worker: Optional[asyncio.Task] = None
        self._current_label: Optional[str] = None
        self._closed = False

    @property
    def pending(self) -> int:
        """Number of tasks waiting to run (excluding the running one)."""
        return self._queue.qsize() if self._queue is not None else 0

    @property
    def is_busy(self) -> bool:
        """True while a task is running."""
        return self._current_label is not None

    def enqueue(self, task: TaskFactory, label: str = "task") -> "asyncio.Future[Any]":
        """
        Append a task to the chain.

        Must be called from within the running event loop. Returns immediately;
        the returned future resolves with the task's result, or None if the
        task failed or the sequencer was closed before it ran.

        Args:
            task: Zero-argument callable returning an awaitable
            label: Short description for logs

        Returns:
            Future settled when the task has run
        """
        loop = asyncio.get_running_loop()
        future: asyncio.Future = loop.create_future()

        if self._closed:
            logger.warning(f"[TaskSequencer:{self.name}] Closed, dropping task '{label}'")
            future.set_result(None)
            return future

        self._ensure_worker()
        self._queue.put_nowait((task, future, label))
        logger.trace(f"[TaskSequencer:{self.name}] Enqueued '{label}' (pending: {self.pending})")
        return future

    async def drain(self) -> None:
        """Wait until every task enqueued so far (and any they enqueue) has run."""
        if self._queue is None:
            return
        await self._queue.join()

    async def close(self) -> None:
        """
        Stop the consumer.

        Tasks still waiting are settled with None without running.
        The running task (if any) is cancelled.
        """
        self._closed = True

        if self._worker is not None and not self._worker.done():
            self._worker.cancel()
            try:
                await self._worker
            except asyncio.CancelledError:
                pass

        if self._queue is not None:
            while not self._queue.empty():
                _, future, label = self._queue.get_nowait()
                if not future.done():
                    future.set_result(None)
                self._queue.task_done()
                logger.debug(f"[TaskSequencer:{self.name}] Discarded '{label}' on close")

        self._worker = None
        logger.debug(f"[TaskSequencer:{self.name}] Closed")

    def _ensure_worker(self) -> None:
        if self._queue is None:
            self._queue = asyncio.Queue()
        if self._worker is None or self._worker.done():
            self._worker = asyncio.get_running_loop().create_task(
                self._run(),
                name=f"TaskSequencer:{self.name}"
            )

    async def _run(self) -> None:
        """Consumer loop: one task at a time, in submission order."""
        while True:
            item: Tuple[TaskFactory, asyncio.Future, str] = await self._queue.get()
            task, future, label = item
            self._current_label = label
            try:
                result = await task()
            except asyncio.CancelledError:
                if not future.done():
                    future.set_result(None)
                raise
            except Exception as e:
                self.failed_tasks += 1
                logger.opt(exception=e).error(
                    f"[TaskSequencer:{self.name}] Task '{label}' failed: {e}"
                )
                if not future.done():
                    future.set_result(None)
            else:
                self.completed_tasks += 1
                if not future.done():
                    future.set_result(result)
            finally:
                self._current_label = None
                self._queue.task_done()
