"""Single-worker FIFO task queue with lazy start and idle teardown.

Jobs submitted to one queue run strictly one at a time in submission order on
a background asyncio task. The worker is created on first submission and exits
after ``idle_timeout_seconds`` without work; the next submission starts a new
one. Each submission returns a future that completes with the job's result or
exception, so a failed job never stops the jobs queued behind it.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
import logging
from typing import Any, TypeVar

T = TypeVar("T")

logger = logging.getLogger("heartbeat_info.worker")

_Job = tuple[Callable[[], Awaitable[Any]], "asyncio.Future[Any]"]


class SerialTaskQueue:
    """Run submitted coroutine factories one at a time, first in first out."""

    def __init__(self, *, name: str, idle_timeout_seconds: float = 30.0) -> None:
        if idle_timeout_seconds <= 0:
            raise ValueError("idle_timeout_seconds must be > 0")
        self.name = name
        self._idle_timeout_seconds = idle_timeout_seconds
        self._queue: asyncio.Queue[_Job] = asyncio.Queue()
        self._worker: asyncio.Task[None] | None = None
        self._closed = False

    @property
    def is_running(self) -> bool:
        return self._worker is not None and not self._worker.done()

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    def submit(self, job: Callable[[], Awaitable[T]]) -> asyncio.Future[T]:
        """Queue ``job`` and return a future for its outcome without waiting."""

        if self._closed:
            raise RuntimeError(f"Task queue {self.name} is closed")
        loop = asyncio.get_running_loop()
        future: asyncio.Future[T] = loop.create_future()
        self._queue.put_nowait((job, future))
        if not self.is_running:
            self._worker = loop.create_task(self._run(), name=f"heartbeat-worker:{self.name}")
        return future

    async def _run(self) -> None:
        logger.debug("worker_started queue=%s", self.name)
        while True:
            try:
                job, future = await asyncio.wait_for(
                    self._queue.get(), timeout=self._idle_timeout_seconds
                )
            except asyncio.TimeoutError:
                # A submission can land while the timed-out get is being cancelled.
                if self._queue.empty():
                    logger.debug("worker_idle_shutdown queue=%s", self.name)
                    return
                continue

            try:
                await self._execute(job, future)
            finally:
                self._queue.task_done()

    async def _execute(self, job: Callable[[], Awaitable[Any]], future: asyncio.Future[Any]) -> None:
        try:
            result = await job()
        except asyncio.CancelledError:
            if not future.done():
                future.cancel()
            current = asyncio.current_task()
            if current is not None and current.cancelling():
                raise
            return
        except Exception as exc:
            logger.warning("worker_job_failed queue=%s error=%r", self.name, exc)
            if not future.done():
                future.set_exception(exc)
            return

        if not future.done():
            future.set_result(result)

    async def join(self) -> None:
        """Wait until every job submitted so far has finished."""

        await self._queue.join()

    async def aclose(self) -> None:
        """Finish queued jobs, then stop the worker and refuse new submissions."""

        self._closed = True
        await self.join()
        worker = self._worker
        self._worker = None
        if worker is not None and not worker.done():
            worker.cancel()
            try:
                await worker
            except asyncio.CancelledError:
                pass
