"""Single-worker queue for scrapes triggered over HTTP."""

import asyncio
import logging
from typing import Any, Awaitable, Callable, Optional

logger = logging.getLogger(__name__)

Job = Callable[[], Awaitable[Any]]


class ScrapeTaskQueue:
    """
    Sequential background work queue for API-triggered scrapes.

    submit() returns at once with a future that resolves to the job's result
    (or exception); the single worker runs jobs in submission order and logs
    how each one ended.
    """

    def __init__(self):
        self._queue: Optional[asyncio.Queue] = None
        self._worker: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._worker is not None and not self._worker.done()

    @property
    def pending(self) -> int:
        return self._queue.qsize() if self._queue is not None else 0

    def start(self) -> None:
        """Start the worker on the running event loop."""
        if self.running:
            return
        self._queue = asyncio.Queue()
        self._worker = asyncio.get_running_loop().create_task(self._work(), name="scrape-task-queue")
        logger.info("Scrape task queue started")

    def submit(self, label: str, job: Job) -> asyncio.Future:
        if not self.running:
            raise RuntimeError("Scrape task queue is not running")
        future = asyncio.get_running_loop().create_future()
        # Failures are already logged by the worker; callers may never await
        future.add_done_callback(_retrieve_exception)
        self._queue.put_nowait((label, job, future))
        logger.info(f"Queued background task: {label}")
        return future

    async def stop(self) -> None:
        """Cancel the worker; queued jobs that never ran are cancelled too."""
        if self._worker is None:
            return
        self._worker.cancel()
        try:
            await self._worker
        except asyncio.CancelledError:
            pass
        while self._queue is not None and not self._queue.empty():
            _, _, future = self._queue.get_nowait()
            future.cancel()
        self._worker = None
        self._queue = None
        logger.info("Scrape task queue stopped")

    async def _work(self) -> None:
        while True:
            label, job, future = await self._queue.get()
            try:
                result = await job()
            except asyncio.CancelledError:
                future.cancel()
                raise
            except Exception as e:
                logger.exception(f"Background task failed: {label}")
                if not future.done():
                    future.set_exception(e)
            else:
                logger.info(f"Background task completed: {label}", extra={"result": _summarize(result)})
                if not future.done():
                    future.set_result(result)
            finally:
                self._queue.task_done()


def _retrieve_exception(future: asyncio.Future) -> None:
    if not future.cancelled():
        future.exception()


def _summarize(result: Any) -> Any:
    if isinstance(result, list):
        return [_summarize(item) for item in result]
    if hasattr(result, "model_dump"):
        return result.model_dump()
    return result
