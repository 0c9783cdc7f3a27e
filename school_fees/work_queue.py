import asyncio
import logging
from typing import Awaitable, Callable, List, Optional

from school_fees.exceptions import QueueClosedError

logger = logging.getLogger(__name__)

Job = Callable[[], Awaitable[object]]


class BoundedWorkQueue:
    """
    FIFO job queue drained by a fixed number of asyncio workers.

    At most ``concurrency`` jobs run at the same time; the rest wait in
    submission order. A failing job is logged and counted, and never stops
    the workers.
    """

    def __init__(self, concurrency: int = 2, name: str = "work-queue"):
        if concurrency < 1:
            raise ValueError("concurrency must be at least 1")
        self.concurrency = concurrency
        self.name = name
        self._queue: "asyncio.Queue[Optional[Job]]" = asyncio.Queue()
        self._workers: List[asyncio.Task] = []
        self._closed = False
        self.running = 0
        self.completed = 0
        self.failed = 0

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    def start(self) -> None:
        if self._workers:
            return
        for index in range(self.concurrency):
            self._workers.append(
                asyncio.create_task(self._worker(index), name=f"{self.name}-worker-{index}")
            )
        logger.info("Started %s with %d workers", self.name, self.concurrency)

    def submit(self, job: Job) -> None:
        if self._closed:
            raise QueueClosedError(f"{self.name} is shut down and no longer accepts jobs")
        self._queue.put_nowait(job)

    async def join(self) -> None:
        await self._queue.join()

    async def shutdown(self, timeout: Optional[float] = None) -> None:
        self._closed = True
        if not self._workers:
            return

        try:
            await asyncio.wait_for(self._queue.join(), timeout=timeout)
        except asyncio.TimeoutError:
            logger.warning(
                "%s: %d jobs still running and %d queued after %.1fs, cancelling workers",
                self.name, self.running, self.pending, timeout,
            )
            for worker in self._workers:
                worker.cancel()
        else:
            # One sentinel per worker, each exits after taking it
            for _ in self._workers:
                self._queue.put_nowait(None)

        await asyncio.gather(*self._workers, return_exceptions=True)
        self._workers.clear()
        logger.info("%s stopped (completed=%d failed=%d)", self.name, self.completed, self.failed)

    async def _worker(self, index: int) -> None:
        while True:
            job = await self._queue.get()
            if job is None:
                self._queue.task_done()
                return

            self.running += 1
            try:
                await job()
                self.completed += 1
            except Exception:
                self.failed += 1
                logger.exception("%s worker %d: job raised", self.name, index)
            finally:
                self.running -= 1
                self._queue.task_done()
