"""Bounded-concurrency dispatcher for frame extraction jobs.

Requests are queued through `Dispatcher.submit` and admitted in FIFO order by a
single `Dispatcher.run` loop. Each admitted job holds one token from a shared
`TokenPool` while its extraction runs, so at most `pool.capacity` ffmpeg
processes are alive at once. Results come back through a one-shot
`ResultChannel` per job.

The queue is deliberately small (one slot by default): callers block in
`submit` until the loop picks up the previous job, which pushes backpressure
onto HTTP handlers instead of buffering unbounded work.
"""
import asyncio
import logging
from pathlib import Path
from typing import Any, Awaitable, Callable

from vidframe import frames
from vidframe.types import ExtractionCancelled, FrameError, Job, Result

DEFAULT_MAX_PROCESSES = 16
DEFAULT_QUEUE_SIZE = 1

Engine = Callable[[str, int, int, int, bool], Awaitable[bytes]]

log = logging.getLogger(__name__)


class TokenPool:
    """Counting semaphore that also records how many tokens are held."""

    def __init__(self, capacity: int = DEFAULT_MAX_PROCESSES):
        if capacity <= 0:
            raise ValueError(f"capacity must be positive, got {capacity}")
        self.capacity = capacity
        self.in_use = 0
        self.peak = 0
        self._sem = asyncio.BoundedSemaphore(capacity)

    async def acquire(self) -> None:
        await self._sem.acquire()
        self.in_use += 1
        self.peak = max(self.peak, self.in_use)

    def release(self) -> None:
        self.in_use -= 1
        self._sem.release()


class ResultChannel:
    """Single-slot handoff: at most one `send`, then `close`.

    `receive` returns the result, or None when the channel was closed without
    one (the job was never scheduled, or was dropped at shutdown).
    """

    def __init__(self):
        self._result: Result | None = None
        self._sent = False
        self._closed = False
        self._ready = asyncio.Event()

    @property
    def closed(self) -> bool:
        return self._closed

    def send(self, result: Result) -> None:
        if self._closed:
            raise RuntimeError("send on closed channel")
        if self._sent:
            raise RuntimeError("channel already holds a result")
        self._result = result
        self._sent = True
        self._ready.set()

    def close(self) -> None:
        self._closed = True
        self._ready.set()

    async def receive(self, *, cancel: asyncio.Event | None = None) -> Result | None:
        ready, _ = await _race(self._ready.wait(), cancel)
        if not ready:
            return None
        result, self._result = self._result, None
        return result


async def _race(
    aw: Awaitable[Any],
    *events: asyncio.Event | None,
    on_orphan: Callable[[Any], None] | None = None,
) -> tuple[bool, Any]:
    """Await `aw` unless one of `events` fires first.

    Returns (True, value) if `aw` completed, (False, None) otherwise. When `aw`
    already completed, that wins even if an event fired at the same time. If
    the caller is cancelled after `aw` completed, its value is handed to
    `on_orphan` when one is given and dropped otherwise.
    """
    task = asyncio.ensure_future(aw)
    waiters = [asyncio.ensure_future(e.wait()) for e in events if e is not None]
    try:
        await asyncio.wait([task, *waiters], return_when=asyncio.FIRST_COMPLETED)
    except asyncio.CancelledError:
        task.cancel()
        if task.done() and not task.cancelled() and task.exception() is None and on_orphan:
            on_orphan(task.result())
        raise
    finally:
        for w in waiters:
            w.cancel()
    if task.done():
        return True, task.result()
    task.cancel()
    return False, None


class Dispatcher:
    def __init__(
        self,
        pool: TokenPool | None = None,
        engine: Engine | None = None,
        queue_size: int = DEFAULT_QUEUE_SIZE,
    ):
        self.pool = pool or TokenPool()
        self._engine = engine or frames.extract
        self._queue: asyncio.Queue[Job] = asyncio.Queue(maxsize=max(queue_size, 1))
        self._stopping = asyncio.Event()
        self._active: set[asyncio.Task] = set()
        self._running = False
        self._drained = False

    async def submit(
        self,
        path: str | Path,
        index: int,
        width: int = 0,
        height: int = 0,
        thumbnail: bool = False,
        *,
        cancel: asyncio.Event | None = None,
    ) -> ResultChannel:
        """Queue a job and return the channel its result will arrive on.

        Blocks while the queue is full. If `cancel` fires or the dispatcher
        stops before the job is queued, the returned channel is already closed
        and the job is never run.
        """
        job = Job(str(path), index, width, height, thumbnail, ResultChannel())
        if self._stopping.is_set():
            job.channel.close()
            return job.channel

        # a put that lands after the caller was cancelled leaves a closed job for _admit to skip
        queued, _ = await _race(
            self._queue.put(job), self._stopping, cancel, on_orphan=lambda _: job.channel.close(),
        )
        if not queued:
            log.debug("Job for %s[%d] cancelled before it was queued", job.path, job.index)
            job.channel.close()
        elif self._drained:
            # landed after shutdown swept the queue
            self._close_queued()
        return job.channel

    def stop(self) -> None:
        """Stop admitting jobs and cancel running extractions; `run` returns once they finish."""
        self._stopping.set()

    async def run(self) -> None:
        if self._running:
            raise RuntimeError("dispatcher is already running")
        self._running = True
        log.info("Dispatcher started (max_processes=%d, queue_size=%d)", self.pool.capacity, self._queue.maxsize)
        try:
            async with asyncio.TaskGroup() as group:
                try:
                    await self._admit(group)
                finally:
                    self._stopping.set()
                    if self._active:
                        log.info("Draining %d running extraction(s)", len(self._active))
                    for task in list(self._active):
                        task.cancel()
        finally:
            self._drained = True
            self._close_queued()
            self._running = False
            log.info("Dispatcher stopped")

    async def _admit(self, group: asyncio.TaskGroup) -> None:
        while not self._stopping.is_set():
            got, job = await _race(self._queue.get(), self._stopping, on_orphan=self._abandon)
            if not got:
                return
            if job.channel.closed:
                continue

            try:
                acquired, _ = await _race(
                    self.pool.acquire(), self._stopping, on_orphan=lambda _: self.pool.release(),
                )
            except asyncio.CancelledError:
                self._abandon(job)
                raise
            if not acquired or self._stopping.is_set():
                if acquired:
                    self.pool.release()
                self._abandon(job)
                return

            log.debug("Admitted %s[%d] (%d/%d tokens in use)", job.path, job.index, self.pool.in_use, self.pool.capacity)
            task = group.create_task(self._execute(job))
            self._active.add(task)
            # runs even if the task is cancelled before it starts
            task.add_done_callback(lambda t, job=job: self._finish(job, t))

    async def _execute(self, job: Job) -> Result:
        try:
            data = await self._engine(job.path, job.index, job.width, job.height, job.thumbnail)
        except FrameError as exc:
            log.warning("Frame extraction failed: %s", exc)
            return Result(error=exc)
        except Exception as exc:
            log.exception("Unexpected failure extracting %s[%d]", job.path, job.index)
            return Result(error=exc)
        return Result(data=data)

    def _finish(self, job: Job, task: asyncio.Task) -> None:
        self._active.discard(task)
        try:
            if task.cancelled():
                result = Result(error=ExtractionCancelled(f"extraction of {job.path}[{job.index}] cancelled"))
            elif task.exception() is not None:
                result = Result(error=task.exception())
            else:
                result = task.result()
            job.channel.send(result)
        finally:
            job.channel.close()
            self.pool.release()

    def _abandon(self, job: Job) -> None:
        log.debug("Dropping unscheduled job for %s[%d]", job.path, job.index)
        job.channel.close()

    def _close_queued(self) -> None:
        while True:
            try:
                job = self._queue.get_nowait()
            except asyncio.QueueEmpty:
                return
            self._abandon(job)
