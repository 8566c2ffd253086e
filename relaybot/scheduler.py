import asyncio
import collections
import inspect
import logging
import time
from collections.abc import Awaitable, Callable
from typing import Any

from relaybot.config import Settings
from relaybot.errors import ExtractionError, QueueFullError, TransientExtractionError
from relaybot.models import Artifact, Job, JobStatus, ProgressCallback
from relaybot.platforms import classify
from relaybot.store import JobStore, empty_stats

logger = logging.getLogger(__name__)

QUEUE_ADDED = "queue:added"
QUEUE_DROPPED = "queue:dropped"
DOWNLOAD_START = "download:start"
DOWNLOAD_PROGRESS = "download:process"
DOWNLOAD_COMPLETE = "download:complete"
DOWNLOAD_ERROR = "download:error"
EVENTS = frozenset({QUEUE_ADDED, QUEUE_DROPPED, DOWNLOAD_START, DOWNLOAD_PROGRESS, DOWNLOAD_COMPLETE, DOWNLOAD_ERROR})

JobProcessor = Callable[[Job, ProgressCallback], Awaitable[Artifact]]
Reattach = Callable[[Job], Awaitable[bool]]


class DownloadQueue:
    """Bounded FIFO of download jobs feeding a bounded set of active downloads.

    A job lives in exactly one place at a time: the waiting queue, the active
    map, or a terminal row in the store. Every move between those places goes
    through this class and is mirrored to the store before returning.

    Retries re-enter at the head of the queue, so a flaky job is retried
    before older jobs that were never attempted. While a retry waits out its
    backoff the job keeps its active slot.
    """

    def __init__(
        self,
        settings: Settings,
        store: JobStore,
        processor: JobProcessor,
        clock: Callable[[], float] = time.time,
    ):
        self.settings = settings
        self.store = store
        self.processor = processor
        self.clock = clock
        self._queue: collections.deque[Job] = collections.deque()
        self._active: dict[str, Job] = {}
        self._tasks: dict[str, asyncio.Task] = {}
        self._retry_timers: dict[str, asyncio.Task] = {}
        self._listeners: dict[str, list[Callable[..., Any]]] = collections.defaultdict(list)
        self._listener_tasks: set[asyncio.Task] = set()
        self._recovered_tags: set[str] = set()
        self._draining = False
        self._rerun = False
        self._closed = False
        self.paused_for_recovery = False
        self.stats: dict[str, Any] = {**empty_stats(), "start_time": self.clock()}
        self._bootstrap_from_store()

    # -------------------------
    # Events
    # -------------------------
    def subscribe(self, event: str, callback: Callable[..., Any]) -> None:
        if event not in EVENTS:
            raise ValueError(f"Unknown queue event: {event}")
        self._listeners[event].append(callback)

    def unsubscribe(self, event: str, callback: Callable[..., Any]) -> None:
        listeners = self._listeners.get(event, [])
        if callback in listeners:
            listeners.remove(callback)

    def _emit(self, event: str, *args: Any) -> None:
        for callback in list(self._listeners.get(event, ())):
            try:
                result = callback(*args)
            except Exception:
                logger.exception("Listener for %s failed", event)
                continue
            if inspect.isawaitable(result):
                task = asyncio.ensure_future(result)
                self._listener_tasks.add(task)
                task.add_done_callback(self._listener_done)

    def _listener_done(self, task: asyncio.Task) -> None:
        self._listener_tasks.discard(task)
        if task.cancelled():
            return
        err = task.exception()
        if err is not None:
            logger.error("Queue listener failed: %s", err, exc_info=err)

    # -------------------------
    # Recovery
    # -------------------------
    def _bootstrap_from_store(self) -> None:
        pending = self.store.load_pending()
        kept: list[Job] = []
        dropped = 0
        for job in pending:
            if job.retry_count > self.settings.max_retries:
                dropped += 1
                logger.warning(
                    "[%s] Dropping persisted job over the retry limit (%s/%s)",
                    job.tag,
                    job.retry_count,
                    self.settings.max_retries,
                )
                self.store.mark_failed(job.tag, "Exceeded retry limit before restart", self.clock())
                continue
            kept.append(job)

        if kept:
            self._queue.extend(kept)
            self._recovered_tags = {job.tag for job in kept}
            self.paused_for_recovery = True
            logger.info("Loaded %s queued download(s) from persistence", len(kept))
        if dropped:
            logger.warning("Dropped %s persisted download(s) that exceeded retry limit", dropped)

        summary = self.store.stats_summary()
        for key in ("total_downloads", "successful_downloads", "failed_downloads", "total_bytes", "by_platform"):
            self.stats[key] = summary[key]

    async def resume(self, reattach: Reattach | None = None) -> list[Job]:
        """Re-attach caller context to recovered jobs, then start scheduling.

        ``reattach`` returns True when the job's delivery context is usable
        again. Jobs it rejects (or raises for) are failed and dropped.
        """
        dropped: list[Job] = []
        if not self.paused_for_recovery:
            return dropped

        if reattach is not None:
            for job in [job for job in self._queue if job.tag in self._recovered_tags]:
                try:
                    usable = await reattach(job)
                except Exception as err:
                    logger.warning("[%s] Unable to re-attach delivery context: %s", job.tag, err)
                    usable = False
                if usable:
                    continue
                if job in self._queue:
                    self._queue.remove(job)
                    self._drop(job, "Status message missing after restart")
                    dropped.append(job)

        self._recovered_tags.clear()
        self.paused_for_recovery = False
        logger.info("Resuming download queue (%s queued, %s dropped)", len(self._queue), len(dropped))
        self._schedule()
        return dropped

    # -------------------------
    # Admission
    # -------------------------
    def submit(self, url: str, platform: str | None = None, caller_context: dict[str, Any] | None = None) -> Job:
        if self._closed:
            raise QueueFullError("Download queue is shutting down")
        if len(self._queue) >= self.settings.max_queue_size:
            logger.warning("Queue is full, rejecting new download: %s", url)
            raise QueueFullError(f"Queue is full ({len(self._queue)}/{self.settings.max_queue_size})")

        job = Job(
            url=url,
            platform=platform or classify(url).platform.value,
            created_at=self.clock(),
            caller_context=dict(caller_context or {}),
        )
        self.store.save(job)
        self._queue.append(job)
        logger.info("[%s] Added to queue (%s/%s)", job.tag, len(self._queue), self.settings.max_queue_size)
        self._emit(QUEUE_ADDED, job)
        self._schedule()
        return job

    def admit(self, url: str, platform: str | None = None, caller_context: dict[str, Any] | None = None) -> Job | None:
        try:
            return self.submit(url, platform=platform, caller_context=caller_context)
        except QueueFullError:
            return None

    # -------------------------
    # Scheduling
    # -------------------------
    def _schedule(self) -> None:
        if self.paused_for_recovery or self._closed:
            return
        if self._draining:
            self._rerun = True
            return
        self._draining = True
        try:
            while True:
                self._rerun = False
                while self._queue and len(self._active) < self.settings.max_concurrent:
                    self._start(self._queue.popleft())
                if not self._rerun:
                    break
        except Exception:
            logger.exception("Queue processing error")
        finally:
            self._draining = False

    def _platform_stats(self, platform: str) -> dict[str, int]:
        return self.stats["by_platform"].setdefault(platform, {"total": 0, "success": 0, "failed": 0})

    def _start(self, job: Job) -> None:
        job.status = JobStatus.DOWNLOADING
        job.started_at = self.clock()
        job.completed_at = None
        self.store.mark_active(job.tag, job.started_at)
        self._active[job.tag] = job

        self.stats["total_downloads"] += 1
        self._platform_stats(job.platform)["total"] += 1

        logger.info("[%s] Starting download (attempt %s): %s", job.tag, job.retry_count + 1, job.url)
        self._emit(DOWNLOAD_START, job)
        task = asyncio.create_task(self._run(job), name=f"download-{job.tag}")
        self._tasks[job.tag] = task
        task.add_done_callback(lambda done, tag=job.tag: self._forget_task(tag, done))

    def _forget_task(self, tag: str, task: asyncio.Task) -> None:
        if self._tasks.get(tag) is task:
            del self._tasks[tag]

    async def _run(self, job: Job) -> None:
        def on_progress(percent: float) -> None:
            self._emit(DOWNLOAD_PROGRESS, job, percent)

        try:
            artifact = await self.processor(job, on_progress)
        except ExtractionError as err:
            self._fail(job, err)
        except Exception as err:
            logger.exception("[%s] Unexpected download failure", job.tag)
            self._fail(job, TransientExtractionError(f"Unexpected download failure: {err}", strategy="unknown"))
        else:
            self._complete(job, artifact)

    def _complete(self, job: Job, artifact: Artifact) -> None:
        if self._active.get(job.tag) is not job:
            logger.warning("[%s] Finished after being abandoned, ignoring result", job.tag)
            return
        job.status = JobStatus.COMPLETED
        job.completed_at = self.clock()
        job.result_size = artifact.size
        job.error_message = None

        self.stats["successful_downloads"] += 1
        self.stats["total_bytes"] += artifact.size or 0
        self._platform_stats(job.platform)["success"] += 1

        self.store.mark_completed(job.tag, artifact.size, job.completed_at)
        del self._active[job.tag]
        logger.info("[%s] Download completed successfully via %s", job.tag, artifact.strategy)
        self._emit(DOWNLOAD_COMPLETE, job, artifact)
        self._schedule()

    def backoff_delay(self, retry_count: int) -> float:
        return min(self.settings.retry_base_delay * (2 ** retry_count), self.settings.retry_max_delay)

    def _fail(self, job: Job, error: ExtractionError) -> None:
        if self._active.get(job.tag) is not job:
            logger.warning("[%s] Failed after being abandoned: %s", job.tag, error)
            return

        if not error.permanent and job.retry_count < self.settings.max_retries:
            delay = self.backoff_delay(job.retry_count)
            job.retry_count += 1
            job.status = JobStatus.QUEUED
            job.error_message = str(error)
            self.store.update_retry_count(job.tag, job.retry_count)
            if self._closed:
                # Persisted as queued; the next start picks it up.
                del self._active[job.tag]
                return
            logger.warning(
                "[%s] Retrying download in %.1fs (attempt %s/%s): %s",
                job.tag,
                delay,
                job.retry_count,
                self.settings.max_retries,
                error,
            )
            self._retry_timers[job.tag] = asyncio.create_task(
                self._requeue_after(job, delay), name=f"retry-{job.tag}"
            )
            return

        job.status = JobStatus.FAILED
        job.completed_at = self.clock()
        job.error_message = str(error)
        self.stats["failed_downloads"] += 1
        self._platform_stats(job.platform)["failed"] += 1
        self.store.mark_failed(job.tag, str(error), job.completed_at)
        del self._active[job.tag]
        logger.error(
            "[%s] Download failed permanently (permanent=%s, retries=%s): %s",
            job.tag,
            error.permanent,
            job.retry_count,
            error,
        )
        self._emit(DOWNLOAD_ERROR, job, error)
        self._schedule()

    async def _requeue_after(self, job: Job, delay: float) -> None:
        try:
            await asyncio.sleep(delay)
        finally:
            if self._retry_timers.get(job.tag) is asyncio.current_task():
                del self._retry_timers[job.tag]
        if self._active.get(job.tag) is not job:
            return
        del self._active[job.tag]
        self._queue.appendleft(job)
        self._schedule()

    # -------------------------
    # Load shedding and introspection
    # -------------------------
    def _drop(self, job: Job, reason: str) -> None:
        job.status = JobStatus.FAILED
        job.completed_at = self.clock()
        job.error_message = reason
        self.stats["failed_downloads"] += 1
        self._platform_stats(job.platform)["failed"] += 1
        self.store.mark_failed(job.tag, reason, job.completed_at)
        self._emit(QUEUE_DROPPED, job, reason)

    def clear_queue(self, reason: str = "Dropped from queue") -> list[Job]:
        """Drop every waiting job; active downloads are untouched."""
        dropped = list(self._queue)
        self._queue.clear()
        for job in dropped:
            self._drop(job, reason)
        logger.info("Cleared %s items from queue", len(dropped))
        return dropped

    @property
    def queued_jobs(self) -> list[Job]:
        return list(self._queue)

    @property
    def active_jobs(self) -> dict[str, Job]:
        return dict(self._active)

    @property
    def is_closed(self) -> bool:
        return self._closed

    def get_stats(self) -> dict[str, Any]:
        total = self.stats["total_downloads"]
        success = self.stats["successful_downloads"]
        return {
            **self.stats,
            "by_platform": {name: dict(counts) for name, counts in self.stats["by_platform"].items()},
            "uptime": self.clock() - self.stats["start_time"],
            "queue_size": len(self._queue),
            "active_downloads": len(self._active),
            "success_rate": f"{success / total * 100:.2f}%" if total else "0%",
        }

    def get_queue_status(self) -> dict[str, Any]:
        return {
            "size": len(self._queue),
            "max_size": self.settings.max_queue_size,
            "active": len(self._active),
            "max_concurrent": self.settings.max_concurrent,
            "paused": self.paused_for_recovery,
            "items": [job.summary() for job in self._queue],
        }

    # -------------------------
    # Shutdown
    # -------------------------
    async def shutdown(self, timeout: float | None = None) -> None:
        timeout = self.settings.shutdown_timeout if timeout is None else timeout
        logger.info("Shutting down download queue...")
        self._closed = True

        # Waiting jobs keep their queued rows and are recovered on the next start.
        self._queue.clear()
        for tag, timer in list(self._retry_timers.items()):
            timer.cancel()
            self._active.pop(tag, None)
        self._retry_timers.clear()

        pending = [task for task in self._tasks.values() if not task.done()]
        if pending:
            logger.info("Waiting for %s active download(s)...", len(pending))
            _, still_running = await asyncio.wait(pending, timeout=timeout)
            if still_running:
                logger.warning("Forcing shutdown of download queue, abandoning %s download(s)", len(still_running))
                for task in still_running:
                    task.cancel()
                await asyncio.gather(*still_running, return_exceptions=True)
        self._active.clear()

        if self._listener_tasks:
            await asyncio.wait(list(self._listener_tasks), timeout=timeout or None)
        self._listeners.clear()
        logger.info("Download queue shutdown complete")
