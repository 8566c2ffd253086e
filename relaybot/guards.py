import asyncio
import logging
import os
import time
from collections.abc import Callable
from pathlib import Path
from typing import Any

import psutil

from relaybot.config import Settings
from relaybot.formatting import format_bytes
from relaybot.tempfiles import TempDir

logger = logging.getLogger(__name__)

NORMAL = "normal"
WARNING = "warning"
CRITICAL = "critical"
EMERGENCY = "emergency"


def _exit_for_supervisor() -> None:
    logger.error("Exiting for supervisor restart...")
    logging.shutdown()
    os._exit(1)


class _PeriodicGuard:
    name = "guard"

    def __init__(self, interval: float):
        self.interval = interval
        self._task: asyncio.Task | None = None
        self._last_normal_log = 0.0

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    def check(self) -> str | None:
        raise NotImplementedError

    def start(self) -> None:
        if self.is_running:
            logger.warning("%s already running", self.name)
            return
        self._task = asyncio.create_task(self._run(), name=self.name)

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info("%s stopped", self.name)

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self.interval)
            try:
                self.check()
            except Exception:
                logger.exception("%s check failed", self.name)

    def _log_normal(self, every: float, message: str, *args: Any) -> None:
        now = time.monotonic()
        if not self._last_normal_log or now - self._last_normal_log > every:
            logger.debug(message, *args)
            self._last_normal_log = now


class MemoryGuard(_PeriodicGuard):
    """Watches resident memory of this process and sheds load as it climbs.

    warning: delete temp files older than 10 minutes.
    critical: clear the waiting queue and delete every temp file.
    emergency: the critical cleanup, then exit after a grace period so the
    process supervisor restarts us.
    """

    name = "Memory guard"

    def __init__(
        self,
        settings: Settings,
        temp_dir: TempDir,
        queue=None,
        sampler: Callable[[], int] | None = None,
        restart: Callable[[], None] = _exit_for_supervisor,
    ):
        super().__init__(settings.memory_check_interval)
        self.warning_threshold = settings.memory_warning_bytes
        self.critical_threshold = settings.memory_critical_bytes
        self.emergency_threshold = settings.memory_emergency_bytes
        self.grace = settings.emergency_grace
        self.temp_dir = temp_dir
        self.queue = queue
        self.restart = restart
        self._process = psutil.Process() if sampler is None else None
        self.sampler = sampler or self._rss
        self._restart_handle: asyncio.TimerHandle | None = None

    def _rss(self) -> int:
        return self._process.memory_info().rss

    def level_for(self, used: int) -> str:
        if used > self.emergency_threshold:
            return EMERGENCY
        if used > self.critical_threshold:
            return CRITICAL
        if used > self.warning_threshold:
            return WARNING
        return NORMAL

    def start(self) -> None:
        super().start()
        logger.info(
            "Memory guard started (warning %s, critical %s, emergency %s)",
            format_bytes(self.warning_threshold),
            format_bytes(self.critical_threshold),
            format_bytes(self.emergency_threshold),
        )

    def check(self) -> str:
        used = self.sampler()
        level = self.level_for(used)

        if level == EMERGENCY:
            logger.error("EMERGENCY: memory critically high: %s", format_bytes(used))
            self._clear_queue_and_temp("Dropped: emergency memory cleanup")
            self._schedule_restart()
        elif level == CRITICAL:
            logger.error("CRITICAL: memory usage very high: %s", format_bytes(used))
            self._clear_queue_and_temp("Dropped: memory pressure")
        elif level == WARNING:
            logger.warning("Memory usage elevated: %s", format_bytes(used))
            self.temp_dir.cleanup_older_than(10 * 60)
        else:
            self._log_normal(300, "Memory: %s resident", format_bytes(used))
        return level

    def _clear_queue_and_temp(self, reason: str) -> None:
        if self.queue is not None:
            cleared = self.queue.clear_queue(reason)
            logger.warning("Cleared %s item(s) from download queue", len(cleared))
        self.temp_dir.delete_all()

    def _schedule_restart(self) -> None:
        if self._restart_handle is not None:
            return
        logger.error("Initiating emergency restart in %.0fs...", self.grace)
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            self.restart()
            return
        self._restart_handle = loop.call_later(self.grace, self.restart)

    def status(self) -> dict[str, Any]:
        used = self.sampler()
        return {
            "rss": used,
            "warning_threshold": self.warning_threshold,
            "critical_threshold": self.critical_threshold,
            "emergency_threshold": self.emergency_threshold,
            "status": self.level_for(used),
        }


class DiskGuard(_PeriodicGuard):
    """Watches filesystem usage under the temp directory.

    Deletes temp files older than 30 minutes at warning, older than 10
    minutes at critical, and all of them at emergency.
    """

    name = "Disk guard"

    def __init__(
        self,
        settings: Settings,
        temp_dir: TempDir,
        sampler: Callable[[], Any] | None = None,
    ):
        super().__init__(settings.disk_check_interval)
        self.warning_threshold = settings.disk_warning_percent
        self.critical_threshold = settings.disk_critical_percent
        self.emergency_threshold = settings.disk_emergency_percent
        self.temp_dir = temp_dir
        self.sampler = sampler or self._usage

    def _usage(self):
        path = self.temp_dir.path if self.temp_dir.path.exists() else Path(self.temp_dir.path.anchor or "/")
        return psutil.disk_usage(str(path))

    def level_for(self, percent: float) -> str:
        if percent >= self.emergency_threshold:
            return EMERGENCY
        if percent >= self.critical_threshold:
            return CRITICAL
        if percent >= self.warning_threshold:
            return WARNING
        return NORMAL

    def start(self) -> None:
        super().start()
        logger.info(
            "Disk guard started (warning %s%%, critical %s%%, emergency %s%%)",
            self.warning_threshold,
            self.critical_threshold,
            self.emergency_threshold,
        )
        self.check()

    def _sample(self):
        try:
            return self.sampler()
        except OSError as err:
            logger.debug("Could not get disk usage: %s", err)
            return None

    def check(self) -> str | None:
        usage = self._sample()
        if usage is None:
            return None
        level = self.level_for(usage.percent)
        free = format_bytes(usage.free)

        if level == EMERGENCY:
            logger.error("EMERGENCY: disk usage critical: %s%% (%s free)", usage.percent, free)
            self.temp_dir.delete_all()
        elif level == CRITICAL:
            logger.error("CRITICAL: disk usage very high: %s%% (%s free)", usage.percent, free)
            self.temp_dir.cleanup_older_than(10 * 60)
        elif level == WARNING:
            logger.warning("Disk usage elevated: %s%% (%s free)", usage.percent, free)
            self.temp_dir.cleanup_older_than(30 * 60)
        else:
            self._log_normal(
                3600, "Disk: %s / %s (%s%%)", format_bytes(usage.used), format_bytes(usage.total), usage.percent
            )
        return level

    def status(self) -> dict[str, Any]:
        usage = self._sample()
        if usage is None:
            return {"available": False}
        return {
            "available": True,
            "total": usage.total,
            "used": usage.used,
            "free": usage.free,
            "usage": usage.percent,
            "status": self.level_for(usage.percent),
        }
