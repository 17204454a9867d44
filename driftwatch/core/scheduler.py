"""
Periodic Jobs
-------------
This module provides the periodic job runner used for the engine's
live-state resync, with run history and statistics.

Features:
- Asynchronous scheduling using asyncio
- Configurable intervals with jitter
- Bounded job history and run statistics
"""

import asyncio
import logging
import random
from collections import deque
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, Deque, Dict, Optional

logger = logging.getLogger(__name__)

MAX_JOB_HISTORY = 100
JITTER_FACTOR = 0.1


class JobStatus(str, Enum):
    """Status of an individual job run."""
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"


def _now() -> datetime:
    return datetime.now(timezone.utc)


class PeriodicJob:
    """An async callable run on a fixed interval until stopped."""

    def __init__(
        self,
        name: str,
        func: Callable[[], Awaitable[Any]],
        interval_seconds: float,
        run_immediately: bool = True,
        on_failure: Optional[Callable[[Exception], None]] = None,
    ):
        self.name = name
        self.func = func
        self.interval_seconds = interval_seconds
        self.run_immediately = run_immediately
        self.on_failure = on_failure
        self.history: Deque[Dict[str, Any]] = deque(maxlen=MAX_JOB_HISTORY)
        self.stats: Dict[str, Any] = {
            "total_runs": 0,
            "successful_runs": 0,
            "failed_runs": 0,
            "consecutive_failures": 0,
            "last_run_time": None,
            "last_success_time": None,
            "last_failure_time": None,
            "average_duration": 0.0,
        }
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def run_once(self) -> bool:
        """
        Execute the job a single time, recording history and statistics.

        Returns:
            True if the run succeeded
        """
        record = {"name": self.name, "status": JobStatus.RUNNING, "start_time": _now(),
                  "end_time": None, "duration": None, "error": None}
        self.history.append(record)
        self.stats["total_runs"] += 1

        try:
            await self.func()
        except asyncio.CancelledError:
            record["status"] = JobStatus.CANCELLED
            raise
        except Exception as e:
            self._finish(record, JobStatus.FAILED, error=e)
            logger.error(f"Job {self.name} failed: {str(e)}")
            if self.on_failure:
                self.on_failure(e)
            return False

        self._finish(record, JobStatus.SUCCEEDED)
        logger.debug(f"Job {self.name} succeeded in {record['duration']:.2f}s")
        return True

    def _finish(self, record: Dict[str, Any], status: JobStatus, error: Optional[Exception] = None) -> None:
        end_time = _now()
        duration = (end_time - record["start_time"]).total_seconds()
        record.update(status=status, end_time=end_time, duration=duration,
                      error=str(error) if error else None)
        self.stats["last_run_time"] = end_time

        if self.stats["average_duration"] == 0:
            self.stats["average_duration"] = duration
        else:
            self.stats["average_duration"] = self.stats["average_duration"] * 0.9 + duration * 0.1

        if status == JobStatus.SUCCEEDED:
            self.stats["successful_runs"] += 1
            self.stats["consecutive_failures"] = 0
            self.stats["last_success_time"] = end_time
        else:
            self.stats["failed_runs"] += 1
            self.stats["consecutive_failures"] += 1
            self.stats["last_failure_time"] = end_time

    async def _loop(self) -> None:
        logger.info(f"Scheduled job {self.name} starting with interval of {self.interval_seconds}s")
        first = True
        while True:
            if not first or self.run_immediately:
                await self.run_once()
            first = False
            jitter = self.interval_seconds * JITTER_FACTOR * random.random()
            await asyncio.sleep(self.interval_seconds + jitter)

    def start(self) -> None:
        if self.running:
            logger.warning(f"Job {self.name} is already running")
            return
        self._task = asyncio.create_task(self._loop(), name=f"job:{self.name}")

    async def stop(self) -> None:
        if not self.running:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            logger.info(f"Job {self.name} cancelled")
        self._task = None
