"""Background workers for periodic fleet jobs.

Handles stats polling, snapshot rollups, retention cleanup and optional
periodic fleet sync.
"""

from __future__ import annotations

import threading
import time
from typing import Any, Callable, Dict, Optional

from ..log import log
from ..pool.pool import ConnectionPool
from ..sync.orchestrator import SyncOrchestrator
from ..telemetry.collector import TelemetryCollector
from ..telemetry.snapshots import SnapshotService
from .config import Config

HOUR = 3600
DAY = 86400


class PeriodicWorker(threading.Thread):
    """Runs a job on a fixed interval or aligned to wall-clock boundaries.

    Args:
        name: Job name used in thread name and log lines
        job: Callable run each cycle
        interval: Seconds between runs (ignored when ``align`` is set)
        initial_delay: Seconds to wait before the first run
        align: Run at multiples of this many seconds since the epoch
        offset: Seconds past each aligned boundary to run at
        failure_threshold: Consecutive failures before pausing
        pause_duration: Length of the pause (seconds)
    """

    def __init__(
        self,
        name: str,
        job: Callable[[], Any],
        *,
        interval: float = 60,
        initial_delay: float = 0,
        align: Optional[int] = None,
        offset: float = 0,
        failure_threshold: int = 3,
        pause_duration: int = 300,
        clock: Callable[[], float] = time.time,
    ):
        super().__init__(name=f"{name}-worker", daemon=True)
        self.job_name = name
        self.job = job
        self.interval = max(1, interval)
        self.initial_delay = max(0, initial_delay)
        self.align = align
        self.offset = offset
        self._clock = clock
        self._stop_event = threading.Event()
        # Circuit breaker state
        self._consecutive_failures = 0
        self._failure_threshold = failure_threshold
        self._pause_duration = pause_duration
        self.runs = 0
        self.last_error: Optional[str] = None
        self.last_run_ts: Optional[float] = None

    @property
    def consecutive_failures(self) -> int:
        return self._consecutive_failures

    def seconds_until_next(self, now: Optional[float] = None) -> float:
        """Delay before the next run."""
        if not self.align:
            return self.interval
        now = self._clock() if now is None else now
        next_boundary = now - (now % self.align) + self.align + self.offset
        # Still inside the current boundary's offset window
        if next_boundary - self.align > now:
            next_boundary -= self.align
        return next_boundary - now

    def run(self) -> None:
        first = self.initial_delay if not self.align else self.seconds_until_next()
        log(f"[scheduler] {self.job_name}: first run in {round(first)}s")
        if self._stop_event.wait(first):
            return

        while not self._stop_event.is_set():
            if self._consecutive_failures >= self._failure_threshold:
                log(
                    f"[scheduler] {self.job_name}: circuit breaker open, "
                    f"{self._consecutive_failures} consecutive failures, "
                    f"pausing {self._pause_duration}s"
                )
                if self._stop_event.wait(self._pause_duration):
                    break
                self._consecutive_failures = 0

            self.run_once()
            if self._stop_event.wait(self.seconds_until_next()):
                break

        log(f"[scheduler] {self.job_name}: stopped")

    def run_once(self) -> bool:
        """Run the job now, recording success or failure."""
        self.last_run_ts = self._clock()
        self.runs += 1
        try:
            self.job()
        except Exception as exc:
            self._consecutive_failures += 1
            self.last_error = str(exc)
            log(
                f"[scheduler] {self.job_name} failed "
                f"(failure {self._consecutive_failures}/{self._failure_threshold}): {exc}"
            )
            return False
        self._consecutive_failures = 0
        self.last_error = None
        return True

    def stop(self) -> None:
        self._stop_event.set()


class FleetScheduler:
    """Owns the periodic workers for one fleet."""

    def __init__(
        self,
        config: Config,
        pool: ConnectionPool,
        orchestrator: SyncOrchestrator,
        collector: TelemetryCollector,
        snapshots: SnapshotService,
    ):
        self.config = config
        self.pool = pool
        self.orchestrator = orchestrator
        self.collector = collector
        self.snapshots = snapshots
        self._workers: Dict[str, PeriodicWorker] = {}

    def register(self, name: str, job: Callable[[], Any], **kwargs: Any) -> PeriodicWorker:
        """Register a job.

        Args:
            name: Unique job name
            job: Callable run each cycle
            **kwargs: Passed to PeriodicWorker

        Returns:
            The worker (not yet started)
        """
        worker = PeriodicWorker(name, job, **kwargs)
        self._workers[name] = worker
        return worker

    def poll_and_snapshot(self) -> None:
        self.collector.poll_all_stats()
        self.snapshots.save_fine_snapshot()

    def daily_maintenance(self) -> None:
        self.snapshots.save_daily_snapshot()
        self.snapshots.cleanup_snapshots()

    def register_defaults(self) -> None:
        """Register the standard fleet jobs from configuration."""
        telemetry = self.config.telemetry
        self.register(
            "stats",
            self.poll_and_snapshot,
            interval=telemetry.poll_interval,
            initial_delay=telemetry.warmup_delay,
        )
        self.register(
            "health",
            self.collector.health_check,
            interval=telemetry.health_interval,
            initial_delay=telemetry.warmup_delay,
        )
        # Offsets let the last fine/hourly point of the window land first
        self.register("hourly", self.snapshots.save_hourly_snapshot, align=HOUR, offset=60)
        self.register("daily", self.daily_maintenance, align=DAY, offset=300)
        if self.config.sync.interval > 0:
            self.register(
                "sync",
                self.orchestrator.sync_all,
                interval=self.config.sync.interval,
                initial_delay=self.config.sync.interval,
            )

    def start_all(self) -> None:
        """Start the pool maintenance thread and every registered worker."""
        self.pool.start()
        for name, worker in self._workers.items():
            if not worker.is_alive():
                log(f"[scheduler] Starting {name} worker")
                worker.start()

    def stop_all(self, timeout: float = 5.0) -> None:
        """Stop workers, let an in-flight sync finish its batch, close the pool."""
        self.orchestrator.request_stop()
        for worker in self._workers.values():
            worker.stop()
        for worker in self._workers.values():
            if worker.is_alive():
                worker.join(timeout=timeout)
        self.pool.close_all()

    def get_worker(self, name: str) -> Optional[PeriodicWorker]:
        return self._workers.get(name)

    def get_all_status(self) -> Dict[str, Any]:
        """Get status for all workers."""
        return {
            name: {
                "alive": worker.is_alive(),
                "runs": worker.runs,
                "last_run": worker.last_run_ts,
                "last_error": worker.last_error,
                "consecutive_failures": worker.consecutive_failures,
            }
            for name, worker in self._workers.items()
        }
