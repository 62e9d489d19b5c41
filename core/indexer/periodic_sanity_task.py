"""
Periodic reconciliation scheduler.

Runs the drift detector for every entity type on a fixed interval as the
correctness backstop for events the incremental path missed.
"""

import asyncio
import logging
import os
import time
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Dict, Optional

from .drift import DriftDetector
from ..models.config import SchedulerConfig

logger = logging.getLogger(__name__)


class TaskStatus(Enum):
    """Status of the reconcile scheduler."""
    STOPPED = "stopped"
    RUNNING = "running"
    PAUSED = "paused"
    ERROR = "error"


@dataclass
class TaskConfig:
    """Configuration for the reconcile scheduler."""
    # Timing configuration
    interval_minutes: float = 5.0
    initial_delay_seconds: float = 30.0
    max_retry_attempts: int = 3
    retry_delay_seconds: float = 30.0

    # Reconcile configuration
    wait_for_writes: bool = False
    max_execution_time_minutes: float = 15.0

    # Error handling
    continue_on_error: bool = True
    max_consecutive_failures: int = 5

    @classmethod
    def from_scheduler_config(cls, config: SchedulerConfig) -> 'TaskConfig':
        return cls(
            interval_minutes=config.interval_minutes,
            initial_delay_seconds=config.initial_delay_seconds,
            # One attempt plus the configured retries
            max_retry_attempts=config.max_retries + 1,
            retry_delay_seconds=config.retry_delay_seconds,
            wait_for_writes=config.wait_for_writes,
            max_execution_time_minutes=config.max_execution_time_minutes
        )

    @classmethod
    def from_env(cls, prefix: str = "RECONCILE_TASK_") -> 'TaskConfig':
        """Create config from environment variables."""
        return cls(
            interval_minutes=float(os.environ.get(f'{prefix}INTERVAL_MINUTES', '5')),
            initial_delay_seconds=float(os.environ.get(f'{prefix}INITIAL_DELAY_SECONDS', '30')),
            max_retry_attempts=int(os.environ.get(f'{prefix}MAX_RETRIES', '3')),
            retry_delay_seconds=float(os.environ.get(f'{prefix}RETRY_DELAY', '30')),
            wait_for_writes=os.environ.get(f'{prefix}WAIT_FOR_WRITES', 'false').lower() == 'true',
            max_execution_time_minutes=float(os.environ.get(f'{prefix}MAX_EXECUTION_MINUTES', '15')),
            continue_on_error=os.environ.get(f'{prefix}CONTINUE_ON_ERROR', 'true').lower() == 'true',
            max_consecutive_failures=int(os.environ.get(f'{prefix}MAX_CONSECUTIVE_FAILURES', '5'))
        )


@dataclass
class TaskMetrics:
    """Metrics for reconcile runs."""
    total_runs: int = 0
    successful_runs: int = 0
    failed_runs: int = 0
    consecutive_failures: int = 0
    resyncs_triggered: int = 0
    last_run_time: Optional[datetime] = None
    last_success_time: Optional[datetime] = None
    last_failure_time: Optional[datetime] = None
    last_execution_duration_seconds: float = 0.0
    average_execution_time_seconds: float = 0.0
    total_execution_time_seconds: float = 0.0

    def _record_run(self, execution_time: float) -> None:
        self.total_runs += 1
        self.last_run_time = datetime.now()
        self.last_execution_duration_seconds = execution_time
        self.total_execution_time_seconds += execution_time
        self.average_execution_time_seconds = self.total_execution_time_seconds / self.total_runs

    def update_success(self, execution_time: float, resyncs: int = 0) -> None:
        """Update metrics for successful run."""
        self._record_run(execution_time)
        self.successful_runs += 1
        self.consecutive_failures = 0
        self.resyncs_triggered += resyncs
        self.last_success_time = self.last_run_time

    def update_failure(self, execution_time: float) -> None:
        """Update metrics for failed run."""
        self._record_run(execution_time)
        self.failed_runs += 1
        self.consecutive_failures += 1
        self.last_failure_time = self.last_run_time

    @property
    def success_rate(self) -> float:
        """Calculate success rate percentage."""
        if self.total_runs == 0:
            return 0.0
        return (self.successful_runs / self.total_runs) * 100.0

    def to_dict(self) -> Dict[str, Any]:
        """Convert metrics to dictionary."""
        return {
            "total_runs": self.total_runs,
            "successful_runs": self.successful_runs,
            "failed_runs": self.failed_runs,
            "consecutive_failures": self.consecutive_failures,
            "resyncs_triggered": self.resyncs_triggered,
            "success_rate_percent": self.success_rate,
            "last_run_time": self.last_run_time.isoformat() if self.last_run_time else None,
            "last_success_time": self.last_success_time.isoformat() if self.last_success_time else None,
            "last_failure_time": self.last_failure_time.isoformat() if self.last_failure_time else None,
            "last_execution_duration_seconds": self.last_execution_duration_seconds,
            "average_execution_time_seconds": self.average_execution_time_seconds,
            "total_execution_time_seconds": self.total_execution_time_seconds
        }


class ReconcileScheduler:
    """
    Asyncio-based scheduler running ``DriftDetector.reconcile_all``.

    A run fails when any entity type fails to reconcile; failed runs are
    retried after ``retry_delay_seconds`` up to ``max_retry_attempts`` times.
    Output is logs and metrics only.
    """

    def __init__(self, detector: DriftDetector, config: Optional[TaskConfig] = None):
        """
        Initialize reconcile scheduler.

        Args:
            detector: Drift detector to run
            config: Task configuration (uses defaults if None)
        """
        self.detector = detector
        self.config = config or TaskConfig()

        # State management
        self.status = TaskStatus.STOPPED
        self._task: Optional[asyncio.Task] = None
        self._shutdown_event = asyncio.Event()
        self._pause_event = asyncio.Event()

        self.metrics = TaskMetrics()
        self._last_error: Optional[str] = None
        self._last_results: Dict[str, Any] = {}
        self._start_time: Optional[datetime] = None

        self._lifecycle_lock = asyncio.Lock()

        logger.info(
            f"Initialized reconcile scheduler (interval: {self.config.interval_minutes}min, "
            f"initial_delay: {self.config.initial_delay_seconds}s)"
        )

    async def start(self) -> bool:
        """
        Start the scheduler.

        Returns:
            True if started, False if it was not stopped
        """
        async with self._lifecycle_lock:
            if self.status != TaskStatus.STOPPED:
                logger.warning(f"Reconcile scheduler is already {self.status.value}")
                return False

            self._shutdown_event.clear()
            self._pause_event.set()  # Start unpaused
            self._task = asyncio.create_task(self._run_periodic_task())
            self.status = TaskStatus.RUNNING
            self._start_time = datetime.now()

            logger.info("Started reconcile scheduler")
            return True

    async def stop(self) -> None:
        """Stop the scheduler and cancel any run in progress."""
        async with self._lifecycle_lock:
            if self.status == TaskStatus.STOPPED:
                logger.debug("Reconcile scheduler is already stopped")
                return

            logger.info("Stopping reconcile scheduler...")
            self._shutdown_event.set()
            self._pause_event.set()
            self.status = TaskStatus.STOPPED

            if self._task and not self._task.done():
                self._task.cancel()
                try:
                    await asyncio.wait_for(self._task, timeout=5.0)
                except (asyncio.CancelledError, asyncio.TimeoutError):
                    logger.debug("Background task cancelled or timed out during shutdown")

            self._task = None
            logger.info("Reconcile scheduler stopped")

    async def pause(self) -> None:
        """Pause the scheduler after the current run."""
        if self.status == TaskStatus.RUNNING:
            self._pause_event.clear()
            self.status = TaskStatus.PAUSED
            logger.info("Reconcile scheduler paused")

    async def resume(self) -> None:
        """Resume a paused scheduler."""
        if self.status == TaskStatus.PAUSED:
            self._pause_event.set()
            self.status = TaskStatus.RUNNING
            logger.info("Reconcile scheduler resumed")

    async def trigger_immediate_run(self) -> Dict[str, Any]:
        """
        Reconcile now, outside the regular schedule and without retries.

        Returns:
            Dictionary with execution results
        """
        logger.info("Triggering immediate reconcile...")
        start_time = time.perf_counter()

        try:
            result = await self._execute_reconcile()
        except asyncio.TimeoutError:
            execution_time = time.perf_counter() - start_time
            error_msg = f"Immediate reconcile timed out after {self.config.max_execution_time_minutes} minutes"
            logger.error(error_msg)
            self._last_error = error_msg
            self.metrics.update_failure(execution_time)
            return {"success": False, "error": error_msg, "execution_time_seconds": execution_time}

        execution_time = time.perf_counter() - start_time
        if result["success"]:
            self.metrics.update_success(execution_time, result["resyncs"])
            logger.info(f"Immediate reconcile completed in {execution_time:.2f}s")
        else:
            self._last_error = result["error"]
            self.metrics.update_failure(execution_time)
            logger.error(f"Immediate reconcile failed: {result['error']}")

        return {
            "success": result["success"],
            "error": result.get("error"),
            "execution_time_seconds": execution_time,
            "result": result["entities"]
        }

    def next_run_time(self) -> Optional[datetime]:
        """Next scheduled run, None unless running"""
        if self.status != TaskStatus.RUNNING or not self._start_time:
            return None

        time_since_start = datetime.now() - self._start_time
        initial_delay = timedelta(seconds=self.config.initial_delay_seconds)
        interval = timedelta(minutes=self.config.interval_minutes)

        if time_since_start < initial_delay:
            return self._start_time + initial_delay
        elapsed_since_initial = time_since_start - initial_delay
        intervals_completed = int(elapsed_since_initial.total_seconds() // interval.total_seconds())
        return self._start_time + initial_delay + (interval * (intervals_completed + 1))

    def get_status(self) -> Dict[str, Any]:
        """Get current scheduler status and metrics."""
        next_run_time = self.next_run_time()
        return {
            "status": self.status.value,
            "start_time": self._start_time.isoformat() if self._start_time else None,
            "next_run_time": next_run_time.isoformat() if next_run_time else None,
            "last_error": self._last_error,
            "last_results": self._last_results,
            "config": {
                "interval_minutes": self.config.interval_minutes,
                "initial_delay_seconds": self.config.initial_delay_seconds,
                "max_retry_attempts": self.config.max_retry_attempts,
                "max_execution_time_minutes": self.config.max_execution_time_minutes,
                "wait_for_writes": self.config.wait_for_writes,
                "continue_on_error": self.config.continue_on_error,
                "max_consecutive_failures": self.config.max_consecutive_failures
            },
            "metrics": self.metrics.to_dict()
        }

    async def _wait_for_shutdown(self, timeout: float) -> bool:
        """Sleep up to timeout; True if shutdown was requested meanwhile"""
        try:
            await asyncio.wait_for(self._shutdown_event.wait(), timeout=timeout)
            return True
        except asyncio.TimeoutError:
            return False

    async def _run_periodic_task(self) -> None:
        """Main background loop."""
        logger.info(f"Waiting {self.config.initial_delay_seconds}s before first reconcile...")
        if await self._wait_for_shutdown(self.config.initial_delay_seconds):
            return

        while not self._shutdown_event.is_set():
            try:
                await self._pause_event.wait()
                if self._shutdown_event.is_set():
                    break

                await self._execute_with_retries()

                if (self.metrics.consecutive_failures >= self.config.max_consecutive_failures and
                        not self.config.continue_on_error):
                    error_msg = f"Stopping scheduler after {self.metrics.consecutive_failures} consecutive failures"
                    logger.error(error_msg)
                    self._last_error = error_msg
                    self.status = TaskStatus.ERROR
                    break

                if await self._wait_for_shutdown(self.config.interval_minutes * 60):
                    break

            except asyncio.CancelledError:
                logger.debug("Reconcile task cancelled")
                break

    async def _execute_with_retries(self) -> None:
        """Run one reconcile, retrying failed attempts."""
        attempts = max(1, self.config.max_retry_attempts)

        for attempt in range(attempts):
            start_time = time.perf_counter()
            try:
                result = await self._execute_reconcile()
                error_msg = result.get("error")
            except asyncio.TimeoutError:
                result = None
                error_msg = f"Reconcile timed out after {self.config.max_execution_time_minutes} minutes"

            execution_time = time.perf_counter() - start_time
            if result is not None and result["success"]:
                self.metrics.update_success(execution_time, result["resyncs"])
                logger.info(
                    f"Reconcile completed in {execution_time:.2f}s "
                    f"(attempt {attempt + 1}/{attempts}, {result['resyncs']} resyncs)"
                )
                return

            logger.warning(f"Reconcile failed: {error_msg} (attempt {attempt + 1}/{attempts})")
            if attempt == attempts - 1:
                self.metrics.update_failure(execution_time)
                self._last_error = error_msg
                logger.error(f"All {attempts} reconcile attempts failed")
                return

            if await self._wait_for_shutdown(self.config.retry_delay_seconds):
                return

    async def _execute_reconcile(self) -> Dict[str, Any]:
        """
        Run reconcile_all bounded by the max execution time.

        Raises:
            asyncio.TimeoutError: Run exceeded max_execution_time_minutes
        """
        results = await asyncio.wait_for(
            self.detector.reconcile_all(wait=self.config.wait_for_writes),
            timeout=self.config.max_execution_time_minutes * 60
        )

        entities = {entity.value: result.to_dict() for entity, result in results.items()}
        self._last_results = entities
        failed = [entity.value for entity, result in results.items() if not result.success]
        resyncs = sum(1 for result in results.values() if result.status == "synced_now")

        summary: Dict[str, Any] = {
            "success": not failed,
            "resyncs": resyncs,
            "entities": entities,
        }
        if failed:
            summary["error"] = f"Reconcile failed for: {', '.join(failed)}"
        return summary
