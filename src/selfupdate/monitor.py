"""
System resource monitoring with psutil.

- SystemResourceMonitor.check_system_resources: compare memory, disk and CPU
  against thresholds before an update
- ResourceSampler: background asyncio task sampling resources during a run,
  reporting peaks and averages when stopped
"""

from __future__ import annotations

import asyncio
import time
from pathlib import Path
from typing import TYPE_CHECKING, Any

import psutil

from selfupdate.logging import get_logger
from selfupdate.updates.collaborators import (
    MonitoringSession,
    ResourceCheck,
    ResourceMonitor,
)
from selfupdate.updates.operations import nearest_existing_ancestor

if TYPE_CHECKING:
    from selfupdate.config import MonitorConfig

logger = get_logger(__name__)

MB = 1024 * 1024

# Metric names
METRIC_CPU_PERCENT = "cpu_percent"
METRIC_MEMORY_PERCENT = "memory_percent"
METRIC_MEMORY_AVAILABLE_MB = "memory_available_mb"
METRIC_DISK_PERCENT = "disk_percent"
METRIC_DISK_FREE_MB = "disk_free_mb"


def collect_metrics(disk_path: str = "/", cpu_interval: float = 0.1) -> dict[str, float]:
    """
    Collect current system metrics.

    Args:
        disk_path: Path whose filesystem is measured.
        cpu_interval: Interval passed to ``psutil.cpu_percent``.

    Returns:
        Mapping of metric name to value.
    """
    metrics: dict[str, float] = {
        METRIC_CPU_PERCENT: psutil.cpu_percent(interval=cpu_interval),
    }

    memory = psutil.virtual_memory()
    metrics[METRIC_MEMORY_PERCENT] = memory.percent
    metrics[METRIC_MEMORY_AVAILABLE_MB] = round(memory.available / MB, 1)

    try:
        disk = psutil.disk_usage(disk_path)
        metrics[METRIC_DISK_PERCENT] = disk.percent
        metrics[METRIC_DISK_FREE_MB] = round(disk.free / MB, 1)
    except OSError:
        logger.debug("Disk usage unavailable", extra={"path": disk_path})

    return metrics


class ResourceSampler(MonitoringSession):
    """
    Background sampling of system resources for one run.

    Samples are collected in the default executor every ``interval_seconds``
    until ``stop`` is called.
    """

    def __init__(
        self,
        operation: str,
        interval_seconds: float = 1.0,
        disk_path: str = "/",
    ) -> None:
        self.operation = operation
        self.interval_seconds = interval_seconds
        self.disk_path = disk_path
        self._samples: list[dict[str, float]] = []
        self._error_count = 0
        self._stop_event = asyncio.Event()
        self._task: asyncio.Task[None] | None = None
        self._started_at: float | None = None
        self._stopped_at: float | None = None

    def start(self) -> None:
        """Start the background sampling task."""
        self._started_at = time.monotonic()
        self._stop_event.clear()
        self._task = asyncio.create_task(self._sampling_loop())
        logger.debug(
            "Resource sampling started",
            extra={"operation": self.operation, "interval_seconds": self.interval_seconds},
        )

    async def _sampling_loop(self) -> None:
        loop = asyncio.get_running_loop()
        while not self._stop_event.is_set():
            try:
                sample = await loop.run_in_executor(
                    None, collect_metrics, self.disk_path, 0.0
                )
                self._samples.append(sample)
            except Exception as e:
                self._error_count += 1
                logger.error(
                    "Error during resource sampling",
                    extra={"error": str(e), "operation": self.operation},
                )

            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self.interval_seconds)
                break
            except TimeoutError:
                pass

    async def stop(self) -> None:
        """Stop sampling, waiting for an in-progress sample to finish."""
        if self._task is None:
            return
        self._stop_event.set()
        try:
            await asyncio.wait_for(self._task, timeout=10.0)
        except TimeoutError:
            logger.warning("Resource sampler did not stop gracefully, cancelling")
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        self._task = None
        self._stopped_at = time.monotonic()

    def get_results(self) -> dict[str, Any]:
        """
        Return peak and average values of every sampled metric.

        Returns:
            Dictionary with operation, duration_seconds, sample_count,
            error_count, and per-metric ``peak``/``average``.
        """
        end = self._stopped_at if self._stopped_at is not None else time.monotonic()
        duration = round(end - self._started_at, 3) if self._started_at is not None else 0.0

        metrics: dict[str, dict[str, float]] = {}
        for name in sorted({key for sample in self._samples for key in sample}):
            values = [sample[name] for sample in self._samples if name in sample]
            metrics[name] = {
                "peak": max(values),
                "average": round(sum(values) / len(values), 2),
            }

        return {
            "operation": self.operation,
            "duration_seconds": duration,
            "sample_count": len(self._samples),
            "error_count": self._error_count,
            "metrics": metrics,
        }


class SystemResourceMonitor(ResourceMonitor):
    """
    Resource monitor backed by psutil.

    Example:
        >>> monitor = SystemResourceMonitor(min_free_memory_mb=200)
        >>> check = await monitor.check_system_resources()
        >>> check.sufficient
        True
    """

    def __init__(
        self,
        *,
        min_free_memory_mb: int = 100,
        min_free_disk_mb: int = 500,
        max_cpu_percent: float = 95.0,
        disk_path: Path | str = ".",
        sampling_interval_seconds: float = 1.0,
    ) -> None:
        self.min_free_memory_mb = min_free_memory_mb
        self.min_free_disk_mb = min_free_disk_mb
        self.max_cpu_percent = max_cpu_percent
        self.disk_path = disk_path
        self.sampling_interval_seconds = sampling_interval_seconds

    @classmethod
    def from_config(cls, config: MonitorConfig) -> SystemResourceMonitor:
        return cls(
            min_free_memory_mb=config.min_free_memory_mb,
            min_free_disk_mb=config.min_free_disk_mb,
            max_cpu_percent=config.max_cpu_percent,
            disk_path=config.disk_path,
            sampling_interval_seconds=config.sampling_interval_seconds,
        )

    def _disk_path(self) -> str:
        return str(nearest_existing_ancestor(Path(self.disk_path)))

    def evaluate(self, metrics: dict[str, float]) -> ResourceCheck:
        """Compare ``metrics`` against the thresholds."""
        reasons = []
        memory = metrics.get(METRIC_MEMORY_AVAILABLE_MB)
        if memory is not None and memory < self.min_free_memory_mb:
            reasons.append(
                f"available memory {memory} MB below {self.min_free_memory_mb} MB"
            )
        disk = metrics.get(METRIC_DISK_FREE_MB)
        if disk is not None and disk < self.min_free_disk_mb:
            reasons.append(f"free disk {disk} MB below {self.min_free_disk_mb} MB")
        cpu = metrics.get(METRIC_CPU_PERCENT)
        if cpu is not None and cpu > self.max_cpu_percent:
            reasons.append(f"CPU usage {cpu}% above {self.max_cpu_percent}%")
        return ResourceCheck(sufficient=not reasons, reasons=reasons, metrics=metrics)

    async def check_system_resources(self) -> ResourceCheck:
        loop = asyncio.get_running_loop()
        metrics = await loop.run_in_executor(None, collect_metrics, self._disk_path(), 0.5)
        check = self.evaluate(metrics)
        if check.sufficient:
            logger.info("System resources sufficient", extra={"metrics": metrics})
        else:
            logger.warning(
                "System resources insufficient",
                extra={"reasons": check.reasons, "metrics": metrics},
            )
        return check

    async def _start(self, operation: str) -> ResourceSampler:
        sampler = ResourceSampler(
            operation,
            interval_seconds=self.sampling_interval_seconds,
            disk_path=self._disk_path(),
        )
        sampler.start()
        return sampler

    async def start_update_monitoring(self) -> ResourceSampler:
        return await self._start("update")

    async def start_rollback_monitoring(self) -> ResourceSampler:
        return await self._start("rollback")
