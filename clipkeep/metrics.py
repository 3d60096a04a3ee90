from __future__ import annotations

import contextlib
import datetime as dt
import logging
import os
import threading
import time
from collections.abc import Callable, Iterator, Mapping
from dataclasses import dataclass, replace
from types import MappingProxyType
from typing import Any, TypeVar

import psutil

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_SLOW_OPERATION_MS = 100.0
DEFAULT_MEMORY_THRESHOLD_MB = 50.0
MAX_ALERTS = 1000


@dataclass
class OperationStats:
    name: str
    count: int = 0
    errors: int = 0
    total_ms: float = 0.0
    max_ms: float = 0.0
    last_ms: float = 0.0

    @property
    def average_ms(self) -> float:
        if self.count == 0:
            return 0.0
        return self.total_ms / self.count


@dataclass(frozen=True)
class MetricAlert:
    operation: str
    kind: str
    value: float
    threshold: float
    at: str


def process_memory_mb() -> float:
    process = psutil.Process(os.getpid())
    return process.memory_info().rss / 1024 / 1024


class MetricsCollector:
    """Per-operation timing, error counts and threshold alerts.

    Everything lives in memory and starts empty with each process.
    """

    def __init__(
        self,
        *,
        slow_operation_ms: float = DEFAULT_SLOW_OPERATION_MS,
        memory_threshold_mb: float = DEFAULT_MEMORY_THRESHOLD_MB,
        check_memory: bool = True,
    ) -> None:
        self.slow_operation_ms = float(slow_operation_ms)
        self.memory_threshold_mb = float(memory_threshold_mb)
        self.check_memory = check_memory
        self._lock = threading.Lock()
        self._stats: dict[str, OperationStats] = {}
        self._alerts: list[MetricAlert] = []

    @contextlib.contextmanager
    def track(self, name: str) -> Iterator[None]:
        started = time.perf_counter()
        failed = False
        try:
            yield
        except BaseException:
            failed = True
            raise
        finally:
            self.record(name, (time.perf_counter() - started) * 1000.0, failed=failed)

    def measure(self, name: str, fn: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        with self.track(name):
            return fn(*args, **kwargs)

    def record(self, name: str, duration_ms: float, *, failed: bool = False) -> None:
        with self._lock:
            stats = self._stats.get(name)
            if stats is None:
                stats = OperationStats(name=name)
                self._stats[name] = stats
            stats.count += 1
            stats.total_ms += duration_ms
            stats.last_ms = duration_ms
            stats.max_ms = max(stats.max_ms, duration_ms)
            if failed:
                stats.errors += 1
        if duration_ms > self.slow_operation_ms:
            logger.warning(
                "slow operation %s: %.1fms (threshold %.1fms)",
                name,
                duration_ms,
                self.slow_operation_ms,
            )
            self._add_alert(name, "duration", duration_ms, self.slow_operation_ms)
        if self.check_memory:
            self.sample_memory(name)

    def sample_memory(self, context: str) -> float | None:
        try:
            memory_mb = process_memory_mb()
        except psutil.Error as exc:
            logger.debug("memory sample failed", exc_info=exc)
            return None
        if memory_mb > self.memory_threshold_mb:
            logger.warning(
                "memory usage %.1fMB over threshold %.1fMB (%s)",
                memory_mb,
                self.memory_threshold_mb,
                context,
            )
            self._add_alert(context, "memory", memory_mb, self.memory_threshold_mb)
        return memory_mb

    def _add_alert(self, operation: str, kind: str, value: float, threshold: float) -> None:
        alert = MetricAlert(
            operation=operation,
            kind=kind,
            value=value,
            threshold=threshold,
            at=dt.datetime.now(dt.UTC).isoformat(),
        )
        with self._lock:
            self._alerts.append(alert)
            if len(self._alerts) > MAX_ALERTS:
                del self._alerts[: len(self._alerts) - MAX_ALERTS]

    def snapshot(self) -> Mapping[str, OperationStats]:
        with self._lock:
            copies = {name: replace(stats) for name, stats in self._stats.items()}
        return MappingProxyType(copies)

    def alerts(self) -> list[MetricAlert]:
        with self._lock:
            return list(self._alerts)

    def clear_alerts(self) -> None:
        with self._lock:
            self._alerts.clear()

    def total_operations(self) -> int:
        with self._lock:
            return sum(stats.count for stats in self._stats.values())

    def error_count(self) -> int:
        with self._lock:
            return sum(stats.errors for stats in self._stats.values())

    def average_duration_ms(self) -> float:
        with self._lock:
            count = sum(stats.count for stats in self._stats.values())
            total = sum(stats.total_ms for stats in self._stats.values())
        if count == 0:
            return 0.0
        return total / count

    def report(self) -> str:
        snapshot = self.snapshot()
        lines = [
            f"operations: {self.total_operations()}",
            f"errors: {self.error_count()}",
            f"average: {self.average_duration_ms():.2f}ms",
        ]
        for name in sorted(snapshot):
            stats = snapshot[name]
            lines.append(
                f"  {name}: count={stats.count} errors={stats.errors} "
                f"avg={stats.average_ms:.2f}ms max={stats.max_ms:.2f}ms"
            )
        alerts = self.alerts()
        if alerts:
            lines.append(f"alerts: {len(alerts)}")
            for alert in alerts[-10:]:
                lines.append(
                    f"  {alert.kind} {alert.operation}: {alert.value:.1f} > {alert.threshold:.1f}"
                )
        return "\n".join(lines)
