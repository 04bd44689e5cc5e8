# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Prometheus metrics for the delivery engine and its collaborators.

Every component receives a metrics object in its constructor and reports
per-operation outcomes through it. Operation names are free-form strings
such as ``SendEmail``, ``PopDue`` or ``ZRANGEBYSCORE``. All metrics use the
``dn_`` prefix (delayed-notifier).

Metrics exposed:
    - ``dn_operations_total``: Counter of operation outcomes, labelled by
      ``operation`` and ``status`` (success, error, canceled, timeout).
    - ``dn_operation_duration_seconds``: Histogram of operation durations.
    - ``dn_pending_notifications``: Gauge of entries waiting in the queue.

Example:
    Sharing one registry between components::

        metrics = NotifierMetrics()
        queue = DelayedQueue(redis, metrics=metrics)
        sender = SMTPClient(config, metrics=metrics)

        GET /metrics  # Prometheus text format
"""

from __future__ import annotations

import time
from typing import Protocol

from prometheus_client import CollectorRegistry, Counter, Gauge, Histogram, generate_latest

STATUS_SUCCESS = "success"
STATUS_ERROR = "error"
STATUS_CANCELED = "canceled"
STATUS_TIMEOUT = "timeout"


class Metrics(Protocol):
    """Interface every metrics sink passed to the components implements."""

    def inc_success(self, operation: str) -> None: ...

    def inc_error(self, operation: str) -> None: ...

    def inc_canceled(self, operation: str) -> None: ...

    def inc_timeout(self, operation: str) -> None: ...

    def observe(self, operation: str, start: float) -> None: ...

    def set_pending(self, value: int) -> None: ...


class NoopMetrics:
    """Metrics sink that records nothing, for use without instrumentation."""

    def inc_success(self, operation: str) -> None:
        pass

    def inc_error(self, operation: str) -> None:
        pass

    def inc_canceled(self, operation: str) -> None:
        pass

    def inc_timeout(self, operation: str) -> None:
        pass

    def observe(self, operation: str, start: float) -> None:
        pass

    def set_pending(self, value: int) -> None:
        pass

    def generate_latest(self) -> bytes:
        return b""


class NotifierMetrics:
    """Prometheus metrics collector for the notification service.

    Attributes:
        registry: The Prometheus CollectorRegistry holding all metrics.
        operations: Counter of operation outcomes by operation and status.
        duration: Histogram of operation durations in seconds.
        pending: Gauge showing the current queue depth.
    """

    def __init__(self, registry: CollectorRegistry | None = None):
        """Initialize metrics with an optional custom registry.

        Args:
            registry: Optional Prometheus CollectorRegistry. If not provided,
                a new registry is created, so two instances never collide.
        """
        self.registry = registry or CollectorRegistry()
        self.operations = Counter(
            "dn_operations_total",
            "Total operation outcomes",
            ["operation", "status"],
            registry=self.registry,
        )
        self.duration = Histogram(
            "dn_operation_duration_seconds",
            "Duration of operations in seconds",
            ["operation"],
            registry=self.registry,
        )
        self.pending = Gauge(
            "dn_pending_notifications",
            "Current notifications waiting in the delayed queue",
            registry=self.registry,
        )

    def _inc(self, operation: str, status: str) -> None:
        self.operations.labels(operation=operation or "unknown", status=status).inc()

    def inc_success(self, operation: str) -> None:
        """Count a successful completion of ``operation``."""
        self._inc(operation, STATUS_SUCCESS)

    def inc_error(self, operation: str) -> None:
        """Count a failed completion of ``operation``."""
        self._inc(operation, STATUS_ERROR)

    def inc_canceled(self, operation: str) -> None:
        """Count an ``operation`` interrupted by the stop signal."""
        self._inc(operation, STATUS_CANCELED)

    def inc_timeout(self, operation: str) -> None:
        """Count an ``operation`` that exceeded its time budget."""
        self._inc(operation, STATUS_TIMEOUT)

    def observe(self, operation: str, start: float) -> None:
        """Record the time elapsed since ``start``.

        Args:
            operation: The operation name.
            start: A ``time.perf_counter()`` value taken when the operation began.
        """
        self.duration.labels(operation=operation or "unknown").observe(max(0.0, time.perf_counter() - start))

    def set_pending(self, value: int) -> None:
        """Set the pending notifications gauge."""
        self.pending.set(value)

    def generate_latest(self) -> bytes:
        """Export all metrics in Prometheus text exposition format."""
        return generate_latest(self.registry)
