"""Prometheus metrics module.

This module handles:
- Defining operational metrics for ingestion cycles and meters
- Exposing them over HTTP on a configurable port
- Updating them from cycle reports
"""

import logging
import time
from typing import Optional

from prometheus_client import REGISTRY, CollectorRegistry, Counter, Gauge, start_http_server

from octoinflux.models import CycleReport, MeterReport

# Configure module logger
logger = logging.getLogger(__name__)


class IngestionMetrics:
    """Prometheus metrics for the ingestion daemon.

    Exposes the following metrics:
    - octo_cycle_success: Whether the last cycle completed cleanly (1/0)
    - octo_cycle_timestamp: Unix timestamp of the last cycle
    - octo_cycle_duration_seconds: Duration of the last cycle
    - octo_readings_written_total: Readings written, per meter
    - octo_readings_skipped_total: Readings that failed normalization, per meter and reason
    - octo_meter_failures_total: Aborted meter runs, per meter
    - octo_watermark_timestamp: Current watermark per meter, as Unix time

    Attributes:
        port: HTTP server port (default 9120)
    """

    def __init__(self, port: int = 9120, registry: Optional[CollectorRegistry] = None):
        """Initialize the metrics.

        Args:
            port: Port to run the HTTP server on
            registry: Optional custom registry for testing. If None, uses default REGISTRY.
        """
        self.port = port
        self._registry = registry if registry is not None else REGISTRY
        self._server_started = False

        self._cycle_success = Gauge(
            "octo_cycle_success",
            "Whether the last ingestion cycle succeeded (1=success, 0=failure)",
            registry=self._registry,
        )
        self._cycle_timestamp = Gauge(
            "octo_cycle_timestamp",
            "Unix timestamp of the last ingestion cycle",
            registry=self._registry,
        )
        self._cycle_duration = Gauge(
            "octo_cycle_duration_seconds",
            "Duration of the last ingestion cycle in seconds",
            registry=self._registry,
        )
        self._written = Counter(
            "octo_readings_written",
            "Readings written to InfluxDB",
            ["meter_id"],
            registry=self._registry,
        )
        self._skipped = Counter(
            "octo_readings_skipped",
            "Readings skipped because they could not be normalized",
            ["meter_id", "reason"],
            registry=self._registry,
        )
        self._failures = Counter(
            "octo_meter_failures",
            "Meter ingestion runs aborted by an error",
            ["meter_id"],
            registry=self._registry,
        )
        self._watermark = Gauge(
            "octo_watermark_timestamp",
            "Last ingested reading timestamp per meter",
            ["meter_id"],
            registry=self._registry,
        )

    def record_meter(self, report: MeterReport) -> None:
        """Update per-meter metrics from one meter's report."""
        if report.cancelled:
            return
        self._written.labels(meter_id=report.meter_id).inc(report.written)
        for reason, count in report.skipped.items():
            self._skipped.labels(meter_id=report.meter_id, reason=reason).inc(count)
        if report.error is not None:
            self._failures.labels(meter_id=report.meter_id).inc()
        if report.watermark is not None:
            self._watermark.labels(meter_id=report.meter_id).set(report.watermark.timestamp())

    def record_cycle(self, report: CycleReport) -> None:
        """Update all metrics after a cycle."""
        for meter_report in report.meters:
            self.record_meter(meter_report)
        self._cycle_success.set(1 if report.ok else 0)
        self._cycle_timestamp.set(time.time())
        self._cycle_duration.set(report.duration)

    def start(self) -> None:
        """Start the HTTP server to expose metrics at http://localhost:{port}/metrics."""
        if self._server_started:
            logger.warning("Prometheus server already started")
            return

        logger.info(f"Starting Prometheus HTTP server on port {self.port}")
        start_http_server(self.port, registry=self._registry)
        self._server_started = True
