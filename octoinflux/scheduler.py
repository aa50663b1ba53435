"""Ingestion cycle orchestration.

This module handles:
- Authenticating once at the start of every cycle
- Running meters on a bounded worker pool
- Fetching, normalizing, deduplicating and writing each meter's readings
- Advancing watermarks after a meter's writes have all succeeded
- Isolating failures so one meter cannot stop the others

A rejected credential is the only failure that ends the run. A shutdown
request is honoured between meters; a meter already running finishes.
"""

import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timedelta, timezone
from typing import Callable, List, Optional, Set

from octoinflux.auth import AuthManager
from octoinflux.client import FetchError, InvalidCredentialError, TransientAuthError
from octoinflux.fetcher import PaginatedFetcher
from octoinflux.influxdb_exporter import InfluxDBExporter, StorageError, consumption_points, rate_points
from octoinflux.metrics import IngestionMetrics
from octoinflux.models import CanonicalReading, CycleReport, Meter, MeterReport
from octoinflux.normalizer import NormalizeError, TariffBook, normalize
from octoinflux.watermarks import WatermarkTracker

# Configure module logger
logger = logging.getLogger(__name__)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class IngestionScheduler:
    """Runs ingestion cycles over a fixed set of meters.

    Attributes:
        meters: Meters ingested every cycle
        max_workers: Meters processed at the same time
        batch_size: Readings per storage write
        backfill: How far back to start for a meter with no watermark
        write_rates: Also write tariff windows to the rates series
    """

    def __init__(
        self,
        auth: AuthManager,
        fetcher: PaginatedFetcher,
        tracker: WatermarkTracker,
        sink: InfluxDBExporter,
        meters: List[Meter],
        max_workers: int = 2,
        batch_size: int = 500,
        backfill: timedelta = timedelta(days=30),
        write_rates: bool = False,
        metrics: Optional[IngestionMetrics] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        if max_workers < 1:
            raise ValueError(f"max_workers must be at least 1, got {max_workers}")
        if batch_size < 1:
            raise ValueError(f"batch_size must be at least 1, got {batch_size}")
        self.auth = auth
        self.fetcher = fetcher
        self.tracker = tracker
        self.sink = sink
        self.meters = list(meters)
        self.max_workers = max_workers
        self.batch_size = batch_size
        self.backfill = backfill
        self.write_rates = write_rates
        self.metrics = metrics
        self._clock = clock

    def run_cycle(self, stop_event: Optional[threading.Event] = None) -> CycleReport:
        """Run one cycle over every meter.

        Args:
            stop_event: When set, meters that have not started are skipped

        Returns:
            CycleReport with one MeterReport per meter

        Raises:
            InvalidCredentialError: If the provider rejected the credential.
                No meter starts after this is seen.
        """
        stop_event = stop_event or threading.Event()
        started = time.monotonic()
        report = CycleReport()
        logger.info(f"Starting ingestion cycle for {len(self.meters)} meters")

        try:
            self.auth.get_valid_token()
        except InvalidCredentialError as e:
            logger.error(f"Credential rejected, halting: {e}")
            raise
        except TransientAuthError as e:
            report.error = f"Authentication failed: {e}"
            logger.error(f"Cycle skipped, authentication failed: {e}")
            self._finish(report, started)
            return report

        halted = threading.Event()
        fatal: List[InvalidCredentialError] = []

        def work(meter: Meter) -> MeterReport:
            if stop_event.is_set() or halted.is_set():
                logger.info(f"Not starting meter {meter.meter_id}: shutting down")
                return MeterReport(meter_id=meter.meter_id, cancelled=True)
            try:
                return self.ingest_meter(meter)
            except InvalidCredentialError as e:
                halted.set()
                fatal.append(e)
                return MeterReport(meter_id=meter.meter_id, error=f"Credential rejected: {e}")

        with ThreadPoolExecutor(max_workers=self.max_workers, thread_name_prefix="meter") as pool:
            report.meters = list(pool.map(work, self.meters))

        self._finish(report, started)
        if fatal:
            logger.error(f"Credential rejected during cycle, halting: {fatal[0]}")
            raise fatal[0]
        return report

    def _finish(self, report: CycleReport, started: float) -> None:
        report.duration = time.monotonic() - started
        written = sum(m.written for m in report.meters)
        skipped = sum(m.skipped_total for m in report.meters)
        failed = [m.meter_id for m in report.meters if m.error is not None]
        logger.info(
            f"Cycle finished in {report.duration:.1f}s: {written} written, "
            f"{skipped} skipped, {len(failed)} meters failed"
        )
        if self.metrics:
            self.metrics.record_cycle(report)

    def ingest_meter(self, meter: Meter) -> MeterReport:
        """Ingest everything newer than the meter's watermark.

        Fetch and storage failures abort this meter only and leave its
        watermark where it was.

        Raises:
            InvalidCredentialError: If a token refresh was rejected mid-meter
        """
        report = MeterReport(meter_id=meter.meter_id)
        watermark = self.tracker.watermark(meter.meter_id)
        since = watermark or (self._clock() - self.backfill)
        logger.info(f"Ingesting meter {meter.meter_id} from {since.isoformat()}")

        tariffs = TariffBook()
        written_max: Optional[datetime] = None
        seen: Set[datetime] = set()

        try:
            if meter.has_tariff:
                self._load_tariffs(meter, since, tariffs)

            batch: List[CanonicalReading] = []
            for raw in self.fetcher.fetch_since(meter, since, tariffs):
                report.fetched += 1
                try:
                    batch.append(normalize(raw, tariffs, meter.timezone))
                except NormalizeError as e:
                    report.skipped[e.reason] = report.skipped.get(e.reason, 0) + 1
                    logger.warning(f"Skipping reading for meter {meter.meter_id} at {raw.interval_start!r}: {e}")
                    continue

                if len(batch) >= self.batch_size:
                    written_max = _later(written_max, self._flush(meter, batch, seen, report))
                    batch = []

            written_max = _later(written_max, self._flush(meter, batch, seen, report))
        except (FetchError, StorageError, TransientAuthError) as e:
            report.error = f"{type(e).__name__}: {e}"
            report.watermark = watermark
            report.tariff_windows = len(tariffs)
            logger.error(f"Ingestion of meter {meter.meter_id} aborted: {e}")
            return report

        if written_max is not None:
            self.tracker.advance(meter.meter_id, written_max)
        report.watermark = self.tracker.watermark(meter.meter_id)
        report.tariff_windows = len(tariffs)

        if report.skipped:
            logger.warning(f"Meter {meter.meter_id}: skipped {report.skipped_total} readings {report.skipped}")
        logger.info(
            f"Meter {meter.meter_id}: fetched {report.fetched}, wrote {report.written}, "
            f"dropped {report.duplicates} already ingested"
        )
        return report

    def _load_tariffs(self, meter: Meter, since: datetime, tariffs: TariffBook) -> None:
        """Fetch tariff windows into ``tariffs``; readings go in without rates if that fails."""
        try:
            windows = self.fetcher.fetch_tariff_windows(meter, since)
        except FetchError as e:
            logger.warning(f"No tariff windows for meter {meter.meter_id}, ingesting without rates: {e}")
            return

        tariffs.add(windows)
        if self.write_rates and windows:
            try:
                self.sink.write_batch(f"rates/{meter.tariff_code}", rate_points(meter, windows))
            except StorageError as e:
                logger.warning(f"Could not write tariff rates for meter {meter.meter_id}, continuing: {e}")

    def _flush(
        self,
        meter: Meter,
        batch: List[CanonicalReading],
        seen: Set[datetime],
        report: MeterReport,
    ) -> Optional[datetime]:
        """Write the new readings of ``batch``; return the latest timestamp written."""
        fresh = [r for r in self.tracker.filter_new(meter.meter_id, batch) if r.timestamp not in seen]
        report.duplicates += len(batch) - len(fresh)
        if not fresh:
            return None

        report.written += self.sink.write_batch(f"consumption/{meter.meter_id}", consumption_points(meter, fresh))
        seen.update(r.timestamp for r in fresh)
        return fresh[-1].timestamp


def _later(a: Optional[datetime], b: Optional[datetime]) -> Optional[datetime]:
    if a is None:
        return b
    if b is None:
        return a
    return max(a, b)
