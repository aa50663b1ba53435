"""InfluxDB exporter module.

This module handles:
- Building InfluxDB points from canonical readings and tariff windows
- Writing them in batches at the readings' own timestamps
- Retrying transient write failures, surfacing rejected writes

InfluxDB overwrites a point with the same measurement, tags and timestamp,
so writing a batch twice leaves the stored series unchanged.
"""

import logging
import time
from typing import Callable, Iterable, List, Optional

import urllib3
from influxdb_client import InfluxDBClient, Point, WritePrecision
from influxdb_client.client.write_api import SYNCHRONOUS
from influxdb_client.rest import ApiException

from octoinflux.models import CanonicalReading, Meter, TariffWindow
from octoinflux.retry import RetryError, RetryPolicy

# Configure module logger
logger = logging.getLogger(__name__)

CONSUMPTION_MEASUREMENT = "consumption"
RATES_MEASUREMENT = "rates"


class StorageError(Exception):
    """Base exception for InfluxDB write errors."""
    pass


class TransientStorageError(StorageError):
    """A write failed for a reason that may go away (network, 5xx, 429)."""
    pass


class RejectedStorageError(StorageError):
    """InfluxDB refused the write (bad data, permissions). Retrying will not help."""
    pass


def consumption_points(meter: Meter, readings: Iterable[CanonicalReading]) -> List[Point]:
    """Build consumption points for one meter.

    Tags identify the meter; fields carry kWh and, when a tariff applied,
    the rate, standing charge and cost.
    """
    points = []
    for reading in readings:
        point = (
            Point(CONSUMPTION_MEASUREMENT)
            .tag("meter_id", meter.meter_id)
            .tag("meter_type", meter.kind)
            .tag("mpxn", meter.mpxn)
            .tag("serial", meter.serial)
            .field("consumption", float(reading.quantity))
            .time(reading.timestamp, WritePrecision.S)
        )
        if reading.rate is not None:
            point.field("rate", float(reading.rate))
        if reading.standing_charge is not None:
            point.field("standing_charge", float(reading.standing_charge))
        if reading.cost is not None:
            point.field("cost", float(reading.cost))
        points.append(point)
    return points


def rate_points(meter: Meter, windows: Iterable[TariffWindow]) -> List[Point]:
    """Build one rates point per tariff window, stamped at the window start."""
    points = []
    for window in windows:
        point = (
            Point(RATES_MEASUREMENT)
            .tag("product_code", meter.product_code or "")
            .tag("tariff_code", meter.tariff_code or "")
            .field("rate", float(window.unit_rate))
            .time(window.start, WritePrecision.S)
        )
        if window.standing_charge is not None:
            point.field("standing_charge", float(window.standing_charge))
        points.append(point)
    return points


class InfluxDBExporter:
    """Batched InfluxDB writer.

    Attributes:
        url: InfluxDB server URL
        token: InfluxDB API token
        org: InfluxDB organization
        bucket: InfluxDB bucket name
        timeout_ms: Per-request timeout in milliseconds
    """

    def __init__(
        self,
        url: str = "http://localhost:8086",
        token: str = "",
        org: str = "octopus",
        bucket: str = "energy",
        timeout_ms: int = 30_000,
        retry_policy: Optional[RetryPolicy] = None,
        client: Optional[InfluxDBClient] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.url = url
        self.token = token
        self.org = org
        self.bucket = bucket
        self.timeout_ms = timeout_ms
        self.retry_policy = retry_policy or RetryPolicy()
        self._client = client
        self._write_api = None
        self._sleep = sleep

    def connect(self) -> bool:
        """Connect to InfluxDB and check its health.

        Returns:
            True if connection successful, False otherwise
        """
        try:
            if self._client is None:
                self._client = InfluxDBClient(
                    url=self.url,
                    token=self.token,
                    org=self.org,
                    timeout=self.timeout_ms,
                )
            self._write_api = self._client.write_api(write_options=SYNCHRONOUS)

            health = self._client.health()
            if health.status == "pass":
                logger.info(f"Connected to InfluxDB at {self.url}")
                return True
            logger.error(f"InfluxDB health check failed: {health.message}")
            return False
        except Exception as e:
            logger.error(f"Failed to connect to InfluxDB: {e}")
            return False

    def close(self) -> None:
        """Close the InfluxDB connection."""
        if self._client:
            self._client.close()
            self._client = None
            self._write_api = None
            logger.info("InfluxDB connection closed")

    def _write_once(self, series_key: str, points: List[Point]) -> None:
        try:
            self._write_api.write(bucket=self.bucket, org=self.org, record=points)
        except ApiException as e:
            if e.status == 429 or (e.status is not None and e.status >= 500):
                raise TransientStorageError(f"InfluxDB returned {e.status} for {series_key}") from e
            raise RejectedStorageError(f"InfluxDB rejected {series_key} batch: {e.status} {e.reason}") from e
        except (urllib3.exceptions.HTTPError, OSError) as e:
            raise TransientStorageError(f"Write of {series_key} batch failed: {e}") from e

    def write_batch(self, series_key: str, points: List[Point]) -> int:
        """Write one batch of points.

        Args:
            series_key: Name of the series, used in logs and errors
            points: Points to write

        Returns:
            Number of points written

        Raises:
            RuntimeError: If not connected to InfluxDB
            RejectedStorageError: If InfluxDB refused the batch
            TransientStorageError: If the write kept failing transiently
        """
        if not self._write_api:
            raise RuntimeError("Not connected to InfluxDB. Call connect() first.")
        if not points:
            return 0

        try:
            self.retry_policy.call(
                lambda: self._write_once(series_key, points),
                retry_on=(TransientStorageError,),
                description=f"InfluxDB write for {series_key}",
                sleep=self._sleep,
            )
        except RetryError as e:
            raise TransientStorageError(f"Write of {series_key} failed after {e.attempts} attempts: {e.last_error}") from e

        logger.info(f"Wrote {len(points)} points to InfluxDB for {series_key}")
        return len(points)
