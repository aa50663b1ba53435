"""Per-meter ingestion watermarks.

This module handles:
- Persisting the last ingested timestamp of each meter to a JSON file
- Dropping readings at or below a meter's watermark
- Advancing a watermark only forwards, after a confirmed write
"""

import json
import logging
import os
import tempfile
import threading
from datetime import datetime, timezone
from typing import Dict, Iterable, List, Optional

from octoinflux.models import CanonicalReading

# Configure module logger
logger = logging.getLogger(__name__)


class WatermarkStore:
    """JSON file mapping meter id to an ISO-8601 UTC timestamp.

    The file is rewritten atomically on every save.
    """

    def __init__(self, path: str):
        self.path = path
        self._lock = threading.Lock()

    def _read(self) -> Dict[str, str]:
        try:
            with open(self.path, "r") as f:
                data = json.load(f)
        except FileNotFoundError:
            return {}
        if not isinstance(data, dict):
            raise ValueError(f"Watermark file {self.path} does not hold an object")
        return data

    def load(self, meter_id: str) -> Optional[datetime]:
        """Return the stored watermark for ``meter_id``, or None."""
        with self._lock:
            value = self._read().get(meter_id)
        if value is None:
            return None
        return datetime.fromisoformat(value).astimezone(timezone.utc)

    def save(self, meter_id: str, timestamp: datetime) -> None:
        """Store ``timestamp`` as the watermark for ``meter_id``."""
        with self._lock:
            data = self._read()
            data[meter_id] = timestamp.astimezone(timezone.utc).isoformat()

            directory = os.path.dirname(os.path.abspath(self.path))
            os.makedirs(directory, exist_ok=True)
            fd, tmp_path = tempfile.mkstemp(dir=directory, prefix=".watermarks-", suffix=".tmp")
            try:
                with os.fdopen(fd, "w") as f:
                    json.dump(data, f, indent=2, sort_keys=True)
                os.replace(tmp_path, self.path)
            except BaseException:
                os.unlink(tmp_path)
                raise


class WatermarkTracker:
    """Filters out readings that were already ingested.

    Watermarks are read from the store on first use and cached; the store is
    written whenever a watermark moves forward.
    """

    def __init__(self, store: WatermarkStore):
        self.store = store
        self._cache: Dict[str, Optional[datetime]] = {}
        self._lock = threading.Lock()

    def watermark(self, meter_id: str) -> Optional[datetime]:
        with self._lock:
            if meter_id not in self._cache:
                self._cache[meter_id] = self.store.load(meter_id)
            return self._cache[meter_id]

    def filter_new(self, meter_id: str, readings: Iterable[CanonicalReading]) -> List[CanonicalReading]:
        """Return the readings newer than the meter's watermark.

        Readings repeating a timestamp keep their first occurrence. The
        result is sorted by timestamp. Nothing is recorded, so calling this
        again with the same readings gives the same result.
        """
        watermark = self.watermark(meter_id)
        fresh: Dict[datetime, CanonicalReading] = {}
        for reading in readings:
            if watermark is not None and reading.timestamp <= watermark:
                continue
            fresh.setdefault(reading.timestamp, reading)
        return [fresh[ts] for ts in sorted(fresh)]

    def advance(self, meter_id: str, timestamp: datetime) -> bool:
        """Move the watermark to ``timestamp`` if that is later.

        Returns:
            True if the watermark moved
        """
        current = self.watermark(meter_id)
        if current is not None and timestamp <= current:
            logger.debug(f"Watermark for {meter_id} stays at {current.isoformat()}")
            return False

        self.store.save(meter_id, timestamp)
        with self._lock:
            self._cache[meter_id] = timestamp
        logger.info(f"Watermark for {meter_id} advanced to {timestamp.isoformat()}")
        return True
