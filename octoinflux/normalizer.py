"""Reading normalization.

This module handles:
- Parsing provider timestamps into UTC
- Converting raw units to kWh with fixed factors
- Attaching the tariff rate in force at each reading

Timestamps without a UTC offset are read in the meter's local zone. On the
repeated hour at the end of daylight saving, the earlier instant is used.
"""

import math
from datetime import datetime, timezone
from typing import Iterable, List, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from octoinflux.models import CanonicalReading, RawReading, TariffWindow

# Gas volume to energy: volume correction * calorific value (MJ/m3) / MJ per kWh
GAS_M3_TO_KWH = 1.02264 * 39.5 / 3.6

UNIT_FACTORS = {
    "kwh": 1.0,
    "wh": 0.001,
    "mwh": 1000.0,
    "m3": GAS_M3_TO_KWH,
}


class NormalizeError(Exception):
    """Exception raised when a raw reading cannot be normalized.

    Attributes:
        reason: Short machine-readable reason, used for diagnostics
    """
    reason = "invalid"

    def __init__(self, message: str, raw: Optional[RawReading] = None):
        super().__init__(message)
        self.raw = raw


class UnknownUnitError(NormalizeError):
    reason = "unknown_unit"


class UnparsableTimestampError(NormalizeError):
    reason = "unparsable_timestamp"


class InvalidValueError(NormalizeError):
    reason = "invalid_value"


class MalformedRecordError(NormalizeError):
    reason = "malformed_record"


class TariffBook:
    """Tariff windows for one meter, in declaration order.

    Windows added later are declared later, so they win where they overlap
    windows already in the book.
    """

    def __init__(self, windows: Iterable[TariffWindow] = ()):
        self._windows: List[TariffWindow] = []
        self.add(windows)

    def add(self, windows: Iterable[TariffWindow]) -> None:
        ordered = sorted(windows, key=lambda w: w.declared)
        for window in ordered:
            self._windows.append(TariffWindow(
                start=window.start,
                end=window.end,
                unit_rate=window.unit_rate,
                standing_charge=window.standing_charge,
                declared=len(self._windows),
            ))

    def __iter__(self):
        return iter(self._windows)

    def __len__(self) -> int:
        return len(self._windows)


def parse_timestamp(raw: str, tz_name: str = "Europe/London") -> datetime:
    """Parse an ISO-8601 timestamp into an aware UTC datetime.

    Args:
        raw: Timestamp string, with or without a UTC offset
        tz_name: Zone applied when the string has no offset

    Returns:
        Aware datetime in UTC

    Raises:
        UnparsableTimestampError: If the string is not a usable timestamp

    Example:
        >>> parse_timestamp("2023-10-29T01:30:00", "Europe/London")
        datetime.datetime(2023, 10, 29, 0, 30, tzinfo=datetime.timezone.utc)
    """
    if not isinstance(raw, str) or not raw.strip():
        raise UnparsableTimestampError(f"Empty or non-string timestamp: {raw!r}")

    text = raw.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"

    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        raise UnparsableTimestampError(f"Unparsable timestamp: {raw!r}")

    if parsed.tzinfo is None:
        try:
            zone = ZoneInfo(tz_name)
        except (ZoneInfoNotFoundError, ValueError):
            raise UnparsableTimestampError(f"Unknown timezone {tz_name!r} for timestamp {raw!r}")
        # fold=0 picks the first of two repeated wall-clock times
        parsed = parsed.replace(tzinfo=zone, fold=0)

    return parsed.astimezone(timezone.utc)


def to_kwh(value: object, unit: str) -> float:
    """Convert a raw value in ``unit`` to kWh.

    Raises:
        UnknownUnitError: If the unit tag is not recognised
        InvalidValueError: If the value is not a finite number
    """
    factor = UNIT_FACTORS.get(str(unit).strip().lower())
    if factor is None:
        raise UnknownUnitError(f"Unknown unit: {unit!r}")

    if isinstance(value, bool):
        raise InvalidValueError(f"Not a number: {value!r}")
    try:
        number = float(value)
    except (TypeError, ValueError):
        raise InvalidValueError(f"Not a number: {value!r}")
    if not math.isfinite(number):
        raise InvalidValueError(f"Not a finite number: {value!r}")

    return number * factor


def select_window(windows: Iterable[TariffWindow], timestamp: datetime) -> Optional[TariffWindow]:
    """Return the window containing ``timestamp``, latest declared on overlap."""
    chosen = None
    for window in windows:
        if window.contains(timestamp) and (chosen is None or window.declared > chosen.declared):
            chosen = window
    return chosen


def normalize(
    raw: RawReading,
    windows: Iterable[TariffWindow] = (),
    tz_name: str = "Europe/London",
) -> CanonicalReading:
    """Turn a raw reading into a canonical one.

    A reading outside every tariff window is still normalized, with no rate.

    Args:
        raw: Reading as it appeared on the page
        windows: The meter's tariff windows
        tz_name: Meter's local zone for offset-less timestamps

    Returns:
        CanonicalReading in kWh with a UTC timestamp

    Raises:
        MalformedRecordError: If the record could not be read off its page
        UnknownUnitError: If the unit tag is not recognised
        UnparsableTimestampError: If the interval start cannot be parsed
        InvalidValueError: If the value is not a finite number
    """
    if raw.defect is not None:
        raise MalformedRecordError(raw.defect, raw)

    try:
        quantity = to_kwh(raw.value, raw.unit)
        timestamp = parse_timestamp(raw.interval_start, tz_name)
    except NormalizeError as e:
        e.raw = raw
        raise

    window = select_window(windows, timestamp)
    if window is None:
        return CanonicalReading(meter_id=raw.meter_id, timestamp=timestamp, quantity=quantity)

    return CanonicalReading(
        meter_id=raw.meter_id,
        timestamp=timestamp,
        quantity=quantity,
        rate=window.unit_rate,
        standing_charge=window.standing_charge,
        cost=quantity * window.unit_rate,
    )
