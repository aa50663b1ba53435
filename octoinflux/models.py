"""Data types shared across the ingestion pipeline.

Raw readings come straight off a provider page and are consumed by the
normalizer; canonical readings are what gets deduplicated and written.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Optional

ELECTRICITY = "electricity"
GAS = "gas"


@dataclass(frozen=True)
class Meter:
    """A smart meter to ingest.

    Attributes:
        meter_id: Stable identifier used for watermarks and series tags
        kind: "electricity" or "gas"
        mpxn: MPAN (electricity) or MPRN (gas)
        serial: Meter serial number
        unit: Raw unit tag the provider reports for this meter (kwh, m3, ...)
        timezone: Zone used for timestamps that carry no UTC offset
        product_code: Octopus product code, e.g. AGILE-24-10-01
        tariff_code: Octopus tariff code, e.g. E-1R-AGILE-24-10-01-C
        account_number: Account owning the meter, needed for GraphQL queries
        source: "rest" (consumption endpoint) or "graphql" (measurements)
    """
    meter_id: str
    kind: str
    mpxn: str
    serial: str
    unit: str = "kwh"
    timezone: str = "Europe/London"
    product_code: Optional[str] = None
    tariff_code: Optional[str] = None
    account_number: Optional[str] = None
    source: str = "rest"

    def __post_init__(self):
        if self.kind not in (ELECTRICITY, GAS):
            raise ValueError(f"Unknown meter kind: {self.kind}")
        if self.source not in ("rest", "graphql"):
            raise ValueError(f"Unknown meter source: {self.source}")

    @property
    def has_tariff(self) -> bool:
        return bool(self.product_code and self.tariff_code)


@dataclass(frozen=True)
class RawReading:
    """A provider-native reading, exactly as it appeared on a page.

    ``defect`` describes why the record could not be read off the page; the
    normalizer rejects such readings.
    """
    meter_id: str
    value: object
    unit: str
    interval_start: str
    interval_end: Optional[str] = None
    mpxn: str = ""
    serial: str = ""
    defect: Optional[str] = None


@dataclass(frozen=True)
class CanonicalReading:
    """A normalized reading.

    Attributes:
        meter_id: Meter the reading belongs to
        timestamp: Interval start as an aware UTC datetime
        quantity: Energy in kWh
        rate: Unit rate in pence/kWh inc VAT, None when no tariff window applies
        standing_charge: Standing charge in pence/day inc VAT, if known
        cost: quantity * rate in pence, None without a rate
    """
    meter_id: str
    timestamp: datetime
    quantity: float
    rate: Optional[float] = None
    standing_charge: Optional[float] = None
    cost: Optional[float] = None


@dataclass(frozen=True)
class TariffWindow:
    """A unit rate valid over [start, end).

    ``end`` of None means open-ended. ``declared`` orders windows in the
    sequence the provider declared them; higher wins on overlap.
    """
    start: datetime
    end: Optional[datetime]
    unit_rate: float
    standing_charge: Optional[float] = None
    declared: int = 0

    def contains(self, timestamp: datetime) -> bool:
        if timestamp < self.start:
            return False
        return self.end is None or timestamp < self.end


@dataclass(frozen=True)
class Credential:
    """Provider identity and secret: an API key, or an email and password."""
    api_key: Optional[str] = None
    email: Optional[str] = None
    password: Optional[str] = None

    def __post_init__(self):
        if not self.api_key and not (self.email and self.password):
            raise ValueError("Credential needs an API key or an email and password")

    def __repr__(self) -> str:
        identity = self.email or "api-key"
        return f"Credential({identity})"


@dataclass(frozen=True)
class Token:
    """An access token and the instant it stops being valid (aware UTC)."""
    value: str
    expires_at: datetime
    refresh_token: Optional[str] = None

    def __repr__(self) -> str:
        return f"Token(expires_at={self.expires_at.isoformat()})"


@dataclass
class MeterReport:
    """Outcome of one meter's ingestion within a cycle.

    Attributes:
        meter_id: Meter the report is about
        fetched: Raw readings received from the provider
        written: Canonical readings written to storage
        duplicates: Readings dropped by the watermark filter
        skipped: Readings that failed normalization, counted by reason
        tariff_windows: Tariff windows available to the normalizer
        watermark: Watermark after the meter finished
        error: Why the meter was aborted, None if it completed
        cancelled: True when a shutdown prevented the meter from starting
    """
    meter_id: str
    fetched: int = 0
    written: int = 0
    duplicates: int = 0
    skipped: Dict[str, int] = field(default_factory=dict)
    tariff_windows: int = 0
    watermark: Optional[datetime] = None
    error: Optional[str] = None
    cancelled: bool = False

    @property
    def ok(self) -> bool:
        return self.error is None and not self.cancelled

    @property
    def skipped_total(self) -> int:
        return sum(self.skipped.values())


@dataclass
class CycleReport:
    """Outcome of one polling cycle over all meters."""
    meters: List[MeterReport] = field(default_factory=list)
    error: Optional[str] = None
    duration: float = 0.0

    @property
    def ok(self) -> bool:
        return self.error is None and all(m.ok for m in self.meters)
