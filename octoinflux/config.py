"""Configuration loading.

This module handles:
- Reading settings from environment variables (after .env is loaded)
- Validating required settings
- Parsing the configured meter list
- Deriving meters from an Octopus account when none are configured

The resulting Config is immutable for the life of the process.
"""

import logging
import os
import re
from dataclasses import dataclass
from typing import List, Mapping, Optional, Tuple

from octoinflux.client import DEFAULT_API_URL
from octoinflux.models import ELECTRICITY, GAS, Credential, Meter

# Configure module logger
logger = logging.getLogger(__name__)

# E-1R-AGILE-24-10-01-C: fuel, register count, product code, region letter
TARIFF_CODE_RE = re.compile(r"^[EG]-\dR-(?P<product>.+)-[A-P]$")


class ConfigError(Exception):
    """Exception raised for missing or invalid configuration."""
    pass


@dataclass(frozen=True)
class Config:
    """Daemon settings, see ``load_config`` for the variables behind them."""
    credential: Credential
    influxdb_token: str
    meters: Tuple[Meter, ...] = ()
    account_number: Optional[str] = None
    api_url: str = DEFAULT_API_URL
    poll_interval_minutes: int = 60
    max_workers: int = 2
    page_size: int = 1000
    batch_size: int = 500
    backfill_days: int = 30
    request_timeout: int = 30
    retry_attempts: int = 3
    retry_delay: int = 2
    source: str = "rest"
    gas_unit: str = "m3"
    timezone: str = "Europe/London"
    watermark_file: str = "watermarks.json"
    exporter_port: int = 9120
    influxdb_url: str = "http://localhost:8086"
    influxdb_org: str = "octopus"
    influxdb_bucket: str = "energy"
    write_rates: bool = True
    log_level: str = "INFO"


def product_code_from_tariff(tariff_code: Optional[str]) -> Optional[str]:
    """Extract the product code from a tariff code.

    Example:
        >>> product_code_from_tariff("E-1R-AGILE-24-10-01-C")
        'AGILE-24-10-01'
    """
    if not tariff_code:
        return None
    match = TARIFF_CODE_RE.match(tariff_code.strip())
    return match.group("product") if match else None


def parse_meters(
    text: str,
    gas_unit: str = "m3",
    tz_name: str = "Europe/London",
    source: str = "rest",
    account_number: Optional[str] = None,
) -> List[Meter]:
    """Parse OCTOPUS_METERS.

    Entries are separated by commas, fields by colons:
    ``kind:mpxn:serial[:tariff_code[:unit]]``, for example
    ``electricity:1200031658314:21L3938283:E-1R-AGILE-24-10-01-C``.

    Raises:
        ConfigError: If an entry is malformed
    """
    meters = []
    for entry in text.split(","):
        entry = entry.strip()
        if not entry:
            continue
        fields = [f.strip() for f in entry.split(":")]
        if len(fields) < 3 or len(fields) > 5:
            raise ConfigError(f"Invalid meter entry {entry!r}, expected kind:mpxn:serial[:tariff_code[:unit]]")

        kind, mpxn, serial = fields[:3]
        if kind not in (ELECTRICITY, GAS):
            raise ConfigError(f"Invalid meter kind {kind!r} in {entry!r}")
        if not mpxn or not serial:
            raise ConfigError(f"Meter entry {entry!r} needs an MPAN/MPRN and a serial")

        tariff_code = fields[3] if len(fields) > 3 and fields[3] else None
        unit = fields[4] if len(fields) > 4 and fields[4] else (gas_unit if kind == GAS else "kwh")

        meters.append(Meter(
            meter_id=f"{kind}-{mpxn}-{serial}",
            kind=kind,
            mpxn=mpxn,
            serial=serial,
            unit=unit,
            timezone=tz_name,
            product_code=product_code_from_tariff(tariff_code),
            tariff_code=tariff_code,
            account_number=account_number,
            source=source,
        ))
    return meters


def meters_from_account(account: dict, config: Config) -> List[Meter]:
    """Build the meter list from an account's properties.

    Each meter takes the tariff of its meter point's latest agreement.
    """
    meters = []
    for prop in account.get("properties", []):
        logger.info(f"Property {prop.get('address_line_1', '?')}")
        for kind, points_key, id_key, unit in (
            (ELECTRICITY, "electricity_meter_points", "mpan", "kwh"),
            (GAS, "gas_meter_points", "mprn", config.gas_unit),
        ):
            for point in prop.get(points_key) or []:
                mpxn = point[id_key]
                agreements = point.get("agreements") or []
                tariff_code = agreements[-1].get("tariff_code") if agreements else None
                for meter in point.get("meters") or []:
                    serial = meter["serial_number"]
                    logger.info(f"Found {kind} meter {mpxn}/{serial} on tariff {tariff_code}")
                    meters.append(Meter(
                        meter_id=f"{kind}-{mpxn}-{serial}",
                        kind=kind,
                        mpxn=mpxn,
                        serial=serial,
                        unit=unit,
                        timezone=config.timezone,
                        product_code=product_code_from_tariff(tariff_code),
                        tariff_code=tariff_code,
                        account_number=config.account_number,
                        source=config.source,
                    ))
    return meters


def _int_setting(env: Mapping[str, str], name: str, default: int) -> int:
    try:
        value = int(env.get(name, str(default)))
    except ValueError:
        logger.warning(f"Invalid {name}, using default: {default}")
        return default
    if value < 1:
        logger.warning(f"{name} must be positive, using default: {default}")
        return default
    return value


def load_config(env: Optional[Mapping[str, str]] = None) -> Config:
    """Load configuration from environment variables.

    Required:
        OCTOPUS_API_KEY, or OCTOPUS_EMAIL and OCTOPUS_PASSWORD
        OCTOPUS_METERS or OCTOPUS_ACCOUNT_NUMBER
        INFLUXDB_TOKEN: InfluxDB API token

    Optional:
        OCTOPUS_API_URL: API root (default: https://api.octopus.energy)
        OCTOPUS_SOURCE: "rest" consumption endpoint or "graphql" measurements (default: rest)
        OCTOPUS_GAS_UNIT: Unit gas meters report in (default: m3)
        OCTOPUS_TIMEZONE: Zone for offset-less timestamps (default: Europe/London)
        POLL_INTERVAL_MINUTES: Minutes between cycles (default: 60)
        MAX_WORKERS: Meters ingested at once (default: 2)
        PAGE_SIZE: Readings per API page (default: 1000)
        BATCH_SIZE: Points per InfluxDB write (default: 500)
        BACKFILL_DAYS: History fetched for a new meter (default: 30)
        REQUEST_TIMEOUT: Seconds per network call (default: 30)
        RETRY_ATTEMPTS: Attempts per network call (default: 3)
        RETRY_DELAY: Seconds before the first retry (default: 2)
        WATERMARK_FILE: Watermark state file (default: watermarks.json)
        EXPORTER_PORT: Prometheus port (default: 9120)
        INFLUXDB_URL: InfluxDB server URL (default: http://localhost:8086)
        INFLUXDB_ORG: InfluxDB organization (default: octopus)
        INFLUXDB_BUCKET: InfluxDB bucket (default: energy)
        WRITE_RATES: Write tariff windows to the rates series (default: true)
        LOG_LEVEL: Logging level (default: INFO)

    Returns:
        Config

    Raises:
        ConfigError: If required settings are missing or invalid
    """
    env = os.environ if env is None else env

    api_key = env.get("OCTOPUS_API_KEY", "")
    email = env.get("OCTOPUS_EMAIL", "")
    password = env.get("OCTOPUS_PASSWORD", "")
    meters_text = env.get("OCTOPUS_METERS", "")
    account_number = env.get("OCTOPUS_ACCOUNT_NUMBER", "") or None
    influxdb_token = env.get("INFLUXDB_TOKEN", "")

    # Validate required config
    missing = []
    if not api_key and not (email and password):
        missing.append("OCTOPUS_API_KEY (or OCTOPUS_EMAIL and OCTOPUS_PASSWORD)")
    if not meters_text and not account_number:
        missing.append("OCTOPUS_METERS (or OCTOPUS_ACCOUNT_NUMBER)")
    if not influxdb_token:
        missing.append("INFLUXDB_TOKEN")
    if missing:
        raise ConfigError(f"Missing required environment variables: {', '.join(missing)}")

    gas_unit = env.get("OCTOPUS_GAS_UNIT", "m3")
    tz_name = env.get("OCTOPUS_TIMEZONE", "Europe/London")
    source = env.get("OCTOPUS_SOURCE", "rest").strip().lower()
    if source not in ("rest", "graphql"):
        raise ConfigError(f"Invalid OCTOPUS_SOURCE {source!r}, expected rest or graphql")
    if source == "graphql" and not account_number:
        raise ConfigError("OCTOPUS_SOURCE=graphql needs OCTOPUS_ACCOUNT_NUMBER")

    config = Config(
        credential=Credential(api_key=api_key or None, email=email or None, password=password or None),
        influxdb_token=influxdb_token,
        meters=tuple(parse_meters(meters_text, gas_unit, tz_name, source, account_number)),
        account_number=account_number,
        api_url=env.get("OCTOPUS_API_URL", DEFAULT_API_URL),
        poll_interval_minutes=_int_setting(env, "POLL_INTERVAL_MINUTES", 60),
        max_workers=_int_setting(env, "MAX_WORKERS", 2),
        page_size=_int_setting(env, "PAGE_SIZE", 1000),
        batch_size=_int_setting(env, "BATCH_SIZE", 500),
        backfill_days=_int_setting(env, "BACKFILL_DAYS", 30),
        request_timeout=_int_setting(env, "REQUEST_TIMEOUT", 30),
        retry_attempts=_int_setting(env, "RETRY_ATTEMPTS", 3),
        retry_delay=_int_setting(env, "RETRY_DELAY", 2),
        source=source,
        gas_unit=gas_unit,
        timezone=tz_name,
        watermark_file=env.get("WATERMARK_FILE", "watermarks.json"),
        exporter_port=_int_setting(env, "EXPORTER_PORT", 9120),
        influxdb_url=env.get("INFLUXDB_URL", "http://localhost:8086"),
        influxdb_org=env.get("INFLUXDB_ORG", "octopus"),
        influxdb_bucket=env.get("INFLUXDB_BUCKET", "energy"),
        write_rates=env.get("WRITE_RATES", "true").strip().lower() in ("1", "true", "yes", "on"),
        log_level=env.get("LOG_LEVEL", "INFO").upper(),
    )

    logger.info(f"Configuration loaded: {len(config.meters)} meters, "
                f"account={config.account_number}, "
                f"poll_interval={config.poll_interval_minutes}m, "
                f"influxdb_url={config.influxdb_url}")
    return config
