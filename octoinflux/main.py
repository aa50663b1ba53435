"""Main entry point for octo-influx.

This module handles:
- Loading configuration from environment variables
- Wiring the client, token manager, fetcher, watermarks and InfluxDB writer
- Discovering meters from the Octopus account when none are configured
- Scheduling periodic ingestion cycles with APScheduler
- Stopping cleanly on SIGTERM/SIGINT, and for good on a rejected credential
"""

import logging
import os
import signal
import sys
import threading
from datetime import timedelta
from typing import Optional

from apscheduler.schedulers.blocking import BlockingScheduler
from apscheduler.triggers.interval import IntervalTrigger
from dotenv import load_dotenv

from octoinflux.auth import AuthManager
from octoinflux.client import AuthError, FetchError, InvalidCredentialError, OctopusClient
from octoinflux.config import Config, ConfigError, load_config, meters_from_account
from octoinflux.fetcher import PaginatedFetcher
from octoinflux.influxdb_exporter import InfluxDBExporter
from octoinflux.metrics import IngestionMetrics
from octoinflux.retry import RetryPolicy
from octoinflux.scheduler import IngestionScheduler
from octoinflux.watermarks import WatermarkStore, WatermarkTracker

# Configure module logger
logger = logging.getLogger(__name__)

# Shared across scheduled runs
ingestion: Optional[IngestionScheduler] = None
scheduler: Optional[BlockingScheduler] = None
stop_event = threading.Event()
halted = threading.Event()


def build_ingestion(config: Config, sink: InfluxDBExporter, metrics: Optional[IngestionMetrics]) -> IngestionScheduler:
    """Create the ingestion pipeline for ``config``.

    Meters come from the configuration, or from the account when the
    configuration lists none.

    Raises:
        InvalidCredentialError: If the credential is rejected during discovery
        AuthError, FetchError: If discovery fails
        ConfigError: If discovery finds no meters
    """
    retry_policy = RetryPolicy(max_attempts=config.retry_attempts, base_delay=config.retry_delay)
    client = OctopusClient(base_url=config.api_url, timeout=config.request_timeout, page_size=config.page_size)
    auth = AuthManager(client, config.credential, retry_policy=retry_policy)
    fetcher = PaginatedFetcher(client, auth, retry_policy=retry_policy)
    tracker = WatermarkTracker(WatermarkStore(config.watermark_file))

    meters = list(config.meters)
    if not meters:
        logger.info(f"Discovering meters for account {config.account_number}")
        account = client.get_account(auth.get_valid_token(), config.account_number)
        meters = meters_from_account(account, config)
        if not meters:
            raise ConfigError(f"No meters found on account {config.account_number}")

    return IngestionScheduler(
        auth=auth,
        fetcher=fetcher,
        tracker=tracker,
        sink=sink,
        meters=meters,
        max_workers=config.max_workers,
        batch_size=config.batch_size,
        backfill=timedelta(days=config.backfill_days),
        write_rates=config.write_rates,
        metrics=metrics,
    )


def run_cycle() -> bool:
    """Run one ingestion cycle.

    A rejected credential stops the scheduler: retrying cannot succeed until
    an operator fixes the configuration.

    Returns:
        True if every meter completed, False otherwise
    """
    try:
        report = ingestion.run_cycle(stop_event)
    except InvalidCredentialError as e:
        logger.critical(f"Octopus credential rejected, stopping. Check OCTOPUS_API_KEY / OCTOPUS_EMAIL: {e}")
        halted.set()
        stop_event.set()
        if scheduler is not None and scheduler.running:
            scheduler.shutdown(wait=False)
        return False
    except Exception:
        logger.exception("Ingestion cycle failed (unexpected error)")
        return False

    if not report.ok:
        logger.warning("Ingestion cycle completed with errors")
    return report.ok


def _handle_signal(signum, frame) -> None:
    logger.info(f"Received signal {signum}, shutting down after in-flight meters")
    stop_event.set()
    if scheduler is not None and scheduler.running:
        scheduler.shutdown(wait=False)


def main() -> int:
    """Main entry point.

    1. Load .env file with python-dotenv
    2. Load and validate configuration
    3. Connect to InfluxDB
    4. Start Prometheus HTTP server (for operational metrics)
    5. Build the pipeline, discovering meters if needed
    6. Run a cycle at startup
    7. Block on the scheduler, one cycle per poll interval

    Returns:
        Exit code (0 for success, 1 for failure)
    """
    global ingestion, scheduler

    load_dotenv()

    # Configure logging
    logging.basicConfig(
        level=getattr(logging, os.getenv("LOG_LEVEL", "INFO").upper(), logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        handlers=[logging.StreamHandler(sys.stdout)]
    )

    logger.info("octo-influx starting")

    try:
        config = load_config()
    except (ConfigError, ValueError) as e:
        logger.error(f"Configuration failed, exiting: {e}")
        return 1

    influxdb_exporter = InfluxDBExporter(
        url=config.influxdb_url,
        token=config.influxdb_token,
        org=config.influxdb_org,
        bucket=config.influxdb_bucket,
        timeout_ms=config.request_timeout * 1000,
        retry_policy=RetryPolicy(max_attempts=config.retry_attempts, base_delay=config.retry_delay),
    )
    if not influxdb_exporter.connect():
        logger.error("Failed to connect to InfluxDB, exiting")
        return 1

    metrics = IngestionMetrics(port=config.exporter_port)
    metrics.start()
    logger.info(f"Prometheus metrics available at http://localhost:{config.exporter_port}/metrics")

    try:
        ingestion = build_ingestion(config, influxdb_exporter, metrics)
    except InvalidCredentialError as e:
        logger.critical(f"Octopus credential rejected, exiting: {e}")
        influxdb_exporter.close()
        return 1
    except (AuthError, FetchError, ConfigError) as e:
        logger.error(f"Meter discovery failed, exiting: {e}")
        influxdb_exporter.close()
        return 1

    scheduler = BlockingScheduler()
    scheduler.add_job(
        run_cycle,
        trigger=IntervalTrigger(minutes=config.poll_interval_minutes),
        id="ingestion_cycle",
        name=f"Ingestion every {config.poll_interval_minutes} minutes",
        max_instances=1,
        coalesce=True,
    )

    signal.signal(signal.SIGTERM, _handle_signal)
    signal.signal(signal.SIGINT, _handle_signal)

    logger.info("Running initial ingestion cycle at startup")
    run_cycle()

    if not halted.is_set() and not stop_event.is_set():
        logger.info(f"Scheduled ingestion every {config.poll_interval_minutes} minutes, press Ctrl+C to exit")
        scheduler.start()

    influxdb_exporter.close()
    return 1 if halted.is_set() else 0


if __name__ == "__main__":
    sys.exit(main())
