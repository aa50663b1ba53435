"""Paginated retrieval of consumption and tariff data.

This module handles:
- Following page cursors until the provider signals the last page
- Retrying failed pages with the shared retry policy
- Getting a fresh token when the provider refuses the current one
- Joining unit-rate and standing-charge listings into tariff windows

Readings are yielded in the order the provider sent them. Pages are not
guaranteed to be chronological and no reordering happens here.
"""

import logging
import time
from datetime import datetime
from typing import Callable, Iterator, List, Optional, TypeVar

from octoinflux.auth import AuthManager
from octoinflux.client import (
    ExhaustedRetriesError,
    MalformedPageError,
    OctopusClient,
    TransientFetchError,
    UnauthorizedError,
    parse_api_datetime,
)
from octoinflux.models import Meter, RawReading, TariffWindow, Token
from octoinflux.normalizer import TariffBook
from octoinflux.retry import RetryError, RetryPolicy

# Configure module logger
logger = logging.getLogger(__name__)

T = TypeVar("T")

UNIT_RATES = "standard-unit-rates"
STANDING_CHARGES = "standing-charges"


class PaginatedFetcher:
    """Pulls every page of a listing, one request at a time."""

    def __init__(
        self,
        client: OctopusClient,
        auth: AuthManager,
        retry_policy: Optional[RetryPolicy] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.client = client
        self.auth = auth
        self.retry_policy = retry_policy or RetryPolicy()
        self._sleep = sleep

    def _fetch_page(self, description: str, request: Callable[[Token], T]) -> T:
        """Run one page request under the retry policy.

        Raises:
            ExhaustedRetriesError: If the page kept failing
            MalformedPageError: If the page could not be decoded
        """
        def attempt() -> T:
            token = self.auth.get_valid_token()
            try:
                return request(token)
            except UnauthorizedError:
                self.auth.invalidate()
                raise

        try:
            return self.retry_policy.call(
                attempt,
                retry_on=(TransientFetchError,),
                description=description,
                sleep=self._sleep,
            )
        except RetryError as e:
            raise ExhaustedRetriesError(f"{description} failed after {e.attempts} attempts: {e.last_error}") from e

    def fetch_since(
        self,
        meter: Meter,
        since: datetime,
        tariffs: Optional[TariffBook] = None,
    ) -> Iterator[RawReading]:
        """Yield every raw reading from ``since`` onwards, page by page.

        Args:
            meter: Meter to fetch
            since: Lower bound passed to the provider as the period filter
            tariffs: Book that receives tariff windows declared on pages

        Yields:
            RawReading objects in provider order

        Raises:
            ExhaustedRetriesError: If a page kept failing
            MalformedPageError: If a page was unreadable or a cursor repeated
        """
        cursor: Optional[str] = None
        used_cursors = set()
        page_number = 0
        total = 0

        while True:
            page_number += 1
            page = self._fetch_page(
                f"page {page_number} for meter {meter.meter_id}",
                lambda token, cursor=cursor: self.client.query_page(token, meter, since, cursor),
            )
            logger.debug(f"Meter {meter.meter_id} page {page_number} ({page.kind}): {len(page.readings)} readings")

            if tariffs is not None and page.tariff_windows:
                tariffs.add(page.tariff_windows)

            total += len(page.readings)
            yield from page.readings

            if page.next_cursor is None:
                logger.info(f"Fetched {total} readings in {page_number} pages for meter {meter.meter_id}")
                return
            if page.next_cursor in used_cursors:
                raise MalformedPageError(f"Cursor repeated on page {page_number} for meter {meter.meter_id}")
            used_cursors.add(page.next_cursor)
            cursor = page.next_cursor

    def _fetch_rates(self, meter: Meter, listing: str, since: datetime) -> List[dict]:
        cursor: Optional[str] = None
        used_cursors = set()
        rates: List[dict] = []

        while True:
            page = self._fetch_page(
                f"{listing} for meter {meter.meter_id}",
                lambda token, cursor=cursor: self.client.query_rates_page(token, meter, listing, since, cursor),
            )
            rates.extend(page.rates)
            if page.next_cursor is None:
                return rates
            if page.next_cursor in used_cursors:
                raise MalformedPageError(f"Cursor repeated in {listing} for meter {meter.meter_id}")
            used_cursors.add(page.next_cursor)
            cursor = page.next_cursor

    def fetch_tariff_windows(self, meter: Meter, since: datetime) -> List[TariffWindow]:
        """Fetch the meter's unit rates and standing charges as tariff windows.

        Windows are numbered in the order the provider listed the unit rates.
        Each window takes the standing charge in force at its start.

        Raises:
            ExhaustedRetriesError: If a page kept failing
            MalformedPageError: If a rate entry was unreadable
        """
        if not meter.has_tariff:
            return []

        unit_rates = self._fetch_rates(meter, UNIT_RATES, since)
        standing_charges = self._fetch_rates(meter, STANDING_CHARGES, since)

        try:
            charges = [
                (parse_api_datetime(c["valid_from"]), parse_api_datetime(c.get("valid_to")), float(c["value_inc_vat"]))
                for c in standing_charges
            ]
            windows = []
            for index, rate in enumerate(unit_rates):
                start = parse_api_datetime(rate["valid_from"])
                standing_charge = None
                for charge_start, charge_end, value in charges:
                    if charge_start <= start and (charge_end is None or start < charge_end):
                        standing_charge = value
                windows.append(TariffWindow(
                    start=start,
                    end=parse_api_datetime(rate.get("valid_to")),
                    unit_rate=float(rate["value_inc_vat"]),
                    standing_charge=standing_charge,
                    declared=index,
                ))
        except (KeyError, TypeError, ValueError) as e:
            raise MalformedPageError(f"Unreadable tariff rate for meter {meter.meter_id}: {e}") from e

        logger.info(f"Fetched {len(windows)} tariff windows for meter {meter.meter_id} ({meter.tariff_code})")
        return windows
