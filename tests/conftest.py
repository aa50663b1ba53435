from datetime import datetime, timedelta, timezone

import pytest

from octoinflux.auth import AuthManager
from octoinflux.client import InvalidCredentialError, Page, RatesPage, REST_CONSUMPTION
from octoinflux.fetcher import PaginatedFetcher
from octoinflux.models import Credential, Meter, RawReading, Token
from octoinflux.retry import RetryPolicy
from octoinflux.watermarks import WatermarkStore, WatermarkTracker

NOW = datetime(2024, 1, 15, 12, 0, tzinfo=timezone.utc)


class FakeClock:
    def __init__(self, now=NOW):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)


class FakeClient:
    """Stands in for OctopusClient.

    ``pages`` maps a cursor (None for the first page) to a Page, or to an
    exception to raise. A list of outcomes is consumed one call at a time.
    """

    def __init__(self, pages=None, rates=None, auth_outcomes=None, lifetime=timedelta(hours=1), clock=None):
        self.pages = pages or {}
        self.rates = rates or {}
        self.auth_outcomes = list(auth_outcomes or [])
        self.lifetime = lifetime
        self.clock = clock or FakeClock()
        self.auth_calls = []
        self.page_calls = []
        self.rate_calls = []

    def authenticate(self, credential, refresh_token=None):
        self.auth_calls.append(refresh_token)
        if self.auth_outcomes:
            outcome = self.auth_outcomes.pop(0)
            if isinstance(outcome, Exception):
                raise outcome
            return outcome
        return Token(
            value=f"token-{len(self.auth_calls)}",
            expires_at=self.clock() + self.lifetime,
            refresh_token=f"refresh-{len(self.auth_calls)}",
        )

    def _outcome(self, table, key):
        outcome = table[key]
        if isinstance(outcome, list):
            outcome = outcome.pop(0) if len(outcome) > 1 else outcome[0]
        if isinstance(outcome, Exception):
            raise outcome
        return outcome

    def query_page(self, token, meter, period_from, cursor=None):
        self.page_calls.append((token.value, meter.meter_id, period_from, cursor))
        return self._outcome(self.pages.get(meter.meter_id, self.pages), cursor)

    def query_rates_page(self, token, meter, listing, period_from, cursor=None):
        self.rate_calls.append((listing, cursor))
        return self._outcome(self.rates, (listing, cursor))


class RejectingClient(FakeClient):
    def authenticate(self, credential, refresh_token=None):
        self.auth_calls.append(refresh_token)
        raise InvalidCredentialError("Invalid API key")


class FakeSink:
    def __init__(self, fail_with=None):
        self.batches = []
        self.fail_with = fail_with

    def write_batch(self, series_key, points):
        if self.fail_with is not None:
            raise self.fail_with
        self.batches.append((series_key, [p.to_line_protocol() for p in points]))
        return len(points)

    def lines(self, prefix="consumption/"):
        return [line for key, lines in self.batches if key.startswith(prefix) for line in lines]


def raw(meter_id, start, value=0.5, unit="kwh"):
    return RawReading(meter_id=meter_id, value=value, unit=unit, interval_start=start)


def rest_page(meter_id, starts, next_cursor=None, unit="kwh"):
    return Page(
        kind=REST_CONSUMPTION,
        readings=[raw(meter_id, s, unit=unit) for s in starts],
        next_cursor=next_cursor,
    )


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def credential():
    return Credential(api_key="sk_test_key")


@pytest.fixture
def meter():
    return Meter(meter_id="electricity-1200031658314-21L3938283", kind="electricity",
                 mpxn="1200031658314", serial="21L3938283")


@pytest.fixture
def no_wait_policy():
    return RetryPolicy(max_attempts=3, base_delay=0, jitter=0)


@pytest.fixture
def make_fetcher(credential, clock, no_wait_policy):
    def factory(client):
        client.clock = clock
        auth = AuthManager(client, credential, retry_policy=no_wait_policy, clock=clock, sleep=lambda s: None)
        return PaginatedFetcher(client, auth, retry_policy=no_wait_policy, sleep=lambda s: None)
    return factory


@pytest.fixture
def tracker(tmp_path):
    return WatermarkTracker(WatermarkStore(str(tmp_path / "watermarks.json")))


@pytest.fixture
def rates_page():
    def factory(rates, next_cursor=None):
        return RatesPage(rates=rates, next_cursor=next_cursor)
    return factory
