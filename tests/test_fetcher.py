from datetime import datetime, timezone

import pytest

from octoinflux.client import (
    ExhaustedRetriesError,
    MalformedPageError,
    Page,
    TransientFetchError,
    UnauthorizedError,
    GRAPHQL_MEASUREMENTS,
)
from octoinflux.fetcher import STANDING_CHARGES, UNIT_RATES
from octoinflux.models import Meter, TariffWindow
from octoinflux.normalizer import TariffBook

from tests.conftest import FakeClient, rest_page

SINCE = datetime(2024, 1, 1, tzinfo=timezone.utc)


def starts(readings):
    return [r.interval_start for r in readings]


def test_follows_cursor_chain_to_the_end(make_fetcher, meter):
    client = FakeClient(pages={
        None: rest_page(meter.meter_id, ["2024-01-01T02:00:00Z", "2024-01-01T02:30:00Z"], next_cursor="c1"),
        "c1": rest_page(meter.meter_id, ["2024-01-01T00:00:00Z"], next_cursor="c2"),
        "c2": rest_page(meter.meter_id, ["2024-01-01T01:00:00Z", "2024-01-01T01:30:00Z"]),
    })
    fetcher = make_fetcher(client)

    readings = list(fetcher.fetch_since(meter, SINCE))

    # Provider order is preserved, nothing lost or repeated
    assert starts(readings) == [
        "2024-01-01T02:00:00Z", "2024-01-01T02:30:00Z", "2024-01-01T00:00:00Z",
        "2024-01-01T01:00:00Z", "2024-01-01T01:30:00Z",
    ]
    assert [call[3] for call in client.page_calls] == [None, "c1", "c2"]
    assert all(call[2] == SINCE for call in client.page_calls)


def test_fetch_is_lazy(make_fetcher, meter):
    client = FakeClient(pages={
        None: rest_page(meter.meter_id, ["2024-01-01T00:00:00Z"], next_cursor="c1"),
        "c1": rest_page(meter.meter_id, ["2024-01-01T00:30:00Z"]),
    })
    readings = make_fetcher(client).fetch_since(meter, SINCE)

    assert client.page_calls == []
    next(readings)
    assert len(client.page_calls) == 1


def test_transient_page_error_is_retried(make_fetcher, meter):
    client = FakeClient(pages={
        None: [TransientFetchError("HTTP 502"), rest_page(meter.meter_id, ["2024-01-01T00:00:00Z"])],
    })
    readings = list(make_fetcher(client).fetch_since(meter, SINCE))

    assert len(readings) == 1
    assert len(client.page_calls) == 2


def test_exhausted_retries(make_fetcher, meter):
    client = FakeClient(pages={
        None: rest_page(meter.meter_id, ["2024-01-01T00:00:00Z"], next_cursor="c1"),
        "c1": TransientFetchError("HTTP 503"),
    })
    readings = make_fetcher(client).fetch_since(meter, SINCE)

    assert next(readings).interval_start == "2024-01-01T00:00:00Z"
    with pytest.raises(ExhaustedRetriesError):
        next(readings)
    assert len(client.page_calls) == 1 + 3


def test_unauthorized_page_gets_fresh_token(make_fetcher, meter):
    client = FakeClient(pages={
        None: [UnauthorizedError("HTTP 401"), rest_page(meter.meter_id, ["2024-01-01T00:00:00Z"])],
    })
    list(make_fetcher(client).fetch_since(meter, SINCE))

    assert [call[0] for call in client.page_calls] == ["token-1", "token-2"]


def test_malformed_page_is_not_retried(make_fetcher, meter):
    client = FakeClient(pages={None: MalformedPageError("bad page")})

    with pytest.raises(MalformedPageError):
        list(make_fetcher(client).fetch_since(meter, SINCE))
    assert len(client.page_calls) == 1


def test_repeated_cursor_is_malformed(make_fetcher, meter):
    client = FakeClient(pages={
        None: rest_page(meter.meter_id, ["2024-01-01T00:00:00Z"], next_cursor="c1"),
        "c1": rest_page(meter.meter_id, ["2024-01-01T00:30:00Z"], next_cursor="c1"),
    })
    with pytest.raises(MalformedPageError):
        list(make_fetcher(client).fetch_since(meter, SINCE))


def test_page_tariff_windows_reach_the_book(make_fetcher, meter):
    window = TariffWindow(start=SINCE, end=None, unit_rate=24.5)
    client = FakeClient(pages={
        None: Page(kind=GRAPHQL_MEASUREMENTS, readings=[], tariff_windows=[window], next_cursor=None),
    })
    book = TariffBook()

    list(make_fetcher(client).fetch_since(meter, SINCE, book))

    assert [w.unit_rate for w in book] == [24.5]


def test_fetch_tariff_windows_joins_standing_charges(make_fetcher, rates_page):
    meter = Meter(meter_id="e1", kind="electricity", mpxn="1", serial="S",
                  product_code="AGILE-24-10-01", tariff_code="E-1R-AGILE-24-10-01-C")
    client = FakeClient(rates={
        (UNIT_RATES, None): rates_page([
            {"value_inc_vat": 30.0, "valid_from": "2024-01-01T00:30:00Z", "valid_to": "2024-01-01T01:00:00Z"},
        ], next_cursor="r2"),
        (UNIT_RATES, "r2"): rates_page([
            {"value_inc_vat": 20.0, "valid_from": "2024-01-01T00:00:00Z", "valid_to": "2024-01-01T00:30:00Z"},
        ]),
        (STANDING_CHARGES, None): rates_page([
            {"value_inc_vat": 47.85, "valid_from": "2023-04-01T00:00:00Z", "valid_to": None},
        ]),
    })

    windows = make_fetcher(client).fetch_tariff_windows(meter, SINCE)

    assert [(w.unit_rate, w.standing_charge, w.declared) for w in windows] == [(30.0, 47.85, 0), (20.0, 47.85, 1)]
    assert windows[0].start == datetime(2024, 1, 1, 0, 30, tzinfo=timezone.utc)
    assert client.rate_calls == [(UNIT_RATES, None), (UNIT_RATES, "r2"), (STANDING_CHARGES, None)]


def test_no_tariff_code_means_no_rate_requests(make_fetcher, meter):
    client = FakeClient()
    assert make_fetcher(client).fetch_tariff_windows(meter, SINCE) == []
    assert client.rate_calls == []


def test_unreadable_rate_is_malformed(make_fetcher, rates_page):
    meter = Meter(meter_id="e1", kind="electricity", mpxn="1", serial="S",
                  product_code="AGILE-24-10-01", tariff_code="E-1R-AGILE-24-10-01-C")
    client = FakeClient(rates={
        (UNIT_RATES, None): rates_page([{"value_inc_vat": "n/a", "valid_from": "2024-01-01T00:00:00Z"}]),
        (STANDING_CHARGES, None): rates_page([]),
    })
    with pytest.raises(MalformedPageError):
        make_fetcher(client).fetch_tariff_windows(meter, SINCE)
