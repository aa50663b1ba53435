import threading
from datetime import datetime, timedelta, timezone

import pytest
from prometheus_client import CollectorRegistry

from octoinflux.auth import AuthManager
from octoinflux.client import (
    REST_CONSUMPTION,
    InvalidCredentialError,
    MalformedPageError,
    Page,
    TransientAuthError,
    TransientFetchError,
    UnauthorizedError,
    decode_page,
)
from octoinflux.fetcher import PaginatedFetcher, STANDING_CHARGES, UNIT_RATES
from octoinflux.influxdb_exporter import RejectedStorageError
from octoinflux.metrics import IngestionMetrics
from octoinflux.models import Meter
from octoinflux.scheduler import IngestionScheduler

from tests.conftest import FakeClient, FakeSink, RejectingClient, raw, rest_page


def utc(*args):
    return datetime(*args, tzinfo=timezone.utc)


def meter_named(name, **kwargs):
    return Meter(meter_id=name, kind="electricity", mpxn=f"mpan-{name}", serial=f"serial-{name}", **kwargs)


@pytest.fixture
def build(credential, clock, no_wait_policy, tracker):
    def factory(client, meters, sink=None, **kwargs):
        client.clock = clock
        auth = AuthManager(client, credential, retry_policy=no_wait_policy, clock=clock, sleep=lambda s: None)
        fetcher = PaginatedFetcher(client, auth, retry_policy=no_wait_policy, sleep=lambda s: None)
        return IngestionScheduler(
            auth=auth, fetcher=fetcher, tracker=tracker, sink=sink or FakeSink(),
            meters=meters, clock=clock, **kwargs,
        )
    return factory


def test_two_pages_with_one_already_ingested(build, tracker):
    meter = meter_named("m1")
    tracker.advance("m1", utc(2024, 1, 1, 0, 30))
    client = FakeClient(pages={
        None: rest_page("m1", ["2024-01-01T01:00:00Z", "2024-01-01T00:00:00Z"], next_cursor="c1"),
        "c1": rest_page("m1", ["2024-01-01T01:30:00Z"]),
    })
    sink = FakeSink()

    report = build(client, [meter], sink).run_cycle()

    lines = sink.lines()
    assert len(lines) == 2
    written = sorted(int(line.rsplit(" ", 1)[1]) for line in lines)
    assert written == [int(utc(2024, 1, 1, 1, 0).timestamp()), int(utc(2024, 1, 1, 1, 30).timestamp())]
    assert tracker.watermark("m1") == utc(2024, 1, 1, 1, 30)
    assert report.ok
    assert report.meters[0].fetched == 3
    assert report.meters[0].written == 2
    assert report.meters[0].duplicates == 1
    # Resumed from the stored watermark
    assert client.page_calls[0][2] == utc(2024, 1, 1, 0, 30)


def test_rejected_credential_halts_before_any_meter(build, tracker):
    client = RejectingClient(pages={None: rest_page("m1", ["2024-01-01T00:00:00Z"])})
    sink = FakeSink()

    with pytest.raises(InvalidCredentialError):
        build(client, [meter_named("m1"), meter_named("m2")], sink).run_cycle()

    assert client.page_calls == []
    assert sink.batches == []
    assert tracker.watermark("m1") is None
    assert tracker.watermark("m2") is None


def test_transient_auth_failure_skips_cycle(build):
    client = FakeClient(auth_outcomes=[TransientAuthError("503")] * 3)

    report = build(client, [meter_named("m1")]).run_cycle()

    assert not report.ok
    assert "Authentication failed" in report.error
    assert report.meters == []
    assert client.page_calls == []


def test_new_meter_starts_from_backfill(build, clock):
    client = FakeClient(pages={None: rest_page("m1", [])})

    build(client, [meter_named("m1")], backfill=timedelta(days=7)).run_cycle()

    assert client.page_calls[0][2] == clock() - timedelta(days=7)


def test_normalize_failures_are_counted_not_hidden(build, tracker):
    client = FakeClient(pages={None: Page(kind=REST_CONSUMPTION, readings=[
        raw("m1", "2024-01-01T00:00:00Z"),
        raw("m1", "2024-01-01T00:30:00Z", unit="furlongs"),
        raw("m1", "not a time"),
        raw("m1", "2024-01-01T01:00:00Z", value="n/a"),
    ])})
    sink = FakeSink()

    report = build(client, [meter_named("m1")], sink).run_cycle()

    meter_report = report.meters[0]
    assert meter_report.written == 1
    assert meter_report.skipped == {"unknown_unit": 1, "unparsable_timestamp": 1, "invalid_value": 1}
    assert meter_report.ok
    assert tracker.watermark("m1") == utc(2024, 1, 1, 0, 0)


def test_failing_meter_does_not_stop_others(build, tracker):
    client = FakeClient(pages={
        "bad": {None: TransientFetchError("HTTP 500")},
        "good": {None: rest_page("good", ["2024-01-01T00:00:00Z"])},
    })
    sink = FakeSink()

    report = build(client, [meter_named("bad"), meter_named("good")], sink).run_cycle()

    by_id = {m.meter_id: m for m in report.meters}
    assert "ExhaustedRetriesError" in by_id["bad"].error
    assert by_id["good"].ok and by_id["good"].written == 1
    assert tracker.watermark("bad") is None
    assert tracker.watermark("good") == utc(2024, 1, 1)
    assert not report.ok


def test_bad_record_is_skipped_and_meter_keeps_moving(build, tracker):
    payload = {"next": None, "results": [
        {"consumption": 0.5, "interval_start": "2024-01-01T00:00:00Z"},
        {"interval_start": "2024-01-01T00:30:00Z"},
        {"consumption": 0.25, "interval_start": "2024-01-01T01:00:00Z"},
    ]}
    meter = meter_named("m1")
    client = FakeClient(pages={None: decode_page(payload, meter)})
    sink = FakeSink()
    scheduler = build(client, [meter], sink)

    first = scheduler.run_cycle().meters[0]
    second = scheduler.run_cycle().meters[0]

    assert first.ok
    assert first.written == 2
    assert first.skipped == {"malformed_record": 1}
    assert tracker.watermark("m1") == utc(2024, 1, 1, 1, 0)
    # The next cycle resumes past the bad record instead of failing on it again
    assert second.ok
    assert second.written == 0
    assert client.page_calls[1][2] == utc(2024, 1, 1, 1, 0)


def test_unreadable_page_keeps_watermark(build, tracker):
    client = FakeClient(pages={
        None: rest_page("m1", ["2024-01-01T00:00:00Z"], next_cursor="c1"),
        "c1": MalformedPageError("garbage"),
    })
    sink = FakeSink()

    report = build(client, [meter_named("m1")], sink, batch_size=1).run_cycle()

    # The first batch was written, but the session did not complete
    assert len(sink.lines()) == 1
    assert "MalformedPageError" in report.meters[0].error
    assert tracker.watermark("m1") is None


def test_storage_failure_keeps_watermark(build, tracker):
    client = FakeClient(pages={None: rest_page("m1", ["2024-01-01T00:00:00Z"])})
    sink = FakeSink(fail_with=RejectedStorageError("400 bad field"))

    report = build(client, [meter_named("m1")], sink).run_cycle()

    assert "RejectedStorageError" in report.meters[0].error
    assert tracker.watermark("m1") is None


def test_batches_are_split_and_deduplicated_across_pages(build, tracker):
    client = FakeClient(pages={
        None: rest_page("m1", ["2024-01-01T00:00:00Z", "2024-01-01T00:30:00Z"], next_cursor="c1"),
        "c1": rest_page("m1", ["2024-01-01T00:30:00Z", "2024-01-01T01:00:00Z"]),
    })
    sink = FakeSink()

    report = build(client, [meter_named("m1")], sink, batch_size=2).run_cycle()

    assert [len(lines) for _, lines in sink.batches] == [2, 1]
    assert report.meters[0].written == 3
    assert tracker.watermark("m1") == utc(2024, 1, 1, 1, 0)


def test_stop_event_prevents_new_meters(build):
    client = FakeClient(pages={None: rest_page("x", [])})
    stop = threading.Event()
    stop.set()

    report = build(client, [meter_named("m1"), meter_named("m2")]).run_cycle(stop)

    assert all(m.cancelled for m in report.meters)
    assert client.page_calls == []


def test_shutdown_between_meters_lets_running_meter_finish(build, tracker):
    stop = threading.Event()

    class StoppingClient(FakeClient):
        def query_page(self, token, meter, period_from, cursor=None):
            # Shutdown arrives while the first meter is fetching
            stop.set()
            return super().query_page(token, meter, period_from, cursor)

    client = StoppingClient(pages={
        "m1": {None: rest_page("m1", ["2024-01-01T00:00:00Z"])},
        "m2": {None: rest_page("m2", ["2024-01-01T00:00:00Z"])},
    })

    report = build(client, [meter_named("m1"), meter_named("m2")], max_workers=1).run_cycle(stop)

    assert report.meters[0].ok and report.meters[0].written == 1
    assert report.meters[1].cancelled
    assert tracker.watermark("m1") == utc(2024, 1, 1)


def test_credential_rejected_mid_cycle_stops_remaining_meters(build, tracker):
    client = FakeClient(
        pages={"m1": {None: UnauthorizedError("HTTP 401")}, "m2": {None: rest_page("m2", ["2024-01-01T00:00:00Z"])}},
    )
    scheduler = build(client, [meter_named("m1"), meter_named("m2")], max_workers=1)
    scheduler.auth.get_valid_token()

    # The provider then revokes the credential: every refresh fails
    def revoke(*args, **kwargs):
        raise InvalidCredentialError("API key revoked")

    client.authenticate = revoke

    with pytest.raises(InvalidCredentialError):
        scheduler.run_cycle()
    assert [call[1] for call in client.page_calls] == ["m1"]
    assert tracker.watermark("m2") is None


def test_tariff_rates_attached_and_written(build, rates_page):
    meter = meter_named("m1", product_code="AGILE-24-10-01", tariff_code="E-1R-AGILE-24-10-01-C")
    client = FakeClient(
        pages={None: rest_page("m1", ["2024-01-01T00:00:00Z"])},
        rates={
            (UNIT_RATES, None): rates_page([{"value_inc_vat": 12.5, "valid_from": "2023-12-31T00:00:00Z", "valid_to": None}]),
            (STANDING_CHARGES, None): rates_page([]),
        },
    )
    sink = FakeSink()

    report = build(client, [meter], sink, write_rates=True).run_cycle()

    consumption = sink.lines()
    assert "rate=12.5" in consumption[0]
    assert "cost=6.25" in consumption[0]
    assert len(sink.lines("rates/")) == 1
    assert report.meters[0].tariff_windows == 1


def test_tariff_fetch_failure_still_ingests_readings(build):
    meter = meter_named("m1", product_code="AGILE-24-10-01", tariff_code="E-1R-AGILE-24-10-01-C")
    client = FakeClient(
        pages={None: rest_page("m1", ["2024-01-01T00:00:00Z"])},
        rates={(UNIT_RATES, None): TransientFetchError("HTTP 500")},
    )
    sink = FakeSink()

    report = build(client, [meter], sink).run_cycle()

    assert report.meters[0].ok
    assert "rate=" not in sink.lines()[0]


def test_cycle_updates_metrics(build):
    registry = CollectorRegistry()
    metrics = IngestionMetrics(registry=registry)
    client = FakeClient(pages={None: rest_page("m1", ["2024-01-01T00:00:00Z"])})

    build(client, [meter_named("m1")], metrics=metrics).run_cycle()

    assert registry.get_sample_value("octo_cycle_success") == 1.0
    assert registry.get_sample_value("octo_readings_written_total", {"meter_id": "m1"}) == 1.0


def test_invalid_settings_rejected(build):
    with pytest.raises(ValueError):
        build(FakeClient(), [], max_workers=0)


def test_rates_write_failure_still_ingests_readings(build, tracker, rates_page):
    class RatesRejectingSink(FakeSink):
        def write_batch(self, series_key, points):
            if series_key.startswith("rates/"):
                raise RejectedStorageError("400 rates field type conflict")
            return super().write_batch(series_key, points)

    meter = meter_named("m1", product_code="AGILE-24-10-01", tariff_code="E-1R-AGILE-24-10-01-C")
    client = FakeClient(
        pages={None: rest_page("m1", ["2024-01-01T00:00:00Z"])},
        rates={
            (UNIT_RATES, None): rates_page([{"value_inc_vat": 12.5, "valid_from": "2023-12-31T00:00:00Z"}]),
            (STANDING_CHARGES, None): rates_page([]),
        },
    )
    sink = RatesRejectingSink()

    report = build(client, [meter], sink, write_rates=True).run_cycle()

    assert report.meters[0].ok
    assert len(sink.lines()) == 1
    # Rates are still attached to the readings
    assert "rate=12.5" in sink.lines()[0]
    assert tracker.watermark("m1") == utc(2024, 1, 1)
