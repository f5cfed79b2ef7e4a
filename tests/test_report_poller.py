from itertools import islice

import requests

from conftest import CHANNEL, MARKETPLACE
from services import report_batches
from services.report_poller import backoff_delays, poll_until_terminal
from services.spapi_reports import ReportApiError, SpApiQuotaError, _ReportsApiClient


class FakeClock:
    def __init__(self):
        self.now = 0.0
        self.sleeps = []

    def sleep(self, seconds):
        self.sleeps.append(seconds)
        self.now += seconds

    def __call__(self):
        return self.now


def _scripted(results):
    calls = []

    def poll(batch_id):
        calls.append(batch_id)
        item = results.pop(0)
        if isinstance(item, Exception):
            raise item
        return {"batch_id": batch_id, **item}

    return poll, calls


def test_backoff_holds_at_last_delay():
    assert list(islice(backoff_delays((2, 4, 8)), 6)) == [2, 4, 8, 8, 8, 8]
    assert list(islice(backoff_delays((2, 4, 8, 15, 20)), 7)) == [2, 4, 8, 15, 20, 20, 20]


def test_poll_until_completed():
    clock = FakeClock()
    poll, calls = _scripted([{"status": "processing"}, {"status": "completed", "row_count": 3}])
    result = poll_until_terminal("b1", max_wait_seconds=60, poll_once=poll, sleep=clock.sleep, clock=clock)
    assert result["status"] == "completed"
    assert result["still_processing"] is False
    assert result["attempts"] == 2
    assert clock.sleeps == [2]


def test_timeout_reports_still_processing_not_failure():
    clock = FakeClock()
    poll, calls = _scripted([{"status": "processing"}] * 10)
    result = poll_until_terminal(
        "b1",
        max_wait_seconds=30,
        schedule=(2, 4, 8, 15, 20),
        poll_once=poll,
        sleep=clock.sleep,
        clock=clock,
    )
    assert result["status"] == "processing"
    assert result["still_processing"] is True
    assert len(calls) == 5
    assert clock.sleeps == [2, 4, 8, 15]


def test_transport_errors_are_retried():
    clock = FakeClock()
    poll, calls = _scripted([SpApiQuotaError("QuotaExceeded"), ReportApiError("timeout"), {"status": "failed"}])
    result = poll_until_terminal("b1", max_wait_seconds=60, poll_once=poll, sleep=clock.sleep, clock=clock)
    assert result["status"] == "failed"
    assert result["transport_errors"] == 2
    assert len(calls) == 3


def test_token_outage_leaves_batch_processing(inventory_db, fake_client):
    class UnreachableAuth:
        def get_lwa_access_token(self):
            raise requests.ConnectionError("LWA unreachable")

    batch_id = report_batches.request_snapshot(CHANNEL, MARKETPLACE, "per-location", client=fake_client())
    client = _ReportsApiClient(auth=UnreachableAuth(), host="https://sp.example.test")
    clock = FakeClock()
    result = poll_until_terminal(
        batch_id,
        max_wait_seconds=9,
        schedule=(2, 4),
        poll_once=lambda b: report_batches.poll_once(b, client=client),
        sleep=clock.sleep,
        clock=clock,
    )
    assert result["still_processing"] is True
    assert result["transport_errors"] == result["attempts"] == 3
    assert report_batches.get_batch(batch_id)["status"] == "requested"
