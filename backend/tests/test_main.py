from __future__ import annotations

from datetime import datetime, timezone
from unittest.mock import MagicMock

import pytest
from fastapi.testclient import TestClient

from connectors.fetcher import UpstreamFetchError
from connectors.registry import UnknownPlatformError
from predictwatch.domain import SiteCredentials
from predictwatch.main import _sync_service, app
from predictwatch.repositories import EventRecord, MarketRecord
from predictwatch.services.reconciliation import SyncResult
from predictwatch.services.sync_service import (
    BatchSyncResult,
    CachedEventNotFoundError,
    PriceRefreshResult,
    SyncService,
)

SITE = SiteCredentials(site_id="site-1", base_url="https://kalshi.com", platform_key="kalshi")


def _event_record(external_id: str = "EVT1") -> EventRecord:
    return EventRecord(
        id="evt-cache-1",
        site_id="site-1",
        section_id="sec-1",
        external_id=external_id,
        title="Will the test pass?",
        description=None,
        status="open",
        next_trading_close_time=datetime(2026, 11, 3, 12, tzinfo=timezone.utc),
        end_date=None,
        volume=10.0,
        liquidity=None,
        outcomes={"Yes": 0.6, "No": 0.4},
        fetched_at=datetime(2026, 10, 18, tzinfo=timezone.utc),
    )


def _market_record() -> MarketRecord:
    return MarketRecord(
        id="mkt-cache-1",
        event_cache_id="evt-cache-1",
        site_id="site-1",
        section_id="sec-1",
        external_id="EVT1-M1",
        title="Yes/No",
        status="active",
        close_time=None,
        next_trading_close_time=None,
        settlement_date=None,
        volume=None,
        liquidity=None,
        outcomes={"Yes": 0.7, "No": 0.3},
        fetched_at=datetime(2026, 10, 18, tzinfo=timezone.utc),
        previous_outcomes={"Yes": 0.6, "No": 0.4},
    )


@pytest.fixture
def service():
    mock_service = MagicMock(spec=SyncService)
    mock_service.site_credentials.return_value = SITE
    app.dependency_overrides[_sync_service] = lambda: mock_service
    yield mock_service
    app.dependency_overrides.clear()


@pytest.fixture
def client():
    """Test client without startup hooks so no database is touched."""
    return TestClient(app)


def test_healthcheck(client):
    """Verify the healthcheck endpoint returns a successful response."""
    response = client.get("/healthz")
    assert response.status_code == 200
    assert response.json() == {"status": "ok"}


def test_sync_events_returns_classified_records(client, service):
    service.sync_events.return_value = SyncResult(new_records=[_event_record()], removed_count=2)

    response = client.post("/sites/site-1/events/sync", json={"section_external_ids": ["Politics"]})

    assert response.status_code == 200
    body = response.json()
    assert [item["external_id"] for item in body["new_records"]] == ["EVT1"]
    assert body["changed_records"] == []
    assert body["removed_count"] == 2
    service.sync_events.assert_called_once_with(SITE, ["Politics"])


def test_unknown_platform_maps_to_bad_request(client, service):
    service.sync_events.side_effect = UnknownPlatformError("Platform 'x' is not registered")
    response = client.post("/sites/site-1/events/sync", json={"section_external_ids": []})
    assert response.status_code == 400


def test_upstream_failure_maps_to_bad_gateway(client, service):
    service.sync_markets_for_event.side_effect = UpstreamFetchError(
        "GET /events/EVT1 returned 503", url="https://api.test/events/EVT1", status_code=503
    )
    response = client.post("/events/evt-cache-1/markets/sync")
    assert response.status_code == 502
    assert "503" in response.json()["detail"]


def test_missing_event_maps_to_not_found(client, service):
    service.sync_markets_for_event.side_effect = CachedEventNotFoundError("Cached event 'x' not found")
    response = client.post("/events/x/markets/sync")
    assert response.status_code == 404


def test_market_sync_includes_previous_outcomes(client, service):
    service.sync_markets_for_event.return_value = SyncResult(changed_records=[_market_record()])

    response = client.post("/events/evt-cache-1/markets/sync")

    assert response.status_code == 200
    changed = response.json()["changed_records"][0]
    assert changed["outcomes"] == {"Yes": 0.7, "No": 0.3}
    assert changed["previous_outcomes"] == {"Yes": 0.6, "No": 0.4}


def test_batch_sync_reports_counts(client, service):
    batch = BatchSyncResult(
        results={"evt-cache-1": SyncResult(new_records=[_market_record()])},
        failures={"evt-cache-2": "GET /events/EVT2 returned 500"},
    )
    service.sync_markets_for_events.return_value = batch

    response = client.post("/markets/sync", json={"event_ids": ["evt-cache-1", "evt-cache-2"]})

    assert response.status_code == 200
    body = response.json()
    assert body["succeeded"] == 1
    assert body["failed"] == 1
    assert body["failures"] == {"evt-cache-2": "GET /events/EVT2 returned 500"}


def test_oversized_batch_is_rejected(client, service):
    service.sync_markets_for_events.side_effect = ValueError("At most 50 events can be synced per batch")
    response = client.post("/markets/sync", json={"event_ids": ["a"]})
    assert response.status_code == 400


def test_associate_unknown_ticker_returns_not_found(client, service):
    service.associate_event.return_value = None
    response = client.post("/sites/site-1/events/associate", json={"ticker": "  NOPE  "})
    assert response.status_code == 404
    service.associate_event.assert_called_once_with(SITE, "NOPE")


def test_price_refresh_reports_failures(client, service):
    service.refresh_market_prices.return_value = PriceRefreshResult(
        updated=[_market_record()], unchanged=1, failures={"mkt-x": "rate limited"}
    )
    response = client.post("/markets/prices/refresh", json={"market_ids": ["mkt-cache-1", "mkt-x"]})

    assert response.status_code == 200
    body = response.json()
    assert body["unchanged"] == 1
    assert body["failures"] == {"mkt-x": "rate limited"}
    assert body["updated"][0]["external_id"] == "EVT1-M1"
