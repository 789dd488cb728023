from __future__ import annotations

import pytest
from sqlalchemy import select

from connectors.base import UnsupportedCapabilityError
from connectors.fetcher import UpstreamFetchError
from predictwatch.domain import MarketLookup
from predictwatch.models import CachedMarket, Section
from predictwatch.services.sync_service import CachedEventNotFoundError, SyncService


@pytest.fixture
def service(registry, session_factory, test_settings) -> SyncService:
    return SyncService(registry, session_factory, test_settings)


@pytest.fixture
def cached_event(service, site, fake_adapter, make_event):
    fake_adapter.events = [make_event("EVT1"), make_event("EVT2")]
    records = service.sync_events(site, ["Politics"]).new_records
    return {record.external_id: record for record in records}


def test_markets_new_changed_and_removed(service, fake_adapter, cached_event, make_market):
    event = cached_event["EVT1"]
    fake_adapter.markets["EVT1"] = [make_market("M1"), make_market("M2")]

    first = service.sync_markets_for_event(event.id)
    assert sorted(r.external_id for r in first.new_records) == ["M1", "M2"]
    assert fake_adapter.calls[-1] == ("list_markets_for_event", "EVT1", event.next_trading_close_time)

    assert service.sync_markets_for_event(event.id).is_empty

    fake_adapter.markets["EVT1"] = [make_market("M1", outcomes={"Yes": 0.7, "No": 0.3})]
    second = service.sync_markets_for_event(event.id)

    assert second.new_records == []
    assert [r.external_id for r in second.changed_records] == ["M1"]
    assert second.changed_records[0].outcomes == {"Yes": 0.7, "No": 0.3}
    assert second.changed_records[0].previous_outcomes == {"Yes": 0.4, "No": 0.6}
    assert second.removed_count == 1


def test_volume_only_change_has_no_previous_outcomes(service, fake_adapter, cached_event, make_market):
    event = cached_event["EVT1"]
    fake_adapter.markets["EVT1"] = [make_market("M1")]
    service.sync_markets_for_event(event.id)

    fake_adapter.markets["EVT1"] = [make_market("M1", volume=900.0)]
    result = service.sync_markets_for_event(event.id)

    assert len(result.changed_records) == 1
    assert result.changed_records[0].previous_outcomes is None


def test_empty_market_listing_purges_by_default(service, fake_adapter, cached_event, make_market, session_factory):
    event = cached_event["EVT1"]
    fake_adapter.markets["EVT1"] = [make_market("M1"), make_market("M2")]
    service.sync_markets_for_event(event.id)

    fake_adapter.markets["EVT1"] = []
    result = service.sync_markets_for_event(event.id)

    assert result.removed_count == 2
    with session_factory() as session:
        assert session.scalars(select(CachedMarket)).all() == []


def test_empty_market_listing_kept_when_purge_disabled(
    registry, session_factory, test_settings, fake_adapter, cached_event, make_market
):
    settings = test_settings.model_copy(update={"sync_purge_empty_sections": False})
    service = SyncService(registry, session_factory, settings)
    event = cached_event["EVT1"]
    fake_adapter.markets["EVT1"] = [make_market("M1"), make_market("M2")]
    service.sync_markets_for_event(event.id)

    fake_adapter.markets["EVT1"] = []
    result = service.sync_markets_for_event(event.id)

    assert result.is_empty
    with session_factory() as session:
        kept = sorted(session.scalars(select(CachedMarket.external_id)))
    assert kept == ["M1", "M2"]


def test_unknown_event_id_raises(service, site):
    with pytest.raises(CachedEventNotFoundError):
        service.sync_markets_for_event("does-not-exist")


def test_batch_reports_failures_per_event(service, fake_adapter, cached_event, make_market):
    fake_adapter.markets["EVT1"] = [make_market("M1")]
    fake_adapter.errors["EVT2"] = UpstreamFetchError("GET /events/EVT2 returned 500", url="x", status_code=500)

    batch = service.sync_markets_for_events([cached_event["EVT1"].id, cached_event["EVT2"].id])

    assert batch.succeeded == 1
    assert batch.failed == 1
    assert [r.external_id for r in batch.results[cached_event["EVT1"].id].new_records] == ["M1"]
    assert "500" in batch.failures[cached_event["EVT2"].id]


def test_batch_size_is_bounded(service):
    ids = [f"event-{index}" for index in range(service._settings.max_batch_size + 1)]
    with pytest.raises(ValueError):
        service.sync_markets_for_events(ids)


def test_associate_event_creates_missing_section(service, site, fake_adapter, make_event, session_factory):
    fake_adapter.event_lookup["CRYPTO-1"] = make_event("CRYPTO-1", section="Crypto")

    first = service.associate_event(site, "CRYPTO-1")
    assert first is not None
    assert first.created

    again = service.associate_event(site, "CRYPTO-1")
    assert again.event.id == first.event.id
    assert not again.created
    assert not again.changed

    with session_factory() as session:
        crypto = session.scalars(select(Section).where(Section.external_id == "Crypto")).one()
        assert crypto.id == first.event.section_id

    assert service.associate_event(site, "UNKNOWN") is None


def test_associate_market_upserts_event_and_market(service, site, fake_adapter, make_event, make_market, session_factory):
    fake_adapter.event_lookup["EVT9"] = make_event("EVT9")
    fake_adapter.market_lookup["EVT9-M1"] = MarketLookup(market=make_market("EVT9-M1"), event_external_id="EVT9")

    created = service.associate_market(site, "EVT9-M1")
    assert created.created
    assert created.event.external_id == "EVT9"
    assert created.market.event_cache_id == created.event.id

    fake_adapter.market_lookup["EVT9-M1"] = MarketLookup(
        market=make_market("EVT9-M1", outcomes={"Yes": 0.9, "No": 0.1}), event_external_id="EVT9"
    )
    updated = service.associate_market(site, "EVT9-M1")
    assert updated.changed
    assert updated.market.id == created.market.id
    assert updated.market.previous_outcomes == {"Yes": 0.4, "No": 0.6}


def test_refresh_prices_is_best_effort(service, fake_adapter, cached_event, make_market, session_factory):
    fake_adapter.markets["EVT1"] = [make_market("M1"), make_market("M2")]
    records = {r.external_id: r for r in service.sync_markets_for_event(cached_event["EVT1"].id).new_records}

    fake_adapter.market_lookup["M1"] = MarketLookup(
        market=make_market("M1", outcomes={"Yes": 0.55, "No": 0.45}), event_external_id="EVT1"
    )
    fake_adapter.errors["M2"] = UpstreamFetchError("rate limited", url="x", status_code=429)

    result = service.refresh_market_prices([records["M1"].id, records["M2"].id, "missing"])

    assert [r.external_id for r in result.updated] == ["M1"]
    assert result.updated[0].previous_outcomes == {"Yes": 0.4, "No": 0.6}
    assert set(result.failures) == {records["M2"].id, "missing"}
    with session_factory() as session:
        stored = session.get(CachedMarket, records["M1"].id)
        assert stored.outcomes == {"Yes": 0.55, "No": 0.45}


def test_ticker_lookup_requires_capability(service, site, fake_adapter):
    fake_adapter.supports_lookup = False

    with pytest.raises(UnsupportedCapabilityError):
        service.get_event_by_ticker(site, "EVT1")
    with pytest.raises(UnsupportedCapabilityError):
        service.associate_market(site, "EVT1-M1")


def test_ticker_lookup_passes_through(service, site, fake_adapter, make_event):
    fake_adapter.event_lookup["EVT5"] = make_event("EVT5")
    assert service.get_event_by_ticker(site, "EVT5").external_id == "EVT5"
    assert service.get_market_by_ticker(site, "nothing") is None
