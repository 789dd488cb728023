from __future__ import annotations

import json
import sys
from datetime import datetime
from pathlib import Path
from typing import Callable

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

import httpx
import pytest
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa

from connectors.base import PlatformAdapter
from connectors.fetcher import PaginatedFetcher
from connectors.registry import AdapterRegistry
from predictwatch.core.config import Settings
from predictwatch.db import build_db_components, init_db
from predictwatch.domain import (
    EventSnapshot,
    MarketLookup,
    MarketSnapshot,
    SectionSnapshot,
    SiteCredentials,
)
from predictwatch.models import Section, Site


class FakeAdapter(PlatformAdapter):
    """In-memory adapter; tests set ``events``, ``markets`` and lookups directly."""

    key = "fake"

    def __init__(self, *, supports_lookup: bool = True) -> None:
        self.sections = [
            SectionSnapshot("Politics", "Politics"),
            SectionSnapshot("Sports", "Sports"),
        ]
        self.events: list[EventSnapshot] = []
        self.markets: dict[str, list[MarketSnapshot]] = {}
        self.event_lookup: dict[str, EventSnapshot] = {}
        self.market_lookup: dict[str, MarketLookup] = {}
        self.errors: dict[str, Exception] = {}
        self.supports_lookup = supports_lookup
        self.calls: list[tuple] = []

    def list_sections(self, site):
        self.calls.append(("list_sections", site.site_id))
        return list(self.sections)

    def list_events_and_markets(self, site, section_external_ids, *, today=None):
        self.calls.append(("list_events_and_markets", tuple(section_external_ids)))
        if "events" in self.errors:
            raise self.errors["events"]
        wanted = set(section_external_ids)
        return [event for event in self.events if event.section_external_id in wanted]

    def list_markets_for_event(self, site, event_external_id, known_trading_close):
        self.calls.append(("list_markets_for_event", event_external_id, known_trading_close))
        if event_external_id in self.errors:
            raise self.errors[event_external_id]
        return list(self.markets.get(event_external_id, []))

    def ticker_lookup(self):
        return self if self.supports_lookup else None

    def get_event_by_external_id(self, site, external_id):
        return self.event_lookup.get(external_id)

    def get_market_by_external_id(self, site, external_id):
        if external_id in self.errors:
            raise self.errors[external_id]
        return self.market_lookup.get(external_id)


@pytest.fixture
def sample_event_payload() -> dict[str, object]:
    path = Path(__file__).parent / "data" / "kalshi_event.json"
    return json.loads(path.read_text(encoding="utf-8"))


@pytest.fixture
def test_settings(tmp_path) -> Settings:
    return Settings(
        environment="test",
        database_url=f"sqlite:///{tmp_path/'predictwatch.db'}",
        page_delay_seconds=0,
        http_retry_base_seconds=0.01,
        http_retry_max_seconds=5,
        sync_batch_concurrency=2,
    )


@pytest.fixture
def session_factory(test_settings):
    engine, factory = build_db_components(test_settings.resolved_database_url)
    init_db(bind=engine)
    yield factory
    engine.dispose()


@pytest.fixture
def site(session_factory) -> SiteCredentials:
    with session_factory() as session:
        row = Site(owner_id="owner-1", name="Test site", base_url="https://fake.test", platform_key="fake")
        session.add(row)
        session.flush()
        for external_id in ("Politics", "Sports"):
            session.add(Section(site_id=row.id, external_id=external_id, name=external_id))
        session.commit()
        return SiteCredentials(site_id=row.id, base_url=row.base_url, platform_key=row.platform_key)


@pytest.fixture
def fake_adapter() -> FakeAdapter:
    return FakeAdapter()


@pytest.fixture
def registry(fake_adapter) -> AdapterRegistry:
    return AdapterRegistry([fake_adapter])


@pytest.fixture
def make_event() -> Callable[..., EventSnapshot]:
    def _make(external_id: str, section: str = "Politics", **overrides) -> EventSnapshot:
        values = {
            "title": f"Event {external_id}",
            "description": "Sample description",
            "status": "open",
            "next_trading_close_time": datetime.fromisoformat("2026-11-03T12:00:00+00:00"),
            "end_date": datetime.fromisoformat("2026-11-30T00:00:00+00:00"),
            "volume": 1000.0,
            "liquidity": 250.0,
            "outcomes": {"Yes": 0.55, "No": 0.45},
            "raw": {"event_ticker": external_id},
        }
        values.update(overrides)
        return EventSnapshot(external_id=external_id, section_external_id=section, **values)

    return _make


@pytest.fixture
def make_market() -> Callable[..., MarketSnapshot]:
    def _make(external_id: str, **overrides) -> MarketSnapshot:
        values = {
            "title": f"Market {external_id}",
            "status": "active",
            "close_time": datetime.fromisoformat("2026-11-03T12:00:00+00:00"),
            "next_trading_close_time": datetime.fromisoformat("2026-11-03T12:00:00+00:00"),
            "settlement_date": None,
            "volume": 500.0,
            "liquidity": 100.0,
            "outcomes": {"Yes": 0.4, "No": 0.6},
            "raw": {"ticker": external_id},
        }
        values.update(overrides)
        return MarketSnapshot(external_id=external_id, **values)

    return _make


@pytest.fixture(scope="session")
def rsa_private_key() -> rsa.RSAPrivateKey:
    return rsa.generate_private_key(public_exponent=65537, key_size=2048)


@pytest.fixture(scope="session")
def rsa_private_pem(rsa_private_key) -> str:
    return rsa_private_key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    ).decode("utf-8")


@pytest.fixture
def mock_fetcher_factory(test_settings):
    """Build fetchers that talk to an ``httpx.MockTransport`` handler instead of the network."""

    def _factory(handler) -> Callable[[str], PaginatedFetcher]:
        transport = httpx.MockTransport(handler)
        return lambda base: PaginatedFetcher(
            base_url=base,
            settings=test_settings,
            client=httpx.Client(transport=transport),
            sleep=lambda _seconds: None,
        )

    return _factory
