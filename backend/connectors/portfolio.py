"""Authenticated Kalshi portfolio endpoints (balance, positions, fills, settlements)."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from loguru import logger

from predictwatch.core.config import Settings, get_settings
from predictwatch.domain import SiteCredentials

from .kalshi import resolve_api_base
from .signing import PrivateKeyFormatError, SignedRequestClient

POSITIONS_LIMIT = 1000


@dataclass(slots=True)
class TradingData:
    balance_cents: int | None
    positions: list[dict[str, Any]] = field(default_factory=list)
    fills: list[dict[str, Any]] = field(default_factory=list)
    settlements: list[dict[str, Any]] = field(default_factory=list)

    @property
    def balance_dollars(self) -> float | None:
        return self.balance_cents / 100 if self.balance_cents is not None else None


class KalshiPortfolio:
    """Read-only view of the account behind a site's API key."""

    def __init__(self, client: SignedRequestClient) -> None:
        self._client = client

    @classmethod
    def for_site(
        cls,
        site: SiteCredentials,
        *,
        settings: Settings | None = None,
        **client_kwargs: Any,
    ) -> "KalshiPortfolio":
        if not site.has_signing_key:
            raise PrivateKeyFormatError(
                f"Site {site.site_id} has no API key configured for portfolio access"
            )
        cfg = settings or get_settings()
        client = SignedRequestClient(
            api_base=resolve_api_base(site.base_url, cfg),
            api_key_id=site.api_key_id,
            private_key_pem=site.private_key_pem,
            settings=cfg,
            **client_kwargs,
        )
        return cls(client)

    def get_balance(self) -> int | None:
        payload = self._client.get("/portfolio/balance")
        balance = payload.get("balance")
        return int(balance) if isinstance(balance, (int, float)) and not isinstance(balance, bool) else None

    def get_positions(self) -> list[dict[str, Any]]:
        payload = self._client.get("/portfolio/positions", {"limit": POSITIONS_LIMIT})
        positions = payload.get("market_positions") or []
        return [p for p in positions if isinstance(p, dict)]

    def get_fills(self) -> list[dict[str, Any]]:
        return self._client.collect("/portfolio/fills", items_key="fills")

    def get_settlements(self) -> list[dict[str, Any]]:
        return self._client.collect("/portfolio/settlements", items_key="settlements")

    def fetch_trading_data(self) -> TradingData:
        data = TradingData(
            balance_cents=self.get_balance(),
            positions=self.get_positions(),
            fills=self.get_fills(),
            settlements=self.get_settlements(),
        )
        logger.info(
            "Portfolio loaded: {} positions, {} fills, {} settlements",
            len(data.positions),
            len(data.fills),
            len(data.settlements),
        )
        return data

    def close(self) -> None:
        self._client.close()

    def __enter__(self) -> "KalshiPortfolio":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()


__all__ = ["KalshiPortfolio", "TradingData"]
