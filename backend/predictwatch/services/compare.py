"""Semantic comparison between cached rows and freshly fetched snapshots.

Only fields a user would care about count as a change. Descriptions, titles and raw
payloads may drift upstream without the row being reported as changed.
"""

from __future__ import annotations

from datetime import datetime
from typing import Mapping

from connectors.timestamps import as_utc

from predictwatch.domain import EventSnapshot, MarketSnapshot
from predictwatch.models import CachedEvent, CachedMarket

OUTCOMES_PRECISION = 2


def same_instant(left: datetime | None, right: datetime | None) -> bool:
    """Compare two instants, reading naive values as UTC."""

    if left is None or right is None:
        return left is None and right is None
    return as_utc(left) == as_utc(right)


def same_number(left: float | None, right: float | None) -> bool:
    if left is None or right is None:
        return left is None and right is None
    return float(left) == float(right)


def round_outcomes(
    outcomes: Mapping[str, float] | None, precision: int = OUTCOMES_PRECISION
) -> dict[str, float] | None:
    if outcomes is None:
        return None
    rounded: dict[str, float] = {}
    for label, value in outcomes.items():
        try:
            rounded[str(label)] = round(float(value), precision)
        except (TypeError, ValueError):
            continue
    return rounded


def has_outcomes_change(
    previous: Mapping[str, float] | None, current: Mapping[str, float] | None
) -> bool:
    """True when the outcome maps differ after rounding to cents."""

    return round_outcomes(previous) != round_outcomes(current)


def event_has_semantic_changes(cached: CachedEvent, fresh: EventSnapshot) -> bool:
    return not (
        same_instant(cached.next_trading_close_time, fresh.next_trading_close_time)
        and same_instant(cached.end_date, fresh.end_date)
    )


def market_has_semantic_changes(cached: CachedMarket, fresh: MarketSnapshot) -> bool:
    return not (
        (cached.status or None) == (fresh.status or None)
        and same_instant(cached.close_time, fresh.close_time)
        and same_instant(cached.next_trading_close_time, fresh.next_trading_close_time)
        and same_number(cached.volume, fresh.volume)
        and same_number(cached.liquidity, fresh.liquidity)
        and not has_outcomes_change(cached.outcomes, fresh.outcomes)
    )


__all__ = [
    "OUTCOMES_PRECISION",
    "event_has_semantic_changes",
    "has_outcomes_change",
    "market_has_semantic_changes",
    "round_outcomes",
    "same_instant",
    "same_number",
]
