from __future__ import annotations

from functools import lru_cache
from typing import Annotated

from fastapi import Depends, FastAPI, HTTPException, Query, Request
from fastapi.responses import JSONResponse
from loguru import logger

from connectors.base import UnsupportedCapabilityError
from connectors.fetcher import UpstreamFetchError
from connectors.registry import AdapterRegistry, UnknownPlatformError, build_registry
from connectors.signing import AuthenticatedRequestError, PrivateKeyFormatError

from . import schemas
from .core.config import settings
from .db import TransactionTimeoutError, init_db
from .services.sync_service import (
    CachedEventNotFoundError,
    CachedMarketNotFoundError,
    SiteNotFoundError,
    SyncService,
)

app = FastAPI(title="PredictWatch API", version="0.1.0", debug=settings.debug)


@app.on_event("startup")
def on_startup() -> None:
    """Create cache tables when the API boots."""

    init_db()


def _error(status_code: int, exc: Exception) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"detail": str(exc)})


@app.exception_handler(UnknownPlatformError)
@app.exception_handler(UnsupportedCapabilityError)
@app.exception_handler(PrivateKeyFormatError)
async def _configuration_error(_request: Request, exc: Exception) -> JSONResponse:
    return _error(400, exc)


@app.exception_handler(SiteNotFoundError)
@app.exception_handler(CachedEventNotFoundError)
@app.exception_handler(CachedMarketNotFoundError)
async def _not_found(_request: Request, exc: Exception) -> JSONResponse:
    return _error(404, exc)


@app.exception_handler(UpstreamFetchError)
@app.exception_handler(AuthenticatedRequestError)
async def _upstream_error(_request: Request, exc: Exception) -> JSONResponse:
    logger.warning("Upstream failure: {}", exc)
    return _error(502, exc)


@app.exception_handler(TransactionTimeoutError)
async def _timeout_error(_request: Request, exc: Exception) -> JSONResponse:
    return _error(504, exc)


@app.get("/healthz", tags=["system"])
def healthcheck() -> dict[str, str]:
    """Basic readiness probe consumed by infrastructure monitors."""

    return {"status": "ok"}


@lru_cache
def _registry() -> AdapterRegistry:
    return build_registry(settings)


def _sync_service() -> SyncService:
    """Provide the sync service wired with the shared adapter registry."""

    return SyncService(_registry(), settings=settings)


@app.get("/sites/{site_id}/events", response_model=list[schemas.CachedEvent], tags=["events"])
def list_cached_events(
    site_id: str,
    section: Annotated[list[str] | None, Query(description="Section external ids")] = None,
    service: SyncService = Depends(_sync_service),
):
    """Return cached events ordered by next trading close."""

    return service.list_cached_events(site_id, section)


@app.post("/sites/{site_id}/sections/sync", response_model=schemas.SectionSyncResult, tags=["sections"])
def sync_sections(site_id: str, service: SyncService = Depends(_sync_service)):
    """Refresh the site's sections from its platform."""

    return service.sync_sections(service.site_credentials(site_id))


@app.post("/sites/{site_id}/events/sync", response_model=schemas.EventSyncResult, tags=["events"])
def sync_events(
    site_id: str,
    payload: schemas.EventSyncRequest,
    service: SyncService = Depends(_sync_service),
):
    """Fetch open events for the given sections and report what is new or changed."""

    return service.sync_events(service.site_credentials(site_id), payload.section_external_ids)


@app.post("/events/{event_id}/markets/sync", response_model=schemas.MarketSyncResult, tags=["markets"])
def sync_markets_for_event(event_id: str, service: SyncService = Depends(_sync_service)):
    """Fetch every market of one cached event."""

    return service.sync_markets_for_event(event_id)


@app.post("/markets/sync", response_model=schemas.BatchMarketSyncResult, tags=["markets"])
def sync_markets_for_events(
    payload: schemas.BatchMarketSyncRequest,
    service: SyncService = Depends(_sync_service),
):
    """Sync the markets of several cached events; failures are reported per event."""

    try:
        result = service.sync_markets_for_events(payload.event_ids)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return schemas.BatchMarketSyncResult.model_validate(result, from_attributes=True)


@app.post(
    "/sites/{site_id}/events/associate",
    response_model=schemas.EventAssociation,
    tags=["events"],
)
def associate_event(
    site_id: str,
    payload: schemas.TickerRequest,
    service: SyncService = Depends(_sync_service),
):
    """Cache one event by its platform ticker."""

    association = service.associate_event(service.site_credentials(site_id), payload.ticker)
    if association is None:
        raise HTTPException(status_code=404, detail=f"Event '{payload.ticker}' not found")
    return association


@app.post(
    "/sites/{site_id}/markets/associate",
    response_model=schemas.MarketAssociation,
    tags=["markets"],
)
def associate_market(
    site_id: str,
    payload: schemas.TickerRequest,
    service: SyncService = Depends(_sync_service),
):
    """Cache one market, and its parent event, by market ticker."""

    association = service.associate_market(service.site_credentials(site_id), payload.ticker)
    if association is None:
        raise HTTPException(status_code=404, detail=f"Market '{payload.ticker}' not found")
    return association


@app.post("/markets/prices/refresh", response_model=schemas.PriceRefreshResult, tags=["markets"])
def refresh_market_prices(
    payload: schemas.PriceRefreshRequest,
    service: SyncService = Depends(_sync_service),
):
    """Best-effort price refresh for cached markets."""

    return service.refresh_market_prices(payload.market_ids)
