from __future__ import annotations

import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Any, Callable, Iterable, Mapping

import httpx
from loguru import logger

from predictwatch.core.config import Settings, get_settings

RETRYABLE_STATUS = 429
_BODY_PREVIEW_LIMIT = 500


class UpstreamFetchError(RuntimeError):
    """An upstream call failed terminally (fatal status or retries exhausted)."""

    def __init__(
        self,
        message: str,
        *,
        url: str,
        status_code: int | None = None,
        body: str | None = None,
        attempts: int = 1,
    ) -> None:
        super().__init__(message)
        self.url = url
        self.status_code = status_code
        self.body = body
        self.attempts = attempts

    @property
    def is_not_found(self) -> bool:
        return self.status_code == 404


@dataclass(slots=True)
class Page:
    items: list[dict[str, Any]] = field(default_factory=list)
    cursor: str | None = None


def retry_after_seconds(response: httpx.Response) -> float | None:
    """Read a ``Retry-After`` hint given as delta-seconds or an HTTP date."""

    raw = response.headers.get("Retry-After")
    if not raw:
        return None
    try:
        numeric = float(raw)
    except (TypeError, ValueError):
        numeric = None
    if numeric is not None:
        return numeric if numeric > 0 else None

    try:
        moment = parsedate_to_datetime(raw)
    except (TypeError, ValueError, IndexError, OverflowError):
        return None
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    delta = (moment - datetime.now(timezone.utc)).total_seconds()
    return delta if delta > 0 else None


class PaginatedFetcher:
    """Cursor-paginated JSON reader with bounded retry on rate limits and transient errors."""

    def __init__(
        self,
        *,
        base_url: str,
        settings: Settings | None = None,
        client: httpx.Client | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        cfg = settings or get_settings()
        self.base_url = base_url.rstrip("/")
        self.timeout = cfg.http_timeout_seconds
        self.max_retries = cfg.http_max_retries
        self.retry_base = cfg.http_retry_base_seconds
        self.retry_max = cfg.http_retry_max_seconds
        self.page_size = cfg.page_size
        self.page_delay = cfg.page_delay_seconds
        self._sleep = sleep
        self._owns_client = client is None
        self.client = client or httpx.Client(
            base_url=self.base_url,
            timeout=self.timeout,
            headers={"Accept": "application/json"},
        )

    def _backoff(self, attempt: int, response: httpx.Response | None = None) -> float:
        hinted = retry_after_seconds(response) if response is not None else None
        delay = hinted if hinted is not None else self.retry_base * (2**attempt)
        return min(delay, self.retry_max)

    def get_json(self, path: str, params: Mapping[str, Any] | None = None) -> dict[str, Any]:
        """GET ``path`` and decode the JSON body, retrying 429s, timeouts and connection errors."""

        url = f"{self.base_url}{path}"
        attempts = self.max_retries + 1
        for attempt in range(attempts):
            try:
                response = self.client.get(url, params=dict(params or {}), timeout=self.timeout)
            except httpx.TransportError as exc:
                if attempt < self.max_retries:
                    delay = self._backoff(attempt)
                    logger.warning(
                        "Transient error on GET {} ({}); retry {}/{} in {:.2f}s",
                        path,
                        exc.__class__.__name__,
                        attempt + 1,
                        self.max_retries,
                        delay,
                    )
                    self._sleep(delay)
                    continue
                kind = "timed out" if isinstance(exc, httpx.TimeoutException) else "failed"
                raise UpstreamFetchError(
                    f"GET {path} {kind} after {attempts} attempts: {exc}",
                    url=url,
                    attempts=attempts,
                ) from exc

            if response.status_code == RETRYABLE_STATUS:
                if attempt < self.max_retries:
                    delay = self._backoff(attempt, response)
                    logger.warning(
                        "Rate limited (429) on GET {}; retry {}/{} in {:.2f}s",
                        path,
                        attempt + 1,
                        self.max_retries,
                        delay,
                    )
                    self._sleep(delay)
                    continue
                raise UpstreamFetchError(
                    f"GET {path} still rate limited after {attempts} attempts",
                    url=url,
                    status_code=response.status_code,
                    body=response.text[:_BODY_PREVIEW_LIMIT],
                    attempts=attempts,
                )

            if response.is_error:
                raise UpstreamFetchError(
                    f"GET {path} returned {response.status_code}: "
                    f"{response.text[:_BODY_PREVIEW_LIMIT] or response.reason_phrase}",
                    url=url,
                    status_code=response.status_code,
                    body=response.text[:_BODY_PREVIEW_LIMIT],
                    attempts=attempt + 1,
                )

            try:
                payload = response.json()
            except ValueError as exc:
                raise UpstreamFetchError(
                    f"GET {path} returned a non-JSON body",
                    url=url,
                    status_code=response.status_code,
                    body=response.text[:_BODY_PREVIEW_LIMIT],
                    attempts=attempt + 1,
                ) from exc
            return payload if isinstance(payload, dict) else {"data": payload}

        raise AssertionError("unreachable")  # pragma: no cover

    def fetch_page(
        self,
        path: str,
        *,
        items_key: str,
        params: Mapping[str, Any] | None = None,
        cursor: str | None = None,
    ) -> Page:
        query: dict[str, Any] = {"limit": self.page_size}
        query.update(params or {})
        if cursor:
            query["cursor"] = cursor
        logger.info("GET {} params={}", path, query)
        payload = self.get_json(path, query)
        raw_items = payload.get(items_key)
        items = [item for item in raw_items if isinstance(item, dict)] if isinstance(raw_items, list) else []
        next_cursor = payload.get("cursor") or None
        return Page(items=items, cursor=str(next_cursor) if next_cursor else None)

    def iter_pages(
        self,
        path: str,
        *,
        items_key: str,
        params: Mapping[str, Any] | None = None,
    ) -> Iterable[Page]:
        cursor: str | None = None
        seen_cursors: set[str] = set()
        first = True
        while first or cursor:
            if not first and self.page_delay:
                self._sleep(self.page_delay)
            first = False
            page = self.fetch_page(path, items_key=items_key, params=params, cursor=cursor)
            yield page
            cursor = page.cursor
            if cursor is not None:
                if cursor in seen_cursors:
                    raise UpstreamFetchError(
                        f"GET {path} repeated cursor {cursor!r}",
                        url=f"{self.base_url}{path}",
                    )
                seen_cursors.add(cursor)

    def iter_items(
        self,
        path: str,
        *,
        items_key: str,
        params: Mapping[str, Any] | None = None,
    ) -> Iterable[dict[str, Any]]:
        for page in self.iter_pages(path, items_key=items_key, params=params):
            yield from page.items

    def collect(
        self,
        path: str,
        *,
        items_key: str,
        params: Mapping[str, Any] | None = None,
    ) -> list[dict[str, Any]]:
        return list(self.iter_items(path, items_key=items_key, params=params))

    def close(self) -> None:
        if self._owns_client:
            self.client.close()

    def __enter__(self) -> "PaginatedFetcher":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()


__all__ = ["Page", "PaginatedFetcher", "UpstreamFetchError", "retry_after_seconds"]
