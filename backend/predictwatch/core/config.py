from functools import lru_cache
from typing import Any
from urllib.parse import parse_qsl, urlencode, urlparse, urlunparse

from pydantic import AnyUrl, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


def _ensure_sqlalchemy_postgres_scheme(value: str) -> str:
    if not value.lower().startswith("postgres"):
        return value

    parsed = urlparse(value)
    scheme = parsed.scheme.lower()

    if scheme in {"postgres", "postgresql"}:
        scheme = "postgresql+psycopg"

    if scheme not in {"postgresql+psycopg", "postgresql+asyncpg"}:
        scheme = "postgresql+psycopg"

    query_params = dict(parse_qsl(parsed.query, keep_blank_values=True))
    query_params.setdefault("target_session_attrs", "read-write")
    new_query = urlencode(query_params, doseq=True)

    return urlunparse(parsed._replace(scheme=scheme, query=new_query))


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env", env_file_encoding="utf-8", extra="ignore"
    )

    debug: bool = Field(False, description="Enable FastAPI debug mode and SQL echo")
    environment: str = Field(
        default="development",
        description="Runtime environment (development|staging|production)",
    )
    database_url: AnyUrl | str = Field(
        default="sqlite:///./data/predictwatch.db",
        description="SQLAlchemy compatible database URL for the event/market cache",
    )
    kalshi_api_base: str = Field(
        default="https://api.elections.kalshi.com/trade-api/v2",
        description="Kalshi trade API base used when a site does not point at the demo host",
    )
    kalshi_demo_api_base: str = Field(
        default="https://demo-api.kalshi.co/trade-api/v2",
        description="Kalshi demo trade API base",
    )
    http_timeout_seconds: float = Field(
        default=15.0,
        description="Wall-clock budget for a single upstream HTTP request",
        gt=0,
    )
    http_max_retries: int = Field(
        default=3,
        description="Retries after the first attempt for rate-limited or transient upstream failures",
        ge=0,
    )
    http_retry_base_seconds: float = Field(
        default=1.0,
        description="Base delay for exponential backoff when no Retry-After hint is sent",
        gt=0,
    )
    http_retry_max_seconds: float = Field(
        default=30.0,
        description="Upper bound applied to any single backoff delay",
        gt=0,
    )
    page_size: int = Field(200, description="Items requested per upstream page", ge=1, le=1000)
    page_delay_seconds: float = Field(
        default=0.08,
        description="Pause between cursor pages to stay under the platform rate limit",
        ge=0,
    )
    event_sync_timeout_seconds: float = Field(
        default=180.0,
        description="Transaction budget for one event fetch-compare-persist cycle",
        gt=0,
    )
    market_sync_timeout_seconds: float = Field(
        default=60.0,
        description="Transaction budget for one market reconciliation pass",
        gt=0,
    )
    section_sync_timeout_seconds: float = Field(
        default=30.0,
        description="Transaction budget for a section sync",
        gt=0,
    )
    sync_batch_concurrency: int = Field(
        default=3,
        description="Number of events whose markets are fetched concurrently in a batch sync",
        ge=1,
    )
    sync_purge_empty_sections: bool = Field(
        default=True,
        description=(
            "Delete every cached event of a section when the platform legitimately returns "
            "no events for it"
        ),
    )
    max_batch_size: int = Field(
        default=50,
        description="Maximum number of events or markets accepted in one batch request",
        ge=1,
    )

    @field_validator("environment")
    @classmethod
    def _normalize_environment(cls, value: str) -> str:
        normalized = value.strip().lower()
        if normalized not in {"development", "staging", "production", "test"}:
            raise ValueError(
                "environment must be one of development, staging, production or test"
            )
        return normalized

    @field_validator("database_url", mode="before")
    @classmethod
    def _normalize_postgres_urls(cls, value: Any) -> Any:
        if value is None or not isinstance(value, str):
            return value
        if value.startswith("postgres://"):
            return "postgresql://" + value[len("postgres://") :]
        return value

    @field_validator("http_retry_max_seconds")
    @classmethod
    def _validate_retry_ceiling(cls, value: float, info) -> float:
        base = info.data.get("http_retry_base_seconds")
        if base is not None and value < base:
            raise ValueError("http_retry_max_seconds must be >= http_retry_base_seconds")
        return value

    @property
    def resolved_database_url(self) -> str:
        return _ensure_sqlalchemy_postgres_scheme(str(self.database_url))


@lru_cache
def get_settings() -> Settings:
    return Settings()


settings = get_settings()
