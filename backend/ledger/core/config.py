from functools import lru_cache
from typing import Any
from urllib.parse import parse_qsl, urlencode, urlparse, urlunparse

from pydantic import AnyUrl, Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_BACKOFF_SECONDS = (0.05, 0.1, 0.2, 0.4)
_POSTGRES_DRIVERS = {"postgresql+psycopg", "postgresql+asyncpg"}


def _normalize_database_url(value: str) -> str:
    """Point bare Postgres URLs at psycopg and require TLS; leave others untouched."""

    parsed = urlparse(value)
    scheme = parsed.scheme.lower()
    if not scheme.startswith("postgres"):
        return value
    if scheme not in _POSTGRES_DRIVERS:
        scheme = "postgresql+psycopg"

    query = dict(parse_qsl(parsed.query, keep_blank_values=True))
    query.setdefault("sslmode", "require")
    query.setdefault("target_session_attrs", "read-write")
    return urlunparse(parsed._replace(scheme=scheme, query=urlencode(query, doseq=True)))


def _parse_delays(value: Any) -> list[float]:
    if isinstance(value, str):
        value = [token.strip() for token in value.split(",") if token.strip()]
    if not isinstance(value, (list, tuple)) or not value:
        raise ValueError(
            "LEDGER_TRANSACTION_BACKOFF_SECONDS must be a comma-separated string or a non-empty list"
        )
    delays: list[float] = []
    for item in value:
        try:
            delay = float(item)
        except (TypeError, ValueError) as exc:
            raise ValueError(f"Backoff delay {item!r} is not a number") from exc
        if delay < 0:
            raise ValueError(f"Backoff delay {delay} must not be negative")
        delays.append(delay)
    return delays


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env", env_file_encoding="utf-8", extra="ignore"
    )

    debug: bool = Field(False, description="Enable FastAPI debug mode")
    environment: str = Field(
        default="development",
        description="Runtime environment (development|staging|production)",
    )
    database_url: AnyUrl | str = Field(
        default="sqlite:///./data/ledger.db",
        description="SQLAlchemy compatible database URL",
    )
    production_database_url: AnyUrl | str | None = Field(
        default=None,
        description="Pooled Postgres connection string used when ENVIRONMENT=production",
    )
    house_fee_percentage: float = Field(
        default=0.05,
        description="Share of every resolved pool retained by the platform",
        ge=0,
        lt=1,
    )
    creator_fee_min: float = Field(
        default=0.01,
        description="Lowest creator fee percentage an admin may apply at resolution",
        ge=0,
    )
    creator_fee_max: float = Field(
        default=0.05,
        description="Highest creator fee percentage an admin may apply at resolution",
        ge=0,
    )
    default_creator_fee_percentage: float = Field(
        default=0.02,
        description="Creator fee applied when a resolution request omits one",
    )
    rollback_window_hours: float = Field(
        default=24.0,
        description="Age after which a commitment is no longer eligible for a manual refund",
        gt=0,
    )
    max_commit_tokens: int = Field(
        default=10_000,
        description="Largest single commitment a user may place",
        ge=1,
    )
    ledger_transaction_max_attempts: int = Field(
        default=5,
        description="Number of attempts for a ledger transaction that hits an optimistic-lock conflict",
        ge=1,
    )
    ledger_transaction_backoff_seconds: list[float] | tuple[float, ...] | str = Field(
        default_factory=lambda: list(DEFAULT_BACKOFF_SECONDS),
        description="Comma-separated list or array of backoff delays (seconds) between ledger transaction attempts",
    )
    commit_attempt_stale_seconds: float = Field(
        default=300.0,
        description="Age after which an unfinished commit attempt is picked up by the resume job",
        gt=0,
    )

    @field_validator("production_database_url")
    @classmethod
    def _require_postgres(cls, value: Any) -> Any:
        if value is not None and not str(value).lower().startswith("postgres"):
            raise ValueError(
                "PRODUCTION_DATABASE_URL must be a PostgreSQL connection string (e.g. postgresql://...)."
            )
        return value

    @field_validator("ledger_transaction_backoff_seconds", mode="before")
    @classmethod
    def _parse_backoff(cls, value: Any) -> list[float]:
        if value in (None, "", []):
            return list(DEFAULT_BACKOFF_SECONDS)
        return _parse_delays(value)

    @model_validator(mode="after")
    def _check_creator_fee_bounds(self) -> "Settings":
        if self.creator_fee_min > self.creator_fee_max:
            raise ValueError("creator_fee_min must not exceed creator_fee_max")
        if not self.creator_fee_min <= self.default_creator_fee_percentage <= self.creator_fee_max:
            raise ValueError(
                "default_creator_fee_percentage must fall between creator_fee_min and creator_fee_max"
            )
        return self

    @property
    def resolved_database_url(self) -> str:
        if self.environment.lower() == "production":
            if not self.production_database_url:
                raise ValueError("PRODUCTION_DATABASE_URL must be set when ENVIRONMENT=production")
            return _normalize_database_url(str(self.production_database_url))
        return _normalize_database_url(str(self.database_url))

    @property
    def ledger_transaction_backoff_schedule(self) -> tuple[float, ...]:
        return tuple(float(value) for value in self.ledger_transaction_backoff_seconds) or (0.0,)


@lru_cache
def get_settings() -> Settings:
    return Settings()


settings = get_settings()
