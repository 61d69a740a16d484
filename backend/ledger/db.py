import re
import time
from collections.abc import Callable, Sequence
from pathlib import Path
from typing import TypeVar

from loguru import logger
from sqlalchemy import create_engine
from sqlalchemy.engine import Engine, make_url
from sqlalchemy.exc import IntegrityError, OperationalError, SQLAlchemyError
from sqlalchemy.orm import Session, declarative_base, sessionmaker
from sqlalchemy.orm.exc import StaleDataError

from .core.config import settings
from .errors import LedgerError, TransactionFailed

T = TypeVar("T")

# Conflicts resolved by re-running the whole unit against freshly read rows.
RETRYABLE_ERRORS: tuple[type[Exception], ...] = (StaleDataError, IntegrityError, OperationalError)


def _version_tuple(version: str) -> tuple[int, ...]:
    return tuple(int(part) for part in re.findall(r"\d+", version)[:3])


def _engine_options(url: str) -> dict[str, object]:
    parsed = make_url(url)
    options: dict[str, object] = {"echo": settings.debug, "future": True, "pool_pre_ping": True}

    if parsed.get_backend_name() == "sqlite":
        if parsed.database and parsed.database != ":memory:":
            Path(parsed.database).parent.mkdir(parents=True, exist_ok=True)
        options["connect_args"] = {"check_same_thread": False}
        return options

    # Pooler idle timeouts kill long-lived connections; recycle them first.
    options["pool_recycle"] = 300
    if not parsed.get_backend_name().startswith("postgresql"):
        return options

    connect_args: dict[str, object] = {
        "keepalives": 1,
        "keepalives_idle": 120,
        "keepalives_interval": 30,
        "keepalives_count": 5,
    }
    if parsed.get_driver_name() == "psycopg":
        import psycopg

        # Transaction poolers reject PREPARE.
        connect_args["prepare_threshold"] = None
        if _version_tuple(psycopg.__version__) < (3, 2):
            connect_args["prepared_statement_cache_size"] = 0
    options["connect_args"] = connect_args
    return options


def build_db_components(url: str) -> tuple[Engine, sessionmaker[Session]]:
    engine = create_engine(url, **_engine_options(url))
    # Autoflush lets a unit of work see the balance rows and commitments it
    # added earlier in the same transaction.
    session_factory = sessionmaker(bind=engine, autoflush=True, expire_on_commit=True)
    return engine, session_factory


engine, SessionLocal = build_db_components(settings.resolved_database_url)
Base = declarative_base()


def get_session_factory() -> sessionmaker[Session]:
    """FastAPI dependency returning the process-wide session factory."""

    return SessionLocal


def run_in_transaction(
    work: Callable[[Session], T],
    *,
    session_factory: sessionmaker[Session] | None = None,
    max_attempts: int | None = None,
    backoff: Sequence[float] | None = None,
    label: str = "ledger transaction",
) -> T:
    """Execute ``work`` inside one database transaction, retrying on conflicts.

    Each attempt opens a fresh session, so ``work`` re-reads every row it
    depends on. Optimistic-lock conflicts are retried up to ``max_attempts``
    times; exhaustion and any other store failure surface as
    ``TransactionFailed``. ``LedgerError`` raised by ``work`` aborts the
    transaction and propagates untouched. ``work`` must return plain values:
    ORM instances are expired once the session closes.
    """

    factory = session_factory or SessionLocal
    attempts = max_attempts or settings.ledger_transaction_max_attempts
    schedule = tuple(backoff) if backoff is not None else settings.ledger_transaction_backoff_schedule

    for attempt in range(1, attempts + 1):
        try:
            with factory() as session:
                with session.begin():
                    return work(session)
        except LedgerError:
            raise
        except RETRYABLE_ERRORS as exc:
            if attempt >= attempts:
                logger.error(
                    "{} aborted after {} attempts: {}", label, attempt, exc
                )
                raise TransactionFailed(
                    f"{label.capitalize()} could not be completed; please retry",
                    attempts=attempt,
                ) from exc
            delay = schedule[min(attempt - 1, len(schedule) - 1)] if schedule else 0.0
            logger.warning(
                "{} conflicted on attempt {}/{} ({}); retrying in {:.2f}s",
                label,
                attempt,
                attempts,
                type(exc).__name__,
                delay,
            )
            if delay > 0:
                time.sleep(delay)
        except SQLAlchemyError as exc:
            logger.exception("{} failed with a store error", label)
            raise TransactionFailed(
                f"{label.capitalize()} could not be completed; please retry"
            ) from exc

    raise TransactionFailed(f"{label.capitalize()} could not be completed; please retry")


def init_db(bind=None) -> None:
    from . import models  # noqa: F401

    Base.metadata.create_all(bind=bind or engine)
