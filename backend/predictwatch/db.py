from __future__ import annotations

import time
from collections.abc import Generator, Iterator
from contextlib import contextmanager
from pathlib import Path

from loguru import logger
from sqlalchemy import create_engine, event, text
from sqlalchemy.engine import make_url
from sqlalchemy.orm import Session, declarative_base, sessionmaker

from .core.config import settings


class TransactionTimeoutError(RuntimeError):
    """Raised when a unit of work runs past its transaction budget."""


class TransactionBudget:
    """Wall-clock allowance for one fetch-compare-persist cycle."""

    def __init__(self, timeout_seconds: float, *, clock=time.monotonic) -> None:
        self.timeout_seconds = timeout_seconds
        self._clock = clock
        self._started = clock()

    @property
    def elapsed(self) -> float:
        return self._clock() - self._started

    def check(self) -> None:
        if self.elapsed > self.timeout_seconds:
            raise TransactionTimeoutError(
                f"transaction exceeded its {self.timeout_seconds:.0f}s budget "
                f"({self.elapsed:.1f}s elapsed)"
            )


def _ensure_sqlite_path(url: str) -> None:
    if not url.startswith("sqlite"):
        return

    parsed = make_url(url)
    database = parsed.database
    if not database or database == ":memory:":
        return

    path = Path(database)
    path.parent.mkdir(parents=True, exist_ok=True)


def _enable_sqlite_foreign_keys(dbapi_connection, _connection_record) -> None:
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


def _create_engine(url: str):
    connect_args: dict[str, object] = {}
    engine_kwargs: dict[str, object] = {
        "echo": settings.debug,
        "future": True,
        "pool_pre_ping": True,
    }

    parsed = make_url(url)
    backend = parsed.get_backend_name()

    if backend == "sqlite":
        connect_args["check_same_thread"] = False
        _ensure_sqlite_path(url)
    else:
        # Recycle long-lived connections so pooler idle timeouts do not kill them
        # mid-sync, and rely on pre-ping to revive stale ones.
        engine_kwargs["pool_recycle"] = 300
        if backend.startswith("postgresql"):
            connect_args.setdefault("keepalives", 1)
            connect_args.setdefault("keepalives_idle", 120)

    if connect_args:
        engine_kwargs["connect_args"] = connect_args

    engine = create_engine(url, **engine_kwargs)
    if backend == "sqlite":
        event.listen(engine, "connect", _enable_sqlite_foreign_keys)
    return engine


def _create_session_factory(engine) -> sessionmaker[Session]:
    # Autoflush lets a reconciliation pass see rows it inserted earlier in the
    # same transaction.
    return sessionmaker(bind=engine, autoflush=True, autocommit=False, future=True)


def build_db_components(url: str):
    engine = _create_engine(url)
    session_factory = _create_session_factory(engine)
    return engine, session_factory


engine, SessionLocal = build_db_components(settings.resolved_database_url)
Base = declarative_base()


def _apply_statement_timeout(session: Session, timeout_seconds: float) -> None:
    if session.get_bind().dialect.name != "postgresql":
        return
    milliseconds = int(timeout_seconds * 1000)
    session.execute(text(f"SET LOCAL statement_timeout = {milliseconds}"))
    session.execute(text(f"SET LOCAL idle_in_transaction_session_timeout = {milliseconds}"))


@contextmanager
def session_scope(
    session_factory: sessionmaker[Session] | None = None,
    *,
    timeout_seconds: float | None = None,
) -> Iterator[Session]:
    """Run one atomic unit of work.

    Commits on success and rolls back on any exception. When ``timeout_seconds``
    is given the budget is attached as ``session.info["budget"]`` so long-running
    callers can check it, and the commit itself is refused once the budget is spent.
    """

    factory = session_factory or SessionLocal
    session = factory()
    budget = TransactionBudget(timeout_seconds) if timeout_seconds else None
    if budget is not None:
        session.info["budget"] = budget
    try:
        if budget is not None:
            _apply_statement_timeout(session, budget.timeout_seconds)
        yield session
        if budget is not None:
            budget.check()
        session.commit()
    except Exception:
        session.rollback()
        if budget is not None:
            logger.warning(
                "Rolled back transaction after {:.1f}s (budget {:.0f}s)",
                budget.elapsed,
                budget.timeout_seconds,
            )
        raise
    finally:
        session.close()


def check_budget(session: Session) -> None:
    budget = session.info.get("budget")
    if budget is not None:
        budget.check()


def get_db() -> Generator[Session, None, None]:
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


def init_db(bind=None) -> None:
    from . import models  # noqa: F401

    Base.metadata.create_all(bind=bind or engine)
