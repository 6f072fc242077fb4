"""Database engine and session management utilities."""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from sqlalchemy import event, text
from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import AsyncAdaptedQueuePool

from commerce_sync.config import Settings, get_settings
from commerce_sync.models import Base

_database_health_logger = logging.getLogger("commerce_sync.database.health")


@dataclass(slots=True, frozen=True)
class DatabaseHealthCheckResult:
    """Outcome details for startup database consistency checks."""

    integrity_ok: bool
    anomaly_counts: dict[str, int]

    @property
    def anomalous_rows(self) -> int:
        return sum(self.anomaly_counts.values())

    @property
    def is_healthy(self) -> bool:
        return self.integrity_ok and self.anomalous_rows == 0


def _is_sqlite_url(database_url: str) -> bool:
    return make_url(database_url).get_backend_name() == "sqlite"


def _ensure_sqlite_database_file(database_url: str) -> None:
    parsed_url = make_url(database_url)
    if parsed_url.get_backend_name() != "sqlite":
        return

    database_path = parsed_url.database
    if database_path in (None, "", ":memory:") or database_path.startswith("file:"):
        return

    resolved_path = Path(database_path)
    if not resolved_path.is_absolute():
        resolved_path = Path.cwd() / resolved_path

    resolved_path.parent.mkdir(parents=True, exist_ok=True)
    resolved_path.touch(exist_ok=True)


def _build_engine(settings: Settings) -> AsyncEngine:
    database_url = settings.DATABASE_URL
    sqlite = _is_sqlite_url(database_url)
    engine = create_async_engine(
        database_url,
        poolclass=AsyncAdaptedQueuePool,
        pool_pre_ping=True,
        pool_size=settings.DATABASE_POOL_SIZE,
        max_overflow=settings.DATABASE_MAX_OVERFLOW,
        connect_args={"timeout": settings.SQLITE_BUSY_TIMEOUT_SECONDS} if sqlite else {},
    )

    if sqlite:

        @event.listens_for(engine.sync_engine, "connect")
        def apply_sqlite_pragmas(dbapi_connection: Any, _: Any) -> None:
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA journal_mode=WAL;")
            cursor.execute("PRAGMA foreign_keys=ON;")
            cursor.close()

    return engine


settings: Settings = get_settings()
_ensure_sqlite_database_file(settings.DATABASE_URL)
engine = _build_engine(settings)

AsyncSessionFactory = async_sessionmaker(
    bind=engine,
    class_=AsyncSession,
    autoflush=False,
    expire_on_commit=False,
)


@asynccontextmanager
async def session_scope() -> AsyncIterator[AsyncSession]:
    """Yield a transaction-scoped session with automatic commit/rollback."""

    session = AsyncSessionFactory()
    try:
        yield session
        await session.commit()
    except Exception:
        await session.rollback()
        raise
    finally:
        await session.close()


async def get_db_session() -> AsyncIterator[AsyncSession]:
    """FastAPI dependency that provides an async database session."""

    async with session_scope() as session:
        yield session


async def initialize_database() -> None:
    """Create known tables and verify SQLite WAL mode when applicable."""

    async with engine.connect() as connection:
        await connection.run_sync(Base.metadata.create_all)
        await connection.commit()

        if not _is_sqlite_url(str(connection.engine.url)):
            return

        wal_mode = (await connection.execute(text("PRAGMA journal_mode;"))).scalar_one()
        if str(wal_mode).lower() != "wal":
            raise RuntimeError(
                f"SQLite WAL mode was not enabled. Current mode: {wal_mode}"
            )


_ANOMALY_QUERIES: tuple[tuple[str, str], ...] = (
    (
        "running_jobs_without_started_at",
        "SELECT COUNT(*) FROM sync_jobs WHERE status = 'running' AND started_at IS NULL",
    ),
    (
        "completed_jobs_without_completed_at",
        "SELECT COUNT(*) FROM sync_jobs "
        "WHERE status = 'completed' AND completed_at IS NULL",
    ),
    (
        "jobs_with_inverted_window",
        "SELECT COUNT(*) FROM sync_jobs WHERE end_date < start_date",
    ),
)


async def run_startup_database_health_check(
    *,
    fail_fast_on_integrity_error: bool = True,
) -> DatabaseHealthCheckResult:
    """Validate SQLite integrity and count sync job rows in impossible states."""

    async with engine.connect() as connection:
        integrity_ok = True
        if _is_sqlite_url(str(connection.engine.url)):
            integrity_rows = (
                (await connection.execute(text("PRAGMA integrity_check;")))
                .scalars()
                .all()
            )
            integrity_ok = len(integrity_rows) == 1 and integrity_rows[0] == "ok"
            if not integrity_ok:
                _database_health_logger.error(
                    "database_integrity_check_failed",
                    extra={"integrity_rows": integrity_rows},
                )

        anomaly_counts = {
            key: int((await connection.execute(text(query))).scalar_one())
            for key, query in _ANOMALY_QUERIES
        }

    result = DatabaseHealthCheckResult(
        integrity_ok=integrity_ok,
        anomaly_counts=anomaly_counts,
    )
    if result.anomalous_rows > 0:
        _database_health_logger.warning(
            "database_job_anomalies_detected",
            extra={"anomaly_counts": anomaly_counts},
        )
    _database_health_logger.info(
        "database_startup_health_check_completed",
        extra={
            "integrity_ok": result.integrity_ok,
            "anomalous_rows": result.anomalous_rows,
            "healthy": result.is_healthy,
        },
    )

    if fail_fast_on_integrity_error and not result.integrity_ok:
        raise RuntimeError(
            "Database integrity check failed. Review logs before restarting."
        )

    return result


async def close_database() -> None:
    """Dispose database engine and release pooled connections."""

    await engine.dispose()


__all__ = [
    "AsyncSessionFactory",
    "DatabaseHealthCheckResult",
    "close_database",
    "engine",
    "get_db_session",
    "initialize_database",
    "run_startup_database_health_check",
    "session_scope",
]
