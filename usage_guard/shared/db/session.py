import time
from dataclasses import dataclass
from threading import Lock
from typing import Any, Dict, Iterable, Mapping

import structlog
from sqlalchemy import event, text
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.engine import Connection
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import StaticPool

from usage_guard.shared.core.config import get_settings
from usage_guard.shared.core.exceptions import ConfigurationError
from usage_guard.shared.db.base import Base

logger = structlog.get_logger()

# Mapped classes must be imported before Base.metadata is used
import usage_guard.models  # noqa: F401, E402

IN_MEMORY_SQLITE_URL = "sqlite+aiosqlite:///:memory:"
_ASYNC_DRIVER_PREFIXES = (
    ("postgresql://", "postgresql+asyncpg://"),
    ("postgres://", "postgresql+asyncpg://"),
    ("sqlite:///", "sqlite+aiosqlite:///"),
)
_QUERY_TIMER_KEY = "usage_guard_query_started"
_MAX_LOGGED_STATEMENT = 200


@dataclass(slots=True)
class _DBRuntime:
    settings: Any
    engine: AsyncEngine
    session_maker: async_sessionmaker[AsyncSession]
    effective_url: str


_db_runtime: _DBRuntime | None = None
_db_runtime_lock = Lock()


def _normalize_db_url(raw_url: str) -> str:
    url = (raw_url or "").strip()
    for sync_prefix, async_prefix in _ASYNC_DRIVER_PREFIXES:
        if url.startswith(sync_prefix):
            return async_prefix + url[len(sync_prefix):]
    return url


def _resolve_effective_url(settings_obj: Any) -> str:
    db_url = _normalize_db_url(str(getattr(settings_obj, "DATABASE_URL", "") or ""))
    if getattr(settings_obj, "TESTING", False) and not db_url.startswith("sqlite"):
        return IN_MEMORY_SQLITE_URL
    return db_url


def _build_pool_config(settings_obj: Any, effective_url: str) -> dict[str, Any]:
    if effective_url.startswith("sqlite"):
        # One shared connection keeps in-memory databases alive across sessions
        return {
            "echo": bool(getattr(settings_obj, "DB_ECHO", False)),
            "poolclass": StaticPool,
            "connect_args": {"check_same_thread": False},
        }
    return {
        "echo": bool(getattr(settings_obj, "DB_ECHO", False)),
        "pool_pre_ping": True,
        "pool_size": int(getattr(settings_obj, "DB_POOL_SIZE", 20)),
        "max_overflow": int(getattr(settings_obj, "DB_MAX_OVERFLOW", 10)),
        "pool_timeout": int(getattr(settings_obj, "DB_POOL_TIMEOUT", 30)),
        "pool_recycle": int(getattr(settings_obj, "DB_POOL_RECYCLE", 3600)),
    }


def create_engine_from_url(url: str, **overrides: Any) -> AsyncEngine:
    """Async engine with this service's pool settings and slow query logging."""
    settings_obj = get_settings()
    effective_url = _normalize_db_url(url)
    engine = create_async_engine(
        effective_url, **{**_build_pool_config(settings_obj, effective_url), **overrides}
    )
    _attach_slow_query_logging(
        engine, float(getattr(settings_obj, "DB_SLOW_QUERY_THRESHOLD_SECONDS", 0.2))
    )
    return engine


def _attach_slow_query_logging(engine: AsyncEngine, threshold_seconds: float) -> None:
    sync_engine = getattr(engine, "sync_engine", None)
    if sync_engine is None:
        logger.debug("db_slow_query_logging_skipped")
        return
    threshold = threshold_seconds if threshold_seconds > 0 else 0.2

    def _start_timer(conn: Connection, *_args: Any) -> None:
        conn.info.setdefault(_QUERY_TIMER_KEY, []).append(time.perf_counter())

    def _stop_timer(
        conn: Connection,
        _cursor: Any,
        statement: str,
        parameters: Any,
        *_args: Any,
    ) -> None:
        started = conn.info.get(_QUERY_TIMER_KEY)
        if not started:
            return
        elapsed = time.perf_counter() - started.pop()
        if elapsed <= threshold:
            return
        logger.warning(
            "slow_query_detected",
            duration_seconds=round(elapsed, 3),
            threshold_seconds=threshold,
            statement=statement[:_MAX_LOGGED_STATEMENT],
            has_parameters=bool(parameters),
        )

    event.listen(sync_engine, "before_cursor_execute", _start_timer)
    event.listen(sync_engine, "after_cursor_execute", _stop_timer)


def _build_db_runtime() -> _DBRuntime:
    settings_obj = get_settings()
    testing = bool(getattr(settings_obj, "TESTING", False))
    if not str(getattr(settings_obj, "DATABASE_URL", "") or "").strip() and not testing:
        raise ConfigurationError("DATABASE_URL is not set. The service cannot start.")

    effective_url = _resolve_effective_url(settings_obj)
    engine = create_engine_from_url(effective_url)
    logger.info("db_runtime_initialized", dialect=engine.dialect.name, testing=testing)
    return _DBRuntime(
        settings=settings_obj,
        engine=engine,
        session_maker=async_sessionmaker(
            engine, class_=AsyncSession, expire_on_commit=False
        ),
        effective_url=effective_url,
    )


def _get_db_runtime() -> _DBRuntime:
    global _db_runtime
    with _db_runtime_lock:
        if _db_runtime is None:
            _db_runtime = _build_db_runtime()
        return _db_runtime


def reset_db_runtime() -> None:
    """Drop the cached runtime so the next access rebuilds it from settings."""
    global _db_runtime
    with _db_runtime_lock:
        runtime, _db_runtime = _db_runtime, None
    if runtime is not None:
        # Synchronous dispose works from plain (non-async) fixtures
        runtime.engine.sync_engine.dispose()


def get_engine() -> AsyncEngine:
    return _get_db_runtime().engine


def get_session_maker() -> async_sessionmaker[AsyncSession]:
    return _get_db_runtime().session_maker


def async_session_maker(*args: Any, **kwargs: Any) -> AsyncSession:
    """Open a session on the active runtime."""
    return get_session_maker()(*args, **kwargs)


async def init_models(engine: AsyncEngine | None = None) -> None:
    """Create every mapped table that does not exist yet."""
    target = engine if engine is not None else get_engine()
    async with target.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("db_models_initialized", dialect=target.dialect.name)


async def dispose_engine() -> None:
    global _db_runtime
    with _db_runtime_lock:
        runtime, _db_runtime = _db_runtime, None
    if runtime is not None:
        await runtime.engine.dispose()


def session_dialect_name(session: AsyncSession) -> str:
    name = getattr(getattr(getattr(session, "bind", None), "dialect", None), "name", None)
    if isinstance(name, str) and name.strip():
        return name.strip().lower()
    return "unknown"


async def insert_ignore(
    session: AsyncSession,
    model: type[Base],
    values: Mapping[str, Any],
    conflict_columns: Iterable[str],
) -> bool:
    """
    INSERT ... ON CONFLICT DO NOTHING for PostgreSQL and SQLite.

    Returns True when a row was written, False when the conflict target
    already held one. The caller owns the transaction.
    """
    dialect = session_dialect_name(session)
    if dialect == "postgresql":
        stmt = postgresql.insert(model)
    elif dialect == "sqlite":
        stmt = sqlite.insert(model)
    else:
        raise ConfigurationError(
            f"insert_ignore is not supported for dialect '{dialect}'",
            details={"dialect": dialect, "table": model.__tablename__},
        )

    stmt = stmt.values(**dict(values)).on_conflict_do_nothing(
        index_elements=list(conflict_columns)
    )
    result = await session.execute(stmt)
    return bool(result.rowcount)


async def health_check() -> Dict[str, Any]:
    """`SELECT 1` round trip against the active runtime, with latency."""
    started = time.perf_counter()

    def _elapsed_ms() -> float:
        return round((time.perf_counter() - started) * 1000, 2)

    try:
        engine = get_engine()
        async with async_session_maker() as session:
            await session.execute(text("SELECT 1"))
    except Exception as e:
        logger.error("database_health_check_failed", error=str(e))
        return {"status": "down", "error": str(e), "latency_ms": _elapsed_ms()}
    return {"status": "up", "latency_ms": _elapsed_ms(), "engine": engine.dialect.name}
