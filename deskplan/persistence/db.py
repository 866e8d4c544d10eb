from __future__ import annotations

from typing import Any

from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

from deskplan.core.config import Settings, get_settings


def engine_options(settings: Settings) -> dict[str, Any]:
    """Keyword arguments for ``create_async_engine`` by backend.

    PostgreSQL gets a bounded asyncpg pool and an optional server-side
    statement timeout. sqlite (tests, local runs) keeps SQLAlchemy's default
    pool and only waits on the file lock while sweeps and requests overlap.
    """
    backend = make_url(settings.database_url).get_backend_name()
    if backend == "sqlite":
        return {"connect_args": {"timeout": max(1, int(settings.sqlite_busy_timeout_s))}}

    options: dict[str, Any] = {
        "pool_pre_ping": True,
        "pool_size": max(1, int(settings.api_db_pool_size)),
        "max_overflow": max(0, int(settings.api_db_max_overflow)),
        "pool_timeout": 30,
        "pool_recycle": 1800,
    }
    if backend == "postgresql" and settings.api_db_statement_timeout_ms > 0:
        options["connect_args"] = {
            "server_settings": {"statement_timeout": str(int(settings.api_db_statement_timeout_ms))}
        }
    return options


_settings = get_settings()
engine = create_async_engine(_settings.database_url, **engine_options(_settings))
# Transitions read their refreshed row after commit; keep loaded attributes.
SessionLocal = async_sessionmaker(engine, expire_on_commit=False)


def pool_stats() -> dict[str, Any]:
    # Counters exist on QueuePool only; other pools report their status line.
    pool = engine.sync_engine.pool
    stats: dict[str, Any] = {"backend": engine.dialect.name, "pool": type(pool).__name__}
    for name in ("size", "checkedout", "checkedin", "overflow"):
        counter = getattr(pool, name, None)
        if callable(counter):
            stats[name] = int(counter())
    if len(stats) == 2:
        stats["status"] = pool.status()
    return stats
