from __future__ import annotations

from deskplan.core.config import Settings
from deskplan.persistence.db import engine_options, pool_stats


def test_sqlite_engine_skips_pool_tuning() -> None:
    options = engine_options(Settings(database_url="sqlite+aiosqlite:///./local.db", sqlite_busy_timeout_s=5))

    assert options == {"connect_args": {"timeout": 5}}


def test_postgres_engine_gets_bounded_pool_and_statement_timeout() -> None:
    options = engine_options(
        Settings(
            database_url="postgresql+asyncpg://deskplan:secret@db:5432/deskplan",
            api_db_pool_size=4,
            api_db_max_overflow=2,
            api_db_statement_timeout_ms=2500,
        )
    )

    assert options["pool_pre_ping"] is True
    assert options["pool_size"] == 4
    assert options["max_overflow"] == 2
    assert options["connect_args"] == {"server_settings": {"statement_timeout": "2500"}}


def test_postgres_engine_without_statement_timeout() -> None:
    options = engine_options(Settings(database_url="postgresql+asyncpg://db/deskplan"))

    assert "connect_args" not in options


def test_pool_stats_reports_backend() -> None:
    stats = pool_stats()

    assert stats["backend"] == "sqlite"
    assert stats["pool"]
