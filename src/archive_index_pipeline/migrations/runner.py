from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass
from pathlib import Path

import psycopg
import structlog

logger = structlog.get_logger(__name__)

# Serializes concurrent `migrate` invocations against the same database.
_MIGRATION_LOCK_KEY = 72_431_001


@dataclass(frozen=True)
class Migration:
    version: str
    path: Path


def _migrations_dir() -> Path:
    return Path(__file__).resolve().parent / "sql"


def discover_migrations() -> list[Migration]:
    return [Migration(version=path.stem, path=path) for path in sorted(_migrations_dir().glob("*.sql"))]


def _ensure_schema(conn: psycopg.Connection, schema: str) -> None:
    conn.execute(f'create schema if not exists "{schema}"')
    conn.execute(f'set search_path to "{schema}"')


def _ensure_migrations_table(conn: psycopg.Connection) -> None:
    conn.execute(
        """
        create table if not exists schema_migrations (
          version text primary key,
          applied_at timestamptz not null default now()
        )
        """
    )


def _applied_versions(conn: psycopg.Connection) -> set[str]:
    rows = conn.execute("select version from schema_migrations").fetchall()
    return {r[0] for r in rows}


def pending_migrations(conn: psycopg.Connection, migrations: Iterable[Migration] | None = None) -> list[Migration]:
    done = _applied_versions(conn)
    return [m for m in (migrations if migrations is not None else discover_migrations()) if m.version not in done]


def apply_migrations(
    dsn: str,
    *,
    schema: str = "public",
    migrations: Iterable[Migration] | None = None,
) -> list[str]:
    """
    Creates the run-state tables in `schema`. Already-recorded versions are
    skipped, so re-running is a no-op.
    """
    applied: list[str] = []
    with psycopg.connect(dsn) as conn:
        conn.execute("set timezone to 'UTC'")
        conn.execute("select pg_advisory_xact_lock(%s)", (_MIGRATION_LOCK_KEY,))
        _ensure_schema(conn, schema)
        _ensure_migrations_table(conn)

        for mig in pending_migrations(conn, migrations):
            conn.execute(mig.path.read_text(encoding="utf-8"))
            conn.execute("insert into schema_migrations(version) values (%s)", (mig.version,))
            applied.append(mig.version)
            logger.info("migrations.applied", version=mig.version, schema=schema)
        conn.commit()

    return applied
