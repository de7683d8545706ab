"""
Schema migrations for the mapping operator's PostgreSQL store.

Migrations are forward-only SQL files named ``NNN_description.sql`` under
``migrations/``. Several operator replicas may start at once, so the whole
run is serialized with a session-level advisory lock; each file is applied
in its own transaction together with its bookkeeping row.
"""

import logging
import re
from pathlib import Path
from typing import List, NamedTuple, Set

import asyncpg

logger = logging.getLogger(__name__)

MIGRATIONS_DIR = Path(__file__).parent / "migrations"

MIGRATION_PATTERN = re.compile(r"^(\d{3})_.+\.sql$")

# Arbitrary but fixed key shared by every replica
MIGRATION_LOCK_ID = 7_340_212


class Migration(NamedTuple):
    version: str
    filename: str
    path: Path


async def ensure_migration_table(conn: asyncpg.Connection) -> None:
    """Create the bookkeeping table for applied migrations."""
    await conn.execute("""
        CREATE TABLE IF NOT EXISTS schema_migrations (
            version VARCHAR(16) PRIMARY KEY,
            filename VARCHAR(255) NOT NULL,
            applied_at TIMESTAMP NOT NULL DEFAULT NOW()
        )
        """)


def discover_migrations(directory: Path = MIGRATIONS_DIR) -> List[Migration]:
    """
    Find migration files, ordered by version.

    Raises:
        FileNotFoundError: If the directory doesn't exist.
        ValueError: If two files claim the same version.
    """
    if not directory.is_dir():
        raise FileNotFoundError(f"Migrations directory not found: {directory}")

    found = {}
    for entry in sorted(directory.iterdir()):
        match = MIGRATION_PATTERN.match(entry.name)
        if not match or not entry.is_file():
            continue
        version = match.group(1)
        if version in found:
            raise ValueError(
                f"Duplicate migration version {version}: "
                f"{found[version].filename} and {entry.name}"
            )
        found[version] = Migration(version, entry.name, entry)

    return [found[v] for v in sorted(found)]


async def get_applied_versions(conn: asyncpg.Connection) -> Set[str]:
    rows = await conn.fetch("SELECT version FROM schema_migrations")
    return {row["version"] for row in rows}


async def apply_migration(conn: asyncpg.Connection, migration: Migration) -> None:
    """Apply one migration and record it, atomically."""
    sql = migration.path.read_text(encoding="utf-8")

    async with conn.transaction():
        await conn.execute(sql)
        await conn.execute(
            "INSERT INTO schema_migrations (version, filename) VALUES ($1, $2)",
            migration.version,
            migration.filename,
        )

    logger.info(f"Applied migration {migration.filename}")


async def run_migrations(pool: asyncpg.Pool, directory: Path = MIGRATIONS_DIR) -> int:
    """
    Apply all pending migrations in version order.

    Returns:
        Number of migrations applied by this call.

    Raises:
        FileNotFoundError: If the migrations directory is missing.
        asyncpg.PostgresError: If a migration fails. It is rolled back and
            earlier migrations stay applied.
    """
    migrations = discover_migrations(directory)

    async with pool.acquire() as conn:
        await conn.execute("SELECT pg_advisory_lock($1)", MIGRATION_LOCK_ID)
        try:
            await ensure_migration_table(conn)
            applied = await get_applied_versions(conn)
            pending = [m for m in migrations if m.version not in applied]

            if not pending:
                logger.info("Database schema is up to date")
                return 0

            logger.info(f"Applying {len(pending)} pending migration(s)")
            for migration in pending:
                await apply_migration(conn, migration)
        finally:
            await conn.execute("SELECT pg_advisory_unlock($1)", MIGRATION_LOCK_ID)

    logger.info(f"Successfully applied {len(pending)} migration(s)")
    return len(pending)
