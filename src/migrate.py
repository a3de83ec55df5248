"""
Database migration runner for the PostgreSQL resource store.

Applies forward-only SQL migrations from the migrations/ package. Each
migration runs in its own transaction and is recorded with a checksum so
that edits to an already-applied file are detected.
"""

import hashlib
import logging
import re
from pathlib import Path
from typing import Dict, List, Tuple

import asyncpg

logger = logging.getLogger(__name__)

MIGRATIONS_DIR = Path(__file__).parent / "migrations"

MIGRATION_PATTERN = re.compile(r"^(\d{3})_.+\.sql$")


class MigrationChecksumError(RuntimeError):
    """An applied migration file no longer matches what was applied."""


async def ensure_migration_table(conn: asyncpg.Connection) -> None:
    """Create the schema_migrations tracking table if it doesn't exist."""
    await conn.execute("""
        CREATE TABLE IF NOT EXISTS schema_migrations (
            version VARCHAR(16) PRIMARY KEY,
            filename VARCHAR(255) NOT NULL,
            checksum CHAR(64) NOT NULL,
            applied_at TIMESTAMP NOT NULL DEFAULT NOW()
        )
        """)


def checksum(sql: str) -> str:
    return hashlib.sha256(sql.encode("utf-8")).hexdigest()


def discover_migrations() -> List[Tuple[str, str, Path]]:
    """
    Find migration files, sorted by version.

    Returns:
        List of (version, filename, path) tuples.

    Raises:
        FileNotFoundError: If the migrations directory doesn't exist.
    """
    if not MIGRATIONS_DIR.is_dir():
        raise FileNotFoundError(f"Migrations directory not found: {MIGRATIONS_DIR}")

    found = []
    for entry in sorted(MIGRATIONS_DIR.iterdir()):
        match = MIGRATION_PATTERN.match(entry.name)
        if match and entry.is_file():
            found.append((match.group(1), entry.name, entry))
    return found


async def get_applied_checksums(conn: asyncpg.Connection) -> Dict[str, str]:
    """Map each applied migration version to its recorded checksum."""
    rows = await conn.fetch("SELECT version, checksum FROM schema_migrations")
    return {row["version"]: row["checksum"] for row in rows}


async def apply_migration(pool: asyncpg.Pool, version: str, filename: str, sql: str) -> None:
    async with pool.acquire() as conn:
        async with conn.transaction():
            await conn.execute(sql)
            await conn.execute(
                "INSERT INTO schema_migrations (version, filename, checksum) "
                "VALUES ($1, $2, $3)",
                version,
                filename,
                checksum(sql),
            )

    logger.info(f"Applied migration {filename}")


async def run_migrations(pool: asyncpg.Pool) -> int:
    """
    Apply all pending migrations in version order.

    Args:
        pool: A connected asyncpg pool.

    Returns:
        Number of migrations applied.

    Raises:
        FileNotFoundError: If the migrations directory is missing.
        MigrationChecksumError: If an applied migration file was edited.
        asyncpg.PostgresError: If a migration fails (it is rolled back;
            earlier migrations stay applied).
    """
    async with pool.acquire() as conn:
        await ensure_migration_table(conn)
        applied = await get_applied_checksums(conn)

    pending = []
    for version, filename, path in discover_migrations():
        sql = path.read_text(encoding="utf-8")
        if version in applied:
            if applied[version] != checksum(sql):
                raise MigrationChecksumError(
                    f"Migration {filename} was modified after being applied"
                )
            continue
        pending.append((version, filename, sql))

    if not pending:
        logger.info("Resource store schema is up to date")
        return 0

    logger.info(f"Applying {len(pending)} pending migration(s)")
    for version, filename, sql in pending:
        await apply_migration(pool, version, filename, sql)

    return len(pending)
