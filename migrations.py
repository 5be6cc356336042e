"""
Versioned schema migrations for the ledger store.

Each file in migrations/ named NNN_description.sql is applied once, inside its
own transaction, and recorded in schema_migrations. Files are ordered by the
numeric value of their prefix.

Rollback notes live at the top of every migration file.
"""
import re
import logging
from pathlib import Path
from typing import List, Set, Tuple
import asyncpg

logger = logging.getLogger(__name__)

MIGRATIONS_DIR = Path(__file__).parent / "migrations"

_MIGRATION_NAME = re.compile(r'^(\d+)_(.+)\.sql$')


async def ensure_migrations_table(conn: asyncpg.Connection) -> None:
    """Создать таблицу schema_migrations, если её нет"""
    await conn.execute("""
        CREATE TABLE IF NOT EXISTS schema_migrations (
            version TEXT PRIMARY KEY,
            name TEXT,
            applied_at TIMESTAMPTZ NOT NULL DEFAULT now()
        )
    """)


async def get_applied_migrations(conn: asyncpg.Connection) -> Set[str]:
    rows = await conn.fetch("SELECT version FROM schema_migrations")
    return {row["version"] for row in rows}


def get_migration_files() -> List[Tuple[str, Path]]:
    """
    List migration files sorted by numeric version.

    Returns:
        List of (version, path) tuples
    """
    if not MIGRATIONS_DIR.exists():
        logger.warning(f"MIGRATIONS_DIR_MISSING path={MIGRATIONS_DIR}")
        return []

    migrations = []
    for file_path in MIGRATIONS_DIR.glob("*.sql"):
        match = _MIGRATION_NAME.match(file_path.name)
        if match:
            migrations.append((match.group(1), file_path))
        else:
            logger.warning(f"MIGRATION_NAME_INVALID file={file_path.name}")

    # numeric, not lexicographic: 010 must sort after 009 and 9
    migrations.sort(key=lambda item: int(item[0]))
    return migrations


async def apply_migration(conn: asyncpg.Connection, version: str, migration_path: Path) -> None:
    """
    Apply one migration. The caller owns the transaction.

    Raises:
        asyncpg.PostgresError: when the SQL fails; the caller's transaction rolls back
    """
    sql_content = migration_path.read_text(encoding="utf-8")
    if not sql_content.strip():
        logger.warning(f"MIGRATION_EMPTY version={version} file={migration_path.name}")
    else:
        logger.info(f"MIGRATION_APPLYING version={version} file={migration_path.name}")
        # asyncpg runs multi-statement scripts (including $$ bodies) in one call
        await conn.execute(sql_content)

    await conn.execute(
        "INSERT INTO schema_migrations (version, name) VALUES ($1, $2) "
        "ON CONFLICT (version) DO NOTHING",
        version, migration_path.name,
    )
    logger.info(f"MIGRATION_APPLIED version={version}")


async def run_migrations(conn: asyncpg.Connection) -> bool:
    """
    Apply every pending migration, one transaction per file.

    A failing migration stops the run; earlier migrations stay applied.

    Returns:
        True when the schema is up to date, False on failure
    """
    try:
        await ensure_migrations_table(conn)
        applied = await get_applied_migrations(conn)
        migration_files = get_migration_files()
        if not migration_files:
            logger.warning("MIGRATIONS_NONE_FOUND")
            return True

        pending = [(v, p) for v, p in migration_files if v not in applied]
        logger.info(
            f"MIGRATIONS_STATUS applied={len(applied)} found={len(migration_files)} pending={len(pending)}"
        )

        for version, migration_path in pending:
            try:
                async with conn.transaction():
                    await apply_migration(conn, version, migration_path)
            except Exception:
                logger.exception(
                    f"MIGRATION_FAILED version={version} file={migration_path.name} - "
                    f"fix the migration and restart"
                )
                raise

        logger.info("MIGRATIONS_COMPLETE")
        return True
    except Exception as e:
        logger.error(f"MIGRATIONS_ABORTED error={type(e).__name__}: {e}")
        return False


async def run_migrations_safe(pool: asyncpg.Pool) -> bool:
    """Run migrations on a connection borrowed from the pool."""
    async with pool.acquire() as conn:
        return await run_migrations(conn)
