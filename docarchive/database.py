"""asyncpg pool lifecycle, schema migrations and startup checks."""

from pathlib import Path
from typing import Optional

import asyncpg
import structlog

from docarchive.config import get_settings

logger = structlog.get_logger(__name__)

MIGRATIONS_DIR = Path(__file__).parent.parent / "migrations"

LEDGER_DDL = """
CREATE TABLE IF NOT EXISTS schema_migrations (
    filename TEXT PRIMARY KEY,
    applied_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
)
"""

# Global connection pool
_pool: Optional[asyncpg.Pool] = None


async def get_pool() -> asyncpg.Pool:
    """Return the shared pool.

    Raises:
        RuntimeError: If init_database() has not run
    """
    if _pool is None:
        raise RuntimeError("Database pool not initialized. Call init_database() first.")
    return _pool


async def init_database() -> asyncpg.Pool:
    """Open the credential database pool, sized from settings."""
    global _pool

    if _pool is not None:
        return _pool

    settings = get_settings()
    try:
        _pool = await asyncpg.create_pool(
            settings.postgres_url,
            min_size=settings.db_pool_min_size,
            max_size=settings.db_pool_max_size,
            command_timeout=settings.db_command_timeout,
        )
    except (OSError, asyncpg.PostgresError) as e:
        logger.error("credential_db_unreachable", error=str(e))
        raise

    logger.info(
        "credential_db_pool_opened",
        min_size=settings.db_pool_min_size,
        max_size=settings.db_pool_max_size,
    )
    return _pool


async def close_database() -> None:
    global _pool

    if _pool is None:
        return
    await _pool.close()
    _pool = None
    logger.info("credential_db_pool_closed")


async def run_migrations(migrations_dir: Path = MIGRATIONS_DIR) -> list[str]:
    """Apply pending ``*.sql`` files in name order.

    Applied files are recorded in ``schema_migrations``; each pending file
    runs in its own transaction together with its ledger row, so a failed
    file leaves no trace and is retried on the next start.

    Returns:
        Names of the files applied by this call
    """
    if not migrations_dir.exists():
        logger.warning("migrations_directory_not_found", path=str(migrations_dir))
        return []

    files = sorted(migrations_dir.glob("*.sql"))
    pool = await get_pool()
    applied: list[str] = []

    async with pool.acquire() as conn:
        await conn.execute(LEDGER_DDL)
        done = {row["filename"] for row in await conn.fetch("SELECT filename FROM schema_migrations")}

        for path in files:
            if path.name in done:
                continue
            try:
                async with conn.transaction():
                    await conn.execute(path.read_text())
                    await conn.execute(
                        "INSERT INTO schema_migrations (filename) VALUES ($1)", path.name
                    )
            except asyncpg.PostgresError as e:
                logger.error("migration_failed", file=path.name, error=str(e))
                raise
            applied.append(path.name)
            logger.info("migration_applied", file=path.name)

    logger.info("migrations_complete", applied=len(applied), skipped=len(files) - len(applied))
    return applied


async def role_is_seeded(role_name: str) -> bool:
    """True when a role named ``role_name`` exists."""
    pool = await get_pool()
    async with pool.acquire() as conn:
        return bool(
            await conn.fetchval("SELECT EXISTS(SELECT 1 FROM roles WHERE name = $1)", role_name)
        )


async def health_check() -> bool:
    try:
        pool = await get_pool()
        async with pool.acquire() as conn:
            return await conn.fetchval("SELECT 1") == 1
    except (RuntimeError, OSError, asyncpg.PostgresError) as e:
        logger.error("credential_db_health_check_failed", error=str(e))
        return False
