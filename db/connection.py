# db/connection.py
"""
Database connection pool management for asyncpg.

One pool per process, created lazily on first use. Every new connection
registers the pgvector codec so ``vector`` columns round-trip as arrays.

Example:
    async with get_db_connection_context() as conn:
        result = await conn.fetchval("SELECT 1")
"""

import os
import logging
import asyncio
from contextlib import asynccontextmanager
from typing import Optional, Dict, Any

import asyncpg
import pgvector.asyncpg as pgvector_asyncpg

logger = logging.getLogger(__name__)

DEFAULT_MIN_CONNECTIONS = 2
DEFAULT_MAX_CONNECTIONS = 10
DEFAULT_COMMAND_TIMEOUT = 60.0
DEFAULT_ACQUIRE_TIMEOUT = 30.0
DEFAULT_SETUP_TIMEOUT = 30.0

_pool: Optional[asyncpg.Pool] = None
_pool_lock: Optional[asyncio.Lock] = None


def get_db_dsn() -> str:
    """
    Get database connection string (DSN) from environment variables.

    Checks DB_DSN first, then falls back to DATABASE_URL.

    Raises:
        EnvironmentError: If no DSN is configured
    """
    dsn = os.getenv("DB_DSN")
    if not dsn:
        dsn = os.getenv("DATABASE_URL")
        if dsn:
            logger.info("Using DATABASE_URL as connection string (DB_DSN not found)")

    if not dsn:
        logger.critical("Neither DB_DSN nor DATABASE_URL environment variables are set")
        raise EnvironmentError("Database DSN not configured in environment")

    return dsn


def get_pool_config() -> Dict[str, Any]:
    """Connection pool parameters from the environment."""
    return {
        'min_size': int(os.getenv("DB_POOL_MIN_SIZE", str(DEFAULT_MIN_CONNECTIONS))),
        'max_size': int(os.getenv("DB_POOL_MAX_SIZE", str(DEFAULT_MAX_CONNECTIONS))),
        'command_timeout': float(os.getenv("DB_COMMAND_TIMEOUT", str(DEFAULT_COMMAND_TIMEOUT))),
    }


def get_acquire_timeout() -> float:
    return float(os.getenv("DB_ACQUIRE_TIMEOUT", str(DEFAULT_ACQUIRE_TIMEOUT)))


async def setup_connection(conn: asyncpg.Connection) -> None:
    """Per-connection setup invoked by the pool: register the pgvector codec."""
    setup_timeout = float(os.getenv("DB_SETUP_TIMEOUT", str(DEFAULT_SETUP_TIMEOUT)))
    try:
        await asyncio.wait_for(pgvector_asyncpg.register_vector(conn), timeout=setup_timeout)
    except asyncio.TimeoutError:
        logger.error("pgvector registration timed out after %.1fs on %s", setup_timeout, id(conn))
        raise
    logger.debug("Registered pgvector codec on connection %s", id(conn))


async def initialize_connection_pool(dsn: Optional[str] = None) -> asyncpg.Pool:
    """Create the process-wide pool if it does not exist yet."""
    global _pool, _pool_lock
    if _pool is not None:
        return _pool
    if _pool_lock is None:
        _pool_lock = asyncio.Lock()
    async with _pool_lock:
        if _pool is None:
            config = get_pool_config()
            logger.info(
                "Creating asyncpg pool (min=%s, max=%s)", config['min_size'], config['max_size']
            )
            _pool = await asyncpg.create_pool(
                dsn=dsn or get_db_dsn(),
                init=setup_connection,
                **config,
            )
    return _pool


async def get_db_connection_pool() -> asyncpg.Pool:
    if _pool is None:
        return await initialize_connection_pool()
    return _pool


@asynccontextmanager
async def get_db_connection_context(timeout: Optional[float] = None):
    """
    Async context manager for safe database connection usage.

    Args:
        timeout: Maximum time to wait for connection acquisition.
                 If None, uses DB_ACQUIRE_TIMEOUT (default 30s)

    Raises:
        asyncio.TimeoutError: If connection acquisition times out
    """
    if timeout is None:
        timeout = get_acquire_timeout()
    pool = await get_db_connection_pool()
    conn = await pool.acquire(timeout=timeout)
    try:
        yield conn
    finally:
        await pool.release(conn)


async def close_connection_pool() -> None:
    """Close the process-wide pool, if any."""
    global _pool
    pool, _pool = _pool, None
    if pool is not None:
        await pool.close()
        logger.info("asyncpg pool closed")
