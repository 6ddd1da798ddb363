#!/usr/bin/env python3
"""Database utilities for the API-Sync PostgreSQL adapters.

This module provides:
    - Transaction and connection context managers over an asyncpg pool
    - Conversion of driver errors into the DatabaseError hierarchy
    - Pool creation/shutdown and a health probe

Example:
    async with database_transaction(pool) as conn:
        await conn.execute("UPDATE apisync_queue ...")
        await conn.execute("DELETE FROM apisync_queue ...")
        # Automatic commit on success, rollback on exception
"""
import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator

import asyncpg

from .exceptions import (
    ConnectionPoolError,
    DatabaseError,
    IntegrityError,
    TransactionError,
)

logger = logging.getLogger(__name__)

ACQUIRE_TIMEOUT_SECONDS = 30.0


# ============================================
# Transaction Context Managers
# ============================================

async def _acquire(pool):
    if pool is None:
        raise ConnectionPoolError("Database connection pool is not initialized")
    try:
        return await asyncio.wait_for(pool.acquire(), timeout=ACQUIRE_TIMEOUT_SECONDS)
    except asyncio.TimeoutError:
        raise ConnectionPoolError(
            "Timeout acquiring database connection",
            details={"timeout_seconds": ACQUIRE_TIMEOUT_SECONDS},
        )
    except Exception as e:
        raise ConnectionPoolError(
            f"Failed to acquire database connection: {e}",
            cause=e,
        )


@asynccontextmanager
async def database_transaction(
    pool,
    isolation: str = "read_committed",
    readonly: bool = False,
) -> AsyncIterator[Any]:
    """Run a block inside a transaction with automatic commit/rollback.

    Args:
        pool: asyncpg connection pool
        isolation: Transaction isolation level
            ("serializable", "repeatable_read", "read_committed")
        readonly: If True, transaction is read-only

    Yields:
        Database connection within transaction

    Raises:
        ConnectionPoolError: If connection cannot be acquired
        TransactionError: If the transaction cannot start or deadlocks
        IntegrityError: If a constraint is violated
    """
    conn = await _acquire(pool)
    try:
        transaction = conn.transaction(isolation=isolation, readonly=readonly)

        try:
            await transaction.start()
        except Exception as e:
            raise TransactionError(
                f"Failed to start transaction: {e}",
                cause=e,
            )

        try:
            yield conn
            await transaction.commit()
        except Exception as e:
            try:
                await transaction.rollback()
                logger.debug("Transaction rolled back due to exception")
            except Exception as rollback_error:
                logger.error(f"Rollback failed: {rollback_error}")

            raise _convert_db_exception(e)

    finally:
        await pool.release(conn)


@asynccontextmanager
async def database_connection(pool) -> AsyncIterator[Any]:
    """Acquire a connection without an explicit transaction.

    Single statements run in autocommit mode. Driver errors raised inside
    the block are converted like in database_transaction.

    Args:
        pool: asyncpg connection pool

    Yields:
        Database connection
    """
    conn = await _acquire(pool)
    try:
        yield conn
    except Exception as e:
        raise _convert_db_exception(e)
    finally:
        await pool.release(conn)


# ============================================
# Error Conversion
# ============================================

def _convert_db_exception(e: Exception) -> Exception:
    """Convert a driver exception to the matching DatabaseError subtype.

    Exceptions that did not come from the database (anything already in the
    ApiSyncError tree, or raised by the caller's own code) pass through.
    """
    if isinstance(e, DatabaseError):
        return e

    if not isinstance(e, (asyncpg.PostgresError, asyncpg.InterfaceError)):
        return e

    if isinstance(e, asyncpg.UniqueViolationError):
        return IntegrityError(
            f"Duplicate entry: {e}",
            constraint=getattr(e, "constraint_name", None) or "unique",
            cause=e,
        )

    if isinstance(e, asyncpg.ForeignKeyViolationError):
        return IntegrityError(
            f"Foreign key violation: {e}",
            constraint="foreign_key",
            cause=e,
        )

    if isinstance(e, asyncpg.NotNullViolationError):
        return IntegrityError(
            f"Not null violation: {e}",
            constraint="not_null",
            cause=e,
        )

    if isinstance(e, asyncpg.DeadlockDetectedError):
        return TransactionError(
            f"Deadlock detected: {e}",
            operation="transaction",
            cause=e,
        )

    if isinstance(e, asyncpg.QueryCanceledError):
        return TransactionError(
            f"Database operation timed out: {e}",
            operation="query",
            cause=e,
        )

    return DatabaseError(
        f"Database operation failed: {e}",
        cause=e,
    )


# ============================================
# Connection Pool Helpers
# ============================================

async def create_pool(
    database_url: str,
    min_size: int = 2,
    max_size: int = 10,
    command_timeout: float = 60.0,
    **kwargs,
):
    """Create a database connection pool.

    Args:
        database_url: PostgreSQL connection string
        min_size: Minimum pool connections
        max_size: Maximum pool connections
        command_timeout: Default query timeout in seconds
        **kwargs: Additional asyncpg.create_pool arguments

    Returns:
        asyncpg.Pool instance

    Raises:
        ConnectionPoolError: If pool creation fails
    """
    try:
        pool = await asyncpg.create_pool(
            database_url,
            min_size=min_size,
            max_size=max_size,
            command_timeout=command_timeout,
            **kwargs,
        )
        logger.info(f"Database pool created (min={min_size}, max={max_size})")
        return pool

    except Exception as e:
        raise ConnectionPoolError(
            f"Failed to create database pool: {e}",
            cause=e,
        )


async def close_pool(pool, timeout: float = 10.0):
    """Close database pool gracefully, terminating it if that takes too long."""
    if pool is None:
        return

    try:
        await asyncio.wait_for(pool.close(), timeout=timeout)
        logger.info("Database pool closed")
    except asyncio.TimeoutError:
        logger.warning(f"Pool close timed out after {timeout}s, terminating")
        pool.terminate()


# ============================================
# Health Check
# ============================================

async def check_database_health(pool) -> dict[str, Any]:
    """Check database connection health.

    Args:
        pool: asyncpg connection pool

    Returns:
        Dict with health status information
    """
    if pool is None:
        return {
            "healthy": False,
            "error": "Pool not initialized",
        }

    try:
        async with database_connection(pool) as conn:
            result = await conn.fetchval("SELECT 1")
            pool_size = pool.get_size()
            pool_free = pool.get_idle_size()

            return {
                "healthy": result == 1,
                "pool_size": pool_size,
                "pool_free": pool_free,
                "pool_used": pool_size - pool_free,
            }

    except Exception as e:
        return {
            "healthy": False,
            "error": str(e),
        }


__all__ = [
    "database_transaction",
    "database_connection",
    "create_pool",
    "close_pool",
    "check_database_health",
]
