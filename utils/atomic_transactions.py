"""Atomic transaction utilities for ledger and escrow operations"""

import asyncio
import logging
import time
from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator, Awaitable, Callable, Optional, TypeVar

from sqlalchemy.exc import DBAPIError, OperationalError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from config import Config

logger = logging.getLogger(__name__)

T = TypeVar("T")

# PostgreSQL serialization_failure / deadlock_detected
RETRYABLE_SQLSTATES = {"40001", "40P01"}


def is_retryable_store_error(error: BaseException) -> bool:
    """True when the whole transaction can be re-run after this error"""
    if isinstance(error, OperationalError):
        # SQLite "database is locked", lost connections
        return True
    if isinstance(error, DBAPIError):
        orig = getattr(error, "orig", None)
        sqlstate = getattr(orig, "sqlstate", None) or getattr(orig, "pgcode", None)
        if sqlstate in RETRYABLE_SQLSTATES:
            return True
        message = str(error).lower()
        return "could not serialize access" in message or "deadlock detected" in message
    return False


@asynccontextmanager
async def async_atomic_transaction(
    session_factory: async_sessionmaker,
) -> AsyncGenerator[AsyncSession, None]:
    """
    Async context manager for one atomic store transaction.
    Commits on clean exit; any exception rolls back every write and propagates.
    """
    async with session_factory() as session:
        try:
            yield session
            await session.commit()
            logger.debug("Async atomic transaction committed successfully")
        except BaseException as e:
            await session.rollback()
            logger.debug(f"Async transaction rolled back due to error: {type(e).__name__}: {e}")
            raise


async def run_atomic(
    session_factory: async_sessionmaker,
    operation: Callable[[AsyncSession], Awaitable[T]],
    *,
    description: str = "transaction",
    max_retries: Optional[int] = None,
) -> T:
    """
    Run ``operation(session)`` inside a single atomic transaction.

    The whole transaction is re-run when the store reports a serialization
    failure, a deadlock or a lock timeout; ``operation`` must therefore read
    everything it depends on inside the session it is given.
    """
    retries = Config.STORE_TRANSACTION_MAX_RETRIES if max_retries is None else max_retries
    start_time = time.time()

    for attempt in range(retries + 1):
        try:
            async with async_atomic_transaction(session_factory) as session:
                result = await operation(session)
            if attempt:
                logger.info(
                    f"✅ ATOMIC_TX_RECOVERED: {description} committed on attempt {attempt + 1} "
                    f"({time.time() - start_time:.3f}s)"
                )
            return result
        except DBAPIError as e:
            if attempt < retries and is_retryable_store_error(e):
                delay = Config.STORE_TRANSACTION_RETRY_DELAY * (2 ** attempt)
                logger.warning(
                    f"🔄 ATOMIC_TX_RETRY: {description} attempt {attempt + 1}/{retries + 1} "
                    f"failed with {type(e).__name__}, retrying in {delay:.3f}s"
                )
                await asyncio.sleep(delay)
                continue
            logger.error(f"❌ ATOMIC_TX_FAILED: {description} after {attempt + 1} attempt(s): {e}")
            raise

    # Loop always returns or raises
    raise RuntimeError(f"run_atomic exhausted retries for {description}")


def rowcount(result: Any) -> int:
    """Rows matched by a conditional UPDATE"""
    return result.rowcount if result.rowcount is not None else 0
