"""
Transactional unit-of-work runner with bounded retry.

Runs a coroutine function inside its own store transaction, racing it
against a timeout, and retries with exponential backoff when the failure
carries a retryable error code (serialization failures, deadlocks, lock
timeouts, busy SQLite databases, timeouts).

Key features:
- Each attempt is a fresh session and transaction (never partially committed)
- Isolation level applied per attempt
- Backoff: base * 2**attempt between attempts
- Non-retryable failures propagate immediately, with no wait
- Store exceptions surface as TransientStoreError / FatalStoreError
"""

import asyncio
import logging
from typing import Any, Awaitable, Callable, FrozenSet, Optional, TypeVar

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from datagate.core.database import Database
from datagate.core.errors import (
    FatalStoreError,
    StoreError,
    TransactionTimeoutError,
    TransientStoreError,
)
from datagate.schemas.descriptors import TransactionSpec

logger = logging.getLogger(__name__)

T = TypeVar("T")

UnitOfWork = Callable[[AsyncSession], Awaitable[T]]
Sleep = Callable[[float], Awaitable[Any]]


RETRYABLE_ERROR_CODES: FrozenSet[str] = frozenset({
    "40001",         # serialization_failure
    "40P01",         # deadlock_detected
    "55P03",         # lock_not_available
    "SQLITE_BUSY",
    "SQLITE_LOCKED",
    "TIMEOUT",
})


def extract_error_code(exc: BaseException) -> Optional[str]:
    """
    Find the store error code carried by an exception.

    Looks at, in order: a ``code`` attribute on our own (or foreign,
    non-SQLAlchemy) exceptions, the driver exception's SQLSTATE, and the
    SQLite error name.

    Returns:
        The code as a string, or None if none can be determined
    """
    if isinstance(exc, (asyncio.TimeoutError, TimeoutError)):
        return "TIMEOUT"

    if not isinstance(exc, SQLAlchemyError):
        code = getattr(exc, "code", None)
        return str(code) if code is not None else None

    # SQLAlchemy's own ``code`` is a documentation link id, not a store code
    orig = getattr(exc, "orig", None)
    if orig is None:
        return None

    for attribute in ("sqlstate", "pgcode"):
        value = getattr(orig, attribute, None)
        if value:
            return str(value)

    error_name = getattr(orig, "sqlite_errorname", None)
    if error_name:
        return str(error_name)

    message = str(orig).lower()
    if "database is locked" in message:
        return "SQLITE_BUSY"
    if "database table is locked" in message:
        return "SQLITE_LOCKED"
    return None


class TransactionRunner:
    """
    Executes units of work atomically with retry.

    Attributes:
        database: Store handle providing sessions
        defaults: Spec used when a call does not pass one
        retryable_codes: Codes eligible for retry

    Example:
        runner = TransactionRunner(database)

        async def move_stock(session):
            ...
            return moved

        moved = await runner.run(move_stock, TransactionSpec(max_retries=5))
    """

    def __init__(
        self,
        database: Database,
        defaults: Optional[TransactionSpec] = None,
        sleep: Sleep = asyncio.sleep,
        retryable_codes: FrozenSet[str] = RETRYABLE_ERROR_CODES,
    ):
        self.database = database
        self.defaults = defaults or TransactionSpec()
        self.retryable_codes = retryable_codes
        self._sleep = sleep

    async def run(
        self,
        unit_of_work: UnitOfWork,
        spec: Optional[TransactionSpec] = None,
        label: str = "transaction",
    ) -> T:
        """
        Run ``unit_of_work`` with retry.

        Args:
            unit_of_work: Coroutine function receiving the attempt's session
            spec: Retry / timeout / isolation options (defaults if omitted)
            label: Name used in log records

        Returns:
            Whatever the unit of work returns

        Raises:
            TransientStoreError: Retryable store failure after the last attempt
            FatalStoreError: Non-retryable store failure
            GatewayError: Any gateway error raised by the unit of work, unchanged
        """
        if not callable(unit_of_work):
            raise TypeError("Transaction callback must be a function")

        spec = spec or self.defaults
        last_error: Optional[BaseException] = None

        for attempt in range(spec.max_retries):
            try:
                return await self._attempt(unit_of_work, spec)
            except Exception as exc:
                last_error = exc
                code = extract_error_code(exc)

                if code not in self.retryable_codes or attempt == spec.max_retries - 1:
                    break

                backoff_ms = spec.backoff_base_ms * (2 ** attempt)
                logger.warning(
                    "Transaction retry",
                    extra={
                        "operation": label,
                        "attempt": attempt + 1,
                        "max_retries": spec.max_retries,
                        "code": code,
                        "backoff_ms": backoff_ms,
                        "error": str(exc),
                    },
                )
                await self._sleep(backoff_ms / 1000)

        surfaced = self._surface(last_error, spec, label)
        if surfaced is last_error:
            raise last_error
        raise surfaced from last_error

    async def _attempt(self, unit_of_work: UnitOfWork, spec: TransactionSpec) -> Any:
        isolation_level = self.database.resolve_isolation_level(spec.isolation_level.value)

        async with self.database.session_factory() as session:
            try:
                await session.connection(
                    execution_options={"isolation_level": isolation_level}
                )
                deadline = asyncio.timeout(spec.timeout_ms / 1000)
                try:
                    async with deadline:
                        result = await unit_of_work(session)
                except TimeoutError:
                    # A TimeoutError raised by the work itself keeps its own type
                    if deadline.expired():
                        raise TransactionTimeoutError(spec.timeout_ms) from None
                    raise
                await session.commit()
                return result
            except Exception:
                await session.rollback()
                raise

    def _surface(self, error: BaseException, spec: TransactionSpec, label: str) -> BaseException:
        """Map the final failure onto the gateway error taxonomy."""
        code = extract_error_code(error)

        if isinstance(error, SQLAlchemyError):
            logger.error(
                "Transaction failed",
                extra={
                    "operation": label,
                    "code": code,
                    "max_retries": spec.max_retries,
                    "error": str(error),
                },
            )
            if code in self.retryable_codes:
                return TransientStoreError("Transaction failed after retries", code=code)
            return FatalStoreError("Transaction failed", code=code)

        if isinstance(error, StoreError):
            logger.error(
                "Transaction failed",
                extra={
                    "operation": label,
                    "code": code,
                    "max_retries": spec.max_retries,
                    "error": error.message,
                },
            )
        return error


async def run_in_transaction(
    database: Database,
    unit_of_work: UnitOfWork,
    spec: Optional[TransactionSpec] = None,
) -> Any:
    """Run a unit of work with a one-off runner."""
    return await TransactionRunner(database).run(unit_of_work, spec)
