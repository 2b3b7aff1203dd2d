"""
Unit tests for TransactionRunner.

Tests cover:
- Commit on success, rollback on failure
- Retry with exponential backoff on retryable codes
- Immediate failure on non-retryable codes
- Per-attempt timeout
- Store error classification
"""

import asyncio
from unittest.mock import AsyncMock, call

import pytest
from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError, OperationalError

from datagate.core.errors import (
    FatalStoreError,
    NotFoundError,
    TransactionTimeoutError,
    TransientStoreError,
)
from datagate.models.catalog import Category
from datagate.schemas.descriptors import TransactionSpec
from datagate.services.transaction_runner import (
    TransactionRunner,
    extract_error_code,
    run_in_transaction,
)


class CodedFault(Exception):
    """Foreign exception carrying a store error code."""

    def __init__(self, code: str):
        super().__init__(f"fault {code}")
        self.code = code


def failing(times: int, code: str, result="done"):
    """Unit of work that fails ``times`` times with ``code`` and then succeeds."""
    attempts = {"count": 0}

    async def unit_of_work(session):
        attempts["count"] += 1
        if attempts["count"] <= times:
            raise CodedFault(code)
        return result

    return unit_of_work, attempts


async def count_categories(database) -> int:
    async with database.session() as session:
        return (await session.execute(select(func.count()).select_from(Category))).scalar_one()


class TestCommitAndRollback:

    async def test_success_commits(self, runner, database):
        """Test the unit of work's changes are visible after run()."""
        async def create(session):
            session.add(Category(name="Lighting"))
            await session.flush()
            return "ok"

        result = await runner.run(create)

        assert result == "ok"
        assert await count_categories(database) == 1

    async def test_failure_rolls_back(self, runner, database):
        """Test nothing is committed when the unit of work raises."""
        async def create_then_fail(session):
            session.add(Category(name="Lighting"))
            await session.flush()
            raise NotFoundError("categories", "missing")

        with pytest.raises(NotFoundError):
            await runner.run(create_then_fail)

        assert await count_categories(database) == 0

    async def test_gateway_errors_are_not_retried(self, runner):
        """Test domain errors propagate unchanged after one attempt."""
        calls = []

        async def unit_of_work(session):
            calls.append(1)
            raise NotFoundError("categories", "x")

        with pytest.raises(NotFoundError):
            await runner.run(unit_of_work, TransactionSpec(max_retries=5))

        assert len(calls) == 1
        runner._sleep.assert_not_awaited()

    async def test_callback_must_be_callable(self, runner):
        with pytest.raises(TypeError, match="must be a function"):
            await runner.run("not callable")

    async def test_one_off_helper(self, database):
        async def unit_of_work(session):
            return 42

        assert await run_in_transaction(database, unit_of_work) == 42


class TestRetry:

    async def test_retries_with_exponential_backoff(self, runner):
        """Test two serialization failures then success sleeps 0.1s then 0.2s."""
        unit_of_work, attempts = failing(2, "40001")

        result = await runner.run(unit_of_work, TransactionSpec(max_retries=3, backoff_base_ms=100))

        assert result == "done"
        assert attempts["count"] == 3
        assert runner._sleep.await_args_list == [call(0.1), call(0.2)]

    async def test_exhausted_retries_raise_last_error(self, runner):
        """Test the last failure surfaces once every attempt is spent."""
        unit_of_work, attempts = failing(10, "40P01")

        with pytest.raises(CodedFault) as exc_info:
            await runner.run(unit_of_work, TransactionSpec(max_retries=3))

        assert exc_info.value.code == "40P01"
        assert attempts["count"] == 3
        assert runner._sleep.await_count == 2

    async def test_non_retryable_code_fails_immediately(self, runner):
        """Test a unique violation is not retried and does not wait."""
        unit_of_work, attempts = failing(1, "23505")

        with pytest.raises(CodedFault):
            await runner.run(unit_of_work, TransactionSpec(max_retries=3))

        assert attempts["count"] == 1
        runner._sleep.assert_not_awaited()

    async def test_single_attempt_never_sleeps(self, runner):
        unit_of_work, attempts = failing(1, "40001")

        with pytest.raises(CodedFault):
            await runner.run(unit_of_work, TransactionSpec(max_retries=1))

        runner._sleep.assert_not_awaited()

    async def test_custom_retryable_codes(self, database):
        sleep = AsyncMock()
        runner = TransactionRunner(database, sleep=sleep, retryable_codes=frozenset({"CUSTOM"}))
        unit_of_work, attempts = failing(1, "CUSTOM")

        assert await runner.run(unit_of_work) == "done"
        assert attempts["count"] == 2


class TestTimeout:

    async def test_slow_attempt_times_out(self, runner):
        """Test an attempt exceeding timeout_ms raises TransactionTimeoutError."""
        async def slow(session):
            await asyncio.sleep(1)

        with pytest.raises(TransactionTimeoutError) as exc_info:
            await runner.run(slow, TransactionSpec(max_retries=1, timeout_ms=20))

        assert exc_info.value.code == "TIMEOUT"
        assert exc_info.value.timeout_ms == 20

    async def test_timeout_is_retryable(self, runner):
        """Test a timed-out attempt is retried and a later attempt may succeed."""
        attempts = {"count": 0}

        async def slow_once(session):
            attempts["count"] += 1
            if attempts["count"] == 1:
                await asyncio.sleep(1)
            return "finished"

        result = await runner.run(slow_once, TransactionSpec(max_retries=2, timeout_ms=20))

        assert result == "finished"
        assert runner._sleep.await_args_list == [call(0.1)]

    async def test_timeout_raised_by_the_work_keeps_its_type(self, runner):
        """
        Test a TimeoutError from inside the unit of work is not reported as
        the transaction deadline expiring.

        Arrange: Unit of work raising TimeoutError immediately, generous deadline
        Act: Run with a single attempt
        Assert: The original TimeoutError propagates
        """
        async def driver_timeout(session):
            raise TimeoutError("driver read timed out")

        with pytest.raises(TimeoutError) as exc_info:
            await runner.run(driver_timeout, TransactionSpec(max_retries=1, timeout_ms=5000))

        assert not isinstance(exc_info.value, TransactionTimeoutError)
        assert str(exc_info.value) == "driver read timed out"


class TestStoreErrorClassification:

    async def test_integrity_error_is_fatal(self, runner):
        async def violate(session):
            raise IntegrityError("INSERT", {}, Exception("UNIQUE constraint failed"))

        with pytest.raises(FatalStoreError) as exc_info:
            await runner.run(violate)

        assert isinstance(exc_info.value.__cause__, IntegrityError)
        runner._sleep.assert_not_awaited()

    async def test_locked_database_is_transient(self, runner):
        """Test a busy SQLite database is retried and then surfaced as transient."""
        async def locked(session):
            raise OperationalError("UPDATE", {}, Exception("database is locked"))

        with pytest.raises(TransientStoreError) as exc_info:
            await runner.run(locked, TransactionSpec(max_retries=2))

        assert exc_info.value.code == "SQLITE_BUSY"
        assert runner._sleep.await_count == 1


class TestExtractErrorCode:

    def test_timeout(self):
        assert extract_error_code(asyncio.TimeoutError()) == "TIMEOUT"

    def test_foreign_code_attribute(self):
        assert extract_error_code(CodedFault("40001")) == "40001"

    def test_sqlstate_on_driver_error(self):
        class DriverError(Exception):
            sqlstate = "40P01"

        exc = OperationalError("SELECT 1", {}, DriverError())

        assert extract_error_code(exc) == "40P01"

    def test_sqlite_error_name(self):
        class SqliteError(Exception):
            sqlite_errorname = "SQLITE_LOCKED"

        exc = OperationalError("SELECT 1", {}, SqliteError())

        assert extract_error_code(exc) == "SQLITE_LOCKED"

    def test_unknown(self):
        assert extract_error_code(ValueError("x")) is None
