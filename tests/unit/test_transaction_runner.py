"""
Tests for TransactionRunner retry behaviour.

Covers:
- Commit on success, nothing committed from failed attempts
- Retry on ConcurrencyConflict, StaleDataError and transient DB errors
- RetryExhaustedError after max_attempts
- Non-transient errors raised on the first attempt
- Linear backoff
"""

from decimal import Decimal

import pytest
from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.orm.exc import StaleDataError

from stock_kernel.exceptions import (
    ConcurrencyConflict,
    InsufficientStockError,
    RetryExhaustedError,
)
from stock_kernel.models.catalog import Business
from stock_kernel.services.transaction_runner import TransactionRunner, is_transient


@pytest.fixture
def sleeps():
    return []


@pytest.fixture
def runner(database, sleeps) -> TransactionRunner:
    return TransactionRunner(database, max_attempts=3, backoff_seconds=0.5, sleep=sleeps.append)


def _business_count(database) -> int:
    with database.session_scope() as session:
        return session.scalar(select(func.count()).select_from(Business))


class Flaky:
    """Unit of work that fails with ``error`` for the first ``failures`` calls."""

    def __init__(self, error, failures):
        self.error = error
        self.failures = failures
        self.calls = 0

    def __call__(self, session):
        self.calls += 1
        session.add(Business(name=f"attempt {self.calls}"))
        session.flush()
        if self.calls <= self.failures:
            raise self.error
        return self.calls


class TestSuccess:

    def test_commits(self, runner, database):
        assert runner.run("create", Flaky(None, 0)) == 1
        assert _business_count(database) == 1

    def test_no_retry_log_on_first_attempt(self, runner, captured_logs):
        runner.run("create", Flaky(None, 0))
        assert not [r for r in captured_logs() if r["message"].startswith("transaction_")]


class TestRetry:

    @pytest.mark.parametrize(
        "error",
        [
            ConcurrencyConflict(1, 2, Decimal("5"), Decimal("4")),
            StaleDataError("version mismatch"),
            OperationalError("UPDATE stock_balances", {}, Exception("database is locked")),
        ],
        ids=["conflict", "stale", "locked"],
    )
    def test_transient_error_retried(self, runner, database, error):
        work = Flaky(error, 1)

        assert runner.run("apply", work) == 2
        assert work.calls == 2
        # the failed attempt's insert was rolled back
        assert _business_count(database) == 1

    def test_backoff_is_linear(self, runner, sleeps):
        runner.run("apply", Flaky(ConcurrencyConflict(1, 2), 2))
        assert sleeps == [0.5, 1.0]

    def test_retries_are_logged(self, runner, captured_logs):
        runner.run("apply", Flaky(ConcurrencyConflict(1, 2), 1))

        records = captured_logs()
        [retry] = [r for r in records if r["message"] == "transaction_retry"]
        assert retry["operation"] == "apply"
        assert retry["attempt"] == 1
        assert retry["error_type"] == "ConcurrencyConflict"
        [done] = [r for r in records if r["message"] == "transaction_succeeded_after_retry"]
        assert done["attempt"] == 2

    def test_exhausted(self, runner, database, captured_logs):
        work = Flaky(ConcurrencyConflict(1, 2), 10)

        with pytest.raises(RetryExhaustedError) as exc_info:
            runner.run("transfer.send", work)

        assert work.calls == 3
        assert exc_info.value.operation == "transfer.send"
        assert exc_info.value.attempts == 3
        assert exc_info.value.last_error_code == "CONCURRENCY_CONFLICT"
        assert isinstance(exc_info.value.__cause__, ConcurrencyConflict)
        assert _business_count(database) == 0
        assert any(r["message"] == "transaction_retry_exhausted" for r in captured_logs())

    def test_exhausted_error_code_falls_back_to_type(self, database):
        runner = TransactionRunner(database, max_attempts=1, sleep=lambda s: None)
        with pytest.raises(RetryExhaustedError) as exc_info:
            runner.run("apply", Flaky(StaleDataError("stale"), 1))
        assert exc_info.value.last_error_code == "StaleDataError"


class TestNonTransient:

    def test_business_error_not_retried(self, runner, database, sleeps):
        work = Flaky(InsufficientStockError(1, 2, Decimal("1"), Decimal("5")), 5)

        with pytest.raises(InsufficientStockError):
            runner.run("apply", work)

        assert work.calls == 1
        assert sleeps == []
        assert _business_count(database) == 0

    def test_integrity_error_not_transient(self):
        error = IntegrityError("INSERT", {}, Exception("UNIQUE constraint failed"))
        assert is_transient(error) is False

    def test_pgcode_is_transient(self):
        class _Orig(Exception):
            pgcode = "40P01"

        assert is_transient(OperationalError("SELECT", {}, _Orig("deadlock detected")))

    def test_max_attempts_validated(self, database):
        with pytest.raises(ValueError):
            TransactionRunner(database, max_attempts=0)
