"""
TransactionRunner -- bounded retry around one unit of work.

Responsibility:
    Runs a callable in a fresh session and transaction, commits it, and
    retries the whole unit when it lost a race: ConcurrencyConflict, a stale
    version counter, or a transient database error (deadlock, serialization
    failure, lock or statement timeout).

Architecture position:
    Kernel > Services.  The outermost transaction boundary for the
    StockLedger facade.  Services inside the unit only flush.

Invariants enforced:
    - Every attempt starts from a clean session; nothing from a failed
      attempt is committed.
    - After ``max_attempts`` the runner raises RetryExhaustedError.  It never
      commits part of a unit.
    - Non-transient errors (validation, insufficient stock, not found) are
      raised on the first attempt without retry.

Audit relevance:
    Logs ``transaction_retry`` per retried attempt and
    ``transaction_retry_exhausted`` when giving up.
"""

import time
from collections.abc import Callable
from typing import TypeVar

from sqlalchemy import text
from sqlalchemy.exc import DBAPIError
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from stock_kernel.db.engine import Database
from stock_kernel.exceptions import ConcurrencyConflict, RetryExhaustedError
from stock_kernel.logging_config import get_logger

logger = get_logger("services.transaction_runner")

T = TypeVar("T")

# deadlock_detected, serialization_failure, lock_not_available, query_canceled
TRANSIENT_PGCODES = frozenset({"40P01", "40001", "55P03", "57014"})

_TRANSIENT_MESSAGES = ("database is locked", "deadlock")


def is_transient(exc: BaseException) -> bool:
    """True when retrying the whole unit of work can succeed."""
    if isinstance(exc, (ConcurrencyConflict, StaleDataError)):
        return True
    if isinstance(exc, DBAPIError):
        pgcode = getattr(exc.orig, "pgcode", None)
        if pgcode in TRANSIENT_PGCODES:
            return True
        message = str(exc.orig).lower()
        return any(m in message for m in _TRANSIENT_MESSAGES)
    return False


class TransactionRunner:
    """
    Run-commit-retry wrapper.

    Contract:
        ``run(name, work)`` calls ``work(session)`` and commits.  ``work``
        must be safe to call again from scratch; idempotency keys on every
        movement make that hold for everything built on BalanceStore.

    Guarantees:
        - Linear backoff: attempt n sleeps ``backoff_seconds * n`` before the
          next attempt.
        - On PostgreSQL the transaction gets ``statement_timeout`` set to
          ``statement_timeout_seconds`` (for transfers carrying many serials).
    """

    def __init__(
        self,
        database: Database,
        *,
        max_attempts: int = 3,
        backoff_seconds: float = 0.05,
        statement_timeout_seconds: float | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self.database = database
        self.max_attempts = max_attempts
        self.backoff_seconds = backoff_seconds
        self.statement_timeout_seconds = statement_timeout_seconds
        self._sleep = sleep

    def run(self, operation: str, work: Callable[[Session], T]) -> T:
        attempt = 0
        while True:
            attempt += 1
            session = self.database.session()
            try:
                self._prepare(session)
                result = work(session)
                session.commit()
                if attempt > 1:
                    logger.info(
                        "transaction_succeeded_after_retry",
                        extra={"operation": operation, "attempt": attempt},
                    )
                return result
            except Exception as exc:
                session.rollback()
                if not is_transient(exc):
                    raise
                if attempt >= self.max_attempts:
                    logger.error(
                        "transaction_retry_exhausted",
                        extra={
                            "operation": operation,
                            "attempts": attempt,
                            "error": str(exc),
                        },
                    )
                    raise RetryExhaustedError(operation, attempt, exc) from exc
                logger.warning(
                    "transaction_retry",
                    extra={
                        "operation": operation,
                        "attempt": attempt,
                        "error_type": type(exc).__name__,
                        "error": str(exc),
                    },
                )
                self._sleep(self.backoff_seconds * attempt)
            finally:
                session.close()

    def _prepare(self, session: Session) -> None:
        if self.statement_timeout_seconds and self.database.is_postgres:
            timeout_ms = int(self.statement_timeout_seconds * 1000)
            session.execute(text(f"SET LOCAL statement_timeout = {timeout_ms}"))
