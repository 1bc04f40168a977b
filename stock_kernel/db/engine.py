"""
Module: stock_kernel.db.engine
Responsibility: SQLAlchemy engine construction, session factory management,
    and transactional scope utilities.
Architecture position: Kernel > DB.  May import from db/base.py and
    db/triggers.py.  MUST NOT import from services/, selectors/, domain/, or
    outer layers (except create_tables, which imports models to populate
    the metadata).

Invariants enforced:
    - No module-level engine.  Every caller constructs a Database and passes
      it (or sessions made from it) explicitly.  Two Database objects never
      share state.
    - PostgreSQL sessions run at READ COMMITTED with explicit row-level
      locking (FOR UPDATE) in the balance store.
    - SQLite is supported for tests and single-process tools.  Connections
      run with foreign keys enabled and with SAVEPOINT support restored
      (pysqlite otherwise manages transactions itself and breaks nesting).

Failure modes:
    - Trigger DDL can deadlock against a concurrent test run; the install is
      attempted three times before the OperationalError propagates.

Audit relevance:
    session_scope() gives atomic commit-or-rollback semantics and logs every
    rollback with the triggering exception.
"""

import time
from contextlib import contextmanager
from typing import Generator

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine, make_url
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import QueuePool, StaticPool

from stock_kernel.logging_config import get_logger

logger = get_logger("db.engine")


def _install_sqlite_savepoint_support(engine: Engine) -> None:
    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_connection, connection_record):
        # Disable pysqlite's own BEGIN handling; SQLAlchemy emits it below.
        dbapi_connection.isolation_level = None
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    @event.listens_for(engine, "begin")
    def _on_begin(conn):
        conn.exec_driver_sql("BEGIN")


class Database:
    """
    Owns one engine and one session factory.

    Contract:
        Constructed from a database URL.  Callers obtain sessions from
        ``session()`` or ``session_scope()``; services never create their own.

    Guarantees:
        - session_scope() commits on normal exit and rolls back on any
          exception, re-raising it.
        - Sessions do not expire attributes on commit, so DTOs built after
          commit read loaded values.

    Non-goals:
        - Schema migrations.  create_tables() is for tests and bootstrap.
    """

    def __init__(
        self,
        url: str,
        *,
        echo: bool = False,
        pool_size: int = 20,
        max_overflow: int = 10,
        pool_pre_ping: bool = True,
        pool_timeout: int = 30,
        pool_recycle: int = 1800,
    ):
        self.url = make_url(url)

        if self.url.get_backend_name() == "sqlite":
            kwargs: dict = {
                "echo": echo,
                "connect_args": {"check_same_thread": False},
            }
            if self.url.database in (None, "", ":memory:"):
                kwargs["poolclass"] = StaticPool
            self.engine = create_engine(self.url, **kwargs)
            _install_sqlite_savepoint_support(self.engine)
        else:
            self.engine = create_engine(
                self.url,
                echo=echo,
                poolclass=QueuePool,
                pool_size=pool_size,
                max_overflow=max_overflow,
                pool_pre_ping=pool_pre_ping,
                pool_timeout=pool_timeout,
                pool_recycle=pool_recycle,
                isolation_level="READ COMMITTED",
            )

        self._session_factory = sessionmaker(bind=self.engine, expire_on_commit=False)

        logger.info(
            "engine_initialized",
            extra={
                "dialect": self.dialect_name,
                "database": self.url.database,
                "pool_size": pool_size,
                "echo": echo,
            },
        )

    @property
    def dialect_name(self) -> str:
        return self.engine.dialect.name

    @property
    def is_postgres(self) -> bool:
        """Check if this database is PostgreSQL."""
        return self.dialect_name == "postgresql"

    def session(self) -> Session:
        """Get a new session instance."""
        return self._session_factory()

    @contextmanager
    def session_scope(self) -> Generator[Session, None, None]:
        """
        One session, committed when the block exits cleanly.

        Usage:
            with database.session_scope() as session:
                BalanceStore(session, clock).apply_delta(...)
                # an exception inside the block rolls everything back
        """
        session = self.session()
        logger.debug("transaction_started")
        try:
            yield session
            session.commit()
            logger.debug("transaction_committed")
        except Exception:
            session.rollback()
            logger.warning("transaction_rolled_back", exc_info=True)
            raise
        finally:
            session.close()

    def create_tables(self, install_triggers: bool = True) -> None:
        """
        Create all tables and, on PostgreSQL, install immutability triggers.

        Args:
            install_triggers: Install database-level immutability triggers
                (ignored on dialects other than PostgreSQL).

        Raises:
            OperationalError: trigger DDL still failing on the third attempt.
        """
        from stock_kernel.db.base import Base
        import stock_kernel.models  # noqa: F401  (populate metadata)

        Base.metadata.create_all(self.engine)

        if install_triggers and self.is_postgres:
            from stock_kernel.db.triggers import install_immutability_triggers

            max_retries = 3
            for attempt in range(max_retries):
                try:
                    install_immutability_triggers(self.engine)
                    break
                except OperationalError as exc:
                    if "deadlock" in str(exc).lower() and attempt < max_retries - 1:
                        logger.warning(
                            "trigger_install_deadlock_retry",
                            extra={"attempt": attempt + 1, "max_retries": max_retries},
                        )
                        self.engine.dispose()
                        time.sleep(0.5 * (attempt + 1))
                    else:
                        raise

        logger.info(
            "tables_created",
            extra={"table_count": len(Base.metadata.tables)},
        )

    def drop_tables(self) -> None:
        """Drop all tables. Use with caution - primarily for testing."""
        from stock_kernel.db.base import Base
        import stock_kernel.models  # noqa: F401

        if self.is_postgres:
            from stock_kernel.db.triggers import uninstall_immutability_triggers

            uninstall_immutability_triggers(self.engine)
        Base.metadata.drop_all(self.engine)

    def dispose(self) -> None:
        """Release every pooled connection."""
        self.engine.dispose()
