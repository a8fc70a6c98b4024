"""
Module: retail_kernel.db.engine
Responsibility: SQLAlchemy engine initialization, session factory management,
    and transactional scope utilities.  Single point of database connection
    configuration for the kernel and the orchestrators built on it.
Architecture position: Kernel > DB.  May import from db/base.py and
    db/triggers.py (create_tables also imports the model registry).

Invariants enforced:
    - PostgreSQL runs at READ COMMITTED with explicit row locks
      (SELECT ... FOR UPDATE) wherever a ledger row is mutated.
    - SQLite (tests, local development) has no row locks, so every
      transaction is opened with BEGIN IMMEDIATE: writers serialize on the
      database lock and the read-check-write sequences in the engines stay
      correct under concurrency.

Failure modes:
    - RuntimeError if get_engine/get_session/get_session_factory is called
      before init_engine_from_url().
    - OperationalError on lock timeout (PostgreSQL lock_timeout, SQLite busy
      timeout) propagates to the caller.
"""

import atexit
from contextlib import contextmanager
from typing import Generator

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine, make_url
from sqlalchemy.orm import Session, sessionmaker

from retail_kernel.logging_config import configure_logging, get_logger

logger = get_logger("db.engine")

_engine: Engine | None = None
_SessionFactory: sessionmaker[Session] | None = None


def _install_sqlite_locking(engine: Engine) -> None:
    """Take the SQLite write lock at BEGIN (pysqlite transaction recipe)."""

    @event.listens_for(engine, "connect")
    def _disable_pysqlite_transactions(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    @event.listens_for(engine, "begin")
    def _begin_immediate(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")


def init_engine_from_url(
    database_url: str,
    echo: bool = False,
    pool_size: int = 20,
    max_overflow: int = 10,
    pool_pre_ping: bool = True,
    pool_timeout: int = 30,
    pool_recycle: int = 1800,
) -> Engine:
    """
    Initialize the SQLAlchemy engine from a database URL.

    Postconditions: module-level engine and session factory are set; all
        subsequent get_engine/get_session calls use them.  A second call
        replaces the first.

    Args:
        database_url: PostgreSQL URL in production; sqlite:///path in tests.
        echo: If True, log all SQL statements.
        pool_size: Connections kept in the pool (PostgreSQL).
        max_overflow: Max connections beyond pool_size (PostgreSQL).
        pool_pre_ping: Test connections before use.
        pool_timeout: Seconds to wait for a pooled connection, and the
            SQLite busy timeout.
        pool_recycle: Seconds after which a connection is recycled.
    """
    global _engine, _SessionFactory

    url = make_url(database_url)
    if url.get_backend_name() == "sqlite":
        _engine = create_engine(
            url,
            echo=echo,
            connect_args={"check_same_thread": False, "timeout": pool_timeout},
        )
        _install_sqlite_locking(_engine)
    else:
        _engine = create_engine(
            url,
            echo=echo,
            pool_size=pool_size,
            max_overflow=max_overflow,
            pool_pre_ping=pool_pre_ping,
            pool_timeout=pool_timeout,
            pool_recycle=pool_recycle,
            isolation_level="READ COMMITTED",
        )

    _SessionFactory = sessionmaker(bind=_engine, expire_on_commit=False)

    configure_logging()
    logger.info(
        "engine_initialized",
        extra={
            "dialect": _engine.dialect.name,
            "pool_size": pool_size,
            "echo": echo,
        },
    )

    return _engine


def get_engine() -> Engine:
    """Get the current engine instance."""
    if _engine is None:
        raise RuntimeError("Engine not initialized. Call init_engine_from_url() first.")
    return _engine


def get_session() -> Session:
    """Get a new session instance."""
    if _SessionFactory is None:
        raise RuntimeError("Engine not initialized. Call init_engine_from_url() first.")
    return _SessionFactory()


def get_session_factory() -> sessionmaker[Session]:
    """
    Get the session factory.

    Orchestrators take the factory rather than a session because they open
    more than one transaction per request (idempotency lock, business unit
    of work, failure bookkeeping).
    """
    if _SessionFactory is None:
        raise RuntimeError("Engine not initialized. Call init_engine_from_url() first.")
    return _SessionFactory


@contextmanager
def session_scope(
    factory: sessionmaker[Session] | None = None,
) -> Generator[Session, None, None]:
    """
    Provide a transactional scope around a series of operations.

    Commits on normal exit; rolls back and re-raises on exception; always
    closes the session.

    Usage:
        with session_scope() as session:
            engine.reserve(...)
    """
    session = (factory or get_session_factory())()
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


def create_tables(install_triggers: bool = True) -> None:
    """
    Create all tables and, on PostgreSQL, install the ledger triggers.

    Preconditions: engine initialized.
    Postconditions: every table registered on Base.metadata exists.
    """
    from retail_kernel.db.base import Base
    import retail_kernel.models  # noqa: F401

    engine = get_engine()
    Base.metadata.create_all(engine)

    if install_triggers and is_postgres():
        from retail_kernel.db.triggers import install_ledger_triggers

        install_ledger_triggers(engine)


def drop_tables() -> None:
    """Drop all tables. Primarily for testing."""
    from retail_kernel.db.base import Base
    import retail_kernel.models  # noqa: F401

    engine = get_engine()
    if is_postgres():
        from retail_kernel.db.triggers import uninstall_ledger_triggers

        uninstall_ledger_triggers(engine)
    Base.metadata.drop_all(engine)


def reset_engine() -> None:
    """Reset the engine and session factory.  Useful for test cleanup."""
    global _engine, _SessionFactory

    if _engine is not None:
        _engine.dispose()
        _engine = None

    _SessionFactory = None


def _atexit_dispose():
    if _engine is not None:
        _engine.dispose()


atexit.register(_atexit_dispose)


def is_postgres() -> bool:
    """Check if the current engine is PostgreSQL."""
    if _engine is None:
        return False
    return _engine.dialect.name == "postgresql"
