"""
Module: fiscal_kernel.db.engine
Responsibility: SQLAlchemy engine initialization, session factory management
    and transactional scope utilities.  Single point of database connection
    configuration for the fiscal engine.
Architecture position: Kernel > DB.  May import from db/base.py and
    db/immutability.py.  create_tables/drop_tables import the models package
    so Base.metadata is complete.

Invariants enforced:
    - PostgreSQL in production (row locks via SELECT ... FOR UPDATE back the
      sequence counters).  SQLite is accepted for tests and single-till
      installs: every transaction opens with BEGIN IMMEDIATE, so writers
      queue on the database lock for up to the busy timeout instead of
      failing on a lock upgrade.
    - session_scope() commits or rolls back as a unit.

Failure modes:
    - RuntimeError if get_engine/get_session/get_session_factory are called
      before init_engine_from_url().
    - OperationalError when a lock is not granted in time; is_lock_timeout()
      tells it apart from other database failures.
"""

from contextlib import contextmanager
from typing import Generator

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine, make_url
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import QueuePool, StaticPool

from fiscal_kernel.logging_config import configure_logging, get_logger

logger = get_logger("db.engine")

_engine: Engine | None = None
_SessionFactory: sessionmaker[Session] | None = None

SQLITE_BUSY_TIMEOUT_SECONDS = 30.0

# lock_not_available, deadlock_detected
_PG_LOCK_CODES = frozenset({"55P03", "40P01"})
_SQLITE_LOCK_MESSAGES = ("database is locked", "database table is locked")


def _enable_sqlite_savepoints(engine: Engine) -> None:
    """
    Let SQLAlchemy own BEGIN on pysqlite.

    The driver's implicit transaction handling otherwise ignores SAVEPOINT,
    and the counter-creation and record-open paths rely on begin_nested().
    BEGIN IMMEDIATE takes the write lock up front, so concurrent writers
    wait out the busy timeout instead of failing on a lock upgrade.
    """

    @event.listens_for(engine, "connect")
    def _no_driver_transactions(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _emit_begin(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")


def init_engine_from_url(
    database_url: str,
    echo: bool = False,
    pool_size: int = 10,
    max_overflow: int = 5,
    pool_pre_ping: bool = True,
    pool_timeout: int = 30,
    pool_recycle: int = 1800,
    sqlite_busy_timeout: float = SQLITE_BUSY_TIMEOUT_SECONDS,
) -> Engine:
    """
    Initialize the SQLAlchemy engine from a database URL.

    Pool arguments apply to server databases only.  In-memory SQLite uses a
    StaticPool so every session sees the same database; file-backed SQLite
    waits up to ``sqlite_busy_timeout`` seconds for the write lock.

    Returns:
        SQLAlchemy Engine instance.
    """
    global _engine, _SessionFactory

    url = make_url(database_url)
    if url.get_backend_name() == "sqlite":
        kwargs: dict = {
            "connect_args": {"check_same_thread": False, "timeout": sqlite_busy_timeout}
        }
        if url.database in (None, "", ":memory:"):
            kwargs["poolclass"] = StaticPool
        _engine = create_engine(database_url, echo=echo, **kwargs)
        _enable_sqlite_savepoints(_engine)
    else:
        _engine = create_engine(
            database_url,
            echo=echo,
            poolclass=QueuePool,
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
        extra={"dialect": url.get_backend_name(), "echo": echo},
    )
    return _engine


def get_engine() -> Engine:
    if _engine is None:
        raise RuntimeError("Engine not initialized. Call init_engine_from_url() first.")
    return _engine


def get_session() -> Session:
    if _SessionFactory is None:
        raise RuntimeError("Engine not initialized. Call init_engine_from_url() first.")
    return _SessionFactory()


def get_session_factory() -> sessionmaker[Session]:
    """
    Get the session factory.

    Services open one short session per transaction boundary (reserve,
    then record outcome), so they take the factory rather than a session.
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

    On normal exit the session is committed and closed; on exception it is
    rolled back, closed, and the exception re-raised.

    Usage:
        with session_scope() as session:
            session.add(entity)
    """
    session = factory() if factory is not None else get_session()
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


def create_tables(engine: Engine | None = None) -> None:
    """Create every fiscal table.  Safe to call on an existing schema."""
    from fiscal_kernel.db.base import Base
    import fiscal_kernel.models  # noqa: F401

    Base.metadata.create_all(engine or get_engine())


def drop_tables(engine: Engine | None = None) -> None:
    """Drop every fiscal table. Use with caution - primarily for testing."""
    from fiscal_kernel.db.base import Base
    import fiscal_kernel.models  # noqa: F401

    Base.metadata.drop_all(engine or get_engine())


def reset_engine() -> None:
    """Dispose of the engine and forget the session factory."""
    global _engine, _SessionFactory
    if _engine is not None:
        _engine.dispose()
    _engine = None
    _SessionFactory = None


def is_lock_timeout(exc: BaseException) -> bool:
    """True when ``exc`` means a lock was not granted, not that the data is bad."""
    if not isinstance(exc, OperationalError):
        return False
    orig = exc.orig
    if getattr(orig, "pgcode", None) in _PG_LOCK_CODES:
        return True
    message = str(orig).lower()
    return any(text in message for text in _SQLITE_LOCK_MESSAGES)
