"""
SQLAlchemy declarative base and database engine configuration

SQLite connections open every transaction with BEGIN IMMEDIATE so that the
write lock is taken up front. This gives the same serialization that
SELECT ... FOR UPDATE gives on PostgreSQL, where row locks are used instead.
"""
from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import declarative_base, sessionmaker

# Seconds a SQLite connection waits for the write lock
SQLITE_BUSY_TIMEOUT = 30

# Create declarative base
Base = declarative_base()


def create_db_engine(database_url: str, echo: bool = False) -> Engine:
    """
    Create SQLAlchemy engine for the given database URL

    Args:
        database_url: SQLAlchemy database URL
        echo: Log emitted SQL

    Returns:
        Configured engine
    """
    if not database_url.startswith("sqlite"):
        return create_engine(database_url, echo=echo, pool_pre_ping=True)

    engine = create_engine(
        database_url,
        connect_args={"check_same_thread": False, "timeout": SQLITE_BUSY_TIMEOUT},
        echo=echo
    )

    @event.listens_for(engine, "connect")
    def _disable_pysqlite_transactions(dbapi_connection, connection_record):
        # Let SQLAlchemy emit BEGIN itself
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _begin_immediate(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")

    return engine


def create_session_factory(engine: Engine) -> sessionmaker:
    """
    Create session factory bound to engine

    Args:
        engine: SQLAlchemy engine

    Returns:
        sessionmaker producing non-autoflushing sessions
    """
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


def init_db(engine: Engine, drop_existing: bool = False) -> None:
    """
    Initialize database by creating all tables

    Args:
        engine: Engine to create tables on
        drop_existing: Drop the tables first (tests only)
    """
    # Register models on the metadata before creating tables
    import tunnel.models.ip_state  # noqa: F401
    import tunnel.models.one_time_token  # noqa: F401

    if drop_existing:
        Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
