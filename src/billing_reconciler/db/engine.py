"""
Database engine and session management
"""
import logging
from typing import Generator

from sqlalchemy import create_engine, event, text
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker, Session

from ..config import config
from .base import Base

logger = logging.getLogger(__name__)


def enable_sqlite_savepoints(target: Engine) -> Engine:
    """
    Let pysqlite honour SAVEPOINT / nested transactions

    pysqlite issues BEGIN lazily on its own; hand transaction control to
    SQLAlchemy instead so begin_nested() works as on PostgreSQL.
    """
    @event.listens_for(target, "connect")
    def _do_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(target, "begin")
    def _do_begin(conn):
        conn.exec_driver_sql("BEGIN")

    return target


def build_engine(database_url: str) -> Engine:
    """Create an engine for PostgreSQL (pooled) or SQLite (dev/test)"""
    if database_url.startswith("sqlite"):
        return enable_sqlite_savepoints(create_engine(
            database_url,
            connect_args={"check_same_thread": False},
        ))

    return create_engine(
        database_url,
        pool_pre_ping=True,
        pool_size=config.DB_POOL_SIZE,
        max_overflow=config.DB_MAX_OVERFLOW,
        pool_recycle=config.DB_POOL_RECYCLE,
        connect_args={"application_name": "billing_reconciler"},
    )


engine = build_engine(config.DATABASE_URL)

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


def get_db() -> Generator[Session, None, None]:
    """FastAPI dependency yielding a request-scoped session"""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def init_db():
    """Create all ledger tables"""
    from . import models  # noqa: F401 - registers models on Base.metadata

    Base.metadata.create_all(bind=engine)
    logger.info("Database tables ensured")


def check_database() -> bool:
    """Return True when the database answers a trivial query"""
    try:
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
        return True
    except Exception as e:
        logger.error(f"Database health check failed: {e}")
        return False
