from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import declarative_base, sessionmaker

from house_ledger.config import settings

Base = declarative_base()


def make_engine(db_url: str, timeout_seconds: float | None = None) -> Engine:
    """
    Build an engine; SQLite connections are shared across worker threads and wait
    for the database lock at most ``timeout_seconds``.

    SQLite has no row locks, so every transaction opens with ``BEGIN IMMEDIATE``
    and takes the database write lock before its first read. A balance read and
    the write that follows it are then serialized across processes, not only
    across threads holding the same in-process address lock.
    """
    timeout = timeout_seconds if timeout_seconds is not None else settings.transaction_timeout_seconds
    if not db_url.startswith("sqlite"):
        return create_engine(db_url, pool_pre_ping=True)
    engine = create_engine(db_url, connect_args={"check_same_thread": False, "timeout": timeout})

    @event.listens_for(engine, "connect")
    def _disable_driver_begin(dbapi_connection, connection_record):
        # pysqlite would otherwise defer BEGIN until the first write
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _begin_immediate(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")

    return engine


def make_session_factory(bind: Engine) -> sessionmaker:
    return sessionmaker(autocommit=False, autoflush=False, expire_on_commit=False, bind=bind)


engine = make_engine(settings.db_url)
SessionLocal = make_session_factory(engine)


def init_db(bind: Engine | None = None):
    # models must be imported so their tables are registered on Base
    from house_ledger import models  # noqa: F401

    Base.metadata.create_all(bind=bind or engine)
