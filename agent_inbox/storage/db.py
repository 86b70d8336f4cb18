from contextlib import contextmanager

from sqlalchemy import create_engine, event
from sqlalchemy.orm import sessionmaker, declarative_base
from sqlalchemy.pool import StaticPool

Base = declarative_base()


def _sqlite_transactions(engine):
    # let SQLAlchemy own BEGIN so SAVEPOINTs nest inside the outer transaction
    @event.listens_for(engine, "connect")
    def _connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _begin(conn):
        conn.exec_driver_sql("BEGIN")


def build_engine(database_url: str):
    is_sqlite = database_url.startswith("sqlite")
    connect_args = {"check_same_thread": False} if is_sqlite else {}
    kwargs = {}
    # in-memory sqlite must share one connection or every session sees an empty db
    if database_url in ("sqlite://", "sqlite:///:memory:"):
        kwargs["poolclass"] = StaticPool
    engine = create_engine(
        database_url,
        connect_args=connect_args,
        pool_pre_ping=True,
        **kwargs,
    )
    if is_sqlite:
        _sqlite_transactions(engine)
    return engine


def build_session_factory(engine):
    return sessionmaker(bind=engine, autocommit=False, autoflush=False, expire_on_commit=False)


def init_db(engine):
    # models must be imported so their tables register on Base.metadata
    from agent_inbox.storage import models  # noqa: F401
    Base.metadata.create_all(bind=engine)


@contextmanager
def session_scope(factory):
    """
    Unit of work: commit on success, rollback on any error, always close.

        with session_scope(SessionLocal) as db:
            db.add(obj)
    """
    db = factory()
    try:
        yield db
        db.commit()
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()
