from contextlib import contextmanager
from functools import lru_cache
from typing import Iterator

from sqlalchemy import create_engine, event, text
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

from .config import settings


def make_engine(url: str, busy_timeout: float | None = None) -> Engine:
    """
    Create an engine for the authoritative store.

    SQLite: the driver's own transaction handling is disabled so every
    transaction starts with an explicit BEGIN emitted below. Units of work
    ask for BEGIN IMMEDIATE, which takes the write lock up front and
    serializes concurrent writers.
    """
    if not url.startswith("sqlite"):
        return create_engine(url, pool_pre_ping=True)

    timeout = busy_timeout if busy_timeout is not None else settings.commit_timeout_seconds
    engine = create_engine(
        url,
        connect_args={"check_same_thread": False, "timeout": timeout},
    )

    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_connection, _):
        dbapi_connection.isolation_level = None
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        # Readers never block the single writer.
        cursor.execute("PRAGMA journal_mode=WAL")
        cursor.close()

    @event.listens_for(engine, "begin")
    def _on_begin(conn):
        mode = conn.get_execution_options().get("sqlite_begin")
        conn.exec_driver_sql(f"BEGIN {mode}" if mode else "BEGIN")

    return engine


def make_session_factory(engine: Engine) -> sessionmaker:
    return sessionmaker(
        bind=engine,
        autoflush=False,
        expire_on_commit=False,
    )


@lru_cache
def get_engine() -> Engine:
    return make_engine(settings.resolved_database_url)


@lru_cache
def get_session_factory() -> sessionmaker:
    return make_session_factory(get_engine())


# Dependency for FastAPI
def get_db():
    db = get_session_factory()()
    try:
        yield db
    finally:
        db.close()


@contextmanager
def unit_of_work(engine: Engine, timeout_seconds: float | None = None) -> Iterator[Session]:
    """
    One atomic, serializable transaction against the store.

    Commits when the block exits normally, rolls back on any exception.
    PostgreSQL runs the transaction at SERIALIZABLE with a statement timeout;
    SQLite takes the database write lock at BEGIN.
    """
    dialect = engine.dialect.name
    with engine.connect() as connection:
        if dialect == "sqlite":
            connection.execution_options(sqlite_begin="IMMEDIATE")
        else:
            connection.execution_options(isolation_level="SERIALIZABLE")

        with Session(bind=connection, autoflush=False, expire_on_commit=False) as session:
            with session.begin():
                if timeout_seconds and dialect == "postgresql":
                    session.execute(
                        text(f"SET LOCAL statement_timeout = {int(timeout_seconds * 1000)}")
                    )
                yield session
