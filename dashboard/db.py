"""
Database engine and session management
"""
import logging
from contextlib import contextmanager
from pathlib import Path

from sqlalchemy import create_engine, event, text
from sqlalchemy.engine import Engine, make_url
from sqlalchemy.orm import declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool

logger = logging.getLogger(__name__)

Base = declarative_base()


def _enable_sqlite_foreign_keys(dbapi_connection, connection_record):
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


def create_db_engine(database_url: str) -> Engine:
    """Create an engine; SQLite URLs get thread-safe connect args and FK enforcement."""
    kwargs = {"future": True}
    if database_url.startswith("sqlite"):
        kwargs["connect_args"] = {"check_same_thread": False}
        db_file = make_url(database_url).database
        if not db_file or db_file == ":memory:":
            # one shared connection, otherwise every session sees an empty db
            kwargs["poolclass"] = StaticPool
        else:
            Path(db_file).parent.mkdir(parents=True, exist_ok=True)
    engine = create_engine(database_url, **kwargs)
    if database_url.startswith("sqlite"):
        event.listen(engine, "connect", _enable_sqlite_foreign_keys)
    return engine


def make_session_factory(engine: Engine) -> sessionmaker:
    return sessionmaker(autocommit=False, autoflush=False, expire_on_commit=False, bind=engine)


def init_db(engine: Engine) -> None:
    """Create all tables that do not exist yet"""
    import dashboard.models  # noqa: F401  populate Base.metadata

    Base.metadata.create_all(bind=engine)
    logger.info("Database tables ready on %s", engine.url.render_as_string(hide_password=True))


@contextmanager
def session_scope(factory: sessionmaker):
    s = factory()
    try:
        yield s
        s.commit()
    except Exception:
        s.rollback()
        raise
    finally:
        s.close()


def check_db(factory: sessionmaker) -> bool:
    """Return True if the store answers a trivial query."""
    with session_scope(factory) as s:
        s.execute(text("SELECT 1"))
    return True
