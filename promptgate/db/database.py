from contextlib import contextmanager
from typing import Optional

from sqlalchemy.engine import Engine
from sqlalchemy.pool import StaticPool
from sqlmodel import SQLModel, create_engine, Session

from promptgate.config import settings


def make_engine(database_url: str) -> Engine:
    if not database_url.startswith("sqlite"):
        return create_engine(database_url, echo=False)
    # SQLite connections are shared with the threads used by the streaming endpoints
    kwargs = {"connect_args": {"check_same_thread": False}}
    if database_url in ("sqlite://", "sqlite:///:memory:"):
        kwargs["poolclass"] = StaticPool
    return create_engine(database_url, echo=False, **kwargs)


engine = make_engine(settings.database_url)


def init_db(bind: Optional[Engine] = None) -> None:
    SQLModel.metadata.create_all(bind or engine)


@contextmanager
def get_db_session(bind: Optional[Engine] = None) -> Session:
    """
    Simple context manager to get a SQLModel Session.
    Use in non-request code (services).
    """
    with Session(bind or engine) as session:
        yield session
