"""
Database engine, session factory and declarative base
"""

from typing import Iterator

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker

from consult_scribe.config import settings


class Base(DeclarativeBase):
    pass


def create_db_engine(url: str = None, **kwargs) -> Engine:
    """Creates an engine; SQLite needs cross-thread access for FastAPI's threadpool."""
    url = url or settings.database_url
    if url.startswith("postgres://"):
        url = url.replace("postgres://", "postgresql://", 1)

    connect_args = kwargs.pop("connect_args", {})
    if url.startswith("sqlite"):
        connect_args.setdefault("check_same_thread", False)

    return create_engine(
        url,
        pool_pre_ping=True,
        echo=settings.database_echo,
        connect_args=connect_args,
        **kwargs,
    )


engine = create_db_engine()

SessionLocal = sessionmaker(
    autocommit=False,
    autoflush=False,
    expire_on_commit=False,
    bind=engine,
)


def init_db(bind: Engine = None) -> None:
    """Creates all tables that do not exist yet."""
    # tables must be imported so their metadata is registered
    from consult_scribe.db import tables  # noqa: F401

    Base.metadata.create_all(bind=bind or engine)


def get_db() -> Iterator[Session]:
    """FastAPI dependency yielding one session per request."""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
