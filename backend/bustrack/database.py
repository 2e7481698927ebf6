from typing import Tuple

from fastapi import Request
from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool

from .config import settings


def make_engine(database_url: str) -> Engine:
    # SQLite needs check_same_thread=False for FastAPI
    connect_args = {}
    engine_kwargs = {}
    if database_url.startswith("sqlite"):
        connect_args = {"check_same_thread": False}
        if database_url in ("sqlite://", "sqlite:///:memory:"):
            # In-memory databases vanish per connection unless the pool shares one
            engine_kwargs = {"poolclass": StaticPool}
    return create_engine(database_url, echo=False, connect_args=connect_args, **engine_kwargs)


engine = make_engine(settings.database_url)
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

Base = declarative_base()


def bind_database(database_url: str) -> Tuple[Engine, sessionmaker]:
    """Module engine for the configured URL, a separate engine for any other."""
    if database_url == settings.database_url:
        return engine, SessionLocal
    other = make_engine(database_url)
    return other, sessionmaker(autocommit=False, autoflush=False, bind=other)


def get_db(request: Request):
    """Dependency for getting database session"""
    db = request.app.state.session_factory()
    try:
        yield db
    finally:
        db.close()
