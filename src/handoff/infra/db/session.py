from __future__ import annotations

from collections.abc import Callable
from typing import Optional

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

SessionFactory = Callable[[], Session]


def create_sqlalchemy_session_factory(database_url: str, engine: Optional[Engine] = None) -> SessionFactory:
    """Create a factory producing SQLAlchemy sessions for the key-value table."""

    engine = engine or create_engine(database_url)
    SessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False, class_=Session)

    def _factory() -> Session:
        return SessionLocal()

    return _factory
