from __future__ import annotations

import logging
from typing import Optional

from sqlalchemy import create_engine

from src.handoff.config import settings
from src.handoff.infra.db.models import Base
from src.handoff.infra.db.session import create_sqlalchemy_session_factory
from src.handoff.infra.storage import kv as kv_module

logger = logging.getLogger(__name__)


def init_sql_store(database_url: Optional[str] = None, *, force: bool = False) -> bool:
    """Switch the shared key-value store to a SQL-backed implementation.

    No-op unless HANDOFF_STORE_BACKEND=sql (or ``force``) and a database URL is
    available. Returns True when the swap happened.
    """

    if not force and settings.store_backend.lower() != "sql":
        return False

    db_url = database_url or settings.database_url
    if not db_url:
        logger.warning("HANDOFF_STORE_BACKEND=sql but DATABASE_URL is not set; keeping in-memory store")
        return False

    engine = create_engine(db_url)
    Base.metadata.create_all(engine)

    session_factory = create_sqlalchemy_session_factory(db_url, engine=engine)
    kv_module.kv_store = kv_module.SqlKeyValueStore(session_factory)
    logger.info("handoff key-value store switched to SQL backend")
    return True
