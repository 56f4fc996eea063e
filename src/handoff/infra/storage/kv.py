from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from threading import RLock
from typing import Dict, List, Optional

logger = logging.getLogger(__name__)


class KeyValueStore(ABC):
    """Small string key/value store shared by the vault and the audit log.

    Implementations never raise on backend failure: writes return False and
    reads return None so callers can degrade to in-memory results.
    """

    @abstractmethod
    def get(self, key: str) -> Optional[str]:  # pragma: no cover - interface
        raise NotImplementedError

    @abstractmethod
    def set(self, key: str, value: str) -> bool:  # pragma: no cover - interface
        raise NotImplementedError

    @abstractmethod
    def delete(self, key: str) -> bool:  # pragma: no cover - interface
        raise NotImplementedError

    @abstractmethod
    def keys(self, prefix: str = "") -> Optional[List[str]]:  # pragma: no cover - interface
        raise NotImplementedError


class InMemoryKeyValueStore(KeyValueStore):
    def __init__(self) -> None:
        self._items: Dict[str, str] = {}
        self._lock = RLock()

    def get(self, key: str) -> Optional[str]:
        with self._lock:
            return self._items.get(key)

    def set(self, key: str, value: str) -> bool:
        with self._lock:
            self._items[key] = value
        return True

    def delete(self, key: str) -> bool:
        with self._lock:
            self._items.pop(key, None)
        return True

    def keys(self, prefix: str = "") -> Optional[List[str]]:
        with self._lock:
            return sorted(k for k in self._items if k.startswith(prefix))

    def clear(self) -> None:
        with self._lock:
            self._items.clear()


class SqlKeyValueStore(KeyValueStore):
    """SQLAlchemy-backed store using the ``handoff_kv`` table."""

    def __init__(self, session_factory) -> None:
        self._session_factory = session_factory

    def get(self, key: str) -> Optional[str]:
        from src.handoff.infra.db.models import KeyValueORM

        try:
            with self._session_factory() as session:
                row = session.get(KeyValueORM, key)
                return row.value if row is not None else None
        except Exception:
            logger.warning("kv get failed for %s", key, exc_info=True)
            return None

    def set(self, key: str, value: str) -> bool:
        from src.handoff.infra.db.models import KeyValueORM

        try:
            with self._session_factory() as session:
                session.merge(KeyValueORM(key=key, value=value))
                session.commit()
            return True
        except Exception:
            logger.warning("kv set failed for %s", key, exc_info=True)
            return False

    def delete(self, key: str) -> bool:
        from src.handoff.infra.db.models import KeyValueORM

        try:
            with self._session_factory() as session:
                row = session.get(KeyValueORM, key)
                if row is not None:
                    session.delete(row)
                    session.commit()
            return True
        except Exception:
            logger.warning("kv delete failed for %s", key, exc_info=True)
            return False

    def keys(self, prefix: str = "") -> Optional[List[str]]:
        from sqlalchemy import select

        from src.handoff.infra.db.models import KeyValueORM

        try:
            with self._session_factory() as session:
                stmt = select(KeyValueORM.key).where(KeyValueORM.key.startswith(prefix, autoescape=True))
                return sorted(session.scalars(stmt).all())
        except Exception:
            logger.warning("kv keys failed for prefix %s", prefix, exc_info=True)
            return None


# Process-wide store. Swapped for a SQL-backed store by
# infra.db.bootstrap.init_sql_store when configured.
kv_store: KeyValueStore = InMemoryKeyValueStore()


def get_kv_store() -> KeyValueStore:
    return kv_store
