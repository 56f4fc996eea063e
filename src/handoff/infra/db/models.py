from __future__ import annotations

from sqlalchemy import String, Text
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    pass


class KeyValueORM(Base):
    __tablename__ = "handoff_kv"

    # Scoped key, e.g. "handoff:default:vault:record:<session_id>".
    key: Mapped[str] = mapped_column(String(255), primary_key=True)
    # JSON document; vault payloads are de-identified before they get here.
    value: Mapped[str] = mapped_column(Text, nullable=False)
