"""Persisted CRDT document store updates."""

from __future__ import annotations

from sqlalchemy import BigInteger, Index, Integer, LargeBinary, Text
from sqlalchemy.orm import Mapped, mapped_column

from lyrevault.models.base import Base


class DocumentUpdate(Base):
    """One binary CRDT update belonging to a named document store.

    A store's state is the ordered replay of its updates. Flushing a store
    compacts its rows into a single full-state update.
    """

    __tablename__ = "document_updates"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    store_name: Mapped[str] = mapped_column(Text, nullable=False)
    update: Mapped[bytes] = mapped_column(LargeBinary, nullable=False)
    created_at: Mapped[int] = mapped_column(BigInteger, nullable=False)

    __table_args__ = (Index("idx_document_updates_store", "store_name", "id"),)
