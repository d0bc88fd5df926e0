"""CRDT document stores persisted as update logs in the local database.

Each store is a ``pycrdt`` document whose state is the replay of the rows in
``document_updates`` sharing its store name. Sessions are short-lived: open,
wait for the persisted state to load, read or apply, flush, close.
"""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING, Any

from pycrdt import Doc, Map, Text
from sqlalchemy import delete, select

from lyrevault.models.document import DocumentUpdate
from lyrevault.services.datetime_service import now_ms

if TYPE_CHECKING:
    from collections.abc import Sequence

    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

logger = logging.getLogger(__name__)

TEXT_ROOT = "codemirror"
METADATA_ROOT = "data"


def store_name_prefix(opaque_id: str) -> str:
    return f"project-{opaque_id}/"


def document_store_name(opaque_id: str, doc_id: str) -> str:
    return f"{store_name_prefix(opaque_id)}{doc_id}"


def metadata_store_name(opaque_id: str) -> str:
    return f"{store_name_prefix(opaque_id)}metadata"


class SqlDocumentStore:
    """A single document backed by the ``document_updates`` table."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession], store_name: str) -> None:
        self._session_factory = session_factory
        self.store_name = store_name
        self.doc: Doc = Doc()
        self._dirty = False
        self._closed = False
        self._load_task: asyncio.Task[None] = asyncio.create_task(self._load())

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.store_name!r})"

    async def _load(self) -> None:
        async with self._session_factory() as session:
            stmt = (
                select(DocumentUpdate.update)
                .where(DocumentUpdate.store_name == self.store_name)
                .order_by(DocumentUpdate.id)
            )
            updates = (await session.scalars(stmt)).all()
        for update in updates:
            self.doc.apply_update(update)
        logger.debug("Loaded %d updates for %s", len(updates), self.store_name)

    async def wait_until_synced(self, timeout: float) -> bool:
        try:
            await asyncio.wait_for(asyncio.shield(self._load_task), timeout)
        except TimeoutError:
            return False
        return True

    def get_full_state_snapshot(self) -> bytes:
        return self.doc.get_update()

    def apply_full_state_snapshot(self, snapshot: bytes) -> None:
        self.doc.apply_update(snapshot)
        self._dirty = True

    def get_plain_text(self) -> str:
        return str(self.doc.get(TEXT_ROOT, type=Text))

    async def flush(self) -> None:
        """Persist the current state, compacting the store's update log into one row."""
        await self._load_task
        state = self.doc.get_update()
        async with self._session_factory() as session:
            await session.execute(
                delete(DocumentUpdate).where(DocumentUpdate.store_name == self.store_name)
            )
            session.add(
                DocumentUpdate(store_name=self.store_name, update=state, created_at=now_ms())
            )
            await session.commit()
        self._dirty = False

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        if not self._load_task.done():
            self._load_task.cancel()
            return
        if self._dirty:
            await self.flush()


class SqlMetadataStore(SqlDocumentStore):
    """The per-project metadata document (``data`` map root)."""

    @property
    def data(self) -> Map:
        return self.doc.get(METADATA_ROOT, type=Map)

    def read_document_index(self) -> list[dict[str, Any]]:
        documents = self.data.to_py().get("documents") or []
        return [dict(entry) for entry in documents if isinstance(entry, dict)]

    def write_project_metadata(
        self,
        *,
        documents: Sequence[dict[str, Any]],
        current_doc_id: str,
        project_name: str | None,
        project_description: str | None,
    ) -> None:
        data = self.data
        with self.doc.transaction():
            data["documents"] = [dict(entry) for entry in documents]
            data["currentDocId"] = current_doc_id
            data["cursors"] = []
            data["chatMessages"] = []
            if project_name is not None or project_description is not None:
                data["projectMetadata"] = {
                    "name": project_name or "",
                    "description": project_description or "",
                }
        self._dirty = True


class SqlDocumentStoreProvider:
    """Opens ``pycrdt`` document stores keyed by project opaque id."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def open_document(self, opaque_id: str, doc_id: str) -> SqlDocumentStore:
        return SqlDocumentStore(self._session_factory, document_store_name(opaque_id, doc_id))

    async def open_metadata(self, opaque_id: str) -> SqlMetadataStore:
        return SqlMetadataStore(self._session_factory, metadata_store_name(opaque_id))

    async def delete_project_stores(self, opaque_id: str) -> None:
        async with self._session_factory() as session:
            result = await session.execute(
                delete(DocumentUpdate).where(
                    DocumentUpdate.store_name.startswith(
                        store_name_prefix(opaque_id), autoescape=True
                    )
                )
            )
            await session.commit()
        logger.info("Deleted %s document update rows for %s", result.rowcount, opaque_id)
