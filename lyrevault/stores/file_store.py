"""Per-project file stores backed by the ``project_files`` table."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from sqlalchemy import delete, select
from sqlalchemy.dialects.sqlite import insert as sqlite_insert

from lyrevault.exceptions import FileConflictError
from lyrevault.models.file import ProjectFile
from lyrevault.services.datetime_service import now_ms
from lyrevault.stores.base import FileRecord, opaque_id_from_url

if TYPE_CHECKING:
    from collections.abc import Sequence

    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

    from lyrevault.stores.base import BatchWriteOptions

logger = logging.getLogger(__name__)


def _encode_content(content: bytes | str | None) -> tuple[bytes | None, bool]:
    if content is None:
        return None, False
    if isinstance(content, str):
        return content.encode("utf-8"), True
    return bytes(content), False


def _row_to_record(row: ProjectFile) -> FileRecord:
    content: bytes | str | None = row.content
    if row.content is not None and row.is_text:
        content = row.content.decode("utf-8")
    return FileRecord(
        id=row.id,
        name=row.name,
        path=row.path,
        type=row.type,
        last_modified=row.last_modified,
        size=row.size,
        mime_type=row.mime_type,
        is_binary=row.is_binary,
        document_id=row.document_id,
        content=content,
        is_deleted=row.is_deleted,
        deleted_at=row.deleted_at,
    )


def _record_values(opaque_id: str, record: FileRecord) -> dict[str, object]:
    content, is_text = _encode_content(record.content)
    return {
        "project_key": opaque_id,
        "id": record.id,
        "name": record.name,
        "path": record.path,
        "type": record.type,
        "content": content,
        "is_text": is_text,
        "last_modified": record.last_modified,
        "size": record.size if record.size is not None else (len(content) if content else 0),
        "mime_type": record.mime_type,
        "is_binary": record.is_binary,
        "document_id": record.document_id,
        "is_deleted": record.is_deleted,
        "deleted_at": record.deleted_at,
    }


class SqlFileStore:
    """File store of one project."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession], opaque_id: str) -> None:
        self._session_factory = session_factory
        self.opaque_id = opaque_id

    async def list_all_files(self, include_deleted: bool = False) -> list[FileRecord]:
        async with self._session_factory() as session:
            stmt = select(ProjectFile).where(ProjectFile.project_key == self.opaque_id)
            if not include_deleted:
                stmt = stmt.where(ProjectFile.is_deleted.is_(False))
            rows = (await session.scalars(stmt.order_by(ProjectFile.path))).all()
        return [_row_to_record(row) for row in rows]

    async def batch_write(self, records: Sequence[FileRecord], options: BatchWriteOptions) -> None:
        """Store a batch of records.

        An existing live entry at the same path with different content is a
        conflict; unless ``options.skip_conflict_prompt`` is set the whole
        batch is rejected with ``FileConflictError`` before anything is written.
        """
        async with self._session_factory() as session:
            stmt = select(ProjectFile).where(ProjectFile.project_key == self.opaque_id)
            existing = {row.path: row for row in (await session.scalars(stmt)).all()}

            if not options.skip_conflict_prompt:
                conflicts = [
                    record.path
                    for record in records
                    if record.path in existing
                    and not existing[record.path].is_deleted
                    and existing[record.path].content != _encode_content(record.content)[0]
                ]
                if conflicts:
                    raise FileConflictError(f"Conflicting files: {', '.join(sorted(conflicts))}")

            timestamp = now_ms()
            for record in records:
                values = _record_values(self.opaque_id, record)
                if not options.preserve_timestamps:
                    values["last_modified"] = timestamp
                if not options.preserve_deletion_flag:
                    values["is_deleted"] = False
                    values["deleted_at"] = None

                previous = existing.get(record.path)
                if previous is not None and previous.id != record.id:
                    await session.delete(previous)
                    await session.flush()

                row = await session.get(ProjectFile, (self.opaque_id, record.id))
                if row is None:
                    session.add(ProjectFile(**values))
                else:
                    for key, value in values.items():
                        setattr(row, key, value)
            await session.commit()
        logger.debug("Wrote %d file records for %s", len(records), self.opaque_id)


class SqlFileStoreProvider:
    """Connects to per-project file stores in the local database."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory
        self._connected: dict[str, SqlFileStore] = {}

    def is_connected(self, opaque_id: str) -> bool:
        return opaque_id in self._connected

    async def connect(self, document_url: str) -> SqlFileStore:
        opaque_id = opaque_id_from_url(document_url)
        store = self._connected.get(opaque_id)
        if store is None:
            store = SqlFileStore(self._session_factory, opaque_id)
            self._connected[opaque_id] = store
        return store

    async def write_records_directly(self, opaque_id: str, records: Sequence[FileRecord]) -> None:
        """Upsert records as-is, keeping their timestamps and deletion flags."""
        if not records:
            return
        async with self._session_factory() as session:
            for record in records:
                values = _record_values(opaque_id, record)
                stmt = sqlite_insert(ProjectFile).values(**values)
                stmt = stmt.on_conflict_do_update(
                    index_elements=[ProjectFile.project_key, ProjectFile.id],
                    set_={k: v for k, v in values.items() if k not in ("project_key", "id")},
                )
                await session.execute(stmt)
            await session.commit()
        logger.info("Wrote %d file records directly for %s", len(records), opaque_id)

    async def delete_project_files(self, opaque_id: str) -> None:
        async with self._session_factory() as session:
            await session.execute(delete(ProjectFile).where(ProjectFile.project_key == opaque_id))
            await session.commit()
        self._connected.pop(opaque_id, None)
