"""Tests for the database-backed CRDT document stores and file stores."""

from __future__ import annotations

from dataclasses import replace
from typing import TYPE_CHECKING

import pytest
from pycrdt import Doc, Text
from sqlalchemy import func, select

from lyrevault.exceptions import FileConflictError
from lyrevault.models.document import DocumentUpdate
from lyrevault.stores.base import BatchWriteOptions, FileRecord
from lyrevault.stores.document_store import TEXT_ROOT, SqlDocumentStoreProvider
from lyrevault.stores.file_store import SqlFileStoreProvider
from tests.fakes import TEST_TIMESTAMP, text_snapshot

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker


@pytest.fixture
def documents(session_factory: async_sessionmaker[AsyncSession]) -> SqlDocumentStoreProvider:
    return SqlDocumentStoreProvider(session_factory)


@pytest.fixture
def files(session_factory: async_sessionmaker[AsyncSession]) -> SqlFileStoreProvider:
    return SqlFileStoreProvider(session_factory)


def _file(file_id: str, path: str, content: bytes | str) -> FileRecord:
    return FileRecord(
        id=file_id,
        name=path.rsplit("/", 1)[-1],
        path=path,
        type="file",
        last_modified=TEST_TIMESTAMP,
        content=content,
    )


class TestDocumentStore:
    async def test_text_persists_across_sessions(self, documents: SqlDocumentStoreProvider) -> None:
        store = await documents.open_document("abc", "d1")
        assert await store.wait_until_synced(1.0)
        store.apply_full_state_snapshot(text_snapshot("Hello"))
        await store.close()

        reopened = await documents.open_document("abc", "d1")
        assert await reopened.wait_until_synced(1.0)
        assert reopened.get_plain_text() == "Hello"
        await reopened.close()

    async def test_snapshot_applies_to_another_store(
        self, documents: SqlDocumentStoreProvider
    ) -> None:
        source = Doc()
        text = source.get(TEXT_ROOT, type=Text)
        text += "from snapshot"

        store = await documents.open_document("abc", "d1")
        await store.wait_until_synced(1.0)
        store.apply_full_state_snapshot(source.get_update())
        await store.close()

        reopened = await documents.open_document("abc", "d1")
        await reopened.wait_until_synced(1.0)
        assert reopened.get_plain_text() == "from snapshot"
        assert reopened.get_full_state_snapshot()
        await reopened.close()

    async def test_applying_snapshot_twice_is_a_noop(
        self, documents: SqlDocumentStoreProvider
    ) -> None:
        snapshot = text_snapshot("restored")

        store = await documents.open_document("abc", "d1")
        await store.wait_until_synced(1.0)
        store.apply_full_state_snapshot(snapshot)
        once = store.get_full_state_snapshot()
        store.apply_full_state_snapshot(snapshot)
        assert store.get_full_state_snapshot() == once
        await store.close()

        reopened = await documents.open_document("abc", "d1")
        await reopened.wait_until_synced(1.0)
        reopened.apply_full_state_snapshot(snapshot)
        assert reopened.get_full_state_snapshot() == once
        assert reopened.get_plain_text() == "restored"
        await reopened.close()

    async def test_flush_compacts_update_log(
        self, documents: SqlDocumentStoreProvider, db_session: AsyncSession
    ) -> None:
        store = await documents.open_document("abc", "d1")
        await store.wait_until_synced(1.0)
        for word in ("one", "two", "three"):
            store.apply_full_state_snapshot(text_snapshot(word))
            await store.flush()
        await store.close()

        count = await db_session.scalar(select(func.count()).select_from(DocumentUpdate))
        assert count == 1

    async def test_metadata_index(self, documents: SqlDocumentStoreProvider) -> None:
        metadata = await documents.open_metadata("abc")
        await metadata.wait_until_synced(1.0)
        metadata.write_project_metadata(
            documents=[{"id": "d1", "name": "main.tex"}],
            current_doc_id="d1",
            project_name="Paper",
            project_description=None,
        )
        await metadata.close()

        reopened = await documents.open_metadata("abc")
        await reopened.wait_until_synced(1.0)
        assert reopened.read_document_index() == [{"id": "d1", "name": "main.tex"}]
        assert reopened.data.to_py()["projectMetadata"] == {"name": "Paper", "description": ""}
        await reopened.close()

    async def test_delete_project_stores_by_prefix(
        self, documents: SqlDocumentStoreProvider
    ) -> None:
        for opaque_id in ("abc", "abcd"):
            store = await documents.open_document(opaque_id, "d1")
            await store.wait_until_synced(1.0)
            store.apply_full_state_snapshot(text_snapshot(opaque_id))
            await store.close()

        await documents.delete_project_stores("abc")

        gone = await documents.open_document("abc", "d1")
        kept = await documents.open_document("abcd", "d1")
        await gone.wait_until_synced(1.0)
        await kept.wait_until_synced(1.0)
        assert gone.get_plain_text() == ""
        assert kept.get_plain_text() == "abcd"
        await gone.close()
        await kept.close()


class TestFileStore:
    async def test_connect_reuses_store(self, files: SqlFileStoreProvider) -> None:
        first = await files.connect("yjs:abc")
        assert files.is_connected("abc")
        assert await files.connect("yjs:abc") is first

    async def test_text_and_binary_roundtrip(self, files: SqlFileStoreProvider) -> None:
        store = await files.connect("yjs:abc")
        await store.batch_write(
            [_file("f1", "/main.tex", "body"), _file("f2", "/fig.png", b"\x89PNG")],
            BatchWriteOptions(),
        )

        stored = {r.path: r for r in await store.list_all_files()}
        assert stored["/main.tex"].content == "body"
        assert stored["/fig.png"].content == b"\x89PNG"
        assert stored["/fig.png"].size == 4

    async def test_conflict_rejects_whole_batch(self, files: SqlFileStoreProvider) -> None:
        store = await files.connect("yjs:abc")
        await store.batch_write([_file("f1", "/main.tex", "local")], BatchWriteOptions())

        with pytest.raises(FileConflictError):
            await store.batch_write(
                [_file("f2", "/new.tex", "new"), _file("f1", "/main.tex", "incoming")],
                BatchWriteOptions(),
            )
        assert [r.path for r in await store.list_all_files()] == ["/main.tex"]

        await store.batch_write(
            [_file("f1", "/main.tex", "incoming")], BatchWriteOptions(skip_conflict_prompt=True)
        )
        [record] = await store.list_all_files()
        assert record.content == "incoming"

    async def test_identical_content_is_no_conflict(self, files: SqlFileStoreProvider) -> None:
        store = await files.connect("yjs:abc")
        await store.batch_write([_file("f1", "/main.tex", "same")], BatchWriteOptions())
        await store.batch_write([_file("f1", "/main.tex", "same")], BatchWriteOptions())

    async def test_timestamps_and_deletion_flags(self, files: SqlFileStoreProvider) -> None:
        store = await files.connect("yjs:abc")
        deleted = replace(_file("f1", "/old.tex", "x"), is_deleted=True, deleted_at=TEST_TIMESTAMP)

        await store.batch_write([deleted], BatchWriteOptions())
        [record] = await store.list_all_files()
        assert record.last_modified > TEST_TIMESTAMP
        assert record.is_deleted is False

        await store.batch_write(
            [deleted],
            BatchWriteOptions(
                skip_conflict_prompt=True, preserve_timestamps=True, preserve_deletion_flag=True
            ),
        )
        assert await store.list_all_files() == []
        [record] = await store.list_all_files(include_deleted=True)
        assert record.last_modified == TEST_TIMESTAMP
        assert record.deleted_at == TEST_TIMESTAMP

    async def test_new_id_at_same_path_replaces_entry(self, files: SqlFileStoreProvider) -> None:
        store = await files.connect("yjs:abc")
        await store.batch_write([_file("f1", "/main.tex", "a")], BatchWriteOptions())
        await store.batch_write(
            [_file("f2", "/main.tex", "b")], BatchWriteOptions(skip_conflict_prompt=True)
        )
        [record] = await store.list_all_files(include_deleted=True)
        assert record.id == "f2"

    async def test_direct_write_upserts_as_given(self, files: SqlFileStoreProvider) -> None:
        await files.write_records_directly("abc", [_file("f1", "/main.tex", "first")])
        await files.write_records_directly(
            "abc", [replace(_file("f1", "/main.tex", "second"), is_deleted=True, deleted_at=7)]
        )

        store = await files.connect("yjs:abc")
        [record] = await store.list_all_files(include_deleted=True)
        assert record.content == "second"
        assert record.is_deleted is True
        assert record.last_modified == TEST_TIMESTAMP

    async def test_projects_are_isolated(self, files: SqlFileStoreProvider) -> None:
        await files.write_records_directly("abc", [_file("f1", "/a.tex", "a")])
        await files.write_records_directly("xyz", [_file("f1", "/a.tex", "z")])

        await files.delete_project_files("abc")
        assert await (await files.connect("yjs:abc")).list_all_files() == []
        [record] = await (await files.connect("yjs:xyz")).list_all_files()
        assert record.content == "z"
