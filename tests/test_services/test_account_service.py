"""Tests for the SQL-backed local account and project index."""

from __future__ import annotations

from dataclasses import replace
from typing import TYPE_CHECKING

import pytest
from sqlalchemy import func, select

from lyrevault.models.account import Project
from lyrevault.services.account_service import AccountService, ProjectEvent, ProjectEventType
from lyrevault.stores.base import AccountUser, BatchWriteOptions, FileRecord, ProjectRecord
from lyrevault.stores.document_store import SqlDocumentStoreProvider
from lyrevault.stores.file_store import SqlFileStoreProvider
from tests.fakes import TEST_TIMESTAMP, text_snapshot

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

    from lyrevault.config import Settings


@pytest.fixture
def document_stores(session_factory: async_sessionmaker[AsyncSession]) -> SqlDocumentStoreProvider:
    return SqlDocumentStoreProvider(session_factory)


@pytest.fixture
def file_stores(session_factory: async_sessionmaker[AsyncSession]) -> SqlFileStoreProvider:
    return SqlFileStoreProvider(session_factory)


@pytest.fixture
async def account(
    session_factory: async_sessionmaker[AsyncSession],
    document_stores: SqlDocumentStoreProvider,
    file_stores: SqlFileStoreProvider,
    test_settings: Settings,
) -> AccountService:
    service = AccountService(session_factory, document_stores, file_stores)
    await service.ensure_local_account(test_settings)
    return service


class TestLocalAccount:
    async def test_created_once(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        document_stores: SqlDocumentStoreProvider,
        file_stores: SqlFileStoreProvider,
        test_settings: Settings,
    ) -> None:
        first = AccountService(session_factory, document_stores, file_stores)
        second = AccountService(session_factory, document_stores, file_stores)

        user = await first.ensure_local_account(test_settings)
        again = await second.ensure_local_account(test_settings)

        assert user.id == again.id
        assert user.username == test_settings.local_username
        assert user.email == test_settings.local_email
        assert first.get_current_user() == user

    async def test_insert_and_lookup_user(self, account: AccountService) -> None:
        user = AccountUser(id="u-2", username="bob", email="bob@example.com", last_login=5)
        await account.insert_user_record(user)

        stored = await account.get_user_by_id("u-2")
        assert stored is not None
        assert stored.username == "bob"
        assert stored.last_login == 5
        assert stored.created_at is not None
        assert await account.get_user_by_id("missing") is None


class TestProjectIndex:
    async def test_insert_or_replace(self, account: AccountService) -> None:
        user = account.get_current_user()
        assert user is not None
        record = ProjectRecord(
            id="p1",
            name="Paper",
            document_url="yjs:abc",
            owner_id=user.id,
            created_at=TEST_TIMESTAMP,
            updated_at=TEST_TIMESTAMP,
            tags=["draft", "ml"],
            skip_peer_check=True,
        )
        await account.insert_or_replace_project_record(record)
        await account.insert_or_replace_project_record(replace(record, name="Renamed"))

        stored = await account.get_project_by_id("p1")
        assert stored is not None
        assert stored.name == "Renamed"
        assert stored.tags == ["draft", "ml"]
        assert stored.skip_peer_check is True
        assert stored.opaque_id == "abc"

    async def test_list_newest_first(self, account: AccountService) -> None:
        user = account.get_current_user()
        assert user is not None
        for pid, updated in (("old", 1), ("new", 3), ("mid", 2)):
            await account.insert_or_replace_project_record(
                ProjectRecord(
                    id=pid,
                    name=pid,
                    document_url=f"yjs:{pid}",
                    owner_id=user.id,
                    created_at=1,
                    updated_at=updated,
                )
            )
        await account.insert_or_replace_project_record(
            ProjectRecord(
                id="foreign", name="f", document_url="yjs:f", owner_id="x", created_at=1, updated_at=9
            )
        )

        projects = await account.list_projects_for_user(user.id)
        assert [p.id for p in projects] == ["new", "mid", "old"]

    async def test_update_missing_project(self, account: AccountService) -> None:
        with pytest.raises(ValueError, match="Project not found"):
            await account.update_project(
                ProjectRecord(
                    id="nope", name="n", document_url="yjs:n", owner_id="u", created_at=1, updated_at=1
                )
            )

    async def test_unreadable_tags_are_ignored(
        self, account: AccountService, db_session: AsyncSession
    ) -> None:
        project = await account.create_project(name="Paper")
        row = await db_session.get(Project, project.id)
        assert row is not None
        row.tags = "{not json"
        await db_session.commit()

        stored = await account.get_project_by_id(project.id)
        assert stored is not None and stored.tags == []


class TestMutations:
    async def test_events_published(self, account: AccountService) -> None:
        events: list[ProjectEvent] = []
        account.add_listener(events.append)

        project = await account.create_project(name="Paper", tags=["a"])
        await account.edit_project(project.id, name="Paper v2", is_favorite=True)
        await account.delete_project(project.id)

        assert [e.type for e in events] == [
            ProjectEventType.CREATED,
            ProjectEventType.UPDATED,
            ProjectEventType.DELETED,
        ]
        assert {e.project_id for e in events} == {project.id}

    async def test_edit_keeps_unset_fields(self, account: AccountService) -> None:
        project = await account.create_project(name="Paper", description="d", tags=["x"])
        edited = await account.edit_project(project.id, is_favorite=True)
        assert edited.name == "Paper"
        assert edited.description == "d"
        assert edited.tags == ["x"]
        assert edited.is_favorite is True
        assert edited.updated_at >= project.updated_at

    async def test_unsubscribe_and_failing_listener(self, account: AccountService) -> None:
        events: list[ProjectEvent] = []

        def broken(_event: ProjectEvent) -> None:
            raise RuntimeError("listener bug")

        account.add_listener(broken)
        unsubscribe = account.add_listener(events.append)
        await account.create_project(name="One")
        unsubscribe()
        await account.create_project(name="Two")
        assert len(events) == 1

    async def test_mutations_need_an_account(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        document_stores: SqlDocumentStoreProvider,
        file_stores: SqlFileStoreProvider,
    ) -> None:
        service = AccountService(session_factory, document_stores, file_stores)
        with pytest.raises(ValueError, match="No current account"):
            await service.create_project(name="Paper")

    async def test_edit_foreign_project(self, account: AccountService) -> None:
        await account.insert_or_replace_project_record(
            ProjectRecord(
                id="foreign", name="f", document_url="yjs:f", owner_id="x", created_at=1, updated_at=1
            )
        )
        with pytest.raises(ValueError):
            await account.edit_project("foreign", name="mine now")
        with pytest.raises(ValueError):
            await account.delete_project("foreign")

    async def test_delete_cleans_up_stores(
        self,
        account: AccountService,
        document_stores: SqlDocumentStoreProvider,
        file_stores: SqlFileStoreProvider,
        db_session: AsyncSession,
    ) -> None:
        project = await account.create_project(name="Paper")
        store = await document_stores.open_document(project.opaque_id, "d1")
        assert await store.wait_until_synced(1.0)
        store.apply_full_state_snapshot(text_snapshot("text"))
        await store.close()
        files = await file_stores.connect(project.document_url)
        await files.batch_write(
            [FileRecord(id="f1", name="a.tex", path="/a.tex", type="file", last_modified=1, content="a")],
            BatchWriteOptions(),
        )

        await account.delete_project(project.id)

        assert await account.get_project_by_id(project.id) is None
        reopened = await document_stores.open_document(project.opaque_id, "d1")
        assert await reopened.wait_until_synced(1.0)
        assert reopened.get_plain_text() == ""
        await reopened.close()
        assert file_stores.is_connected(project.opaque_id) is False
        count = await db_session.scalar(select(func.count()).select_from(Project))
        assert count == 0
        assert await (await file_stores.connect(project.document_url)).list_all_files(True) == []

    async def test_delete_missing_is_noop(self, account: AccountService) -> None:
        await account.delete_project_and_cleanup_stores("missing")
