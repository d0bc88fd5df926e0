"""Local account and project index, with project mutation events."""

from __future__ import annotations

import json
import logging
import uuid
from collections.abc import Callable
from dataclasses import dataclass, replace
from enum import StrEnum
from typing import TYPE_CHECKING

from sqlalchemy import select

from lyrevault.models.account import Project, User
from lyrevault.services.datetime_service import now_ms
from lyrevault.stores.base import AccountUser, ProjectRecord, make_document_url, opaque_id_from_url

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

    from lyrevault.config import Settings
    from lyrevault.stores.base import DocumentStoreProvider, FileStoreProvider

logger = logging.getLogger(__name__)


class ProjectEventType(StrEnum):
    """Kind of project mutation."""

    CREATED = "created"
    UPDATED = "updated"
    DELETED = "deleted"


@dataclass(frozen=True)
class ProjectEvent:
    """Published after a project in the index was mutated."""

    type: ProjectEventType
    project_id: str


ProjectEventListener = Callable[[ProjectEvent], None]


def _user_to_record(user: User) -> AccountUser:
    return AccountUser(
        id=user.id,
        username=user.username,
        email=user.email,
        password_hash=user.password_hash,
        created_at=user.created_at,
        last_login=user.last_login,
        color=user.color,
        color_light=user.color_light,
    )


def _project_to_record(project: Project) -> ProjectRecord:
    try:
        tags = json.loads(project.tags)
    except json.JSONDecodeError:
        logger.warning("Project %s has unreadable tags, ignoring them", project.id)
        tags = []
    return ProjectRecord(
        id=project.id,
        name=project.name,
        description=project.description,
        type=project.type,
        document_url=project.document_url,
        created_at=project.created_at,
        updated_at=project.updated_at,
        owner_id=project.owner_id,
        tags=[str(t) for t in tags] if isinstance(tags, list) else [],
        is_favorite=project.is_favorite,
        skip_peer_check=project.skip_peer_check,
    )


def _apply_record(project: Project, record: ProjectRecord) -> None:
    project.name = record.name
    project.description = record.description
    project.type = record.type
    project.document_url = record.document_url
    project.created_at = record.created_at
    project.updated_at = record.updated_at
    project.owner_id = record.owner_id
    project.tags = json.dumps(record.tags)
    project.is_favorite = record.is_favorite
    project.skip_peer_check = record.skip_peer_check


def new_opaque_id() -> str:
    return uuid.uuid4().hex


class AccountService:
    """The local account's project index.

    Methods of the project index interface write records as given. The
    ``create_project``/``edit_project``/``delete_project`` methods are the
    user-facing mutations: they stamp timestamps and publish a
    ``ProjectEvent`` to subscribers.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        document_stores: DocumentStoreProvider,
        file_stores: FileStoreProvider,
    ) -> None:
        self._session_factory = session_factory
        self._document_stores = document_stores
        self._file_stores = file_stores
        self._current_user: AccountUser | None = None
        self._listeners: list[ProjectEventListener] = []

    # ── Events ───────────────────────────────────────

    def add_listener(self, listener: ProjectEventListener) -> Callable[[], None]:
        """Subscribe to project events; returns an unsubscribe callable."""
        self._listeners.append(listener)

        def _unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _unsubscribe

    def _publish(self, event: ProjectEvent) -> None:
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception:
                logger.exception("Project event listener failed for %s", event)

    # ── Account ──────────────────────────────────────

    def get_current_user(self) -> AccountUser | None:
        return self._current_user

    async def ensure_local_account(self, settings: Settings) -> AccountUser:
        """Create the local account if it doesn't exist and make it current."""
        async with self._session_factory() as session:
            stmt = select(User).where(User.username == settings.local_username)
            existing = (await session.execute(stmt)).scalar_one_or_none()
            if existing is None:
                existing = User(
                    id=str(uuid.uuid4()),
                    username=settings.local_username,
                    email=settings.local_email,
                    created_at=now_ms(),
                )
                session.add(existing)
                await session.commit()
                logger.info("Created local account %s", settings.local_username)
            user = _user_to_record(existing)
        self._current_user = user
        return user

    async def get_user_by_id(self, user_id: str) -> AccountUser | None:
        async with self._session_factory() as session:
            user = await session.get(User, user_id)
            return _user_to_record(user) if user is not None else None

    async def insert_user_record(self, user: AccountUser) -> None:
        async with self._session_factory() as session:
            session.add(
                User(
                    id=user.id,
                    username=user.username,
                    email=user.email,
                    password_hash=user.password_hash,
                    created_at=user.created_at if user.created_at is not None else now_ms(),
                    last_login=user.last_login,
                    color=user.color,
                    color_light=user.color_light,
                )
            )
            await session.commit()

    # ── Project index ────────────────────────────────

    async def list_projects_for_user(self, user_id: str) -> list[ProjectRecord]:
        async with self._session_factory() as session:
            stmt = (
                select(Project)
                .where(Project.owner_id == user_id)
                .order_by(Project.updated_at.desc(), Project.id)
            )
            rows = (await session.scalars(stmt)).all()
        return [_project_to_record(row) for row in rows]

    async def get_project_by_id(self, project_id: str) -> ProjectRecord | None:
        async with self._session_factory() as session:
            project = await session.get(Project, project_id)
            return _project_to_record(project) if project is not None else None

    async def insert_or_replace_project_record(self, record: ProjectRecord) -> None:
        async with self._session_factory() as session:
            project = await session.get(Project, record.id)
            if project is None:
                project = Project(id=record.id)
                session.add(project)
            _apply_record(project, record)
            await session.commit()

    async def update_project(self, record: ProjectRecord) -> None:
        async with self._session_factory() as session:
            project = await session.get(Project, record.id)
            if project is None:
                raise ValueError(f"Project not found: {record.id}")
            _apply_record(project, record)
            await session.commit()

    async def delete_project_and_cleanup_stores(self, project_id: str) -> None:
        async with self._session_factory() as session:
            project = await session.get(Project, project_id)
            if project is None:
                return
            opaque_id = opaque_id_from_url(project.document_url)
            await session.delete(project)
            await session.commit()
        await self._document_stores.delete_project_stores(opaque_id)
        await self._file_stores.delete_project_files(opaque_id)
        logger.info("Deleted project %s and its stores", project_id)

    # ── User-facing mutations ────────────────────────

    def _require_user(self) -> AccountUser:
        if self._current_user is None:
            raise ValueError("No current account")
        return self._current_user

    async def create_project(
        self,
        *,
        name: str,
        description: str = "",
        type: str = "latex",
        tags: list[str] | None = None,
    ) -> ProjectRecord:
        user = self._require_user()
        timestamp = now_ms()
        record = ProjectRecord(
            id=str(uuid.uuid4()),
            name=name,
            description=description,
            type=type,
            document_url=make_document_url(new_opaque_id()),
            created_at=timestamp,
            updated_at=timestamp,
            owner_id=user.id,
            tags=list(tags or []),
        )
        await self.insert_or_replace_project_record(record)
        self._publish(ProjectEvent(ProjectEventType.CREATED, record.id))
        return record

    async def edit_project(
        self,
        project_id: str,
        *,
        name: str | None = None,
        description: str | None = None,
        tags: list[str] | None = None,
        is_favorite: bool | None = None,
    ) -> ProjectRecord:
        user = self._require_user()
        current = await self.get_project_by_id(project_id)
        if current is None or current.owner_id != user.id:
            raise ValueError(f"Project not found: {project_id}")
        updated = replace(
            current,
            name=name if name is not None else current.name,
            description=description if description is not None else current.description,
            tags=list(tags) if tags is not None else current.tags,
            is_favorite=is_favorite if is_favorite is not None else current.is_favorite,
            updated_at=now_ms(),
        )
        await self.update_project(updated)
        self._publish(ProjectEvent(ProjectEventType.UPDATED, project_id))
        return updated

    async def delete_project(self, project_id: str) -> None:
        user = self._require_user()
        current = await self.get_project_by_id(project_id)
        if current is None or current.owner_id != user.id:
            raise ValueError(f"Project not found: {project_id}")
        await self.delete_project_and_cleanup_stores(project_id)
        self._publish(ProjectEvent(ProjectEventType.DELETED, project_id))
