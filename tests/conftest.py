"""Shared test fixtures for LyreVault."""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import TYPE_CHECKING

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from lyrevault.config import Settings
from lyrevault.main import create_app
from tests.fakes import Workspace

if TYPE_CHECKING:
    from collections.abc import AsyncGenerator
    from pathlib import Path

    from lyrevault.services.backup_service import BackupService


@asynccontextmanager
async def create_test_client(settings: Settings) -> AsyncGenerator[AsyncClient]:
    """Create an HTTP test client with a fully initialized app.

    Manually performs the work of the application lifespan (DB schema, local
    account, backup services) because ASGITransport does not trigger it.
    """
    from lyrevault.database import create_engine as create_db_engine
    from lyrevault.models.base import Base
    from lyrevault.services.account_service import AccountService
    from lyrevault.services.backup_service import BackupService
    from lyrevault.services.import_service import ProjectImportService
    from lyrevault.services.serializer_service import ProjectDataSerializer
    from lyrevault.stores.document_store import SqlDocumentStoreProvider
    from lyrevault.stores.file_store import SqlFileStoreProvider

    app = create_app(settings)
    settings.validate_runtime_paths()

    engine, session_factory = create_db_engine(settings)
    app.state.engine = engine
    app.state.session_factory = session_factory
    app.state.settings = settings

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    document_stores = SqlDocumentStoreProvider(session_factory)
    file_stores = SqlFileStoreProvider(session_factory)
    account_service = AccountService(session_factory, document_stores, file_stores)
    await account_service.ensure_local_account(settings)
    serializer = ProjectDataSerializer(
        account_service,
        document_stores,
        file_stores,
        sync_timeout=settings.document_sync_timeout_seconds,
    )
    importer = ProjectImportService(account_service, serializer)
    backup_service = BackupService(settings, account_service, serializer, importer)
    unsubscribe = account_service.add_listener(backup_service.handle_project_event)
    app.state.account_service = account_service
    app.state.backup_service = backup_service

    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as ac:
        yield ac

    unsubscribe()
    await backup_service.shutdown()
    await engine.dispose()


@pytest.fixture
def test_settings(tmp_path: Path) -> Settings:
    """Create test settings with temporary paths."""
    db_path = tmp_path / "test.db"
    return Settings(
        _env_file=None,
        debug=True,
        database_url=f"sqlite+aiosqlite:///{db_path}",
        discovery_delay_seconds=0,
        document_sync_timeout_seconds=1.0,
        activity_log_limit=50,
    )


@pytest.fixture
def backup_dir(tmp_path: Path) -> Path:
    """An empty directory to use as backup target."""
    target = tmp_path / "backup"
    target.mkdir()
    return target


@pytest.fixture
def workspace() -> Workspace:
    """A local account backed by in-memory stores."""
    return Workspace()


@pytest.fixture
def backup_service(test_settings: Settings, workspace: Workspace) -> BackupService:
    """Backup orchestrator over the in-memory workspace."""
    from lyrevault.services.backup_service import BackupService

    return BackupService(test_settings, workspace.index, workspace.serializer, workspace.importer)


@pytest.fixture
async def connected_service(
    backup_service: BackupService, backup_dir: Path
) -> AsyncGenerator[BackupService]:
    """Backup orchestrator with the backup directory connected and backups enabled."""
    assert await backup_service.request_access(backup_dir)
    backup_service.set_enabled(True)
    await backup_service.wait_for_background_tasks()
    yield backup_service
    await backup_service.shutdown()


@pytest.fixture
async def db_engine(test_settings: Settings) -> AsyncGenerator[AsyncEngine]:
    """Create a test database engine with the schema in place."""
    from lyrevault.models.base import Base

    engine = create_async_engine(
        test_settings.database_url,
        echo=False,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(db_engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """Session factory bound to the test database."""
    return async_sessionmaker(
        db_engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )


@pytest.fixture
async def db_session(
    session_factory: async_sessionmaker[AsyncSession],
) -> AsyncGenerator[AsyncSession]:
    """Create a test database session."""
    async with session_factory() as session:
        yield session
