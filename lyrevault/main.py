"""FastAPI application entry point."""

from __future__ import annotations

import logging
import sys
from contextlib import asynccontextmanager
from pathlib import Path
from typing import TYPE_CHECKING

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from sqlalchemy.exc import OperationalError

from lyrevault import __version__
from lyrevault.api.backup import router as backup_router
from lyrevault.api.health import router as health_router
from lyrevault.api.projects import router as projects_router
from lyrevault.config import Settings
from lyrevault.database import create_engine
from lyrevault.exceptions import (
    BackupNotReadyError,
    BundleFormatError,
    FileConflictError,
    NoBackupFoundError,
    StorageAccessError,
)
from lyrevault.models.base import Base
from lyrevault.services.account_service import AccountService
from lyrevault.services.backup_service import BackupService
from lyrevault.services.import_service import ProjectImportService
from lyrevault.services.serializer_service import ProjectDataSerializer
from lyrevault.stores.document_store import SqlDocumentStoreProvider
from lyrevault.stores.file_store import SqlFileStoreProvider

if TYPE_CHECKING:
    from collections.abc import AsyncGenerator

logger = logging.getLogger(__name__)


def _configure_logging(debug: bool) -> None:
    """Configure application logging."""
    level = logging.DEBUG if debug else logging.INFO
    fmt = "%(asctime)s %(levelname)-8s %(name)s: %(message)s"
    logging.basicConfig(
        level=level,
        format=fmt,
        stream=sys.stdout,
        force=True,
    )
    # Quiet noisy libraries
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    logging.getLogger("sqlalchemy.engine").setLevel(logging.INFO if debug else logging.WARNING)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None]:
    """Application lifespan: startup and shutdown."""
    settings: Settings = app.state.settings
    settings.validate_runtime_paths()
    _configure_logging(settings.debug)
    logger.info("Starting LyreVault (debug=%s)", settings.debug)

    # Ensure database directory exists
    db_url = settings.database_url
    if db_url.startswith("sqlite"):
        db_path = db_url.split("///", 1)[-1] if "///" in db_url else None
        if db_path and db_path != ":memory:":
            Path(db_path).parent.mkdir(parents=True, exist_ok=True)

    try:
        engine, session_factory = create_engine(settings)
        app.state.engine = engine
        app.state.session_factory = session_factory
    except Exception as exc:
        logger.critical(
            "Failed to initialize database: %s. Check database path and permissions.", exc
        )
        raise

    try:
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
    except Exception as exc:
        logger.critical("Failed to create database schema: %s.", exc)
        raise

    document_stores = SqlDocumentStoreProvider(session_factory)
    file_stores = SqlFileStoreProvider(session_factory)
    account_service = AccountService(session_factory, document_stores, file_stores)
    try:
        await account_service.ensure_local_account(settings)
    except Exception as exc:
        logger.critical("Failed to ensure local account: %s.", exc)
        raise

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

    if settings.backup_dir is not None:
        await backup_service.request_access(settings.backup_dir)

    yield

    unsubscribe()
    try:
        await backup_service.shutdown()
    except Exception as exc:
        logger.error("Error during backup service shutdown: %s", exc, exc_info=True)

    try:
        await engine.dispose()
    except Exception as exc:
        logger.error("Error during engine disposal: %s", exc, exc_info=True)

    logger.info("LyreVault stopped")


def create_app(settings: Settings | None = None) -> FastAPI:
    """Create and configure the FastAPI application."""
    if settings is None:
        settings = Settings()

    docs_enabled = settings.debug or settings.expose_docs

    app = FastAPI(
        title="LyreVault",
        description="Backup, export and import for local-first project workspaces",
        version=__version__,
        lifespan=lifespan,
        docs_url="/docs" if docs_enabled else None,
        redoc_url="/redoc" if docs_enabled else None,
        openapi_url="/openapi.json" if docs_enabled else None,
    )
    app.state.settings = settings

    app.include_router(health_router)
    app.include_router(backup_router)
    app.include_router(projects_router)

    # Global exception handlers

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(
        request: Request, exc: RequestValidationError
    ) -> JSONResponse:
        errors = []
        for err in exc.errors():
            loc = err.get("loc", ())
            field = str(loc[-1]) if loc else "unknown"
            errors.append({"field": field, "message": err.get("msg", "Invalid value")})
        logger.warning(
            "RequestValidationError in %s %s: %s",
            request.method,
            request.url.path,
            errors,
        )
        return JSONResponse(status_code=422, content={"detail": errors})

    # NoBackupFoundError subclasses BundleFormatError; the most specific handler wins.
    @app.exception_handler(NoBackupFoundError)
    async def no_backup_handler(request: Request, exc: NoBackupFoundError) -> JSONResponse:
        logger.warning("No backup found in %s %s: %s", request.method, request.url.path, exc)
        return JSONResponse(status_code=404, content={"detail": str(exc) or "No backup found"})

    @app.exception_handler(BundleFormatError)
    async def bundle_format_handler(request: Request, exc: BundleFormatError) -> JSONResponse:
        logger.warning("Invalid bundle in %s %s: %s", request.method, request.url.path, exc)
        return JSONResponse(
            status_code=422, content={"detail": str(exc) or "Invalid backup format"}
        )

    @app.exception_handler(StorageAccessError)
    async def storage_access_handler(request: Request, exc: StorageAccessError) -> JSONResponse:
        logger.error("StorageAccessError in %s %s: %s", request.method, request.url.path, exc)
        return JSONResponse(
            status_code=409, content={"detail": str(exc) or "Backup storage unavailable"}
        )

    @app.exception_handler(BackupNotReadyError)
    async def backup_not_ready_handler(request: Request, exc: BackupNotReadyError) -> JSONResponse:
        return JSONResponse(
            status_code=409, content={"detail": str(exc) or "Backup folder not connected"}
        )

    @app.exception_handler(FileConflictError)
    async def file_conflict_handler(request: Request, exc: FileConflictError) -> JSONResponse:
        logger.warning("FileConflictError in %s %s: %s", request.method, request.url.path, exc)
        return JSONResponse(status_code=409, content={"detail": str(exc) or "File conflict"})

    @app.exception_handler(ValueError)
    async def value_error_handler(request: Request, exc: ValueError) -> JSONResponse:
        logger.error("ValueError in %s %s: %s", request.method, request.url.path, exc, exc_info=exc)
        message = str(exc) or "Invalid value"
        return JSONResponse(
            status_code=422,
            content={"detail": message},
        )

    @app.exception_handler(OperationalError)
    async def operational_error_handler(request: Request, exc: OperationalError) -> JSONResponse:
        logger.error(
            "OperationalError in %s %s: %s", request.method, request.url.path, exc, exc_info=exc
        )
        return JSONResponse(
            status_code=503,
            content={"detail": "Database temporarily unavailable"},
        )

    return app


app = create_app()


def cli_entry() -> None:
    """CLI entry point for running the server."""
    import uvicorn

    settings: Settings = app.state.settings
    uvicorn.run(
        "lyrevault.main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.debug,
    )
