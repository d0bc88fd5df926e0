"""Shared API dependencies: settings, DB session, services."""

from __future__ import annotations

from collections.abc import AsyncGenerator

from fastapi import Request
from sqlalchemy.ext.asyncio import AsyncSession

from lyrevault.config import Settings
from lyrevault.services.account_service import AccountService
from lyrevault.services.backup_service import BackupService


def get_settings(request: Request) -> Settings:
    """Get application settings from app state."""
    settings: Settings = request.app.state.settings
    return settings


async def get_session(request: Request) -> AsyncGenerator[AsyncSession]:
    """Get a database session."""
    session_factory = request.app.state.session_factory
    async with session_factory() as session:
        yield session


def get_account_service(request: Request) -> AccountService:
    """Get the account and project index service from app state."""
    service: AccountService = request.app.state.account_service
    return service


def get_backup_service(request: Request) -> BackupService:
    """Get the backup orchestrator from app state."""
    service: BackupService = request.app.state.backup_service
    return service
