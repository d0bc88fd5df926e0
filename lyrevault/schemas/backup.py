"""Backup status, activity log, and backup API schemas."""

from __future__ import annotations

from enum import StrEnum
from typing import Any

from pydantic import BaseModel, Field

from lyrevault.filesystem.unified_format import ExportFormat


class BackupState(StrEnum):
    """Orchestrator state."""

    DISCONNECTED = "disconnected"
    IDLE = "idle"
    SYNCING = "syncing"
    ERROR = "error"


class ErrorKind(StrEnum):
    """Class of the last failure, so clients can tell "not a backup" from "unreachable"."""

    ACCESS = "access"
    FORMAT = "format"
    NO_BACKUP = "no_backup"
    OTHER = "other"


class ActivityType(StrEnum):
    BACKUP_START = "backup_start"
    BACKUP_COMPLETE = "backup_complete"
    BACKUP_ERROR = "backup_error"
    IMPORT_START = "import_start"
    IMPORT_COMPLETE = "import_complete"
    IMPORT_ERROR = "import_error"


class BackupStatus(BaseModel):
    """Current backup status. ``is_enabled`` is a user preference, orthogonal to ``state``."""

    state: BackupState = BackupState.DISCONNECTED
    is_connected: bool = False
    is_enabled: bool = False
    last_sync: int | None = None
    error: str | None = None
    error_kind: ErrorKind | None = None
    target: str | None = None


class BackupActivity(BaseModel):
    """Entry of the backup activity log."""

    id: str
    type: ActivityType
    message: str
    timestamp: int
    data: dict[str, Any] | None = None


# ── Requests ─────────────────────────────────────────


class AccessRequest(BaseModel):
    """Grant a backup directory; the configured default is used when omitted."""

    directory: str | None = Field(default=None, max_length=4096)


class ChangeDirectoryRequest(BaseModel):
    directory: str = Field(min_length=1, max_length=4096)


class EnabledRequest(BaseModel):
    enabled: bool


class ProjectScopeRequest(BaseModel):
    """Limit an operation to one project; all projects when omitted."""

    project_id: str | None = Field(default=None, max_length=200)


class ExportArchiveRequest(BaseModel):
    include_account: bool = True
    include_documents: bool = True
    include_files: bool = True
    project_ids: list[str] | None = None
    format: ExportFormat = ExportFormat.UNIFIED


# ── Responses ────────────────────────────────────────


class OperationResponse(BaseModel):
    """Outcome of a status-changing operation."""

    ok: bool
    status: BackupStatus


class ImportableProjectResponse(BaseModel):
    id: str
    name: str
    description: str
    original_owner_id: str
    last_modified: int
    source: str
    source_path: str | None = None


class ScanResponse(BaseModel):
    projects: list[ImportableProjectResponse]


class DiscoveryResponse(BaseModel):
    """Result of the automatic scan after a backup directory was connected."""

    scanned: bool
    has_importable_projects: bool = False
    projects: list[ImportableProjectResponse] = Field(default_factory=list)


class ImportErrorItem(BaseModel):
    project_id: str
    error: str


class ImportResultResponse(BaseModel):
    imported: list[str] = Field(default_factory=list)
    skipped: list[str] = Field(default_factory=list)
    errors: list[ImportErrorItem] = Field(default_factory=list)


class AccountImportResponse(BaseModel):
    imported_user: bool
    created: list[str] = Field(default_factory=list)
    updated: list[str] = Field(default_factory=list)
