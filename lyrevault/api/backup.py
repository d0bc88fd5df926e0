"""Backup API endpoints: storage target, sync, discovery, selective and archive import."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Annotated

from fastapi import APIRouter, Depends, File, Form, HTTPException, Response, UploadFile

from lyrevault.api.deps import get_backup_service, get_settings
from lyrevault.config import Settings
from lyrevault.filesystem.storage_adapter import BundleSource
from lyrevault.schemas.backup import (
    AccessRequest,
    AccountImportResponse,
    BackupActivity,
    BackupStatus,
    ChangeDirectoryRequest,
    DiscoveryResponse,
    EnabledRequest,
    ExportArchiveRequest,
    ImportableProjectResponse,
    ImportErrorItem,
    ImportResultResponse,
    OperationResponse,
    ProjectScopeRequest,
    ScanResponse,
)
from lyrevault.services.backup_service import BackupService, ExportOptions
from lyrevault.services.import_service import ConflictResolution, ImportableProject

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/backup", tags=["backup"])


def _to_response(project: ImportableProject) -> ImportableProjectResponse:
    return ImportableProjectResponse(
        id=project.id,
        name=project.name,
        description=project.description,
        original_owner_id=project.original_owner_id,
        last_modified=project.last_modified,
        source=project.source,
        source_path=project.source_path,
    )


async def _read_archive_upload(upload: UploadFile, limit: int) -> bytes:
    """Read an uploaded archive, enforcing the configured size limit."""
    data = await upload.read(limit + 1)
    if len(data) > limit:
        raise HTTPException(
            status_code=413, detail=f"Archive too large (max {limit} bytes): {upload.filename}"
        )
    if not data:
        raise HTTPException(status_code=422, detail="Uploaded archive is empty")
    return data


def _operation(service: BackupService, ok: bool) -> OperationResponse:
    return OperationResponse(ok=ok, status=service.get_status())


# ── Status and activity log ──────────────────────────


@router.get("/status", response_model=BackupStatus)
async def backup_status(
    service: Annotated[BackupService, Depends(get_backup_service)],
) -> BackupStatus:
    """Current backup status."""
    return service.get_status()


@router.get("/activities", response_model=list[BackupActivity])
async def list_activities(
    service: Annotated[BackupService, Depends(get_backup_service)],
) -> list[BackupActivity]:
    """Backup activity log, oldest first."""
    return service.get_activities()


@router.delete("/activities", status_code=204)
async def clear_activities(
    service: Annotated[BackupService, Depends(get_backup_service)],
) -> Response:
    service.clear_all_activities()
    return Response(status_code=204)


@router.delete("/activities/{activity_id}", status_code=204)
async def clear_activity(
    activity_id: str,
    service: Annotated[BackupService, Depends(get_backup_service)],
) -> Response:
    if not service.clear_activity(activity_id):
        raise HTTPException(status_code=404, detail="Activity not found")
    return Response(status_code=204)


@router.get("/discovery", response_model=DiscoveryResponse)
async def last_discovery(
    service: Annotated[BackupService, Depends(get_backup_service)],
) -> DiscoveryResponse:
    """Result of the scan that runs after a backup directory is connected."""
    result = service.get_last_discovery()
    if result is None:
        return DiscoveryResponse(scanned=False)
    return DiscoveryResponse(
        scanned=True,
        has_importable_projects=result.has_importable_projects,
        projects=[_to_response(p) for p in result.projects],
    )


# ── Storage target ───────────────────────────────────


@router.post("/access", response_model=OperationResponse)
async def request_access(
    body: AccessRequest,
    service: Annotated[BackupService, Depends(get_backup_service)],
) -> OperationResponse:
    """Connect a backup directory, or the configured default one."""
    directory = Path(body.directory) if body.directory else None
    return _operation(service, await service.request_access(directory))


@router.post("/access/change", response_model=OperationResponse)
async def change_directory(
    body: ChangeDirectoryRequest,
    service: Annotated[BackupService, Depends(get_backup_service)],
) -> OperationResponse:
    return _operation(service, await service.change_directory(Path(body.directory)))


@router.post("/disconnect", response_model=OperationResponse)
async def disconnect(
    service: Annotated[BackupService, Depends(get_backup_service)],
) -> OperationResponse:
    await service.disconnect()
    return _operation(service, True)


@router.post("/enabled", response_model=OperationResponse)
async def set_enabled(
    body: EnabledRequest,
    service: Annotated[BackupService, Depends(get_backup_service)],
) -> OperationResponse:
    service.set_enabled(body.enabled)
    return _operation(service, True)


# ── Sync ─────────────────────────────────────────────


@router.post("/sync", response_model=OperationResponse)
async def synchronize(
    service: Annotated[BackupService, Depends(get_backup_service)],
    body: ProjectScopeRequest | None = None,
) -> OperationResponse:
    """Back up one project, or every project when no project id is given."""
    project_id = body.project_id if body else None
    return _operation(service, await service.synchronize(project_id))


@router.post("/export", response_model=OperationResponse)
async def export_to_storage(
    service: Annotated[BackupService, Depends(get_backup_service)],
    body: ProjectScopeRequest | None = None,
) -> OperationResponse:
    project_id = body.project_id if body else None
    return _operation(service, await service.export_to_storage(project_id))


@router.post("/import", response_model=OperationResponse)
async def import_changes(
    service: Annotated[BackupService, Depends(get_backup_service)],
    body: ProjectScopeRequest | None = None,
) -> OperationResponse:
    """Import the backup in the connected directory into the local stores."""
    project_id = body.project_id if body else None
    return _operation(service, await service.import_changes(project_id))


# ── Discovery and selective import ───────────────────


@router.post("/scan", response_model=ScanResponse)
async def scan(
    service: Annotated[BackupService, Depends(get_backup_service)],
    settings: Annotated[Settings, Depends(get_settings)],
    archive: UploadFile | None = File(default=None),
) -> ScanResponse:
    """List importable projects of an uploaded archive or of the connected directory."""
    source = (
        BundleSource.archive(
            await _read_archive_upload(archive, settings.max_archive_upload_bytes),
            name=archive.filename or "archive.zip",
        )
        if archive is not None
        else None
    )
    projects = await service.scan_for_importable_projects(source)
    return ScanResponse(projects=[_to_response(p) for p in projects])


@router.post("/import-selected", response_model=ImportResultResponse)
async def import_selected(
    service: Annotated[BackupService, Depends(get_backup_service)],
    settings: Annotated[Settings, Depends(get_settings)],
    project_ids: Annotated[list[str], Form()],
    policy: Annotated[ConflictResolution, Form()] = ConflictResolution.SKIP,
    archive: UploadFile | None = File(default=None),
) -> ImportResultResponse:
    """Import selected projects from an uploaded archive or the connected directory.

    Accepts multipart form data with:
    - ``project_ids``: one field per project to import
    - ``policy``: ``skip``, ``overwrite`` or ``create-new``
    - ``archive``: optional ZIP; the connected directory is used without it
    """
    source = (
        BundleSource.archive(
            await _read_archive_upload(archive, settings.max_archive_upload_bytes),
            name=archive.filename or "archive.zip",
        )
        if archive is not None
        else None
    )
    result = await service.import_selected(source, project_ids, policy)
    return ImportResultResponse(
        imported=result.imported,
        skipped=result.skipped,
        errors=[ImportErrorItem(project_id=e.project_id, error=e.error) for e in result.errors],
    )


# ── Archives ─────────────────────────────────────────


@router.post("/archive")
async def export_archive(
    body: ExportArchiveRequest,
    service: Annotated[BackupService, Depends(get_backup_service)],
) -> Response:
    """Download an export archive of the local account's projects."""
    archive = await service.export_archive(
        ExportOptions(
            include_account=body.include_account,
            include_documents=body.include_documents,
            include_files=body.include_files,
            project_ids=body.project_ids,
            format=body.format,
        )
    )
    return Response(
        content=archive.data,
        media_type="application/zip",
        headers={
            "Content-Disposition": f'attachment; filename="{archive.filename}"',
            "X-Project-Count": str(archive.project_count),
        },
    )


@router.post("/archive/import", response_model=AccountImportResponse)
async def import_account_archive(
    service: Annotated[BackupService, Depends(get_backup_service)],
    settings: Annotated[Settings, Depends(get_settings)],
    archive: Annotated[UploadFile, File()],
) -> AccountImportResponse:
    """Import an account export archive."""
    data = await _read_archive_upload(archive, settings.max_archive_upload_bytes)
    result = await service.import_account_archive(data)
    return AccountImportResponse(
        imported_user=result.imported_user, created=result.created, updated=result.updated
    )
