"""Project index API endpoints for the local account."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Annotated

from fastapi import APIRouter, Depends, HTTPException, Response

from lyrevault.api.deps import get_account_service
from lyrevault.schemas.project import ProjectCreate, ProjectResponse, ProjectUpdate
from lyrevault.services.account_service import AccountService

if TYPE_CHECKING:
    from lyrevault.stores.base import ProjectRecord

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/projects", tags=["projects"])


async def _require_own_project(service: AccountService, project_id: str) -> ProjectRecord:
    user = service.get_current_user()
    project = await service.get_project_by_id(project_id)
    if project is None or user is None or project.owner_id != user.id:
        raise HTTPException(status_code=404, detail="Project not found")
    return project


@router.get("", response_model=list[ProjectResponse])
async def list_projects(
    service: Annotated[AccountService, Depends(get_account_service)],
) -> list[ProjectResponse]:
    """List the local account's projects, most recently updated first."""
    user = service.get_current_user()
    if user is None:
        return []
    return [ProjectResponse.from_record(p) for p in await service.list_projects_for_user(user.id)]


@router.get("/{project_id}", response_model=ProjectResponse)
async def get_project(
    project_id: str,
    service: Annotated[AccountService, Depends(get_account_service)],
) -> ProjectResponse:
    project = await _require_own_project(service, project_id)
    return ProjectResponse.from_record(project)


@router.post("", response_model=ProjectResponse, status_code=201)
async def create_project(
    body: ProjectCreate,
    service: Annotated[AccountService, Depends(get_account_service)],
) -> ProjectResponse:
    """Create a project. Triggers an automatic backup when enabled."""
    record = await service.create_project(
        name=body.name.strip(), description=body.description, type=body.type, tags=body.tags
    )
    logger.info("Created project %s (%s)", record.id, record.name)
    return ProjectResponse.from_record(record)


@router.patch("/{project_id}", response_model=ProjectResponse)
async def update_project(
    project_id: str,
    body: ProjectUpdate,
    service: Annotated[AccountService, Depends(get_account_service)],
) -> ProjectResponse:
    await _require_own_project(service, project_id)
    record = await service.edit_project(
        project_id,
        name=body.name.strip() if body.name is not None else None,
        description=body.description,
        tags=body.tags,
        is_favorite=body.is_favorite,
    )
    return ProjectResponse.from_record(record)


@router.delete("/{project_id}", status_code=204)
async def delete_project(
    project_id: str,
    service: Annotated[AccountService, Depends(get_account_service)],
) -> Response:
    """Delete a project and its document and file stores."""
    await _require_own_project(service, project_id)
    await service.delete_project(project_id)
    return Response(status_code=204)
