"""Project index schemas."""

from __future__ import annotations

from typing import TYPE_CHECKING

from pydantic import BaseModel, Field, field_validator

if TYPE_CHECKING:
    from lyrevault.stores.base import ProjectRecord


def _check_tags(v: list[str] | None) -> list[str] | None:
    if v is None:
        return v
    for tag in v:
        if not tag.strip():
            raise ValueError("Tags must not be empty or whitespace-only")
    return v


class ProjectResponse(BaseModel):
    """Project index entry."""

    id: str
    name: str
    description: str
    type: str
    document_url: str
    created_at: int
    updated_at: int
    owner_id: str
    tags: list[str] = Field(default_factory=list)
    is_favorite: bool = False

    @classmethod
    def from_record(cls, record: ProjectRecord) -> ProjectResponse:
        return cls(
            id=record.id,
            name=record.name,
            description=record.description,
            type=record.type,
            document_url=record.document_url,
            created_at=record.created_at,
            updated_at=record.updated_at,
            owner_id=record.owner_id,
            tags=list(record.tags),
            is_favorite=record.is_favorite,
        )


class ProjectCreate(BaseModel):
    """Request to create a project."""

    name: str = Field(min_length=1, max_length=200)
    description: str = Field(default="", max_length=2000)
    type: str = Field(default="latex", min_length=1, max_length=50)
    tags: list[str] = Field(default_factory=list)

    @field_validator("name")
    @classmethod
    def name_must_not_be_blank(cls, v: str) -> str:
        _ = cls
        if not v.strip():
            raise ValueError("Project name must not be empty or whitespace-only")
        return v

    @field_validator("tags")
    @classmethod
    def tags_must_be_nonempty(cls, v: list[str]) -> list[str]:
        _ = cls
        return _check_tags(v) or []


class ProjectUpdate(BaseModel):
    """Partial project update; omitted fields stay unchanged."""

    name: str | None = Field(default=None, min_length=1, max_length=200)
    description: str | None = Field(default=None, max_length=2000)
    tags: list[str] | None = None
    is_favorite: bool | None = None

    @field_validator("tags")
    @classmethod
    def tags_must_be_nonempty(cls, v: list[str] | None) -> list[str] | None:
        _ = cls
        return _check_tags(v)
