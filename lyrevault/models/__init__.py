"""SQLAlchemy ORM models for LyreVault."""

from lyrevault.models.account import Project, User
from lyrevault.models.base import Base
from lyrevault.models.document import DocumentUpdate
from lyrevault.models.file import ProjectFile

__all__ = [
    "Base",
    "DocumentUpdate",
    "Project",
    "ProjectFile",
    "User",
]
