"""Per-project file store model."""

from __future__ import annotations

from sqlalchemy import BigInteger, Boolean, Index, Integer, LargeBinary, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from lyrevault.models.base import Base


class ProjectFile(Base):
    """A file or directory entry in a project's file store.

    Rows are keyed by the project's opaque id. Text content is stored UTF-8
    encoded with ``is_text`` set so it round-trips as ``str``.
    """

    __tablename__ = "project_files"

    project_key: Mapped[str] = mapped_column(String, primary_key=True)
    id: Mapped[str] = mapped_column(String, primary_key=True)
    name: Mapped[str] = mapped_column(Text, nullable=False)
    path: Mapped[str] = mapped_column(Text, nullable=False)
    type: Mapped[str] = mapped_column(String, nullable=False, default="file")
    content: Mapped[bytes | None] = mapped_column(LargeBinary, nullable=True)
    is_text: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    last_modified: Mapped[int] = mapped_column(BigInteger, nullable=False)
    size: Mapped[int | None] = mapped_column(Integer, nullable=True)
    mime_type: Mapped[str | None] = mapped_column(String, nullable=True)
    is_binary: Mapped[bool | None] = mapped_column(Boolean, nullable=True)
    document_id: Mapped[str | None] = mapped_column(String, nullable=True)
    is_deleted: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    deleted_at: Mapped[int | None] = mapped_column(BigInteger, nullable=True)

    __table_args__ = (Index("idx_project_files_path", "project_key", "path"),)
