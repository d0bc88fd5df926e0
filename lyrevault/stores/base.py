"""Interfaces of the local stores the backup engine reads from and writes into.

The engine never talks to a CRDT engine, a file database or the account
index directly: it is handed objects satisfying these protocols. The
production implementations live next to this module; tests use in-memory
fakes.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Protocol

if TYPE_CHECKING:
    from collections.abc import Sequence

DEFAULT_URL_SCHEME = "yjs"


def opaque_id_from_url(document_url: str) -> str:
    """Return the part of ``scheme:opaque-id`` after the scheme.

    URLs without a scheme are returned unchanged.
    """
    _scheme, sep, rest = document_url.partition(":")
    return rest if sep else document_url


def make_document_url(opaque_id: str, scheme: str = DEFAULT_URL_SCHEME) -> str:
    """Build a document URL from an opaque id."""
    return f"{scheme}:{opaque_id}"


@dataclass
class AccountUser:
    """Local account as seen by the backup engine."""

    id: str
    username: str
    email: str | None = None
    password_hash: str | None = None
    created_at: int | None = None
    last_login: int | None = None
    color: str | None = None
    color_light: str | None = None


@dataclass
class ProjectRecord:
    """Entry of an account's project index."""

    id: str
    name: str
    document_url: str
    owner_id: str
    created_at: int
    updated_at: int
    description: str = ""
    type: str = "latex"
    tags: list[str] = field(default_factory=list)
    is_favorite: bool = False
    skip_peer_check: bool = False

    @property
    def opaque_id(self) -> str:
        return opaque_id_from_url(self.document_url)


@dataclass
class FileRecord:
    """A file store entry, with content for ``file`` entries."""

    id: str
    name: str
    path: str
    type: str
    last_modified: int
    size: int | None = None
    mime_type: str | None = None
    is_binary: bool | None = None
    document_id: str | None = None
    content: bytes | str | None = None
    is_deleted: bool = False
    deleted_at: int | None = None


@dataclass(frozen=True)
class BatchWriteOptions:
    """Flags for ``FileStore.batch_write``.

    ``skip_conflict_prompt`` overwrites existing entries instead of raising
    ``FileConflictError``; ``preserve_timestamps`` keeps each record's
    ``last_modified``; ``preserve_deletion_flag`` keeps each record's
    ``is_deleted`` instead of restoring it as live.
    """

    skip_conflict_prompt: bool = False
    preserve_timestamps: bool = False
    preserve_deletion_flag: bool = False


class DocumentStore(Protocol):
    """One CRDT-backed document, opened for a short-lived session."""

    async def wait_until_synced(self, timeout: float) -> bool:
        """Wait for persisted state to load; return False on timeout."""
        ...

    def get_full_state_snapshot(self) -> bytes: ...

    def apply_full_state_snapshot(self, snapshot: bytes) -> None: ...

    def get_plain_text(self) -> str: ...

    async def flush(self) -> None:
        """Persist all state applied so far."""
        ...

    async def close(self) -> None: ...


class MetadataStore(DocumentStore, Protocol):
    """The per-project document holding the document index and display fields."""

    def read_document_index(self) -> list[dict[str, Any]]: ...

    def write_project_metadata(
        self,
        *,
        documents: Sequence[dict[str, Any]],
        current_doc_id: str,
        project_name: str | None,
        project_description: str | None,
    ) -> None:
        """Replace the index and auxiliary fields in a single transaction."""
        ...


class DocumentStoreProvider(Protocol):
    """Opens document stores keyed by a project's opaque id."""

    async def open_document(self, opaque_id: str, doc_id: str) -> DocumentStore: ...

    async def open_metadata(self, opaque_id: str) -> MetadataStore: ...

    async def delete_project_stores(self, opaque_id: str) -> None: ...


class FileStore(Protocol):
    """A project's file store."""

    async def list_all_files(self, include_deleted: bool = False) -> list[FileRecord]: ...

    async def batch_write(self, records: Sequence[FileRecord], options: BatchWriteOptions) -> None: ...


class FileStoreProvider(Protocol):
    """Connects to per-project file stores."""

    def is_connected(self, opaque_id: str) -> bool: ...

    async def connect(self, document_url: str) -> FileStore: ...

    async def write_records_directly(self, opaque_id: str, records: Sequence[FileRecord]) -> None:
        """Low-level write bypassing the store's conflict and timestamp handling."""
        ...

    async def delete_project_files(self, opaque_id: str) -> None: ...


class ProjectIndex(Protocol):
    """The local account and project index."""

    def get_current_user(self) -> AccountUser | None: ...

    async def get_user_by_id(self, user_id: str) -> AccountUser | None: ...

    async def insert_user_record(self, user: AccountUser) -> None: ...

    async def list_projects_for_user(self, user_id: str) -> list[ProjectRecord]: ...

    async def get_project_by_id(self, project_id: str) -> ProjectRecord | None: ...

    async def insert_or_replace_project_record(self, record: ProjectRecord) -> None:
        """Write a project record directly, without normal creation side effects."""
        ...

    async def update_project(self, record: ProjectRecord) -> None: ...

    async def delete_project_and_cleanup_stores(self, project_id: str) -> None: ...
