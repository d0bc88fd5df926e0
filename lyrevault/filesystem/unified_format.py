"""Unified backup format: canonical path layout and JSON schema of a bundle.

Layout::

    manifest.json
    account.json                                   (optional)
    userdata.json                                  (optional)
    projects.json
    projects/<projectId>/metadata.json
    projects/<projectId>/documents/metadata.json
    projects/<projectId>/documents/<docId>.snapshot
    projects/<projectId>/documents/<docId>.txt
    projects/<projectId>/files/metadata.json
    projects/<projectId>/files/<relative/path...>

Only the storage adapter interface is used, so the same code writes a live
directory and an in-memory archive.
"""

from __future__ import annotations

import json
import logging
import re
from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import StrEnum
from typing import TYPE_CHECKING, Any

from lyrevault.exceptions import BundleFormatError, StorageAccessError, StorageNotFoundError
from lyrevault.filesystem.file_types import is_temporary_file
from lyrevault.services.datetime_service import now_ms, parse_timestamp_ms
from lyrevault.stores.base import AccountUser, ProjectRecord, opaque_id_from_url

if TYPE_CHECKING:
    from lyrevault.filesystem.storage_adapter import FileContent, StorageAdapter

logger = logging.getLogger(__name__)

FORMAT_VERSION = "1.0.0"

MANIFEST_FILE = "manifest.json"
ACCOUNT_FILE = "account.json"
USERDATA_FILE = "userdata.json"
PROJECTS_FILE = "projects.json"
PROJECTS_DIR = "projects"
DOCUMENTS_DIR = "documents"
FILES_DIR = "files"
METADATA_FILE = "metadata.json"

SNAPSHOT_SUFFIX = ".snapshot"
TEXT_SUFFIX = ".txt"
# Snapshot suffix written by earlier releases of the format.
LEGACY_SNAPSHOT_SUFFIX = ".yjs"

FILE_ENTRY = "file"
DIRECTORY_ENTRY = "directory"

_UNSAFE_NAME_CHARS = re.compile(r'[/\\?%*:|"<>]')


class BundleMode(StrEnum):
    """Why a bundle was written."""

    BACKUP = "backup"
    EXPORT = "export"
    IMPORT = "import"


class ExportFormat(StrEnum):
    """Layout used when writing an export."""

    UNIFIED = "unified"
    FILES_ONLY = "files-only"


# ── Paths ────────────────────────────────────────────


def project_path(project_id: str) -> str:
    return f"{PROJECTS_DIR}/{project_id}"


def project_metadata_path(project_id: str) -> str:
    return f"{project_path(project_id)}/{METADATA_FILE}"


def documents_path(project_id: str) -> str:
    return f"{project_path(project_id)}/{DOCUMENTS_DIR}"


def documents_metadata_path(project_id: str) -> str:
    return f"{documents_path(project_id)}/{METADATA_FILE}"


def document_snapshot_path(project_id: str, doc_id: str) -> str:
    return f"{documents_path(project_id)}/{doc_id}{SNAPSHOT_SUFFIX}"


def document_text_path(project_id: str, doc_id: str) -> str:
    return f"{documents_path(project_id)}/{doc_id}{TEXT_SUFFIX}"


def files_path(project_id: str) -> str:
    return f"{project_path(project_id)}/{FILES_DIR}"


def files_metadata_path(project_id: str) -> str:
    return f"{files_path(project_id)}/{METADATA_FILE}"


def clean_relative_path(path: str) -> str:
    """Strip leading slashes from a project-relative POSIX path."""
    return path.lstrip("/")


def file_content_path(project_id: str, relative_path: str) -> str:
    return f"{files_path(project_id)}/{clean_relative_path(relative_path)}"


# ── Types ────────────────────────────────────────────


@dataclass
class Manifest:
    """Versioned header identifying a bundle's schema and mode."""

    version: str
    last_sync_timestamp: int
    mode: BundleMode

    def to_dict(self) -> dict[str, Any]:
        return {
            "version": self.version,
            "lastSyncTimestamp": self.last_sync_timestamp,
            "mode": str(self.mode),
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> Manifest:
        raw_mode = data.get("mode", BundleMode.BACKUP)
        try:
            mode = BundleMode(raw_mode)
        except ValueError as exc:
            raise BundleFormatError(f"Unknown bundle mode: {raw_mode!r}") from exc
        timestamp = _timestamp(data.get("lastSyncTimestamp", data.get("lastSync")), "manifest")
        return cls(version=str(data["version"]), last_sync_timestamp=timestamp or 0, mode=mode)


@dataclass
class AccountRecord:
    """Serialized account."""

    id: str
    username: str
    email: str | None = None
    password_hash: str | None = None
    created_at: int | None = None
    last_login: int | None = None
    color: str | None = None
    color_light: str | None = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"id": self.id, "username": self.username}
        optional = {
            "email": self.email,
            "passwordHash": self.password_hash,
            "createdAt": self.created_at,
            "lastLogin": self.last_login,
            "color": self.color,
            "colorLight": self.color_light,
        }
        data.update({k: v for k, v in optional.items() if v is not None})
        return data

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> AccountRecord:
        return cls(
            id=str(data["id"]),
            username=str(data.get("username", "")),
            email=data.get("email"),
            password_hash=data.get("passwordHash"),
            created_at=_timestamp(data.get("createdAt"), "account"),
            last_login=_timestamp(data.get("lastLogin"), "account"),
            color=data.get("color"),
            color_light=data.get("colorLight"),
        )

    @classmethod
    def from_user(cls, user: AccountUser) -> AccountRecord:
        return cls(
            id=user.id,
            username=user.username,
            email=user.email,
            password_hash=user.password_hash,
            created_at=user.created_at,
            last_login=user.last_login,
            color=user.color,
            color_light=user.color_light,
        )

    def to_user(self) -> AccountUser:
        return AccountUser(
            id=self.id,
            username=self.username,
            email=self.email,
            password_hash=self.password_hash,
            created_at=self.created_at,
            last_login=self.last_login,
            color=self.color,
            color_light=self.color_light,
        )


@dataclass
class ProjectMetadata:
    """Serialized view of a project-index entry."""

    id: str
    name: str
    document_url: str
    created_at: int
    updated_at: int
    owner_id: str
    description: str = ""
    type: str = "latex"
    tags: list[str] = field(default_factory=list)
    is_favorite: bool = False
    last_sync: int | None = None
    exported_at: int | None = None

    @property
    def opaque_id(self) -> str:
        return opaque_id_from_url(self.document_url)

    @property
    def last_modified(self) -> int:
        return self.last_sync or self.exported_at or self.updated_at

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "type": self.type,
            "documentUrl": self.document_url,
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
            "ownerId": self.owner_id,
            "tags": list(self.tags),
            "isFavorite": self.is_favorite,
        }
        if self.last_sync is not None:
            data["lastSync"] = self.last_sync
        if self.exported_at is not None:
            data["exportedAt"] = self.exported_at
        return data

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> ProjectMetadata:
        _require(data, ("id", "name"), "project")
        document_url = data.get("documentUrl", data.get("docUrl"))
        if not isinstance(document_url, str) or not document_url:
            raise BundleFormatError(f"Project {data['id']!r} has no document URL")
        tags = data.get("tags") or []
        if not isinstance(tags, list):
            raise BundleFormatError(f"Project {data['id']!r} has invalid tags")
        created_at = _timestamp(data.get("createdAt"), "project") or 0
        return cls(
            id=_bundle_id(data["id"], "project"),
            name=str(data["name"]),
            description=str(data.get("description") or ""),
            type=str(data.get("type") or "latex"),
            document_url=document_url,
            created_at=created_at,
            updated_at=_timestamp(data.get("updatedAt"), "project") or created_at,
            owner_id=str(data.get("ownerId") or ""),
            tags=[str(t) for t in tags],
            is_favorite=bool(data.get("isFavorite", False)),
            last_sync=_timestamp(data.get("lastSync"), "project"),
            exported_at=_timestamp(data.get("exportedAt"), "project"),
        )


@dataclass
class DocumentMetadata:
    """Serialized view of one entry of a project's document index."""

    id: str
    name: str
    last_modified: int
    has_snapshot_state: bool = True
    has_readable_content: bool = True

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "lastModified": self.last_modified,
            "hasSnapshotState": self.has_snapshot_state,
            "hasReadableContent": self.has_readable_content,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> DocumentMetadata:
        _require(data, ("id",), "document")
        doc_id = _bundle_id(data["id"], "document")
        return cls(
            id=doc_id,
            name=str(data.get("name") or f"Document {doc_id}"),
            last_modified=_timestamp(data.get("lastModified"), "document") or 0,
            has_snapshot_state=bool(data.get("hasSnapshotState", data.get("hasYjsState", True))),
            has_readable_content=bool(data.get("hasReadableContent", True)),
        )


@dataclass
class FileMetadata:
    """Serialized view of a file store entry (content travels separately)."""

    id: str
    name: str
    path: str
    type: str
    last_modified: int
    size: int | None = None
    mime_type: str | None = None
    is_binary: bool | None = None
    linked_document_id: str | None = None

    @property
    def is_file(self) -> bool:
        return self.type == FILE_ENTRY

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "id": self.id,
            "name": self.name,
            "path": self.path,
            "type": self.type,
            "lastModified": self.last_modified,
        }
        optional = {
            "size": self.size,
            "mimeType": self.mime_type,
            "isBinary": self.is_binary,
            "linkedDocumentId": self.linked_document_id,
        }
        data.update({k: v for k, v in optional.items() if v is not None})
        return data

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> FileMetadata:
        _require(data, ("id", "path"), "file")
        entry_type = data.get("type", FILE_ENTRY)
        if entry_type not in (FILE_ENTRY, DIRECTORY_ENTRY):
            raise BundleFormatError(f"File {data['id']!r} has unknown type {entry_type!r}")
        path = _bundle_relative_path(data["path"])
        size = data.get("size")
        is_binary = data.get("isBinary")
        return cls(
            id=str(data["id"]),
            name=str(data.get("name") or path.rsplit("/", 1)[-1]),
            path=path,
            type=entry_type,
            last_modified=_timestamp(data.get("lastModified"), "file") or 0,
            size=int(size) if size is not None else None,
            mime_type=data.get("mimeType"),
            is_binary=bool(is_binary) if is_binary is not None else None,
            linked_document_id=data.get("linkedDocumentId", data.get("documentId")),
        )


@dataclass
class DocumentContent:
    """Captured state of one document."""

    snapshot: bytes | None = None
    readable_text: str | None = None


@dataclass
class ProjectData:
    """Everything captured for one project."""

    metadata: ProjectMetadata
    documents: list[DocumentMetadata] = field(default_factory=list)
    document_contents: dict[str, DocumentContent] = field(default_factory=dict)
    files: list[FileMetadata] = field(default_factory=list)
    file_contents: dict[str, FileContent] = field(default_factory=dict)


@dataclass
class Bundle:
    """In-memory backup/export payload; only its parts are ever persisted."""

    manifest: Manifest
    projects: list[ProjectMetadata] = field(default_factory=list)
    project_data: dict[str, ProjectData] = field(default_factory=dict)
    account: AccountRecord | None = None
    user_data: dict[str, Any] | None = None

    def find_project(self, project_id: str) -> ProjectMetadata | None:
        return next((p for p in self.projects if p.id == project_id), None)


# ── Conversions ──────────────────────────────────────


def create_manifest(mode: BundleMode) -> Manifest:
    """Create a manifest for a bundle being written now."""
    return Manifest(version=FORMAT_VERSION, last_sync_timestamp=now_ms(), mode=mode)


def convert_project_to_metadata(project: ProjectRecord, mode: BundleMode) -> ProjectMetadata:
    """Build the serialized view of a local project, stamped for ``mode``."""
    metadata = ProjectMetadata(
        id=project.id,
        name=project.name,
        description=project.description,
        type=project.type,
        document_url=project.document_url,
        created_at=project.created_at,
        updated_at=project.updated_at,
        owner_id=project.owner_id,
        tags=list(project.tags),
        is_favorite=project.is_favorite,
    )
    if mode is BundleMode.BACKUP:
        metadata.last_sync = now_ms()
    else:
        metadata.exported_at = now_ms()
    return metadata


def convert_metadata_to_project(metadata: ProjectMetadata) -> ProjectRecord:
    """Build a local project record from its serialized view."""
    return ProjectRecord(
        id=metadata.id,
        name=metadata.name,
        description=metadata.description,
        type=metadata.type,
        document_url=metadata.document_url,
        created_at=metadata.created_at,
        updated_at=metadata.updated_at,
        owner_id=metadata.owner_id,
        tags=list(metadata.tags),
        is_favorite=metadata.is_favorite,
    )


def _require(data: Mapping[str, Any], keys: tuple[str, ...], what: str) -> None:
    if not isinstance(data, Mapping):
        raise BundleFormatError(f"Invalid {what} entry: expected an object")
    missing = [k for k in keys if data.get(k) in (None, "")]
    if missing:
        raise BundleFormatError(f"Invalid {what} entry: missing {', '.join(missing)}")


def _bundle_id(value: object, what: str) -> str:
    """An id used as a single path segment inside the bundle."""
    ident = str(value)
    if not ident or ident in (".", "..") or "/" in ident or "\\" in ident:
        raise BundleFormatError(f"Invalid {what} id: {ident!r}")
    return ident


def _bundle_relative_path(value: object) -> str:
    path = str(value)
    segments = path.replace("\\", "/").split("/")
    if ".." in segments:
        raise BundleFormatError(f"Invalid file path: {path!r}")
    return path


def _timestamp(value: object, what: str) -> int | None:
    try:
        return parse_timestamp_ms(value)
    except ValueError as exc:
        raise BundleFormatError(f"Invalid {what} timestamp: {value!r}") from exc


# ── Validation ───────────────────────────────────────


def validate_structure(data: Bundle | Mapping[str, Any]) -> bool:
    """Minimum precondition before any merge or import proceeds.

    Accepts either a ``Bundle`` or the raw JSON documents
    (``{"manifest": ..., "account": ..., "projects": ...}``).
    """
    if isinstance(data, Bundle):
        manifest: Any = data.manifest.to_dict()
        account: Any = data.account.to_dict() if data.account is not None else None
        projects: Any = data.projects
    else:
        manifest = data.get("manifest")
        account = data.get("account")
        projects = data.get("projects")

    if not isinstance(manifest, Mapping):
        return False
    version = manifest.get("version")
    if not isinstance(version, str) or not version.strip():
        return False
    if account is not None:
        if not isinstance(account, Mapping):
            return False
        account_id = account.get("id")
        if account_id is None or not str(account_id).strip():
            return False
    return isinstance(projects, list)


def ensure_valid_structure(data: Bundle | Mapping[str, Any]) -> None:
    """Raise ``BundleFormatError`` unless ``validate_structure`` passes."""
    if not validate_structure(data):
        raise BundleFormatError("Invalid backup structure")


def is_supported_version(version: str) -> bool:
    """A bundle is readable when its major version matches ours."""
    major = version.strip().split(".", 1)[0]
    return major == FORMAT_VERSION.split(".", 1)[0]


# ── Writing ──────────────────────────────────────────


def _dump_json(data: object) -> str:
    return json.dumps(data, indent=2, ensure_ascii=False)


async def write_unified_structure(adapter: StorageAdapter, bundle: Bundle) -> None:
    """Lay a bundle out on a storage adapter."""
    await adapter.write_file(MANIFEST_FILE, _dump_json(bundle.manifest.to_dict()))

    if bundle.account is not None:
        await adapter.write_file(ACCOUNT_FILE, _dump_json(bundle.account.to_dict()))

    if bundle.user_data:
        await adapter.write_file(USERDATA_FILE, _dump_json(bundle.user_data))

    await adapter.write_file(PROJECTS_FILE, _dump_json([p.to_dict() for p in bundle.projects]))

    for project_id, project_data in bundle.project_data.items():
        await _write_project_data(adapter, project_id, project_data)


async def _write_project_data(
    adapter: StorageAdapter, project_id: str, project_data: ProjectData
) -> None:
    await adapter.create_directory(project_path(project_id))
    await adapter.write_file(
        project_metadata_path(project_id), _dump_json(project_data.metadata.to_dict())
    )

    if project_data.documents:
        await _write_documents(adapter, project_id, project_data)

    if project_data.files:
        await _write_files(adapter, project_id, project_data)


async def _write_documents(
    adapter: StorageAdapter, project_id: str, project_data: ProjectData
) -> None:
    await adapter.create_directory(documents_path(project_id))
    await adapter.write_file(
        documents_metadata_path(project_id),
        _dump_json([doc.to_dict() for doc in project_data.documents]),
    )

    for doc in project_data.documents:
        content = project_data.document_contents.get(doc.id)
        if content is None:
            continue
        if content.snapshot is not None:
            await adapter.write_file(document_snapshot_path(project_id, doc.id), content.snapshot)
        if content.readable_text is not None:
            await adapter.write_file(
                document_text_path(project_id, doc.id), content.readable_text
            )


async def _write_files(adapter: StorageAdapter, project_id: str, project_data: ProjectData) -> None:
    root = files_path(project_id)
    await adapter.create_directory(root)
    await adapter.write_file(
        files_metadata_path(project_id),
        _dump_json([f.to_dict() for f in project_data.files]),
    )

    for entry in project_data.files:
        if not entry.is_file:
            continue
        content = project_data.file_contents.get(entry.path)
        if content is None:
            continue
        target = file_content_path(project_id, entry.path)
        parent = target.rsplit("/", 1)[0]
        if parent != root:
            await adapter.create_directory(parent)
        await adapter.write_file(target, content)


def sanitize_folder_name(name: str) -> str:
    """Make a project display name safe to use as a directory name."""
    cleaned = _UNSAFE_NAME_CHARS.sub("-", name).strip()
    return cleaned or "project"


async def write_files_only_structure(adapter: StorageAdapter, bundle: Bundle) -> int:
    """Write each project's live files as a plain tree under its display name.

    No manifest is written, so the result is not an importable bundle.
    Returns the number of files written.
    """
    written = 0
    used_folders: set[str] = set()
    for project_data in bundle.project_data.values():
        base = sanitize_folder_name(project_data.metadata.name)
        folder = base
        counter = 2
        while folder in used_folders:
            folder = f"{base} ({counter})"
            counter += 1
        used_folders.add(folder)
        await adapter.create_directory(folder)

        project_written = 0
        for entry in project_data.files:
            if not entry.is_file or is_temporary_file(entry.path):
                continue
            content = project_data.file_contents.get(entry.path)
            if content is None:
                continue
            await adapter.write_file(f"{folder}/{clean_relative_path(entry.path)}", content)
            project_written += 1

        if project_written == 0:
            logger.warning(
                "No files were exported for project %s; its folder will be empty",
                project_data.metadata.name,
            )
        written += project_written
    return written


# ── Reading ──────────────────────────────────────────


async def _read_json(adapter: StorageAdapter, path: str) -> Any:
    raw = await adapter.read_file(path)
    if isinstance(raw, bytes):
        raw = raw.decode("utf-8", errors="replace")
    try:
        return json.loads(raw)
    except json.JSONDecodeError as exc:
        raise BundleFormatError(f"Invalid JSON in {path}: {exc}") from exc


async def _read_optional_json(adapter: StorageAdapter, path: str) -> Any:
    """Read an optional JSON document; unreadable means absent."""
    try:
        if not await adapter.exists(path):
            return None
        return await _read_json(adapter, path)
    except StorageNotFoundError:
        return None
    except BundleFormatError as exc:
        logger.warning("Could not read %s, treating as absent: %s", path, exc)
        return None


async def read_unified_structure(adapter: StorageAdapter) -> Bundle:
    """Read a bundle back from a storage adapter.

    A missing manifest propagates as ``StorageNotFoundError``; a missing
    project index, invalid JSON, a structurally invalid bundle or an
    unsupported version raise ``BundleFormatError``.
    """
    manifest_raw = await _read_json(adapter, MANIFEST_FILE)
    try:
        projects_raw = await _read_json(adapter, PROJECTS_FILE)
    except StorageNotFoundError as exc:
        raise BundleFormatError("Bundle has no project index") from exc
    account_raw = await _read_optional_json(adapter, ACCOUNT_FILE)
    user_data = await _read_optional_json(adapter, USERDATA_FILE)

    ensure_valid_structure(
        {"manifest": manifest_raw, "account": account_raw, "projects": projects_raw}
    )
    if not is_supported_version(str(manifest_raw["version"])):
        raise BundleFormatError(f"Unsupported backup format version: {manifest_raw['version']}")

    manifest = Manifest.from_dict(manifest_raw)
    account = AccountRecord.from_dict(account_raw) if account_raw is not None else None

    projects: dict[str, ProjectMetadata] = {}
    for raw in projects_raw:
        project = ProjectMetadata.from_dict(raw)
        if project.id in projects:
            logger.warning("Duplicate project id %s in project index, keeping last", project.id)
        projects[project.id] = project

    project_data: dict[str, ProjectData] = {}
    for project_id in projects:
        data = await _read_project_data(adapter, project_id)
        if data is not None:
            project_data[project_id] = data

    return Bundle(
        manifest=manifest,
        account=account,
        user_data=user_data if isinstance(user_data, dict) else None,
        projects=list(projects.values()),
        project_data=project_data,
    )


async def _read_project_data(adapter: StorageAdapter, project_id: str) -> ProjectData | None:
    try:
        metadata_raw = await _read_json(adapter, project_metadata_path(project_id))
    except StorageNotFoundError:
        logger.warning("Project %s is listed but has no metadata, skipping its data", project_id)
        return None
    metadata = ProjectMetadata.from_dict(metadata_raw)

    documents, document_contents = await _read_documents(adapter, project_id)
    files, file_contents = await _read_files(adapter, project_id)
    return ProjectData(
        metadata=metadata,
        documents=documents,
        document_contents=document_contents,
        files=files,
        file_contents=file_contents,
    )


async def _find_documents_path(adapter: StorageAdapter, project_id: str) -> tuple[str, str] | None:
    """Locate the directory holding snapshot files.

    Checks ``documents/`` first, then the project root (older layouts).
    Returns ``(directory, snapshot_suffix)`` or None.
    """
    for candidate in (documents_path(project_id), project_path(project_id)):
        try:
            names = await adapter.list_directory(candidate)
        except StorageNotFoundError:
            continue
        for suffix in (SNAPSHOT_SUFFIX, LEGACY_SNAPSHOT_SUFFIX):
            if any(name.endswith(suffix) for name in names):
                return candidate, suffix
    return None


async def _read_document_index(
    adapter: StorageAdapter, docs_dir: str, suffix: str, is_documents_dir: bool
) -> list[DocumentMetadata]:
    metadata_file = f"{docs_dir}/{METADATA_FILE}"
    # At the project root, metadata.json is the project's own metadata.
    if is_documents_dir and await adapter.exists(metadata_file):
        raw = await _read_json(adapter, metadata_file)
        if not isinstance(raw, list):
            raise BundleFormatError(f"{metadata_file} must be a list")
        return [DocumentMetadata.from_dict(entry) for entry in raw]

    inferred_at = now_ms()
    names = await adapter.list_directory(docs_dir)
    return [
        DocumentMetadata(
            id=name.removesuffix(suffix),
            name=f"Document {name.removesuffix(suffix)}",
            last_modified=inferred_at,
        )
        for name in sorted(names)
        if name.endswith(suffix)
    ]


async def _read_documents(
    adapter: StorageAdapter, project_id: str
) -> tuple[list[DocumentMetadata], dict[str, DocumentContent]]:
    documents: list[DocumentMetadata] = []
    contents: dict[str, DocumentContent] = {}

    located = await _find_documents_path(adapter, project_id)
    if located is None:
        return documents, contents
    docs_dir, suffix = located

    index = await _read_document_index(
        adapter, docs_dir, suffix, is_documents_dir=docs_dir == documents_path(project_id)
    )
    for doc in index:
        snapshot_file = f"{docs_dir}/{doc.id}{suffix}"
        text_file = f"{docs_dir}/{doc.id}{TEXT_SUFFIX}"
        try:
            if not await adapter.exists(snapshot_file):
                logger.warning("Document %s of project %s has no snapshot", doc.id, project_id)
                continue
            snapshot = await adapter.read_file(snapshot_file)
            if isinstance(snapshot, str):
                snapshot = snapshot.encode("utf-8")
            text: str | None = None
            if await adapter.exists(text_file):
                raw_text = await adapter.read_file(text_file)
                text = (
                    raw_text
                    if isinstance(raw_text, str)
                    else raw_text.decode("utf-8", errors="replace")
                )
        except StorageAccessError as exc:
            logger.error("Error reading document %s of project %s: %s", doc.id, project_id, exc)
            continue
        doc.has_snapshot_state = True
        doc.has_readable_content = doc.has_readable_content and text is not None
        documents.append(doc)
        contents[doc.id] = DocumentContent(snapshot=bytes(snapshot), readable_text=text)

    return documents, contents


async def _read_files(
    adapter: StorageAdapter, project_id: str
) -> tuple[list[FileMetadata], dict[str, FileContent]]:
    files: list[FileMetadata] = []
    contents: dict[str, FileContent] = {}

    metadata_file = files_metadata_path(project_id)
    if not await adapter.exists(metadata_file):
        return files, contents

    raw = await _read_json(adapter, metadata_file)
    if not isinstance(raw, list):
        raise BundleFormatError(f"{metadata_file} must be a list")

    for entry_raw in raw:
        entry = FileMetadata.from_dict(entry_raw)
        files.append(entry)
        if not entry.is_file:
            continue
        content_file = file_content_path(project_id, entry.path)
        try:
            if await adapter.exists(content_file):
                content = await adapter.read_file(content_file)
                if entry.is_binary and isinstance(content, str):
                    content = content.encode("utf-8")
                contents[entry.path] = content
        except StorageNotFoundError:
            logger.warning("File %s of project %s has no content", entry.path, project_id)

    return files, contents
