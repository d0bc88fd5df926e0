"""Storage adapters: one async file API over a live directory or an in-memory archive."""

from __future__ import annotations

import asyncio
import io
import logging
import zipfile
from abc import ABC, abstractmethod
from contextlib import contextmanager
from dataclasses import dataclass
from enum import StrEnum
from pathlib import Path
from typing import TYPE_CHECKING, ClassVar

from lyrevault.exceptions import BundleFormatError, StorageAccessError, StorageNotFoundError
from lyrevault.filesystem.file_types import is_binary_file

if TYPE_CHECKING:
    from collections.abc import Iterator

logger = logging.getLogger(__name__)

FileContent = bytes | str


class AdapterKind(StrEnum):
    """Which storage backend a bundle lives in."""

    DIRECTORY = "directory"
    ARCHIVE = "archive"


class ImportSource(StrEnum):
    """Provenance of a discovered bundle, as reported to the UI."""

    BACKUP = "backup"
    ZIP = "zip"
    DIRECTORY = "directory"


def normalize_path(path: str) -> str:
    """Normalize an adapter path to ``a/b/c`` form.

    Leading, trailing and repeated slashes are dropped, as are ``.`` segments.
    ``..`` segments are rejected so no path can escape the storage root.
    """
    parts: list[str] = []
    for segment in path.replace("\\", "/").split("/"):
        if segment in ("", "."):
            continue
        if segment == "..":
            raise StorageAccessError(f"Path traversal detected: {path}")
        parts.append(segment)
    return "/".join(parts)


def _to_bytes(content: FileContent) -> bytes:
    if isinstance(content, str):
        return content.encode("utf-8")
    return bytes(content)


def _decode_for_path(path: str, raw: bytes) -> FileContent:
    """Return text for text-like paths; anything that is not valid UTF-8 stays bytes."""
    if is_binary_file(path):
        return raw
    try:
        return raw.decode("utf-8")
    except UnicodeDecodeError:
        return raw


class StorageAdapter(ABC):
    """Capability interface shared by every storage backend.

    Paths are forward-slash and relative to the storage root; leading slashes
    are ignored. A missing path (or missing parent directory) surfaces as
    ``StorageNotFoundError``; any other failure as ``StorageAccessError``.
    """

    kind: ClassVar[AdapterKind]

    @abstractmethod
    async def write_file(self, path: str, content: FileContent) -> None:
        """Write a file, creating parent directories as needed."""

    @abstractmethod
    async def read_file(self, path: str) -> FileContent:
        """Read a file; binary vs text is decided by ``is_binary_file``."""

    @abstractmethod
    async def create_directory(self, path: str) -> None:
        """Create a directory and any missing parents. Idempotent."""

    @abstractmethod
    async def exists(self, path: str) -> bool:
        """Return True if a file or directory exists at ``path``."""

    @abstractmethod
    async def list_directory(self, path: str) -> list[str]:
        """Return the names of the immediate children of a directory."""


@contextmanager
def _translate_os_errors(path: str) -> Iterator[None]:
    """Map OS exceptions onto the adapter error taxonomy."""
    try:
        yield
    except (FileNotFoundError, NotADirectoryError) as exc:
        raise StorageNotFoundError(f"Not found: {path}") from exc
    except PermissionError as exc:
        raise StorageAccessError(f"Permission denied: {path}") from exc
    except OSError as exc:
        raise StorageAccessError(f"I/O error at {path}: {exc}") from exc


class DirectoryAdapter(StorageAdapter):
    """Backend bound to a user-granted directory on the local filesystem.

    The grant is re-checked on every call: if the directory disappears or
    stops being a directory between calls, the call fails with
    ``StorageAccessError`` rather than silently recreating it.
    """

    kind = AdapterKind.DIRECTORY

    def __init__(self, root: Path) -> None:
        self.root = root

    def __repr__(self) -> str:
        return f"DirectoryAdapter({str(self.root)!r})"

    def _check_root(self) -> Path:
        if not self.root.is_dir():
            raise StorageAccessError(f"Storage directory is no longer available: {self.root}")
        return self.root.resolve()

    def _resolve(self, path: str) -> tuple[str, Path]:
        """Validate that a relative path stays within the storage root."""
        normalized = normalize_path(path)
        root = self._check_root()
        full_path = (root / normalized).resolve() if normalized else root
        if not full_path.is_relative_to(root):
            raise StorageAccessError(f"Path traversal detected: {path}")
        return normalized, full_path

    async def write_file(self, path: str, content: FileContent) -> None:
        normalized, full_path = self._resolve(path)
        if not normalized:
            raise StorageAccessError("Cannot write to the storage root")
        data = _to_bytes(content)

        def _write() -> None:
            with _translate_os_errors(normalized):
                full_path.parent.mkdir(parents=True, exist_ok=True)
                full_path.write_bytes(data)

        await asyncio.to_thread(_write)

    async def read_file(self, path: str) -> FileContent:
        normalized, full_path = self._resolve(path)

        def _read() -> bytes:
            with _translate_os_errors(normalized):
                if full_path.is_dir():
                    raise StorageAccessError(f"Is a directory: {normalized}")
                return full_path.read_bytes()

        raw = await asyncio.to_thread(_read)
        return _decode_for_path(normalized, raw)

    async def create_directory(self, path: str) -> None:
        normalized, full_path = self._resolve(path)

        def _mkdir() -> None:
            with _translate_os_errors(normalized):
                full_path.mkdir(parents=True, exist_ok=True)

        await asyncio.to_thread(_mkdir)

    async def exists(self, path: str) -> bool:
        _normalized, full_path = self._resolve(path)
        return await asyncio.to_thread(full_path.exists)

    async def list_directory(self, path: str) -> list[str]:
        normalized, full_path = self._resolve(path)

        def _list() -> list[str]:
            with _translate_os_errors(normalized):
                return sorted(child.name for child in full_path.iterdir())

        return await asyncio.to_thread(_list)


class ArchiveAdapter(StorageAdapter):
    """Backend that builds or reads a single ZIP container in memory.

    Archives have no explicit directory entries: a directory "exists" when
    any entry lives under it.
    """

    kind = AdapterKind.ARCHIVE

    def __init__(self) -> None:
        self._entries: dict[str, bytes] = {}

    def __repr__(self) -> str:
        return f"ArchiveAdapter(entries={len(self._entries)})"

    @classmethod
    def from_bytes(cls, data: bytes) -> ArchiveAdapter:
        """Create an adapter pre-loaded with the contents of a ZIP archive."""
        adapter = cls()
        adapter.load_from_bytes(data)
        return adapter

    def load_from_bytes(self, data: bytes) -> None:
        """Replace the adapter's contents with those of a ZIP archive."""
        entries: dict[str, bytes] = {}
        try:
            with zipfile.ZipFile(io.BytesIO(data)) as archive:
                for info in archive.infolist():
                    if info.is_dir():
                        continue
                    try:
                        name = normalize_path(info.filename)
                    except StorageAccessError:
                        logger.warning("Skipping unsafe archive entry %r", info.filename)
                        continue
                    if name:
                        entries[name] = archive.read(info)
        except zipfile.BadZipFile as exc:
            raise BundleFormatError(f"Not a valid archive: {exc}") from exc
        self._entries = entries

    def generate_archive(self) -> bytes:
        """Serialize all entries into a deflate-compressed ZIP archive."""
        buffer = io.BytesIO()
        with zipfile.ZipFile(buffer, "w", compression=zipfile.ZIP_DEFLATED) as archive:
            for name, data in self._entries.items():
                archive.writestr(name, data)
        return buffer.getvalue()

    async def write_file(self, path: str, content: FileContent) -> None:
        normalized = normalize_path(path)
        if not normalized:
            raise StorageAccessError("Cannot write to the archive root")
        self._entries[normalized] = _to_bytes(content)

    async def read_file(self, path: str) -> FileContent:
        normalized = normalize_path(path)
        raw = self._entries.get(normalized)
        if raw is None:
            raise StorageNotFoundError(f"Not found: {normalized}")
        return _decode_for_path(normalized, raw)

    async def create_directory(self, path: str) -> None:
        normalize_path(path)

    async def exists(self, path: str) -> bool:
        normalized = normalize_path(path)
        if not normalized:
            return True
        if normalized in self._entries:
            return True
        prefix = f"{normalized}/"
        return any(name.startswith(prefix) for name in self._entries)

    async def list_directory(self, path: str) -> list[str]:
        normalized = normalize_path(path)
        prefix = f"{normalized}/" if normalized else ""
        names: list[str] = []
        for entry in self._entries:
            if not entry.startswith(prefix):
                continue
            remaining = entry[len(prefix) :]
            name = remaining.split("/", 1)[0]
            if name and name not in names:
                names.append(name)
        if normalized and not names:
            raise StorageNotFoundError(f"Not found: {normalized}")
        return names


@dataclass(frozen=True)
class BundleSource:
    """Where a bundle is read from: a directory or archive bytes."""

    kind: AdapterKind
    path: Path | None = None
    data: bytes | None = None
    name: str | None = None
    is_backup_target: bool = False

    @classmethod
    def directory(cls, path: Path, *, is_backup_target: bool = False) -> BundleSource:
        return cls(
            kind=AdapterKind.DIRECTORY,
            path=path,
            name=str(path),
            is_backup_target=is_backup_target,
        )

    @classmethod
    def archive(cls, data: bytes, name: str | None = None) -> BundleSource:
        return cls(kind=AdapterKind.ARCHIVE, data=data, name=name)

    @property
    def import_source(self) -> ImportSource:
        if self.kind is AdapterKind.ARCHIVE:
            return ImportSource.ZIP
        return ImportSource.BACKUP if self.is_backup_target else ImportSource.DIRECTORY


def open_adapter(source: BundleSource) -> StorageAdapter:
    """Create the storage adapter for a bundle source.

    This is the single place that branches on the backend kind.
    """
    if source.kind is AdapterKind.DIRECTORY:
        if source.path is None:
            raise StorageAccessError("Directory source has no path")
        return DirectoryAdapter(source.path)
    if source.kind is AdapterKind.ARCHIVE:
        if source.data is None:
            raise StorageAccessError("Archive source has no data")
        return ArchiveAdapter.from_bytes(source.data)
    raise ValueError(f"Unknown adapter kind: {source.kind}")
