"""Tests for the directory and archive storage adapters."""

from __future__ import annotations

import io
import zipfile
from typing import TYPE_CHECKING

import pytest
from hypothesis import given
from hypothesis import strategies as st

from lyrevault.exceptions import BundleFormatError, StorageAccessError, StorageNotFoundError
from lyrevault.filesystem.storage_adapter import (
    AdapterKind,
    ArchiveAdapter,
    BundleSource,
    DirectoryAdapter,
    ImportSource,
    normalize_path,
    open_adapter,
)

if TYPE_CHECKING:
    from pathlib import Path


def _zip(entries: dict[str, bytes]) -> bytes:
    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, "w") as archive:
        for name, data in entries.items():
            archive.writestr(name, data)
    return buffer.getvalue()


class TestNormalizePath:
    def test_strips_slashes_and_dots(self) -> None:
        assert normalize_path("/projects//p1/./files/") == "projects/p1/files"

    def test_backslashes_become_separators(self) -> None:
        assert normalize_path("projects\\p1\\main.tex") == "projects/p1/main.tex"

    def test_root_normalizes_to_empty(self) -> None:
        assert normalize_path("/") == ""

    def test_parent_segment_rejected(self) -> None:
        with pytest.raises(StorageAccessError):
            normalize_path("projects/../../etc/passwd")

    @given(st.lists(st.text(alphabet="abc./\\", max_size=6), max_size=6))
    def test_never_yields_empty_or_parent_segments(self, parts: list[str]) -> None:
        path = "/".join(parts)
        try:
            normalized = normalize_path(path)
        except StorageAccessError:
            assert ".." in path.replace("\\", "/").split("/")
            return
        for segment in normalized.split("/") if normalized else []:
            assert segment not in ("", ".", "..")
        assert normalize_path(normalized) == normalized


class TestDirectoryAdapter:
    async def test_write_creates_parents(self, tmp_path: Path) -> None:
        adapter = DirectoryAdapter(tmp_path)
        await adapter.write_file("projects/p1/files/chapters/one.tex", "\\section{One}")
        assert (tmp_path / "projects/p1/files/chapters/one.tex").read_text() == "\\section{One}"

    async def test_text_and_binary_reads(self, tmp_path: Path) -> None:
        adapter = DirectoryAdapter(tmp_path)
        await adapter.write_file("main.tex", "hello")
        await adapter.write_file("figure.png", b"\x89PNG\x00\x01")
        assert await adapter.read_file("main.tex") == "hello"
        assert await adapter.read_file("figure.png") == b"\x89PNG\x00\x01"

    async def test_snapshot_files_read_as_bytes(self, tmp_path: Path) -> None:
        adapter = DirectoryAdapter(tmp_path)
        await adapter.write_file("documents/d1.snapshot", b"\x01\x02")
        assert await adapter.read_file("documents/d1.snapshot") == b"\x01\x02"

    async def test_unknown_extension_with_binary_content_stays_bytes(
        self, tmp_path: Path
    ) -> None:
        adapter = DirectoryAdapter(tmp_path)
        font = b"\x80\x01\xff\xfe\x00bin"
        await adapter.write_file("fonts/cmr.pfb", font)
        await adapter.write_file("fonts/README", "Type 1 fonts")
        assert await adapter.read_file("fonts/cmr.pfb") == font
        assert await adapter.read_file("fonts/README") == "Type 1 fonts"

    async def test_missing_file_is_not_found(self, tmp_path: Path) -> None:

        adapter = DirectoryAdapter(tmp_path)
        with pytest.raises(StorageNotFoundError):
            await adapter.read_file("manifest.json")

    async def test_list_missing_directory_is_not_found(self, tmp_path: Path) -> None:
        adapter = DirectoryAdapter(tmp_path)
        with pytest.raises(StorageNotFoundError):
            await adapter.list_directory("projects")

    async def test_list_and_exists(self, tmp_path: Path) -> None:
        adapter = DirectoryAdapter(tmp_path)
        await adapter.write_file("projects/b/metadata.json", "{}")
        await adapter.write_file("projects/a/metadata.json", "{}")
        assert await adapter.list_directory("projects") == ["a", "b"]
        assert await adapter.exists("projects/a")
        assert not await adapter.exists("projects/c")

    async def test_create_directory_is_idempotent(self, tmp_path: Path) -> None:
        adapter = DirectoryAdapter(tmp_path)
        await adapter.create_directory("projects/p1")
        await adapter.create_directory("projects/p1")
        assert (tmp_path / "projects/p1").is_dir()

    async def test_traversal_rejected(self, tmp_path: Path) -> None:
        adapter = DirectoryAdapter(tmp_path / "root")
        (tmp_path / "root").mkdir()
        with pytest.raises(StorageAccessError):
            await adapter.write_file("../escape.txt", "x")
        assert not (tmp_path / "escape.txt").exists()

    async def test_removed_root_is_access_error(self, tmp_path: Path) -> None:
        root = tmp_path / "granted"
        root.mkdir()
        adapter = DirectoryAdapter(root)
        root.rmdir()
        with pytest.raises(StorageAccessError) as exc_info:
            await adapter.write_file("manifest.json", "{}")
        assert not isinstance(exc_info.value, StorageNotFoundError)
        assert not root.exists()

    async def test_cannot_write_root(self, tmp_path: Path) -> None:
        adapter = DirectoryAdapter(tmp_path)
        with pytest.raises(StorageAccessError):
            await adapter.write_file("/", "x")


class TestArchiveAdapter:
    async def test_roundtrip_through_zip(self) -> None:
        adapter = ArchiveAdapter()
        await adapter.write_file("projects/p1/files/main.tex", "content")
        await adapter.write_file("projects/p1/documents/d1.snapshot", b"\x00\xff")

        reloaded = ArchiveAdapter.from_bytes(adapter.generate_archive())
        assert await reloaded.read_file("projects/p1/files/main.tex") == "content"
        assert await reloaded.read_file("projects/p1/documents/d1.snapshot") == b"\x00\xff"

    async def test_generated_archive_is_deflated(self) -> None:
        adapter = ArchiveAdapter()
        await adapter.write_file("manifest.json", "{}" * 100)
        with zipfile.ZipFile(io.BytesIO(adapter.generate_archive())) as archive:
            assert archive.getinfo("manifest.json").compress_type == zipfile.ZIP_DEFLATED

    async def test_directories_are_implied_by_entries(self) -> None:
        adapter = ArchiveAdapter()
        await adapter.create_directory("projects/empty")
        assert not await adapter.exists("projects/empty")
        await adapter.write_file("projects/p1/metadata.json", "{}")
        assert await adapter.exists("projects")
        assert await adapter.exists("projects/p1")
        assert await adapter.list_directory("projects") == ["p1"]

    async def test_list_root(self) -> None:
        adapter = ArchiveAdapter()
        await adapter.write_file("manifest.json", "{}")
        await adapter.write_file("projects/p1/metadata.json", "{}")
        assert sorted(await adapter.list_directory("")) == ["manifest.json", "projects"]

    async def test_missing_entry_is_not_found(self) -> None:
        adapter = ArchiveAdapter()
        with pytest.raises(StorageNotFoundError):
            await adapter.read_file("projects.json")
        with pytest.raises(StorageNotFoundError):
            await adapter.list_directory("projects")

    def test_invalid_archive_is_format_error(self) -> None:
        with pytest.raises(BundleFormatError):
            ArchiveAdapter.from_bytes(b"definitely not a zip")

    async def test_unsafe_entries_are_skipped(self) -> None:
        data = _zip({"../evil.txt": b"x", "dir/": b"", "/manifest.json": b"{}"})
        adapter = ArchiveAdapter.from_bytes(data)
        assert await adapter.list_directory("") == ["manifest.json"]
        assert await adapter.read_file("manifest.json") == "{}"

    async def test_load_replaces_contents(self) -> None:
        adapter = ArchiveAdapter()
        await adapter.write_file("old.txt", "old")
        adapter.load_from_bytes(_zip({"new.txt": b"new"}))
        assert await adapter.list_directory("") == ["new.txt"]


class TestBundleSource:
    def test_directory_source_kind(self, tmp_path: Path) -> None:
        source = BundleSource.directory(tmp_path)
        assert source.kind is AdapterKind.DIRECTORY
        assert source.import_source is ImportSource.DIRECTORY
        assert isinstance(open_adapter(source), DirectoryAdapter)

    def test_backup_target_source(self, tmp_path: Path) -> None:
        source = BundleSource.directory(tmp_path, is_backup_target=True)
        assert source.import_source is ImportSource.BACKUP

    async def test_archive_source(self) -> None:
        source = BundleSource.archive(_zip({"manifest.json": b"{}"}), name="export.zip")
        assert source.import_source is ImportSource.ZIP
        adapter = open_adapter(source)
        assert isinstance(adapter, ArchiveAdapter)
        assert await adapter.list_directory("") == ["manifest.json"]

    def test_archive_source_without_data(self) -> None:
        with pytest.raises(StorageAccessError):
            open_adapter(BundleSource(kind=AdapterKind.ARCHIVE))
