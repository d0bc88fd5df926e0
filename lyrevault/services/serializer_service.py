"""Entity serializer: moves document snapshots and file blobs between local stores and bundles."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from lyrevault.filesystem.unified_format import (
    FILE_ENTRY,
    AccountRecord,
    DocumentContent,
    DocumentMetadata,
    FileMetadata,
    ProjectData,
    convert_project_to_metadata,
)
from lyrevault.services.datetime_service import now_ms
from lyrevault.stores.base import BatchWriteOptions, FileRecord, opaque_id_from_url

if TYPE_CHECKING:
    from collections.abc import Mapping, Sequence

    from lyrevault.filesystem.storage_adapter import FileContent
    from lyrevault.filesystem.unified_format import Bundle, BundleMode, ProjectMetadata
    from lyrevault.stores.base import (
        DocumentStore,
        DocumentStoreProvider,
        FileStoreProvider,
        ProjectIndex,
        ProjectRecord,
    )

logger = logging.getLogger(__name__)

DEFAULT_SYNC_TIMEOUT_SECONDS = 2.0

# Restored files are written over whatever is there, keep their original
# timestamps, and come back live even if they were deleted when captured.
RESTORE_WRITE_OPTIONS = BatchWriteOptions(
    skip_conflict_prompt=True,
    preserve_timestamps=True,
    preserve_deletion_flag=False,
)


@dataclass
class CapturedDocuments:
    documents: list[DocumentMetadata] = field(default_factory=list)
    contents: dict[str, DocumentContent] = field(default_factory=dict)


@dataclass
class CapturedFiles:
    files: list[FileMetadata] = field(default_factory=list)
    contents: dict[str, FileContent] = field(default_factory=dict)
    deleted_files: list[FileMetadata] = field(default_factory=list)


def file_record_to_metadata(record: FileRecord) -> FileMetadata:
    return FileMetadata(
        id=record.id,
        name=record.name,
        path=record.path,
        type=record.type,
        last_modified=record.last_modified,
        size=record.size,
        mime_type=record.mime_type,
        is_binary=record.is_binary,
        linked_document_id=record.document_id,
    )


def file_metadata_to_record(entry: FileMetadata, content: FileContent | None) -> FileRecord:
    if not entry.is_file:
        content = None
    size = entry.size
    if size is None:
        size = len(content) if content is not None else 0
    return FileRecord(
        id=entry.id,
        name=entry.name,
        path=entry.path,
        type=entry.type,
        last_modified=entry.last_modified,
        size=size,
        mime_type=entry.mime_type,
        is_binary=entry.is_binary,
        document_id=entry.linked_document_id,
        content=content,
        is_deleted=False,
    )


class ProjectDataSerializer:
    """Captures projects from the local stores and restores bundles into them."""

    def __init__(
        self,
        index: ProjectIndex,
        document_stores: DocumentStoreProvider,
        file_stores: FileStoreProvider,
        *,
        sync_timeout: float = DEFAULT_SYNC_TIMEOUT_SECONDS,
    ) -> None:
        self.index = index
        self.document_stores = document_stores
        self.file_stores = file_stores
        self.sync_timeout = sync_timeout

    async def _wait_synced(self, store: DocumentStore, what: str) -> None:
        if not await store.wait_until_synced(self.sync_timeout):
            logger.warning(
                "Timed out after %.1fs waiting for %s to sync, using available state",
                self.sync_timeout,
                what,
            )

    # ── Capture ──────────────────────────────────────

    async def serialize_user_data(self, user_id: str) -> AccountRecord:
        user = await self.index.get_user_by_id(user_id)
        if user is None:
            raise ValueError(f"User not found: {user_id}")
        return AccountRecord.from_user(user)

    async def serialize_projects(
        self,
        user_id: str,
        mode: BundleMode,
        project_ids: Sequence[str] | None = None,
    ) -> list[ProjectMetadata]:
        """Build the serialized views of a user's projects.

        With ``project_ids``, unknown projects and projects owned by someone
        else are skipped.
        """
        if not project_ids:
            projects = await self.index.list_projects_for_user(user_id)
        else:
            projects = []
            for project_id in project_ids:
                project = await self.index.get_project_by_id(project_id)
                if project is None:
                    logger.warning("Project %s not found, skipping", project_id)
                    continue
                if project.owner_id != user_id:
                    logger.warning(
                        "Project %s does not belong to user %s, skipping", project_id, user_id
                    )
                    continue
                projects.append(project)
        return [convert_project_to_metadata(project, mode) for project in projects]

    async def serialize_project_documents(
        self, project: ProjectRecord | ProjectMetadata
    ) -> CapturedDocuments:
        captured = CapturedDocuments()
        if not project.document_url:
            return captured
        opaque_id = opaque_id_from_url(project.document_url)

        metadata_store = await self.document_stores.open_metadata(opaque_id)
        try:
            await self._wait_synced(metadata_store, f"metadata of project {project.id}")
            index = metadata_store.read_document_index()
        finally:
            await metadata_store.close()

        for entry in index:
            doc_id = entry.get("id")
            if not doc_id:
                continue
            doc_id = str(doc_id)
            try:
                store = await self.document_stores.open_document(opaque_id, doc_id)
                try:
                    await self._wait_synced(store, f"document {doc_id}")
                    snapshot = store.get_full_state_snapshot()
                    text = store.get_plain_text()
                finally:
                    await store.close()
            except Exception:
                logger.exception("Error serializing document %s of project %s", doc_id, project.id)
                continue
            captured.documents.append(
                DocumentMetadata(
                    id=doc_id,
                    name=str(entry.get("name") or f"Document {doc_id}"),
                    last_modified=now_ms(),
                )
            )
            captured.contents[doc_id] = DocumentContent(snapshot=snapshot, readable_text=text)

        return captured

    async def serialize_project_files(
        self, project: ProjectRecord | ProjectMetadata, include_deleted: bool = False
    ) -> CapturedFiles:
        captured = CapturedFiles()
        if not project.document_url:
            return captured

        if not self.file_stores.is_connected(project.opaque_id):
            logger.debug("Connecting file store of project %s", project.id)
        store = await self.file_stores.connect(project.document_url)
        for record in await store.list_all_files(include_deleted):
            entry = file_record_to_metadata(record)
            if record.is_deleted:
                captured.deleted_files.append(entry)
                continue
            captured.files.append(entry)
            if record.type == FILE_ENTRY and record.content is not None:
                captured.contents[record.path] = record.content
        return captured

    async def capture_project(
        self,
        metadata: ProjectMetadata,
        *,
        include_documents: bool = True,
        include_files: bool = True,
    ) -> ProjectData:
        """Capture the documents and live files of one serialized project."""
        data = ProjectData(metadata=metadata)
        if include_documents:
            documents = await self.serialize_project_documents(metadata)
            data.documents = documents.documents
            data.document_contents = documents.contents
        if include_files:
            files = await self.serialize_project_files(metadata)
            data.files = files.files
            data.file_contents = files.contents
        return data

    # ── Restore ──────────────────────────────────────

    async def deserialize_bundle(
        self,
        bundle: Bundle,
        new_project_id: str | None = None,
        new_document_url: str | None = None,
    ) -> None:
        """Write every project of a bundle into the local stores.

        ``new_document_url`` redirects the restore to different stores; it is
        meant for single-project bundles.
        """
        logger.info("Restoring %d projects into local stores", len(bundle.project_data))
        for original_id, project_data in bundle.project_data.items():
            document_url = new_document_url or project_data.metadata.document_url
            await self.restore_project(project_data, document_url)
            logger.info(
                "Restored project %s (%s) with %d documents and %d files",
                new_project_id or original_id,
                project_data.metadata.name,
                len(project_data.documents),
                len(project_data.files),
            )

    async def restore_project(self, project_data: ProjectData, document_url: str) -> None:
        opaque_id = opaque_id_from_url(document_url)
        await self._restore_documents(
            opaque_id,
            project_data.documents,
            project_data.document_contents,
            project_name=project_data.metadata.name,
            project_description=project_data.metadata.description,
        )
        await self._restore_files(document_url, project_data.files, project_data.file_contents)

    async def _restore_documents(
        self,
        opaque_id: str,
        documents: Sequence[DocumentMetadata],
        contents: Mapping[str, DocumentContent],
        *,
        project_name: str | None,
        project_description: str | None,
    ) -> None:
        for doc in documents:
            content = contents.get(doc.id)
            if content is None or content.snapshot is None:
                continue
            store = await self.document_stores.open_document(opaque_id, doc.id)
            try:
                await self._wait_synced(store, f"document {doc.id}")
                store.apply_full_state_snapshot(content.snapshot)
                await store.flush()
            finally:
                await store.close()

        index = [
            {
                "id": doc.id,
                "name": doc.name,
                "content": (contents[doc.id].readable_text or "") if doc.id in contents else "",
            }
            for doc in documents
        ]
        metadata_store = await self.document_stores.open_metadata(opaque_id)
        try:
            await self._wait_synced(metadata_store, f"metadata store {opaque_id}")
            metadata_store.write_project_metadata(
                documents=index,
                current_doc_id=documents[0].id if documents else "",
                project_name=project_name,
                project_description=project_description,
            )
            await metadata_store.flush()
        finally:
            await metadata_store.close()

    async def _restore_files(
        self,
        document_url: str,
        files: Sequence[FileMetadata],
        contents: Mapping[str, FileContent],
    ) -> None:
        if not files:
            return
        records = [file_metadata_to_record(entry, contents.get(entry.path)) for entry in files]
        try:
            store = await self.file_stores.connect(document_url)
            await store.batch_write(records, RESTORE_WRITE_OPTIONS)
        except Exception:
            logger.exception(
                "Error restoring files of %s via the file store, writing them directly",
                document_url,
            )
            await self.file_stores.write_records_directly(opaque_id_from_url(document_url), records)
