"""Import scanner and resolver: discovery and selective import of bundle projects."""

from __future__ import annotations

import logging
import secrets
import string
import uuid
from dataclasses import dataclass, field, replace
from enum import StrEnum
from typing import TYPE_CHECKING

from lyrevault.exceptions import NoBackupFoundError, StorageNotFoundError, VaultError
from lyrevault.filesystem.storage_adapter import open_adapter
from lyrevault.filesystem.unified_format import (
    MANIFEST_FILE,
    Bundle,
    BundleMode,
    create_manifest,
    read_unified_structure,
    validate_structure,
)
from lyrevault.services.datetime_service import now_ms
from lyrevault.stores.base import ProjectRecord, make_document_url

if TYPE_CHECKING:
    from collections.abc import Iterable, Sequence

    from lyrevault.filesystem.storage_adapter import BundleSource, ImportSource
    from lyrevault.filesystem.unified_format import ProjectMetadata
    from lyrevault.services.serializer_service import ProjectDataSerializer
    from lyrevault.stores.base import ProjectIndex

logger = logging.getLogger(__name__)

DOCUMENT_ID_LENGTH = 26
_DOCUMENT_ID_ALPHABET = string.ascii_lowercase + string.digits


class ConflictResolution(StrEnum):
    """What to do when an imported project id already exists locally."""

    SKIP = "skip"
    OVERWRITE = "overwrite"
    CREATE_NEW = "create-new"


@dataclass
class ImportableProject:
    """A bundle project that is not present locally."""

    id: str
    name: str
    description: str
    original_owner_id: str
    last_modified: int
    source: ImportSource
    source_path: str | None = None


@dataclass
class ImportFailure:
    project_id: str
    error: str


@dataclass
class ImportResult:
    """Per-project outcome of a selective import."""

    imported: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)
    errors: list[ImportFailure] = field(default_factory=list)

    def add_error(self, project_id: str, error: str) -> None:
        self.errors.append(ImportFailure(project_id=project_id, error=error))


def generate_document_url() -> str:
    """Allocate a fresh document URL for a remapped project."""
    opaque_id = "".join(secrets.choice(_DOCUMENT_ID_ALPHABET) for _ in range(DOCUMENT_ID_LENGTH))
    return make_document_url(opaque_id)


def generate_unique_project_name(base_name: str, used_names: Iterable[str]) -> str:
    """Return ``base (imported)``, or ``base (imported N)`` for the first free N >= 2."""
    used = set(used_names)
    candidate = f"{base_name} (imported)"
    counter = 2
    while candidate in used:
        candidate = f"{base_name} (imported {counter})"
        counter += 1
    return candidate


def find_importable_projects(
    bundle: Bundle,
    existing_ids: Iterable[str],
    source: ImportSource,
    source_path: str | None = None,
) -> list[ImportableProject]:
    """Return the bundle projects whose id is not in ``existing_ids``."""
    existing = set(existing_ids)
    return [
        ImportableProject(
            id=project.id,
            name=project.name,
            description=project.description,
            original_owner_id=project.owner_id,
            last_modified=project.last_modified,
            source=source,
            source_path=source_path,
        )
        for project in bundle.projects
        if project.id not in existing
    ]


class ProjectImportService:
    """Discovers and imports projects from bundles into the local account."""

    def __init__(self, index: ProjectIndex, serializer: ProjectDataSerializer) -> None:
        self.index = index
        self.serializer = serializer

    async def _existing_project_ids(self) -> set[str] | None:
        user = self.index.get_current_user()
        if user is None:
            return None
        return {project.id for project in await self.index.list_projects_for_user(user.id)}

    async def scan_bundle(
        self, bundle: Bundle, source: ImportSource, source_path: str | None = None
    ) -> list[ImportableProject]:
        """Discovery over an already-read bundle. Never mutates anything."""
        if not validate_structure(bundle):
            return []
        existing = await self._existing_project_ids()
        if existing is None:
            return []
        return find_importable_projects(bundle, existing, source, source_path)

    async def read_source(self, source: BundleSource) -> Bundle | None:
        """Read the bundle at ``source``; None when it holds no manifest."""
        adapter = open_adapter(source)
        if not await adapter.exists(MANIFEST_FILE):
            return None
        try:
            return await read_unified_structure(adapter)
        except StorageNotFoundError:
            return None

    async def scan_source(self, source: BundleSource) -> list[ImportableProject]:
        """Discovery over a directory or archive. Invalid or absent bundles yield ``[]``."""
        try:
            bundle = await self.read_source(source)
        except VaultError as exc:
            logger.error("Error scanning %s for importable projects: %s", source.name, exc)
            return []
        if bundle is None:
            return []
        return await self.scan_bundle(bundle, source.import_source, source.name)

    async def import_from_source(
        self,
        source: BundleSource,
        project_ids: Sequence[str],
        policy: ConflictResolution = ConflictResolution.SKIP,
    ) -> ImportResult:
        result = ImportResult()
        try:
            bundle = await self.read_source(source)
            if bundle is None:
                raise NoBackupFoundError(f"No backup found in {source.name}")
            await self.import_projects(bundle, project_ids, policy, result=result)
        except (VaultError, ValueError) as exc:
            logger.error("Error importing from %s: %s", source.name, exc)
            for project_id in project_ids:
                result.add_error(project_id, str(exc))
        return result

    async def import_projects(
        self,
        bundle: Bundle,
        project_ids: Sequence[str],
        policy: ConflictResolution = ConflictResolution.SKIP,
        *,
        result: ImportResult | None = None,
    ) -> ImportResult:
        """Import the selected bundle projects with the given conflict policy.

        Each project's outcome is recorded independently; a failure for one
        project never aborts the others.
        """
        if result is None:
            result = ImportResult()
        user = self.index.get_current_user()
        if user is None:
            raise ValueError("No current account to import into")

        existing_projects = await self.index.list_projects_for_user(user.id)
        used_names = {project.name for project in existing_projects}

        for project_id in project_ids:
            try:
                imported = await self._import_one(bundle, project_id, policy, user.id, used_names)
            except Exception as exc:
                logger.exception("Error importing project %s", project_id)
                result.add_error(project_id, str(exc) or type(exc).__name__)
                continue
            if imported:
                result.imported.append(project_id)
            else:
                result.skipped.append(project_id)

        logger.info(
            "Import finished: %d imported, %d skipped, %d errors",
            len(result.imported),
            len(result.skipped),
            len(result.errors),
        )
        return result

    async def _import_one(
        self,
        bundle: Bundle,
        project_id: str,
        policy: ConflictResolution,
        owner_id: str,
        used_names: set[str],
    ) -> bool:
        metadata = bundle.find_project(project_id)
        if metadata is None:
            raise ValueError("Project not found in source")

        final_id = metadata.id
        final_name = metadata.name
        final_url = metadata.document_url

        existing = await self.index.get_project_by_id(project_id)
        if policy is ConflictResolution.CREATE_NEW:
            final_id = str(uuid.uuid4())
            final_url = generate_document_url()
            if final_name in used_names:
                final_name = generate_unique_project_name(final_name, used_names)
        elif existing is not None:
            if policy is ConflictResolution.SKIP:
                logger.info("Project %s already exists, skipping", project_id)
                return False
            await self.index.delete_project_and_cleanup_stores(project_id)

        await self._create_project_directly(metadata, final_id, final_name, final_url, owner_id)
        used_names.add(final_name)

        project_data = bundle.project_data.get(project_id)
        if project_data is not None:
            remapped = replace(
                project_data,
                metadata=replace(
                    project_data.metadata, id=final_id, name=final_name, document_url=final_url
                ),
            )
            single = Bundle(
                manifest=create_manifest(BundleMode.IMPORT),
                projects=[remapped.metadata],
                project_data={final_id: remapped},
            )
            await self.serializer.deserialize_bundle(single, final_id, final_url)
        return True

    async def _create_project_directly(
        self,
        metadata: ProjectMetadata,
        project_id: str,
        name: str,
        document_url: str,
        owner_id: str,
    ) -> None:
        timestamp = now_ms()
        await self.index.insert_or_replace_project_record(
            ProjectRecord(
                id=project_id,
                name=name,
                description=metadata.description,
                type=metadata.type or "latex",
                document_url=document_url,
                created_at=timestamp,
                updated_at=timestamp,
                owner_id=owner_id,
                tags=list(metadata.tags),
                is_favorite=False,
                skip_peer_check=True,
            )
        )
