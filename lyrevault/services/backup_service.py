"""Reconciliation orchestrator: backup/export/import state machine over a storage target.

Backups merge before they write: whatever bundle already exists at the target
is read first and only the projects being backed up are replaced in it, so an
incremental "back up just this project" never drops previously backed-up
projects. Projects are matched by document URL, because the same backup tree
may have been written from a different local database with different ids.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import TYPE_CHECKING, Any

from lyrevault.exceptions import (
    BackupNotReadyError,
    BundleFormatError,
    NoBackupFoundError,
    StorageAccessError,
    StorageNotFoundError,
    VaultError,
)
from lyrevault.filesystem.storage_adapter import ArchiveAdapter, BundleSource, open_adapter
from lyrevault.filesystem.unified_format import (
    MANIFEST_FILE,
    Bundle,
    BundleMode,
    ExportFormat,
    ProjectData,
    ProjectMetadata,
    create_manifest,
    read_unified_structure,
    write_files_only_structure,
    write_unified_structure,
)
from lyrevault.schemas.backup import (
    ActivityType,
    BackupActivity,
    BackupState,
    BackupStatus,
    ErrorKind,
)
from lyrevault.services.account_service import ProjectEventType
from lyrevault.services.datetime_service import archive_timestamp, now_ms
from lyrevault.stores.base import AccountUser, ProjectRecord

if TYPE_CHECKING:
    from collections.abc import Callable, Coroutine, Iterable, Mapping, Sequence

    from lyrevault.config import Settings
    from lyrevault.filesystem.storage_adapter import StorageAdapter
    from lyrevault.filesystem.unified_format import AccountRecord
    from lyrevault.services.account_service import ProjectEvent
    from lyrevault.services.import_service import (
        ConflictResolution,
        ImportableProject,
        ImportResult,
        ProjectImportService,
    )
    from lyrevault.services.serializer_service import ProjectDataSerializer
    from lyrevault.stores.base import ProjectIndex

logger = logging.getLogger(__name__)

NOT_READY_MESSAGE = "Backup not enabled or folder not connected."


@dataclass
class DiscoveryResult:
    """Outcome of the automatic scan of a newly connected backup directory."""

    has_importable_projects: bool
    projects: list[ImportableProject] = field(default_factory=list)


@dataclass
class ExportOptions:
    include_account: bool = True
    include_documents: bool = True
    include_files: bool = True
    project_ids: list[str] | None = None
    format: ExportFormat = ExportFormat.UNIFIED


@dataclass
class ExportArchive:
    filename: str
    data: bytes
    project_count: int


@dataclass
class AccountImportResult:
    imported_user: bool = False
    created: list[str] = field(default_factory=list)
    updated: list[str] = field(default_factory=list)


def classify_error(exc: BaseException) -> ErrorKind:
    if isinstance(exc, NoBackupFoundError):
        return ErrorKind.NO_BACKUP
    if isinstance(exc, BundleFormatError):
        return ErrorKind.FORMAT
    if isinstance(exc, StorageAccessError):
        return ErrorKind.ACCESS
    return ErrorKind.OTHER


def merge_projects(
    existing: Iterable[ProjectMetadata], fresh: Iterable[ProjectMetadata]
) -> list[ProjectMetadata]:
    """Replace existing index entries by fresh ones with the same document URL.

    Existing entries that are not replaced keep their position and content.
    An existing entry whose id is reused by a fresh entry is dropped so ids
    stay unique within the bundle.
    """
    fresh = list(fresh)
    fresh_ids = {project.id for project in fresh}
    merged: dict[str, ProjectMetadata] = {}
    for project in existing:
        if project.id in fresh_ids:
            continue
        merged[project.document_url] = project
    for project in fresh:
        merged[project.document_url] = project
    return list(merged.values())


def merge_project_data(
    existing: Mapping[str, ProjectData],
    fresh: Mapping[str, ProjectData],
    projects: Iterable[ProjectMetadata],
) -> dict[str, ProjectData]:
    """Overlay freshly captured project data on existing data, keyed by project id.

    Only data of projects still present in the merged index is kept.
    """
    keep = {project.id for project in projects}
    merged = {pid: data for pid, data in existing.items() if pid in keep}
    merged.update(fresh)
    return merged


class BackupService:
    """Owns the backup target, status, activity log and listeners.

    Constructed once by the host application. Operations against the target
    are serialized by a single lock; sync gating (enabled + connected) is
    checked before and after acquiring it.
    """

    def __init__(
        self,
        settings: Settings,
        index: ProjectIndex,
        serializer: ProjectDataSerializer,
        importer: ProjectImportService,
    ) -> None:
        self.settings = settings
        self.index = index
        self.serializer = serializer
        self.importer = importer
        self._target: Path | None = None
        self._enabled = False
        self._status = BackupStatus()
        self._activities: list[BackupActivity] = []
        self._status_listeners: list[Callable[[BackupStatus], None]] = []
        self._activity_listeners: list[Callable[[list[BackupActivity]], None]] = []
        self._discovery_listeners: list[Callable[[DiscoveryResult], None]] = []
        self._last_discovery: DiscoveryResult | None = None
        self._lock = asyncio.Lock()
        self._background_tasks: set[asyncio.Task[Any]] = set()
        self._discovery_task: asyncio.Task[None] | None = None

    # ── Status and activity log ──────────────────────

    @property
    def target(self) -> Path | None:
        return self._target

    @property
    def can_sync(self) -> bool:
        return self._target is not None and self._enabled

    def get_status(self) -> BackupStatus:
        return self._status.model_copy()

    def get_activities(self) -> list[BackupActivity]:
        return list(self._activities)

    def get_last_discovery(self) -> DiscoveryResult | None:
        return self._last_discovery

    def add_activity(
        self, type: ActivityType, message: str, data: dict[str, Any] | None = None
    ) -> BackupActivity:
        activity = BackupActivity(
            id=uuid.uuid4().hex[:12],
            type=type,
            message=message,
            timestamp=now_ms(),
            data=data,
        )
        limit = self.settings.activity_log_limit
        self._activities = [*self._activities, activity][-limit:]
        self._notify(self._activity_listeners, self.get_activities())
        return activity

    def clear_activity(self, activity_id: str) -> bool:
        remaining = [a for a in self._activities if a.id != activity_id]
        if len(remaining) == len(self._activities):
            return False
        self._activities = remaining
        self._notify(self._activity_listeners, self.get_activities())
        return True

    def clear_all_activities(self) -> None:
        self._activities = []
        self._notify(self._activity_listeners, [])

    def add_status_listener(self, listener: Callable[[BackupStatus], None]) -> Callable[[], None]:
        return self._subscribe(self._status_listeners, listener)

    def add_activity_listener(
        self, listener: Callable[[list[BackupActivity]], None]
    ) -> Callable[[], None]:
        return self._subscribe(self._activity_listeners, listener)

    def add_discovery_listener(
        self, listener: Callable[[DiscoveryResult], None]
    ) -> Callable[[], None]:
        return self._subscribe(self._discovery_listeners, listener)

    @staticmethod
    def _subscribe(listeners: list[Any], listener: Any) -> Callable[[], None]:
        listeners.append(listener)

        def _unsubscribe() -> None:
            if listener in listeners:
                listeners.remove(listener)

        return _unsubscribe

    @staticmethod
    def _notify(listeners: list[Any], payload: object) -> None:
        for listener in list(listeners):
            try:
                listener(payload)
            except Exception:
                logger.exception("Backup listener failed")

    def _update_status(self, **updates: Any) -> None:
        self._status = self._status.model_copy(update=updates)
        self._notify(self._status_listeners, self.get_status())

    def _handle_error(self, activity_type: ActivityType, message: str, exc: Exception) -> None:
        error_message = str(exc) or type(exc).__name__
        if isinstance(exc, VaultError):
            logger.error("%s: %s", message, error_message)
        else:
            logger.exception("%s", message)
        self.add_activity(activity_type, f"{message}: {error_message}")
        self._update_status(
            state=BackupState.ERROR, error=error_message, error_kind=classify_error(exc)
        )

    # ── Storage target ───────────────────────────────

    async def _grant(self, directory: Path | None) -> Path:
        if directory is None:
            directory = self.settings.backup_dir
        if directory is None:
            raise StorageAccessError("No backup directory selected")
        target = directory.expanduser()

        def _prepare() -> Path:
            try:
                target.mkdir(parents=True, exist_ok=True)
            except FileExistsError as exc:
                raise StorageAccessError(f"Not a directory: {target}") from exc
            except OSError as exc:
                raise StorageAccessError(f"Cannot access {target}: {exc}") from exc
            if not target.is_dir():
                raise StorageAccessError(f"Not a directory: {target}")
            return target.resolve()

        return await asyncio.to_thread(_prepare)

    async def request_access(self, directory: Path | None = None) -> bool:
        """Connect a backup directory (the configured default when None)."""
        try:
            self._target = await self._grant(directory)
        except StorageAccessError as exc:
            logger.warning("Backup directory access failed: %s", exc)
            self._update_status(
                state=BackupState.ERROR, error=str(exc), error_kind=ErrorKind.ACCESS
            )
            return False
        self._update_status(
            state=BackupState.IDLE,
            is_connected=True,
            error=None,
            error_kind=None,
            target=str(self._target),
        )
        logger.info("Connected backup directory %s", self._target)
        self._schedule_discovery()
        return True

    async def change_directory(self, directory: Path) -> bool:
        """Switch to another backup directory; the current one stays on failure."""
        try:
            self._target = await self._grant(directory)
        except StorageAccessError as exc:
            logger.warning("Changing backup directory failed: %s", exc)
            self._update_status(
                state=BackupState.ERROR, error=str(exc), error_kind=ErrorKind.ACCESS
            )
            return False
        self._update_status(
            state=BackupState.IDLE,
            is_connected=True,
            error=None,
            error_kind=None,
            target=str(self._target),
        )
        self.add_activity(ActivityType.BACKUP_COMPLETE, "Backup directory changed successfully")
        self._schedule_discovery()
        return True

    async def disconnect(self) -> None:
        if self._discovery_task is not None:
            self._discovery_task.cancel()
            self._discovery_task = None
        self._target = None
        self._enabled = False
        self._last_discovery = None
        self._update_status(
            state=BackupState.DISCONNECTED,
            is_connected=False,
            is_enabled=False,
            target=None,
        )
        logger.info("Disconnected backup directory")

    def set_enabled(self, enabled: bool) -> None:
        self._enabled = enabled
        self._update_status(is_enabled=enabled)

    def _backup_source(self) -> BundleSource:
        if self._target is None:
            raise BackupNotReadyError("No backup directory connected")
        return BundleSource.directory(self._target, is_backup_target=True)

    def _backup_adapter(self) -> StorageAdapter:
        return open_adapter(self._backup_source())

    def _reject_not_ready(self, activity_type: ActivityType) -> bool:
        if self.can_sync:
            return False
        logger.info("Rejected backup operation: %s", NOT_READY_MESSAGE)
        self.add_activity(activity_type, NOT_READY_MESSAGE)
        return True

    # ── Backup direction ─────────────────────────────

    async def synchronize(self, project_id: str | None = None) -> bool:
        return await self.export_to_storage(project_id)

    async def export_to_storage(self, project_id: str | None = None) -> bool:
        """Back up one project, or every project of the current account.

        Returns False when the call was rejected or failed; the reason is in
        the activity log and, for failures, in the status.
        """
        if self._reject_not_ready(ActivityType.BACKUP_ERROR):
            return False
        async with self._lock:
            if self._reject_not_ready(ActivityType.BACKUP_ERROR):
                return False
            self._update_status(state=BackupState.SYNCING)
            self.add_activity(
                ActivityType.BACKUP_START,
                f"Starting export for project: {project_id}"
                if project_id
                else "Starting full export...",
            )
            try:
                adapter = self._backup_adapter()
                bundle = await self._prepare_backup_bundle(adapter, project_id)
                await write_unified_structure(adapter, bundle)
            except Exception as exc:
                self._handle_error(ActivityType.BACKUP_ERROR, "Export failed", exc)
                return False
            self.add_activity(
                ActivityType.BACKUP_COMPLETE,
                "Export completed successfully",
                {"projects": len(bundle.projects)},
            )
            self._update_status(
                state=BackupState.IDLE, last_sync=now_ms(), error=None, error_kind=None
            )
            return True

    def _require_user(self) -> AccountUser:
        user = self.index.get_current_user()
        if user is None:
            raise ValueError("No current account")
        return user

    async def _prepare_backup_bundle(
        self, adapter: StorageAdapter, project_id: str | None
    ) -> Bundle:
        user = self._require_user()
        fresh = await self.serializer.serialize_projects(
            user.id, BundleMode.BACKUP, [project_id] if project_id else None
        )
        if not fresh:
            raise ValueError(f"Project {project_id} not found" if project_id else "No projects found")

        account = await self.serializer.serialize_user_data(user.id)
        existing = await self._read_existing_bundle(adapter)

        fresh_data: dict[str, ProjectData] = {}
        for metadata in fresh:
            fresh_data[metadata.id] = await self.serializer.capture_project(metadata)

        projects = merge_projects(existing.projects if existing else [], fresh)
        project_data = merge_project_data(
            existing.project_data if existing else {}, fresh_data, projects
        )
        return Bundle(
            manifest=create_manifest(BundleMode.BACKUP),
            account=account,
            user_data=existing.user_data if existing else None,
            projects=projects,
            project_data=project_data,
        )

    async def _read_existing_bundle(self, adapter: StorageAdapter) -> Bundle | None:
        """Read the bundle already at the target; unreadable bundles count as absent."""
        if not await adapter.exists(MANIFEST_FILE):
            return None
        try:
            return await read_unified_structure(adapter)
        except (BundleFormatError, StorageNotFoundError) as exc:
            logger.warning("Could not read existing backup data, overwriting it: %s", exc)
            return None

    # ── Import direction ─────────────────────────────

    async def import_changes(self, project_id: str | None = None) -> bool:
        """Reconcile the bundle at the target into the local stores."""
        if self._reject_not_ready(ActivityType.IMPORT_ERROR):
            return False
        async with self._lock:
            if self._reject_not_ready(ActivityType.IMPORT_ERROR):
                return False
            self._update_status(state=BackupState.SYNCING)
            self.add_activity(
                ActivityType.IMPORT_START,
                f"Starting import for project: {project_id}"
                if project_id
                else "Starting import from filesystem...",
            )
            try:
                adapter = self._backup_adapter()
                if not await adapter.exists(MANIFEST_FILE):
                    raise NoBackupFoundError("No backup data found in filesystem")
                bundle = await read_unified_structure(adapter)
                await self._apply_import(bundle, project_id)
            except Exception as exc:
                self._handle_error(ActivityType.IMPORT_ERROR, "Import failed", exc)
                return False
            self.add_activity(
                ActivityType.IMPORT_COMPLETE,
                f"Successfully imported project: {project_id}"
                if project_id
                else "Successfully imported projects from filesystem",
            )
            self._update_status(
                state=BackupState.IDLE, last_sync=now_ms(), error=None, error_kind=None
            )
            return True

    async def _apply_import(self, bundle: Bundle, project_id: str | None) -> None:
        user = self._require_user()
        if project_id:
            targets = [p for p in bundle.projects if p.id == project_id]
            if not targets:
                raise ValueError(f"Project {project_id} not found in backup data")
        else:
            targets = list(bundle.projects)

        for metadata in targets:
            if await self.index.get_project_by_id(metadata.id) is None:
                await self.index.insert_or_replace_project_record(
                    ProjectRecord(
                        id=metadata.id,
                        name=metadata.name,
                        description=metadata.description,
                        type=metadata.type or "latex",
                        document_url=metadata.document_url,
                        created_at=metadata.created_at,
                        updated_at=now_ms(),
                        owner_id=user.id,
                        tags=list(metadata.tags),
                        is_favorite=metadata.is_favorite,
                    )
                )
            project_data = bundle.project_data.get(metadata.id)
            if project_data is not None:
                await self.serializer.deserialize_bundle(
                    Bundle(
                        manifest=bundle.manifest,
                        projects=[metadata],
                        project_data={metadata.id: project_data},
                    )
                )

    # ── Discovery and selective import ───────────────

    async def scan_for_importable_projects(
        self, source: BundleSource | None = None
    ) -> list[ImportableProject]:
        """Projects in ``source`` (the connected directory when None) absent locally."""
        return await self.importer.scan_source(source or self._backup_source())

    async def import_selected(
        self,
        source: BundleSource | None,
        project_ids: Sequence[str],
        policy: ConflictResolution,
    ) -> ImportResult:
        source = source or self._backup_source()
        async with self._lock:
            self.add_activity(
                ActivityType.IMPORT_START,
                f"Importing {len(project_ids)} selected project(s) from {source.name}",
            )
            result = await self.importer.import_from_source(source, project_ids, policy)
            summary = {
                "imported": len(result.imported),
                "skipped": len(result.skipped),
                "errors": len(result.errors),
            }
            if result.errors and not result.imported:
                self.add_activity(
                    ActivityType.IMPORT_ERROR,
                    f"Import failed for {len(result.errors)} project(s)",
                    summary,
                )
            else:
                self.add_activity(
                    ActivityType.IMPORT_COMPLETE,
                    f"Imported {len(result.imported)} project(s), skipped {len(result.skipped)}",
                    summary,
                )
            return result

    def _schedule_discovery(self) -> None:
        if self._discovery_task is not None:
            self._discovery_task.cancel()
        self._last_discovery = None
        target = self._target
        if target is None:
            return
        self._discovery_task = self._spawn(self._run_discovery(target))

    async def _run_discovery(self, target: Path) -> None:
        await asyncio.sleep(self.settings.discovery_delay_seconds)
        if self._target != target:
            return
        try:
            projects = await self.importer.scan_source(
                BundleSource.directory(target, is_backup_target=True)
            )
        except Exception:
            logger.exception("Error scanning %s for importable projects", target)
            self.add_activity(ActivityType.BACKUP_ERROR, "Error scanning for importable projects")
            return
        result = DiscoveryResult(has_importable_projects=bool(projects), projects=projects)
        self._last_discovery = result
        if not projects:
            return
        plural = "" if len(projects) == 1 else "s"
        self.add_activity(
            ActivityType.BACKUP_COMPLETE,
            f"Found {len(projects)} importable project{plural} in backup directory",
            {"project_ids": [p.id for p in projects]},
        )
        self._notify(self._discovery_listeners, result)

    # ── Archive export/import ────────────────────────

    async def export_archive(self, options: ExportOptions | None = None) -> ExportArchive:
        """Export projects of the current account into a downloadable archive."""
        options = options or ExportOptions()
        user = self._require_user()

        account = (
            await self.serializer.serialize_user_data(user.id) if options.include_account else None
        )
        projects = await self.serializer.serialize_projects(
            user.id, BundleMode.EXPORT, options.project_ids
        )
        if options.project_ids and not projects:
            raise ValueError("No matching projects to export")

        project_data: dict[str, ProjectData] = {}
        for metadata in projects:
            project_data[metadata.id] = await self.serializer.capture_project(
                metadata,
                include_documents=options.include_documents,
                include_files=options.include_files,
            )
        bundle = Bundle(
            manifest=create_manifest(BundleMode.EXPORT),
            account=account,
            projects=projects,
            project_data=project_data,
        )

        adapter = ArchiveAdapter()
        if options.format is ExportFormat.FILES_ONLY:
            await write_files_only_structure(adapter, bundle)
        else:
            await write_unified_structure(adapter, bundle)

        timestamp = archive_timestamp()
        if options.include_account:
            scope = "project" if options.project_ids else "account"
            filename = f"lyrevault-{scope}-export-{timestamp}.zip"
        else:
            filename = f"lyrevault-projects-{options.format}-{timestamp}.zip"
        logger.info("Exported %d projects to %s", len(projects), filename)
        return ExportArchive(
            filename=filename, data=adapter.generate_archive(), project_count=len(projects)
        )

    async def import_account_archive(self, data: bytes) -> AccountImportResult:
        """Import an account export archive into the local stores."""
        self.add_activity(ActivityType.IMPORT_START, "Starting account import from archive...")
        try:
            result = await self._import_account_archive(data)
        except Exception as exc:
            error_message = str(exc) or type(exc).__name__
            if isinstance(exc, VaultError):
                logger.error("Account import failed: %s", error_message)
            else:
                logger.exception("Account import failed")
            self.add_activity(ActivityType.IMPORT_ERROR, f"Account import failed: {error_message}")
            raise
        self.add_activity(
            ActivityType.IMPORT_COMPLETE,
            f"Imported account archive: {len(result.created)} created, "
            f"{len(result.updated)} updated",
        )
        return result

    async def _import_account_archive(self, data: bytes) -> AccountImportResult:
        adapter = ArchiveAdapter.from_bytes(data)
        if not await adapter.exists(MANIFEST_FILE):
            raise NoBackupFoundError("Archive holds no backup manifest")
        bundle = await read_unified_structure(adapter)

        result = AccountImportResult()
        imported_user: AccountUser | None = None
        if bundle.manifest.mode is BundleMode.EXPORT and bundle.account and bundle.projects:
            imported_user = await self._import_user(bundle.account)
            result.imported_user = imported_user is not None

        target_user = self.index.get_current_user() or imported_user
        if target_user is None:
            raise ValueError("No user available for project import")

        for metadata in bundle.projects:
            existing = await self.index.get_project_by_id(metadata.id)
            if existing is None:
                await self.index.insert_or_replace_project_record(
                    ProjectRecord(
                        id=metadata.id,
                        name=metadata.name,
                        description=metadata.description,
                        type=metadata.type or "latex",
                        document_url=metadata.document_url,
                        created_at=metadata.created_at,
                        updated_at=now_ms(),
                        owner_id=target_user.id,
                        tags=list(metadata.tags),
                        is_favorite=metadata.is_favorite,
                    )
                )
                result.created.append(metadata.id)
            elif metadata.exported_at is not None and metadata.exported_at > existing.updated_at:
                await self.index.update_project(
                    replace(
                        existing,
                        name=metadata.name,
                        description=metadata.description,
                        tags=list(metadata.tags),
                        is_favorite=metadata.is_favorite,
                    )
                )
                result.updated.append(metadata.id)

        await self.serializer.deserialize_bundle(bundle)
        return result

    async def _import_user(self, account: AccountRecord) -> AccountUser | None:
        """Insert the archived account when absent. Failures leave the current user in charge."""
        try:
            existing = await self.index.get_user_by_id(account.id)
            if existing is not None:
                logger.warning("User %s already exists, skipping user import", account.username)
                return None
            user = replace(account.to_user(), last_login=now_ms())
            await self.index.insert_user_record(user)
        except Exception:
            logger.exception("User import failed, projects will be imported for the current user")
            return None
        logger.info("Imported user %s", account.username)
        return user

    # ── Auto-sync ────────────────────────────────────

    def handle_project_event(self, event: ProjectEvent) -> None:
        """Schedule a best-effort background backup after a project mutation."""
        if not self.settings.auto_sync_enabled or not self.can_sync:
            return
        project_id = None if event.type is ProjectEventType.DELETED else event.project_id
        logger.debug("Scheduling automatic backup after %s of %s", event.type, event.project_id)
        self._spawn(self._auto_sync(project_id))

    async def _auto_sync(self, project_id: str | None) -> None:
        try:
            await self.synchronize(project_id)
        except Exception as exc:
            logger.exception("Automatic backup failed")
            self.add_activity(ActivityType.BACKUP_ERROR, f"Automatic backup failed: {exc}")

    def _spawn(self, coro: Coroutine[Any, Any, Any]) -> asyncio.Task[Any]:
        task = asyncio.create_task(coro)
        self._background_tasks.add(task)
        task.add_done_callback(self._background_tasks.discard)
        return task

    async def wait_for_background_tasks(self) -> None:
        """Wait until scheduled auto-syncs and discovery scans have finished."""
        while self._background_tasks:
            await asyncio.gather(*list(self._background_tasks), return_exceptions=True)

    async def shutdown(self) -> None:
        for task in list(self._background_tasks):
            task.cancel()
        await asyncio.gather(*list(self._background_tasks), return_exceptions=True)
