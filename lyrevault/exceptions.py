"""Application-level exception types.

Convention:
- ``StorageAccessError``: the backup destination could not be reached
  (permission denied, directory grant invalidated, picker cancelled, I/O
  failure). ``StorageNotFoundError`` narrows it to "path does not exist";
  storage adapters translate backend-specific exceptions into these two types.
- ``BundleFormatError``: the data at the destination is not a usable backup
  (unparseable JSON, failed structural validation, unsupported version).
  ``NoBackupFoundError`` narrows it to "there is no manifest at all", so
  callers can say "this isn't a backup" rather than "couldn't reach storage".
- ``ValueError``: for business logic validation errors that are safe to
  forward to clients. The global ``ValueError`` handler returns ``str(exc)``
  as the 422 detail.
"""

from __future__ import annotations


class VaultError(Exception):
    """Base class for backup engine errors."""


class StorageAccessError(VaultError):
    """Raised when the storage target cannot be read or written."""


class StorageNotFoundError(StorageAccessError):
    """Raised when a path, or one of its parent directories, does not exist."""


class BundleFormatError(VaultError):
    """Raised when a bundle fails structural validation."""


class NoBackupFoundError(BundleFormatError):
    """Raised when the storage target holds no manifest."""


class BackupNotReadyError(VaultError):
    """Raised when a sync is requested while disabled or without a storage target."""


class FileConflictError(VaultError):
    """Raised when a file store write needs a conflict decision that was not pre-granted."""

