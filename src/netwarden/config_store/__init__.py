"""Version store and host lock.

This package provides:
- VersionStore: timestamped, atomically written configuration versions
- HostLock: in-process plus cross-process lock around mutating transactions
"""

from .store import (
    LATEST,
    CapturedFile,
    StoreError,
    Version,
    VersionNotFoundError,
    VersionRecord,
    VersionStore,
    atomic_write_bytes,
)
from .lock import BusyError, HostLock

__all__ = [
    "LATEST",
    "CapturedFile",
    "StoreError",
    "Version",
    "VersionNotFoundError",
    "VersionRecord",
    "VersionStore",
    "atomic_write_bytes",
    "BusyError",
    "HostLock",
]
