"""Version store for host network configurations.

Every transaction snapshots the live configuration here before touching
anything, so any earlier state can be brought back byte-for-byte.

Directory structure:
    <base>/
    ├── versions/
    │   ├── 20261019T101500123456Z/
    │   │   ├── configuration.yaml   # structured model
    │   │   ├── meta.yaml            # id, time, file checksums
    │   │   └── files/               # captured file bytes
    │   └── CURRENT                  # id of the last committed transaction's version
    └── state/
        └── canonical.yaml           # model of what is currently applied

Version ids are UTC timestamps, so "latest" is the lexicographically
greatest directory name. Versions are written to a hidden temp directory
and renamed into place; a crash never leaves a partial version behind.
Callers must hold the host lock around ``set_current`` and
``save_canonical``.
"""
import hashlib
import logging
import os
import shutil
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Iterable, Optional, Union

import yaml

from ..config.schema import ConfigFormatError, NetworkConfiguration

logger = logging.getLogger(__name__)

VERSION_ID_FORMAT = "%Y%m%dT%H%M%S%fZ"
LATEST = "latest"
TEMP_PREFIX = ".tmp-"

CONFIGURATION_FILE = "configuration.yaml"
META_FILE = "meta.yaml"
FILES_DIR = "files"
CURRENT_POINTER = "CURRENT"
CANONICAL_FILE = "canonical.yaml"


class StoreError(Exception):
    """The version store could not be read or written."""
    pass


class VersionNotFoundError(StoreError):
    """No version with the requested id exists."""

    def __init__(self, version_id: str):
        super().__init__(f"Version '{version_id}' not found")
        self.version_id = version_id


def atomic_write_bytes(path: Path, data: bytes) -> None:
    """Write ``data`` to ``path`` via a sibling temp file and rename.

    Readers see either the old content or the new one, never a mix.
    """
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_name(f".{path.name}.netwarden-tmp")
    with open(tmp, "wb") as f:
        f.write(data)
        f.flush()
        os.fsync(f.fileno())
    os.replace(tmp, path)


def _sha256(data: bytes) -> str:
    return "sha256:" + hashlib.sha256(data).hexdigest()


@dataclass
class CapturedFile:
    """One file as it was when the version was taken."""
    path: str
    stored_as: Optional[str]
    present: bool
    checksum: Optional[str] = None
    size: int = 0

    def to_dict(self) -> dict:
        return {
            "path": self.path,
            "stored_as": self.stored_as,
            "present": self.present,
            "checksum": self.checksum,
            "size": self.size,
        }


@dataclass
class Version:
    """An immutable snapshot of a configuration and the files behind it."""
    id: str
    created_at: datetime
    configuration: NetworkConfiguration
    files: list[CapturedFile] = field(default_factory=list)
    description: str = ""
    directory: Optional[Path] = None

    def file_bytes(self, path: Union[str, Path]) -> Optional[bytes]:
        """Captured content of ``path``; None if it did not exist at snapshot time."""
        for captured in self.files:
            if captured.path == str(path):
                if not captured.present:
                    return None
                return (self.directory / FILES_DIR / captured.stored_as).read_bytes()
        raise KeyError(f"{path} was not captured in version {self.id}")


@dataclass
class VersionRecord:
    """Listing entry for front ends."""
    id: str
    created_at: str
    description: str
    files: list[str]
    current: bool = False

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "created_at": self.created_at,
            "description": self.description,
            "files": self.files,
            "current": self.current,
        }


class VersionStore:
    """Durable, timestamped configuration versions."""

    def __init__(self, base_dir: Path):
        """
        Initialize the version store.

        Args:
            base_dir: Root directory; versions/ and state/ are created below it
        """
        self.base_dir = Path(base_dir)
        self._ensure_directories()

    @property
    def versions_dir(self) -> Path:
        return self.base_dir / "versions"

    @property
    def state_dir(self) -> Path:
        return self.base_dir / "state"

    def _ensure_directories(self) -> None:
        for d in (self.versions_dir, self.state_dir):
            d.mkdir(parents=True, exist_ok=True)
        logger.debug(f"Version store initialized at {self.base_dir}")

    # === Version Management ===

    def save(
        self,
        config: NetworkConfiguration,
        files: Iterable[Path] = (),
        description: str = "",
    ) -> Version:
        """
        Persist ``config`` and the current bytes of ``files`` as a new version.

        Files that do not exist are recorded as absent, so restoring the
        version removes them again.

        Args:
            config: Structured configuration to store
            files: Files to capture byte-for-byte
            description: Why the version was taken

        Returns:
            The new Version

        Raises:
            StoreError: If anything could not be written
        """
        created_at = datetime.now(timezone.utc)
        version_id = self._new_id(created_at)
        tmp_dir = self.versions_dir / f"{TEMP_PREFIX}{version_id}"
        final_dir = self.versions_dir / version_id

        try:
            (tmp_dir / FILES_DIR).mkdir(parents=True)
            captured = []
            for index, path in enumerate(files):
                path = Path(path)
                if not path.exists():
                    captured.append(CapturedFile(path=str(path), stored_as=None, present=False))
                    continue
                data = path.read_bytes()
                stored_as = f"{index:02d}-{path.name}"
                (tmp_dir / FILES_DIR / stored_as).write_bytes(data)
                captured.append(CapturedFile(
                    path=str(path),
                    stored_as=stored_as,
                    present=True,
                    checksum=_sha256(data),
                    size=len(data),
                ))

            (tmp_dir / CONFIGURATION_FILE).write_text(
                yaml.safe_dump(config.to_dict(), default_flow_style=False, sort_keys=False)
            )
            meta = {
                "id": version_id,
                "created_at": created_at.isoformat(),
                "description": description,
                "files": [c.to_dict() for c in captured],
            }
            (tmp_dir / META_FILE).write_text(yaml.safe_dump(meta, default_flow_style=False, sort_keys=False))

            os.rename(tmp_dir, final_dir)
        except OSError as e:
            shutil.rmtree(tmp_dir, ignore_errors=True)
            raise StoreError(f"Failed to save version {version_id}: {e}") from e

        logger.info(f"Saved version {version_id} ({len(captured)} file(s) captured)")
        return Version(
            id=version_id,
            created_at=created_at,
            configuration=config,
            files=captured,
            description=description,
            directory=final_dir,
        )

    def _new_id(self, created_at: datetime) -> str:
        base = created_at.strftime(VERSION_ID_FORMAT)
        existing = self._version_ids()
        latest = existing[-1] if existing else ""
        if base > latest and not (self.versions_dir / base).exists():
            return base
        # Same microsecond or a clock step backwards: stay strictly after the latest
        stem = max(base, latest.split("-")[0])
        counter = 1
        while True:
            candidate = f"{stem}-{counter:03d}"
            if candidate > latest and not (self.versions_dir / candidate).exists():
                return candidate
            counter += 1

    def _version_ids(self) -> list[str]:
        if not self.versions_dir.exists():
            return []
        return sorted(
            p.name for p in self.versions_dir.iterdir()
            if p.is_dir() and not p.name.startswith(".")
        )

    def records(self) -> list[VersionRecord]:
        """Version listing with human-readable times, newest first."""
        current = self.get_current()
        records = []
        for vid in reversed(self._version_ids()):
            meta = self._read_meta(vid)
            records.append(VersionRecord(
                id=vid,
                created_at=self._created_at(vid).strftime("%Y-%m-%d %H:%M:%S UTC"),
                description=meta.get("description", ""),
                files=[f["path"] for f in meta.get("files", [])],
                current=(vid == current),
            ))
        return records

    def resolve(self, version_id: str = LATEST) -> str:
        """Turn "latest" into a concrete id and check that the version exists."""
        if version_id == LATEST:
            ids = self._version_ids()
            if not ids:
                raise VersionNotFoundError(LATEST)
            return ids[-1]
        if version_id.startswith(".") or "/" in version_id or not (self.versions_dir / version_id).is_dir():
            raise VersionNotFoundError(version_id)
        return version_id

    def load(self, version_id: str = LATEST) -> Version:
        """Load a version with its captured file index."""
        vid = self.resolve(version_id)
        directory = self.versions_dir / vid
        meta = self._read_meta(vid)

        try:
            data = yaml.safe_load((directory / CONFIGURATION_FILE).read_text())
            configuration = NetworkConfiguration.from_dict(data)
        except (OSError, yaml.YAMLError, ConfigFormatError) as e:
            raise StoreError(f"Version {vid} has an unreadable configuration: {e}") from e

        return Version(
            id=vid,
            created_at=self._created_at(vid),
            configuration=configuration,
            files=[CapturedFile(**f) for f in meta.get("files", [])],
            description=meta.get("description", ""),
            directory=directory,
        )

    def restore(self, version_id: str = LATEST) -> NetworkConfiguration:
        """Configuration of a version. Never deletes or rewrites anything."""
        return self.load(version_id).configuration

    def restore_files(self, version: Version) -> list[str]:
        """
        Put every captured file back exactly as it was.

        Checksums are verified before anything is written. Files that were
        absent when the version was taken are removed.

        Returns:
            Paths that were written or removed

        Raises:
            StoreError: On a checksum mismatch or write failure
        """
        payloads: list[tuple[CapturedFile, Optional[bytes]]] = []
        for captured in version.files:
            if not captured.present:
                payloads.append((captured, None))
                continue
            try:
                data = (version.directory / FILES_DIR / captured.stored_as).read_bytes()
            except OSError as e:
                raise StoreError(f"Cannot read {captured.path} from version {version.id}: {e}") from e
            if _sha256(data) != captured.checksum:
                raise StoreError(
                    f"Checksum mismatch for {captured.path} in version {version.id}"
                )
            payloads.append((captured, data))

        restored = []
        try:
            for captured, data in payloads:
                target = Path(captured.path)
                if data is None:
                    if target.exists():
                        target.unlink()
                        restored.append(captured.path)
                    continue
                atomic_write_bytes(target, data)
                restored.append(captured.path)
        except OSError as e:
            raise StoreError(f"Failed to restore files from version {version.id}: {e}") from e

        logger.info(f"Restored {len(restored)} file(s) from version {version.id}")
        return restored

    def prune(self, max_versions: Optional[int] = None, max_age: Optional[timedelta] = None) -> list[str]:
        """
        Delete old versions according to a retention policy.

        The version named by the current pointer is always kept.

        Returns:
            Ids that were deleted
        """
        ids = self._version_ids()
        current = self.get_current()
        doomed: set[str] = set()

        if max_versions is not None and len(ids) > max_versions:
            doomed.update(ids[:len(ids) - max_versions])
        if max_age is not None:
            cutoff = datetime.now(timezone.utc) - max_age
            doomed.update(vid for vid in ids if self._created_at(vid) < cutoff)
        doomed.discard(current)

        for vid in sorted(doomed):
            shutil.rmtree(self.versions_dir / vid)
        if doomed:
            logger.info(f"Pruned {len(doomed)} version(s)")
        return sorted(doomed)

    # === Pointers and canonical state ===

    def get_current(self) -> Optional[str]:
        pointer = self.versions_dir / CURRENT_POINTER
        if not pointer.exists():
            return None
        value = pointer.read_text().strip()
        return value or None

    def set_current(self, version_id: str) -> None:
        self.resolve(version_id)
        atomic_write_bytes(self.versions_dir / CURRENT_POINTER, f"{version_id}\n".encode())
        logger.debug(f"Current version pointer -> {version_id}")

    def load_canonical(self) -> Optional[NetworkConfiguration]:
        """Model of the configuration last committed, if any."""
        path = self.state_dir / CANONICAL_FILE
        if not path.exists():
            return None
        try:
            return NetworkConfiguration.from_dict(yaml.safe_load(path.read_text()))
        except (yaml.YAMLError, ConfigFormatError) as e:
            raise StoreError(f"Canonical configuration is unreadable: {e}") from e

    def save_canonical(self, config: NetworkConfiguration) -> None:
        data = yaml.safe_dump(config.to_dict(), default_flow_style=False, sort_keys=False)
        atomic_write_bytes(self.state_dir / CANONICAL_FILE, data.encode())

    # === Helpers ===

    def _read_meta(self, version_id: str) -> dict:
        try:
            return yaml.safe_load((self.versions_dir / version_id / META_FILE).read_text()) or {}
        except (OSError, yaml.YAMLError) as e:
            raise StoreError(f"Version {version_id} has unreadable metadata: {e}") from e

    @staticmethod
    def _created_at(version_id: str) -> datetime:
        stamp = version_id.split("-")[0]
        return datetime.strptime(stamp, VERSION_ID_FORMAT).replace(tzinfo=timezone.utc)

    # Last in the class body: the name shadows the builtin for annotations below it
    def list(self) -> list[tuple[str, datetime]]:
        """All versions as (id, created_at), oldest first."""
        return [(vid, self._created_at(vid)) for vid in self._version_ids()]
