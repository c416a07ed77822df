"""Runtime settings.

Settings come from a YAML file and can be overridden by environment
variables:

- NETWARDEN_CONFIG: Path to the settings file
- NETWARDEN_INTERFACES: Path of the interfaces file the tool reads
- NETWARDEN_BASE_DIR: Version store and state root
- NETWARDEN_LOCK_PATH: Host-wide lock file
- NETWARDEN_LOG_DIR: Directory for the audit log
- NETWARDEN_APPLY_TIMEOUT / NETWARDEN_DRY_RUN_TIMEOUT / NETWARDEN_VERIFY_TIMEOUT: Seconds
- NETWARDEN_LOCK_TIMEOUT: Seconds to queue for the host lock
- NETWARDEN_DRY_RUN_REQUIRED: "0" turns a missing dry-run tool into a warning
"""
import logging
import os
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Optional

import yaml

logger = logging.getLogger(__name__)

DEFAULT_INTERFACES_PATH = Path("/etc/network/interfaces")
DEFAULT_BASE_DIR = Path("/var/lib/netwarden")

OVERLAP_ACTIONS = ("error", "warning", "ignore")


@dataclass
class Settings:
    """Where things live, how long to wait, and how strict to be."""
    interfaces_path: Path = DEFAULT_INTERFACES_PATH
    extra_files: list[Path] = field(default_factory=list)
    base_dir: Path = DEFAULT_BASE_DIR
    lock_path: Optional[Path] = None
    log_dir: Optional[str] = None

    ifup_path: str = "/sbin/ifup"
    ifreload_path: str = "/sbin/ifreload"
    ip_path: str = "/sbin/ip"

    dry_run_timeout: float = 60.0
    apply_timeout: float = 120.0
    verify_timeout: float = 30.0
    lock_timeout: Optional[float] = 60.0
    verify_attempts: int = 5
    verify_interval: float = 1.0
    dry_run_required: bool = True

    overlap_unrelated: str = "error"
    overlap_related: str = "warning"

    max_versions: Optional[int] = 50

    def __post_init__(self):
        self.interfaces_path = Path(self.interfaces_path)
        self.extra_files = [Path(p) for p in self.extra_files]
        self.base_dir = Path(self.base_dir)
        if self.lock_path is not None:
            self.lock_path = Path(self.lock_path)
        for name in ("overlap_unrelated", "overlap_related"):
            value = getattr(self, name)
            if value not in OVERLAP_ACTIONS:
                raise ValueError(f"{name} must be one of {', '.join(OVERLAP_ACTIONS)}, got '{value}'")

    @property
    def lock_file(self) -> Path:
        return self.lock_path or self.base_dir / "netwarden.lock"

    @property
    def versions_dir(self) -> Path:
        return self.base_dir / "versions"

    @property
    def state_dir(self) -> Path:
        return self.base_dir / "state"

    @property
    def captured_files(self) -> list[Path]:
        """Files snapshotted with every version, interfaces file first."""
        return [self.interfaces_path, *self.extra_files]

    @classmethod
    def from_file(cls, path: Path) -> "Settings":
        """Load settings from a YAML file. Unknown keys are ignored with a warning."""
        path = Path(path)
        if not path.exists():
            logger.warning(f"Settings file not found: {path}")
            return cls()

        with open(path) as f:
            data = yaml.safe_load(f) or {}

        known = {f.name for f in fields(cls)}
        unknown = set(data) - known
        if unknown:
            logger.warning(f"Ignoring unknown settings in {path}: {', '.join(sorted(unknown))}")

        return cls(**{k: v for k, v in data.items() if k in known})

    @classmethod
    def from_env(cls, base: Optional["Settings"] = None) -> "Settings":
        """Apply NETWARDEN_* environment overrides on top of ``base``."""
        base = base or cls()
        env = os.environ
        overrides: dict = {}

        if "NETWARDEN_INTERFACES" in env:
            overrides["interfaces_path"] = Path(env["NETWARDEN_INTERFACES"])
        if "NETWARDEN_BASE_DIR" in env:
            overrides["base_dir"] = Path(env["NETWARDEN_BASE_DIR"])
        if "NETWARDEN_LOCK_PATH" in env:
            overrides["lock_path"] = Path(env["NETWARDEN_LOCK_PATH"])
        if "NETWARDEN_LOG_DIR" in env:
            overrides["log_dir"] = env["NETWARDEN_LOG_DIR"]
        for key, name in (
            ("NETWARDEN_APPLY_TIMEOUT", "apply_timeout"),
            ("NETWARDEN_DRY_RUN_TIMEOUT", "dry_run_timeout"),
            ("NETWARDEN_VERIFY_TIMEOUT", "verify_timeout"),
            ("NETWARDEN_LOCK_TIMEOUT", "lock_timeout"),
        ):
            if key in env:
                overrides[name] = float(env[key])
        if "NETWARDEN_DRY_RUN_REQUIRED" in env:
            overrides["dry_run_required"] = env["NETWARDEN_DRY_RUN_REQUIRED"] != "0"

        values = {f.name: getattr(base, f.name) for f in fields(cls)}
        values.update(overrides)
        return cls(**values)


def _find_settings_file() -> Optional[Path]:
    search_paths = [
        Path.cwd() / "netwarden.yaml",
        Path.home() / ".config" / "netwarden" / "netwarden.yaml",
        Path("/etc/netwarden/netwarden.yaml"),
    ]
    for path in search_paths:
        if path.exists():
            return path
    return None


def load_settings(path: Optional[Path] = None) -> Settings:
    """Load settings from ``path`` (or the standard locations), then the environment."""
    if path is None and "NETWARDEN_CONFIG" in os.environ:
        path = Path(os.environ["NETWARDEN_CONFIG"])
    if path is None:
        path = _find_settings_file()

    base = Settings.from_file(path) if path else Settings()
    if path:
        logger.debug(f"Loaded settings from {path}")
    return Settings.from_env(base)
