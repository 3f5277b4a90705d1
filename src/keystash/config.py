"""Configuration and on-disk storage layout for keystash."""

import json
import os
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path

FORMAT_MARKER_FILE = ".keystash"
DB_FILE = ".keystash.db"
FORMAT_VERSION = 1

RESERVED_PREFIX = "."
DEFAULT_KEY_LENGTH = 5
DEFAULT_LIST_LIMIT = 50

STORAGE_ENV = "KEYSTASH_STORAGE"

_TRUE = {"1", "true", "yes", "on"}


def log_level_from_env() -> str:
    return os.environ.get("KEYSTASH_LOG_LEVEL", "WARNING").upper()


def _env_bool(name: str, default: bool) -> bool:
    value = os.environ.get(name)
    if value is None or value == "":
        return default
    return value.strip().lower() in _TRUE


@dataclass
class StoreConfig:
    root: Path
    force_overwrite: bool = True
    key_length: int = DEFAULT_KEY_LENGTH
    unique_keys: bool = False
    reserved_prefix: str = RESERVED_PREFIX
    default_limit: int = DEFAULT_LIST_LIMIT
    log_level: str = "WARNING"

    @property
    def db_path(self) -> Path:
        return self.root / DB_FILE

    @classmethod
    def from_env(cls, root: Path | str | None = None) -> "StoreConfig":
        """Build a config, filling anything not given from KEYSTASH_* variables."""
        if root is None:
            root = os.environ.get(STORAGE_ENV)
        if not root:
            raise ValueError(f"No storage root given and {STORAGE_ENV} is not set")
        return cls(
            root=Path(root).resolve(),
            force_overwrite=_env_bool("KEYSTASH_FORCE_OVERWRITE", True),
            key_length=int(os.environ.get("KEYSTASH_KEY_LENGTH", DEFAULT_KEY_LENGTH)),
            unique_keys=_env_bool("KEYSTASH_UNIQUE_KEYS", False),
            default_limit=int(os.environ.get("KEYSTASH_DEFAULT_LIMIT", DEFAULT_LIST_LIMIT)),
            log_level=log_level_from_env(),
        )


def read_format_marker(storage_dir: Path) -> dict | None:
    marker_path = storage_dir / FORMAT_MARKER_FILE
    if not marker_path.exists():
        return None
    try:
        marker = json.loads(marker_path.read_text())
    except (json.JSONDecodeError, OSError):
        return None
    return marker if isinstance(marker, dict) else None


def write_format_marker(storage_dir: Path) -> None:
    marker = {
        "version": FORMAT_VERSION,
        "created": datetime.now().isoformat(),
    }
    (storage_dir / FORMAT_MARKER_FILE).write_text(json.dumps(marker, indent=2))


def init_storage(storage_dir: Path) -> bool:
    """Create the storage root and its marker. Returns False if it already existed.

    Raises ValueError for a non-empty directory that is not a keystash root,
    or for a root written by a newer format version.
    """
    if storage_dir.exists() and not storage_dir.is_dir():
        raise ValueError(f"{storage_dir} is not a directory")
    storage_dir.mkdir(parents=True, exist_ok=True)

    marker = read_format_marker(storage_dir)
    if marker is not None:
        if marker.get("version", 0) > FORMAT_VERSION:
            raise ValueError(f"Unsupported format version {marker['version']}")
        return False
    if any(storage_dir.iterdir()):
        raise ValueError(f"{storage_dir} is not a valid keystash storage")
    write_format_marker(storage_dir)
    return True


def resolve_storage(storage_dir: str | None) -> Path | None:
    """Find an initialized storage root from an explicit path or KEYSTASH_STORAGE."""
    candidate = storage_dir or os.environ.get(STORAGE_ENV)
    if not candidate:
        return None
    p = Path(candidate).resolve()
    marker = read_format_marker(p) if p.is_dir() else None
    if marker is None or marker.get("version", 0) > FORMAT_VERSION:
        return None
    return p
