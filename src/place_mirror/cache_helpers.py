"""Filesystem layout helpers for the photo variant storage root."""

from __future__ import annotations

import hashlib
import os
from pathlib import Path

STAGING_DIRNAME = "staging"
GENERATIONS_DIRNAME = "generations"


def resolve_storage_root(target: str | Path) -> Path:
    """Resolve a filesystem storage root, enforcing directory-only inputs."""

    raw = str(target).strip()
    if not raw:
        raise ValueError("storage root cannot be empty")

    if "://" in raw:
        raise ValueError("storage roots must be filesystem paths; URLs are not supported")

    path = Path(raw).expanduser().resolve()
    if path.suffix == ".db":
        raise ValueError("storage root must be a directory, not a database file path")

    return path


def photo_key(photo_ref: str) -> str:
    """Map an opaque photo reference onto a fixed-length directory name."""

    if not photo_ref:
        raise ValueError("photo reference cannot be empty")
    return hashlib.sha256(photo_ref.encode("utf-8")).hexdigest()[:32]


def directory_size(path: Path) -> int:
    """Sum the sizes of every regular file under ``path``."""

    total = 0
    if not path.exists():
        return 0
    for dirpath, _dirnames, filenames in os.walk(path):
        for filename in filenames:
            try:
                total += (Path(dirpath) / filename).stat().st_size
            except FileNotFoundError:
                # Retired generations may disappear while we walk.
                continue
    return total


__all__ = [
    "GENERATIONS_DIRNAME",
    "STAGING_DIRNAME",
    "directory_size",
    "resolve_storage_root",
    "photo_key",
]
