"""Helpers for the storage manifest and variant format versioning."""

from __future__ import annotations

import json
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from place_mirror.config import VariantConfig
from place_mirror.store import MirrorStore
from utils.logging import get_logger

LOGGER = get_logger(__name__)

# Bump this when the on-disk variant layout changes in a non-backwards compatible way.
STORAGE_FORMAT_VERSION: int = 1


@dataclass
class StorageManifest:
    """Lightweight description of the storage layout and variant configuration."""

    storage_format_version: int
    created_at: float
    variants: dict[str, Any]


def _manifest_path(root: Path) -> Path:
    return root / "manifest.json"


def _variant_payload(config: VariantConfig) -> dict[str, Any]:
    return {
        "widths": config.sorted_widths(),
        "webp_quality": config.webp_quality,
        "jpeg_quality": config.jpeg_quality,
    }


def load_storage_manifest(root: Path) -> StorageManifest | None:
    """Load ``manifest.json`` from the storage root if present and readable."""

    path = _manifest_path(root)
    if not path.exists():
        return None

    try:
        raw = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, ValueError) as exc:
        LOGGER.error("storage_manifest_load_error", extra={"path": str(path), "error": str(exc)})
        return None

    if not isinstance(raw, dict):
        return None

    try:
        version = int(raw.get("storage_format_version"))
    except (TypeError, ValueError):
        version = STORAGE_FORMAT_VERSION

    try:
        created_at = float(raw.get("created_at"))
    except (TypeError, ValueError):
        created_at = time.time()

    variants = raw.get("variants") if isinstance(raw.get("variants"), dict) else {}
    return StorageManifest(storage_format_version=version, created_at=created_at, variants=variants)


def write_storage_manifest(root: Path, config: VariantConfig) -> StorageManifest:
    """Create or replace the manifest to reflect the current variant configuration."""

    root.mkdir(parents=True, exist_ok=True)
    manifest = StorageManifest(
        storage_format_version=STORAGE_FORMAT_VERSION,
        created_at=time.time(),
        variants=_variant_payload(config),
    )
    payload = {
        "storage_format_version": manifest.storage_format_version,
        "created_at": manifest.created_at,
        "variants": manifest.variants,
    }
    tmp_path = _manifest_path(root).with_suffix(".json.tmp")
    tmp_path.write_text(json.dumps(payload, indent=2, sort_keys=True), encoding="utf-8")
    tmp_path.replace(_manifest_path(root))
    return manifest


def ensure_storage_manifest(store: MirrorStore, config: VariantConfig) -> bool:
    """Validate the manifest; on mismatch expire every snapshot and rewrite it.

    Returns ``True`` when the stored variants no longer match the configuration.
    Existing data is kept servable; the next run regenerates it with the new
    widths and qualities.
    """

    existing = load_storage_manifest(store.root)
    expected = _variant_payload(config)

    if existing is None:
        LOGGER.info("storage_manifest_missing_create", extra={"root": str(store.root)})
        write_storage_manifest(store.root, config)
        return False

    if existing.storage_format_version == STORAGE_FORMAT_VERSION and existing.variants == expected:
        return False

    expired = store.mark_all_stale()
    LOGGER.info(
        "storage_manifest_mismatch_expire",
        extra={"root": str(store.root), "previous": existing.variants, "current": expected, "expired": expired},
    )
    write_storage_manifest(store.root, config)
    return True


__all__ = [
    "STORAGE_FORMAT_VERSION",
    "StorageManifest",
    "ensure_storage_manifest",
    "load_storage_manifest",
    "write_storage_manifest",
]
