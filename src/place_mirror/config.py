"""Configuration loader and typed settings for the place mirror."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

DEFAULT_VARIANT_WIDTHS: tuple[int, ...] = (200, 400, 800, 1600)
DEFAULT_RECORD_FIELDS: tuple[str, ...] = (
    "place_id",
    "name",
    "formatted_address",
    "geometry/location",
    "types",
    "icon",
    "photos",
)


@dataclass
class DatabaseConfig:
    """Database connection target for the mirror store."""

    store_url: str = "sqlite:///data/mirror.db"


@dataclass
class StorageConfig:
    """Filesystem root for staged and active photo variants."""

    root: str = "cache"


@dataclass
class SourceConfig:
    """Connection settings for the upstream places API."""

    base_url: str = "https://maps.googleapis.com/maps/api/place"
    api_key: str | None = None
    timeout: float = 10.0
    record_fields: list[str] = field(default_factory=lambda: list(DEFAULT_RECORD_FIELDS))
    max_photos_per_place: int = 10


@dataclass
class SyncConfig:
    """Worker pool, pacing, quota, and cache freshness knobs."""

    concurrency: int = 3
    request_interval: float = 1.0
    daily_quota: int = 1000
    quota_timezone: str = "UTC"
    cache_ttl_seconds: float = 30 * 24 * 3600.0


@dataclass
class RetryConfig:
    """Exponential backoff parameters for transient upstream failures."""

    base_delay: float = 1.0
    max_delay: float = 60.0
    max_attempts: int = 4
    jitter: float = 0.5


@dataclass
class VariantConfig:
    """Target widths and per-encoding quality factors for photo variants."""

    widths: list[int] = field(default_factory=lambda: list(DEFAULT_VARIANT_WIDTHS))
    webp_quality: int = 75
    jpeg_quality: int = 85

    def sorted_widths(self) -> list[int]:
        """Return the configured widths de-duplicated in ascending order."""

        return sorted({int(width) for width in self.widths if int(width) > 0})


@dataclass
class ProgressConfig:
    """Emission cadence and per-subscriber buffering for progress snapshots."""

    heartbeat_interval: float = 2.0
    buffer_size: int = 32


@dataclass
class Settings:
    """Top-level application settings."""

    databases: DatabaseConfig = field(default_factory=DatabaseConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)
    source: SourceConfig = field(default_factory=SourceConfig)
    sync: SyncConfig = field(default_factory=SyncConfig)
    retry: RetryConfig = field(default_factory=RetryConfig)
    variants: VariantConfig = field(default_factory=VariantConfig)
    progress: ProgressConfig = field(default_factory=ProgressConfig)


def _project_root() -> Path:
    """Best-effort detection of the repository root for config discovery."""

    module_path = Path(__file__).resolve()
    try:
        return module_path.parents[2]
    except IndexError:  # pragma: no cover - shallow install layouts
        return module_path.parent


def _build_default_settings_paths() -> list[Path]:
    """Return candidate settings paths ordered by preference."""

    cwd_candidate = (Path.cwd() / "config" / "settings.yaml").resolve()
    repo_candidate = (_project_root() / "config" / "settings.yaml").resolve()

    candidates: list[Path] = []
    seen: set[Path] = set()
    for candidate in (cwd_candidate, repo_candidate):
        if candidate in seen:
            continue
        seen.add(candidate)
        candidates.append(candidate)
    return candidates


def _resolve_settings_path(settings_path: Path | str | None) -> Path:
    """Determine which settings file to load, honoring overrides."""

    if settings_path:
        return Path(settings_path).expanduser().resolve()

    env_override = os.getenv("PLACE_MIRROR_SETTINGS")
    if env_override:
        return Path(env_override).expanduser().resolve()

    candidates = _build_default_settings_paths()
    for candidate in candidates:
        if candidate.exists():
            return candidate
    return candidates[0]


def _as_dict(value: Any) -> dict[str, Any]:
    if isinstance(value, dict):
        return value
    return {}


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _is_int(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


def load_settings(settings_path: Path | str | None = None) -> Settings:
    """Load application settings from a YAML file, falling back to defaults.

    Missing files and non-mapping documents yield a :class:`Settings` populated
    with defaults; individual keys of the wrong type are ignored. The API key
    may also be supplied through ``PLACE_MIRROR_API_KEY``, which wins over the
    file.
    """
    path = _resolve_settings_path(settings_path)
    settings = Settings()

    raw: Any = {}
    if path.exists() and path.is_file():
        with path.open("r", encoding="utf-8") as fp:
            raw = yaml.safe_load(fp) or {}

    if not isinstance(raw, dict):
        raw = {}

    databases_raw = _as_dict(raw.get("databases"))
    if isinstance(databases_raw.get("store_url"), str):
        settings.databases.store_url = databases_raw["store_url"]

    storage_raw = _as_dict(raw.get("storage"))
    if isinstance(storage_raw.get("root"), str):
        settings.storage.root = storage_raw["root"]

    source_raw = _as_dict(raw.get("source"))
    source_cfg = settings.source
    if isinstance(source_raw.get("base_url"), str):
        source_cfg.base_url = source_raw["base_url"].rstrip("/")
    if isinstance(source_raw.get("api_key"), str):
        source_cfg.api_key = source_raw["api_key"]
    if _is_number(source_raw.get("timeout")):
        source_cfg.timeout = float(source_raw["timeout"])
    if isinstance(source_raw.get("record_fields"), list):
        source_cfg.record_fields = [str(item) for item in source_raw["record_fields"] if str(item)]
    if _is_int(source_raw.get("max_photos_per_place")):
        source_cfg.max_photos_per_place = max(0, source_raw["max_photos_per_place"])

    env_api_key = os.getenv("PLACE_MIRROR_API_KEY")
    if env_api_key:
        source_cfg.api_key = env_api_key

    sync_raw = _as_dict(raw.get("sync"))
    sync_cfg = settings.sync
    if _is_int(sync_raw.get("concurrency")):
        sync_cfg.concurrency = max(1, sync_raw["concurrency"])
    if _is_number(sync_raw.get("request_interval")):
        sync_cfg.request_interval = max(0.0, float(sync_raw["request_interval"]))
    if _is_int(sync_raw.get("daily_quota")):
        sync_cfg.daily_quota = max(0, sync_raw["daily_quota"])
    if isinstance(sync_raw.get("quota_timezone"), str):
        sync_cfg.quota_timezone = sync_raw["quota_timezone"]
    if _is_number(sync_raw.get("cache_ttl_seconds")):
        sync_cfg.cache_ttl_seconds = float(sync_raw["cache_ttl_seconds"])

    retry_raw = _as_dict(raw.get("retry"))
    retry_cfg = settings.retry
    if _is_number(retry_raw.get("base_delay")):
        retry_cfg.base_delay = max(0.0, float(retry_raw["base_delay"]))
    if _is_number(retry_raw.get("max_delay")):
        retry_cfg.max_delay = max(0.0, float(retry_raw["max_delay"]))
    if _is_int(retry_raw.get("max_attempts")):
        retry_cfg.max_attempts = max(1, retry_raw["max_attempts"])
    if _is_number(retry_raw.get("jitter")):
        retry_cfg.jitter = min(1.0, max(0.0, float(retry_raw["jitter"])))

    variants_raw = _as_dict(raw.get("variants"))
    variants_cfg = settings.variants
    if isinstance(variants_raw.get("widths"), list):
        widths = [int(item) for item in variants_raw["widths"] if _is_int(item) and item > 0]
        if widths:
            variants_cfg.widths = sorted(set(widths))
    if _is_int(variants_raw.get("webp_quality")):
        variants_cfg.webp_quality = variants_raw["webp_quality"]
    if _is_int(variants_raw.get("jpeg_quality")):
        variants_cfg.jpeg_quality = variants_raw["jpeg_quality"]

    progress_raw = _as_dict(raw.get("progress"))
    progress_cfg = settings.progress
    if _is_number(progress_raw.get("heartbeat_interval")):
        progress_cfg.heartbeat_interval = max(0.05, float(progress_raw["heartbeat_interval"]))
    if _is_int(progress_raw.get("buffer_size")):
        progress_cfg.buffer_size = max(1, progress_raw["buffer_size"])

    return settings


__all__ = [
    "DEFAULT_RECORD_FIELDS",
    "DEFAULT_VARIANT_WIDTHS",
    "DatabaseConfig",
    "ProgressConfig",
    "RetryConfig",
    "Settings",
    "SourceConfig",
    "StorageConfig",
    "SyncConfig",
    "VariantConfig",
    "load_settings",
]
