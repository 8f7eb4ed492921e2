"""Tests for the storage manifest and variant configuration changes."""

from __future__ import annotations

from place_mirror.cache_manifest import STORAGE_FORMAT_VERSION, ensure_storage_manifest, load_storage_manifest
from place_mirror.models import PlaceSnapshot
from place_mirror.variants import VariantPipeline


def test_first_run_creates_manifest(store, settings) -> None:
    assert load_storage_manifest(store.root) is None

    assert ensure_storage_manifest(store, settings.variants) is False

    manifest = load_storage_manifest(store.root)
    assert manifest.storage_format_version == STORAGE_FORMAT_VERSION
    assert manifest.variants["widths"] == [64, 128]


def test_changed_widths_expire_existing_places(store, settings, image_bytes) -> None:
    ensure_storage_manifest(store, settings.variants)
    snapshot = PlaceSnapshot.from_source("p1", {"name": "Cafe", "photos": [{"photo_reference": "r1"}]}, 1.0)
    asset_set = VariantPipeline(store.widths).generate(image_bytes(200, 100), "r1")
    store.commit(store.stage("p1", snapshot, [asset_set]))

    assert ensure_storage_manifest(store, settings.variants) is False
    assert store.get_snapshot("p1").is_stale is False

    settings.variants.widths = [64, 256]
    assert ensure_storage_manifest(store, settings.variants) is True

    assert store.get_snapshot("p1").is_stale is True
    assert load_storage_manifest(store.root).variants["widths"] == [64, 256]


def test_unreadable_manifest_is_rewritten(store, settings) -> None:
    (store.root / "manifest.json").write_text("{not json", encoding="utf-8")

    assert ensure_storage_manifest(store, settings.variants) is False
    assert load_storage_manifest(store.root) is not None
