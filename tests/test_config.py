"""Tests for YAML settings loading."""

from __future__ import annotations

from place_mirror.config import DEFAULT_VARIANT_WIDTHS, load_settings


def test_missing_settings_file_yields_defaults(tmp_path, monkeypatch) -> None:
    monkeypatch.delenv("PLACE_MIRROR_API_KEY", raising=False)

    settings = load_settings(tmp_path / "absent.yaml")

    assert settings.variants.sorted_widths() == list(DEFAULT_VARIANT_WIDTHS)
    assert settings.variants.webp_quality == 75
    assert settings.variants.jpeg_quality == 85
    assert settings.sync.concurrency == 3
    assert settings.source.api_key is None


def test_settings_file_overrides_and_ignores_wrong_types(tmp_path, monkeypatch) -> None:
    monkeypatch.delenv("PLACE_MIRROR_API_KEY", raising=False)
    path = tmp_path / "settings.yaml"
    path.write_text(
        """
sync:
  concurrency: 5
  daily_quota: "lots"
  request_interval: 0.25
retry:
  jitter: 3.0
variants:
  widths: [800, 200, 200, -4, "big"]
source:
  base_url: "https://example.test/places/"
""",
        encoding="utf-8",
    )

    settings = load_settings(path)

    assert settings.sync.concurrency == 5
    assert settings.sync.daily_quota == 1000
    assert settings.sync.request_interval == 0.25
    assert settings.retry.jitter == 1.0
    assert settings.variants.widths == [200, 800]
    assert settings.source.base_url == "https://example.test/places"


def test_env_overrides_settings_path_and_api_key(tmp_path, monkeypatch) -> None:
    path = tmp_path / "custom.yaml"
    path.write_text("source:\n  api_key: from-file\nstorage:\n  root: /srv/mirror\n", encoding="utf-8")
    monkeypatch.setenv("PLACE_MIRROR_SETTINGS", str(path))
    monkeypatch.setenv("PLACE_MIRROR_API_KEY", "from-env")

    settings = load_settings()

    assert settings.storage.root == "/srv/mirror"
    assert settings.source.api_key == "from-env"


def test_non_mapping_document_yields_defaults(tmp_path) -> None:
    path = tmp_path / "settings.yaml"
    path.write_text("- just\n- a list\n", encoding="utf-8")

    settings = load_settings(path)

    assert settings.databases.store_url == "sqlite:///data/mirror.db"
