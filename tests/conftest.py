"""Shared fixtures: isolated settings, an in-memory image factory, and a fake places API."""

from __future__ import annotations

import io
import threading
from collections.abc import Callable
from pathlib import Path
from typing import Any

import httpx
import pytest
from PIL import Image

from place_mirror.config import Settings
from place_mirror.fetch_client import PlacesClient
from place_mirror.store import MirrorStore


def _encode(width: int, height: int, fmt: str = "JPEG", mode: str = "RGB", color: Any = (200, 80, 40)) -> bytes:
    image = Image.new(mode, (width, height), color)
    buffer = io.BytesIO()
    image.save(buffer, format=fmt)
    return buffer.getvalue()


@pytest.fixture
def image_bytes() -> Callable[..., bytes]:
    """Factory producing encoded test images of a given size."""

    return _encode


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    settings = Settings()
    settings.databases.store_url = f"sqlite:///{tmp_path / 'mirror.db'}"
    settings.storage.root = str(tmp_path / "cache")
    settings.source.base_url = "https://places.test/api"
    settings.source.api_key = "test-key"
    settings.sync.concurrency = 3
    settings.sync.request_interval = 0.0
    settings.sync.daily_quota = 1000
    settings.retry.base_delay = 0.0
    settings.retry.max_delay = 0.0
    settings.variants.widths = [64, 128]
    settings.progress.heartbeat_interval = 0.05
    return settings


@pytest.fixture
def store(settings: Settings) -> MirrorStore:
    return MirrorStore.from_settings(settings)


class FakePlacesApi:
    """Scriptable stand-in for the upstream API, served through ``httpx.MockTransport``."""

    def __init__(self, photo: bytes) -> None:
        self.records: dict[str, dict[str, Any]] = {}
        self.photos: dict[str, bytes] = {}
        self.default_photo = photo
        self.failures: dict[str, list[httpx.Response]] = {}
        self.calls: list[tuple[str, str]] = []
        self.hooks: dict[str, Callable[[], None]] = {}
        self._lock = threading.Lock()

    def add_place(self, place_id: str, *, name: str | None = None, photo_refs: tuple[str, ...] = ()) -> None:
        self.records[place_id] = {
            "place_id": place_id,
            "name": name or f"Place {place_id}",
            "formatted_address": f"{place_id} Main Street",
            "geometry": {"location": {"lat": 52.52, "lng": 13.405}},
            "types": ["restaurant", "food"],
            "icon": "https://places.test/icons/restaurant.png",
            "photos": [{"photo_reference": ref, "width": 640, "height": 480} for ref in photo_refs],
        }

    def fail_next(self, key: str, *responses: httpx.Response) -> None:
        """Queue responses returned before the real one for ``key`` (a place id or photo ref)."""

        self.failures.setdefault(key, []).extend(responses)

    def handler(self, request: httpx.Request) -> httpx.Response:
        params = request.url.params
        if request.url.path.endswith("/details/json"):
            key = params.get("place_id", "")
            kind = "record"
        elif request.url.path.endswith("/photo"):
            key = params.get("photo_reference", "")
            kind = "photo"
        else:
            return httpx.Response(404)

        with self._lock:
            self.calls.append((kind, key))
            queued = self.failures.get(key)
            failure = queued.pop(0) if queued else None
            hook = self.hooks.get(key)
        if hook is not None:
            hook()
        if failure is not None:
            return failure

        if kind == "record":
            record = self.records.get(key)
            if record is None:
                return httpx.Response(200, json={"status": "NOT_FOUND"})
            return httpx.Response(200, json={"status": "OK", "result": record})
        return httpx.Response(
            200,
            content=self.photos.get(key, self.default_photo),
            headers={"content-type": "image/jpeg"},
        )

    def call_count(self, kind: str | None = None) -> int:
        with self._lock:
            return sum(1 for call_kind, _ in self.calls if kind is None or call_kind == kind)

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)

    def client(self, settings: Settings) -> PlacesClient:
        return PlacesClient.from_config(settings.source, transport=self.transport)


@pytest.fixture
def places_api(image_bytes: Callable[..., bytes]) -> FakePlacesApi:
    return FakePlacesApi(image_bytes(320, 240))
