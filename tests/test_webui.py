"""Tests for the Flask read API and sync controls."""

from __future__ import annotations

import json
import threading

import pytest

from place_mirror.runtime import build_runtime
from place_mirror.webui import create_app


@pytest.fixture
def runtime(settings, places_api):
    runtime = build_runtime(settings, transport=places_api.transport)
    yield runtime
    runtime.close()


@pytest.fixture
def client(runtime):
    app = create_app(runtime)
    app.config["TESTING"] = True
    return app.test_client()


def test_unknown_place_is_404(client) -> None:
    assert client.get("/api/places/nowhere").status_code == 404


def test_place_and_photo_are_served_from_cache(client, runtime, places_api) -> None:
    places_api.add_place("p1", name="Corner Deli", photo_refs=("r1",))
    runtime.run(["p1"])

    response = client.get("/api/places/p1")
    body = response.get_json()

    assert response.status_code == 200
    assert body["place"]["name"] == "Corner Deli"
    assert "raw" not in body["place"]
    assert body["photos"] == [{"photo_ref": "r1", "widths": [64, 128]}]
    assert body["stale"] is False

    webp = client.get("/api/places/p1/photos/r1/100", headers={"Accept": "image/webp,image/*;q=0.8"})
    assert webp.status_code == 200
    assert webp.mimetype == "image/webp"
    assert webp.headers["Vary"] == "Accept"
    assert webp.data[:4] == b"RIFF"

    jpeg = client.get("/api/places/p1/photos/r1/5000", headers={"Accept": "image/jpeg"})
    assert jpeg.mimetype == "image/jpeg"
    assert jpeg.data[:2] == b"\xff\xd8"

    assert client.get("/api/places/p1/photos/other/100").status_code == 404


def test_stale_place_is_flagged(client, runtime, places_api) -> None:
    places_api.add_place("p1")
    runtime.run(["p1"])
    runtime.store.mark_all_stale()

    response = client.get("/api/places/p1")

    assert response.get_json()["stale"] is True
    assert "Warning" in response.headers


def test_quota_endpoint_reports_usage(client, runtime, places_api) -> None:
    places_api.add_place("p1", photo_refs=("r1",))
    runtime.run(["p1"])

    body = client.get("/api/quota").get_json()

    assert body["used"] == 2
    assert body["remaining"] == body["ceiling"] - 2


def test_start_sync_runs_in_background(client, runtime, places_api) -> None:
    places_api.add_place("p1")
    places_api.add_place("p2")

    assert client.post("/api/sync", json={"place_ids": "p1"}).status_code == 400
    assert client.post("/api/sync", json={"place_ids": ["p1"], "concurrency": 0}).status_code == 400

    response = client.post("/api/sync", json={"place_ids": ["p1", "p2"], "concurrency": 2})
    assert response.status_code == 202
    run_id = response.get_json()["run_id"]

    assert runtime.wait(10.0)
    assert sorted(o.place_id for o in runtime.last_outcomes) == ["p1", "p2"]
    status = client.get("/api/sync").get_json()
    assert status["run_id"] == run_id
    assert status["state"] == "finished"
    assert status["succeeded"] == 2


def test_only_due_skips_fresh_places(client, runtime, places_api) -> None:
    places_api.add_place("p1")
    runtime.run(["p1"])

    response = client.post("/api/sync", json={"place_ids": ["p1"], "only_due": True})

    assert response.status_code == 202
    assert response.get_json()["total"] == 0
    assert runtime.wait(10.0)


def test_controls_require_a_running_sync(client) -> None:
    assert client.post("/api/sync/pause").status_code == 409
    assert client.post("/api/sync/cancel").status_code == 409
    assert client.post("/api/sync/explode").status_code == 404


def test_progress_stream_emits_server_sent_events(client) -> None:
    response = client.get("/api/progress")

    assert response.mimetype == "text/event-stream"
    text = response.get_data(as_text=True)
    first = text.split("\n\n")[0]
    assert first.startswith("event: progress\ndata: ")
    payload = json.loads(first.split("data: ", 1)[1])
    assert payload["state"] == "idle"


def test_concurrent_start_requests_admit_one_run(client, runtime, places_api) -> None:
    places_api.add_place("p1")
    release = threading.Event()
    places_api.hooks["p1"] = lambda: release.wait(5.0)
    barrier = threading.Barrier(2)
    started: list[str | None] = []

    def _start() -> None:
        barrier.wait(5.0)
        try:
            started.append(runtime.start_background(["p1"]))
        except RuntimeError:
            started.append(None)

    threads = [threading.Thread(target=_start) for _ in range(2)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(5.0)

    assert started.count(None) == 1
    assert client.post("/api/sync", json={"place_ids": ["p1"]}).status_code == 409

    release.set()
    assert runtime.wait(10.0)
    assert [o.place_id for o in runtime.last_outcomes] == ["p1"]
    assert places_api.call_count("record") == 1
