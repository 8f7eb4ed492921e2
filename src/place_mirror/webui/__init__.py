"""Flask read API, progress stream, and sync controls over a mirror runtime."""

from __future__ import annotations

import json
from collections.abc import Iterator
from typing import Any

from flask import Flask, Response, abort, current_app, jsonify, request, stream_with_context

from place_mirror.models import ENCODING_JPEG, ENCODING_MIME_TYPES, ENCODING_WEBP
from place_mirror.runtime import MirrorRuntime
from utils.logging import get_logger

LOGGER = get_logger(__name__)

_RUNTIME_KEY = "place_mirror.runtime"


def _runtime() -> MirrorRuntime:
    return current_app.extensions[_RUNTIME_KEY]


def _wants_webp() -> bool:
    for value, quality in request.accept_mimetypes:
        if value == ENCODING_MIME_TYPES[ENCODING_WEBP] and quality > 0:
            return True
    return False


def _pick_width(available: list[int], requested: int) -> int | None:
    """Smallest available width covering ``requested``; the largest when none does."""

    if not available:
        return None
    for width in available:
        if width >= requested:
            return width
    return available[-1]


def _sse_events(runtime: MirrorRuntime) -> Iterator[str]:
    idle_timeout = max(1.0, runtime.settings.progress.heartbeat_interval * 5)
    subscription = runtime.reporter.subscribe(idle_timeout=idle_timeout)
    for snapshot in subscription:
        yield f"event: progress\ndata: {json.dumps(snapshot.to_dict())}\n\n"


def create_app(runtime: MirrorRuntime) -> Flask:
    """Build the Flask app bound to ``runtime``."""

    app = Flask(__name__)
    app.extensions[_RUNTIME_KEY] = runtime

    @app.get("/api/places/<place_id>")
    def get_place(place_id: str) -> Any:
        store = _runtime().store
        cached = store.get_snapshot(place_id)
        if cached is None:
            abort(404)

        snapshot = cached.snapshot.to_dict()
        snapshot.pop("raw", None)
        photos = [
            {"photo_ref": ref, "widths": store.list_photo_widths(place_id, ref)}
            for ref in cached.snapshot.photo_refs
        ]
        response = jsonify(
            {
                "place": snapshot,
                "photos": photos,
                "fetched_at": cached.fetched_at,
                "age_seconds": cached.age_seconds,
                "stale": cached.is_stale,
            }
        )
        if cached.is_stale:
            response.headers["Warning"] = '110 - "Response is Stale"'
        return response

    @app.get("/api/places/<place_id>/photos/<photo_ref>/<int:width>")
    def get_photo(place_id: str, photo_ref: str, width: int) -> Any:
        store = _runtime().store
        cached = store.get_snapshot(place_id)
        if cached is None or photo_ref not in cached.snapshot.photo_refs:
            abort(404)

        chosen = _pick_width(store.list_photo_widths(place_id, photo_ref), width)
        if chosen is None:
            abort(404)

        encoding = ENCODING_WEBP if _wants_webp() else ENCODING_JPEG
        data = store.get_photo(place_id, photo_ref, chosen, encoding)
        if data is None:
            abort(404)

        response = Response(data, mimetype=ENCODING_MIME_TYPES[encoding])
        response.headers["Vary"] = "Accept"
        response.headers["Cache-Control"] = "public, max-age=86400"
        if cached.is_stale:
            response.headers["Warning"] = '110 - "Response is Stale"'
        return response

    @app.get("/api/quota")
    def get_quota() -> Any:
        quota = _runtime().quota
        return jsonify(
            {"day": quota.day, "used": quota.used(), "remaining": quota.remaining(), "ceiling": quota.ceiling}
        )

    @app.get("/api/sync")
    def get_sync_status() -> Any:
        return jsonify(_runtime().reporter.snapshot().to_dict())

    @app.get("/api/progress")
    def stream_progress() -> Response:
        runtime = _runtime()
        return Response(
            stream_with_context(_sse_events(runtime)),
            mimetype="text/event-stream",
            headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
        )

    @app.post("/api/sync")
    def start_sync() -> Any:
        runtime = _runtime()
        body = request.get_json(silent=True) or {}
        place_ids = body.get("place_ids")
        if not isinstance(place_ids, list) or not all(isinstance(item, str) and item for item in place_ids):
            return jsonify({"error": "place_ids must be a list of non-empty strings"}), 400

        if body.get("only_due"):
            place_ids = runtime.store.due_for_refresh(place_ids)

        concurrency = body.get("concurrency")
        if concurrency is not None and (not isinstance(concurrency, int) or concurrency < 1):
            return jsonify({"error": "concurrency must be a positive integer"}), 400

        try:
            run_id = runtime.start_background(place_ids, concurrency=concurrency)
        except RuntimeError as exc:
            return jsonify({"error": str(exc)}), 409

        LOGGER.info("sync_started_via_api", extra={"run_id": run_id, "total": len(place_ids)})
        return jsonify({"run_id": run_id, "total": len(place_ids)}), 202

    @app.post("/api/sync/<action>")
    def control_sync(action: str) -> Any:
        scheduler = _runtime().scheduler
        handlers = {"pause": scheduler.pause, "resume": scheduler.resume, "cancel": scheduler.cancel}
        handler = handlers.get(action)
        if handler is None:
            abort(404)
        if not scheduler.is_running:
            return jsonify({"error": "no sync run in progress"}), 409
        handler()
        LOGGER.info("sync_control", extra={"action": action})
        return jsonify({"action": action}), 202

    return app


__all__ = ["create_app"]
