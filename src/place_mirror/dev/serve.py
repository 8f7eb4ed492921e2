"""CLI to serve the mirror over HTTP with Flask's development server."""

from __future__ import annotations

from pathlib import Path
from typing import Optional

import typer

from place_mirror.config import load_settings
from place_mirror.runtime import build_runtime
from place_mirror.webui import create_app
from utils.logging import get_logger

LOGGER = get_logger(__name__)


def main(
    host: str = typer.Option("127.0.0.1", "--host", help="Interface to bind."),
    port: int = typer.Option(8000, "--port", min=1, max=65535, help="Port to listen on."),
    settings_path: Optional[Path] = typer.Option(
        None,
        "--settings",
        help="Explicit settings.yaml path.",
    ),
) -> None:
    """Serve cached places, photos, quota, and sync controls."""

    settings = load_settings(settings_path)
    runtime = build_runtime(settings)
    app = create_app(runtime)
    LOGGER.info("serve_start", extra={"host": host, "port": port})
    try:
        app.run(host=host, port=port, threaded=True)
    finally:
        runtime.close()


if __name__ == "__main__":
    typer.run(main)


__all__ = ["main"]
