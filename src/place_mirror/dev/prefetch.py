"""CLI to prefetch place records and photos into the local mirror.

Ids come from ``--id`` options, an ids file (one id per line, ``#`` comments
allowed), or the deferred items of the most recent run.
"""

from __future__ import annotations

from pathlib import Path
from typing import List, Optional

import typer

from place_mirror.config import Settings, load_settings
from place_mirror.models import STATUS_DEFERRED, STATUS_FAILED, STATUS_SUCCESS
from place_mirror.runtime import build_runtime
from utils.logging import get_logger

LOGGER = get_logger(__name__, extra={"component": "prefetch"})


def read_ids_file(path: Path) -> list[str]:
    """Return the non-empty, non-comment lines of ``path``."""

    ids: list[str] = []
    for line in path.read_text(encoding="utf-8").splitlines():
        value = line.split("#", 1)[0].strip()
        if value:
            ids.append(value)
    return ids


def main(
    place_ids: List[str] = typer.Option(
        [],
        "--id",
        help="Place id to synchronize. May be specified multiple times.",
    ),
    ids_file: Optional[Path] = typer.Option(
        None,
        "--ids-file",
        file_okay=True,
        dir_okay=False,
        exists=True,
        readable=True,
        help="File with one place id per line.",
    ),
    retry_deferred: bool = typer.Option(
        False,
        "--retry-deferred",
        help="Also include the ids deferred by the most recent run.",
    ),
    only_due: bool = typer.Option(
        False,
        "--only-due",
        help="Skip ids whose cached snapshot is still within the cache TTL.",
    ),
    concurrency: Optional[int] = typer.Option(
        None,
        "--concurrency",
        min=1,
        help="Number of worker threads; defaults to sync.concurrency in settings.yaml.",
    ),
    settings_path: Optional[Path] = typer.Option(
        None,
        "--settings",
        help="Explicit settings.yaml path.",
    ),
) -> None:
    """Synchronize the given places, then print a per-status summary."""

    settings: Settings = load_settings(settings_path)
    runtime = build_runtime(settings)
    try:
        ids = list(place_ids)
        if ids_file is not None:
            ids.extend(read_ids_file(ids_file))
        if retry_deferred:
            ids.extend(runtime.store.deferred_place_ids())
        ids = list(dict.fromkeys(ids))
        if only_due:
            ids = runtime.store.due_for_refresh(ids)

        if not ids:
            LOGGER.info("prefetch_nothing_to_do")
            return

        LOGGER.info("prefetch_start", extra={"total": len(ids), "quota_remaining": runtime.quota.remaining()})
        counts = {STATUS_SUCCESS: 0, STATUS_DEFERRED: 0, STATUS_FAILED: 0}
        for outcome in runtime.scheduler.run(ids, concurrency=concurrency):
            counts[outcome.status] = counts.get(outcome.status, 0) + 1
            if not outcome.succeeded:
                typer.echo(f"{outcome.status:<9} {outcome.place_id} ({outcome.reason})")

        typer.echo(
            f"success={counts[STATUS_SUCCESS]} deferred={counts[STATUS_DEFERRED]} "
            f"failed={counts[STATUS_FAILED]} quota_remaining={runtime.quota.remaining()}"
        )
        if counts[STATUS_FAILED]:
            raise typer.Exit(code=1)
    finally:
        runtime.close()


if __name__ == "__main__":
    typer.run(main)


__all__ = ["main", "read_ids_file"]
