"""CLI to print the quota record for today (or a given day)."""

from __future__ import annotations

from pathlib import Path
from typing import Optional

import typer

from place_mirror.config import load_settings
from place_mirror.quota import QuotaLedger
from place_mirror.store import MirrorStore


def main(
    day: Optional[str] = typer.Option(
        None,
        "--day",
        help="ISO date to inspect; defaults to today in sync.quota_timezone.",
    ),
    settings_path: Optional[Path] = typer.Option(
        None,
        "--settings",
        help="Explicit settings.yaml path.",
    ),
) -> None:
    """Show used, remaining, and ceiling for one quota day."""

    settings = load_settings(settings_path)
    store = MirrorStore.from_settings(settings)
    target_day = day or QuotaLedger(
        settings.sync.daily_quota, timezone=settings.sync.quota_timezone
    ).day

    record = store.get_quota_record(target_day)
    if record is None:
        typer.echo(f"day={target_day} used=0 remaining={settings.sync.daily_quota} ceiling={settings.sync.daily_quota}")
        return
    remaining = max(0, record.ceiling - record.used)
    typer.echo(f"day={record.day} used={record.used} remaining={remaining} ceiling={record.ceiling}")


if __name__ == "__main__":
    typer.run(main)


__all__ = ["main"]
