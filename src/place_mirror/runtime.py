"""Wire settings into a ready-to-run store, ledger, client, and scheduler."""

from __future__ import annotations

import threading
import uuid
from collections.abc import Sequence
from dataclasses import dataclass, field

import httpx

from place_mirror.cache_manifest import ensure_storage_manifest
from place_mirror.config import Settings
from place_mirror.fetch_client import PlacesClient
from place_mirror.models import SyncOutcome
from place_mirror.progress import ProgressReporter
from place_mirror.quota import QuotaLedger
from place_mirror.rate_limit import RateLimiter
from place_mirror.retry import RetryPolicy
from place_mirror.scheduler import SyncScheduler
from place_mirror.store import MirrorStore
from place_mirror.variants import VariantPipeline
from utils.logging import get_logger

LOGGER = get_logger(__name__, extra={"component": "runtime"})


@dataclass
class MirrorRuntime:
    """All long-lived collaborators of one process."""

    settings: Settings
    store: MirrorStore
    quota: QuotaLedger
    client: PlacesClient
    pipeline: VariantPipeline
    reporter: ProgressReporter
    scheduler: SyncScheduler
    _background: threading.Thread | None = field(default=None, repr=False)
    _start_lock: threading.Lock = field(default_factory=threading.Lock, repr=False)
    last_outcomes: list[SyncOutcome] = field(default_factory=list, repr=False)

    def run(self, place_ids: Sequence[str], concurrency: int | None = None) -> list[SyncOutcome]:
        """Run a sync to completion and return its outcomes."""

        return list(self.scheduler.run(place_ids, concurrency=concurrency))

    def start_background(self, place_ids: Sequence[str], concurrency: int | None = None) -> str:
        """Start a sync on a daemon thread and return its run id."""

        run_id = _new_run_id()
        outcomes: list[SyncOutcome] = []

        def _consume() -> None:
            try:
                for outcome in self.scheduler.run(place_ids, concurrency=concurrency, run_id=run_id):
                    outcomes.append(outcome)
            except Exception:  # noqa: BLE001
                LOGGER.exception("background_sync_error", extra={"run_id": run_id})

        with self._start_lock:
            if self.scheduler.is_running or (self._background is not None and self._background.is_alive()):
                raise RuntimeError("a sync run is already in progress")
            self.last_outcomes = outcomes
            self._background = threading.Thread(target=_consume, name=f"sync-run-{run_id[:8]}", daemon=True)
            self._background.start()
        return run_id

    def wait(self, timeout: float | None = None) -> bool:
        """Join the background run; return ``True`` once it has finished."""

        thread = self._background
        if thread is None:
            return True
        thread.join(timeout)
        return not thread.is_alive()

    def close(self) -> None:
        if self.scheduler.is_running:
            self.scheduler.cancel()
        self.wait()
        self.reporter.close()
        self.client.close()


def _new_run_id() -> str:
    return uuid.uuid4().hex


def build_runtime(
    settings: Settings,
    *,
    transport: httpx.BaseTransport | None = None,
    recover: bool = True,
) -> MirrorRuntime:
    """Construct every collaborator from ``settings``.

    ``transport`` lets tests substitute an ``httpx.MockTransport``. With
    ``recover`` set, leftovers of an interrupted previous process are removed
    before the first run.
    """

    store = MirrorStore.from_settings(settings)
    if recover:
        store.recover()
    ensure_storage_manifest(store, settings.variants)

    quota = QuotaLedger(settings.sync.daily_quota, store, timezone=settings.sync.quota_timezone)
    client = PlacesClient.from_config(settings.source, transport=transport)
    pipeline = VariantPipeline.from_config(settings.variants)
    reporter = ProgressReporter(
        quota=quota,
        storage_bytes=store.storage_bytes,
        heartbeat_interval=settings.progress.heartbeat_interval,
        buffer_size=settings.progress.buffer_size,
    )
    scheduler = SyncScheduler(
        client=client,
        pipeline=pipeline,
        store=store,
        quota=quota,
        rate_limiter=RateLimiter(settings.sync.request_interval),
        retry_policy=RetryPolicy.from_config(settings.retry),
        reporter=reporter,
        concurrency=settings.sync.concurrency,
        max_photos_per_place=settings.source.max_photos_per_place,
    )
    LOGGER.info(
        "runtime_ready",
        extra={
            "store_url": settings.databases.store_url,
            "storage_root": str(store.root),
            "concurrency": settings.sync.concurrency,
            "daily_quota": settings.sync.daily_quota,
            "quota_remaining": quota.remaining(),
        },
    )
    return MirrorRuntime(
        settings=settings,
        store=store,
        quota=quota,
        client=client,
        pipeline=pipeline,
        reporter=reporter,
        scheduler=scheduler,
    )


__all__ = ["MirrorRuntime", "build_runtime"]
