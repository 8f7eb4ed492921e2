"""Bounded worker pool that synchronizes places into the mirror store.

Each worker thread claims one place id at a time from a shared backlog and
runs the fixed per-item sequence: fetch record, fetch photos, transcode,
stage, commit. Every upstream call is paced by the rate limiter, admitted by
the quota ledger, and wrapped in the retry policy.
"""

from __future__ import annotations

import queue
import random
import threading
import time
import uuid
from collections.abc import Callable, Iterable, Iterator
from concurrent.futures import ThreadPoolExecutor
from typing import TypeVar, cast

from sqlalchemy.exc import SQLAlchemyError

from place_mirror.errors import (
    Cancelled,
    CommitFault,
    PermanentError,
    QuotaExhausted,
    TransientError,
)
from place_mirror.fetch_client import PlacesClient
from place_mirror.models import (
    STATUS_DEFERRED,
    STATUS_FAILED,
    STATUS_SUCCESS,
    PhotoAssetSet,
    SyncOutcome,
)
from place_mirror.progress import (
    STATE_CANCELLING,
    STATE_PAUSED,
    STATE_RUNNING,
    ProgressReporter,
)
from place_mirror.quota import QuotaLedger
from place_mirror.rate_limit import RateLimiter
from place_mirror.retry import RetryPolicy, run_with_retry
from place_mirror.store import MirrorStore, StagingHandle
from place_mirror.variants import VariantPipeline
from utils.logging import get_logger

LOGGER = get_logger(__name__, extra={"component": "scheduler"})

T = TypeVar("T")

_WORKER_DONE = object()


class SyncScheduler:
    """Drive ``concurrency`` workers over a backlog of place ids."""

    def __init__(
        self,
        *,
        client: PlacesClient,
        pipeline: VariantPipeline,
        store: MirrorStore,
        quota: QuotaLedger,
        rate_limiter: RateLimiter,
        retry_policy: RetryPolicy,
        reporter: ProgressReporter | None = None,
        concurrency: int = 3,
        max_photos_per_place: int = 10,
        rand: Callable[[], float] = random.random,
    ) -> None:
        if concurrency < 1:
            raise ValueError("concurrency must be at least 1")
        self._client = client
        self._pipeline = pipeline
        self._store = store
        self._quota = quota
        self._rate_limiter = rate_limiter
        self._retry_policy = retry_policy
        self.reporter = reporter or ProgressReporter(quota=quota, storage_bytes=store.storage_bytes)
        self.concurrency = concurrency
        self._max_photos = max(0, max_photos_per_place)
        self._rand = rand

        self._run_lock = threading.Lock()
        self._commit_gate = threading.Lock()
        self._resumed = threading.Event()
        self._resumed.set()
        self._cancelled = threading.Event()
        self._quota_exhausted = threading.Event()

    # --- control -----------------------------------------------------------------

    @property
    def is_running(self) -> bool:
        return self._run_lock.locked()

    @property
    def is_paused(self) -> bool:
        return not self._resumed.is_set()

    @property
    def is_cancelled(self) -> bool:
        return self._cancelled.is_set()

    def pause(self) -> None:
        """Let workers finish their current item, then idle until resumed."""

        self._resumed.clear()
        LOGGER.info("sync_paused")
        self.reporter.set_state(STATE_PAUSED)

    def resume(self) -> None:
        self._resumed.set()
        LOGGER.info("sync_resumed")
        self.reporter.set_state(STATE_CANCELLING if self._cancelled.is_set() else STATE_RUNNING)

    def cancel(self) -> None:
        """Stop the run at the next checkpoint; commits already past the gate complete."""

        with self._commit_gate:
            self._cancelled.set()
        # Paused workers must wake up to drain the backlog as deferred.
        self._resumed.set()
        LOGGER.info("sync_cancel_requested")
        self.reporter.set_state(STATE_CANCELLING)

    # --- run ---------------------------------------------------------------------

    def run(
        self,
        place_ids: Iterable[str],
        concurrency: int | None = None,
        run_id: str | None = None,
    ) -> Iterator[SyncOutcome]:
        """Synchronize ``place_ids`` and yield one outcome per distinct id in completion order.

        A ``pause`` or ``cancel`` issued before the first iteration applies to
        this run; control flags reset only when the run ends.
        """

        workers = concurrency if concurrency is not None else self.concurrency
        if workers < 1:
            raise ValueError("concurrency must be at least 1")
        if not self._run_lock.acquire(blocking=False):
            raise RuntimeError("a sync run is already in progress")

        ids = list(dict.fromkeys(place_ids))
        run_id = run_id or uuid.uuid4().hex

        backlog: queue.Queue[str] = queue.Queue()
        for place_id in ids:
            backlog.put(place_id)
        outcomes: queue.Queue[object] = queue.Queue()

        LOGGER.info("sync_run_start", extra={"run_id": run_id, "total": len(ids), "workers": workers})
        self.reporter.start_run(run_id, len(ids))
        # Controls issued before the first iteration still apply.
        if self._cancelled.is_set():
            self.reporter.set_state(STATE_CANCELLING)
        elif not self._resumed.is_set():
            self.reporter.set_state(STATE_PAUSED)
        started = time.monotonic()
        executor = ThreadPoolExecutor(max_workers=workers, thread_name_prefix="sync-worker")
        futures = [
            executor.submit(self._worker_loop, worker_id, backlog, outcomes, run_id) for worker_id in range(workers)
        ]
        pending = workers
        counts = {STATUS_SUCCESS: 0, STATUS_DEFERRED: 0, STATUS_FAILED: 0}
        try:
            while pending:
                item = outcomes.get()
                if item is _WORKER_DONE:
                    pending -= 1
                    continue
                outcome = cast(SyncOutcome, item)
                counts[outcome.status] = counts.get(outcome.status, 0) + 1
                yield outcome
        finally:
            if pending:
                # The consumer stopped early; wind the workers down.
                self.cancel()
            executor.shutdown(wait=True)
            self.reporter.finish_run()
            self._reset_controls()
            self._run_lock.release()
            LOGGER.info(
                "sync_run_complete",
                extra={
                    "run_id": run_id,
                    "duration_seconds": round(time.monotonic() - started, 3),
                    "quota_remaining": self._quota.remaining(),
                    **counts,
                },
            )

        for future in futures:
            future.result()

    def _reset_controls(self) -> None:
        self._cancelled.clear()
        self._quota_exhausted.clear()
        self._resumed.set()

    # --- workers -----------------------------------------------------------------

    def _worker_loop(
        self,
        worker_id: int,
        backlog: "queue.Queue[str]",
        outcomes: "queue.Queue[object]",
        run_id: str,
    ) -> None:
        try:
            while True:
                self._resumed.wait()
                try:
                    place_id = backlog.get_nowait()
                except queue.Empty:
                    return

                if self._cancelled.is_set():
                    outcome = self._outcome(place_id, STATUS_DEFERRED, run_id, reason=Cancelled.reason)
                elif self._quota_exhausted.is_set():
                    outcome = self._outcome(place_id, STATUS_DEFERRED, run_id, reason=QuotaExhausted.reason)
                else:
                    outcome = self._process(worker_id, place_id, run_id)
                self._emit(outcome, outcomes)
        finally:
            self._rate_limiter.forget(worker_id)
            outcomes.put(_WORKER_DONE)

    def _emit(self, outcome: SyncOutcome, outcomes: "queue.Queue[object]") -> None:
        try:
            self._store.record_outcome(outcome)
        except SQLAlchemyError as exc:
            LOGGER.error("outcome_record_error", extra={"place_id": outcome.place_id, "error": str(exc)})
        self.reporter.item_finished(outcome)
        outcomes.put(outcome)

    @staticmethod
    def _outcome(place_id: str, status: str, run_id: str, *, reason: str | None = None, attempts: int = 0) -> SyncOutcome:
        return SyncOutcome(
            place_id=place_id,
            status=status,
            finished_at=time.time(),
            reason=reason,
            attempts=attempts,
            run_id=run_id,
        )

    def _checkpoint(self) -> None:
        if self._cancelled.is_set():
            raise Cancelled("sync cancelled")

    def _interruptible_sleep(self, seconds: float) -> None:
        # Returns early when cancel() is called; the next checkpoint raises.
        self._cancelled.wait(seconds)

    def _upstream_call(self, worker_id: int, func: Callable[[], T], attempts: list[int], description: str) -> T:
        """Run one upstream call through pacing, admission, and retry."""

        def _attempt() -> T:
            self._checkpoint()
            self._rate_limiter.acquire(worker_id, sleep=self._interruptible_sleep)
            self._checkpoint()
            if not self._quota.try_admit(1):
                if not self._quota_exhausted.is_set():
                    self._quota_exhausted.set()
                    LOGGER.warning(
                        "quota_exhausted",
                        extra={"ceiling": self._quota.ceiling, "day": self._quota.day},
                    )
                raise QuotaExhausted("daily quota exhausted")
            attempts[0] += 1
            return func()

        return run_with_retry(
            _attempt,
            self._retry_policy,
            sleep=self._interruptible_sleep,
            rand=self._rand,
            description=description,
        )

    def _process(self, worker_id: int, place_id: str, run_id: str) -> SyncOutcome:
        attempts = [0]
        handle: StagingHandle | None = None
        self.reporter.item_started(place_id)
        try:
            snapshot = self._upstream_call(
                worker_id, lambda: self._client.fetch_record(place_id), attempts, "fetch_record"
            ).limited(self._max_photos)

            asset_sets: list[PhotoAssetSet] = []
            max_width = self._pipeline.widths[-1]
            for photo_ref in snapshot.photo_refs:
                raw = self._upstream_call(
                    worker_id,
                    lambda ref=photo_ref: self._client.fetch_photo(ref, max_width),
                    attempts,
                    "fetch_photo",
                )
                self._checkpoint()
                asset_sets.append(self._pipeline.generate(raw, photo_ref))

            self._checkpoint()
            handle = self._store.stage(place_id, snapshot, asset_sets)
            with self._commit_gate:
                # cancel() waits on this gate, so a started commit always precedes it.
                self._checkpoint()
                changed = self._store.commit(handle)
            handle = None
            LOGGER.info(
                "sync_item_committed",
                extra={
                    "place_id": place_id,
                    "worker_id": worker_id,
                    "photos": len(asset_sets),
                    "changed": changed,
                    "attempts": attempts[0],
                },
            )
            return self._outcome(place_id, STATUS_SUCCESS, run_id, attempts=attempts[0])
        except Cancelled:
            LOGGER.info("sync_item_cancelled", extra={"place_id": place_id, "worker_id": worker_id})
            return self._outcome(place_id, STATUS_DEFERRED, run_id, reason=Cancelled.reason, attempts=attempts[0])
        except QuotaExhausted:
            return self._outcome(
                place_id, STATUS_DEFERRED, run_id, reason=QuotaExhausted.reason, attempts=attempts[0]
            )
        except (TransientError, PermanentError, CommitFault) as exc:
            LOGGER.warning(
                "sync_item_failed",
                extra={"place_id": place_id, "worker_id": worker_id, "reason": exc.reason, "error": str(exc)},
            )
            return self._outcome(place_id, STATUS_FAILED, run_id, reason=exc.reason, attempts=attempts[0])
        except Exception as exc:  # noqa: BLE001
            LOGGER.exception("sync_item_unexpected_error", extra={"place_id": place_id, "error": str(exc)})
            return self._outcome(place_id, STATUS_FAILED, run_id, reason="unexpected", attempts=attempts[0])
        finally:
            if handle is not None:
                self._store.abort(handle)


__all__ = ["SyncScheduler"]
