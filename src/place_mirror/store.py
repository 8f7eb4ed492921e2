"""Replace-on-success persistence for place snapshots and photo variants.

Layout under the storage root::

    staging/<generation_id>/<photo_key>/<width>.<ext>      written by stage()
    generations/<generation_id>/<photo_key>/<width>.<ext>  activated by commit()

The ``places`` table holds the single indirection point readers follow. A
commit renames the staged directory into ``generations/`` and swaps the
pointer in one database transaction; the previous generation is removed only
after that transaction has committed.
"""

from __future__ import annotations

import hashlib
import json
import os
import shutil
import threading
import time
import uuid
from collections.abc import Callable, Iterable, Sequence
from dataclasses import dataclass, field
from pathlib import Path

from sqlalchemy import delete, func, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from place_mirror.cache_helpers import (
    GENERATIONS_DIRNAME,
    STAGING_DIRNAME,
    directory_size,
    photo_key,
    resolve_storage_root,
)
from place_mirror.config import Settings
from place_mirror.db import (
    Generation,
    PhotoVariantRecord,
    Place,
    QuotaRecord,
    SyncOutcomeRecord,
    open_store_session,
)
from place_mirror.db_helpers import dialect_insert
from place_mirror.errors import CommitFault
from place_mirror.models import (
    ENCODING_EXTENSIONS,
    ENCODINGS,
    STATUS_DEFERRED,
    PhotoAssetSet,
    PlaceSnapshot,
    SyncOutcome,
)
from utils.logging import get_logger

LOGGER = get_logger(__name__, extra={"component": "store"})


@dataclass(frozen=True)
class StagedFile:
    """A variant written into the staging area, with the checksum to verify."""

    photo_ref: str
    width: int
    encoding: str
    relative_path: str
    checksum: str
    size_bytes: int
    pixel_width: int
    pixel_height: int


@dataclass
class StagingHandle:
    """Everything needed to commit or abort one staged generation."""

    generation_id: str
    place_id: str
    snapshot: PlaceSnapshot
    content_hash: str
    staging_dir: Path
    files: list[StagedFile] = field(default_factory=list)
    state: str = "staged"


@dataclass(frozen=True)
class CachedPlace:
    """The active snapshot of a place together with its freshness."""

    snapshot: PlaceSnapshot
    generation_id: str
    fetched_at: float
    age_seconds: float
    is_stale: bool


def _sha256(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def _write_durably(path: Path, data: bytes) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("wb") as fp:
        fp.write(data)
        fp.flush()
        os.fsync(fp.fileno())


def _hash_file(path: Path) -> str:
    digest = hashlib.sha256()
    with path.open("rb") as fp:
        for chunk in iter(lambda: fp.read(65536), b""):
            digest.update(chunk)
    return digest.hexdigest()


class MirrorStore:
    """Durable store exposing stage / commit / abort plus read lookups."""

    def __init__(
        self,
        db_target: str | Path,
        root: str | Path,
        *,
        variant_widths: Sequence[int],
        cache_ttl_seconds: float,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._db_target = db_target
        self.root = resolve_storage_root(root)
        self.widths: tuple[int, ...] = tuple(sorted({int(width) for width in variant_widths}))
        self.cache_ttl_seconds = float(cache_ttl_seconds)
        self._clock = clock
        self._commit_lock = threading.Lock()
        self._staging_root = self.root / STAGING_DIRNAME
        self._generations_root = self.root / GENERATIONS_DIRNAME
        self._staging_root.mkdir(parents=True, exist_ok=True)
        self._generations_root.mkdir(parents=True, exist_ok=True)

    @classmethod
    def from_settings(cls, settings: Settings) -> "MirrorStore":
        return cls(
            settings.databases.store_url,
            settings.storage.root,
            variant_widths=settings.variants.sorted_widths(),
            cache_ttl_seconds=settings.sync.cache_ttl_seconds,
        )

    def _session(self) -> Session:
        return open_store_session(self._db_target)

    # --- staging -----------------------------------------------------------------

    def stage(self, place_id: str, snapshot: PlaceSnapshot, asset_sets: Iterable[PhotoAssetSet]) -> StagingHandle:
        """Write ``snapshot`` and every variant into a fresh staging directory.

        Raises :class:`CommitFault` if an asset set is incomplete, a photo of
        the snapshot has no asset set, or the staging write fails.
        """

        sets = {asset_set.photo_ref: asset_set for asset_set in asset_sets}
        missing_sets = [ref for ref in snapshot.photo_refs if ref not in sets]
        if missing_sets:
            raise CommitFault(f"no asset set for photos {missing_sets}", reason="incomplete_stage")
        for asset_set in sets.values():
            missing = asset_set.missing(self.widths)
            if missing:
                raise CommitFault(
                    f"asset set for {asset_set.photo_ref} is missing {missing}", reason="incomplete_stage"
                )

        generation_id = uuid.uuid4().hex
        staging_dir = self._staging_root / generation_id
        digest = hashlib.sha256(snapshot.content_hash().encode("ascii"))
        handle = StagingHandle(
            generation_id=generation_id,
            place_id=place_id,
            snapshot=snapshot,
            content_hash="",
            staging_dir=staging_dir,
        )

        try:
            staging_dir.mkdir(parents=True, exist_ok=False)
            for ref in snapshot.photo_refs:
                asset_set = sets[ref]
                digest.update(asset_set.content_hash().encode("ascii"))
                key = photo_key(ref)
                for width in self.widths:
                    for encoding in ENCODINGS:
                        variant = asset_set.variants[(width, encoding)]
                        relative = f"{key}/{width}.{ENCODING_EXTENSIONS[encoding]}"
                        _write_durably(staging_dir / relative, variant.data)
                        handle.files.append(
                            StagedFile(
                                photo_ref=ref,
                                width=width,
                                encoding=encoding,
                                relative_path=relative,
                                checksum=_sha256(variant.data),
                                size_bytes=len(variant.data),
                                pixel_width=variant.pixel_width,
                                pixel_height=variant.pixel_height,
                            )
                        )
        except OSError as exc:
            shutil.rmtree(staging_dir, ignore_errors=True)
            LOGGER.error("stage_write_error", extra={"place_id": place_id, "error": str(exc)})
            raise CommitFault(f"staging write failed: {exc}") from exc

        handle.content_hash = digest.hexdigest()
        LOGGER.debug(
            "stage_complete",
            extra={"place_id": place_id, "generation_id": generation_id, "files": len(handle.files)},
        )
        return handle

    def verify(self, handle: StagingHandle) -> None:
        """Check every staged file is present and intact; raise :class:`CommitFault` otherwise."""

        expected = len(handle.snapshot.photo_refs) * len(self.widths) * len(ENCODINGS)
        if len(handle.files) != expected:
            raise CommitFault(
                f"staged {len(handle.files)} files, expected {expected}", reason="verification_failed"
            )
        for staged in handle.files:
            path = handle.staging_dir / staged.relative_path
            try:
                checksum = _hash_file(path)
            except OSError as exc:
                raise CommitFault(f"staged file unreadable: {path}", reason="verification_failed") from exc
            if checksum != staged.checksum:
                raise CommitFault(f"staged file corrupted: {path}", reason="verification_failed")

    def abort(self, handle: StagingHandle) -> None:
        """Discard staged data; the active generation is untouched."""

        if handle.state != "staged":
            return
        shutil.rmtree(handle.staging_dir, ignore_errors=True)
        handle.state = "aborted"
        LOGGER.debug("stage_aborted", extra={"place_id": handle.place_id, "generation_id": handle.generation_id})

    # --- commit ------------------------------------------------------------------

    def commit(self, handle: StagingHandle) -> bool:
        """Activate a staged generation and retire the previous one.

        Returns ``True`` when a new generation became active and ``False`` when
        the staged content matched the active generation and only its cache age
        was reset. Raises :class:`CommitFault` on verification or I/O failure,
        in which case the previously active data is unchanged.
        """

        if handle.state != "staged":
            raise ValueError(f"cannot commit a handle in state {handle.state!r}")

        self.verify(handle)
        now = self._clock()

        with self._commit_lock:
            with self._session() as session:
                current = session.get(Place, handle.place_id)
                previous_generation = current.generation_id if current is not None else None
                if current is not None and current.content_hash == handle.content_hash:
                    try:
                        current.fetched_at = now
                        current.updated_at = now
                        session.commit()
                    except SQLAlchemyError as exc:
                        session.rollback()
                        raise CommitFault(f"refresh failed: {exc}") from exc
                    shutil.rmtree(handle.staging_dir, ignore_errors=True)
                    handle.state = "committed"
                    LOGGER.info("commit_unchanged", extra={"place_id": handle.place_id})
                    return False

            final_dir = self._generations_root / handle.generation_id
            try:
                os.replace(handle.staging_dir, final_dir)
            except OSError as exc:
                LOGGER.error(
                    "commit_rename_error",
                    extra={"place_id": handle.place_id, "generation_id": handle.generation_id, "error": str(exc)},
                )
                raise CommitFault(f"activation rename failed: {exc}") from exc

            try:
                self._write_generation_rows(handle, now)
            except SQLAlchemyError as exc:
                LOGGER.error(
                    "commit_db_error",
                    extra={"place_id": handle.place_id, "generation_id": handle.generation_id, "error": str(exc)},
                )
                try:
                    os.replace(final_dir, handle.staging_dir)
                except OSError:
                    # Unreferenced generation directories are removed by recover().
                    shutil.rmtree(final_dir, ignore_errors=True)
                raise CommitFault(f"activation failed: {exc}") from exc

            handle.state = "committed"

        LOGGER.info(
            "commit_activated",
            extra={
                "place_id": handle.place_id,
                "generation_id": handle.generation_id,
                "previous_generation": previous_generation,
            },
        )
        if previous_generation and previous_generation != handle.generation_id:
            self._retire_generation(previous_generation)
        return True

    def _write_generation_rows(self, handle: StagingHandle, now: float) -> None:
        """Insert the generation and swap the place pointer in one transaction."""

        storage_dir = f"{GENERATIONS_DIRNAME}/{handle.generation_id}"
        with self._session() as session:
            try:
                session.add(
                    Generation(
                        generation_id=handle.generation_id,
                        place_id=handle.place_id,
                        snapshot_json=json.dumps(handle.snapshot.to_dict(), sort_keys=True),
                        content_hash=handle.content_hash,
                        storage_dir=storage_dir,
                        created_at=now,
                    )
                )
                session.flush()
                for staged in handle.files:
                    session.add(
                        PhotoVariantRecord(
                            generation_id=handle.generation_id,
                            photo_ref=staged.photo_ref,
                            width=staged.width,
                            encoding=staged.encoding,
                            storage_path=f"{storage_dir}/{staged.relative_path}",
                            checksum=staged.checksum,
                            size_bytes=staged.size_bytes,
                            pixel_width=staged.pixel_width,
                            pixel_height=staged.pixel_height,
                        )
                    )
                place = session.get(Place, handle.place_id)
                if place is None:
                    session.add(
                        Place(
                            place_id=handle.place_id,
                            generation_id=handle.generation_id,
                            content_hash=handle.content_hash,
                            fetched_at=now,
                            created_at=now,
                            updated_at=now,
                        )
                    )
                else:
                    place.generation_id = handle.generation_id
                    place.content_hash = handle.content_hash
                    place.fetched_at = now
                    place.updated_at = now
                session.commit()
            except SQLAlchemyError:
                session.rollback()
                raise

    def _retire_generation(self, generation_id: str) -> None:
        """Delete a generation that is no longer referenced by any place."""

        try:
            with self._session() as session:
                still_active = session.execute(
                    select(Place.place_id).where(Place.generation_id == generation_id).limit(1)
                ).scalar_one_or_none()
                if still_active is not None:
                    return
                session.execute(delete(PhotoVariantRecord).where(PhotoVariantRecord.generation_id == generation_id))
                session.execute(delete(Generation).where(Generation.generation_id == generation_id))
                session.commit()
        except SQLAlchemyError as exc:
            LOGGER.warning("retire_generation_db_error", extra={"generation_id": generation_id, "error": str(exc)})
            return
        shutil.rmtree(self._generations_root / generation_id, ignore_errors=True)

    # --- reads -------------------------------------------------------------------

    def _freshness(self, fetched_at: float) -> tuple[float, bool]:
        age = max(0.0, self._clock() - fetched_at)
        return age, age > self.cache_ttl_seconds

    def get_snapshot(self, place_id: str) -> CachedPlace | None:
        """Return the active snapshot for ``place_id``, flagged stale when past the TTL."""

        with self._session() as session:
            row = session.execute(
                select(Generation.snapshot_json, Place.generation_id, Place.fetched_at)
                .join(Generation, Generation.generation_id == Place.generation_id)
                .where(Place.place_id == place_id)
            ).one_or_none()
        if row is None:
            return None
        age, stale = self._freshness(row.fetched_at)
        return CachedPlace(
            snapshot=PlaceSnapshot.from_dict(json.loads(row.snapshot_json)),
            generation_id=row.generation_id,
            fetched_at=row.fetched_at,
            age_seconds=age,
            is_stale=stale,
        )

    def get_photo(self, place_id: str, photo_ref: str, width: int, encoding: str) -> bytes | None:
        """Return the active bytes of one variant, or ``None`` if it does not exist."""

        stmt = (
            select(PhotoVariantRecord.storage_path)
            .join(Place, Place.generation_id == PhotoVariantRecord.generation_id)
            .where(
                Place.place_id == place_id,
                PhotoVariantRecord.photo_ref == photo_ref,
                PhotoVariantRecord.width == int(width),
                PhotoVariantRecord.encoding == encoding,
            )
        )
        # A commit may retire the generation between lookup and read; look again.
        for _ in range(3):
            with self._session() as session:
                storage_path = session.execute(stmt).scalar_one_or_none()
            if storage_path is None:
                return None
            try:
                return (self.root / storage_path).read_bytes()
            except FileNotFoundError:
                continue
        return None

    def list_photo_widths(self, place_id: str, photo_ref: str) -> list[int]:
        with self._session() as session:
            widths = session.execute(
                select(PhotoVariantRecord.width)
                .join(Place, Place.generation_id == PhotoVariantRecord.generation_id)
                .where(Place.place_id == place_id, PhotoVariantRecord.photo_ref == photo_ref)
                .distinct()
            ).scalars().all()
        return sorted(widths)

    def place_ids(self) -> list[str]:
        with self._session() as session:
            return list(session.execute(select(Place.place_id).order_by(Place.place_id)).scalars().all())

    def due_for_refresh(self, place_ids: Iterable[str]) -> list[str]:
        """Return the ids that are missing or older than the cache TTL, input order kept."""

        wanted = list(dict.fromkeys(place_ids))
        if not wanted:
            return []
        with self._session() as session:
            rows = session.execute(
                select(Place.place_id, Place.fetched_at).where(Place.place_id.in_(wanted))
            ).all()
        fetched = {row.place_id: row.fetched_at for row in rows}
        due: list[str] = []
        for place_id in wanted:
            if place_id not in fetched or self._freshness(fetched[place_id])[1]:
                due.append(place_id)
        return due

    def storage_bytes(self) -> int:
        return directory_size(self._generations_root) + directory_size(self._staging_root)

    # --- quota -------------------------------------------------------------------

    def load_quota_used(self, day: str) -> int | None:
        with self._session() as session:
            row = session.get(QuotaRecord, day)
            return row.used if row is not None else None

    def save_quota(self, day: str, used: int, ceiling: int) -> None:
        now = self._clock()
        with self._session() as session:
            stmt = dialect_insert(session, QuotaRecord).values(day=day, used=used, ceiling=ceiling, updated_at=now)
            stmt = stmt.on_conflict_do_update(
                index_elements=[QuotaRecord.day],
                set_={"used": used, "ceiling": ceiling, "updated_at": now},
            )
            session.execute(stmt)
            session.commit()

    def get_quota_record(self, day: str) -> QuotaRecord | None:
        with self._session() as session:
            return session.get(QuotaRecord, day)

    # --- outcomes ----------------------------------------------------------------

    def record_outcome(self, outcome: SyncOutcome) -> None:
        with self._session() as session:
            session.add(
                SyncOutcomeRecord(
                    run_id=outcome.run_id or "",
                    place_id=outcome.place_id,
                    status=outcome.status,
                    reason=outcome.reason,
                    attempts=outcome.attempts,
                    finished_at=outcome.finished_at,
                )
            )
            session.commit()

    def latest_run_id(self) -> str | None:
        with self._session() as session:
            return session.execute(
                select(SyncOutcomeRecord.run_id).order_by(SyncOutcomeRecord.id.desc()).limit(1)
            ).scalar_one_or_none()

    def deferred_place_ids(self, run_id: str | None = None) -> list[str]:
        """Return the ids deferred in ``run_id`` (the most recent run by default)."""

        target = run_id or self.latest_run_id()
        if target is None:
            return []
        with self._session() as session:
            rows = session.execute(
                select(SyncOutcomeRecord.place_id)
                .where(SyncOutcomeRecord.run_id == target, SyncOutcomeRecord.status == STATUS_DEFERRED)
                .order_by(SyncOutcomeRecord.id)
            ).scalars().all()
        return list(dict.fromkeys(rows))

    def outcome_counts(self, run_id: str) -> dict[str, int]:
        with self._session() as session:
            rows = session.execute(
                select(SyncOutcomeRecord.status, func.count())
                .where(SyncOutcomeRecord.run_id == run_id)
                .group_by(SyncOutcomeRecord.status)
            ).all()
        return {status: int(count) for status, count in rows}

    # --- maintenance -------------------------------------------------------------

    def recover(self) -> dict[str, int]:
        """Remove leftovers of interrupted runs: staging dirs and unreferenced generations."""

        removed_staging = 0
        for entry in self._staging_root.iterdir():
            if entry.is_dir():
                shutil.rmtree(entry, ignore_errors=True)
            else:
                entry.unlink(missing_ok=True)
            removed_staging += 1

        with self._commit_lock:
            with self._session() as session:
                active = set(session.execute(select(Place.generation_id)).scalars().all())
                orphans = [
                    gen_id
                    for gen_id in session.execute(select(Generation.generation_id)).scalars().all()
                    if gen_id not in active
                ]
                if orphans:
                    session.execute(delete(PhotoVariantRecord).where(PhotoVariantRecord.generation_id.in_(orphans)))
                    session.execute(delete(Generation).where(Generation.generation_id.in_(orphans)))
                    session.commit()

            removed_generations = 0
            for entry in self._generations_root.iterdir():
                if entry.name not in active:
                    shutil.rmtree(entry, ignore_errors=True)
                    removed_generations += 1

        summary = {"staging": removed_staging, "generations": removed_generations}
        if removed_staging or removed_generations:
            LOGGER.info("store_recovered", extra=summary)
        return summary

    def evict(self, place_id: str) -> bool:
        """Remove a place and its active generation entirely."""

        with self._commit_lock:
            with self._session() as session:
                place = session.get(Place, place_id)
                if place is None:
                    return False
                generation_id = place.generation_id
                session.delete(place)
                session.flush()
                session.execute(delete(PhotoVariantRecord).where(PhotoVariantRecord.generation_id == generation_id))
                session.execute(delete(Generation).where(Generation.generation_id == generation_id))
                session.commit()
            shutil.rmtree(self._generations_root / generation_id, ignore_errors=True)
        LOGGER.info("place_evicted", extra={"place_id": place_id})
        return True

    def mark_all_stale(self) -> int:
        """Expire every snapshot so the next run refreshes it; data stays servable."""

        with self._session() as session:
            result = session.execute(update(Place).values(fetched_at=0.0))
            session.commit()
            return int(result.rowcount or 0)


__all__ = ["CachedPlace", "MirrorStore", "StagedFile", "StagingHandle"]
