"""SQLAlchemy schema definitions and session management for the mirror store."""

from __future__ import annotations

from pathlib import Path
from threading import Lock
from typing import Any

from sqlalchemy import (
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    create_engine,
    event,
)
from sqlalchemy.engine import Engine
from sqlalchemy.engine.url import make_url
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import DeclarativeBase, Mapped, Session, mapped_column

from place_mirror.db_helpers import normalize_database_url
from utils.logging import get_logger

LOGGER = get_logger(__name__)


class Base(DeclarativeBase):
    """Declarative base for all ORM models."""


class Place(Base):
    """Active pointer for one place: which generation readers should see."""

    __tablename__ = "places"

    place_id: Mapped[str] = mapped_column(String, primary_key=True)
    generation_id: Mapped[str] = mapped_column(String, ForeignKey("generations.generation_id"), nullable=False)
    content_hash: Mapped[str] = mapped_column(String, nullable=False)
    fetched_at: Mapped[float] = mapped_column(Float, nullable=False)
    created_at: Mapped[float] = mapped_column(Float, nullable=False)
    updated_at: Mapped[float] = mapped_column(Float, nullable=False)

    __table_args__ = (Index("idx_places_fetched_at", "fetched_at"),)


class Generation(Base):
    """One committed snapshot of a place together with its photo directory."""

    __tablename__ = "generations"

    generation_id: Mapped[str] = mapped_column(String, primary_key=True)
    place_id: Mapped[str] = mapped_column(String, nullable=False)
    snapshot_json: Mapped[str] = mapped_column(Text, nullable=False)
    content_hash: Mapped[str] = mapped_column(String, nullable=False)
    storage_dir: Mapped[str] = mapped_column(String, nullable=False)
    created_at: Mapped[float] = mapped_column(Float, nullable=False)

    __table_args__ = (Index("idx_generations_place", "place_id"),)


class PhotoVariantRecord(Base):
    """One encoded photo rendition belonging to a generation."""

    __tablename__ = "photo_variants"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    generation_id: Mapped[str] = mapped_column(String, ForeignKey("generations.generation_id"), nullable=False)
    photo_ref: Mapped[str] = mapped_column(String, nullable=False)
    width: Mapped[int] = mapped_column(Integer, nullable=False)
    encoding: Mapped[str] = mapped_column(String, nullable=False)
    storage_path: Mapped[str] = mapped_column(String, nullable=False)
    checksum: Mapped[str] = mapped_column(String, nullable=False)
    size_bytes: Mapped[int] = mapped_column(Integer, nullable=False)
    pixel_width: Mapped[int] = mapped_column(Integer, nullable=False)
    pixel_height: Mapped[int] = mapped_column(Integer, nullable=False)

    __table_args__ = (
        UniqueConstraint("generation_id", "photo_ref", "width", "encoding", name="uq_photo_variant_identity"),
        Index("idx_photo_variants_lookup", "generation_id", "photo_ref"),
    )


class QuotaRecord(Base):
    """External calls consumed on one calendar day against the daily ceiling."""

    __tablename__ = "quota_records"

    day: Mapped[str] = mapped_column(String, primary_key=True)
    used: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    ceiling: Mapped[int] = mapped_column(Integer, nullable=False)
    updated_at: Mapped[float] = mapped_column(Float, nullable=False)


class SyncOutcomeRecord(Base):
    """Per-run, per-place outcome history."""

    __tablename__ = "sync_outcomes"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    run_id: Mapped[str] = mapped_column(String, nullable=False)
    place_id: Mapped[str] = mapped_column(String, nullable=False)
    status: Mapped[str] = mapped_column(String, nullable=False)
    reason: Mapped[str | None] = mapped_column(String, nullable=True)
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    finished_at: Mapped[float] = mapped_column(Float, nullable=False)

    __table_args__ = (
        Index("idx_sync_outcomes_run", "run_id", "status"),
        Index("idx_sync_outcomes_place", "place_id"),
    )


_ENGINE_CACHE: dict[str, Engine] = {}
_ENGINE_LOCK = Lock()


def _ensure_parent_directory(path: Path) -> None:
    """Ensure the parent directory for a database file exists."""

    try:
        path.parent.mkdir(parents=True, exist_ok=True)
    except OSError as exc:
        LOGGER.error("db_parent_directory_error", extra={"path": str(path), "error": str(exc)})
        raise


def get_engine(target: str | Path) -> Engine:
    """Return a cached SQLAlchemy engine for the provided target, creating schema if needed."""

    normalized = normalize_database_url(target)
    engine = _ENGINE_CACHE.get(normalized)
    if engine is not None:
        return engine

    with _ENGINE_LOCK:
        engine = _ENGINE_CACHE.get(normalized)
        if engine is not None:
            return engine

        sa_url = make_url(normalized)
        is_sqlite = sa_url.drivername.startswith("sqlite")

        engine_kwargs: dict[str, object] = {"future": True}
        if is_sqlite:
            if sa_url.database and sa_url.database not in {":memory:"}:
                _ensure_parent_directory(Path(sa_url.database))
            engine_kwargs["connect_args"] = {"timeout": 30.0, "check_same_thread": False}
        else:
            engine_kwargs["pool_pre_ping"] = True

        engine = create_engine(normalized, **engine_kwargs)

        if is_sqlite:

            @event.listens_for(engine, "connect")
            def _set_sqlite_pragma(dbapi_connection: Any, connection_record: Any) -> None:  # type: ignore[override]
                """Configure SQLite for concurrent readers alongside worker writes."""

                cursor = dbapi_connection.cursor()
                try:
                    cursor.execute("PRAGMA journal_mode=WAL")
                    cursor.execute("PRAGMA busy_timeout = 30000")
                    cursor.execute("PRAGMA foreign_keys = ON")
                finally:
                    cursor.close()

        try:
            Base.metadata.create_all(engine)
        except OperationalError as exc:
            # Two processes may race between SQLite's existence check and CREATE TABLE.
            message = str(exc).lower()
            if "already exists" in message:
                LOGGER.info(
                    "db_create_all_table_exists_race",
                    extra={"target": normalized, "error": str(exc)},
                )
            else:
                raise

        _ENGINE_CACHE[normalized] = engine
        return engine


def open_store_session(target: str | Path) -> Session:
    """Open a SQLAlchemy session against the mirror store database."""

    engine = get_engine(target)
    return Session(engine, future=True, expire_on_commit=False)


def dispose_engines() -> None:
    """Dispose and forget every cached engine."""

    with _ENGINE_LOCK:
        for engine in _ENGINE_CACHE.values():
            engine.dispose()
        _ENGINE_CACHE.clear()


__all__ = [
    "Base",
    "Generation",
    "PhotoVariantRecord",
    "Place",
    "QuotaRecord",
    "SyncOutcomeRecord",
    "dispose_engines",
    "get_engine",
    "open_store_session",
]
