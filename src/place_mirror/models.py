"""Value types passed between the fetch, transcode, store, and scheduler layers."""

from __future__ import annotations

import hashlib
import json
import time
from dataclasses import dataclass, field
from typing import Any, Final, Iterable, Mapping

from place_mirror.errors import PermanentError

ENCODING_WEBP: Final[str] = "webp"
ENCODING_JPEG: Final[str] = "jpeg"
ENCODINGS: Final[tuple[str, ...]] = (ENCODING_WEBP, ENCODING_JPEG)

ENCODING_MIME_TYPES: Final[dict[str, str]] = {
    ENCODING_WEBP: "image/webp",
    ENCODING_JPEG: "image/jpeg",
}
ENCODING_EXTENSIONS: Final[dict[str, str]] = {
    ENCODING_WEBP: "webp",
    ENCODING_JPEG: "jpg",
}

STATUS_SUCCESS: Final[str] = "success"
STATUS_DEFERRED: Final[str] = "deferred"
STATUS_FAILED: Final[str] = "failed"


def _canonical_json(value: Any) -> str:
    return json.dumps(value, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


@dataclass(frozen=True)
class PlaceSnapshot:
    """Structured representation of one place as returned by the source."""

    place_id: str
    name: str
    address: str | None
    latitude: float | None
    longitude: float | None
    types: tuple[str, ...]
    icon: str | None
    photo_refs: tuple[str, ...]
    captured_at: float
    raw: Mapping[str, Any] = field(default_factory=dict, compare=False)

    @classmethod
    def from_source(cls, place_id: str, result: Any, captured_at: float | None = None) -> "PlaceSnapshot":
        """Build a snapshot from a details ``result`` mapping.

        Raises :class:`PermanentError` when the mapping lacks the fields every
        snapshot needs.
        """

        if not isinstance(result, dict):
            raise PermanentError(f"record for {place_id} is not an object", reason="malformed_record")

        name = result.get("name")
        if not isinstance(name, str) or not name.strip():
            raise PermanentError(f"record for {place_id} has no name", reason="malformed_record")

        location = result.get("geometry", {}).get("location", {}) if isinstance(result.get("geometry"), dict) else {}
        latitude = location.get("lat") if isinstance(location, dict) else None
        longitude = location.get("lng") if isinstance(location, dict) else None

        photos = result.get("photos") or []
        if not isinstance(photos, list):
            raise PermanentError(f"record for {place_id} has malformed photos", reason="malformed_record")
        photo_refs: list[str] = []
        for photo in photos:
            ref = photo.get("photo_reference") if isinstance(photo, dict) else None
            if isinstance(ref, str) and ref and ref not in photo_refs:
                photo_refs.append(ref)

        types = result.get("types") or []
        return cls(
            place_id=place_id,
            name=name.strip(),
            address=result.get("formatted_address") if isinstance(result.get("formatted_address"), str) else None,
            latitude=float(latitude) if isinstance(latitude, (int, float)) else None,
            longitude=float(longitude) if isinstance(longitude, (int, float)) else None,
            types=tuple(str(item) for item in types) if isinstance(types, list) else (),
            icon=result.get("icon") if isinstance(result.get("icon"), str) else None,
            photo_refs=tuple(photo_refs),
            captured_at=captured_at if captured_at is not None else time.time(),
            raw=dict(result),
        )

    def limited(self, max_photos: int) -> "PlaceSnapshot":
        """Return a copy whose photo list is truncated to ``max_photos``."""

        if len(self.photo_refs) <= max_photos:
            return self
        return PlaceSnapshot(
            place_id=self.place_id,
            name=self.name,
            address=self.address,
            latitude=self.latitude,
            longitude=self.longitude,
            types=self.types,
            icon=self.icon,
            photo_refs=self.photo_refs[:max_photos],
            captured_at=self.captured_at,
            raw=self.raw,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "place_id": self.place_id,
            "name": self.name,
            "address": self.address,
            "latitude": self.latitude,
            "longitude": self.longitude,
            "types": list(self.types),
            "icon": self.icon,
            "photo_refs": list(self.photo_refs),
            "captured_at": self.captured_at,
            "raw": dict(self.raw),
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "PlaceSnapshot":
        return cls(
            place_id=str(payload["place_id"]),
            name=str(payload["name"]),
            address=payload.get("address"),
            latitude=payload.get("latitude"),
            longitude=payload.get("longitude"),
            types=tuple(payload.get("types") or ()),
            icon=payload.get("icon"),
            photo_refs=tuple(payload.get("photo_refs") or ()),
            captured_at=float(payload.get("captured_at") or 0.0),
            raw=dict(payload.get("raw") or {}),
        )

    def content_hash(self) -> str:
        """Hash of the upstream content, ignoring when it was captured."""

        body = self.to_dict()
        body.pop("captured_at")
        return hashlib.sha256(_canonical_json(body).encode("utf-8")).hexdigest()


@dataclass(frozen=True)
class Variant:
    """One encoded rendition of a photo."""

    width: int
    encoding: str
    data: bytes
    pixel_width: int
    pixel_height: int

    @property
    def checksum(self) -> str:
        return hashlib.sha256(self.data).hexdigest()


@dataclass
class PhotoAssetSet:
    """All variants generated from one source photo."""

    photo_ref: str
    source_width: int
    source_height: int
    variants: dict[tuple[int, str], Variant] = field(default_factory=dict)

    def missing(self, widths: Iterable[int], encodings: Iterable[str] = ENCODINGS) -> list[tuple[int, str]]:
        encodings = tuple(encodings)
        return [(width, enc) for width in widths for enc in encodings if (width, enc) not in self.variants]

    def is_complete(self, widths: Iterable[int], encodings: Iterable[str] = ENCODINGS) -> bool:
        return not self.missing(widths, encodings)

    def content_hash(self) -> str:
        digest = hashlib.sha256(self.photo_ref.encode("utf-8"))
        for key in sorted(self.variants):
            digest.update(f"{key[0]}:{key[1]}:".encode("utf-8"))
            digest.update(self.variants[key].checksum.encode("ascii"))
        return digest.hexdigest()


@dataclass(frozen=True)
class SyncOutcome:
    """Result of synchronizing one place during one run."""

    place_id: str
    status: str
    finished_at: float
    reason: str | None = None
    attempts: int = 0
    run_id: str | None = None

    @property
    def succeeded(self) -> bool:
        return self.status == STATUS_SUCCESS

    def to_dict(self) -> dict[str, Any]:
        return {
            "place_id": self.place_id,
            "status": self.status,
            "finished_at": self.finished_at,
            "reason": self.reason,
            "attempts": self.attempts,
            "run_id": self.run_id,
        }


__all__ = [
    "ENCODINGS",
    "ENCODING_EXTENSIONS",
    "ENCODING_JPEG",
    "ENCODING_MIME_TYPES",
    "ENCODING_WEBP",
    "PhotoAssetSet",
    "PlaceSnapshot",
    "STATUS_DEFERRED",
    "STATUS_FAILED",
    "STATUS_SUCCESS",
    "SyncOutcome",
    "Variant",
]
