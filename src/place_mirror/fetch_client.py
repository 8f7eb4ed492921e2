"""HTTP client for the upstream places API with failure classification."""

from __future__ import annotations

import time
from collections.abc import Sequence
from typing import Any

import httpx

from place_mirror.config import SourceConfig
from place_mirror.errors import PermanentError, TransientError
from place_mirror.models import PlaceSnapshot
from utils.logging import get_logger

LOGGER = get_logger(__name__, extra={"component": "fetch_client"})

_TRANSIENT_STATUSES = {"OVER_QUERY_LIMIT", "UNKNOWN_ERROR"}
_PERMANENT_STATUSES = {"NOT_FOUND", "INVALID_REQUEST", "ZERO_RESULTS", "REQUEST_DENIED"}


def classify_response(response: httpx.Response) -> None:
    """Raise the matching taxonomy error for a non-success HTTP response."""

    status = response.status_code
    if status < 400:
        return
    if status == 429:
        raise TransientError(f"rate limited by upstream ({status})", reason="rate_limited")
    if status >= 500:
        raise TransientError(f"upstream server error ({status})", reason=f"http_{status}")
    if status == 404:
        raise PermanentError("upstream reports not found", reason="not_found")
    raise PermanentError(f"upstream rejected request ({status})", reason=f"http_{status}")


class PlacesClient:
    """Issue exactly one upstream request per call and classify its failure.

    Retries, pacing, and quota admission are the caller's concern; this class
    only turns transport and payload problems into :class:`TransientError` or
    :class:`PermanentError`.
    """

    def __init__(
        self,
        http: httpx.Client,
        *,
        api_key: str | None = None,
        record_fields: Sequence[str] = (),
    ) -> None:
        self._http = http
        self._api_key = api_key
        self._fields = ",".join(record_fields)

    @classmethod
    def from_config(cls, config: SourceConfig, transport: httpx.BaseTransport | None = None) -> "PlacesClient":
        http = httpx.Client(
            base_url=config.base_url,
            timeout=httpx.Timeout(config.timeout),
            follow_redirects=True,
            transport=transport,
        )
        return cls(http, api_key=config.api_key, record_fields=config.record_fields)

    def close(self) -> None:
        self._http.close()

    def __enter__(self) -> "PlacesClient":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def _params(self, **extra: Any) -> dict[str, Any]:
        params = {key: value for key, value in extra.items() if value is not None}
        if self._api_key:
            params["key"] = self._api_key
        return params

    def _get(self, path: str, params: dict[str, Any]) -> httpx.Response:
        try:
            response = self._http.get(path, params=params)
        except httpx.TimeoutException as exc:
            raise TransientError(f"timeout calling {path}: {exc}", reason="timeout") from exc
        except httpx.TransportError as exc:
            raise TransientError(f"transport error calling {path}: {exc}", reason="network") from exc
        classify_response(response)
        return response

    def fetch_record(self, place_id: str) -> PlaceSnapshot:
        """Fetch the details record for ``place_id``."""

        response = self._get("/details/json", self._params(place_id=place_id, fields=self._fields or None))
        try:
            body = response.json()
        except ValueError as exc:
            raise PermanentError(f"details response for {place_id} is not JSON", reason="malformed_record") from exc

        if not isinstance(body, dict):
            raise PermanentError(f"details response for {place_id} is not an object", reason="malformed_record")

        status = body.get("status", "OK")
        if status in _TRANSIENT_STATUSES:
            raise TransientError(f"upstream status {status}", reason=str(status).lower())
        if status in _PERMANENT_STATUSES:
            raise PermanentError(f"upstream status {status}", reason=str(status).lower())
        if status != "OK":
            raise PermanentError(f"unexpected upstream status {status!r}", reason="malformed_record")

        snapshot = PlaceSnapshot.from_source(place_id, body.get("result"), captured_at=time.time())
        LOGGER.debug("record_fetched", extra={"place_id": place_id, "photos": len(snapshot.photo_refs)})
        return snapshot

    def fetch_photo(self, photo_ref: str, max_width: int) -> bytes:
        """Fetch raw photo bytes for ``photo_ref`` at most ``max_width`` wide."""

        response = self._get("/photo", self._params(photo_reference=photo_ref, maxwidth=int(max_width)))
        content_type = response.headers.get("content-type", "")
        if content_type and not content_type.startswith("image/"):
            raise PermanentError(f"photo response has content type {content_type!r}", reason="malformed_photo")
        if not response.content:
            raise PermanentError("photo response is empty", reason="malformed_photo")
        return response.content


__all__ = ["PlacesClient", "classify_response"]
