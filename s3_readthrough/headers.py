"""Translation between object metadata and its header representation."""

from __future__ import annotations

from datetime import UTC, datetime
from email.utils import format_datetime, parsedate_to_datetime
from typing import TYPE_CHECKING, Any

from .models import CacheOrigin, ObjectBody, PutOptions, StoredObject

if TYPE_CHECKING:
    from collections.abc import Mapping

    from .models import OriginResponse
else:  # pragma: no cover
    Mapping = Any

METADATA_PREFIX = "x-amz-meta-"
DEFAULT_CONTENT_TYPE = "application/octet-stream"

CORS_DESCRIPTOR = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Methods": "GET, PUT, DELETE, HEAD, OPTIONS",
    "Access-Control-Allow-Headers": (
        "Content-Type, Authorization, X-Amz-Date, X-Amz-Content-Sha256, Content-MD5"
    ),
    "Access-Control-Max-Age": "86400",
}


def format_http_date(value: datetime) -> str:
    aware = value if value.tzinfo is not None else value.replace(tzinfo=UTC)
    return format_datetime(aware.astimezone(UTC), usegmt=True)


def _parse_http_date(value: str | None) -> datetime | None:
    if not value:
        return None
    try:
        return parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None


def _parse_length(value: str | None) -> int | None:
    if value is None:
        return None
    try:
        length = int(value)
    except ValueError:
        return None
    return length if length >= 0 else None


def extract_custom_metadata(headers: Mapping[str, str]) -> dict[str, str]:
    """Collect ``x-amz-meta-*`` headers, keyed by the lower-cased suffix."""
    metadata: dict[str, str] = {}
    for key, value in headers.items():
        lowered = key.lower()
        if lowered.startswith(METADATA_PREFIX) and len(lowered) > len(METADATA_PREFIX):
            metadata[lowered[len(METADATA_PREFIX) :]] = value
    return metadata


def object_headers(obj: StoredObject, default_cache_control: str) -> dict[str, str]:
    """Build the response headers for a GET/HEAD of ``obj``."""
    headers = {"Content-Type": obj.content_type or DEFAULT_CONTENT_TYPE}
    if obj.content_length is not None:
        headers["Content-Length"] = str(obj.content_length)
    if obj.etag:
        headers["ETag"] = obj.etag
    headers["Cache-Control"] = obj.cache_control or default_cache_control
    headers["Last-Modified"] = format_http_date(obj.uploaded_at or datetime.now(UTC))
    for key, value in obj.custom_metadata.items():
        headers[f"{METADATA_PREFIX}{key}"] = value
    headers["Access-Control-Allow-Origin"] = "*"
    return headers


def object_from_origin(response: OriginResponse) -> StoredObject:
    """Give an origin response the same shape as a locally stored object."""
    headers = {key.lower(): value for key, value in response.headers.items()}
    metadata = extract_custom_metadata(headers)
    obj = StoredObject(
        body=response.body or ObjectBody.from_bytes(b""),
        content_type=headers.get("content-type"),
        content_length=_parse_length(headers.get("content-length")),
        cache_control=headers.get("cache-control"),
        etag=headers.get("etag"),
        custom_metadata=metadata,
        uploaded_at=_parse_http_date(headers.get("last-modified")),
    )
    return obj.tag(CacheOrigin.LAZY_LOADED)


def put_options_from_headers(
    headers: Mapping[str, str], default_cache_control: str
) -> PutOptions:
    """Read the store options for an upload from its request headers."""
    return PutOptions(
        content_type=headers.get("content-type") or DEFAULT_CONTENT_TYPE,
        cache_control=headers.get("cache-control") or default_cache_control,
        custom_metadata=extract_custom_metadata(headers),
    )
