from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import UTC, datetime
from enum import Enum
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from collections.abc import AsyncIterator, Awaitable, Callable, Mapping
else:  # pragma: no cover
    AsyncIterator = Awaitable = Callable = Mapping = Any

DEFAULT_CHUNK_SIZE = 64 * 1024
SOURCE_METADATA_KEY = "source"


class CacheOrigin(Enum):
    """Where a resolved object was served from."""

    LOCAL = "local"
    LAZY_LOADED = "lazy-loaded"


class SyncAction(Enum):
    UPLOADED = "UPLOADED"
    DELETED = "DELETED"
    LAZY_LOADED = "LAZY_LOADED"


class BodyConsumedError(RuntimeError):
    """Raised when a single-consume body is read a second time."""


async def _replay(
    head: list[bytes], tail: AsyncIterator[bytes]
) -> AsyncIterator[bytes]:
    for chunk in head:
        yield chunk
    async for chunk in tail:
        yield chunk


class ObjectBody:
    """A byte stream that can be consumed exactly once.

    Iterating the body (or calling :meth:`read`) claims it; a second attempt
    raises :class:`BodyConsumedError`. The optional ``close`` callback releases
    the underlying connection and runs once, either when iteration finishes or
    when :meth:`aclose` is called on an unread body.
    """

    def __init__(
        self,
        chunks: AsyncIterator[bytes],
        close: Callable[[], Awaitable[None]] | None = None,
    ):
        self._chunks = chunks
        self._close = close
        self._consumed = False
        self._closed = False

    @classmethod
    def from_bytes(
        cls, data: bytes, chunk_size: int = DEFAULT_CHUNK_SIZE
    ) -> ObjectBody:
        async def chunks() -> AsyncIterator[bytes]:
            for offset in range(0, len(data), chunk_size):
                yield data[offset : offset + chunk_size]

        return cls(chunks())

    @property
    def consumed(self) -> bool:
        return self._consumed

    def _claim(self) -> None:
        if self._consumed:
            msg = "object body has already been consumed"
            raise BodyConsumedError(msg)
        self._consumed = True

    def __aiter__(self) -> AsyncIterator[bytes]:
        self._claim()
        return self._iterate()

    async def _iterate(self) -> AsyncIterator[bytes]:
        try:
            async for chunk in self._chunks:
                if chunk:
                    yield chunk
        finally:
            await self.aclose()

    async def read(self) -> bytes:
        return b"".join([chunk async for chunk in self])

    async def buffer(self, limit: int) -> bytes | None:
        """Read the whole body into memory if it is at most ``limit`` bytes.

        Returns the bytes and marks the body consumed. When the body turns out
        to be larger, returns ``None`` and leaves the body unconsumed: the
        chunks read so far are replayed ahead of the rest of the stream.
        """
        if self._consumed:
            msg = "object body has already been consumed"
            raise BodyConsumedError(msg)
        parts: list[bytes] = []
        size = 0
        try:
            async for chunk in self._chunks:
                parts.append(chunk)
                size += len(chunk)
                if size > limit:
                    self._chunks = _replay(parts, self._chunks)
                    return None
        except BaseException:
            self._consumed = True
            await self.aclose()
            raise
        self._consumed = True
        await self.aclose()
        return b"".join(parts)

    async def aclose(self) -> None:
        if self._closed:
            return
        self._closed = True
        if self._close is not None:
            await self._close()


@dataclass
class StoredObject:
    """A per-request view of an object and its metadata."""

    body: ObjectBody
    content_type: str | None = None
    content_length: int | None = None
    cache_control: str | None = None
    etag: str | None = None
    custom_metadata: dict[str, str] = field(default_factory=dict)
    uploaded_at: datetime | None = None

    @property
    def origin(self) -> CacheOrigin | None:
        value = self.custom_metadata.get(SOURCE_METADATA_KEY)
        try:
            return CacheOrigin(value)
        except ValueError:
            return None

    def tag(self, origin: CacheOrigin) -> StoredObject:
        self.custom_metadata[SOURCE_METADATA_KEY] = origin.value
        return self

    def with_body(self, body: ObjectBody) -> StoredObject:
        return replace(self, body=body, custom_metadata=dict(self.custom_metadata))


@dataclass(frozen=True)
class SyncEvent:
    key: str
    action: SyncAction
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))

    def to_message(self) -> dict[str, str]:
        return {
            "key": self.key,
            "action": self.action.value,
            "timestamp": self.timestamp.isoformat(),
        }


@dataclass(frozen=True)
class PutOptions:
    content_type: str | None = None
    cache_control: str | None = None
    custom_metadata: Mapping[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class PutResult:
    etag: str | None = None


@dataclass
class OriginResponse:
    """Raw answer from the origin store: a status, headers and maybe a body.

    Header names are lower-cased. ``body`` is only set for success responses.
    """

    status_code: int
    headers: Mapping[str, str]
    body: ObjectBody | None = None
    reason: str = ""

    @property
    def ok(self) -> bool:
        return 200 <= self.status_code < 300
