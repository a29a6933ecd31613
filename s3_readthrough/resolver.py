"""Read-through resolution of object keys across the local and origin stores.

A read consults the local store first. On a miss the origin store is asked;
an origin hit is buffered (up to ``max_object_size``), written back to the
local store, announced with a ``LAZY_LOADED`` sync event and returned.

Origin failures and write-back failures are absorbed: the former degrade to a
plain miss, the latter only lose the cache population. Concurrent misses for
the same key may each fetch and write back; the local store converges on the
last write. With ``coalesce_misses`` enabled, concurrent misses instead share
a single fetch.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import TYPE_CHECKING

import anyio

from .errors import ErrorKind, ProxyError
from .headers import object_from_origin
from .models import (
    SOURCE_METADATA_KEY,
    CacheOrigin,
    ObjectBody,
    PutOptions,
    StoredObject,
    SyncAction,
    SyncEvent,
)
from .notifications import notify
from .stores import OriginUnavailable, StoreError

if TYPE_CHECKING:
    from .notifications import NotificationSink
    from .stores import ObjectStore, OriginStore

LOG = logging.getLogger("s3_readthrough.resolver")

DEFAULT_MAX_OBJECT_SIZE = 64 * 1024 * 1024
LAZY_LOADED_FLAG = "lazy-loaded"
LAZY_LOADED_AT = "lazy-loaded-at"


@dataclass
class _Flight:
    done: anyio.Event = field(default_factory=anyio.Event)
    template: StoredObject | None = None
    data: bytes | None = None
    missing: bool = False


class CacheResolver:
    def __init__(
        self,
        store: ObjectStore,
        origin: OriginStore | None,
        sink: NotificationSink,
        *,
        max_object_size: int = DEFAULT_MAX_OBJECT_SIZE,
        coalesce_misses: bool = False,
    ):
        self._store = store
        self._origin = origin
        self._sink = sink
        self._max_object_size = max_object_size
        self._coalesce_misses = coalesce_misses
        self._inflight: dict[str, _Flight] = {}

    @property
    def has_origin(self) -> bool:
        return self._origin is not None

    async def resolve(self, key: str) -> StoredObject:
        """Return the object stored under ``key``.

        Raises:
            ProxyError: ``NO_SUCH_KEY`` when neither store has the object.
        """
        obj = await self._store.get(key)
        if obj is not None:
            LOG.debug("local hit for %s", key)
            return obj.tag(CacheOrigin.LOCAL)

        if self._origin is not None:
            if self._coalesce_misses:
                obj = await self._lazy_load_coalesced(key)
            else:
                obj = await self._lazy_load(key)
        if obj is None:
            raise ProxyError(ErrorKind.NO_SUCH_KEY)
        return obj

    async def _lazy_load_coalesced(self, key: str) -> StoredObject | None:
        flight = self._inflight.get(key)
        if flight is not None:
            await flight.done.wait()
            if flight.template is not None and flight.data is not None:
                LOG.debug("joined in-flight lazy load for %s", key)
                return flight.template.with_body(ObjectBody.from_bytes(flight.data))
            if flight.missing:
                return None
            # leader could not share its result (too large or failed mid-read)
            return await self._lazy_load(key)

        flight = _Flight()
        self._inflight[key] = flight
        try:
            return await self._lazy_load(key, flight)
        finally:
            self._inflight.pop(key, None)
            flight.done.set()

    async def _lazy_load(
        self, key: str, flight: _Flight | None = None
    ) -> StoredObject | None:
        obj = await self._fetch_from_origin(key)
        if obj is None:
            if flight is not None:
                flight.missing = True
            return None

        try:
            data = await obj.body.buffer(self._max_object_size)
        except OriginUnavailable as error:
            LOG.warning("origin read failed for %s, treating as miss: %s", key, error)
            return None

        if data is None:
            LOG.info(
                "origin object %s exceeds %d bytes, relaying without caching",
                key,
                self._max_object_size,
            )
            await notify(self._sink, SyncEvent(key, SyncAction.LAZY_LOADED))
            return obj

        obj.content_length = len(data)
        if flight is not None:
            flight.template = obj
            flight.data = data
        await self._write_back(key, obj, data)
        await notify(self._sink, SyncEvent(key, SyncAction.LAZY_LOADED))
        return obj.with_body(ObjectBody.from_bytes(data))

    async def _fetch_from_origin(self, key: str) -> StoredObject | None:
        assert self._origin is not None
        try:
            response = await self._origin.fetch(key)
        except OriginUnavailable as error:
            LOG.warning("origin unavailable for %s, treating as miss: %s", key, error)
            return None

        if not response.ok:
            if response.status_code == 404:
                LOG.debug("origin miss for %s", key)
            else:
                LOG.warning(
                    "origin returned %s for %s, treating as miss: %s",
                    response.status_code,
                    key,
                    response.reason,
                )
            return None
        return object_from_origin(response)

    async def _write_back(self, key: str, obj: StoredObject, data: bytes) -> None:
        metadata = dict(obj.custom_metadata)
        metadata.pop(SOURCE_METADATA_KEY, None)
        metadata[LAZY_LOADED_FLAG] = "true"
        metadata[LAZY_LOADED_AT] = datetime.now(UTC).isoformat()
        options = PutOptions(
            content_type=obj.content_type,
            cache_control=obj.cache_control,
            custom_metadata=metadata,
        )
        try:
            await self._store.put(key, data, options)
        except StoreError:
            LOG.warning(
                "failed to cache origin object %s (non-fatal)", key, exc_info=True
            )
            return
        LOG.info("cached origin object %s (%d bytes)", key, len(data))
