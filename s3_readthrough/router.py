from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any
from uuid import uuid4

from litestar.response import Response, Stream

from .auth import Intent, Operation
from .errors import ErrorKind, ProxyError, error_response
from .headers import CORS_DESCRIPTOR, object_headers, put_options_from_headers
from .models import SyncAction, SyncEvent
from .notifications import notify
from .stores import StoreError

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

    from litestar import Request

    from .auth import AccessGuard
    from .config import ProxyConfig
    from .notifications import NotificationSink
    from .resolver import CacheResolver
    from .stores import ObjectStore
else:  # pragma: no cover
    AsyncIterator = Any

LOG = logging.getLogger("s3_readthrough.router")

READ_METHODS = frozenset({"GET", "HEAD"})


def request_hostname(request: Request) -> str:
    host = request.headers.get("host") or request.url.hostname or ""
    if host.startswith("["):
        return host.split("]", 1)[0].lstrip("[").lower()
    return host.split(":", 1)[0].lower()


def classify_intent(hostname: str, config: ProxyConfig) -> Intent:
    """Writes are allowed only on hosts matching the write pattern."""
    if config.write_hostname_pattern.search(hostname):
        return Intent.WRITE
    if not config.read_hostname_pattern.search(hostname):
        LOG.debug("host %r matches no pattern, treating as read", hostname)
    return Intent.READ


def object_key_from_path(path: str) -> str:
    return "/".join(part for part in path.split("/") if part)


async def read_request_body(request: Request, limit: int) -> bytes:
    """Read the entire request body directly from the ASGI receive channel.

    Raises:
        ProxyError: ``INCOMPLETE_BODY`` when the client disconnects or sends
            fewer bytes than its ``Content-Length``; ``ENTITY_TOO_LARGE`` when
            the body exceeds ``limit``.
    """
    declared = request.headers.get("content-length")
    if declared is not None and declared.isdigit() and int(declared) > limit:
        raise ProxyError(ErrorKind.ENTITY_TOO_LARGE)

    body_parts = []
    size = 0
    receive = request.receive
    while True:
        message = await receive()
        if message["type"] == "http.request":
            body = message.get("body", b"")
            if body:
                size += len(body)
                if size > limit:
                    raise ProxyError(ErrorKind.ENTITY_TOO_LARGE)
                body_parts.append(body)
            if not message.get("more_body", False):
                break
        elif message["type"] == "http.disconnect":
            LOG.info("client disconnected during upload, aborting")
            raise ProxyError(ErrorKind.INCOMPLETE_BODY)

    if declared is not None and declared.isdigit() and size < int(declared):
        raise ProxyError(ErrorKind.INCOMPLETE_BODY)
    return b"".join(body_parts)


class RequestRouter:
    """Dispatches one request to the resolver or the local store.

    A router is bound to a single configuration snapshot; reloading the
    configuration builds a new router.
    """

    def __init__(
        self,
        config: ProxyConfig,
        resolver: CacheResolver,
        store: ObjectStore,
        sink: NotificationSink,
        guard: AccessGuard,
        *,
        max_object_size: int,
    ):
        self.config = config
        self._resolver = resolver
        self._store = store
        self._sink = sink
        self._guard = guard
        self._max_object_size = max_object_size

    async def handle(self, request: Request, path: str) -> Response:
        request_id = uuid4().hex
        try:
            return await self._dispatch(request, path)
        except ProxyError as error:
            LOG.debug(
                "%s %s failed: %s %s (request %s)",
                request.method,
                path,
                error.status,
                error.code,
                request_id,
            )
            return error_response(error, request_id)
        except Exception:
            LOG.exception(
                "unhandled error for %s %s (request %s)",
                request.method,
                path,
                request_id,
            )
            return error_response(ProxyError(ErrorKind.INTERNAL_ERROR), request_id)

    async def _dispatch(self, request: Request, path: str) -> Response:
        method = request.method.upper()
        key = object_key_from_path(path)
        intent = classify_intent(request_hostname(request), self.config)
        operation = Operation(
            method=method,
            key=key,
            intent=intent,
            credential=request.headers.get("authorization"),
        )
        LOG.debug("handle method=%s key=%s intent=%s", method, key, intent.value)

        if method in READ_METHODS:
            await self._guard.authorize(operation)
            return await self._handle_read(method, key)
        if method == "OPTIONS":
            return Response(content=b"", headers=dict(CORS_DESCRIPTOR))
        if method not in {"PUT", "DELETE"}:
            raise ProxyError(
                ErrorKind.METHOD_NOT_ALLOWED, f"Method {method} not supported"
            )

        if intent is not Intent.WRITE:
            raise ProxyError(
                ErrorKind.ACCESS_DENIED,
                f"{method} operations not allowed on this endpoint",
            )
        await self._guard.authorize(operation)
        if not key:
            raise ProxyError(ErrorKind.INVALID_KEY)
        if method == "PUT":
            return await self._handle_put(request, key)
        return await self._handle_delete(key)

    async def _handle_read(self, method: str, key: str) -> Response:
        if not key:
            raise ProxyError(ErrorKind.NOT_IMPLEMENTED)

        obj = await self._resolver.resolve(key)
        headers = object_headers(obj, self.config.default_cache_control)
        if method == "HEAD":
            await obj.body.aclose()
            return Response(content=b"", headers=headers, status_code=200)
        body = obj.body

        async def iterator() -> AsyncIterator[bytes]:
            try:
                async for chunk in body:
                    yield chunk
            finally:
                await body.aclose()

        return Stream(content=iterator, status_code=200, headers=headers)

    async def _handle_put(self, request: Request, key: str) -> Response:
        body = await read_request_body(request, self._max_object_size)
        options = put_options_from_headers(
            request.headers, self.config.default_cache_control
        )
        try:
            result = await self._store.put(key, body, options)
        except StoreError:
            LOG.exception("upload of %s failed", key)
            raise ProxyError(ErrorKind.INTERNAL_ERROR, "Upload failed") from None

        LOG.info("stored upload %s (%d bytes)", key, len(body))
        await notify(self._sink, SyncEvent(key, SyncAction.UPLOADED))
        headers = {"Content-Type": "application/xml"}
        if result.etag:
            headers["ETag"] = result.etag
        return Response(content=b"", headers=headers, status_code=200)

    async def _handle_delete(self, key: str) -> Response:
        try:
            await self._store.delete(key)
        except StoreError:
            LOG.exception("delete of %s failed", key)
            raise ProxyError(ErrorKind.INTERNAL_ERROR, "Delete failed") from None

        LOG.info("deleted %s", key)
        await notify(self._sink, SyncEvent(key, SyncAction.DELETED))
        return Response(content=b"", status_code=204)
