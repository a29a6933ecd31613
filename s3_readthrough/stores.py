from __future__ import annotations

import logging
from datetime import datetime
from functools import partial
from typing import TYPE_CHECKING, Any, Literal, Protocol
from urllib.parse import quote

import httpx
from anyio import to_thread
from boto3.session import Session
from botocore.config import Config as BotoConfig
from botocore.exceptions import BotoCoreError, ClientError

from .headers import METADATA_PREFIX, format_http_date
from .models import ObjectBody, OriginResponse, PutResult, StoredObject

if TYPE_CHECKING:
    from collections.abc import AsyncIterator, Callable, Mapping

    from .models import PutOptions
else:  # pragma: no cover
    AsyncIterator = Callable = Mapping = Any

LOG = logging.getLogger("s3_readthrough.stores")

NOT_FOUND_CODES = {"404", "NoSuchKey", "NotFound", "NoSuchBucket"}
READ_SIZE = 1024 * 64


async def run_sync(func: Callable[..., Any], /, *args: Any, **kwargs: Any) -> Any:
    return await to_thread.run_sync(partial(func, *args, **kwargs))


class StoreError(Exception):
    """The local object store failed an operation."""


class OriginUnavailable(Exception):
    """The origin store could not be reached or broke off mid-transfer."""


class ObjectStore(Protocol):
    async def get(self, key: str) -> StoredObject | None: ...

    async def put(self, key: str, body: bytes, options: PutOptions) -> PutResult: ...

    async def delete(self, key: str) -> None: ...


class OriginStore(Protocol):
    async def fetch(self, key: str) -> OriginResponse: ...


def build_s3_client(
    *,
    endpoint: str | None,
    access_key: str | None,
    secret_key: str | None,
    region: str | None,
    session_token: str | None = None,
    addressing_style: Literal["auto", "virtual", "path"] | None = None,
    timeout: float | None = None,
):
    session = Session(
        aws_access_key_id=access_key,
        aws_secret_access_key=secret_key,
        aws_session_token=session_token,
        region_name=region,
    )
    config_kwargs: dict[str, Any] = {
        "signature_version": "s3v4",
        "retries": {"max_attempts": 3},
    }
    if addressing_style:
        config_kwargs["s3"] = {"addressing_style": addressing_style}
    if timeout:
        config_kwargs["connect_timeout"] = timeout
        config_kwargs["read_timeout"] = timeout
    return session.client(
        "s3",
        endpoint_url=endpoint or None,
        config=BotoConfig(**config_kwargs),
    )


def _error_code(error: ClientError) -> str | None:
    return error.response.get("Error", {}).get("Code")


def _streaming_body(
    stream: Any, error_type: type[Exception] | None = None
) -> ObjectBody:
    """Wrap a botocore ``StreamingBody`` as an :class:`ObjectBody`."""

    async def chunks() -> AsyncIterator[bytes]:
        while True:
            try:
                chunk = await run_sync(stream.read, READ_SIZE)
            except BotoCoreError as error:
                if error_type is None:
                    raise
                raise error_type(str(error)) from error
            if not chunk:
                break
            yield chunk

    async def close() -> None:
        await run_sync(stream.close)

    return ObjectBody(chunks(), close=close)


class S3ObjectStore:
    """The local store: one bucket on an S3-compatible endpoint."""

    def __init__(self, client: Any, bucket: str, bucket_location: str | None = None):
        self._client = client
        self._bucket = bucket
        self._bucket_location = bucket_location

    @property
    def bucket(self) -> str:
        return self._bucket

    async def get(self, key: str) -> StoredObject | None:
        try:
            result = await run_sync(
                self._client.get_object, Bucket=self._bucket, Key=key
            )
        except ClientError as error:
            if _error_code(error) in NOT_FOUND_CODES:
                LOG.debug("local miss for s3://%s/%s", self._bucket, key)
                return None
            msg = f"get s3://{self._bucket}/{key} failed: {error}"
            raise StoreError(msg) from error
        except BotoCoreError as error:
            msg = f"get s3://{self._bucket}/{key} failed: {error}"
            raise StoreError(msg) from error

        return StoredObject(
            body=_streaming_body(result["Body"]),
            content_type=result.get("ContentType"),
            content_length=result.get("ContentLength"),
            cache_control=result.get("CacheControl"),
            etag=result.get("ETag"),
            custom_metadata=dict(result.get("Metadata") or {}),
            uploaded_at=result.get("LastModified"),
        )

    async def put(self, key: str, body: bytes, options: PutOptions) -> PutResult:
        put_kwargs: dict[str, Any] = {
            "Bucket": self._bucket,
            "Key": key,
            "Body": body,
            "Metadata": dict(options.custom_metadata),
        }
        if options.content_type:
            put_kwargs["ContentType"] = options.content_type
        if options.cache_control:
            put_kwargs["CacheControl"] = options.cache_control

        try:
            result = await run_sync(self._client.put_object, **put_kwargs)
        except (ClientError, BotoCoreError) as error:
            msg = f"put s3://{self._bucket}/{key} failed: {error}"
            raise StoreError(msg) from error
        LOG.debug("stored s3://%s/%s (%d bytes)", self._bucket, key, len(body))
        return PutResult(etag=result.get("ETag"))

    async def delete(self, key: str) -> None:
        try:
            await run_sync(self._client.delete_object, Bucket=self._bucket, Key=key)
        except (ClientError, BotoCoreError) as error:
            msg = f"delete s3://{self._bucket}/{key} failed: {error}"
            raise StoreError(msg) from error

    async def ensure_bucket(self) -> None:
        try:
            await run_sync(self._client.head_bucket, Bucket=self._bucket)
        except ClientError as error:
            if _error_code(error) not in NOT_FOUND_CODES:
                raise
            create_kwargs: dict[str, Any] = {"Bucket": self._bucket}
            location = self._bucket_location
            if location and location != "us-east-1":
                create_kwargs["CreateBucketConfiguration"] = {
                    "LocationConstraint": location
                }
            await run_sync(self._client.create_bucket, **create_kwargs)
            LOG.info("created local bucket %s", self._bucket)


def _headers_from_result(result: Mapping[str, Any]) -> dict[str, str]:
    headers: dict[str, str] = {}
    mapping = {
        "cache-control": "CacheControl",
        "content-length": "ContentLength",
        "content-type": "ContentType",
        "etag": "ETag",
        "last-modified": "LastModified",
    }
    for header, key in mapping.items():
        value = result.get(key)
        if value is None:
            continue
        if isinstance(value, datetime):
            headers[header] = format_http_date(value)
        else:
            headers[header] = str(value)

    for meta_key, meta_value in (result.get("Metadata") or {}).items():
        headers[f"{METADATA_PREFIX}{meta_key.lower()}"] = meta_value
    return headers


class S3OriginStore:
    """Signed reads from an upstream S3-compatible bucket."""

    def __init__(self, client: Any, bucket: str):
        self._client = client
        self._bucket = bucket

    async def fetch(self, key: str) -> OriginResponse:
        try:
            result = await run_sync(
                self._client.get_object, Bucket=self._bucket, Key=key
            )
        except ClientError as error:
            metadata = error.response.get("ResponseMetadata", {})
            return OriginResponse(
                status_code=int(metadata.get("HTTPStatusCode", 500)),
                headers={},
                reason=str(error),
            )
        except BotoCoreError as error:
            msg = f"origin s3://{self._bucket}/{key} unreachable: {error}"
            raise OriginUnavailable(msg) from error

        status_code = int(result.get("ResponseMetadata", {}).get("HTTPStatusCode", 200))
        return OriginResponse(
            status_code=status_code,
            headers=_headers_from_result(result),
            body=_streaming_body(result["Body"], OriginUnavailable),
        )


class HTTPOriginStore:
    """Anonymous ``GET <endpoint>/<bucket>/<key>`` reads from a public origin."""

    def __init__(
        self,
        client: httpx.AsyncClient,
        endpoint: str,
        bucket: str = "",
        timeout: float = 30.0,
    ):
        self._client = client
        self._endpoint = endpoint.rstrip("/")
        self._bucket = bucket.strip("/")
        self._timeout = timeout

    def url_for(self, key: str) -> str:
        path = quote(key, safe="/~")
        if self._bucket:
            return f"{self._endpoint}/{self._bucket}/{path}"
        return f"{self._endpoint}/{path}"

    async def fetch(self, key: str) -> OriginResponse:
        url = self.url_for(key)
        request = self._client.build_request(
            "GET", url, timeout=httpx.Timeout(self._timeout)
        )
        try:
            response = await self._client.send(request, stream=True)
        except httpx.HTTPError as error:
            msg = f"origin {url} unreachable: {error}"
            raise OriginUnavailable(msg) from error

        headers = {key.lower(): value for key, value in response.headers.items()}
        if not response.is_success:
            try:
                reason = (await response.aread()).decode("utf-8", "replace")[:512]
            except httpx.HTTPError:
                reason = ""
            finally:
                await response.aclose()
            return OriginResponse(
                status_code=response.status_code, headers=headers, reason=reason
            )

        if "content-encoding" in headers:
            # aiter_bytes() yields decoded content
            headers.pop("content-encoding")
            headers.pop("content-length", None)

        async def chunks() -> AsyncIterator[bytes]:
            try:
                async for chunk in response.aiter_bytes(READ_SIZE):
                    yield chunk
            except httpx.HTTPError as error:
                msg = f"origin {url} broke off: {error}"
                raise OriginUnavailable(msg) from error

        return OriginResponse(
            status_code=response.status_code,
            headers=headers,
            body=ObjectBody(chunks(), close=response.aclose),
        )
