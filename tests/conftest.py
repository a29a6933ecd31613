from __future__ import annotations

import hashlib
import os
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import TYPE_CHECKING, cast

import anyio
import pytest
from litestar import Request
from s3_readthrough.auth import AccessGuard
from s3_readthrough.config import ProxyConfig, SourceSettings
from s3_readthrough.models import (
    ObjectBody,
    OriginResponse,
    PutOptions,
    PutResult,
    StoredObject,
)
from s3_readthrough.notifications import NotificationError
from s3_readthrough.resolver import CacheResolver
from s3_readthrough.router import RequestRouter
from s3_readthrough.stores import StoreError

if TYPE_CHECKING:
    from collections.abc import Callable, Generator

    from botocore.client import BaseClient
    from litestar.response import Response
    from litestar.types import HTTPScope
    from pytest_databases._service import DockerService

    from s3_readthrough.models import SyncEvent


READ_HOST = "read-assets.example.com"
WRITE_HOST = "write-assets.example.com"


class MemoryObjectStore:
    """In-memory local store that records every call."""

    def __init__(self) -> None:
        self.objects: dict[str, tuple[bytes, PutOptions, datetime]] = {}
        self.get_calls: list[str] = []
        self.put_calls: list[str] = []
        self.delete_calls: list[str] = []
        self.fail_get = False
        self.fail_put = False
        self.fail_delete = False

    def seed(
        self,
        key: str,
        data: bytes,
        content_type: str = "application/octet-stream",
        metadata: dict[str, str] | None = None,
    ) -> None:
        options = PutOptions(content_type=content_type, custom_metadata=metadata or {})
        self.objects[key] = (data, options, datetime(2024, 1, 2, 3, 4, 5, tzinfo=UTC))

    async def get(self, key: str) -> StoredObject | None:
        self.get_calls.append(key)
        if self.fail_get:
            msg = "local store offline"
            raise StoreError(msg)
        entry = self.objects.get(key)
        if entry is None:
            return None
        data, options, uploaded_at = entry
        return StoredObject(
            body=ObjectBody.from_bytes(data),
            content_type=options.content_type,
            content_length=len(data),
            cache_control=options.cache_control,
            etag=f'"{hashlib.md5(data).hexdigest()}"',
            custom_metadata=dict(options.custom_metadata),
            uploaded_at=uploaded_at,
        )

    async def put(self, key: str, body: bytes, options: PutOptions) -> PutResult:
        self.put_calls.append(key)
        if self.fail_put:
            msg = "local store is full"
            raise StoreError(msg)
        self.objects[key] = (body, options, datetime.now(UTC))
        return PutResult(etag=f'"{hashlib.md5(body).hexdigest()}"')

    async def delete(self, key: str) -> None:
        self.delete_calls.append(key)
        if self.fail_delete:
            msg = "local store offline"
            raise StoreError(msg)
        self.objects.pop(key, None)


class FakeOriginStore:
    """Origin store with scriptable failures and an optional fetch delay."""

    def __init__(self) -> None:
        self.objects: dict[str, tuple[bytes, dict[str, str]]] = {}
        self.calls: list[str] = []
        self.error: Exception | None = None
        self.status_code: int | None = None
        self.delay = 0.0
        self.chunk_size = 4

    def add(self, key: str, data: bytes, headers: dict[str, str] | None = None) -> None:
        self.objects[key] = (data, headers or {})

    async def fetch(self, key: str) -> OriginResponse:
        self.calls.append(key)
        if self.delay:
            await anyio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        if self.status_code is not None:
            return OriginResponse(self.status_code, {}, reason="Forbidden")
        entry = self.objects.get(key)
        if entry is None:
            return OriginResponse(404, {}, reason="NoSuchKey")
        data, headers = entry
        return OriginResponse(
            200,
            {"content-length": str(len(data)), **headers},
            body=ObjectBody.from_bytes(data, chunk_size=self.chunk_size),
        )


class RecordingSink:
    def __init__(self) -> None:
        self.events: list[SyncEvent] = []
        self.attempts = 0
        self.fail = False

    async def enqueue(self, event: SyncEvent) -> None:
        self.attempts += 1
        if self.fail:
            msg = "queue unavailable"
            raise NotificationError(msg)
        self.events.append(event)


@pytest.fixture
def local_store() -> MemoryObjectStore:
    return MemoryObjectStore()


@pytest.fixture
def origin_store() -> FakeOriginStore:
    return FakeOriginStore()


@pytest.fixture
def sink() -> RecordingSink:
    return RecordingSink()


@pytest.fixture
def resolver(
    local_store: MemoryObjectStore, origin_store: FakeOriginStore, sink: RecordingSink
) -> CacheResolver:
    return CacheResolver(local_store, origin_store, sink, max_object_size=1024)


@pytest.fixture
def proxy_config() -> ProxyConfig:
    return ProxyConfig(source=SourceSettings(endpoint="https://origin.example.com"))


@pytest.fixture
def router(
    proxy_config: ProxyConfig,
    resolver: CacheResolver,
    local_store: MemoryObjectStore,
    sink: RecordingSink,
) -> RequestRouter:
    return RequestRouter(
        proxy_config,
        resolver,
        local_store,
        sink,
        AccessGuard(),
        max_object_size=1024,
    )


@pytest.fixture
def make_request() -> Callable[..., Request]:
    """Build a Litestar request from a raw ASGI scope."""

    def build(
        method: str,
        path: str,
        *,
        host: str = READ_HOST,
        headers: dict[str, str] | None = None,
        body: bytes = b"",
        disconnect: bool = False,
    ) -> Request:
        raw_headers = [(b"host", host.encode())]
        for key, value in (headers or {}).items():
            raw_headers.append((key.lower().encode(), value.encode()))
        scope = cast(
            "HTTPScope",
            {
                "type": "http",
                "method": method,
                "path": path,
                "query_string": b"",
                "headers": raw_headers,
            },
        )

        async def receive():
            if disconnect:
                return {"type": "http.disconnect"}
            return {"type": "http.request", "body": body, "more_body": False}

        return Request(scope=scope, receive=receive)

    return build


@pytest.fixture
def read_body() -> Callable[[Response], object]:
    """Collect the body of a streamed or plain Litestar response."""

    async def collect(response: Response) -> bytes:
        body_chunks = []
        iterator_attr = getattr(response, "iterator", None)
        if callable(iterator_attr):
            async for chunk in iterator_attr():
                body_chunks.append(chunk)
        elif iterator_attr is not None:
            async for chunk in iterator_attr:
                body_chunks.append(chunk)
        elif hasattr(response, "content"):
            body_chunks.append(response.content or b"")
        return b"".join(body_chunks)

    return collect


# MinIO-backed fixtures for the integration suite


@dataclass
class MinioService:
    endpoint: str
    access_key: str
    secret_key: str
    secure: bool


@pytest.fixture(scope="session")
def minio_access_key() -> str:
    return os.getenv("MINIO_ACCESS_KEY", "minio")


@pytest.fixture(scope="session")
def minio_secret_key() -> str:
    return os.getenv("MINIO_SECRET_KEY", "minio123")


@pytest.fixture(scope="session")
def minio_secure() -> bool:
    return os.getenv("MINIO_SECURE", "false").lower() in {
        "true",
        "1",
        "yes",
        "y",
        "t",
        "on",
    }


@pytest.fixture(scope="session")
def minio_service_name() -> str:
    return "minio-readthrough"


@pytest.fixture(scope="session")
def minio_service(
    docker_service: DockerService,
    minio_access_key: str,
    minio_secret_key: str,
    minio_secure: bool,
    minio_service_name: str,
) -> Generator[MinioService]:
    from urllib.error import URLError
    from urllib.request import Request as UrlRequest
    from urllib.request import urlopen

    from pytest_databases.types import ServiceContainer

    def check(_service: ServiceContainer) -> bool:
        scheme = "https" if minio_secure else "http"
        url = f"{scheme}://{_service.host}:{_service.port}/minio/health/ready"
        if not url.startswith(("http:", "https:")):
            msg = "URL must start with 'http:' or 'https:'"
            raise ValueError(msg)
        try:
            with urlopen(url=UrlRequest(url, method="GET"), timeout=10) as response:
                return response.status == 200
        except (URLError, ConnectionError):
            return False

    env = {
        "MINIO_ROOT_USER": minio_access_key,
        "MINIO_ROOT_PASSWORD": minio_secret_key,
    }

    with docker_service.run(
        image="quay.io/minio/minio",
        name=minio_service_name,
        command="server /data",
        container_port=9000,
        timeout=20,
        pause=0.5,
        env=env,
        check=check,
    ) as service:
        yield MinioService(
            endpoint=f"{service.host}:{service.port}",
            access_key=minio_access_key,
            secret_key=minio_secret_key,
            secure=minio_secure,
        )


def _minio_endpoint(minio_service: MinioService) -> str:
    scheme = "https" if minio_service.secure else "http"
    return f"{scheme}://{minio_service.endpoint}"


@pytest.fixture
def s3_client(minio_service: MinioService) -> BaseClient:
    """A boto3 client for the MinIO container (local and origin buckets)."""
    import boto3
    from botocore.config import Config

    return boto3.client(
        "s3",
        endpoint_url=_minio_endpoint(minio_service),
        aws_access_key_id=minio_service.access_key,
        aws_secret_access_key=minio_service.secret_key,
        region_name="us-east-1",
        config=Config(s3={"addressing_style": "path"}),
    )


@pytest.fixture
def readthrough_env(minio_service: MinioService) -> Generator[dict[str, str]]:
    """Point the local store and a signed origin at separate MinIO buckets."""
    import json

    endpoint = _minio_endpoint(minio_service)
    env_vars = {
        "S3_READTHROUGH_LOCAL_ENDPOINT": endpoint,
        "S3_READTHROUGH_LOCAL_ACCESS_KEY": minio_service.access_key,
        "S3_READTHROUGH_LOCAL_SECRET_KEY": minio_service.secret_key,
        "S3_READTHROUGH_LOCAL_REGION": "us-east-1",
        "S3_READTHROUGH_LOCAL_BUCKET": "readthrough-local",
        "S3_READTHROUGH_SOURCE_STORAGE_CONFIG": json.dumps(
            {
                "endpoint": endpoint,
                "region": "us-east-1",
                "accessKeyId": minio_service.access_key,
                "secretAccessKey": minio_service.secret_key,
                "bucketName": "readthrough-origin",
            }
        ),
    }

    original_values = {}
    for key, value in env_vars.items():
        original_values[key] = os.environ.get(key)
        os.environ[key] = value

    yield env_vars

    for key, original_value in original_values.items():
        if original_value is None:
            os.environ.pop(key, None)
        else:
            os.environ[key] = original_value
