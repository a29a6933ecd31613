from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

import httpx
from botocore.exceptions import BotoCoreError, ClientError

from .auth import AccessGuard, StaticTokenVerifier
from .config import (
    BucketConfigSource,
    ConfigSourceError,
    EnvConfigSource,
    ProxyConfig,
    load_config,
)
from .notifications import (
    HTTPNotificationSink,
    NullNotificationSink,
    SQSNotificationSink,
)
from .resolver import CacheResolver
from .router import RequestRouter
from .settings import (
    LocalSettings,
    ProxySettings,
    load_local_settings_from_env,
    load_proxy_settings_from_env,
)
from .stores import (
    HTTPOriginStore,
    S3ObjectStore,
    S3OriginStore,
    build_s3_client,
)

if TYPE_CHECKING:
    from collections.abc import Callable

    from litestar import Request
    from litestar.response import Response

    from .config import ConfigSource, SourceSettings
    from .notifications import NotificationSink
    from .stores import ObjectStore, OriginStore
else:  # pragma: no cover
    Callable = Any

LOG = logging.getLogger("s3_readthrough.proxy")


class InvalidOriginError(Exception):
    """The configured origin could not be turned into a client."""


class ReadThroughProxy:
    """Owns the collaborators and the current configuration snapshot.

    Every request is handed to the :class:`RequestRouter` built for the
    snapshot that was current when the request arrived. :meth:`reload_config`
    swaps in a new router; requests already running keep the old one.
    """

    def __init__(
        self,
        local: LocalSettings,
        settings: ProxySettings,
        *,
        store: ObjectStore | None = None,
        config_source: ConfigSource | None = None,
        sink: NotificationSink | None = None,
        guard: AccessGuard | None = None,
        origin_factory: Callable[[SourceSettings], OriginStore | None] | None = None,
    ):
        self._local_settings = local
        self._settings = settings
        self._http_client: httpx.AsyncClient | None = None
        self._local_client = self._build_local_client()
        self._store = store or S3ObjectStore(
            self._local_client, local.bucket, local.bucket_location
        )
        self._config_source = config_source or self._build_config_source()
        self._configured_sink = sink
        self._sink: NotificationSink = sink or NullNotificationSink()
        self._guard = guard or self._build_guard()
        self._origin_factory = origin_factory or self._build_origin_store
        self._router: RequestRouter | None = None

    @property
    def settings(self) -> ProxySettings:
        return self._settings

    @property
    def config(self) -> ProxyConfig | None:
        return self._router.config if self._router is not None else None

    async def startup(self) -> None:
        self._http_client = httpx.AsyncClient(
            timeout=httpx.Timeout(60.0, read=300.0),
            trust_env=False,
        )
        if self._configured_sink is None:
            self._sink = self._build_sink()
        if isinstance(self._store, S3ObjectStore):
            try:
                await self._store.ensure_bucket()
            except (ClientError, BotoCoreError):
                LOG.warning(
                    "could not ensure local bucket %s exists",
                    self._store.bucket,
                    exc_info=True,
                )

        try:
            config = await load_config(self._config_source)
        except ConfigSourceError:
            LOG.warning(
                "configuration source unavailable, starting with defaults",
                exc_info=True,
            )
            config = ProxyConfig()
        try:
            origin = self._create_origin(config.source)
        except InvalidOriginError:
            LOG.warning("origin unusable, lazy loading disabled", exc_info=True)
            origin = None
        self._router = self._build_router(config, origin)
        LOG.info(
            "read-through proxy ready (local=%s/%s, origin=%s, sync=%s)",
            self._local_settings.endpoint,
            self._local_settings.bucket,
            self._describe_origin(config),
            self._settings.sync_queue_kind,
        )

    async def shutdown(self) -> None:
        self._router = None
        if self._http_client is not None:
            await self._http_client.aclose()
            self._http_client = None

    async def reload_config(self) -> bool:
        """Load a fresh configuration snapshot and route new requests with it.

        Returns False, keeping the current snapshot, when the source fails.
        """
        try:
            config = await load_config(self._config_source, self.config)
        except ConfigSourceError:
            LOG.warning(
                "configuration reload failed, keeping previous snapshot",
                exc_info=True,
            )
            return False
        try:
            origin = self._create_origin(config.source)
        except InvalidOriginError:
            LOG.warning(
                "reloaded origin unusable, keeping previous snapshot", exc_info=True
            )
            return False
        self._router = self._build_router(config, origin)
        LOG.info("configuration reloaded (origin=%s)", self._describe_origin(config))
        return True

    async def authorize_admin(self, credential: str | None) -> None:
        """Gate administrative endpoints on the write credential."""
        await self._guard.authorize_credential(credential, "reload configuration")

    async def handle(self, request: Request, path: str) -> Response:
        router = self._router
        if router is None:
            message = "proxy not initialised"
            raise RuntimeError(message)
        return await router.handle(request, path)

    def _create_origin(self, source: SourceSettings) -> OriginStore | None:
        try:
            return self._origin_factory(source)
        except (ValueError, BotoCoreError) as error:
            msg = f"cannot build origin for {source.endpoint!r}: {error}"
            raise InvalidOriginError(msg) from error

    def _build_router(
        self, config: ProxyConfig, origin: OriginStore | None
    ) -> RequestRouter:
        resolver = CacheResolver(
            self._store,
            origin,
            self._sink,
            max_object_size=self._settings.max_object_size,
            coalesce_misses=self._settings.coalesce_misses,
        )
        return RequestRouter(
            config,
            resolver,
            self._store,
            self._sink,
            self._guard,
            max_object_size=self._settings.max_object_size,
        )

    def _build_local_client(self):
        return build_s3_client(
            endpoint=self._local_settings.endpoint,
            access_key=self._local_settings.access_key,
            secret_key=self._local_settings.secret_key,
            session_token=self._local_settings.session_token,
            region=self._local_settings.region,
        )

    def _build_origin_store(self, source: SourceSettings) -> OriginStore | None:
        if not source.enabled:
            return None
        if source.signed:
            if not source.bucket_name:
                LOG.warning(
                    "origin %s has credentials but no bucketName, "
                    "lazy loading disabled",
                    source.endpoint,
                )
                return None
            client = build_s3_client(
                endpoint=source.endpoint,
                access_key=source.access_key_id,
                secret_key=source.secret_access_key,
                region=source.region or None,
                addressing_style=source.addressing_style,
                timeout=source.timeout,
            )
            return S3OriginStore(client, source.bucket_name)

        if self._http_client is None:
            message = "proxy not initialised"
            raise RuntimeError(message)
        return HTTPOriginStore(
            self._http_client, source.endpoint, source.bucket_name, source.timeout
        )

    def _build_config_source(self) -> ConfigSource:
        if self._settings.config_source == "bucket":
            return BucketConfigSource(
                self._local_client,
                self._settings.config_bucket or self._local_settings.bucket,
                self._settings.config_prefix,
            )
        return EnvConfigSource()

    def _build_sink(self) -> NotificationSink:
        kind = self._settings.sync_queue_kind
        url = self._settings.sync_queue_url
        if kind == "none":
            return NullNotificationSink()
        if not url:
            LOG.warning(
                "sync queue kind %s configured without a URL, events dropped", kind
            )
            return NullNotificationSink()
        if kind == "sqs":
            return SQSNotificationSink.create(url, self._settings.sync_queue_region)
        assert self._http_client is not None
        return HTTPNotificationSink(self._http_client, url)

    def _build_guard(self) -> AccessGuard:
        tokens = self._settings.write_token_list
        verifier = StaticTokenVerifier(tokens) if tokens else None
        return AccessGuard(verifier, require_read_auth=self._settings.require_read_auth)

    @staticmethod
    def _describe_origin(config: ProxyConfig) -> str:
        source = config.source
        if not source.enabled:
            return "disabled"
        mode = "signed" if source.signed else "anonymous"
        region = source.region or "default"
        return f"{source.endpoint}/{source.bucket_name} ({region}, {mode})"

    @classmethod
    def from_env(cls) -> ReadThroughProxy:
        """Create a ReadThroughProxy instance from environment variables."""
        return cls(
            local=load_local_settings_from_env(),
            settings=load_proxy_settings_from_env(),
        )
