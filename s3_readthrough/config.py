"""Dynamic proxy configuration.

The proxy reads a handful of named values (origin connection parameters,
hostname patterns, the default ``Cache-Control``) from a configuration
source and freezes them into a :class:`ProxyConfig` snapshot. Components
receive the snapshot explicitly; a reload builds a new one instead of
mutating the old.
"""

from __future__ import annotations

import logging
import os
import re
from typing import TYPE_CHECKING, Any, Literal, Protocol

from botocore.exceptions import BotoCoreError, ClientError
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from .stores import NOT_FOUND_CODES, run_sync

if TYPE_CHECKING:
    from collections.abc import Mapping
else:  # pragma: no cover
    Mapping = Any

LOG = logging.getLogger("s3_readthrough.config")

ENV_PREFIX = "S3_READTHROUGH_"
DEFAULT_CACHE_CONTROL = "public, max-age=86400"
DEFAULT_READ_HOSTNAME_PATTERN = "^read-"
DEFAULT_WRITE_HOSTNAME_PATTERN = "^write-"

SOURCE_STORAGE_CONFIG = "source_storage_config"
READ_HOSTNAME_PATTERN = "read_hostname_pattern"
WRITE_HOSTNAME_PATTERN = "write_hostname_pattern"
DEFAULT_CACHE_CONTROL_KEY = "default_cache_control"
CONFIG_KEYS = (
    SOURCE_STORAGE_CONFIG,
    READ_HOSTNAME_PATTERN,
    WRITE_HOSTNAME_PATTERN,
    DEFAULT_CACHE_CONTROL_KEY,
)


class SourceSettings(BaseModel):
    """Connection parameters for the origin store.

    Accepts both the camelCase keys of the stored JSON document
    (``accessKeyId``, ``bucketName``...) and the Python field names.
    """

    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="ignore")

    endpoint: str = ""
    region: str = ""
    access_key_id: str = Field(default="", alias="accessKeyId")
    secret_access_key: str = Field(default="", alias="secretAccessKey")
    bucket_name: str = Field(default="", alias="bucketName")
    addressing_style: Literal["auto", "virtual", "path"] = Field(
        default="path", alias="addressingStyle"
    )
    timeout: float = Field(default=30.0, gt=0)

    @property
    def enabled(self) -> bool:
        return bool(self.endpoint)

    @property
    def signed(self) -> bool:
        return bool(self.access_key_id and self.secret_access_key)


class ProxyConfig(BaseModel):
    """Immutable snapshot of the dynamic configuration."""

    model_config = ConfigDict(frozen=True)

    source: SourceSettings = Field(default_factory=SourceSettings)
    read_hostname_pattern: re.Pattern[str] = re.compile(DEFAULT_READ_HOSTNAME_PATTERN)
    write_hostname_pattern: re.Pattern[str] = re.compile(
        DEFAULT_WRITE_HOSTNAME_PATTERN
    )
    default_cache_control: str = DEFAULT_CACHE_CONTROL


class ConfigSourceError(Exception):
    """The configuration source could not be read."""


class MalformedConfigValue(Exception):
    """A single stored value could not be read as text."""


class ConfigSource(Protocol):
    async def get(self, name: str) -> str | None: ...


class EnvConfigSource:
    """Reads ``S3_READTHROUGH_<NAME>`` environment variables."""

    def __init__(self, prefix: str = ENV_PREFIX):
        self._prefix = prefix

    async def get(self, name: str) -> str | None:
        return os.environ.get(f"{self._prefix}{name.upper()}")


class MappingConfigSource:
    def __init__(self, values: Mapping[str, str] | None = None):
        self._values = dict(values or {})

    async def get(self, name: str) -> str | None:
        return self._values.get(name)


class BucketConfigSource:
    """Reads each value from the object ``<prefix><name>`` in a config bucket."""

    def __init__(self, client: Any, bucket: str, prefix: str = ""):
        self._client = client
        self._bucket = bucket
        self._prefix = prefix

    async def get(self, name: str) -> str | None:
        key = f"{self._prefix}{name}"
        try:
            result = await run_sync(
                self._client.get_object, Bucket=self._bucket, Key=key
            )
            body = result["Body"]
            try:
                data = await run_sync(body.read)
            finally:
                await run_sync(body.close)
        except ClientError as error:
            if error.response.get("Error", {}).get("Code") in NOT_FOUND_CODES:
                return None
            msg = f"cannot read config s3://{self._bucket}/{key}: {error}"
            raise ConfigSourceError(msg) from error
        except BotoCoreError as error:
            msg = f"cannot read config s3://{self._bucket}/{key}: {error}"
            raise ConfigSourceError(msg) from error
        try:
            return data.decode("utf-8").strip()
        except UnicodeDecodeError as error:
            msg = f"s3://{self._bucket}/{key} is not valid UTF-8: {error}"
            raise MalformedConfigValue(msg) from error


def _parse_source(raw: str | None, fallback: SourceSettings) -> SourceSettings:
    if raw is None or not raw.strip():
        return SourceSettings()
    try:
        return SourceSettings.model_validate_json(raw)
    except ValidationError as error:
        LOG.warning(
            "malformed %s, keeping previous value: %s", SOURCE_STORAGE_CONFIG, error
        )
        return fallback


def _parse_pattern(
    name: str, raw: str | None, default: str, fallback: re.Pattern[str]
) -> re.Pattern[str]:
    if raw is None or not raw.strip():
        return re.compile(default)
    try:
        return re.compile(raw.strip())
    except re.error as error:
        LOG.warning("malformed %s %r, keeping previous value: %s", name, raw, error)
        return fallback


async def load_config(
    source: ConfigSource, base: ProxyConfig | None = None
) -> ProxyConfig:
    """Build a configuration snapshot from ``source``.

    Absent values take the built-in defaults. Malformed values are logged and
    taken from ``base`` (the previous snapshot, or the defaults when there is
    none). Raises :class:`ConfigSourceError` when the source itself fails.
    """
    previous = base or ProxyConfig()
    values: dict[str, str | None] = {}
    malformed: set[str] = set()
    for name in CONFIG_KEYS:
        try:
            values[name] = await source.get(name)
        except MalformedConfigValue as error:
            LOG.warning("malformed %s, keeping previous value: %s", name, error)
            values[name] = None
            malformed.add(name)

    if SOURCE_STORAGE_CONFIG in malformed:
        source_settings = previous.source
    else:
        source_settings = _parse_source(values[SOURCE_STORAGE_CONFIG], previous.source)

    if READ_HOSTNAME_PATTERN in malformed:
        read_pattern = previous.read_hostname_pattern
    else:
        read_pattern = _parse_pattern(
            READ_HOSTNAME_PATTERN,
            values[READ_HOSTNAME_PATTERN],
            DEFAULT_READ_HOSTNAME_PATTERN,
            previous.read_hostname_pattern,
        )

    if WRITE_HOSTNAME_PATTERN in malformed:
        write_pattern = previous.write_hostname_pattern
    else:
        write_pattern = _parse_pattern(
            WRITE_HOSTNAME_PATTERN,
            values[WRITE_HOSTNAME_PATTERN],
            DEFAULT_WRITE_HOSTNAME_PATTERN,
            previous.write_hostname_pattern,
        )

    if DEFAULT_CACHE_CONTROL_KEY in malformed:
        cache_control = previous.default_cache_control
    else:
        raw_cache_control = values[DEFAULT_CACHE_CONTROL_KEY] or ""
        cache_control = raw_cache_control.strip() or DEFAULT_CACHE_CONTROL

    return ProxyConfig(
        source=source_settings,
        read_hostname_pattern=read_pattern,
        write_hostname_pattern=write_pattern,
        default_cache_control=cache_control,
    )
