"""Read-through caching proxy for S3-compatible object stores."""

from .app import create_app
from .proxy import ReadThroughProxy
from .resolver import CacheResolver
from .router import RequestRouter
from .settings import LocalSettings, ProxySettings

__all__ = [
    "CacheResolver",
    "LocalSettings",
    "ProxySettings",
    "ReadThroughProxy",
    "RequestRouter",
    "create_app",
]
