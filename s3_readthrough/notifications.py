"""Best-effort delivery of sync events to downstream consumers.

Every state change (upload, delete, lazy load) is offered to a
:class:`NotificationSink` exactly once. Delivery is not retried and a failure
never changes the response of the request that produced the event.
"""

from __future__ import annotations

import json
import logging
from typing import TYPE_CHECKING, Any, Protocol

import httpx
from boto3.session import Session
from botocore.exceptions import BotoCoreError, ClientError

from .stores import run_sync

if TYPE_CHECKING:
    from .models import SyncEvent

LOG = logging.getLogger("s3_readthrough.notifications")


class NotificationError(Exception):
    """A sink could not accept an event."""


class NotificationSink(Protocol):
    async def enqueue(self, event: SyncEvent) -> None: ...


class NullNotificationSink:
    """Drops events; used when no sync queue is configured."""

    async def enqueue(self, event: SyncEvent) -> None:
        LOG.debug("sync event dropped (no queue): %s %s", event.action.value, event.key)


class SQSNotificationSink:
    def __init__(self, client: Any, queue_url: str):
        self._client = client
        self._queue_url = queue_url

    @classmethod
    def create(cls, queue_url: str, region: str | None = None) -> SQSNotificationSink:
        client = Session(region_name=region).client("sqs")
        return cls(client, queue_url)

    async def enqueue(self, event: SyncEvent) -> None:
        try:
            await run_sync(
                self._client.send_message,
                QueueUrl=self._queue_url,
                MessageBody=json.dumps(event.to_message()),
            )
        except (ClientError, BotoCoreError) as error:
            msg = f"send to {self._queue_url} failed: {error}"
            raise NotificationError(msg) from error


class HTTPNotificationSink:
    """POSTs each event as JSON to a webhook-style queue endpoint."""

    def __init__(self, client: httpx.AsyncClient, url: str):
        self._client = client
        self._url = url

    async def enqueue(self, event: SyncEvent) -> None:
        try:
            response = await self._client.post(self._url, json=event.to_message())
            response.raise_for_status()
        except httpx.HTTPError as error:
            msg = f"post to {self._url} failed: {error}"
            raise NotificationError(msg) from error


async def notify(sink: NotificationSink, event: SyncEvent) -> bool:
    """Offer ``event`` to ``sink`` once; report whether it was accepted.

    Sinks are pluggable, so any exception is absorbed here and logged.
    """
    try:
        await sink.enqueue(event)
    except Exception:
        LOG.warning(
            "failed to queue sync event %s for %s (non-fatal)",
            event.action.value,
            event.key,
            exc_info=True,
        )
        return False
    LOG.debug("queued sync event %s for %s", event.action.value, event.key)
    return True
