from __future__ import annotations

import hmac
import inspect
import logging
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Any

from .errors import ErrorKind, ProxyError

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable, Iterable

    CredentialVerifier = Callable[[str], bool | Awaitable[bool]]
else:  # pragma: no cover
    Awaitable = Callable = Iterable = CredentialVerifier = Any

LOG = logging.getLogger("s3_readthrough.auth")

WRITE_METHODS = frozenset({"PUT", "DELETE"})


class Intent(Enum):
    """Read/write classification of a request, derived from its hostname."""

    READ = "read"
    WRITE = "write"


@dataclass(frozen=True)
class Operation:
    method: str
    key: str
    intent: Intent
    credential: str | None = None

    @property
    def is_write(self) -> bool:
        return self.method in WRITE_METHODS


def accept_present_credential(credential: str) -> bool:
    """Baseline policy: a present ``Authorization`` header is accepted as is."""
    return True


class StaticTokenVerifier:
    """Accepts ``Bearer <token>`` or a bare token from a fixed set of secrets."""

    def __init__(self, tokens: Iterable[str]):
        self._tokens = tuple(token for token in tokens if token)
        if not self._tokens:
            msg = "at least one token is required"
            raise ValueError(msg)

    def __call__(self, credential: str) -> bool:
        value = credential.strip()
        scheme, _, rest = value.partition(" ")
        if scheme.lower() == "bearer":
            value = rest.strip()
        return any(
            hmac.compare_digest(value.encode(), token.encode())
            for token in self._tokens
        )


class AccessGuard:
    """Gates write operations (and optionally reads) on a credential.

    ``verify_credential`` is the extension point for real request
    authentication, e.g. AWS SigV4 validation. Without one, any present
    ``Authorization`` header passes, which is not safe for production.
    """

    def __init__(
        self,
        verify_credential: CredentialVerifier | None = None,
        *,
        require_read_auth: bool = False,
    ):
        if verify_credential is None:
            LOG.warning(
                "no credential verifier configured: any Authorization header "
                "is accepted for writes, request signatures are not verified"
            )
            verify_credential = accept_present_credential
        self._verify_credential = verify_credential
        self._require_read_auth = require_read_auth

    async def authorize(self, operation: Operation) -> None:
        if not operation.is_write and not self._require_read_auth:
            return
        await self.authorize_credential(
            operation.credential, f"{operation.method} {operation.key}"
        )

    async def authorize_credential(self, credential: str | None, action: str) -> None:
        """Require a credential the verifier accepts, whatever the intent."""
        if not credential:
            raise ProxyError(ErrorKind.MISSING_CREDENTIALS)

        verified = self._verify_credential(credential)
        if inspect.isawaitable(verified):
            verified = await verified
        if not verified:
            LOG.info("rejected credential for %s", action)
            raise ProxyError(ErrorKind.ACCESS_DENIED, "Invalid credentials")
