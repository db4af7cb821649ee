"""Service-account key loading, token minting and the short-lived token cache."""

from __future__ import annotations

import asyncio
import json
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Protocol

from google.auth import crypt
from google.auth.transport.requests import Request
from google.oauth2 import service_account

from bq_stream.resources import Credential

logger = logging.getLogger(__name__)

BIGQUERY_SCOPE = "https://www.googleapis.com/auth/bigquery"
TOKEN_URI = "https://oauth2.googleapis.com/token"
DEFAULT_EXPIRY_SECONDS = 5 * 60


class TokenMinter(Protocol):
    """Exchanges key material for a bearer token."""

    async def mint(self, key: bytes, issuer: str, scope: str) -> str: ...


class KeyProvider:
    """Key material held in memory or read once from a file.

    Args:
        key: Raw key bytes, or a path to a PEM private key / JSON
            service-account key file.
    """

    def __init__(self, key: bytes | str | Path) -> None:
        self._source = key
        self._loaded: asyncio.Future[bytes] | None = None

    async def get(self) -> bytes:
        if isinstance(self._source, bytes):
            return self._source
        if self._loaded is None:
            path = Path(self._source)
            logger.debug("Loading key material from %s", path)
            self._loaded = asyncio.ensure_future(asyncio.to_thread(path.read_bytes))
        try:
            return await asyncio.shield(self._loaded)
        except Exception:
            # A failed read may be retried on the next call.
            self._loaded = None
            raise


class ServiceAccountTokenMinter:
    """``TokenMinter`` using ``google-auth`` service-account credentials.

    Accepts either a PEM private key (signed for *issuer*) or the JSON key
    file downloaded from the Cloud console.
    """

    def __init__(self, token_uri: str = TOKEN_URI) -> None:
        self._token_uri = token_uri

    async def mint(self, key: bytes, issuer: str, scope: str) -> str:
        return await asyncio.to_thread(self._mint, key, issuer, scope)

    def _mint(self, key: bytes, issuer: str, scope: str) -> str:
        if key.lstrip().startswith(b"{"):
            info = json.loads(key)
            creds = service_account.Credentials.from_service_account_info(
                info, scopes=[scope]
            )
        else:
            creds = service_account.Credentials(
                crypt.RSASigner.from_string(key),
                issuer,
                self._token_uri,
                scopes=[scope],
            )
        creds.refresh(Request())
        return creds.token


class CredentialCache:
    """Caches one bearer token for a fixed window after it is minted.

    Concurrent ``get_token`` calls while a mint is pending share that mint.
    The cached token is cleared by a loop timer ``expiry`` seconds after
    minting, or by ``invalidate``.

    Args:
        key_provider: Source of the service-account key.
        minter: Collaborator that turns the key into a token.
        issuer: Service-account email the token is minted for.
        scope: OAuth scope requested.
        expiry: Seconds a minted token is reused.
    """

    def __init__(
        self,
        key_provider: KeyProvider,
        minter: TokenMinter,
        issuer: str,
        *,
        scope: str = BIGQUERY_SCOPE,
        expiry: float = DEFAULT_EXPIRY_SECONDS,
    ) -> None:
        self._key_provider = key_provider
        self._minter = minter
        self._issuer = issuer
        self._scope = scope
        self._expiry = expiry
        self._credential: Credential | None = None
        self._timer: asyncio.TimerHandle | None = None
        self._pending: asyncio.Task[str] | None = None

    @property
    def credential(self) -> Credential | None:
        return self._credential

    async def get_token(self) -> str:
        if self._credential is not None:
            return self._credential.token
        if self._pending is None:
            self._pending = asyncio.ensure_future(self._mint())
        return await asyncio.shield(self._pending)

    def invalidate(self) -> None:
        """Drop the cached token so the next call mints a fresh one."""
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        self._credential = None

    async def _mint(self) -> str:
        try:
            key = await self._key_provider.get()
            logger.debug("Minting token for %s", self._issuer)
            token = await self._minter.mint(key, self._issuer, self._scope)
        finally:
            self._pending = None

        self.invalidate()
        self._credential = Credential(token=token, minted_at=datetime.now(timezone.utc))
        self._timer = asyncio.get_running_loop().call_later(
            self._expiry, self.invalidate
        )
        return token
