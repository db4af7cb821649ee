"""Authenticated execution of a single REST exchange with auth retry."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import Any

from bq_stream.credentials import CredentialCache
from bq_stream.errors import is_auth_error, raise_for_service_error
from bq_stream.resources import RequestDescriptor
from bq_stream.transport import HttpClient

logger = logging.getLogger(__name__)

DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_BASE_DELAY = 0.5  # seconds


class RetryingExecutor:
    """Attach a bearer token, perform the exchange, retry 401/403.

    An authorization failure invalidates the cached token and waits
    ``base_delay * 2 ** attempt`` before the next attempt.  Every other
    error, and the last authorization failure, propagates.

    Args:
        http: Transport collaborator.
        credentials: Token cache shared by every request.
        max_attempts: Total attempts per request, first one included.
        base_delay: Backoff base in seconds.
        stop_on_error: Fail on the first error, authorization included.
        sleep: Awaitable delay, replaceable in tests.
    """

    def __init__(
        self,
        http: HttpClient,
        credentials: CredentialCache,
        *,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        base_delay: float = DEFAULT_BASE_DELAY,
        stop_on_error: bool = False,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        if max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        self._http = http
        self._credentials = credentials
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self.stop_on_error = stop_on_error
        self._sleep = sleep

    async def execute(self, descriptor: RequestDescriptor) -> dict[str, Any]:
        attempt = 1
        while True:
            try:
                return await self._attempt(descriptor)
            except Exception as exc:
                if (
                    self.stop_on_error
                    or attempt >= self.max_attempts
                    or not is_auth_error(exc)
                ):
                    raise
                delay = self.base_delay * 2**attempt
                logger.debug(
                    "%s %s rejected (%s), retry %d in %.1fs",
                    descriptor.method,
                    descriptor.url,
                    exc,
                    attempt,
                    delay,
                )
                self._credentials.invalidate()
                await self._sleep(delay)
                attempt += 1

    async def _attempt(self, descriptor: RequestDescriptor) -> dict[str, Any]:
        token = await self._credentials.get_token()
        response = await self._http.exchange(
            descriptor.method,
            descriptor.url,
            {"Authorization": f"Bearer {token}"},
            params=descriptor.query_params(),
            json=descriptor.body,
        )
        raise_for_service_error(response)
        return response
