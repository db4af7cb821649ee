"""Single-flight admission of outbound requests.

Every exchange with the service goes through one ``RequestGate``.  At most
one exchange is in flight; callers arriving while it runs are parked in a
FIFO backlog and dispatched in arrival order by a single drain loop.
"""

from __future__ import annotations

import asyncio
import enum
import logging
from collections import deque
from dataclasses import dataclass
from typing import Any, Protocol

from bq_stream.resources import RequestDescriptor

logger = logging.getLogger(__name__)


class GateState(enum.Enum):
    IDLE = "idle"
    BUSY = "busy"


class Executor(Protocol):
    async def execute(self, descriptor: RequestDescriptor) -> dict[str, Any]: ...


@dataclass
class PendingCall:
    """A queued request and the future its caller awaits."""

    descriptor: RequestDescriptor
    future: asyncio.Future[dict[str, Any]]


class RequestGate:
    """Serialize requests through *executor*, oldest first."""

    def __init__(self, executor: Executor) -> None:
        self._executor = executor
        self._backlog: deque[PendingCall] = deque()
        self._state = GateState.IDLE
        self._drainer: asyncio.Task[None] | None = None

    @property
    def state(self) -> GateState:
        return self._state

    @property
    def backlog(self) -> int:
        return len(self._backlog)

    def submit(self, descriptor: RequestDescriptor) -> asyncio.Future[dict[str, Any]]:
        """Admit *descriptor* and return the future of its response.

        Never blocks: an idle gate starts draining, a busy one queues.
        """
        loop = asyncio.get_running_loop()
        call = PendingCall(descriptor, loop.create_future())
        self._backlog.append(call)
        if self._state is GateState.IDLE:
            self._state = GateState.BUSY
            self._drainer = loop.create_task(self._drain())
        else:
            logger.debug(
                "Gate busy, queued %s %s (backlog %d)",
                descriptor.method,
                descriptor.url,
                len(self._backlog),
            )
        return call.future

    async def _drain(self) -> None:
        try:
            while self._backlog:
                call = self._backlog.popleft()
                await self._dispatch(call)
        finally:
            self._state = GateState.IDLE
            self._drainer = None
            # Anything still queued here was stranded by cancellation.
            while self._backlog:
                self._backlog.popleft().future.cancel()

    async def _dispatch(self, call: PendingCall) -> None:
        if call.future.cancelled():
            return
        try:
            result = await self._executor.execute(call.descriptor)
        except asyncio.CancelledError:
            call.future.cancel()
            raise
        except Exception as exc:
            if not call.future.done():
                call.future.set_exception(exc)
        else:
            if not call.future.done():
                call.future.set_result(result)
