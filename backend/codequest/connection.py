"""
CodeQuest API — Connection Gate
=================================

What:  Makes sure the backing-store connection is established exactly once
       and reused by every later request.
Why:   On serverless hosts the process may be created for a single request,
       so the connection cannot be opened at import time; on long-lived hosts
       it must not be reopened per request.
How:   ConnectionManager holds a tagged state:

           NOT_STARTED ──ensure_connected()──▶ IN_FLIGHT ──success──▶ ESTABLISHED
                ▲                                  │
                └──────────── failure ─────────────┘

       Concurrent first callers all await the same asyncio.Task, so there is
       only ever one underlying attempt in flight. A failed attempt raises
       ConnectionFailureError (503) for every waiter and leaves the state at
       NOT_STARTED; the next request simply tries again. No backoff.

The manager is created by the app factory and injected into the pipeline;
it is not a module global.
"""

import asyncio
import enum
import logging
from typing import Awaitable, Callable, Optional

from codequest.exceptions import ConnectionFailureError
from codequest.pipeline import CONTINUE, Fail, RequestContext, StageResult

logger = logging.getLogger(__name__)


class ConnectionState(enum.Enum):
    NOT_STARTED = "not_started"
    IN_FLIGHT = "in_flight"
    ESTABLISHED = "established"


class ConnectionManager:
    """
    Lazy, idempotent connection establishment and its pipeline stage.

    Args:
        connect:     async callable that opens (and verifies) the connection
        disconnect:  optional async callable used by dispose()
    """

    def __init__(
        self,
        connect: Callable[[], Awaitable[None]],
        disconnect: Optional[Callable[[], Awaitable[None]]] = None,
    ):
        self._connect = connect
        self._disconnect = disconnect
        self._state = ConnectionState.NOT_STARTED
        self._pending: Optional[asyncio.Task] = None

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def established(self) -> bool:
        return self._state is ConnectionState.ESTABLISHED

    async def ensure_connected(self) -> None:
        if self._state is ConnectionState.ESTABLISHED:
            return
        if self._pending is None:
            self._state = ConnectionState.IN_FLIGHT
            self._pending = asyncio.ensure_future(self._establish())
        # shield: a cancelled request must not cancel the shared attempt
        await asyncio.shield(self._pending)

    async def _establish(self) -> None:
        try:
            await self._connect()
        except Exception as exc:
            self._state = ConnectionState.NOT_STARTED
            logger.warning("Backing store connection attempt failed: %s", exc)
            raise ConnectionFailureError(exc) from exc
        else:
            self._state = ConnectionState.ESTABLISHED
        finally:
            self._pending = None

    async def dispose(self) -> None:
        """Explicit teardown. The next ensure_connected() connects again."""
        if self._pending is not None:
            # Let an in-flight attempt settle before tearing down
            await asyncio.gather(self._pending, return_exceptions=True)
        if self._disconnect is not None:
            await self._disconnect()
        self._state = ConnectionState.NOT_STARTED
        logger.info("Backing store connection disposed")

    async def __call__(self, context: RequestContext) -> StageResult:
        try:
            await self.ensure_connected()
        except ConnectionFailureError as exc:
            return Fail(exc)
        return CONTINUE
