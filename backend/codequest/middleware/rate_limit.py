"""
CodeQuest API — Rate Gate
===========================

What:  Per-client fixed-window request counter for /api paths.
Why:   Best-effort abuse mitigation: one client cannot flood the handlers.
How:   Tracks {count, window_start} per client identity in memory.

Algorithm: Fixed Window Counter
    1. No record, or the record's window has elapsed → reset to count=1, admit
    2. Otherwise increment count
    3. count > limit → reject with 429 and a Retry-After hint
    The check-and-increment is synchronous, so it is atomic with respect to
    the event loop; no lock is needed.

    Expired records are reset in place the next time that client shows up.
    There is no sweep.

Response headers (admitted and rejected API requests):
    RateLimit-Limit:      configured threshold
    RateLimit-Remaining:  requests left in the current window
    RateLimit-Reset:      seconds until the window resets

Production Upgrade Path:
    State is per process. Several instances each enforce the limit on their
    own; a shared counter (e.g. Redis INCR with TTL) would be needed for a
    global limit.
"""

import logging
import math
import time
from dataclasses import dataclass
from typing import Callable, Dict

from codequest.config import Settings
from codequest.exceptions import RateLimitExceededError
from codequest.pipeline import CONTINUE, Fail, RequestContext, StageResult

logger = logging.getLogger(__name__)


@dataclass
class RateWindow:
    count: int
    window_start: float


@dataclass(frozen=True)
class RateDecision:
    allowed: bool
    limit: int
    remaining: int
    reset_after: int  # seconds until the current window ends

    @property
    def headers(self) -> Dict[str, str]:
        return {
            "RateLimit-Limit": str(self.limit),
            "RateLimit-Remaining": str(self.remaining),
            "RateLimit-Reset": str(self.reset_after),
        }


class RateGate:
    """
    In-memory fixed-window rate limiter and its pipeline stage.

    Configuration (from settings):
        rate_limit_requests: Max requests per window (default: 100)
        rate_limit_window:   Window duration in seconds (default: 900)
        trust_proxy:         Key on the first X-Forwarded-For hop

    `clock` must be monotonic; tests inject a fake one.
    """

    def __init__(
        self,
        limit: int,
        window: float,
        trust_proxy: bool = False,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.limit = limit
        self.window = window
        self.trust_proxy = trust_proxy
        self._clock = clock
        self._windows: Dict[str, RateWindow] = {}

    @classmethod
    def from_settings(cls, settings: Settings, **kwargs) -> "RateGate":
        return cls(
            limit=settings.rate_limit_requests,
            window=settings.rate_limit_window,
            trust_proxy=settings.trust_proxy,
            **kwargs,
        )

    def admit(self, client_identity: str) -> RateDecision:
        now = self._clock()
        record = self._windows.get(client_identity)

        if record is None or now >= record.window_start + self.window:
            record = RateWindow(count=1, window_start=now)
            self._windows[client_identity] = record
        else:
            record.count += 1

        reset_after = max(1, math.ceil(record.window_start + self.window - now))
        return RateDecision(
            allowed=record.count <= self.limit,
            limit=self.limit,
            remaining=max(0, self.limit - record.count),
            reset_after=reset_after,
        )

    def client_identity(self, context: RequestContext) -> str:
        if self.trust_proxy:
            forwarded = context.headers.get("x-forwarded-for", "")
            first_hop = forwarded.split(",")[0].strip()
            if first_hop:
                return first_hop
        return context.client_host

    async def __call__(self, context: RequestContext) -> StageResult:
        if not context.is_api:
            return CONTINUE

        identity = self.client_identity(context)
        decision = self.admit(identity)
        context.response_headers.update(decision.headers)

        if not decision.allowed:
            logger.warning(
                "Rate limit exceeded for %s: more than %d requests in %ss window",
                identity,
                self.limit,
                self.window,
            )
            return Fail(
                RateLimitExceededError(
                    retry_after=decision.reset_after,
                    context={"client": identity},
                )
            )
        return CONTINUE
