from __future__ import annotations
import asyncio, logging
from dataclasses import dataclass
from typing import Awaitable, Callable, TypeVar

from ..domain.errors import RateLimited, TransientNetworkError

log = logging.getLogger(__name__)
T = TypeVar("T")
Sleep = Callable[[float], Awaitable[None]]


@dataclass(slots=True, frozen=True)
class RetryPolicy:
    """Bounded retry budget for one remote call.

    ``rate_limit_attempts`` / ``transient_attempts`` count total tries, the
    first one included. A retry-after hint longer than ``max_backoff_s`` is
    not waited out: the call fails and the gap is left for the next run.
    """
    rate_limit_attempts: int = 5
    transient_attempts: int = 3
    backoff_s: float = 1.0
    max_backoff_s: float = 60.0

    def backoff(self, attempt: int) -> float:
        return min(self.max_backoff_s, self.backoff_s * (2 ** (attempt - 1)))


async def call_with_retry(
    fn: Callable[[], Awaitable[T]],
    policy: RetryPolicy,
    *,
    sleep: Sleep = asyncio.sleep,
    label: str = "request",
) -> T:
    rate_tries = transient_tries = 0
    while True:
        try:
            return await fn()
        except RateLimited as e:
            rate_tries += 1
            if rate_tries >= policy.rate_limit_attempts:
                raise
            delay = policy.backoff(rate_tries)
            if e.retry_after is not None:
                if e.retry_after > policy.max_backoff_s:
                    log.warning("%s: rate limited for %.0fs, longer than max backoff %.0fs; giving up",
                                label, e.retry_after, policy.max_backoff_s)
                    raise
                delay = max(delay, e.retry_after)
            log.warning("%s: rate limited (try %d/%d), sleeping %.1fs",
                        label, rate_tries, policy.rate_limit_attempts, delay)
            await sleep(delay)
        except TransientNetworkError as e:
            transient_tries += 1
            if transient_tries >= policy.transient_attempts:
                raise
            delay = policy.backoff(transient_tries)
            log.warning("%s: %s (try %d/%d), retrying in %.1fs",
                        label, e, transient_tries, policy.transient_attempts, delay)
            await sleep(delay)
