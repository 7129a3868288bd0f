"""
Bounded retry with backoff.

One policy object replaces the per-call-site "try, sleep, try again" loops:
ledger reads, seller profile lookups and transfer resubmission all go
through `retry_async`.
"""

from __future__ import annotations

import asyncio
import json
import logging
import random
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Optional, TypeVar

from settlement.core.errors import is_transient

log = logging.getLogger("settlement")

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    """
    max_attempts counts the first call. timeout_sec bounds each attempt,
    None leaves the attempt unbounded. delay grows by `backoff` each retry.
    """
    max_attempts: int = 3
    delay_sec: float = 1.0
    backoff: float = 1.0
    jitter: float = 0.0
    timeout_sec: Optional[float] = None
    retry_on: Callable[[BaseException], bool] = field(default=is_transient, compare=False)

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if self.delay_sec < 0:
            raise ValueError("delay_sec must be >= 0")


NO_RETRY = RetryPolicy(max_attempts=1, delay_sec=0.0)


async def retry_async(
    fn: Callable[[], Awaitable[T]],
    policy: RetryPolicy,
    *,
    label: str = "call",
    log_event: Optional[Callable[..., None]] = None,
    **context: Any,
) -> T:
    """
    Await `fn()` under `policy`.

    Non-retryable errors propagate immediately; the last retryable error
    propagates once attempts are exhausted.
    """
    emit = log_event or _default_log
    delay = policy.delay_sec
    for attempt in range(1, policy.max_attempts + 1):
        try:
            if policy.timeout_sec is not None:
                return await asyncio.wait_for(fn(), timeout=policy.timeout_sec)
            return await fn()
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            if not policy.retry_on(exc) or attempt >= policy.max_attempts:
                raise
            emit(
                "retry",
                label=label,
                attempt=attempt,
                remaining=policy.max_attempts - attempt,
                error=str(exc) or type(exc).__name__,
                **context,
            )
            sleep_for = delay + (random.uniform(0, delay * policy.jitter) if policy.jitter else 0.0)
            if sleep_for > 0:
                await asyncio.sleep(sleep_for)
            delay *= policy.backoff
    raise RuntimeError("unreachable")  # pragma: no cover


def _default_log(event: str, **kwargs: Any) -> None:
    log.warning(json.dumps({"event": event, **kwargs}, default=str))
