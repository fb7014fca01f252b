# =============================================================================
# Retry with Exponential Backoff
# =============================================================================
#
# One bounded loop used by every gateway that talks to a flaky upstream.
#
#   attempt 1 ──fail(transient)──▶ sleep base ──▶ attempt 2
#             ──fail(transient)──▶ sleep base×2 ──▶ attempt 3 ──fail──▶ raise
#
# Non-transient failures abort on the spot. The final error raised is
# always a classified UpstreamError so callers only need to catch two
# exception types.
#
# DESIGN DECISION: Explicit loop bounded by max_attempts rather than a
# decorator library. Cancellation of the surrounding task interrupts the
# asyncio.sleep between attempts, which is exactly what a disconnected
# client needs.
# =============================================================================

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import TypeVar

from bankdoc_qa.services.errors import (
    TransientUpstreamError,
    classify_error,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")


def backoff_delay(attempt: int, base_delay: float) -> float:
    """Delay to wait after a failed `attempt` (1-based)."""
    return base_delay * (2 ** (attempt - 1))


async def retry_async(
    operation: Callable[[], Awaitable[T]],
    *,
    max_attempts: int = 3,
    base_delay: float = 2.0,
    description: str = "upstream call",
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> T:
    """
    Run `operation` until it succeeds or the retry budget is spent.

    Args:
        operation: Zero-argument coroutine factory. Called once per attempt.
        max_attempts: Upper bound on attempts (>= 1).
        base_delay: Seconds to wait after the first failure.
        description: Label used in log messages.
        sleep: Injected for tests so backoff does not slow the suite.

    Raises:
        FatalUpstreamError: Immediately, on a non-transient failure.
        TransientUpstreamError: When every attempt failed transiently.
    """
    for attempt in range(1, max(1, max_attempts) + 1):
        try:
            return await operation()
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            error = classify_error(exc)

            if not isinstance(error, TransientUpstreamError):
                logger.error(
                    "%s failed with non-retryable error: %s", description, exc,
                )
            elif attempt >= max_attempts:
                logger.error(
                    "%s failed after %d attempts: %s",
                    description, attempt, exc,
                )
            else:
                delay = backoff_delay(attempt, base_delay)
                logger.warning(
                    "%s retry %d/%d after transient error: %s. Waiting %.1fs",
                    description, attempt, max_attempts, exc, delay,
                )
                await sleep(delay)
                continue

            if error is exc:
                raise
            raise error from exc

