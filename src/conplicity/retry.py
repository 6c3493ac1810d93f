from __future__ import annotations

import logging
import time
from typing import Callable, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


def retry(
    attempts: int,
    operation: Callable[[], T],
    *,
    delay_seconds: float = 0.0,
    backoff: str = "fixed",
    should_retry: Callable[[Exception], bool] | None = None,
    sleep: Callable[[float], None] = time.sleep,
    description: str = "operation",
) -> T:
    """Run ``operation`` up to ``attempts`` times in total.

    Returns the first successful result. When every attempt fails, or
    ``should_retry`` rejects an error, the last error is raised unchanged.
    ``backoff`` is ``"fixed"`` (constant delay) or ``"exponential"`` (delay
    doubles after each failed attempt).
    """
    if attempts < 1:
        raise ValueError("attempts must be >= 1")
    if backoff not in {"fixed", "exponential"}:
        raise ValueError(f"unsupported backoff mode: {backoff}")

    delay = delay_seconds
    for attempt in range(1, attempts + 1):
        try:
            return operation()
        except Exception as error:  # pylint: disable=broad-except
            if attempt >= attempts or (should_retry is not None and not should_retry(error)):
                raise
            logger.warning(
                "%s failed (attempt %d/%d), retrying: %s",
                description,
                attempt,
                attempts,
                str(error).strip() or error.__class__.__name__,
            )
            if delay > 0:
                sleep(delay)
            if backoff == "exponential":
                delay = delay * 2 if delay > 0 else 0.0

    raise AssertionError("unreachable")
