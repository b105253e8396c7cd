"""
Bounded retry with jittered backoff for transient gateway failures.
Only GatewayUnavailable is retried; provider rejections surface on the first attempt.
"""
import logging
import random
import time
from typing import Any, Callable, TypeVar

from marketplace.core.config import settings
from marketplace.core.errors import GatewayUnavailable

logger = logging.getLogger(__name__)

T = TypeVar("T")


def call_with_retry(
    func: Callable[..., T],
    *args: Any,
    operation: str = "gateway_call",
    max_attempts: int | None = None,
    backoff_seconds: float | None = None,
    sleep: Callable[[float], None] = time.sleep,
    **kwargs: Any,
) -> T:
    max_attempts = max_attempts or settings.gateway_retry_max_attempts
    backoff_seconds = (
        settings.gateway_retry_backoff_seconds if backoff_seconds is None else backoff_seconds
    )

    attempt = 0
    while True:
        attempt += 1
        try:
            return func(*args, **kwargs)
        except GatewayUnavailable as e:
            if attempt >= max_attempts:
                logger.warning(
                    "gateway_retry_exhausted",
                    extra={"operation": operation, "attempt": attempt, "error": str(e)},
                )
                raise
            # exponential backoff with jitter
            delay = backoff_seconds * (2 ** (attempt - 1))
            if delay > 0:
                delay += random.uniform(0, backoff_seconds)
            logger.info(
                "gateway_retry_scheduled",
                extra={
                    "operation": operation,
                    "attempt": attempt,
                    "delay_seconds": round(delay, 2),
                    "error": str(e),
                },
            )
            sleep(delay)
