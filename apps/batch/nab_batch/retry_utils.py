from __future__ import annotations

import logging
import random
import time
from typing import Callable, TypeVar

T = TypeVar("T")

logger = logging.getLogger(__name__)


def call_with_retries(
    fn: Callable[[], T],
    *,
    label: str,
    attempts: int = 3,
    base_delay_seconds: float = 2.0,
    retry_on: tuple[type[BaseException], ...] = (Exception,),
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    attempts = max(1, attempts)
    for attempt in range(1, attempts + 1):
        try:
            return fn()
        except retry_on as exc:
            if attempt >= attempts:
                raise
            logger.warning("%s failed on attempt %s/%s: %s", label, attempt, attempts, exc)
            delay = base_delay_seconds * (2 ** (attempt - 1))
            delay += random.random() * 0.6
            logger.info("Retrying %s in %.1fs", label, delay)
            sleep(delay)
    raise AssertionError("unreachable")
