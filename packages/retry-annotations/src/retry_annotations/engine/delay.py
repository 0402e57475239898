from __future__ import annotations

import logging
import random
import time
from typing import TYPE_CHECKING, Callable

from retry_annotations.engine.errors import InvalidConfiguration

if TYPE_CHECKING:
    from retry_annotations.engine.delegates import DelegateResolver
    from retry_annotations.engine.parsing import RetryAnnotations

logger = logging.getLogger(__name__)

MICROSECONDS = 1_000_000
DEFAULT_MAX_DELAY_SECONDS = 60


def backoff_microseconds(
    attempt_number: int,
    max_delay_seconds: int = DEFAULT_MAX_DELAY_SECONDS,
    *,
    rand: Callable[[int, int], int] = random.randint,
) -> int:
    """Exponential backoff with up to one second of jitter, capped at ``max_delay_seconds``."""
    jitter = rand(0, MICROSECONDS)
    return min(jitter + (2 ** attempt_number) * MICROSECONDS, max_delay_seconds * MICROSECONDS)


def exponential_backoff(
    attempt_number: int,
    max_delay_seconds: int | str = DEFAULT_MAX_DELAY_SECONDS,
    *,
    sleep: Callable[[float], None] | None = None,
    rand: Callable[[int, int], int] = random.randint,
) -> None:
    """Built-in delegate for ``retry_delay_method``.

    Usable as ``@pytest.mark.retry_delay_method("exponential_backoff 30")``;
    annotation arguments arrive as strings.
    """
    micros = backoff_microseconds(int(attempt_number), int(max_delay_seconds), rand=rand)
    logger.debug("retry.backoff attempt=%s sleep_us=%d", attempt_number, micros)
    (sleep or time.sleep)(micros / MICROSECONDS)


def apply_delay(
    annotations: RetryAnnotations,
    resolver: DelegateResolver,
    attempt_number: int,
    sleep: Callable[[float], None] = time.sleep,
) -> None:
    delay_seconds = annotations.retry_delay_seconds
    delay_method = annotations.retry_delay_method

    if delay_seconds and delay_method is not None:
        raise InvalidConfiguration(
            "The @retry_delay_seconds and @retry_delay_method annotations cannot be used together"
        )
    if delay_seconds:
        sleep(delay_seconds)
    elif delay_method is not None:
        resolver.call(delay_method, attempt_number)
