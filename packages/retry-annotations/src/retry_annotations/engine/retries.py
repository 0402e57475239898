from __future__ import annotations

import enum
import logging
import time
from dataclasses import dataclass
from typing import Callable, TypeVar

from retry_annotations.engine.delay import apply_delay
from retry_annotations.engine.delegates import DelegateResolver
from retry_annotations.engine.errors import IncompleteTest, InvalidConfiguration, SkippedTest
from retry_annotations.engine.filters import is_retry_eligible
from retry_annotations.engine.parsing import RetryAnnotations
from retry_annotations.logging import RetryLogger, StdoutLogger

T = TypeVar("T")

logger = logging.getLogger(__name__)

DEFAULT_TERMINAL_OUTCOMES: tuple[type[BaseException], ...] = (IncompleteTest, SkippedTest)

# Never treated as a failed attempt.
_ALWAYS_PROPAGATE = (InvalidConfiguration, KeyboardInterrupt, SystemExit, GeneratorExit)


class RetryState(enum.Enum):
    RUNNING = "running"
    RETRYING = "retrying"
    EXHAUSTED = "exhausted"
    TERMINAL = "terminal"


@dataclass
class RetryContext:
    """Mutable state of one test invocation. Never shared between invocations."""

    attempt_number: int = 0
    time_of_first_retry: int | None = None
    state: RetryState = RetryState.RUNNING


def _seconds(n: int) -> str:
    return "second" if n == 1 else "seconds"


class RetryEngine:
    def __init__(
        self,
        annotations: RetryAnnotations,
        resolver: DelegateResolver,
        *,
        logger: RetryLogger | None = None,
        default_attempts: int | None = None,
        terminal_outcomes: tuple[type[BaseException], ...] = DEFAULT_TERMINAL_OUTCOMES,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.time,
    ):
        self._annotations = annotations
        self._resolver = resolver
        self._logger = logger or StdoutLogger()
        self._default_attempts = default_attempts
        self._terminal_outcomes = terminal_outcomes
        self._sleep = sleep
        self._clock = clock

    def run(self, body: Callable[[], T]) -> T:
        ctx = RetryContext()
        while True:
            try:
                result = body()
            except _ALWAYS_PROPAGATE:
                ctx.state = RetryState.TERMINAL
                raise
            except BaseException as exc:
                if isinstance(exc, self._terminal_outcomes) or not self.should_retry(exc, ctx):
                    if ctx.state is not RetryState.EXHAUSTED:
                        ctx.state = RetryState.TERMINAL
                    raise
                continue
            ctx.state = RetryState.RUNNING
            if ctx.attempt_number:
                logger.debug("retry.passed attempt=%d", ctx.attempt_number + 1)
            return result

    def should_retry(self, exc: BaseException, ctx: RetryContext) -> bool:
        """Classify one failed attempt and, if it may be retried, log and delay."""
        if not is_retry_eligible(exc, self._annotations, self._resolver):
            logger.debug("retry.ineligible exc=%s", type(exc).__name__)
            ctx.state = RetryState.TERMINAL
            return False

        ctx.attempt_number += 1
        message = self._progress(ctx)
        if message is None:
            logger.debug("retry.exhausted attempts=%d exc=%s", ctx.attempt_number, type(exc).__name__)
            ctx.state = RetryState.EXHAUSTED
            return False

        self._logger.log(message)
        apply_delay(self._annotations, self._resolver, ctx.attempt_number, sleep=self._sleep)
        ctx.state = RetryState.RETRYING
        return True

    def _progress(self, ctx: RetryContext) -> str | None:
        """Progress line for the next retry, or None once the policy is exhausted."""
        attempts = self._annotations.retry_attempts
        for_seconds = self._annotations.retry_for_seconds
        if attempts is None and for_seconds is None:
            attempts = self._default_attempts

        # Attempts win when both are declared.
        if attempts is not None:
            if ctx.attempt_number > attempts:
                return None
            return f"[RETRY] Retrying {ctx.attempt_number} of {attempts}"

        if for_seconds is not None:
            now = int(self._clock())
            if ctx.time_of_first_retry is None:
                ctx.time_of_first_retry = now
            remaining = ctx.time_of_first_retry + for_seconds - now
            if remaining < 0:
                return None
            return f"[RETRY] Retrying {ctx.attempt_number} ({remaining} {_seconds(remaining)} remaining)"

        return None


def with_retries(
    body: Callable[[], T],
    annotations: RetryAnnotations,
    resolver: DelegateResolver | None = None,
    **kwargs,
) -> T:
    return RetryEngine(annotations, resolver or annotations.resolver, **kwargs).run(body)
