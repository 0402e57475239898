"""Tests for the retry decision engine."""

import pytest

from retry_annotations.engine.annotations import AnnotationSet
from retry_annotations.engine.delegates import DelegateRegistry, DelegateResolver
from retry_annotations.engine.errors import IncompleteTest, InvalidConfiguration, SkippedTest
from retry_annotations.engine.parsing import RetryAnnotations
from retry_annotations.engine.retries import RetryContext, RetryEngine, RetryState, with_retries


class CollectingLogger:
    def __init__(self):
        self.lines = []

    def log(self, message):
        self.lines.append(message)


class FakeClock:
    def __init__(self, *ticks):
        self._ticks = list(ticks)

    def __call__(self):
        return self._ticks.pop(0)


class Owner:
    def __init__(self):
        self.delays = []
        self.checked = []

    def custom_delay(self, attempt, *args):
        self.delays.append((attempt, *args))

    def custom_check(self, exc, *args):
        self.checked.append((type(exc), args))


class Flaky:
    """Fails the first ``failures`` calls, then returns ``result``."""

    def __init__(self, failures, exc_type=RuntimeError, result="ok"):
        self.failures = failures
        self.exc_type = exc_type
        self.result = result
        self.calls = 0
        self.raised = []

    def __call__(self):
        self.calls += 1
        if self.calls <= self.failures:
            exc = self.exc_type(f"Intentional failure {self.calls}")
            self.raised.append(exc)
            raise exc
        return self.result


def _engine(owner=None, clock=None, default_attempts=None, **method_scope):
    scope = {k: tuple(v) if isinstance(v, (list, tuple)) else (v,) for k, v in method_scope.items()}
    resolver = DelegateResolver(DelegateRegistry(), owner or Owner())
    annotations = RetryAnnotations(AnnotationSet(method_scope=scope), resolver)
    logger = CollectingLogger()
    slept = []
    engine = RetryEngine(
        annotations,
        resolver,
        logger=logger,
        default_attempts=default_attempts,
        sleep=slept.append,
        clock=clock or FakeClock(),
    )
    return engine, logger, slept


# ---------------------------------------------------------------------------
# Attempts mode
# ---------------------------------------------------------------------------

def test_passes_after_k_failures():
    engine, logger, slept = _engine(retry_attempts="3")
    body = Flaky(3)
    assert engine.run(body) == "ok"
    assert body.calls == 4
    assert logger.lines == [
        "[RETRY] Retrying 1 of 3",
        "[RETRY] Retrying 2 of 3",
        "[RETRY] Retrying 3 of 3",
    ]


def test_exhausted_reraises_last_failure():
    engine, logger, _ = _engine(retry_attempts="2")
    body = Flaky(10)
    with pytest.raises(RuntimeError) as exc_info:
        engine.run(body)
    assert body.calls == 3
    assert exc_info.value is body.raised[-1]
    assert len(logger.lines) == 2


def test_success_on_first_attempt_logs_nothing():
    engine, logger, slept = _engine(retry_attempts="3", retry_delay_seconds="1")
    assert engine.run(Flaky(0)) == "ok"
    assert logger.lines == []
    assert slept == []


def test_zero_attempts_never_retries():
    engine, logger, _ = _engine(retry_attempts="0")
    body = Flaky(1)
    with pytest.raises(RuntimeError):
        engine.run(body)
    assert body.calls == 1
    assert logger.lines == []


def test_no_policy_means_no_retry():
    engine, logger, _ = _engine()
    body = Flaky(1)
    with pytest.raises(RuntimeError):
        engine.run(body)
    assert body.calls == 1


def test_default_attempts_apply_without_annotations():
    engine, logger, _ = _engine(default_attempts=2)
    assert engine.run(Flaky(2)) == "ok"
    assert logger.lines == ["[RETRY] Retrying 1 of 2", "[RETRY] Retrying 2 of 2"]


def test_annotation_overrides_default_attempts():
    engine, logger, _ = _engine(default_attempts=5, retry_attempts="1")
    with pytest.raises(RuntimeError):
        engine.run(Flaky(3))
    assert logger.lines == ["[RETRY] Retrying 1 of 1"]


def test_attempts_win_over_for_seconds():
    engine, logger, _ = _engine(retry_attempts="1", retry_for_seconds="100", clock=FakeClock())
    body = Flaky(5)
    with pytest.raises(RuntimeError):
        engine.run(body)
    assert body.calls == 2
    assert logger.lines == ["[RETRY] Retrying 1 of 1"]


# ---------------------------------------------------------------------------
# Time budget mode
# ---------------------------------------------------------------------------

def test_for_seconds_counts_down_and_exhausts():
    engine, logger, _ = _engine(retry_for_seconds="2", clock=FakeClock(100, 101, 102, 103))
    body = Flaky(10)
    with pytest.raises(RuntimeError) as exc_info:
        engine.run(body)
    assert body.calls == 4
    assert exc_info.value is body.raised[-1]
    assert logger.lines == [
        "[RETRY] Retrying 1 (2 seconds remaining)",
        "[RETRY] Retrying 2 (1 second remaining)",
        "[RETRY] Retrying 3 (0 seconds remaining)",
    ]


def test_for_seconds_passes_within_budget():
    engine, logger, _ = _engine(retry_for_seconds="5", clock=FakeClock(10.7, 12.2))
    assert engine.run(Flaky(2)) == "ok"
    assert logger.lines == [
        "[RETRY] Retrying 1 (5 seconds remaining)",
        "[RETRY] Retrying 2 (3 seconds remaining)",
    ]


def test_first_retry_time_is_scoped_to_one_run():
    engine, logger, _ = _engine(retry_for_seconds="1", clock=FakeClock(100, 200))
    assert engine.run(Flaky(1)) == "ok"
    assert engine.run(Flaky(1)) == "ok"
    assert logger.lines == [
        "[RETRY] Retrying 1 (1 second remaining)",
        "[RETRY] Retrying 1 (1 second remaining)",
    ]


# ---------------------------------------------------------------------------
# Delays
# ---------------------------------------------------------------------------

def test_fixed_delay_between_each_retry():
    engine, _, slept = _engine(retry_attempts="2", retry_delay_seconds="1")
    assert engine.run(Flaky(2)) == "ok"
    assert slept == [1, 1]


def test_delay_method_receives_attempt_number():
    owner = Owner()
    engine, _, slept = _engine(owner, retry_attempts="3", retry_delay_method="custom_delay foo")
    engine.run(Flaky(2))
    assert owner.delays == [(1, "foo"), (2, "foo")]
    assert slept == []


def test_no_delay_after_final_failure():
    engine, _, slept = _engine(retry_attempts="1", retry_delay_seconds="3")
    with pytest.raises(RuntimeError):
        engine.run(Flaky(5))
    assert slept == [3]


def test_conflicting_delays_raise_invalid_configuration():
    engine, _, _ = _engine(retry_attempts="2", retry_delay_seconds="1", retry_delay_method="custom_delay")
    with pytest.raises(InvalidConfiguration):
        engine.run(Flaky(1))


# ---------------------------------------------------------------------------
# Exception filtering
# ---------------------------------------------------------------------------

def test_ineligible_exception_propagates_immediately():
    engine, logger, slept = _engine(
        retry_attempts="1", retry_delay_seconds="1", retry_if_exception="ValueError"
    )
    body = Flaky(1, exc_type=LookupError)
    with pytest.raises(LookupError):
        engine.run(body)
    assert body.calls == 1
    assert logger.lines == []
    assert slept == []


def test_multiple_allowed_exceptions():
    engine, _, _ = _engine(retry_attempts="1", retry_if_exception=["ValueError", "KeyError"])
    body = Flaky(1, exc_type=KeyError)
    assert engine.run(body) == "ok"
    assert body.calls == 2


def test_if_method_called_before_retry():
    owner = Owner()
    engine, _, _ = _engine(owner, retry_attempts="1", retry_if_method="custom_check foo")
    assert engine.run(Flaky(1)) == "ok"
    assert owner.checked == [(RuntimeError, ("foo",))]


# ---------------------------------------------------------------------------
# Terminal outcomes and configuration errors
# ---------------------------------------------------------------------------

@pytest.mark.parametrize("exc_type", [IncompleteTest, SkippedTest])
def test_terminal_outcomes_are_not_retried(exc_type):
    engine, logger, _ = _engine(retry_attempts="3")
    body = Flaky(1, exc_type=exc_type)
    with pytest.raises(exc_type):
        engine.run(body)
    assert body.calls == 1
    assert logger.lines == []


def test_keyboard_interrupt_is_not_retried():
    engine, _, _ = _engine(retry_attempts="3")
    body = Flaky(1, exc_type=KeyboardInterrupt)
    with pytest.raises(KeyboardInterrupt):
        engine.run(body)
    assert body.calls == 1


def test_assertion_errors_are_retried():
    engine, _, _ = _engine(retry_attempts="1")
    body = Flaky(1, exc_type=AssertionError)
    assert engine.run(body) == "ok"


def test_malformed_annotation_surfaces_on_first_failure():
    engine, logger, _ = _engine(retry_attempts="foo")
    body = Flaky(1)
    with pytest.raises(InvalidConfiguration, match="retry_attempts"):
        engine.run(body)
    assert body.calls == 1


def test_malformed_annotation_ignored_when_test_passes():
    engine, _, _ = _engine(retry_attempts="foo")
    assert engine.run(Flaky(0)) == "ok"


def test_invalid_configuration_from_body_is_not_retried():
    engine, _, _ = _engine(retry_attempts="3")
    body = Flaky(1, exc_type=InvalidConfiguration)
    with pytest.raises(InvalidConfiguration):
        engine.run(body)
    assert body.calls == 1


# ---------------------------------------------------------------------------
# State transitions
# ---------------------------------------------------------------------------

def test_should_retry_transitions():
    engine, _, _ = _engine(retry_attempts="1")
    ctx = RetryContext()
    assert engine.should_retry(RuntimeError(), ctx) is True
    assert ctx.state is RetryState.RETRYING
    assert ctx.attempt_number == 1
    assert engine.should_retry(RuntimeError(), ctx) is False
    assert ctx.state is RetryState.EXHAUSTED


def test_should_retry_terminal_for_ineligible():
    engine, _, _ = _engine(retry_attempts="1", retry_if_exception="KeyError")
    ctx = RetryContext()
    assert engine.should_retry(ValueError(), ctx) is False
    assert ctx.state is RetryState.TERMINAL
    assert ctx.attempt_number == 0


def test_with_retries_shortcut():
    resolver = DelegateResolver(DelegateRegistry(), Owner())
    annotations = RetryAnnotations(AnnotationSet(method_scope={"retry_attempts": ("2",)}), resolver)
    logger = CollectingLogger()
    assert with_retries(Flaky(2), annotations, logger=logger, sleep=lambda s: None) == "ok"
    assert len(logger.lines) == 2
