"""pytest plugin: retry failing tests according to their retry markers.

    @pytest.mark.retry_attempts(3)
    @pytest.mark.retry_delay_method("exponential_backoff", 30)
    def test_flaky_endpoint(): ...

Markers on a test class apply to every test in it; markers on the test
function override them.

Exception types go to ``retry_if_exception`` by name, or as class objects
through ``with_args``. A marker called with a single class decorates that
class instead of the test:

    @pytest.mark.retry_if_exception("ConnectionError", "TimeoutError")
    @pytest.mark.retry_if_exception.with_args(FlakyBackend)
    def test_fetch(): ...

Only the call phase is retried. ``setup_method``/``teardown_method`` (or
``setup_function``/``teardown_function``) run again around every retry;
fixtures are set up once per test and shared by all attempts. Markers on
``unittest.TestCase`` methods are ignored with a warning.
"""
from __future__ import annotations

import inspect
import logging
import unittest
from typing import Any

import pytest

from retry_annotations.config import ConfigError, RetryConfig, resolve_config
from retry_annotations.engine.annotations import (
    ANNOTATION_NAMES,
    RETRY_ATTEMPTS,
    RETRY_DELAY_METHOD,
    RETRY_DELAY_SECONDS,
    RETRY_FOR_SECONDS,
    RETRY_IF_EXCEPTION,
    RETRY_IF_METHOD,
    AnnotationSet,
)
from retry_annotations.engine.delegates import DelegateResolver, default_registry
from retry_annotations.engine.errors import IncompleteTest, SkippedTest
from retry_annotations.engine.parsing import RetryAnnotations
from retry_annotations.engine.retries import RetryEngine
from retry_annotations.logging import LoggerFactory, configure_logging, logger_factory_for

logger = logging.getLogger(__name__)

MARKERS = {
    RETRY_ATTEMPTS: "retry_attempts(n): retry a failing test up to n more times",
    RETRY_FOR_SECONDS: "retry_for_seconds(n): keep retrying a failing test for n seconds after the first retry",
    RETRY_DELAY_SECONDS: "retry_delay_seconds(n): sleep n seconds between attempts",
    RETRY_DELAY_METHOD: "retry_delay_method(name, *args): call name(attempt, *args) between attempts",
    RETRY_IF_EXCEPTION: (
        "retry_if_exception(*exceptions): only retry failures of these exception types; "
        "pass classes through retry_if_exception.with_args(...)"
    ),
    RETRY_IF_METHOD: "retry_if_method(name, *args): call name(exc, *args) before each retry",
}

TERMINAL_OUTCOMES: tuple[type[BaseException], ...] = (
    IncompleteTest,
    SkippedTest,
    pytest.skip.Exception,
    pytest.xfail.Exception,
    pytest.exit.Exception,
)


class RetryMarkerWarning(pytest.PytestWarning):
    """A retry marker that cannot take effect where it was placed."""


retry_config_key = pytest.StashKey[RetryConfig | None]()
logger_factory_key = pytest.StashKey[LoggerFactory]()


def pytest_addoption(parser: pytest.Parser) -> None:
    group = parser.getgroup("retry-annotations", "retrying of annotated tests")
    group.addoption(
        "--retry-config",
        action="store",
        default=None,
        help="Path to a pytest-retry.xml/.yaml file (default: discovered in the working directory).",
    )
    group.addoption(
        "--retry-log-file",
        action="store",
        default=None,
        help="Append [RETRY] progress lines to this file instead of stdout.",
    )
    group.addoption(
        "--retry-log-format",
        action="store",
        choices=("text", "json"),
        default=None,
        help="Format of the plugin's own diagnostic log records.",
    )
    parser.addini("retry_config", "Path to a pytest-retry.xml/.yaml file.", default=None)
    parser.addini("retry_log_file", "Append [RETRY] progress lines to this file.", default=None)


def _option(config: pytest.Config, name: str) -> Any:
    value = config.getoption("--" + name.replace("_", "-"), default=None)
    if value:
        return value
    return config.getini(name) or None


def pytest_configure(config: pytest.Config) -> None:
    for description in MARKERS.values():
        config.addinivalue_line("markers", description)

    log_format = config.getoption("--retry-log-format", default=None)
    if log_format:
        configure_logging(json_output=log_format == "json", level=logging.DEBUG)

    try:
        retry_config = resolve_config(_option(config, "retry_config"), cwd=config.invocation_params.dir)
    except ConfigError as exc:
        raise pytest.UsageError(str(exc)) from exc
    if retry_config is not None:
        logger.info(
            "retry.config source=%s base_retry_count=%d",
            retry_config.source,
            retry_config.base_retry_count,
        )
    config.stash[retry_config_key] = retry_config
    config.stash[logger_factory_key] = logger_factory_for(_option(config, "retry_log_file"))


def annotation_set_for(item: pytest.Item) -> AnnotationSet:
    """Class scope: the enclosing class, then the module. Method scope: the item itself."""
    class_marks: list[Any] = []
    cls_node = item.getparent(pytest.Class)
    if cls_node is not None:
        class_marks.extend(cls_node.own_markers)
    module_node = item.getparent(pytest.Module)
    if module_node is not None:
        class_marks.extend(module_node.own_markers)
    return AnnotationSet.from_markers(class_marks, item.own_markers)


def _delegate_owner(item: pytest.Function) -> Any:
    instance = getattr(item, "instance", None)
    if instance is not None:
        return instance
    return getattr(item, "module", None)


def _retry_mark_names(obj: Any) -> list[str]:
    marks = vars(obj).get("pytestmark", [])
    if not isinstance(marks, list):
        marks = [marks]
    return [m.name for m in marks if getattr(m, "name", None) in ANNOTATION_NAMES]


@pytest.hookimpl(tryfirst=True)
def pytest_pycollect_makeitem(collector: pytest.Module | pytest.Class, name: str, obj: Any) -> None:
    # pytest applies a marker called with one class to that class.
    if not (inspect.isclass(obj) and issubclass(obj, BaseException)) or not collector.funcnamefilter(name):
        return None
    for mark_name in _retry_mark_names(obj):
        collector.warn(
            RetryMarkerWarning(
                f"{name}: @pytest.mark.{mark_name}({obj.__name__}) decorated the exception class "
                f"instead of the test; use @pytest.mark.{mark_name}.with_args({obj.__name__}) "
                f'or @pytest.mark.{mark_name}("{obj.__name__}")'
            )
        )
    return None


def pytest_collection_modifyitems(items: list[pytest.Item]) -> None:
    for item in items:
        cls = getattr(item, "cls", None)
        if cls is None or not issubclass(cls, unittest.TestCase):
            continue
        if annotation_set_for(item).declares_any():
            item.warn(
                RetryMarkerWarning(
                    f"{item.nodeid}: retry markers are ignored on unittest.TestCase tests"
                )
            )


def _call_with_optional_argument(func: Any, arg: Any) -> None:
    if inspect.signature(func).parameters:
        func(arg)
    else:
        func()


def _xunit_hooks(item: pytest.Function) -> tuple[Any, Any]:
    instance = getattr(item, "instance", None)
    if instance is not None:
        return getattr(instance, "setup_method", None), getattr(instance, "teardown_method", None)
    module = getattr(item, "module", None)
    return getattr(module, "setup_function", None), getattr(module, "teardown_function", None)


def _reset_xunit(item: pytest.Function) -> None:
    """Tear down the failed attempt and set up the next one."""
    setup, teardown = _xunit_hooks(item)
    if teardown is not None:
        _call_with_optional_argument(teardown, item.obj)
    if setup is not None:
        _call_with_optional_argument(setup, item.obj)
    logger.debug("retry.xunit_reset nodeid=%s", item.nodeid)


@pytest.hookimpl(tryfirst=True)
def pytest_pyfunc_call(pyfuncitem: pytest.Function) -> bool | None:
    retry_config = pyfuncitem.config.stash.get(retry_config_key, None)
    annotation_set = annotation_set_for(pyfuncitem)
    if not annotation_set.declares_any() and retry_config is None:
        return None

    testfunction = pyfuncitem.obj
    if inspect.iscoroutinefunction(testfunction):
        # Left to whichever plugin runs coroutines.
        return None

    owner = _delegate_owner(pyfuncitem)
    resolver = DelegateResolver(default_registry, owner)
    module = getattr(pyfuncitem, "module", None)
    annotations = RetryAnnotations(annotation_set, resolver, namespace=vars(module) if module else None)
    factory = pyfuncitem.config.stash.get(logger_factory_key, None) or logger_factory_for(None)

    engine = RetryEngine(
        annotations,
        resolver,
        logger=factory.create_logger(),
        default_attempts=retry_config.base_retry_count if retry_config else None,
        terminal_outcomes=TERMINAL_OUTCOMES,
    )

    funcargs = pyfuncitem.funcargs
    testargs = {arg: funcargs[arg] for arg in pyfuncitem._fixtureinfo.argnames}
    attempts = 0

    def attempt() -> Any:
        nonlocal attempts
        if attempts:
            _reset_xunit(pyfuncitem)
        attempts += 1
        return testfunction(**testargs)

    engine.run(attempt)
    return True
