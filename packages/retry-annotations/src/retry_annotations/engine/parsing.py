"""Typed, validated view over raw retry annotations."""
from __future__ import annotations

import builtins
import importlib
import math
import re
from functools import cached_property
from typing import Any, Mapping

from retry_annotations.engine.annotations import (
    RETRY_ATTEMPTS,
    RETRY_DELAY_METHOD,
    RETRY_DELAY_SECONDS,
    RETRY_FOR_SECONDS,
    RETRY_IF_EXCEPTION,
    RETRY_IF_METHOD,
    AnnotationSet,
)
from retry_annotations.engine.delegates import DelegateCall, DelegateResolver
from retry_annotations.engine.errors import InvalidConfiguration

_NUMERIC = re.compile(r"^\s*[+-]?(?:\d+(?:\.\d*)?|\.\d+)(?:[eE][+-]?\d+)?\s*$")


def parse_non_negative_int(name: str, raw: Any) -> int:
    raw = str(raw)
    if raw == "":
        raise InvalidConfiguration(f"The @{name} annotation requires an integer as an argument")
    if not _NUMERIC.match(raw):
        raise InvalidConfiguration(f'The @{name} annotation must be an integer but got "{raw!r}"')
    value = float(raw)
    if not math.isfinite(value) or value != int(value):
        raise InvalidConfiguration(f'The @{name} annotation must be an integer but got "{value}"')
    result = int(value)
    if result < 0:
        raise InvalidConfiguration(f'The @{name} annotation must be 0 or greater but got "{result}".')
    return result


def parse_delegate(name: str, raw: str, resolver: DelegateResolver) -> DelegateCall:
    method, *args = str(raw).split(" ")
    if method == "":
        raise InvalidConfiguration(f"The @{name} annotation requires a callable as an argument")
    if resolver.resolve(method) is None:
        raise InvalidConfiguration(
            f'The @{name} annotation must be a method in your test class but got "{method}"'
        )
    return DelegateCall(method, tuple(args))


def _import_type(dotted: str, namespace: Mapping[str, Any] | None = None) -> Any:
    if "." not in dotted:
        if namespace is not None and dotted in namespace:
            return namespace[dotted]
        return getattr(builtins, dotted, None)
    module_name, _, attr = dotted.rpartition(".")
    try:
        module = importlib.import_module(module_name)
    except ImportError:
        # Nested classes: walk back until something imports.
        parent = _import_type(module_name)
        return getattr(parent, attr, None) if parent is not None else None
    return getattr(module, attr, None)


def resolve_exception_type(
    name: str, raw: Any, namespace: Mapping[str, Any] | None = None
) -> type[BaseException]:
    if isinstance(raw, type):
        if not issubclass(raw, BaseException):
            raise InvalidConfiguration(
                f'The @{name} annotation must be an exception class but got "{raw.__qualname__}"'
            )
        return raw
    if raw == "":
        raise InvalidConfiguration(f"The @{name} annotation requires a class name as an argument")
    candidate = _import_type(raw, namespace)
    if not (isinstance(candidate, type) and issubclass(candidate, BaseException)):
        raise InvalidConfiguration(f'The @{name} annotation must be an exception class but got "{raw}"')
    return candidate


class RetryAnnotations:
    """Parses each annotation the first time it is read.

    A malformed annotation only raises :class:`InvalidConfiguration` when the
    engine actually needs it, so a test that passes on its first attempt never
    trips over its own retry configuration.
    """

    def __init__(
        self,
        annotation_set: AnnotationSet,
        resolver: DelegateResolver,
        namespace: Mapping[str, Any] | None = None,
    ):
        self.annotation_set = annotation_set
        self.resolver = resolver
        # Bare exception names are looked up here before builtins.
        self.namespace = namespace

    def _int_or_none(self, name: str) -> int | None:
        raw = self.annotation_set.get(name)
        if raw is None:
            return None
        return parse_non_negative_int(name, raw)

    @cached_property
    def retry_attempts(self) -> int | None:
        return self._int_or_none(RETRY_ATTEMPTS)

    @cached_property
    def retry_for_seconds(self) -> int | None:
        return self._int_or_none(RETRY_FOR_SECONDS)

    @cached_property
    def retry_delay_seconds(self) -> int:
        return self._int_or_none(RETRY_DELAY_SECONDS) or 0

    @cached_property
    def retry_delay_method(self) -> DelegateCall | None:
        raw = self.annotation_set.get(RETRY_DELAY_METHOD)
        if raw is None:
            return None
        return parse_delegate(RETRY_DELAY_METHOD, raw, self.resolver)

    @cached_property
    def retry_if_exception(self) -> tuple[type[BaseException], ...] | None:
        values = self.annotation_set.get_method_values(RETRY_IF_EXCEPTION)
        if values is None:
            return None
        types: list[type[BaseException]] = []
        for raw in values:
            exc_type = resolve_exception_type(RETRY_IF_EXCEPTION, raw, self.namespace)
            if exc_type not in types:
                types.append(exc_type)
        return tuple(types)

    @cached_property
    def retry_if_method(self) -> DelegateCall | None:
        values = self.annotation_set.get_method_values(RETRY_IF_METHOD)
        if values is None:
            return None
        return parse_delegate(RETRY_IF_METHOD, values[0], self.resolver)

    def describe(self) -> dict[str, Any]:
        """Parse everything eagerly; raises on the first invalid annotation."""

        def _call(c: DelegateCall | None) -> str | None:
            return " ".join((c.name, *c.args)) if c else None

        exc_types = self.retry_if_exception
        return {
            RETRY_ATTEMPTS: self.retry_attempts,
            RETRY_FOR_SECONDS: self.retry_for_seconds,
            RETRY_DELAY_SECONDS: self.retry_delay_seconds,
            RETRY_DELAY_METHOD: _call(self.retry_delay_method),
            RETRY_IF_EXCEPTION: [t.__name__ for t in exc_types] if exc_types is not None else None,
            RETRY_IF_METHOD: _call(self.retry_if_method),
        }
