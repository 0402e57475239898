"""Raw retry annotations attached to a test class and a test method.

Method-level values override class-level values. Multi-valued annotations
(``retry_if_exception``, ``retry_if_method``) are only read from the method.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Iterable, Mapping

RETRY_ATTEMPTS = "retry_attempts"
RETRY_FOR_SECONDS = "retry_for_seconds"
RETRY_DELAY_SECONDS = "retry_delay_seconds"
RETRY_DELAY_METHOD = "retry_delay_method"
RETRY_IF_EXCEPTION = "retry_if_exception"
RETRY_IF_METHOD = "retry_if_method"

ANNOTATION_NAMES = (
    RETRY_ATTEMPTS,
    RETRY_FOR_SECONDS,
    RETRY_DELAY_SECONDS,
    RETRY_DELAY_METHOD,
    RETRY_IF_EXCEPTION,
    RETRY_IF_METHOD,
)

# A raw value is the marker argument as text, or a class object passed as-is.
RawValue = Any
Scope = Mapping[str, tuple[RawValue, ...]]

# "name arg1 arg2": a delegate and its arguments form a single value.
_DELEGATE_ANNOTATIONS = (RETRY_DELAY_METHOD, RETRY_IF_METHOD)


def raw_value(arg: Any) -> RawValue:
    """Render one marker argument as a raw annotation value.

    Classes are kept as objects so that locally defined exception types
    resolve without an import path.
    """
    if isinstance(arg, type):
        return arg
    return str(arg)


def _collect(marks: Iterable[Any]) -> dict[str, tuple[RawValue, ...]]:
    values: dict[str, list[RawValue]] = {}
    for mark in marks:
        if mark.name not in ANNOTATION_NAMES:
            continue
        raw = [raw_value(a) for a in mark.args] or [""]
        if mark.name in _DELEGATE_ANNOTATIONS:
            raw = [" ".join(str(a) for a in mark.args)]
        values.setdefault(mark.name, []).extend(raw)
    return {name: tuple(v) for name, v in values.items()}


@dataclass(frozen=True)
class AnnotationSet:
    class_scope: Scope = field(default_factory=dict)
    method_scope: Scope = field(default_factory=dict)

    def __post_init__(self) -> None:
        object.__setattr__(self, "class_scope", MappingProxyType(dict(self.class_scope)))
        object.__setattr__(self, "method_scope", MappingProxyType(dict(self.method_scope)))

    @classmethod
    def from_markers(cls, class_marks: Iterable[Any], method_marks: Iterable[Any]) -> AnnotationSet:
        return cls(class_scope=_collect(class_marks), method_scope=_collect(method_marks))

    def get(self, name: str) -> RawValue | None:
        """First method-scope value, else first class-scope value, else None."""
        method_values = self.method_scope.get(name)
        if method_values:
            return method_values[0]
        class_values = self.class_scope.get(name)
        if class_values:
            return class_values[0]
        return None

    def get_method_values(self, name: str) -> tuple[RawValue, ...] | None:
        values = self.method_scope.get(name)
        return tuple(values) if values else None

    def declares_any(self) -> bool:
        return any(self.method_scope.get(n) or self.class_scope.get(n) for n in ANNOTATION_NAMES)
