"""Static inspection of the retry markers in a test module."""
from __future__ import annotations

import importlib.util
import inspect
import sys
import uuid
from dataclasses import dataclass
from pathlib import Path
from types import ModuleType
from typing import Any, Iterator

from retry_annotations.engine.annotations import AnnotationSet
from retry_annotations.engine.delegates import DelegateResolver, default_registry
from retry_annotations.engine.errors import InvalidConfiguration
from retry_annotations.engine.parsing import RetryAnnotations


@dataclass(frozen=True)
class TestPolicy:
    __test__ = False

    node_id: str
    policy: dict[str, Any] | None
    error: str | None = None


def load_test_module(path: Path) -> ModuleType:
    module_name = f"_retry_inspect_{path.stem}_{uuid.uuid4().hex[:8]}"
    spec = importlib.util.spec_from_file_location(module_name, path)
    if spec is None or spec.loader is None:
        raise ImportError(f"cannot import {path}")
    module = importlib.util.module_from_spec(spec)
    sys.modules[module_name] = module
    sys.path.insert(0, str(path.parent))
    try:
        spec.loader.exec_module(module)
    except Exception:
        sys.modules.pop(module_name, None)
        raise
    finally:
        sys.path.remove(str(path.parent))
    return module


def _marks(obj: Any) -> list[Any]:
    marks = getattr(obj, "pytestmark", [])
    if not isinstance(marks, list):
        marks = [marks]
    return marks


def _own_marks(cls: type) -> list[Any]:
    # pytestmark is inherited through the MRO; pytest does the same.
    marks: list[Any] = []
    for klass in cls.__mro__:
        marks.extend(_marks(klass) if "pytestmark" in vars(klass) else [])
    return marks


def _iter_tests(module: ModuleType) -> Iterator[tuple[str, Any, list[Any], list[Any]]]:
    module_marks = _marks(module)
    for name, obj in vars(module).items():
        if name.startswith("test") and inspect.isfunction(obj):
            yield name, module, module_marks, _marks(obj)
        elif name.startswith("Test") and inspect.isclass(obj):
            class_marks = _own_marks(obj) + module_marks
            for attr, member in inspect.getmembers(obj, inspect.isfunction):
                if attr.startswith("test"):
                    yield f"{name}::{attr}", obj, class_marks, _marks(member)


def inspect_module(path: Path) -> list[TestPolicy]:
    module = load_test_module(path)
    results: list[TestPolicy] = []
    for node_id, owner, class_marks, method_marks in _iter_tests(module):
        annotation_set = AnnotationSet.from_markers(class_marks, method_marks)
        if not annotation_set.declares_any():
            continue
        annotations = RetryAnnotations(
            annotation_set,
            DelegateResolver(default_registry, owner),
            namespace=vars(module),
        )
        try:
            results.append(TestPolicy(node_id, annotations.describe()))
        except InvalidConfiguration as exc:
            results.append(TestPolicy(node_id, None, str(exc)))
    return results
