"""Named callbacks that retry annotations refer to.

A delegate is looked up on the owner first (the test instance, or the test
module for plain test functions), then in a registry of named callbacks.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Callable

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DelegateCall:
    name: str
    args: tuple[str, ...] = ()


class DelegateRegistry:
    def __init__(self, delegates: dict[str, Callable[..., Any]] | None = None):
        self._delegates: dict[str, Callable[..., Any]] = dict(delegates or {})

    def register(self, name: str, fn: Callable[..., Any]) -> None:
        if not callable(fn):
            raise TypeError(f"delegate {name!r} must be callable")
        self._delegates[name] = fn

    def delegate(self, name: str | None = None) -> Callable[[Callable[..., Any]], Callable[..., Any]]:
        """Decorator form of :meth:`register`."""

        def decorator(fn: Callable[..., Any]) -> Callable[..., Any]:
            self.register(name or fn.__name__, fn)
            return fn

        return decorator

    def names(self) -> list[str]:
        return sorted(self._delegates)

    def resolve(self, name: str, owner: Any = None) -> Callable[..., Any] | None:
        if owner is not None:
            candidate = getattr(owner, name, None)
            if callable(candidate) and not isinstance(candidate, type):
                return candidate
        return self._delegates.get(name)


class DelegateResolver:
    """A registry bound to the owner of the running test."""

    def __init__(self, registry: DelegateRegistry, owner: Any = None):
        self._registry = registry
        self._owner = owner

    def resolve(self, name: str) -> Callable[..., Any] | None:
        return self._registry.resolve(name, self._owner)

    def call(self, delegate: DelegateCall, *leading: Any) -> Any:
        fn = self.resolve(delegate.name)
        if fn is None:
            # Parsing already checked this; the owner changed underneath us.
            raise LookupError(f"delegate {delegate.name!r} is no longer resolvable")
        logger.debug("retry.delegate name=%s args=%s", delegate.name, delegate.args)
        return fn(*leading, *delegate.args)


def _builtin_delegates() -> dict[str, Callable[..., Any]]:
    from retry_annotations.engine.delay import exponential_backoff

    return {"exponential_backoff": exponential_backoff}


default_registry = DelegateRegistry(_builtin_delegates())
delegate = default_registry.delegate
