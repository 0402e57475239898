from __future__ import annotations

from retry_annotations.engine.delegates import DelegateResolver
from retry_annotations.engine.parsing import RetryAnnotations


def is_retry_eligible(exc: BaseException, annotations: RetryAnnotations, resolver: DelegateResolver) -> bool:
    """Whether a failed attempt may be retried.

    An exception allow-list is authoritative. A ``retry_if_method`` delegate is
    called with ``(exc, *args)`` for its side effects only; its return value is
    ignored and the failure stays eligible.
    """
    allowed = annotations.retry_if_exception
    if allowed is not None:
        return isinstance(exc, allowed)

    if_method = annotations.retry_if_method
    if if_method is not None:
        resolver.call(if_method, exc)

    return True
