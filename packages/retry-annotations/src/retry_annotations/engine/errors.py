from __future__ import annotations


class InvalidConfiguration(ValueError):
    """A retry annotation is missing its value or has a value of the wrong shape.

    Never retried: it points at a test-authoring bug, not a transient failure.
    """


class IncompleteTest(Exception):
    """The test marked itself incomplete; propagated without retrying."""


class SkippedTest(Exception):
    """The test skipped itself; propagated without retrying."""
