"""
Exceptions raised by streamgpt.

Every error in this package is a programming or configuration error, never a
transient condition, so there is nothing to retry: the exception propagates
straight to the caller.
"""


class ShapeError(ValueError):
    """
    A tensor's rank or axis sizes violate a component's shape contract.

    Subclasses ValueError so callers that already guard against bad
    arguments keep working.
    """
