"""
Exceptions raised by the CPQ engine.

None of these are retryable: the engine performs no I/O, so every failure
is a data or caller problem.
"""


class CPQError(Exception):
    """Base class for all engine errors."""


class ValidationError(CPQError, ValueError):
    """Malformed input: bad condition/action JSON, quantity < 1, bad CSV row."""


class NotFoundError(CPQError, LookupError):
    """A referenced record (price book entry, product, line, discount) is missing."""


class PreconditionError(CPQError):
    """The operation is not allowed in the current quote state."""
