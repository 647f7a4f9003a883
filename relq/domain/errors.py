"""
Exception hierarchy for relq.

RelqError
├── ConfigValidationError — an option failed validation (also a ValueError)
├── TransportError        — a round trip to the backing store failed
└── AckRefNotFoundError   — ack_ref not present in the registry
"""

from __future__ import annotations

from typing import Any


class RelqError(Exception):
    """Base class for all relq exceptions."""


class ConfigValidationError(RelqError, ValueError):
    """
    Raised when an option given to a client's init() is missing or malformed.

    Attributes
    ----------
    option   : name of the offending option
    expected : human readable description of the accepted shape
    value    : the value that was received
    """

    def __init__(self, option: str, expected: str, value: Any) -> None:
        self.option = option
        self.expected = expected
        self.value = value
        super().__init__(f"expected {option} to be {expected}, got: {value!r}")


class TransportError(RelqError):
    """
    Wraps an underlying failure talking to the backing store.

    Clients raise this internally and absorb it at their public boundary;
    it never reaches the producer.

    Attributes
    ----------
    cause : Exception
        The original exception from the store client.
    """

    def __init__(self, message: str, cause: Exception) -> None:
        self.cause = cause
        super().__init__(f"{message}: {cause}")


class AckRefNotFoundError(RelqError):
    """Raised when an ack_ref cannot be resolved through the registry."""

    def __init__(self, ack_ref: str) -> None:
        self.ack_ref = ack_ref
        super().__init__(f"Ack ref {ack_ref!r} not found in registry")
