"""Failure taxonomy for catalog requests.

Every class here is recoverable: CatalogClient catches them at the operation
boundary and turns them into the snapshot's error message.
"""

from enum import Enum
from typing import Optional


class CatalogError(Exception):
    """Base class for catalog request failures."""

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def __str__(self) -> str:
        return self.message


class InvalidRequest(CatalogError):
    """The URL or query could not be built; no request was sent."""


class TransportFailure(CatalogError):
    """Connection refused, timeout, DNS failure and friends."""


class HTTPStatusError(CatalogError):
    """The server answered with something other than 200."""

    def __init__(self, status: int, message: Optional[str] = None):
        super().__init__(message or f"HTTP {status}")
        self.status = status


class DecodeErrorKind(str, Enum):
    MISSING_FIELD = "missing_field"
    TYPE_MISMATCH = "type_mismatch"
    VALUE_MISSING = "value_missing"
    CORRUPT_BODY = "corrupt_body"


class DecodeFailure(CatalogError):
    """The response body did not match the expected shape."""

    def __init__(self, kind: DecodeErrorKind, message: str, field: str = ""):
        super().__init__(message)
        self.kind = kind
        self.field = field
