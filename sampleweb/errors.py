"""
Errors raised by the codec and delivered by the fetcher.
"""
from dataclasses import dataclass, field
from typing import Any, List, Optional


class SampleWebError(Exception):
    pass


class EncodingError(SampleWebError):
    """The value can't be represented as JSON."""


class DecodingError(SampleWebError):
    """The payload is malformed or doesn't match the requested shape."""

    def __init__(self, message: str, errors: Optional[List[Any]] = None):
        super().__init__(message)
        self.errors = errors or []


@dataclass
class TransportError(SampleWebError):
    request: Any
    inner: Exception
    reason: str = field(default="")

    def __str__(self) -> str:
        reason = self.reason or f"{type(self.inner).__name__}: {self.inner}"
        return f"{self.request.method} {self.request.url} failed: {reason}"


@dataclass
class ResponseTooLarge(TransportError):
    pass
