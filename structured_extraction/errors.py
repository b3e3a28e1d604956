"""
Typed failures raised across the extraction stack.

Every failure that crosses a public boundary is an ``ExtractionError`` with a
stable ``kind`` so callers can branch on it instead of parsing messages.
"""

from __future__ import annotations

import asyncio
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence

import httpx
from pydantic import ValidationError
from pydantic_ai.exceptions import ModelHTTPError, UnexpectedModelBehavior


class ErrorKind(str, Enum):
    THROTTLED = "THROTTLED"
    AUTH_MISSING = "AUTH_MISSING"
    AUTH_INVALID = "AUTH_INVALID"
    SCHEMA_MISMATCH = "SCHEMA_MISMATCH"
    UNPARSEABLE_OUTPUT = "UNPARSEABLE_OUTPUT"
    TIMEOUT = "TIMEOUT"
    INVALID_INPUT = "INVALID_INPUT"
    DEFINITION_NOT_FOUND = "DEFINITION_NOT_FOUND"
    TRANSPORT_ERROR = "TRANSPORT_ERROR"
    CANCELLED = "CANCELLED"
    UNKNOWN = "UNKNOWN"


# Substrings different backends use to report throttling.
THROTTLING_MARKERS = ("429", "rate limit", "rate_limit", "quota", "too many requests")


class ExtractionError(Exception):
    """Base failure carrying a kind and kind-specific details."""

    def __init__(
        self,
        kind: ErrorKind,
        message: str,
        details: Optional[Dict[str, Any]] = None,
        cause: Optional[BaseException] = None,
    ):
        super().__init__(message)
        self.kind = ErrorKind(kind)
        self.message = message
        self.details: Dict[str, Any] = dict(details or {})
        self.cause = cause
        if cause is not None:
            self.__cause__ = cause

    def __str__(self) -> str:
        return self.message

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": type(self).__name__,
            "kind": self.kind.value,
            "message": self.message,
            "details": self.details,
        }

    @staticmethod
    def is_kind(error: BaseException, kind: ErrorKind) -> bool:
        return isinstance(error, ExtractionError) and error.kind == kind


class ThrottledError(ExtractionError):
    def __init__(self, message: str, retry_after_ms: int, attempts_made: int):
        super().__init__(
            ErrorKind.THROTTLED,
            message,
            {"retry_after_ms": retry_after_ms, "attempts_made": attempts_made},
        )
        self.retry_after_ms = retry_after_ms
        self.attempts_made = attempts_made


class AuthError(ExtractionError):
    def __init__(self, message: str, invalid: bool = False, cause: Optional[BaseException] = None):
        super().__init__(
            ErrorKind.AUTH_INVALID if invalid else ErrorKind.AUTH_MISSING,
            message,
            cause=cause,
        )


class SchemaMismatchError(ExtractionError):
    def __init__(
        self,
        message: str,
        validation_errors: Sequence[Dict[str, str]],
        raw_response: Optional[str] = None,
        cause: Optional[BaseException] = None,
    ):
        details: Dict[str, Any] = {"validation_errors": list(validation_errors)}
        if raw_response is not None:
            details["raw_response"] = raw_response
        super().__init__(ErrorKind.SCHEMA_MISMATCH, message, details, cause)
        self.validation_errors: List[Dict[str, str]] = list(validation_errors)


class UnparseableOutputError(ExtractionError):
    def __init__(
        self,
        message: str,
        raw_response: Optional[str] = None,
        cause: Optional[BaseException] = None,
    ):
        details = {"raw_response": raw_response} if raw_response is not None else None
        super().__init__(ErrorKind.UNPARSEABLE_OUTPUT, message, details, cause)


class ExtractionTimeoutError(ExtractionError):
    def __init__(
        self,
        message: str,
        timeout_ms: Optional[int] = None,
        cause: Optional[BaseException] = None,
    ):
        details = {"timeout_ms": timeout_ms} if timeout_ms is not None else None
        super().__init__(ErrorKind.TIMEOUT, message, details, cause)


class InvalidInputError(ExtractionError):
    def __init__(self, message: str, field: Optional[str] = None):
        super().__init__(
            ErrorKind.INVALID_INPUT,
            message,
            {"field": field} if field is not None else None,
        )
        self.field = field


class DefinitionNotFoundError(ExtractionError):
    def __init__(self, name: str, available: Sequence[str] = ()):
        available = sorted(available)
        message = f"Unknown extractor: {name!r}"
        if available:
            message += f" (available: {', '.join(available)})"
        super().__init__(
            ErrorKind.DEFINITION_NOT_FOUND,
            message,
            {"name": name, "available_extractors": available},
        )
        self.name = name
        self.available = available


class TransportError(ExtractionError):
    def __init__(self, message: str, cause: Optional[BaseException] = None):
        super().__init__(ErrorKind.TRANSPORT_ERROR, message, cause=cause)


class ExtractionCancelledError(ExtractionError):
    def __init__(self, message: str = "Extraction cancelled"):
        super().__init__(ErrorKind.CANCELLED, message)


def is_throttling(error: BaseException) -> bool:
    """
    Decide whether a failure is a rate-limit signal worth retrying.

    A typed ``ThrottledError`` always counts; anything else falls back to
    matching the error text against ``THROTTLING_MARKERS``.
    """
    if isinstance(error, ThrottledError):
        return True
    text = str(error).lower()
    return any(marker in text for marker in THROTTLING_MARKERS)


def _validation_errors(exc: ValidationError) -> List[Dict[str, str]]:
    return [
        {"path": ".".join(str(part) for part in err.get("loc", ())), "message": err.get("msg", "")}
        for err in exc.errors()
    ]


def wrap_error(error: BaseException, context: Optional[str] = None) -> ExtractionError:
    """
    Normalize any exception into the ``ExtractionError`` taxonomy.

    Errors that already belong to the taxonomy are returned untouched.
    """
    if isinstance(error, ExtractionError):
        return error

    message = str(error) or type(error).__name__
    if context:
        message = f"{context}: {message}"

    if isinstance(error, ValidationError):
        return SchemaMismatchError(message, _validation_errors(error), cause=error)
    if isinstance(error, UnexpectedModelBehavior):
        return UnparseableOutputError(message, raw_response=getattr(error, "body", None), cause=error)
    if isinstance(error, ModelHTTPError):
        if error.status_code in (401, 403):
            return AuthError(message, invalid=True, cause=error)
        return TransportError(message, cause=error)
    if isinstance(error, (TimeoutError, asyncio.TimeoutError, httpx.TimeoutException)):
        return ExtractionTimeoutError(message, cause=error)
    if isinstance(error, (httpx.TransportError, ConnectionError)):
        return TransportError(message, cause=error)
    return ExtractionError(ErrorKind.UNKNOWN, message, cause=error)
