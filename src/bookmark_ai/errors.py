from __future__ import annotations

from enum import Enum


class ErrorCode(str, Enum):
    MISSING_CREDENTIALS = "MISSING_CREDENTIALS"
    REQUEST_FAILED = "REQUEST_FAILED"
    MAX_RETRIES_EXCEEDED = "MAX_RETRIES_EXCEEDED"
    RATE_LIMITED = "RATE_LIMITED"
    TIMEOUT = "TIMEOUT"
    SUMMARY_FAILED = "SUMMARY_FAILED"
    TAGS_FAILED = "TAGS_FAILED"
    CATEGORY_FAILED = "CATEGORY_FAILED"
    SEARCH_FAILED = "SEARCH_FAILED"


# Codes a client-level failure is rewrapped into, by orchestrator operation.
OPERATION_FAILURE_CODES: dict[str, ErrorCode] = {
    "summary": ErrorCode.SUMMARY_FAILED,
    "tags": ErrorCode.TAGS_FAILED,
    "category": ErrorCode.CATEGORY_FAILED,
    "search": ErrorCode.SEARCH_FAILED,
}

_PUBLIC_OPERATION_NAMES = {
    "summary": "generate a summary",
    "tags": "suggest tags",
    "category": "suggest a category",
    "search": "run the search",
}


class AIError(Exception):
    """Base error for AI enrichment failures.

    `code` is one of the closed `ErrorCode` set. Instances are treated as values:
    the attributes are fixed at construction.
    """

    __slots__ = ("_code", "_retryable", "_retry_after_seconds", "_operation")

    def __init__(
        self,
        message: str,
        code: ErrorCode,
        *,
        retryable: bool = False,
        retry_after_seconds: int | None = None,
        operation: str | None = None,
    ):
        super().__init__(message)
        self._code = ErrorCode(code)
        self._retryable = retryable
        self._retry_after_seconds = retry_after_seconds
        self._operation = operation

    @property
    def code(self) -> ErrorCode:
        return self._code

    @property
    def message(self) -> str:
        return str(self)

    @property
    def retryable(self) -> bool:
        return self._retryable

    @property
    def retry_after_seconds(self) -> int | None:
        return self._retry_after_seconds

    @property
    def operation(self) -> str | None:
        return self._operation

    @property
    def public_message(self) -> str:
        """User-facing text that does not leak upstream diagnostics."""
        if self._code is ErrorCode.RATE_LIMITED:
            if self._retry_after_seconds is not None:
                return f"Rate limit exceeded. Try again in {self._retry_after_seconds} seconds."
            return "Rate limit exceeded. Try again later."
        if self._code is ErrorCode.TIMEOUT:
            return "The AI request timed out. Please try again."
        if self._code is ErrorCode.MISSING_CREDENTIALS:
            return "AI features are not configured."
        what = _PUBLIC_OPERATION_NAMES.get(self._operation or "", "complete the AI request")
        return f"Could not {what}. Please try again later."

    def to_dict(self) -> dict[str, object]:
        out: dict[str, object] = {
            "code": self._code.value,
            "message": self.public_message,
            "retryable": self._retryable,
        }
        if self._retry_after_seconds is not None:
            out["retry_after_seconds"] = self._retry_after_seconds
        return out

    def __repr__(self) -> str:
        return f"AIError(code={self._code.value!r}, message={str(self)!r}, retryable={self._retryable!r})"


class InvariantViolationError(Exception):
    """A task lifecycle transition was attempted out of order."""
