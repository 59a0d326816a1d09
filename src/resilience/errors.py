"""Error taxonomy and classification for the agent core."""

from __future__ import annotations

import asyncio
import logging
import random
from enum import Enum
from typing import Any

logger = logging.getLogger(__name__)


class ErrorKind(str, Enum):
    """Closed set of error kinds surfaced by the agent core."""

    AUTH_INVALID = "auth_invalid"
    RATE_LIMITED = "rate_limited"
    NETWORK = "network"
    TIMEOUT = "timeout"
    SERVER_ERROR = "server_error"
    NOT_FOUND = "not_found"
    READ_ERROR = "read_error"
    SEARCH_ERROR = "search_error"
    AGENT_INIT_ERROR = "agent_init_error"
    AGENT_EXECUTION_ERROR = "agent_execution_error"
    TOOL_EXECUTION_ERROR = "tool_execution_error"
    CHECKPOINT_SAVE_ERROR = "checkpoint_save_error"
    CHECKPOINT_LOAD_ERROR = "checkpoint_load_error"
    TRACING_ERROR = "tracing_error"
    UNKNOWN = "unknown"


USER_MESSAGES: dict[ErrorKind, str] = {
    ErrorKind.AUTH_INVALID: "Invalid API key. Please check your settings and ensure your API key is correct.",
    ErrorKind.RATE_LIMITED: "Rate limit exceeded. Please wait a moment and try again.",
    ErrorKind.NETWORK: "Network error. Please check your internet connection and try again.",
    ErrorKind.TIMEOUT: "Request timed out. Please try again.",
    ErrorKind.SERVER_ERROR: "LLM provider server error. Please try again later.",
    ErrorKind.NOT_FOUND: "File not found.",
    ErrorKind.READ_ERROR: "Error reading file.",
    ErrorKind.SEARCH_ERROR: "Error searching documents.",
    ErrorKind.AGENT_INIT_ERROR: "Failed to initialize agent. Please check your settings.",
    ErrorKind.AGENT_EXECUTION_ERROR: "Error executing agent. Please try again.",
    ErrorKind.TOOL_EXECUTION_ERROR: "Error executing tool.",
    ErrorKind.CHECKPOINT_SAVE_ERROR: "Error saving conversation state.",
    ErrorKind.CHECKPOINT_LOAD_ERROR: "Error loading conversation state.",
    ErrorKind.TRACING_ERROR: "Tracing error. Continuing without tracing.",
}


class AgentError(Exception):
    """A failure mapped onto the closed ErrorKind taxonomy."""

    def __init__(
        self,
        message: str,
        kind: ErrorKind = ErrorKind.UNKNOWN,
        details: dict[str, Any] | None = None,
        is_retryable: bool = False,
        cause: BaseException | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.kind = kind
        self.details = details or {}
        self.is_retryable = is_retryable
        self.cause = cause

    @property
    def user_message(self) -> str:
        """Canonical text to show the end user."""
        return USER_MESSAGES.get(self.kind) or self.message or "An unknown error occurred."

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind.value,
            "message": self.message,
            "details": self.details,
            "is_retryable": self.is_retryable,
            "cause": str(self.cause) if self.cause is not None else None,
        }

    def __repr__(self) -> str:
        return f"AgentError(kind={self.kind.value!r}, message={self.message!r}, retryable={self.is_retryable})"


# (kind, retryable, short message, signatures) checked in order against the lower-cased text.
_SIGNATURES: list[tuple[ErrorKind, bool, str, tuple[str, ...]]] = [
    (ErrorKind.AUTH_INVALID, False, "Invalid API key", ("authentication", "invalid api key", "401")),
    (ErrorKind.RATE_LIMITED, True, "Rate limit exceeded", ("rate limit", "ratelimit", "429")),
    (
        ErrorKind.NETWORK,
        True,
        "Network error",
        ("network", "connection refused", "econnrefused", "enotfound", "name or service not known", "connection error"),
    ),
    (ErrorKind.TIMEOUT, True, "Request timeout", ("timeout", "timed out", "etimedout")),
    (ErrorKind.SERVER_ERROR, True, "Server error", ("500", "502", "503")),
    (ErrorKind.NOT_FOUND, False, "File not found", ("file not found", "no such file", "enoent")),
    (ErrorKind.TRACING_ERROR, False, "Tracing error", ("tracing", "langsmith", "langchain")),
]

_RETRYABLE_BY_KIND = {kind: retryable for kind, retryable, _msg, _sigs in _SIGNATURES}


def _classify_by_type(exc: BaseException) -> ErrorKind | None:
    if isinstance(exc, (TimeoutError, asyncio.TimeoutError)):
        return ErrorKind.TIMEOUT
    if isinstance(exc, FileNotFoundError):
        return ErrorKind.NOT_FOUND
    if isinstance(exc, ConnectionError):
        return ErrorKind.NETWORK
    return None


def classify_error(error: Any) -> AgentError:
    """
    Map any failure value to an AgentError.

    AgentError instances pass through unchanged. Exceptions are matched by
    substring on their lower-cased message (and class name); strings become
    UNKNOWN errors carrying the string as message.
    """
    if isinstance(error, AgentError):
        return error

    if isinstance(error, BaseException):
        original = str(error)
        text = f"{type(error).__name__} {original}".lower()
        details = {"original_message": original, "error_type": type(error).__name__}
        for kind, retryable, short, signatures in _SIGNATURES:
            if any(sig in text for sig in signatures):
                return AgentError(short, kind, details, retryable, error)
        kind = _classify_by_type(error)
        if kind is not None:
            short = next(msg for k, _r, msg, _s in _SIGNATURES if k == kind)
            return AgentError(short, kind, details, _RETRYABLE_BY_KIND[kind], error)
        return AgentError(original or "Unknown error", ErrorKind.UNKNOWN, details, False, error)

    if isinstance(error, str):
        return AgentError(error, ErrorKind.UNKNOWN)

    return AgentError("An unknown error occurred", ErrorKind.UNKNOWN, {"original_error": repr(error)})


def log_error(error: AgentError) -> None:
    """Log retryable errors as warnings and everything else as errors."""
    if error.is_retryable:
        logger.warning(
            "Retryable error [%s]: %s details=%s", error.kind.value, error.message, error.details
        )
    else:
        logger.error(
            "Error [%s]: %s details=%s",
            error.kind.value,
            error.message,
            error.details,
            exc_info=error.cause,
        )


def should_retry(error: AgentError, attempt: int, max_attempts: int) -> bool:
    """attempt is zero-based; the last allowed attempt is max_attempts - 1."""
    if attempt >= max_attempts - 1:
        return False
    return error.is_retryable


def get_backoff_delay(attempt: int, base_delay: float = 1.0, max_delay: float = 30.0) -> float:
    """Exponential backoff in seconds with 0-30% random jitter, capped at max_delay."""
    exponential = base_delay * (2 ** attempt)
    jitter = random.random() * 0.3 * exponential
    return min(exponential + jitter, max_delay)


__all__ = [
    "AgentError",
    "ErrorKind",
    "USER_MESSAGES",
    "classify_error",
    "get_backoff_delay",
    "log_error",
    "should_retry",
]
