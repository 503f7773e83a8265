"""Exception hierarchy for async-genai.

Every exception carries an :class:`~async_genai.types.ErrorKind` so callers
can branch on the failure class without matching concrete types.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from async_genai.types import ErrorKind

if TYPE_CHECKING:
    from async_genai.types import ValidationOutcome


class GenAIError(Exception):
    """Base exception for async-genai.

    All custom exceptions in this package inherit from this class.
    """

    kind: ErrorKind = ErrorKind.PROTOCOL


class TransientError(GenAIError):
    """A failure that may succeed when retried.

    Raised for connection resets, timeouts and retryable HTTP statuses
    (408, 409, 429, 5xx).

    Attributes:
        status_code: HTTP status when the failure came from a response
        retry_after: Server-suggested delay in seconds, if any
    """

    kind = ErrorKind.TRANSIENT

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        retry_after: float | None = None,
    ):
        super().__init__(message)
        self.status_code = status_code
        self.retry_after = retry_after


class ConnectionDroppedError(TransientError):
    """The realtime connection went away while a request was pending."""


class RequestTimeoutError(TransientError):
    """No correlated response arrived within the caller's timeout."""


class RetriesExhaustedError(GenAIError):
    """The backoff policy gave up on a transient failure.

    Attributes:
        attempts: Number of attempts made
        last_error: The last transient error seen
    """

    kind = ErrorKind.RETRIES_EXHAUSTED

    def __init__(
        self,
        message: str,
        attempts: int = 0,
        last_error: Exception | None = None,
    ):
        super().__init__(message)
        self.attempts = attempts
        self.last_error = last_error


class APIError(GenAIError):
    """The service rejected the request with a non-retryable error.

    Attributes:
        status_code: HTTP status code
        type: Service error type (e.g. ``invalid_request_error``)
        code: Service error code
        param: Offending request parameter, if reported
    """

    kind = ErrorKind.API

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        type: str | None = None,
        code: str | None = None,
        param: str | None = None,
    ):
        super().__init__(message)
        self.status_code = status_code
        self.type = type
        self.code = code
        self.param = param

    @classmethod
    def from_body(
        cls, status_code: int | None, body: Any, fallback: str = "",
    ) -> APIError:
        """Build from an OpenAI-style ``{"error": {...}}`` body."""
        err = body.get("error") if isinstance(body, dict) else None
        if isinstance(err, dict):
            return cls(
                str(err.get("message") or fallback or _default_message(status_code)),
                status_code=status_code,
                type=err.get("type"),
                code=None if err.get("code") is None else str(err.get("code")),
                param=err.get("param"),
            )
        if isinstance(err, str):
            return cls(err, status_code=status_code)
        return cls(fallback or _default_message(status_code), status_code=status_code)


class ProtocolError(GenAIError):
    """Malformed data on the wire (bad SSE frame, bad realtime message)."""

    kind = ErrorKind.PROTOCOL


class SSEProtocolError(ProtocolError):
    """The event stream could not be decoded."""


class FrameTooLargeError(SSEProtocolError):
    """A single SSE frame exceeded the configured maximum size."""

    def __init__(self, size: int, limit: int):
        super().__init__(f"SSE frame of {size} bytes exceeds limit of {limit} bytes")
        self.size = size
        self.limit = limit


class SchemaInvalidError(GenAIError):
    """The supplied document is not a well-formed JSON Schema.

    Attributes:
        detail: Description of what is wrong with the schema
    """

    kind = ErrorKind.SCHEMA_INVALID

    def __init__(self, detail: str):
        super().__init__(f"Invalid schema: {detail}")
        self.detail = detail


class ValidationFailedError(GenAIError):
    """A candidate value did not conform to its schema.

    Attributes:
        outcome: The full validation outcome
        response_text: The raw text that failed, if any
    """

    kind = ErrorKind.VALIDATION_FAILED

    def __init__(
        self,
        message: str,
        outcome: ValidationOutcome | None = None,
        response_text: str | None = None,
    ):
        super().__init__(message)
        self.outcome = outcome
        self.response_text = response_text

    @property
    def validation_errors(self) -> list[str]:
        return self.outcome.messages if self.outcome else []


class NotConnectedError(GenAIError):
    """A realtime operation needs an open session."""

    kind = ErrorKind.NOT_CONNECTED


class SessionClosedError(GenAIError):
    """The realtime session has been closed."""

    kind = ErrorKind.ALREADY_CLOSED


class ConfigurationError(GenAIError):
    """Raised when configuration values are invalid.

    Attributes:
        config_key: The configuration key that caused the error
    """

    kind = ErrorKind.CONFIGURATION

    def __init__(self, message: str, config_key: str | None = None):
        super().__init__(message)
        self.config_key = config_key


def _default_message(status_code: int | None) -> str:
    return f"HTTP {status_code}" if status_code else "request failed"
