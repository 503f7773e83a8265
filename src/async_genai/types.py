"""Shared data types for async-genai."""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from typing import Any, Union


# ---------------------------------------------------------------------------
# Error kinds
# ---------------------------------------------------------------------------

class ErrorKind(enum.Enum):
    """Classification of every failure the library surfaces."""

    TRANSIENT = "transient"
    RETRIES_EXHAUSTED = "retries_exhausted"
    API = "api"
    PROTOCOL = "protocol"
    SCHEMA_INVALID = "schema_invalid"
    VALIDATION_FAILED = "validation_failed"
    NOT_CONNECTED = "not_connected"
    ALREADY_CLOSED = "already_closed"
    CONFIGURATION = "configuration"

    @property
    def retryable(self) -> bool:
        return self is ErrorKind.TRANSIENT


# ---------------------------------------------------------------------------
# SSE / streaming types
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class SSEFrame:
    """One dispatched Server-Sent-Events frame."""

    data: str
    event: str | None = None
    id: str | None = None
    retry: int | None = None


@dataclass(frozen=True)
class Delta:
    """An incremental payload from a streaming response.

    ``data`` is the decoded JSON value when the frame carried JSON, else the
    raw frame text.
    """

    data: Any
    event: str | None = None
    id: str | None = None


@dataclass(frozen=True)
class Done:
    """Terminal marker: the stream completed normally."""


@dataclass(frozen=True)
class Error:
    """Terminal marker: the stream failed."""

    kind: ErrorKind
    message: str
    status_code: int | None = None


StreamEvent = Union[Delta, Done, Error]


def is_terminal(event: StreamEvent) -> bool:
    return isinstance(event, (Done, Error))


# ---------------------------------------------------------------------------
# Realtime types
# ---------------------------------------------------------------------------

class SessionState(enum.Enum):
    """Lifecycle states of a realtime session."""

    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    OPEN = "open"
    RECONNECTING = "reconnecting"
    CLOSING = "closing"
    CLOSED = "closed"


@dataclass(frozen=True)
class RealtimeEvent:
    """Inbound realtime frame, decoded."""

    type: str
    data: dict[str, Any] = field(default_factory=dict)
    correlation_id: str | None = None

    @property
    def is_error(self) -> bool:
        return self.type == "error"


# ---------------------------------------------------------------------------
# Validation types
# ---------------------------------------------------------------------------

@dataclass(frozen=True, order=True)
class ValidationIssue:
    """A single schema violation.

    ``pointer`` is an RFC 6901 JSON pointer into the candidate value.
    """

    pointer: str
    message: str
    keyword: str = ""

    def __str__(self) -> str:
        where = self.pointer or "/"
        return f"{where}: {self.message}"


@dataclass(frozen=True)
class ValidationOutcome:
    """Result of validating a candidate value against a compiled schema."""

    valid: bool
    errors: tuple[ValidationIssue, ...] = ()

    def __post_init__(self) -> None:
        if self.valid == bool(self.errors):
            raise ValueError(
                "ValidationOutcome must be valid with no errors "
                "or invalid with at least one error",
            )

    @classmethod
    def from_issues(cls, issues: list[ValidationIssue]) -> ValidationOutcome:
        return cls(valid=not issues, errors=tuple(issues))

    @property
    def messages(self) -> list[str]:
        return [str(e) for e in self.errors]
