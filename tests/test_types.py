"""Tests for shared types and the exception hierarchy."""

import pytest

from async_genai.exceptions import (
    APIError,
    ConnectionDroppedError,
    FrameTooLargeError,
    GenAIError,
    RetriesExhaustedError,
    SessionClosedError,
    TransientError,
    ValidationFailedError,
)
from async_genai.types import (
    Delta,
    Done,
    Error,
    ErrorKind,
    RealtimeEvent,
    ValidationIssue,
    ValidationOutcome,
    is_terminal,
)


class TestStreamEvents:
    def test_terminal(self):
        assert is_terminal(Done())
        assert is_terminal(Error(ErrorKind.API, "bad"))
        assert not is_terminal(Delta(data={"x": 1}))

    def test_only_transient_is_retryable(self):
        assert [k for k in ErrorKind if k.retryable] == [ErrorKind.TRANSIENT]


class TestValidationOutcome:
    def test_valid_has_no_errors(self):
        assert ValidationOutcome(valid=True).errors == ()

    def test_never_partially_populated(self):
        with pytest.raises(ValueError):
            ValidationOutcome(valid=True, errors=(ValidationIssue("/a", "bad"),))
        with pytest.raises(ValueError):
            ValidationOutcome(valid=False)

    def test_from_issues(self):
        outcome = ValidationOutcome.from_issues([ValidationIssue("/a", "bad")])
        assert not outcome.valid
        assert outcome.messages == ["/a: bad"]

    def test_root_pointer_rendered(self):
        assert str(ValidationIssue("", "not an object")) == "/: not an object"

    def test_issues_sortable(self):
        issues = [ValidationIssue("/b", "x"), ValidationIssue("/a", "y")]
        assert [i.pointer for i in sorted(issues)] == ["/a", "/b"]


class TestRealtimeEvent:
    def test_is_error(self):
        assert RealtimeEvent(type="error").is_error
        assert not RealtimeEvent(type="response.done").is_error


class TestExceptions:
    def test_kinds(self):
        assert TransientError("x").kind is ErrorKind.TRANSIENT
        assert ConnectionDroppedError("x").kind is ErrorKind.TRANSIENT
        assert RetriesExhaustedError("x").kind is ErrorKind.RETRIES_EXHAUSTED
        assert FrameTooLargeError(10, 5).kind is ErrorKind.PROTOCOL
        assert SessionClosedError("x").kind is ErrorKind.ALREADY_CLOSED
        assert isinstance(APIError("x"), GenAIError)

    def test_api_error_from_body(self):
        body = {"error": {"message": "Rate limit", "type": "requests", "code": 429, "param": None}}
        err = APIError.from_body(429, body)
        assert str(err) == "Rate limit"
        assert err.code == "429"
        assert err.type == "requests"

    def test_api_error_from_unknown_body(self):
        assert str(APIError.from_body(500, None)) == "HTTP 500"
        assert str(APIError.from_body(None, "junk", fallback="failed")) == "failed"
        assert str(APIError.from_body(400, {"error": "plain"})) == "plain"

    def test_validation_errors_listed(self):
        outcome = ValidationOutcome.from_issues([ValidationIssue("/n", "required")])
        err = ValidationFailedError("bad", outcome=outcome)
        assert err.validation_errors == ["/n: required"]
        assert ValidationFailedError("bad").validation_errors == []
