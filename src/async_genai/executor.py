"""Non-streaming request/response calls with retry."""

from __future__ import annotations

import asyncio
import logging
import time
from json import JSONDecodeError
from typing import Any, Awaitable, Callable, TypeVar

import httpx
from pydantic import BaseModel, ValidationError

from async_genai.backoff import (
    BackoffPolicy,
    Continue,
    classify_exception,
    classify_status,
    parse_retry_after,
)
from async_genai.exceptions import (
    APIError,
    ProtocolError,
    RetriesExhaustedError,
    TransientError,
    ValidationFailedError,
)
from async_genai.structured.schema import issues_from_pydantic
from async_genai.types import ErrorKind, ValidationOutcome

_logger = logging.getLogger(__name__)

T = TypeVar("T")

SleepFn = Callable[[float], Awaitable[Any]]


class CallExecutor:
    """Issue one request/response call, retrying transient failures.

    Parameters
    ----------
    client:
        ``httpx.AsyncClient`` (or compatible) used for every attempt.
    policy:
        Backoff policy deciding retries.
    sleep:
        Coroutine used to wait between attempts.
    """

    def __init__(
        self,
        client: httpx.AsyncClient,
        policy: BackoffPolicy | None = None,
        sleep: SleepFn = asyncio.sleep,
    ) -> None:
        self._client = client
        self._policy = policy or BackoffPolicy()
        self._sleep = sleep

    async def execute(
        self,
        method: str,
        url: str,
        *,
        json: Any = None,
        headers: dict[str, str] | None = None,
        timeout: float | httpx.Timeout | None = None,
        response_model: type[T] | Callable[[Any], T] | None = None,
    ) -> Any:
        """Send the request and return the decoded (optionally typed) body.

        Raises
        ------
        APIError
            Non-retryable HTTP status.
        RetriesExhaustedError
            The backoff policy gave up on transient failures.
        ProtocolError
            The body was not JSON.
        ValidationFailedError
            ``response_model`` rejected the body.
        """
        state = self._policy.start()
        kwargs: dict[str, Any] = {"json": json, "headers": headers}
        if timeout is not None:
            kwargs["timeout"] = timeout

        start = time.monotonic()
        while True:
            try:
                resp = await self._client.request(method, url, **kwargs)
                _check_status(resp)
                break
            except (TransientError, httpx.TimeoutException, httpx.TransportError) as e:
                retry_after = e.retry_after if isinstance(e, TransientError) else None
                decision = self._policy.next(state, classify_exception(e), retry_after)
                if not isinstance(decision, Continue):
                    _logger.warning("Request to %s failed: %s (%s)", url, e, decision.reason)
                    raise RetriesExhaustedError(
                        f"{decision.reason}; last error: {e}",
                        attempts=decision.state.attempt + 1,
                        last_error=e,
                    ) from e
                state = decision.state
                _logger.warning(
                    "Request error (attempt %d/%d): %s, retrying in %.2fs",
                    state.attempt, state.max_attempts, e, decision.delay,
                )
                await self._sleep(decision.delay)

        latency = (time.monotonic() - start) * 1000
        _logger.debug("%s %s -> %d in %.0fms", method, url, resp.status_code, latency)

        try:
            data = resp.json()
        except (JSONDecodeError, UnicodeDecodeError) as e:
            raise ProtocolError(f"invalid JSON response from {url}: {e}") from e

        if response_model is None:
            return data
        return _coerce(data, response_model)


def _check_status(resp: httpx.Response) -> None:
    if resp.status_code < 400:
        return
    if classify_status(resp.status_code) is ErrorKind.TRANSIENT:
        raise TransientError(
            f"HTTP {resp.status_code}",
            status_code=resp.status_code,
            retry_after=parse_retry_after(resp.headers.get("retry-after")),
        )
    try:
        body = resp.json()
    except (JSONDecodeError, UnicodeDecodeError):
        body = None
    raise APIError.from_body(resp.status_code, body, fallback=resp.text.strip())


def _coerce(data: Any, response_model: Any) -> Any:
    """Apply *response_model* to decoded JSON."""
    if isinstance(response_model, type) and issubclass(response_model, BaseModel):
        try:
            return response_model.model_validate(data)
        except ValidationError as e:
            outcome = ValidationOutcome.from_issues(issues_from_pydantic(e))
            raise ValidationFailedError(
                f"response does not match {response_model.__name__}",
                outcome=outcome,
            ) from e
    return response_model(data)
