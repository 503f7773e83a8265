"""async-genai: asynchronous streaming, realtime and structured-output client."""

from async_genai.backoff import BackoffPolicy
from async_genai.client import AsyncGenAIClient
from async_genai.config import ClientConfig, load_config
from async_genai.exceptions import (
    APIError,
    ConfigurationError,
    GenAIError,
    NotConnectedError,
    ProtocolError,
    RetriesExhaustedError,
    SchemaInvalidError,
    SessionClosedError,
    TransientError,
    ValidationFailedError,
)
from async_genai.executor import CallExecutor
from async_genai.realtime import RealtimeSession
from async_genai.streaming import EventStream, SSEDecoder, StreamingDriver
from async_genai.structured import (
    OutputFormat,
    StructuredOutput,
    ValidationOptions,
    compile_schema,
    validate,
    validate_text,
)
from async_genai.types import (
    Delta,
    Done,
    Error,
    ErrorKind,
    RealtimeEvent,
    SessionState,
    ValidationIssue,
    ValidationOutcome,
)

__version__ = "0.1.0"

__all__ = [
    "APIError",
    "AsyncGenAIClient",
    "BackoffPolicy",
    "CallExecutor",
    "ClientConfig",
    "ConfigurationError",
    "Delta",
    "Done",
    "Error",
    "ErrorKind",
    "EventStream",
    "GenAIError",
    "NotConnectedError",
    "OutputFormat",
    "ProtocolError",
    "RealtimeEvent",
    "RealtimeSession",
    "RetriesExhaustedError",
    "SSEDecoder",
    "SchemaInvalidError",
    "SessionClosedError",
    "SessionState",
    "StreamingDriver",
    "StructuredOutput",
    "TransientError",
    "ValidationFailedError",
    "ValidationIssue",
    "ValidationOptions",
    "ValidationOutcome",
    "compile_schema",
    "load_config",
    "validate",
    "validate_text",
]
