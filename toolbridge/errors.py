"""
Exception taxonomy for toolbridge.

Transport-level failures (ConnectionFailed, TransportError, TransportExhausted)
are handled at the session boundary. Application-level failures
(ToolNotFound, SchemaValidationError, HandlerError) always reach the caller.
"""

from __future__ import annotations


class ToolBridgeError(Exception):
    """Base class for every error raised by toolbridge."""


class ConnectionFailed(ToolBridgeError, ConnectionError):
    """The endpoint could not be reached at connect time."""


class TransportError(ToolBridgeError):
    """Sending or receiving on an open transport failed."""


class TransportExhausted(TransportError):
    """Every reconnect attempt allowed by the policy failed."""

    def __init__(self, endpoint: str, attempts: int):
        super().__init__(
            f"Gave up reconnecting to {endpoint} after {attempts} attempt(s)"
        )
        self.endpoint = endpoint
        self.attempts = attempts


class HandshakeTimeout(ToolBridgeError, TimeoutError):
    """The server did not acknowledge the handshake in time."""


class SessionClosed(ToolBridgeError):
    """The session is closed; no further protocol operations are possible."""


class RequestInterrupted(ToolBridgeError):
    """An in-flight request was lost to a reconnect or an explicit close."""


class RequestTimeout(ToolBridgeError, TimeoutError):
    """No response arrived within the per-request timeout."""


class ProtocolError(ToolBridgeError):
    """Malformed message or a remote error without a more specific mapping."""

    def __init__(self, message: str, code: int | None = None):
        super().__init__(message)
        self.code = code


class DuplicateToolName(ToolBridgeError, ValueError):
    pass


class ToolNotFound(ToolBridgeError, LookupError):
    pass


class SchemaValidationError(ToolBridgeError, ValueError):
    pass


class HandlerError(ToolBridgeError):
    """A tool handler raised; the message is the handler's own."""

    def __init__(self, tool: str, message: str):
        super().__init__(f"Tool '{tool}' failed: {message}")
        self.tool = tool
        self.detail = message


class DispatchLoopExceeded(ToolBridgeError):
    def __init__(self, max_iterations: int):
        super().__init__(
            f"Planner did not produce a final answer within {max_iterations} iterations"
        )
        self.max_iterations = max_iterations
