"""
Client half of the session protocol.

A ClientSession owns one Transport and moves through

    DISCONNECTED → HANDSHAKING → READY → CLOSED
                                 READY → RECONNECTING → READY

Requests are JSON-RPC calls correlated by id. Several may be in flight at
once; a single reader task per connection routes each response to the
future waiting on its id, so responses may arrive in any order.

When the connection drops while READY the session reconnects following its
ReconnectPolicy. Requests that were in flight are never resent: they fail
with RequestInterrupted once the session is back, or with
TransportExhausted if it is not.
"""

from __future__ import annotations

import asyncio
import itertools
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from toolbridge.catalog import ToolDescriptor
from toolbridge.config import ReconnectPolicy
from toolbridge.errors import (
    ConnectionFailed,
    HandlerError,
    HandshakeTimeout,
    ProtocolError,
    RequestInterrupted,
    RequestTimeout,
    SchemaValidationError,
    SessionClosed,
    ToolBridgeError,
    ToolNotFound,
    TransportError,
    TransportExhausted,
)
from toolbridge.transport import JsonRpcRequest, JsonRpcResponse, Transport

logger = logging.getLogger(__name__)

PROTOCOL_VERSION = "2024-11-05"

# JSON-RPC error codes
PARSE_ERROR = -32700
INVALID_REQUEST = -32600
METHOD_NOT_FOUND = -32601
INVALID_PARAMS = -32602
INTERNAL_ERROR = -32603
TOOL_NOT_FOUND = -32001
NOT_INITIALIZED = -32002


class SessionState(Enum):
    DISCONNECTED = "disconnected"
    HANDSHAKING = "handshaking"
    READY = "ready"
    RECONNECTING = "reconnecting"
    CLOSED = "closed"


@dataclass(frozen=True)
class ToolCallRequest:
    """One planner-issued call, bound to a session-unique correlation id."""
    correlation_id: int
    name: str
    arguments: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class ToolCallResult:
    correlation_id: int
    success: bool
    payload: Any = None
    error: dict[str, str] | None = None

    @classmethod
    def failure(cls, correlation_id: int, exc: BaseException) -> "ToolCallResult":
        message = exc.detail if isinstance(exc, HandlerError) else str(exc)
        return cls(
            correlation_id=correlation_id,
            success=False,
            error={"type": exc.__class__.__name__, "message": message},
        )


def remote_error(error: dict[str, Any]) -> ToolBridgeError:
    """Map a JSON-RPC error object to the matching exception."""
    if not isinstance(error, dict):
        return ProtocolError(f"Remote error: {error!r}")
    code = error.get("code")
    message = error.get("message", "Remote error")
    if code == TOOL_NOT_FOUND:
        return ToolNotFound(message)
    if code == INVALID_PARAMS:
        return SchemaValidationError(message)
    return ProtocolError(f"Remote error {code}: {message}", code=code)


class ClientSession:
    """
    One client-to-server connection.

    Usage:
        session = ClientSession(transport, client_name="MCPClient", client_version="1.0.0")
        await session.connect()
        tools = await session.list_tools()
        result = await session.call_tool("get_weather", {"city": "Boston"})
        await session.close()
    """

    def __init__(
        self,
        transport: Transport,
        client_name: str = "MCPClient",
        client_version: str = "1.0.0",
        policy: ReconnectPolicy | None = None,
    ):
        self.transport = transport
        self.client_info = {"name": client_name, "version": client_version}
        self.policy = policy or ReconnectPolicy()
        self.state = SessionState.DISCONNECTED
        self.last_activity: float | None = None
        self.server_info: dict[str, Any] = {}
        self.capabilities: dict[str, Any] = {}
        self.handshake_count = 0

        self._ids = itertools.count(1)
        self._pending: dict[int, asyncio.Future] = {}
        self._interrupted: set[int] = set()
        self._handshake_waiter: asyncio.Future | None = None
        self._ready = asyncio.Event()
        self._connect_lock = asyncio.Lock()
        self._reader_task: asyncio.Task | None = None
        self._recovery_task: asyncio.Task | None = None
        self._generation = 0
        self._closed_reason: BaseException | None = None

    @property
    def endpoint(self) -> str:
        return self.transport.endpoint

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    async def __aenter__(self) -> "ClientSession":
        await self.connect()
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    # ============================================================
    # LIFECYCLE
    # ============================================================

    async def connect(self) -> None:
        """
        Connect the transport and perform the handshake.

        Raises:
            ConnectionFailed: endpoint unreachable.
            HandshakeTimeout: no acknowledgement in time; the session is
                              DISCONNECTED again and connect() may be retried.
            SessionClosed: the session was closed.
        """
        async with self._connect_lock:
            if self.state is SessionState.CLOSED:
                self._raise_closed()
            if self.state is SessionState.READY:
                return
            if self.state is SessionState.RECONNECTING:
                await self.wait_until_ready()
                return

            await self.transport.connect(self.policy.connection_timeout)
            self.state = SessionState.HANDSHAKING
            try:
                await self._handshake()
            except Exception:
                await self._drop_connection()
                if self.state is not SessionState.CLOSED:
                    self.state = SessionState.DISCONNECTED
                raise

    async def close(self) -> None:
        """Close the session, failing pending requests. Idempotent."""
        await self._shutdown(None)

    async def wait_until_ready(self, timeout: float | None = None) -> None:
        """Wait for READY, e.g. while reconnecting."""
        if self.state is SessionState.READY:
            return
        if self.state is SessionState.CLOSED:
            self._raise_closed()
        if self.state is SessionState.DISCONNECTED:
            raise ProtocolError(f"Session to {self.endpoint} is not connected. Call connect() first.")

        timeout = self.policy.connection_timeout if timeout is None else timeout
        try:
            await asyncio.wait_for(self._ready.wait(), timeout)
        except asyncio.TimeoutError as e:
            raise RequestTimeout(
                f"Session to {self.endpoint} not ready after {timeout}s ({self.state.value})"
            ) from e

        if self.state is SessionState.CLOSED:
            self._raise_closed()

    # ============================================================
    # REQUESTS
    # ============================================================

    def new_call(self, name: str, arguments: dict[str, Any] | None = None) -> ToolCallRequest:
        """Create a ToolCallRequest carrying a fresh correlation id."""
        return ToolCallRequest(next(self._ids), name, dict(arguments or {}))

    async def list_tools(self) -> list[ToolDescriptor]:
        """Fetch the server's catalog. Never cached."""
        result = await self._request("tools/list", {})
        tools = result.get("tools") if isinstance(result, dict) else None
        if not isinstance(tools, list):
            raise ProtocolError(f"Malformed tools/list response from {self.endpoint}: {result!r}")
        return [ToolDescriptor.from_dict(t) for t in tools]

    async def call_tool(self, name: str, arguments: dict[str, Any] | None = None) -> ToolCallResult:
        return await self.invoke(self.new_call(name, arguments))

    async def invoke(self, request: ToolCallRequest) -> ToolCallResult:
        """
        Send a prepared ToolCallRequest.

        Raises:
            ToolNotFound, SchemaValidationError: rejected by the server.
            HandlerError: the tool ran and failed.
            SessionClosed, RequestInterrupted, RequestTimeout,
            TransportExhausted: the session could not deliver a response.
        """
        result = await self._request(
            "tools/call",
            {"name": request.name, "arguments": request.arguments},
            request_id=request.correlation_id,
        )
        if not isinstance(result, dict) or "success" not in result:
            raise ProtocolError(f"Malformed tools/call response from {self.endpoint}: {result!r}")
        if not result["success"]:
            error = result.get("error") or {}
            raise HandlerError(request.name, error.get("message", "unknown error"))
        return ToolCallResult(request.correlation_id, True, result.get("payload"))

    async def ping(self) -> dict[str, Any]:
        return await self._request("ping", {})

    async def _request(
        self, method: str, params: dict[str, Any], request_id: int | None = None
    ) -> Any:
        await self.wait_until_ready()

        if request_id is None:
            request_id = next(self._ids)
        elif request_id in self._pending:
            raise ProtocolError(f"Correlation id {request_id} is already in flight")

        future = asyncio.get_running_loop().create_future()
        self._pending[request_id] = future
        timeout = self.policy.connection_timeout
        try:
            try:
                await self._send(JsonRpcRequest(method=method, params=params, id=request_id))
            except TransportError as e:
                # Outcome arrives through the future once recovery settles
                logger.debug(f"Send of '{method}' (id={request_id}) failed: {e}")
                self._connection_lost(self._generation, e)
                if self.state is SessionState.RECONNECTING:
                    self._interrupted.add(request_id)
            response = await asyncio.wait_for(future, timeout)
        except asyncio.TimeoutError as e:
            raise RequestTimeout(
                f"No response to '{method}' (id={request_id}) within {timeout}s"
            ) from e
        finally:
            self._pending.pop(request_id, None)

        if response.is_error:
            raise remote_error(response.error)
        return response.result

    # ============================================================
    # CONNECTION INTERNALS
    # ============================================================

    async def _send(self, request: JsonRpcRequest) -> None:
        logger.debug(f"→ {self.endpoint}: {request.method} (id={request.id})")
        await self.transport.send(request.to_json().encode("utf-8"))
        self.last_activity = time.monotonic()

    async def _handshake(self) -> None:
        """Identify ourselves on the current connection and wait for the ack."""
        self._handshake_waiter = asyncio.get_running_loop().create_future()
        self._start_reader()
        request = JsonRpcRequest(
            method="initialize",
            params={"clientInfo": self.client_info, "protocolVersion": PROTOCOL_VERSION},
        )
        timeout = self.policy.connection_timeout
        try:
            await self._send(request)
            ack: JsonRpcResponse = await asyncio.wait_for(self._handshake_waiter, timeout)
        except asyncio.TimeoutError as e:
            raise HandshakeTimeout(
                f"No handshake acknowledgement from {self.endpoint} within {timeout}s"
            ) from e
        except TransportError as e:
            raise ConnectionFailed(f"Connection to {self.endpoint} lost during handshake: {e}") from e
        finally:
            self._handshake_waiter = None

        if ack.is_error:
            message = ack.error.get("message") if isinstance(ack.error, dict) else ack.error
            raise ConnectionFailed(f"Handshake rejected by {self.endpoint}: {message!r}")

        result = ack.result
        if not isinstance(result, dict):
            raise ConnectionFailed(f"Malformed handshake acknowledgement from {self.endpoint}: {result!r}")
        server_info = result.get("serverInfo")
        capabilities = result.get("capabilities")
        self.server_info = server_info if isinstance(server_info, dict) else {}
        self.capabilities = capabilities if isinstance(capabilities, dict) else {}
        self.handshake_count += 1
        self.state = SessionState.READY
        self._ready.set()
        logger.info(
            f"Session ready: {self.endpoint} "
            f"({self.server_info.get('name', '?')} {self.server_info.get('version', '')})"
        )

    def _start_reader(self) -> None:
        if self._reader_task is not None and not self._reader_task.done():
            self._reader_task.cancel()
        self._generation += 1
        self._reader_task = asyncio.create_task(self._read_loop(self._generation))

    async def _read_loop(self, generation: int) -> None:
        try:
            async for raw in self.transport.receive():
                self.last_activity = time.monotonic()
                self._route(raw)
        except TransportError as e:
            self._connection_lost(generation, e)

    def _route(self, raw: bytes) -> None:
        try:
            response = JsonRpcResponse.from_json(raw)
        except ValueError as e:
            logger.warning(f"Discarding malformed message from {self.endpoint}: {e}")
            return

        if response.id is None:
            waiter = self._handshake_waiter
            if waiter is not None and not waiter.done():
                waiter.set_result(response)
            else:
                logger.warning(
                    f"Uncorrelated message from {self.endpoint}: {response.error or response.result}"
                )
            return

        if isinstance(response.id, bool) or not isinstance(response.id, (int, str)):
            logger.warning(f"Discarding message with invalid id {response.id!r} from {self.endpoint}")
            return

        future = self._pending.get(response.id)
        if future is None:
            logger.warning(f"Response for unknown request id {response.id} from {self.endpoint}")
            return
        logger.debug(f"← {self.endpoint}: id={response.id}")
        if not future.done():
            future.set_result(response)

    def _connection_lost(self, generation: int, exc: Exception) -> None:
        """Reader (or a failed send) observed the connection going away."""
        if generation != self._generation or self.state is SessionState.CLOSED:
            return

        waiter = self._handshake_waiter
        if waiter is not None and not waiter.done():
            waiter.set_exception(
                ConnectionFailed(f"Connection to {self.endpoint} lost during handshake: {exc}")
            )

        if self.state is not SessionState.READY:
            return

        logger.warning(f"Lost connection to {self.endpoint}: {exc}. Reconnecting")
        self.state = SessionState.RECONNECTING
        self._ready.clear()
        self._interrupted = set(self._pending)
        self._recovery_task = asyncio.create_task(self._recover())

    async def _recover(self) -> None:
        try:
            await self.transport.reconnect(self.policy, on_connected=self._handshake)
        except TransportExhausted as e:
            self._fail(self._interrupted, e)
            await self._shutdown(e)
            return
        except Exception as e:
            logger.exception(f"Recovery of {self.endpoint} failed")
            self._fail(self._interrupted, e)
            await self._shutdown(e)
            return

        self._fail(
            self._interrupted,
            RequestInterrupted(f"Request to {self.endpoint} interrupted by reconnect; not resent"),
        )

    def _fail(self, request_ids: set[int] | list[int], exc: BaseException) -> None:
        for request_id in list(request_ids):
            future = self._pending.pop(request_id, None)
            if future is not None and not future.done():
                future.set_exception(exc)
        self._interrupted.difference_update(request_ids)

    async def _drop_connection(self) -> None:
        if self._reader_task is not None and not self._reader_task.done():
            self._reader_task.cancel()
        await self.transport.close()

    async def _shutdown(self, reason: BaseException | None) -> None:
        if self.state is SessionState.CLOSED:
            return
        self.state = SessionState.CLOSED
        self._closed_reason = reason

        self._fail(
            list(self._pending),
            RequestInterrupted(f"Session to {self.endpoint} closed"),
        )
        waiter = self._handshake_waiter
        if waiter is not None and not waiter.done():
            waiter.set_exception(SessionClosed(f"Session to {self.endpoint} closed"))
        # Wake anyone waiting for READY so they observe CLOSED
        self._ready.set()

        current = asyncio.current_task()
        tasks = [
            task for task in (self._reader_task, self._recovery_task)
            if task is not None and task is not current and not task.done()
        ]
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        await self.transport.close()

        if reason is None:
            logger.info(f"Session to {self.endpoint} closed")
        else:
            logger.error(f"Session to {self.endpoint} closed: {reason}")

    def _raise_closed(self) -> None:
        raise SessionClosed(f"Session to {self.endpoint} is closed") from self._closed_reason
