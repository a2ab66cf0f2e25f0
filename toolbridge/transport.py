"""
Transport layer abstraction for toolbridge communication.

Messages are JSON-RPC 2.0 objects framed one per line. Implements:
  - TcpTransport: persistent socket connection to a remote tool server
  - StdioTransport: JSON-RPC over stdin/stdout pipes of a child process
  - SseTransport: MCP HTTP+SSE, requests POSTed, responses on an event stream

All share the reconnect policy implemented in Transport.reconnect().
"""

from __future__ import annotations

import asyncio
import json
import logging
import shlex
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, AsyncIterator, Awaitable, Callable
from urllib.parse import urljoin

import httpx

from toolbridge.config import ReconnectPolicy
from toolbridge.errors import (
    ConnectionFailed,
    HandshakeTimeout,
    TransportError,
    TransportExhausted,
)

logger = logging.getLogger(__name__)

# Upper bound for a single framed message (one line)
MAX_MESSAGE_BYTES = 4 * 1024 * 1024


@dataclass
class JsonRpcRequest:
    """JSON-RPC 2.0 request. An id of None sends the request without one."""
    method: str
    params: dict[str, Any]
    id: int | str | None = None

    def to_json(self) -> str:
        message: dict[str, Any] = {
            "jsonrpc": "2.0",
            "method": self.method,
            "params": self.params,
        }
        if self.id is not None:
            message["id"] = self.id
        return json.dumps(message)


@dataclass
class JsonRpcResponse:
    """JSON-RPC 2.0 response."""
    id: int | str | None
    result: Any = None
    error: dict | None = None

    @classmethod
    def from_json(cls, data: str | bytes) -> "JsonRpcResponse":
        parsed = json.loads(data)
        if not isinstance(parsed, dict):
            raise ValueError(f"Expected a JSON object, got {type(parsed).__name__}")
        return cls(
            id=parsed.get("id"),
            result=parsed.get("result"),
            error=parsed.get("error"),
        )

    @property
    def is_error(self) -> bool:
        return self.error is not None


class Transport(ABC):
    """
    Abstract bidirectional message channel.

    Subclasses provide the raw open/close/read/write primitives; this class
    turns them into the connect / send / receive / reconnect contract.
    """

    def __init__(self, endpoint: str):
        self.endpoint = endpoint

    @abstractmethod
    async def _open(self) -> None:
        ...

    @abstractmethod
    async def _close(self) -> None:
        ...

    @abstractmethod
    async def _write(self, data: bytes) -> None:
        ...

    @abstractmethod
    async def _readline(self) -> bytes:
        """Read one line; b"" means the peer closed the channel."""
        ...

    @abstractmethod
    def is_alive(self) -> bool:
        """Check if the channel is open."""
        ...

    async def connect(self, timeout: float) -> None:
        """Open the channel, failing with ConnectionFailed."""
        if self.is_alive():
            logger.warning(f"Transport to {self.endpoint} already open, closing first")
            await self.close()

        logger.info(f"Connecting to {self.endpoint}")
        try:
            await asyncio.wait_for(self._open(), timeout)
        except asyncio.TimeoutError as e:
            await self._close()
            raise ConnectionFailed(
                f"Timed out after {timeout}s connecting to {self.endpoint}"
            ) from e
        except OSError as e:
            await self._close()
            raise ConnectionFailed(f"Cannot reach {self.endpoint}: {e}") from e

    async def send(self, message: bytes) -> None:
        """Write one message followed by the line terminator."""
        if not self.is_alive():
            raise TransportError(f"Transport to {self.endpoint} is not connected")
        try:
            await self._write(message.rstrip(b"\n") + b"\n")
        except OSError as e:
            raise TransportError(f"Send to {self.endpoint} failed: {e}") from e

    async def receive(self) -> AsyncIterator[bytes]:
        """
        Yield inbound messages until the channel fails.

        Never ends normally: a closed channel raises TransportError and the
        stream can only be resumed through reconnect().
        """
        while True:
            if not self.is_alive():
                raise TransportError(f"Transport to {self.endpoint} is not connected")
            try:
                line = await self._readline()
            except (OSError, asyncio.IncompleteReadError, asyncio.LimitOverrunError, ValueError) as e:
                raise TransportError(f"Receive from {self.endpoint} failed: {e}") from e
            if not line:
                raise TransportError(f"Connection to {self.endpoint} closed by peer")
            line = line.strip()
            if line:
                yield line

    async def reconnect(
        self,
        policy: ReconnectPolicy,
        on_connected: Callable[[], Awaitable[None]] | None = None,
    ) -> int:
        """
        Re-open the channel following a fixed-delay policy.

        Args:
            policy: Attempt count, delay between attempts and connect timeout.
            on_connected: Optional coroutine run after each successful connect
                          (e.g. a handshake); its failure counts as a failed
                          attempt.

        Returns:
            The attempt number that succeeded.

        Raises:
            TransportExhausted: after exactly policy.max_reconnect_attempts
                                failed attempts.
        """
        await self.close()
        attempts = policy.max_reconnect_attempts

        for attempt in range(1, attempts + 1):
            await asyncio.sleep(policy.reconnect_delay)
            try:
                await self.connect(policy.connection_timeout)
                if on_connected is not None:
                    await on_connected()
            except (ConnectionFailed, HandshakeTimeout) as e:
                logger.warning(
                    f"Reconnect attempt {attempt}/{attempts} to {self.endpoint} failed: {e}"
                )
                await self.close()
                continue
            logger.info(f"Reconnected to {self.endpoint} on attempt {attempt}")
            return attempt

        logger.error(f"Reconnect attempts to {self.endpoint} exhausted ({attempts})")
        raise TransportExhausted(self.endpoint, attempts)

    async def close(self) -> None:
        """Close the channel. Safe to call repeatedly."""
        await self._close()


class TcpTransport(Transport):
    """Newline-delimited JSON-RPC over a persistent TCP connection."""

    def __init__(self, host: str, port: int, endpoint: str | None = None):
        super().__init__(endpoint or f"tcp://{host}:{port}")
        self.host = host
        self.port = port
        self._reader: asyncio.StreamReader | None = None
        self._writer: asyncio.StreamWriter | None = None

    async def _open(self) -> None:
        self._reader, self._writer = await asyncio.open_connection(
            self.host, self.port, limit=MAX_MESSAGE_BYTES
        )

    async def _close(self) -> None:
        writer = self._writer
        self._reader = None
        self._writer = None
        if writer is None:
            return
        writer.close()
        try:
            await writer.wait_closed()
        except OSError as e:
            # Peer already reset the socket
            logger.debug(f"Socket to {self.endpoint} closed with error: {e}")
        logger.info(f"TCP transport to {self.endpoint} closed")

    async def _write(self, data: bytes) -> None:
        self._writer.write(data)
        await self._writer.drain()

    async def _readline(self) -> bytes:
        return await self._reader.readline()

    def is_alive(self) -> bool:
        return self._writer is not None and not self._writer.is_closing()


class StdioTransport(Transport):
    """
    JSON-RPC over stdin/stdout pipes to a subprocess.

    The tool server runs as a child process. We write requests to its stdin
    and read responses from its stdout; its stderr is inherited so server
    logs stay visible. Reconnecting relaunches the process.
    """

    def __init__(self, command: list[str], env: dict[str, str] | None = None):
        """
        Args:
            command: Command to launch the tool server process.
                     e.g., ["python", "-m", "toolbridge.servers"]
            env: Optional environment variables for the subprocess.
        """
        super().__init__("stdio:" + shlex.join(command))
        self.command = command
        self.env = env
        self._process: asyncio.subprocess.Process | None = None

    async def _open(self) -> None:
        logger.info(f"Starting stdio transport: {' '.join(self.command)}")
        self._process = await asyncio.create_subprocess_exec(
            *self.command,
            stdin=asyncio.subprocess.PIPE,
            stdout=asyncio.subprocess.PIPE,
            env=self.env,
            limit=MAX_MESSAGE_BYTES,
        )

    async def _close(self) -> None:
        process = self._process
        self._process = None
        if process is None or process.returncode is not None:
            return
        process.terminate()
        try:
            await asyncio.wait_for(process.wait(), timeout=5)
        except asyncio.TimeoutError:
            process.kill()
            await process.wait()
        logger.info("Stdio transport stopped")

    async def _write(self, data: bytes) -> None:
        self._process.stdin.write(data)
        await self._process.stdin.drain()

    async def _readline(self) -> bytes:
        return await self._process.stdout.readline()

    def is_alive(self) -> bool:
        return self._process is not None and self._process.returncode is None


class SseTransport(Transport):
    """
    JSON-RPC over the MCP HTTP+SSE binding.

    A GET on the stream URL opens a server-sent event stream whose first
    `endpoint` event names the URL requests are POSTed to. Responses come
    back as `message` events on the stream.
    """

    def __init__(
        self,
        url: str,
        headers: dict[str, str] | None = None,
        http_transport: httpx.AsyncBaseTransport | None = None,
    ):
        """
        Args:
            url: Event stream URL, e.g. "http://localhost:5057/sse".
            headers: Extra headers sent with every HTTP request.
            http_transport: Optional httpx transport (e.g. httpx.MockTransport).
        """
        super().__init__(url)
        self.url = url
        self.headers = headers or {}
        self.post_url: str | None = None
        self._http_transport = http_transport
        self._client: httpx.AsyncClient | None = None
        self._response: httpx.Response | None = None
        self._lines: AsyncIterator[str] | None = None

    async def _open(self) -> None:
        # No read timeout: the stream stays idle between responses
        self._client = httpx.AsyncClient(
            headers=self.headers,
            timeout=httpx.Timeout(10.0, read=None),
            transport=self._http_transport,
        )
        try:
            request = self._client.build_request(
                "GET", self.url, headers={"Accept": "text/event-stream"}
            )
            self._response = await self._client.send(request, stream=True)
            self._response.raise_for_status()
            self._lines = self._response.aiter_lines()

            while True:
                event = await self._next_event()
                if event is None:
                    raise ConnectionError(f"SSE stream {self.url} ended before announcing an endpoint")
                if event[0] == "endpoint":
                    break
        except (httpx.HTTPError, httpx.StreamError) as e:
            raise ConnectionError(f"SSE stream {self.url} failed: {e}") from e

        self.post_url = urljoin(self.url, event[1])
        logger.info(f"SSE stream {self.url} open, posting to {self.post_url}")

    async def _close(self) -> None:
        response, client = self._response, self._client
        self._response = None
        self._client = None
        self._lines = None
        self.post_url = None
        if response is not None:
            await response.aclose()
        if client is not None:
            await client.aclose()
            logger.info(f"SSE transport to {self.endpoint} closed")

    async def _write(self, data: bytes) -> None:
        try:
            response = await self._client.post(
                self.post_url, content=data, headers={"Content-Type": "application/json"}
            )
            response.raise_for_status()
        except httpx.HTTPError as e:
            raise ConnectionError(f"POST to {self.post_url} failed: {e}") from e

    async def _readline(self) -> bytes:
        while True:
            try:
                event = await self._next_event()
            except (httpx.HTTPError, httpx.StreamError) as e:
                raise ConnectionError(f"SSE stream {self.url} failed: {e}") from e
            if event is None:
                return b""

            event_type, data = event
            if event_type == "message":
                return data.encode("utf-8") + b"\n"
            if event_type == "endpoint":
                self.post_url = urljoin(self.url, data)
                logger.info(f"SSE stream {self.url} moved its endpoint to {self.post_url}")
            else:
                logger.debug(f"Ignoring SSE event '{event_type}' from {self.url}")

    def is_alive(self) -> bool:
        return self._response is not None and not self._response.is_closed

    async def _next_event(self) -> tuple[str, str] | None:
        """Read one event as (type, data). None when the stream ends."""
        event_type = "message"
        data: list[str] = []
        async for line in self._lines:
            if not line:
                if data:
                    return event_type, "\n".join(data)
                event_type = "message"
                continue
            if line.startswith(":"):
                continue
            field_name, _, value = line.partition(":")
            value = value.removeprefix(" ")
            if field_name == "event":
                event_type = value
            elif field_name == "data":
                data.append(value)
        return None


def transport_for(endpoint: str) -> Transport:
    """
    Build a transport from an endpoint URI.

    Supported forms:
        tcp://host:port
        stdio:python -m toolbridge.servers
        http://localhost:5057/sse
    """
    scheme, _, rest = endpoint.partition(":")
    scheme = scheme.lower()

    if scheme == "tcp":
        address = rest.removeprefix("//").rstrip("/")
        host, sep, port = address.rpartition(":")
        if not sep or not host or not port.isdigit():
            raise ValueError(f"Invalid tcp endpoint '{endpoint}', expected tcp://host:port")
        return TcpTransport(host.strip("[]"), int(port), endpoint=endpoint)

    if scheme == "stdio":
        command = shlex.split(rest)
        if not command:
            raise ValueError(f"Invalid stdio endpoint '{endpoint}', no command given")
        return StdioTransport(command)

    if scheme in ("http", "https"):
        return SseTransport(endpoint)

    raise ValueError(f"Unsupported endpoint scheme '{scheme}' in '{endpoint}'")
