"""Shared fixtures: a real tool server on an ephemeral port and fake transports."""

from __future__ import annotations

import asyncio
import json
from typing import Any

import pytest_asyncio

from toolbridge.catalog import ToolCatalog, ToolHandler
from toolbridge.config import BridgeSettings, ReconnectPolicy
from toolbridge.server import ToolServer
from toolbridge.servers.weather import GetWeatherTool
from toolbridge.transport import Transport


class CountingTool(ToolHandler):
    """Records every invocation."""

    name = "count"
    description = "Counts invocations"
    parameters = {"label": {"type": "string", "description": "Any label"}}

    def __init__(self):
        self.calls: list[dict[str, Any]] = []

    def handle(self, params: dict) -> dict:
        self.calls.append(params)
        return {"count": len(self.calls)}


class FailingTool(ToolHandler):
    name = "explode"
    description = "Always fails"
    parameters = {}

    def handle(self, params: dict) -> dict:
        raise RuntimeError("boom")


class SleepTool(ToolHandler):
    name = "sleep"
    description = "Waits, then echoes the tag"
    parameters = {
        "seconds": {"type": "number", "description": "How long to wait"},
        "tag": {"type": "string", "description": "Returned as-is"},
    }

    async def handle(self, params: dict) -> dict:
        await asyncio.sleep(params["seconds"])
        return {"tag": params["tag"]}


def fast_policy(**overrides: Any) -> ReconnectPolicy:
    values = {"connection_timeout": 2.0, "max_reconnect_attempts": 3, "reconnect_delay": 0.05}
    values.update(overrides)
    return ReconnectPolicy(**values)


def make_settings(endpoint: str = "tcp://127.0.0.1:5057", **overrides: Any) -> BridgeSettings:
    values = {
        "server_endpoint": endpoint,
        "connection_timeout_seconds": 2,
        "max_reconnect_attempts": 3,
        "reconnect_delay_seconds": 0.05,
    }
    values.update(overrides)
    return BridgeSettings(**values)


def build_test_server() -> tuple[ToolServer, CountingTool]:
    counter = CountingTool()
    server = ToolServer(ToolCatalog(), name="test-server", version="9.9.9")
    server.register(GetWeatherTool())
    server.register(counter)
    server.register(FailingTool())
    server.register(SleepTool())
    return server, counter


class RunningServer:
    def __init__(self, server: ToolServer, counter: CountingTool):
        self.server = server
        self.counter = counter

    @property
    def endpoint(self) -> str:
        return f"tcp://127.0.0.1:{self.server.port}"


@pytest_asyncio.fixture
async def running_server():
    server, counter = build_test_server()
    await server.serve_tcp("127.0.0.1", 0)
    yield RunningServer(server, counter)
    await server.shutdown()


DEFAULT_ACK = {
    "jsonrpc": "2.0",
    "id": None,
    "result": {"serverInfo": {"name": "fake", "version": "1"}, "capabilities": {}},
}


class ScriptedTransport(Transport):
    """
    In-memory transport. Outbound messages are recorded; inbound lines are
    fed through `feed()`. `refuse_connects` makes every connect fail and
    `handshake_ack` is the reply to every initialize.
    """

    def __init__(self, endpoint: str = "fake://server", respond_to_handshake: bool = True):
        super().__init__(endpoint)
        self.respond_to_handshake = respond_to_handshake
        self.handshake_ack: dict[str, Any] = DEFAULT_ACK
        self.refuse_connects = False
        self.open_attempts = 0
        self.sent: list[bytes] = []
        self._inbox: asyncio.Queue[bytes] | None = None
        self._alive = False

    async def _open(self) -> None:
        self.open_attempts += 1
        if self.refuse_connects:
            raise ConnectionRefusedError("refused")
        self._inbox = asyncio.Queue()
        self._alive = True

    async def _close(self) -> None:
        if self._alive:
            self._alive = False
            self._inbox.put_nowait(b"")

    async def _write(self, data: bytes) -> None:
        self.sent.append(data)
        if self.respond_to_handshake and b'"initialize"' in data:
            self.feed(json.dumps(self.handshake_ack))

    async def _readline(self) -> bytes:
        line = await self._inbox.get()
        if not line:
            self._alive = False
        return line

    def is_alive(self) -> bool:
        return self._alive

    def feed(self, line: str) -> None:
        self._inbox.put_nowait(line.encode("utf-8") + b"\n")

    def drop(self) -> None:
        """Simulate the peer going away."""
        self._inbox.put_nowait(b"")


async def wait_until(predicate, timeout: float = 3.0) -> None:
    """Poll until predicate() is true."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.01)


def sent_requests(transport: ScriptedTransport, method: str) -> list[dict[str, Any]]:
    messages = [json.loads(raw) for raw in transport.sent]
    return [m for m in messages if m.get("method") == method]
