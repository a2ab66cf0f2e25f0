"""
Tool server: exposes a ToolCatalog over newline-delimited JSON-RPC.

A tool server:
1. Accepts connections (TCP) or reads its own stdin (stdio)
2. Requires one `initialize` handshake per connection
3. Dispatches `tools/list` and `tools/call` to the catalog
4. Writes responses as they complete, possibly out of request order

To create a tool server:

    from toolbridge.catalog import ToolHandler
    from toolbridge.server import ToolServer, run_server

    class MyTool(ToolHandler):
        name = "my_tool"
        description = "Does something useful"
        parameters = {
            "input": {"type": "string", "description": "The input"},
        }

        def handle(self, params: dict) -> dict:
            return {"result": f"processed: {params['input']}"}

    if __name__ == "__main__":
        server = ToolServer()
        server.register(MyTool())
        run_server(server)
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from typing import Any

from toolbridge import __version__
from toolbridge.catalog import ToolCatalog, ToolHandler
from toolbridge.errors import HandlerError, SchemaValidationError, ToolNotFound
from toolbridge.protocol import (
    INTERNAL_ERROR,
    INVALID_PARAMS,
    INVALID_REQUEST,
    METHOD_NOT_FOUND,
    NOT_INITIALIZED,
    PARSE_ERROR,
    PROTOCOL_VERSION,
    TOOL_NOT_FOUND,
)
from toolbridge.transport import MAX_MESSAGE_BYTES

logger = logging.getLogger(__name__)


class RpcError(Exception):
    """Raised inside dispatch to produce a JSON-RPC error response."""

    def __init__(self, code: int, message: str):
        super().__init__(message)
        self.code = code
        self.message = message


class _Connection:
    """Per-connection state: handshake flag and a serialized writer."""

    def __init__(self, writer: asyncio.StreamWriter, peer: str):
        self.writer = writer
        self.peer = peer
        self.client_info: dict[str, Any] | None = None
        self._write_lock = asyncio.Lock()

    @property
    def initialized(self) -> bool:
        return self.client_info is not None

    async def write(self, message: dict[str, Any]) -> None:
        line = json.dumps(message, default=str) + "\n"
        async with self._write_lock:
            if self.writer.is_closing():
                logger.info(f"Connection {self.peer} gone, response id={message.get('id')} not delivered")
                return
            self.writer.write(line.encode("utf-8"))
            try:
                await self.writer.drain()
            except ConnectionError as e:
                logger.info(f"Connection {self.peer} gone, response id={message.get('id')} not delivered: {e}")

    def close(self) -> None:
        self.writer.close()


class ToolServer:
    """
    JSON-RPC tool server.

    Protocol:
    - One JSON-RPC message per line
    - Supports methods:
        - "initialize"  → handshake, once per connection (sent without an id)
        - "tools/list"  → returns registered tool descriptors
        - "tools/call"  → calls a tool by name with arguments
        - "ping"        → health check
    """

    def __init__(
        self,
        catalog: ToolCatalog | None = None,
        name: str = "toolbridge",
        version: str = __version__,
    ):
        self.catalog = catalog or ToolCatalog()
        self.name = name
        self.version = version
        self.capabilities: dict[str, Any] = {"tools": {"listChanged": False}}
        self._server: asyncio.Server | None = None
        self._connections: set[_Connection] = set()

    def register(self, handler: ToolHandler) -> None:
        """Register a tool handler."""
        self.catalog.register_handler(handler)

    # ============================================================
    # HOSTING
    # ============================================================

    async def serve_tcp(self, host: str = "127.0.0.1", port: int = 0) -> asyncio.Server:
        """Start listening. Port 0 picks a free port (see `port`)."""
        self._server = await asyncio.start_server(
            self.serve_connection, host, port, limit=MAX_MESSAGE_BYTES
        )
        logger.info(
            f"Tool server listening on tcp://{host}:{self.port} with "
            f"{len(self.catalog)} tools: {self.catalog.names()}"
        )
        return self._server

    @property
    def port(self) -> int | None:
        if self._server is None or not self._server.sockets:
            return None
        return self._server.sockets[0].getsockname()[1]

    async def run_stdio(self) -> None:
        """
        Serve a single connection on this process's stdin/stdout.

        Returns when stdin is closed (parent process terminates).
        """
        loop = asyncio.get_running_loop()
        reader = asyncio.StreamReader(limit=MAX_MESSAGE_BYTES)
        await loop.connect_read_pipe(lambda: asyncio.StreamReaderProtocol(reader), sys.stdin)
        w_transport, w_protocol = await loop.connect_write_pipe(
            asyncio.streams.FlowControlMixin, sys.stdout
        )
        writer = asyncio.StreamWriter(w_transport, w_protocol, reader, loop)
        logger.info(
            f"Tool server starting on stdio with {len(self.catalog)} tools: "
            f"{self.catalog.names()}"
        )
        await self.serve_connection(reader, writer)

    async def shutdown(self) -> None:
        """Stop listening and drop every live connection."""
        if self._server is not None:
            self._server.close()
        for connection in list(self._connections):
            connection.close()
        if self._server is not None:
            await self._server.wait_closed()
            self._server = None
        logger.info("Tool server stopped")

    async def serve_connection(
        self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter
    ) -> None:
        """Read requests from one connection until it closes."""
        peer = writer.get_extra_info("peername") or "stdio"
        connection = _Connection(writer, str(peer))
        self._connections.add(connection)
        tasks: set[asyncio.Task] = set()
        logger.debug(f"Connection opened: {connection.peer}")

        try:
            while True:
                line = await reader.readline()
                if not line:
                    break
                line = line.strip()
                if not line:
                    continue
                # Each request runs independently so a slow handler
                # does not hold up the rest of the connection.
                task = asyncio.create_task(self._handle_line(connection, line))
                tasks.add(task)
                task.add_done_callback(tasks.discard)
        except (ConnectionError, asyncio.IncompleteReadError, ValueError) as e:
            logger.info(f"Connection {connection.peer} dropped: {e}")
        finally:
            for task in tasks:
                task.cancel()
            self._connections.discard(connection)
            connection.close()
            logger.debug(f"Connection closed: {connection.peer}")

    # ============================================================
    # DISPATCH
    # ============================================================

    async def _handle_line(self, connection: _Connection, line: bytes) -> None:
        try:
            request = json.loads(line)
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            await self._write_error(connection, None, PARSE_ERROR, f"Parse error: {e}")
            return

        if not isinstance(request, dict) or not isinstance(request.get("method"), str):
            await self._write_error(connection, None, INVALID_REQUEST, "Invalid request")
            return

        request_id = request.get("id")
        method = request["method"]
        params = request.get("params") or {}
        logger.debug(f"{connection.peer} → {method} (id={request_id})")

        try:
            result = await self._dispatch(connection, method, params)
        except RpcError as e:
            await self._write_error(connection, request_id, e.code, e.message)
        except Exception as e:
            logger.exception(f"Unexpected error handling '{method}'")
            await self._write_error(connection, request_id, INTERNAL_ERROR, str(e))
        else:
            await self._write_result(connection, request_id, result)

    async def _dispatch(self, connection: _Connection, method: str, params: dict) -> Any:
        """Route a method call to the appropriate handler."""

        if method == "initialize":
            return self._initialize(connection, params)

        if method == "ping":
            return {"status": "ok", "tools": self.catalog.names()}

        if not connection.initialized:
            raise RpcError(NOT_INITIALIZED, f"Handshake required before '{method}'")

        if method == "tools/list":
            return {"tools": [d.to_dict() for d in self.catalog.list()]}

        if method == "tools/call":
            return await self._call_tool(params)

        raise RpcError(METHOD_NOT_FOUND, f"Unknown method: '{method}'")

    def _initialize(self, connection: _Connection, params: dict) -> dict:
        if connection.initialized:
            raise RpcError(INVALID_REQUEST, "Connection already initialized")
        client_info = params.get("clientInfo") or {}
        if not isinstance(client_info, dict):
            raise RpcError(INVALID_PARAMS, "clientInfo must be an object")
        connection.client_info = client_info
        logger.info(
            f"Handshake from {client_info.get('name', 'unknown')} "
            f"{client_info.get('version', '')} ({connection.peer})"
        )
        return {
            "protocolVersion": PROTOCOL_VERSION,
            "serverInfo": {"name": self.name, "version": self.version},
            "capabilities": self.capabilities,
        }

    async def _call_tool(self, params: dict) -> dict:
        tool_name = params.get("name")
        arguments = params.get("arguments") or {}
        if not isinstance(tool_name, str):
            raise RpcError(INVALID_PARAMS, "tools/call requires a string 'name'")

        try:
            payload = await self.catalog.invoke(tool_name, arguments)
        except ToolNotFound as e:
            raise RpcError(TOOL_NOT_FOUND, str(e)) from e
        except SchemaValidationError as e:
            raise RpcError(INVALID_PARAMS, str(e)) from e
        except HandlerError as e:
            logger.warning(str(e))
            return {
                "success": False,
                "error": {"type": "HandlerError", "message": e.detail},
            }
        return {"success": True, "payload": payload}

    async def _write_result(self, connection: _Connection, request_id: Any, result: Any) -> None:
        """Write a JSON-RPC success response."""
        await connection.write({"jsonrpc": "2.0", "id": request_id, "result": result})

    async def _write_error(
        self, connection: _Connection, request_id: Any, code: int, message: str
    ) -> None:
        """Write a JSON-RPC error response."""
        await connection.write({
            "jsonrpc": "2.0",
            "id": request_id,
            "error": {"code": code, "message": message},
        })


def run_server(server: ToolServer, argv: list[str] | None = None) -> None:
    """Process entry point for tool provider modules."""
    parser = argparse.ArgumentParser(description="Run a toolbridge tool server.")
    parser.add_argument(
        "--tcp", metavar="HOST:PORT", default=None,
        help="Listen on TCP instead of serving stdin/stdout",
    )
    parser.add_argument("--verbose", "-v", action="store_true", help="Show debug output")
    args = parser.parse_args(argv)

    # Logs go to stderr; stdout carries the protocol in stdio mode
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(levelname)s: %(message)s",
        stream=sys.stderr,
    )

    if args.tcp:
        host, _, port = args.tcp.rpartition(":")
        if not host or not port.isdigit():
            parser.error("--tcp expects HOST:PORT")
        asyncio.run(_serve_forever(server, host, int(port)))
    else:
        asyncio.run(server.run_stdio())


async def _serve_forever(server: ToolServer, host: str, port: int) -> None:
    listener = await server.serve_tcp(host, port)
    try:
        await listener.serve_forever()
    finally:
        await server.shutdown()
