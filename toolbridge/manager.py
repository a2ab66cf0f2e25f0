"""
Tool Session Manager — opens and owns client sessions to tool servers.

The manager is the bridge between the orchestration layer (DispatchLoop,
LangChain tools) and running tool servers.

Usage:
    manager = ToolSessionManager()

    # Open (connect + handshake); endpoint defaults to TOOLBRIDGE_SERVER_ENDPOINT
    session = await manager.open("tcp://127.0.0.1:5057")

    # Discover tools (always a fresh exchange)
    tools = await manager.list_tools(session)

    # Call a tool
    result = await manager.call_tool(session, "get_weather", {"city": "Boston"})

    # Stop everything
    await manager.close_all()
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Callable

from toolbridge.catalog import ToolDescriptor
from toolbridge.config import BridgeSettings, ReconnectPolicy, get_settings
from toolbridge.protocol import ClientSession, SessionState, ToolCallRequest, ToolCallResult
from toolbridge.transport import Transport, transport_for

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SessionOptions:
    """Identity and connection policy for one session."""
    client_name: str = "MCPClient"
    client_version: str = "1.0.0"
    policy: ReconnectPolicy = field(default_factory=ReconnectPolicy)

    @classmethod
    def from_settings(cls, settings: BridgeSettings) -> "SessionOptions":
        return cls(
            client_name=settings.client_name,
            client_version=settings.client_version,
            policy=settings.reconnect_policy,
        )


class ToolSessionManager:
    """
    Manages the lifecycle of sessions to tool servers.

    Responsibilities:
    - One logical session per endpoint
    - Connect and handshake on open
    - Route list/call operations to the right session
    - Graceful shutdown
    """

    def __init__(
        self,
        settings: BridgeSettings | None = None,
        transport_factory: Callable[[str], Transport] = transport_for,
    ):
        self.settings = settings or get_settings()
        self._transport_factory = transport_factory
        self._sessions: dict[str, ClientSession] = {}
        self._open_locks: dict[str, asyncio.Lock] = {}

    async def open(
        self,
        endpoint: str | None = None,
        options: SessionOptions | None = None,
    ) -> ClientSession:
        """
        Open a session to an endpoint, reusing a live one if present.

        Raises:
            ConnectionFailed: endpoint unreachable.
            HandshakeTimeout: server did not acknowledge the handshake.
        """
        endpoint = endpoint or self.settings.server_endpoint
        # Concurrent opens of one endpoint share a single session
        lock = self._open_locks.setdefault(endpoint, asyncio.Lock())
        async with lock:
            existing = self._sessions.get(endpoint)
            if existing is not None and existing.state is not SessionState.CLOSED:
                return existing

            options = options or SessionOptions.from_settings(self.settings)
            session = ClientSession(
                self._transport_factory(endpoint),
                client_name=options.client_name,
                client_version=options.client_version,
                policy=options.policy,
            )
            await session.connect()
            self._sessions[endpoint] = session
        logger.info(f"Opened session to {endpoint} as {options.client_name} {options.client_version}")
        return session

    async def list_tools(self, session: ClientSession) -> list[ToolDescriptor]:
        """List the tools the session's server exposes right now."""
        tools = await session.list_tools()
        logger.info(f"{session.endpoint}: tools={[t.name for t in tools]}")
        return tools

    async def call_tool(
        self,
        session: ClientSession,
        tool_name: str,
        arguments: dict[str, Any],
    ) -> ToolCallResult:
        """
        Call a tool on the session's server.

        Args:
            session: An open session
            tool_name: Which tool on that server
            arguments: Tool parameters

        Returns:
            The successful ToolCallResult. Failures raise (see ClientSession.invoke).
        """
        return await self.invoke(session, session.new_call(tool_name, arguments))

    async def invoke(self, session: ClientSession, request: ToolCallRequest) -> ToolCallResult:
        """Send a prepared request (its correlation id comes from session.new_call)."""
        logger.debug(f"Calling {session.endpoint}/{request.name} (id={request.correlation_id})")
        return await session.invoke(request)

    async def close(self, session: ClientSession) -> None:
        """Close a session and forget it. Idempotent."""
        await session.close()
        for endpoint, known in list(self._sessions.items()):
            if known is session:
                del self._sessions[endpoint]

    async def close_all(self) -> None:
        """Close all sessions."""
        for session in list(self._sessions.values()):
            await self.close(session)

    def list_sessions(self) -> dict[str, SessionState]:
        """List all sessions and their state."""
        return {endpoint: s.state for endpoint, s in self._sessions.items()}

    def get(self, endpoint: str) -> ClientSession | None:
        return self._sessions.get(endpoint)
