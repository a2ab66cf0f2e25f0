"""
toolbridge — tool discovery and invocation between an LLM planner and a
remote tool server.

Architecture:
    ┌──────────────┐   tcp / stdio   ┌──────────────┐
    │ DispatchLoop │ ─────────────── │  ToolServer  │
    │ + Planner    │   JSON-RPC 2.0  │  ToolCatalog │
    └──────────────┘  one msg / line └──────────────┘

The client side is ClientSession (handshake, request multiplexing,
reconnect) owned by ToolSessionManager. The DispatchLoop alternates
planner queries and tool calls until the planner answers.

The LangChain bridge is imported lazily so tool servers stay free of
LangChain at runtime.
"""

__version__ = "0.1.0"

from toolbridge.catalog import ToolCatalog, ToolDescriptor, ToolHandler
from toolbridge.config import BridgeSettings, ReconnectPolicy, get_settings
from toolbridge.dispatch import (
    DispatchLoop,
    FinalAnswer,
    PlannedCall,
    Planner,
    PlannerTurn,
    ToolCalls,
)
from toolbridge.manager import SessionOptions, ToolSessionManager
from toolbridge.protocol import ClientSession, SessionState, ToolCallRequest, ToolCallResult
from toolbridge.server import ToolServer


# Bridge requires langchain — lazy import to keep servers standalone
def LangChainPlanner(*args, **kwargs):
    from toolbridge.bridge import LangChainPlanner as _impl
    return _impl(*args, **kwargs)


def descriptor_to_langchain_tool(*args, **kwargs):
    from toolbridge.bridge import descriptor_to_langchain_tool as _impl
    return _impl(*args, **kwargs)


__all__ = [
    "BridgeSettings",
    "ClientSession",
    "DispatchLoop",
    "FinalAnswer",
    "LangChainPlanner",
    "PlannedCall",
    "Planner",
    "PlannerTurn",
    "ReconnectPolicy",
    "SessionOptions",
    "SessionState",
    "ToolCallRequest",
    "ToolCallResult",
    "ToolCalls",
    "ToolCatalog",
    "ToolDescriptor",
    "ToolHandler",
    "ToolServer",
    "ToolSessionManager",
    "descriptor_to_langchain_tool",
    "get_settings",
]
