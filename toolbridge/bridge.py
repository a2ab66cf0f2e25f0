"""
Bridge between toolbridge sessions and LangChain.

This module converts remote tool descriptors into LangChain tools and
drives a LangChain chat model as the dispatch loop's planner.

Usage:
    from toolbridge.bridge import LangChainPlanner, descriptor_to_langchain_tool

    # Single tool, usable by any LangChain agent
    lc_tool = descriptor_to_langchain_tool(manager, session, descriptor)

    # A chat model as the planner of a DispatchLoop
    planner = LangChainPlanner(init_chat_model("openai:gpt-4o-mini", temperature=0))
    answer = await DispatchLoop(manager, session, planner).run("What's the weather in Boston?")
"""

from __future__ import annotations

import json
from typing import Any

from langchain_core.language_models import BaseChatModel
from langchain_core.messages import (
    AIMessage,
    BaseMessage,
    HumanMessage,
    SystemMessage,
    ToolMessage,
)
from langchain_core.tools import StructuredTool

from toolbridge.catalog import ToolDescriptor
from toolbridge.dispatch import (
    FinalAnswer,
    PlannedCall,
    Planner,
    PlannerAction,
    PlannerTurn,
    ToolCalls,
    ToolExchange,
)
from toolbridge.manager import ToolSessionManager
from toolbridge.protocol import ClientSession


def descriptor_to_langchain_tool(
    manager: ToolSessionManager,
    session: ClientSession,
    descriptor: ToolDescriptor,
    description_override: str | None = None,
) -> StructuredTool:
    """
    Create a LangChain StructuredTool that wraps a remote tool call.

    The returned tool, when invoked by an agent, sends a tools/call request
    over the session and returns the payload as text.

    Args:
        manager: The ToolSessionManager owning the session
        session: An open session to the tool's server
        descriptor: The tool as listed by the server
        description_override: Optional override for the tool description

    Returns:
        A LangChain StructuredTool (async only) that proxies calls to the server.
    """
    tool_name = descriptor.name

    async def _call_remote(**kwargs: Any) -> str:
        """Proxy call to the tool server."""
        result = await manager.call_tool(session, tool_name, kwargs)
        return _as_text(result.payload)

    return StructuredTool.from_function(
        coroutine=_call_remote,
        name=tool_name,
        description=description_override or descriptor.description or tool_name,
        args_schema=descriptor.input_schema,
    )


def descriptor_to_openai_tool(descriptor: ToolDescriptor) -> dict[str, Any]:
    """Function-calling definition accepted by BaseChatModel.bind_tools()."""
    return {
        "type": "function",
        "function": {
            "name": descriptor.name,
            "description": descriptor.description,
            "parameters": descriptor.input_schema,
        },
    }


def describe_tools(tools: list[ToolDescriptor]) -> str:
    """Plain-text listing of tools and their parameters."""
    lines = ["Available tools:"]
    for tool in tools:
        lines.append(f"- {tool.name}: {tool.description}")
        required = set(tool.required)
        for pname, pinfo in tool.properties.items():
            ptype = pinfo.get("type", "any")
            pdesc = pinfo.get("description", "")
            flag = "" if pname in required else ", optional"
            lines.append(f"    {pname} ({ptype}{flag}): {pdesc}".rstrip())
    return "\n".join(lines)


class LangChainPlanner(Planner):
    """
    Planner backed by a LangChain chat model with tool calling.

    Each query replays the whole turn: the goal, then for every round an
    AIMessage carrying the tool calls followed by one ToolMessage per result.
    """

    def __init__(self, model: BaseChatModel, system_prompt: str | None = None):
        self.model = model
        self.system_prompt = system_prompt

    async def next_action(self, turn: PlannerTurn) -> PlannerAction:
        bound = self.model.bind_tools([descriptor_to_openai_tool(t) for t in turn.tools])
        response = await bound.ainvoke(self.build_messages(turn))

        tool_calls = getattr(response, "tool_calls", None) or []
        if tool_calls:
            return ToolCalls(tuple(
                PlannedCall(name=tc["name"], arguments=tc.get("args") or {}, call_id=tc.get("id"))
                for tc in tool_calls
            ))
        return FinalAnswer(_content_text(response.content))

    def build_messages(self, turn: PlannerTurn) -> list[BaseMessage]:
        messages: list[BaseMessage] = []
        if self.system_prompt:
            messages.append(SystemMessage(content=self.system_prompt))
        messages.append(HumanMessage(content=turn.goal))

        for round_ in turn.rounds:
            messages.append(AIMessage(
                content="",
                tool_calls=[
                    {"name": ex.call.name, "args": ex.call.arguments, "id": _call_id(ex)}
                    for ex in round_
                ],
            ))
            for ex in round_:
                messages.append(ToolMessage(
                    content=_result_text(ex),
                    tool_call_id=_call_id(ex),
                    status="success" if ex.result.success else "error",
                ))
        return messages


def _call_id(exchange: ToolExchange) -> str:
    return exchange.call.call_id or f"call_{exchange.request.correlation_id}"


def _result_text(exchange: ToolExchange) -> str:
    result = exchange.result
    if result.success:
        return _as_text(result.payload)
    error = result.error or {}
    return f"Error ({error.get('type', 'Error')}): {error.get('message', '')}"


def _as_text(payload: Any) -> str:
    if isinstance(payload, str):
        return payload
    return json.dumps(payload, indent=2, default=str)


def _content_text(content: Any) -> str:
    if isinstance(content, str):
        return content
    # Content blocks: keep the text parts
    parts = []
    for block in content or []:
        if isinstance(block, str):
            parts.append(block)
        elif isinstance(block, dict) and block.get("type") == "text":
            parts.append(block.get("text", ""))
    return "".join(parts)
