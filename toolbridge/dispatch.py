"""
Dispatch loop: alternates planner queries and tool invocations.

    turn = goal + catalog
    loop:
        action = planner.next_action(turn)
        FinalAnswer  → return it
        ToolCalls    → run them concurrently, append results to turn

Bounded by max_iterations planner queries. A failing tool call is reported
back to the planner as a failed ToolCallResult so it can adapt; only a dead
session (SessionClosed, TransportExhausted) ends the loop early.
"""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Union

from toolbridge.catalog import ToolDescriptor
from toolbridge.errors import (
    DispatchLoopExceeded,
    SessionClosed,
    ToolBridgeError,
    TransportExhausted,
)
from toolbridge.manager import ToolSessionManager
from toolbridge.protocol import ClientSession, ToolCallRequest, ToolCallResult

logger = logging.getLogger(__name__)

# Errors that end the loop instead of being reported to the planner
FATAL_ERRORS = (SessionClosed, TransportExhausted)


@dataclass(frozen=True)
class PlannedCall:
    """A tool call as the planner asked for it."""
    name: str
    arguments: dict[str, Any] = field(default_factory=dict)
    call_id: str | None = None


@dataclass(frozen=True)
class FinalAnswer:
    text: str


@dataclass(frozen=True)
class ToolCalls:
    calls: tuple[PlannedCall, ...]

    def __post_init__(self):
        if not self.calls:
            raise ValueError("ToolCalls needs at least one call")


PlannerAction = Union[FinalAnswer, ToolCalls]


@dataclass(frozen=True)
class ToolExchange:
    call: PlannedCall
    request: ToolCallRequest
    result: ToolCallResult


@dataclass
class PlannerTurn:
    """Conversation state handed to the planner. Rounds are append-only."""
    goal: str
    tools: tuple[ToolDescriptor, ...]
    rounds: list[tuple[ToolExchange, ...]] = field(default_factory=list)

    def record(self, exchanges: list[ToolExchange] | tuple[ToolExchange, ...]) -> None:
        self.rounds.append(tuple(exchanges))

    @property
    def exchanges(self) -> list[ToolExchange]:
        return [exchange for round_ in self.rounds for exchange in round_]


class Planner(ABC):
    """The decision-making collaborator (usually an LLM)."""

    @abstractmethod
    async def next_action(self, turn: PlannerTurn) -> PlannerAction:
        """Return a FinalAnswer or the ToolCalls to run next."""
        ...


class DispatchLoop:
    def __init__(
        self,
        manager: ToolSessionManager,
        session: ClientSession,
        planner: Planner,
        max_iterations: int | None = None,
    ):
        self.manager = manager
        self.session = session
        self.planner = planner
        self.max_iterations = (
            max_iterations if max_iterations is not None
            else manager.settings.max_dispatch_iterations
        )
        if self.max_iterations < 1:
            raise ValueError("max_iterations must be >= 1")

    async def run(self, goal: str) -> str:
        """
        Drive the planner until it answers.

        Raises:
            DispatchLoopExceeded: no final answer within max_iterations queries.
            SessionClosed, TransportExhausted: the session died.
        """
        tools = await self.manager.list_tools(self.session)
        turn = PlannerTurn(goal=goal, tools=tuple(tools))

        for iteration in range(1, self.max_iterations + 1):
            action = await self.planner.next_action(turn)

            if isinstance(action, FinalAnswer):
                logger.info(f"Planner answered after {iteration} iteration(s)")
                return action.text

            if iteration == self.max_iterations:
                break

            names = [c.name for c in action.calls]
            logger.info(f"Iteration {iteration}: planner requested {names}")
            exchanges = await asyncio.gather(*(self._execute(call) for call in action.calls))
            turn.record(exchanges)

        raise DispatchLoopExceeded(self.max_iterations)

    async def _execute(self, call: PlannedCall) -> ToolExchange:
        request = self.session.new_call(call.name, call.arguments)
        try:
            result = await self.manager.invoke(self.session, request)
        except FATAL_ERRORS:
            raise
        except ToolBridgeError as e:
            logger.warning(f"Tool call {call.name} (id={request.correlation_id}) failed: {e}")
            result = ToolCallResult.failure(request.correlation_id, e)
        return ToolExchange(call=call, request=request, result=result)
