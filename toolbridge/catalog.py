"""
Tool catalog: the server-side registry of invocable tools.

Tools are registered explicitly at startup, either as a plain callable:

    catalog = ToolCatalog()
    catalog.register(
        "get_weather",
        {"type": "object",
         "properties": {"city": {"type": "string"}},
         "required": ["city"]},
        lambda params: {"condition": "rainy"},
        description="Gets the weather for a city",
    )

or as a ToolHandler subclass:

    class EchoTool(ToolHandler):
        name = "echo"
        description = "Echoes back the input message"
        parameters = {"message": {"type": "string", "description": "The message"}}

        def handle(self, params: dict) -> dict:
            return {"echoed": params["message"]}

    catalog.register_handler(EchoTool())
"""

from __future__ import annotations

import asyncio
import copy
import inspect
import logging
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Callable

from toolbridge.errors import (
    DuplicateToolName,
    HandlerError,
    SchemaValidationError,
    ToolNotFound,
)

logger = logging.getLogger(__name__)

_JSON_TYPES: dict[str, type | tuple[type, ...]] = {
    "string": str,
    "integer": int,
    "number": (int, float),
    "boolean": bool,
    "object": dict,
    "array": list,
    "null": type(None),
}


@dataclass(frozen=True)
class ToolDescriptor:
    """Published description of a tool. Immutable once listed."""
    name: str
    description: str = ""
    input_schema: dict[str, Any] = field(
        default_factory=lambda: {"type": "object", "properties": {}}
    )

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "description": self.description,
            "inputSchema": self.input_schema,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ToolDescriptor":
        return cls(
            name=data["name"],
            description=data.get("description", ""),
            input_schema=data.get("inputSchema") or {"type": "object", "properties": {}},
        )

    @property
    def properties(self) -> dict[str, dict]:
        return self.input_schema.get("properties", {})

    @property
    def required(self) -> list[str]:
        return list(self.input_schema.get("required", []))


class ToolHandler(ABC):
    """
    Base class for a tool implementation.

    Subclasses define what a tool does; the catalog and server handle the rest.
    `required` defaults to every declared parameter.
    """

    # Subclasses must set these
    name: str = ""
    description: str = ""
    parameters: dict[str, dict] = {}
    required: list[str] | None = None

    @abstractmethod
    def handle(self, params: dict[str, Any]) -> Any:
        """
        Execute the tool with the given parameters.

        Args:
            params: Dict of parameter name → value (already validated)

        Returns:
            The tool result (will be JSON-serialized in the response).
            May also be a coroutine function.
        """
        ...

    def get_schema(self) -> dict:
        """Return the JSON schema of the tool's arguments."""
        required = list(self.parameters) if self.required is None else list(self.required)
        return {
            "type": "object",
            "properties": self.parameters,
            "required": required,
        }


@dataclass
class _Entry:
    descriptor: ToolDescriptor
    handler: Callable[[dict[str, Any]], Any]


class ToolCatalog:
    """
    Ordered registry mapping tool names to handlers and schemas.

    Registration is synchronized and expected to finish at startup;
    invoke() is safe to call concurrently afterwards.
    """

    def __init__(self):
        self._entries: dict[str, _Entry] = {}
        self._lock = threading.Lock()

    def register(
        self,
        name: str,
        schema: dict[str, Any],
        handler: Callable[[dict[str, Any]], Any],
        description: str = "",
    ) -> ToolDescriptor:
        """Register a named tool. Fails with DuplicateToolName if taken."""
        if not name:
            raise ValueError("Tool name must not be empty")
        if not callable(handler):
            raise TypeError(f"Handler for tool '{name}' is not callable")
        if schema.get("type", "object") != "object":
            raise ValueError(f"Schema for tool '{name}' must describe an object")

        descriptor = ToolDescriptor(
            name=name, description=description, input_schema=copy.deepcopy(schema)
        )
        with self._lock:
            if name in self._entries:
                raise DuplicateToolName(f"Tool '{name}' is already registered")
            self._entries[name] = _Entry(descriptor, handler)
        logger.info(f"Registered tool: {name}")
        return descriptor

    def register_handler(self, tool: ToolHandler) -> ToolDescriptor:
        """Register a ToolHandler instance."""
        if not tool.name:
            raise ValueError(f"ToolHandler {tool.__class__.__name__} has no name")
        return self.register(tool.name, tool.get_schema(), tool.handle, tool.description)

    def list(self) -> list[ToolDescriptor]:
        """Descriptors in registration order."""
        return [entry.descriptor for entry in self._entries.values()]

    def names(self) -> list[str]:
        return list(self._entries)

    def get(self, name: str) -> ToolDescriptor:
        return self._lookup(name).descriptor

    def __contains__(self, name: object) -> bool:
        return name in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    async def invoke(self, name: str, arguments: dict[str, Any]) -> Any:
        """
        Validate arguments and run the tool's handler.

        Raises:
            ToolNotFound: no tool with that name.
            SchemaValidationError: arguments rejected; the handler never runs.
            HandlerError: the handler raised.
        """
        entry = self._lookup(name)
        validate_arguments(entry.descriptor, arguments)

        handler = entry.handler
        try:
            if inspect.iscoroutinefunction(handler):
                return await handler(arguments)
            result = await asyncio.to_thread(handler, arguments)
            if inspect.isawaitable(result):
                result = await result
            return result
        except Exception as e:
            logger.debug(f"Handler for '{name}' raised", exc_info=True)
            raise HandlerError(name, str(e) or e.__class__.__name__) from e

    def _lookup(self, name: str) -> _Entry:
        entry = self._entries.get(name)
        if entry is None:
            raise ToolNotFound(f"Unknown tool: '{name}'. Available: {self.names()}")
        return entry


def validate_arguments(descriptor: ToolDescriptor, arguments: Any) -> None:
    """Check required fields, JSON types and, if closed, undeclared fields."""
    name = descriptor.name
    if not isinstance(arguments, dict):
        raise SchemaValidationError(
            f"Tool '{name}' arguments must be an object, got {type(arguments).__name__}"
        )

    for field_name in descriptor.required:
        if field_name not in arguments:
            raise SchemaValidationError(
                f"Tool '{name}' missing required argument '{field_name}'"
            )

    properties = descriptor.properties
    for arg_name, value in arguments.items():
        meta = properties.get(arg_name)
        if meta is None:
            if descriptor.input_schema.get("additionalProperties") is False:
                raise SchemaValidationError(
                    f"Tool '{name}' does not accept argument '{arg_name}'"
                )
            continue
        expected = meta.get("type")
        if expected and not _matches_type(value, expected):
            raise SchemaValidationError(
                f"Tool '{name}' argument '{arg_name}' expected type '{expected}', "
                f"got {type(value).__name__}"
            )


def _matches_type(value: Any, expected: str | list[str]) -> bool:
    if isinstance(expected, list):
        return any(_matches_type(value, item) for item in expected)
    python_type = _JSON_TYPES.get(expected.lower())
    if python_type is None:
        return True
    # bool is an int subclass but never a JSON number
    if isinstance(value, bool) and expected.lower() in ("integer", "number"):
        return False
    return isinstance(value, python_type)
