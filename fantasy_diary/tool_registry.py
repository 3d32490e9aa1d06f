"""tool_registry.py — Named tool definitions and the read/write registries that hold them.

A tool name is ``<namespace>.<action>`` (``episodes.list``, ``characters.create``,
``weather.openMeteo.lookup``). The action is the last dot segment and decides
whether a tool is a read or a write.
"""
from __future__ import annotations

import enum
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Iterator, List, Optional, Tuple

from mcp.types import Tool

from .errors import DuplicateToolError

__all__ = [
    "READ_ACTIONS",
    "ToolCategory",
    "ToolDefinition",
    "ToolHandler",
    "ToolRegistry",
    "ToolRouter",
    "WRITE_ACTIONS",
]

ToolHandler = Callable[[Dict[str, Any]], Awaitable[Any]]

READ_ACTIONS = frozenset({"list", "get", "lookup", "now"})
WRITE_ACTIONS = frozenset({"create", "update", "delete"})


class ToolCategory(str, enum.Enum):
    READ = "read"
    WRITE = "write"

    @classmethod
    def for_action(cls, action: str) -> "ToolCategory":
        if action in WRITE_ACTIONS:
            return cls.WRITE
        return cls.READ


@dataclass(frozen=True)
class ToolDefinition:
    name: str
    description: str
    input_schema: Dict[str, Any]
    handler: ToolHandler = field(repr=False, compare=False)
    usage_guidelines: Tuple[str, ...] = ()
    allowed_phases: Tuple[str, ...] = ()

    def __post_init__(self) -> None:
        if "." not in self.name or self.name.startswith(".") or self.name.endswith("."):
            raise ValueError(f"Tool name must be dot-namespaced: {self.name!r}")
        if self.input_schema.get("type") != "object":
            raise ValueError(f"Tool {self.name} input schema must be an object schema")

    @property
    def namespace(self) -> str:
        return self.name.rsplit(".", 1)[0]

    @property
    def action(self) -> str:
        return self.name.rsplit(".", 1)[1]

    @property
    def category(self) -> ToolCategory:
        return ToolCategory.for_action(self.action)

    def summary(self, trusted: bool = False) -> Dict[str, Any]:
        tool = Tool(name=self.name, description=self.description, inputSchema=self.input_schema)
        out = tool.model_dump(by_alias=True, exclude_none=True)
        if trusted:
            out["usageGuidelines"] = list(self.usage_guidelines)
            out["allowedPhases"] = list(self.allowed_phases)
        return out


class ToolRegistry:
    """Insertion-ordered set of tool definitions with unique names."""

    def __init__(self, name: str, tools: Optional[List[ToolDefinition]] = None):
        self.name = name
        self._tools: Dict[str, ToolDefinition] = {}
        for tool in tools or []:
            self.register(tool)

    def register(self, tool: ToolDefinition) -> ToolDefinition:
        if tool.name in self._tools:
            raise DuplicateToolError(f"Tool '{tool.name}' is already registered in '{self.name}'")
        self._tools[tool.name] = tool
        return tool

    def get(self, name: str) -> Optional[ToolDefinition]:
        return self._tools.get(name)

    def names(self) -> List[str]:
        return list(self._tools)

    def summaries(self, trusted: bool = False) -> List[Dict[str, Any]]:
        return [tool.summary(trusted) for tool in self._tools.values()]

    def __contains__(self, name: object) -> bool:
        return name in self._tools

    def __iter__(self) -> Iterator[ToolDefinition]:
        return iter(self._tools.values())

    def __len__(self) -> int:
        return len(self._tools)


class ToolRouter:
    """Caller-side routing: list/get go to the read set, create/update/delete to the write set."""

    def __init__(self, read: Any, write: Any):
        self.read = read
        self.write = write

    def route(self, tool_name: str) -> Any:
        action = tool_name.rsplit(".", 1)[-1]
        if ToolCategory.for_action(action) is ToolCategory.WRITE:
            return self.write
        return self.read
