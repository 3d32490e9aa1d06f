"""errors.py — Exception types shared by the gateway, tools, lock and orchestrator."""
from __future__ import annotations

from typing import Any, Dict, List, Optional

__all__ = [
    "DuplicateRecordError",
    "DuplicateToolError",
    "PhaseTransitionError",
    "RecordNotFoundError",
    "SchemaValidationError",
    "TextGenerationError",
    "ToolCallError",
    "ToolExecutionError",
]


class DuplicateToolError(ValueError):
    """Two tool definitions share a name. Raised while building a registry."""


class SchemaValidationError(ValueError):
    def __init__(self, tool_name: str, violations: List[Dict[str, Any]]):
        self.tool_name = tool_name
        self.violations = list(violations)
        fields = ", ".join(sorted({str(v.get("field") or "<root>") for v in self.violations}))
        super().__init__(f"Invalid arguments for {tool_name}: {fields}")


class ToolExecutionError(RuntimeError):
    """A known failure of the system a tool wraps (store, external API)."""


class DuplicateRecordError(ToolExecutionError):
    pass


class RecordNotFoundError(ToolExecutionError):
    pass


class ToolCallError(RuntimeError):
    """Client-side view of a JSON-RPC error envelope."""

    def __init__(self, code: int, message: str, data: Optional[Dict[str, Any]] = None):
        self.code = int(code)
        self.data = data or {}
        super().__init__(message)


class TextGenerationError(RuntimeError):
    pass


class PhaseTransitionError(RuntimeError):
    pass
