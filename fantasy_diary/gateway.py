"""gateway.py — JSON-RPC 2.0 front door for a tool registry.

Every request produces exactly one envelope, success or failure. Tool handler
exceptions are caught here and reported with a fixed error code so callers can
branch on ``error.code`` instead of parsing messages.

Methods:
    initialize, ping, notifications/initialized
    tools/list
    tools/call
"""
from __future__ import annotations

import asyncio
import enum
import json
import time
import uuid
from typing import Any, Dict, Optional

from botocore.exceptions import BotoCoreError, ClientError
from mcp.types import TextContent

from .config import MCP_PROTOCOL_VERSION, SERVER_NAME, SERVER_VERSION, logger
from .errors import SchemaValidationError, ToolExecutionError
from .schema_validation import validate
from .serialization import _emit_structured_observability, _input_hash, _json_default, _now_z
from .tool_registry import ToolRegistry

__all__ = [
    "JsonRpcErrorCode",
    "ToolGateway",
    "_run_async",
    "jsonrpc_error",
    "jsonrpc_result",
]


class JsonRpcErrorCode(enum.IntEnum):
    PARSE_ERROR = -32700
    INVALID_REQUEST = -32600
    METHOD_NOT_FOUND = -32601
    INVALID_PARAMS = -32602
    INTERNAL_ERROR = -32603
    TOOL_NOT_FOUND = -32001
    TOOL_EXECUTION_ERROR = -32002
    UNKNOWN_ERROR = -32099


_KNOWN_BACKING_FAILURES = (ToolExecutionError, ClientError, BotoCoreError)
_NOTIFICATION_METHODS = {"initialized", "notifications/initialized", "ping"}


def jsonrpc_result(request_id: Any, result: Dict[str, Any]) -> Dict[str, Any]:
    return {"jsonrpc": "2.0", "id": request_id, "result": result}


def jsonrpc_error(
    request_id: Any,
    *,
    code: int,
    message: str,
    data: Optional[Dict[str, Any]] = None,
) -> Dict[str, Any]:
    body: Dict[str, Any] = {
        "jsonrpc": "2.0",
        "id": request_id,
        "error": {
            "code": int(code),
            "message": message,
        },
    }
    if data:
        body["error"]["data"] = data
    return body


def _run_async(coro: Any) -> Any:
    return asyncio.run(coro)


def _valid_id(value: Any) -> bool:
    if isinstance(value, bool):
        return False
    return value is None or isinstance(value, (str, int, float))


class _ToolCallFailure(Exception):
    """Internal: carries a ready-made error envelope out of the tools/call path."""

    def __init__(self, code: JsonRpcErrorCode, message: str, data: Optional[Dict[str, Any]] = None):
        self.code = code
        self.message = message
        self.data = data
        super().__init__(message)


class ToolGateway:
    def __init__(
        self,
        registry: ToolRegistry,
        *,
        server_name: str = SERVER_NAME,
        server_version: str = SERVER_VERSION,
    ):
        self.registry = registry
        self.server_name = server_name
        self.server_version = server_version

    def handle_sync(self, request: Any, *, trusted: bool = False) -> Dict[str, Any]:
        return _run_async(self.handle(request, trusted=trusted))

    async def handle(self, request: Any, *, trusted: bool = False) -> Dict[str, Any]:
        if not isinstance(request, dict):
            return jsonrpc_error(
                None,
                code=JsonRpcErrorCode.INVALID_REQUEST,
                message="Invalid Request",
                data={"hint": "Expected JSON-RPC 2.0 object"},
            )

        raw_id = request.get("id")
        request_id = raw_id if _valid_id(raw_id) else None
        method = request.get("method")
        if request.get("jsonrpc") != "2.0" or not isinstance(method, str) or not _valid_id(raw_id):
            return jsonrpc_error(
                request_id,
                code=JsonRpcErrorCode.INVALID_REQUEST,
                message="Invalid Request",
                data={"hint": "Expected JSON-RPC 2.0 object with string method"},
            )

        params = request.get("params")
        if method == "initialize":
            return jsonrpc_result(
                request_id,
                {
                    "protocolVersion": MCP_PROTOCOL_VERSION,
                    "serverInfo": {"name": self.server_name, "version": self.server_version},
                    "capabilities": {"tools": {"listChanged": False}},
                },
            )
        if method in _NOTIFICATION_METHODS:
            return jsonrpc_result(request_id, {})
        if method == "tools/list":
            return jsonrpc_result(request_id, {"tools": self.registry.summaries(trusted)})
        if method == "tools/call":
            return await self._tools_call(request_id, params)

        return jsonrpc_error(
            request_id,
            code=JsonRpcErrorCode.METHOD_NOT_FOUND,
            message=f"Method not found: {method}",
        )

    async def _tools_call(self, request_id: Any, params: Any) -> Dict[str, Any]:
        invocation_id = f"mcpi-{uuid.uuid4().hex[:20]}"
        started = time.perf_counter()
        tool_name = ""
        arguments: Any = None
        status = "error"
        error_code = ""
        try:
            if not isinstance(params, dict):
                raise _ToolCallFailure(JsonRpcErrorCode.INVALID_PARAMS, "Invalid params: tools/call requires an object")
            tool_name = params.get("name") if isinstance(params.get("name"), str) else ""
            arguments = params.get("arguments")
            if not tool_name.strip():
                raise _ToolCallFailure(JsonRpcErrorCode.INVALID_PARAMS, "Invalid params: tools/call requires params.name")
            if arguments is not None and not isinstance(arguments, dict):
                raise _ToolCallFailure(
                    JsonRpcErrorCode.INVALID_PARAMS,
                    "Invalid params: tools/call requires params.arguments to be an object",
                )

            tool = self.registry.get(tool_name)
            if tool is None:
                raise _ToolCallFailure(
                    JsonRpcErrorCode.TOOL_NOT_FOUND,
                    f"Tool not found: {tool_name}",
                    {"tool": tool_name},
                )

            try:
                narrowed = validate(tool, arguments)
            except SchemaValidationError as exc:
                raise _ToolCallFailure(
                    JsonRpcErrorCode.INVALID_PARAMS,
                    f"Invalid params: {exc}",
                    {"tool": tool_name, "violations": exc.violations},
                ) from exc

            try:
                value = await tool.handler(narrowed)
            except _KNOWN_BACKING_FAILURES as exc:
                logger.exception("tool %s failed", tool_name)
                raise _ToolCallFailure(
                    JsonRpcErrorCode.TOOL_EXECUTION_ERROR,
                    str(exc) or type(exc).__name__,
                    {"tool": tool_name, "error_type": type(exc).__name__},
                ) from exc
            except Exception as exc:
                logger.exception("tool %s raised an unexpected error", tool_name)
                raise _ToolCallFailure(
                    JsonRpcErrorCode.UNKNOWN_ERROR,
                    str(exc) or type(exc).__name__,
                    {"tool": tool_name, "error_type": type(exc).__name__},
                ) from exc

            try:
                text = json.dumps(value, default=_json_default, ensure_ascii=False)
            except (TypeError, ValueError) as exc:
                logger.exception("tool %s returned a result that is not JSON serializable", tool_name)
                raise _ToolCallFailure(
                    JsonRpcErrorCode.INTERNAL_ERROR,
                    f"Internal error: {tool_name} returned a result that is not JSON serializable",
                    {"tool": tool_name, "error_type": type(exc).__name__},
                ) from exc
            content = [TextContent(type="text", text=text).model_dump(exclude_none=True)]
            status = "success"
            return jsonrpc_result(request_id, {"content": content})
        except _ToolCallFailure as failure:
            error_code = failure.code.name
            return jsonrpc_error(request_id, code=failure.code, message=failure.message, data=failure.data)
        finally:
            latency_ms = int((time.perf_counter() - started) * 1000)
            audit_payload = {
                "invocation_id": invocation_id,
                "registry": self.registry.name,
                "tool_name": tool_name,
                "input_hash": _input_hash(arguments),
                "result_status": status,
                "latency_ms": latency_ms,
                "error_code": error_code,
                "timestamp": _now_z(),
            }
            logger.info("[AUDIT] %s", json.dumps(audit_payload, sort_keys=True))
            _emit_structured_observability(
                component="tool_gateway",
                event="tool_invocation",
                tool_name=tool_name,
                latency_ms=latency_ms,
                error_code=error_code,
                extra={"invocation_id": invocation_id, "registry": self.registry.name},
            )
