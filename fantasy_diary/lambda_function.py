"""lambda_function.py — HTTP entry point for the Escape from Seoul story service.

Routes (API Gateway v2, prefix ``ROUTE_PREFIX``):
    OPTIONS *                     CORS preflight
    POST  /mcp/read-db            JSON-RPC gateway, read tools
    POST  /mcp/write-db           JSON-RPC gateway, write tools
    POST  /mcp/weather            JSON-RPC gateway, weather/time tools
    GET   /mcp/{name}             transport description
    POST  /generate               lock-guarded chapter generation (internal key)
    GET   /lock                   lock mode diagnostic
"""
from __future__ import annotations

from typing import Any, Dict, Optional

from botocore.exceptions import BotoCoreError, ClientError

from .config import (
    INTERNAL_API_KEYS,
    MCP_PROTOCOL_VERSION,
    ROUTE_PREFIX,
    STORY_LOCK_HEARTBEAT_MS,
    STORY_LOCK_NAME,
    STORY_LOCK_TTL_MS,
    logger,
)
from .external_tools import external_registry
from .gateway import JsonRpcErrorCode, ToolGateway, _run_async, jsonrpc_error
from .generation import AnthropicTextGenerator, TextGenerator
from .http_utils import _error, _header, _json_body, _path_method, _response
from .lock import REASON_BUSY, LockClient, run_with_lock, select_lock_client
from .mcp_client import CombinedToolClient, GatewayToolClient
from .orchestrator import JobResult, generate_chapter
from .tools import read_registry, write_registry

__all__ = ["lambda_handler"]

GATEWAYS: Dict[str, ToolGateway] = {
    "read-db": ToolGateway(read_registry),
    "write-db": ToolGateway(write_registry),
    "weather": ToolGateway(external_registry),
}

_lock_client: Optional[LockClient] = None
_generator: Optional[TextGenerator] = None


def _get_lock_client() -> LockClient:
    global _lock_client
    if _lock_client is None:
        _lock_client = select_lock_client()
    return _lock_client


def _get_generator() -> TextGenerator:
    global _generator
    if _generator is None:
        _generator = AnthropicTextGenerator()
    return _generator


def _is_internal(event: Dict[str, Any]) -> bool:
    key = (_header(event, "X-Internal-Key") or "").strip()
    return bool(key) and key in INTERNAL_API_KEYS


# ---------------------------------------------------------------------------
# Route handlers
# ---------------------------------------------------------------------------


def _handle_mcp(name: str, event: Dict[str, Any]) -> Dict[str, Any]:
    try:
        request = _json_body(event)
    except ValueError as exc:
        return _response(200, jsonrpc_error(None, code=JsonRpcErrorCode.PARSE_ERROR, message="Parse error", data={"hint": str(exc)}))
    return _response(200, GATEWAYS[name].handle_sync(request, trusted=_is_internal(event)))


def _describe_mcp(name: str) -> Dict[str, Any]:
    gateway = GATEWAYS[name]
    return _response(
        200,
        {
            "name": gateway.registry.name,
            "transport": "http-jsonrpc",
            "method": "POST",
            "protocolVersion": MCP_PROTOCOL_VERSION,
            "tools": gateway.registry.names(),
        },
    )


async def _run_generation(request: Dict[str, Any]) -> JobResult:
    reader = GatewayToolClient(GATEWAYS["read-db"])
    writer = GatewayToolClient(GATEWAYS["write-db"])
    tools = CombinedToolClient(reader, GatewayToolClient(GATEWAYS["weather"]))
    return await generate_chapter(request, reader=reader, writer=writer, generator=_get_generator(), tools=tools)


def _handle_generate(event: Dict[str, Any]) -> Dict[str, Any]:
    if not _is_internal(event):
        return _error(401, "Missing or invalid X-Internal-Key")
    try:
        body = _json_body(event)
    except ValueError as exc:
        return _error(400, str(exc))
    if not isinstance(body, dict):
        return _error(400, "Request body must be a JSON object")

    client = _get_lock_client()
    outcome = _run_async(
        run_with_lock(
            client,
            STORY_LOCK_NAME,
            lambda: _run_generation(body),
            ttl_ms=STORY_LOCK_TTL_MS,
            heartbeat_ms=STORY_LOCK_HEARTBEAT_MS,
        )
    )
    if not outcome.ok:
        if outcome.reason == REASON_BUSY:
            return _error(409, "Another chapter generation is in progress", lock_name=STORY_LOCK_NAME, lock_mode=client.mode)
        return _error(503, "Lock store unavailable", code="LOCK_UNAVAILABLE", lock_name=STORY_LOCK_NAME, lock_mode=client.mode)

    result: JobResult = outcome.value
    payload = result.to_dict()
    payload["lockLost"] = outcome.lock_lost
    if not result.ok:
        logger.warning("[WARNING] chapter generation failed: %s", result.error)
        return _response(500, payload)
    return _response(200, payload)


def _handle_lock() -> Dict[str, Any]:
    client = _get_lock_client()
    return _response(200, {"lock_name": STORY_LOCK_NAME, "lock_mode": client.mode})


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------


def lambda_handler(event: Dict[str, Any], context: Any) -> Dict[str, Any]:
    """Main Lambda entry point."""
    method, path = _path_method(event)
    logger.info("[INFO] escape_from_seoul: %s %s", method, path)

    if method == "OPTIONS":
        return _response(200, {})

    if not path.startswith(ROUTE_PREFIX):
        return _error(404, f"Route not found: {method} {path}")
    route = path[len(ROUTE_PREFIX):]

    try:
        if route.startswith("/mcp/"):
            name = route[len("/mcp/"):]
            if name in GATEWAYS:
                if method == "POST":
                    return _handle_mcp(name, event)
                if method == "GET":
                    return _describe_mcp(name)

        if route == "/generate" and method == "POST":
            return _handle_generate(event)

        if route == "/lock" and method == "GET":
            return _handle_lock()

        return _error(404, f"Route not found: {method} {path}")

    except (ClientError, BotoCoreError) as exc:
        logger.error("AWS error: %s", exc, exc_info=True)
        return _error(500, "Internal service error")
    except Exception as exc:
        logger.error("Unexpected error: %s", exc, exc_info=True)
        return _error(500, "Internal service error")
