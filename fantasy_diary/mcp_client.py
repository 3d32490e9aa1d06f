"""mcp_client.py — Caller side of the tool gateways.

The orchestrator never touches tool handlers directly: every read and write
goes through a ToolGateway as a JSON-RPC envelope, so it gets the same
validation, error codes and audit lines as an external caller.
"""
from __future__ import annotations

import json
import uuid
from typing import Any, Dict, List, Optional

from .errors import ToolCallError
from .gateway import JsonRpcErrorCode, ToolGateway
from .tool_registry import ToolRouter

__all__ = [
    "CombinedToolClient",
    "GatewayToolClient",
    "RoutedToolClient",
]


class GatewayToolClient:
    def __init__(self, gateway: ToolGateway, *, trusted: bool = True):
        self.gateway = gateway
        self.trusted = trusted

    async def _request(self, method: str, params: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        request: Dict[str, Any] = {"jsonrpc": "2.0", "id": f"req-{uuid.uuid4().hex[:12]}", "method": method}
        if params is not None:
            request["params"] = params
        response = await self.gateway.handle(request, trusted=self.trusted)
        error = response.get("error")
        if error:
            raise ToolCallError(
                int(error.get("code", JsonRpcErrorCode.INTERNAL_ERROR)),
                str(error.get("message") or "tool call failed"),
                error.get("data"),
            )
        return response.get("result") or {}

    async def list_tools(self) -> List[Dict[str, Any]]:
        result = await self._request("tools/list")
        return list(result.get("tools") or [])

    async def call_text(self, name: str, arguments: Optional[Dict[str, Any]] = None) -> str:
        """Call a tool and return the raw ``content[0].text``."""
        result = await self._request("tools/call", {"name": name, "arguments": arguments or {}})
        content = result.get("content") or []
        if not content or not isinstance(content[0], dict):
            raise ToolCallError(JsonRpcErrorCode.INTERNAL_ERROR, f"{name} returned no content")
        return str(content[0].get("text") or "")

    async def call(self, name: str, arguments: Optional[Dict[str, Any]] = None) -> Any:
        text = await self.call_text(name, arguments)
        try:
            return json.loads(text)
        except json.JSONDecodeError as exc:
            raise ToolCallError(JsonRpcErrorCode.INTERNAL_ERROR, f"{name} returned non-JSON content: {text[:200]}") from exc


class RoutedToolClient:
    """Sends list/get calls to the read client and create/update/delete to the write client."""

    def __init__(self, read: GatewayToolClient, write: GatewayToolClient):
        self.router = ToolRouter(read, write)

    async def call(self, name: str, arguments: Optional[Dict[str, Any]] = None) -> Any:
        return await self.router.route(name).call(name, arguments)


class CombinedToolClient:
    """Offers the union of several gateways' tools and sends each call to the gateway that listed it."""

    def __init__(self, *clients: GatewayToolClient):
        self.clients = clients
        self._owners: Optional[Dict[str, GatewayToolClient]] = None
        self._tools: List[Dict[str, Any]] = []

    async def _index(self) -> Dict[str, GatewayToolClient]:
        if self._owners is None:
            owners: Dict[str, GatewayToolClient] = {}
            tools: List[Dict[str, Any]] = []
            for client in self.clients:
                for tool in await client.list_tools():
                    if tool.get("name") not in owners:
                        owners[tool["name"]] = client
                        tools.append(tool)
            self._owners, self._tools = owners, tools
        return self._owners

    async def _owner(self, name: str) -> GatewayToolClient:
        owner = (await self._index()).get(name)
        if owner is None:
            raise ToolCallError(JsonRpcErrorCode.TOOL_NOT_FOUND, f"Tool not found: {name}", {"tool": name})
        return owner

    async def list_tools(self) -> List[Dict[str, Any]]:
        await self._index()
        return list(self._tools)

    async def call_text(self, name: str, arguments: Optional[Dict[str, Any]] = None) -> str:
        return await (await self._owner(name)).call_text(name, arguments)

    async def call(self, name: str, arguments: Optional[Dict[str, Any]] = None) -> Any:
        return await (await self._owner(name)).call(name, arguments)
