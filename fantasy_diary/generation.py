"""generation.py — Text-generation capability used by the chapter phases.

The orchestrator only depends on ``TextGenerator.generate``. The shipped
implementation talks to the Anthropic Messages API over urllib and can run a
bounded tool-use loop in which the model calls read and weather tools through their gateways.
"""
from __future__ import annotations

import json
import re
import time
import urllib.error
import urllib.request
from typing import Any, Awaitable, Callable, Dict, List, Optional, Protocol, Sequence

from .config import (
    ANTHROPIC_API_BASE_URL,
    ANTHROPIC_API_KEY,
    ANTHROPIC_API_TIMEOUT_SECONDS,
    ANTHROPIC_API_VERSION,
    STORY_MAX_TOKENS,
    STORY_MODEL,
    STORY_TOOL_MAX_ITERATIONS,
    logger,
)
from .errors import TextGenerationError
from .http_utils import _urlopen
from .serialization import _emit_structured_observability

__all__ = [
    "AnthropicTextGenerator",
    "TextGenerator",
    "ToolExecutor",
    "extract_json_block",
    "parse_json_payload",
]

ToolExecutor = Callable[[str, Dict[str, Any]], Awaitable[str]]

_JSON_BLOCK_RE = re.compile(r"```json\s*([\s\S]*?)\s*```")


class TextGenerator(Protocol):
    async def generate(
        self,
        prompt: str,
        *,
        system: Optional[str] = None,
        tools: Optional[Sequence[Dict[str, Any]]] = None,
        tool_executor: Optional[ToolExecutor] = None,
    ) -> str:
        ...


def extract_json_block(text: str) -> Optional[re.Match]:
    """Return the first ```json fenced block match, or None."""
    return _JSON_BLOCK_RE.search(text or "")


def parse_json_payload(text: str) -> Any:
    """Decode the fenced JSON block if there is one, else the whole text. Raises ValueError."""
    match = extract_json_block(text)
    raw = match.group(1) if match else (text or "").strip()
    return json.loads(raw)


def _wire_tool_name(name: str) -> str:
    return name.replace(".", "__")


def _gateway_tool_name(name: str) -> str:
    return name.replace("__", ".")


class AnthropicTextGenerator:
    def __init__(
        self,
        *,
        api_key: str = ANTHROPIC_API_KEY,
        model: str = STORY_MODEL,
        max_tokens: int = STORY_MAX_TOKENS,
        base_url: str = ANTHROPIC_API_BASE_URL,
        timeout_seconds: float = ANTHROPIC_API_TIMEOUT_SECONDS,
        max_iterations: int = STORY_TOOL_MAX_ITERATIONS,
    ):
        self.api_key = api_key
        self.model = model
        self.max_tokens = int(max_tokens)
        self.base_url = base_url
        self.timeout_seconds = timeout_seconds
        self.max_iterations = int(max_iterations)

    def _post_messages(self, body: Dict[str, Any]) -> Dict[str, Any]:
        if not self.api_key:
            raise TextGenerationError("ANTHROPIC_API_KEY is not configured")

        req = urllib.request.Request(
            url=f"{self.base_url.rstrip('/')}/v1/messages",
            method="POST",
            data=json.dumps(body, ensure_ascii=False).encode("utf-8"),
            headers={
                "x-api-key": self.api_key,
                "anthropic-version": ANTHROPIC_API_VERSION,
                "content-type": "application/json",
            },
        )
        started = time.perf_counter()
        try:
            raw = _urlopen(req, timeout=self.timeout_seconds)
        except urllib.error.HTTPError as exc:
            detail = exc.read().decode("utf-8", errors="replace")
            _emit_structured_observability(
                component="generation",
                event="anthropic_messages",
                tool_name="anthropic.messages.create",
                latency_ms=int((time.perf_counter() - started) * 1000),
                error_code=f"http_{exc.code}",
            )
            raise TextGenerationError(
                f"Anthropic request failed (http_{exc.code}): {detail[:400] if detail else exc}"
            ) from exc
        except urllib.error.URLError as exc:
            raise TextGenerationError(f"Anthropic request failed: {exc.reason}") from exc

        try:
            payload = json.loads(raw)
        except json.JSONDecodeError as exc:
            raise TextGenerationError(f"Anthropic returned non-JSON payload: {raw[:200]}") from exc
        if not isinstance(payload, dict):
            raise TextGenerationError("Anthropic returned an unexpected payload")
        if payload.get("type") == "error":
            err = payload.get("error") or {}
            raise TextGenerationError(f"Anthropic error: {err.get('type')}: {err.get('message')}")

        _emit_structured_observability(
            component="generation",
            event="anthropic_messages",
            tool_name="anthropic.messages.create",
            latency_ms=int((time.perf_counter() - started) * 1000),
            extra={"stop_reason": payload.get("stop_reason"), "model": payload.get("model")},
        )
        return payload

    async def generate(
        self,
        prompt: str,
        *,
        system: Optional[str] = None,
        tools: Optional[Sequence[Dict[str, Any]]] = None,
        tool_executor: Optional[ToolExecutor] = None,
    ) -> str:
        messages: List[Dict[str, Any]] = [{"role": "user", "content": prompt}]
        body: Dict[str, Any] = {"model": self.model, "max_tokens": self.max_tokens}
        if system:
            body["system"] = system
        if tools and tool_executor is not None:
            body["tools"] = [
                {
                    "name": _wire_tool_name(str(t["name"])),
                    "description": str(t.get("description") or ""),
                    "input_schema": t.get("inputSchema") or {"type": "object"},
                }
                for t in tools
            ]

        for iteration in range(1, self.max_iterations + 1):
            payload = self._post_messages({**body, "messages": messages})
            blocks = payload.get("content") or []
            tool_uses = [b for b in blocks if isinstance(b, dict) and b.get("type") == "tool_use"]
            if not tool_uses or tool_executor is None:
                return "".join(
                    str(b.get("text") or "") for b in blocks if isinstance(b, dict) and b.get("type") == "text"
                ).strip()

            messages.append({"role": "assistant", "content": blocks})
            results: List[Dict[str, Any]] = []
            for use in tool_uses:
                tool_name = _gateway_tool_name(str(use.get("name") or ""))
                args = use.get("input") if isinstance(use.get("input"), dict) else {}
                logger.info("[INFO] model tool call %s (iteration %d)", tool_name, iteration)
                try:
                    text = await tool_executor(tool_name, args)
                    results.append({"type": "tool_result", "tool_use_id": use.get("id"), "content": text})
                except Exception as exc:
                    # The model sees the failure and may retry or move on.
                    results.append(
                        {
                            "type": "tool_result",
                            "tool_use_id": use.get("id"),
                            "content": f"Error: {exc}",
                            "is_error": True,
                        }
                    )
            messages.append({"role": "user", "content": results})

        raise TextGenerationError(f"Max iterations ({self.max_iterations}) reached in tool-use loop")
