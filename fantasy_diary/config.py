"""config.py — Central configuration — environment variables, constants, logging.

All values are read once at import time. Lambda cold starts pick up changes;
warm containers keep the values they started with.
"""
from __future__ import annotations

import logging
import os


def _normalize_api_keys(*raw_values: str) -> tuple[str, ...]:
    """Return deduplicated, non-empty key values from scalar/csv env sources."""
    keys: list[str] = []
    seen: set[str] = set()
    for raw in raw_values:
        if not raw:
            continue
        for part in str(raw).split(","):
            key = part.strip()
            if not key or key in seen:
                continue
            seen.add(key)
            keys.append(key)
    return tuple(keys)


__all__ = [
    "ANTHROPIC_API_BASE_URL",
    "ANTHROPIC_API_KEY",
    "ANTHROPIC_API_TIMEOUT_SECONDS",
    "ANTHROPIC_API_VERSION",
    "CHARACTERS_TABLE",
    "CORS_ORIGIN",
    "DYNAMODB_REGION",
    "EPISODES_TABLE",
    "EPISODE_CONTENT_MAX_CHARS",
    "EPISODE_SUMMARY_MAX_CHARS",
    "INTERNAL_API_KEYS",
    "LOCKS_TABLE",
    "LOCK_DEFAULT_TTL_MS",
    "LOCK_FALLBACK_MODE",
    "LOCK_MIN_HEARTBEAT_MS",
    "MCP_PROTOCOL_VERSION",
    "OPEN_METEO_BASE_URL",
    "OPEN_METEO_TIMEOUT_SECONDS",
    "PLACES_TABLE",
    "ROUTE_PREFIX",
    "SERVER_NAME",
    "SERVER_VERSION",
    "STORY_LOCK_HEARTBEAT_MS",
    "STORY_LOCK_NAME",
    "STORY_LOCK_TTL_MS",
    "STORY_MAX_TOKENS",
    "STORY_MODEL",
    "STORY_TOOL_MAX_ITERATIONS",
    "SUMMARY_MAX_CHARS",
    "logger",
]

# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------

SERVER_NAME = "fantasy-diary"
SERVER_VERSION = "0.3.0"
MCP_PROTOCOL_VERSION = "2024-11-05"
ROUTE_PREFIX = os.environ.get("ROUTE_PREFIX", "/api/v1/escape-from-seoul")
CORS_ORIGIN = os.environ.get("CORS_ORIGIN", "https://fantasy-diary.vercel.app")

DYNAMODB_REGION = os.environ.get("DYNAMODB_REGION", "ap-northeast-2")
EPISODES_TABLE = os.environ.get("EPISODES_TABLE", "escape-from-seoul-episodes")
CHARACTERS_TABLE = os.environ.get("CHARACTERS_TABLE", "escape-from-seoul-characters")
PLACES_TABLE = os.environ.get("PLACES_TABLE", "escape-from-seoul-places")
LOCKS_TABLE = os.environ.get("LOCKS_TABLE", "locks")

INTERNAL_API_KEYS = _normalize_api_keys(
    os.environ.get("INTERNAL_API_KEYS", ""),
    os.environ.get("INTERNAL_API_KEY", ""),
)

# Lock behaviour. "in_process" only excludes runs inside one container and is
# never selected unless asked for explicitly.
LOCK_FALLBACK_MODE = os.environ.get("LOCK_FALLBACK_MODE", "none").strip().lower()
if LOCK_FALLBACK_MODE not in {"none", "in_process"}:
    LOCK_FALLBACK_MODE = "none"
LOCK_DEFAULT_TTL_MS = int(os.environ.get("LOCK_DEFAULT_TTL_MS", "30000"))
LOCK_MIN_HEARTBEAT_MS = int(os.environ.get("LOCK_MIN_HEARTBEAT_MS", "5000"))
STORY_LOCK_NAME = os.environ.get("STORY_LOCK_NAME", "story:generate")
STORY_LOCK_TTL_MS = int(os.environ.get("STORY_LOCK_TTL_MS", "60000"))
STORY_LOCK_HEARTBEAT_MS = int(os.environ.get("STORY_LOCK_HEARTBEAT_MS", "10000"))

ANTHROPIC_API_BASE_URL = os.environ.get("ANTHROPIC_API_BASE_URL", "https://api.anthropic.com")
ANTHROPIC_API_VERSION = os.environ.get("ANTHROPIC_API_VERSION", "2023-06-01")
ANTHROPIC_API_KEY = os.environ.get("ANTHROPIC_API_KEY", "")
ANTHROPIC_API_TIMEOUT_SECONDS = float(os.environ.get("ANTHROPIC_API_TIMEOUT_SECONDS", "120"))
STORY_MODEL = os.environ.get("STORY_MODEL", "claude-sonnet-4-5")
STORY_MAX_TOKENS = int(os.environ.get("STORY_MAX_TOKENS", "8192"))
STORY_TOOL_MAX_ITERATIONS = int(os.environ.get("STORY_TOOL_MAX_ITERATIONS", "20"))

OPEN_METEO_BASE_URL = os.environ.get("OPEN_METEO_BASE_URL", "https://api.open-meteo.com")
OPEN_METEO_TIMEOUT_SECONDS = float(os.environ.get("OPEN_METEO_TIMEOUT_SECONDS", "10"))

EPISODE_CONTENT_MAX_CHARS = int(os.environ.get("EPISODE_CONTENT_MAX_CHARS", "5000"))
EPISODE_SUMMARY_MAX_CHARS = int(os.environ.get("EPISODE_SUMMARY_MAX_CHARS", "500"))
SUMMARY_MAX_CHARS = 280

logger = logging.getLogger()
logger.setLevel(logging.INFO)
