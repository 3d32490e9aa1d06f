"""external_tools.py — Tools backed by services outside the content store.

    weather.openMeteo.lookup   current weather at a coordinate (Open-Meteo, no key)
    time.now                   current wall-clock time in Asia/Seoul or UTC
"""
from __future__ import annotations

import copy
import datetime as dt
import json
import urllib.error
import urllib.parse
import urllib.request
from typing import Any, Dict, Optional

from .config import OPEN_METEO_BASE_URL, OPEN_METEO_TIMEOUT_SECONDS
from .errors import ToolExecutionError
from .http_utils import _urlopen
from .tool_registry import ToolDefinition, ToolRegistry
from .tools import _USAGE_SCHEMA

__all__ = [
    "build_external_registry",
    "describe_weather_code",
    "external_registry",
]

_CURRENT_PARAMS = (
    "temperature_2m",
    "apparent_temperature",
    "relative_humidity_2m",
    "precipitation",
    "weather_code",
    "wind_speed_10m",
    "wind_direction_10m",
)

# WMO weather interpretation codes.
_WMO_CODE_DESCRIPTION = {
    0: "맑음",
    1: "대체로 맑음",
    2: "부분적으로 흐림",
    3: "흐림",
    45: "안개",
    48: "상층 안개",
    51: "약한 이슬비",
    53: "보통 이슬비",
    55: "강한 이슬비",
    56: "약한 언 이슬비",
    57: "강한 언 이슬비",
    61: "약한 비",
    63: "보통 비",
    65: "강한 비",
    66: "약한 언 비",
    67: "강한 언 비",
    71: "약한 눈",
    73: "보통 눈",
    75: "강한 눈",
    77: "진눈깨비",
    80: "약한 소나기",
    81: "보통 소나기",
    82: "강한 소나기",
    85: "약한 눈소나기",
    86: "강한 눈소나기",
    95: "천둥번개",
    96: "천둥번개와 약한 우박",
    99: "천둥번개와 강한 우박",
}

_CARDINALS = ("N", "NNE", "NE", "ENE", "E", "ESE", "SE", "SSE", "S", "SSW", "SW", "WSW", "W", "WNW", "NW", "NNW")

# Korea has not observed DST since 1988, so a fixed offset is exact.
_TIMEZONES = {
    "Asia/Seoul": dt.timezone(dt.timedelta(hours=9), "KST"),
    "UTC": dt.timezone.utc,
}


def describe_weather_code(code: Optional[int]) -> str:
    if code is None:
        return "알 수 없는 날씨"
    return _WMO_CODE_DESCRIPTION.get(int(code), f"날씨 코드 {code}")


def _cardinal(degrees: Optional[float]) -> Optional[str]:
    if degrees is None:
        return None
    normalized = ((float(degrees) % 360) + 360) % 360
    return _CARDINALS[int(round(normalized / 22.5)) % 16]


def _fetch_open_meteo(latitude: float, longitude: float, timezone: str) -> Dict[str, Any]:
    query = urllib.parse.urlencode(
        {
            "latitude": latitude,
            "longitude": longitude,
            "timezone": timezone,
            "current": ",".join(_CURRENT_PARAMS),
            "temperature_unit": "celsius",
            "wind_speed_unit": "kmh",
            "precipitation_unit": "mm",
        }
    )
    url = f"{OPEN_METEO_BASE_URL.rstrip('/')}/v1/forecast?{query}"
    req = urllib.request.Request(url=url, method="GET", headers={"Accept": "application/json"})
    try:
        raw = _urlopen(req, timeout=OPEN_METEO_TIMEOUT_SECONDS)
    except urllib.error.HTTPError as exc:
        raise ToolExecutionError(f"Open-Meteo request failed (http_{exc.code})") from exc
    except urllib.error.URLError as exc:
        raise ToolExecutionError(f"Open-Meteo request failed: {exc.reason}") from exc
    try:
        payload = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise ToolExecutionError(f"Open-Meteo returned non-JSON payload: {raw[:200]}") from exc
    if not isinstance(payload, dict):
        raise ToolExecutionError("Open-Meteo returned an unexpected payload")
    return payload


async def _weather_lookup(args: Dict[str, Any]) -> Dict[str, Any]:
    payload = _fetch_open_meteo(args["latitude"], args["longitude"], args["timezone"])
    current = payload.get("current")
    if not isinstance(current, dict):
        raise ToolExecutionError("Open-Meteo 응답에 현재 날씨 정보가 없습니다.")

    code = current.get("weather_code")
    condition = describe_weather_code(code)
    temperature = current.get("temperature_2m")
    hints = [f"현재 날씨: {condition}"]
    if isinstance(temperature, (int, float)):
        hints.append(f"기온 {temperature:.1f}°C")
    humidity = current.get("relative_humidity_2m")
    if isinstance(humidity, (int, float)):
        hints.append(f"습도 {humidity}%")
    precipitation = current.get("precipitation")
    if isinstance(precipitation, (int, float)) and precipitation > 0:
        hints.append(f"강수 {precipitation:.1f} mm")

    return {
        "latitude": payload.get("latitude", args["latitude"]),
        "longitude": payload.get("longitude", args["longitude"]),
        "timezone": payload.get("timezone", args["timezone"]),
        "time": current.get("time"),
        "temperature_c": temperature,
        "apparent_temperature_c": current.get("apparent_temperature"),
        "humidity": humidity,
        "precipitation_mm": precipitation,
        "weather_code": code,
        "condition": condition,
        "wind": {
            "speed_kmh": current.get("wind_speed_10m"),
            "direction": current.get("wind_direction_10m"),
            "cardinal": _cardinal(current.get("wind_direction_10m")),
        },
        "hint": ", ".join(hints),
    }


async def _time_now(args: Dict[str, Any]) -> Dict[str, Any]:
    tz_name = args["timezone"]
    now = dt.datetime.now(_TIMEZONES[tz_name])
    return {
        "timezone": tz_name,
        "iso": now.isoformat(timespec="seconds"),
        "epoch_ms": int(now.timestamp() * 1000),
    }


def build_external_registry() -> ToolRegistry:
    registry = ToolRegistry("weather")
    registry.register(
        ToolDefinition(
            name="weather.openMeteo.lookup",
            description=(
                "Open-Meteo API를 사용해 지정한 위도/경도의 현재 날씨를 조회합니다. "
                "장소의 last_weather_condition을 갱신하거나 장면 분위기를 정할 때 사용하세요."
            ),
            input_schema={
                "type": "object",
                "required": ["latitude", "longitude"],
                "properties": {
                    "latitude": {"type": "number", "minimum": -90, "maximum": 90, "description": "위도 (degrees)"},
                    "longitude": {"type": "number", "minimum": -180, "maximum": 180, "description": "경도 (degrees)"},
                    "timezone": {"type": "string", "enum": list(_TIMEZONES), "default": "Asia/Seoul"},
                    "usage": copy.deepcopy(_USAGE_SCHEMA),
                },
                "additionalProperties": False,
            },
            handler=_weather_lookup,
            usage_guidelines=("장면의 날씨 묘사가 실제 좌표의 현재 날씨와 어긋나지 않게 하려면 호출하세요.",),
            allowed_phases=("prewriting", "drafting"),
        )
    )
    registry.register(
        ToolDefinition(
            name="time.now",
            description="현재 시각을 ISO 8601 형식으로 반환합니다. 기본 시간대는 Asia/Seoul입니다.",
            input_schema={
                "type": "object",
                "properties": {
                    "timezone": {"type": "string", "enum": list(_TIMEZONES), "default": "Asia/Seoul"},
                },
                "additionalProperties": False,
            },
            handler=_time_now,
        )
    )
    return registry


external_registry = build_external_registry()
