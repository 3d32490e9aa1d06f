"""tools.py — Content-store tools for the read and write registries.

Read set (``/mcp/read-db``): episodes/characters/places ``list`` and ``get``.
Write set (``/mcp/write-db``): ``create``/``update``/``delete`` for the same
three collections. Registries are built once per container and shared by every
gateway that serves them.
"""
from __future__ import annotations

import copy
from typing import Any, Dict, List, Optional

from .config import EPISODE_CONTENT_MAX_CHARS, EPISODE_SUMMARY_MAX_CHARS
from .persistence import (
    CHARACTERS,
    EPISODES,
    PLACES,
    Collection,
    _create_record,
    _delete_record,
    _get_record,
    _list_records,
    _update_record,
)
from .tool_registry import ToolDefinition, ToolHandler, ToolRegistry

__all__ = [
    "PHASES",
    "build_read_registry",
    "build_write_registry",
    "read_registry",
    "write_registry",
]

PHASES = ("prewriting", "drafting", "revision")

_USAGE_SCHEMA: Dict[str, Any] = {
    "type": "object",
    "description": "호출 맥락. phase는 현재 작성 단계, purpose는 조회 목적입니다.",
    "required": ["phase", "purpose"],
    "properties": {
        "phase": {"type": "string", "enum": list(PHASES)},
        "purpose": {"type": "string", "minLength": 1},
    },
    "additionalProperties": False,
}


def _list_schema(default_limit: int) -> Dict[str, Any]:
    return {
        "type": "object",
        "properties": {
            "usage": copy.deepcopy(_USAGE_SCHEMA),
            "limit": {"type": "integer", "minimum": 1, "maximum": 100, "default": default_limit},
        },
        "additionalProperties": False,
    }


def _get_schema(key: str, key_schema: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "type": "object",
        "required": [key],
        "properties": {
            "usage": copy.deepcopy(_USAGE_SCHEMA),
            key: key_schema,
        },
        "additionalProperties": False,
    }


# ---------------------------------------------------------------------------
# Handler factories
# ---------------------------------------------------------------------------


def _list_handler(collection: Collection) -> ToolHandler:
    async def handler(args: Dict[str, Any]) -> List[Dict[str, Any]]:
        return _list_records(collection, args["limit"])

    return handler


def _get_handler(collection: Collection) -> ToolHandler:
    async def handler(args: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        return _get_record(collection, args[collection.key])

    return handler


def _create_handler(collection: Collection) -> ToolHandler:
    async def handler(args: Dict[str, Any]) -> Dict[str, Any]:
        return _create_record(collection, args)

    return handler


def _update_handler(collection: Collection) -> ToolHandler:
    async def handler(args: Dict[str, Any]) -> Dict[str, Any]:
        fields = {k: v for k, v in args.items() if k != collection.key}
        return _update_record(collection, args[collection.key], fields)

    return handler


def _delete_handler(collection: Collection) -> ToolHandler:
    async def handler(args: Dict[str, Any]) -> Dict[str, Any]:
        return _delete_record(collection, args[collection.key])

    return handler


# ---------------------------------------------------------------------------
# Entity schemas
# ---------------------------------------------------------------------------

_EPISODE_PROPERTIES: Dict[str, Any] = {
    "id": {
        "type": "string",
        "format": "date-time",
        "description": "에피소드 ID. 작성 시각이며 ISO 8601 형식이어야 합니다.",
    },
    "content": {
        "type": "string",
        "maxLength": EPISODE_CONTENT_MAX_CHARS,
        "description": f"에피소드 본문, 최대 {EPISODE_CONTENT_MAX_CHARS:,}자까지 입력 가능합니다.",
    },
    "summary": {
        "type": "string",
        "maxLength": EPISODE_SUMMARY_MAX_CHARS,
        "description": f"간단한 요약, 최대 {EPISODE_SUMMARY_MAX_CHARS}자까지 입력 가능합니다.",
    },
    "characters": {
        "type": "array",
        "items": {"type": "string"},
        "description": "에피소드에 등장한 캐릭터 이름 목록",
    },
    "places": {
        "type": "array",
        "items": {"type": "string"},
        "description": "에피소드에 등장한 장소 이름 목록",
    },
}

_CHARACTER_PROPERTIES: Dict[str, Any] = {
    "name": {"type": "string", "minLength": 1, "description": "캐릭터 이름"},
    "personality": {"type": "string", "description": "캐릭터 성격 묘사"},
    "background": {"type": "string", "description": "캐릭터 배경 설명"},
    "appearance": {"type": "string", "description": "캐릭터 외형 묘사"},
    "current_place": {"type": "string", "description": "현재 위치 (장소 이름 참조)"},
    "relationships": {"type": "object", "description": "캐릭터간의 관계"},
    "major_events": {"type": "array", "items": {"type": "string"}, "description": "캐릭터 주요 사건 목록"},
    "character_traits": {"type": "array", "items": {"type": "string"}, "description": "캐릭터 특징 키워드 목록"},
    "current_status": {"type": "string", "description": "캐릭터 현재 상태"},
    "last_mentioned_episode_id": {"type": "string", "description": "마지막으로 언급된 에피소드 ID"},
}

_PLACE_PROPERTIES: Dict[str, Any] = {
    "name": {"type": "string", "minLength": 1, "description": "장소 이름"},
    "current_situation": {"type": "string", "description": "장소의 현재 상황 설명"},
    "latitude": {"type": "number", "minimum": -90, "maximum": 90, "description": "위도 값"},
    "longitude": {"type": "number", "minimum": -180, "maximum": 180, "description": "경도 값"},
    "last_weather_condition": {"type": "string", "description": "마지막으로 확인한 날씨 상태"},
    "last_mentioned_episode_id": {"type": "string", "description": "마지막으로 언급된 에피소드 ID"},
}


def _object_schema(properties: Dict[str, Any], required: List[str]) -> Dict[str, Any]:
    return {
        "type": "object",
        "required": list(required),
        "properties": copy.deepcopy(properties),
        "additionalProperties": False,
    }


# ---------------------------------------------------------------------------
# Registries
# ---------------------------------------------------------------------------


def build_read_registry() -> ToolRegistry:
    registry = ToolRegistry("read-db")
    registry.register(
        ToolDefinition(
            name="episodes.list",
            description=(
                "작성된 에피소드 목록을 최신순으로 조회합니다. 이전 사건의 흐름, 등장한 캐릭터, "
                "방문한 장소 등 스토리 연속성을 확인할 때 사용하세요."
            ),
            input_schema=_list_schema(10),
            handler=_list_handler(EPISODES),
            usage_guidelines=(
                "새 장면을 시작하기 전에 최신 에피소드 흐름을 확인하려면 호출하세요.",
                "앞선 사건을 참조하지 않고 단락을 5개 이상 작성했다면 다시 호출해 일관성을 점검하세요.",
            ),
            allowed_phases=("prewriting", "drafting"),
        )
    )
    registry.register(
        ToolDefinition(
            name="episodes.get",
            description="특정 ID의 에피소드 내용을 상세 조회합니다. 이전 에피소드를 정확히 인용할 때 사용하세요.",
            input_schema=_get_schema("id", {"type": "string", "minLength": 1}),
            handler=_get_handler(EPISODES),
            usage_guidelines=("원문에서 특정 순간을 인용하거나 참조하려면 호출하세요.",),
            allowed_phases=("drafting", "revision"),
        )
    )
    registry.register(
        ToolDefinition(
            name="characters.list",
            description=(
                "등장인물 목록을 이름 오름차순으로 조회합니다. 새 인물을 등장시키기 전 "
                "기존 인물과의 관계를 점검할 때 사용하세요."
            ),
            input_schema=_list_schema(50),
            handler=_list_handler(CHARACTERS),
            usage_guidelines=(
                "플롯을 설계하거나 초안을 쓰면서 전체 캐릭터 구성을 다시 확인하고 싶을 때 호출하세요.",
                "새로운 조연을 등장시키기 직전에 한 번 더 호출해 균형을 맞춰 주세요.",
            ),
            allowed_phases=("prewriting", "drafting"),
        )
    )
    registry.register(
        ToolDefinition(
            name="characters.get",
            description="이름으로 캐릭터 상세 정보를 조회합니다. 없으면 null을 반환합니다.",
            input_schema=_get_schema("name", {"type": "string", "minLength": 1}),
            handler=_get_handler(CHARACTERS),
            usage_guidelines=(
                "해당 인물이 등장하는 대사나 내면 묘사를 쓰기 직전에 호출하세요.",
                "수정 단계에서 성격과 동기가 흔들리지 않는지 다시 확인할 때 사용하세요.",
            ),
            allowed_phases=("drafting", "revision"),
        )
    )
    registry.register(
        ToolDefinition(
            name="places.list",
            description="장소 목록을 이름 오름차순으로 조회합니다. 다음 장면의 배경을 선택할 때 사용하세요.",
            input_schema=_list_schema(50),
            handler=_list_handler(PLACES),
            usage_guidelines=(
                "다음 장면에 쓸 후보 장소를 조사할 때 호출하세요.",
                "이야기 배경이 새로운 막이나 지역으로 넘어가면 다시 호출해 주세요.",
            ),
            allowed_phases=("prewriting",),
        )
    )
    registry.register(
        ToolDefinition(
            name="places.get",
            description="이름으로 장소 상세 정보를 조회합니다. 없으면 null을 반환합니다.",
            input_schema=_get_schema("name", {"type": "string", "minLength": 1}),
            handler=_get_handler(PLACES),
            usage_guidelines=("장소 묘사를 쓰기 직전에 호출해 세부 묘사가 설정과 맞는지 확인하세요.",),
            allowed_phases=("prewriting", "drafting"),
        )
    )
    return registry


def build_write_registry() -> ToolRegistry:
    registry = ToolRegistry("write-db")
    specs = (
        (EPISODES, "에피소드", _EPISODE_PROPERTIES, ["id", "content", "summary", "characters", "places"]),
        (
            CHARACTERS,
            "캐릭터",
            _CHARACTER_PROPERTIES,
            [
                "name",
                "personality",
                "background",
                "appearance",
                "current_place",
                "relationships",
                "major_events",
                "character_traits",
                "current_status",
                "last_mentioned_episode_id",
            ],
        ),
        (
            PLACES,
            "장소",
            _PLACE_PROPERTIES,
            ["name", "current_situation", "latitude", "longitude", "last_mentioned_episode_id"],
        ),
    )
    for collection, label, properties, required in specs:
        prefix = collection.namespace
        registry.register(
            ToolDefinition(
                name=f"{prefix}.create",
                description=f"새로운 {label}을(를) 생성합니다. 같은 키가 이미 있으면 실패합니다.",
                input_schema=_object_schema(properties, required),
                handler=_create_handler(collection),
            )
        )
        registry.register(
            ToolDefinition(
                name=f"{prefix}.update",
                description=f"기존 {label} 정보를 수정합니다. 전달한 필드만 갱신합니다.",
                input_schema=_object_schema(properties, [collection.key]),
                handler=_update_handler(collection),
            )
        )
        registry.register(
            ToolDefinition(
                name=f"{prefix}.delete",
                description=f"{label}을(를) 삭제합니다.",
                input_schema=_object_schema({collection.key: properties[collection.key]}, [collection.key]),
                handler=_delete_handler(collection),
            )
        )
    return registry


read_registry = build_read_registry()
write_registry = build_write_registry()
