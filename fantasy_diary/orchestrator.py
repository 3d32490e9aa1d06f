"""orchestrator.py — Chapter generation as a fixed sequence of phases.

    PLANNING -> PREWRITING -> DRAFTING -> REVISION -> FINALIZE -> DONE

``ChapterOrchestrator.step`` runs exactly one phase against the JobContext and
returns the next phase; phases never repeat, skip or go backwards. Reads go
through the read gateway and writes through the write gateway. Nothing is
persisted until FINALIZE has completed. During prewriting and drafting the
model may also call the weather/time tools, and prewriting looks up the current
weather of the places in play.

Model failures never fail the job. Planning/prewriting/revision/finalize
degrade to local behaviour; drafting substitutes the deterministic fallback
chapter and marks the result ``fallback_used``.
"""
from __future__ import annotations

import datetime as dt
import enum
import re
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Collection, Dict, List, Optional, Tuple

from .config import EPISODE_CONTENT_MAX_CHARS, SUMMARY_MAX_CHARS, logger
from .errors import PhaseTransitionError, ToolCallError
from .fallback_story import generate_fallback_chapter
from .generation import TextGenerator, extract_json_block, parse_json_payload
from .serialization import _emit_structured_observability

__all__ = [
    "ChapterOrchestrator",
    "JobContext",
    "JobResult",
    "Phase",
    "generate_chapter",
    "is_duplicate_error",
    "new_job_context",
    "next_phase",
    "persist_job",
]


class Phase(str, enum.Enum):
    PLANNING = "planning"
    PREWRITING = "prewriting"
    DRAFTING = "drafting"
    REVISION = "revision"
    FINALIZE = "finalize"
    DONE = "done"
    FAILED = "failed"


_ORDER = (Phase.PLANNING, Phase.PREWRITING, Phase.DRAFTING, Phase.REVISION, Phase.FINALIZE, Phase.DONE)


def next_phase(phase: Phase) -> Phase:
    if phase in (Phase.DONE, Phase.FAILED):
        raise PhaseTransitionError(f"Phase '{phase.value}' is terminal")
    return _ORDER[_ORDER.index(phase) + 1]


# Seoul City Hall; used when a proposed place arrives without coordinates.
_DEFAULT_LATITUDE = 37.5665
_DEFAULT_LONGITUDE = 126.9780

WEATHER_TOOL = "weather.openMeteo.lookup"
_WEATHER_LOOKUP_LIMIT = 3

_CHARACTER_FIELDS = (
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
)
_PLACE_FIELDS = (
    "name",
    "current_situation",
    "latitude",
    "longitude",
    "last_weather_condition",
    "last_mentioned_episode_id",
)

SYSTEM_PROMPT = (
    "당신은 좀비 아포칼립스 연재소설 'Escape from Seoul'의 작가입니다. "
    "실제 서울의 지리와 날씨를 감각적으로 묘사하고, 시간과 날씨는 수치 나열 대신 인물의 체감으로 표현하세요. "
    "이전 에피소드와의 연속성, 캐릭터의 성격과 동기를 일관되게 유지하세요."
)
ANALYST_PROMPT = "당신은 스토리 분석가입니다. 이전 에피소드를 분석하고 맥락을 정리하세요."


def _episode_id(moment: dt.datetime) -> str:
    moment = moment.astimezone(dt.timezone.utc)
    return moment.strftime("%Y-%m-%dT%H:%M:%S.") + f"{moment.microsecond // 1000:03d}Z"


@dataclass
class JobContext:
    id: str
    current_time: dt.datetime
    previous_story: str = ""
    references: Dict[str, List[Dict[str, Any]]] = field(default_factory=lambda: {"characters": [], "places": []})
    recent_episodes: List[Dict[str, Any]] = field(default_factory=list)
    known_characters: List[Dict[str, Any]] = field(default_factory=list)
    known_places: List[Dict[str, Any]] = field(default_factory=list)
    outline: str = ""
    content: str = ""
    summary: str = ""
    characters: List[Dict[str, Any]] = field(default_factory=list)
    places: List[Dict[str, Any]] = field(default_factory=list)
    phase: Phase = Phase.PLANNING
    phase_history: List[str] = field(default_factory=list)
    fallback_used: bool = False
    upstream_error: Optional[str] = None
    model_errors: List[str] = field(default_factory=list)
    mentioned: Dict[str, List[str]] = field(default_factory=lambda: {"characters": [], "places": []})
    weather: Dict[str, str] = field(default_factory=dict)


def new_job_context(current_time: dt.datetime) -> JobContext:
    if current_time.tzinfo is None:
        current_time = current_time.replace(tzinfo=dt.timezone.utc)
    return JobContext(id=_episode_id(current_time), current_time=current_time)


def _names(values: Any) -> List[str]:
    if not isinstance(values, list):
        return []
    out: List[str] = []
    for value in values:
        if isinstance(value, str) and value.strip() and value.strip() not in out:
            out.append(value.strip())
    return out


def _bullet_list(records: List[Dict[str, Any]], fmt: Callable[[Dict[str, Any]], str]) -> str:
    return "\n".join(f"- {fmt(r)}" for r in records) or "(없음)"


# ---------------------------------------------------------------------------
# Entity normalization
# ---------------------------------------------------------------------------


def _as_text(value: Any) -> str:
    if value is None:
        return ""
    return value if isinstance(value, str) else str(value)


def _as_str_list(value: Any) -> List[str]:
    if not isinstance(value, list):
        return []
    return [str(v) for v in value if v is not None]


def _as_coordinate(value: Any, default: float, bound: float) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return default
    if not -bound <= float(value) <= bound:
        return default
    return float(value)


def _normalize_character(raw: Dict[str, Any], episode_id: str) -> Dict[str, Any]:
    return {
        "name": _as_text(raw.get("name")).strip(),
        "personality": _as_text(raw.get("personality")),
        "background": _as_text(raw.get("background")),
        "appearance": _as_text(raw.get("appearance")),
        "current_place": _as_text(raw.get("current_place")),
        "relationships": raw.get("relationships") if isinstance(raw.get("relationships"), dict) else {},
        "major_events": _as_str_list(raw.get("major_events")),
        "character_traits": _as_str_list(raw.get("character_traits")),
        "current_status": _as_text(raw.get("current_status")),
        "last_mentioned_episode_id": episode_id,
    }


def _normalize_place(raw: Dict[str, Any], episode_id: str) -> Dict[str, Any]:
    place = {
        "name": _as_text(raw.get("name")).strip(),
        "current_situation": _as_text(raw.get("current_situation")),
        "latitude": _as_coordinate(raw.get("latitude"), _DEFAULT_LATITUDE, 90),
        "longitude": _as_coordinate(raw.get("longitude"), _DEFAULT_LONGITUDE, 180),
        "last_mentioned_episode_id": episode_id,
    }
    weather = raw.get("last_weather_condition")
    if isinstance(weather, str) and weather:
        place["last_weather_condition"] = weather
    return place


def _merge_by_name(base: List[Dict[str, Any]], extra: List[Dict[str, Any]], allowed: Tuple[str, ...]) -> List[Dict[str, Any]]:
    merged: Dict[str, Dict[str, Any]] = {}
    for record in base + extra:
        name = record.get("name")
        if not name:
            continue
        current = merged.setdefault(name, {})
        current.update({k: v for k, v in record.items() if k in allowed and v is not None})
    return list(merged.values())


def _is_blank(value: Any) -> bool:
    if isinstance(value, str):
        return not value.strip()
    return value is None or value == [] or value == {}


def _filled(record: Dict[str, Any]) -> Dict[str, Any]:
    return {k: v for k, v in record.items() if k == "name" or not _is_blank(v)}


def _patch(raw: Dict[str, Any], normalized: Dict[str, Any]) -> Dict[str, Any]:
    """Only the fields a proposal actually filled with a usable value, in normalized form."""
    patch: Dict[str, Any] = {}
    for key, value in raw.items():
        if key not in normalized or key in ("name", "last_mentioned_episode_id"):
            continue
        if _is_blank(value) or _is_blank(normalized[key]):
            continue
        # Out-of-range coordinates normalize to the default; never let that replace a stored value.
        if key in ("latitude", "longitude") and normalized[key] != value:
            continue
        patch[key] = normalized[key]
    return patch


def _split_proposals(
    fresh: List[Dict[str, Any]],
    updates: List[Dict[str, Any]],
    *,
    stored: Collection[str],
    mentioned: Collection[str],
    normalize: Callable[[Dict[str, Any], str], Dict[str, Any]],
    episode_id: str,
) -> Tuple[List[Dict[str, Any]], List[Dict[str, Any]]]:
    """Proposals for unseen names become full records; anything naming a stored
    entity is a sparse patch and only applies when that entity is mentioned."""
    created: List[Dict[str, Any]] = []
    patches: List[Dict[str, Any]] = []
    for raw, is_update in [(r, False) for r in fresh] + [(r, True) for r in updates]:
        name = _as_text(raw.get("name")).strip()
        if name in stored:
            if name in mentioned:
                patches.append({**_patch(raw, normalize(raw, episode_id)), "name": name, "last_mentioned_episode_id": episode_id})
        elif not is_update and name not in {c["name"] for c in created}:
            created.append(normalize(raw, episode_id))
    return created, patches


def _is_mentioned(content: str, name: str, reported: Collection[str]) -> bool:
    if name in reported and name in content:
        return True
    if len(name) < 2:
        return False
    # Korean particles attach directly after a name, so only the leading edge is a word boundary.
    return re.search(r"(?<!\w)" + re.escape(name), content) is not None


# ---------------------------------------------------------------------------
# Orchestrator
# ---------------------------------------------------------------------------


class ChapterOrchestrator:
    """``reader`` serves the content lookups the phases make themselves;
    ``tools`` is what the model sees during prewriting and drafting
    (defaults to ``reader``)."""

    def __init__(self, *, reader: Any, generator: TextGenerator, tools: Any = None):
        self.reader = reader
        self.tools = tools if tools is not None else reader
        self.generator = generator
        self._offered: Optional[List[Dict[str, Any]]] = None
        self._units: Dict[Phase, Callable[[JobContext], Awaitable[None]]] = {
            Phase.PLANNING: self._planning,
            Phase.PREWRITING: self._prewriting,
            Phase.DRAFTING: self._drafting,
            Phase.REVISION: self._revision,
            Phase.FINALIZE: self._finalize,
        }

    async def step(self, phase: Phase, ctx: JobContext) -> Tuple[Phase, JobContext]:
        if phase in (Phase.DONE, Phase.FAILED):
            raise PhaseTransitionError(f"Job {ctx.id} is already {phase.value}")
        if phase is not ctx.phase:
            raise PhaseTransitionError(f"Job {ctx.id} is at '{ctx.phase.value}', cannot run '{phase.value}'")

        started = time.perf_counter()
        await self._units[phase](ctx)
        following = next_phase(phase)
        ctx.phase_history.append(phase.value)
        ctx.phase = following
        _emit_structured_observability(
            component="orchestrator",
            event="phase_completed",
            job_id=ctx.id,
            latency_ms=int((time.perf_counter() - started) * 1000),
            extra={"phase": phase.value, "next_phase": following.value},
        )
        return following, ctx

    async def run(self, ctx: JobContext) -> JobContext:
        phase = ctx.phase
        while phase is not Phase.DONE:
            phase, ctx = await self.step(phase, ctx)
        return ctx

    # -- helpers ------------------------------------------------------------

    async def _model_tools(self, phase: Phase) -> List[Dict[str, Any]]:
        if self._offered is None:
            try:
                self._offered = list(await self.tools.list_tools())
            except (ToolCallError, AttributeError) as exc:
                logger.warning("[WARNING] model tools unavailable for %s: %s", phase.value, exc)
                return []
        return self._offered

    async def _ask(self, ctx: JobContext, phase: Phase, prompt: str, *, system: str, with_tools: bool = False) -> Optional[str]:
        tools = None
        executor = None
        if with_tools:
            tools = await self._model_tools(phase) or None
            executor = self.tools.call_text if tools else None
        try:
            text = await self.generator.generate(prompt, system=system, tools=tools, tool_executor=executor)
        except Exception as exc:
            logger.warning("[WARNING] model call failed in %s for job %s: %s", phase.value, ctx.id, exc)
            ctx.model_errors.append(f"{phase.value}: {exc}")
            return None
        return text

    def _parse_object(self, ctx: JobContext, phase: Phase, output: Optional[str]) -> Dict[str, Any]:
        if output is None:
            return {}
        try:
            parsed = parse_json_payload(output)
        except ValueError as exc:
            logger.warning("[WARNING] %s output for job %s was not JSON: %s", phase.value, ctx.id, exc)
            return {}
        return parsed if isinstance(parsed, dict) else {}

    async def _lookup_weather(self, ctx: JobContext) -> None:
        offered = await self._model_tools(Phase.PREWRITING)
        if not any(t.get("name") == WEATHER_TOOL for t in offered):
            return
        for place in (ctx.references["places"] or ctx.known_places)[:_WEATHER_LOOKUP_LIMIT]:
            name = place.get("name")
            latitude, longitude = place.get("latitude"), place.get("longitude")
            if not name or not all(isinstance(v, (int, float)) and not isinstance(v, bool) for v in (latitude, longitude)):
                continue
            try:
                report = await self.tools.call(
                    WEATHER_TOOL,
                    {
                        "latitude": float(latitude),
                        "longitude": float(longitude),
                        "usage": {"phase": Phase.PREWRITING.value, "purpose": f"{name} 현재 날씨 확인"},
                    },
                )
            except ToolCallError as exc:
                logger.warning("[WARNING] weather lookup for %s failed in job %s: %s", name, ctx.id, exc)
                continue
            condition = report.get("condition") if isinstance(report, dict) else None
            if isinstance(condition, str) and condition:
                ctx.weather[name] = condition

    async def _resolve(self, ctx: JobContext, kind: str, names: List[str]) -> None:
        held = ctx.references[kind]
        for name in names:
            if any(r.get("name") == name for r in held):
                continue
            record = await self.reader.call(f"{kind}.get", {"name": name})
            if isinstance(record, dict):
                held.append(record)

    # -- phases -------------------------------------------------------------

    async def _planning(self, ctx: JobContext) -> None:
        episodes = await self.reader.call("episodes.list", {"limit": 5})
        ctx.recent_episodes = episodes if isinstance(episodes, list) else []
        characters = await self.reader.call("characters.list", {})
        ctx.known_characters = characters if isinstance(characters, list) else []
        places = await self.reader.call("places.list", {})
        ctx.known_places = places if isinstance(places, list) else []

        episode_lines = _bullet_list(ctx.recent_episodes, lambda e: f"{e.get('id')}: {e.get('summary') or ''}")
        prompt = "\n".join(
            [
                "# Planning Phase",
                "",
                "## 최근 에피소드 (최신순)",
                episode_lines,
                "",
                "## 기존 캐릭터",
                _bullet_list(ctx.known_characters, lambda c: str(c.get("name"))),
                "",
                "## 기존 장소",
                _bullet_list(ctx.known_places, lambda p: str(p.get("name"))),
                "",
                "## 작업",
                "이전 에피소드들의 주요 내용, 등장인물, 장소, 진행 상황을 요약하세요. 응답 형식:",
                "```json",
                '{"previousStory": "지금까지의 이야기 요약 (300-500자)", "keyCharacters": ["캐릭터1"], "keyPlaces": ["장소1"]}',
                "```",
            ]
        )
        output = await self._ask(ctx, Phase.PLANNING, prompt, system=ANALYST_PROMPT)
        result = self._parse_object(ctx, Phase.PLANNING, output)

        previous = result.get("previousStory")
        if isinstance(previous, str) and previous.strip():
            ctx.previous_story = previous.strip()
        else:
            summaries = [str(e.get("summary") or "").strip() for e in reversed(ctx.recent_episodes)]
            ctx.previous_story = " ".join(s for s in summaries if s)

        await self._resolve(ctx, "characters", _names(result.get("keyCharacters")))
        await self._resolve(ctx, "places", _names(result.get("keyPlaces")))

    async def _prewriting(self, ctx: JobContext) -> None:
        prompt = "\n".join(
            [
                "# Prewriting Phase",
                "",
                f"현재 시간: {ctx.current_time.isoformat()}",
                "",
                "## 지금까지의 이야기",
                ctx.previous_story or "(첫 에피소드)",
                "",
                "## 기존 캐릭터",
                _bullet_list(
                    ctx.references["characters"] or ctx.known_characters,
                    lambda c: f"{c.get('name')}: {c.get('personality') or ''} (현재: {c.get('current_place') or ''})",
                ),
                "",
                "## 기존 장소",
                _bullet_list(
                    ctx.references["places"] or ctx.known_places,
                    lambda p: f"{p.get('name')}: {p.get('current_situation') or ''}",
                ),
                "",
                "## 작업",
                "다음 챕터의 주요 사건과 갈등, 등장 캐릭터와 역할, 배경 장소와 분위기를 구상하세요. 응답 형식:",
                "```json",
                '{"outline": "전개 방향 요약", "mentionedCharacters": ["이름"], "mentionedPlaces": ["장소"]}',
                "```",
            ]
        )
        output = await self._ask(ctx, Phase.PREWRITING, prompt, system=SYSTEM_PROMPT, with_tools=True)
        result = self._parse_object(ctx, Phase.PREWRITING, output)
        if result:
            ctx.outline = _as_text(result.get("outline")).strip()
            await self._resolve(ctx, "characters", _names(result.get("mentionedCharacters")))
            await self._resolve(ctx, "places", _names(result.get("mentionedPlaces")))
        await self._lookup_weather(ctx)

    async def _drafting(self, ctx: JobContext) -> None:
        prompt = "\n".join(
            [
                "# Drafting Phase",
                "",
                "## 지금까지의 이야기",
                ctx.previous_story or "(첫 에피소드)",
                "",
                "## 구상",
                ctx.outline or "(구상 내용 없음)",
                "",
                "## 캐릭터 정보",
                _bullet_list(
                    ctx.references["characters"],
                    lambda c: f"{c.get('name')}: {c.get('personality') or ''}, {c.get('appearance') or ''} "
                    f"(위치: {c.get('current_place') or '알 수 없음'})",
                ),
                "",
                "## 장소 정보",
                _bullet_list(
                    ctx.references["places"],
                    lambda p: f"{p.get('name')}: {p.get('current_situation') or ''} "
                    f"(좌표: {p.get('latitude')}, {p.get('longitude')})"
                    + (f", 현재 날씨: {ctx.weather[p['name']]}" if p.get("name") in ctx.weather else ""),
                ),
                "",
                "## 작업",
                f"약 {EPISODE_CONTENT_MAX_CHARS}자 이내의 챕터 본문을 작성하세요. 작성된 본문만 출력하세요 (JSON 아님).",
            ]
        )
        error_count = len(ctx.model_errors)
        output = await self._ask(ctx, Phase.DRAFTING, prompt, system=SYSTEM_PROMPT, with_tools=True)
        if output and output.strip():
            ctx.content = output.strip()
            return

        upstream = ctx.model_errors[-1] if len(ctx.model_errors) > error_count else "drafting: empty completion"
        ctx.fallback_used = True
        ctx.upstream_error = upstream.split(": ", 1)[-1]
        ctx.content = generate_fallback_chapter(
            characters=ctx.references["characters"] + ctx.known_characters,
            places=ctx.references["places"] + ctx.known_places,
            episodes=ctx.recent_episodes,
        )
        logger.warning("[WARNING] job %s drafting fell back to local generator: %s", ctx.id, ctx.upstream_error)
        _emit_structured_observability(
            component="orchestrator",
            event="fallback_used",
            job_id=ctx.id,
            error_code="UPSTREAM_ERROR",
            extra={"phase": Phase.DRAFTING.value, "upstream_error": ctx.upstream_error},
        )

    async def _revision(self, ctx: JobContext) -> None:
        prompt = "\n".join(
            [
                "# Revision Phase",
                "",
                "## 작성한 초고",
                ctx.content,
                "",
                "## 작업",
                "문장의 리듬과 흐름, 불필요한 반복, 장면 전환, 캐릭터/장소 정보의 일관성을 검토해 수정하세요.",
                "수정된 최종본을 그대로 출력하고, 마지막에 본문에 등장한 이름을 JSON으로 덧붙이세요:",
                "```json",
                '{"mentionedCharacters": ["이름"], "mentionedPlaces": ["장소"]}',
                "```",
            ]
        )
        output = await self._ask(ctx, Phase.REVISION, prompt, system=SYSTEM_PROMPT)
        if output:
            match = extract_json_block(output)
            revised = output[: match.start()].strip() if match else output.strip()
            if revised:
                ctx.content = revised
            if match:
                try:
                    mentioned = parse_json_payload(match.group(0))
                except ValueError as exc:
                    logger.warning("[WARNING] revision metadata for job %s was not JSON: %s", ctx.id, exc)
                    mentioned = {}
                if isinstance(mentioned, dict):
                    ctx.mentioned["characters"] = _names(mentioned.get("mentionedCharacters"))
                    ctx.mentioned["places"] = _names(mentioned.get("mentionedPlaces"))
                    await self._resolve(ctx, "characters", ctx.mentioned["characters"])
                    await self._resolve(ctx, "places", ctx.mentioned["places"])
        ctx.content = ctx.content[:EPISODE_CONTENT_MAX_CHARS]

    async def _finalize(self, ctx: JobContext) -> None:
        ctx.content = ctx.content[:EPISODE_CONTENT_MAX_CHARS]
        ctx.summary = " ".join(ctx.content.split())[:SUMMARY_MAX_CHARS]

        # Resolved references first; listed entities cover names the model never asked about.
        stored_characters = _merge_by_name(ctx.known_characters, ctx.references["characters"], _CHARACTER_FIELDS)
        stored_places = _merge_by_name(ctx.known_places, ctx.references["places"], _PLACE_FIELDS)
        referenced_characters = [
            _normalize_character(c, ctx.id)
            for c in stored_characters
            if _is_mentioned(ctx.content, c["name"], ctx.mentioned["characters"])
        ]
        referenced_places = [
            _normalize_place(p, ctx.id)
            for p in stored_places
            if _is_mentioned(ctx.content, p["name"], ctx.mentioned["places"])
        ]

        prompt = "\n".join(
            [
                "# Finalize Phase",
                "",
                "## 최종 콘텐츠",
                ctx.content,
                "",
                "## 기존 캐릭터",
                _bullet_list(referenced_characters, lambda c: str(c["name"])),
                "",
                "## 기존 장소",
                _bullet_list(referenced_places, lambda p: str(p["name"])),
                "",
                "## 작업",
                "기존 캐릭터/장소는 변경된 정보만, 새로운 캐릭터/장소는 모든 필드를 채워 JSON으로 답하세요:",
                "```json",
                '{"newCharacters": [{"name": "", "personality": "", "background": "", "appearance": "", '
                '"current_place": "", "relationships": {}, "major_events": [], "character_traits": [], '
                '"current_status": ""}], "updatedCharacters": [{"name": "", "current_place": "", "current_status": ""}], '
                '"newPlaces": [{"name": "", "current_situation": "", "latitude": 37.5, "longitude": 127.0}], '
                '"updatedPlaces": [{"name": "", "current_situation": ""}]}',
                "```",
            ]
        )
        output = await self._ask(ctx, Phase.FINALIZE, prompt, system=ANALYST_PROMPT)
        result = self._parse_object(ctx, Phase.FINALIZE, output)

        def _records(key: str) -> List[Dict[str, Any]]:
            values = result.get(key)
            return [v for v in values if isinstance(v, dict) and _as_text(v.get("name")).strip()] if isinstance(values, list) else []

        new_characters, character_patches = _split_proposals(
            _records("newCharacters"),
            _records("updatedCharacters"),
            stored={c["name"] for c in stored_characters},
            mentioned={c["name"] for c in referenced_characters},
            normalize=_normalize_character,
            episode_id=ctx.id,
        )
        new_places, place_patches = _split_proposals(
            _records("newPlaces"),
            _records("updatedPlaces"),
            stored={p["name"] for p in stored_places},
            mentioned={p["name"] for p in referenced_places},
            normalize=_normalize_place,
            episode_id=ctx.id,
        )

        ctx.characters = _merge_by_name(referenced_characters + new_characters, character_patches, _CHARACTER_FIELDS)
        ctx.places = _merge_by_name(referenced_places + new_places, place_patches, _PLACE_FIELDS)
        for place in ctx.places:
            if place["name"] in ctx.weather:
                place["last_weather_condition"] = ctx.weather[place["name"]]


# ---------------------------------------------------------------------------
# Persistence
# ---------------------------------------------------------------------------


def is_duplicate_error(exc: ToolCallError) -> bool:
    # Free-text match kept for stores that do not tag conflicts.
    if (exc.data or {}).get("error_type") == "DuplicateRecordError":
        return True
    text = str(exc).lower()
    return "duplicate" in text or "already exists" in text


async def _upsert(writer: Any, namespace: str, record: Dict[str, Any], job_id: str) -> str:
    try:
        await writer.call(f"{namespace}.create", record)
        outcome = "created"
    except ToolCallError as exc:
        if not is_duplicate_error(exc):
            raise
        # Blank fields never overwrite stored values.
        await writer.call(f"{namespace}.update", _filled(record))
        outcome = "updated"
    _emit_structured_observability(
        component="orchestrator",
        event="entity_upsert",
        job_id=job_id,
        tool_name=f"{namespace}.{'create' if outcome == 'created' else 'update'}",
        extra={"entity": record.get("name"), "outcome": outcome},
    )
    return outcome


async def persist_job(ctx: JobContext, writer: Any) -> Dict[str, int]:
    """Write the episode, then each place, then each character. Returns created/updated counts."""
    if ctx.phase is not Phase.DONE:
        raise PhaseTransitionError(f"Job {ctx.id} cannot be persisted before finalize (at '{ctx.phase.value}')")

    await writer.call(
        "episodes.create",
        {
            "id": ctx.id,
            "content": ctx.content,
            "summary": ctx.summary,
            "characters": [c["name"] for c in ctx.characters],
            "places": [p["name"] for p in ctx.places],
        },
    )
    counts = {"characters_added": 0, "characters_updated": 0, "places_added": 0, "places_updated": 0}
    for place in ctx.places:
        outcome = await _upsert(writer, "places", place, ctx.id)
        counts["places_added" if outcome == "created" else "places_updated"] += 1
    for character in ctx.characters:
        outcome = await _upsert(writer, "characters", character, ctx.id)
        counts["characters_added" if outcome == "created" else "characters_updated"] += 1
    return counts


# ---------------------------------------------------------------------------
# Job entry point
# ---------------------------------------------------------------------------


@dataclass
class JobResult:
    ok: bool
    chapter_id: Optional[str] = None
    content: str = ""
    stats: Dict[str, int] = field(default_factory=dict)
    fallback_used: bool = False
    upstream_error: Optional[str] = None
    error: Optional[str] = None
    phase_history: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.ok,
            "chapterId": self.chapter_id,
            "content": self.content,
            "stats": {
                "wordCount": self.stats.get("word_count", 0),
                "charactersAdded": self.stats.get("characters_added", 0),
                "charactersUpdated": self.stats.get("characters_updated", 0),
                "placesAdded": self.stats.get("places_added", 0),
                "placesUpdated": self.stats.get("places_updated", 0),
                "executionTime": self.stats.get("execution_time_ms", 0),
            },
            "fallbackUsed": self.fallback_used,
            "upstreamError": self.upstream_error,
            "error": self.error,
            "phases": list(self.phase_history),
        }


def _parse_current_time(raw: Any, clock: Callable[[], float]) -> dt.datetime:
    if raw in (None, ""):
        return dt.datetime.fromtimestamp(clock(), tz=dt.timezone.utc)
    if not isinstance(raw, str):
        raise ValueError("currentTime must be an ISO-8601 string")
    parsed = dt.datetime.fromisoformat(raw.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=dt.timezone.utc)
    return parsed


async def generate_chapter(
    request: Dict[str, Any],
    *,
    reader: Any,
    writer: Any,
    generator: TextGenerator,
    tools: Any = None,
    clock: Callable[[], float] = time.time,
) -> JobResult:
    """Run all phases and persist the result. Never raises; failures come back as ``ok=False``.

    ``tools`` is the client the model may call (read plus weather tools); it
    defaults to ``reader``.
    """
    started = clock()
    ctx: Optional[JobContext] = None
    try:
        ctx = new_job_context(_parse_current_time((request or {}).get("currentTime"), clock))
        await ChapterOrchestrator(reader=reader, generator=generator, tools=tools).run(ctx)
        counts = await persist_job(ctx, writer)
    except Exception as exc:
        logger.exception("chapter generation failed")
        if ctx is not None:
            ctx.phase = Phase.FAILED
        _emit_structured_observability(
            component="orchestrator",
            event="job_failed",
            job_id=ctx.id if ctx else None,
            error_code=type(exc).__name__,
        )
        return JobResult(
            ok=False,
            chapter_id=ctx.id if ctx else None,
            stats={"execution_time_ms": int((clock() - started) * 1000)},
            fallback_used=bool(ctx and ctx.fallback_used),
            upstream_error=ctx.upstream_error if ctx else None,
            error=str(exc) or type(exc).__name__,
            phase_history=list(ctx.phase_history) if ctx else [],
        )

    stats = {
        "word_count": len(ctx.content.split()),
        "execution_time_ms": int((clock() - started) * 1000),
        **counts,
    }
    _emit_structured_observability(
        component="orchestrator",
        event="job_completed",
        job_id=ctx.id,
        latency_ms=stats["execution_time_ms"],
        extra={"fallback_used": ctx.fallback_used, **counts},
    )
    return JobResult(
        ok=True,
        chapter_id=ctx.id,
        content=ctx.content,
        stats=stats,
        fallback_used=ctx.fallback_used,
        upstream_error=ctx.upstream_error,
        phase_history=list(ctx.phase_history),
    )
