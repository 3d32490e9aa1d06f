"""fallback_story.py — Deterministic backup chapter used when the model call fails.

Pure function of its inputs: the same grounding context always yields the same
chapter, so a degraded run is reproducible from its logs.
"""
from __future__ import annotations

from typing import Any, Dict, List, Optional, Sequence

from .config import EPISODE_CONTENT_MAX_CHARS

__all__ = [
    "DEFAULT_LENGTH",
    "DEFAULT_STYLE",
    "DEFAULT_TOPIC",
    "generate_fallback_chapter",
]

DEFAULT_TOPIC = "Escape from Seoul"
DEFAULT_STYLE = "호러"
DEFAULT_LENGTH = "중편"

_DEFAULT_PLACE = "한강 다리"
_DEFAULT_LEAD = "이준"
_DEFAULT_PARTNER = "민서"


def _take(items: Optional[Sequence[Any]], n: int) -> List[Any]:
    if not items:
        return []
    return list(items)[: max(0, n)]


def _names(items: Optional[Sequence[Any]], n: int) -> List[str]:
    out: List[str] = []
    for item in _take(items, n):
        name = item.get("name") if isinstance(item, dict) else item
        if isinstance(name, str) and name.strip():
            out.append(name.strip())
    return out


def _excerpts(episodes: Optional[Sequence[Dict[str, Any]]], n: int) -> List[str]:
    out: List[str] = []
    for episode in _take(episodes, n):
        if not isinstance(episode, dict):
            continue
        text = episode.get("content") or episode.get("summary")
        if isinstance(text, str) and text.strip():
            out.append(text.strip())
    return out


def generate_fallback_chapter(
    *,
    characters: Optional[Sequence[Any]] = None,
    places: Optional[Sequence[Any]] = None,
    episodes: Optional[Sequence[Dict[str, Any]]] = None,
    topic: str = DEFAULT_TOPIC,
    style: str = DEFAULT_STYLE,
    length: str = DEFAULT_LENGTH,
    chapters: int = 1,
) -> str:
    """Assemble a short Korean chapter from up to five characters, five places and three recent episodes.

    ``characters``/``places`` accept records with a ``name`` or bare names.
    Missing context falls back to fixed names, so the result is never empty.
    """
    char_names = _names(characters, 5)
    place_names = _names(places, 5)
    recent = _excerpts(episodes, 3)

    lead = char_names[0] if char_names else _DEFAULT_LEAD
    partner = char_names[1] if len(char_names) > 1 else _DEFAULT_PARTNER
    start = place_names[0] if place_names else _DEFAULT_PLACE

    lines: List[str] = [f"# {topic} — (백업 생성)", "", f"장르: {style} / 분량: {length}", ""]
    for index in range(1, max(1, int(chapters)) + 1):
        lines.append(f"## Chapter {index}")
        lines.append("")
        lines.append(
            "도시는 침묵했지만, 먼 곳에서 퍼져오는 비명과 사이렌이 서울의 밤을 찢고 있었다. "
            f"우리는 {start} 근처에서 흩어진 식량과 약품을 추슬렀다."
        )
        lines.append(f"좀비는 느리지만 끈질겼다. {lead}는 숨을 고르며 말했다. `지금 움직이면 살 수 있어. 멈추면 끝이야.`")
        if len(place_names) > 1:
            lines.append(f"다음 목적지는 {place_names[1]}였다. 지도보다 사람의 감이 더 믿을 만했다.")
        lines.append(
            "우리는 서로를 의심하지 않으려 애썼다. 인간의 갈등은 언제나 위기보다 가까웠다. "
            f"재빨리 통로를 지나며 {partner}가 뒤를 지켰다."
        )
        if recent:
            lines.append(f"지난 기록: {recent[0][:140]}...")
        lines.append("")

    return "\n".join(lines).strip()[:EPISODE_CONTENT_MAX_CHARS]
