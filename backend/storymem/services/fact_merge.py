"""
Fact merge rules.

Pure functions that fold one parsed extraction result into a FactStore. Model
output is untrusted: malformed entries are dropped silently, nothing here
raises on bad input.
"""

import logging
import re
from typing import Any, Dict, Iterable, List, Optional

from ..models.fact_store import (
    VALID_CATEGORIES,
    CompressionLevel,
    FactStore,
    KnownCharacterAttitude,
    NpcDossier,
    PlotItem,
    StoryPage,
    character_vector_key,
)
from ..utils.ids import generate_id
from .interfaces import ChatTurn

logger = logging.getLogger(__name__)

MIN_PAGE_CONTENT = 10

_TIMELINE_ENTRY = re.compile(r"^D(\d+)(?:\s*-\s*D?(\d+))?:\s*(.*)$")


def _text(value: Any) -> str:
    if value is None:
        return ""
    return str(value).strip()


def _string_list(value: Any) -> List[str]:
    if not isinstance(value, list):
        return []
    return [str(v).strip() for v in value if v is not None and str(v).strip()]


def _parse_timeline(timeline: str):
    entries = []
    for line in timeline.split("\n"):
        m = _TIMELINE_ENTRY.match(line)
        if m:
            start = int(m.group(1))
            end = int(m.group(2) or m.group(1))
            entries.append((start, end, line))
    return entries


def merge_timelines(old_timeline: str, new_timeline: str) -> str:
    """Merge a model-written timeline into the stored one.

    The day range covered by the new entries replaces whatever the old timeline
    said about those days; old entries entirely before or after that range are
    kept verbatim. A new timeline without any `D<n>:` entry is ignored.
    """
    if not old_timeline:
        return new_timeline or ""
    if not new_timeline:
        return old_timeline

    new_entries = _parse_timeline(new_timeline)
    if not new_entries:
        return old_timeline
    old_entries = _parse_timeline(old_timeline)

    new_start = min(e[0] for e in new_entries)
    new_end = max(e[1] for e in new_entries)

    before = [raw for start, end, raw in old_entries if end < new_start]
    after = [raw for start, end, raw in old_entries if start > new_end]
    return "\n".join(before + [raw for _, _, raw in new_entries] + after)


def upsert_known_attitudes(
    existing: List[KnownCharacterAttitude],
    incoming: Iterable[Dict[str, Any]],
    known_names: Iterable[str],
) -> List[KnownCharacterAttitude]:
    """Only names in the pre-declared cast are accepted; unknown names are ignored."""
    known_lower = {n.strip().lower() for n in known_names}
    result = list(existing)
    for entry in incoming:
        if not isinstance(entry, dict):
            continue
        name = _text(entry.get("name"))
        if not name or name.lower() not in known_lower:
            continue
        attitude = _text(entry.get("attitude") or entry.get("relationship"))
        current = next((k for k in result if k.name.lower() == name.lower()), None)
        if current is not None:
            if attitude:
                current.attitude = attitude
        else:
            result.append(KnownCharacterAttitude(name=name, attitude=attitude))
    return result


def upsert_npcs(
    existing: List[NpcDossier],
    incoming: Iterable[Dict[str, Any]],
    user_name: str = "",
    known_names: Iterable[str] = (),
    embeddings: Optional[Dict[str, List[float]]] = None,
) -> List[NpcDossier]:
    """Upsert dossiers by case-insensitive name.

    Only non-empty incoming fields overwrite; keyword lists are unioned. The
    protagonist and pre-declared cast never become NPCs. When `embeddings` is
    given, the vector of every dossier that changed is dropped so it gets
    re-embedded.
    """
    excluded = {n.strip().lower() for n in known_names}
    user_key = (user_name or "").strip().lower()
    result = list(existing)

    for entry in incoming:
        if not isinstance(entry, dict):
            continue
        name = _text(entry.get("name"))
        key = name.lower()
        if not name or key == user_key or key in excluded:
            continue

        fields = {
            "role": _text(entry.get("role")),
            "appearance": _text(entry.get("appearance")),
            "personality": _text(entry.get("personality")),
            "attitude": _text(entry.get("attitude") or entry.get("relationship")),
        }
        keywords = _string_list(entry.get("keywords"))

        current = next((c for c in result if c.name.lower() == key), None)
        if current is None:
            result.append(NpcDossier(name=name, keywords=keywords, **fields))
            continue

        changed = False
        for field_name, value in fields.items():
            if value and getattr(current, field_name) != value:
                setattr(current, field_name, value)
                changed = True
        for kw in keywords:
            if kw not in current.keywords:
                current.keywords.append(kw)
                changed = True
        if changed and embeddings is not None:
            embeddings.pop(character_vector_key(current.name), None)

    return result


def upsert_items(existing: List[PlotItem], incoming: Iterable[Dict[str, Any]]) -> List[PlotItem]:
    result = list(existing)
    for entry in incoming:
        if not isinstance(entry, dict):
            continue
        name = _text(entry.get("name"))
        if not name:
            continue
        status = _text(entry.get("status"))
        significance = _text(entry.get("significance"))
        current = next((it for it in result if it.name.lower() == name.lower()), None)
        if current is None:
            result.append(PlotItem(name=name, status=status, significance=significance))
            continue
        if status:
            current.status = status
        if significance:
            current.significance = significance
    return result


def build_pages(
    incoming: Iterable[Dict[str, Any]],
    npc_names: Iterable[str],
    source_dates: Iterable[str] = (),
) -> List[StoryPage]:
    """Validate raw page dicts into FRESH StoryPages; invalid ones are dropped."""
    names = set(npc_names)
    sources = list(source_dates)
    pages: List[StoryPage] = []

    for entry in incoming:
        if not isinstance(entry, dict):
            continue
        title = _text(entry.get("title"))
        content = _text(entry.get("content"))
        if not title or len(content) < MIN_PAGE_CONTENT:
            logger.debug(f"[EXTRACTION] Dropping page without title/content: {title!r}")
            continue
        keywords = _string_list(entry.get("keywords"))
        if not keywords:
            logger.debug(f"[EXTRACTION] Dropping page without keywords: {title!r}")
            continue

        categories = [c for c in _string_list(entry.get("categories")) if c in VALID_CATEGORIES]
        pages.append(StoryPage(
            id=generate_id("pg"),
            day=entry.get("day") or "",
            date=entry.get("date") or "",
            title=title,
            content=content,
            keywords=keywords,
            characters=[k for k in keywords if k in names],
            categories=categories,
            significance=_text(entry.get("significance")) or "medium",
            compression_level=CompressionLevel.FRESH,
            source_dates=list(sources),
        ))
    return pages


def apply_extraction_result(
    store: FactStore,
    result: Dict[str, Any],
    known_names: Iterable[str] = (),
    user_name: str = "",
    source_dates: Iterable[str] = (),
) -> List[str]:
    """Fold one parsed extraction result into the store. Returns the new page ids."""
    if not isinstance(result, dict):
        logger.warning(f"[EXTRACTION] Ignoring non-object extraction result: {type(result).__name__}")
        return []

    known = [n for n in known_names if n]
    timeline = result.get("timeline")
    if isinstance(timeline, str) and timeline.strip():
        store.timeline = merge_timelines(store.timeline, timeline.strip())

    attitudes = result.get("knownCharacterAttitudes")
    if isinstance(attitudes, list):
        store.known_character_attitudes = upsert_known_attitudes(
            store.known_character_attitudes, attitudes, known
        )

    new_characters = result.get("newCharacters")
    if isinstance(new_characters, list):
        store.characters = upsert_npcs(
            store.characters, new_characters, user_name, known, embeddings=store.embeddings
        )
    elif isinstance(result.get("characters"), list):
        # Single-list responses: the known cast only contributes attitudes
        known_lower = {n.lower() for n in known}
        legacy = [c for c in result["characters"] if isinstance(c, dict)]
        store.known_character_attitudes = upsert_known_attitudes(
            store.known_character_attitudes,
            [c for c in legacy if _text(c.get("name")).lower() in known_lower],
            known,
        )
        store.characters = upsert_npcs(store.characters, legacy, user_name, known, embeddings=store.embeddings)

    items = result.get("items")
    if isinstance(items, list):
        store.items = upsert_items(store.items, items)

    new_pages: List[StoryPage] = []
    raw_pages = result.get("newPages")
    if isinstance(raw_pages, list):
        new_pages = build_pages(raw_pages, [c.name for c in store.characters], source_dates)
        store.pages.extend(new_pages)

    return [p.id for p in new_pages]


def mark_turns_extracted(store: FactStore, turns: Iterable[ChatTurn]) -> None:
    for turn in turns:
        if turn is not None and turn.turn_id:
            store.processing.extracted_msg_dates.add(str(turn.turn_id))


def turn_ids(turns: Iterable[ChatTurn]) -> List[str]:
    return [str(t.turn_id) for t in turns if t.turn_id]


def format_turns(turns: Iterable[ChatTurn]) -> str:
    return "\n\n".join(f"{t.name}: {t.text}" for t in turns)
