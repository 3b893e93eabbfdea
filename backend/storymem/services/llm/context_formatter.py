"""
Context Formatter

Renders FactStore content into the text blocks injected into the host prompt
(story index, NPC dossiers, recalled pages) and the context sections used by
the extraction and recall prompts.
"""

import json
from typing import Iterable, List, Optional

from ...models.fact_store import MEMORY_CATEGORIES, FactStore, NpcDossier, StoryPage

RECALL_OPEN = "[记忆闪回]"
RECALL_CLOSE = "[/记忆闪回]"
CANDIDATE_CONTENT_LIMIT = 500


def _name_with_role(character: NpcDossier) -> str:
    return f"{character.name}（{character.role}）" if character.role else character.name


def format_dossier(character: NpcDossier) -> str:
    parts = [f"[角色档案: {character.name}]"]
    if character.role:
        parts.append(f"身份: {character.role}")
    if character.appearance:
        parts.append(f"外貌: {character.appearance}")
    if character.personality:
        parts.append(f"性格: {character.personality}")
    if character.attitude:
        parts.append(f"对主角态度: {character.attitude}")
    parts.append("[/角色档案]")
    return "\n".join(parts)


def split_npcs_by_keywords(characters: Iterable[NpcDossier], recent_text: str):
    """Partition NPCs into (activated, dormant) by case-insensitive keyword hits in recent text.

    An NPC without keywords is matched on its name.
    """
    haystack = (recent_text or "").lower()
    activated: List[NpcDossier] = []
    dormant: List[NpcDossier] = []
    for c in characters:
        keywords = c.keywords if c.keywords else [c.name]
        if any(kw and kw.lower() in haystack for kw in keywords):
            activated.append(c)
        else:
            dormant.append(c)
    return activated, dormant


def format_story_index(
    store: FactStore,
    npc_mode: str = "half",
    user_name: str = "",
    recent_text: str = "",
) -> str:
    """Always-on compact index: timeline, items, known-cast attitudes, NPC section.

    npc_mode:
        full     every NPC dossier
        half     names with a role hint
        keyword  dossiers for NPCs whose keywords appear in `recent_text`,
                 names for the rest; behaves like half when nothing matches
    """
    user_label = user_name or "{{user}}"
    parts = ["[故事索引]"]

    if store.timeline:
        parts.append("一、剧情时间线")
        parts.append(store.timeline)

    if store.items:
        parts.append("\n二、物品")
        for item in store.items:
            parts.append(f"· {item.name} | {item.status or ''}")

    if store.known_character_attitudes:
        parts.append(f"\n三、已有角色对{user_label}态度/关系")
        for c in store.known_character_attitudes:
            if c.attitude:
                parts.append(f"· {c.name}: {c.attitude}")

    if store.characters:
        if npc_mode == "full":
            parts.append("\n四、已登场NPC档案")
            parts.extend(format_dossier(c) for c in store.characters)
        elif npc_mode == "keyword":
            activated, dormant = split_npcs_by_keywords(store.characters, recent_text)
            if activated:
                parts.append("\n四、已登场NPC档案（激活）")
                parts.extend(format_dossier(c) for c in activated)
                if dormant:
                    parts.append(f"\n五、其他NPC: {'、'.join(_name_with_role(c) for c in dormant)}")
            else:
                parts.append(f"\n四、已登场NPC: {'、'.join(_name_with_role(c) for c in store.characters)}")
        else:
            parts.append(f"\n四、已登场NPC: {'、'.join(_name_with_role(c) for c in store.characters)}")

    parts.append("[/故事索引]")
    return "\n".join(parts)


def format_recalled_pages(pages: List[StoryPage]) -> str:
    """Raw page dump used when the recall agent is unavailable."""
    if not pages:
        return ""
    parts = [RECALL_OPEN]
    for page in pages:
        parts.append(f"回忆起了……「{page.title}」({page.day})")
        parts.append(page.content)
        parts.append("")
    parts.append(RECALL_CLOSE)
    return "\n".join(parts)


def category_labels(page: StoryPage) -> str:
    return ", ".join(MEMORY_CATEGORIES.get(c, c) for c in page.categories) or "无"


def format_page_listing(page: StoryPage) -> str:
    return f"[{page.id}] {page.day} | {page.title}"


def format_candidate_section(candidates: Optional[List[StoryPage]]) -> str:
    if not candidates:
        return ""
    blocks = []
    for p in candidates:
        content = p.content
        if len(content) > CANDIDATE_CONTENT_LIMIT:
            content = content[:CANDIDATE_CONTENT_LIMIT] + "…"
        blocks.append(f"### {format_page_listing(p)} | 分类: {category_labels(p)}\n{content}")
    return "\n\n".join(blocks)


def format_catalog_section(store: FactStore, exclude_ids: Iterable[str]) -> str:
    excluded = set(exclude_ids)
    return "\n".join(
        format_page_listing(p) for p in store.retrievable_pages() if p.id not in excluded
    )


def format_npc_attitudes(store: FactStore) -> str:
    return "\n".join(f"  {c.name}: {c.attitude or '(未知)'}" for c in store.characters)


def _json_or_empty(models) -> str:
    if not models:
        return "[]"
    return json.dumps(
        [m.model_dump(by_alias=True, mode="json") for m in models],
        ensure_ascii=False,
        indent=2,
    )


def extraction_context(store: FactStore, known_names: Iterable[str], user_name: str) -> dict:
    """Template variables describing the current store for the extraction prompts."""
    names = sorted(set(known_names))
    return {
        "known_names": "、".join(names) if names else "（无）",
        "user_name": user_name or "{{user}}",
        "timeline": store.timeline or "（尚无，请从头创建）",
        "known_attitudes": _json_or_empty(store.known_character_attitudes),
        "characters": _json_or_empty(store.characters),
        "items": _json_or_empty(store.items),
    }
