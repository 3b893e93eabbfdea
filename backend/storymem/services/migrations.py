"""
Forward-only migration chain for stored memory documents.

Operates on raw dicts so documents written by any earlier layout can be
lifted to the current schema before pydantic validation:

    v1  storyBible + memories
    v2  flat timeline / characters / items / pages
    v3  known-cast attitudes split out of the NPC list
    v4  page categories, embeddings cache reset
"""

import logging
from typing import Any, Dict, Iterable, Optional

from ..errors import StoreMigrationError
from ..models.fact_store import DATA_VERSION, CompressionLevel, FactStore, now_ms
from ..utils.ids import generate_id

logger = logging.getLogger(__name__)


def create_default_document() -> Dict[str, Any]:
    return FactStore().to_document()


def _merged_processing(old: Dict[str, Any], base: Dict[str, Any]) -> Dict[str, Any]:
    processing = dict(base.get("processing") or {})
    processing.update(old.get("processing") or {})
    return processing


def migrate_v1_to_v2(old: Dict[str, Any]) -> Dict[str, Any]:
    logger.info("[STORE] Migrating memory document v1 -> v2")
    new = create_default_document()
    new["version"] = 2
    bible = old.get("storyBible") or {}

    if bible.get("timeline"):
        new["timeline"] = bible["timeline"]
    if isinstance(bible.get("characters"), list):
        new["characters"] = [
            {
                "name": c.get("name") or "",
                "appearance": c.get("appearance") or "",
                "personality": c.get("personality") or "",
                "attitude": c.get("relationship") or c.get("attitude") or "",
            }
            for c in bible["characters"]
        ]
    if isinstance(bible.get("items"), list):
        new["items"] = [
            {
                "name": item.get("name") or "",
                "status": item.get("status") or "",
                "significance": item.get("significance") or "",
            }
            for item in bible["items"]
        ]
    if isinstance(old.get("memories"), list):
        # Only active memories survive; tags become keywords
        new["pages"] = [
            {
                "id": m.get("id") or generate_id("pg"),
                "day": m.get("day") or "",
                "title": m.get("title") or "",
                "content": m.get("content") or "",
                "keywords": m.get("tags") or [],
                "characters": [],
                "significance": m.get("significance") or "medium",
                "compressionLevel": int(CompressionLevel.FRESH),
                "sourceMessages": m.get("sourceMessages") or [],
                "createdAt": m.get("createdAt") or now_ms(),
                "compressedAt": None,
            }
            for m in old["memories"]
            if m.get("status") == "active"
        ]
    if old.get("processing"):
        new["processing"] = _merged_processing(old, new)
    if old.get("messageRecalls"):
        new["messageRecalls"] = old["messageRecalls"]

    logger.info(f"[STORE] v1 -> v2 complete: {len(new['pages'])} pages, {len(new['characters'])} characters")
    return new


def migrate_v2_to_v3(old: Dict[str, Any], known_names: Iterable[str]) -> Dict[str, Any]:
    logger.info("[STORE] Migrating memory document v2 -> v3")
    known = set(known_names)
    new = create_default_document()
    new["version"] = 3
    new["timeline"] = old.get("timeline") or ""
    new["items"] = old.get("items") or []
    new["pages"] = old.get("pages") or []
    new["processing"] = _merged_processing(old, new)
    new["messageRecalls"] = old.get("messageRecalls") or {}
    new["knownCharacterAttitudes"] = []
    new["characters"] = []

    for c in old.get("characters") or []:
        name = c.get("name")
        if not name:
            continue
        attitude = c.get("attitude") or c.get("relationship") or ""
        if name in known:
            new["knownCharacterAttitudes"].append({"name": name, "attitude": attitude})
        else:
            new["characters"].append({
                "name": name,
                "appearance": c.get("appearance") or "",
                "personality": c.get("personality") or "",
                "attitude": attitude,
            })

    logger.info(
        f"[STORE] v2 -> v3 complete: {len(new['knownCharacterAttitudes'])} known, "
        f"{len(new['characters'])} NPC"
    )
    return new


def migrate_v3_to_v4(old: Dict[str, Any]) -> Dict[str, Any]:
    logger.info("[STORE] Migrating memory document v3 -> v4")
    new = create_default_document()
    new["timeline"] = old.get("timeline") or ""
    new["knownCharacterAttitudes"] = old.get("knownCharacterAttitudes") or []
    new["characters"] = old.get("characters") or []
    new["items"] = old.get("items") or []
    new["processing"] = _merged_processing(old, new)
    new["messageRecalls"] = old.get("messageRecalls") or {}
    if old.get("managerDirective"):
        new["managerDirective"] = old["managerDirective"]
    new["pages"] = [
        {**p, "categories": p["categories"] if isinstance(p.get("categories"), list) else []}
        for p in old.get("pages") or []
    ]
    # Vectors from older layouts are not comparable with the current text format
    new["embeddings"] = {}
    logger.info(f"[STORE] v3 -> v4 complete: {len(new['pages'])} pages")
    return new


def needs_migration(document: Dict[str, Any]) -> bool:
    return document.get("version") != DATA_VERSION


def run_migration_chain(
    document: Dict[str, Any],
    known_names: Optional[Iterable[str]] = None,
) -> Dict[str, Any]:
    """Lift a raw document to DATA_VERSION. Never downgrades."""
    version = document.get("version")
    if isinstance(version, int) and version > DATA_VERSION:
        raise StoreMigrationError(version)
    if version is not None and not isinstance(version, int):
        raise StoreMigrationError(version)

    migrated = dict(document)
    if migrated.get("storyBible") or migrated.get("version") == 1:
        migrated = migrate_v1_to_v2(migrated)
    if migrated.get("version") == 2:
        migrated = migrate_v2_to_v3(migrated, known_names or ())
    if migrated.get("version") == 3:
        migrated = migrate_v3_to_v4(migrated)
    migrated["version"] = DATA_VERSION
    return migrated


def load_fact_store(
    document: Optional[Dict[str, Any]],
    known_names: Optional[Iterable[str]] = None,
) -> FactStore:
    if not document:
        return FactStore()
    if needs_migration(document):
        document = run_migration_chain(document, known_names)
    return FactStore.model_validate(document)
