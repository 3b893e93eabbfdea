"""Retroactive category assignment for pages extracted without tags."""

import logging
from typing import Dict

from ..errors import LLMNotConfiguredError, MemoryManagerError
from ..models.fact_store import MEMORY_CATEGORIES, VALID_CATEGORIES, FactStore
from .llm.json_repair import parse_json_response
from .llm.prompts import PromptManager, prompt_manager
from .llm.service import LLMGateway

logger = logging.getLogger(__name__)

CATEGORY_BATCH_SIZE = 5
CATEGORY_MAX_TOKENS = 300
CONTENT_PREVIEW = 200


async def rebuild_categories(
    gateway: LLMGateway,
    store: FactStore,
    prompts: PromptManager = None,
) -> Dict[str, int]:
    """Ask the secondary backend for 1-3 categories per untagged retrievable page.

    Returns {"pending": n, "assigned": m}. Raises LLMNotConfiguredError when
    there is no secondary backend; failed batches are logged and skipped.
    """
    prompts = prompts or prompt_manager
    pending = [p for p in store.retrievable_pages() if not p.categories]
    if not pending:
        return {"pending": 0, "assigned": 0}
    if not gateway.has_secondary:
        raise LLMNotConfiguredError("Category assignment needs the secondary backend")

    category_list = ", ".join(f"{key}({label})" for key, label in MEMORY_CATEGORIES.items())
    assigned = 0

    for i in range(0, len(pending), CATEGORY_BATCH_SIZE):
        batch = pending[i:i + CATEGORY_BATCH_SIZE]
        pages_text = "\n\n".join(
            f"[{p.id}] {p.day} | {p.title}\n内容: {p.content[:CONTENT_PREVIEW]}" for p in batch
        )
        prompt = prompts.get_prompt(
            "category_assignment", "user", category_list=category_list, pages=pages_text
        )
        try:
            response = await gateway.complete_secondary(None, prompt, CATEGORY_MAX_TOKENS)
            parsed = parse_json_response(response)
        except MemoryManagerError as e:
            logger.warning(f"[CATEGORIES] Category assignment batch failed: {e}")
            continue

        if not isinstance(parsed, list):
            logger.warning("[CATEGORIES] Expected a JSON array of assignments")
            continue
        for item in parsed:
            if not isinstance(item, dict):
                continue
            page = store.get_page(str(item.get("id", "")))
            categories = item.get("categories")
            if page is None or not isinstance(categories, list):
                continue
            page.categories = [c for c in categories if c in VALID_CATEGORIES]
            if page.categories:
                assigned += 1

    logger.info(f"[CATEGORIES] Assigned categories to {assigned}/{len(pending)} pages")
    return {"pending": len(pending), "assigned": assigned}
