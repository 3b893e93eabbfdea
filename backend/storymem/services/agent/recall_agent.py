"""Recall agent orchestrator.

Wires together the agent framework + recall tools + prompts to turn candidate
pages and the recent conversation into a short causal narrative. The source
citation line the model appends is parsed out and rewritten in readable form.
"""

import logging
import re
from dataclasses import dataclass, field
from typing import List, Optional, Tuple

from ...models.fact_store import FactStore, StoryPage
from ..llm.context_formatter import (
    RECALL_CLOSE,
    RECALL_OPEN,
    format_candidate_section,
    format_catalog_section,
    format_npc_attitudes,
    format_story_index,
)
from ..llm.prompts import PromptManager, directive_suffix, prompt_manager
from .recall_tools import create_recall_tools
from .runner import AgentRunner
from .trace_logger import AgentTraceLogger

logger = logging.getLogger(__name__)

_THINK_BLOCK = re.compile(r"<think>[\s\S]*?</think>")
_BRACKET_SOURCE = re.compile(r"\[来源[:：]\s*([^\]]+)\]")
_BRACKET_SOURCE_TAIL = re.compile(r"\n?\[来源[:：][^\]]*\]\s*$")
_INLINE_SOURCE = re.compile(r"来源[:：]\s*((?:pg_\S+[\s·,，]*)+)")
_INLINE_SOURCE_TAIL = re.compile(r"\n?来源[:：]\s*(?:pg_\S+[\s·,，]*)+\s*$")
_SOURCE_SPLIT = re.compile(r"[,，·\s]+")
_OPEN_TAG = re.compile(r"^" + re.escape(RECALL_OPEN) + r"\s*")
_CLOSE_TAG = re.compile(r"\s*" + re.escape(RECALL_CLOSE) + r"\s*$")


@dataclass
class AgentRecall:
    narrative: str = ""
    source_page_ids: List[str] = field(default_factory=list)
    error: bool = False
    error_message: Optional[str] = None
    turns: int = 0


def extract_sources(narrative: str) -> Tuple[str, List[str]]:
    """Split a trailing `来源: ...` / `[来源: ...]` line off the narrative."""
    match = _BRACKET_SOURCE.search(narrative)
    if match:
        narrative = _BRACKET_SOURCE_TAIL.sub("", narrative).strip()
    else:
        match = _INLINE_SOURCE.search(narrative)
        if match:
            narrative = _INLINE_SOURCE_TAIL.sub("", narrative).strip()
    if not match:
        return narrative, []
    ids = [s for s in _SOURCE_SPLIT.split(match.group(1)) if s.startswith("pg_")]
    return narrative, ids


def postprocess_narrative(store: FactStore, raw: str) -> Tuple[str, List[str]]:
    """Strip reasoning and wrapper tags, then reattach sources as `day「title」`."""
    narrative = _THINK_BLOCK.sub("", raw or "").strip()
    if not narrative:
        return "", []

    # Tags first, so a source line just before the closing tag still counts as trailing
    narrative = _CLOSE_TAG.sub("", _OPEN_TAG.sub("", narrative)).strip()
    narrative, source_ids = extract_sources(narrative)

    if source_ids:
        readable = []
        for page_id in source_ids:
            page = store.get_page(page_id)
            readable.append(f"{page.day}「{page.title}」" if page else page_id)
        narrative += f"\n来源: {' · '.join(readable)}"
    return narrative, source_ids


def build_agent_prompt(
    store: FactStore,
    recent_text: str,
    candidate_pages: Optional[List[StoryPage]],
    story_index: Optional[str] = None,
    user_name: str = "",
    prompts: Optional[PromptManager] = None,
) -> str:
    prompts = prompts or prompt_manager
    candidate_ids = [p.id for p in candidate_pages or []]
    if story_index is None:
        story_index = format_story_index(store, "half", user_name)
    return prompts.get_prompt(
        "recall_agent", "user",
        story_index=story_index,
        candidate_section=format_candidate_section(candidate_pages),
        catalog_section=format_catalog_section(store, candidate_ids),
        npc_list=format_npc_attitudes(store),
        recent_text=recent_text,
    ) + directive_suffix(store, "recall")


async def run_recall_agent(
    gateway,
    store: FactStore,
    recent_text: str,
    candidate_pages: Optional[List[StoryPage]] = None,
    max_rounds: int = 3,
    max_tokens: int = 800,
    story_index: Optional[str] = None,
    user_name: str = "",
    prompts: Optional[PromptManager] = None,
    trace_logger: Optional[AgentTraceLogger] = None,
) -> AgentRecall:
    """Run the recall agent.

    Returns an AgentRecall whose `error` is set when an LLM call failed or the
    model produced no narrative. A store without pages yields an empty,
    non-error result without calling the model.
    """
    if not store.pages:
        return AgentRecall()

    runner = AgentRunner(
        gateway=gateway,
        tools=create_recall_tools(store),
        max_rounds=max_rounds,
        max_tokens=max_tokens,
        agent_name="recall_agent",
        trace_logger=trace_logger,
    )
    prompt = build_agent_prompt(store, recent_text, candidate_pages, story_index, user_name, prompts)

    logger.info("[RECALL AGENT] Starting")
    result = await runner.run(prompt)

    narrative, source_ids = postprocess_narrative(store, result["answer"])
    if not narrative:
        reason = result["error"] or "empty response"
        logger.info(f"[RECALL AGENT] No narrative: {reason}")
        return AgentRecall(error=True, error_message=reason, turns=result["turns"])

    logger.info(f"[RECALL AGENT] Narrative: {len(narrative)} chars, sources: {source_ids}")
    return AgentRecall(
        narrative=narrative,
        source_page_ids=source_ids,
        turns=result["turns"],
    )
