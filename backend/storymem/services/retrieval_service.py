"""
Retrieval Engine

Runs once before each host generation:
  1. always-on story index injection (timeline, items, cast attitudes, NPCs)
  2. recalled-memory injection through a three-tier cascade:
     embedding pre-filter -> recall agent -> raw candidates or keyword fallback

The engine only writes recall provenance to the store; everything else goes to
the injection sink.
"""

import logging
import os
import re
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Set, Tuple

from ..config import Settings
from ..models.fact_store import CompressionLevel, FactStore, NpcDossier, StoryPage
from .agent.recall_agent import run_recall_agent
from .agent.trace_logger import AgentTraceLogger
from .interfaces import (
    ChatTranscript,
    ChatTurn,
    InjectionSlot,
    LoggingEvents,
    MemoryEvents,
    PromptInjectionSink,
)
from .llm.context_formatter import RECALL_CLOSE, RECALL_OPEN, format_dossier, format_recalled_pages, format_story_index
from .llm.prompts import PromptManager, prompt_manager
from .llm.service import LLMGateway
from .mood import MoodTracker, set_mood
from .persistence import FactStoreProvider

logger = logging.getLogger(__name__)

_QUERY_KEYWORD = re.compile(r"[\u4e00-\u9fff\u3400-\u4dbf]{2,}|[a-zA-Z]{3,}")
_CONTENT_TAG = re.compile(r"<content>([\s\S]*?)</content>")
_HTML_COMMENT = re.compile(r"<!--[\s\S]*?-->")
_DETAILS_BLOCK = re.compile(r"<details>[\s\S]*?</details>")

MAX_RECALLED_CHARACTERS = 2


@dataclass
class RetrievalResult:
    stages: List[str] = field(default_factory=list)
    tier: str = "none"  # agent | embedding | keyword | none
    narrative: str = ""
    source_page_ids: List[str] = field(default_factory=list)
    characters: List[str] = field(default_factory=list)
    injected_text: str = ""
    index_text: str = ""
    index_injected: bool = False
    degraded: bool = False

    def to_dict(self) -> Dict:
        return {
            "stages": list(self.stages),
            "tier": self.tier,
            "narrative": self.narrative,
            "sourcePageIds": list(self.source_page_ids),
            "characters": list(self.characters),
            "injectedText": self.injected_text,
            "indexText": self.index_text,
            "indexInjected": self.index_injected,
            "degraded": self.degraded,
        }


def clean_turn_text(text: str) -> str:
    """Keep only the <content> body when present, otherwise drop comments and <details> blocks."""
    text = text or ""
    match = _CONTENT_TAG.search(text)
    if match:
        return match.group(1).strip()
    text = _HTML_COMMENT.sub("", text)
    return _DETAILS_BLOCK.sub("", text)


def build_recent_window(transcript: ChatTranscript, size: int = 5) -> Tuple[List[ChatTurn], str]:
    total = len(transcript)
    count = min(size, total)
    turns = [t for t in transcript.turns(total - count, total) if not t.is_system]
    text = "\n".join(f"{t.name}: {clean_turn_text(t.text)}" for t in turns)
    return turns, text


def npc_scan_text(transcript: ChatTranscript, depth: int) -> str:
    """Raw text of the last `depth` turns, used for keyword NPC activation."""
    total = len(transcript)
    if depth <= 0 or total == 0:
        return ""
    return " ".join(t.text or "" for t in transcript.turns(max(0, total - depth), total))


def extract_query_keywords(turns: List[ChatTurn]) -> Set[str]:
    text = " ".join(t.text or "" for t in turns)
    return set(_QUERY_KEYWORD.findall(text))


def score_page(page: StoryPage, query_keywords: Set[str]) -> float:
    score = 0.0
    for kw in page.keywords:
        if kw in query_keywords:
            score += 2
        for q in query_keywords:
            if q != kw and (kw in q or q in kw):
                score += 1
    if page.significance == "high":
        score += 1
    if page.compression_level == CompressionLevel.FRESH:
        score += 0.5
    return score


def keyword_fallback_retrieve(
    store: FactStore,
    query_keywords: Set[str],
    max_pages: int,
) -> Tuple[List[StoryPage], List[NpcDossier]]:
    """Keyword-overlap scoring over retrievable pages; zero-score pages are dropped."""
    scored = [(score_page(p, query_keywords), p) for p in store.retrievable_pages()]
    scored = [pair for pair in scored if pair[0] > 0]
    scored.sort(key=lambda pair: pair[0], reverse=True)
    pages = [p for _, p in scored[:max_pages]]

    mentioned: Set[str] = set()
    for page in pages:
        mentioned.update(page.characters)
    for character in store.characters:
        if character.name in query_keywords:
            mentioned.add(character.name)
    characters = [c for c in store.characters if c.name in mentioned][:MAX_RECALLED_CHARACTERS]
    return pages, characters


class RetrievalEngine:
    def __init__(
        self,
        settings: Settings,
        gateway: LLMGateway,
        provider: FactStoreProvider,
        sink: PromptInjectionSink,
        embedding_index=None,
        events: Optional[MemoryEvents] = None,
        mood: Optional[MoodTracker] = None,
        prompts: Optional[PromptManager] = None,
    ):
        self.settings = settings
        self.gateway = gateway
        self.provider = provider
        self.sink = sink
        self.embedding_index = embedding_index
        self.events = events or LoggingEvents()
        self.mood = mood
        self.prompts = prompts or prompt_manager
        self.trace_logger = AgentTraceLogger(
            "recall_agent",
            enabled=settings.debug,
            logs_dir=os.path.join(os.path.dirname(settings.log_file) or "logs", "agent_traces"),
        )
        self._last: Dict[str, RetrievalResult] = {}

    def last_recall(self, conversation_id: str) -> RetrievalResult:
        return self._last.get(conversation_id) or RetrievalResult()

    def reset_state(self, conversation_id: Optional[str] = None) -> None:
        if conversation_id is None:
            self._last.clear()
        else:
            self._last.pop(conversation_id, None)

    def inject_index(self, conversation_id: str, store: FactStore, transcript: ChatTranscript) -> str:
        """Set or clear the index slot. Returns the injected text."""
        if not store.has_index_content():
            self.sink.set_prompt(conversation_id, InjectionSlot.INDEX, "", 0)
            return ""
        text = format_story_index(
            store,
            self.settings.npc_injection_mode,
            transcript.user_name,
            npc_scan_text(transcript, self.settings.npc_keyword_scan_depth),
        )
        self.sink.set_prompt(conversation_id, InjectionSlot.INDEX, text, self.settings.index_depth)
        return text

    async def retrieve_memories(
        self,
        conversation_id: str,
        transcript: ChatTranscript,
        quiet: bool = False,
    ) -> RetrievalResult:
        """Prepare both injection slots for the upcoming generation."""
        result = RetrievalResult()
        if quiet or not self.settings.enabled:
            result.stages.append("skipped")
            return result

        known = self.settings.known_character_names(transcript.character_name)
        store = self.provider.get(conversation_id, known)
        s = self.settings

        recent_turns, recent_text = build_recent_window(transcript, s.recent_window)

        index_text = self.inject_index(conversation_id, store, transcript)
        result.index_text = index_text
        result.index_injected = bool(index_text)

        if not store.pages and not store.characters:
            self.sink.set_prompt(conversation_id, InjectionSlot.RECALL, "", 0)
            result.stages.append("empty")
            self._last[conversation_id] = result
            return result

        narrative = ""
        source_ids: List[str] = []
        characters: List[NpcDossier] = []

        # Tier 1: embedding pre-filter
        candidates: Optional[List[StoryPage]] = None
        if self.embedding_index is not None and self.embedding_index.configured:
            result.stages.append("embedding")
            try:
                pre = await self.embedding_index.pre_filter(store, recent_text, s.embedding_top_k)
            except Exception as e:
                logger.error(f"[RETRIEVAL] Embedding pre-filter crashed: {e}", exc_info=True)
                pre = None
            if pre is not None:
                candidates = pre.pages
                characters = list(pre.characters)
                logger.info(
                    f"[RETRIEVAL] Embedding pre-filter returned {len(candidates)} pages, "
                    f"{len(characters)} characters"
                )

        # Tier 2: recall agent
        agent_failed = False
        if self.gateway.has_secondary:
            result.stages.append("agent")
            try:
                recall = await run_recall_agent(
                    self.gateway,
                    store,
                    recent_text,
                    candidates,
                    max_rounds=s.agent_max_rounds,
                    max_tokens=s.agent_max_tokens,
                    story_index=index_text or None,
                    user_name=transcript.user_name,
                    prompts=self.prompts,
                    trace_logger=self.trace_logger,
                )
            except Exception as e:
                logger.error(f"[RETRIEVAL] Recall agent crashed: {e}", exc_info=True)
                agent_failed = True
            else:
                narrative = recall.narrative
                source_ids = list(recall.source_page_ids)
                agent_failed = recall.error
                if narrative:
                    result.tier = "agent"

        # Tier 3: fallback
        if not narrative:
            if candidates:
                if agent_failed:
                    result.degraded = True
                    self.events.notify_user(conversation_id, "warning", "记忆代理调用失败，已降级为Embedding直接注入，请检查API状态")
                    logger.info(f"[RETRIEVAL] Agent failed, injecting {len(candidates)} embedding candidates")
                else:
                    logger.info(f"[RETRIEVAL] No agent configured, using {len(candidates)} embedding candidates")
                narrative = format_recalled_pages(candidates)
                source_ids = [p.id for p in candidates]
                result.tier = "embedding"
            else:
                if agent_failed:
                    result.degraded = True
                    self.events.notify_user(
                        conversation_id, "warning",
                        "记忆代理调用失败，没有设置embedding端点，已降级为关键词检索，请检查API与embedding状态",
                    )
                result.stages.append("keyword")
                query_keywords = extract_query_keywords(recent_turns)
                logger.info(f"[RETRIEVAL] Keyword fallback, keywords: {sorted(query_keywords)}")
                pages, keyword_chars = keyword_fallback_retrieve(store, query_keywords, s.max_pages)
                if pages:
                    narrative = format_recalled_pages(pages)
                    source_ids = [p.id for p in pages]
                    result.tier = "keyword"
                if not characters:
                    characters = keyword_chars

        # Injection
        parts: List[str] = []
        if narrative:
            if narrative.startswith(RECALL_OPEN):
                parts.append(narrative)
            else:
                parts.append(f"{RECALL_OPEN}\n{narrative}\n{RECALL_CLOSE}")
        parts.extend(format_dossier(c) for c in characters)

        injected = "\n\n".join(parts)
        self.sink.set_prompt(conversation_id, InjectionSlot.RECALL, injected, 0)

        result.stages.append("injected" if injected else "empty")
        result.narrative = narrative
        result.source_page_ids = source_ids
        result.characters = [c.name for c in characters]
        result.injected_text = injected
        self._last[conversation_id] = result

        total_recalled = len(source_ids) + len(characters)
        if total_recalled >= 3:
            set_mood(self.mood, "inlove", 6)
        elif total_recalled > 0:
            set_mood(self.mood, "joyful", 5)

        # Provenance for the reply about to be generated
        if source_ids:
            store.message_recalls[str(len(transcript))] = list(source_ids)
            self.provider.save(conversation_id)

        return result
