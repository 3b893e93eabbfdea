"""
Compression Engine

Progressive reduction of a conversation's memory:
  1. timeline compaction when it has more lines than `max_timeline_entries`
  2. FRESH -> SUMMARY page compression beyond `compress_after_pages`
  3. archival of SUMMARY pages tagged only `daily` once `archive_threshold` is exceeded

Each step persists the store before the next one starts.
"""

import logging
from dataclasses import dataclass
from typing import Dict, Optional

from ..config import Settings
from ..errors import MemoryManagerError
from ..models.fact_store import CompressionLevel, FactStore, now_ms
from .interfaces import LoggingEvents, MemoryEvents
from .llm.prompts import PromptManager, directive_suffix, prompt_manager
from .llm.service import LLMGateway
from .mood import MoodTracker, set_mood
from .persistence import FactStoreProvider

logger = logging.getLogger(__name__)

PAGE_COMPRESSION_MAX_TOKENS = 200
TIMELINE_COMPRESSION_MAX_TOKENS = 1000
TIMELINE_KEEP_RECENT = 5
MIN_PAGE_SUMMARY = 10
MIN_TIMELINE_LENGTH = 20


@dataclass
class CompressionResult:
    compressed: int = 0
    archived: int = 0
    timeline: bool = False

    def to_dict(self) -> Dict:
        return {"compressed": self.compressed, "archived": self.archived, "timeline": self.timeline}


class CompressionEngine:
    def __init__(
        self,
        settings: Settings,
        gateway: LLMGateway,
        provider: FactStoreProvider,
        embedding_index=None,
        events: Optional[MemoryEvents] = None,
        mood: Optional[MoodTracker] = None,
        prompts: Optional[PromptManager] = None,
    ):
        self.settings = settings
        self.gateway = gateway
        self.provider = provider
        self.embedding_index = embedding_index
        self.events = events or LoggingEvents()
        self.mood = mood
        self.prompts = prompts or prompt_manager

    async def compress_page(self, store: FactStore, page_id: str) -> bool:
        """Compress one FRESH page to a short causal summary. Failures leave the page untouched."""
        page = store.get_page(page_id)
        if page is None or page.compression_level != CompressionLevel.FRESH:
            return False

        logger.info(f"[COMPRESSION] Compressing page: {page.title} ({len(page.content)} chars)")
        system_prompt = self.prompts.get_prompt("page_compression", "system")
        user_prompt = self.prompts.get_prompt(
            "page_compression", "user", day=page.day, title=page.title, content=page.content
        ) + directive_suffix(store, "compression")

        try:
            compressed = await self.gateway.complete(system_prompt, user_prompt, PAGE_COMPRESSION_MAX_TOKENS)
        except MemoryManagerError as e:
            logger.warning(f"[COMPRESSION] Failed to compress page {page.title}: {e}")
            return False

        compressed = (compressed or "").strip()
        if len(compressed) <= MIN_PAGE_SUMMARY:
            logger.warning(f"[COMPRESSION] Summary for {page.title} too short, keeping original")
            return False

        page.content = compressed
        page.compression_level = CompressionLevel.SUMMARY
        page.compressed_at = now_ms()
        logger.info(f"[COMPRESSION] Page compressed: {page.title} -> {len(page.content)} chars")

        if self.embedding_index is not None and self.embedding_index.configured:
            await self.embedding_index.embed_page(store, page)
        return True

    def archive_page(self, store: FactStore, page_id: str) -> bool:
        """Drop a SUMMARY-or-deeper page together with its vector and recall references."""
        page = store.get_page(page_id)
        if page is None or page.compression_level < CompressionLevel.SUMMARY:
            return False
        logger.info(f"[COMPRESSION] Archiving page: {page.title}")
        return store.remove_page(page_id)

    async def compress_timeline(self, store: FactStore) -> bool:
        """Rewrite an over-long timeline. A rewrite with more lines than the input is rejected."""
        lines = store.timeline_lines()
        max_entries = self.settings.max_timeline_entries
        if len(lines) <= max_entries:
            return False

        logger.info(f"[COMPRESSION] Timeline has {len(lines)} entries, compressing to {max_entries}")
        system_prompt = self.prompts.get_prompt("timeline_compression", "system")
        user_prompt = self.prompts.get_prompt(
            "timeline_compression", "user",
            timeline=store.timeline,
            keep_recent=TIMELINE_KEEP_RECENT,
            max_entries=max_entries,
        ) + directive_suffix(store, "compression")

        try:
            compressed = await self.gateway.complete(system_prompt, user_prompt, TIMELINE_COMPRESSION_MAX_TOKENS)
        except MemoryManagerError as e:
            logger.warning(f"[COMPRESSION] Failed to compress timeline: {e}")
            return False

        compressed = (compressed or "").strip()
        if len(compressed) <= MIN_TIMELINE_LENGTH:
            return False
        new_lines = [line for line in compressed.split("\n") if line.strip()]
        if len(new_lines) > len(lines):
            logger.warning("[COMPRESSION] Timeline compression produced more lines, keeping original")
            return False

        store.timeline = compressed
        logger.info(f"[COMPRESSION] Timeline compressed: {len(lines)} -> {len(new_lines)} entries")
        return True

    async def run_compression_cycle(self, conversation_id: str, force: bool = False) -> CompressionResult:
        s = self.settings
        result = CompressionResult()
        if not (s.compress_timeline or s.compress_pages or s.archive_daily) and not force:
            return result

        store = self.provider.get(conversation_id)
        logger.info("[COMPRESSION] Running compression cycle...")

        if s.compress_timeline or force:
            result.timeline = await self.compress_timeline(store)
            self.provider.save(conversation_id)

        if s.compress_pages or force:
            fresh = sorted(
                (p for p in store.pages if p.compression_level == CompressionLevel.FRESH),
                key=lambda p: p.created_at,
            )
            if len(fresh) > s.compress_after_pages:
                to_compress = fresh[:len(fresh) - s.compress_after_pages]
                logger.info(f"[COMPRESSION] Compressing {len(to_compress)} fresh pages to summary")
                for page in to_compress:
                    if await self.compress_page(store, page.id):
                        result.compressed += 1
                    self.provider.save(conversation_id)

        if s.archive_daily or force:
            total = len(store.pages)
            if total > s.archive_threshold:
                daily = sorted(
                    (
                        p for p in store.pages
                        if p.compression_level >= CompressionLevel.SUMMARY and p.categories == ["daily"]
                    ),
                    key=lambda p: p.created_at,
                )
                to_archive = daily[:min(total - s.archive_threshold, len(daily))]
                if to_archive:
                    logger.info(
                        f"[COMPRESSION] Archiving {len(to_archive)} daily pages "
                        f"(total {total} > {s.archive_threshold})"
                    )
                for page in to_archive:
                    if self.archive_page(store, page.id):
                        result.archived += 1
                self.provider.save(conversation_id)

        logger.info(f"[COMPRESSION] Compression cycle complete. Total pages: {len(store.pages)}")
        return result

    async def safe_compress(self, conversation_id: str, force: bool = False) -> Optional[CompressionResult]:
        """Never raises. In forced mode the user always gets a summary or an error notice."""
        try:
            set_mood(self.mood, "angry")
            if force:
                self.events.notify_user(conversation_id, "info", "开始压缩...")
            result = await self.run_compression_cycle(conversation_id, force)
            set_mood(self.mood, "idle")
            if force:
                parts = []
                if result.compressed > 0:
                    parts.append(f"{result.compressed} 页压缩")
                if result.archived > 0:
                    parts.append(f"{result.archived} 页归档")
                if result.timeline:
                    parts.append("时间线已压缩")
                if parts:
                    self.events.notify_user(conversation_id, "success", f"压缩完成: {'，'.join(parts)}")
                else:
                    self.events.notify_user(conversation_id, "info", "当前没有需要压缩的内容")
            return result
        except Exception as e:
            logger.warning(f"[COMPRESSION] Compression cycle failed: {e}", exc_info=True)
            set_mood(self.mood, "sad", 5)
            if force:
                self.events.notify_user(conversation_id, "error", f"压缩失败: {e}")
            return None
