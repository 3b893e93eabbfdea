"""
Memory Manager

Single entry point used by a chat host (and the HTTP router). Wires settings,
persistence, model gateways and the three engines together; every method takes
an explicit conversation id.
"""

import logging
from typing import Any, Dict, List, Optional

from ..config import Settings
from ..models.fact_store import DIRECTIVE_STAGES, FactStore, StoryPage
from .category_service import rebuild_categories
from .compression_service import CompressionEngine, CompressionResult
from .embedding_service import EmbeddingGateway, EmbeddingIndex
from .extraction_service import ExtractionEngine, ExtractionReport
from .interfaces import (
    ChatTranscript,
    InjectionSlot,
    InMemoryInjectionSink,
    LoggingEvents,
    MemoryEvents,
    PromptInjectionSink,
)
from .llm.prompts import PromptManager
from .llm.service import LLMGateway
from .maintenance_service import (
    HealthReport,
    clean_orphan_dates,
    count_deleted_turns,
    delete_pages,
    mark_range_extracted,
    run_health_check,
)
from .mood import MoodTracker
from .persistence import FactStoreProvider, FactStoreRepository, InMemoryFactStoreRepository
from .retrieval_service import RetrievalEngine, RetrievalResult

logger = logging.getLogger(__name__)


class MemoryManager:
    def __init__(
        self,
        settings: Settings,
        repository: Optional[FactStoreRepository] = None,
        gateway: Optional[LLMGateway] = None,
        embedding_gateway: Optional[EmbeddingGateway] = None,
        sink: Optional[PromptInjectionSink] = None,
        events: Optional[MemoryEvents] = None,
        mood: Optional[MoodTracker] = None,
        prompts: Optional[PromptManager] = None,
    ):
        self.settings = settings
        self.provider = FactStoreProvider(
            repository or InMemoryFactStoreRepository(),
            max_cached=settings.store_cache_size,
            on_evict=self.release,
        )
        self.gateway = gateway or LLMGateway.from_settings(settings)
        self.sink = sink or InMemoryInjectionSink()
        self.events = events or LoggingEvents()
        self.mood = mood if mood is not None else MoodTracker()
        self.prompts = prompts or (PromptManager(settings.prompts_file) if settings.prompts_file else None)

        self.embedding_index = EmbeddingIndex(
            settings, embedding_gateway or EmbeddingGateway.from_settings(settings), self.provider
        )
        self.compression = CompressionEngine(
            settings, self.gateway, self.provider,
            embedding_index=self.embedding_index, events=self.events, mood=self.mood, prompts=self.prompts,
        )
        self.extraction = ExtractionEngine(
            settings, self.gateway, self.provider,
            embedding_index=self.embedding_index, compression_engine=self.compression,
            events=self.events, mood=self.mood, prompts=self.prompts,
        )
        self.retrieval = RetrievalEngine(
            settings, self.gateway, self.provider, self.sink,
            embedding_index=self.embedding_index, events=self.events, mood=self.mood, prompts=self.prompts,
        )

    def store(self, conversation_id: str, transcript: Optional[ChatTranscript] = None) -> FactStore:
        known = self.settings.known_character_names(transcript.character_name if transcript else "")
        return self.provider.get(conversation_id, known)

    def release(self, conversation_id: str) -> None:
        """Drop every piece of per-conversation state held in this process. The saved document is kept."""
        self.provider.forget(conversation_id)
        self.retrieval.reset_state(conversation_id)
        self.extraction.reset_failures(conversation_id)
        self._clear_slots(conversation_id)
        drain = getattr(self.events, "drain", None)
        if drain is not None:
            drain(conversation_id)

    def _clear_slots(self, conversation_id: str) -> None:
        self.sink.set_prompt(conversation_id, InjectionSlot.INDEX, "", 0)
        self.sink.set_prompt(conversation_id, InjectionSlot.RECALL, "", 0)

    # ------------------------------------------------------------------
    # Pipeline
    # ------------------------------------------------------------------

    async def on_turn_received(self, conversation_id: str, transcript: ChatTranscript) -> ExtractionReport:
        """Background extraction hook, called after each received reply."""
        with self.provider.hold(conversation_id):
            return await self.extraction.safe_extract(conversation_id, transcript)

    async def extract(
        self,
        conversation_id: str,
        transcript: ChatTranscript,
        range_start: Optional[int] = None,
        range_end: Optional[int] = None,
    ) -> ExtractionReport:
        with self.provider.hold(conversation_id):
            return await self.extraction.safe_extract(
                conversation_id, transcript, force=True, range_start=range_start, range_end=range_end
            )

    async def compress(self, conversation_id: str) -> Optional[CompressionResult]:
        with self.provider.hold(conversation_id):
            return await self.compression.safe_compress(conversation_id, force=True)

    async def before_generation(
        self, conversation_id: str, transcript: ChatTranscript, quiet: bool = False
    ) -> RetrievalResult:
        with self.provider.hold(conversation_id):
            return await self.retrieval.retrieve_memories(conversation_id, transcript, quiet)

    def last_recall(self, conversation_id: str) -> RetrievalResult:
        return self.retrieval.last_recall(conversation_id)

    def story_index(self, conversation_id: str, transcript: ChatTranscript) -> str:
        store = self.store(conversation_id, transcript)
        return self.retrieval.inject_index(conversation_id, store, transcript)

    def list_pages(self, conversation_id: str) -> List[StoryPage]:
        return list(self.store(conversation_id).pages)

    # ------------------------------------------------------------------
    # Host lifecycle
    # ------------------------------------------------------------------

    async def on_conversation_changed(
        self,
        conversation_id: str,
        transcript: ChatTranscript,
        previous_conversation_id: Optional[str] = None,
    ) -> None:
        if previous_conversation_id and previous_conversation_id != conversation_id:
            self.provider.save(previous_conversation_id)
            self.release(previous_conversation_id)

        self._clear_slots(conversation_id)
        self.retrieval.reset_state(conversation_id)
        self.extraction.reset_failures(conversation_id)

        with self.provider.hold(conversation_id):
            store = self.store(conversation_id, transcript)
            if store.processing.extraction_in_progress:
                logger.warning(f"[STORE] Clearing stale extraction lock for conversation {conversation_id}")
                store.processing.extraction_in_progress = False
                self.provider.save(conversation_id)

            if store.timeline or store.characters:
                self.retrieval.inject_index(conversation_id, store, transcript)
            await self.extraction.hide_processed_turns(conversation_id, transcript)
        self.events.notify_ui_refresh(conversation_id)

    async def on_message_deleted(self, conversation_id: str, transcript: ChatTranscript) -> int:
        """Returns the number of processed turns that are no longer in the transcript."""
        await self.extraction.recalculate_hide_range(transcript)
        store = self.store(conversation_id, transcript)
        deleted = count_deleted_turns(store, transcript)
        if deleted > 0:
            self.events.notify_user(
                conversation_id, "warning",
                f"检测到 {deleted} 条已提取但已删除的消息，相关记忆可能不再准确，可在健康检查中清理",
            )
        return deleted

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    def health_check(self, conversation_id: str, transcript: ChatTranscript) -> HealthReport:
        store = self.store(conversation_id, transcript)
        return run_health_check(store, transcript, embedding_enabled=self.settings.use_embedding)

    def delete_pages(self, conversation_id: str, page_ids: List[str]) -> int:
        deleted = delete_pages(self.store(conversation_id), page_ids)
        self.provider.save(conversation_id)
        self.events.notify_ui_refresh(conversation_id, ["pages"])
        return deleted

    def clean_orphan_dates(self, conversation_id: str, dates: List[str]) -> int:
        cleaned = clean_orphan_dates(self.store(conversation_id), dates)
        self.provider.save(conversation_id)
        return cleaned

    def mark_extracted(self, conversation_id: str, transcript: ChatTranscript, start: int, end: int) -> int:
        marked = mark_range_extracted(self.store(conversation_id, transcript), transcript, start, end)
        self.provider.save(conversation_id)
        self.events.notify_status_change(conversation_id)
        return marked

    async def rebuild_vectors(self, conversation_id: str) -> Dict[str, int]:
        with self.provider.hold(conversation_id):
            return await self.embedding_index.rebuild_all_vectors(conversation_id)

    async def test_embedding(self) -> int:
        return await self.embedding_index.test_embedding()

    async def rebuild_categories(self, conversation_id: str) -> Dict[str, int]:
        with self.provider.hold(conversation_id):
            result = await rebuild_categories(self.gateway, self.store(conversation_id), self.prompts)
            self.provider.save(conversation_id)
        return result

    def get_directive(self, conversation_id: str) -> Dict[str, str]:
        directive = self.store(conversation_id).manager_directive
        return {stage: directive.for_stage(stage) for stage in DIRECTIVE_STAGES}

    def set_directive(self, conversation_id: str, stage: str, text: str) -> Dict[str, str]:
        if stage not in DIRECTIVE_STAGES:
            raise ValueError(f"Unknown directive stage: {stage}")
        directive = self.store(conversation_id).manager_directive
        setattr(directive, "global_" if stage == "global" else stage, text or "")
        self.provider.save(conversation_id)
        return self.get_directive(conversation_id)

    def reset(self, conversation_id: str) -> FactStore:
        self.retrieval.reset_state(conversation_id)
        self.extraction.reset_failures(conversation_id)
        self._clear_slots(conversation_id)
        return self.provider.reset(conversation_id)

    def export_store(self, conversation_id: str) -> Dict[str, Any]:
        return self.provider.export_document(conversation_id)

    def import_store(
        self, conversation_id: str, document: Dict[str, Any], character_name: str = ""
    ) -> FactStore:
        known = self.settings.known_character_names(character_name)
        store = self.provider.import_document(conversation_id, document, known)
        self.retrieval.reset_state(conversation_id)
        self.events.notify_ui_refresh(conversation_id)
        return store
