"""
Extraction Engine

Turns raw chat turns into Fact Store content:
  - normal mode: watermark-driven incremental extraction, fired once enough
    turns are pending, skipping a trailing buffer the user may still re-roll
  - forced mode: scans the whole history for turns whose ids were never
    processed, batches them, retries failed batches once and reports

After a run, missing vectors are embedded, a compression cycle runs and
processed turns may be hidden from the host transcript.
"""

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

from ..config import Settings
from ..errors import MemoryManagerError
from ..models.fact_store import FactStore
from .fact_merge import apply_extraction_result, format_turns, mark_turns_extracted, turn_ids
from .interfaces import ChatTranscript, ChatTurn, LoggingEvents, MemoryEvents
from .llm.context_formatter import extraction_context
from .llm.json_repair import parse_json_response
from .llm.prompts import PromptManager, directive_suffix, prompt_manager
from .llm.service import LLMGateway
from .mood import MoodTracker, set_mood
from .persistence import FactStoreProvider

logger = logging.getLogger(__name__)

SINGLE_CALL_THRESHOLD = 25
BATCH_SIZE = 20
BATCH_MIN_MAX_TOKENS = 8192
FORCED_BUFFER = 4
FAILURE_STREAK_LIMIT = 3

IndexedTurn = Tuple[int, ChatTurn]


@dataclass
class ExtractionReport:
    mode: str = "normal"
    batches_total: int = 0
    batches_succeeded: int = 0
    batches_failed: int = 0
    pages_created: int = 0
    watermark: int = -1
    skipped_reason: Optional[str] = None
    errors: List[str] = field(default_factory=list)

    @property
    def ran(self) -> bool:
        return self.skipped_reason is None

    def to_dict(self) -> Dict:
        return {
            "mode": self.mode,
            "batchesTotal": self.batches_total,
            "batchesSucceeded": self.batches_succeeded,
            "batchesFailed": self.batches_failed,
            "pagesCreated": self.pages_created,
            "watermark": self.watermark,
            "skippedReason": self.skipped_reason,
            "errors": list(self.errors),
        }


def _batches(items: List[IndexedTurn], size: int = BATCH_SIZE) -> List[List[IndexedTurn]]:
    return [items[i:i + size] for i in range(0, len(items), size)]


class ExtractionEngine:
    """Extraction for any number of conversations; all state lives in the FactStore
    except the per-conversation failure streak."""

    def __init__(
        self,
        settings: Settings,
        gateway: LLMGateway,
        provider: FactStoreProvider,
        embedding_index=None,
        compression_engine=None,
        events: Optional[MemoryEvents] = None,
        mood: Optional[MoodTracker] = None,
        prompts: Optional[PromptManager] = None,
    ):
        self.settings = settings
        self.gateway = gateway
        self.provider = provider
        self.embedding_index = embedding_index
        self.compression_engine = compression_engine
        self.events = events or LoggingEvents()
        self.mood = mood
        self.prompts = prompts or prompt_manager
        self._consecutive_failures: Dict[str, int] = {}

    # ------------------------------------------------------------------
    # Failure streak
    # ------------------------------------------------------------------

    def consecutive_failures(self, conversation_id: str) -> int:
        return self._consecutive_failures.get(conversation_id, 0)

    def reset_failures(self, conversation_id: str) -> None:
        self._consecutive_failures.pop(conversation_id, None)

    def _record_failure(self, conversation_id: str) -> None:
        count = self._consecutive_failures.get(conversation_id, 0) + 1
        if count >= FAILURE_STREAK_LIMIT:
            self.events.notify_user(conversation_id, "warning", "记忆提取连续失败，请检查API状态")
            count = 0
        self._consecutive_failures[conversation_id] = count

    # ------------------------------------------------------------------
    # One LLM call over a group of turns
    # ------------------------------------------------------------------

    def _known_names(self, transcript: ChatTranscript):
        return self.settings.known_character_names(transcript.character_name)

    async def _extract_group(
        self,
        store: FactStore,
        group: List[IndexedTurn],
        transcript: ChatTranscript,
        max_tokens: int,
        template: str = "extraction",
    ) -> List[str]:
        """Extract one group of turns and merge the result. Raises on LLM or parse failure."""
        turns = [turn for _, turn in group]
        known = self._known_names(transcript)
        variables = extraction_context(store, known, transcript.user_name)
        variables["messages"] = format_turns(turns)

        system_prompt = self.prompts.get_prompt(template, "system")
        user_prompt = self.prompts.get_prompt(template, "user", **variables)
        user_prompt += directive_suffix(store, "extraction")

        response = await self.gateway.complete(system_prompt, user_prompt, max_tokens)
        logger.debug(f"[EXTRACTION] Response length: {len(response)}")
        result = parse_json_response(response)

        page_ids = apply_extraction_result(
            store, result,
            known_names=known,
            user_name=transcript.user_name,
            source_dates=turn_ids(turns),
        )
        mark_turns_extracted(store, turns)
        return page_ids

    @staticmethod
    def _advance_watermark(store: FactStore, index: int) -> None:
        if index > store.processing.last_extracted_message_id:
            store.processing.last_extracted_message_id = index

    # ------------------------------------------------------------------
    # Normal mode
    # ------------------------------------------------------------------

    def _normal_buffer(self) -> int:
        if self.settings.auto_hide and self.settings.keep_recent_messages >= 3:
            return max(0, self.settings.keep_recent_messages - 2)
        return 0

    async def perform_extraction(self, conversation_id: str, transcript: ChatTranscript) -> ExtractionReport:
        """
        Extract turns after the watermark, excluding the trailing buffer.

        Up to SINGLE_CALL_THRESHOLD pending turns go out in one call whose failure
        propagates. Larger backlogs are split into batches that each commit
        their facts and watermark before the next one starts; a failed batch is
        logged and skipped.
        """
        store = self.provider.get(conversation_id, self._known_names(transcript))
        report = ExtractionReport(mode="normal", watermark=store.processing.last_extracted_message_id)

        total = len(transcript)
        start_idx = max(0, store.processing.last_extracted_message_id + 1)
        end_idx = max(start_idx, total - self._normal_buffer())
        if start_idx >= end_idx:
            report.skipped_reason = "nothing_pending"
            return report

        pending: List[IndexedTurn] = [
            (start_idx + offset, turn)
            for offset, turn in enumerate(transcript.turns(start_idx, end_idx))
            if not turn.is_system and turn.text
        ]
        if not pending:
            report.skipped_reason = "nothing_pending"
            return report

        if len(pending) <= SINGLE_CALL_THRESHOLD:
            logger.info(
                f"[EXTRACTION] Extracting turns {start_idx}-{end_idx - 1} "
                f"(buffer: skipping last {total - end_idx})"
            )
            report.batches_total = 1
            page_ids = await self._extract_group(
                store, pending, transcript, self.settings.extraction_max_tokens
            )
            self._advance_watermark(store, end_idx - 1)
            self.provider.save(conversation_id)
            report.batches_succeeded = 1
            report.pages_created = len(page_ids)
        else:
            batches = _batches(pending)
            max_tokens = max(self.settings.extraction_max_tokens, BATCH_MIN_MAX_TOKENS)
            report.batches_total = len(batches)
            logger.info(f"[EXTRACTION] Batched extraction: {len(pending)} turns -> {len(batches)} batches")

            for bi, batch in enumerate(batches):
                first_idx, last_idx = batch[0][0], batch[-1][0]
                logger.info(f"[EXTRACTION] Batch {bi + 1}/{len(batches)}: turns {first_idx}-{last_idx}")
                self.events.notify_progress(conversation_id, bi, len(batches), f"正在提取第 {bi + 1}/{len(batches)} 批...")
                try:
                    page_ids = await self._extract_group(store, batch, transcript, max_tokens)
                except MemoryManagerError as e:
                    logger.warning(f"[EXTRACTION] Batch {bi + 1} failed, skipping: {e}")
                    report.batches_failed += 1
                    report.errors.append(str(e))
                    continue
                self._advance_watermark(store, last_idx)
                self.provider.save(conversation_id)
                report.batches_succeeded += 1
                report.pages_created += len(page_ids)
                logger.info(f"[EXTRACTION] Batch {bi + 1}/{len(batches)} done. Pages: {len(store.pages)}")

        report.watermark = store.processing.last_extracted_message_id
        logger.info(f"[EXTRACTION] Extraction complete. Pages: {len(store.pages)}")

        await self._post_extraction(conversation_id)
        return report

    async def _post_extraction(self, conversation_id: str) -> None:
        if self.embedding_index is not None and self.embedding_index.configured:
            await self.embedding_index.embed_missing(conversation_id)
        if self.compression_engine is not None:
            await self.compression_engine.safe_compress(conversation_id, force=False)

    # ------------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------------

    async def safe_extract(
        self,
        conversation_id: str,
        transcript: ChatTranscript,
        force: bool = False,
        range_start: Optional[int] = None,
        range_end: Optional[int] = None,
    ) -> ExtractionReport:
        """Lock-guarded extraction that never raises.

        Background runs are silent apart from the failure-streak warning;
        forced runs always tell the user what happened.
        """
        mode = "forced" if force else "normal"
        if not self.settings.enabled and not force:
            return ExtractionReport(mode=mode, skipped_reason="disabled")

        store = self.provider.get(conversation_id, self._known_names(transcript))
        if store.processing.extraction_in_progress:
            if not force:
                logger.info("[EXTRACTION] Extraction already in progress, skipping")
                return ExtractionReport(
                    mode=mode, skipped_reason="locked",
                    watermark=store.processing.last_extracted_message_id,
                )
            # No other run can hold the lock across a restart
            logger.warning("[EXTRACTION] Force extract: clearing stale extraction lock")
            store.processing.extraction_in_progress = False
            self.provider.save(conversation_id)
            self.events.notify_user(conversation_id, "info", "检测到提取锁未释放，已自动重置，开始强制提取...")

        if len(transcript) == 0:
            if force:
                self.events.notify_user(conversation_id, "info", "当前没有聊天记录")
            return ExtractionReport(mode=mode, skipped_reason="empty_transcript")

        if transcript.is_generating():
            logger.info("[EXTRACTION] Reply generation in progress, deferring extraction")
            if force:
                self.events.notify_user(conversation_id, "warning", "消息发送中，请稍后再试")
            return ExtractionReport(
                mode=mode, skipped_reason="generating",
                watermark=store.processing.last_extracted_message_id,
            )

        if force:
            return await self.force_extract_unprocessed(
                conversation_id, transcript, range_start, range_end
            )

        pending_count = len(transcript) - 1 - store.processing.last_extracted_message_id
        if pending_count < self.settings.extraction_interval:
            return ExtractionReport(
                mode=mode, skipped_reason="below_interval",
                watermark=store.processing.last_extracted_message_id,
            )

        store.processing.extraction_in_progress = True
        self.provider.save(conversation_id)
        set_mood(self.mood, "thinking")

        report = ExtractionReport(mode=mode)
        try:
            report = await self.perform_extraction(conversation_id, transcript)
            if report.batches_failed:
                self._record_failure(conversation_id)
                set_mood(self.mood, "sad", 5)
            else:
                self.reset_failures(conversation_id)
                set_mood(self.mood, "joyful", 5)
            await self.hide_processed_turns(conversation_id, transcript)
            self.events.notify_ui_refresh(conversation_id)
        except Exception as e:
            logger.warning(f"[EXTRACTION] Extraction failed: {e}", exc_info=True)
            report.errors.append(str(e))
            report.batches_failed = max(report.batches_failed, 1)
            set_mood(self.mood, "sad", 5)
            self._record_failure(conversation_id)
        finally:
            store.processing.extraction_in_progress = False
            self.provider.save(conversation_id)
            self.events.notify_status_change(conversation_id)

        report.watermark = store.processing.last_extracted_message_id
        return report

    # ------------------------------------------------------------------
    # Forced mode
    # ------------------------------------------------------------------

    async def force_extract_unprocessed(
        self,
        conversation_id: str,
        transcript: ChatTranscript,
        range_start: Optional[int] = None,
        range_end: Optional[int] = None,
    ) -> ExtractionReport:
        """
        Extract every turn whose id is not yet processed, hidden turns included.

        Args:
            range_start: first index to scan (default 0)
            range_end: last index to scan, inclusive; clipped to the trailing buffer
        """
        store = self.provider.get(conversation_id, self._known_names(transcript))
        report = ExtractionReport(mode="forced")
        processed = store.processing.extracted_msg_dates

        default_end = max(0, len(transcript) - FORCED_BUFFER)
        scan_start = max(0, range_start) if range_start is not None else 0
        end_idx = min(range_end + 1, default_end) if range_end is not None else default_end

        unextracted: List[IndexedTurn] = []
        if scan_start < end_idx:
            for offset, turn in enumerate(transcript.turns(scan_start, end_idx)):
                if not turn.text:
                    continue
                if turn.turn_id and str(turn.turn_id) in processed:
                    continue
                unextracted.append((scan_start + offset, turn))

        if not unextracted:
            # Everything is marked; keep the watermark from reporting phantom pending turns
            self._advance_watermark(store, end_idx - 1)
            self.provider.save(conversation_id)
            self.events.notify_user(conversation_id, "info", "所有消息均已提取，没有需要处理的内容")
            self.events.notify_status_change(conversation_id)
            report.skipped_reason = "nothing_pending"
            report.watermark = store.processing.last_extracted_message_id
            return report

        store.processing.extraction_in_progress = True
        self.provider.save(conversation_id)
        set_mood(self.mood, "thinking")

        batches = _batches(unextracted)
        total_batches = len(batches)
        max_tokens = max(self.settings.extraction_max_tokens, BATCH_MIN_MAX_TOKENS)
        report.batches_total = total_batches
        self.events.notify_user(
            conversation_id, "info", f"发现 {len(unextracted)} 条未提取消息，分 {total_batches} 批处理..."
        )

        try:
            failed = await self._run_forced_batches(
                conversation_id, store, batches, transcript, max_tokens, report
            )

            if failed:
                retry = failed
                self.events.notify_user(conversation_id, "info", f"重试 {len(retry)} 个失败批次...")
                failed = await self._run_forced_batches(
                    conversation_id, store, retry, transcript, max_tokens, report, retrying=True
                )

            report.batches_failed = len(failed)
            if failed:
                set_mood(self.mood, "sad", 6)
                self.events.notify_user(
                    conversation_id, "warning",
                    f"强制提取完成: {report.batches_succeeded} 批成功，{len(failed)} 批仍失败",
                )
            else:
                set_mood(self.mood, "joyful", 5)
                self.events.notify_user(
                    conversation_id, "success",
                    f"强制提取完成！{report.batches_succeeded} 批全部成功，当前共 {len(store.pages)} 个故事页",
                )
            self.events.notify_progress(conversation_id, total_batches, total_batches, "强制提取完成")

            await self._post_extraction(conversation_id)
            await self.hide_processed_turns(conversation_id, transcript)
            self.events.notify_ui_refresh(conversation_id)
        except Exception as e:
            logger.error(f"[EXTRACTION] Force extraction error: {e}", exc_info=True)
            report.errors.append(str(e))
            set_mood(self.mood, "sad", 5)
            self.events.notify_user(conversation_id, "error", f"强制提取出错: {e}")
        finally:
            store.processing.extraction_in_progress = False
            self.provider.save(conversation_id)
            self.events.notify_status_change(conversation_id)

        report.watermark = store.processing.last_extracted_message_id
        return report

    async def _run_forced_batches(
        self,
        conversation_id: str,
        store: FactStore,
        batches: List[List[IndexedTurn]],
        transcript: ChatTranscript,
        max_tokens: int,
        report: ExtractionReport,
        retrying: bool = False,
    ) -> List[List[IndexedTurn]]:
        """Run batches in order; returns the ones that failed."""
        failed: List[List[IndexedTurn]] = []
        label = "重试" if retrying else "批次"
        for bi, batch in enumerate(batches):
            self.events.notify_progress(conversation_id, bi, len(batches), f"{label} {bi + 1}/{len(batches)}，等待API响应...")
            try:
                page_ids = await self._extract_group(
                    store, batch, transcript, max_tokens, template="extraction_init"
                )
            except MemoryManagerError as e:
                logger.warning(f"[EXTRACTION] Force {label} {bi + 1} failed: {e}")
                report.errors.append(str(e))
                failed.append(batch)
                continue
            self._advance_watermark(store, batch[-1][0])
            self.provider.save(conversation_id)
            report.batches_succeeded += 1
            report.pages_created += len(page_ids)
            logger.info(f"[EXTRACTION] Force {label} {bi + 1}/{len(batches)} done. Pages: {len(store.pages)}")
        return failed

    # ------------------------------------------------------------------
    # Auto-hide
    # ------------------------------------------------------------------

    async def hide_processed_turns(self, conversation_id: str, transcript: ChatTranscript) -> int:
        """Hide processed turns while keeping the last `keep_recent_messages` visible.

        Returns the number of turns that were visible before hiding.
        """
        if not self.settings.auto_hide:
            return 0
        store = self.provider.get(conversation_id)
        last = store.processing.last_extracted_message_id
        if last < 0:
            return 0

        hide_up_to = min(last, len(transcript) - 1 - self.settings.keep_recent_messages)
        if hide_up_to < 0:
            return 0

        visible = sum(1 for t in transcript.turns(0, hide_up_to + 1) if not t.is_system)
        if visible == 0:
            return 0

        logger.info(
            f"[EXTRACTION] Auto-hiding turns 0-{hide_up_to} "
            f"(keeping last {self.settings.keep_recent_messages} visible)"
        )
        await transcript.set_hidden(0, hide_up_to, True)
        return visible

    async def recalculate_hide_range(self, transcript: ChatTranscript) -> Optional[Tuple[int, int]]:
        """After a deletion, unhide turns that now fall inside the visible window.

        Returns the unhidden (start, end) range, inclusive, if any.
        """
        keep = self.settings.keep_recent_messages
        if not self.settings.auto_hide or keep < 1:
            return None
        total = len(transcript)
        if total == 0:
            return None

        new_hide_up_to = total - 1 - keep
        current_hide_up_to = -1
        turns = transcript.turns(0, total)
        for i in range(total - 1, -1, -1):
            if turns[i].is_system:
                current_hide_up_to = i
                break
        if current_hide_up_to < 0 or new_hide_up_to >= current_hide_up_to:
            return None

        unhide_from = max(0, new_hide_up_to + 1)
        logger.info(
            f"[EXTRACTION] Unhiding turns {unhide_from}-{current_hide_up_to} after deletion "
            f"(keeping last {keep} visible)"
        )
        await transcript.set_hidden(unhide_from, current_hide_up_to, False)
        return unhide_from, current_hide_up_to
