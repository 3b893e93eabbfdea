"""
Memory maintenance: health check, orphan cleanup, manual bookkeeping.

A turn id recorded as processed but no longer present in the transcript means
the user deleted that turn after extraction; pages built from it may describe
events that no longer happened.
"""

import logging
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Set

from ..models.fact_store import FactStore
from .fact_merge import mark_turns_extracted
from .interfaces import ChatTranscript

logger = logging.getLogger(__name__)


@dataclass
class AffectedPage:
    page_id: str
    day: str
    title: str
    status: str  # full | partial
    orphan_count: int
    total_count: int

    def to_dict(self) -> Dict:
        return {
            "pageId": self.page_id,
            "day": self.day,
            "title": self.title,
            "status": self.status,
            "orphanCount": self.orphan_count,
            "totalCount": self.total_count,
        }


@dataclass
class HealthReport:
    stats: Dict[str, int] = field(default_factory=dict)
    issues: List[str] = field(default_factory=list)
    orphan_dates: List[str] = field(default_factory=list)
    affected_pages: List[AffectedPage] = field(default_factory=list)

    @property
    def healthy(self) -> bool:
        return not self.issues

    def to_dict(self) -> Dict:
        return {
            "healthy": self.healthy,
            "stats": dict(self.stats),
            "issues": list(self.issues),
            "orphanDates": list(self.orphan_dates),
            "affectedPages": [p.to_dict() for p in self.affected_pages],
        }


def transcript_turn_ids(transcript: ChatTranscript) -> Set[str]:
    return {str(t.turn_id) for t in transcript.turns(0, len(transcript)) if t.turn_id}


def find_orphan_dates(store: FactStore, transcript: ChatTranscript) -> List[str]:
    present = transcript_turn_ids(transcript)
    return sorted(d for d in store.processing.extracted_msg_dates if d not in present)


def count_deleted_turns(store: FactStore, transcript: ChatTranscript) -> int:
    if not store.processing.extracted_msg_dates:
        return 0
    return len(find_orphan_dates(store, transcript))


def run_health_check(store: FactStore, transcript: ChatTranscript, embedding_enabled: bool = False) -> HealthReport:
    report = HealthReport()
    report.stats = {
        "pages": len(store.pages),
        "npcs": len(store.characters),
        "knownCharacters": len(store.known_character_attitudes),
        "items": len(store.items),
        "vectors": len(store.embeddings),
        "processedTurns": len(store.processing.extracted_msg_dates),
    }

    orphans = set(find_orphan_dates(store, transcript))
    if orphans:
        for page in store.pages:
            sources = page.source_dates
            if not sources:
                continue
            orphan_count = sum(1 for d in sources if d in orphans)
            if orphan_count:
                report.affected_pages.append(AffectedPage(
                    page_id=page.id,
                    day=page.day,
                    title=page.title,
                    status="full" if orphan_count == len(sources) else "partial",
                    orphan_count=orphan_count,
                    total_count=len(sources),
                ))
        report.orphan_dates = sorted(orphans)
        report.issues.append(f"{len(orphans)} 条已提取消息已被删除")

    retrievable = store.retrievable_pages()
    if embedding_enabled:
        missing = [p for p in retrievable if p.id not in store.embeddings]
        if missing:
            report.issues.append(f"{len(missing)} 个故事页缺少向量索引")

    no_categories = [p for p in retrievable if not p.categories]
    if no_categories:
        report.issues.append(f"{len(no_categories)} 个故事页缺少分类标签")

    if not store.timeline:
        report.issues.append("时间线为空")
    else:
        report.stats["timelineEntries"] = len(store.timeline_lines())

    return report


def delete_pages(store: FactStore, page_ids: Iterable[str]) -> int:
    deleted = 0
    for page_id in page_ids:
        if store.remove_page(page_id):
            deleted += 1
    logger.info(f"[STORE] Deleted {deleted} pages")
    return deleted


def clean_orphan_dates(store: FactStore, dates: Iterable[str]) -> int:
    """Forget processed-turn marks so the turns' absence stops being reported."""
    processed = store.processing.extracted_msg_dates
    cleaned = 0
    for d in dates:
        if d in processed:
            processed.discard(d)
            cleaned += 1
    return cleaned


def mark_range_extracted(store: FactStore, transcript: ChatTranscript, start: int, end: int) -> int:
    """Mark visible turns start..end (inclusive) as processed without calling a model."""
    if start < 0 or start > end or end >= len(transcript):
        raise ValueError(f"Turn range {start}-{end} is outside the transcript (length {len(transcript)})")
    turns = [t for t in transcript.turns(start, end + 1) if not t.is_system]
    mark_turns_extracted(store, turns)
    return len(turns)
