"""
Fact Store document model.

One FactStore per conversation. Field names serialize in camelCase so the
stored document keeps the established wire names (`lastExtractedMessageId`,
`knownCharacterAttitudes`, `compressionLevel`, ...).
"""

import enum
import time
from typing import Any, Dict, List, Optional, Set

from pydantic import BaseModel, ConfigDict, Field, field_serializer, field_validator
from pydantic.alias_generators import to_camel


DATA_VERSION = 4


class CompressionLevel(enum.IntEnum):
    """Detail tier of a story page. Only ever moves forward."""
    FRESH = 0      # Full detail
    SUMMARY = 1    # Compressed to a short causal summary
    ARCHIVED = 2   # Removed from pages


# Closed set of semantic page tags, with display labels
MEMORY_CATEGORIES: Dict[str, str] = {
    "emotional": "情感",
    "relationship": "关系",
    "intimate": "亲密",
    "promise": "承诺",
    "conflict": "冲突",
    "discovery": "发现",
    "turning_point": "转折",
    "daily": "日常",
}
VALID_CATEGORIES = frozenset(MEMORY_CATEGORIES)

DIRECTIVE_STAGES = ("global", "extraction", "recall", "compression")


def now_ms() -> int:
    return int(time.time() * 1000)


class StoreModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        validate_assignment=False,
        extra="ignore",
    )


class KnownCharacterAttitude(StoreModel):
    name: str
    attitude: str = ""


class NpcDossier(StoreModel):
    name: str
    role: str = ""
    appearance: str = ""
    personality: str = ""
    attitude: str = ""
    keywords: List[str] = Field(default_factory=list)


class PlotItem(StoreModel):
    name: str
    status: str = ""
    significance: str = ""


class StoryPage(StoreModel):
    id: str
    day: str = ""
    date: str = ""
    title: str = ""
    content: str = ""
    keywords: List[str] = Field(default_factory=list)
    characters: List[str] = Field(default_factory=list)
    categories: List[str] = Field(default_factory=list)
    significance: str = "medium"
    compression_level: CompressionLevel = CompressionLevel.FRESH
    source_messages: List[Any] = Field(default_factory=list)
    source_dates: List[str] = Field(default_factory=list)
    created_at: int = Field(default_factory=now_ms)
    compressed_at: Optional[int] = None

    @field_validator("day", "date", mode="before")
    @classmethod
    def coerce_label(cls, v):
        # Models sometimes emit bare numbers for day/date labels
        if v is None:
            return ""
        return str(v)

    @property
    def embedding_text(self) -> str:
        return f"{self.title}: {self.content}"

    @property
    def is_retrievable(self) -> bool:
        return self.compression_level <= CompressionLevel.SUMMARY


class ProcessingState(StoreModel):
    last_extracted_message_id: int = -1
    extraction_in_progress: bool = False
    extracted_msg_dates: Set[str] = Field(default_factory=set)

    @field_validator("extracted_msg_dates", mode="before")
    @classmethod
    def accept_legacy_mapping(cls, v):
        """Older documents store processed turns as {turn_id: true}."""
        if v is None:
            return set()
        if isinstance(v, dict):
            return {str(k) for k, flag in v.items() if flag}
        return v

    @field_serializer("extracted_msg_dates")
    def serialize_dates(self, dates: Set[str]) -> List[str]:
        return sorted(dates)


class ManagerDirective(StoreModel):
    global_: str = Field(default="", alias="global")
    extraction: str = ""
    recall: str = ""
    compression: str = ""

    def for_stage(self, stage: str) -> str:
        if stage == "global":
            return self.global_
        return getattr(self, stage, "") or ""


class FactStore(StoreModel):
    version: int = DATA_VERSION
    timeline: str = ""
    known_character_attitudes: List[KnownCharacterAttitude] = Field(default_factory=list)
    characters: List[NpcDossier] = Field(default_factory=list)
    items: List[PlotItem] = Field(default_factory=list)
    pages: List[StoryPage] = Field(default_factory=list)
    embeddings: Dict[str, List[float]] = Field(default_factory=dict)
    processing: ProcessingState = Field(default_factory=ProcessingState)
    message_recalls: Dict[str, List[str]] = Field(default_factory=dict)
    manager_directive: ManagerDirective = Field(default_factory=ManagerDirective)

    @field_validator("message_recalls", mode="before")
    @classmethod
    def stringify_recall_keys(cls, v):
        if not v:
            return {}
        return {str(k): list(ids) for k, ids in v.items()}

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    def get_page(self, page_id: str) -> Optional[StoryPage]:
        for page in self.pages:
            if page.id == page_id:
                return page
        return None

    def retrievable_pages(self) -> List[StoryPage]:
        return [p for p in self.pages if p.is_retrievable]

    def find_character(self, name: str) -> Optional[NpcDossier]:
        key = name.strip().lower()
        for c in self.characters:
            if c.name.lower() == key:
                return c
        return None

    def timeline_lines(self) -> List[str]:
        return [line for line in (self.timeline or "").split("\n") if line.strip()]

    def has_index_content(self) -> bool:
        return bool(
            self.timeline
            or self.items
            or self.known_character_attitudes
            or self.characters
        )

    # ------------------------------------------------------------------
    # Removal (page row + derived references in one step)
    # ------------------------------------------------------------------

    def remove_page(self, page_id: str) -> bool:
        for idx, page in enumerate(self.pages):
            if page.id == page_id:
                del self.pages[idx]
                self.embeddings.pop(page_id, None)
                self._drop_recall_references(page_id)
                return True
        return False

    def _drop_recall_references(self, page_id: str) -> None:
        for turn_key in list(self.message_recalls):
            remaining = [pid for pid in self.message_recalls[turn_key] if pid != page_id]
            if remaining:
                self.message_recalls[turn_key] = remaining
            else:
                del self.message_recalls[turn_key]

    def to_document(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, mode="json")


def character_vector_key(name: str) -> str:
    return f"char_{name}"
