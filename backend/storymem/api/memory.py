"""
Memory API

Thin command surface over MemoryManager. The host sends its transcript with
each request; turns hidden by auto-hide are reported back in `hiddenTurns`.
"""

from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from ..config import settings
from ..database import SessionLocal
from ..services.interfaces import ChatTurn, InMemoryTranscript
from ..services.memory_manager import MemoryManager
from ..services.persistence import SqlFactStoreRepository

import logging

logger = logging.getLogger(__name__)

router = APIRouter()

_memory_manager: Optional[MemoryManager] = None


def get_memory_manager() -> MemoryManager:
    global _memory_manager
    if _memory_manager is None:
        _memory_manager = MemoryManager(settings, repository=SqlFactStoreRepository(SessionLocal))
    return _memory_manager


# Request/Response models
class ApiModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class TurnPayload(ApiModel):
    id: str
    name: str = ""
    text: str = ""
    is_system: bool = False
    is_user: bool = False


class TranscriptPayload(ApiModel):
    turns: List[TurnPayload] = Field(default_factory=list)
    user_name: str = ""
    character_name: str = ""
    generating: bool = False

    def to_transcript(self) -> InMemoryTranscript:
        return InMemoryTranscript(
            [ChatTurn(t.id, t.name, t.text, t.is_system, t.is_user) for t in self.turns],
            user_name=self.user_name,
            character_name=self.character_name,
            generating=self.generating,
        )


class TranscriptRequest(ApiModel):
    transcript: TranscriptPayload = Field(default_factory=TranscriptPayload)


class ExtractRequest(TranscriptRequest):
    range_start: Optional[int] = None
    range_end: Optional[int] = None


class RecallRequest(TranscriptRequest):
    quiet: bool = False


class MarkExtractedRequest(TranscriptRequest):
    start: int
    end: int


class ConversationChangedRequest(TranscriptRequest):
    previous_conversation_id: Optional[str] = None


class DeletePagesRequest(ApiModel):
    page_ids: List[str]


class CleanDatesRequest(ApiModel):
    dates: List[str]


class DirectiveRequest(ApiModel):
    stage: str
    text: str = ""


class ImportRequest(ApiModel):
    document: Dict[str, Any]
    character_name: str = ""


def _hidden_turns(transcript: InMemoryTranscript) -> List[str]:
    return [t.turn_id for t in transcript.turns() if t.is_system]


def _drain_notices(manager: MemoryManager, conversation_id: str) -> List[Dict[str, str]]:
    drain = getattr(manager.events, "drain", None)
    if drain is None:
        return []
    return [{"level": level, "message": message} for level, message in drain(conversation_id)]


# Endpoints

@router.post("/{conversation_id}/extract")
async def force_extract(
    conversation_id: str,
    request: ExtractRequest,
    manager: MemoryManager = Depends(get_memory_manager),
):
    """Forced extraction of every unprocessed turn, optionally limited to an index range."""
    transcript = request.transcript.to_transcript()
    report = await manager.extract(conversation_id, transcript, request.range_start, request.range_end)
    return {
        "report": report.to_dict(),
        "hiddenTurns": _hidden_turns(transcript),
        "notices": _drain_notices(manager, conversation_id),
    }


@router.post("/{conversation_id}/turn-received")
async def turn_received(
    conversation_id: str,
    request: TranscriptRequest,
    manager: MemoryManager = Depends(get_memory_manager),
):
    """Background extraction trigger; a no-op until enough turns are pending."""
    transcript = request.transcript.to_transcript()
    report = await manager.on_turn_received(conversation_id, transcript)
    return {
        "report": report.to_dict(),
        "hiddenTurns": _hidden_turns(transcript),
        "notices": _drain_notices(manager, conversation_id),
    }


@router.post("/{conversation_id}/compress")
async def force_compress(conversation_id: str, manager: MemoryManager = Depends(get_memory_manager)):
    result = await manager.compress(conversation_id)
    return {
        "result": result.to_dict() if result else None,
        "notices": _drain_notices(manager, conversation_id),
    }


@router.post("/{conversation_id}/recall")
async def recall(
    conversation_id: str,
    request: RecallRequest,
    manager: MemoryManager = Depends(get_memory_manager),
):
    """Prepare both injection slots for the next generation and return their contents."""
    transcript = request.transcript.to_transcript()
    result = await manager.before_generation(conversation_id, transcript, request.quiet)
    return {
        "result": result.to_dict(),
        "storyIndex": result.index_text,
        "notices": _drain_notices(manager, conversation_id),
    }


@router.get("/{conversation_id}/recall/last")
async def last_recall(conversation_id: str, manager: MemoryManager = Depends(get_memory_manager)):
    return manager.last_recall(conversation_id).to_dict()


@router.post("/{conversation_id}/index")
async def story_index(
    conversation_id: str,
    request: TranscriptRequest,
    manager: MemoryManager = Depends(get_memory_manager),
):
    return {"storyIndex": manager.story_index(conversation_id, request.transcript.to_transcript())}


@router.get("/{conversation_id}/pages")
async def list_pages(conversation_id: str, manager: MemoryManager = Depends(get_memory_manager)):
    pages = manager.list_pages(conversation_id)
    return {
        "pages": [p.model_dump(by_alias=True, mode="json") for p in pages],
        "total": len(pages),
    }


@router.post("/{conversation_id}/pages/delete")
async def delete_pages(
    conversation_id: str,
    request: DeletePagesRequest,
    manager: MemoryManager = Depends(get_memory_manager),
):
    return {"deleted": manager.delete_pages(conversation_id, request.page_ids)}


@router.post("/{conversation_id}/health")
async def health(
    conversation_id: str,
    request: TranscriptRequest,
    manager: MemoryManager = Depends(get_memory_manager),
):
    return manager.health_check(conversation_id, request.transcript.to_transcript()).to_dict()


@router.post("/{conversation_id}/health/clean-dates")
async def clean_dates(
    conversation_id: str,
    request: CleanDatesRequest,
    manager: MemoryManager = Depends(get_memory_manager),
):
    return {"cleaned": manager.clean_orphan_dates(conversation_id, request.dates)}


@router.post("/{conversation_id}/mark-extracted")
async def mark_extracted(
    conversation_id: str,
    request: MarkExtractedRequest,
    manager: MemoryManager = Depends(get_memory_manager),
):
    transcript = request.transcript.to_transcript()
    try:
        marked = manager.mark_extracted(conversation_id, transcript, request.start, request.end)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return {"marked": marked}


@router.post("/{conversation_id}/conversation-changed")
async def conversation_changed(
    conversation_id: str,
    request: ConversationChangedRequest,
    manager: MemoryManager = Depends(get_memory_manager),
):
    transcript = request.transcript.to_transcript()
    await manager.on_conversation_changed(conversation_id, transcript, request.previous_conversation_id)
    return {"hiddenTurns": _hidden_turns(transcript)}


@router.post("/{conversation_id}/message-deleted")
async def message_deleted(
    conversation_id: str,
    request: TranscriptRequest,
    manager: MemoryManager = Depends(get_memory_manager),
):
    transcript = request.transcript.to_transcript()
    deleted = await manager.on_message_deleted(conversation_id, transcript)
    return {
        "deletedProcessedTurns": deleted,
        "hiddenTurns": _hidden_turns(transcript),
        "notices": _drain_notices(manager, conversation_id),
    }


@router.post("/{conversation_id}/vectors/rebuild")
async def rebuild_vectors(conversation_id: str, manager: MemoryManager = Depends(get_memory_manager)):
    return await manager.rebuild_vectors(conversation_id)


@router.post("/embedding/test")
async def test_embedding(manager: MemoryManager = Depends(get_memory_manager)):
    return {"dimensions": await manager.test_embedding()}


@router.post("/{conversation_id}/categories/rebuild")
async def rebuild_categories(conversation_id: str, manager: MemoryManager = Depends(get_memory_manager)):
    return await manager.rebuild_categories(conversation_id)


@router.get("/{conversation_id}/directive")
async def get_directive(conversation_id: str, manager: MemoryManager = Depends(get_memory_manager)):
    return manager.get_directive(conversation_id)


@router.put("/{conversation_id}/directive")
async def set_directive(
    conversation_id: str,
    request: DirectiveRequest,
    manager: MemoryManager = Depends(get_memory_manager),
):
    try:
        return manager.set_directive(conversation_id, request.stage, request.text)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))


@router.post("/{conversation_id}/reset")
async def reset(conversation_id: str, manager: MemoryManager = Depends(get_memory_manager)):
    manager.reset(conversation_id)
    logger.info(f"[STORE] Memory reset requested for conversation {conversation_id}")
    return {"status": "reset"}


@router.get("/{conversation_id}/export")
async def export_store(conversation_id: str, manager: MemoryManager = Depends(get_memory_manager)):
    return manager.export_store(conversation_id)


@router.post("/{conversation_id}/import")
async def import_store(
    conversation_id: str,
    request: ImportRequest,
    manager: MemoryManager = Depends(get_memory_manager),
):
    store = manager.import_store(conversation_id, request.document, request.character_name)
    return {"version": store.version, "pages": len(store.pages)}
