"""
Host collaborator interfaces.

The memory layer never talks to a chat host directly. It is handed a
transcript, a two-slot prompt sink and an events object; in-memory
implementations are provided for the HTTP surface and tests.
"""

import enum
import logging
from dataclasses import dataclass
from typing import Dict, List, Optional, Protocol, Tuple, runtime_checkable

logger = logging.getLogger(__name__)


@dataclass
class ChatTurn:
    """One turn of the host conversation. `turn_id` is stable across edits and deletions."""
    turn_id: str
    name: str
    text: str
    is_system: bool = False
    is_user: bool = False


@runtime_checkable
class ChatTranscript(Protocol):
    user_name: str
    character_name: str

    def __len__(self) -> int: ...

    def turns(self, start: int = 0, end: Optional[int] = None) -> List[ChatTurn]: ...

    def is_generating(self) -> bool: ...

    async def set_hidden(self, start: int, end: int, hidden: bool) -> None: ...


class InMemoryTranscript:
    """List-backed transcript. Hiding marks turns as system turns, as chat hosts do."""

    def __init__(
        self,
        turns: Optional[List[ChatTurn]] = None,
        user_name: str = "",
        character_name: str = "",
        generating: bool = False,
    ):
        self._turns: List[ChatTurn] = list(turns or [])
        self.user_name = user_name
        self.character_name = character_name
        self.generating = generating

    def __len__(self) -> int:
        return len(self._turns)

    def turns(self, start: int = 0, end: Optional[int] = None) -> List[ChatTurn]:
        return self._turns[start:end]

    def is_generating(self) -> bool:
        return self.generating

    async def set_hidden(self, start: int, end: int, hidden: bool) -> None:
        # end is inclusive
        for turn in self._turns[max(0, start):end + 1]:
            turn.is_system = hidden

    def append(self, turn: ChatTurn) -> None:
        self._turns.append(turn)

    def delete(self, index: int) -> ChatTurn:
        return self._turns.pop(index)


class InjectionSlot(str, enum.Enum):
    INDEX = "story_index"
    RECALL = "recalled_pages"


@runtime_checkable
class PromptInjectionSink(Protocol):
    def set_prompt(self, conversation_id: str, slot: InjectionSlot, text: str, depth: int = 0) -> None: ...


class InMemoryInjectionSink:
    """Slots kept per conversation; empty text clears the slot."""

    def __init__(self):
        self.slots: Dict[str, Dict[InjectionSlot, Tuple[str, int]]] = {}

    def set_prompt(self, conversation_id: str, slot: InjectionSlot, text: str, depth: int = 0) -> None:
        slots = self.slots.setdefault(conversation_id, {})
        if text:
            slots[slot] = (text, depth)
        else:
            slots.pop(slot, None)
            if not slots:
                del self.slots[conversation_id]

    def get(self, conversation_id: str, slot: InjectionSlot) -> str:
        text, _ = self.slots.get(conversation_id, {}).get(slot, ("", 0))
        return text

    def depth(self, conversation_id: str, slot: InjectionSlot) -> int:
        _, depth = self.slots.get(conversation_id, {}).get(slot, ("", 0))
        return depth

    def clear(self, conversation_id: Optional[str] = None) -> None:
        if conversation_id is None:
            self.slots.clear()
        else:
            self.slots.pop(conversation_id, None)


class MemoryEvents(Protocol):
    """Capabilities the core uses to talk back to a UI, scoped to one conversation."""

    def notify_ui_refresh(self, conversation_id: str, sections: Optional[List[str]] = None) -> None: ...

    def notify_status_change(self, conversation_id: str) -> None: ...

    def notify_user(self, conversation_id: str, level: str, message: str) -> None: ...

    def notify_progress(self, conversation_id: str, done: int, total: int, message: str) -> None: ...


class LoggingEvents:
    """Default events sink: logs notices and keeps the most recent ones per conversation."""

    MAX_NOTICES = 50

    def __init__(self):
        self.notices: Dict[str, List[Tuple[str, str]]] = {}

    def notify_ui_refresh(self, conversation_id: str, sections: Optional[List[str]] = None) -> None:
        logger.debug(f"[EVENTS] {conversation_id}: UI refresh: {sections or 'all'}")

    def notify_status_change(self, conversation_id: str) -> None:
        logger.debug(f"[EVENTS] {conversation_id}: Status changed")

    def notify_user(self, conversation_id: str, level: str, message: str) -> None:
        log = logger.warning if level in ("warning", "error") else logger.info
        log(f"[EVENTS] {conversation_id}: {level}: {message}")
        notices = self.notices.setdefault(conversation_id, [])
        notices.append((level, message))
        if len(notices) > self.MAX_NOTICES:
            del notices[0]

    def notify_progress(self, conversation_id: str, done: int, total: int, message: str) -> None:
        logger.info(f"[EVENTS] {conversation_id}: Progress {done}/{total}: {message}")

    def for_conversation(self, conversation_id: str) -> List[Tuple[str, str]]:
        return list(self.notices.get(conversation_id, []))

    def drain(self, conversation_id: str) -> List[Tuple[str, str]]:
        return self.notices.pop(conversation_id, [])
