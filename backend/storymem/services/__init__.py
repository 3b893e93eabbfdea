# Services modules
from .interfaces import (
    ChatTranscript,
    ChatTurn,
    InjectionSlot,
    InMemoryInjectionSink,
    InMemoryTranscript,
    LoggingEvents,
    MemoryEvents,
    PromptInjectionSink,
)
from .memory_manager import MemoryManager
from .mood import MoodTracker
from .persistence import FactStoreProvider, InMemoryFactStoreRepository, SqlFactStoreRepository

__all__ = [
    "ChatTranscript", "ChatTurn", "InjectionSlot", "InMemoryInjectionSink", "InMemoryTranscript",
    "LoggingEvents", "MemoryEvents", "PromptInjectionSink",
    "MemoryManager", "MoodTracker",
    "FactStoreProvider", "InMemoryFactStoreRepository", "SqlFactStoreRepository",
]
