# Import Base from database first
from ..database import Base

# Import all models to ensure they're registered with SQLAlchemy
from .conversation_memory import ConversationMemory
from .fact_store import (
    DATA_VERSION,
    MEMORY_CATEGORIES,
    VALID_CATEGORIES,
    CompressionLevel,
    FactStore,
    KnownCharacterAttitude,
    ManagerDirective,
    NpcDossier,
    PlotItem,
    ProcessingState,
    StoryPage,
    character_vector_key,
)

__all__ = [
    "Base",
    "ConversationMemory",
    "DATA_VERSION", "MEMORY_CATEGORIES", "VALID_CATEGORIES",
    "CompressionLevel", "FactStore", "KnownCharacterAttitude", "ManagerDirective",
    "NpcDossier", "PlotItem", "ProcessingState", "StoryPage",
    "character_vector_key",
]
