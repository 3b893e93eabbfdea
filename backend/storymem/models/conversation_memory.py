"""
Durable row for a conversation's memory document.

The whole FactStore is stored as one JSON document; `version` is mirrored in
its own column so stale documents can be found without decoding JSON.
"""

from sqlalchemy import Column, Integer, String, DateTime, JSON
from sqlalchemy.sql import func
from ..database import Base


class ConversationMemory(Base):
    __tablename__ = "conversation_memory"

    id = Column(Integer, primary_key=True, index=True)
    conversation_id = Column(String(255), nullable=False, unique=True, index=True)
    version = Column(Integer, nullable=False, default=0)
    document = Column(JSON, nullable=False, default=dict)

    # Timestamps
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    def __repr__(self):
        return f"<ConversationMemory(conversation_id={self.conversation_id!r}, version={self.version})>"
