"""
Fact Store persistence.

Repositories move raw JSON documents in and out of storage. The provider sits
on top of a repository and keeps exactly one live FactStore per conversation,
so extraction, compression and retrieval always mutate the same instance.
"""

import copy
import logging
from collections import OrderedDict
from contextlib import contextmanager
from typing import Any, Callable, Dict, Iterable, Iterator, Optional, Protocol

from sqlalchemy.orm import Session, sessionmaker

from ..models.conversation_memory import ConversationMemory
from ..models.fact_store import DATA_VERSION, FactStore
from .migrations import needs_migration, run_migration_chain

logger = logging.getLogger(__name__)


class FactStoreRepository(Protocol):
    def load(self, conversation_id: str) -> Optional[Dict[str, Any]]: ...

    def save(self, conversation_id: str, document: Dict[str, Any]) -> None: ...

    def delete(self, conversation_id: str) -> None: ...


class InMemoryFactStoreRepository:
    def __init__(self):
        self.documents: Dict[str, Dict[str, Any]] = {}
        self.save_count = 0

    def load(self, conversation_id: str) -> Optional[Dict[str, Any]]:
        document = self.documents.get(conversation_id)
        return copy.deepcopy(document) if document is not None else None

    def save(self, conversation_id: str, document: Dict[str, Any]) -> None:
        self.documents[conversation_id] = copy.deepcopy(document)
        self.save_count += 1

    def delete(self, conversation_id: str) -> None:
        self.documents.pop(conversation_id, None)


class SqlFactStoreRepository:
    """Stores each conversation's document in the `conversation_memory` table."""

    def __init__(self, session_factory: sessionmaker):
        self.session_factory = session_factory

    def load(self, conversation_id: str) -> Optional[Dict[str, Any]]:
        db: Session = self.session_factory()
        try:
            row = db.query(ConversationMemory).filter(
                ConversationMemory.conversation_id == conversation_id
            ).first()
            return copy.deepcopy(row.document) if row else None
        finally:
            db.close()

    def save(self, conversation_id: str, document: Dict[str, Any]) -> None:
        db: Session = self.session_factory()
        try:
            row = db.query(ConversationMemory).filter(
                ConversationMemory.conversation_id == conversation_id
            ).first()
            if row is None:
                row = ConversationMemory(conversation_id=conversation_id)
                db.add(row)
            # Assign a fresh object so the JSON column is flagged dirty
            row.document = copy.deepcopy(document)
            row.version = document.get("version", DATA_VERSION)
            db.commit()
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    def delete(self, conversation_id: str) -> None:
        db: Session = self.session_factory()
        try:
            db.query(ConversationMemory).filter(
                ConversationMemory.conversation_id == conversation_id
            ).delete()
            db.commit()
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()


class FactStoreProvider:
    """Identity map of live FactStores keyed by conversation id.

    At most `max_cached` stores stay loaded. When the map grows past that, the
    least recently used store that no async operation is holding is saved and
    unloaded; `on_evict` lets owners drop their own per-conversation state.
    """

    def __init__(
        self,
        repository: FactStoreRepository,
        max_cached: int = 64,
        on_evict: Optional[Callable[[str], None]] = None,
    ):
        self.repository = repository
        self.max_cached = max(1, max_cached)
        self.on_evict = on_evict
        self._stores: "OrderedDict[str, FactStore]" = OrderedDict()
        self._holds: Dict[str, int] = {}

    def __len__(self) -> int:
        return len(self._stores)

    def __contains__(self, conversation_id: str) -> bool:
        return conversation_id in self._stores

    @contextmanager
    def hold(self, conversation_id: str) -> Iterator[None]:
        """Keep a conversation's store loaded for the duration of an operation."""
        self._holds[conversation_id] = self._holds.get(conversation_id, 0) + 1
        try:
            yield
        finally:
            remaining = self._holds[conversation_id] - 1
            if remaining:
                self._holds[conversation_id] = remaining
            else:
                del self._holds[conversation_id]
                self._evict_overflow(keep=conversation_id)

    def get(self, conversation_id: str, known_names: Optional[Iterable[str]] = None) -> FactStore:
        store = self._stores.get(conversation_id)
        if store is not None:
            self._stores.move_to_end(conversation_id)
            return store

        document = self.repository.load(conversation_id)
        if document is None:
            store = FactStore()
            logger.info(f"[STORE] Created empty memory for conversation {conversation_id}")
        elif needs_migration(document):
            migrated = run_migration_chain(document, known_names)
            store = FactStore.model_validate(migrated)
            self.repository.save(conversation_id, store.to_document())
            logger.info(
                f"[STORE] Migrated memory for conversation {conversation_id} "
                f"from v{document.get('version')} to v{DATA_VERSION}"
            )
        else:
            store = FactStore.model_validate(document)

        self._admit(conversation_id, store)
        return store

    def _admit(self, conversation_id: str, store: FactStore) -> None:
        self._stores[conversation_id] = store
        self._stores.move_to_end(conversation_id)
        self._evict_overflow(keep=conversation_id)

    def _evict_overflow(self, keep: Optional[str] = None) -> None:
        if len(self._stores) <= self.max_cached:
            return
        candidates = [cid for cid in self._stores if cid != keep and cid not in self._holds]
        for conversation_id in candidates:
            if len(self._stores) <= self.max_cached:
                break
            self.save(conversation_id)
            self.forget(conversation_id)
            logger.debug(f"[STORE] Unloaded memory for conversation {conversation_id}")
            if self.on_evict is not None:
                self.on_evict(conversation_id)

    def save(self, conversation_id: str) -> None:
        store = self._stores.get(conversation_id)
        if store is None:
            return
        self.repository.save(conversation_id, store.to_document())

    def reset(self, conversation_id: str) -> FactStore:
        store = FactStore()
        self.repository.save(conversation_id, store.to_document())
        self._admit(conversation_id, store)
        logger.info(f"[STORE] Reset memory for conversation {conversation_id}")
        return store

    def export_document(self, conversation_id: str) -> Dict[str, Any]:
        return self.get(conversation_id).to_document()

    def import_document(
        self,
        conversation_id: str,
        document: Dict[str, Any],
        known_names: Optional[Iterable[str]] = None,
    ) -> FactStore:
        """Replace a conversation's memory wholesale; older layouts are migrated first."""
        if needs_migration(document):
            document = run_migration_chain(document, known_names)
        store = FactStore.model_validate(document)
        # An imported lock can never be held by anyone
        store.processing.extraction_in_progress = False
        self.repository.save(conversation_id, store.to_document())
        self._admit(conversation_id, store)
        logger.info(f"[STORE] Imported memory for conversation {conversation_id}: {len(store.pages)} pages")
        return store

    def forget(self, conversation_id: str) -> None:
        self._stores.pop(conversation_id, None)
