"""
Embedding Index

Vector cache over an OpenAI-compatible `/embeddings` endpoint, called through
LiteLLM. Vectors live in `FactStore.embeddings` keyed by page id or
`char_<name>`; a failed call leaves the entry absent.
"""

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence

import numpy as np
from litellm import aembedding

from ..config import Settings
from ..errors import EmbeddingError, EmbeddingNotConfiguredError
from ..models.fact_store import FactStore, NpcDossier, StoryPage, character_vector_key
from .persistence import FactStoreProvider

logger = logging.getLogger(__name__)

EMBED_BATCH_SIZE = 20


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    va = np.asarray(a, dtype=float)
    vb = np.asarray(b, dtype=float)
    if va.shape != vb.shape or va.size == 0:
        return 0.0
    denom = np.linalg.norm(va) * np.linalg.norm(vb)
    if denom == 0:
        return 0.0
    return float(np.dot(va, vb) / denom)


def character_embedding_text(character: NpcDossier) -> str:
    return (
        f"角色 {character.name}: 身份: {character.role} 外貌: {character.appearance} "
        f"性格: {character.personality} 态度: {character.attitude} "
        f"关键词: {' '.join(character.keywords)}"
    )


class EmbeddingGateway:
    """One embedding backend. `embed` returns vectors in input order."""

    def __init__(self, base_url: str = "", api_key: str = "", model: str = "text-embedding-3-large",
                 dimensions: Optional[int] = 256, timeout: float = 60):
        self.base_url = base_url
        self.api_key = api_key
        self.model = model
        self.dimensions = dimensions
        self.timeout = timeout

    @classmethod
    def from_settings(cls, settings: Settings) -> "EmbeddingGateway":
        return cls(
            base_url=settings.embedding_base_url,
            api_key=settings.embedding_key,
            model=settings.embedding_model or "text-embedding-3-large",
            dimensions=settings.embedding_dimensions or None,
            timeout=settings.llm_timeout,
        )

    @property
    def configured(self) -> bool:
        return bool(self.base_url and self.api_key)

    async def embed(self, texts: List[str]) -> List[List[float]]:
        if not self.configured:
            raise EmbeddingNotConfiguredError("Embedding API not configured")
        if not texts:
            return []

        logger.info(f"[EMBEDDING] Calling embedding API: {self.base_url} model: {self.model} texts: {len(texts)}")
        params = {
            "model": f"openai/{self.model}",
            "input": texts,
            "api_base": self.base_url,
            "api_key": self.api_key,
            "timeout": self.timeout,
        }
        if self.dimensions:
            params["dimensions"] = self.dimensions

        try:
            response = await aembedding(**params)
        except Exception as e:
            raise EmbeddingError(f"Embedding request failed: {e}") from e

        items = []
        for position, item in enumerate(response.data):
            if isinstance(item, dict):
                items.append((item.get("index", position), item.get("embedding")))
            else:
                items.append((getattr(item, "index", position), getattr(item, "embedding", None)))
        items.sort(key=lambda pair: pair[0])
        vectors = [vec for _, vec in items]

        if len(vectors) != len(texts) or any(not vec for vec in vectors):
            raise EmbeddingError(
                f"Embedding API returned {len(vectors)} vectors for {len(texts)} inputs"
            )
        return vectors


@dataclass
class PreFilterResult:
    pages: List[StoryPage] = field(default_factory=list)
    characters: List[NpcDossier] = field(default_factory=list)
    scores: Dict[str, float] = field(default_factory=dict)


class EmbeddingIndex:
    def __init__(self, settings: Settings, gateway: EmbeddingGateway, provider: FactStoreProvider):
        self.settings = settings
        self.gateway = gateway
        self.provider = provider

    @property
    def configured(self) -> bool:
        return bool(self.settings.use_embedding and self.gateway.configured)

    async def embed_page(self, store: FactStore, page: StoryPage) -> bool:
        if not self.configured:
            return False
        try:
            [vector] = await self.gateway.embed([page.embedding_text])
        except EmbeddingError as e:
            logger.warning(f"[EMBEDDING] Failed to embed page {page.id}: {e}")
            return False
        store.embeddings[page.id] = vector
        logger.debug(f"[EMBEDDING] Embedded page: {page.id} {page.title}")
        return True

    async def embed_character(self, store: FactStore, character: NpcDossier) -> bool:
        if not self.configured:
            return False
        try:
            [vector] = await self.gateway.embed([character_embedding_text(character)])
        except EmbeddingError as e:
            logger.warning(f"[EMBEDDING] Failed to embed character {character.name}: {e}")
            return False
        store.embeddings[character_vector_key(character.name)] = vector
        logger.debug(f"[EMBEDDING] Embedded character: {character.name}")
        return True

    async def _embed_pages(self, store: FactStore, pages: List[StoryPage]) -> int:
        done = 0
        for i in range(0, len(pages), EMBED_BATCH_SIZE):
            batch = pages[i:i + EMBED_BATCH_SIZE]
            try:
                vectors = await self.gateway.embed([p.embedding_text for p in batch])
            except EmbeddingError as e:
                logger.warning(f"[EMBEDDING] Failed to embed batch starting at {i}: {e}")
                continue
            for page, vector in zip(batch, vectors):
                store.embeddings[page.id] = vector
            done += len(batch)
        return done

    async def embed_missing(self, conversation_id: str) -> int:
        """Embed retrievable pages and NPCs that have no cached vector yet."""
        if not self.configured:
            return 0
        store = self.provider.get(conversation_id)
        pages = [p for p in store.retrievable_pages() if p.id not in store.embeddings]
        count = await self._embed_pages(store, pages)
        for character in store.characters:
            if character_vector_key(character.name) not in store.embeddings:
                if await self.embed_character(store, character):
                    count += 1
        if count:
            self.provider.save(conversation_id)
            logger.info(f"[EMBEDDING] Embedded {count} missing vectors")
        return count

    async def pre_filter(self, store: FactStore, query_text: str, top_k: Optional[int] = None) -> Optional[PreFilterResult]:
        """Score cached vectors against the query. Returns None when the query cannot be embedded."""
        top_k = top_k or self.settings.embedding_top_k
        try:
            [query] = await self.gateway.embed([query_text])
        except EmbeddingError as e:
            logger.warning(f"[EMBEDDING] Pre-filter failed: {e}")
            return None

        scored_pages = []
        for page in store.retrievable_pages():
            vector = store.embeddings.get(page.id)
            if not vector or len(vector) != len(query):
                continue
            scored_pages.append((cosine_similarity(query, vector), page))
        scored_pages.sort(key=lambda pair: pair[0], reverse=True)

        scored_chars = []
        for character in store.characters:
            vector = store.embeddings.get(character_vector_key(character.name))
            if not vector or len(vector) != len(query):
                continue
            scored_chars.append((cosine_similarity(query, vector), character))
        scored_chars.sort(key=lambda pair: pair[0], reverse=True)

        floor = self.settings.character_similarity_floor
        top_pages = scored_pages[:top_k]
        top_chars = [pair for pair in scored_chars if pair[0] >= floor][:2]

        logger.info(
            "[EMBEDDING] Pre-filter results: "
            + ", ".join(f"{p.title}({score:.3f})" for score, p in top_pages)
        )
        if top_chars:
            logger.info(
                "[EMBEDDING] Character matches: "
                + ", ".join(f"{c.name}({score:.3f})" for score, c in top_chars)
            )

        result = PreFilterResult(
            pages=[p for _, p in top_pages],
            characters=[c for _, c in top_chars],
        )
        result.scores.update({p.id: score for score, p in top_pages})
        result.scores.update({character_vector_key(c.name): score for score, c in top_chars})
        return result

    async def rebuild_all_vectors(self, conversation_id: str) -> Dict[str, int]:
        """Clear and recompute the whole cache. Explicit, user-triggered."""
        if not self.configured:
            raise EmbeddingNotConfiguredError("Embedding API not configured")
        store = self.provider.get(conversation_id)
        pages = store.retrievable_pages()
        characters = list(store.characters)
        if not pages and not characters:
            return {"pages": 0, "characters": 0, "indexed": 0}

        logger.info(f"[EMBEDDING] Rebuilding vectors for {len(pages)} pages and {len(characters)} characters")
        store.embeddings = {}
        await self._embed_pages(store, pages)
        for character in characters:
            await self.embed_character(store, character)
        self.provider.save(conversation_id)

        return {"pages": len(pages), "characters": len(characters), "indexed": len(store.embeddings)}

    async def test_embedding(self) -> int:
        """Embed a sample text and return the vector dimensionality."""
        [vector] = await self.gateway.embed(["测试文本"])
        if not vector:
            raise EmbeddingError("Embedding API returned an empty vector")
        return len(vector)
