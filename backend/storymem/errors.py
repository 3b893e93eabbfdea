"""
Exception hierarchy for storymem.

Every error carries a machine-readable `code` so the HTTP layer and callers
can branch on it without parsing messages.
"""
from __future__ import annotations

from typing import Any


class MemoryManagerError(Exception):
    """Base class for all memory-layer errors."""
    code: str = "MEMORY_ERROR"
    http_status: int = 500

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> dict:
        payload: dict[str, Any] = {"code": self.code, "message": self.message}
        if self.details:
            payload["details"] = self.details
        return payload


# ---------------------------------------------------------------------------
# LLM gateway
# ---------------------------------------------------------------------------

class LLMError(MemoryManagerError):
    code = "LLM_ERROR"
    http_status = 502


class LLMRequestError(LLMError):
    """Transport failure or non-2xx response from a model backend."""
    code = "LLM_REQUEST_FAILED"


class LLMEmptyResponseError(LLMError):
    code = "LLM_EMPTY_RESPONSE"


class LLMNotConfiguredError(LLMError):
    code = "LLM_NOT_CONFIGURED"
    http_status = 409


class ResponseParseError(MemoryManagerError):
    """Model output could not be turned into JSON by any repair strategy."""
    code = "RESPONSE_PARSE_FAILED"
    http_status = 502

    def __init__(self, message: str, preview: str = ""):
        super().__init__(message, {"preview": preview[:500]} if preview else None)


# ---------------------------------------------------------------------------
# Embedding gateway
# ---------------------------------------------------------------------------

class EmbeddingError(MemoryManagerError):
    code = "EMBEDDING_FAILED"
    http_status = 502


class EmbeddingNotConfiguredError(EmbeddingError):
    code = "EMBEDDING_NOT_CONFIGURED"
    http_status = 409


# ---------------------------------------------------------------------------
# Store
# ---------------------------------------------------------------------------

class StoreMigrationError(MemoryManagerError):
    code = "STORE_MIGRATION_FAILED"
    http_status = 422

    def __init__(self, version: Any):
        super().__init__(
            message=f"Cannot migrate memory document with version {version!r}.",
            details={"version": version},
        )
