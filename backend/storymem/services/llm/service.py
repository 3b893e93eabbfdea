"""
LLM Gateway

Routes memory-layer calls to the right backend: the secondary backend when one
is configured, otherwise the primary chat model. Tool calling is only offered
through the secondary backend.
"""

import logging
from typing import Any, Dict, List, Optional

from ...config import Settings
from ...errors import LLMNotConfiguredError
from .client import ChatCompletion, LLMClient

logger = logging.getLogger(__name__)


class LLMGateway:
    def __init__(self, primary: LLMClient, secondary: Optional[LLMClient] = None):
        self.primary = primary
        self.secondary = secondary

    @classmethod
    def from_settings(cls, settings: Settings) -> "LLMGateway":
        primary = LLMClient(
            url=settings.llm_base_url,
            model=settings.llm_model,
            api_key=settings.llm_api_key,
            temperature=settings.llm_temperature,
            timeout_total=settings.llm_timeout,
            thinking_disable_method=settings.thinking_disable_method,
            api_type=settings.llm_api_type,
            name="primary",
        )
        secondary = None
        if settings.secondary_configured:
            secondary = LLMClient(
                url=settings.secondary_api_url,
                model=settings.secondary_api_model,
                api_key=settings.secondary_api_key,
                temperature=settings.secondary_api_temperature,
                timeout_total=settings.llm_timeout,
                thinking_disable_method=settings.thinking_disable_method,
                name="secondary",
            )
        return cls(primary=primary, secondary=secondary)

    @property
    def has_secondary(self) -> bool:
        return self.secondary is not None

    async def complete(
        self,
        system_prompt: Optional[str],
        user_prompt: str,
        max_tokens: Optional[int] = None,
    ) -> str:
        if self.secondary is not None:
            return await self.secondary.complete(system_prompt, user_prompt, max_tokens)
        logger.debug("[LLM] Using primary backend (no secondary configured)")
        return await self.primary.complete(system_prompt, user_prompt, max_tokens)

    async def complete_secondary(
        self,
        system_prompt: Optional[str],
        user_prompt: str,
        max_tokens: Optional[int] = None,
    ) -> str:
        if self.secondary is None:
            raise LLMNotConfiguredError("Secondary backend is not configured")
        return await self.secondary.complete(system_prompt, user_prompt, max_tokens)

    async def complete_chat(
        self,
        messages: List[Dict[str, Any]],
        tools: Optional[List[Dict[str, Any]]] = None,
        max_tokens: Optional[int] = None,
    ) -> ChatCompletion:
        if self.secondary is None:
            raise LLMNotConfiguredError("Tool calling requires the secondary backend")
        return await self.secondary.complete_chat(messages, tools, max_tokens)
