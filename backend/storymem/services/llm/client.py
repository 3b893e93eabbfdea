"""
LLM Client

Provider-agnostic wrapper around one chat-completion backend (OpenAI-compatible
endpoint or a cloud provider LiteLLM routes natively). Used for extraction,
compression and the recall agent's tool-calling loop.
"""

import json
import logging
import re
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

import httpx
import litellm
from litellm import acompletion

from ...errors import LLMEmptyResponseError, LLMRequestError

logger = logging.getLogger(__name__)

# Thinking tag patterns for different models
THINKING_PATTERNS = {
    "qwen3": re.compile(r"<think>[\s\S]*?</think>", re.IGNORECASE),
    "deepseek": re.compile(r"<think>[\s\S]*?</think>", re.IGNORECASE),
    "kimi": re.compile(r"<think>[\s\S]*?</think>", re.IGNORECASE),
    "glm": re.compile(r"<think>[\s\S]*?</think>", re.IGNORECASE),
}


@dataclass
class ToolCall:
    id: str
    name: str
    arguments: Dict[str, Any]
    raw_arguments: str = ""


@dataclass
class ChatCompletion:
    """Result of a chat call that may carry tool calls."""
    content: str
    tool_calls: List[ToolCall] = field(default_factory=list)
    raw_message: Dict[str, Any] = field(default_factory=dict)


def normalize_base_url(url: str) -> str:
    url = (url or "").strip().rstrip("/")
    return re.sub(r"/chat/completions/?$", "", url)


def _decode_arguments(raw: Any) -> Dict[str, Any]:
    if isinstance(raw, dict):
        return raw
    if not raw:
        return {}
    try:
        decoded = json.loads(raw)
    except (TypeError, ValueError):
        logger.warning(f"[LLM] Failed to parse tool call arguments: {str(raw)[:200]}")
        return {}
    return decoded if isinstance(decoded, dict) else {}


class LLMClient:
    """One configured chat backend."""

    # Cloud providers that LiteLLM routes natively (no api_base needed)
    CLOUD_PROVIDERS = {
        'openai', 'anthropic', 'groq', 'mistral', 'deepseek', 'together_ai',
        'fireworks_ai', 'openrouter', 'perplexity', 'deepinfra', 'gemini',
        'cohere', 'ai21', 'cerebras', 'sambanova', 'novita', 'xai',
    }

    def __init__(self, url: str = "", model: str = "", api_key: str = "",
                 temperature: float = 0.3, timeout_total: float = 240,
                 thinking_disable_method: str = "none",
                 api_type: str = "openai-compatible",
                 name: str = "llm"):
        """
        Args:
            url: API endpoint URL (required for OpenAI-compatible endpoints, optional for cloud)
            model: Model name to use
            api_key: API key if required (empty string for local servers)
            temperature: Sampling temperature
            timeout_total: Total timeout in seconds for each request
            thinking_disable_method: none, qwen3, deepseek, kimi, glm, mistral, gemini, openai
            api_type: "openai-compatible" or a LiteLLM cloud provider name
            name: Label used in log lines (primary / secondary)
        """
        self.api_type = api_type
        self.is_cloud = api_type in self.CLOUD_PROVIDERS
        self.url = normalize_base_url(url)
        self.model = model
        self.api_key = api_key or "not-needed"  # Some servers don't require key
        self.temperature = temperature
        self.timeout_total = timeout_total
        self.thinking_disable_method = thinking_disable_method
        self._thinking_pattern = THINKING_PATTERNS.get(thinking_disable_method)
        self.name = name

        litellm.suppress_debug_info = True
        litellm.drop_params = True

    def _strip_thinking_tags(self, content: str) -> str:
        if not self._thinking_pattern or not content:
            return content
        return self._thinking_pattern.sub("", content).strip()

    def _build_model_string(self) -> str:
        """Build LiteLLM model string based on provider type"""
        if self.is_cloud:
            if self.api_type == "openai":
                return self.model  # OpenAI is default in LiteLLM
            return f"{self.api_type}/{self.model}"
        # OpenAI-compatible endpoints use the openai/ prefix
        return f"openai/{self.model}"

    def _get_generation_params(self, max_tokens: Optional[int] = None) -> Dict[str, Any]:
        params: Dict[str, Any] = {
            "model": self._build_model_string(),
            "api_key": self.api_key,
            "temperature": self.temperature,
        }
        # Only set api_base for non-cloud providers (cloud providers use LiteLLM native routing)
        if not self.is_cloud and self.url:
            params["api_base"] = self.url
        if max_tokens and max_tokens > 0:
            params["max_tokens"] = max_tokens

        if self.thinking_disable_method == "mistral":
            params["prompt_mode"] = None
        elif self.thinking_disable_method == "openai":
            params["reasoning_effort"] = "none"
        elif self.thinking_disable_method == "gemini":
            params["thinking_config"] = {"thinking_budget": 0}
        elif self.thinking_disable_method == "glm":
            params["extra_body"] = {"chat_template_kwargs": {"enable_thinking": False}}

        logger.debug(f"[LLM:{self.name}] Generation params: model={params['model']}, max_tokens={params.get('max_tokens')}")
        return params

    async def _acompletion(self, messages: List[Dict[str, Any]], max_tokens: Optional[int], **extra):
        params = self._get_generation_params(max_tokens=max_tokens)
        try:
            return await acompletion(
                **params,
                **extra,
                messages=messages,
                timeout=self.timeout_total,
            )
        except Exception as e:
            logger.error(f"[LLM:{self.name}] Request to {self.url or self.api_type} failed: {e}")
            raise LLMRequestError(
                f"{self.name} backend request failed: {e}",
                {"backend": self.name, "model": self.model},
            ) from e

    async def complete(
        self,
        system_prompt: Optional[str],
        user_prompt: str,
        max_tokens: Optional[int] = None,
    ) -> str:
        """Single-turn completion. Raises LLMRequestError / LLMEmptyResponseError."""
        messages: List[Dict[str, Any]] = []
        if system_prompt:
            messages.append({"role": "system", "content": system_prompt})
        messages.append({"role": "user", "content": user_prompt})

        response = await self._acompletion(messages, max_tokens)
        content = response.choices[0].message.content
        content = self._strip_thinking_tags(content.strip()) if content else ""
        if not content:
            raise LLMEmptyResponseError(
                f"{self.name} backend returned an empty response",
                {"backend": self.name, "model": self.model},
            )
        logger.info(f"[LLM:{self.name}] Response length: {len(content)}")
        return content

    async def complete_chat(
        self,
        messages: List[Dict[str, Any]],
        tools: Optional[List[Dict[str, Any]]] = None,
        max_tokens: Optional[int] = None,
    ) -> ChatCompletion:
        """Multi-turn chat with optional tool definitions (OpenAI function format)."""
        extra: Dict[str, Any] = {}
        if tools:
            extra["tools"] = tools
            extra["tool_choice"] = "auto"

        response = await self._acompletion(messages, max_tokens, **extra)
        message = response.choices[0].message
        content = getattr(message, "content", None) or ""

        tool_calls: List[ToolCall] = []
        raw_tool_calls: List[Dict[str, Any]] = []
        for tc in getattr(message, "tool_calls", None) or []:
            function = getattr(tc, "function", None)
            name = getattr(function, "name", "") or ""
            raw_args = getattr(function, "arguments", "") or ""
            call_id = getattr(tc, "id", "") or ""
            tool_calls.append(ToolCall(
                id=call_id,
                name=name,
                arguments=_decode_arguments(raw_args),
                raw_arguments=raw_args if isinstance(raw_args, str) else json.dumps(raw_args, ensure_ascii=False),
            ))
            raw_tool_calls.append({
                "id": call_id,
                "type": "function",
                "function": {"name": name, "arguments": tool_calls[-1].raw_arguments},
            })

        raw_message: Dict[str, Any] = {"role": "assistant", "content": content}
        if raw_tool_calls:
            raw_message["tool_calls"] = raw_tool_calls

        logger.info(f"[LLM:{self.name}] Chat response: {len(tool_calls)} tool calls, {len(content)} chars")
        return ChatCompletion(content=content, tool_calls=tool_calls, raw_message=raw_message)

    async def test_connection(self) -> Tuple[bool, str, float]:
        """
        Send a tiny prompt to the backend.

        Returns:
            Tuple of (success: bool, message: str, response_time: float)
        """
        start_time = time.time()
        try:
            reply = await self.complete("你是一个测试助手。", '请回复"连接成功"四个字。', 50)
            return True, f"Connection successful: {reply[:100]}", time.time() - start_time
        except (LLMRequestError, LLMEmptyResponseError) as e:
            response_time = time.time() - start_time
            error_msg = e.message
            if "401" in error_msg or "Unauthorized" in error_msg:
                return False, "Authentication failed. Check your API key.", response_time
            if "404" in error_msg or "Not Found" in error_msg:
                return False, f"Endpoint not found at {self.url}.", response_time
            return False, f"Connection failed: {error_msg}", response_time

    async def check_health(self, timeout: float = 3.0) -> Tuple[bool, str]:
        """Quick reachability check of the /models endpoint without doing inference."""
        if self.is_cloud:
            return True, f"Cloud provider {self.api_type} - assuming available"
        if not self.url:
            return False, "No endpoint URL configured"

        try:
            async with httpx.AsyncClient(timeout=timeout) as client:
                headers = {"Authorization": f"Bearer {self.api_key}"} if self.api_key else {}
                response = await client.get(f"{self.url}/models", headers=headers)
                if response.status_code < 500:
                    return True, f"{self.name} backend is reachable"
                return False, f"{self.name} backend error (status {response.status_code})"
        except httpx.ConnectError:
            return False, f"Cannot connect to {self.url}. Is it running?"
        except httpx.TimeoutException:
            return False, f"{self.url} is not responding (timeout after {timeout}s)"
        except httpx.HTTPError as e:
            return False, f"Health check failed: {e}"
