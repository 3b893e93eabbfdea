"""
LLM Gateway Package

LiteLLM-backed chat clients, backend routing, defensive JSON parsing and
YAML prompt templates for the memory pipeline.
"""

from .client import ChatCompletion, LLMClient, ToolCall
from .json_repair import parse_json_response
from .prompts import PromptManager, directive_suffix, prompt_manager
from .service import LLMGateway

__all__ = [
    'ChatCompletion', 'LLMClient', 'ToolCall', 'LLMGateway',
    'PromptManager', 'directive_suffix', 'prompt_manager',
    'parse_json_response',
]
