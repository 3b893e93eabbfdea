"""
Prompt Management

Prompts live in prompts.yml as named templates with `system` / `user` parts
and `str.format` slots. Directive text supplied by the user for a pipeline
stage is appended after substitution so it is never interpreted as a slot.
"""

import logging
import os
from typing import Any, Dict, Optional

import yaml

from ...models.fact_store import FactStore

logger = logging.getLogger(__name__)

DEFAULT_PROMPTS_FILE = os.path.join(
    os.path.dirname(os.path.dirname(os.path.dirname(os.path.abspath(__file__)))),
    "prompts.yml",
)


class PromptManager:
    """YAML-backed prompt templates"""

    def __init__(self, prompts_file_path: Optional[str] = None):
        self.prompts_file_path = prompts_file_path or DEFAULT_PROMPTS_FILE
        self._prompts_cache: Dict[str, Any] = {}
        self._load_prompts()

    def _load_prompts(self):
        """Load prompts from YAML file"""
        try:
            with open(self.prompts_file_path, 'r', encoding='utf-8') as file:
                self._prompts_cache = yaml.safe_load(file) or {}
            logger.info(f"Loaded prompts from {self.prompts_file_path}")
        except FileNotFoundError:
            logger.error(f"Prompts file not found: {self.prompts_file_path}")
            self._prompts_cache = {}
        except yaml.YAMLError as e:
            logger.error(f"Error parsing prompts YAML: {e}")
            self._prompts_cache = {}

    def reload_prompts(self):
        """Reload prompts from file (useful for development)"""
        self._load_prompts()

    def has_template(self, template_key: str) -> bool:
        return template_key in self._prompts_cache

    def get_prompt(self, template_key: str, prompt_type: str = "user", **template_vars) -> str:
        """
        Get a prompt with variables substituted.

        Args:
            template_key: Template identifier (e.g. 'extraction', 'page_compression')
            prompt_type: 'system' or 'user'
            **template_vars: Values for the template's named slots

        Returns:
            The prompt text, or "" when the template does not exist
        """
        template = self._prompts_cache.get(template_key) or {}
        prompt_text = template.get(prompt_type, "") if isinstance(template, dict) else ""
        if not prompt_text:
            logger.warning(f"No {prompt_type} prompt found for template {template_key}")
            return ""
        return self._substitute_variables(prompt_text.strip(), **template_vars)

    def _substitute_variables(self, prompt_text: str, **template_vars) -> str:
        """Substitute variables in prompt text"""
        if not template_vars:
            return prompt_text
        try:
            return prompt_text.format(**template_vars)
        except KeyError as e:
            logger.warning(f"Missing variable {e} in prompt template")
            return prompt_text
        except (IndexError, ValueError) as e:
            logger.error(f"Error substituting variables in prompt: {e}")
            return prompt_text


def directive_suffix(store: FactStore, stage: str) -> str:
    """User steering text for a stage: the global directive plus the stage's own."""
    directive = store.manager_directive
    parts = []
    global_text = (directive.global_ or "").strip()
    stage_text = (directive.for_stage(stage) or "").strip() if stage != "global" else ""
    if global_text:
        parts.append(global_text)
    if stage_text:
        parts.append(stage_text)
    if not parts:
        return ""
    joined = "\n".join(parts)
    return f"\n\n## 用户对记忆管理的特别要求\n{joined}\n请在执行任务时遵循以上要求。"


prompt_manager = PromptManager()
