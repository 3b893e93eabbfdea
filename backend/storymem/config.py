from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import List, Literal, Set
from pydantic import field_validator
import re


class Settings(BaseSettings):
    # Application
    app_name: str = "storymem"
    app_version: str = "0.1.0"
    enabled: bool = True
    debug: bool = False

    # Database
    database_url: str = "sqlite:///./data/storymem.db"
    store_cache_size: int = 64  # Live FactStores kept in memory; least recently used are saved and unloaded

    # Extraction
    extraction_interval: int = 5  # Pending turns needed before a background extraction fires
    extraction_max_tokens: int = 4096
    recent_window: int = 5  # Turns of recent conversation fed to recall

    # Injection
    index_depth: int = 9999
    recall_depth: int = 2
    max_pages: int = 3

    # Compression (three independent toggles)
    compress_timeline: bool = True
    compress_pages: bool = False
    archive_daily: bool = False
    compress_after_pages: int = 15  # FRESH pages kept before older ones are summarized
    archive_threshold: int = 50
    max_timeline_entries: int = 20

    # Auto-hide of processed turns in the host transcript
    auto_hide: bool = False
    keep_recent_messages: int = 10

    # Primary LLM
    llm_base_url: str = "http://localhost:1234/v1"
    llm_api_key: str = "not-needed-for-local"
    llm_model: str = "local-model"
    llm_api_type: str = "openai-compatible"
    llm_temperature: float = 0.7
    llm_timeout: float = 240
    thinking_disable_method: str = "none"

    # Secondary LLM (extraction / agent backend)
    use_secondary_api: bool = False
    secondary_api_url: str = ""
    secondary_api_key: str = ""
    secondary_api_model: str = ""
    secondary_api_temperature: float = 0.3

    # Embedding
    use_embedding: bool = False
    embedding_model: str = "text-embedding-3-large"
    embedding_dimensions: int = 256
    embedding_top_k: int = 10
    embedding_api_url: str = ""  # Falls back to secondary_api_url
    embedding_api_key: str = ""  # Falls back to secondary_api_key
    character_similarity_floor: float = 0.45

    # Recall agent
    agent_max_rounds: int = 3
    agent_max_tokens: int = 800

    # NPC injection
    npc_injection_mode: Literal["full", "half", "keyword"] = "half"
    npc_keyword_scan_depth: int = 4
    known_characters: str = ""

    # Prompts
    prompts_file: str = ""  # Empty = bundled prompts.yml

    # Logging
    log_level: str = "INFO"
    log_file: str = "./logs/storymem.log"

    model_config = SettingsConfigDict(
        env_prefix="STORYMEM_",
        env_file=".env",
        case_sensitive=False,
        extra="ignore",
    )

    @field_validator("npc_injection_mode", mode="before")
    @classmethod
    def normalize_npc_mode(cls, v):
        """Unknown modes degrade to the default name-only injection"""
        if isinstance(v, str):
            v = v.strip().lower()
            if v not in ("full", "half", "keyword"):
                return "half"
        return v

    @property
    def secondary_configured(self) -> bool:
        return bool(self.use_secondary_api and self.secondary_api_url and self.secondary_api_key)

    @property
    def embedding_base_url(self) -> str:
        url = (self.embedding_api_url or self.secondary_api_url or "").strip()
        url = url.rstrip("/")
        return re.sub(r"/chat/completions/?$", "", url)

    @property
    def embedding_key(self) -> str:
        return (self.embedding_api_key or self.secondary_api_key or "").strip()

    @property
    def embedding_configured(self) -> bool:
        return bool(self.use_embedding and self.embedding_base_url and self.embedding_key)

    def known_character_names(self, character_name: str = "") -> Set[str]:
        """Pre-declared principal cast: configured names plus the host's current character."""
        names: List[str] = [n.strip() for n in re.split(r"[,，]", self.known_characters or "")]
        result = {n for n in names if n}
        if character_name and character_name.strip():
            result.add(character_name.strip())
        return result


# Global settings instance for the application entry point.
# Core services receive a Settings object explicitly.
settings = Settings()
