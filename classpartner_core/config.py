"""Configuration for the ClassPartner core."""

from functools import lru_cache
from typing import Literal, Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="CLASSPARTNER_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Logging
    log_level: str = "INFO"
    log_format: Literal["json", "pretty", "simple"] = "pretty"

    # Storage
    database_url: str = "sqlite+aiosqlite:///classpartner.db"
    database_echo: bool = False

    # Deepgram settings
    deepgram_api_key: str = Field(default="", description="Deepgram API key")
    deepgram_url: str = "wss://api.deepgram.com/v1/listen"
    deepgram_model: str = "nova-2"
    deepgram_language: str = "en"
    deepgram_endpointing: int = 150  # End of speech detection (ms)
    sample_rate: int = 16000
    channels: int = 1
    encoding: str = "linear16"

    # Connection management
    connect_timeout_s: float = 10.0
    reconnect_base_delay_s: float = 1.0
    max_reconnect_attempts: int = 5
    keepalive_interval_s: float = 8.0
    quality_window: int = 10

    # Language models
    ai_mode: str = "hybrid-openai"
    openai_api_key: str = ""
    openai_base_url: str = "https://api.openai.com/v1"
    openai_model: str = "gpt-4o-mini"
    openrouter_api_key: str = ""
    openrouter_base_url: str = "https://openrouter.ai/api/v1"
    openrouter_model: str = "meta/llama-3.1-8b-instruct"
    gemini_api_key: str = ""
    gemini_base_url: str = "https://generativelanguage.googleapis.com/v1beta"
    gemini_model: str = "gemini-2.5-flash"
    llm_timeout_s: float = 30.0

    # Embeddings ("local", "openai" or "none")
    embedding_provider: str = "local"
    embedding_model: Optional[str] = None

    # Ingestion and summarization
    buffer_cap: int = 2000
    summary_window_ms: int = 60_000
    min_summarize_every_ms: int = 12_000
    min_summary_chars: int = 80
    llm_cooldown_s: float = 300.0
    llm_throttle_log_interval_s: float = 10.0
    embed_cooldown_s: float = 600.0

    # Cross-task requests
    search_request_timeout_s: float = 5.0
    query_timeout_s: float = 15.0

    # Retrieval and persistence
    retrieval_k: int = 6
    search_window: int = 1000
    primer_size: int = 5
    chunk_size: int = 800
    chunk_overlap: int = 120


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


__all__ = ["Settings", "get_settings"]
