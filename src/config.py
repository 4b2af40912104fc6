"""Configuration management using Pydantic Settings."""

from typing import List

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=(".env", ".env.local"),
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Model Configuration
    # LiteLLM picks the provider from the model name prefix and reads the
    # matching API key from the environment:
    #   - OpenAI: gpt-4o (OPENAI_API_KEY)
    #   - Anthropic: claude-3-5-sonnet-20240620 (ANTHROPIC_API_KEY)
    #   - Ollama: ollama/llama3 (set ollama_base_url)
    litellm_model: str = "gpt-4o-mini"
    ollama_base_url: str = "http://127.0.0.1:11434"  # Only needed for Ollama
    llm_temperature: float = 0.7
    llm_max_retries: int = 3
    llm_retry_delay: float = 1.0

    # Usage guard (0 = unlimited)
    rate_limit: int = 0
    rate_limit_warning_threshold: int = 80

    # Timers
    autosave_debounce_seconds: float = 2.0
    auto_advance_delay_seconds: float = 1.5
    stream_flush_interval_seconds: float = 0.5
    stream_max_buffer_size: int = 50
    generation_fallback_timeout_seconds: float = 45.0

    # Iteration loop
    default_framework: str = "react"  # react|flutter|html|vue|nextjs
    default_dev_flow_order: List[str] = Field(default_factory=lambda: ["UX", "Developer"])
    screenshot_url: str = "http://localhost:3000"

    # Storage
    storage_backend: str = "file"  # file|memory
    storage_root: str = "./.buildmode/projects"

    # Observability
    enable_tracing: bool = False
    log_level: str = "INFO"
    log_json: bool = False
    cors_origins: str = ""


settings = Settings()
