"""Central configuration loaded from environment / .env file."""

from __future__ import annotations

from pathlib import Path
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings

_PROJECT_ROOT = Path(__file__).resolve().parents[2]


class Settings(BaseSettings):
    """Application-wide settings, populated from env vars or .env file."""

    # LLM provider: the relay speaks to OpenAI unless told otherwise
    llm_provider: Literal["openai", "anthropic"] = Field(
        default="openai", alias="VOICESPHERE_LLM_PROVIDER"
    )

    # OpenAI-compatible settings
    openai_api_key: str = Field(default="", alias="OPENAI_API_KEY")
    llm_base_url: str = Field(default="", alias="VOICESPHERE_LLM_BASE_URL")
    llm_model: str = Field(default="", alias="VOICESPHERE_LLM_MODEL")

    # Anthropic-native settings
    anthropic_api_key: str = Field(default="", alias="ANTHROPIC_API_KEY")
    anthropic_model: str = Field(default="claude-sonnet-4-20250514", alias="ANTHROPIC_MODEL")

    # Completion parameters (fixed per deployment, never per request)
    temperature: float = Field(default=0.7, alias="VOICESPHERE_TEMPERATURE")
    max_tokens: int = Field(default=480, alias="VOICESPHERE_MAX_TOKENS")

    # Relay API server
    host: str = Field(default="127.0.0.1", alias="VOICESPHERE_HOST")
    port: int = Field(default=8000, alias="VOICESPHERE_PORT")
    relay_url: str = Field(
        default="", alias="VOICESPHERE_RELAY_URL",
        description="Remote relay base URL; empty means call the relay in-process",
    )

    # Voice interface server
    interface_host: str = Field(default="0.0.0.0", alias="VOICESPHERE_INTERFACE_HOST")
    interface_port: int = Field(default=8100, alias="VOICESPHERE_INTERFACE_PORT")

    # Speech capture (Whisper)
    whisper_model: str = Field(default="base", alias="WHISPER_MODEL")
    whisper_device: str = Field(default="auto", alias="WHISPER_DEVICE")
    whisper_language: str = Field(default="en", alias="WHISPER_LANGUAGE")

    # Speech synthesis
    piper_model_path: str = Field(default="", alias="PIPER_MODEL_PATH")
    elevenlabs_api_key: str = Field(default="", alias="ELEVENLABS_API_KEY")
    elevenlabs_voice_id: str = Field(
        default="21m00Tcm4TlvDq8ikWAM", alias="ELEVENLABS_VOICE_ID"
    )

    # Logging
    log_level: str = Field(default="INFO", alias="VOICESPHERE_LOG_LEVEL")

    model_config = {
        "env_file": str(_PROJECT_ROOT / ".env"),
        "env_file_encoding": "utf-8",
        "extra": "ignore",
        "populate_by_name": True,
    }

    @property
    def resolved_api_key(self) -> str:
        """Return the credential for the active provider."""
        if self.llm_provider == "anthropic":
            return self.anthropic_api_key
        return self.openai_api_key

    @property
    def compute_available(self) -> bool:
        """True when the selected provider has an API key configured."""
        return bool(self.resolved_api_key.strip())

    @property
    def resolved_llm_model(self) -> str:
        """Return the model, defaulting based on provider."""
        if self.llm_provider == "anthropic":
            return self.anthropic_model
        return self.llm_model or "gpt-4o-mini"


def get_settings() -> Settings:
    """Return a cached Settings instance."""
    if not hasattr(get_settings, "_instance"):
        get_settings._instance = Settings()  # type: ignore[attr-defined]
    return get_settings._instance  # type: ignore[attr-defined]
