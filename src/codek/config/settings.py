# src/codek/config/settings.py
import yaml
from pathlib import Path
from functools import lru_cache
from typing import Optional, Dict, Any
from dotenv import load_dotenv
from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_CONFIG_FILE = "config/config.yaml"
DEFAULT_SYSTEM_PROMPT_FILE = "config/prompts/system_prompt.md"
DEFAULT_SYSTEM_PROMPT = "You are Codek, a coding assistant embedded in the user's editor."

class CompletionConfig(BaseModel):
    """Completion defaults from YAML; a request may override each of them."""
    model: str = Field(default="claude-3.7-sonnet", description="Model identifier")
    temperature: float = Field(default=0.7, ge=0.0, le=2.0, description="Sampling temperature")
    max_tokens: Optional[int] = Field(default=None, gt=0, description="Maximum tokens for the response")
    idle_timeout: float = Field(default=120.0, gt=0, description="Seconds without bytes before a stream fails")

class Settings(BaseSettings):
    """Application settings combining environment variables and YAML config."""

    model_config = SettingsConfigDict(
        env_prefix="CODEK_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # ===== ENVIRONMENT VARIABLES =====
    # Secrets - never commit these
    api_key: Optional[str] = Field(default=None, description="Bearer token for the completion endpoint")
    require_api_key: bool = Field(default=False, description="Fail validation when no API key is set")

    # Transport
    api_url: Optional[str] = Field(default=None, description="Streaming chat-completions endpoint URL")
    connect_timeout: float = Field(default=10.0, gt=0, description="Seconds allowed to establish a connection")
    connect_retries: int = Field(default=0, ge=0, description="Extra connection attempts before the first byte")
    retry_delay: float = Field(default=1.0, ge=0, description="Seconds between connection attempts")

    # Pipeline
    channel_capacity: int = Field(default=64, gt=0, description="Undelivered notifications buffered per session")

    # Diagnostics
    debug: bool = Field(default=False, description="Debug mode")
    log_level: str = Field(default="INFO", description="Logging level")

    # ===== YAML LOADED CONFIGS =====
    completion_config: CompletionConfig = Field(default_factory=CompletionConfig)

    # System prompt (loaded from file)
    system_prompt: str = Field(default="", description="System prompt prepended to conversations")

    # Config file paths
    config_file_path: str = Field(default=DEFAULT_CONFIG_FILE, description="Path to YAML config file")
    system_prompt_path: str = Field(default=DEFAULT_SYSTEM_PROMPT_FILE, description="Path to system prompt file")

    def __init__(self, **kwargs):
        config_path = Path(kwargs.get("config_file_path", DEFAULT_CONFIG_FILE))
        prompt_path = Path(kwargs.get("system_prompt_path", DEFAULT_SYSTEM_PROMPT_FILE))

        # Explicit kwargs win over YAML and the prompt file
        merged_data = {
            **self._load_yaml_config(config_path),
            "system_prompt": self._load_system_prompt(prompt_path),
            **kwargs,
        }
        super().__init__(**merged_data)

    @staticmethod
    def _load_yaml_config(config_path: Path) -> Dict[str, Any]:
        """Load configuration from YAML file."""
        if not config_path.exists():
            return {"completion_config": CompletionConfig()}

        try:
            with open(config_path, 'r', encoding='utf-8') as f:
                yaml_data = yaml.safe_load(f) or {}

            completion_data = yaml_data.get('completion_config', {}) or {}
            return {"completion_config": CompletionConfig(**completion_data)}

        except Exception as e:
            raise ValueError(f"Failed to load YAML config from {config_path}: {e}")

    @staticmethod
    def _load_system_prompt(prompt_path: Path) -> str:
        """Load system prompt from markdown file."""
        if not prompt_path.exists():
            return DEFAULT_SYSTEM_PROMPT

        try:
            with open(prompt_path, 'r', encoding='utf-8') as f:
                return f.read().strip()
        except Exception as e:
            raise ValueError(f"Failed to load system prompt from {prompt_path}: {e}")

    @field_validator('log_level', mode='before')
    @classmethod
    def normalize_log_level(cls, v):
        return str(v).strip().upper() if v else "INFO"

    def validate_api_key(self) -> None:
        """Validate that an API key is present when one is required."""
        if self.require_api_key and not self.api_key:
            raise ValueError("CODEK_API_KEY environment variable is required")

    def get_request_defaults(self) -> Dict[str, Any]:
        """Completion defaults applied to requests that leave options unset."""
        return {
            "model": self.completion_config.model,
            "temperature": self.completion_config.temperature,
            "max_tokens": self.completion_config.max_tokens,
            "idle_timeout": self.completion_config.idle_timeout,
        }

@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    load_dotenv()
    settings = Settings()
    settings.validate_api_key()  # Validate on first load
    return settings

# Convenience function to reload settings (useful for testing)
def reload_settings() -> Settings:
    """Reload settings (clears cache)."""
    get_settings.cache_clear()
    return get_settings()
