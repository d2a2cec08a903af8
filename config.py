from __future__ import annotations

from pathlib import Path
from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import Field, AliasChoices
from typing import Optional




BASE_DIR = Path(__file__).parent.resolve()

class Settings(BaseSettings):
    """Application configuration loaded from environment variables."""

    base_dir: Path = BASE_DIR
    data_dir: Path = BASE_DIR / "data"
    db_path: Path = Field(
        default=BASE_DIR / "data" / "items.db",
        validation_alias=AliasChoices('db_path', 'DB_PATH')
    )

    # Job queue: bounded concurrency, retry with exponential backoff
    job_concurrency: int = Field(
        default=5,
        validation_alias=AliasChoices('job_concurrency', 'JOB_CONCURRENCY')
    )
    job_max_retries: int = Field(
        default=3,
        validation_alias=AliasChoices('job_max_retries', 'JOB_MAX_RETRIES')
    )
    # Delay before the first retry; doubled for each further attempt
    job_retry_base_delay_seconds: float = Field(
        default=5.0,
        validation_alias=AliasChoices('job_retry_base_delay_seconds', 'JOB_RETRY_BASE_DELAY_SECONDS')
    )
    job_cleanup_interval_seconds: float = Field(
        default=600.0,  # 10 minutes
        validation_alias=AliasChoices('job_cleanup_interval_seconds', 'JOB_CLEANUP_INTERVAL_SECONDS')
    )
    job_cleanup_max_age_seconds: float = Field(
        default=3600.0,  # 1 hour
        validation_alias=AliasChoices('job_cleanup_max_age_seconds', 'JOB_CLEANUP_MAX_AGE_SECONDS')
    )
    # How long /api/save waits for enrichment before answering asynchronously
    job_wait_timeout_seconds: float = Field(
        default=30.0,
        validation_alias=AliasChoices('job_wait_timeout_seconds', 'JOB_WAIT_TIMEOUT_SECONDS')
    )
    job_wait_poll_interval_seconds: float = 0.1

    # Anthropic Claude (classification, ranking, query parsing)
    anthropic_api_key: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices('anthropic_api_key', 'ANTHROPIC_API_KEY', 'ANTHROPIC_AUTH_TOKEN')
    )
    anthropic_base_url: str = Field(
        default="https://api.anthropic.com",
        validation_alias=AliasChoices('anthropic_base_url', 'ANTHROPIC_BASE_URL')
    )
    anthropic_model: str = Field(
        default="claude-opus-4-1-20250805",
        validation_alias=AliasChoices('anthropic_model', 'ANTHROPIC_MODEL')
    )
    anthropic_version: str = "2023-06-01"
    anthropic_timeout_seconds: float = Field(
        default=60.0,
        validation_alias=AliasChoices('anthropic_timeout_seconds', 'ANTHROPIC_TIMEOUT_SECONDS')
    )

    # OpenAI Whisper (voice transcription)
    openai_api_key: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices('openai_api_key', 'OPENAI_API_KEY')
    )
    openai_base_url: str = Field(
        default="https://api.openai.com",
        validation_alias=AliasChoices('openai_base_url', 'OPENAI_BASE_URL')
    )
    whisper_model: str = "whisper-1"

    # Supabase Storage (images and voice audio)
    supabase_url: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices('supabase_url', 'SUPABASE_URL')
    )
    supabase_key: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices('supabase_key', 'SUPABASE_KEY', 'SUPABASE_ANON_KEY')
    )
    supabase_image_bucket: str = "images"
    supabase_audio_bucket: str = "voice-audio"

    environment: str = Field(
        default="development",
        validation_alias=AliasChoices('environment', 'ENVIRONMENT', 'ENV')
    )

    # CORS configuration
    cors_origins: str = Field(
        default="http://localhost:3000,http://127.0.0.1:3000",
        validation_alias=AliasChoices('cors_origins', 'CORS_ORIGINS')
    )
    cors_credentials: bool = Field(
        default=True,
        validation_alias=AliasChoices('cors_credentials', 'CORS_CREDENTIALS')
    )

    # Capture endpoints: bearer keys (empty = open dev mode) and rate limit
    capture_api_keys: str = Field(
        default="",
        validation_alias=AliasChoices('capture_api_keys', 'CAPTURE_API_KEYS', 'MCP_API_KEYS')
    )
    rate_limit_per_minute: int = Field(
        default=100,
        validation_alias=AliasChoices('rate_limit_per_minute', 'RATE_LIMIT_PER_MINUTE')
    )

    # MCP relay
    synapse_api_url: str = Field(
        default="http://localhost:8000",
        validation_alias=AliasChoices('synapse_api_url', 'SYNAPSE_API_URL')
    )
    mcp_api_key: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices('mcp_api_key', 'MCP_API_KEY')
    )

    @property
    def is_production(self) -> bool:
        """Check if running in production environment."""
        return self.environment.lower() in ('production', 'prod')

    @property
    def cors_origins_list(self) -> list[str]:
        """Get CORS origins as list."""
        return [origin.strip() for origin in self.cors_origins.split(',') if origin.strip()]

    @property
    def capture_api_keys_list(self) -> list[str]:
        return [key.strip() for key in self.capture_api_keys.split(',') if key.strip()]

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore"   # prevents crashes if other stray keys exist
    )

settings = Settings()

def get_settings() -> Settings:
    """Get application settings instance"""
    return settings
