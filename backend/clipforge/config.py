"""Configuration management with YAML and environment variable support."""

from pathlib import Path
from typing import ClassVar, Optional

import yaml
from pydantic import BaseModel, Field, field_validator
from pydantic_settings import (
    BaseSettings,
    PydanticBaseSettingsSource,
    SettingsConfigDict,
)


class YamlConfigSettingsSource(PydanticBaseSettingsSource):
    """Custom settings source that loads configuration from YAML file."""

    def get_field_value(self, field, field_name: str):
        # Not used with prepare method
        pass

    def prepare_field_value(self, field_name: str, field, value, value_is_complex: bool):
        return value

    def __call__(self):
        # Load from config.yaml in current directory
        yaml_path = Path("config.yaml")
        if not yaml_path.exists():
            return {}

        with open(yaml_path) as f:
            data = yaml.safe_load(f) or {}

        return data


class StreamConfig(BaseModel):
    """Video transcoding provider (Cloudflare Stream) configuration.

    account_id and api_token are secrets and must come from .env or the
    environment. Leaving either unset is a configuration error reported at
    the upload step, not at startup.
    """

    account_id: Optional[str] = None
    api_token: Optional[str] = None
    api_base: str = "https://api.cloudflare.com/client/v4"
    delivery_host_template: str = "customer-{account}.cloudflarestream.com"
    request_timeout: float = 60.0

    @property
    def is_configured(self) -> bool:
        return bool(self.account_id and self.api_token)


class CaptionConfig(BaseModel):
    """Caption model selection and credentials."""

    model: str = "google/gemini-2.5-flash"
    api_key: Optional[str] = None
    gateway_url: str = "https://ai.gateway.lovable.dev/v1/chat/completions"
    ollama_endpoint: Optional[str] = None
    ollama_api_key: Optional[str] = None
    segment_seconds: float = Field(default=2.0, gt=0)
    temperature: float = 0.3
    max_retries: int = Field(default=1, ge=1)


class GoogleCloudConfig(BaseModel):
    """Google Cloud configuration, only needed for gemini-* caption models."""

    project_id: Optional[str] = None
    location: str = "us-central1"


class PipelineConfig(BaseModel):
    """Pipeline execution parameters."""

    fail_fast: bool = True
    deadline_seconds: Optional[float] = Field(default=None, gt=0)
    error_message_max_length: int = Field(default=300, gt=0)
    retry_max_attempts: int = Field(default=1, ge=1)
    retry_base_delay: float = Field(default=1.0, ge=0)
    # A processing clip untouched this long is treated as abandoned
    stale_run_seconds: Optional[float] = Field(default=3600.0, gt=0)


class AuthConfig(BaseModel):
    """Bearer token to user id mapping.

    An empty mapping runs in development mode: any bearer token is
    accepted and attributed to the default user.
    """

    api_tokens: dict[str, str] = Field(default_factory=dict)


class StorageConfig(BaseModel):
    """Storage and database configuration."""

    database_url: str = "sqlite+aiosqlite:///clipforge.db"

    @field_validator("database_url")
    @classmethod
    def require_async_driver(cls, v: str) -> str:
        """Upgrade plain sqlite URLs to the aiosqlite driver (engine is async-only)."""
        if v.startswith("sqlite:"):
            return v.replace("sqlite:", "sqlite+aiosqlite:", 1)
        return v


class ServerConfig(BaseModel):
    """Server configuration."""

    host: str = "0.0.0.0"
    port: int = 8000
    log_level: str = "INFO"


class Settings(BaseSettings):
    """Main application settings with YAML and environment variable support.

    Configuration sources (in priority order):
    1. Environment variables (prefix: CLIPFORGE_, delimiter: __)
    2. .env file
    3. YAML file (config.yaml)
    4. Field defaults
    """

    model_config: ClassVar[SettingsConfigDict] = SettingsConfigDict(
        env_nested_delimiter="__",
        env_prefix="CLIPFORGE_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    stream: StreamConfig = Field(default_factory=StreamConfig)
    captions: CaptionConfig = Field(default_factory=CaptionConfig)
    google_cloud: GoogleCloudConfig = Field(default_factory=GoogleCloudConfig)
    pipeline: PipelineConfig = Field(default_factory=PipelineConfig)
    auth: AuthConfig = Field(default_factory=AuthConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    server: ServerConfig = Field(default_factory=ServerConfig)

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ):
        """Customize settings sources to include YAML configuration.

        Priority order (highest to lowest):
        1. Init settings (explicit overrides, used by tests)
        2. Environment variables
        3. .env file
        4. YAML file
        """
        return (
            init_settings,
            env_settings,
            dotenv_settings,
            YamlConfigSettingsSource(settings_cls),
        )


# Singleton instance
settings = Settings()
