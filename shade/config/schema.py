"""Configuration schema with validation."""

from enum import Enum
from pathlib import Path

from pydantic import BaseModel, Field, field_validator


class LogLevel(str, Enum):
    """Logging levels."""

    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


class GeneralConfig(BaseModel):
    """General application settings."""

    app_name: str = Field(default="Shade", description="Application name")
    log_level: LogLevel = Field(default=LogLevel.INFO, description="Logging verbosity")
    data_dir: Path | None = Field(
        default=None, description="Session and registry storage (platform data dir when unset)"
    )


class ProviderConfig(BaseModel):
    """Per-provider user configuration.

    The API key is a secret owned by the configuration store; the gateway only
    reads it.
    """

    api_key: str = Field(default="", description="API key (empty for local providers)")
    model: str = Field(default="", description="Model id (provider default when empty)")
    base_url: str | None = Field(default=None, description="Endpoint override")
    system_prompt: str = Field(default="", description="System prompt sent with every request")

    def __repr__(self):
        # Keep keys out of logs and tracebacks
        masked = "***" if self.api_key else "''"
        return (
            f"ProviderConfig(api_key={masked}, model={self.model!r}, "
            f"base_url={self.base_url!r})"
        )

    __str__ = __repr__


class ProvidersConfig(BaseModel):
    """Provider selection and per-provider settings."""

    active_provider: str = Field(default="gemini", description="Provider used when none is named")
    entries: dict[str, ProviderConfig] = Field(
        default_factory=dict, description="Settings keyed by provider id"
    )
    max_tokens: int = Field(default=4096, description="Max output tokens per response", ge=1)


class SessionsConfig(BaseModel):
    """Conversation persistence settings."""

    retention_days: int = Field(
        default=30, description="Delete unsaved sessions older than this", ge=1
    )
    cleanup_on_startup: bool = Field(default=True, description="Run retention cleanup at start")
    auto_title: bool = Field(default=True, description="Generate titles for new sessions")
    exclude_screenshots: bool = Field(
        default=True, description="Never persist screenshot bytes in session records"
    )
    history_limit: int = Field(
        default=20, description="Max history turns sent with a request", ge=0
    )


class ModelsConfig(BaseModel):
    """Model metadata cache settings."""

    cache_ttl_seconds: int = Field(default=3600, description="Model list TTL", ge=0)
    ttl_overrides: dict[str, int] = Field(
        default_factory=dict, description="Per-provider TTL in seconds"
    )

    @field_validator("ttl_overrides")
    @classmethod
    def validate_overrides(cls, value: dict[str, int]) -> dict[str, int]:
        for provider_id, ttl in value.items():
            if ttl < 0:
                raise ValueError(f"TTL for {provider_id} must be >= 0")
        return value


class ShadeConfig(BaseModel):
    """Complete Shade configuration."""

    model_config = {"extra": "allow"}

    general: GeneralConfig = Field(default_factory=GeneralConfig)
    providers: ProvidersConfig = Field(default_factory=ProvidersConfig)
    sessions: SessionsConfig = Field(default_factory=SessionsConfig)
    models: ModelsConfig = Field(default_factory=ModelsConfig)

    # Metadata
    version: int = Field(default=1, description="Configuration version")
