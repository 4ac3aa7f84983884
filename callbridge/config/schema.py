"""
Configuration schema definitions using Pydantic v2.

This module defines the configuration structure for the call bridge,
including validation rules, default values, and environment variable mapping
(``CALLBRIDGE_`` prefix, ``__`` between nested sections, e.g.
``CALLBRIDGE_STORE__BACKEND=redis``).
"""

from typing import Any, Dict, Literal, Optional
from urllib.parse import urlsplit, urlunsplit

from pydantic import BaseModel, Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class AdmissionConfig(BaseModel):
    """Admission engine thresholds, all in milliseconds."""

    ttl_ms: int = Field(default=60_000, ge=1, description="Maximum age of a call signal")
    stale_guard_ms: int = Field(default=120_000, ge=1, description="Age after which the active call guard self-expires")
    future_tolerance_ms: int = Field(default=5_000, ge=0, description="Future timestamps beyond this are logged as clock skew")
    dedup_bucket_ms: int = Field(default=2_000, ge=0, description="Timestamp window for dedup without a call id")


class StoreConfig(BaseModel):
    """Bridge store backend configuration."""

    backend: Literal["memory", "file", "redis"] = Field(default="file", description="Key-value backend")
    namespace: str = Field(default="callbridge", description="Key namespace")
    file_path: str = Field(default="data/callbridge_store.json", description="File backend path")
    redis_url: str = Field(default="redis://localhost:6379/0", description="Redis backend URL")

    @field_validator("namespace")
    @classmethod
    def validate_namespace(cls, v: str) -> str:
        if ":" in v:
            raise ValueError("Store namespace must not contain ':'")
        return v


class SignalingConfig(BaseModel):
    """Native signaling stack configuration."""

    enabled: bool = Field(default=True, description="Route native call signals through the signaling stack")
    account_id: str = Field(default="callbridge_voip", description="Signaling account identifier")
    account_label: str = Field(default="CallBridge", description="Signaling account label")
    breaker_fail_max: int = Field(default=5, ge=1, le=100, description="Failures before the breaker opens")
    breaker_reset_timeout: int = Field(default=60, ge=1, le=3600, description="Seconds before an open breaker retries")


class UiConfig(BaseModel):
    """Incoming-call presentation settings."""

    display_name_length: int = Field(default=8, ge=1, le=64, description="Caller key prefix shown when no name is known")


class LoggingConfig(BaseModel):
    """Logging configuration."""

    level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(default="INFO", description="Log level")
    format: Literal["json", "console"] = Field(default="json", description="Log format")
    log_file: Optional[str] = Field(default=None, description="Log file path")

    @field_validator("level", mode="before")
    @classmethod
    def normalize_level(cls, v: Any) -> Any:
        return v.upper() if isinstance(v, str) else v


class BridgeSettings(BaseSettings):
    """Main configuration class for the call bridge."""

    model_config = SettingsConfigDict(
        env_prefix="CALLBRIDGE_",
        env_nested_delimiter="__",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    admission: AdmissionConfig = Field(default_factory=AdmissionConfig, description="Admission configuration")
    store: StoreConfig = Field(default_factory=StoreConfig, description="Bridge store configuration")
    signaling: SignalingConfig = Field(default_factory=SignalingConfig, description="Signaling configuration")
    ui: UiConfig = Field(default_factory=UiConfig, description="UI configuration")
    logging: LoggingConfig = Field(default_factory=LoggingConfig, description="Logging configuration")

    @classmethod
    def settings_customise_sources(cls, settings_cls, init_settings, env_settings,
                                   dotenv_settings, file_secret_settings):
        # Environment variables take precedence over values loaded from the config file
        return env_settings, dotenv_settings, init_settings, file_secret_settings

    @model_validator(mode="after")
    def validate_thresholds(self) -> "BridgeSettings":
        """The active call guard must outlive the TTL."""
        if self.admission.stale_guard_ms < self.admission.ttl_ms:
            raise ValueError("admission.stale_guard_ms must be >= admission.ttl_ms")
        return self

    def get_log_config(self) -> Dict[str, Any]:
        """Get logging configuration."""
        return {
            "log_level": self.logging.level,
            "log_format": self.logging.format,
            "log_file": self.logging.log_file,
        }

    def masked_redis_url(self) -> str:
        """Redis URL with any password replaced."""
        parts = urlsplit(self.store.redis_url)
        if not parts.password:
            return self.store.redis_url
        netloc = parts.netloc.replace(f":{parts.password}@", ":***MASKED***@")
        return urlunsplit((parts.scheme, netloc, parts.path, parts.query, parts.fragment))


DEFAULT_CONFIG = BridgeSettings.model_construct(
    admission=AdmissionConfig(),
    store=StoreConfig(),
    signaling=SignalingConfig(),
    ui=UiConfig(),
    logging=LoggingConfig(),
)
