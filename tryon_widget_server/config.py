"""
Configuration management with environment variable validation.
Loads and validates all configuration from environment variables.
"""
import json
from typing import Annotated, List, Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict

_CHOICES = {
    "environment": ("development", "staging", "production", "test"),
    "log_level": ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"),
    "log_format": ("json", "console"),
    "session_completion_policy": ("limit", "single_shot"),
}


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Application
    app_name: str = Field(default="tryon-widget-server")
    app_version: str = Field(default="1.0.0")
    environment: str = Field(default="development")
    debug: bool = Field(default=False)
    base_url: Optional[str] = Field(default=None)  # used to build iframe URLs

    # Server
    host: str = Field(default="0.0.0.0")
    port: int = Field(default=8001)

    # Database (unset = in-memory storage)
    database_url: Optional[str] = Field(default=None)
    database_echo: bool = Field(default=False)

    # Rate Limiting
    rate_limit_enabled: bool = Field(default=True)
    rate_limit_storage_uri: str = Field(default="memory://")
    merchant_rate_limit_per_window: int = Field(default=100, ge=1)
    ip_rate_limit_per_window: int = Field(default=20, ge=1)
    rate_limit_window_seconds: int = Field(default=60, ge=1)
    # Peers whose X-Forwarded-For is honoured ("*" trusts any peer)
    trusted_proxies: Annotated[List[str], NoDecode] = Field(default=[])

    # Widget sessions
    session_ttl_minutes: int = Field(default=30, ge=1)
    default_max_try_ons: int = Field(default=3, ge=1)
    max_try_ons_limit: int = Field(default=10, ge=1)
    session_completion_policy: str = Field(default="limit")
    session_sweep_interval_seconds: int = Field(default=300, ge=0)  # 0 disables the sweep
    poll_interval_seconds: float = Field(default=2.0, gt=0)
    poll_max_duration_seconds: int = Field(default=300, ge=1)

    # Image generation
    image_generation_url: Optional[str] = Field(default=None)
    image_generation_api_key: Optional[str] = Field(default=None)
    image_generation_timeout_seconds: float = Field(default=60.0, gt=0)
    photo_fetch_timeout_seconds: float = Field(default=15.0, gt=0)
    max_photo_bytes: int = Field(default=10 * 1024 * 1024, ge=1)  # 10MB

    # Webhooks
    webhooks_enabled: bool = Field(default=True)
    webhook_timeout: float = Field(default=10.0, gt=0)
    webhook_retry_attempts: int = Field(default=3, ge=1)
    webhook_retry_delays: Annotated[List[float], NoDecode] = Field(default=[1.0, 5.0])

    # Logging
    log_level: str = Field(default="INFO")
    log_format: str = Field(default="json")
    log_file_enabled: bool = Field(default=False)
    log_file_path: str = Field(default="/app/logs/tryon-widget.log")
    log_file_max_size: int = Field(default=10485760)  # 10MB
    log_file_backup_count: int = Field(default=5)

    # CORS (the widget is embedded on merchant storefronts)
    cors_enabled: bool = Field(default=True)
    cors_origins: Annotated[List[str], NoDecode] = Field(default=["*"])
    cors_allow_credentials: bool = Field(default=False)

    # Monitoring
    request_id_header: str = Field(default="X-Request-ID")

    @field_validator("environment", "log_level", "log_format", "session_completion_policy")
    @classmethod
    def validate_choice(cls, v, info):
        """Restrict enumerated settings to their allowed values."""
        if info.field_name == "log_level":
            v = v.upper()
        allowed = _CHOICES[info.field_name]
        if v not in allowed:
            raise ValueError(f"{info.field_name} must be one of: {list(allowed)}")
        return v

    @field_validator("cors_origins", "trusted_proxies", mode="before")
    @classmethod
    def parse_string_list(cls, v):
        """Parse a list setting from a JSON array or a comma separated string."""
        if isinstance(v, str):
            try:
                return json.loads(v)
            except json.JSONDecodeError:
                return [origin.strip() for origin in v.split(",") if origin.strip()]
        return v

    @field_validator("webhook_retry_delays", mode="before")
    @classmethod
    def parse_retry_delays(cls, v):
        if isinstance(v, str):
            return [float(part) for part in v.split(",") if part.strip()]
        return v


def validate_environment(**overrides) -> Settings:
    """
    Validate environment configuration on startup.
    Raises ValueError if required variables are missing or invalid.
    """
    settings = Settings(**overrides)

    if settings.environment == "production":
        if settings.debug:
            raise ValueError("DEBUG must be False in production")
        if settings.database_echo:
            raise ValueError("DATABASE_ECHO must be False in production")
        if settings.cors_allow_credentials and "*" in settings.cors_origins:
            raise ValueError("CORS_ORIGINS cannot contain '*' when credentials are allowed")
        if not settings.image_generation_url:
            raise ValueError("IMAGE_GENERATION_URL must be set in production")

    if settings.default_max_try_ons > settings.max_try_ons_limit:
        raise ValueError("DEFAULT_MAX_TRY_ONS cannot exceed MAX_TRY_ONS_LIMIT")

    return settings


# Global settings instance
settings = validate_environment()


if __name__ == "__main__":
    """Test configuration loading."""
    print("Environment configuration validated successfully!")
    print(f"\nConfiguration Summary:")
    print(f"  App: {settings.app_name} v{settings.app_version}")
    print(f"  Environment: {settings.environment}")
    print(f"  Log Level: {settings.log_level}")
    print(f"  Server: {settings.host}:{settings.port}")
    print(f"  Storage: {'database' if settings.database_url else 'in-memory'}")
    print(f"  Rate Limiting: {settings.rate_limit_enabled} ({settings.rate_limit_storage_uri})")
    print(f"  Session TTL: {settings.session_ttl_minutes} minutes")
    print(f"  Completion Policy: {settings.session_completion_policy}")
    print(f"  Image Generation: {settings.image_generation_url or 'not configured'}")
    print(f"  Webhooks: {settings.webhooks_enabled}")
