import json
import re
from typing import Annotated, Any

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict


def _parse_cors_origins(raw: Any) -> list[str]:
    if raw is None:
        return []
    if isinstance(raw, list):
        items = [str(v).strip() for v in raw]
        return [v for v in items if v]

    raw = str(raw).strip()
    if not raw or raw == "[]":
        return []
    if raw == "*":
        return ["*"]

    # Prefer JSON, but tolerate comma/space separated values so a
    # misconfigured deployment still boots.
    if raw.startswith(("[", '"', "'")):
        try:
            parsed = json.loads(raw)
        except json.JSONDecodeError:
            parsed = None
        if isinstance(parsed, list):
            items = [str(v).strip() for v in parsed]
            return [v for v in items if v]
        if isinstance(parsed, str):
            raw = parsed.strip()
            if not raw or raw == "[]":
                return []
            if raw == "*":
                return ["*"]

    parts = [p for p in re.split(r"[,\s]+", raw) if p]
    origins: list[str] = []
    for part in parts:
        if part == "*":
            return ["*"]
        if "://" in part:
            origins.append(part)
            continue
        # Browsers include the scheme in the Origin header
        origins.append(f"http://{part}")
        origins.append(f"https://{part}")

    seen: set[str] = set()
    result: list[str] = []
    for origin in origins:
        if origin in seen:
            continue
        seen.add(origin)
        result.append(origin)
    return result


class Settings(BaseSettings):
    """Application settings loaded from environment variables.

    All settings can be configured via environment variables or .env file.
    A missing OPENROUTER_API_KEY is not an error: every chat request is then
    answered by the local simulation message.
    """

    # Debug mode - enables detailed error responses
    debug: bool = False

    # Upstream aggregation service
    openrouter_api_key: str = ""
    openrouter_base_url: str = "https://openrouter.ai/api/v1"
    site_url: str = "https://roovert.com"
    site_name: str = "Roovert"

    # Model routing
    default_model: str = "ooverta"
    default_fallback_models: list[str] = Field(
        default_factory=lambda: ["deepseek/deepseek-r1-0528:free"]
    )
    upstream_temperature: float = 0.7
    upstream_max_tokens: int = 2000

    # Request limits
    history_limit: int = 50
    max_body_size: int = 10 * 1024 * 1024
    max_stream_duration_seconds: float = 60.0
    max_response_length: int = 100000

    # Model availability probing
    availability_cache_seconds: float = 300.0
    availability_batch_size: int = 3
    availability_batch_pause_seconds: float = 0.5
    availability_probe_timeout: float = 10.0

    # Global per-IP guard in front of every /api/ route
    global_rate_limit_enabled: bool = True
    global_rate_limit_skip_paths: list[str] = Field(
        default_factory=lambda: ["/api/stats"]
    )

    # HTTP Client connection pool settings
    httpx_connect_timeout: float = 10.0
    httpx_read_timeout: float = 60.0
    httpx_write_timeout: float = 10.0
    httpx_pool_timeout: float = 5.0
    httpx_keepalive_expiry: float = 30.0
    httpx_max_connections: int = 100
    httpx_max_keepalive_connections: int = 20

    # Logging settings
    log_level: str = "INFO"
    log_format: str = "text"  # text | structured | json

    # Use NoDecode so values like "example.com" don't crash JSON parsing
    cors_origins: Annotated[list[str], NoDecode] = ["*"]

    @field_validator("cors_origins", mode="before")
    @classmethod
    def decode_cors_origins(cls, v: Any) -> list[str]:
        return _parse_cors_origins(v)

    @field_validator("openrouter_api_key", mode="before")
    @classmethod
    def strip_api_key(cls, v: Any) -> str:
        """Whitespace-only keys count as missing."""
        return str(v or "").strip()

    @field_validator(
        "history_limit",
        "max_body_size",
        "max_response_length",
        "availability_batch_size",
        "upstream_max_tokens",
        "httpx_max_connections",
        "httpx_max_keepalive_connections",
    )
    @classmethod
    def validate_positive_int(cls, v: int) -> int:
        """Validate limit values are positive."""
        if v < 1:
            raise ValueError("limit values must be at least 1")
        return v

    @field_validator(
        "max_stream_duration_seconds",
        "availability_cache_seconds",
        "availability_probe_timeout",
        "httpx_connect_timeout",
        "httpx_read_timeout",
        "httpx_write_timeout",
        "httpx_pool_timeout",
    )
    @classmethod
    def validate_timeout_positive(cls, v: float) -> float:
        """Validate timeout values are positive."""
        if v <= 0:
            raise ValueError("Timeout values must be positive")
        return v

    @field_validator("availability_batch_pause_seconds")
    @classmethod
    def validate_pause_not_negative(cls, v: float) -> float:
        if v < 0:
            raise ValueError("availability_batch_pause_seconds cannot be negative")
        return v

    @property
    def upstream_configured(self) -> bool:
        return bool(self.openrouter_api_key)

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")


# Global settings instance
settings = Settings()
