"""
Configuration module for the upstream relay.

This module uses Pydantic Settings to load and validate environment variables
for the upstream credential, the deployment profile (which upstream host and
which inbound routes), CORS, timeouts and the realtime WebSocket relays.

Environment variables are loaded from .env file or system environment.
"""

from dataclasses import dataclass
from functools import lru_cache
from typing import Dict, List, Literal, Optional, Tuple

from pydantic import AliasChoices, Field, HttpUrl, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


ALL_METHODS: Tuple[str, ...] = ("GET", "HEAD", "POST", "PUT", "PATCH", "DELETE", "OPTIONS")


@dataclass(frozen=True)
class DeploymentProfile:
    """Upstream host, inbound routes and realtime availability of one deployment."""

    name: str
    upstream_base_url: str
    routes: Tuple[Tuple[str, Tuple[str, ...]], ...]
    realtime: bool


PROFILES: Dict[str, DeploymentProfile] = {
    "dashscope": DeploymentProfile(
        name="dashscope",
        upstream_base_url="https://dashscope.aliyuncs.com",
        routes=(("/compatible-mode/v1/{path:path}", ALL_METHODS),),
        realtime=True,
    ),
    "deepseek": DeploymentProfile(
        name="deepseek",
        upstream_base_url="https://api.deepseek.com",
        routes=(("/chat/completions", ("POST",)),),
        realtime=False,
    ),
}


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.

    The only required value is the upstream API key. Everything else has a
    default taken from the selected deployment profile.
    """

    # =========================================================================
    # Upstream Credential
    # =========================================================================

    UPSTREAM_API_KEY: str = Field(
        ...,
        validation_alias=AliasChoices("DASHSCOPE_API_KEY", "DEEPSEEK_API_KEY", "UPSTREAM_API_KEY"),
        description="Bearer token sent upstream (DASHSCOPE_API_KEY, DEEPSEEK_API_KEY or UPSTREAM_API_KEY)",
        min_length=1,
    )

    AUTHORIZATION_MODE: Literal["preserve", "overwrite"] = Field(
        default="preserve",
        description="'preserve' keeps an inbound Authorization header, 'overwrite' always replaces it",
    )

    # =========================================================================
    # Upstream Target
    # =========================================================================

    DEPLOYMENT_PROFILE: Literal["dashscope", "deepseek"] = Field(
        default="dashscope",
        description="Which upstream API and inbound routes to serve",
    )

    UPSTREAM_BASE_URL: Optional[HttpUrl] = Field(
        None,
        description="Override for the profile's upstream scheme+host",
    )

    UPSTREAM_CONNECT_TIMEOUT: float = Field(
        default=10.0,
        description="Seconds allowed for connecting to the upstream",
        gt=0,
    )

    UPSTREAM_READ_TIMEOUT: Optional[float] = Field(
        None,
        description="Seconds allowed between upstream reads (unset: wait forever)",
        gt=0,
    )

    # =========================================================================
    # Server Configuration
    # =========================================================================

    PROXY_HOST: str = Field(
        default="0.0.0.0",
        description="Host to bind the relay server",
    )

    PROXY_PORT: int = Field(
        default=3000,
        description="Port to bind the relay server",
        ge=1,
        le=65535,
    )

    LOG_LEVEL: str = Field(
        default="INFO",
        description="Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)",
    )

    # =========================================================================
    # CORS Configuration
    # =========================================================================

    ALLOWED_ORIGINS: Optional[str] = Field(
        None,
        description="Comma-separated list of allowed CORS origins (empty or '*' allows all)",
    )

    # =========================================================================
    # Realtime WebSocket Relays
    # =========================================================================

    REALTIME_ENABLED: Optional[bool] = Field(
        None,
        description="Mount the WebSocket relays (defaults to the profile's choice)",
    )

    REALTIME_WS_BASE_URL: str = Field(
        default="wss://dashscope.aliyuncs.com/api-ws/v1",
        description="Base URL of the upstream realtime WebSocket API",
    )

    TTS_MODEL: str = Field(default="qwen3-tts-flash-realtime")

    ASR_MODEL: str = Field(default="qwen3-asr-flash-realtime")

    TTS_CHUNK_LIMIT: int = Field(
        default=100,
        description="Maximum characters per text chunk sent for synthesis",
        ge=1,
    )

    TTS_CHUNK_INTERVAL_SECONDS: float = Field(default=0.2, ge=0)

    REALTIME_SESSION_SETTLE_SECONDS: float = Field(default=0.1, ge=0)

    # =========================================================================
    # Pydantic Settings Configuration
    # =========================================================================

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore",
    )

    # =========================================================================
    # Computed Properties
    # =========================================================================

    @property
    def profile(self) -> DeploymentProfile:
        return PROFILES[self.DEPLOYMENT_PROFILE]

    @property
    def upstream_base_url_str(self) -> str:
        """
        Get the upstream base URL as string, without trailing slash.

        Returns:
            UPSTREAM_BASE_URL when set, otherwise the profile's upstream host.
        """
        if self.UPSTREAM_BASE_URL is not None:
            return str(self.UPSTREAM_BASE_URL).rstrip("/")
        return self.profile.upstream_base_url

    @property
    def realtime_ws_base_url_str(self) -> str:
        return self.REALTIME_WS_BASE_URL.rstrip("/")

    @property
    def realtime_enabled(self) -> bool:
        if self.REALTIME_ENABLED is None:
            return self.profile.realtime
        return self.REALTIME_ENABLED

    @property
    def allowed_origins_list(self) -> List[str]:
        """
        Parse and return ALLOWED_ORIGINS as a list.

        Returns:
            List of allowed origins, or ["*"] when CORS is left permissive.
        """
        if not self.ALLOWED_ORIGINS:
            return ["*"]

        origins = [
            origin.strip()
            for origin in self.ALLOWED_ORIGINS.split(",")
            if origin.strip()
        ]
        return origins or ["*"]

    # =========================================================================
    # Validators
    # =========================================================================

    @field_validator("UPSTREAM_API_KEY")
    @classmethod
    def validate_api_key(cls, v: str) -> str:
        """
        Reject keys that would produce an unusable Authorization header.

        Raises:
            ValueError: If the key is blank or spans several lines
        """
        v = v.strip()
        if not v:
            raise ValueError("API key must not be blank")
        if "\n" in v or "\r" in v:
            raise ValueError("API key must be a single line")
        return v

    @field_validator("LOG_LEVEL")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        allowed_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]

        if v.upper() not in allowed_levels:
            raise ValueError(
                f"LOG_LEVEL must be one of {allowed_levels}, got: {v}"
            )

        return v.upper()

    @field_validator("REALTIME_WS_BASE_URL")
    @classmethod
    def validate_ws_url(cls, v: str) -> str:
        if not v.startswith(("ws://", "wss://")):
            raise ValueError(
                f"Invalid WebSocket URL: '{v}'. Expected a ws:// or wss:// URL"
            )
        return v


# =============================================================================
# Settings Singleton
# =============================================================================

@lru_cache()
def get_settings() -> Settings:
    """
    Get or create a singleton Settings instance.

    This function is cached so that the settings are loaded only once
    during the process lifetime.

    Returns:
        Settings instance with all configuration loaded and validated.

    Raises:
        ValidationError: If the API key is missing or a value is invalid.
    """
    return Settings()


def validate_configuration(settings: Settings) -> dict:
    """
    Report non-fatal configuration concerns.

    Returns:
        Dictionary with the effective upstream, routes and any warnings.
    """
    warnings = []

    base_url = settings.upstream_base_url_str
    if not base_url.startswith("https://"):
        warnings.append("Upstream base URL is not HTTPS (credential sent in clear text)")

    if settings.AUTHORIZATION_MODE == "overwrite":
        warnings.append("AUTHORIZATION_MODE=overwrite replaces client-supplied credentials")

    if settings.REALTIME_ENABLED and not settings.profile.realtime:
        warnings.append(
            f"Realtime relays enabled for profile '{settings.DEPLOYMENT_PROFILE}' "
            "which has no realtime upstream by default"
        )

    return {
        "profile": settings.DEPLOYMENT_PROFILE,
        "upstream": base_url,
        "routes": [path for path, _ in settings.profile.routes],
        "realtime": settings.realtime_enabled,
        "warnings": warnings,
    }
