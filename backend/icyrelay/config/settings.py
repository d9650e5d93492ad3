"""
Relay settings - one immutable configuration value built at startup.

Values come from environment variables via pydantic-settings: ``ICY_*`` for
relay options (ICY_MAX_RETRIES, ICY_TLS_VERIFY, ...) plus HOST, PORT and
LOG_LEVEL for the server. A malformed value fails validation at startup
instead of being silently replaced by a default.
"""

from typing import Annotated, Optional, Tuple

from pydantic import AliasChoices, Field, field_validator, model_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict

# Known-good identities. Some Shoutcast servers only hand out the raw stream
# to players they recognise, so the orchestrator can walk through several.
DEFAULT_USER_AGENTS: Tuple[str, ...] = (
    "VLC/3.0.20 LibVLC/3.0.20",
    "WinampMPEG/5.66, Ultravox/2.1",
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/124.0 Safari/537.36",
)


class RelaySettings(BaseSettings):
    """Process-wide, read-only relay configuration."""

    model_config = SettingsConfigDict(
        env_prefix="ICY_",
        case_sensitive=False,
        env_ignore_empty=True,
        frozen=True,
    )

    # Server, read without the ICY_ prefix
    host: str = Field("0.0.0.0", validation_alias=AliasChoices("host", "HOST"))
    port: int = Field(8080, ge=1, le=65535, validation_alias=AliasChoices("port", "PORT"))
    log_level: str = Field("INFO", validation_alias=AliasChoices("log_level", "LOG_LEVEL"))

    # Basic auth for protected origins
    username: Optional[str] = None
    password: Optional[str] = None

    # ICY_USER_AGENTS is a "|"-separated list
    user_agents: Annotated[Tuple[str, ...], NoDecode] = DEFAULT_USER_AGENTS

    # Retry / fallback
    max_retries: int = Field(5, ge=0)
    base_backoff_ms: int = Field(1000, ge=0)
    idle_timeout_ms: int = Field(15000, gt=0)
    connect_timeout_ms: int = Field(10000, gt=0)
    probe_timeout_ms: int = Field(3000, gt=0)

    # Redirects
    follow_redirects: bool = True
    max_redirects: int = Field(5, ge=0)

    # TLS
    tls_server_name: Optional[str] = None
    tls_client_cert: Optional[str] = None
    tls_client_key: Optional[str] = None
    tls_verify: bool = True

    chunk_size: int = Field(8192, gt=0)
    legacy_prefix_limit: int = Field(4096, gt=0)
    resolve_mounts: bool = True

    @field_validator("user_agents", mode="before")
    @classmethod
    def split_user_agents(cls, value):
        if isinstance(value, str):
            return tuple(ua.strip() for ua in value.split("|") if ua.strip())
        return value

    @model_validator(mode="after")
    def validate_settings(self):
        if not self.user_agents:
            raise ValueError("at least one user agent is required")
        if self.tls_client_key and not self.tls_client_cert:
            raise ValueError("ICY_TLS_CLIENT_KEY requires ICY_TLS_CLIENT_CERT")
        return self

    @property
    def has_credentials(self) -> bool:
        return bool(self.username) and self.password is not None

    @property
    def max_backoff_budget_ms(self) -> int:
        """Worst-case delay added by one identity's retries."""
        return self.base_backoff_ms * (2 ** self.max_retries - 1)
