import os
from typing import Optional

from dotenv import load_dotenv
from pydantic import BaseModel, Field, field_validator


DEFAULT_SCOPES = "design:content:read design:content:write"

# Field name -> environment variable, for configuration error messages
ENV_NAMES = {
    "client_id": "CANVA_CLIENT_ID",
    "client_secret": "CANVA_CLIENT_SECRET",
    "relay_base_url": "RELAY_BASE_URL",
    "scopes": "CANVA_SCOPES",
}


class Settings(BaseModel):
    """
    Process-wide relay configuration.

    Built once at startup with `Settings.from_env()` and handed to every
    component. Handlers never read the environment themselves.
    """

    # Upstream (Canva) client registration
    client_id: Optional[str] = None
    client_secret: Optional[str] = None
    scopes: str = DEFAULT_SCOPES
    authorize_url: str = "https://www.canva.com/api/oauth/authorize"
    token_url: str = "https://api.canva.com/rest/v1/oauth/token"
    api_base_url: str = "https://api.canva.com/rest/v1"

    # Externally reachable base URL of this relay
    relay_base_url: Optional[str] = None

    # Session store
    storage_backend: str = "memory"
    redis_url: Optional[str] = None
    redis_host: Optional[str] = None
    redis_port: int = 6379
    redis_password: Optional[str] = None

    # Lifetimes and timeouts
    session_ttl_seconds: int = Field(default=600, gt=0)
    redemption_code_ttl_seconds: int = Field(default=300, gt=0)
    upstream_timeout_seconds: float = Field(default=15.0, gt=0)

    # Server
    port: int = 4000
    log_level: str = "INFO"
    log_file: Optional[str] = None

    @field_validator("client_id", "client_secret", "relay_base_url", "redis_url", "redis_host", "redis_password", "log_file")
    @classmethod
    def _blank_is_missing(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return None
        value = value.strip()
        return value or None

    @field_validator("relay_base_url", "api_base_url")
    @classmethod
    def _strip_trailing_slash(cls, value: Optional[str]) -> Optional[str]:
        return value.rstrip("/") if value else value

    @field_validator("storage_backend")
    @classmethod
    def _known_backend(cls, value: str) -> str:
        value = value.strip().lower()
        if value not in ("memory", "redis"):
            raise ValueError(f"Unsupported storage backend: {value}")
        return value

    @classmethod
    def from_env(cls) -> "Settings":
        load_dotenv()
        env = os.environ
        values = {
            "client_id": env.get("CANVA_CLIENT_ID"),
            "client_secret": env.get("CANVA_CLIENT_SECRET"),
            "scopes": env.get("CANVA_SCOPES") or DEFAULT_SCOPES,
            "authorize_url": env.get("CANVA_AUTHORIZE_URL"),
            "token_url": env.get("CANVA_TOKEN_URL"),
            "api_base_url": env.get("CANVA_API_BASE_URL"),
            "relay_base_url": env.get("RELAY_BASE_URL"),
            "storage_backend": env.get("STORAGE_BACKEND"),
            "redis_url": env.get("REDIS_URL"),
            "redis_host": env.get("REDIS_HOST"),
            "redis_port": env.get("REDIS_PORT"),
            "redis_password": env.get("REDIS_PASSWORD"),
            "session_ttl_seconds": env.get("SESSION_TTL_SECONDS"),
            "redemption_code_ttl_seconds": env.get("REDEMPTION_CODE_TTL_SECONDS"),
            "upstream_timeout_seconds": env.get("UPSTREAM_TIMEOUT_SECONDS"),
            "port": env.get("PORT"),
            "log_level": env.get("LOG_LEVEL"),
            "log_file": env.get("LOG_FILE"),
        }
        # unset variables fall back to the field defaults
        return cls(**{k: v for k, v in values.items() if v is not None})

    @property
    def callback_url(self) -> Optional[str]:
        if not self.relay_base_url:
            return None
        return f"{self.relay_base_url}/callback"

    @property
    def store_configured(self) -> bool:
        if self.storage_backend == "memory":
            return True
        return bool(self.redis_url or self.redis_host)

    def missing(self, *fields: str) -> list[str]:
        """Environment names of the given required fields that have no value."""
        return [ENV_NAMES.get(name, name.upper()) for name in fields if not getattr(self, name)]

    def presence(self) -> dict[str, bool]:
        """Which configuration values are set, without exposing them."""
        return {
            "CANVA_CLIENT_ID": bool(self.client_id),
            "CANVA_CLIENT_SECRET": bool(self.client_secret),
            "RELAY_BASE_URL": bool(self.relay_base_url),
            "CANVA_SCOPES": bool(self.scopes),
            "STORAGE_BACKEND": bool(self.storage_backend),
            "REDIS_URL": bool(self.redis_url or self.redis_host),
        }
