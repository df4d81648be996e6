from datetime import datetime
from typing import Any, Optional

from pydantic import AnyUrl, BaseModel, ConfigDict, TypeAdapter, field_validator


PROVIDER = "canva"

_absolute_url = TypeAdapter(AnyUrl)


class Session(BaseModel):
    """
    Links a consumer's pending authorization request to the PKCE verifier
    the relay generated for it. Keyed by `session_id`, which is also the
    upstream `state`.
    """

    session_id: str
    consumer_redirect_uri: str
    consumer_state: Optional[str] = None
    # Optional in the schema so a record without it can be reported as such
    code_verifier: Optional[str] = None
    created_at: datetime

    @field_validator("consumer_redirect_uri")
    @classmethod
    def validate_redirect_uri(cls, v: str) -> str:
        # Stored verbatim; the Url type would re-serialize it
        _absolute_url.validate_python(v)
        return v


class UpstreamToken(BaseModel):
    # Providers may add fields; keep them so nothing is lost in the round-trip
    model_config = ConfigDict(extra="allow")

    access_token: Optional[str] = None
    token_type: Any = None
    expires_in: Any = None
    refresh_token: Optional[str] = None
    scope: Any = None


class RedemptionRecord(BaseModel):
    provider: str = PROVIDER
    token: UpstreamToken
    created_at: datetime


class TokenResponse(BaseModel):
    """Token set returned to the consumer."""

    access_token: str
    token_type: Any = "Bearer"
    expires_in: Any = None
    refresh_token: Optional[str] = None
    scope: Any = None

    @classmethod
    def from_upstream(cls, token: UpstreamToken, fallback_refresh_token: Optional[str] = None) -> "TokenResponse":
        return cls(
            access_token=token.access_token,
            token_type=token.token_type or "Bearer",
            expires_in=token.expires_in,
            refresh_token=token.refresh_token or fallback_refresh_token,
            scope=token.scope,
        )


class HealthProbe(BaseModel):
    t: float
