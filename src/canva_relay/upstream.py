import json
from dataclasses import dataclass
from typing import Any, Optional
from urllib.parse import parse_qsl, urlencode, urlparse, urlunparse

import httpx

from canva_relay.config import Settings
from canva_relay.errors import UpstreamUnavailableError
from canva_relay.logging_util import get_logger


logger = get_logger(__name__)

# Canva expects the lowercase method name
CODE_CHALLENGE_METHOD = "s256"


def build_url_with_params(base_uri: str, params: dict[str, Optional[str]]) -> str:
    """
    Set query parameters on base_uri. Existing pairs with other keys are kept
    in order, repeats included.
    """
    url = urlparse(base_uri)
    updates = [(k, v) for k, v in params.items() if v is not None]
    replaced = {k for k, _ in updates}
    query = [(k, v) for k, v in parse_qsl(url.query, keep_blank_values=True) if k not in replaced]
    query.extend(updates)
    return urlunparse(url._replace(query=urlencode(query)))


@dataclass
class UpstreamResponse:
    status_code: int
    text: str
    payload: Optional[dict[str, Any]]

    @property
    def ok(self) -> bool:
        return 200 <= self.status_code < 300

    @classmethod
    def from_httpx(cls, response: httpx.Response) -> "UpstreamResponse":
        """JSON content types are decoded directly; anything else is read as text and tried as JSON."""
        content_type = response.headers.get("content-type", "").lower()
        text = response.text
        payload = None
        if "application/json" in content_type:
            try:
                payload = response.json()
            except ValueError:
                payload = None
        else:
            try:
                payload = json.loads(text)
            except ValueError:
                payload = None
        if not isinstance(payload, dict):
            payload = None
        return cls(status_code=response.status_code, text=text, payload=payload)


class UpstreamClient:
    """
    The relay's side of the conversation with Canva: it authenticates as the
    statically registered client for code and refresh exchanges, and carries
    consumer bearer tokens through for REST calls.
    """

    def __init__(self, settings: Settings):
        self.settings = settings

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self.settings.upstream_timeout_seconds)

    def authorization_url(self, state: str, code_challenge: str) -> str:
        return build_url_with_params(self.settings.authorize_url, {
            "response_type": "code",
            "client_id": self.settings.client_id,
            "redirect_uri": self.settings.callback_url,
            "scope": self.settings.scopes,
            "state": state,
            "code_challenge": code_challenge,
            "code_challenge_method": CODE_CHALLENGE_METHOD,
        })

    async def _token_request(self, data: dict[str, str]) -> UpstreamResponse:
        # client_id goes in the body as well as the Basic credentials
        data = {**data, "client_id": self.settings.client_id}
        try:
            async with self._client() as client:
                response = await client.post(
                    self.settings.token_url,
                    data=data,
                    auth=(self.settings.client_id, self.settings.client_secret),
                    headers={"Accept": "application/json"},
                )
        except httpx.HTTPError as e:
            logger.error(f"Token endpoint unreachable: {type(e).__name__}")
            raise UpstreamUnavailableError(
                "Could not reach the upstream token endpoint",
                context={"grant_type": data["grant_type"], "exception": type(e).__name__},
            ) from e
        return UpstreamResponse.from_httpx(response)

    async def exchange_code(self, code: str, code_verifier: str) -> UpstreamResponse:
        return await self._token_request({
            "grant_type": "authorization_code",
            "code": code,
            "redirect_uri": self.settings.callback_url,
            "code_verifier": code_verifier,
        })

    async def refresh(self, refresh_token: str) -> UpstreamResponse:
        return await self._token_request({
            "grant_type": "refresh_token",
            "refresh_token": refresh_token,
        })

    async def forward(
        self,
        method: str,
        path: str,
        query: str,
        headers: dict[str, str],
        content: Optional[bytes],
    ) -> httpx.Response:
        url = f"{self.settings.api_base_url}/{path.lstrip('/')}"
        if query:
            url = f"{url}?{query}"
        try:
            async with self._client() as client:
                return await client.request(method, url, headers=headers, content=content)
        except httpx.HTTPError as e:
            raise UpstreamUnavailableError(
                "Failed to reach Canva API",
                context={"path": path, "exception": type(e).__name__},
            ) from e
