import base64
from datetime import datetime, timezone
from urllib.parse import parse_qs

import httpx
import pytest
import respx
from conftest import TOKEN_URL, make_settings, query_of
from fastapi.testclient import TestClient

from canva_relay.http_server import create_app
from canva_relay.models import RedemptionRecord, UpstreamToken


STORED_TOKEN = {
    "access_token": "canva-access",
    "token_type": "bearer",
    "expires_in": 14400,
    "refresh_token": "canva-refresh",
    "scope": "design:content:read",
}


@pytest.fixture
def issue_code(app, run):
    """Park a token set under a redemption code, as the callback would."""

    def _issue(code: str = "code_test", token: dict | None = None) -> str:
        record = RedemptionRecord(
            token=UpstreamToken(**(STORED_TOKEN if token is None else token)),
            created_at=datetime.now(timezone.utc),
        )
        run(app.state.codes.set(code, record, ttl_in_sec=300))
        return code

    return _issue


class TestAuthorizationCodeGrant:

    def test_unknown_code_is_invalid_grant(self, client):
        response = client.post("/token", json={"grant_type": "authorization_code", "code": "unknown"})
        assert response.status_code == 400
        assert response.json()["error"] == "invalid_grant"

    def test_redeems_stored_token_fields(self, client, issue_code):
        code = issue_code()

        response = client.post("/token", json={"grant_type": "authorization_code", "code": code})

        assert response.status_code == 200
        assert response.json() == STORED_TOKEN
        assert response.headers["cache-control"] == "no-store"

    def test_code_is_single_use(self, client, issue_code):
        code = issue_code()
        first = client.post("/token", json={"grant_type": "authorization_code", "code": code})
        second = client.post("/token", json={"grant_type": "authorization_code", "code": code})

        assert first.status_code == 200
        assert second.status_code == 400
        assert second.json()["error"] == "invalid_grant"

    def test_form_encoded_body(self, client, issue_code):
        code = issue_code()
        response = client.post("/token", data={"grant_type": "authorization_code", "code": code})
        assert response.status_code == 200
        assert response.json()["access_token"] == "canva-access"

    def test_token_type_defaults_to_bearer(self, client, issue_code):
        code = issue_code(token={"access_token": "a"})
        response = client.post("/token", json={"grant_type": "authorization_code", "code": code})
        assert response.json() == {"access_token": "a", "token_type": "Bearer"}

    def test_untyped_token_fields_pass_through(self, client, issue_code):
        code = issue_code(token={"access_token": "a", "expires_in": "3600", "scope": ["design:content:read"]})
        response = client.post("/token", json={"grant_type": "authorization_code", "code": code})
        assert response.status_code == 200
        assert response.json() == {
            "access_token": "a",
            "token_type": "Bearer",
            "expires_in": "3600",
            "scope": ["design:content:read"],
        }

    def test_missing_code_is_invalid_request(self, client):
        response = client.post("/token", json={"grant_type": "authorization_code"})
        assert response.status_code == 400
        assert response.json() == {"error": "invalid_request", "error_description": "Missing code"}

    def test_record_without_access_token_is_server_error(self, client, issue_code):
        code = issue_code(token={"refresh_token": "r"})
        response = client.post("/token", json={"grant_type": "authorization_code", "code": code})
        assert response.status_code == 500
        assert response.json()["error"] == "server_error"

    @respx.mock
    def test_full_flow_round_trip(self, client, start_flow):
        respx.post(TOKEN_URL).mock(return_value=httpx.Response(200, json=STORED_TOKEN))
        session_id = start_flow()
        redirect = client.get("/callback", params={"code": "c", "state": session_id}, follow_redirects=False)
        code = query_of(redirect.headers["location"])["code"]

        response = client.post("/token", data={"grant_type": "authorization_code", "code": code})

        assert response.status_code == 200
        assert response.json() == STORED_TOKEN


class TestRefreshTokenGrant:

    @respx.mock
    def test_refresh_forwards_with_client_auth(self, client):
        route = respx.post(TOKEN_URL).mock(return_value=httpx.Response(200, json={
            "access_token": "new-access",
            "expires_in": 14400,
            "refresh_token": "rotated",
        }))

        response = client.post("/token", json={"grant_type": "refresh_token", "refresh_token": "old"})

        assert response.status_code == 200
        assert response.json() == {
            "access_token": "new-access",
            "token_type": "Bearer",
            "expires_in": 14400,
            "refresh_token": "rotated",
        }
        request = route.calls.last.request
        assert request.headers["authorization"] == "Basic " + base64.b64encode(b"client-123:secret-456").decode()
        form = {k: v[0] for k, v in parse_qs(request.content.decode()).items()}
        assert form["grant_type"] == "refresh_token"
        assert form["refresh_token"] == "old"

    @respx.mock
    def test_refresh_token_kept_when_not_rotated(self, client):
        respx.post(TOKEN_URL).mock(return_value=httpx.Response(200, json={"access_token": "new-access"}))
        response = client.post("/token", data={"grant_type": "refresh_token", "refresh_token": "old"})
        assert response.json()["refresh_token"] == "old"

    @respx.mock
    def test_upstream_failure_is_invalid_grant(self, client):
        respx.post(TOKEN_URL).mock(return_value=httpx.Response(401, json={"error": "invalid_grant"}))
        response = client.post("/token", json={"grant_type": "refresh_token", "refresh_token": "old"})
        assert response.status_code == 400
        body = response.json()
        assert body["error"] == "invalid_grant"
        assert "401" in body["error_description"]

    @respx.mock
    def test_success_without_access_token_is_server_error(self, client):
        respx.post(TOKEN_URL).mock(return_value=httpx.Response(200, json={"token_type": "Bearer"}))
        response = client.post("/token", json={"grant_type": "refresh_token", "refresh_token": "old"})
        assert response.status_code == 500
        assert response.json()["error"] == "server_error"

    def test_missing_refresh_token_is_invalid_request(self, client):
        response = client.post("/token", json={"grant_type": "refresh_token"})
        assert response.status_code == 400
        assert response.json()["error"] == "invalid_request"

    def test_missing_client_credentials_is_server_error(self):
        client = TestClient(create_app(make_settings(client_secret=None)))
        response = client.post("/token", json={"grant_type": "refresh_token", "refresh_token": "old"})
        assert response.status_code == 500
        assert response.json()["error"] == "server_error"


class TestTokenRequestHandling:

    def test_unsupported_grant_type(self, client):
        response = client.post("/token", json={"grant_type": "password"})
        assert response.status_code == 400
        assert response.json()["error"] == "unsupported_grant_type"

    def test_empty_body_is_unsupported_grant_type(self, client):
        response = client.post("/token")
        assert response.status_code == 400
        assert response.json()["error"] == "unsupported_grant_type"

    def test_malformed_json_is_invalid_request(self, client):
        response = client.post("/token", content=b"{not json", headers={"content-type": "application/json"})
        assert response.status_code == 400
        assert response.json()["error"] == "invalid_request"

    def test_unknown_content_type_is_tried_as_json(self, client, issue_code):
        code = issue_code()
        response = client.post(
            "/token",
            content=f'{{"grant_type": "authorization_code", "code": "{code}"}}'.encode(),
            headers={"content-type": "text/plain"},
        )
        assert response.status_code == 200

    @pytest.mark.parametrize("method", ["GET", "PUT", "DELETE"])
    def test_non_post_is_405(self, client, method):
        response = client.request(method, "/token")
        assert response.status_code == 405
        assert response.headers["allow"] == "POST"

    def test_emits_token_event(self, client, events, issue_code):
        client.post("/token", json={"grant_type": "authorization_code", "code": issue_code()})
        event = events.last("token")
        assert event.outcome == "token_issued"
        assert event.context["grant_type"] == "authorization_code"

    def test_unexpected_failure_is_generic_server_error(self, client, app, monkeypatch):
        async def broken_pop(key):
            raise RuntimeError("disk on fire")

        monkeypatch.setattr(app.state.codes, "pop", broken_pop)
        response = client.post("/token", json={"grant_type": "authorization_code", "code": "code_x"})

        assert response.status_code == 500
        body = response.json()
        assert body["error"] == "server_error"
        assert "disk on fire" not in body["error_description"]
