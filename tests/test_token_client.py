"""Tests for the token endpoint client."""

from __future__ import annotations

import base64

from collections.abc import Callable
from urllib.parse import parse_qs

import httpx
import pytest

from deskauth.exceptions import RefreshFailed, TokenExchangeFailed, UserInfoError
from deskauth.providers import SPOTIFY, ProviderProfile
from deskauth.token_client import TokenExchangeClient
from deskauth.types import OAuthConfig, now_ms


Handler = Callable[[httpx.Request], httpx.Response]

REDIRECT = "http://127.0.0.1:3848/callback"


def _form(request: httpx.Request) -> dict[str, str]:
    return {k: v[0] for k, v in parse_qs(request.content.decode()).items()}


def _client(profile: ProviderProfile, handler: Handler, **kwargs: object) -> TokenExchangeClient:
    http_client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return TokenExchangeClient(
        profile,
        http_client=http_client,
        backoff_initial=0,
        backoff_max=0,
        **kwargs,  # type: ignore[arg-type]
    )


class _Recorder:
    """Transport handler returning queued responses and recording requests."""

    def __init__(self, *responses: httpx.Response | Exception) -> None:
        self.responses = list(responses)
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        response = self.responses.pop(0) if len(self.responses) > 1 else self.responses[0]
        if isinstance(response, Exception):
            raise response
        return httpx.Response(
            response.status_code, headers=response.headers, content=response.content
        )


def _token_json(**extra: object) -> httpx.Response:
    body = {"access_token": "at_1", "token_type": "Bearer", "expires_in": 3600, **extra}
    return httpx.Response(200, json=body)


# ── Exchange ─────────────────────────────────────────────────────────


class TestExchange:
    """Tests for the authorization-code grant."""

    @pytest.mark.asyncio
    async def test_exchange_posts_pkce_grant(self, test_profile: ProviderProfile) -> None:
        recorder = _Recorder(_token_json(refresh_token="rt_1"))
        client = _client(test_profile, recorder)
        before = now_ms()

        tokens = await client.exchange("abc123", "verifier-xyz", OAuthConfig("cid"), REDIRECT)

        request = recorder.requests[0]
        assert request.method == "POST"
        assert str(request.url) == test_profile.token_url
        assert _form(request) == {
            "grant_type": "authorization_code",
            "code": "abc123",
            "redirect_uri": REDIRECT,
            "code_verifier": "verifier-xyz",
            "client_id": "cid",
        }
        assert tokens.access_token == "at_1"
        assert tokens.refresh_token == "rt_1"
        assert before + 3_600_000 <= tokens.expires_at <= now_ms() + 3_600_000
        assert tokens.scope == "read write"

    @pytest.mark.asyncio
    async def test_secret_in_body(self, test_profile: ProviderProfile) -> None:
        recorder = _Recorder(_token_json())
        client = _client(test_profile, recorder)

        await client.exchange("c", "v", OAuthConfig("cid", client_secret="s3"), REDIRECT)

        request = recorder.requests[0]
        assert _form(request)["client_secret"] == "s3"
        assert "authorization" not in request.headers

    @pytest.mark.asyncio
    async def test_secret_as_basic_auth(self) -> None:
        recorder = _Recorder(_token_json())
        client = _client(SPOTIFY, recorder)

        await client.exchange("c", "v", OAuthConfig("cid", client_secret="s3"), REDIRECT)

        request = recorder.requests[0]
        expected = base64.b64encode(b"cid:s3").decode()
        assert request.headers["authorization"] == f"Basic {expected}"
        assert "client_secret" not in _form(request)

    @pytest.mark.asyncio
    async def test_rejected_code_not_retried(self, test_profile: ProviderProfile) -> None:
        recorder = _Recorder(httpx.Response(400, json={"error": "invalid_grant"}))
        client = _client(test_profile, recorder)

        with pytest.raises(TokenExchangeFailed) as exc_info:
            await client.exchange("c", "v", OAuthConfig("cid"), REDIRECT)

        assert exc_info.value.http_status == 400
        assert "invalid_grant" in exc_info.value.body
        assert len(recorder.requests) == 1

    @pytest.mark.asyncio
    async def test_error_body_with_200(self, test_profile: ProviderProfile) -> None:
        client = _client(test_profile, _Recorder(httpx.Response(200, json={"error": "bad"})))

        with pytest.raises(TokenExchangeFailed, match="bad"):
            await client.exchange("c", "v", OAuthConfig("cid"), REDIRECT)

    @pytest.mark.asyncio
    async def test_non_json_body(self, test_profile: ProviderProfile) -> None:
        client = _client(test_profile, _Recorder(httpx.Response(200, text="<html>")))

        with pytest.raises(TokenExchangeFailed, match="non-JSON"):
            await client.exchange("c", "v", OAuthConfig("cid"), REDIRECT)


# ── Retry policy ─────────────────────────────────────────────────────


class TestRetry:
    """Transport errors and 5xx/429 are retried; everything else is final."""

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status", [500, 502, 503, 429])
    async def test_retryable_status_then_success(
        self, test_profile: ProviderProfile, status: int
    ) -> None:
        recorder = _Recorder(httpx.Response(status), _token_json())
        client = _client(test_profile, recorder)

        tokens = await client.exchange("c", "v", OAuthConfig("cid"), REDIRECT)

        assert tokens.access_token == "at_1"
        assert len(recorder.requests) == 2

    @pytest.mark.asyncio
    async def test_transport_error_then_success(self, test_profile: ProviderProfile) -> None:
        recorder = _Recorder(httpx.ConnectError("refused"), _token_json())
        client = _client(test_profile, recorder)

        tokens = await client.exchange("c", "v", OAuthConfig("cid"), REDIRECT)

        assert tokens.access_token == "at_1"
        assert len(recorder.requests) == 2

    @pytest.mark.asyncio
    async def test_gives_up_after_max_attempts(self, test_profile: ProviderProfile) -> None:
        recorder = _Recorder(httpx.Response(503, text="down"))
        client = _client(test_profile, recorder, max_attempts=3)

        with pytest.raises(TokenExchangeFailed) as exc_info:
            await client.exchange("c", "v", OAuthConfig("cid"), REDIRECT)

        assert exc_info.value.http_status == 503
        assert len(recorder.requests) == 3

    @pytest.mark.asyncio
    async def test_transport_failure_exhausted(self, test_profile: ProviderProfile) -> None:
        recorder = _Recorder(httpx.ConnectError("refused"))
        client = _client(test_profile, recorder, max_attempts=2)

        with pytest.raises(TokenExchangeFailed) as exc_info:
            await client.exchange("c", "v", OAuthConfig("cid"), REDIRECT)

        assert exc_info.value.http_status is None
        assert "refused" in exc_info.value.body
        assert len(recorder.requests) == 2

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status", [400, 401, 403])
    async def test_client_errors_not_retried(
        self, test_profile: ProviderProfile, status: int
    ) -> None:
        recorder = _Recorder(httpx.Response(status))
        client = _client(test_profile, recorder)

        with pytest.raises(TokenExchangeFailed):
            await client.exchange("c", "v", OAuthConfig("cid"), REDIRECT)

        assert len(recorder.requests) == 1


# ── Refresh ──────────────────────────────────────────────────────────


class TestRefresh:
    """Tests for the refresh-token grant."""

    @pytest.mark.asyncio
    async def test_refresh_posts_grant(self, test_profile: ProviderProfile) -> None:
        recorder = _Recorder(_token_json(refresh_token="rt_new"))
        client = _client(test_profile, recorder)

        tokens = await client.refresh("rt_old", OAuthConfig("cid"))

        assert _form(recorder.requests[0]) == {
            "grant_type": "refresh_token",
            "refresh_token": "rt_old",
            "client_id": "cid",
        }
        assert tokens.refresh_token == "rt_new"

    @pytest.mark.asyncio
    async def test_refresh_keeps_old_refresh_token(self, test_profile: ProviderProfile) -> None:
        client = _client(test_profile, _Recorder(_token_json()))

        tokens = await client.refresh("rt_old", OAuthConfig("cid"))

        assert tokens.refresh_token == "rt_old"

    @pytest.mark.asyncio
    async def test_refresh_rejected(self, test_profile: ProviderProfile) -> None:
        client = _client(test_profile, _Recorder(httpx.Response(400, json={"error": "x"})))

        with pytest.raises(RefreshFailed) as exc_info:
            await client.refresh("rt_old", OAuthConfig("cid"))

        assert exc_info.value.http_status == 400


# ── User info and revocation ─────────────────────────────────────────


class TestUserInfo:
    """Tests for the identity lookup."""

    @pytest.mark.asyncio
    async def test_bearer_header_and_parse(self, test_profile: ProviderProfile) -> None:
        recorder = _Recorder(
            httpx.Response(200, json={"sub": "u1", "email": "a@example.com", "name": "Ada"})
        )
        client = _client(test_profile, recorder)

        info = await client.fetch_userinfo("at_1")

        assert recorder.requests[0].headers["authorization"] == "Bearer at_1"
        assert (info.id, info.email, info.display_name) == ("u1", "a@example.com", "Ada")

    @pytest.mark.asyncio
    async def test_unauthorized(self, test_profile: ProviderProfile) -> None:
        client = _client(test_profile, _Recorder(httpx.Response(401)))

        with pytest.raises(UserInfoError) as exc_info:
            await client.fetch_userinfo("at_1")

        assert exc_info.value.http_status == 401

    @pytest.mark.asyncio
    async def test_malformed_payload(self, test_profile: ProviderProfile) -> None:
        client = _client(test_profile, _Recorder(httpx.Response(200, json={"email": "x"})))

        with pytest.raises(UserInfoError, match="Malformed"):
            await client.fetch_userinfo("at_1")


class TestRevoke:
    """Tests for best-effort revocation."""

    @pytest.mark.asyncio
    async def test_revoke_posts_token(self, test_profile: ProviderProfile) -> None:
        recorder = _Recorder(httpx.Response(200))
        client = _client(test_profile, recorder)

        assert await client.revoke("rt_1") is True
        assert str(recorder.requests[0].url) == test_profile.revocation_url
        assert _form(recorder.requests[0]) == {"token": "rt_1"}

    @pytest.mark.asyncio
    async def test_no_revocation_endpoint(self) -> None:
        recorder = _Recorder(httpx.Response(200))
        client = _client(SPOTIFY, recorder)

        assert await client.revoke("rt_1") is False
        assert not recorder.requests

    @pytest.mark.asyncio
    async def test_revoke_failure_is_false(self, test_profile: ProviderProfile) -> None:
        client = _client(test_profile, _Recorder(httpx.ConnectError("down")), max_attempts=1)
        assert await client.revoke("rt_1") is False

    @pytest.mark.asyncio
    async def test_revoke_rejected_is_false(self, test_profile: ProviderProfile) -> None:
        client = _client(test_profile, _Recorder(httpx.Response(400)))
        assert await client.revoke("rt_1") is False


class TestClientLifecycle:
    """Tests for HTTP client ownership."""

    @pytest.mark.asyncio
    async def test_borrowed_client_not_closed(self, test_profile: ProviderProfile) -> None:
        http_client = httpx.AsyncClient(transport=httpx.MockTransport(_Recorder(_token_json())))
        client = TokenExchangeClient(test_profile, http_client=http_client)

        await client.close()

        assert not http_client.is_closed
        await http_client.aclose()

    @pytest.mark.asyncio
    async def test_owned_client_closed(self, test_profile: ProviderProfile) -> None:
        client = TokenExchangeClient(test_profile)
        http_client = await client._get_client()  # noqa: SLF001

        await client.close()

        assert http_client.is_closed
