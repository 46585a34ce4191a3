"""Pytest configuration and fixtures."""

from __future__ import annotations

import contextlib
import os
import socket
import threading

from typing import TYPE_CHECKING
from unittest.mock import AsyncMock, MagicMock
from urllib.error import HTTPError, URLError
from urllib.parse import parse_qs, urlencode, urlparse
from urllib.request import urlopen

import pytest

from deskauth.config import DeskAuthSettings, clear_settings
from deskauth.providers import ProviderProfile
from deskauth.token_client import TokenExchangeClient
from deskauth.token_store import MemoryTokenStore
from deskauth.types import OAuthConfig, TokenSet, UserInfo, now_ms


if TYPE_CHECKING:
    from collections.abc import Callable, Iterator


# ── Environment isolation ────────────────────────────────────────────


@pytest.fixture(autouse=True)
def _isolate_config(
    monkeypatch: pytest.MonkeyPatch, tmp_path_factory: pytest.TempPathFactory
) -> Iterator[None]:
    """Keep user config files and DESKAUTH_* variables out of every test."""
    for key in list(os.environ):
        if key.startswith("DESKAUTH"):
            monkeypatch.delenv(key, raising=False)
    home = tmp_path_factory.mktemp("home")
    monkeypatch.setenv("HOME", str(home))
    monkeypatch.setenv("APPDATA", str(home))
    clear_settings()
    yield
    clear_settings()


# ── HTTP helpers ─────────────────────────────────────────────────────


def http_get(url: str, timeout: float = 5.0) -> tuple[int, str]:
    """GET a URL, returning (status, body) for both success and HTTP errors."""
    try:
        with urlopen(url, timeout=timeout) as resp:  # noqa: S310
            return resp.status, resp.read().decode("utf-8")
    except HTTPError as exc:
        return exc.code, exc.read().decode("utf-8")


def hit_later(url: str, delay: float = 0.05) -> threading.Thread:
    """Request a URL from a background thread (simulates the browser)."""

    def _go() -> None:
        threading.Event().wait(delay)
        with contextlib.suppress(URLError, OSError):
            http_get(url)

    t = threading.Thread(target=_go, daemon=True)
    t.start()
    return t


def port_is_free(port: int, host: str = "127.0.0.1") -> bool:
    """Whether a listener could bind the port right now (as HTTPServer would)."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        try:
            sock.bind((host, port))
        except OSError:
            return False
    return True


def redirecting_browser(
    params_for: Callable[[str], dict[str, str]],
    opened: list[str] | None = None,
) -> Callable[[str], bool]:
    """Build an ``open_browser`` hook that follows the authorize URL back to the listener.

    ``params_for(state)`` returns the query the "provider" redirects with.
    """

    def open_browser(url: str) -> bool:
        if opened is not None:
            opened.append(url)
        query = parse_qs(urlparse(url).query)
        redirect_uri = query["redirect_uri"][0]
        state = query["state"][0]
        hit_later(f"{redirect_uri}?{urlencode(params_for(state))}")
        return True

    return open_browser


# ── Fixtures ─────────────────────────────────────────────────────────


@pytest.fixture
def settings() -> DeskAuthSettings:
    """Default settings with no files or environment applied."""
    return DeskAuthSettings()


@pytest.fixture
def test_profile() -> ProviderProfile:
    """A provider profile pointing at unroutable example endpoints."""
    return ProviderProfile(
        name="acme",
        display_name="Acme",
        authorize_url="https://auth.example.com/authorize",
        token_url="https://auth.example.com/token",
        userinfo_url="https://api.example.com/me",
        revocation_url="https://auth.example.com/revoke",
        default_scopes=("read", "write"),
        redirect_port=0,
        session_partition="persist:acme",
    )


@pytest.fixture
def oauth_config() -> OAuthConfig:
    """Public-client config on an OS-assigned port."""
    return OAuthConfig(client_id="client-123", redirect_port=0)


@pytest.fixture
def token_store() -> MemoryTokenStore:
    """Create a fresh memory token store."""
    return MemoryTokenStore()


def make_tokens(
    access_token: str = "at_valid",
    refresh_token: str | None = "rt_valid",
    expires_in_ms: int = 3_600_000,
) -> TokenSet:
    """Build a token set expiring ``expires_in_ms`` from now."""
    return TokenSet(
        access_token=access_token,
        refresh_token=refresh_token,
        expires_at=now_ms() + expires_in_ms,
        scope="read write",
    )


@pytest.fixture
def valid_tokens() -> TokenSet:
    """Tokens valid for an hour."""
    return make_tokens()


@pytest.fixture
def stale_tokens() -> TokenSet:
    """Tokens inside the five-minute refresh window."""
    return make_tokens(access_token="at_stale", refresh_token="rt_stale", expires_in_ms=60_000)


@pytest.fixture
def mock_token_client(test_profile: ProviderProfile) -> MagicMock:
    """Token client double with async endpoints."""
    client = MagicMock(spec=TokenExchangeClient)
    client.profile = test_profile
    client.exchange = AsyncMock(return_value=make_tokens("at_new", "rt_new"))
    client.refresh = AsyncMock(return_value=make_tokens("at_refreshed", "rt_valid"))
    client.fetch_userinfo = AsyncMock(
        return_value=UserInfo(id="u1", email="ada@example.com", display_name="Ada")
    )
    client.revoke = AsyncMock(return_value=True)
    client.close = AsyncMock()
    return client

