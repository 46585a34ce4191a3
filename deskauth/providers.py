"""OAuth2 provider profiles.

A provider is data, not a class: each ``ProviderProfile`` carries the
endpoints, default scopes, loopback port, authorize-URL dialect and
credential transport of one external service. Built-in profiles cover
Google Calendar, Gmail, Outlook Calendar, Outlook mail and Spotify.
"""

from __future__ import annotations

import threading

from collections.abc import Callable
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Literal
from urllib.parse import urlencode

from .exceptions import ConfigurationError
from .types import OAuthConfig, UserInfo


if TYPE_CHECKING:
    from .pkce import PKCEChallenge


CredentialTransport = Literal["body", "basic"]


def _no_extra_params(_config: OAuthConfig) -> dict[str, str]:
    return {}


def _google_params(_config: OAuthConfig) -> dict[str, str]:
    # offline + consent guarantees a refresh token on every connect
    return {"access_type": "offline", "prompt": "consent"}


def _microsoft_params(_config: OAuthConfig) -> dict[str, str]:
    return {"response_mode": "query"}


def _parse_google_userinfo(data: dict[str, Any]) -> UserInfo:
    email = data.get("email", "")
    return UserInfo(id=str(data["id"]), email=email, display_name=data.get("name") or email)


def _parse_microsoft_userinfo(data: dict[str, Any]) -> UserInfo:
    email = data.get("mail") or data.get("userPrincipalName") or ""
    return UserInfo(
        id=str(data["id"]),
        email=email,
        display_name=data.get("displayName") or email,
    )


def _parse_spotify_userinfo(data: dict[str, Any]) -> UserInfo:
    email = data.get("email", "")
    return UserInfo(
        id=str(data["id"]),
        email=email,
        display_name=data.get("display_name") or email or str(data["id"]),
    )


def parse_standard_userinfo(data: dict[str, Any]) -> UserInfo:
    """Normalize an OIDC-style user-info payload (``sub``/``email``/``name``)."""
    user_id = data.get("sub") or data.get("id")
    if user_id is None:
        msg = "User info response has no subject identifier"
        raise KeyError(msg)
    email = data.get("email", "")
    return UserInfo(id=str(user_id), email=email, display_name=data.get("name") or email)


@dataclass(frozen=True)
class ProviderProfile:
    """Static description of one provider's OAuth2 dialect.

    Parameters
    ----------
    name : str
        Registry key and account-id prefix (no underscores).
    display_name : str
        Human-readable name used on the callback pages.
    authorize_url : str
        Authorization endpoint.
    token_url : str
        Token endpoint.
    userinfo_url : str
        User-info endpoint used to identify the connected account.
    default_scopes : tuple[str, ...]
        Scopes requested when the config names none.
    redirect_port : int
        Default loopback port (0 for OS-assigned).
    callback_path : str
        Path of the loopback redirect URI.
    revocation_url : str
        Token revocation endpoint (empty when the provider has none).
    credential_transport : {"body", "basic"}
        Where a client secret goes on token requests.
    authorize_params : callable
        Returns provider-specific authorize-URL fields for a config.
    parse_userinfo : callable
        Normalizes the user-info JSON to ``UserInfo``.
    session_partition : str
        Browser-session partition whose cookies are cleared on removal.
    """

    name: str
    display_name: str
    authorize_url: str
    token_url: str
    userinfo_url: str
    default_scopes: tuple[str, ...]
    redirect_port: int
    callback_path: str = "/callback"
    revocation_url: str = ""
    credential_transport: CredentialTransport = "body"
    authorize_params: Callable[[OAuthConfig], dict[str, str]] = field(
        default=_no_extra_params, compare=False
    )
    parse_userinfo: Callable[[dict[str, Any]], UserInfo] = field(
        default=parse_standard_userinfo, compare=False
    )
    session_partition: str = ""

    def __post_init__(self) -> None:
        """Validate the profile name."""
        if not self.name or "_" in self.name:
            msg = f"Provider name must be non-empty and contain no underscores: {self.name!r}"
            raise ConfigurationError(msg, provider=self.name)
        if not self.callback_path.startswith("/"):
            msg = f"Callback path must start with '/': {self.callback_path!r}"
            raise ConfigurationError(msg, provider=self.name)

    def scopes_for(self, config: OAuthConfig) -> list[str]:
        """Scopes to request for a config."""
        return list(config.scopes) if config.scopes else list(self.default_scopes)

    def port_for(self, config: OAuthConfig) -> int:
        """Loopback port to bind for a config."""
        return self.redirect_port if config.redirect_port is None else config.redirect_port

    def redirect_uri(self, port: int, host: str = "127.0.0.1") -> str:
        """Build the loopback redirect URI for a bound port."""
        return f"http://{host}:{port}{self.callback_path}"

    def build_authorize_url(
        self,
        config: OAuthConfig,
        redirect_uri: str,
        state: str,
        pkce: PKCEChallenge,
    ) -> str:
        """Build the full authorization URL.

        Parameters
        ----------
        config : OAuthConfig
            Client configuration for this flow.
        redirect_uri : str
            The loopback redirect URI (known only after the listener binds).
        state : str
            CSRF protection nonce.
        pkce : PKCEChallenge
            PKCE challenge for this flow.

        Returns
        -------
        str
            The full authorization URL.
        """
        params: dict[str, str] = {
            "client_id": config.client_id,
            "redirect_uri": redirect_uri,
            "response_type": "code",
            "scope": " ".join(self.scopes_for(config)),
            "state": state,
            "code_challenge": pkce.challenge,
            "code_challenge_method": pkce.method,
        }
        params.update(self.authorize_params(config))
        return f"{self.authorize_url}?{urlencode(params)}"

    def client_credentials(
        self, config: OAuthConfig
    ) -> tuple[dict[str, str], tuple[str, str] | None]:
        """Split client credentials between form body and Basic auth.

        Returns
        -------
        tuple
            ``(body_fields, basic_auth)`` where ``basic_auth`` is a
            ``(client_id, client_secret)`` pair or None.
        """
        body = {"client_id": config.client_id}
        if not config.client_secret:
            return body, None
        if self.credential_transport == "basic":
            return body, (config.client_id, config.client_secret)
        body["client_secret"] = config.client_secret
        return body, None


_GOOGLE_AUTH_URL = "https://accounts.google.com/o/oauth2/v2/auth"
_GOOGLE_TOKEN_URL = "https://oauth2.googleapis.com/token"  # noqa: S105
_GOOGLE_USERINFO_URL = "https://www.googleapis.com/oauth2/v2/userinfo"
_GOOGLE_REVOKE_URL = "https://oauth2.googleapis.com/revoke"

_MICROSOFT_BASE = "https://login.microsoftonline.com/common/oauth2/v2.0"
_MICROSOFT_USERINFO_URL = "https://graph.microsoft.com/v1.0/me"

GOOGLE = ProviderProfile(
    name="google",
    display_name="Google Calendar",
    authorize_url=_GOOGLE_AUTH_URL,
    token_url=_GOOGLE_TOKEN_URL,
    userinfo_url=_GOOGLE_USERINFO_URL,
    revocation_url=_GOOGLE_REVOKE_URL,
    default_scopes=(
        "https://www.googleapis.com/auth/calendar",
        "https://www.googleapis.com/auth/calendar.events",
        "https://www.googleapis.com/auth/userinfo.email",
        "https://www.googleapis.com/auth/userinfo.profile",
    ),
    redirect_port=3847,
    authorize_params=_google_params,
    parse_userinfo=_parse_google_userinfo,
    session_partition="persist:calendar-oauth",
)

GMAIL = ProviderProfile(
    name="gmail",
    display_name="Gmail",
    authorize_url=_GOOGLE_AUTH_URL,
    token_url=_GOOGLE_TOKEN_URL,
    userinfo_url=_GOOGLE_USERINFO_URL,
    revocation_url=_GOOGLE_REVOKE_URL,
    default_scopes=(
        "https://www.googleapis.com/auth/gmail.modify",
        "https://www.googleapis.com/auth/gmail.readonly",
        "https://www.googleapis.com/auth/gmail.send",
        "https://www.googleapis.com/auth/gmail.labels",
        "https://www.googleapis.com/auth/userinfo.email",
        "https://www.googleapis.com/auth/userinfo.profile",
    ),
    redirect_port=3848,
    authorize_params=_google_params,
    parse_userinfo=_parse_google_userinfo,
    session_partition="persist:email-oauth",
)

MICROSOFT = ProviderProfile(
    name="microsoft",
    display_name="Outlook Calendar",
    authorize_url=f"{_MICROSOFT_BASE}/authorize",
    token_url=f"{_MICROSOFT_BASE}/token",
    userinfo_url=_MICROSOFT_USERINFO_URL,
    default_scopes=(
        "Calendars.ReadWrite",
        "offline_access",
        "User.Read",
        "openid",
        "profile",
        "email",
    ),
    redirect_port=3847,
    authorize_params=_microsoft_params,
    parse_userinfo=_parse_microsoft_userinfo,
    session_partition="persist:calendar-oauth",
)

OUTLOOK = ProviderProfile(
    name="outlook",
    display_name="Outlook",
    authorize_url=f"{_MICROSOFT_BASE}/authorize",
    token_url=f"{_MICROSOFT_BASE}/token",
    userinfo_url=_MICROSOFT_USERINFO_URL,
    default_scopes=(
        "Mail.ReadWrite",
        "Mail.Send",
        "offline_access",
        "User.Read",
        "openid",
        "profile",
        "email",
    ),
    redirect_port=3848,
    authorize_params=_microsoft_params,
    parse_userinfo=_parse_microsoft_userinfo,
    session_partition="persist:email-oauth",
)

SPOTIFY = ProviderProfile(
    name="spotify",
    display_name="Spotify",
    authorize_url="https://accounts.spotify.com/authorize",
    token_url="https://accounts.spotify.com/api/token",  # noqa: S106
    userinfo_url="https://api.spotify.com/v1/me",
    default_scopes=(
        "user-read-playback-state",
        "user-modify-playback-state",
        "user-read-currently-playing",
        "user-read-recently-played",
        "playlist-read-private",
        "playlist-read-collaborative",
        "playlist-modify-public",
        "playlist-modify-private",
        "user-library-read",
        "user-library-modify",
        "streaming",
        "user-top-read",
        "user-read-email",
        "user-read-private",
    ),
    redirect_port=8888,
    credential_transport="basic",
    parse_userinfo=_parse_spotify_userinfo,
)


_profiles: dict[str, ProviderProfile] = {
    p.name: p for p in (GOOGLE, GMAIL, MICROSOFT, OUTLOOK, SPOTIFY)
}
_profiles_lock = threading.Lock()


def register_profile(profile: ProviderProfile, *, replace: bool = False) -> ProviderProfile:
    """Add a provider profile to the registry.

    Parameters
    ----------
    profile : ProviderProfile
        The profile to register.
    replace : bool
        Allow overwriting an existing profile with the same name.

    Returns
    -------
    ProviderProfile
        The registered profile.
    """
    with _profiles_lock:
        if profile.name in _profiles and not replace:
            msg = f"Provider profile already registered: {profile.name}"
            raise ConfigurationError(msg, provider=profile.name)
        _profiles[profile.name] = profile
    return profile


def get_profile(name: str) -> ProviderProfile:
    """Look up a provider profile by name.

    Raises
    ------
    ConfigurationError
        If no profile with that name is registered.
    """
    with _profiles_lock:
        profile = _profiles.get(name)
    if profile is None:
        msg = f"Unknown provider: {name}"
        raise ConfigurationError(msg, provider=name, available=sorted(_profiles))
    return profile


def available_providers() -> list[str]:
    """Names of all registered provider profiles."""
    with _profiles_lock:
        return sorted(_profiles)
