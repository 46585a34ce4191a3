"""Type definitions for deskauth.

Shared data model used by the token client, account registry,
refresh scheduler and authentication manager. All timestamps are
epoch milliseconds.
"""

from __future__ import annotations

import time

from dataclasses import dataclass, field
from enum import Enum
from typing import Any


#: Margin before expiry at which a token is refreshed or treated as invalid.
DEFAULT_LEAD_TIME_MS = 300_000

#: How long the loopback listener waits for the browser redirect.
DEFAULT_AUTH_TIMEOUT_SECONDS = 300.0


def now_ms() -> int:
    """Return the current wall-clock time in epoch milliseconds."""
    return int(time.time() * 1000)


@dataclass(frozen=True)
class OAuthConfig:
    """Client configuration for one flow invocation.

    Attributes
    ----------
    client_id : str
        The OAuth2 client ID.
    client_secret : str or None
        Client secret for confidential clients (None for public PKCE clients).
    redirect_port : int or None
        Loopback port. None uses the profile default, 0 lets the OS pick one.
    scopes : tuple[str, ...]
        Requested scopes. Empty uses the profile's default scopes.
    """

    client_id: str
    client_secret: str | None = None
    redirect_port: int | None = None
    scopes: tuple[str, ...] = ()


@dataclass
class TokenSet:
    """Tokens issued for one account.

    Attributes
    ----------
    access_token : str
        The access token for API requests.
    refresh_token : str or None
        Refresh token, carried forward when a refresh response omits it.
    expires_at : int
        Expiry as epoch milliseconds, computed at receipt time.
    scope : str
        Space-separated list of granted scopes.
    token_type : str
        Token type, typically "Bearer".
    """

    access_token: str
    refresh_token: str | None
    expires_at: int
    scope: str = ""
    token_type: str = "Bearer"  # noqa: S105

    @classmethod
    def from_response(
        cls,
        raw: dict[str, Any],
        issued_at_ms: int | None = None,
        previous_refresh_token: str | None = None,
        default_scope: str = "",
        default_expires_in: int = 3600,
    ) -> TokenSet:
        """Build a token set from a token-endpoint JSON response.

        Parameters
        ----------
        raw : dict
            The decoded token response.
        issued_at_ms : int, optional
            Receipt time (defaults to now).
        previous_refresh_token : str, optional
            Refresh token to keep when the response carries none.
        default_scope : str
            Scope to record when the response omits ``scope``.
        default_expires_in : int
            Lifetime in seconds to assume when ``expires_in`` is missing.
        """
        issued = now_ms() if issued_at_ms is None else issued_at_ms
        expires_in = raw.get("expires_in")
        if expires_in is None:
            expires_in = default_expires_in
        return cls(
            access_token=raw["access_token"],
            refresh_token=raw.get("refresh_token") or previous_refresh_token,
            expires_at=issued + int(expires_in) * 1000,
            scope=raw.get("scope") or default_scope,
            token_type=raw.get("token_type") or "Bearer",
        )

    def is_valid(self, at_ms: int | None = None, lead_time_ms: int = DEFAULT_LEAD_TIME_MS) -> bool:
        """Whether the access token is usable at ``at_ms`` with the given lead time."""
        at = now_ms() if at_ms is None else at_ms
        return at < self.expires_at - lead_time_ms

    @property
    def is_expired(self) -> bool:
        """Check if the access token is past its actual expiry."""
        return now_ms() >= self.expires_at

    def to_dict(self) -> dict[str, Any]:
        """Serialize for a token store."""
        return {
            "access_token": self.access_token,
            "refresh_token": self.refresh_token,
            "expires_at": self.expires_at,
            "scope": self.scope,
            "token_type": self.token_type,
        }

    @classmethod
    def from_dict(cls, obj: dict[str, Any]) -> TokenSet:
        """Deserialize from a token store."""
        return cls(
            access_token=obj["access_token"],
            refresh_token=obj.get("refresh_token"),
            expires_at=int(obj["expires_at"]),
            scope=obj.get("scope", ""),
            token_type=obj.get("token_type", "Bearer"),
        )


@dataclass(frozen=True)
class UserInfo:
    """Provider-side identity, normalized across providers."""

    id: str
    email: str
    display_name: str


@dataclass
class Account:
    """A connected external account.

    Attributes
    ----------
    id : str
        ``"<provider>_<provider user id>"``; reconnecting the same
        identity resolves to the same account.
    provider : str
        Provider profile name.
    email : str
        Account email address.
    display_name : str
        Human-readable name.
    tokens : TokenSet
        Current tokens, replaced in place on every refresh.
    is_default : bool
        At most one account in a registry has this set.
    created_at : int
        Epoch ms when the account was first connected.
    last_sync_at : int or None
        Epoch ms of the last downstream sync, if any.
    requires_reauth : bool
        Set when a refresh failed; cleared by a later success.
    """

    id: str
    provider: str
    email: str
    display_name: str
    tokens: TokenSet
    is_default: bool = False
    created_at: int = field(default_factory=now_ms)
    last_sync_at: int | None = None
    requires_reauth: bool = False

    @staticmethod
    def make_id(provider: str, user_id: str) -> str:
        """Build the deterministic account id for a provider identity."""
        return f"{provider}_{user_id}"

    @staticmethod
    def provider_of(account_id: str) -> str:
        """Extract the provider name from an account id."""
        return account_id.split("_", 1)[0]


class AuthFlowState(str, Enum):
    """State of the authorization flow state machine."""

    IDLE = "idle"
    AUTHORIZING = "authorizing"
    EXCHANGING = "exchanging"
    AUTHENTICATED = "authenticated"
    FAILED = "failed"


class LifecycleEvent(str, Enum):
    """Events delivered to lifecycle subscribers."""

    AUTHENTICATED = "authenticated"
    TOKEN_REFRESHED = "token-refreshed"
    TOKEN_EXPIRED = "token-expired"
    ACCOUNT_REMOVED = "account-removed"
    DEFAULT_CHANGED = "default-changed"
    ERROR = "error"


@dataclass
class AuthEvent:
    """Lifecycle notification payload.

    Attributes
    ----------
    event : LifecycleEvent
        What happened.
    account_id : str or None
        The account concerned, when there is one.
    account : Account or None
        The account object (absent for removals).
    tokens : TokenSet or None
        Fresh tokens for ``authenticated`` and ``token-refreshed``.
    error : BaseException or None
        The failure for ``token-expired`` and ``error``.
    """

    event: LifecycleEvent
    account_id: str | None = None
    account: Account | None = None
    tokens: TokenSet | None = None
    error: BaseException | None = None


@dataclass
class AuthState:
    """Summary of an account's authentication status."""

    is_authenticated: bool
    provider: str | None = None
    email: str | None = None
    expires_at: int | None = None
