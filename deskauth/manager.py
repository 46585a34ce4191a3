"""Authentication manager.

Coordinates the complete desktop OAuth2 lifecycle for one provider
profile: the browser authorization flow, token exchange, account
registration, background refresh, session restore and account removal.
Every instance is independent; create one per provider and pass it to
whatever needs it.
"""

# pylint: disable=logging-too-many-args,too-many-instance-attributes,too-many-public-methods

from __future__ import annotations

import asyncio
import inspect
import logging
import secrets
import webbrowser

from typing import TYPE_CHECKING, Any

from .callback_server import OAuthCallbackServer
from .config import get_settings
from .events import LifecycleEvents
from .exceptions import (
    ConfigurationError,
    DeskAuthException,
    FlowAlreadyInProgress,
    NoTokensFound,
    TokenExchangeFailed,
    UserInfoError,
)
from .pkce import FlowState, PKCEChallenge
from .providers import ProviderProfile, get_profile
from .registry import AccountRegistry
from .scheduler import RefreshScheduler
from .token_client import TokenExchangeClient
from .token_store import create_token_store
from .types import Account, AuthEvent, AuthFlowState, AuthState, LifecycleEvent


if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

    from .config import DeskAuthSettings
    from .token_store import TokenStore
    from .types import OAuthConfig, TokenSet

    BrowserOpener = Callable[[str], Awaitable[Any] | Any]
    SessionClearer = Callable[[str], Awaitable[Any] | Any]


logger = logging.getLogger("deskauth.auth")

HTTP_UNAUTHORIZED = 401


async def open_system_browser(url: str) -> bool:
    """Open ``url`` in the user's default browser."""
    return await asyncio.to_thread(webbrowser.open, url)


def _is_permanent_failure(exc: BaseException) -> bool:
    """Whether a restore failure means the stored grant is unusable."""
    if isinstance(exc, NoTokensFound):
        return True
    if isinstance(exc, (TokenExchangeFailed, UserInfoError)):
        status = exc.http_status
        return status is not None and 400 <= status < 500
    return False


class AuthenticationManager:
    """Orchestrates OAuth2 authorization and token lifecycle for one provider.

    Parameters
    ----------
    profile : ProviderProfile or str
        The provider profile, or the name of a registered one.
    token_store : TokenStore, optional
        Token persistence. Defaults to the store named in settings.
    config : OAuthConfig, optional
        Client configuration. Defaults to ``settings.oauth_config(profile.name)``.
    settings : DeskAuthSettings, optional
        Settings supplying defaults (timeouts, lead time, retry policy).
    token_client : TokenExchangeClient, optional
        Token endpoint client. One is created from settings if omitted.
    events : LifecycleEvents, optional
        Event hub to emit into. A private one is created if omitted.
    open_browser : callable, optional
        ``open_browser(url)`` (sync or async). Defaults to the system browser.
    clear_session : callable, optional
        ``clear_session(partition)`` (sync or async), called on account
        removal to clear browser-session cookies.
    lead_time_ms : int, optional
        Refresh lead time. Defaults to ``settings.refresh``.
    auth_timeout : float, optional
        Seconds to wait for the browser redirect. Defaults to ``settings.timeout``.
    callback_host : str, optional
        Loopback bind address. Defaults to ``settings.callback_host``.
    """

    def __init__(
        self,
        profile: ProviderProfile | str,
        token_store: TokenStore | None = None,
        *,
        config: OAuthConfig | None = None,
        settings: DeskAuthSettings | None = None,
        token_client: TokenExchangeClient | None = None,
        events: LifecycleEvents | None = None,
        open_browser: BrowserOpener | None = None,
        clear_session: SessionClearer | None = None,
        lead_time_ms: int | None = None,
        auth_timeout: float | None = None,
        callback_host: str | None = None,
    ) -> None:
        """Initialize the authentication manager."""
        self.profile = get_profile(profile) if isinstance(profile, str) else profile
        self.settings = settings if settings is not None else get_settings()
        self.config = config

        if token_store is None:
            token_store = create_token_store(
                self.settings.store.backend,
                service_name=self.settings.store.service_name,
            )
        self.token_store = token_store

        self._owns_token_client = token_client is None
        if token_client is None:
            token_client = TokenExchangeClient(
                self.profile,
                timeout=self.settings.timeout.http,
                max_attempts=self.settings.retry.max_attempts,
                backoff_initial=self.settings.retry.backoff_initial,
                backoff_max=self.settings.retry.backoff_max,
            )
        self.token_client = token_client

        self.events = events if events is not None else LifecycleEvents()
        self.lead_time_ms = (
            lead_time_ms if lead_time_ms is not None else self.settings.refresh.lead_time_ms
        )
        self.auth_timeout = (
            auth_timeout if auth_timeout is not None else self.settings.timeout.auth_flow
        )
        self.callback_host = callback_host or self.settings.callback_host

        self._open_browser = open_browser or open_system_browser
        self._clear_session = clear_session

        self.registry = AccountRegistry(
            self.token_store,
            revoke=self._revoke_account,
            clear_session=self._clear_account_session,
        )
        self.scheduler = RefreshScheduler(self._refresh_account, self.lead_time_ms)

        self._flow_state = AuthFlowState.IDLE
        self._flow_id: str | None = None
        self._callback_server: OAuthCallbackServer | None = None
        self._inflight: dict[str, asyncio.Task[TokenSet | None]] = {}

    @property
    def flow_state(self) -> AuthFlowState:
        """Current state of the authorization flow."""
        return self._flow_state

    @property
    def flow_id(self) -> str | None:
        """Identifier of the current or most recent flow."""
        return self._flow_id

    def _resolve_config(self, config: OAuthConfig | None = None) -> OAuthConfig:
        resolved = config or self.config or self.settings.oauth_config(self.profile.name)
        if not resolved.client_id:
            msg = f"No client_id configured for provider '{self.profile.name}'"
            raise ConfigurationError(msg, provider=self.profile.name)
        return resolved

    def _emit(self, event: LifecycleEvent, account: Account | None = None, **kwargs: Any) -> None:
        self.events.emit(
            AuthEvent(
                event,
                account_id=kwargs.pop("account_id", account.id if account else None),
                account=account,
                **kwargs,
            )
        )

    # ── Authorization flow ──────────────────────────────────────────

    async def start_flow(self, config: OAuthConfig | None = None) -> Account:
        """Run the browser authorization flow and register the account.

        Parameters
        ----------
        config : OAuthConfig, optional
            Client configuration for this flow (defaults to the
            manager's configuration).

        Returns
        -------
        Account
            The connected account (new, or the existing one refreshed
            with new tokens when the same identity reconnects).

        Raises
        ------
        FlowAlreadyInProgress
            If this manager is already running a flow.
        ConfigurationError
            If no client ID is configured.
        CallbackServerError
            If the loopback port cannot be bound.
        AuthTimeout
            If no callback arrives within ``auth_timeout``.
        UserCancelled
            If ``cancel_flow()`` was called.
        ProviderDenied
            If the user or provider declined authorization.
        StateMismatch
            If the callback carried the wrong ``state``.
        TokenExchangeFailed
            If the token endpoint rejected the code.
        UserInfoError
            If the connected identity could not be looked up.
        """
        if self._flow_state in (AuthFlowState.AUTHORIZING, AuthFlowState.EXCHANGING):
            msg = "An authorization flow is already in progress"
            raise FlowAlreadyInProgress(msg, provider=self.profile.name, flow_id=self._flow_id)

        config = self._resolve_config(config)

        flow_id = secrets.token_urlsafe(16)
        self._flow_id = flow_id
        self._flow_state = AuthFlowState.AUTHORIZING

        # Fresh PKCE pair and state for every attempt
        pkce = PKCEChallenge.generate()
        state = FlowState.generate()

        server = OAuthCallbackServer(
            state,
            host=self.callback_host,
            port=self.profile.port_for(config),
            callback_path=self.profile.callback_path,
            display_name=self.profile.display_name,
            provider=self.profile.name,
            flow_id=flow_id,
        )
        self._callback_server = server

        try:
            redirect_uri = server.start()
            logger.info("Auth flow %s: callback server at %s", flow_id, redirect_uri)

            authorize_url = self.profile.build_authorize_url(
                config, redirect_uri, state.nonce, pkce
            )
            await self._launch_browser(authorize_url)

            code = await server.wait_for_code(timeout=self.auth_timeout)

            self._flow_state = AuthFlowState.EXCHANGING
            logger.debug("Auth flow %s: exchanging authorization code", flow_id)
            tokens = await self.token_client.exchange(code, pkce.verifier, config, redirect_uri)
            user = await self.token_client.fetch_userinfo(tokens.access_token)

            account = await self._register(
                Account(
                    id=Account.make_id(self.profile.name, user.id),
                    provider=self.profile.name,
                    email=user.email,
                    display_name=user.display_name,
                    tokens=tokens,
                )
            )
        except BaseException as exc:
            self._flow_state = AuthFlowState.FAILED
            if isinstance(exc, Exception):
                logger.warning("Auth flow %s failed: %s", flow_id, exc)
                self._emit(LifecycleEvent.ERROR, error=exc)
            self._flow_state = AuthFlowState.IDLE
            raise
        finally:
            self._callback_server = None
            await server.close()

        self._flow_state = AuthFlowState.AUTHENTICATED
        logger.info("Auth flow %s completed for %s", flow_id, account.id)
        return account

    async def _launch_browser(self, url: str) -> None:
        """Open the authorize URL; the flow keeps waiting if that fails."""
        try:
            result = self._open_browser(url)
            if inspect.isawaitable(result):
                result = await result
        except Exception:
            logger.warning("Could not open a browser; open this URL to authenticate: %s", url)
            return
        if result is False:
            logger.warning("Could not open a browser; open this URL to authenticate: %s", url)

    def cancel_flow(self) -> bool:
        """Abort a flow that is waiting for the browser redirect.

        The pending ``start_flow`` raises ``UserCancelled``.

        Returns
        -------
        bool
            False if no flow is waiting for a redirect.
        """
        server = self._callback_server
        if server is None or self._flow_state is not AuthFlowState.AUTHORIZING:
            return False
        return server.cancel()

    async def _register(self, account: Account) -> Account:
        """Upsert an account, arm its refresh and announce it."""
        account = await self.registry.upsert(account)
        self.scheduler.arm(account.id, account.tokens.expires_at)
        self._emit(LifecycleEvent.AUTHENTICATED, account, tokens=account.tokens)
        return account

    # ── Tokens ──────────────────────────────────────────────────────

    def _lookup(self, account_id: str | None) -> Account | None:
        if account_id is None:
            return self.registry.get_default()
        return self.registry.get(account_id)

    async def get_valid_access_token(self, account_id: str | None = None) -> str | None:
        """Return an access token that is valid for at least the lead time.

        Refreshes first when needed; concurrent callers for the same
        account share a single refresh request.

        Parameters
        ----------
        account_id : str, optional
            The account (defaults to the default account).

        Returns
        -------
        str or None
            The access token, or None if the account is unknown or the
            refresh failed (a ``token-expired`` event is emitted).
        """
        account = self._lookup(account_id)
        if account is None:
            return None
        if account.tokens.is_valid(lead_time_ms=self.lead_time_ms):
            return account.tokens.access_token

        tokens = await self._refresh_account(account.id)
        return tokens.access_token if tokens is not None else None

    async def _refresh_account(self, account_id: str) -> TokenSet | None:
        """Refresh an account's tokens, joining an in-flight refresh if any."""
        task = self._inflight.get(account_id)
        if task is None:
            task = asyncio.get_running_loop().create_task(self._do_refresh(account_id))
            self._inflight[account_id] = task
            task.add_done_callback(lambda t, key=account_id: self._refresh_done(key, t))
        # A cancelled waiter must not cancel the refresh other callers share
        return await asyncio.shield(task)

    def _refresh_done(self, account_id: str, task: asyncio.Task[Any]) -> None:
        if self._inflight.get(account_id) is task:
            del self._inflight[account_id]

    async def _do_refresh(self, account_id: str) -> TokenSet | None:
        account = self.registry.get(account_id)
        if account is None:
            return None

        refresh_token = account.tokens.refresh_token
        if not refresh_token:
            msg = "No refresh token available"
            self._refresh_failed(
                account_id, NoTokensFound(msg, provider=self.profile.name, account_id=account_id)
            )
            return None

        try:
            tokens = await self.token_client.refresh(refresh_token, self._resolve_config())
        except Exception as exc:
            self._refresh_failed(account_id, exc)
            return None

        try:
            updated = await self.registry.update_tokens(account_id, tokens)
        except Exception as exc:
            logger.exception("Storing refreshed tokens failed for %s", account_id)
            self._refresh_failed(account_id, exc)
            return None
        if updated is None:
            logger.debug("Account %s was removed during refresh", account_id)
            return None

        self.scheduler.arm(
            account_id, tokens.expires_at, min_delay=self.scheduler.rearm_floor_seconds
        )
        logger.info("Tokens refreshed for %s", account_id)
        self._emit(LifecycleEvent.TOKEN_REFRESHED, updated, tokens=tokens)
        return tokens

    def _refresh_failed(self, account_id: str, exc: BaseException) -> None:
        account = self.registry.mark_reauth_required(account_id)
        if account is None:
            logger.debug("Refresh for removed account %s failed: %s", account_id, exc)
            return
        logger.warning("Token refresh failed for %s: %s", account_id, exc)
        self._emit(LifecycleEvent.TOKEN_EXPIRED, account, account_id=account_id, error=exc)

    def get_tokens(self, account_id: str | None = None) -> TokenSet | None:
        """Current tokens for an account (defaults to the default account)."""
        account = self._lookup(account_id)
        return account.tokens if account is not None else None

    # ── Accounts ────────────────────────────────────────────────────

    async def _revoke_account(self, account: Account) -> bool:
        token = account.tokens.refresh_token or account.tokens.access_token
        return await self.token_client.revoke(token)

    async def _clear_account_session(self, account: Account) -> None:
        if self._clear_session is None or not self.profile.session_partition:
            return
        result = self._clear_session(self.profile.session_partition)
        if inspect.isawaitable(result):
            await result
        logger.debug(
            "Cleared session data in %s after removing %s",
            self.profile.session_partition,
            account.id,
        )

    async def remove_account(self, account_id: str) -> bool:
        """Disconnect an account.

        Cancels its refresh timer, revokes its tokens upstream (best
        effort), deletes it from the registry and store, and emits
        ``account-removed`` (plus ``default-changed`` when another
        account became the default).

        Returns
        -------
        bool
            False if the account was not connected.
        """
        self.scheduler.cancel(account_id)
        removed = await self.registry.remove(account_id)
        if removed is None:
            await self.token_store.delete(account_id)
            return False

        self._emit(LifecycleEvent.ACCOUNT_REMOVED, account_id=account_id)
        new_default = self.registry.get_default()
        if removed.is_default and new_default is not None:
            self._emit(LifecycleEvent.DEFAULT_CHANGED, new_default)
        return True

    async def restore_session(self, tokens: TokenSet, account_id: str | None = None) -> Account:
        """Rehydrate an account from previously stored tokens.

        Refreshes stale tokens, re-identifies the user, registers the
        account and arms its refresh timer. No browser is involved.

        Parameters
        ----------
        tokens : TokenSet
            Previously issued tokens.
        account_id : str, optional
            The id the tokens were stored under.

        Returns
        -------
        Account
            The restored account.

        Raises
        ------
        NoTokensFound
            If the tokens are stale and carry no refresh token.
        RefreshFailed
            If the stale tokens could not be refreshed.
        UserInfoError
            If the identity lookup failed.
        """
        refreshed = False
        if not tokens.is_valid(lead_time_ms=self.lead_time_ms):
            tokens = await self._refresh_for_restore(tokens, account_id)
            refreshed = True

        try:
            user = await self.token_client.fetch_userinfo(tokens.access_token)
        except UserInfoError as exc:
            # The access token may have been revoked early; refresh once and retry
            if refreshed or exc.http_status != HTTP_UNAUTHORIZED or not tokens.refresh_token:
                raise
            tokens = await self._refresh_for_restore(tokens, account_id)
            user = await self.token_client.fetch_userinfo(tokens.access_token)

        resolved_id = Account.make_id(self.profile.name, user.id)
        if account_id is not None and account_id != resolved_id:
            logger.warning("Stored account %s resolved to %s", account_id, resolved_id)
            await self.token_store.delete(account_id)

        return await self._register(
            Account(
                id=resolved_id,
                provider=self.profile.name,
                email=user.email,
                display_name=user.display_name,
                tokens=tokens,
            )
        )

    async def _refresh_for_restore(self, tokens: TokenSet, account_id: str | None) -> TokenSet:
        if not tokens.refresh_token:
            msg = "Stored tokens are expired and carry no refresh token"
            raise NoTokensFound(msg, provider=self.profile.name, account_id=account_id)
        return await self.token_client.refresh(tokens.refresh_token, self._resolve_config())

    async def initialize(self) -> list[Account]:
        """Restore every stored account for this provider.

        Entries whose grant the provider rejects are deleted from the
        store; entries that fail for transient reasons (network, 5xx)
        are kept for the next start.

        Returns
        -------
        list[Account]
            The accounts that were restored.
        """
        restored: list[Account] = []
        stored = await self.registry.load(self.profile.name)
        for account_id, tokens in stored.items():
            if account_id in self.registry:
                continue
            try:
                restored.append(await self.restore_session(tokens, account_id))
            except DeskAuthException as exc:
                if _is_permanent_failure(exc):
                    logger.warning("Dropping unrestorable account %s: %s", account_id, exc)
                    await self.token_store.delete(account_id)
                else:
                    logger.warning("Could not restore account %s: %s", account_id, exc)
                self._emit(LifecycleEvent.ERROR, account_id=account_id, error=exc)
        logger.info("Restored %d %s account(s)", len(restored), self.profile.name)
        return restored

    def get_accounts(self) -> list[Account]:
        """All connected accounts."""
        return self.registry.all()

    def get_account(self, account_id: str) -> Account | None:
        """Look up a connected account."""
        return self.registry.get(account_id)

    def get_default_account(self) -> Account | None:
        """The default account, if any."""
        return self.registry.get_default()

    def set_default_account(self, account_id: str) -> bool:
        """Make an account the default.

        Returns
        -------
        bool
            False if the account is not connected.
        """
        previous = self.registry.get_default()
        if not self.registry.set_default(account_id):
            return False
        if previous is None or previous.id != account_id:
            self._emit(LifecycleEvent.DEFAULT_CHANGED, self.registry.get(account_id))
        return True

    def mark_synced(self, account_id: str) -> Account | None:
        """Record a downstream sync for an account."""
        return self.registry.mark_synced(account_id)

    def is_authenticated(self, account_id: str | None = None) -> bool:
        """Whether the account has usable or refreshable tokens."""
        account = self._lookup(account_id)
        if account is None or account.requires_reauth:
            return False
        return not account.tokens.is_expired or bool(account.tokens.refresh_token)

    def get_auth_state(self, account_id: str | None = None) -> AuthState:
        """Summarize an account's authentication status."""
        account = self._lookup(account_id)
        if account is None:
            return AuthState(is_authenticated=False, provider=self.profile.name)
        return AuthState(
            is_authenticated=self.is_authenticated(account.id),
            provider=account.provider,
            email=account.email,
            expires_at=account.tokens.expires_at,
        )

    async def close(self) -> None:
        """Cancel timers, refreshes and any pending flow; release HTTP resources."""
        self.cancel_flow()
        self.scheduler.cancel_all()
        pending = list(self._inflight.values())
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        if self._owns_token_client:
            await self.token_client.close()
        await self.events.drain()

    async def __aenter__(self) -> AuthenticationManager:
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()
