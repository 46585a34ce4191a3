"""Connected-account registry.

Keeps the in-memory map of connected accounts for one manager and
mirrors every token change to the token store. Store writes happen
before an account enters the map, so a failed write never leaves a
half-registered account behind. Removal takes the account out of the
map before anything else is awaited.
"""

# pylint: disable=logging-too-many-args

from __future__ import annotations

import inspect
import logging

from typing import TYPE_CHECKING, Any

from .types import Account, now_ms


if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable, Iterator

    from .token_store import TokenStore
    from .types import TokenSet


logger = logging.getLogger("deskauth.auth")


async def _call_hook(hook: Callable[[Account], Any], account: Account) -> Any:
    """Invoke a sync or async hook."""
    result = hook(account)
    if inspect.isawaitable(result):
        result = await result
    return result


class AccountRegistry:
    """Ordered map of ``account_id -> Account`` backed by a token store.

    Parameters
    ----------
    store : TokenStore
        Persistence for each account's tokens.
    revoke : callable, optional
        ``revoke(account) -> Awaitable[bool]``; called on removal to
        revoke tokens upstream. Failures are logged and ignored.
    clear_session : callable, optional
        ``clear_session(account)`` (sync or async); called on removal to
        clear browser-session cookies. Failures are logged and ignored.
    """

    def __init__(
        self,
        store: TokenStore,
        revoke: Callable[[Account], Awaitable[bool]] | None = None,
        clear_session: Callable[[Account], Any] | None = None,
    ) -> None:
        """Initialize the account registry."""
        self.store = store
        self._revoke = revoke
        self._clear_session = clear_session
        self._accounts: dict[str, Account] = {}

    def __len__(self) -> int:
        return len(self._accounts)

    def __contains__(self, account_id: object) -> bool:
        return account_id in self._accounts

    def __iter__(self) -> Iterator[Account]:
        return iter(list(self._accounts.values()))

    def get(self, account_id: str) -> Account | None:
        """Look up an account by id."""
        return self._accounts.get(account_id)

    def all(self) -> list[Account]:
        """All accounts in insertion order."""
        return list(self._accounts.values())

    def get_default(self) -> Account | None:
        """The default account, if any."""
        for account in self._accounts.values():
            if account.is_default:
                return account
        return None

    async def upsert(self, account: Account) -> Account:
        """Add an account, or replace an existing one with the same id.

        A replaced account keeps its ``is_default`` flag and
        ``created_at``. A new account becomes the default when there
        is none yet.

        Parameters
        ----------
        account : Account
            The account to register.

        Returns
        -------
        Account
            The registered account.
        """
        await self.store.set(account.id, account.tokens)

        existing = self._accounts.get(account.id)
        if existing is not None:
            account.is_default = existing.is_default
            account.created_at = existing.created_at
            account.last_sync_at = account.last_sync_at or existing.last_sync_at
        else:
            account.is_default = self.get_default() is None
        self._accounts[account.id] = account
        logger.debug("Registered account %s (default=%s)", account.id, account.is_default)
        return account

    async def update_tokens(self, account_id: str, tokens: TokenSet) -> Account | None:
        """Replace an account's tokens after a refresh.

        Clears ``requires_reauth``. Returns None if the account was
        removed while the write was in flight. Its store entry is then
        deleted, or rewritten with the tokens of an account reconnected
        under the same id.
        """
        account = self._accounts.get(account_id)
        if account is None:
            return None
        await self.store.set(account_id, tokens)
        current = self._accounts.get(account_id)
        if current is None:
            await self.store.delete(account_id)
            return None
        if current is not account:
            await self.store.set(account_id, current.tokens)
            return None
        account.tokens = tokens
        account.requires_reauth = False
        return account

    def mark_reauth_required(self, account_id: str) -> Account | None:
        """Flag an account whose refresh failed."""
        account = self._accounts.get(account_id)
        if account is not None:
            account.requires_reauth = True
        return account

    def mark_synced(self, account_id: str, at_ms: int | None = None) -> Account | None:
        """Record a downstream sync for an account."""
        account = self._accounts.get(account_id)
        if account is not None:
            account.last_sync_at = now_ms() if at_ms is None else at_ms
        return account

    def set_default(self, account_id: str) -> bool:
        """Make one account the default, clearing the flag on all others.

        Returns
        -------
        bool
            False if the account is unknown (nothing changes).
        """
        if account_id not in self._accounts:
            return False
        for account in self._accounts.values():
            account.is_default = account.id == account_id
        return True

    async def remove(self, account_id: str) -> Account | None:
        """Remove an account, revoking its tokens and clearing its session.

        When the removed account was the default, the oldest remaining
        account is promoted.

        Returns
        -------
        Account or None
            The removed account, or None if it was unknown.
        """
        account = self._accounts.pop(account_id, None)
        if account is None:
            return None
        if account.is_default and self._accounts:
            promoted = next(iter(self._accounts.values()))
            promoted.is_default = True
            logger.debug("Promoted %s to default account", promoted.id)

        if self._revoke is not None:
            try:
                revoked = await _call_hook(self._revoke, account)
                logger.debug("Revocation for %s: %s", account_id, revoked)
            except Exception as exc:
                logger.warning("Token revocation failed for %s: %s", account_id, exc)

        await self.store.delete(account_id)

        if self._clear_session is not None:
            try:
                await _call_hook(self._clear_session, account)
            except Exception as exc:
                logger.warning("Clearing session data failed for %s: %s", account_id, exc)

        logger.info("Removed account %s", account_id)
        return account

    async def load(self, provider: str | None = None) -> dict[str, TokenSet]:
        """Snapshot stored tokens, optionally only one provider's accounts.

        Parameters
        ----------
        provider : str, optional
            Only return ids of that provider's accounts.
        """
        stored = await self.store.get_all()
        if provider is None:
            return stored
        return {
            key: value
            for key, value in stored.items()
            if "_" in key and Account.provider_of(key) == provider
        }
