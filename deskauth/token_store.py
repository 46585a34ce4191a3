"""Pluggable token storage backends.

Provides the TokenStore contract and two adapters: in-memory and
OS keyring. Persistence and encryption belong to the backend; the
rest of deskauth depends only on the contract.
"""

from __future__ import annotations

import asyncio
import json
import logging

from abc import ABC, abstractmethod
from typing import Any

from .exceptions import ConfigurationError
from .types import TokenSet


logger = logging.getLogger("deskauth.auth")


class TokenStore(ABC):
    """Abstract base class for per-account token storage.

    All methods are async to support both local and blocking OS-backed stores.
    """

    @abstractmethod
    async def get(self, account_id: str) -> TokenSet | None:
        """Load tokens for an account.

        Parameters
        ----------
        account_id : str
            The account identifier (``"<provider>_<user id>"``).

        Returns
        -------
        TokenSet or None
            The stored token set, or None if not found.
        """

    @abstractmethod
    async def set(self, account_id: str, tokens: TokenSet) -> None:
        """Save tokens for an account, replacing any previous value.

        Parameters
        ----------
        account_id : str
            The account identifier.
        tokens : TokenSet
            The token set to persist.
        """

    @abstractmethod
    async def delete(self, account_id: str) -> None:
        """Delete tokens for an account. Missing entries are ignored."""

    @abstractmethod
    async def get_all(self) -> dict[str, TokenSet]:
        """Return every stored account's tokens keyed by account id."""


def _serialize_tokens(tokens: TokenSet) -> str:
    """Serialize a TokenSet to JSON."""
    return json.dumps(tokens.to_dict())


def _deserialize_tokens(data: str) -> TokenSet:
    """Deserialize a TokenSet from JSON."""
    return TokenSet.from_dict(json.loads(data))


class MemoryTokenStore(TokenStore):
    """In-memory token store for tests and single-session use.

    Values are kept serialized so callers never share mutable state
    with the store.
    """

    def __init__(self) -> None:
        """Initialize the memory token store."""
        self._tokens: dict[str, str] = {}
        self._lock = asyncio.Lock()

    async def get(self, account_id: str) -> TokenSet | None:
        """Load tokens from memory."""
        async with self._lock:
            data = self._tokens.get(account_id)
            if data is None:
                return None
            return _deserialize_tokens(data)

    async def set(self, account_id: str, tokens: TokenSet) -> None:
        """Save tokens in memory."""
        async with self._lock:
            self._tokens[account_id] = _serialize_tokens(tokens)

    async def delete(self, account_id: str) -> None:
        """Delete tokens from memory."""
        async with self._lock:
            self._tokens.pop(account_id, None)

    async def get_all(self) -> dict[str, TokenSet]:
        """Return a snapshot of all stored tokens."""
        async with self._lock:
            return {key: _deserialize_tokens(data) for key, data in self._tokens.items()}


class KeyringTokenStore(TokenStore):
    """OS keyring-backed token store for persistent desktop credentials.

    The keyring API cannot enumerate entries, so the store keeps a JSON
    list of account ids under a reserved index entry.

    Parameters
    ----------
    service_name : str
        Service name for keyring storage (default "deskauth").
    """

    INDEX_KEY = "__index__"

    def __init__(self, service_name: str = "deskauth") -> None:
        """Initialize the keyring token store."""
        try:
            import keyring as _keyring
        except ImportError:
            msg = "Install keyring for persistent token storage: pip install keyring"
            raise ImportError(msg) from None
        self._service_name = service_name
        self._keyring = _keyring
        self._index_lock = asyncio.Lock()

    async def _call(self, func: Any, *args: Any) -> Any:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, func, *args)

    async def _read_index(self) -> list[str]:
        data = await self._call(self._keyring.get_password, self._service_name, self.INDEX_KEY)
        if not data:
            return []
        try:
            index = json.loads(data)
        except ValueError:
            logger.warning("Corrupt keyring index for %s; starting empty", self._service_name)
            return []
        return [str(key) for key in index] if isinstance(index, list) else []

    async def _write_index(self, index: list[str]) -> None:
        await self._call(
            self._keyring.set_password,
            self._service_name,
            self.INDEX_KEY,
            json.dumps(index),
        )

    async def get(self, account_id: str) -> TokenSet | None:
        """Load tokens from the OS keyring."""
        data = await self._call(self._keyring.get_password, self._service_name, account_id)
        if data is None:
            return None
        return _deserialize_tokens(data)

    async def set(self, account_id: str, tokens: TokenSet) -> None:
        """Save tokens to the OS keyring and record the id in the index."""
        if account_id == self.INDEX_KEY:
            msg = f"Account id {account_id!r} is reserved"
            raise ConfigurationError(msg, account_id=account_id)
        data = _serialize_tokens(tokens)
        async with self._index_lock:
            await self._call(self._keyring.set_password, self._service_name, account_id, data)
            index = await self._read_index()
            if account_id not in index:
                index.append(account_id)
                await self._write_index(index)

    async def delete(self, account_id: str) -> None:
        """Delete tokens from the OS keyring and drop the id from the index."""
        from keyring.errors import PasswordDeleteError

        async with self._index_lock:
            try:
                await self._call(
                    self._keyring.delete_password, self._service_name, account_id
                )
            except PasswordDeleteError:
                logger.debug("No keyring entry to delete for %s", account_id)
            index = await self._read_index()
            if account_id in index:
                index.remove(account_id)
                await self._write_index(index)

    async def get_all(self) -> dict[str, TokenSet]:
        """Load every indexed account's tokens, skipping vanished or corrupt entries."""
        result: dict[str, TokenSet] = {}
        for account_id in await self._read_index():
            try:
                tokens = await self.get(account_id)
            except (ValueError, KeyError, TypeError):
                logger.warning("Corrupt keyring entry for %s; skipping", account_id)
                continue
            if tokens is not None:
                result[account_id] = tokens
        return result


def create_token_store(backend: str = "memory", **kwargs: Any) -> TokenStore:
    """Factory function for token stores.

    Parameters
    ----------
    backend : str
        Storage backend: "memory" or "keyring".
    **kwargs : Any
        Additional keyword arguments passed to the store constructor
        (``service_name`` for keyring).

    Returns
    -------
    TokenStore
        A new token store instance.
    """
    if backend == "memory":
        return MemoryTokenStore()
    if backend == "keyring":
        return KeyringTokenStore(service_name=kwargs.get("service_name", "deskauth"))
    msg = f"Unknown token store backend: {backend}"
    raise ConfigurationError(msg, backend=backend)
