"""Token endpoint client.

Exchanges authorization codes and refresh tokens at a provider's token
endpoint, looks up the connected identity and revokes tokens on removal.
Transport errors and 5xx/429 responses are retried with exponential
backoff; any other failure is final.
"""

# pylint: disable=logging-too-many-args

from __future__ import annotations

import logging

from typing import TYPE_CHECKING, Any

import httpx

from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from .exceptions import RefreshFailed, TokenExchangeFailed, UserInfoError
from .log import redact_sensitive_data
from .types import TokenSet, UserInfo, now_ms


if TYPE_CHECKING:
    from .providers import ProviderProfile
    from .types import OAuthConfig


logger = logging.getLogger("deskauth.auth")

STATUS_TOO_MANY_REQUESTS = 429


class _RetryableStatus(Exception):
    """Internal marker carrying a response worth retrying."""

    def __init__(self, response: httpx.Response) -> None:
        super().__init__(f"HTTP {response.status_code}")
        self.response = response


def _is_retryable_status(status_code: int) -> bool:
    return status_code == STATUS_TOO_MANY_REQUESTS or status_code >= 500


class TokenExchangeClient:
    """HTTP client for one provider's token, user-info and revocation endpoints.

    Parameters
    ----------
    profile : ProviderProfile
        The provider whose endpoints are called.
    http_client : httpx.AsyncClient, optional
        Client to use. When omitted one is created lazily and owned
        (closed by ``close()``).
    timeout : float
        Per-request timeout in seconds (default 30).
    max_attempts : int
        Total attempts for a retryable request (default 3).
    backoff_initial : float
        First backoff delay in seconds; doubles per attempt.
    backoff_max : float
        Upper bound on a single backoff delay.
    """

    def __init__(
        self,
        profile: ProviderProfile,
        *,
        http_client: httpx.AsyncClient | None = None,
        timeout: float = 30.0,
        max_attempts: int = 3,
        backoff_initial: float = 0.5,
        backoff_max: float = 8.0,
    ) -> None:
        """Initialize the token client."""
        self.profile = profile
        self.timeout = timeout
        self.max_attempts = max(1, max_attempts)
        self.backoff_initial = backoff_initial
        self.backoff_max = backoff_max
        self._http_client = http_client
        self._owns_client = http_client is None

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create the shared HTTP client."""
        if self._http_client is None or self._http_client.is_closed:
            self._http_client = httpx.AsyncClient(timeout=self.timeout)
            self._owns_client = True
        return self._http_client

    async def close(self) -> None:
        """Close the HTTP client if this instance created it."""
        if (
            self._owns_client
            and self._http_client is not None
            and not self._http_client.is_closed
        ):
            await self._http_client.aclose()
        self._http_client = None

    def _log_retry(self, retry_state: RetryCallState) -> None:
        outcome = retry_state.outcome
        exc = outcome.exception() if outcome is not None else None
        logger.warning(
            "%s: retrying request after %s (attempt %d of %d)",
            self.profile.name,
            exc,
            retry_state.attempt_number,
            self.max_attempts,
        )

    async def _send(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        """Send a request, retrying transport errors and 5xx/429 responses.

        Returns the final response (which may still be a 5xx/429 after
        the last attempt). Raises ``httpx.TransportError`` when every
        attempt failed at the transport level.
        """
        client = await self._get_client()
        retrying = AsyncRetrying(
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_exponential(multiplier=self.backoff_initial, max=self.backoff_max),
            retry=retry_if_exception_type((httpx.TransportError, _RetryableStatus)),
            before_sleep=self._log_retry,
            reraise=True,
        )
        try:
            async for attempt in retrying:
                with attempt:
                    response = await client.request(method, url, **kwargs)
                    if _is_retryable_status(response.status_code):
                        raise _RetryableStatus(response)
        except _RetryableStatus as exc:
            return exc.response
        return response

    async def _token_request(
        self,
        data: dict[str, str],
        config: OAuthConfig,
        error_cls: type[TokenExchangeFailed],
        action: str,
    ) -> dict[str, Any]:
        """POST a grant to the token endpoint and return the decoded body."""
        body, basic_auth = self.profile.client_credentials(config)
        form = {**data, **body}
        kwargs: dict[str, Any] = {
            "data": form,
            "headers": {"Accept": "application/json"},
        }
        if basic_auth is not None:
            kwargs["auth"] = basic_auth

        logger.debug(
            "%s: token %s request: %s",
            self.profile.name,
            action,
            redact_sensitive_data(form),
        )
        try:
            resp = await self._send("POST", self.profile.token_url, **kwargs)
        except httpx.TransportError as exc:
            msg = f"Token {action} request failed: {exc}"
            raise error_cls(msg, body=str(exc), provider=self.profile.name) from exc

        if not resp.is_success:
            msg = f"Token {action} failed: HTTP {resp.status_code}"
            raise error_cls(
                msg, http_status=resp.status_code, body=resp.text, provider=self.profile.name
            )

        try:
            raw = resp.json()
        except ValueError as exc:
            msg = f"Token {action} returned a non-JSON body"
            raise error_cls(
                msg, http_status=resp.status_code, body=resp.text, provider=self.profile.name
            ) from exc

        logger.debug(
            "%s: token %s response: %s",
            self.profile.name,
            action,
            redact_sensitive_data(raw),
        )

        # Some providers report grant errors with a 200 status
        if not isinstance(raw, dict) or raw.get("error") or not raw.get("access_token"):
            error = raw.get("error") if isinstance(raw, dict) else None
            msg = f"Token {action} failed: {error or 'no access_token in response'}"
            raise error_cls(
                msg, http_status=resp.status_code, body=resp.text, provider=self.profile.name
            )
        return raw

    async def exchange(
        self,
        code: str,
        pkce_verifier: str,
        config: OAuthConfig,
        redirect_uri: str,
    ) -> TokenSet:
        """Exchange an authorization code for tokens.

        Parameters
        ----------
        code : str
            The authorization code from the callback.
        pkce_verifier : str
            The PKCE code verifier generated for this flow.
        config : OAuthConfig
            Client configuration (client id, optional secret).
        redirect_uri : str
            The redirect URI used in the authorize request.

        Returns
        -------
        TokenSet
            Tokens with ``expires_at`` computed at receipt time.

        Raises
        ------
        TokenExchangeFailed
            On a non-2xx response, an error body or a transport failure.
        """
        raw = await self._token_request(
            {
                "grant_type": "authorization_code",
                "code": code,
                "redirect_uri": redirect_uri,
                "code_verifier": pkce_verifier,
            },
            config,
            TokenExchangeFailed,
            "exchange",
        )
        return TokenSet.from_response(
            raw,
            issued_at_ms=now_ms(),
            default_scope=" ".join(self.profile.scopes_for(config)),
        )

    async def refresh(self, refresh_token: str, config: OAuthConfig) -> TokenSet:
        """Trade a refresh token for a new access token.

        A response without ``refresh_token`` keeps the one passed in.

        Raises
        ------
        RefreshFailed
            On a non-2xx response, an error body or a transport failure.
        """
        raw = await self._token_request(
            {"grant_type": "refresh_token", "refresh_token": refresh_token},
            config,
            RefreshFailed,
            "refresh",
        )
        return TokenSet.from_response(
            raw,
            issued_at_ms=now_ms(),
            previous_refresh_token=refresh_token,
        )

    async def fetch_userinfo(self, access_token: str) -> UserInfo:
        """Fetch and normalize the connected user's identity.

        Raises
        ------
        UserInfoError
            If the request fails or the payload lacks an identifier.
        """
        try:
            resp = await self._send(
                "GET",
                self.profile.userinfo_url,
                headers={"Authorization": f"Bearer {access_token}"},
            )
        except httpx.TransportError as exc:
            msg = f"User info request failed: {exc}"
            raise UserInfoError(msg, provider=self.profile.name) from exc

        if not resp.is_success:
            msg = f"User info request failed: HTTP {resp.status_code}"
            raise UserInfoError(msg, http_status=resp.status_code, provider=self.profile.name)
        try:
            return self.profile.parse_userinfo(resp.json())
        except (ValueError, KeyError, TypeError) as exc:
            msg = f"Malformed user info response: {exc}"
            raise UserInfoError(
                msg, http_status=resp.status_code, provider=self.profile.name
            ) from exc

    async def revoke(self, token: str) -> bool:
        """Revoke a token at the provider (best effort).

        Returns
        -------
        bool
            True if revocation succeeded, False if the provider has no
            revocation endpoint or the request failed.
        """
        if not self.profile.revocation_url:
            return False
        try:
            resp = await self._send(
                "POST",
                self.profile.revocation_url,
                data={"token": token},
            )
        except httpx.HTTPError as exc:
            logger.warning("%s: token revocation failed: %s", self.profile.name, exc)
            return False
        if not resp.is_success:
            logger.warning(
                "%s: token revocation rejected: HTTP %s", self.profile.name, resp.status_code
            )
        return resp.is_success
