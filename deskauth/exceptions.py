"""deskauth exception hierarchy.

All deskauth-specific exceptions inherit from DeskAuthException, enabling
catch-all handling while supporting specific error types.
"""

from __future__ import annotations

from typing import Any


class DeskAuthException(Exception):
    """Base exception for all deskauth errors."""

    def __init__(self, message: str, **context: Any) -> None:
        """Initialize deskauth exception.

        Parameters
        ----------
        message : str
            Human-readable error message.
        **context : Any
            Additional context (provider, flow_id, account_id, etc.).
        """
        super().__init__(message)
        self.message = message
        self.context = context

    def __str__(self) -> str:
        """Format exception with context."""
        if self.context:
            ctx = ", ".join(f"{k}={v!r}" for k, v in self.context.items())
            return f"{self.message} ({ctx})"
        return self.message


class ConfigurationError(DeskAuthException):
    """Invalid or incomplete configuration.

    Raised when a provider is unknown or required credentials
    (such as the client ID) are missing.
    """


class AuthenticationError(DeskAuthException):
    """Base exception for all authentication failures.

    Raised when an authentication operation fails, including
    authorization flows, token exchange and token refresh.
    """

    def __init__(
        self,
        message: str,
        provider: str | None = None,
        flow_id: str | None = None,
        **context: Any,
    ) -> None:
        """Initialize authentication error.

        Parameters
        ----------
        message : str
            Human-readable error message.
        provider : str, optional
            The provider profile name (e.g., "gmail", "spotify").
        flow_id : str, optional
            The unique identifier of the auth flow that failed.
        **context : Any
            Additional context.
        """
        super().__init__(message, provider=provider, flow_id=flow_id, **context)
        self.provider = provider
        self.flow_id = flow_id


class FlowAlreadyInProgress(AuthenticationError):
    """Another authorization flow is already running on this manager.

    Fatal to the new call only; the running flow is unaffected.
    """


class AuthTimeout(AuthenticationError):
    """No callback arrived before the listener watchdog expired."""

    def __init__(
        self,
        message: str,
        timeout: float,
        provider: str | None = None,
        flow_id: str | None = None,
        **context: Any,
    ) -> None:
        """Initialize timeout error.

        Parameters
        ----------
        message : str
            Human-readable error message.
        timeout : float
            The timeout value in seconds.
        provider : str, optional
            The provider profile name.
        flow_id : str, optional
            The unique identifier of the auth flow.
        **context : Any
            Additional context.
        """
        super().__init__(message, provider=provider, flow_id=flow_id, timeout=timeout, **context)
        self.timeout = timeout


class UserCancelled(AuthenticationError):
    """The user closed the browser window or aborted the flow."""


class ProviderDenied(AuthenticationError):
    """The provider redirected back with an ``error`` parameter.

    Typically ``access_denied`` when the user declines consent.
    Never retried.
    """

    def __init__(
        self,
        message: str,
        error: str,
        error_description: str | None = None,
        provider: str | None = None,
        flow_id: str | None = None,
        **context: Any,
    ) -> None:
        """Initialize provider-denied error.

        Parameters
        ----------
        message : str
            Human-readable error message.
        error : str
            The provider's ``error`` code.
        error_description : str, optional
            The provider's ``error_description``.
        provider : str, optional
            The provider profile name.
        flow_id : str, optional
            The unique identifier of the auth flow.
        **context : Any
            Additional context.
        """
        super().__init__(
            message,
            provider=provider,
            flow_id=flow_id,
            error=error,
            error_description=error_description,
            **context,
        )
        self.error = error
        self.error_description = error_description


class StateMismatch(AuthenticationError):
    """The callback ``state`` did not match the flow nonce.

    Possible CSRF. Always fatal, never retried.
    """


class CallbackServerError(AuthenticationError):
    """The loopback listener could not be bound or failed while serving."""

    def __init__(
        self,
        message: str,
        port: int | None = None,
        provider: str | None = None,
        flow_id: str | None = None,
        **context: Any,
    ) -> None:
        """Initialize callback server error.

        Parameters
        ----------
        message : str
            Human-readable error message.
        port : int, optional
            The port the listener tried to bind.
        provider : str, optional
            The provider profile name.
        flow_id : str, optional
            The unique identifier of the auth flow.
        **context : Any
            Additional context.
        """
        super().__init__(message, provider=provider, flow_id=flow_id, port=port, **context)
        self.port = port


class UserInfoError(AuthenticationError):
    """The user-info lookup after token exchange failed."""

    def __init__(
        self,
        message: str,
        http_status: int | None = None,
        provider: str | None = None,
        **context: Any,
    ) -> None:
        """Initialize user-info error."""
        super().__init__(message, provider=provider, http_status=http_status, **context)
        self.http_status = http_status


class TokenError(AuthenticationError):
    """Base exception for token-related failures.

    Raised when token operations (exchange, refresh, lookup) fail.
    """


class TokenExchangeFailed(TokenError):
    """The token endpoint rejected an authorization-code grant."""

    def __init__(
        self,
        message: str,
        http_status: int | None = None,
        body: str = "",
        provider: str | None = None,
        **context: Any,
    ) -> None:
        """Initialize token exchange error.

        Parameters
        ----------
        message : str
            Human-readable error message.
        http_status : int, optional
            HTTP status of the token response (None for transport errors).
        body : str
            Raw response body, or the transport error text.
        provider : str, optional
            The provider profile name.
        **context : Any
            Additional context.
        """
        super().__init__(message, provider=provider, http_status=http_status, **context)
        self.http_status = http_status
        self.body = body


class RefreshFailed(TokenExchangeFailed):
    """The token endpoint rejected a refresh-token grant.

    Never escapes ``get_valid_access_token``; surfaces as a
    ``token-expired`` event instead.
    """


class NoTokensFound(TokenError):
    """No tokens (or no refresh token) are available for an account."""
