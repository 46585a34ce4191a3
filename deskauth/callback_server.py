"""Ephemeral loopback HTTP listener for OAuth2 redirect capture.

The desktop application has no public endpoint, so the provider redirects
the system browser to ``http://127.0.0.1:<port>/<path>``. The listener
serves that one redirect with stdlib ``http.server`` on a daemon thread,
hands the outcome to the asyncio loop, and tears itself down on whichever
of success, provider error, state mismatch, timeout or cancellation
happens first.
"""

# pylint: disable=logging-too-many-args

# pylint: disable=C0103,W0212

from __future__ import annotations

import asyncio
import html
import inspect
import logging
import threading

from collections.abc import Awaitable, Callable
from http.server import BaseHTTPRequestHandler, HTTPServer
from typing import Any
from urllib.parse import parse_qs, urlparse

from .exceptions import (
    AuthTimeout,
    CallbackServerError,
    ProviderDenied,
    StateMismatch,
    UserCancelled,
)
from .pkce import FlowState
from .types import DEFAULT_AUTH_TIMEOUT_SECONDS


logger = logging.getLogger("deskauth.auth")

_SUCCESS_HTML = """<!DOCTYPE html>
<html>
<head><title>{title} Connected</title>
<style>
  body {{ font-family: -apple-system, BlinkMacSystemFont, "Segoe UI", Roboto, sans-serif;
         display: flex; align-items: center; justify-content: center;
         height: 100vh; margin: 0; background: #f0f2f5; color: #1a1a2e; }}
  .card {{ text-align: center; padding: 2rem 3rem; background: white;
          border-radius: 12px; box-shadow: 0 2px 12px rgba(0,0,0,.08); }}
  h1 {{ font-size: 1.5rem; margin-bottom: 0.5rem; }}
  p {{ color: #666; }}
</style></head>
<body><div class="card">
  <h1>&#x2705; {title} Connected</h1>
  <p>You can close this window and return to the application.</p>
</div></body></html>"""

_ERROR_HTML = """<!DOCTYPE html>
<html>
<head><title>Authentication Error</title>
<style>
  body {{ font-family: -apple-system, BlinkMacSystemFont, "Segoe UI", Roboto, sans-serif;
         display: flex; align-items: center; justify-content: center;
         height: 100vh; margin: 0; background: #f0f2f5; color: #1a1a2e; }}
  .card {{ text-align: center; padding: 2rem 3rem; background: white;
          border-radius: 12px; box-shadow: 0 2px 12px rgba(0,0,0,.08); }}
  h1 {{ font-size: 1.5rem; margin-bottom: 0.5rem; color: #cc0000; }}
  p {{ color: #666; }}
</style></head>
<body><div class="card">
  <h1>&#x274C; Authentication Failed</h1>
  <p>{error}</p>
  <p>You can close this window.</p>
</div></body></html>"""

_WAITING_HTML = """<!DOCTYPE html>
<html>
<head><title>Waiting for Authentication</title>
<style>
  body { font-family: -apple-system, BlinkMacSystemFont, "Segoe UI", Roboto, sans-serif;
         display: flex; align-items: center; justify-content: center;
         height: 100vh; margin: 0; background: #f0f2f5; color: #1a1a2e; }
  .card { text-align: center; padding: 2rem 3rem; background: white;
          border-radius: 12px; box-shadow: 0 2px 12px rgba(0,0,0,.08); }
</style></head>
<body><div class="card">
  <h1>Waiting for authentication&hellip;</h1>
  <p>Please complete the login in the browser window.</p>
</div></body></html>"""


class OAuthCallbackServer:
    """Ephemeral loopback HTTP server for capturing one OAuth2 redirect.

    Parameters
    ----------
    state : FlowState
        The flow's CSRF state; the callback's ``state`` must match it.
    host : str
        Bind address (default ``"127.0.0.1"``).
    port : int
        Port number (``0`` for auto-assign).
    callback_path : str
        Path the provider redirects to.
    display_name : str
        Provider name shown on the success page.
    provider : str, optional
        Provider name attached to raised errors.
    flow_id : str, optional
        Flow identifier attached to raised errors.
    """

    def __init__(
        self,
        state: FlowState,
        host: str = "127.0.0.1",
        port: int = 0,
        callback_path: str = "/callback",
        display_name: str = "Account",
        provider: str | None = None,
        flow_id: str | None = None,
    ) -> None:
        """Initialize the callback server."""
        self._state = state
        self._host = host
        self._port = port
        self._callback_path = callback_path
        self._display_name = display_name
        self._provider = provider
        self._flow_id = flow_id

        self._server: HTTPServer | None = None
        self._thread: threading.Thread | None = None
        self._loop: asyncio.AbstractEventLoop | None = None
        self._future: asyncio.Future[str] | None = None
        self._settle_lock = threading.Lock()
        self._settled = False
        self._closed = False
        self._closing: asyncio.Task[None] | None = None
        self._actual_port: int = 0

    @property
    def port(self) -> int:
        """The bound port (0 until started)."""
        return self._actual_port

    @property
    def redirect_uri(self) -> str:
        """Get the redirect URI for this callback server.

        Returns
        -------
        str
            The full redirect URI (e.g. ``http://127.0.0.1:54321/callback``).
        """
        return f"http://{self._host}:{self._actual_port}{self._callback_path}"

    @property
    def is_running(self) -> bool:
        """Whether the listener socket is currently bound."""
        return self._server is not None

    def start(self) -> str:
        """Bind the listener and start serving on a daemon thread.

        Must be called from a running event loop.

        Returns
        -------
        str
            The redirect URI to use with the provider.

        Raises
        ------
        CallbackServerError
            If the port cannot be bound (e.g. already in use).
        """
        if self._server is not None or self._closed:
            msg = "Callback server can only be started once"
            raise CallbackServerError(msg, port=self._port, provider=self._provider)

        self._loop = asyncio.get_running_loop()
        self._future = self._loop.create_future()
        server_ref = self

        class _CallbackHandler(BaseHTTPRequestHandler):
            """HTTP request handler for OAuth2 callbacks."""

            def do_GET(self) -> None:
                """Handle GET requests."""
                parsed = urlparse(self.path)

                if parsed.path == "/":
                    self._send_html(_WAITING_HTML)
                    return
                if parsed.path != server_ref._callback_path:
                    self.send_error(404)
                    return
                if server_ref._settled:
                    # Late or repeated redirect after the flow already finished
                    self._send_html(_ERROR_HTML.format(error="This sign-in has already completed."))
                    return

                params = parse_qs(parsed.query)

                def first(name: str) -> str | None:
                    return params.get(name, [None])[0]

                error = first("error")
                if error:
                    description = first("error_description")
                    server_ref._post(
                        ProviderDenied(
                            f"Provider denied authorization: {error}",
                            error=error,
                            error_description=description,
                            provider=server_ref._provider,
                            flow_id=server_ref._flow_id,
                        )
                    )
                    safe_msg = html.escape(description or error, quote=True)
                    self._send_html(_ERROR_HTML.format(error=safe_msg), status=400)
                    return

                if not server_ref._state.matches(first("state")):
                    server_ref._post(
                        StateMismatch(
                            "State parameter mismatch (possible CSRF attack)",
                            provider=server_ref._provider,
                            flow_id=server_ref._flow_id,
                        )
                    )
                    self._send_html(
                        _ERROR_HTML.format(error="Invalid state parameter. Please sign in again."),
                        status=400,
                    )
                    return

                code = first("code")
                if not code:
                    self._send_html(
                        _ERROR_HTML.format(error="Missing authorization code."), status=400
                    )
                    return

                # Settle before responding so the page never outruns the outcome
                server_ref._post(code)
                title = html.escape(server_ref._display_name, quote=True)
                self._send_html(_SUCCESS_HTML.format(title=title))

            def _send_html(self, html_content: str, status: int = 200) -> None:
                """Send an HTML response with security headers."""
                encoded = html_content.encode("utf-8")
                self.send_response(status)
                self.send_header("Content-Type", "text/html; charset=utf-8")
                self.send_header("Content-Length", str(len(encoded)))
                self.send_header("Cache-Control", "no-store")
                self.send_header(
                    "Content-Security-Policy",
                    "default-src 'none'; style-src 'unsafe-inline'",
                )
                self.send_header("X-Content-Type-Options", "nosniff")
                self.end_headers()
                self.wfile.write(encoded)

            def log_message(self, *args: Any) -> None:
                """Redirect HTTP server logging to the deskauth logger."""
                # The request line carries the authorization code; keep only the method
                if args and len(args) > 1 and isinstance(args[1], str):
                    logger.debug("Callback server: %s", args[1].split(" ", 1)[0])

        try:
            self._server = HTTPServer((self._host, self._port), _CallbackHandler)
        except OSError as exc:
            msg = f"Could not bind callback server on {self._host}:{self._port}: {exc}"
            raise CallbackServerError(
                msg, port=self._port, provider=self._provider, flow_id=self._flow_id
            ) from exc
        self._actual_port = self._server.server_address[1]

        self._thread = threading.Thread(
            target=self._server.serve_forever,
            kwargs={"poll_interval": 0.1},
            name=f"deskauth-callback-{self._actual_port}",
            daemon=True,
        )
        self._thread.start()

        logger.debug("Callback server started on %s", self.redirect_uri)
        return self.redirect_uri

    def _post(self, outcome: str | BaseException) -> bool:
        """Hand an outcome to the event loop (callable from any thread).

        Only the first outcome is kept.
        """
        with self._settle_lock:
            if self._settled:
                return False
            self._settled = True
        if self._loop is not None and not self._loop.is_closed():
            self._loop.call_soon_threadsafe(self._settle, outcome)
        return True

    def _settle(self, outcome: str | BaseException) -> None:
        """Resolve the pending future and schedule teardown (loop thread)."""
        if self._future is not None and not self._future.done():
            if isinstance(outcome, BaseException):
                self._future.set_exception(outcome)
            else:
                self._future.set_result(outcome)
        if self._closing is None and self._loop is not None:
            self._closed = True
            self._closing = self._loop.create_task(self._shutdown())

    async def wait_for_code(self, timeout: float = DEFAULT_AUTH_TIMEOUT_SECONDS) -> str:
        """Wait for the redirect and return the authorization code.

        Parameters
        ----------
        timeout : float
            Watchdog in seconds (default 300).

        Returns
        -------
        str
            The authorization code.

        Raises
        ------
        AuthTimeout
            If no valid callback arrives in time.
        ProviderDenied
            If the provider redirected back with an ``error``.
        StateMismatch
            If the callback ``state`` did not match.
        UserCancelled
            If ``cancel()`` was called.
        """
        if self._future is None:
            msg = "Callback server has not been started"
            raise CallbackServerError(msg, port=self._port, provider=self._provider)
        try:
            return await asyncio.wait_for(self._future, timeout=timeout)
        except asyncio.TimeoutError:
            msg = f"Authentication timed out after {timeout}s - no callback received"
            raise AuthTimeout(
                msg, timeout=timeout, provider=self._provider, flow_id=self._flow_id
            ) from None
        finally:
            with self._settle_lock:
                self._settled = True
            await self.close()

    def cancel(self, reason: str = "Authentication flow was cancelled") -> bool:
        """Abort the wait with ``UserCancelled``.

        Returns
        -------
        bool
            False if the flow had already settled.
        """
        return self._post(UserCancelled(reason, provider=self._provider, flow_id=self._flow_id))

    async def close(self) -> None:
        """Shut the listener down and release the port. Idempotent.

        Concurrent callers all return once the port is released.
        """
        if self._closing is None:
            self._closed = True
            self._closing = asyncio.get_running_loop().create_task(self._shutdown())
        await asyncio.shield(self._closing)

    async def _shutdown(self) -> None:
        server, thread = self._server, self._thread
        self._server = None
        self._thread = None
        if server is None:
            return
        # shutdown() blocks until serve_forever returns; never call it on the serving thread
        await asyncio.to_thread(server.shutdown)
        server.server_close()
        if thread is not None and thread.is_alive():
            await asyncio.to_thread(thread.join, 5)
        logger.debug("Callback server on port %s closed", self._actual_port)


async def wait_for_code(
    port: int,
    expected_path: str,
    nonce: str,
    on_ready: Callable[[str], Awaitable[Any] | Any] | None = None,
    *,
    timeout: float = DEFAULT_AUTH_TIMEOUT_SECONDS,
    host: str = "127.0.0.1",
    display_name: str = "Account",
    provider: str | None = None,
    flow_id: str | None = None,
) -> str:
    """Bind a listener, signal readiness, and await the authorization code.

    Parameters
    ----------
    port : int
        Port to bind (0 for OS-assigned).
    expected_path : str
        Callback path the provider redirects to.
    nonce : str
        Expected ``state`` value.
    on_ready : callable, optional
        Called with the redirect URI once the socket is bound (sync or
        async). Typically builds the authorize URL and opens the browser.
        Failures are logged; the listener keeps waiting.
    timeout : float
        Watchdog in seconds.
    host : str
        Bind address.
    display_name : str
        Provider name shown on the success page.
    provider : str, optional
        Provider name attached to raised errors.
    flow_id : str, optional
        Flow identifier attached to raised errors.

    Returns
    -------
    str
        The authorization code.
    """
    server = OAuthCallbackServer(
        FlowState(nonce=nonce),
        host=host,
        port=port,
        callback_path=expected_path,
        display_name=display_name,
        provider=provider,
        flow_id=flow_id,
    )
    redirect_uri = server.start()
    try:
        if on_ready is not None:
            try:
                result = on_ready(redirect_uri)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.warning("Callback listener ready hook failed", exc_info=True)
        return await server.wait_for_code(timeout=timeout)
    finally:
        await server.close()
