"""Per-account background token refresh.

One cancellable timer per account on the running event loop. A timer
fires ``lead_time_ms`` before the access token expires, awaits the
refresh callback, and re-arms itself from the new expiry.
"""

# pylint: disable=logging-too-many-args

from __future__ import annotations

import asyncio
import logging

from typing import TYPE_CHECKING

from .types import DEFAULT_LEAD_TIME_MS, now_ms


if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

    from .types import TokenSet

    RefreshCallback = Callable[[str], Awaitable[TokenSet | None]]


logger = logging.getLogger("deskauth.auth")


class RefreshHandle:
    """A scheduled refresh for one account.

    Attributes
    ----------
    account_id : str
        The account the timer refreshes.
    fires_at : int
        Epoch ms at which the timer fires.
    """

    def __init__(self, account_id: str, fires_at: int) -> None:
        """Initialize the handle."""
        self.account_id = account_id
        self.fires_at = fires_at
        self._timer: asyncio.TimerHandle | None = None
        self._task: asyncio.Task[None] | None = None
        self._cancelled = False

    @property
    def cancelled(self) -> bool:
        """Whether the handle was cancelled."""
        return self._cancelled

    @property
    def fired(self) -> bool:
        """Whether the timer has fired."""
        return self._task is not None

    def cancel(self) -> None:
        """Cancel the timer and any refresh it started."""
        self._cancelled = True
        if self._timer is not None:
            self._timer.cancel()
        task = self._task
        if task is not None and not task.done():
            try:
                current = asyncio.current_task()
            except RuntimeError:
                current = None
            # A refresh that re-arms its own account must not cancel itself
            if task is not current:
                task.cancel()

    def __repr__(self) -> str:
        state = "cancelled" if self._cancelled else "fired" if self.fired else "pending"
        return f"<RefreshHandle {self.account_id} at={self.fires_at} {state}>"


class RefreshScheduler:
    """Schedules background refreshes on the running event loop.

    Parameters
    ----------
    refresh : callable
        ``refresh(account_id) -> Awaitable[TokenSet | None]``. Returns
        the new tokens, or None when the refresh failed.
    lead_time_ms : int
        How long before expiry to refresh (default five minutes).
    rearm_floor_seconds : float
        Minimum delay when re-arming after a refresh, so a provider that
        issues very short-lived tokens cannot cause a refresh loop.
    """

    def __init__(
        self,
        refresh: RefreshCallback,
        lead_time_ms: int = DEFAULT_LEAD_TIME_MS,
        rearm_floor_seconds: float = 30.0,
    ) -> None:
        """Initialize the scheduler."""
        self._refresh = refresh
        self.lead_time_ms = lead_time_ms
        self.rearm_floor_seconds = rearm_floor_seconds
        self._handles: dict[str, RefreshHandle] = {}
        self._tasks: set[asyncio.Task[None]] = set()

    def delay_for(self, expires_at: int, at_ms: int | None = None) -> float:
        """Seconds until a refresh for tokens expiring at ``expires_at``."""
        at = now_ms() if at_ms is None else at_ms
        return max(0, expires_at - at - self.lead_time_ms) / 1000

    def arm(self, account_id: str, expires_at: int, *, min_delay: float = 0.0) -> RefreshHandle:
        """Schedule a refresh, replacing any existing timer for the account.

        Parameters
        ----------
        account_id : str
            The account to refresh.
        expires_at : int
            Access-token expiry in epoch ms.
        min_delay : float
            Lower bound on the delay in seconds.

        Returns
        -------
        RefreshHandle
            Handle that can cancel the scheduled refresh.
        """
        self.cancel(account_id)
        loop = asyncio.get_running_loop()
        delay = max(self.delay_for(expires_at), min_delay)
        handle = RefreshHandle(account_id, now_ms() + int(delay * 1000))
        handle._timer = loop.call_later(delay, self._fire, handle)  # noqa: SLF001
        self._handles[account_id] = handle
        logger.debug("Scheduling token refresh in %.0fs for %s", delay, account_id)
        return handle

    def _fire(self, handle: RefreshHandle) -> None:
        """Start the refresh task for a due timer."""
        if self._handles.get(handle.account_id) is not handle or handle.cancelled:
            return
        task = asyncio.get_running_loop().create_task(self._run(handle))
        handle._task = task  # noqa: SLF001
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _run(self, handle: RefreshHandle) -> None:
        account_id = handle.account_id
        try:
            tokens = await self._refresh(account_id)
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("Background token refresh failed for %s", account_id)
            tokens = None

        if self._handles.get(account_id) is not handle:
            # Cancelled or re-armed by someone else while refreshing
            return
        if tokens is None:
            del self._handles[account_id]
            logger.warning("Background refresh for %s failed; not rescheduling", account_id)
            return
        self.arm(account_id, tokens.expires_at, min_delay=self.rearm_floor_seconds)

    def pending(self, account_id: str) -> RefreshHandle | None:
        """The live handle for an account, if one is scheduled."""
        return self._handles.get(account_id)

    def cancel(self, account_id: str) -> bool:
        """Cancel the account's timer (and its in-flight refresh).

        Returns
        -------
        bool
            True if a handle was cancelled.
        """
        handle = self._handles.pop(account_id, None)
        if handle is None:
            return False
        handle.cancel()
        return True

    def cancel_all(self) -> None:
        """Cancel every scheduled refresh."""
        for account_id in list(self._handles):
            self.cancel(account_id)

    def __len__(self) -> int:
        return len(self._handles)
