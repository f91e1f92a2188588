"""Silent refresh of session tokens before they expire.

Each session gets one scheduler. The scheduler is a small state machine:

    IDLE -> SCHEDULED -> REFRESHING -> SCHEDULED (rotated) ...
                              |
                              +-> FAILED (terminal until the next login)

At most one refresh runs per session. Callers that ask for a refresh while one
is in flight await the same task, so the token endpoint sees one exchange.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from enum import Enum

from authflow.client.models.tokens import TokenSet
from authflow.client.token_store import TokenStore
from authflow.config import ReusePolicy
from authflow.errors import (
    NetworkFailureError,
    ReauthenticationRequiredError,
    RefreshReuseDetectedError,
    SessionNotFoundError,
    TokenError,
    TokenRefreshError,
)

logger = logging.getLogger(__name__)

RefreshFunction = Callable[[TokenSet], Awaitable[TokenSet]]
FailureCallback = Callable[[str, Exception], None]


def _retrieve_exception(task: asyncio.Task) -> None:
    # Callers may all have been cancelled; the failure is handled in the task
    if not task.cancelled():
        task.exception()


class RefreshState(str, Enum):
    IDLE = "idle"
    SCHEDULED = "scheduled"
    REFRESHING = "refreshing"
    FAILED = "failed"


class SilentRefreshScheduler:
    """Keeps one session's tokens fresh.

    Args:
        session_id: Session in ``store`` whose tokens are refreshed
        store: Token store owning the session
        refresh_fn: Redeems the current token set's refresh token and returns
            the new token set. Raises the token manager's errors.
        margin: Seconds before access token expiry at which to refresh
        retry_delay: Seconds to wait before retrying after a network failure
        reuse_policy: Which sessions to destroy when refresh fails
        on_failure: Called once with (session_id, error) on entering FAILED
    """

    def __init__(
        self,
        session_id: str,
        store: TokenStore,
        refresh_fn: RefreshFunction,
        margin: float = 60.0,
        retry_delay: float = 5.0,
        reuse_policy: ReusePolicy = ReusePolicy.FAMILY,
        on_failure: FailureCallback | None = None,
        clock: Callable[[], float] = time.time,
    ):
        self.session_id = session_id
        self.margin = margin
        self.retry_delay = retry_delay
        self.reuse_policy = reuse_policy
        self.state = RefreshState.IDLE
        self.last_error: Exception | None = None
        self.refresh_at: float | None = None

        self._store = store
        self._refresh_fn = refresh_fn
        self._on_failure = on_failure
        self._clock = clock
        self._timer_task: asyncio.Task[None] | None = None
        self._refresh_task: asyncio.Task[TokenSet] | None = None

    @property
    def failed(self) -> bool:
        return self.state is RefreshState.FAILED

    def refresh_due(self) -> bool:
        """True once the armed refresh deadline has passed."""
        return self.refresh_at is not None and self._clock() >= self.refresh_at

    # ================================
    # Scheduling
    # ================================

    def schedule(self) -> None:
        """Arm the timer for the current token set.

        Does nothing while a refresh is in flight; the refresh reschedules
        when it completes.

        Raises:
            ReauthenticationRequiredError: If the scheduler already failed
        """
        self._raise_if_failed()
        if self.state is RefreshState.REFRESHING:
            return

        self._cancel_timer()
        tokens = self._store.get_tokens(self.session_id)
        remaining = tokens.expires_in(self._clock())
        if remaining is None or not tokens.can_refresh():
            logger.debug(f"Session {self.session_id} has nothing to refresh on a timer")
            self.state = RefreshState.IDLE
            self.refresh_at = None
            return

        if remaining > self.margin:
            delay = remaining - self.margin
        else:
            # Lifetime shorter than the margin: refresh at half of what is left
            delay = max(0.0, remaining / 2)
        self._arm(delay)

    def _arm(self, delay: float) -> None:
        self.refresh_at = self._clock() + delay
        self._timer_task = asyncio.create_task(self._fire_after(delay))
        self.state = RefreshState.SCHEDULED
        logger.debug(f"Refresh for session {self.session_id} scheduled in {delay:.1f}s")

    async def _fire_after(self, delay: float) -> None:
        await asyncio.sleep(delay)
        # The timer has fired; refresh() must not cancel the running task
        self._timer_task = None
        try:
            await self.refresh()
        except ReauthenticationRequiredError:
            logger.warning(f"Silent refresh failed for session {self.session_id}")
        except (NetworkFailureError, TokenError) as e:
            logger.warning(
                f"Silent refresh for session {self.session_id} failed transiently, "
                f"retrying in {self.retry_delay}s: {e}"
            )

    def _cancel_timer(self) -> None:
        if self._timer_task is not None:
            self._timer_task.cancel()
            self._timer_task = None

    # ================================
    # Refreshing
    # ================================

    async def refresh(self) -> TokenSet:
        """Refresh now, or join the refresh already in flight.

        Returns:
            The rotated token set stored for the session

        Raises:
            ReauthenticationRequiredError: If the refresh token was rejected
                or reused, or the session is gone
            NetworkFailureError: If the token endpoint was unreachable; a
                retry is scheduled
        """
        self._raise_if_failed()

        if self._refresh_task is None:
            self._cancel_timer()
            self.state = RefreshState.REFRESHING
            self._refresh_task = asyncio.create_task(self._run_refresh())
            self._refresh_task.add_done_callback(_retrieve_exception)
        else:
            logger.debug(f"Joining in-flight refresh for session {self.session_id}")

        return await asyncio.shield(self._refresh_task)

    async def _run_refresh(self) -> TokenSet:
        try:
            try:
                current = self._store.get_tokens(self.session_id)
                if not current.can_refresh():
                    raise TokenRefreshError("Session has no refresh token")
                new_tokens = await self._refresh_fn(current)
            except (
                RefreshReuseDetectedError,
                TokenRefreshError,
                SessionNotFoundError,
            ) as e:
                self._fail(e)
                raise ReauthenticationRequiredError(
                    f"Session {self.session_id} must re-authenticate: {e}"
                ) from e
            except (NetworkFailureError, TokenError):
                self._arm(self.retry_delay)
                raise

            rotated = current.rotate(new_tokens)
            try:
                self._store.replace_tokens(self.session_id, rotated)
            except SessionNotFoundError as e:
                # Logged out while the exchange was in flight
                self._fail(e)
                raise ReauthenticationRequiredError(
                    f"Session {self.session_id} ended during refresh"
                ) from e
            logger.info(f"Rotated tokens for session {self.session_id}")

            self.state = RefreshState.IDLE
            self.schedule()
            return rotated
        finally:
            self._refresh_task = None
            if self.state is RefreshState.REFRESHING:
                self.state = RefreshState.IDLE

    def _fail(self, error: Exception) -> None:
        self.state = RefreshState.FAILED
        self.last_error = error
        self._cancel_timer()

        if isinstance(error, RefreshReuseDetectedError):
            logger.warning(
                f"Refresh token reuse detected for session {self.session_id}; "
                f"treating as compromised"
            )

        try:
            family_id = self._store.get(self.session_id).family_id
        except SessionNotFoundError:
            family_id = None

        if family_id is not None and self.reuse_policy is ReusePolicy.FAMILY:
            self._store.destroy_family(family_id)
        else:
            self._store.destroy(self.session_id)

        if self._on_failure is not None:
            self._on_failure(self.session_id, error)

    def invalidate(self, error: Exception) -> None:
        """Mark the session failed because a sibling in its family failed.

        The session itself was already removed from the store.
        """
        if self.state is RefreshState.FAILED:
            return
        self.state = RefreshState.FAILED
        self.last_error = error
        self._cancel_timer()
        logger.debug(f"Session {self.session_id} invalidated with its family")

    def _raise_if_failed(self) -> None:
        if self.state is RefreshState.FAILED:
            raise ReauthenticationRequiredError(
                f"Session {self.session_id} must re-authenticate"
            ) from self.last_error

    # ================================
    # Teardown
    # ================================

    async def close(self) -> None:
        """Cancel the timer and any in-flight refresh.

        Safe to call multiple times.
        """
        tasks = [t for t in (self._timer_task, self._refresh_task) if t is not None]
        self._timer_task = None
        self._refresh_task = None
        if self.state is not RefreshState.FAILED:
            self.state = RefreshState.IDLE

        for task in tasks:
            task.cancel()
        for task in tasks:
            if task is asyncio.current_task():
                continue
            try:
                await task
            except asyncio.CancelledError:
                pass
            except Exception as e:
                logger.debug(f"Refresh task ended with {e!r} during close")
