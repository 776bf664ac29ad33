"""
Session Lifecycle Manager for the range finder system.

Owns the single portal credential. It refreshes the credential on a timer
(issued_at + refresh interval) and on demand when a fetch sees an auth
signal. Refreshes are single-flight: however many callers ask at once, at
most one login runs and every caller receives its outcome.

State machine:
    UNAUTHENTICATED -> AUTHENTICATING -> VALID -> REFRESHING -> VALID | FAILED
    FAILED -> AUTHENTICATING
"""

import asyncio
import time
from typing import Callable, Optional

from .config import SessionConfig
from .credentials import EnvCredentialStore
from .enums import RefreshTrigger, SessionState
from .event_logger import EventLogger
from .exceptions import ConfigurationError
from .login_flow import LoginFlow
from .models import AuthSession
from .retry_manager import RetryManager, RetryResult
from .scheduler import Scheduler

REFRESH_TIMER = "session-refresh"

RefreshListener = Callable[[AuthSession], None]

_UNSET = object()


def now_ms() -> int:
    return int(time.time() * 1000)


class SessionLifecycleManager:
    """Keeps one valid AuthSession available to the source provider."""

    def __init__(
        self,
        login_flow: LoginFlow,
        credential_store: EnvCredentialStore,
        config: SessionConfig,
        retry_manager: RetryManager,
        scheduler: Optional[Scheduler] = None,
        logger: Optional[EventLogger] = None,
        clock: Callable[[], int] = now_ms,
    ) -> None:
        """
        Initialize the session manager.

        Args:
            login_flow: Flow used to obtain a fresh token pair
            credential_store: Durable store written before memory is updated
            config: Session configuration (refresh interval)
            retry_manager: Backoff policy for scheduled refreshes
            scheduler: Scheduler owning the refresh timer; no timer when None
            logger: Optional event logger
            clock: Wall clock in epoch milliseconds
        """
        self._login_flow = login_flow
        self._store = credential_store
        self._config = config
        self._retry = retry_manager
        self._scheduler = scheduler
        self._logger = logger
        self._clock = clock

        self._state = SessionState.UNAUTHENTICATED
        self._credential: Optional[AuthSession] = None
        self._status = "Not authenticated"
        self._last_error: Optional[Exception] = None
        self._login_attempts = 0

        self._lock = asyncio.Lock()
        self._inflight: Optional[asyncio.Future] = None
        self._listeners: list[RefreshListener] = []

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def status_message(self) -> str:
        return self._status

    @property
    def last_error(self) -> Optional[Exception]:
        return self._last_error

    @property
    def login_attempts(self) -> int:
        """Number of login flow invocations so far."""
        return self._login_attempts

    @property
    def refresh_interval_ms(self) -> int:
        return int(self._config.refresh_interval_seconds * 1000)

    def add_refresh_listener(self, listener: RefreshListener) -> None:
        """Register a callback run after every successful refresh."""
        self._listeners.append(listener)

    def current_credential(self) -> Optional[AuthSession]:
        return self._credential

    async def start(self) -> Optional[AuthSession]:
        """
        Install persisted credentials or log in.

        A stored pair younger than the refresh interval is reused and the
        timer is armed for the remaining time; a pair without an issuance
        time is reused with a full interval. Otherwise a login runs. A failed
        startup login hands over to the scheduled retry cycle.

        Raises:
            ConfigurationError: If the login flow is misconfigured
        """
        stored = self._store.load()
        if stored is not None:
            interval_ms = self.refresh_interval_ms
            if stored.issued_at_ms is None:
                self._install(stored, "Using stored session")
                self._arm_timer(interval_ms / 1000)
                return stored

            age_ms = self._clock() - stored.issued_at_ms
            if 0 <= age_ms < interval_ms:
                self._install(stored, "Using stored session")
                self._arm_timer((interval_ms - age_ms) / 1000)
                self._log_info(
                    "Reusing stored session",
                    {"age_seconds": age_ms // 1000, "refresh_in_seconds": (interval_ms - age_ms) // 1000},
                )
                return stored

        try:
            return await self._refresh(RefreshTrigger.STARTUP)
        except ConfigurationError:
            raise
        except Exception as e:
            self._log_error("Startup login failed; retrying in background", e)
            self._arm_timer(self._retry.config.base_delay_seconds)
            return None

    def stop(self) -> None:
        """Cancel the refresh timer."""
        if self._scheduler is not None:
            self._scheduler.cancel_timer(REFRESH_TIMER)

    async def ensure_valid_session(self) -> AuthSession:
        """Return the current credential, logging in first if there is none."""
        if self._credential is not None:
            return self._credential
        return await self._refresh(RefreshTrigger.AUTH_SIGNAL, stale=None)

    async def force_refresh(
        self,
        stale=_UNSET,
        trigger: RefreshTrigger = RefreshTrigger.MANUAL,
    ) -> AuthSession:
        """
        Obtain a new credential.

        Args:
            stale: The credential the caller saw rejected. If the installed
                credential already differs from it, that newer credential is
                returned without another login.
            trigger: What caused this refresh (for logging)

        Raises:
            LoginError, PersistenceError: If the refresh failed
        """
        return await self._refresh(trigger, stale=stale)

    async def _refresh(self, trigger: RefreshTrigger, stale=_UNSET) -> AuthSession:
        async with self._lock:
            if (
                stale is not _UNSET
                and self._credential is not None
                and self._credential != stale
            ):
                return self._credential
            if self._inflight is None:
                self._inflight = asyncio.ensure_future(self._do_refresh(trigger))
                self._inflight.add_done_callback(self._clear_inflight)
            inflight = self._inflight
        return await asyncio.shield(inflight)

    def _clear_inflight(self, future: asyncio.Future) -> None:
        if self._inflight is future:
            self._inflight = None
        if not future.cancelled():
            # Mark the exception retrieved; waiters re-raise it themselves
            future.exception()

    async def _do_refresh(self, trigger: RefreshTrigger) -> AuthSession:
        self._state = (
            SessionState.REFRESHING if self._credential is not None
            else SessionState.AUTHENTICATING
        )
        self._status = "Refreshing session..."
        self._log_info("Session refresh started", {"trigger": trigger.value})

        try:
            self._login_attempts += 1
            tokens = await self._login_flow.login()
            session = AuthSession(
                session_token=tokens.session_token,
                csrf_token=tokens.csrf_token,
                issued_at_ms=self._clock(),
            )
            # Durable state first; memory is never ahead of the .env file
            self._store.save(session)
        except Exception as e:
            self._state = SessionState.FAILED
            self._last_error = e
            self._status = f"Session refresh failed: {e}"
            self._log_error("Session refresh failed", e, {"trigger": trigger.value})
            raise

        self._install(session, "Session refreshed")
        self._arm_timer(self.refresh_interval_ms / 1000)
        self._log_info("Session refreshed", {"trigger": trigger.value})

        for listener in list(self._listeners):
            try:
                listener(session)
            except Exception as e:
                self._log_error("Refresh listener failed", e)

        return session

    def _install(self, session: AuthSession, status: str) -> None:
        self._credential = session
        self._state = SessionState.VALID
        self._last_error = None
        self._status = status

    def _arm_timer(self, delay_seconds: float) -> None:
        if self._scheduler is not None:
            self._scheduler.call_later(REFRESH_TIMER, delay_seconds, self.run_scheduled_refresh)

    async def run_scheduled_refresh(self) -> RetryResult[AuthSession]:
        """
        Refresh with backoff, cooling down between failed cycles, until it succeeds.

        A refresh completed meanwhile by another trigger ends the cycle
        without another login.
        """
        stale = self._credential

        def on_cycle_failed(result: RetryResult[AuthSession], cycle: int) -> None:
            self._status = (
                f"Session refresh failed {result.attempts} time(s); "
                f"cooling down {self._retry.config.cooldown_seconds:.0f}s"
            )
            self._log_error(
                "Refresh cycle exhausted",
                result.last_error,
                {"cycle": cycle, "attempts": result.attempts},
            )

        return await self._retry.run_until_success(
            lambda: self._refresh(RefreshTrigger.SCHEDULED, stale=stale),
            on_cycle_failed=on_cycle_failed,
        )

    def _log_info(self, message: str, data: Optional[dict] = None) -> None:
        if self._logger:
            self._logger.info("SessionManager", message, data)

    def _log_error(self, message: str, error: Optional[Exception], data: Optional[dict] = None) -> None:
        if self._logger:
            self._logger.log_error("SessionManager", message, error=error, additional_data=data)
