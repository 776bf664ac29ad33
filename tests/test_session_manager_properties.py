"""
Property-based tests for the Session Lifecycle Manager, the credential
store and the retry manager.

Uses Hypothesis for property-based testing of single-flight refreshes,
backoff schedules, startup reuse and durable-before-memory ordering.
"""

import asyncio
import os
import tempfile
from pathlib import Path
from typing import Optional

import pytest
from hypothesis import given, settings
from hypothesis import strategies as st

from range_finder.config import RetryConfig, SessionConfig
from range_finder.credentials import (
    CSRF_KEY,
    ISSUED_AT_KEY,
    SESSION_KEY,
    EnvCredentialStore,
)
from range_finder.enums import ErrorCode, SessionState
from range_finder.exceptions import ConfigurationError, LoginError, PersistenceError
from range_finder.login_flow import SimulatedLoginFlow
from range_finder.models import AuthSession, TokenPair
from range_finder.retry_manager import RetryManager
from range_finder.scheduler import Scheduler
from range_finder.session_manager import REFRESH_TIMER, SessionLifecycleManager


NOW_MS = 1_700_000_000_000
INTERVAL_S = 6600


@pytest.fixture(autouse=True, scope="module")
def _isolated_environment():
    saved = {key: os.environ.pop(key) for key in (SESSION_KEY, CSRF_KEY, ISSUED_AT_KEY) if key in os.environ}
    yield
    os.environ.update(saved)


class SleepRecorder:
    """Awaitable sleep that records delays instead of waiting."""

    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


class FlakyCredentialStore(EnvCredentialStore):
    """Credential store whose writes can be made to fail."""

    def __init__(self, env_file: Path) -> None:
        super().__init__(env_file, update_environ=False)
        self.fail = False

    def save(self, session: AuthSession) -> None:
        if self.fail:
            raise PersistenceError(code=ErrorCode.PERSIST_FAILED.value, message="read-only")
        super().save(session)


class MisconfiguredLoginFlow:
    async def login(self) -> TokenPair:
        raise ConfigurationError(code=ErrorCode.MISSING_SECRET.value, message="no key")


def make_manager(
    env_dir: str,
    login_flow,
    scheduler: Optional[Scheduler] = None,
    sleep: Optional[SleepRecorder] = None,
    clock=lambda: NOW_MS,
    store: Optional[EnvCredentialStore] = None,
) -> SessionLifecycleManager:
    return SessionLifecycleManager(
        login_flow=login_flow,
        credential_store=store or EnvCredentialStore(Path(env_dir) / ".env", update_environ=False),
        config=SessionConfig(refresh_interval_seconds=INTERVAL_S),
        retry_manager=RetryManager(RetryConfig(), sleep=sleep or SleepRecorder()),
        scheduler=scheduler,
        clock=clock,
    )


class TestSingleFlightProperty:
    """
    However many concurrent refresh requests arrive, at most one login runs
    and every caller observes its outcome.
    """

    @given(callers=st.integers(min_value=1, max_value=25))
    @settings(max_examples=15, deadline=None)
    def test_concurrent_refreshes_share_one_login(self, callers: int) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            flow = SimulatedLoginFlow(delay_seconds=0.01)
            manager = make_manager(tmp, flow)

            async def run():
                return await asyncio.gather(*(manager.force_refresh() for _ in range(callers)))

            sessions = asyncio.run(run())

            assert flow.call_count == 1
            assert manager.login_attempts == 1
            assert all(s is sessions[0] for s in sessions)
            assert manager.current_credential() is sessions[0]
            assert manager.state == SessionState.VALID

    def test_concurrent_failure_reaches_every_caller(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            flow = SimulatedLoginFlow(delay_seconds=0.01, fail_times=1)
            manager = make_manager(tmp, flow)

            async def run():
                return await asyncio.gather(
                    *(manager.force_refresh() for _ in range(5)), return_exceptions=True
                )

            outcomes = asyncio.run(run())

            assert flow.call_count == 1
            assert all(isinstance(o, LoginError) for o in outcomes)
            assert manager.state == SessionState.FAILED
            assert manager.current_credential() is None

    def test_stale_caller_gets_newer_credential_without_login(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            flow = SimulatedLoginFlow()
            manager = make_manager(tmp, flow)

            async def run():
                first = await manager.force_refresh()
                second = await manager.force_refresh(stale=first)
                # A caller that saw the first credential rejected after the refresh
                third = await manager.force_refresh(stale=first)
                return first, second, third

            first, second, third = asyncio.run(run())

            assert flow.call_count == 2
            assert second != first
            assert third is second

    def test_ensure_valid_session_reuses_credential(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            flow = SimulatedLoginFlow()
            manager = make_manager(tmp, flow)

            async def run():
                a = await manager.ensure_valid_session()
                b = await manager.ensure_valid_session()
                return a, b

            a, b = asyncio.run(run())
            assert a is b
            assert flow.call_count == 1


class TestBackoffProperty:
    """Scheduled refreshes back off 30/60/120 s, cool down 300 s, and never give up."""

    def test_schedule_for_default_config(self) -> None:
        assert RetryManager(RetryConfig()).delay_schedule() == [30, 60, 120, 300]

    def test_failed_cycle_then_success(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            sleep = SleepRecorder()
            flow = SimulatedLoginFlow(fail_times=4)
            manager = make_manager(tmp, flow, sleep=sleep)

            result = asyncio.run(manager.run_scheduled_refresh())

            assert result.success
            assert result.attempts == 5
            assert sleep.delays == [30, 60, 120, 300]
            assert manager.state == SessionState.VALID
            assert flow.call_count == 5

    @given(failures=st.integers(min_value=0, max_value=12))
    @settings(max_examples=20, deadline=None)
    def test_delays_follow_schedule(self, failures: int) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            sleep = SleepRecorder()
            manager = make_manager(tmp, SimulatedLoginFlow(fail_times=failures), sleep=sleep)

            result = asyncio.run(manager.run_scheduled_refresh())

            schedule = RetryManager(RetryConfig()).delay_schedule()
            expected = [schedule[i % len(schedule)] for i in range(failures)]
            assert sleep.delays == expected
            assert result.attempts == failures + 1

    def test_one_cycle_is_four_login_attempts(self) -> None:
        sleep = SleepRecorder()
        manager = RetryManager(RetryConfig(), sleep=sleep)
        flow = SimulatedLoginFlow(fail_times=100)

        result = asyncio.run(manager.run_until_success(flow.login, max_cycles=1))

        assert not result.success
        assert result.attempts == RetryConfig().max_retries + 1 == 4
        assert flow.call_count == 4
        assert sleep.delays == [30, 60, 120]

    def test_max_cycles_stops(self) -> None:
        sleep = SleepRecorder()
        manager = RetryManager(RetryConfig(max_retries=1, base_delay_seconds=1), sleep=sleep)
        cycles: list[int] = []

        async def always_fails():
            raise RuntimeError("down")

        result = asyncio.run(
            manager.run_until_success(
                always_fails,
                on_cycle_failed=lambda r, c: cycles.append(c),
                max_cycles=2,
            )
        )
        assert not result.success
        assert result.attempts == 4
        assert cycles == [1, 2]
        assert sleep.delays == [1, 300, 1]

    def test_non_retryable_error_stops_cycle(self) -> None:
        sleep = SleepRecorder()
        manager = RetryManager(RetryConfig(), sleep=sleep)

        async def fails():
            raise ValueError("bad")

        result = asyncio.run(manager.execute_with_retry(fails, is_retryable=lambda e: False))
        assert result.attempts == 1
        assert isinstance(result.last_error, ValueError)
        assert sleep.delays == []


class TestDurableBeforeMemoryProperty:
    """A credential that could not be persisted is never installed."""

    def test_persist_failure_keeps_previous_credential(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            store = FlakyCredentialStore(Path(tmp) / ".env")
            manager = make_manager(tmp, SimulatedLoginFlow(), store=store)

            first = asyncio.run(manager.force_refresh())
            store.fail = True
            with pytest.raises(PersistenceError):
                asyncio.run(manager.force_refresh())

            assert manager.current_credential() is first
            assert manager.state == SessionState.FAILED
            assert isinstance(manager.last_error, PersistenceError)
            assert store.load() == first

    def test_listeners_run_after_install(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            manager = make_manager(tmp, SimulatedLoginFlow())
            seen: list[AuthSession] = []
            manager.add_refresh_listener(lambda s: seen.append(manager.current_credential()))

            session = asyncio.run(manager.force_refresh())
            assert seen == [session]


class TestStartup:
    """Startup reuses a fresh stored credential or logs in."""

    def _start(self, manager: SessionLifecycleManager, scheduler: Scheduler):
        async def run():
            session = await manager.start()
            delay = scheduler.timer_delay(REFRESH_TIMER)
            manager.stop()
            return session, delay

        return asyncio.run(run())

    @given(age_s=st.integers(min_value=0, max_value=INTERVAL_S - 60))
    @settings(max_examples=20, deadline=None)
    def test_fresh_credential_reused(self, age_s: int) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            stored = AuthSession("sess", "csrf", NOW_MS - age_s * 1000)
            EnvCredentialStore(Path(tmp) / ".env", update_environ=False).save(stored)
            flow = SimulatedLoginFlow()
            scheduler = Scheduler()
            manager = make_manager(tmp, flow, scheduler=scheduler)

            session, delay = self._start(manager, scheduler)

            assert session == stored
            assert flow.call_count == 0
            assert manager.state == SessionState.VALID
            assert delay == pytest.approx(INTERVAL_S - age_s, abs=1.0)

    def test_expired_credential_triggers_login(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            stored = AuthSession("sess", "csrf", NOW_MS - (INTERVAL_S + 1) * 1000)
            EnvCredentialStore(Path(tmp) / ".env", update_environ=False).save(stored)
            flow = SimulatedLoginFlow()
            scheduler = Scheduler()
            manager = make_manager(tmp, flow, scheduler=scheduler)

            session, delay = self._start(manager, scheduler)

            assert flow.call_count == 1
            assert session != stored
            assert session.issued_at_ms == NOW_MS
            assert delay == pytest.approx(INTERVAL_S, abs=1.0)
            reloaded = EnvCredentialStore(Path(tmp) / ".env", update_environ=False).load()
            assert reloaded == session

    def test_credential_without_issue_time_gets_full_interval(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            EnvCredentialStore(Path(tmp) / ".env", update_environ=False).save(
                AuthSession("sess", "csrf", None)
            )
            flow = SimulatedLoginFlow()
            scheduler = Scheduler()
            manager = make_manager(tmp, flow, scheduler=scheduler)

            session, delay = self._start(manager, scheduler)

            assert session.session_token == "sess"
            assert flow.call_count == 0
            assert delay == pytest.approx(INTERVAL_S, abs=1.0)

    def test_failed_startup_login_retries_later(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            scheduler = Scheduler()
            manager = make_manager(tmp, SimulatedLoginFlow(fail_times=1), scheduler=scheduler)

            session, delay = self._start(manager, scheduler)

            assert session is None
            assert manager.state == SessionState.FAILED
            assert delay == pytest.approx(RetryConfig().base_delay_seconds, abs=1.0)

    def test_configuration_error_is_fatal(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            manager = make_manager(tmp, MisconfiguredLoginFlow(), scheduler=Scheduler())
            with pytest.raises(ConfigurationError):
                asyncio.run(manager.start())


class TestEnvCredentialStore:
    """The .env credential store rewrites the three keys atomically."""

    def test_save_preserves_other_lines(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            env_file = Path(tmp) / ".env"
            env_file.write_text(
                "BROWSERLESS_API_KEY=abc\n# comment\nX_CSRF_TOKEN=old\nUSE_BROWSERLESS=false\n",
                encoding="utf-8",
            )
            store = EnvCredentialStore(env_file, update_environ=False)
            store.save(AuthSession("new-session", "new-csrf", 123))

            text = env_file.read_text(encoding="utf-8")
            assert "BROWSERLESS_API_KEY=abc" in text
            assert "# comment" in text
            assert "USE_BROWSERLESS=false" in text
            assert "X_CSRF_TOKEN=old" not in text
            assert text.count("X_CSRF_TOKEN=") == 1
            assert store.load() == AuthSession("new-session", "new-csrf", 123)

    @given(
        session_token=st.from_regex(r"\A[A-Za-z0-9]{1,40}\Z"),
        csrf_token=st.from_regex(r"\A[A-Za-z0-9_-]{1,40}\Z"),
        issued_at=st.one_of(st.none(), st.integers(min_value=0, max_value=10**13)),
    )
    @settings(max_examples=30, deadline=None)
    def test_save_then_load(self, session_token: str, csrf_token: str, issued_at) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            store = EnvCredentialStore(Path(tmp) / ".env", update_environ=False)
            session = AuthSession(session_token, csrf_token, issued_at)
            store.save(session)
            assert store.load() == session

    def test_missing_token_loads_nothing(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            env_file = Path(tmp) / ".env"
            env_file.write_text("ORANGE_CARRIER_SESSION=abc\n", encoding="utf-8")
            assert EnvCredentialStore(env_file, update_environ=False).load() is None
            assert EnvCredentialStore(Path(tmp) / "missing.env", update_environ=False).load() is None

    def test_garbage_issue_time_ignored(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            env_file = Path(tmp) / ".env"
            env_file.write_text(
                "ORANGE_CARRIER_SESSION=a\nX_CSRF_TOKEN=b\nLAST_TOKEN_REFRESH=yesterday\n",
                encoding="utf-8",
            )
            loaded = EnvCredentialStore(env_file, update_environ=False).load()
            assert loaded == AuthSession("a", "b", None)

    def test_unwritable_target_raises_persistence_error(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            target = Path(tmp) / "env-dir"
            target.mkdir()
            with pytest.raises(PersistenceError) as exc_info:
                EnvCredentialStore(target, update_environ=False).save(AuthSession("a", "b", 1))
            assert exc_info.value.code == ErrorCode.PERSIST_FAILED.value
