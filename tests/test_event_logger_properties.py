"""
Property-based tests for the Event Logger module.

Uses Hypothesis for property-based testing of credential masking,
output formats and level filtering.
"""

import io
import json

import pytest
from hypothesis import given, settings
from hypothesis import strategies as st

from range_finder.enums import LogLevel
from range_finder.event_logger import EventLogger
from range_finder.exceptions import AuthenticationError, LoginError, NetworkError


SENSITIVE_KEYS = [
    "session_token",
    "csrf_token",
    "X_CSRF_TOKEN",
    "ORANGE_CARRIER_SESSION_COOKIE",
    "browserless_api_key",
    "password",
    "Authorization",
]

safe_key = st.text(alphabet="abdefghjlnqruvwxyz_", min_size=1, max_size=12)
secret_value = st.text(alphabet="ABCDEFGHIJKLMNOP0123456789", min_size=12, max_size=40)


class TestCredentialMaskingProperty:
    """
    No credential value ever reaches the log output, however deeply it is nested.
    """

    @given(
        key=st.sampled_from(SENSITIVE_KEYS),
        value=secret_value,
        other_key=safe_key,
        other_value=st.integers(min_value=-1000, max_value=1000),
    )
    @settings(max_examples=100)
    def test_sensitive_values_masked(self, key: str, value: str, other_key: str, other_value: int) -> None:
        stream = io.StringIO()
        logger = EventLogger(output_format="both", output_stream=stream)

        entry = logger.info(
            "Test",
            "credential installed",
            {key: value, other_key: other_value, "nested": {key: value}, "items": [{key: value}]},
        )

        assert entry.data[key] == EventLogger.MASK_VALUE
        assert entry.data["nested"][key] == EventLogger.MASK_VALUE
        assert entry.data["items"][0][key] == EventLogger.MASK_VALUE
        assert entry.data[other_key] == other_value
        assert value not in stream.getvalue()

    def test_input_not_mutated(self) -> None:
        logger = EventLogger(output_stream=io.StringIO())
        data = {"csrf_token": "abc"}
        logger.info("Test", "m", data)
        assert data == {"csrf_token": "abc"}


class TestOutputFormats:
    """JSON and text renderings carry the same entry."""

    @given(
        component=st.sampled_from(["SessionManager", "FetchScheduler", "Store"]),
        message=st.text(min_size=1, max_size=50),
        count=st.integers(min_value=0, max_value=10_000),
    )
    @settings(max_examples=50)
    def test_json_line_is_parseable(self, component: str, message: str, count: int) -> None:
        stream = io.StringIO()
        logger = EventLogger(output_format="json", output_stream=stream)
        logger.warn(component, message, {"count": count})

        parsed = json.loads(stream.getvalue().strip())
        assert parsed["level"] == "warn"
        assert parsed["component"] == component
        assert parsed["message"] == message
        assert parsed["data"] == {"count": count}

    def test_text_line(self) -> None:
        stream = io.StringIO()
        logger = EventLogger(output_format="text", output_stream=stream)
        entry = logger.info("Orchestrator", "Status", {"passes": 2})
        line = stream.getvalue().strip()
        assert line == logger.get_text_output(entry)
        assert "INFO [Orchestrator] Status" in line
        assert '"passes": 2' in line

    def test_invalid_format(self) -> None:
        with pytest.raises(ValueError):
            EventLogger(output_format="xml")


class TestLevelFiltering:
    """Entries below the minimum level are dropped."""

    @given(
        min_level=st.sampled_from(list(LogLevel)),
        level=st.sampled_from(list(LogLevel)),
    )
    def test_filtering(self, min_level: LogLevel, level: LogLevel) -> None:
        order = [LogLevel.DEBUG, LogLevel.INFO, LogLevel.WARN, LogLevel.ERROR]
        logger = EventLogger(output_stream=io.StringIO(), min_level=min_level)
        entry = logger.log(level, "Test", "m")
        if order.index(level) >= order.index(min_level):
            assert entry is not None and logger.entries == [entry]
        else:
            assert entry is None and logger.entries == []

    def test_from_config(self) -> None:
        logger = EventLogger.from_config("warn", "json", io.StringIO())
        assert logger.min_level == LogLevel.WARN
        assert logger.output_format == "json"
        assert logger.info("Test", "dropped") is None

    def test_max_entries(self) -> None:
        logger = EventLogger(output_stream=io.StringIO(), max_entries=3)
        for i in range(5):
            logger.info("Test", str(i))
        assert [e.message for e in logger.entries] == ["2", "3", "4"]
        logger.clear_entries()
        assert logger.entries == []


class TestErrorContext:
    """log_error records the failure's type, message and code."""

    def test_error_fields(self) -> None:
        logger = EventLogger(output_stream=io.StringIO())
        error = LoginError(code="LOGIN_TIMEOUT", message="no token within 60s")
        entry = logger.log_error(
            "SessionManager",
            "Session refresh failed",
            error=error,
            request_url="https://portal.example/login",
            response_status_code=302,
            additional_data={"trigger": "scheduled"},
        )
        assert entry.level == LogLevel.ERROR
        assert entry.data["error_type"] == "LoginError"
        assert entry.data["error_code"] == "LOGIN_TIMEOUT"
        assert entry.data["error_message"] == "no token within 60s"
        assert entry.data["request_url"] == "https://portal.example/login"
        assert entry.data["response_status_code"] == 302
        assert entry.data["trigger"] == "scheduled"
        assert error.to_dict()["code"] == "LOGIN_TIMEOUT"

    def test_plain_exception_has_no_code(self) -> None:
        logger = EventLogger(output_stream=io.StringIO())
        entry = logger.log_error("Store", "failed", error=OSError(28, "No space left"))
        assert "error_code" not in entry.data
        assert entry.data["error_type"] == "OSError"

    def test_error_details_included_and_masked(self) -> None:
        stream = io.StringIO()
        logger = EventLogger(output_format="json", output_stream=stream)
        error = AuthenticationError(
            code="SESSION_EXPIRED",
            message="Portal rejected the session credential",
            details={"status_code": 401, "csrf_token": "LEAKEDCSRF123"},
        )
        entry = logger.log_error("SourceProvider", "Auth signal", error=error)

        assert entry.data["error_type"] == "AuthenticationError"
        assert entry.data["error_code"] == "SESSION_EXPIRED"
        assert entry.data["error_details"]["status_code"] == 401
        assert entry.data["error_details"]["csrf_token"] == "***MASKED***"
        assert "LEAKEDCSRF123" not in stream.getvalue()

    def test_empty_details_omitted(self) -> None:
        logger = EventLogger(output_stream=io.StringIO())
        error = NetworkError(code="NETWORK_ERROR", message="refused")
        entry = logger.log_error("SourceProvider", "failed", error=error)
        assert entry.data["error_type"] == "NetworkError"
        assert entry.data["error_message"] == "refused"
        assert "error_details" not in entry.data
