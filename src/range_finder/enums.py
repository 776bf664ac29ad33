"""
Enumeration types for the range finder system.

These enums provide type-safe constants for session states, fetch outcomes,
and configuration options throughout the system.
"""

from enum import Enum


class LogLevel(Enum):
    """Logging severity levels."""

    DEBUG = "debug"
    INFO = "info"
    WARN = "warn"
    ERROR = "error"


class SessionState(Enum):
    """Lifecycle state of the portal session credential."""

    UNAUTHENTICATED = "unauthenticated"
    AUTHENTICATING = "authenticating"
    VALID = "valid"
    REFRESHING = "refreshing"
    FAILED = "failed"


class FetchOutcome(Enum):
    """Outcome of a single source fetch."""

    RECORDS = "records"
    EMPTY = "empty"
    AUTH_ERROR = "auth_error"
    TIMEOUT = "timeout"
    TRANSPORT_ERROR = "transport_error"


class RefreshTrigger(Enum):
    """What caused a session refresh."""

    STARTUP = "startup"
    SCHEDULED = "scheduled"
    AUTH_SIGNAL = "auth_signal"
    MANUAL = "manual"


class ErrorCode(Enum):
    """Error codes carried by RangeFinderError subclasses."""

    INVALID_CONFIG = "invalid_config"
    MISSING_SECRET = "missing_secret"
    LOGIN_FAILED = "login_failed"
    LOGIN_TIMEOUT = "login_timeout"
    TOKEN_NOT_CAPTURED = "token_not_captured"
    PERSIST_FAILED = "persist_failed"
    TRANSACTION_FAILED = "transaction_failed"
    SESSION_EXPIRED = "session_expired"
    NETWORK_ERROR = "network_error"
