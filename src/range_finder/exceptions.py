"""
Exception classes for the range finder system.

All exceptions inherit from RangeFinderError and provide structured
error information with codes, messages, and optional details.
"""

from typing import Optional


class RangeFinderError(Exception):
    """Base exception for all range finder errors."""

    def __init__(
        self,
        code: str,
        message: str,
        details: Optional[dict] = None,
    ) -> None:
        self.code = code
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(code={self.code!r}, message={self.message!r})"

    def to_dict(self) -> dict:
        """Convert exception to dictionary for serialization."""
        return {
            "error_type": self.__class__.__name__,
            "code": self.code,
            "message": self.message,
            "details": self.details,
        }


class ConfigurationError(RangeFinderError):
    """Raised when the configuration is invalid or a required secret is missing."""

    pass


class NetworkError(RangeFinderError):
    """Raised when network operations fail."""

    pass


class AuthenticationError(RangeFinderError):
    """Raised when the portal rejects the current session credential."""

    pass


class LoginError(RangeFinderError):
    """Raised when the browser login flow cannot obtain a token pair."""

    pass


class StorageError(RangeFinderError):
    """Raised when an aggregation store transaction fails and is rolled back."""

    pass


class PersistenceError(RangeFinderError):
    """Raised when credential persistence fails (file I/O)."""

    pass
