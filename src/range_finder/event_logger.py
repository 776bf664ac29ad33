"""
Event Logger module for the range finder system.

Every component reports through one EventLogger. Entries carry the emitting
component and a free-form data dict; any value stored under a key that looks
like a credential (session cookie, CSRF token, Browserless key) is replaced
before the entry is kept or written, so a token never reaches stderr.
"""

import json
import sys
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional, TextIO

from range_finder.enums import LogLevel
from range_finder.exceptions import RangeFinderError


_SEVERITY = {level: rank for rank, level in enumerate(
    (LogLevel.DEBUG, LogLevel.INFO, LogLevel.WARN, LogLevel.ERROR)
)}

OUTPUT_FORMATS = ("json", "text", "both")

# Substrings matched case-insensitively against data keys
CREDENTIAL_MARKERS = (
    "token",
    "csrf",
    "cookie",
    "session_id",
    "secret",
    "password",
    "api_key",
    "authorization",
    "credential",
)

MASK = "***MASKED***"


def is_credential_key(key: Any) -> bool:
    lowered = str(key).lower()
    return any(marker in lowered for marker in CREDENTIAL_MARKERS)


def mask_credentials(value: Any) -> Any:
    """Return a copy of `value` with credential-keyed entries masked at any depth."""
    if isinstance(value, dict):
        return {
            key: MASK if is_credential_key(key) else mask_credentials(item)
            for key, item in value.items()
        }
    if isinstance(value, (list, tuple)):
        return [mask_credentials(item) for item in value]
    return value


@dataclass
class LogEntry:
    """One structured event."""

    timestamp: str
    level: LogLevel
    component: str
    message: str
    data: dict = field(default_factory=dict)

    def to_json(self) -> str:
        record = {
            "timestamp": self.timestamp,
            "level": self.level.value,
            "component": self.component,
            "message": self.message,
            "data": self.data,
        }
        return json.dumps(record, ensure_ascii=False, default=str)

    def to_text(self) -> str:
        line = f"[{self.timestamp}] {self.level.value.upper()} [{self.component}] {self.message}"
        if self.data:
            line += " " + json.dumps(self.data, ensure_ascii=False, default=str)
        return line


class EventLogger:
    """
    Structured, level-filtered event logger.

    Entries at or above `min_level` are masked, kept in a bounded ring (the
    tests inspect it through `entries`) and written to the output stream as
    JSON lines, text lines, or both.
    """

    MASK_VALUE = MASK

    def __init__(
        self,
        output_format: str = "text",
        output_stream: Optional[TextIO] = None,
        min_level: LogLevel = LogLevel.INFO,
        max_entries: int = 1000,
    ):
        if output_format not in OUTPUT_FORMATS:
            raise ValueError(f"Invalid output_format: {output_format}")

        self._output_format = output_format
        self._stream = output_stream or sys.stderr
        self._min_level = min_level
        self._recent: deque[LogEntry] = deque(maxlen=max_entries)

    @classmethod
    def from_config(cls, level: str, output_format: str, output_stream: Optional[TextIO] = None) -> "EventLogger":
        """Build a logger from LoggingConfig values."""
        return cls(output_format=output_format, output_stream=output_stream, min_level=LogLevel(level))

    @property
    def output_format(self) -> str:
        return self._output_format

    @property
    def min_level(self) -> LogLevel:
        return self._min_level

    @property
    def entries(self) -> list[LogEntry]:
        return list(self._recent)

    def is_enabled_for(self, level: LogLevel) -> bool:
        return _SEVERITY[level] >= _SEVERITY[self._min_level]

    def log(
        self,
        level: LogLevel,
        component: str,
        message: str,
        data: Optional[dict] = None,
    ) -> Optional[LogEntry]:
        """
        Record and write one event.

        Returns:
            The stored LogEntry, or None when `level` is below the minimum
        """
        if not self.is_enabled_for(level):
            return None

        entry = LogEntry(
            timestamp=datetime.now(timezone.utc).isoformat(),
            level=level,
            component=component,
            message=message,
            data=mask_credentials(data or {}),
        )
        self._recent.append(entry)
        self._write(entry)
        return entry

    def debug(self, component: str, message: str, data: Optional[dict] = None) -> Optional[LogEntry]:
        return self.log(LogLevel.DEBUG, component, message, data)

    def info(self, component: str, message: str, data: Optional[dict] = None) -> Optional[LogEntry]:
        return self.log(LogLevel.INFO, component, message, data)

    def warn(self, component: str, message: str, data: Optional[dict] = None) -> Optional[LogEntry]:
        return self.log(LogLevel.WARN, component, message, data)

    def log_error(
        self,
        component: str,
        message: str,
        error: Optional[BaseException] = None,
        request_url: Optional[str] = None,
        response_status_code: Optional[int] = None,
        additional_data: Optional[dict] = None,
    ) -> Optional[LogEntry]:
        """
        Log a failure at ERROR level.

        The exception's type and text are added to the data, together with
        its code and details when it is a RangeFinderError, and the request
        URL and status when the failure came from the portal.
        """
        context = dict(additional_data or {})
        if isinstance(error, RangeFinderError):
            payload = error.to_dict()
            context["error_type"] = payload["error_type"]
            context["error_message"] = payload["message"]
            context["error_code"] = payload["code"]
            if payload["details"]:
                context["error_details"] = payload["details"]
        elif error is not None:
            context["error_type"] = type(error).__name__
            context["error_message"] = str(error)
        if request_url is not None:
            context["request_url"] = request_url
        if response_status_code is not None:
            context["response_status_code"] = response_status_code

        return self.log(LogLevel.ERROR, component, message, context)

    def get_text_output(self, entry: LogEntry) -> str:
        return entry.to_text()

    def clear_entries(self) -> None:
        self._recent.clear()

    def _write(self, entry: LogEntry) -> None:
        lines = []
        if self._output_format != "text":
            lines.append(entry.to_json())
        if self._output_format != "json":
            lines.append(entry.to_text())
        self._stream.write("\n".join(lines) + "\n")
        self._stream.flush()
