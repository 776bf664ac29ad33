"""
Configuration dataclasses for the range finder system.

This module defines all configuration structures used throughout the system,
including the portal source, fetch scheduling, session lifecycle, retry
policy, deduplication, retention, blacklist, persistence, and logging.
"""

from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional
from urllib.parse import urlparse

from .enums import ErrorCode
from .exceptions import ConfigurationError


@dataclass
class SourceConfig:
    """Portal endpoint and query-key universe."""

    base_url: str = "https://www.orangecarrier.com"
    search_path: str = "/testaccount/services/cli/access/get"
    login_path: str = "/login"
    access_path: str = "/testaccount/services/cli/access"
    session_cookie_name: str = "orange_carrier_session"
    login_markers: list[str] = field(
        default_factory=lambda: ["Log in to Your IPRN Account", "login-form"]
    )
    # Empty means every ISO 3166 country name
    keys: list[str] = field(default_factory=list)
    user_agent: str = (
        "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
        "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
    )

    @property
    def search_url(self) -> str:
        return f"{self.base_url.rstrip('/')}{self.search_path}"


@dataclass
class SchedulerConfig:
    """Batch fetch scheduling."""

    batch_size: int = 50
    request_timeout_seconds: float = 15.0
    deadline_grace_seconds: float = 5.0
    batch_delay_seconds: float = 0.5

    @property
    def deadline_seconds(self) -> float:
        """Hard outer deadline for a single fetch."""
        return self.request_timeout_seconds + self.deadline_grace_seconds


@dataclass
class SessionConfig:
    """Session refresh and login flow configuration."""

    refresh_interval_seconds: float = 110 * 60
    env_file: Path = Path(".env")
    use_browserless: bool = False
    browserless_api_key: Optional[str] = None
    browserless_endpoint: str = "wss://production-sfo.browserless.io"
    login_timeout_seconds: float = 60.0
    headless: bool = True


@dataclass
class RetryConfig:
    """Retry behavior configuration."""

    max_retries: int = 3
    base_delay_seconds: float = 30.0
    max_delay_seconds: float = 120.0
    cooldown_seconds: float = 300.0


@dataclass
class DedupConfig:
    """Normalization and deduplication settings."""

    staleness_cutoff_seconds: int = 300
    bucket_seconds: int = 120
    lookup_chunk_size: int = 500


@dataclass
class RetentionConfig:
    """Retention sweeper settings."""

    horizon_seconds: int = 300
    sweep_interval_seconds: float = 60.0


@dataclass
class BlacklistConfig:
    """Blacklist controller settings."""

    threshold: int = 10


@dataclass
class PersistenceConfig:
    """Aggregation store location."""

    database_path: Path = Path("database") / "range_finder.db"


@dataclass
class LoggingConfig:
    """Logging configuration."""

    level: str = "info"
    output_format: str = "text"  # 'json', 'text', 'both'
    status_interval_seconds: float = 30.0


@dataclass
class SystemConfig:
    """Main system configuration combining all sub-configurations."""

    source: SourceConfig = field(default_factory=SourceConfig)
    scheduler: SchedulerConfig = field(default_factory=SchedulerConfig)
    session: SessionConfig = field(default_factory=SessionConfig)
    retry: RetryConfig = field(default_factory=RetryConfig)
    dedup: DedupConfig = field(default_factory=DedupConfig)
    retention: RetentionConfig = field(default_factory=RetentionConfig)
    blacklist: BlacklistConfig = field(default_factory=BlacklistConfig)
    persistence: PersistenceConfig = field(default_factory=PersistenceConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    simulation_mode: bool = False
    startup_self_test: bool = False

    def validate_or_raise(self) -> None:
        """
        Raise ConfigurationError if the configuration has fatal errors.

        Raises:
            ConfigurationError: With all errors listed in details
        """
        errors, _ = validate_config(self)
        if errors:
            code = ErrorCode.INVALID_CONFIG.value
            if any("BROWSERLESS_API_KEY" in e for e in errors):
                code = ErrorCode.MISSING_SECRET.value
            raise ConfigurationError(
                code=code,
                message=errors[0],
                details={"errors": errors},
            )


def validate_config(config: SystemConfig) -> tuple[list[str], list[str]]:
    """
    Validate a system configuration.

    Returns:
        Tuple of (errors, warnings)
    """
    errors: list[str] = []
    warnings: list[str] = []

    parsed = urlparse(config.source.base_url)
    if parsed.scheme.lower() not in ("http", "https") or not parsed.netloc:
        errors.append(f"Invalid portal base URL: {config.source.base_url}")
    elif parsed.scheme.lower() != "https":
        warnings.append("Portal base URL does not use HTTPS")

    if config.scheduler.batch_size < 1:
        errors.append("scheduler.batch_size must be at least 1")
    if config.scheduler.request_timeout_seconds <= 0:
        errors.append("scheduler.request_timeout_seconds must be positive")
    if config.scheduler.deadline_grace_seconds < 0:
        errors.append("scheduler.deadline_grace_seconds must not be negative")
    if config.scheduler.batch_delay_seconds < 0:
        errors.append("scheduler.batch_delay_seconds must not be negative")

    if config.session.refresh_interval_seconds <= 0:
        errors.append("session.refresh_interval_seconds must be positive")
    if config.session.use_browserless and not config.session.browserless_api_key:
        errors.append("BROWSERLESS_API_KEY is required when browserless mode is enabled")

    if config.retry.max_retries < 0:
        errors.append("retry.max_retries must not be negative")
    elif config.retry.max_retries == 0:
        warnings.append("max_retries is 0 - failed refreshes go straight to cooldown")
    if config.retry.base_delay_seconds < 0 or config.retry.cooldown_seconds < 0:
        errors.append("retry delays must not be negative")

    if config.dedup.bucket_seconds < 1:
        errors.append("dedup.bucket_seconds must be at least 1")
    if config.dedup.lookup_chunk_size < 1:
        errors.append("dedup.lookup_chunk_size must be at least 1")
    if config.dedup.staleness_cutoff_seconds < 0:
        errors.append("dedup.staleness_cutoff_seconds must not be negative")

    if config.retention.horizon_seconds < 1:
        errors.append("retention.horizon_seconds must be at least 1")
    if config.retention.sweep_interval_seconds <= 0:
        errors.append("retention.sweep_interval_seconds must be positive")
    if config.retention.horizon_seconds < config.dedup.bucket_seconds:
        warnings.append(
            "retention horizon is shorter than the dedup bucket - "
            "re-reported sightings may be counted twice"
        )

    if config.blacklist.threshold < 1:
        errors.append("blacklist.threshold must be at least 1")

    if config.logging.output_format not in ("json", "text", "both"):
        errors.append(f"Invalid logging.output_format: {config.logging.output_format}")
    if config.logging.level not in ("debug", "info", "warn", "error"):
        errors.append(f"Invalid logging.level: {config.logging.level}")

    return errors, warnings
