"""
Range Finder - Call-sighting monitor for a carrier test portal.

This package polls the portal's CLI access table for every country, folds the
sightings into a windowed aggregation store and ranks the ranges that are
receiving the most distinct calls right now.
"""

__version__ = "0.1.0"
__author__ = "Range Finder Team"

from range_finder.exceptions import (
    RangeFinderError,
    ConfigurationError,
    NetworkError,
    AuthenticationError,
    LoginError,
    StorageError,
    PersistenceError,
)
from range_finder.enums import (
    LogLevel,
    SessionState,
    FetchOutcome,
    RefreshTrigger,
    ErrorCode,
)
from range_finder.config import (
    SourceConfig,
    SchedulerConfig,
    SessionConfig,
    RetryConfig,
    DedupConfig,
    RetentionConfig,
    BlacklistConfig,
    PersistenceConfig,
    LoggingConfig,
    SystemConfig,
    validate_config,
)
from range_finder.models import (
    RawRecord,
    NormalizedRecord,
    FetchResult,
    TokenPair,
    AuthSession,
    RangeAggregate,
    CliAggregate,
    RangeView,
    BlacklistEntry,
    BatchApplyResult,
    BatchSummary,
    SweepResult,
    MonitorStats,
)
from range_finder.event_logger import (
    EventLogger,
    LogEntry,
)
from range_finder.normalizer import (
    RecordNormalizer,
    parse_relative_age,
    fingerprint,
    time_bucket,
    UNPARSEABLE_AGE_SECONDS,
)
from range_finder.store import (
    AggregationStore,
    InMemoryAggregationStore,
)
from range_finder.sql_store import (
    SqlAggregationStore,
)
from range_finder.deduplicator import (
    Deduplicator,
    DedupResult,
)
from range_finder.ranking import (
    RankingService,
)
from range_finder.retention import (
    RetentionSweeper,
)
from range_finder.blacklist import (
    BlacklistController,
)
from range_finder.retry_manager import (
    RetryManager,
    RetryResult,
)
from range_finder.scheduler import (
    Scheduler,
    ScheduledTask,
)
from range_finder.credentials import (
    EnvCredentialStore,
)
from range_finder.login_flow import (
    LoginFlow,
    PlaywrightLoginFlow,
    SimulatedLoginFlow,
)
from range_finder.session_manager import (
    SessionLifecycleManager,
)
from range_finder.source_provider import (
    SourceProvider,
    HttpSourceProvider,
    SimulatedSourceProvider,
    parse_rows,
)
from range_finder.fetch_scheduler import (
    FetchScheduler,
    plan_batches,
    default_universe,
)
from range_finder.orchestrator import (
    MonitorOrchestrator,
)
from range_finder.cli import (
    main as cli_main,
    create_parser,
    create_default_config,
    load_config_from_file,
    save_config_to_file,
)
from range_finder.self_test import (
    SelfTest,
    SelfTestResult,
    ComponentTestResult,
    ConfigValidationResult,
    run_self_test,
)

__all__ = [
    # Exceptions
    "RangeFinderError",
    "ConfigurationError",
    "NetworkError",
    "AuthenticationError",
    "LoginError",
    "StorageError",
    "PersistenceError",
    # Enums
    "LogLevel",
    "SessionState",
    "FetchOutcome",
    "RefreshTrigger",
    "ErrorCode",
    # Configuration
    "SourceConfig",
    "SchedulerConfig",
    "SessionConfig",
    "RetryConfig",
    "DedupConfig",
    "RetentionConfig",
    "BlacklistConfig",
    "PersistenceConfig",
    "LoggingConfig",
    "SystemConfig",
    "validate_config",
    # Models
    "RawRecord",
    "NormalizedRecord",
    "FetchResult",
    "TokenPair",
    "AuthSession",
    "RangeAggregate",
    "CliAggregate",
    "RangeView",
    "BlacklistEntry",
    "BatchApplyResult",
    "BatchSummary",
    "SweepResult",
    "MonitorStats",
    # Event Logger
    "EventLogger",
    "LogEntry",
    # Normalizer
    "RecordNormalizer",
    "parse_relative_age",
    "fingerprint",
    "time_bucket",
    "UNPARSEABLE_AGE_SECONDS",
    # Stores
    "AggregationStore",
    "InMemoryAggregationStore",
    "SqlAggregationStore",
    # Deduplicator
    "Deduplicator",
    "DedupResult",
    # Ranking
    "RankingService",
    # Retention
    "RetentionSweeper",
    # Blacklist
    "BlacklistController",
    # Retry Manager
    "RetryManager",
    "RetryResult",
    # Scheduler
    "Scheduler",
    "ScheduledTask",
    # Session
    "EnvCredentialStore",
    "LoginFlow",
    "PlaywrightLoginFlow",
    "SimulatedLoginFlow",
    "SessionLifecycleManager",
    # Source
    "SourceProvider",
    "HttpSourceProvider",
    "SimulatedSourceProvider",
    "parse_rows",
    # Fetch Scheduler
    "FetchScheduler",
    "plan_batches",
    "default_universe",
    # Orchestrator
    "MonitorOrchestrator",
    # CLI
    "cli_main",
    "create_parser",
    "create_default_config",
    "load_config_from_file",
    "save_config_to_file",
    # Self-Test
    "SelfTest",
    "SelfTestResult",
    "ComponentTestResult",
    "ConfigValidationResult",
    "run_self_test",
]
