"""
Command-line interface for the range finder system.

This module provides the main CLI entry point with commands for:
- run: Start the monitor loop (with --dry-run for simulation mode)
- top / search: Query the ranked ranges
- sweep: Run a retention sweep now
- login: Perform a browser login and store the credential
- blacklist: List or clear blacklisted query keys
- config: Configuration management
- self-test: Verify configuration, portal and database
"""

import argparse
import asyncio
import json
import os
import signal
import sys
import tempfile
from datetime import datetime
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

from . import __version__
from .config import (
    BlacklistConfig,
    DedupConfig,
    LoggingConfig,
    PersistenceConfig,
    RetentionConfig,
    RetryConfig,
    SchedulerConfig,
    SessionConfig,
    SourceConfig,
    SystemConfig,
    validate_config,
)
from .credentials import EnvCredentialStore
from .enums import LogLevel
from .event_logger import EventLogger
from .exceptions import ConfigurationError, RangeFinderError, StorageError
from .login_flow import PlaywrightLoginFlow, SimulatedLoginFlow
from .models import RangeView
from .orchestrator import MonitorOrchestrator
from .ranking import RankingService
from .retention import RetentionSweeper
from .retry_manager import RetryManager
from .scheduler import Scheduler
from .self_test import run_self_test
from .session_manager import SessionLifecycleManager
from .source_provider import HttpSourceProvider, SimulatedSourceProvider
from .sql_store import SqlAggregationStore
from .store import InMemoryAggregationStore

DEFAULT_CONFIG_PATH = Path.home() / ".range_finder" / "config.json"

EXIT_CONFIG_ERROR = 2


def create_default_config(
    simulation_mode: bool = False,
    database_path: Optional[Path] = None,
) -> SystemConfig:
    """
    Create a default system configuration.

    Args:
        simulation_mode: Enable simulation mode (no real network requests)
        database_path: Path of the SQLite database

    Returns:
        SystemConfig with default settings
    """
    return SystemConfig(
        persistence=PersistenceConfig(
            database_path=database_path or PersistenceConfig().database_path,
        ),
        simulation_mode=simulation_mode,
    )


def config_to_dict(config: SystemConfig) -> dict:
    """Serialize a configuration to plain JSON types. Secrets are not written."""
    return {
        "source": {
            "base_url": config.source.base_url,
            "search_path": config.source.search_path,
            "login_path": config.source.login_path,
            "access_path": config.source.access_path,
            "session_cookie_name": config.source.session_cookie_name,
            "login_markers": list(config.source.login_markers),
            "keys": list(config.source.keys),
            "user_agent": config.source.user_agent,
        },
        "scheduler": {
            "batch_size": config.scheduler.batch_size,
            "request_timeout_seconds": config.scheduler.request_timeout_seconds,
            "deadline_grace_seconds": config.scheduler.deadline_grace_seconds,
            "batch_delay_seconds": config.scheduler.batch_delay_seconds,
        },
        "session": {
            "refresh_interval_seconds": config.session.refresh_interval_seconds,
            "env_file": str(config.session.env_file),
            "use_browserless": config.session.use_browserless,
            "browserless_endpoint": config.session.browserless_endpoint,
            "login_timeout_seconds": config.session.login_timeout_seconds,
            "headless": config.session.headless,
        },
        "retry": {
            "max_retries": config.retry.max_retries,
            "base_delay_seconds": config.retry.base_delay_seconds,
            "max_delay_seconds": config.retry.max_delay_seconds,
            "cooldown_seconds": config.retry.cooldown_seconds,
        },
        "dedup": {
            "staleness_cutoff_seconds": config.dedup.staleness_cutoff_seconds,
            "bucket_seconds": config.dedup.bucket_seconds,
            "lookup_chunk_size": config.dedup.lookup_chunk_size,
        },
        "retention": {
            "horizon_seconds": config.retention.horizon_seconds,
            "sweep_interval_seconds": config.retention.sweep_interval_seconds,
        },
        "blacklist": {
            "threshold": config.blacklist.threshold,
        },
        "persistence": {
            "database_path": str(config.persistence.database_path),
        },
        "logging": {
            "level": config.logging.level,
            "output_format": config.logging.output_format,
            "status_interval_seconds": config.logging.status_interval_seconds,
        },
        "simulation_mode": config.simulation_mode,
        "startup_self_test": config.startup_self_test,
    }


def config_from_dict(data: dict) -> SystemConfig:
    """
    Build a configuration from a dict, using defaults for missing keys.

    Raises:
        TypeError: If a section contains unknown keys
    """
    session_data = dict(data.get("session", {}))
    if "env_file" in session_data:
        session_data["env_file"] = Path(session_data["env_file"])
    persistence_data = dict(data.get("persistence", {}))
    if "database_path" in persistence_data:
        persistence_data["database_path"] = Path(persistence_data["database_path"])

    return SystemConfig(
        source=SourceConfig(**data.get("source", {})),
        scheduler=SchedulerConfig(**data.get("scheduler", {})),
        session=SessionConfig(**session_data),
        retry=RetryConfig(**data.get("retry", {})),
        dedup=DedupConfig(**data.get("dedup", {})),
        retention=RetentionConfig(**data.get("retention", {})),
        blacklist=BlacklistConfig(**data.get("blacklist", {})),
        persistence=PersistenceConfig(**persistence_data),
        logging=LoggingConfig(**data.get("logging", {})),
        simulation_mode=data.get("simulation_mode", False),
        startup_self_test=data.get("startup_self_test", False),
    )


def load_config_from_file(config_path: Path) -> Optional[SystemConfig]:
    """
    Load configuration from a JSON file.

    Args:
        config_path: Path to the configuration file

    Returns:
        SystemConfig if successful, None otherwise
    """
    try:
        with open(config_path, "r", encoding="utf-8") as f:
            data = json.load(f)
        return config_from_dict(data)
    except (json.JSONDecodeError, KeyError, TypeError, AttributeError) as e:
        print(f"Error loading config: {e}", file=sys.stderr)
        return None
    except FileNotFoundError:
        return None


def save_config_to_file(config: SystemConfig, config_path: Path) -> bool:
    """
    Save configuration to a JSON file.

    Args:
        config: SystemConfig to save
        config_path: Path to save the configuration

    Returns:
        True if successful, False otherwise
    """
    try:
        config_path.parent.mkdir(parents=True, exist_ok=True)
        with open(config_path, "w", encoding="utf-8") as f:
            json.dump(config_to_dict(config), f, indent=2, ensure_ascii=False)
        return True
    except (OSError, TypeError) as e:
        print(f"Error saving config: {e}", file=sys.stderr)
        return False


def apply_environment(config: SystemConfig) -> SystemConfig:
    """Overlay secrets and switches from the environment (.env included)."""
    load_dotenv(config.session.env_file)
    api_key = os.environ.get("BROWSERLESS_API_KEY")
    if api_key:
        config.session.browserless_api_key = api_key
    use_browserless = os.environ.get("USE_BROWSERLESS")
    if use_browserless is not None:
        config.session.use_browserless = use_browserless.strip().lower() in ("1", "true", "yes")
    return config


def resolve_config(args: argparse.Namespace) -> Optional[SystemConfig]:
    """Load the configuration named on the command line, or the default one."""
    config_path = Path(args.config) if getattr(args, "config", None) else DEFAULT_CONFIG_PATH
    config = load_config_from_file(config_path)
    if config is None:
        if getattr(args, "config", None):
            print(f"Error: Could not load config from {args.config}", file=sys.stderr)
            return None
        config = create_default_config()

    if getattr(args, "dry_run", False):
        config.simulation_mode = True
    if getattr(args, "database", None):
        config.persistence.database_path = Path(args.database)
    return apply_environment(config)


def build_logger(config: SystemConfig, verbose: bool = False) -> EventLogger:
    level = LogLevel.DEBUG if verbose else LogLevel(config.logging.level)
    return EventLogger(output_format=config.logging.output_format, min_level=level)


def format_timestamp(ms: int) -> str:
    return datetime.fromtimestamp(ms / 1000).strftime("%H:%M:%S")


def print_ranges(views: list[RangeView], title: str) -> None:
    """Print a ranking table."""
    print(title)
    print("-" * 96)
    print(f"{'RANK':<6}{'RANGE':<40}{'COUNTRY':<15}{'CALLS':<8}{'CLIS':<6}{'SEEN':<10}LATEST CLIS")
    print("-" * 96)
    if not views:
        print("No active ranges.")
        return
    for index, view in enumerate(views, start=1):
        name = view.name if len(view.name) <= 38 else view.name[:35] + "..."
        country = view.source_key if len(view.source_key) <= 13 else view.source_key[:10] + "..."
        print(
            f"{'#' + str(index):<6}{name:<40}{country:<15}{view.calls:<8}"
            f"{view.cli_count:<6}{format_timestamp(view.last_seen_at_ms):<10}"
            f"{', '.join(view.recent_clis)}"
        )


def build_session_manager(
    config: SystemConfig,
    scheduler: Optional[Scheduler],
    logger: Optional[EventLogger],
    env_file: Optional[Path] = None,
) -> SessionLifecycleManager:
    """Wire the session manager with the real or simulated login flow."""
    if config.simulation_mode:
        login_flow = SimulatedLoginFlow()
    else:
        login_flow = PlaywrightLoginFlow(config.source, config.session, logger)
    return SessionLifecycleManager(
        login_flow=login_flow,
        credential_store=EnvCredentialStore(
            env_file or config.session.env_file,
            update_environ=not config.simulation_mode,
        ),
        config=config.session,
        retry_manager=RetryManager(config.retry),
        scheduler=scheduler,
        logger=logger,
    )


async def run_monitor(
    config: SystemConfig,
    max_passes: Optional[int] = None,
    verbose: bool = False,
) -> int:
    """
    Run the monitor loop until interrupted.

    Args:
        config: System configuration
        max_passes: Optional number of passes after which to stop
        verbose: Enable debug logging

    Returns:
        Exit code
    """
    logger = build_logger(config, verbose)

    if config.startup_self_test:
        result = await run_self_test(config, print_output=verbose, logger=logger)
        if not result.success:
            print("Self-test failed; not starting.", file=sys.stderr)
            return 1

    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_event.set)
        except (NotImplementedError, RuntimeError):
            pass

    scheduler = Scheduler(logger=logger)

    if config.simulation_mode:
        logger.info("CLI", "Simulation mode: no network requests, in-memory store")
        with tempfile.TemporaryDirectory() as tmp:
            session_manager = build_session_manager(config, scheduler, logger, Path(tmp) / ".env")
            orchestrator = MonitorOrchestrator(
                config=config,
                store=InMemoryAggregationStore(),
                provider=SimulatedSourceProvider(),
                session_manager=session_manager,
                scheduler=scheduler,
                logger=logger,
            )
            stats = await orchestrator.run(stop_event, max_passes=max_passes)
            print_ranges(orchestrator.ranking.top_ranges(10), "TOP 10 RANGES (simulated)")
    else:
        session_manager = build_session_manager(config, scheduler, logger)
        store = SqlAggregationStore(
            config.persistence.database_path, chunk_size=config.dedup.lookup_chunk_size
        )
        try:
            async with HttpSourceProvider(
                config.source,
                session_manager,
                timeout=config.scheduler.request_timeout_seconds,
                logger=logger,
            ) as provider:
                orchestrator = MonitorOrchestrator(
                    config=config,
                    store=store,
                    provider=provider,
                    session_manager=session_manager,
                    scheduler=scheduler,
                    logger=logger,
                )
                stats = await orchestrator.run(stop_event, max_passes=max_passes)
        finally:
            store.close()

    logger.info(
        "CLI",
        "Monitor stopped",
        {"requests": stats.total_requests, "records": stats.total_records, "passes": stats.passes_completed},
    )
    return 0


def _open_store(config: SystemConfig) -> SqlAggregationStore:
    store = SqlAggregationStore(config.persistence.database_path)
    store.initialize()
    return store


def cmd_run(args: argparse.Namespace) -> int:
    """Handle the 'run' command."""
    config = resolve_config(args)
    if config is None:
        return 1
    try:
        config.validate_or_raise()
        return asyncio.run(run_monitor(config, max_passes=args.passes, verbose=args.verbose))
    except ConfigurationError as e:
        print(f"Configuration error: {e.message}", file=sys.stderr)
        return EXIT_CONFIG_ERROR
    except KeyboardInterrupt:
        return 0


def cmd_top(args: argparse.Namespace) -> int:
    """Handle the 'top' command."""
    config = resolve_config(args)
    if config is None:
        return 1
    store = _open_store(config)
    try:
        print_ranges(RankingService(store).top_ranges(args.limit), f"TOP {args.limit} RANGES")
    finally:
        store.close()
    return 0


def cmd_search(args: argparse.Namespace) -> int:
    """Handle the 'search' command."""
    config = resolve_config(args)
    if config is None:
        return 1
    store = _open_store(config)
    try:
        views = RankingService(store).search(args.keyword, args.limit)
        print_ranges(views, f"RANGES MATCHING '{args.keyword}'")
    finally:
        store.close()
    return 0 if views else 1


def cmd_sweep(args: argparse.Namespace) -> int:
    """Handle the 'sweep' command."""
    config = resolve_config(args)
    if config is None:
        return 1
    store = _open_store(config)
    try:
        result = RetentionSweeper(store, config.retention).sweep()
    except StorageError as e:
        print(f"Sweep failed: {e.message}", file=sys.stderr)
        return 1
    finally:
        store.close()
    print(
        f"Removed {result.history_deleted} history, {result.clis_deleted} CLI "
        f"and {result.ranges_deleted} range row(s)."
    )
    return 0


async def _login_once(config: SystemConfig, logger: EventLogger) -> int:
    manager = build_session_manager(config, scheduler=None, logger=logger)
    try:
        session = await manager.force_refresh()
    except RangeFinderError as e:
        print(f"Login failed: {e.message}", file=sys.stderr)
        return 1
    print(f"Logged in. Credential written to {config.session.env_file}")
    print(f"  Session: {session.session_token[:6]}...  CSRF: {session.csrf_token[:6]}...")
    return 0


def cmd_login(args: argparse.Namespace) -> int:
    """Handle the 'login' command."""
    config = resolve_config(args)
    if config is None:
        return 1
    try:
        config.validate_or_raise()
        return asyncio.run(_login_once(config, build_logger(config, args.verbose)))
    except ConfigurationError as e:
        print(f"Configuration error: {e.message}", file=sys.stderr)
        return EXIT_CONFIG_ERROR


def cmd_blacklist(args: argparse.Namespace) -> int:
    """Handle the 'blacklist' command."""
    config = resolve_config(args)
    if config is None:
        return 1
    store = _open_store(config)
    try:
        if args.action == "list":
            entries = store.load_blacklist()
            blacklisted = sorted(
                (e for e in entries.values() if e.blacklisted), key=lambda e: e.source_key
            )
            if not blacklisted:
                print("No blacklisted keys.")
            for entry in blacklisted:
                since = format_timestamp(entry.blacklisted_at_ms) if entry.blacklisted_at_ms else "-"
                print(f"  {entry.source_key:<40} since {since}")
            return 0

        removed = store.clear_blacklist(args.keys or None)
        print(f"Removed {removed} blacklist entr{'y' if removed == 1 else 'ies'}.")
        return 0
    finally:
        store.close()


def cmd_self_test(args: argparse.Namespace) -> int:
    """Handle the 'self-test' command."""
    config = resolve_config(args)
    if config is None:
        return 1
    result = asyncio.run(run_self_test(config=config, print_output=True))
    return 0 if result.success else 1


def cmd_config(args: argparse.Namespace) -> int:
    """Handle the 'config' command."""
    config_path = Path(args.path) if args.path else DEFAULT_CONFIG_PATH

    if args.action == "show":
        config = load_config_from_file(config_path)
        if config is None:
            print(f"No configuration found at: {config_path}")
            print("Use 'config init' to create a default configuration.")
            return 1

        print(f"Configuration from: {config_path}")
        print(f"  Portal: {config.source.base_url}")
        print(f"  Keys: {len(config.source.keys) or 'all countries'}")
        print(f"  Batch size: {config.scheduler.batch_size}")
        print(f"  Refresh interval: {config.session.refresh_interval_seconds:.0f}s")
        print(f"  Browserless: {config.session.use_browserless}")
        print(f"  Retention: {config.retention.horizon_seconds}s")
        print(f"  Blacklist threshold: {config.blacklist.threshold}")
        print(f"  Database: {config.persistence.database_path}")
        print(f"  Log level: {config.logging.level}")
        print(f"  Simulation mode: {config.simulation_mode}")
        return 0

    elif args.action == "init":
        if config_path.exists() and not args.force:
            print(f"Configuration already exists at: {config_path}")
            print("Use --force to overwrite.")
            return 1

        if save_config_to_file(create_default_config(), config_path):
            print(f"Configuration created at: {config_path}")
            return 0
        return 1

    elif args.action == "validate":
        config = load_config_from_file(config_path)
        if config is None:
            print(f"Error: Could not load config from {config_path}", file=sys.stderr)
            return 1

        errors, warnings = validate_config(config)
        for warning in warnings:
            print(f"Warning: {warning}")
        if errors:
            for error in errors:
                print(f"Error: {error}", file=sys.stderr)
            return EXIT_CONFIG_ERROR

        print(f"Configuration at {config_path} is valid.")
        return 0

    return 1


def _add_common(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--config", "-c",
        help="Path to configuration file",
    )
    parser.add_argument(
        "--database", "-d",
        help="Path to the SQLite database (overrides the configuration)",
    )
    parser.add_argument(
        "--verbose", "-v",
        action="store_true",
        help="Enable verbose output",
    )


def create_parser() -> argparse.ArgumentParser:
    """Create the argument parser for the CLI."""
    parser = argparse.ArgumentParser(
        prog="range-finder",
        description="Call-sighting monitor ranking active ranges of a carrier test portal",
    )
    parser.add_argument(
        "--version",
        action="version",
        version=f"%(prog)s {__version__}",
    )

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    # 'run' command
    run_parser = subparsers.add_parser("run", help="Start the monitor loop")
    run_parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Simulation mode - no real network requests, in-memory store",
    )
    run_parser.add_argument(
        "--passes",
        type=int,
        default=None,
        help="Stop after this many passes over the key universe",
    )
    _add_common(run_parser)
    run_parser.set_defaults(func=cmd_run)

    # 'top' command
    top_parser = subparsers.add_parser("top", help="Show the most active ranges")
    top_parser.add_argument("--limit", "-n", type=int, default=10, help="Number of ranges")
    _add_common(top_parser)
    top_parser.set_defaults(func=cmd_top)

    # 'search' command
    search_parser = subparsers.add_parser("search", help="Search ranges by name or country")
    search_parser.add_argument("keyword", help="Case-insensitive substring")
    search_parser.add_argument("--limit", "-n", type=int, default=10, help="Number of ranges")
    _add_common(search_parser)
    search_parser.set_defaults(func=cmd_search)

    # 'sweep' command
    sweep_parser = subparsers.add_parser("sweep", help="Run a retention sweep now")
    _add_common(sweep_parser)
    sweep_parser.set_defaults(func=cmd_sweep)

    # 'login' command
    login_parser = subparsers.add_parser("login", help="Log in and store a fresh credential")
    _add_common(login_parser)
    login_parser.set_defaults(func=cmd_login)

    # 'blacklist' command
    blacklist_parser = subparsers.add_parser("blacklist", help="Blacklist management")
    blacklist_parser.add_argument("action", choices=["list", "clear"], help="Blacklist action")
    blacklist_parser.add_argument("keys", nargs="*", help="Keys to clear (all when omitted)")
    _add_common(blacklist_parser)
    blacklist_parser.set_defaults(func=cmd_blacklist)

    # 'config' command
    config_parser = subparsers.add_parser("config", help="Configuration management")
    config_parser.add_argument(
        "action",
        choices=["show", "init", "validate"],
        help="Configuration action",
    )
    config_parser.add_argument("--path", "-p", help="Path to configuration file")
    config_parser.add_argument(
        "--force", "-f",
        action="store_true",
        help="Force overwrite existing configuration",
    )
    config_parser.set_defaults(func=cmd_config)

    # 'self-test' command
    self_test_parser = subparsers.add_parser(
        "self-test",
        help="Verify configuration, portal connectivity and database",
    )
    _add_common(self_test_parser)
    self_test_parser.set_defaults(func=cmd_self_test)

    return parser


def main(argv: Optional[list[str]] = None) -> int:
    """
    Main entry point for the CLI.

    Args:
        argv: Command line arguments (defaults to sys.argv[1:])

    Returns:
        Exit code
    """
    parser = create_parser()
    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        return 0

    return args.func(args)


if __name__ == "__main__":
    sys.exit(main())
