"""
SQLite-backed Aggregation Store.

Uses SQLAlchemy 2.x ORM models over a SQLite database in WAL mode so readers
(ranking queries) never block the single writer (the monitor loop).
"""

import threading
from contextlib import nullcontext
from pathlib import Path
from typing import Iterable, Iterator, Optional, TypeVar, Union

from sqlalchemy import (
    BigInteger,
    Boolean,
    Index,
    Integer,
    String,
    create_engine,
    delete,
    event,
    func,
    or_,
    select,
    update,
)
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import DeclarativeBase, Mapped, Session, mapped_column, sessionmaker
from sqlalchemy.pool import StaticPool

from .enums import ErrorCode
from .exceptions import StorageError
from .models import (
    BatchApplyResult,
    BlacklistEntry,
    CliAggregate,
    NormalizedRecord,
    RangeAggregate,
    RangeView,
    SweepResult,
)
from .store import RECENT_CLI_LIMIT

T = TypeVar("T")

MEMORY_DATABASE = ":memory:"

# SQLite caps bound parameters per statement
DEFAULT_CHUNK_SIZE = 500


class Base(DeclarativeBase):
    """Declarative base shared by all ORM models."""


class CallHistoryRow(Base):
    """A fingerprint that has already been counted."""

    __tablename__ = "call_history"

    fingerprint: Mapped[str] = mapped_column(String, primary_key=True)
    first_seen_at: Mapped[int] = mapped_column(BigInteger, index=True)


class RangeRow(Base):
    """Aggregate counters for one range."""

    __tablename__ = "ranges"
    __table_args__ = (
        Index("ix_ranges_ranking", "total_calls", "active_cli_count"),
    )

    name: Mapped[str] = mapped_column(String, primary_key=True)
    source_key: Mapped[str] = mapped_column(String, default="")
    total_calls: Mapped[int] = mapped_column(Integer, default=0)
    active_cli_count: Mapped[int] = mapped_column(Integer, default=0)
    last_seen_at: Mapped[int] = mapped_column(BigInteger, index=True)


class CliRow(Base):
    """Aggregate counters for one (range, cli) pair."""

    __tablename__ = "clis"

    range_name: Mapped[str] = mapped_column(String, primary_key=True)
    cli: Mapped[str] = mapped_column(String, primary_key=True)
    call_count: Mapped[int] = mapped_column(Integer, default=0)
    last_seen_at: Mapped[int] = mapped_column(BigInteger, index=True)


class BlacklistRow(Base):
    """Persisted per-key productivity tracking."""

    __tablename__ = "blacklist"

    source_key: Mapped[str] = mapped_column(String, primary_key=True)
    consecutive_empty_polls: Mapped[int] = mapped_column(Integer, default=0)
    blacklisted: Mapped[bool] = mapped_column(Boolean, default=False)
    blacklisted_at: Mapped[Optional[int]] = mapped_column(BigInteger, nullable=True)


def _chunks(items: list[T], size: int) -> Iterator[list[T]]:
    for start in range(0, len(items), size):
        yield items[start:start + size]


def create_sqlite_engine(database_path: Union[str, Path]):
    """
    Create an engine for the given database file (or ":memory:").

    File databases are switched to WAL journaling on every new connection.
    """
    if str(database_path) == MEMORY_DATABASE:
        engine = create_engine(
            "sqlite://",
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
    else:
        path = Path(database_path)
        path.parent.mkdir(parents=True, exist_ok=True)
        engine = create_engine(
            f"sqlite:///{path}",
            connect_args={"check_same_thread": False},
        )

    @event.listens_for(engine, "connect")
    def _set_sqlite_pragma(dbapi_connection, connection_record) -> None:
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA journal_mode=WAL")
        cursor.execute("PRAGMA synchronous=NORMAL")
        cursor.close()

    return engine


class SqlAggregationStore:
    """
    Aggregation store persisted in SQLite through SQLAlchemy.

    Writes are serialized with a lock and each runs in one transaction.
    An in-memory database shares a single connection, so reads take the
    lock too.
    """

    def __init__(
        self,
        database_path: Union[str, Path] = MEMORY_DATABASE,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
    ) -> None:
        self._database_path = database_path
        self._chunk_size = chunk_size
        self._engine = create_sqlite_engine(database_path)
        self._session_factory = sessionmaker(bind=self._engine, expire_on_commit=False)
        self._write_lock = threading.RLock()
        self._shared_connection = str(database_path) == MEMORY_DATABASE

    @property
    def database_path(self) -> Union[str, Path]:
        return self._database_path

    def _read_guard(self):
        return self._write_lock if self._shared_connection else nullcontext()

    def initialize(self) -> None:
        try:
            Base.metadata.create_all(bind=self._engine)
        except SQLAlchemyError as e:
            raise StorageError(
                code=ErrorCode.TRANSACTION_FAILED.value,
                message=f"Could not create tables: {e}",
                details={"database_path": str(self._database_path)},
            ) from e

    def existing_fingerprints(self, fingerprints: Iterable[str]) -> set[str]:
        candidates = list(dict.fromkeys(fingerprints))
        found: set[str] = set()
        if not candidates:
            return found
        with self._read_guard(), self._session_factory() as session:
            for chunk in _chunks(candidates, self._chunk_size):
                found.update(
                    session.scalars(
                        select(CallHistoryRow.fingerprint).where(
                            CallHistoryRow.fingerprint.in_(chunk)
                        )
                    )
                )
        return found

    def apply_batch(
        self,
        new_records: list[NormalizedRecord],
        all_records: list[NormalizedRecord],
        now_ms: int,
    ) -> BatchApplyResult:
        with self._write_lock:
            try:
                with self._session_factory.begin() as session:
                    counted = self._insert_history(session, new_records, now_ms)
                    ranges = self._load_ranges(
                        session,
                        {r.range for r in counted} | {r.range for r in all_records},
                    )

                    touched: set[str] = set()
                    for record in counted:
                        row = ranges.get(record.range)
                        if row is None:
                            row = RangeRow(
                                name=record.range,
                                source_key=record.source_key,
                                total_calls=0,
                                active_cli_count=0,
                                last_seen_at=record.observed_at_ms,
                            )
                            session.add(row)
                            ranges[record.range] = row
                        row.total_calls += 1
                        row.last_seen_at = max(row.last_seen_at, record.observed_at_ms)
                        self._upsert_cli(session, record)
                        touched.add(record.range)

                    for record in all_records:
                        row = ranges.get(record.range)
                        if row is None:
                            continue
                        if record.observed_at_ms > row.last_seen_at:
                            row.last_seen_at = record.observed_at_ms
                        touched.add(record.range)

                    counts = self._count_clis(session, touched)
                    for name in touched:
                        ranges[name].active_cli_count = counts.get(name, 0)
            except SQLAlchemyError as e:
                raise StorageError(
                    code=ErrorCode.TRANSACTION_FAILED.value,
                    message=f"Batch apply failed: {e}",
                    details={"new_records": len(new_records)},
                ) from e

        return BatchApplyResult(counted=len(counted), touched_ranges=len(touched))

    def _insert_history(
        self,
        session: Session,
        records: list[NormalizedRecord],
        now_ms: int,
    ) -> list[NormalizedRecord]:
        """Insert fingerprints chunk by chunk; return the records whose row was new."""
        inserted: set[str] = set()
        fingerprints = list(dict.fromkeys(r.fingerprint for r in records))
        for chunk in _chunks(fingerprints, self._chunk_size):
            stmt = (
                sqlite_insert(CallHistoryRow.__table__)
                .values([{"fingerprint": fp, "first_seen_at": now_ms} for fp in chunk])
                .on_conflict_do_nothing(index_elements=["fingerprint"])
                .returning(CallHistoryRow.__table__.c.fingerprint)
            )
            inserted.update(session.scalars(stmt))

        counted: list[NormalizedRecord] = []
        for record in records:
            if record.fingerprint in inserted:
                inserted.discard(record.fingerprint)
                counted.append(record)
        return counted

    def _load_ranges(self, session: Session, names: set[str]) -> dict[str, RangeRow]:
        rows: dict[str, RangeRow] = {}
        for chunk in _chunks(sorted(names), self._chunk_size):
            for row in session.scalars(select(RangeRow).where(RangeRow.name.in_(chunk))):
                rows[row.name] = row
        return rows

    def _upsert_cli(self, session: Session, record: NormalizedRecord) -> None:
        stmt = sqlite_insert(CliRow.__table__).values(
            range_name=record.range,
            cli=record.cli,
            call_count=1,
            last_seen_at=record.observed_at_ms,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=["range_name", "cli"],
            set_={
                "call_count": CliRow.__table__.c.call_count + 1,
                "last_seen_at": func.max(CliRow.__table__.c.last_seen_at, stmt.excluded.last_seen_at),
            },
        )
        session.execute(stmt)

    def _count_clis(self, session: Session, names: set[str]) -> dict[str, int]:
        counts: dict[str, int] = {}
        for chunk in _chunks(sorted(names), self._chunk_size):
            stmt = (
                select(CliRow.range_name, func.count())
                .where(CliRow.range_name.in_(chunk))
                .group_by(CliRow.range_name)
            )
            for range_name, count in session.execute(stmt):
                counts[range_name] = count
        return counts

    def query_ranges(self, limit: int, keyword: Optional[str] = None) -> list[RangeView]:
        if limit <= 0:
            return []
        stmt = select(RangeRow).where(RangeRow.total_calls > 0)
        if keyword is not None:
            stmt = stmt.where(
                or_(
                    RangeRow.name.icontains(keyword, autoescape=True),
                    RangeRow.source_key.icontains(keyword, autoescape=True),
                )
            )
        stmt = stmt.order_by(
            RangeRow.total_calls.desc(),
            RangeRow.active_cli_count.desc(),
            RangeRow.name.asc(),
        ).limit(limit)

        with self._read_guard(), self._session_factory() as session:
            rows = list(session.scalars(stmt))
            recent = self._recent_clis(session, [row.name for row in rows])
            return [
                RangeView(
                    name=row.name,
                    source_key=row.source_key,
                    calls=row.total_calls,
                    cli_count=row.active_cli_count,
                    last_seen_at_ms=row.last_seen_at,
                    recent_clis=recent.get(row.name, []),
                )
                for row in rows
            ]

    def _recent_clis(self, session: Session, names: list[str]) -> dict[str, list[str]]:
        recent: dict[str, list[str]] = {}
        for chunk in _chunks(names, self._chunk_size):
            stmt = (
                select(CliRow.range_name, CliRow.cli)
                .where(CliRow.range_name.in_(chunk))
                .order_by(CliRow.last_seen_at.desc(), CliRow.cli.asc())
            )
            for range_name, cli in session.execute(stmt):
                bucket = recent.setdefault(range_name, [])
                if len(bucket) < RECENT_CLI_LIMIT:
                    bucket.append(cli)
        return recent

    def get_range(self, name: str) -> Optional[RangeAggregate]:
        with self._read_guard(), self._session_factory() as session:
            row = session.get(RangeRow, name)
            if row is None:
                return None
            return RangeAggregate(
                name=row.name,
                source_key=row.source_key,
                total_calls=row.total_calls,
                active_cli_count=row.active_cli_count,
                last_seen_at_ms=row.last_seen_at,
            )

    def list_clis(self, range_name: str) -> list[CliAggregate]:
        stmt = (
            select(CliRow)
            .where(CliRow.range_name == range_name)
            .order_by(CliRow.last_seen_at.desc(), CliRow.cli.asc())
        )
        with self._read_guard(), self._session_factory() as session:
            return [
                CliAggregate(
                    range_name=row.range_name,
                    cli=row.cli,
                    call_count=row.call_count,
                    last_seen_at_ms=row.last_seen_at,
                )
                for row in session.scalars(stmt)
            ]

    def history_size(self) -> int:
        with self._read_guard(), self._session_factory() as session:
            return session.scalar(select(func.count()).select_from(CallHistoryRow)) or 0

    def sweep(self, cutoff_ms: int) -> SweepResult:
        result = SweepResult(cutoff_ms=cutoff_ms)
        no_sync = {"synchronize_session": False}
        with self._write_lock:
            try:
                with self._session_factory.begin() as session:
                    result.history_deleted = session.execute(
                        delete(CallHistoryRow)
                        .where(CallHistoryRow.first_seen_at < cutoff_ms)
                        .execution_options(**no_sync)
                    ).rowcount
                    result.clis_deleted = session.execute(
                        delete(CliRow)
                        .where(CliRow.last_seen_at < cutoff_ms)
                        .execution_options(**no_sync)
                    ).rowcount
                    result.ranges_deleted = session.execute(
                        delete(RangeRow)
                        .where(RangeRow.last_seen_at < cutoff_ms)
                        .execution_options(**no_sync)
                    ).rowcount
                    result.clis_deleted += session.execute(
                        delete(CliRow)
                        .where(CliRow.range_name.not_in(select(RangeRow.name)))
                        .execution_options(**no_sync)
                    ).rowcount

                    cli_count = (
                        select(func.count())
                        .where(CliRow.range_name == RangeRow.name)
                        .scalar_subquery()
                    )
                    session.execute(
                        update(RangeRow)
                        .values(active_cli_count=cli_count)
                        .execution_options(**no_sync)
                    )
            except SQLAlchemyError as e:
                raise StorageError(
                    code=ErrorCode.TRANSACTION_FAILED.value,
                    message=f"Sweep failed: {e}",
                    details={"cutoff_ms": cutoff_ms},
                ) from e
        return result

    def load_blacklist(self) -> dict[str, BlacklistEntry]:
        with self._read_guard(), self._session_factory() as session:
            return {
                row.source_key: BlacklistEntry(
                    source_key=row.source_key,
                    consecutive_empty_polls=row.consecutive_empty_polls,
                    blacklisted=row.blacklisted,
                    blacklisted_at_ms=row.blacklisted_at,
                )
                for row in session.scalars(select(BlacklistRow))
            }

    def save_blacklist_entries(self, entries: Iterable[BlacklistEntry]) -> None:
        entries = list(entries)
        if not entries:
            return
        with self._write_lock:
            try:
                with self._session_factory.begin() as session:
                    for entry in entries:
                        stmt = sqlite_insert(BlacklistRow.__table__).values(
                            source_key=entry.source_key,
                            consecutive_empty_polls=entry.consecutive_empty_polls,
                            blacklisted=entry.blacklisted,
                            blacklisted_at=entry.blacklisted_at_ms,
                        )
                        stmt = stmt.on_conflict_do_update(
                            index_elements=["source_key"],
                            set_={
                                "consecutive_empty_polls": stmt.excluded.consecutive_empty_polls,
                                "blacklisted": stmt.excluded.blacklisted,
                                "blacklisted_at": stmt.excluded.blacklisted_at,
                            },
                        )
                        session.execute(stmt)
            except SQLAlchemyError as e:
                raise StorageError(
                    code=ErrorCode.TRANSACTION_FAILED.value,
                    message=f"Blacklist save failed: {e}",
                    details={"entries": len(entries)},
                ) from e

    def clear_blacklist(self, keys: Optional[Iterable[str]] = None) -> int:
        with self._write_lock:
            try:
                with self._session_factory.begin() as session:
                    stmt = delete(BlacklistRow)
                    if keys is not None:
                        stmt = stmt.where(BlacklistRow.source_key.in_(list(keys)))
                    return session.execute(
                        stmt.execution_options(synchronize_session=False)
                    ).rowcount
            except SQLAlchemyError as e:
                raise StorageError(
                    code=ErrorCode.TRANSACTION_FAILED.value,
                    message=f"Blacklist clear failed: {e}",
                ) from e

    def close(self) -> None:
        self._engine.dispose()
