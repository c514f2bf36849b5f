"""
Persistence for groups, messages and scrape history.

MessageStore is synchronous. Async callers run its operations in a worker
thread (asyncio.to_thread) so a slow write never stalls the event loop.

Messages are keyed by source message id: inserting one twice is a no-op,
which makes re-scraping the same window idempotent.
"""

import logging
import time
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Iterator, Optional

from sqlalchemy import case, create_engine, delete, func, inspect, text
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from harvester.errors import RunAccountingError, StorageError
from harvester.models import Base, Group, Message, RunStatus, ScrapeRun, utc_now

if TYPE_CHECKING:
    from harvester.config import Settings
    from harvester.normalizer import StoredMessage

logger = logging.getLogger(__name__)

SECONDS_PER_DAY = 24 * 60 * 60


def _build_engine(database_url: str, pool_size: int, max_overflow: int, echo: bool):
    if database_url.startswith("sqlite"):
        # check_same_thread=False lets the scheduler, task queue and API threads share the pool
        kwargs = {"connect_args": {"check_same_thread": False}, "echo": echo}
        if database_url in ("sqlite://", "sqlite:///:memory:"):
            # One shared connection, otherwise every checkout sees an empty database
            kwargs["poolclass"] = StaticPool
        return create_engine(database_url, **kwargs)
    return create_engine(
        database_url,
        pool_size=pool_size,
        max_overflow=max_overflow,
        pool_pre_ping=True,
        echo=echo,
    )


class MessageStore:
    """
    Exclusive owner of groups, messages and scrape history.

    Constructed once at process start and closed once at shutdown. Every
    operation checks a session out of the pool for its own duration only.
    """

    def __init__(
        self,
        database_url: str,
        *,
        pool_size: int = 10,
        max_overflow: int = 20,
        echo: bool = False,
    ):
        self.database_url = database_url
        self.engine = _build_engine(database_url, pool_size, max_overflow, echo)
        self.SessionLocal = sessionmaker(
            autocommit=False,
            autoflush=False,
            expire_on_commit=False,
            bind=self.engine,
        )

    @classmethod
    def from_settings(cls, settings: "Settings") -> "MessageStore":
        return cls(
            settings.DATABASE_URL,
            pool_size=settings.DB_POOL_SIZE,
            max_overflow=settings.DB_MAX_OVERFLOW,
        )

    @contextmanager
    def session_scope(self) -> Iterator[Session]:
        """
        Yield a session and guarantee it is released on every exit path.
        SQLAlchemy failures surface as StorageError.
        """
        db = self.SessionLocal()
        try:
            yield db
        except SQLAlchemyError as e:
            db.rollback()
            raise StorageError(str(e)) from e
        finally:
            db.close()

    def init_db(self) -> None:
        """Create all tables and indexes if they do not exist yet."""
        logger.debug("Initializing database")
        try:
            Base.metadata.create_all(bind=self.engine)
        except SQLAlchemyError as e:
            logger.error(f"Failed to initialize database: {e}")
            raise StorageError(str(e)) from e
        logger.info("Database initialized successfully")

    def check_health(self) -> bool:
        """
        Check that the database is reachable and the schema is applied.
        """
        try:
            with self.SessionLocal() as db:
                db.execute(text("SELECT 1"))
            tables = set(inspect(self.engine).get_table_names())
        except SQLAlchemyError as e:
            logger.error(f"Database health check failed: {e}")
            return False
        missing = {"groups", "messages", "scrape_history"} - tables
        if missing:
            logger.error(f"Database schema not applied, missing tables: {sorted(missing)}")
            return False
        return True

    def close(self) -> None:
        self.engine.dispose()
        logger.info("Database connection pool closed")

    # =========================================================================
    # Group operations
    # =========================================================================

    def upsert_group(self, group_id: str, name: str, participants_count: int) -> Group:
        """
        Insert or update a group keyed on id. updated_at is always refreshed.
        """
        with self.session_scope() as db:
            group = self._apply_group(db, group_id, name, participants_count)
            try:
                db.commit()
            except IntegrityError:
                # Lost an insert race for the same id, the row exists now
                db.rollback()
                group = self._apply_group(db, group_id, name, participants_count)
                db.commit()
            logger.debug(f"Group upserted: {group_id} ({name}, {participants_count} participants)")
            return group

    @staticmethod
    def _apply_group(db: Session, group_id: str, name: str, participants_count: int) -> Group:
        now = utc_now()
        group = db.get(Group, group_id)
        if group is None:
            group = Group(id=group_id, created_at=now)
            db.add(group)
        group.name = name
        group.participants_count = participants_count
        group.updated_at = now
        return group

    def get_group(self, group_id: str) -> Optional[Group]:
        with self.session_scope() as db:
            return db.get(Group, group_id)

    def get_all_groups(self) -> list[Group]:
        with self.session_scope() as db:
            return list(db.query(Group).order_by(Group.updated_at.desc()).all())

    # =========================================================================
    # Message operations
    # =========================================================================

    def insert_message(self, record: "StoredMessage") -> Optional[Message]:
        """
        Insert a message (idempotent).

        Returns:
            The stored Message, or None when a message with the same id already
            exists. A primary-key conflict is the only deduplication mechanism.
        """
        with self.session_scope() as db:
            message = Message(**record.model_dump())
            db.add(message)
            try:
                db.commit()
            except IntegrityError as e:
                db.rollback()
                if db.get(Message, record.id) is None:
                    # Not a duplicate, e.g. a foreign key violation
                    raise StorageError(f"Failed to insert message {record.id}: {e}") from e
                logger.debug(f"Duplicate message ignored: {record.id}")
                return None
            logger.debug(f"Message stored: {record.id}")
            return message

    def get_messages_by_group(self, group_id: str, limit: int = 100, offset: int = 0) -> list[Message]:
        with self.session_scope() as db:
            return list(
                db.query(Message)
                .filter(Message.group_id == group_id)
                .order_by(Message.timestamp.desc(), Message.id.asc())
                .offset(offset)
                .limit(limit)
                .all()
            )

    def get_messages_by_date_range(self, group_id: str, start_ts: int, end_ts: int) -> list[Message]:
        """Messages with start_ts <= timestamp <= end_ts (epoch seconds), newest first."""
        with self.session_scope() as db:
            return list(
                db.query(Message)
                .filter(
                    Message.group_id == group_id,
                    Message.timestamp >= start_ts,
                    Message.timestamp <= end_ts,
                )
                .order_by(Message.timestamp.desc(), Message.id.asc())
                .all()
            )

    def search_messages(self, group_id: str, term: str, limit: int = 100) -> list[Message]:
        """Case-insensitive substring search over message bodies."""
        with self.session_scope() as db:
            return list(
                db.query(Message)
                .filter(Message.group_id == group_id, Message.message_body.ilike(f"%{term}%"))
                .order_by(Message.timestamp.desc(), Message.id.asc())
                .limit(limit)
                .all()
            )

    def get_message_count(self, group_id: Optional[str] = None) -> int:
        with self.session_scope() as db:
            query = db.query(func.count(Message.id))
            if group_id is not None:
                query = query.filter(Message.group_id == group_id)
            return query.scalar() or 0

    def get_group_statistics(self, group_id: str) -> dict:
        """
        Aggregate figures for one group:
        - total_messages, media_messages, unique_senders
        - first_message_timestamp, last_message_timestamp (None if no messages)
        """
        with self.session_scope() as db:
            row = (
                db.query(
                    func.count(Message.id).label("total_messages"),
                    func.sum(case((Message.has_media.is_(True), 1), else_=0)).label("media_messages"),
                    func.min(Message.timestamp).label("first_message_timestamp"),
                    func.max(Message.timestamp).label("last_message_timestamp"),
                    func.count(func.distinct(Message.from_number)).label("unique_senders"),
                )
                .filter(Message.group_id == group_id)
                .one()
            )
            return {
                "total_messages": row.total_messages or 0,
                "media_messages": int(row.media_messages or 0),
                "first_message_timestamp": row.first_message_timestamp,
                "last_message_timestamp": row.last_message_timestamp,
                "unique_senders": row.unique_senders or 0,
            }

    def delete_old_messages(self, days: int, now: Optional[float] = None) -> int:
        """
        Delete messages whose timestamp is older than the retention window.

        Returns:
            Number of deleted messages.
        """
        now = time.time() if now is None else now
        cutoff = int(now - days * SECONDS_PER_DAY)
        cutoff_dt = datetime.fromtimestamp(cutoff, tz=timezone.utc)
        logger.info(f"Deleting messages older than {cutoff_dt.isoformat()}")
        with self.session_scope() as db:
            result = db.execute(delete(Message).where(Message.timestamp < cutoff))
            db.commit()
            return result.rowcount or 0

    # =========================================================================
    # Scrape history operations
    # =========================================================================

    def start_run(self, group_id: str) -> int:
        """Open an in_progress run for group_id and return its id."""
        with self.session_scope() as db:
            run = ScrapeRun(
                group_id=group_id,
                status=RunStatus.IN_PROGRESS.value,
                scrape_start=utc_now(),
            )
            db.add(run)
            db.commit()
            logger.debug(f"Scrape run {run.id} started for {group_id}")
            return run.id

    def end_run(
        self,
        run_id: int,
        messages_scraped: int,
        status: RunStatus,
        error_message: Optional[str] = None,
        messages_inserted: int = 0,
    ) -> ScrapeRun:
        """
        Close a run exactly once.

        Raises:
            RunAccountingError: the run does not exist or is already closed.
        """
        status = RunStatus(status)
        if status is RunStatus.IN_PROGRESS:
            raise ValueError("A run can only be closed as completed or failed")

        with self.session_scope() as db:
            run = db.get(ScrapeRun, run_id)
            if run is None:
                raise RunAccountingError(f"Scrape run {run_id} does not exist")
            if run.scrape_end is not None or run.status != RunStatus.IN_PROGRESS.value:
                raise RunAccountingError(f"Scrape run {run_id} is already closed ({run.status})")
            run.scrape_end = utc_now()
            run.messages_scraped = messages_scraped
            run.messages_inserted = messages_inserted
            run.status = status.value
            run.error_message = error_message
            db.commit()
            logger.debug(f"Scrape run {run_id} closed: {status.value}")
            return run

    def get_run(self, run_id: int) -> Optional[ScrapeRun]:
        with self.session_scope() as db:
            return db.get(ScrapeRun, run_id)

    def get_scrape_history(self, group_id: str, limit: int = 10) -> list[ScrapeRun]:
        with self.session_scope() as db:
            return list(
                db.query(ScrapeRun)
                .filter(ScrapeRun.group_id == group_id)
                .order_by(ScrapeRun.scrape_start.desc(), ScrapeRun.id.desc())
                .limit(limit)
                .all()
            )

    def get_latest_scrape(self, group_id: str) -> Optional[ScrapeRun]:
        history = self.get_scrape_history(group_id, limit=1)
        return history[0] if history else None

    def get_open_runs(self) -> list[ScrapeRun]:
        with self.session_scope() as db:
            return list(db.query(ScrapeRun).filter(ScrapeRun.scrape_end.is_(None)).all())
