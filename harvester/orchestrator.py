"""
Scrape orchestration: fetch -> resolve identities -> normalize -> persist.

One invocation of scrape_group walks

    FETCHING_GROUP -> BUILDING_IDENTITY_MAP -> RUN_STARTED
        -> PROCESSING_MESSAGES -> RUN_CLOSED(completed)

Any failure after the run record exists closes it as failed. A failure before
that point leaves no run record. No call ever raises past scrape_group: the
caller always receives a ScrapeResult.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Optional

from pydantic import BaseModel

from harvester.config import Settings
from harvester.errors import NotAGroupError, StorageError
from harvester.identity import IdentityMap, build_identity_map
from harvester.logging_utils import scrape_context
from harvester.media import MediaWriter
from harvester.metrics import record_message_outcome, record_retention_deleted, record_scrape_outcome
from harvester.models import RunStatus
from harvester.normalizer import MessageNormalizer
from harvester.source import GroupSnapshot, SourceClient
from harvester.storage import MessageStore

logger = logging.getLogger(__name__)


class ScrapeResult(BaseModel):
    success: bool
    group_id: str
    group_name: Optional[str] = None
    messages_processed: Optional[int] = None
    messages_inserted: Optional[int] = None
    run_id: Optional[int] = None
    error: Optional[str] = None


@dataclass
class RunTally:
    """Counters of the run in flight, readable on the failure path."""
    processed: int = 0
    inserted: int = 0
    failed: int = 0


class ScrapeOrchestrator:
    """
    Drives group scrapes against one source client and one store.

    Holds no state across invocations apart from configuration; the identity
    map of a scrape is passed explicitly to the normalization of its messages.
    """

    def __init__(
        self,
        source: SourceClient,
        store: MessageStore,
        *,
        monitored_groups: Optional[list[str]] = None,
        message_limit: int = 100,
        group_delay_seconds: float = 2.0,
        retention_days: int = 30,
        scrape_timeout_seconds: Optional[float] = 300.0,
        media_writer: Optional[MediaWriter] = None,
    ):
        self.source = source
        self.store = store
        self.monitored_groups = list(monitored_groups or [])
        self.message_limit = message_limit
        self.group_delay_seconds = group_delay_seconds
        self.retention_days = retention_days
        self.scrape_timeout_seconds = scrape_timeout_seconds
        self.normalizer = MessageNormalizer(source, media_writer)
        # Exactly one ingestion path writes at a time (scheduled ticks and manual triggers)
        self._ingest_lock = asyncio.Lock()

    @classmethod
    def from_settings(cls, source: SourceClient, store: MessageStore, settings: Settings) -> "ScrapeOrchestrator":
        return cls(
            source,
            store,
            monitored_groups=settings.monitored_groups,
            message_limit=settings.MESSAGE_LIMIT,
            group_delay_seconds=settings.GROUP_DELAY_SECONDS,
            retention_days=settings.RETENTION_DAYS,
            scrape_timeout_seconds=settings.SCRAPE_TIMEOUT_SECONDS,
            media_writer=MediaWriter(settings.MEDIA_PATH) if settings.SCRAPE_MEDIA else None,
        )

    # =========================================================================
    # Group scrape
    # =========================================================================

    async def scrape_group(self, group_id: str) -> ScrapeResult:
        """
        Scrape one group end to end. Never raises; failures come back as
        ScrapeResult(success=False, error=...).
        """
        async with self._ingest_lock:
            return await self._scrape_group_locked(group_id)

    async def _scrape_group_locked(self, group_id: str) -> ScrapeResult:
        with scrape_context(group_id) as bind_run_id:
            logger.info(f"Starting scrape for group: {group_id}")
            outcome = _ScrapeOutcome(group_id)
            try:
                if self.scrape_timeout_seconds and self.scrape_timeout_seconds > 0:
                    await asyncio.wait_for(
                        self._scrape(group_id, outcome, bind_run_id),
                        timeout=self.scrape_timeout_seconds,
                    )
                else:
                    await self._scrape(group_id, outcome, bind_run_id)
            except asyncio.TimeoutError:
                return self._failed(
                    outcome, f"Scrape exceeded deadline of {self.scrape_timeout_seconds:g}s"
                )
            except Exception as e:
                logger.exception(f"Error scraping group {group_id}")
                return self._failed(outcome, _describe(e))

            record_scrape_outcome(RunStatus.COMPLETED.value)
            logger.info(
                f"Scrape completed for {outcome.group_name}. Processed {outcome.tally.processed} "
                f"messages ({outcome.tally.inserted} new, {outcome.tally.failed} skipped)"
            )
            return ScrapeResult(
                success=True,
                group_id=group_id,
                group_name=outcome.group_name,
                messages_processed=outcome.tally.processed,
                messages_inserted=outcome.tally.inserted,
                run_id=outcome.run_id,
            )

    async def _scrape(self, group_id: str, outcome: "_ScrapeOutcome", bind_run_id) -> None:
        snapshot = await self.source.fetch_group_by_id(group_id)
        if not snapshot.is_group:
            raise NotAGroupError(group_id)
        outcome.group_name = snapshot.name

        identity_map = await build_identity_map(snapshot, self.source)

        # The group row must exist before a run can reference it
        await asyncio.to_thread(self.store.upsert_group, snapshot.id, snapshot.name, len(snapshot.participants))

        await self._start_run(outcome)
        bind_run_id(outcome.run_id)

        # Every exit from here on closes the run, cancellation included
        try:
            await self._process_batch(snapshot, identity_map, outcome.tally)
            await asyncio.to_thread(
                self.store.end_run,
                outcome.run_id,
                outcome.tally.processed,
                RunStatus.COMPLETED,
                messages_inserted=outcome.tally.inserted,
            )
        except BaseException as e:
            await self._close_failed_run(outcome, e)
            raise

    async def _start_run(self, outcome: "_ScrapeOutcome") -> None:
        # The row may be created in the worker thread after a cancellation lands;
        # wait for it so it can be closed instead of left open.
        pending = asyncio.ensure_future(asyncio.to_thread(self.store.start_run, outcome.group_id))
        try:
            outcome.run_id = await asyncio.shield(pending)
        except asyncio.CancelledError as e:
            outcome.run_id = await pending
            await self._close_failed_run(outcome, e)
            raise

    async def _process_batch(self, snapshot: GroupSnapshot, identity_map: IdentityMap, tally: RunTally) -> None:
        messages = await self.source.fetch_recent_messages(snapshot.id, self.message_limit)
        logger.info(f"Fetched {len(messages)} messages from {snapshot.name}")

        for raw in messages:
            try:
                record = await self.normalizer.normalize(raw, snapshot.id, identity_map)
                stored = await asyncio.to_thread(self.store.insert_message, record)
            except StorageError:
                record_message_outcome("error")
                raise
            except Exception:
                tally.failed += 1
                record_message_outcome("error")
                logger.exception(f"Error processing message {raw.id}")
                continue

            # Duplicates count as processed; messages_inserted counts new rows only
            tally.processed += 1
            if stored is not None:
                tally.inserted += 1
                record_message_outcome("created")
            else:
                record_message_outcome("duplicate")

    async def _close_failed_run(self, outcome: "_ScrapeOutcome", error: BaseException) -> None:
        if isinstance(error, asyncio.CancelledError):
            reason = "Scrape cancelled before completion (deadline exceeded or shutdown)"
        else:
            reason = _describe(error)
        # Shielded: a second cancellation must not leave the run open
        close = asyncio.to_thread(
            self.store.end_run,
            outcome.run_id,
            outcome.tally.processed,
            RunStatus.FAILED,
            error_message=reason,
            messages_inserted=outcome.tally.inserted,
        )
        try:
            await asyncio.shield(close)
        except StorageError:
            logger.exception(f"Could not close scrape run {outcome.run_id} as failed")

    def _failed(self, outcome: "_ScrapeOutcome", error: str) -> ScrapeResult:
        status = RunStatus.FAILED.value if outcome.run_id is not None else "rejected"
        record_scrape_outcome(status)
        logger.error(f"Scrape failed for group {outcome.group_id}: {error}")
        return ScrapeResult(
            success=False,
            group_id=outcome.group_id,
            group_name=outcome.group_name,
            messages_processed=outcome.tally.processed if outcome.run_id is not None else None,
            messages_inserted=outcome.tally.inserted if outcome.run_id is not None else None,
            run_id=outcome.run_id,
            error=error,
        )

    # =========================================================================
    # All monitored groups
    # =========================================================================

    async def scrape_all_groups(self) -> list[ScrapeResult]:
        """
        Scrape every monitored group sequentially, pausing group_delay_seconds
        between groups to respect source-side rate limits. The whole pass holds
        the ingestion lock, so two passes never interleave.
        """
        results = []
        async with self._ingest_lock:
            for index, group_id in enumerate(self.monitored_groups):
                if index > 0 and self.group_delay_seconds > 0:
                    await asyncio.sleep(self.group_delay_seconds)
                results.append(await self._scrape_group_locked(group_id))
        return results

    # =========================================================================
    # Retention
    # =========================================================================

    async def cleanup_expired_messages(self) -> int:
        """Delete messages older than the retention window; no-op when retention is unbounded."""
        if self.retention_days <= 0:
            logger.debug("Message retention is unbounded, nothing to clean up")
            return 0
        logger.info(f"Cleaning up messages older than {self.retention_days} days")
        deleted = await asyncio.to_thread(self.store.delete_old_messages, self.retention_days)
        record_retention_deleted(deleted)
        logger.info(f"Deleted {deleted} old messages")
        return deleted


@dataclass
class _ScrapeOutcome:
    """Mutable progress of one scrape, shared with the deadline wrapper."""
    group_id: str
    group_name: Optional[str] = None
    run_id: Optional[int] = None
    tally: RunTally = field(default_factory=RunTally)


def _describe(error: BaseException) -> str:
    return str(error) or type(error).__name__
