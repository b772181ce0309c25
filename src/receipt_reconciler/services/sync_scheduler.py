"""
Sync Gap Scheduler.

Decides which date ranges of a source still need syncing so that the
mailbox covers the ledger's date span, and enqueues one sync_range job
per uncovered gap.

Coverage model: each source has one contiguous synced range. The desired
range is the ledger span widened by a buffer on both sides. A gap runs
from the desired range up to the edge of the synced range, even when the
desired range lies far outside it, so that a completed gap always joins
the synced range and there is never an unsearched stretch in the middle.
"""

import logging
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta

from receipt_reconciler.config import Config
from receipt_reconciler.schemas.models import (
    DateRange,
    JobScope,
    SearchJob,
    Source,
    SourceState,
    parse_timestamp,
    utc_now,
)
from receipt_reconciler.services.exceptions import (
    ReauthRequired,
    SourceNotFound,
    SourceUnavailable,
    SyncAlreadyRunning,
    SyncRateLimited,
)
from receipt_reconciler.services.job_queue import SearchJobQueueService
from receipt_reconciler.state_store import StateStore

logger = logging.getLogger(__name__)


@dataclass
class SyncTriggerResult:
    """Outcome of a sync trigger."""

    source_id: int
    jobs: list[SearchJob] = field(default_factory=list)
    gaps: list[DateRange] = field(default_factory=list)
    message: str = ""
    # Set when the trigger was refused
    error_code: str | None = None

    @property
    def up_to_date(self) -> bool:
        return not self.gaps and self.error_code is None


def desired_coverage(
    ledger_range: DateRange | None,
    today: date,
    buffer_days: int = 7,
    lookback_days: int = 90,
) -> DateRange:
    """The date range a source should cover for the given ledger span."""
    if ledger_range is None:
        return DateRange(today - timedelta(days=lookback_days), today)
    buffer = timedelta(days=buffer_days)
    return DateRange(ledger_range.start - buffer, ledger_range.end + buffer)


def compute_gaps(
    source: Source,
    ledger_range: DateRange | None,
    today: date | None = None,
    buffer_days: int = 7,
    lookback_days: int = 90,
) -> list[DateRange]:
    """
    Compute the uncovered date ranges of a source.

    Args:
        source: Source with its current synced range
        ledger_range: Earliest/latest transaction date (None for an empty ledger)
        today: Reference day for an empty ledger
        buffer_days: Days added on both sides of the ledger span
        lookback_days: Coverage used for an empty ledger

    Returns:
        Zero, one or two gaps in ascending order
    """
    desired = desired_coverage(ledger_range, today or date.today(), buffer_days, lookback_days)
    synced = source.synced_range
    if synced is None:
        return [desired]

    gaps: list[DateRange] = []
    # Gaps run up to the synced boundary so coverage stays contiguous
    if synced.start > desired.start:
        gaps.append(DateRange(desired.start, synced.start - timedelta(days=1)))
    if synced.end < desired.end:
        gaps.append(DateRange(synced.end + timedelta(days=1), desired.end))
    return gaps


class SyncScheduler:
    """Validates sync triggers and enqueues gap jobs."""

    def __init__(
        self,
        state_store: StateStore,
        config: Config,
        queue: SearchJobQueueService,
    ):
        self.store = state_store
        self.config = config
        self.queue = queue

    def trigger_sync(
        self,
        source_id: int,
        manual: bool = True,
        now: datetime | None = None,
    ) -> SyncTriggerResult:
        """
        Trigger a sync of one source.

        Args:
            source_id: Source to sync
            manual: Manual triggers are rate limited
            now: Current time (for tests)

        Raises:
            SourceNotFound: Unknown source
            SourceUnavailable: Source is paused or disconnected
            ReauthRequired: Source credential needs renewal
            SyncRateLimited: Manual trigger inside the rate limit window
            SyncAlreadyRunning: A sync job of the source is still active
        """
        now = now or utc_now()
        source = self.store.get_source(source_id)
        if source is None:
            raise SourceNotFound(f"Source {source_id} not found")

        state = source.state
        if state == SourceState.NEEDS_REAUTH:
            raise ReauthRequired(source_id, source.last_error or "Source needs re-authorization")
        if state != SourceState.ACTIVE:
            raise SourceUnavailable(f"Source {source_id} is {state.value}")

        if manual and source.last_sync_at:
            window = timedelta(minutes=self.config.sync.manual_rate_limit_minutes)
            elapsed = now - parse_timestamp(source.last_sync_at)
            if elapsed < window:
                raise SyncRateLimited(int((window - elapsed).total_seconds()) + 1)

        self.queue.sweep_stale(now)
        active = self.store.get_active_search_job(JobScope.SYNC_RANGE, source_id=source_id)
        if active:
            raise SyncAlreadyRunning(active.id)

        gaps = compute_gaps(
            source,
            self.store.get_transaction_date_range(),
            today=now.date(),
            buffer_days=self.config.sync.buffer_days,
            lookback_days=self.config.sync.default_lookback_days,
        )
        if not gaps:
            logger.info(f"Source {source_id} already covers the ledger")
            return SyncTriggerResult(source_id=source_id, message="Already up to date")

        triggered_by = "manual" if manual else "auto"
        jobs = [self.queue.enqueue_sync_range(source_id, gap, triggered_by) for gap in gaps]
        logger.info(f"Source {source_id}: queued {len(jobs)} sync jobs for gaps {gaps}")
        return SyncTriggerResult(
            source_id=source_id,
            jobs=jobs,
            gaps=gaps,
            message=f"Queued {len(jobs)} sync job(s)",
        )

    def trigger_all(self, now: datetime | None = None) -> list[SyncTriggerResult]:
        """
        Trigger an automatic sync of every connected source.

        Sources that cannot sync right now still get a result, with the
        reason in `message` and the rejection code in `error_code`.
        """
        results: list[SyncTriggerResult] = []
        for source in self.store.list_sources(active_only=True):
            try:
                results.append(self.trigger_sync(source.id, manual=False, now=now))
            except SyncAlreadyRunning as e:
                logger.info(f"Skipping sync of source {source.id}: {e}")
                results.append(
                    SyncTriggerResult(
                        source_id=source.id,
                        message=f"Already syncing (job #{e.job_id})",
                        error_code=e.code,
                    )
                )
            except (SourceUnavailable, ReauthRequired) as e:
                logger.info(f"Skipping sync of source {source.id}: {e}")
                results.append(
                    SyncTriggerResult(source_id=source.id, message=f"Skipped: {e}", error_code=e.code)
                )
        return results
