"""
Backfill orchestrator for historical donations.

Pages through donations that have no success row in the sync log and
runs each one through the reconciliation engine, sequentially. Real runs
are paced to stay under the DonorPerfect rate limit; a stop request takes
effect at the next item boundary and already-synced items stay synced.
"""

import threading
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, ContextManager, Dict, List, Optional

import structlog

from .engine import ReconciliationEngine, SyncOutcome
from .log_config import log_processing_batch
from .models import InvalidDonation, SyncResult, SyncStatus
from .source import DonationSource, UnsyncedDonation

logger = structlog.get_logger(__name__)

Claim = Callable[[int], ContextManager[bool]]

# Statuses after which an item no longer counts as unsynced, or is still
# being synced by another caller
SETTLED_STATUSES = frozenset({
    SyncStatus.SUCCESS.value,
    SyncStatus.ALREADY_SYNCED.value,
    SyncStatus.IN_PROGRESS.value,
})


class CancellationToken:
    """Cooperative stop flag checked between backfill items."""

    def __init__(self):
        self._event = threading.Event()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self) -> None:
        self._event.set()

    def reset(self) -> None:
        self._event.clear()


@dataclass
class BackfillResult:
    """One backfill page."""
    batch_size: int
    offset: int
    dry_run: bool
    total_unsynced: int = 0
    items: List[Dict[str, Any]] = field(default_factory=list)
    cancelled: bool = False

    @property
    def processed(self) -> int:
        return len(self.items)

    @property
    def has_more(self) -> bool:
        return (self.offset + self.batch_size) < self.total_unsynced

    @property
    def failed(self) -> int:
        return sum(1 for item in self.items if item["status"] == SyncStatus.ERROR.value)

    @property
    def next_offset(self) -> int:
        """
        Offset of the next page.

        Synced donations leave the unsynced set, so a real run only moves
        past the items that are still unsynced. Items claimed elsewhere are
        assumed to leave it too; undershooting only repeats a lookup.
        """
        if self.dry_run:
            return self.offset + self.processed
        still_unsynced = sum(
            1 for item in self.items if item["status"] not in SETTLED_STATUSES
        )
        return self.offset + still_unsynced

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "items": self.items,
            "batch_size": self.batch_size,
            "offset": self.offset,
            "processed": self.processed,
            "total_unsynced": self.total_unsynced,
            "has_more": self.has_more,
            "next_offset": self.next_offset,
            "dry_run": self.dry_run,
            "cancelled": self.cancelled,
        }


class BackfillOrchestrator:
    """
    Drives the reconciliation engine over unsynced donations.

    claim marks a donation as in flight for the duration of its live sync so
    a concurrent trigger or manual sync cannot create a second gift.
    """

    def __init__(
        self,
        source: DonationSource,
        engine: ReconciliationEngine,
        delay: float = 0.2,
        sleep: Callable[[float], None] = time.sleep,
        claim: Optional[Claim] = None,
    ):
        self.source = source
        self.engine = engine
        self.delay = delay
        self._sleep = sleep
        self._claim = claim

    def run_backfill(
        self,
        dry_run: bool,
        batch_size: int = 50,
        offset: int = 0,
        token: Optional[CancellationToken] = None,
    ) -> BackfillResult:
        """
        Process one page of unsynced donations.

        Args:
            dry_run: Preview only (donor lookup, no records created, nothing logged)
            batch_size: Page size
            offset: Page offset into the unsynced donations (ascending id)
            token: Stop flag checked before each item

        Returns:
            BackfillResult; page forward while has_more is True
        """
        if batch_size < 1:
            raise ValueError("batch_size must be at least 1")
        if offset < 0:
            raise ValueError("offset must not be negative")

        started_at = datetime.now(timezone.utc)
        result = BackfillResult(batch_size=batch_size, offset=offset, dry_run=dry_run)

        result.total_unsynced = self.source.count_unsynced()
        donations = self.source.fetch_unsynced(batch_size, offset)

        logger.info(
            "Backfill batch starting",
            dry_run=dry_run,
            batch_size=batch_size,
            offset=offset,
            fetched=len(donations),
            total_unsynced=result.total_unsynced,
        )

        for index, donation in enumerate(donations):
            if token is not None and token.cancelled:
                result.cancelled = True
                logger.warning(
                    "Backfill cancelled",
                    processed=result.processed,
                    remaining=len(donations) - index,
                )
                break

            if not dry_run and index > 0:
                self._sleep(self.delay)

            outcome = self._process(donation, dry_run)
            result.items.append(outcome.to_dict())

        duration_ms = (datetime.now(timezone.utc) - started_at).total_seconds() * 1000
        log_processing_batch(
            logger,
            batch_id=f"backfill_{offset}_{int(started_at.timestamp())}",
            items_processed=result.processed - result.failed,
            items_failed=result.failed,
            duration_ms=duration_ms,
            dry_run=dry_run,
            has_more=result.has_more,
        )

        return result

    def _process(self, donation: UnsyncedDonation, dry_run: bool) -> SyncOutcome:
        if isinstance(donation, InvalidDonation):
            return self.engine.reject(donation, dry_run=dry_run)

        if dry_run or self._claim is None:
            return self.engine.sync(donation, dry_run=dry_run)

        with self._claim(donation.donation_id) as claimed:
            if not claimed:
                logger.info(
                    "Donation sync in progress elsewhere, skipped",
                    donation_id=donation.donation_id,
                )
                return SyncResult(
                    donation_id=donation.donation_id,
                    status=SyncStatus.IN_PROGRESS,
                    kind=donation.kind,
                    amount=donation.amount,
                )

            # The page was fetched before the claim; the donation may have been synced since
            if self.engine.ledger.is_synced(donation.donation_id):
                return SyncResult(
                    donation_id=donation.donation_id,
                    status=SyncStatus.ALREADY_SYNCED,
                    kind=donation.kind,
                    amount=donation.amount,
                )

            return self.engine.sync(donation)
