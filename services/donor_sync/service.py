"""
Process-scoped sync service.

Holds the wiring between the donation source, the sync ledger and the
DonorPerfect client, and exposes the operations used by the webhook, the
admin HTTP API and the CLI. Build one per process with build_service().
"""

import threading
import time
from contextlib import contextmanager
from typing import Any, Callable, Dict, Iterator, Mapping, Optional, Set

import structlog
from sqlalchemy.engine import Engine

from .backfill import BackfillOrchestrator, CancellationToken
from .client import DonorPerfectClient
from .db import create_schema, get_engine
from .engine import ReconciliationEngine, SyncConfig, SyncOutcome, TargetClient
from .errors import DonationNotFoundError, DonationValidationError, NotConfiguredError
from .ledger import SyncLedger
from .models import DonationEvent, SyncResult, SyncStatus
from .report import MatchReport
from .settings import DonorSyncSettings, settings
from .source import DonationSource, SqlDonationSource, donation_from_record

logger = structlog.get_logger(__name__)

ClientFactory = Callable[[DonorSyncSettings], TargetClient]

SUB_SOLICIT_DESCRIPTIONS = {
    "onetime": "One-Time Donation",
    "recurring": "Recurring Donation",
}


def default_client_factory(config: DonorSyncSettings) -> DonorPerfectClient:
    return DonorPerfectClient(
        api_key=config.dp_api_key,
        base_url=config.dp_api_base_url,
        timeout=config.api_timeout,
        user_id=config.dp_user_id,
    )


class SyncService:
    """
    Entry points for real-time sync, manual sync, backfill and reporting.

    Remote operations raise NotConfiguredError when the DonorPerfect API
    key is missing; nothing is written to the sync log in that case.
    """

    def __init__(
        self,
        config: DonorSyncSettings,
        source: DonationSource,
        ledger: SyncLedger,
        client_factory: ClientFactory = default_client_factory,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.config = config
        self.source = source
        self.ledger = ledger
        self.backfill_token = CancellationToken()
        self._client_factory = client_factory
        self._client: Optional[TargetClient] = None
        self._client_lock = threading.Lock()
        self._in_flight: Set[int] = set()
        self._in_flight_lock = threading.Lock()
        self._sleep = sleep

    def get_client(self) -> TargetClient:
        """
        Return the shared DonorPerfect client, creating it on first use.

        Raises:
            NotConfiguredError: API key is missing
        """
        if not self.config.is_configured():
            raise NotConfiguredError()

        with self._client_lock:
            if self._client is None:
                self._client = self._client_factory(self.config)
            return self._client

    def close(self) -> None:
        with self._client_lock:
            if self._client is not None and hasattr(self._client, "close"):
                self._client.close()
            self._client = None

    @contextmanager
    def _claim(self, donation_id: int) -> Iterator[bool]:
        """Mark a donation as being synced by this process; yields False if it already is."""
        with self._in_flight_lock:
            claimed = donation_id not in self._in_flight
            self._in_flight.add(donation_id)
        try:
            yield claimed
        finally:
            if claimed:
                with self._in_flight_lock:
                    self._in_flight.discard(donation_id)

    def _engine(self) -> ReconciliationEngine:
        return ReconciliationEngine(
            self.get_client(), self.ledger, SyncConfig.from_settings(self.config)
        )

    def _orchestrator(self) -> BackfillOrchestrator:
        return BackfillOrchestrator(
            self.source,
            self._engine(),
            delay=self.config.backfill_delay,
            sleep=self._sleep,
            claim=self._claim,
        )

    # Real-time trigger

    def register(self, source: Optional[DonationSource] = None) -> None:
        """Subscribe the real-time trigger to the donation-updated signal."""
        (source or self.source).subscribe(self.handle_donation_updated)
        logger.info("Donation trigger registered", enabled=self.config.enable_donor_sync)

    def handle_donation_updated(self, event: DonationEvent) -> Optional[SyncOutcome]:
        """
        Sync a donation that was just updated on the source platform.

        Returns None when the donation is ignored (sync disabled, non-final
        status, invalid id, already synced or in progress, missing API key).
        """
        log = logger.bind(donation_id=event.donation_id, status=event.status)

        if not self.config.enable_donor_sync:
            log.debug("Real-time sync disabled, donation ignored")
            return None

        if not event.is_final:
            log.debug("Donation not in a final status, ignored")
            return None

        if event.donation_id <= 0:
            log.warning("Invalid donation id, ignored")
            return None

        if self.ledger.is_synced(event.donation_id):
            log.debug("Donation already synced, ignored")
            return None

        try:
            engine = self._engine()
        except NotConfiguredError:
            log.error("DonorPerfect API key not configured, donation not synced")
            return None

        with self._claim(event.donation_id) as claimed:
            if not claimed:
                log.info("Donation sync already in progress, duplicate trigger ignored")
                return None

            # An overlapping trigger may have finished meanwhile
            if self.ledger.is_synced(event.donation_id):
                log.debug("Donation synced by an overlapping trigger, ignored")
                return None

            return engine.sync(event)

    def receive_donation(self, payload: Mapping[str, Any]) -> Dict[str, Any]:
        """
        Ingest a donation-updated webhook payload.

        Stores the snapshot and fires the donation-updated signal.

        Raises:
            DonationValidationError: Payload cannot be normalized
        """
        event = donation_from_record(payload)
        outcomes = [o for o in self.source.publish_update(event) if o is not None]

        if not outcomes:
            return {"donation_id": event.donation_id, "status": "ignored"}
        return outcomes[0].to_dict()

    # Manual operations

    def sync_single(self, donation_id: int) -> Dict[str, Any]:
        """
        Sync one donation on demand.

        Returns an in_progress result without contacting DonorPerfect when
        a trigger or backfill is already syncing the same donation.

        Raises:
            DonationValidationError: Invalid donation id
            DonationNotFoundError: Unknown donation id
            NotConfiguredError: API key is missing
        """
        if donation_id <= 0:
            raise DonationValidationError(f"Invalid donation id: {donation_id}")

        engine = self._engine()

        with self._claim(donation_id) as claimed:
            if not claimed:
                logger.info("Donation sync already in progress", donation_id=donation_id)
                return SyncResult(donation_id=donation_id, status=SyncStatus.IN_PROGRESS).to_dict()

            existing = self.ledger.get_success(donation_id)
            if existing:
                logger.info("Donation already synced", donation_id=donation_id)
                return SyncResult(
                    donation_id=donation_id,
                    status=SyncStatus.ALREADY_SYNCED,
                    target_donor_id=existing.target_donor_id,
                    gift_id=existing.gift_id,
                    pledge_id=existing.pledge_id,
                ).to_dict()

            event = self.source.get_donation(donation_id)
            if event is None:
                raise DonationNotFoundError(f"Donation {donation_id} not found")

            return engine.sync(event).to_dict()

    def backfill_preview(
        self,
        batch_size: Optional[int] = None,
        offset: int = 0,
        token: Optional[CancellationToken] = None,
    ) -> Dict[str, Any]:
        """Dry-run one backfill page: donor lookups only, nothing created or logged."""
        result = self._orchestrator().run_backfill(
            dry_run=True,
            batch_size=batch_size or self.config.preview_batch_size,
            offset=offset,
            token=token,
        )
        return result.to_dict()

    def backfill_run(
        self,
        batch_size: Optional[int] = None,
        offset: int = 0,
        token: Optional[CancellationToken] = None,
    ) -> Dict[str, Any]:
        """
        Run one real backfill page.

        Without a token the service token is reset and used, so
        stop_backfill() stops the page in flight.
        """
        orchestrator = self._orchestrator()
        if token is None:
            token = self.backfill_token
            token.reset()

        result = orchestrator.run_backfill(
            dry_run=False,
            batch_size=batch_size or self.config.backfill_batch_size,
            offset=offset,
            token=token,
        )
        return result.to_dict()

    def stop_backfill(self) -> Dict[str, Any]:
        self.backfill_token.cancel()
        logger.info("Backfill stop requested")
        return {"status": "stopping"}

    # Reporting

    def match_report(self) -> Dict[str, Any]:
        """Look up every source donor in DonorPerfect by email."""
        client = self.get_client()
        report = MatchReport()

        for donor in self.source.list_donors():
            if not donor.email:
                continue
            report.add(
                donor_id=donor.donor_id,
                name=donor.full_name,
                email=donor.email,
                dp_donor_id=client.find_donor_by_email(donor.email),
            )

        logger.info("Match report built", total=report.total, matched=report.matched)
        return report.to_dict()

    def stats(self) -> Dict[str, Any]:
        data = self.ledger.aggregate_stats().to_dict()
        data["unsynced"] = self.source.count_unsynced()
        return data

    def log(self, limit: int = 100, offset: int = 0, status: Optional[str] = None) -> Dict[str, Any]:
        entries = self.ledger.list_entries(limit=limit, offset=offset, status_filter=status)
        return {
            "entries": [e.to_dict() for e in entries],
            "total": self.ledger.count_entries(status_filter=status),
            "limit": limit,
            "offset": offset,
        }

    def test_connection(self) -> Dict[str, Any]:
        return self.get_client().test_connection()

    def check_codes(self) -> Dict[str, Any]:
        return self.get_client().check_codes(
            self.config.default_gl_code, self.config.default_campaign
        )

    def create_missing_codes(self) -> Dict[str, Any]:
        """
        Create the ONETIME / RECURRING sub-solicit codes if they are missing.

        GL and campaign codes belong to the organization's chart of accounts
        and are only reported, never created.
        """
        client = self.get_client()
        checks = self.check_codes()
        created = []

        for key, description in SUB_SOLICIT_DESCRIPTIONS.items():
            check = checks.get(key)
            if check is None or check["valid"]:
                continue
            client.create_code("SUB_SOLICIT_CODE", check["code"], description)
            check["valid"] = True
            created.append(check["code"])

        logger.info("Sub-solicit codes checked", created=created)
        return {"codes": checks, "created": created}


def build_service(
    config: Optional[DonorSyncSettings] = None,
    engine: Optional[Engine] = None,
    client_factory: ClientFactory = default_client_factory,
) -> SyncService:
    """
    Wire source, ledger and client into a SyncService.

    Raises:
        ValueError: No engine given and DATABASE_URL not set
    """
    config = config or settings()

    if engine is None:
        if not config.database_url:
            raise ValueError("DATABASE_URL not set")
        engine = get_engine(config.database_url)

    create_schema(engine)

    source = SqlDonationSource(engine)
    service = SyncService(config, source, SyncLedger(engine), client_factory=client_factory)
    service.register()
    return service
