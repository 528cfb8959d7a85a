"""
Reconciliation engine: one donation in, DonorPerfect records out.

Flow per donation (fixed order):
1. Guard: no email -> skipped
2. Donor: match by email, otherwise create
3. Recurring: first payment creates an open-ended pledge and maps the
   subscription to it; renewals look the pledge up in the map
4. Gift: created with the resolved donor, linked to the pledge if any

Every attempt outside a dry run ends with exactly one sync log row.
Expected failures come back as results, they are never raised.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Protocol, Tuple, Union

import structlog

from .errors import DonorPerfectAPIError
from .ledger import SyncLedger
from .log_config import log_sync_result
from .models import (
    DonationEvent,
    DonationKind,
    DonorAction,
    InvalidDonation,
    PledgeMapping,
    SyncPreview,
    SyncResult,
    SyncStatus,
    map_billing_period,
)
from .settings import DonorSyncSettings

logger = structlog.get_logger(__name__)

ONETIME_SUB_SOLICIT = "ONETIME"
RECURRING_SUB_SOLICIT = "RECURRING"

SyncOutcome = Union[SyncResult, SyncPreview]


class TargetClient(Protocol):
    """The DonorPerfect operations the engine depends on."""

    def find_donor_by_email(self, email: str) -> Optional[int]: ...

    def lookup_donor_by_email(self, email: str) -> Optional[int]: ...

    def create_donor(self, fields: Dict[str, Any]) -> int: ...

    def create_gift(self, fields: Dict[str, Any]) -> int: ...

    def create_pledge(self, fields: Dict[str, Any]) -> int: ...


@dataclass
class SyncConfig:
    """Codes and policies applied to every donation."""
    gl_code: str = "UN"
    campaign: Optional[str] = None
    solicit_code: Optional[str] = None
    gateway_map: Dict[str, str] = field(default_factory=dict)
    default_gift_type: str = "CC"
    country: str = "US"
    strict_donor_lookup: bool = False

    @classmethod
    def from_settings(cls, config: DonorSyncSettings) -> "SyncConfig":
        return cls(
            gl_code=config.default_gl_code,
            campaign=config.default_campaign,
            solicit_code=config.default_solicit_code,
            gateway_map=dict(config.gateway_map),
            default_gift_type=config.default_gift_type,
            country=config.default_country,
            strict_donor_lookup=config.strict_donor_lookup,
        )

    def gift_type_for(self, gateway_id: str) -> str:
        return self.gateway_map.get(gateway_id, self.default_gift_type)


def build_reference(event: DonationEvent) -> str:
    """Gift reference pointing back at the source donation."""
    return f"DONATION-{event.donation_id}"


def build_gift_narrative(event: DonationEvent) -> str:
    return (
        f"Donation #{event.donation_id} - {event.form_title} "
        f"({event.kind.label} ${event.amount:.2f})"
    )


def build_pledge_narrative(event: DonationEvent) -> str:
    period = event.billing_period or "month"
    return f"Recurring - {event.form_title} (${event.amount:.2f}/{period})"


class ReconciliationEngine:
    """Maps donations onto DonorPerfect donors, pledges and gifts."""

    def __init__(self, client: TargetClient, ledger: SyncLedger, config: SyncConfig):
        self.client = client
        self.ledger = ledger
        self.config = config

    def sync(self, event: DonationEvent, dry_run: bool = False) -> SyncOutcome:
        """
        Sync one donation.

        Args:
            event: Normalized donation
            dry_run: Compute a preview only; nothing is created or logged

        Returns:
            SyncResult (success/error/skipped) or SyncPreview for dry runs
        """
        log = logger.bind(
            donation_id=event.donation_id,
            donation_type=event.kind.value,
            dry_run=dry_run,
        )

        if not event.email:
            log.info("Donation skipped, no email address")
            result = self._result(event, SyncStatus.SKIPPED, error="No email address")
            return result if dry_run else self._record(result)

        if dry_run:
            try:
                return self.preview(event)
            except Exception as exc:  # one bad item must not stop a preview batch
                log.exception("Preview failed")
                return self._result(event, SyncStatus.ERROR, error=f"Preview failed: {exc}")

        try:
            result = self._sync_live(event, log)
        except Exception as exc:  # one bad item must not stop a batch
            log.exception("Unexpected sync failure")
            result = self._result(event, SyncStatus.ERROR, error=f"Unexpected error: {exc}")

        log_sync_result(log, result)
        return self._record(result)

    def reject(self, invalid: InvalidDonation, dry_run: bool = False) -> SyncResult:
        """Error result for a stored donation that could not be loaded."""
        result = SyncResult(
            donation_id=invalid.donation_id,
            status=SyncStatus.ERROR,
            error=f"Invalid donation: {invalid.error}",
        )
        log_sync_result(logger.bind(donation_id=invalid.donation_id, dry_run=dry_run), result)
        return result if dry_run else self._record(result)

    def preview(self, event: DonationEvent) -> SyncPreview:
        """Describe what a sync would do; only reads, never writes."""
        donor_id = self.client.find_donor_by_email(event.email)
        mapping = (
            self.ledger.find_pledge_mapping(event.subscription_id)
            if event.subscription_id else None
        )

        if event.kind is DonationKind.FIRST_RECURRING:
            pledge_action = f"reuse_pledge #{mapping.pledge_id}" if mapping else "create_pledge"
        elif event.kind is DonationKind.RENEWAL:
            pledge_action = (
                f"link_to_pledge #{mapping.pledge_id}" if mapping
                else "gift_only (no pledge found)"
            )
        else:
            pledge_action = "none"

        return SyncPreview(
            donation_id=event.donation_id,
            email=event.email,
            name=event.full_name,
            amount=event.amount,
            date=event.gift_date,
            kind=event.kind,
            form=event.form_title,
            donor_action="match" if donor_id is not None else "create",
            target_donor_id=donor_id,
            pledge_action=pledge_action,
        )

    def _sync_live(self, event: DonationEvent, log) -> SyncResult:
        # Step 1: find or create donor
        try:
            donor_id, donor_action = self._resolve_donor(event)
        except _StepFailed as failed:
            return self._result(event, SyncStatus.ERROR, error=failed.message)

        # Step 2: recurring vs one-time
        pledge_id: Optional[int] = None
        sub_solicit = ONETIME_SUB_SOLICIT

        if event.kind is DonationKind.FIRST_RECURRING:
            sub_solicit = RECURRING_SUB_SOLICIT
            try:
                pledge_id = self._resolve_pledge(event, donor_id, log)
            except DonorPerfectAPIError as exc:
                return self._result(
                    event, SyncStatus.ERROR,
                    donor_action=donor_action, target_donor_id=donor_id,
                    error=f"Failed to create pledge: {exc}",
                )

        elif event.kind is DonationKind.RENEWAL:
            sub_solicit = RECURRING_SUB_SOLICIT
            mapping = (
                self.ledger.find_pledge_mapping(event.subscription_id)
                if event.subscription_id else None
            )
            if mapping:
                pledge_id = mapping.pledge_id
            else:
                log.warning(
                    "No pledge found for renewal, creating standalone gift",
                    subscription_id=event.subscription_id,
                )

        # Step 3: create the gift
        try:
            gift_id = self.client.create_gift(self._gift_fields(event, donor_id, sub_solicit, pledge_id))
        except DonorPerfectAPIError as exc:
            return self._result(
                event, SyncStatus.ERROR,
                donor_action=donor_action, target_donor_id=donor_id, pledge_id=pledge_id,
                error=f"Failed to create gift: {exc}",
            )

        return self._result(
            event, SyncStatus.SUCCESS,
            donor_action=donor_action,
            target_donor_id=donor_id,
            gift_id=gift_id,
            pledge_id=pledge_id,
        )

    def _resolve_donor(self, event: DonationEvent) -> Tuple[int, DonorAction]:
        if self.config.strict_donor_lookup:
            try:
                donor_id = self.client.lookup_donor_by_email(event.email)
            except DonorPerfectAPIError as exc:
                raise _StepFailed(f"Donor lookup failed: {exc}") from exc
        else:
            donor_id = self.client.find_donor_by_email(event.email)

        if donor_id is not None:
            return donor_id, DonorAction.MATCHED

        try:
            donor_id = self.client.create_donor({
                "first_name": event.first_name,
                "last_name": event.last_name,
                "email": event.email,
                "country": self.config.country,
            })
        except DonorPerfectAPIError as exc:
            raise _StepFailed(f"Failed to create donor: {exc}") from exc

        return donor_id, DonorAction.CREATED

    def _resolve_pledge(self, event: DonationEvent, donor_id: int, log) -> int:
        """Create the pledge for a first recurring payment and map it."""
        if event.subscription_id:
            existing = self.ledger.find_pledge_mapping(event.subscription_id)
            if existing:
                # An earlier attempt created the pledge before failing
                log.info(
                    "Reusing pledge from earlier attempt",
                    subscription_id=event.subscription_id,
                    pledge_id=existing.pledge_id,
                )
                return existing.pledge_id

        frequency = map_billing_period(event.billing_period)
        pledge_id = self.client.create_pledge({
            "donor_id": donor_id,
            "gift_date": event.gift_date,
            "start_date": event.gift_date,
            "total": 0,
            "bill": event.amount,
            "frequency": frequency.value,
            "gl_code": self.config.gl_code,
            "solicit_code": self.config.solicit_code,
            "sub_solicit_code": RECURRING_SUB_SOLICIT,
            "campaign": self.config.campaign,
            "initial_payment": "Y",
            "gift_narrative": build_pledge_narrative(event),
        })

        if event.subscription_id:
            saved = self.ledger.save_pledge_mapping(PledgeMapping(
                subscription_id=event.subscription_id,
                source_donor_id=event.source_donor_id,
                target_donor_id=donor_id,
                pledge_id=pledge_id,
                amount=event.amount,
                frequency=event.billing_period or "month",
            ))
            if not saved:
                # A concurrent first payment mapped the subscription first
                winner = self.ledger.find_pledge_mapping(event.subscription_id)
                if winner is not None:
                    log.warning(
                        "Subscription already mapped, orphan pledge left in DonorPerfect",
                        subscription_id=event.subscription_id,
                        pledge_id=winner.pledge_id,
                        orphan_pledge_id=pledge_id,
                    )
                    return winner.pledge_id

        return pledge_id

    def _gift_fields(
        self,
        event: DonationEvent,
        donor_id: int,
        sub_solicit: str,
        pledge_id: Optional[int],
    ) -> Dict[str, Any]:
        fields: Dict[str, Any] = {
            "donor_id": donor_id,
            "gift_date": event.gift_date,
            "amount": event.amount,
            "gl_code": self.config.gl_code,
            "solicit_code": self.config.solicit_code,
            "sub_solicit_code": sub_solicit,
            "campaign": self.config.campaign,
            "gift_type": self.config.gift_type_for(event.gateway_id),
            "reference": build_reference(event),
            "gift_narrative": build_gift_narrative(event),
        }
        if pledge_id:
            fields["pledge_payment"] = "Y"
            fields["plink"] = pledge_id
        return fields

    def _result(self, event: DonationEvent, status: SyncStatus, **kwargs) -> SyncResult:
        return SyncResult(
            donation_id=event.donation_id,
            status=status,
            kind=event.kind,
            amount=event.amount,
            source_donor_id=event.source_donor_id,
            subscription_id=event.subscription_id,
            **kwargs,
        )

    def _record(self, result: SyncResult) -> SyncResult:
        self.ledger.record_attempt(result)
        return result


class _StepFailed(Exception):
    """Internal: a sync step failed with a ready-made message."""

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message
