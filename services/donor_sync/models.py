"""
Value types shared by the sync engine, ledger and backfill.
"""

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Optional


class DonationKind(str, Enum):
    """Donation kind as reported by the donation platform."""
    ONE_TIME = "single"
    FIRST_RECURRING = "subscription"
    RENEWAL = "renewal"

    @property
    def is_recurring(self) -> bool:
        return self is not DonationKind.ONE_TIME

    @property
    def label(self) -> str:
        return _KIND_LABELS[self]


_KIND_LABELS = {
    DonationKind.ONE_TIME: "One-Time",
    DonationKind.FIRST_RECURRING: "Recurring - Initial",
    DonationKind.RENEWAL: "Recurring - Renewal",
}


class BillingPeriod(str, Enum):
    DAY = "day"
    WEEK = "week"
    MONTH = "month"
    QUARTER = "quarter"
    YEAR = "year"


class PledgeFrequency(str, Enum):
    """DonorPerfect pledge billing frequency codes."""
    MONTHLY = "M"
    QUARTERLY = "Q"
    ANNUAL = "A"


class SyncStatus(str, Enum):
    SUCCESS = "success"
    ERROR = "error"
    SKIPPED = "skipped"
    PREVIEW = "preview"
    ALREADY_SYNCED = "already_synced"
    IN_PROGRESS = "in_progress"


class DonorAction(str, Enum):
    MATCHED = "matched"
    CREATED = "created"


# Donation statuses that trigger a sync
FINAL_STATUSES = frozenset({"publish", "give_subscription"})

# DonorPerfect has no daily/weekly pledges, those collapse to monthly
_FREQUENCY_BY_PERIOD = {
    BillingPeriod.DAY.value: PledgeFrequency.MONTHLY,
    BillingPeriod.WEEK.value: PledgeFrequency.MONTHLY,
    BillingPeriod.MONTH.value: PledgeFrequency.MONTHLY,
    BillingPeriod.QUARTER.value: PledgeFrequency.QUARTERLY,
    BillingPeriod.YEAR.value: PledgeFrequency.ANNUAL,
}


def map_billing_period(period: Optional[str]) -> PledgeFrequency:
    """Map a billing period to a pledge frequency; unknown periods are monthly."""
    if not period:
        return PledgeFrequency.MONTHLY
    return _FREQUENCY_BY_PERIOD.get(str(period).strip().lower(), PledgeFrequency.MONTHLY)


def _money(value: Optional[Decimal]) -> Optional[str]:
    return f"{value:.2f}" if value is not None else None


@dataclass(frozen=True)
class DonationEvent:
    """A donation snapshot from the donation platform, normalized."""
    donation_id: int
    email: str
    first_name: str
    last_name: str
    amount: Decimal
    created_at: datetime
    gateway_id: str
    kind: DonationKind
    subscription_id: Optional[int] = None
    billing_period: Optional[str] = None
    source_donor_id: Optional[int] = None
    form_title: str = "Donation"
    status: str = "publish"

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()

    @property
    def gift_date(self) -> str:
        """Donation date in DonorPerfect's MM/DD/YYYY format."""
        return self.created_at.strftime("%m/%d/%Y")

    @property
    def is_final(self) -> bool:
        return self.status in FINAL_STATUSES


@dataclass(frozen=True)
class InvalidDonation:
    """A stored donation row that cannot be normalized into a DonationEvent."""
    donation_id: int
    error: str


@dataclass(frozen=True)
class DonorRecord:
    """A donor from the donation platform's donor list."""
    donor_id: int
    email: str
    first_name: str = ""
    last_name: str = ""

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()


@dataclass
class PledgeMapping:
    """Link between a recurring subscription and its DonorPerfect pledge."""
    subscription_id: int
    source_donor_id: Optional[int]
    target_donor_id: int
    pledge_id: int
    amount: Optional[Decimal] = None
    frequency: str = BillingPeriod.MONTH.value
    created_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "subscription_id": self.subscription_id,
            "source_donor_id": self.source_donor_id,
            "target_donor_id": self.target_donor_id,
            "pledge_id": self.pledge_id,
            "amount": _money(self.amount),
            "frequency": self.frequency,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }


@dataclass
class SyncResult:
    """Outcome of one sync attempt for one donation."""
    donation_id: int
    status: SyncStatus
    kind: Optional[DonationKind] = None
    amount: Optional[Decimal] = None
    donor_action: Optional[DonorAction] = None
    target_donor_id: Optional[int] = None
    gift_id: Optional[int] = None
    pledge_id: Optional[int] = None
    source_donor_id: Optional[int] = None
    subscription_id: Optional[int] = None
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.status in (SyncStatus.SUCCESS, SyncStatus.ALREADY_SYNCED)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "donation_id": self.donation_id,
            "status": self.status.value,
            "donation_type": self.kind.value if self.kind else None,
            "amount": _money(self.amount),
            "donor_action": self.donor_action.value if self.donor_action else None,
            "donor_id": self.target_donor_id,
            "gift_id": self.gift_id,
            "pledge_id": self.pledge_id,
            "error": self.error,
        }


@dataclass
class SyncPreview:
    """What a sync would do for one donation, computed without side effects."""
    donation_id: int
    email: str
    name: str
    amount: Decimal
    date: str
    kind: DonationKind
    form: str
    donor_action: str  # "match" or "create"
    target_donor_id: Optional[int]
    pledge_action: str
    status: SyncStatus = field(default=SyncStatus.PREVIEW)

    @property
    def ok(self) -> bool:
        return True

    def to_dict(self) -> Dict[str, Any]:
        return {
            "donation_id": self.donation_id,
            "email": self.email,
            "name": self.name,
            "amount": _money(self.amount),
            "date": self.date,
            "donation_type": self.kind.value,
            "form": self.form,
            "donor_action": self.donor_action,
            "donor_id": self.target_donor_id,
            "pledge_action": self.pledge_action,
            "status": self.status.value,
        }


@dataclass
class SyncLedgerEntry:
    """One row of the sync log."""
    id: int
    donation_id: int
    status: str
    source_donor_id: Optional[int] = None
    subscription_id: Optional[int] = None
    target_donor_id: Optional[int] = None
    gift_id: Optional[int] = None
    pledge_id: Optional[int] = None
    donor_action: Optional[str] = None
    donation_type: Optional[str] = None
    amount: Optional[Decimal] = None
    error_message: Optional[str] = None
    synced_at: Optional[datetime] = None

    @classmethod
    def from_row(cls, row) -> "SyncLedgerEntry":
        m = row._mapping
        return cls(
            id=m["id"],
            donation_id=m["donation_id"],
            status=m["status"],
            source_donor_id=m["source_donor_id"],
            subscription_id=m["subscription_id"],
            target_donor_id=m["target_donor_id"],
            gift_id=m["gift_id"],
            pledge_id=m["pledge_id"],
            donor_action=m["donor_action"],
            donation_type=m["donation_type"],
            amount=m["amount"],
            error_message=m["error_message"],
            synced_at=m["synced_at"],
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "donation_id": self.donation_id,
            "status": self.status,
            "source_donor_id": self.source_donor_id,
            "subscription_id": self.subscription_id,
            "donor_id": self.target_donor_id,
            "gift_id": self.gift_id,
            "pledge_id": self.pledge_id,
            "donor_action": self.donor_action,
            "donation_type": self.donation_type,
            "amount": _money(self.amount),
            "error": self.error_message,
            "synced_at": self.synced_at.isoformat() if self.synced_at else None,
        }
