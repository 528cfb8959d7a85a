"""
Donation platform (source) adapter.

- donation_from_record(): turns a raw donation payload into a DonationEvent
- DonationSource: what the sync needs from the donation platform
- SqlDonationSource: donation and donor tables living next to the sync log
"""

from datetime import datetime, timezone
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any, Callable, Dict, List, Mapping, Optional, Protocol, Union

import structlog
from sqlalchemy import (
    BigInteger,
    Column,
    DateTime,
    Index,
    Numeric,
    String,
    Table,
    func,
    select,
)
from sqlalchemy.engine import Engine

from .db import metadata, upsert
from .errors import DonationValidationError
from .ledger import sync_log_table
from .models import (
    FINAL_STATUSES,
    DonationEvent,
    DonationKind,
    DonorRecord,
    InvalidDonation,
)

logger = structlog.get_logger(__name__)

DonationCallback = Callable[[DonationEvent], Any]
UnsyncedDonation = Union[DonationEvent, InvalidDonation]

_KIND_ALIASES = {
    "single": DonationKind.ONE_TIME,
    "one-time": DonationKind.ONE_TIME,
    "one_time": DonationKind.ONE_TIME,
    "onetime": DonationKind.ONE_TIME,
    "subscription": DonationKind.FIRST_RECURRING,
    "first-recurring": DonationKind.FIRST_RECURRING,
    "first_recurring": DonationKind.FIRST_RECURRING,
    "renewal": DonationKind.RENEWAL,
}

CENTS = Decimal("0.01")


def _first(record: Mapping[str, Any], *keys: str) -> Any:
    """First non-None value among keys."""
    for key in keys:
        value = record.get(key)
        if value is not None:
            return value
    return None


def _unwrap(value: Any) -> Any:
    """Enum-like values arrive as {"value": ...} objects."""
    if isinstance(value, Mapping):
        return value.get("value")
    return value


def _to_int(value: Any) -> Optional[int]:
    if value is None or value == "":
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def derive_amount(record: Mapping[str, Any]) -> Decimal:
    """
    Derive the donation amount rounded to cents.

    Accepts numbers, numeric strings and money objects
    ({"value": "25.00"} or {"amount": "25.00", "currency": "USD"}).
    """
    raw = record.get("amount")
    if isinstance(raw, Mapping):
        raw = _first(raw, "value", "decimal", "amount")

    if raw is None or raw == "":
        return Decimal("0.00")

    try:
        amount = Decimal(str(raw)).quantize(CENTS, rounding=ROUND_HALF_UP)
    except InvalidOperation as exc:
        raise DonationValidationError(f"Invalid amount: {raw!r}") from exc

    if amount < 0:
        raise DonationValidationError(f"Negative amount: {raw!r}")
    return amount


def derive_created_at(record: Mapping[str, Any]) -> datetime:
    """Derive the donation timestamp; missing or unparseable dates read as now."""
    raw = _first(record, "createdAt", "created_at", "date")
    if isinstance(raw, Mapping):
        raw = _first(raw, "date", "value")

    if isinstance(raw, datetime):
        return raw

    if raw:
        text = str(raw)
        try:
            return datetime.fromisoformat(text.replace("Z", "+00:00"))
        except ValueError:
            for fmt in ("%Y-%m-%d %H:%M:%S", "%Y-%m-%d", "%m/%d/%Y"):
                try:
                    return datetime.strptime(text, fmt)
                except ValueError:
                    continue
        logger.warning("Unparseable donation date, using now", raw=text)

    return datetime.now(timezone.utc)


def derive_kind(record: Mapping[str, Any]) -> DonationKind:
    """Derive the donation kind; donations without one are one-time."""
    raw = _unwrap(_first(record, "type", "donation_type", "kind"))
    if raw is None or raw == "":
        return DonationKind.ONE_TIME

    kind = _KIND_ALIASES.get(str(raw).strip().lower())
    if kind is None:
        raise DonationValidationError(f"Unknown donation type: {raw!r}")
    return kind


def donation_from_record(record: Mapping[str, Any]) -> DonationEvent:
    """
    Normalize a raw donation payload into a DonationEvent.

    Accepts camelCase (platform webhooks) and snake_case (database rows)
    field names.

    Raises:
        DonationValidationError: Missing/invalid id, amount or type
    """
    donation_id = _to_int(_first(record, "id", "donation_id"))
    if donation_id is None or donation_id <= 0:
        raise DonationValidationError(f"Invalid donation id: {record.get('id')!r}")

    subscription = record.get("subscription")
    subscription = subscription if isinstance(subscription, Mapping) else {}

    subscription_id = _to_int(
        _first(record, "subscriptionId", "subscription_id") or subscription.get("id")
    ) or None

    period = _unwrap(_first(record, "period", "billing_period") or subscription.get("period"))

    kind = derive_kind(record)
    if kind.is_recurring and subscription_id is None:
        logger.warning(
            "Recurring donation without subscription id",
            donation_id=donation_id,
            donation_type=kind.value,
        )

    return DonationEvent(
        donation_id=donation_id,
        email=str(_first(record, "email", "donor_email") or "").strip(),
        first_name=str(_first(record, "firstName", "first_name") or "").strip(),
        last_name=str(_first(record, "lastName", "last_name") or "").strip(),
        amount=derive_amount(record),
        created_at=derive_created_at(record),
        gateway_id=str(_first(record, "gatewayId", "gateway_id", "gateway") or "unknown"),
        kind=kind,
        subscription_id=subscription_id,
        billing_period=str(period) if period else None,
        source_donor_id=_to_int(_first(record, "donorId", "donor_id")),
        form_title=str(_first(record, "formTitle", "form_title") or "Donation"),
        status=str(_unwrap(record.get("status")) or "publish"),
    )


class DonationSource(Protocol):
    """Read interface over the donation platform."""

    def get_donation(self, donation_id: int) -> Optional[DonationEvent]:
        ...

    def fetch_unsynced(self, limit: int, offset: int) -> List[UnsyncedDonation]:
        ...

    def count_unsynced(self) -> int:
        ...

    def list_donors(self) -> List[DonorRecord]:
        ...

    def subscribe(self, callback: DonationCallback) -> None:
        ...

    def publish_update(self, event: DonationEvent) -> List[Any]:
        ...


source_donations_table = Table(
    "source_donations",
    metadata,
    Column("id", BigInteger, primary_key=True, autoincrement=False),
    Column("donor_id", BigInteger),
    Column("email", String(255)),
    Column("first_name", String(100)),
    Column("last_name", String(100)),
    Column("amount", Numeric(10, 2), nullable=False),
    Column("created_at", DateTime(timezone=True), nullable=False),
    Column("gateway_id", String(50)),
    Column("donation_type", String(20), nullable=False),
    Column("subscription_id", BigInteger),
    Column("billing_period", String(20)),
    Column("form_title", String(255)),
    Column("status", String(30), nullable=False),
    Index("ix_source_donations_status", "status"),
)

source_donors_table = Table(
    "source_donors",
    metadata,
    Column("id", BigInteger, primary_key=True, autoincrement=False),
    Column("email", String(255)),
    Column("first_name", String(100)),
    Column("last_name", String(100)),
)


class SqlDonationSource:
    """
    Donation source backed by tables in the sync database.

    Unsynced donations are donations in a final status with no success row
    in the sync log, filtered in SQL.
    """

    def __init__(self, engine: Engine):
        self.engine = engine
        self._subscribers: List[DonationCallback] = []

    def _unsynced_filter(self):
        t = source_donations_table
        synced_ids = select(sync_log_table.c.donation_id).where(
            sync_log_table.c.status == "success"
        )
        return (
            t.c.status.in_(sorted(FINAL_STATUSES)),
            t.c.id.not_in(synced_ids),
        )

    def get_donation(self, donation_id: int) -> Optional[DonationEvent]:
        t = source_donations_table
        with self.engine.connect() as conn:
            row = conn.execute(select(t).where(t.c.id == donation_id)).first()
        return donation_from_record(row._mapping) if row else None

    def fetch_unsynced(self, limit: int, offset: int) -> List[UnsyncedDonation]:
        """
        Unsynced donations ordered by ascending id.

        Rows that cannot be normalized come back as InvalidDonation so one
        bad row does not block the page.
        """
        t = source_donations_table
        query = (
            select(t)
            .where(*self._unsynced_filter())
            .order_by(t.c.id.asc())
            .limit(limit)
            .offset(offset)
        )
        with self.engine.connect() as conn:
            rows = conn.execute(query).all()

        donations: List[UnsyncedDonation] = []
        for row in rows:
            try:
                donations.append(donation_from_record(row._mapping))
            except DonationValidationError as exc:
                logger.warning("Unloadable donation row", donation_id=row.id, error=str(exc))
                donations.append(InvalidDonation(donation_id=row.id, error=str(exc)))
        return donations

    def count_unsynced(self) -> int:
        t = source_donations_table
        query = select(func.count()).select_from(t).where(*self._unsynced_filter())
        with self.engine.connect() as conn:
            return conn.execute(query).scalar_one()

    def list_donors(self) -> List[DonorRecord]:
        t = source_donors_table
        with self.engine.connect() as conn:
            rows = conn.execute(select(t).order_by(t.c.id)).all()
        return [
            DonorRecord(
                donor_id=r.id,
                email=r.email or "",
                first_name=r.first_name or "",
                last_name=r.last_name or "",
            )
            for r in rows
        ]

    def save_donation(self, event: DonationEvent) -> None:
        """Insert or refresh a donation snapshot."""
        payload: Dict[str, Any] = {
            "id": event.donation_id,
            "donor_id": event.source_donor_id,
            "email": event.email,
            "first_name": event.first_name,
            "last_name": event.last_name,
            "amount": event.amount,
            "created_at": event.created_at,
            "gateway_id": event.gateway_id,
            "donation_type": event.kind.value,
            "subscription_id": event.subscription_id,
            "billing_period": event.billing_period,
            "form_title": event.form_title,
            "status": event.status,
        }
        stmt = upsert(
            source_donations_table,
            conflict_keys="id",
            payload=payload,
            dialect=self.engine.dialect.name,
        )
        with self.engine.begin() as conn:
            conn.execute(stmt)

    def save_donor(self, donor: DonorRecord) -> None:
        stmt = upsert(
            source_donors_table,
            conflict_keys="id",
            payload={
                "id": donor.donor_id,
                "email": donor.email,
                "first_name": donor.first_name,
                "last_name": donor.last_name,
            },
            dialect=self.engine.dialect.name,
        )
        with self.engine.begin() as conn:
            conn.execute(stmt)

    def subscribe(self, callback: DonationCallback) -> None:
        """Register a callback for the donation-updated signal."""
        self._subscribers.append(callback)

    def publish_update(self, event: DonationEvent) -> List[Any]:
        """Store the donation (and its donor) and fire the donation-updated signal."""
        self.save_donation(event)
        if event.source_donor_id:
            self.save_donor(DonorRecord(
                donor_id=event.source_donor_id,
                email=event.email,
                first_name=event.first_name,
                last_name=event.last_name,
            ))
        return [callback(event) for callback in self._subscribers]
