"""
Sync ledger: the durable log of sync attempts and the pledge map.

Guarantees:
- At most one success row per donation (partial unique index)
- A success row is never deleted or replaced
- Only the latest non-success attempt survives per donation
- One pledge mapping per subscription, its pledge id never changes
"""

from datetime import datetime, timezone
from typing import List, Optional

import structlog
from sqlalchemy import (
    BigInteger,
    Column,
    DateTime,
    Index,
    Integer,
    Numeric,
    String,
    Table,
    Text,
    delete,
    func,
    insert,
    select,
    text,
)
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import IntegrityError

from .db import metadata, upsert
from .models import PledgeMapping, SyncLedgerEntry, SyncResult
from .report import SyncStats, collect_stats

logger = structlog.get_logger(__name__)

SUCCESS_ONLY = text("status = 'success'")

sync_log_table = Table(
    "donor_sync_log",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("donation_id", BigInteger, nullable=False),
    Column("source_donor_id", BigInteger),
    Column("subscription_id", BigInteger),
    Column("target_donor_id", BigInteger),
    Column("gift_id", BigInteger),
    Column("pledge_id", BigInteger),
    Column("donor_action", String(20)),
    Column("donation_type", String(20)),
    Column("amount", Numeric(10, 2)),
    Column("status", String(20), nullable=False),
    Column("error_message", Text),
    Column("synced_at", DateTime(timezone=True), nullable=False),
    Index("ix_donor_sync_log_donation_id", "donation_id"),
    Index("ix_donor_sync_log_status", "status"),
    Index("ix_donor_sync_log_subscription_id", "subscription_id"),
    Index(
        "uq_donor_sync_log_success",
        "donation_id",
        unique=True,
        postgresql_where=SUCCESS_ONLY,
        sqlite_where=SUCCESS_ONLY,
    ),
)

pledge_map_table = Table(
    "donor_sync_pledge_map",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("subscription_id", BigInteger, nullable=False, unique=True),
    Column("source_donor_id", BigInteger),
    Column("target_donor_id", BigInteger, nullable=False),
    Column("pledge_id", BigInteger, nullable=False),
    Column("amount", Numeric(10, 2)),
    Column("frequency", String(10), nullable=False, server_default="month"),
    Column("created_at", DateTime(timezone=True), nullable=False),
    Index("ix_donor_sync_pledge_map_pledge_id", "pledge_id"),
)


def _now() -> datetime:
    return datetime.now(timezone.utc)


def lock_donation(conn: Connection, donation_id: int) -> None:
    """
    Serialize sync log writes for one donation until the transaction ends.

    PostgreSQL takes a transaction-scoped advisory lock keyed on the donation
    id. SQLite already allows a single writer at a time.
    """
    if conn.dialect.name == "postgresql":
        conn.execute(select(func.pg_advisory_xact_lock(donation_id)))


class SyncLedger:
    """Sync log and pledge map backed by SQLAlchemy."""

    def __init__(self, engine: Engine):
        self.engine = engine

    # Sync log

    def is_synced(self, donation_id: int) -> bool:
        """True if the donation has a success row."""
        return self.get_success(donation_id) is not None

    def get_success(self, donation_id: int) -> Optional[SyncLedgerEntry]:
        t = sync_log_table
        with self.engine.connect() as conn:
            row = conn.execute(
                select(t).where(t.c.donation_id == donation_id, t.c.status == "success")
            ).first()
        return SyncLedgerEntry.from_row(row) if row else None

    def record_attempt(self, result: SyncResult) -> bool:
        """
        Persist the outcome of a sync attempt.

        In one transaction, holding the donation's lock: drop the previous
        non-success rows for the donation, then insert the new row. A donation that already has a
        success row keeps it and the attempt is dropped.

        Returns:
            True if a row was written
        """
        t = sync_log_table
        donation_id = result.donation_id

        try:
            with self.engine.begin() as conn:
                lock_donation(conn, donation_id)
                existing = conn.execute(
                    select(t.c.id).where(
                        t.c.donation_id == donation_id, t.c.status == "success"
                    )
                ).first()
                if existing:
                    logger.warning(
                        "Donation already synced, attempt not recorded",
                        donation_id=donation_id,
                        status=result.status.value,
                    )
                    return False

                conn.execute(
                    delete(t).where(t.c.donation_id == donation_id, t.c.status != "success")
                )
                conn.execute(insert(t).values(
                    donation_id=donation_id,
                    source_donor_id=result.source_donor_id,
                    subscription_id=result.subscription_id,
                    target_donor_id=result.target_donor_id,
                    gift_id=result.gift_id,
                    pledge_id=result.pledge_id,
                    donor_action=result.donor_action.value if result.donor_action else None,
                    donation_type=result.kind.value if result.kind else None,
                    amount=result.amount,
                    status=result.status.value,
                    error_message=result.error,
                    synced_at=_now(),
                ))
        except IntegrityError:
            # A concurrent attempt recorded the success first
            logger.warning(
                "Concurrent success recorded, attempt dropped",
                donation_id=donation_id,
                status=result.status.value,
            )
            return False

        logger.debug("Sync attempt recorded", donation_id=donation_id, status=result.status.value)
        return True

    def entries_for_donation(self, donation_id: int) -> List[SyncLedgerEntry]:
        t = sync_log_table
        with self.engine.connect() as conn:
            rows = conn.execute(
                select(t).where(t.c.donation_id == donation_id).order_by(t.c.id)
            ).all()
        return [SyncLedgerEntry.from_row(r) for r in rows]

    def list_entries(
        self,
        limit: int = 100,
        offset: int = 0,
        status_filter: Optional[str] = None,
    ) -> List[SyncLedgerEntry]:
        """List log entries, newest first."""
        t = sync_log_table
        query = select(t)
        if status_filter:
            query = query.where(t.c.status == status_filter)
        query = query.order_by(t.c.synced_at.desc(), t.c.id.desc()).limit(limit).offset(offset)

        with self.engine.connect() as conn:
            rows = conn.execute(query).all()
        return [SyncLedgerEntry.from_row(r) for r in rows]

    def count_entries(self, status_filter: Optional[str] = None) -> int:
        t = sync_log_table
        query = select(func.count()).select_from(t)
        if status_filter:
            query = query.where(t.c.status == status_filter)
        with self.engine.connect() as conn:
            return conn.execute(query).scalar_one()

    def aggregate_stats(self) -> SyncStats:
        with self.engine.connect() as conn:
            return collect_stats(conn, sync_log_table)

    # Pledge map

    def find_pledge_mapping(self, subscription_id: int) -> Optional[PledgeMapping]:
        t = pledge_map_table
        with self.engine.connect() as conn:
            row = conn.execute(
                select(t).where(t.c.subscription_id == subscription_id)
            ).first()

        if row is None:
            return None

        m = row._mapping
        return PledgeMapping(
            subscription_id=m["subscription_id"],
            source_donor_id=m["source_donor_id"],
            target_donor_id=m["target_donor_id"],
            pledge_id=m["pledge_id"],
            amount=m["amount"],
            frequency=m["frequency"],
            created_at=m["created_at"],
        )

    def save_pledge_mapping(self, mapping: PledgeMapping) -> bool:
        """
        Store the pledge created for a subscription.

        The first mapping for a subscription wins; later saves are ignored
        so the pledge id never changes.

        Returns:
            True if the mapping was inserted
        """
        payload = {
            "subscription_id": mapping.subscription_id,
            "source_donor_id": mapping.source_donor_id,
            "target_donor_id": mapping.target_donor_id,
            "pledge_id": mapping.pledge_id,
            "amount": mapping.amount,
            "frequency": mapping.frequency,
            "created_at": mapping.created_at or _now(),
        }
        stmt = upsert(
            pledge_map_table,
            conflict_keys="subscription_id",
            payload=payload,
            do_nothing=True,
            dialect=self.engine.dialect.name,
        )

        with self.engine.begin() as conn:
            inserted = conn.execute(stmt).rowcount == 1

        if inserted:
            logger.info(
                "Pledge mapping saved",
                subscription_id=mapping.subscription_id,
                pledge_id=mapping.pledge_id,
            )
        else:
            logger.warning(
                "Pledge mapping already exists, keeping original pledge",
                subscription_id=mapping.subscription_id,
                pledge_id=mapping.pledge_id,
            )
        return inserted
