"""
Stats and reports over the sync log.

Read-only aggregation for dashboards and the CLI.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import Table, func, select
from sqlalchemy.engine import Connection


@dataclass
class SyncStats:
    """Counts over the sync log."""
    success: int = 0
    error: int = 0
    skipped: int = 0
    total: int = 0
    donors_created: int = 0
    donors_matched: int = 0
    pledges_created: int = 0
    recurring_gifts: int = 0
    onetime_gifts: int = 0
    last_sync: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "success": self.success,
            "error": self.error,
            "skipped": self.skipped,
            "total": self.total,
            "donors_created": self.donors_created,
            "donors_matched": self.donors_matched,
            "pledges_created": self.pledges_created,
            "recurring_gifts": self.recurring_gifts,
            "onetime_gifts": self.onetime_gifts,
            "last_sync": self.last_sync.isoformat() if self.last_sync else None,
        }


def collect_stats(conn: Connection, table: Table) -> SyncStats:
    """
    Aggregate the sync log into SyncStats.

    Donor, pledge and gift counts only consider successful rows.

    Args:
        conn: Open SQLAlchemy connection
        table: The sync log table

    Returns:
        SyncStats with all counts filled in
    """
    stats = SyncStats()

    rows = conn.execute(
        select(table.c.status, func.count()).group_by(table.c.status)
    ).all()
    for status, count in rows:
        if status in ("success", "error", "skipped"):
            setattr(stats, status, count)
        stats.total += count

    succeeded = table.c.status == "success"

    def count_success(*conditions) -> int:
        query = select(func.count()).select_from(table).where(succeeded, *conditions)
        return conn.execute(query).scalar_one()

    stats.donors_created = count_success(table.c.donor_action == "created")
    stats.donors_matched = count_success(table.c.donor_action == "matched")
    stats.pledges_created = count_success(
        table.c.pledge_id.is_not(None),
        table.c.donation_type == "subscription",
    )
    stats.recurring_gifts = count_success(
        table.c.donation_type.in_(["subscription", "renewal"])
    )
    stats.onetime_gifts = count_success(table.c.donation_type == "single")

    stats.last_sync = conn.execute(
        select(table.c.synced_at)
        .where(succeeded)
        .order_by(table.c.synced_at.desc())
        .limit(1)
    ).scalar()

    return stats


@dataclass
class MatchReport:
    """Which source donors already exist in DonorPerfect, by email."""
    donors: List[Dict[str, Any]] = field(default_factory=list)

    @property
    def total(self) -> int:
        return len(self.donors)

    @property
    def matched(self) -> int:
        return sum(1 for d in self.donors if d["dp_donor_id"] is not None)

    @property
    def new(self) -> int:
        return self.total - self.matched

    def add(self, donor_id: int, name: str, email: str, dp_donor_id: Optional[int]) -> None:
        self.donors.append({
            "source_donor_id": donor_id,
            "name": name,
            "email": email,
            "dp_donor_id": dp_donor_id,
            "action": (
                f"Will match to DP #{dp_donor_id}" if dp_donor_id is not None
                else "Will create new donor"
            ),
        })

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total": self.total,
            "matched": self.matched,
            "new": self.new,
            "donors": self.donors,
        }
