"""
Pytest fixtures for donor_sync tests.

Database tests run against in-memory SQLite; DonorPerfect is replaced by
FakeDonorPerfect, which records every call.
"""

import sys
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional, Tuple

import pytest
import structlog
from sqlalchemy.engine import Engine

from services.donor_sync.db import create_schema, get_engine
from services.donor_sync.engine import ReconciliationEngine, SyncConfig
from services.donor_sync.errors import DonorPerfectAPIError
from services.donor_sync.ledger import SyncLedger
from services.donor_sync.models import DonationEvent, DonationKind
from services.donor_sync.settings import DonorSyncSettings
from services.donor_sync.source import SqlDonationSource


class FakeDonorPerfect:
    """In-memory DonorPerfect double with per-method failure injection."""

    def __init__(self):
        self.donors: Dict[str, int] = {}
        self.calls: List[Tuple[str, Any]] = []
        self.failures: Dict[str, Exception] = {}
        self.codes = {"UN", "ONETIME", "RECURRING"}
        self.closed = False
        self._next_id = 1000

    def _call(self, method: str, payload: Any) -> None:
        self.calls.append((method, payload))
        failure = self.failures.get(method)
        if failure is not None:
            raise failure

    def _new_id(self) -> int:
        self._next_id += 1
        return self._next_id

    def calls_to(self, method: str) -> List[Any]:
        return [payload for name, payload in self.calls if name == method]

    def lookup_donor_by_email(self, email: str) -> Optional[int]:
        self._call("lookup_donor_by_email", email)
        return self.donors.get(email)

    def find_donor_by_email(self, email: str) -> Optional[int]:
        try:
            return self.lookup_donor_by_email(email)
        except DonorPerfectAPIError:
            return None

    def create_donor(self, fields: Dict[str, Any]) -> int:
        self._call("create_donor", fields)
        donor_id = self._new_id()
        self.donors[fields["email"]] = donor_id
        return donor_id

    def create_gift(self, fields: Dict[str, Any]) -> int:
        self._call("create_gift", fields)
        return self._new_id()

    def create_pledge(self, fields: Dict[str, Any]) -> int:
        self._call("create_pledge", fields)
        return self._new_id()

    def test_connection(self) -> Dict[str, Any]:
        self._call("test_connection", None)
        return {
            "status": "connected",
            "message": f"API connected successfully. {len(self.donors)} donors in DonorPerfect.",
            "donors": len(self.donors),
        }

    def check_codes(self, gl_code, campaign) -> Dict[str, Dict[str, Any]]:
        checks = {"gl_code": {"code": gl_code, "valid": gl_code in self.codes}}
        if campaign:
            checks["campaign"] = {"code": campaign, "valid": campaign in self.codes}
        checks["onetime"] = {"code": "ONETIME", "valid": "ONETIME" in self.codes}
        checks["recurring"] = {"code": "RECURRING", "valid": "RECURRING" in self.codes}
        return checks

    def create_code(self, field_name: str, code: str, description: str) -> None:
        self._call("create_code", (field_name, code, description))
        self.codes.add(code)

    def close(self) -> None:
        self.closed = True


@pytest.fixture(autouse=True, scope="session")
def log_to_stderr():
    """Keep log lines out of captured stdout; CLI tests parse stdout as JSON."""
    structlog.configure(logger_factory=structlog.PrintLoggerFactory(sys.stderr))
    yield
    structlog.reset_defaults()


@pytest.fixture
def db_engine() -> Engine:
    """Fresh in-memory database with the full schema."""
    engine = get_engine("sqlite://")
    create_schema(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def ledger(db_engine) -> SyncLedger:
    return SyncLedger(db_engine)


@pytest.fixture
def source(db_engine) -> SqlDonationSource:
    return SqlDonationSource(db_engine)


@pytest.fixture
def dp() -> FakeDonorPerfect:
    return FakeDonorPerfect()


@pytest.fixture
def sync_config() -> SyncConfig:
    return SyncConfig(
        gl_code="UN",
        campaign="GENERAL",
        solicit_code="WEB",
        gateway_map={"stripe": "CC", "paypal": "PAYPAL", "manual": "CK"},
        default_gift_type="CC",
    )


@pytest.fixture
def sync_engine(dp, ledger, sync_config) -> ReconciliationEngine:
    return ReconciliationEngine(dp, ledger, sync_config)


@pytest.fixture
def app_settings() -> DonorSyncSettings:
    """Settings isolated from the environment and .env files."""
    return DonorSyncSettings(
        _env_file=None,
        enable_donor_sync=True,
        dp_api_key="test-key",
        default_campaign="GENERAL",
        backfill_delay=0,
        database_url=None,
    )


@pytest.fixture
def make_event():
    """Factory for DonationEvent with sensible defaults."""

    def _make(donation_id: int = 100, **overrides) -> DonationEvent:
        values = {
            "donation_id": donation_id,
            "email": f"donor{donation_id}@example.com",
            "first_name": "Ada",
            "last_name": "Lovelace",
            "amount": Decimal("25.00"),
            "created_at": datetime(2025, 3, 15, 10, 30),
            "gateway_id": "stripe",
            "kind": DonationKind.ONE_TIME,
            "form_title": "Spring Appeal",
        }
        values.update(overrides)
        return DonationEvent(**values)

    return _make
