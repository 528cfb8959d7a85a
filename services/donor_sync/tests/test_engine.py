"""
Tests for the reconciliation engine.

Covers the donor/pledge/gift flow per donation kind, dry runs, skips and
how failed attempts end up in the sync log.
"""

from decimal import Decimal
from unittest.mock import Mock

import pytest

from services.donor_sync.engine import (
    ReconciliationEngine,
    build_gift_narrative,
    build_pledge_narrative,
    build_reference,
)
from services.donor_sync.errors import RemoteRejectedError, RemoteTransportError
from services.donor_sync.models import (
    DonationKind,
    DonorAction,
    InvalidDonation,
    PledgeMapping,
    SyncPreview,
    SyncStatus,
)


@pytest.fixture
def first_recurring(make_event):
    return make_event(
        101,
        email="b@x.com",
        amount=Decimal("10.00"),
        kind=DonationKind.FIRST_RECURRING,
        subscription_id=55,
        billing_period="month",
        source_donor_id=7,
    )


class TestBuilders:
    """Test reference and narrative text."""

    def test_reference(self, make_event):
        assert build_reference(make_event(100)) == "DONATION-100"

    def test_gift_narrative_one_time(self, make_event):
        event = make_event(100)
        assert build_gift_narrative(event) == "Donation #100 - Spring Appeal (One-Time $25.00)"

    def test_gift_narrative_renewal(self, make_event):
        event = make_event(102, kind=DonationKind.RENEWAL, amount=Decimal("10"))
        assert build_gift_narrative(event) == (
            "Donation #102 - Spring Appeal (Recurring - Renewal $10.00)"
        )

    def test_pledge_narrative(self, first_recurring):
        assert build_pledge_narrative(first_recurring) == "Recurring - Spring Appeal ($10.00/month)"

    def test_pledge_narrative_defaults_to_month(self, make_event):
        event = make_event(5, kind=DonationKind.FIRST_RECURRING, billing_period=None)
        assert build_pledge_narrative(event).endswith("/month)")


class TestOneTimeDonation:
    """One-time donation flow."""

    def test_new_donor(self, sync_engine, dp, ledger, make_event):
        event = make_event(100, email="a@x.com", amount=Decimal("25.00"), gateway_id="stripe")

        result = sync_engine.sync(event)

        assert result.status is SyncStatus.SUCCESS
        assert result.donor_action is DonorAction.CREATED
        assert result.pledge_id is None

        assert len(dp.calls_to("create_donor")) == 1
        donor_fields = dp.calls_to("create_donor")[0]
        assert donor_fields["email"] == "a@x.com"
        assert donor_fields["country"] == "US"

        gift = dp.calls_to("create_gift")[0]
        assert gift["donor_id"] == result.target_donor_id
        assert gift["sub_solicit_code"] == "ONETIME"
        assert gift["gift_type"] == "CC"
        assert gift["amount"] == Decimal("25.00")
        assert gift["gift_date"] == "03/15/2025"
        assert gift["reference"] == "DONATION-100"
        assert gift["campaign"] == "GENERAL"
        assert gift["solicit_code"] == "WEB"
        assert "plink" not in gift
        assert not dp.calls_to("create_pledge")

        entry = ledger.get_success(100)
        assert entry is not None
        assert entry.gift_id == result.gift_id
        assert entry.pledge_id is None
        assert entry.donor_action == "created"
        assert entry.donation_type == "single"

    def test_existing_donor_is_matched(self, sync_engine, dp, make_event):
        dp.donors["a@x.com"] = 77

        result = sync_engine.sync(make_event(100, email="a@x.com"))

        assert result.status is SyncStatus.SUCCESS
        assert result.donor_action is DonorAction.MATCHED
        assert result.target_donor_id == 77
        assert not dp.calls_to("create_donor")
        assert dp.calls_to("create_gift")[0]["donor_id"] == 77

    def test_gateway_maps_to_gift_type(self, sync_engine, dp, make_event):
        sync_engine.sync(make_event(1, gateway_id="paypal"))
        sync_engine.sync(make_event(2, gateway_id="some_new_gateway"))

        gift_types = [g["gift_type"] for g in dp.calls_to("create_gift")]
        assert gift_types == ["PAYPAL", "CC"]


class TestRecurringDonations:
    """First recurring payments and renewals."""

    def test_first_recurring_creates_pledge(self, sync_engine, dp, ledger, first_recurring):
        result = sync_engine.sync(first_recurring)

        assert result.status is SyncStatus.SUCCESS
        assert result.pledge_id is not None

        pledge = dp.calls_to("create_pledge")[0]
        assert pledge["total"] == 0
        assert pledge["bill"] == Decimal("10.00")
        assert pledge["frequency"] == "M"
        assert pledge["initial_payment"] == "Y"
        assert pledge["donor_id"] == result.target_donor_id
        assert pledge["gift_narrative"] == "Recurring - Spring Appeal ($10.00/month)"

        gift = dp.calls_to("create_gift")[0]
        assert gift["plink"] == result.pledge_id
        assert gift["pledge_payment"] == "Y"
        assert gift["sub_solicit_code"] == "RECURRING"

        mapping = ledger.find_pledge_mapping(55)
        assert mapping is not None
        assert mapping.pledge_id == result.pledge_id
        assert mapping.target_donor_id == result.target_donor_id
        assert mapping.source_donor_id == 7
        assert mapping.frequency == "month"

        assert ledger.get_success(101).pledge_id == result.pledge_id

    @pytest.mark.parametrize("period,frequency", [
        ("year", "A"),
        ("quarter", "Q"),
        ("week", "M"),
        ("day", "M"),
    ])
    def test_pledge_frequency(self, sync_engine, dp, make_event, period, frequency):
        event = make_event(
            300, kind=DonationKind.FIRST_RECURRING, subscription_id=9, billing_period=period
        )

        sync_engine.sync(event)

        assert dp.calls_to("create_pledge")[0]["frequency"] == frequency

    def test_renewal_links_to_existing_pledge(self, sync_engine, dp, first_recurring, make_event):
        first = sync_engine.sync(first_recurring)
        renewal = make_event(
            102,
            email="b@x.com",
            amount=Decimal("10.00"),
            kind=DonationKind.RENEWAL,
            subscription_id=55,
        )

        result = sync_engine.sync(renewal)

        assert result.status is SyncStatus.SUCCESS
        assert result.pledge_id == first.pledge_id
        assert result.donor_action is DonorAction.MATCHED
        assert len(dp.calls_to("create_pledge")) == 1

        gift = dp.calls_to("create_gift")[-1]
        assert gift["plink"] == first.pledge_id
        assert gift["sub_solicit_code"] == "RECURRING"

    def test_renewal_without_pledge_is_standalone_gift(self, sync_engine, dp, ledger, make_event):
        renewal = make_event(
            103, amount=Decimal("5.00"), kind=DonationKind.RENEWAL, subscription_id=999
        )

        result = sync_engine.sync(renewal)

        assert result.status is SyncStatus.SUCCESS
        assert result.pledge_id is None
        gift = dp.calls_to("create_gift")[0]
        assert "plink" not in gift
        assert not dp.calls_to("create_pledge")
        assert ledger.find_pledge_mapping(999) is None
        assert ledger.is_synced(103)

    def test_retried_first_recurring_reuses_pledge(self, sync_engine, dp, ledger, first_recurring):
        dp.failures["create_gift"] = RemoteTransportError("Request timed out")
        failed = sync_engine.sync(first_recurring)
        assert failed.status is SyncStatus.ERROR
        assert failed.pledge_id is not None

        del dp.failures["create_gift"]
        result = sync_engine.sync(first_recurring)

        assert result.status is SyncStatus.SUCCESS
        assert result.pledge_id == failed.pledge_id
        assert len(dp.calls_to("create_pledge")) == 1
        assert ledger.find_pledge_mapping(55).pledge_id == failed.pledge_id

    def test_lost_mapping_race_links_gift_to_stored_pledge(
        self, sync_engine, dp, ledger, first_recurring, monkeypatch
    ):
        # Another process mapped subscription 55 after our lookup missed it
        ledger.save_pledge_mapping(PledgeMapping(
            subscription_id=55, source_donor_id=7, target_donor_id=1, pledge_id=111,
        ))
        lookup = ledger.find_pledge_mapping
        lookups = []

        def find_pledge_mapping(subscription_id):
            lookups.append(subscription_id)
            return None if len(lookups) == 1 else lookup(subscription_id)

        monkeypatch.setattr(ledger, "find_pledge_mapping", find_pledge_mapping)

        result = sync_engine.sync(first_recurring)

        assert result.status is SyncStatus.SUCCESS
        assert result.pledge_id == 111
        assert len(dp.calls_to("create_pledge")) == 1
        gift = dp.calls_to("create_gift")[0]
        assert gift["plink"] == 111
        assert lookup(55).pledge_id == 111


class TestFailures:
    """Failed steps become error results and error rows."""

    def test_donor_create_failure(self, sync_engine, dp, ledger, make_event):
        dp.failures["create_donor"] = RemoteRejectedError("Invalid email")

        result = sync_engine.sync(make_event(100))

        assert result.status is SyncStatus.ERROR
        assert result.error == "Failed to create donor: Invalid email"
        assert not dp.calls_to("create_gift")
        rows = ledger.entries_for_donation(100)
        assert [r.status for r in rows] == ["error"]

    def test_pledge_failure_stops_before_gift(self, sync_engine, dp, ledger, first_recurring):
        dp.failures["create_pledge"] = RemoteRejectedError("Invalid frequency")

        result = sync_engine.sync(first_recurring)

        assert result.status is SyncStatus.ERROR
        assert result.error == "Failed to create pledge: Invalid frequency"
        assert result.target_donor_id is not None
        assert not dp.calls_to("create_gift")
        assert ledger.find_pledge_mapping(55) is None

    def test_gift_failure_keeps_donor_and_pledge(self, sync_engine, dp, ledger, first_recurring):
        dp.failures["create_gift"] = RemoteRejectedError("Invalid GL code")

        result = sync_engine.sync(first_recurring)

        assert result.error == "Failed to create gift: Invalid GL code"
        row = ledger.entries_for_donation(101)[0]
        assert row.status == "error"
        assert row.target_donor_id == result.target_donor_id
        assert row.pledge_id == result.pledge_id
        assert row.error_message == "Failed to create gift: Invalid GL code"

    def test_unexpected_exception_is_an_error_result(self, sync_engine, dp, ledger, make_event):
        dp.failures["create_gift"] = RuntimeError("boom")

        result = sync_engine.sync(make_event(100))

        assert result.status is SyncStatus.ERROR
        assert result.error == "Unexpected error: boom"
        assert ledger.entries_for_donation(100)[0].status == "error"

    def test_error_row_is_replaced(self, sync_engine, dp, ledger, make_event):
        event = make_event(100)

        dp.failures["create_gift"] = RemoteTransportError("Request timed out")
        sync_engine.sync(event)
        dp.failures["create_gift"] = RemoteRejectedError("Invalid campaign")
        sync_engine.sync(event)

        rows = ledger.entries_for_donation(100)
        assert len(rows) == 1
        assert rows[0].error_message == "Failed to create gift: Invalid campaign"

    def test_success_replaces_error_row(self, sync_engine, dp, ledger, make_event):
        event = make_event(100)

        dp.failures["create_gift"] = RemoteTransportError("Request timed out")
        sync_engine.sync(event)
        del dp.failures["create_gift"]
        sync_engine.sync(event)

        rows = ledger.entries_for_donation(100)
        assert [r.status for r in rows] == ["success"]


class TestDonorLookupPolicy:
    """Failed email lookups."""

    def test_lookup_failure_creates_donor_by_default(self, sync_engine, dp, make_event):
        dp.failures["lookup_donor_by_email"] = RemoteTransportError("connection refused")

        result = sync_engine.sync(make_event(100))

        assert result.status is SyncStatus.SUCCESS
        assert result.donor_action is DonorAction.CREATED

    def test_strict_lookup_failure_is_an_error(self, dp, ledger, sync_config, make_event):
        sync_config.strict_donor_lookup = True
        engine = ReconciliationEngine(dp, ledger, sync_config)
        dp.failures["lookup_donor_by_email"] = RemoteTransportError("connection refused")

        result = engine.sync(make_event(100))

        assert result.status is SyncStatus.ERROR
        assert result.error == "Donor lookup failed: connection refused"
        assert not dp.calls_to("create_donor")
        assert not dp.calls_to("create_gift")


class TestSkipAndDryRun:
    """Skipped donations and dry runs."""

    def test_empty_email_is_skipped(self, sync_engine, dp, ledger, make_event):
        result = sync_engine.sync(make_event(100, email=""))

        assert result.status is SyncStatus.SKIPPED
        assert result.error == "No email address"
        assert dp.calls == []
        rows = ledger.entries_for_donation(100)
        assert [r.status for r in rows] == ["skipped"]

    def test_repeated_skip_keeps_one_row(self, sync_engine, ledger, make_event):
        event = make_event(100, email="")

        sync_engine.sync(event)
        sync_engine.sync(event)

        assert len(ledger.entries_for_donation(100)) == 1

    def test_dry_run_skip_is_not_logged(self, sync_engine, ledger, make_event):
        result = sync_engine.sync(make_event(100, email=""), dry_run=True)

        assert result.status is SyncStatus.SKIPPED
        assert ledger.count_entries() == 0

    def test_dry_run_has_no_side_effects(self, sync_engine, dp, ledger, first_recurring):
        result = sync_engine.sync(first_recurring, dry_run=True)

        assert isinstance(result, SyncPreview)
        assert result.status is SyncStatus.PREVIEW
        assert result.donor_action == "create"
        assert result.pledge_action == "create_pledge"
        assert [name for name, _ in dp.calls] == ["lookup_donor_by_email"]
        assert ledger.count_entries() == 0
        assert ledger.find_pledge_mapping(55) is None

    def test_dry_run_preview_fields(self, sync_engine, dp, make_event):
        dp.donors["a@x.com"] = 77

        preview = sync_engine.sync(make_event(100, email="a@x.com"), dry_run=True).to_dict()

        assert preview == {
            "donation_id": 100,
            "email": "a@x.com",
            "name": "Ada Lovelace",
            "amount": "25.00",
            "date": "03/15/2025",
            "donation_type": "single",
            "form": "Spring Appeal",
            "donor_action": "match",
            "donor_id": 77,
            "pledge_action": "none",
            "status": "preview",
        }

    def test_dry_run_renewal_pledge_actions(self, sync_engine, first_recurring, make_event):
        sync_engine.sync(first_recurring)
        known = make_event(102, kind=DonationKind.RENEWAL, subscription_id=55)
        unknown = make_event(103, kind=DonationKind.RENEWAL, subscription_id=999)

        known_preview = sync_engine.sync(known, dry_run=True)
        unknown_preview = sync_engine.sync(unknown, dry_run=True)

        pledge_id = sync_engine.ledger.find_pledge_mapping(55).pledge_id
        assert known_preview.pledge_action == f"link_to_pledge #{pledge_id}"
        assert unknown_preview.pledge_action == "gift_only (no pledge found)"

    def test_dry_run_failure_is_reported_not_raised(self, sync_engine, dp, ledger, make_event):
        dp.find_donor_by_email = Mock(side_effect=RuntimeError("boom"))

        result = sync_engine.sync(make_event(100), dry_run=True)

        assert result.status is SyncStatus.ERROR
        assert result.error == "Preview failed: boom"
        assert ledger.count_entries() == 0


class TestRejectedRows:
    """Stored donations that could not be normalized."""

    def test_reject_logs_error_row(self, sync_engine, dp, ledger):
        result = sync_engine.reject(InvalidDonation(5, "Unknown donation type: 'legacy'"))

        assert result.status is SyncStatus.ERROR
        assert result.error == "Invalid donation: Unknown donation type: 'legacy'"
        assert dp.calls == []
        assert [r.status for r in ledger.entries_for_donation(5)] == ["error"]

    def test_dry_run_reject_is_not_logged(self, sync_engine, ledger):
        result = sync_engine.reject(InvalidDonation(5, "Invalid amount: 'abc'"), dry_run=True)

        assert result.status is SyncStatus.ERROR
        assert ledger.count_entries() == 0
