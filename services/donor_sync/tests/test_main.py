"""
Tests for main CLI module.
"""

import json
from unittest.mock import Mock, patch

import pytest

from services.donor_sync.errors import NotConfiguredError
from services.donor_sync.main import create_parser, is_failure, main
from services.donor_sync.service import SyncService


@pytest.fixture
def service(app_settings, source, ledger, dp):
    return SyncService(app_settings, source, ledger, client_factory=lambda c: dp, sleep=Mock())


def run(capsys, service, *argv):
    code = main(list(argv), service_factory=lambda: service)
    return code, json.loads(capsys.readouterr().out)


class TestArgumentParsing:
    """Test command line argument parsing."""

    def test_backfill_arguments(self):
        args = create_parser().parse_args(
            ["backfill", "--dry-run", "--batch-size", "20", "--offset", "40", "--all"]
        )

        assert args.command == "backfill"
        assert args.dry_run is True
        assert args.batch_size == 20
        assert args.offset == 40
        assert args.all is True

    def test_sync_requires_integer_id(self):
        with pytest.raises(SystemExit):
            create_parser().parse_args(["sync", "abc"])

    def test_command_is_required(self):
        with pytest.raises(SystemExit):
            create_parser().parse_args([])

    def test_log_status_choices(self):
        with pytest.raises(SystemExit):
            create_parser().parse_args(["log", "--status", "preview"])


class TestCommands:
    """Commands run against an injected service."""

    def test_sync(self, capsys, service, source, make_event):
        source.save_donation(make_event(100))

        code, output = run(capsys, service, "sync", "100")

        assert code == 0
        assert output["status"] == "success"

    def test_sync_not_found(self, capsys, service):
        code, output = run(capsys, service, "sync", "404")

        assert code == 1
        assert output["status"] == "error"
        assert "not found" in output["error"]

    def test_sync_skipped(self, capsys, service, source, make_event):
        source.save_donation(make_event(100, email=""))

        code, output = run(capsys, service, "sync", "100")

        assert output["status"] == "skipped"
        assert code == 0

    def test_backfill_all_pages_until_done(self, capsys, service, source, make_event, ledger):
        for donation_id in range(1, 8):
            source.save_donation(make_event(donation_id))

        code, output = run(capsys, service, "backfill", "--all", "--batch-size", "3")

        assert code == 0
        assert output["processed"] == 7
        assert output["pages"] == 3
        assert output["has_more"] is False
        assert ledger.count_entries(status_filter="success") == 7

    def test_backfill_dry_run_single_page(self, capsys, service, source, make_event, ledger):
        for donation_id in range(1, 4):
            source.save_donation(make_event(donation_id))

        code, output = run(capsys, service, "backfill", "--dry-run", "--batch-size", "2")

        assert code == 0
        assert output["processed"] == 2
        assert output["has_more"] is True
        assert output["next_offset"] == 2
        assert ledger.count_entries() == 0

    def test_backfill_with_errors_exits_1(self, capsys, service, source, make_event, dp):
        source.save_donation(make_event(1))
        dp.failures["create_gift"] = RuntimeError("boom")

        code, output = run(capsys, service, "backfill")

        assert code == 1
        assert output["items"][0]["status"] == "error"

    def test_backfill_rejects_bad_batch_size(self, capsys, service):
        code, output = run(capsys, service, "backfill", "--batch-size", "0")

        assert code == 1
        assert "batch-size" in output["error"]

    def test_stats_and_log(self, capsys, service):
        code, output = run(capsys, service, "stats")
        assert code == 0
        assert output["total"] == 0

        code, output = run(capsys, service, "log", "--limit", "5")
        assert code == 0
        assert output["entries"] == []
        assert output["limit"] == 5

    def test_check_codes_invalid_exits_1(self, capsys, service):
        code, output = run(capsys, service, "check-codes")

        assert code == 1
        assert output["campaign"]["valid"] is False

    def test_check_codes_create(self, capsys, service, dp):
        dp.codes.update({"GENERAL"})
        dp.codes.discard("ONETIME")

        code, output = run(capsys, service, "check-codes", "--create")

        assert code == 0
        assert output["created"] == ["ONETIME"]

    def test_not_configured(self, capsys):
        service = Mock()
        service.test_connection.side_effect = NotConfiguredError()

        code, output = run(capsys, service, "test-connection")

        assert code == 1
        assert output == {"status": "error", "error": "API key not configured"}
        service.close.assert_called_once()

    @patch("services.donor_sync.main.create_schema")
    @patch("services.donor_sync.main.get_engine")
    @patch("services.donor_sync.main.settings")
    def test_init_db(self, mock_settings, mock_get_engine, mock_create_schema, capsys):
        mock_settings.return_value = Mock(
            database_url="sqlite:///sync.db",
            service_name="donor-sync",
            environment="development",
        )

        code = main(["init-db"], service_factory=Mock())

        assert code == 0
        mock_get_engine.assert_called_once_with("sqlite:///sync.db")
        mock_create_schema.assert_called_once_with(mock_get_engine.return_value)
        assert json.loads(capsys.readouterr().out)["status"] == "ok"


class TestExitStatus:
    def test_error_status(self):
        assert is_failure("sync", {"status": "error"}) is True

    def test_success(self):
        assert is_failure("sync", {"status": "success"}) is False

    def test_backfill_items(self):
        assert is_failure("backfill", {"items": [{"status": "success"}, {"status": "skipped"}]}) is False
        assert is_failure("backfill", {"items": [{"status": "error"}]}) is True
