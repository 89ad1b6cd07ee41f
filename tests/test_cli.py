"""
Tests for the CLI interface.
"""
import asyncio
import os
from decimal import Decimal
from unittest.mock import patch

import pytest
from rich.console import Console
from typer.testing import CliRunner

from loyalty_guard.cli.main import app, EXIT_CODE_PASS, EXIT_CODE_FAIL
from loyalty_guard.storage.models import TransactionStatus
from loyalty_guard.storage.repository import LedgerStore, initialize_schema

runner = CliRunner()

OWNER = "owner-1"


@pytest.fixture(autouse=True)
def wide_console():
    """Keep table cells on one line."""
    with patch("loyalty_guard.cli.main.console", Console(width=200)):
        yield


@pytest.fixture
def db(tmp_path):
    path = os.path.join(tmp_path, "cli.db")
    initialize_schema(path)
    return path


def _seed(db: str) -> dict:
    """Create two accounts, one full, and one completed and one pending top-up."""
    store = LedgerStore(db)

    async def seed():
        await store.update_redemption_threshold(OWNER, 3)
        await store.create_transaction(OWNER, Decimal("300"), "tx_done", "paystack")
        await store.complete_transaction(OWNER, "tx_done", "ps_1")
        await store.create_transaction(OWNER, Decimal("200"), "tx_open", "paystack")
        full = await store.create_account(OWNER, "Naledi", "0820000001")
        await store.create_account(OWNER, "Bongani", "0820000002")
        for _ in range(3):
            await store.add_unit(OWNER, full.id)
        return {"full": full}

    return asyncio.run(seed())


class TestCLI:
    """Test CLI commands."""

    def test_no_command_prints_hint(self):
        result = runner.invoke(app, [])
        assert result.exit_code == EXIT_CODE_PASS
        assert "Use --help" in result.output

    def test_init(self, tmp_path):
        path = os.path.join(tmp_path, "fresh.db")
        result = runner.invoke(app, ["init", "--db", path])

        assert result.exit_code == EXIT_CODE_PASS
        assert "Database initialized successfully" in result.output
        assert os.path.exists(path)

    def test_status(self, db):
        _seed(db)
        result = runner.invoke(app, ["status", "--user", OWNER, "--db", db])

        assert result.exit_code == EXIT_CODE_PASS
        assert "Credit balance: R292.50" in result.output
        assert "Has paid: yes" in result.output
        assert "Total paid: R300.00" in result.output
        assert "Redemption threshold: 3" in result.output
        assert "Units this month: 3" in result.output

    def test_user_is_required(self, db):
        result = runner.invoke(app, ["status", "--db", db])
        assert result.exit_code != EXIT_CODE_PASS

    def test_accounts(self, db):
        _seed(db)
        result = runner.invoke(app, ["accounts", "-u", OWNER, "--db", db])

        assert result.exit_code == EXIT_CODE_PASS
        assert result.output.index("Bongani") < result.output.index("Naledi")
        assert "3/3" in result.output
        assert "redeem" in result.output

    def test_accounts_empty(self, db):
        result = runner.invoke(app, ["accounts", "-u", OWNER, "--db", db])
        assert result.exit_code == EXIT_CODE_PASS
        assert "No loyalty accounts found" in result.output

    def test_redemptions(self, db):
        seeded = _seed(db)
        asyncio.run(LedgerStore(db).redeem(OWNER, seeded["full"].id))

        result = runner.invoke(app, ["redemptions", "-u", OWNER, "--db", db])

        assert result.exit_code == EXIT_CODE_PASS
        assert seeded["full"].id in result.output

    def test_pending_transactions(self, db):
        _seed(db)
        result = runner.invoke(app, ["transactions", "-u", OWNER, "--status", "pending", "--db", db])

        assert result.exit_code == EXIT_CODE_PASS
        assert "tx_open" in result.output
        assert "tx_done" not in result.output

    def test_older_than_filter(self, db):
        _seed(db)
        result = runner.invoke(
            app, ["transactions", "-u", OWNER, "--status", "pending", "--older-than-hours", "1", "--db", db]
        )
        assert result.exit_code == EXIT_CODE_PASS
        assert "No transactions found" in result.output

    def test_unknown_status(self, db):
        result = runner.invoke(app, ["transactions", "-u", OWNER, "--status", "lost", "--db", db])
        assert result.exit_code == EXIT_CODE_FAIL
        assert "Unknown status 'lost'" in result.output

    def test_mark_failed(self, db):
        _seed(db)
        result = runner.invoke(app, ["mark-failed", "tx_open", "-u", OWNER, "--db", db])

        assert result.exit_code == EXIT_CODE_PASS
        assert "tx_open is failed" in result.output
        tx = asyncio.run(LedgerStore(db).get_transaction(OWNER, "tx_open"))
        assert tx.status is TransactionStatus.FAILED

    def test_mark_failed_completed_transaction(self, db):
        _seed(db)
        result = runner.invoke(app, ["mark-failed", "tx_done", "-u", OWNER, "--db", db])

        assert result.exit_code == EXIT_CODE_FAIL
        assert "already completed" in result.output

    def test_threshold(self, db):
        result = runner.invoke(app, ["threshold", "8", "-u", OWNER, "--db", db])

        assert result.exit_code == EXIT_CODE_PASS
        assert "Redemption threshold set to 8" in result.output
        settings = asyncio.run(LedgerStore(db).get_settings(OWNER))
        assert settings.redemption_threshold == 8

    def test_threshold_rejects_zero(self, db):
        result = runner.invoke(app, ["threshold", "0", "-u", OWNER, "--db", db])
        assert result.exit_code == EXIT_CODE_FAIL
        assert "at least 1" in result.output
