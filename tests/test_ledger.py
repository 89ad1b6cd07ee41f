"""
Unit tests for the optimistic ledger controller.
"""

import asyncio
import sqlite3
from decimal import Decimal
from unittest.mock import AsyncMock

import pytest

from loyalty_guard.core.entitlement import EntitlementCache
from loyalty_guard.core.errors import (
    InsufficientEntitlementError,
    LedgerConflictError,
    LedgerMutationError,
    LedgerPreconditionError,
    OperationCancelledError,
)
from loyalty_guard.core.ledger import LedgerController, MutationOutcome
from loyalty_guard.storage.repository import LedgerStore

from fakes import sign_in


async def _fund(store: LedgerStore, owner: str, amount: str = "500") -> None:
    reference = f"tx_fund_{amount}"
    await store.create_transaction(owner, Decimal(amount), reference, "paystack")
    await store.complete_transaction(owner, reference, "ps_fund")


def _controller(sessions, store, fast_config) -> LedgerController:
    cache = EntitlementCache(sessions, store, fast_config.entitlement)
    return LedgerController(sessions, store, cache)


@pytest.fixture
def ledger(sessions, store, fast_config):
    return _controller(sessions, store, fast_config)


async def _setup(sessions, store, fund: bool = True):
    """Sign in, optionally fund the owner, and create one account."""
    await sign_in(sessions)
    owner = sessions.user_id
    if fund:
        await _fund(store, owner)
    account = await store.create_account(owner, "Thandi", "0821234567")
    return owner, account


class TestAddUnit:
    """Test unit increments."""

    @pytest.mark.asyncio
    async def test_add_unit_commits(self, sessions, store, ledger):
        owner, account = await _setup(sessions, store)
        seen = []
        ledger.subscribe(lambda account_id, a: seen.append(a.units_purchased if a else None))

        result = await ledger.add_unit(account.id)

        assert result.outcome is MutationOutcome.COMMITTED
        assert result.account.units_purchased == 1
        assert ledger.account(account.id).units_purchased == 1
        assert seen[-2:] == [1, 1]
        assert (await store.get_account(owner, account.id)).units_purchased == 1
        assert (await store.get_payment_status(owner)).credit_balance == Decimal("497.50")

    @pytest.mark.asyncio
    async def test_counter_full_requires_redeem(self, sessions, store, ledger):
        owner, account = await _setup(sessions, store)
        await ledger.set_redemption_threshold(2)

        await ledger.add_unit(account.id)
        result = await ledger.add_unit(account.id)
        assert result.ready_to_redeem

        with pytest.raises(LedgerPreconditionError) as exc_info:
            await ledger.add_unit(account.id)
        assert exc_info.value.next_step == "redeem"
        assert (await store.get_account(owner, account.id)).units_purchased == 2

    @pytest.mark.asyncio
    async def test_not_entitled(self, sessions, store, ledger):
        owner, account = await _setup(sessions, store, fund=False)

        with pytest.raises(InsufficientEntitlementError) as exc_info:
            await ledger.add_unit(account.id)

        assert exc_info.value.next_step == "top_up"
        assert ledger.account(account.id).units_purchased == 0
        assert (await store.get_account(owner, account.id)).units_purchased == 0

    @pytest.mark.asyncio
    async def test_entitlement_denial_reloads_account(self, sessions, store, ledger):
        # Below the paid threshold, but enough credit for one unit from another device
        owner, account = await _setup(sessions, store, fund=False)
        await _fund(store, owner, "150")
        await ledger.load(account.id)
        await store.add_unit(owner, account.id)

        with pytest.raises(InsufficientEntitlementError):
            await ledger.add_unit(account.id)

        assert ledger.account(account.id).units_purchased == 1
        assert not ledger.is_in_flight(account.id)

    @pytest.mark.asyncio
    async def test_store_rejection_reverts_and_resyncs(self, sessions, db_path, fast_config):
        # has_paid grants access, but the balance cannot cover the unit charge
        store = LedgerStore(db_path, unit_charge=Decimal("500"))
        ledger = _controller(sessions, store, fast_config)
        owner, account = await _setup(sessions, store, fund=False)
        await _fund(store, owner, "200")
        seen = []
        ledger.subscribe(lambda account_id, a: seen.append(a.units_purchased if a else None))

        with pytest.raises(InsufficientEntitlementError):
            await ledger.add_unit(account.id)

        assert seen[:3] == [0, 1, 0]
        assert ledger.account(account.id).units_purchased == 0
        assert not ledger.is_in_flight(account.id)

    @pytest.mark.asyncio
    async def test_unexpected_failure_is_wrapped(self, sessions, store, ledger, monkeypatch):
        owner, account = await _setup(sessions, store)
        monkeypatch.setattr(
            store, "add_unit", AsyncMock(side_effect=sqlite3.OperationalError("database is locked"))
        )

        with pytest.raises(LedgerMutationError) as exc_info:
            await ledger.add_unit(account.id)

        assert isinstance(exc_info.value.__cause__, sqlite3.OperationalError)
        assert ledger.account(account.id).units_purchased == 0

    @pytest.mark.asyncio
    async def test_concurrent_mutation_is_dropped(self, sessions, store, ledger):
        owner, account = await _setup(sessions, store)

        results = await asyncio.gather(ledger.add_unit(account.id), ledger.add_unit(account.id))

        outcomes = sorted(r.outcome.value for r in results)
        assert outcomes == ["committed", "dropped"]
        assert (await store.get_account(owner, account.id)).units_purchased == 1

    @pytest.mark.asyncio
    async def test_other_accounts_are_not_blocked(self, sessions, store, ledger):
        owner, account = await _setup(sessions, store)
        other = await store.create_account(owner, "Sipho", "0829876543")

        results = await asyncio.gather(ledger.add_unit(account.id), ledger.add_unit(other.id))

        assert all(r.committed for r in results)


class TestRedeem:
    """Test redemptions and the redemption ledger."""

    @pytest.mark.asyncio
    async def test_redeem_resets_counter(self, sessions, store, ledger):
        owner, account = await _setup(sessions, store)
        await ledger.set_redemption_threshold(2)
        await ledger.add_unit(account.id)
        await ledger.add_unit(account.id)

        result = await ledger.redeem(account.id)

        assert result.committed
        assert result.account.units_purchased == 0
        assert result.redemption.account_id == account.id
        history = await ledger.redemption_history(account.id)
        assert [r.id for r in history] == [result.redemption.id]

    @pytest.mark.asyncio
    async def test_redeem_below_threshold(self, sessions, store, ledger, monkeypatch):
        owner, account = await _setup(sessions, store)
        redeem = AsyncMock()
        monkeypatch.setattr(store, "redeem", redeem)

        with pytest.raises(LedgerPreconditionError, match="needs 10 units"):
            await ledger.redeem(account.id)
        redeem.assert_not_called()

    @pytest.mark.asyncio
    async def test_redeemed_elsewhere_conflicts(self, sessions, store, ledger):
        owner, account = await _setup(sessions, store)
        await ledger.set_redemption_threshold(2)
        await ledger.add_unit(account.id)
        await ledger.add_unit(account.id)
        # Another device redeems first; the local view still shows a full counter
        await store.redeem(owner, account.id)

        with pytest.raises(LedgerConflictError):
            await ledger.redeem(account.id)

        assert ledger.account(account.id).units_purchased == 0
        assert len(await ledger.redemption_history()) == 1


class TestViewLifecycle:
    """Test loading and clearing the local view."""

    @pytest.mark.asyncio
    async def test_load_all(self, sessions, store, ledger):
        owner, account = await _setup(sessions, store)
        await store.create_account(owner, "Amahle", "0831112222")

        accounts = await ledger.load_all()

        assert [a.name for a in accounts] == ["Amahle", "Thandi"]
        assert set(ledger.accounts) == {a.id for a in accounts}

    @pytest.mark.asyncio
    async def test_threshold_read_from_settings(self, sessions, store, ledger):
        await _setup(sessions, store)
        assert await ledger.redemption_threshold() == 10
        with pytest.raises(ValueError):
            await ledger.set_redemption_threshold(0)

    @pytest.mark.asyncio
    async def test_sign_out_discards_late_result(self, sessions, store, ledger, monkeypatch):
        owner, account = await _setup(sessions, store)
        await ledger.load_all()
        original = store.add_unit

        async def slow_add_unit(owner_user_id, account_id):
            await asyncio.sleep(0.1)
            return await original(owner_user_id, account_id)

        monkeypatch.setattr(store, "add_unit", slow_add_unit)
        task = asyncio.ensure_future(ledger.add_unit(account.id))
        await asyncio.sleep(0.02)
        await sessions.sign_out()

        with pytest.raises(OperationCancelledError):
            await task
        assert ledger.accounts == {}
        assert (await store.get_account(owner, account.id)).units_purchased == 0
