"""
Unit tests for the payment coordinator.
"""

from datetime import timedelta
from decimal import Decimal

import pytest

from loyalty_guard.core.entitlement import EntitlementCache
from loyalty_guard.core.errors import (
    NotAuthenticatedError,
    PaymentCompletionError,
    PaymentInitiationError,
)
from loyalty_guard.core.payments import PaymentCoordinator
from loyalty_guard.storage.models import TransactionStatus

from fakes import OWNER_EMAIL, FakeGateway, sign_in


@pytest.fixture
def cache(sessions, store, fast_config):
    return EntitlementCache(sessions, store, fast_config.entitlement)


@pytest.fixture
def payments(sessions, store, cache, gateway, fast_config):
    return PaymentCoordinator(sessions, store, cache, gateway, fast_config.payments)


class TestInitiate:
    """Test opening top-ups."""

    @pytest.mark.asyncio
    async def test_initiate_opens_gateway(self, sessions, store, gateway, payments):
        await sign_in(sessions)

        transaction = await payments.initiate("250")

        assert transaction.status is TransactionStatus.PENDING
        assert transaction.reference.startswith("tx_")
        assert transaction.provider == "paystack"
        request = gateway.requests[0]
        assert request.reference == transaction.reference
        assert request.amount == Decimal("250")
        assert request.currency == "ZAR"
        assert request.public_key == "pk_test_123"
        assert request.email == OWNER_EMAIL

    @pytest.mark.asyncio
    async def test_below_minimum(self, sessions, store, gateway, payments):
        await sign_in(sessions)

        with pytest.raises(PaymentInitiationError, match="Minimum top-up is R200.00"):
            await payments.initiate(Decimal("199.99"))

        assert gateway.requests == []
        assert await store.list_transactions(sessions.user_id) == []

    @pytest.mark.asyncio
    @pytest.mark.parametrize("amount", ["Infinity", "-Infinity", "NaN", "abc", Decimal("Infinity")])
    async def test_unusable_amount_rejected(self, sessions, store, gateway, payments, amount):
        await sign_in(sessions)

        with pytest.raises(PaymentInitiationError, match="Invalid top-up amount"):
            await payments.initiate(amount)

        assert gateway.requests == []
        assert await store.list_transactions(sessions.user_id) == []

    @pytest.mark.asyncio
    async def test_requires_session(self, sessions, payments):
        await sessions.start()
        with pytest.raises(NotAuthenticatedError):
            await payments.initiate(500)

    @pytest.mark.asyncio
    async def test_gateway_failure_marks_failed(self, sessions, store, cache, fast_config):
        gateway = FakeGateway(error=RuntimeError("checkout script failed to load"))
        payments = PaymentCoordinator(sessions, store, cache, gateway, fast_config.payments)
        await sign_in(sessions)

        with pytest.raises(PaymentInitiationError) as exc_info:
            await payments.initiate(300)

        assert isinstance(exc_info.value.__cause__, RuntimeError)
        [transaction] = await store.list_transactions(sessions.user_id)
        assert transaction.status is TransactionStatus.FAILED


class TestCompletion:
    """Test settlement and write-through."""

    @pytest.mark.asyncio
    async def test_gateway_success_credits_and_grants(self, sessions, store, gateway, cache, payments):
        await sign_in(sessions)
        assert not await cache.is_entitled()
        transaction = await payments.initiate(250)

        gateway.succeed(transaction.reference, "ps_789")
        await payments.wait_idle()

        stored = await store.get_transaction(sessions.user_id, transaction.reference)
        assert stored.status is TransactionStatus.COMPLETED
        assert stored.provider_reference == "ps_789"
        assert cache.state.credit_balance == Decimal("250")
        assert await cache.is_entitled()

    @pytest.mark.asyncio
    async def test_complete_is_idempotent(self, sessions, store, payments):
        await sign_in(sessions)
        transaction = await payments.initiate(200)

        first = await payments.complete(transaction.reference, "ps_1")
        second = await payments.complete(transaction.reference, "ps_1")
        await payments.wait_idle()

        assert first.newly_completed
        assert not second.newly_completed
        assert second.status.credit_balance == Decimal("200")
        assert await payments.total_paid() == Decimal("200")

    @pytest.mark.asyncio
    async def test_unknown_reference_leaves_cache(self, sessions, cache, payments):
        await sign_in(sessions)

        with pytest.raises(PaymentCompletionError):
            await payments.complete("tx_missing", "ps_1")

        assert cache.state is None

    @pytest.mark.asyncio
    async def test_abandoned_checkout_stays_pending(self, sessions, gateway, payments):
        await sign_in(sessions)
        transaction = await payments.initiate(200)

        gateway.abandon(transaction.reference)
        await payments.wait_idle()

        pending = await payments.pending_transactions()
        assert [t.reference for t in pending] == [transaction.reference]
        assert await payments.pending_transactions(older_than=timedelta(hours=1)) == []

    @pytest.mark.asyncio
    async def test_fail_then_complete_rejected(self, sessions, payments):
        await sign_in(sessions)
        transaction = await payments.initiate(200)

        failed = await payments.fail(transaction.reference)
        assert failed.status is TransactionStatus.FAILED

        with pytest.raises(PaymentCompletionError):
            await payments.complete(transaction.reference, "ps_1")
        assert await payments.total_paid() == Decimal("0")

