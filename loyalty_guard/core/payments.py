"""
Payment transaction coordinator.

Opens balance top-ups with an external gateway and settles them. A settled
top-up is written through to the entitlement cache, so a user who just paid
is never shown a stale "top up" prompt.
"""

import asyncio
import logging
import secrets
import time
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from decimal import Decimal, InvalidOperation
from typing import Callable, List, Optional, Protocol, Set, Union

from ..config.loader import PaymentConfig
from ..storage.models import CompletionResult, PaymentTransaction, TransactionStatus
from .entitlement import EntitlementCache
from .errors import (
    LoyaltyGuardError,
    OperationCancelledError,
    PaymentCompletionError,
    PaymentError,
    PaymentInitiationError,
)
from .session import SessionManager

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class GatewayRequest:
    """What the gateway needs to open a checkout."""
    reference: str
    amount: Decimal
    currency: str
    public_key: str
    email: str = ""


class PaymentGateway(Protocol):
    """Call contract of the payment gateway collaborator.

    ``open`` presents the checkout and returns. The gateway later invokes
    exactly one of ``on_success`` (with the provider's reference) or
    ``on_close``.
    """

    async def open(
        self,
        request: GatewayRequest,
        on_success: Callable[[str], None],
        on_close: Callable[[], None],
    ) -> None: ...


def new_reference() -> str:
    """Unique transaction reference: ``tx_<epoch ms>_<random>``."""
    return f"tx_{int(time.time() * 1000)}_{secrets.token_hex(5)}"


class PaymentCoordinator:
    """Top-up lifecycle for the signed-in user."""

    def __init__(
        self,
        sessions: SessionManager,
        store,
        entitlements: EntitlementCache,
        gateway: PaymentGateway,
        config: Optional[PaymentConfig] = None,
    ):
        self._sessions = sessions
        self._store = store
        self._entitlements = entitlements
        self._gateway = gateway
        self._config = config or PaymentConfig()
        self._tasks: Set[asyncio.Task] = set()

    async def initiate(
        self,
        amount: Union[Decimal, int, str],
        provider: Optional[str] = None,
    ) -> PaymentTransaction:
        """Create a pending top-up and hand it to the gateway.

        Args:
            amount: Top-up amount in currency units
            provider: Gateway name recorded on the transaction

        Returns:
            The pending transaction

        Raises:
            PaymentInitiationError: If the amount is below the minimum or the
                gateway could not be opened
        """
        session = self._sessions.require_session()
        try:
            amount = Decimal(str(amount))
        except InvalidOperation as e:
            raise PaymentInitiationError(f"Invalid top-up amount: {amount!r}") from e
        if not amount.is_finite():
            raise PaymentInitiationError(f"Invalid top-up amount: {amount}")
        if amount < self._config.minimum_amount:
            raise PaymentInitiationError(
                f"Minimum top-up is R{self._config.minimum_amount:.2f}"
            )

        scope = self._sessions.scope
        reference = new_reference()
        transaction = await scope.run(
            self._store.create_transaction(
                session.user_id, amount, reference, provider or self._config.provider
            )
        )
        request = GatewayRequest(
            reference=reference,
            amount=amount,
            currency=self._config.currency,
            public_key=self._config.public_key,
            email=session.email,
        )
        logger.info(
            "Opening payment",
            extra={"reference": reference, "amount": str(amount), "provider": transaction.provider},
        )

        try:
            await scope.run(self._gateway.open(
                request,
                on_success=lambda provider_reference: self._on_success(reference, provider_reference),
                on_close=lambda: self._on_close(reference),
            ))
        except OperationCancelledError:
            raise
        except Exception as e:
            await self._discard(session.user_id, reference)
            if isinstance(e, PaymentError):
                raise
            raise PaymentInitiationError(f"Could not open payment gateway: {e}") from e
        return transaction

    async def complete(self, reference: str, provider_reference: str) -> CompletionResult:
        """Settle a top-up and credit the balance.

        Completing an already completed transaction succeeds without
        crediting again.

        Raises:
            PaymentCompletionError: If the transaction is unknown, failed, or
                could not be written. The entitlement cache is left untouched.
        """
        owner = self._sessions.require_session().user_id
        scope = self._sessions.scope
        try:
            result = await scope.run(
                self._store.complete_transaction(owner, reference, provider_reference)
            )
        except (OperationCancelledError, PaymentCompletionError):
            raise
        except Exception as e:
            raise PaymentCompletionError(f"Could not complete transaction {reference}: {e}") from e

        if result.newly_completed:
            logger.info(
                "Payment completed",
                extra={"reference": reference, "amount": str(result.transaction.amount)},
            )
        else:
            logger.info("Payment already completed", extra={"reference": reference})

        self._entitlements.write_through(result.status)
        self._spawn(self._entitlements.refresh(), "entitlement refresh")
        return result

    async def fail(self, reference: str) -> PaymentTransaction:
        """Mark a pending transaction failed.

        Raises:
            PaymentCompletionError: If the transaction is unknown or completed
        """
        owner = self._sessions.require_session().user_id
        transaction = await self._sessions.scope.run(self._store.fail_transaction(owner, reference))
        logger.info("Payment marked failed", extra={"reference": reference})
        return transaction

    async def pending_transactions(self, older_than: Optional[timedelta] = None) -> List[PaymentTransaction]:
        """Pending top-ups awaiting reconciliation."""
        owner = self._sessions.require_session().user_id
        created_before = None
        if older_than is not None:
            created_before = datetime.now(timezone.utc) - older_than
        return await self._sessions.scope.run(
            self._store.list_transactions(owner, TransactionStatus.PENDING, created_before)
        )

    async def total_paid(self) -> Decimal:
        owner = self._sessions.require_session().user_id
        return await self._sessions.scope.run(self._store.total_paid(owner))

    async def close(self) -> None:
        """Cancel callbacks still being processed."""
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    async def wait_idle(self) -> None:
        """Wait until gateway callbacks and the work they spawn have finished."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def _on_success(self, reference: str, provider_reference: str) -> None:
        self._spawn(self.complete(reference, provider_reference), "payment completion")

    def _on_close(self, reference: str) -> None:
        logger.info(
            "Payment window closed without success; transaction left pending",
            extra={"reference": reference},
        )

    async def _discard(self, owner: str, reference: str) -> None:
        try:
            await self._store.fail_transaction(owner, reference)
        except Exception:
            logger.exception("Could not mark unopened transaction failed", extra={"reference": reference})

    def _spawn(self, coro, label: str) -> None:
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)

        def done(finished: asyncio.Task) -> None:
            self._tasks.discard(finished)
            if finished.cancelled():
                return
            error = finished.exception()
            if isinstance(error, OperationCancelledError):
                logger.debug("Background %s cancelled", label)
            elif isinstance(error, LoyaltyGuardError):
                logger.warning("Background %s failed: %s", label, error, extra={"error": type(error).__name__})
            elif error is not None:
                logger.error("Background %s failed", label, exc_info=error)

        task.add_done_callback(done)
