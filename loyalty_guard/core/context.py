"""
Application context.

Wires the session manager, entitlement cache, ledger controller and payment
coordinator around one identity provider, data store and gateway. All
identity-scoped state lives on this object and is torn down by ``close``.
"""

import logging
from typing import Optional

from ..config.loader import GuardConfig, default_config
from ..storage.db import DEFAULT_DB_PATH
from ..storage.repository import LedgerStore, initialize_schema
from .entitlement import EntitlementCache
from .identity import IdentityProvider
from .ledger import LedgerController
from .payments import PaymentCoordinator, PaymentGateway
from .session import SessionManager
from .step_up import StepUpAuthenticator

logger = logging.getLogger(__name__)


class LoyaltyGuardContext:
    """Injectable container for one client.

    Usage:
        async with LoyaltyGuardContext(provider, store, gateway) as ctx:
            await ctx.sessions.sign_in(email, password)
            await ctx.ledger.add_unit(account_id)
    """

    def __init__(
        self,
        provider: IdentityProvider,
        store,
        gateway: PaymentGateway,
        config: Optional[GuardConfig] = None,
    ):
        self.config = config or default_config()
        self.store = store
        self.sessions = SessionManager(provider)
        self.entitlements = EntitlementCache(self.sessions, store, self.config.entitlement)
        self.ledger = LedgerController(self.sessions, store, self.entitlements)
        self.payments = PaymentCoordinator(
            self.sessions, store, self.entitlements, gateway, self.config.payments
        )
        self._started = False

    @classmethod
    def with_sqlite(
        cls,
        provider: IdentityProvider,
        gateway: PaymentGateway,
        db_path: str = DEFAULT_DB_PATH,
        config: Optional[GuardConfig] = None,
    ) -> "LoyaltyGuardContext":
        """Build a context over a local SQLite store, creating the schema."""
        config = config or default_config()
        initialize_schema(db_path)
        store = LedgerStore(
            db_path,
            default_redemption_threshold=config.ledger.default_redemption_threshold,
            unit_charge=config.ledger.unit_charge,
        )
        return cls(provider, store, gateway, config)

    async def start(self) -> None:
        if self._started:
            return
        self._started = True
        await self.sessions.start()
        logger.debug("Context started", extra={"user_id": self.sessions.user_id})

    def step_up(self) -> StepUpAuthenticator:
        """New step-up flow bound to the current session."""
        return StepUpAuthenticator(self.sessions, self.config.step_up)

    async def sign_out(self) -> None:
        """Sign out; identity-scoped state is reset through session events."""
        await self.sessions.sign_out()
        self.entitlements.reset()
        self.ledger.clear()

    async def close(self) -> None:
        await self.payments.close()
        self.ledger.close()
        self.entitlements.close()
        await self.sessions.close()
        logger.debug("Context closed")

    async def __aenter__(self) -> "LoyaltyGuardContext":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()
