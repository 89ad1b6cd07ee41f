"""
Loyalty ledger controller.

Optimistic add/redeem mutations on per-customer unit counters. Each mutation
is recorded as a log entry: the pre-image is snapshotted, the speculative
value is shown immediately, and the entry then either commits the
authoritative value returned by the store or reverts to the snapshot and
re-syncs from the store.
"""

import logging
from dataclasses import dataclass, replace
from enum import Enum
from typing import Callable, Dict, List, Optional, Set

from ..storage.models import LoyaltyAccount, RedemptionRecord
from .cancellation import CancellationToken
from .entitlement import EntitlementCache
from .errors import (
    AccountNotFoundError,
    InsufficientEntitlementError,
    LedgerError,
    LedgerMutationError,
    LedgerPreconditionError,
    OperationCancelledError,
)
from .identity import AuthEvent, Session
from .session import SessionManager

logger = logging.getLogger(__name__)

AccountListener = Callable[[str, Optional[LoyaltyAccount]], None]


class MutationOutcome(Enum):
    COMMITTED = "committed"
    DROPPED = "dropped"  # Another mutation for the account was in flight


@dataclass(frozen=True)
class MutationResult:
    """Result of an add or redeem request."""
    outcome: MutationOutcome
    account: Optional[LoyaltyAccount]
    redemption: Optional[RedemptionRecord] = None
    ready_to_redeem: bool = False

    @property
    def committed(self) -> bool:
        return self.outcome is MutationOutcome.COMMITTED


class _LogEntry:
    """One optimistic mutation of the local view.

    Writes are ignored once ``scope`` is cancelled, so an operation that
    outlives its session cannot repopulate a cleared view.
    """

    def __init__(self, controller: "LedgerController", account_id: str, scope: CancellationToken):
        self._controller = controller
        self.account_id = account_id
        self.scope = scope
        self.pre_image = controller._accounts.get(account_id)

    def apply(self, speculative: LoyaltyAccount) -> None:
        self._write(speculative)

    def commit(self, authoritative: LoyaltyAccount) -> None:
        self._write(authoritative)

    def revert(self) -> None:
        logger.warning(
            "Reverting optimistic ledger change",
            extra={"account_id": self.account_id},
        )
        self._write(self.pre_image)

    def _write(self, account: Optional[LoyaltyAccount]) -> None:
        if self.scope.cancelled:
            return
        self._controller._set_local(self.account_id, account)


class LedgerController:
    """Add and redeem units for the signed-in owner's accounts."""

    def __init__(
        self,
        sessions: SessionManager,
        store,
        entitlements: EntitlementCache,
    ):
        self._sessions = sessions
        self._store = store
        self._entitlements = entitlements
        self._accounts: Dict[str, LoyaltyAccount] = {}
        self._in_flight: Set[str] = set()
        self._threshold: Optional[int] = None
        self._listeners: List[AccountListener] = []
        self._user_id = sessions.user_id
        self._unsubscribe = sessions.subscribe(self._on_session_event)

    @property
    def accounts(self) -> Dict[str, LoyaltyAccount]:
        """Local view, including speculative values."""
        return dict(self._accounts)

    def account(self, account_id: str) -> Optional[LoyaltyAccount]:
        return self._accounts.get(account_id)

    def is_in_flight(self, account_id: str) -> bool:
        return account_id in self._in_flight

    def subscribe(self, listener: AccountListener) -> Callable[[], None]:
        """Listen to local view changes. Returns an unsubscribe function."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    # Reads

    async def load(self, account_id: str) -> LoyaltyAccount:
        """Fetch the authoritative account into the local view.

        Raises:
            AccountNotFoundError: If the account does not exist
        """
        owner = self._owner()
        scope = self._sessions.scope
        try:
            account = await scope.run(self._store.get_account(owner, account_id))
        except AccountNotFoundError:
            if not scope.cancelled:
                self._set_local(account_id, None)
            raise
        if not scope.cancelled:
            self._set_local(account_id, account)
        return account

    async def reload(self, account_id: str) -> LoyaltyAccount:
        return await self.load(account_id)

    async def load_all(self) -> List[LoyaltyAccount]:
        owner = self._owner()
        scope = self._sessions.scope
        accounts = await scope.run(self._store.list_accounts(owner))
        if not scope.cancelled:
            self._accounts = {a.id: a for a in accounts}
        return accounts

    async def redemption_threshold(self) -> int:
        """Units needed for a reward, read from the owner's settings."""
        if self._threshold is None:
            owner = self._owner()
            settings = await self._sessions.scope.run(self._store.get_settings(owner))
            self._threshold = settings.redemption_threshold
        return self._threshold

    async def set_redemption_threshold(self, threshold: int) -> int:
        if threshold < 1:
            raise ValueError("Redemption threshold must be at least 1")
        owner = self._owner()
        settings = await self._sessions.scope.run(
            self._store.update_redemption_threshold(owner, threshold)
        )
        self._threshold = settings.redemption_threshold
        logger.info("Redemption threshold updated", extra={"user_id": owner, "threshold": threshold})
        return self._threshold

    async def redemption_history(self, account_id: Optional[str] = None) -> List[RedemptionRecord]:
        owner = self._owner()
        return await self._sessions.scope.run(self._store.list_redemptions(owner, account_id))

    # Mutations

    async def add_unit(self, account_id: str) -> MutationResult:
        """Add one purchased unit to the account's counter.

        Raises:
            LedgerPreconditionError: If the counter already reached the
                threshold (next_step "redeem")
            InsufficientEntitlementError: If the balance does not allow it
            LedgerMutationError: If the durable write failed
        """
        return await self._guarded(account_id, self._add_unit)

    async def redeem(self, account_id: str) -> MutationResult:
        """Redeem a full counter and record the reward.

        Raises:
            LedgerPreconditionError: If the counter is below the threshold
            LedgerConflictError: If a concurrent redemption won the race
            InsufficientEntitlementError: If the balance does not allow it
            LedgerMutationError: If the durable write failed
        """
        return await self._guarded(account_id, self._redeem)

    async def _guarded(self, account_id: str, mutation) -> MutationResult:
        owner = self._owner()
        if account_id in self._in_flight:
            logger.info("Dropped concurrent ledger mutation", extra={"account_id": account_id})
            return MutationResult(MutationOutcome.DROPPED, self._accounts.get(account_id))
        self._in_flight.add(account_id)
        try:
            return await mutation(owner, account_id)
        finally:
            self._in_flight.discard(account_id)

    async def _add_unit(self, owner: str, account_id: str) -> MutationResult:
        scope = self._sessions.scope
        account = await self._current(account_id)
        threshold = await self.redemption_threshold()
        if account.units_purchased >= threshold:
            raise LedgerPreconditionError(
                f"{account.name} has {account.units_purchased} units and is ready to redeem",
                next_step="redeem",
            )
        await self._require_entitlement(account_id, scope)

        entry = _LogEntry(self, account_id, scope)
        entry.apply(replace(account, units_purchased=account.units_purchased + 1))
        authoritative = await self._durable(entry, self._store.add_unit(owner, account_id))
        entry.commit(authoritative)
        return MutationResult(
            MutationOutcome.COMMITTED,
            authoritative,
            ready_to_redeem=authoritative.units_purchased >= threshold,
        )

    async def _redeem(self, owner: str, account_id: str) -> MutationResult:
        scope = self._sessions.scope
        account = await self._current(account_id)
        threshold = await self.redemption_threshold()
        if account.units_purchased < threshold:
            raise LedgerPreconditionError(
                f"{account.name} needs {threshold} units to redeem. "
                f"Currently has {account.units_purchased}."
            )
        await self._require_entitlement(account_id, scope)

        entry = _LogEntry(self, account_id, scope)
        entry.apply(replace(account, units_purchased=0))
        authoritative, record = await self._durable(entry, self._store.redeem(owner, account_id))
        entry.commit(authoritative)
        logger.info("Reward redeemed", extra={"account_id": account_id, "redemption_id": record.id})
        return MutationResult(MutationOutcome.COMMITTED, authoritative, redemption=record)

    async def _durable(self, entry: _LogEntry, call):
        """Run the durable mutation; on failure revert, re-sync, then raise."""
        try:
            return await entry.scope.run(call)
        except OperationCancelledError:
            entry.revert()
            raise
        except (LedgerError, InsufficientEntitlementError):
            entry.revert()
            await self._resync(entry.account_id, entry.scope)
            raise
        except Exception as e:
            entry.revert()
            await self._resync(entry.account_id, entry.scope)
            raise LedgerMutationError(f"Failed to update account {entry.account_id}: {e}") from e

    async def _require_entitlement(self, account_id: str, scope: CancellationToken) -> None:
        try:
            await self._entitlements.require_entitlement()
        except InsufficientEntitlementError:
            await self._resync(account_id, scope)
            raise

    async def _resync(self, account_id: str, scope: CancellationToken) -> None:
        if scope.cancelled:
            return
        try:
            await self.load(account_id)
        except AccountNotFoundError:
            logger.info("Account disappeared during mutation", extra={"account_id": account_id})
        except OperationCancelledError:
            pass
        except Exception:
            logger.exception("Re-sync after rollback failed", extra={"account_id": account_id})

    async def _current(self, account_id: str) -> LoyaltyAccount:
        account = self._accounts.get(account_id)
        if account is None:
            account = await self.load(account_id)
        return account

    def _owner(self) -> str:
        return self._sessions.require_session().user_id

    def _set_local(self, account_id: str, account: Optional[LoyaltyAccount]) -> None:
        if account is None:
            self._accounts.pop(account_id, None)
        else:
            self._accounts[account_id] = account
        for listener in list(self._listeners):
            try:
                listener(account_id, account)
            except Exception:
                logger.exception("Ledger listener failed", extra={"account_id": account_id})

    def clear(self) -> None:
        self._accounts.clear()
        self._threshold = None

    def close(self) -> None:
        self._unsubscribe()
        self._listeners.clear()
        self.clear()

    def _on_session_event(self, event: AuthEvent, session: Optional[Session]) -> None:
        new_user = session.user_id if session else None
        if event is AuthEvent.SIGNED_OUT or (
            self._user_id is not None and new_user is not None and new_user != self._user_id
        ):
            self.clear()
        self._user_id = new_user
