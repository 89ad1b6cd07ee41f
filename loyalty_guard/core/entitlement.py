"""
Entitlement cache.

Answers whether the signed-in account may use gated features, backed by the
credit state held in the data store. Reads are cached with a TTL, network
calls are separated by a hard floor, concurrent callers share one fetch, and
transient fetch errors fall back to the last known state.
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from decimal import Decimal
from typing import Callable, Optional

from ..config.loader import EntitlementConfig
from ..storage.models import PaymentStatus
from .cancellation import Debouncer
from .errors import (
    EntitlementCheckError,
    InsufficientEntitlementError,
    OperationCancelledError,
)
from .identity import AuthEvent, Session
from .session import SessionManager

logger = logging.getLogger(__name__)


def is_entitled(credit_balance: Decimal, has_paid: bool, threshold: Decimal = Decimal("200")) -> bool:
    """Access rule: enough credit, or the account has paid before."""
    return has_paid or credit_balance >= threshold


@dataclass(frozen=True)
class EntitlementState:
    """Cached credit state for one account."""
    credit_balance: Decimal
    has_paid: bool
    cached_at: float
    ttl: float
    threshold: Decimal = Decimal("200")

    @property
    def granted(self) -> bool:
        return is_entitled(self.credit_balance, self.has_paid, self.threshold)

    def is_fresh(self, now: float) -> bool:
        return now - self.cached_at < self.ttl


class EntitlementCache:
    """Per-session entitlement slot.

    The slot is cleared on sign-out and whenever the session switches to a
    different user, so one user's balance is never served to another.
    """

    def __init__(
        self,
        sessions: SessionManager,
        store,
        config: Optional[EntitlementConfig] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._sessions = sessions
        self._store = store
        self._config = config or EntitlementConfig()
        self._clock = clock
        self._state: Optional[EntitlementState] = None
        self._inflight: Optional[asyncio.Task] = None
        self._last_fetch_started: Optional[float] = None
        self._generation = 0
        self._debouncer = Debouncer(self._config.refresh_debounce_seconds)
        self._user_id = sessions.user_id
        self.last_error: Optional[EntitlementCheckError] = None
        self._unsubscribe = sessions.subscribe(self._on_session_event)

    @property
    def state(self) -> Optional[EntitlementState]:
        return self._state

    @property
    def fetch_in_flight(self) -> bool:
        return self._inflight is not None and not self._inflight.done()

    async def check_status(self, force_refresh: bool = False) -> EntitlementState:
        """Return the account's entitlement state.

        A fresh cached value is returned without a network call unless
        ``force_refresh`` is set. Either way, two network calls are never
        started closer together than the configured floor.

        Raises:
            NotAuthenticatedError: If there is no session
            StepUpRequiredError: If the session still needs its second factor
            EntitlementCheckError: If the fetch failed and nothing is cached
        """
        session = self._sessions.require_session()
        now = self._clock()
        state = self._state

        if state is not None and not force_refresh and state.is_fresh(now):
            return state

        running = self.fetch_in_flight
        if running and not force_refresh:
            return await self._join(self._inflight)

        floor = self._config.min_fetch_interval_seconds
        if self._last_fetch_started is not None and now - self._last_fetch_started < floor:
            if running:
                return await self._join(self._inflight)
            if state is not None:
                return state
            if self.last_error is not None:
                raise self.last_error

        if running:
            logger.debug("Superseding in-flight entitlement fetch")
            self._inflight.cancel()

        return await self._join(self._start_fetch(session, now))

    async def refresh(self) -> EntitlementState:
        """Debounced forced refresh."""
        return await self._debouncer.call(lambda: self.check_status(force_refresh=True))

    async def is_entitled(self) -> bool:
        state = await self.check_status()
        return state.granted

    async def require_entitlement(self) -> EntitlementState:
        """Return the state if access is granted.

        Raises:
            InsufficientEntitlementError: If the balance is too low and the
                account has never paid
        """
        state = await self.check_status()
        if not state.granted:
            raise InsufficientEntitlementError(
                f"Insufficient credit balance. You have R{state.credit_balance:.2f}. "
                f"Please top up to continue.",
                credit_balance=state.credit_balance,
                required=state.threshold,
            )
        return state

    def write_through(self, status: PaymentStatus) -> EntitlementState:
        """Install an authoritative status, superseding any in-flight fetch."""
        self._generation += 1
        if self.fetch_in_flight:
            self._inflight.cancel()
        self._state = self._make_state(status, self._clock())
        self.last_error = None
        logger.info(
            "Entitlement written through",
            extra={"user_id": self._user_id, "granted": self._state.granted},
        )
        return self._state

    def reset(self) -> None:
        """Clear the slot and abort pending work."""
        self._generation += 1
        self._debouncer.cancel()
        if self.fetch_in_flight:
            self._inflight.cancel()
        self._inflight = None
        self._state = None
        self._last_fetch_started = None
        self.last_error = None

    def close(self) -> None:
        self._unsubscribe()
        self.reset()

    def _start_fetch(self, session: Session, now: float) -> asyncio.Task:
        self._generation += 1
        self._last_fetch_started = now
        task = asyncio.ensure_future(self._fetch(session.user_id, self._generation))
        self._inflight = task

        def clear(done: asyncio.Task) -> None:
            if self._inflight is done:
                self._inflight = None

        task.add_done_callback(clear)
        return task

    async def _fetch(self, user_id: str, generation: int) -> EntitlementState:
        scope = self._sessions.scope
        try:
            status = await scope.run(self._store.get_payment_status(user_id))
        except OperationCancelledError:
            raise
        except Exception as e:
            error = EntitlementCheckError(f"Failed to check payment status: {e}")
            if generation == self._generation:
                self.last_error = error
            if self._state is not None:
                logger.warning(
                    "Entitlement check failed; serving last known state",
                    extra={"user_id": user_id, "error": str(e)},
                )
                return self._state
            logger.warning("Entitlement check failed", extra={"user_id": user_id, "error": str(e)})
            raise error from e

        state = self._make_state(status, self._clock())
        if generation != self._generation:
            # Superseded by a write-through; the newer state stands
            return self._state or state
        self._state = state
        self.last_error = None
        return state

    async def _join(self, task: asyncio.Task) -> EntitlementState:
        """Wait for a shared fetch, following it if a newer one supersedes it."""
        while True:
            try:
                return await asyncio.shield(task)
            except asyncio.CancelledError:
                if not task.cancelled():
                    raise
                if self._inflight is not None and self._inflight is not task:
                    task = self._inflight
                    continue
                if self._state is not None:
                    return self._state
                raise OperationCancelledError("entitlement fetch cancelled") from None

    def _make_state(self, status: PaymentStatus, now: float) -> EntitlementState:
        return EntitlementState(
            credit_balance=status.credit_balance,
            has_paid=status.has_paid,
            cached_at=now,
            ttl=self._config.cache_ttl_seconds,
            threshold=self._config.credit_threshold,
        )

    def _on_session_event(self, event: AuthEvent, session: Optional[Session]) -> None:
        new_user = session.user_id if session else None
        if event is AuthEvent.SIGNED_OUT or (
            self._user_id is not None and new_user is not None and new_user != self._user_id
        ):
            logger.debug("Resetting entitlement slot", extra={"event": event.value})
            self.reset()
        self._user_id = new_user
