"""
Session lifecycle management.

Owns the authenticated Session, the single subscription to provider
auth-state changes, and the session-scoped cancellation token. Signing out
or closing the manager cancels every operation started under the session.
"""

import logging
from dataclasses import dataclass
from typing import Callable, List, Optional

from .cancellation import CancellationToken
from .errors import (
    NotAuthenticatedError,
    OperationCancelledError,
    StepUpRequiredError,
)
from .identity import (
    AssuranceLevel,
    AuthEvent,
    IdentityProvider,
    Session,
    Subscription,
)

logger = logging.getLogger(__name__)

SessionListener = Callable[[AuthEvent, Optional[Session]], None]


@dataclass(frozen=True)
class SignInResult:
    """Outcome of a password sign-in."""
    session: Session
    mfa_required: bool = False


class SessionManager:
    """Authentication state for one client context.

    Usage:
        manager = SessionManager(provider)
        await manager.start()
        result = await manager.sign_in(email, password)
        if result.mfa_required:
            ...  # run the step-up flow before touching gated features
    """

    def __init__(self, provider: IdentityProvider):
        self._provider = provider
        self._session: Optional[Session] = None
        self._required_level = AssuranceLevel.AAL1
        self._listeners: List[SessionListener] = []
        self._subscription: Optional[Subscription] = None
        self._root = CancellationToken()
        self._scope = self._root.child()
        self._closed = False
        self._signing_in = False

    @property
    def provider(self) -> IdentityProvider:
        return self._provider

    @property
    def session(self) -> Optional[Session]:
        return self._session

    @property
    def user_id(self) -> Optional[str]:
        return self._session.user_id if self._session else None

    @property
    def required_level(self) -> AssuranceLevel:
        return self._required_level

    @property
    def step_up_pending(self) -> bool:
        """True while the session is below the required assurance level."""
        if self._session is None:
            return False
        return self._session.assurance_level.rank < self._required_level.rank

    @property
    def scope(self) -> CancellationToken:
        """Token cancelled when the current identity ends."""
        return self._scope

    @property
    def closed(self) -> bool:
        return self._closed

    def subscribe(self, listener: SessionListener) -> Callable[[], None]:
        """Register an in-process listener. Returns an unsubscribe function."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def require_session(self) -> Session:
        """Return the session usable for gated content.

        Raises:
            NotAuthenticatedError: If there is no session or it expired
            StepUpRequiredError: If the second factor is still outstanding
        """
        if self._session is None:
            raise NotAuthenticatedError("Not authenticated")
        if self._session.is_expired():
            raise NotAuthenticatedError("Session expired")
        if self.step_up_pending:
            raise StepUpRequiredError("Second factor verification required")
        return self._session

    async def start(self) -> Optional[Session]:
        """Load the current session and subscribe to provider auth changes."""
        self._ensure_open()
        session = await self._scope.run(self._provider.get_session())
        if self._subscription is None:
            self._subscription = self._provider.on_auth_state_change(self._on_provider_event)
        if session is not None:
            await self._refresh_required_level()
        self._apply(AuthEvent.INITIAL_SESSION, session)
        return session

    async def sign_in(self, email: str, password: str) -> SignInResult:
        """Sign in with a password, then check whether step-up is needed.

        The new session is held at the second-factor requirement until the
        provider reports the account's assurance levels. If that query fails
        the sign-in is abandoned and the session cleared.

        Raises:
            AuthError: On bad credentials
            IdentityProviderError: On other provider failures
        """
        self._ensure_open()
        token = self._scope
        previous_level = self._required_level
        self._required_level = AssuranceLevel.AAL2
        self._signing_in = True
        try:
            try:
                session = await token.run(self._provider.sign_in_with_password(email, password))
            except Exception:
                if not token.cancelled:
                    self._required_level = previous_level
                raise
            try:
                levels = await token.run(self._provider.mfa.get_authenticator_assurance_level())
            except Exception:
                await self._abandon_sign_in(token)
                raise
        finally:
            self._signing_in = False
        self._required_level = levels.next
        self._apply(AuthEvent.SIGNED_IN, session)

        if levels.step_up_required:
            logger.info("Sign-in requires second factor", extra={"user_id": session.user_id})
            return SignInResult(session=session, mfa_required=True)
        return SignInResult(session=session)

    async def sign_up(self, email: str, password: str) -> Optional[Session]:
        """Register a new account. Returns a session when no confirmation is pending."""
        self._ensure_open()
        session = await self._scope.run(self._provider.sign_up(email, password))
        if session is not None:
            self._required_level = AssuranceLevel.AAL1
            self._apply(AuthEvent.SIGNED_IN, session)
        return session

    async def sign_out(self) -> None:
        """Sign out and reset all identity-scoped state."""
        if self._closed:
            return
        # Abort work belonging to the old identity before the provider call
        self._rotate_scope("signed out")
        try:
            await self._scope.run(self._provider.sign_out())
        except OperationCancelledError:
            raise
        except Exception:
            logger.exception("Provider sign-out failed; clearing local session anyway")
        self._required_level = AssuranceLevel.AAL1
        self._apply(AuthEvent.SIGNED_OUT, None)

    def apply_session(self, session: Session, event: AuthEvent = AuthEvent.TOKEN_REFRESHED) -> None:
        """Install a session obtained outside sign-in, e.g. after MFA verify."""
        self._ensure_open()
        self._apply(event, session)

    async def close(self) -> None:
        """Tear down: cancel in-flight work and stop applying updates."""
        if self._closed:
            return
        self._closed = True
        self._root.cancel("session manager closed")
        if self._subscription is not None:
            try:
                self._subscription.unsubscribe()
            except Exception:
                logger.exception("Failed to unsubscribe from auth state changes")
            self._subscription = None
        self._listeners.clear()

    async def _refresh_required_level(self) -> None:
        levels = await self._scope.run(self._provider.mfa.get_authenticator_assurance_level())
        self._required_level = levels.next

    async def _abandon_sign_in(self, token: CancellationToken) -> None:
        if token.cancelled or self._closed:
            return
        self._rotate_scope("sign-in incomplete")
        try:
            await self._scope.run(self._provider.sign_out())
        except OperationCancelledError:
            raise
        except Exception:
            logger.exception("Provider sign-out failed after incomplete sign-in")
        self._required_level = AssuranceLevel.AAL1
        self._apply(AuthEvent.SIGNED_OUT, None)

    def _on_provider_event(self, event: AuthEvent, session: Optional[Session]) -> None:
        if self._closed:
            return
        # sign_in installs its own session once the assurance levels are known
        if event is AuthEvent.SIGNED_IN and self._signing_in:
            return
        if event is AuthEvent.SIGNED_OUT:
            if self._session is None:
                return
            self._rotate_scope("signed out by provider")
            self._required_level = AssuranceLevel.AAL1
        self._apply(event, session)

    def _apply(self, event: AuthEvent, session: Optional[Session]) -> None:
        if self._closed:
            return
        previous = self._session
        if previous is not None and session is not None and previous.user_id != session.user_id:
            self._rotate_scope("identity changed")
        self._session = session
        logger.debug(
            "Auth state applied",
            extra={"event": event.value, "user_id": session.user_id if session else None},
        )
        for listener in list(self._listeners):
            try:
                listener(event, session)
            except Exception:
                logger.exception("Session listener failed", extra={"event": event.value})

    def _rotate_scope(self, reason: str) -> None:
        self._scope.cancel(reason)
        self._scope = self._root.child()

    def _ensure_open(self) -> None:
        if self._closed:
            raise OperationCancelledError("session manager closed")
