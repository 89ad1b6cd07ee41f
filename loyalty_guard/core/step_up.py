"""
Step-up authentication.

TOTP enrollment, challenge and verification as an explicit state machine.
A successful verification raises the session from aal1 to aal2 and
authorises exactly one factor removal.
"""

import asyncio
import logging
import re
import secrets
import time
from enum import Enum
from typing import Dict, List, Optional, Set
from urllib.parse import quote

from ..config.loader import StepUpConfig
from .cancellation import CancellationToken, Debouncer
from .errors import (
    ExpiredChallengeError,
    FreshVerificationRequiredError,
    InvalidCodeError,
    InvalidTransitionError,
    MFAChallengeError,
    OperationCancelledError,
    VerificationTimeoutError,
)
from .identity import AuthEvent, Challenge, EnrolledFactor, MFAFactor, Session
from .session import SessionManager

logger = logging.getLogger(__name__)

_CODE_PATTERN = re.compile(r"[0-9]{6}")


class StepUpState(Enum):
    """States of the step-up flow."""
    IDLE = "idle"
    CHECKING_EXISTING_FACTORS = "checking_existing_factors"
    ENROLLMENT_PENDING = "enrollment_pending"
    EXISTING_FACTOR_CONFLICT = "existing_factor_conflict"
    AWAITING_CODE = "awaiting_code"
    VERIFYING = "verifying"
    VERIFIED = "verified"
    CANCELLED = "cancelled"


_TRANSITIONS: Dict[StepUpState, Set[StepUpState]] = {
    StepUpState.IDLE: {
        StepUpState.CHECKING_EXISTING_FACTORS,
        StepUpState.CANCELLED,
    },
    StepUpState.CHECKING_EXISTING_FACTORS: {
        StepUpState.ENROLLMENT_PENDING,
        StepUpState.EXISTING_FACTOR_CONFLICT,
        StepUpState.AWAITING_CODE,
        StepUpState.IDLE,
        StepUpState.CANCELLED,
    },
    StepUpState.ENROLLMENT_PENDING: {
        StepUpState.AWAITING_CODE,
        StepUpState.CANCELLED,
    },
    StepUpState.EXISTING_FACTOR_CONFLICT: {
        StepUpState.AWAITING_CODE,
        StepUpState.ENROLLMENT_PENDING,
        StepUpState.IDLE,
        StepUpState.CANCELLED,
    },
    StepUpState.AWAITING_CODE: {
        StepUpState.VERIFYING,
        StepUpState.CANCELLED,
    },
    StepUpState.VERIFYING: {
        StepUpState.VERIFIED,
        StepUpState.AWAITING_CODE,
        StepUpState.CANCELLED,
    },
    # Replacing a conflicting factor continues from a verified flow
    StepUpState.VERIFIED: {
        StepUpState.ENROLLMENT_PENDING,
        StepUpState.IDLE,
    },
    StepUpState.CANCELLED: set(),
}

_TERMINAL = {StepUpState.VERIFIED, StepUpState.CANCELLED}


def code_expiring_soon(now: Optional[float] = None, period: int = 30, warning: int = 5) -> bool:
    """Whether the current TOTP window has at most ``warning`` seconds left.

    Advisory only: the provider decides whether a code is still accepted.
    """
    if now is None:
        now = time.time()
    return period - (int(now) % period) <= warning


def build_otpauth_uri(secret: str, account_name: str, issuer: str) -> str:
    """Build a provisioning URI for authenticator apps."""
    label = quote(f"{issuer}:{account_name}")
    return f"otpauth://totp/{label}?secret={secret}&issuer={quote(issuer)}"


class StepUpAuthenticator:
    """Drives one step-up flow for the signed-in user.

    Enrollment:
        flow = StepUpAuthenticator(sessions, config)
        await flow.start_enrollment()       # ENROLLMENT_PENDING or EXISTING_FACTOR_CONFLICT
        show(flow.enrolled.qr_code)
        flow.begin_verification()           # AWAITING_CODE
        await flow.submit_code("123456")    # VERIFIED, session is now aal2

    Sign-in or factor removal:
        await flow.start_step_up()
        await flow.submit_code(code)
        await flow.unenroll(flow.factor_id)
    """

    def __init__(self, sessions: SessionManager, config: Optional[StepUpConfig] = None):
        self._sessions = sessions
        self._config = config or StepUpConfig()
        self._debouncer = Debouncer(self._config.verify_debounce_seconds)
        self._new_flow()

    def _new_flow(self) -> None:
        self._flow = self._sessions.scope.child()
        self._state = StepUpState.IDLE
        self._factor_id: Optional[str] = None
        self._enrolled: Optional[EnrolledFactor] = None
        self._existing: List[MFAFactor] = []
        self._challenges: Dict[str, Challenge] = {}
        self._consumed: Set[str] = set()
        self._fresh_verification = False
        self.entered_code = ""
        self.attempt_count = 0

    @property
    def state(self) -> StepUpState:
        return self._state

    @property
    def factor_id(self) -> Optional[str]:
        """Factor the flow verifies against."""
        return self._factor_id

    @property
    def enrolled(self) -> Optional[EnrolledFactor]:
        """Secret and QR payload of the factor enrolled in this flow."""
        return self._enrolled

    @property
    def existing_factors(self) -> List[MFAFactor]:
        """Factors that blocked enrollment, while a conflict is unresolved."""
        return list(self._existing)

    @property
    def fresh_verification(self) -> bool:
        return self._fresh_verification

    @property
    def _mfa(self):
        return self._sessions.provider.mfa

    # Entry points

    async def start_enrollment(self) -> StepUpState:
        """Check for existing app factors, then enroll a new one if there are none.

        Returns:
            ENROLLMENT_PENDING, or EXISTING_FACTOR_CONFLICT when the user
            already has an authenticator registered for this app

        Raises:
            MFAEnrollmentError: If the provider rejects the enrollment
        """
        self._transition(StepUpState.CHECKING_EXISTING_FACTORS)
        factors = await self._list_or_reset()
        conflicts = [f for f in factors if f.factor_type == "totp" and self._is_reserved_name(f.friendly_name)]
        if conflicts:
            self._existing = conflicts
            self._transition(StepUpState.EXISTING_FACTOR_CONFLICT)
            logger.info("Existing authenticator found", extra={"factors": len(conflicts)})
            return self._state

        await self.enroll(taken_names={f.friendly_name for f in factors})
        return self._state

    async def start_step_up(self, factor_id: Optional[str] = None) -> StepUpState:
        """Prepare to verify against a registered factor.

        Args:
            factor_id: Factor to verify. Defaults to the first verified TOTP factor.

        Raises:
            MFAChallengeError: If no matching verified factor exists
        """
        self._transition(StepUpState.CHECKING_EXISTING_FACTORS)
        factors = await self._list_or_reset()
        candidates = [f for f in factors if f.factor_type == "totp" and f.verified]
        if factor_id is not None:
            candidates = [f for f in candidates if f.id == factor_id]
        if not candidates:
            self._transition(StepUpState.IDLE)
            raise MFAChallengeError("No verified authenticator is registered")

        self._factor_id = candidates[0].id
        self._transition(StepUpState.AWAITING_CODE)
        return self._state

    async def enroll(self, taken_names: Optional[Set[str]] = None) -> EnrolledFactor:
        """Enroll a new TOTP factor under a collision-free name.

        Raises:
            MFAEnrollmentError: If the provider rejects the enrollment
        """
        if self._state not in (
            StepUpState.CHECKING_EXISTING_FACTORS,
            StepUpState.EXISTING_FACTOR_CONFLICT,
            StepUpState.VERIFIED,
        ):
            raise InvalidTransitionError(f"Cannot enroll from {self._state.value}")

        name = self._new_factor_name(taken_names or set())
        try:
            enrolled = await self._call(self._mfa.enroll(name, self._config.app_name))
        except OperationCancelledError:
            raise
        except Exception:
            self._transition(StepUpState.IDLE)
            raise

        if not enrolled.uri:
            uri = build_otpauth_uri(enrolled.secret, enrolled.friendly_name, self._config.app_name)
            enrolled = EnrolledFactor(
                id=enrolled.id,
                friendly_name=enrolled.friendly_name,
                secret=enrolled.secret,
                qr_code=enrolled.qr_code or uri,
                uri=uri,
            )
        elif not enrolled.qr_code:
            enrolled = EnrolledFactor(
                id=enrolled.id,
                friendly_name=enrolled.friendly_name,
                secret=enrolled.secret,
                qr_code=enrolled.uri,
                uri=enrolled.uri,
            )

        self._enrolled = enrolled
        self._factor_id = enrolled.id
        self._existing = []
        self._transition(StepUpState.ENROLLMENT_PENDING)
        logger.info("Authenticator enrolled", extra={"factor_id": enrolled.id})
        return enrolled

    # Conflict resolution

    def keep_existing(self) -> StepUpState:
        """Continue with the registered authenticator instead of enrolling."""
        self._require(StepUpState.EXISTING_FACTOR_CONFLICT)
        verified = [f for f in self._existing if f.verified]
        if not verified:
            raise MFAChallengeError("Existing authenticator was never verified; replace it instead")
        self._factor_id = verified[0].id
        self._transition(StepUpState.AWAITING_CODE)
        return self._state

    async def replace_existing(self) -> EnrolledFactor:
        """Remove the conflicting factors and enroll a new one.

        Unverified leftovers of an abandoned enrollment are discarded
        directly. A verified factor is only removed after a fresh
        verification in this flow (keep_existing, then submit_code).

        Raises:
            FreshVerificationRequiredError: If a verified factor would be
                removed without a fresh verification
        """
        self._require(StepUpState.EXISTING_FACTOR_CONFLICT, StepUpState.VERIFIED)
        verified = [f for f in self._existing if f.verified]
        leftovers = [f for f in self._existing if not f.verified]
        if verified and not self._fresh_verification:
            raise FreshVerificationRequiredError("Verify your existing authenticator before replacing it")

        for factor in leftovers:
            await self._call(self._mfa.unenroll(factor.id))
        if verified:
            self._fresh_verification = False
            for factor in verified:
                await self._call(self._mfa.unenroll(factor.id))
        logger.info("Replaced existing authenticators", extra={"removed": len(self._existing)})
        removed = {f.friendly_name for f in self._existing}
        self._existing = []
        return await self.enroll(taken_names=removed)

    def begin_verification(self) -> StepUpState:
        """The user scanned the QR code and is ready to enter a code."""
        self._require(StepUpState.ENROLLMENT_PENDING)
        self._transition(StepUpState.AWAITING_CODE)
        return self._state

    # Verification

    async def challenge(self, factor_id: str) -> Challenge:
        """Issue a single-use challenge for ``factor_id``.

        Raises:
            MFAChallengeError: If the factor is missing or revoked
        """
        challenge = await self._call(self._mfa.challenge(factor_id))
        self._challenges[challenge.id] = challenge
        return challenge

    async def verify(self, factor_id: str, challenge_id: str, code: str) -> Session:
        """Verify a code against a challenge and install the aal2 session.

        Raises:
            InvalidCodeError: If the code is malformed or wrong
            ExpiredChallengeError: If the challenge was consumed or expired
        """
        _validate_code(code)
        if challenge_id in self._consumed:
            raise ExpiredChallengeError("Challenge was already used")
        issued = self._challenges.get(challenge_id)
        if issued is not None and issued.is_expired():
            self._consume(challenge_id)
            raise ExpiredChallengeError("Challenge expired")

        try:
            session = await self._call(self._mfa.verify(factor_id, challenge_id, code))
        except ExpiredChallengeError:
            self._consume(challenge_id)
            raise
        self._consume(challenge_id)
        self._fresh_verification = True
        self._sessions.apply_session(session, AuthEvent.MFA_CHALLENGE_VERIFIED)
        return session

    async def submit_code(self, code: str) -> Session:
        """Submit the code typed by the user.

        Submissions within the debounce window collapse into one attempt
        with the latest code. Each attempt issues its own challenge.

        Raises:
            InvalidCodeError: If the code is malformed or wrong
            VerificationTimeoutError: If the attempt did not finish in time
        """
        self._require(StepUpState.AWAITING_CODE)
        if self._factor_id is None:
            raise InvalidTransitionError("No factor selected for verification")
        self.entered_code = code
        return await self._debouncer.call(lambda: self._attempt(code))

    async def _attempt(self, code: str) -> Session:
        self._transition(StepUpState.VERIFYING)
        attempt = self._flow.child()
        try:
            session = await asyncio.wait_for(
                attempt.run(self._verify_once(code)),
                timeout=self._config.verify_timeout_seconds,
            )
        except asyncio.TimeoutError:
            attempt.cancel("verification timed out")
            self._attempt_failed("timeout")
            raise VerificationTimeoutError(
                f"Verification did not complete within {self._config.verify_timeout_seconds:g}s"
            ) from None
        except OperationCancelledError:
            if self._state is StepUpState.VERIFYING:
                self._transition(StepUpState.CANCELLED)
            raise
        except asyncio.CancelledError:
            if self._state is StepUpState.VERIFYING:
                self._transition(StepUpState.CANCELLED)
            raise
        except Exception as e:
            self._attempt_failed(type(e).__name__)
            raise

        self._transition(StepUpState.VERIFIED)
        self.entered_code = ""
        logger.info("Step-up verification succeeded", extra={"factor_id": self._factor_id})
        return session

    async def _verify_once(self, code: str) -> Session:
        _validate_code(code)
        challenge = await self.challenge(self._factor_id)
        return await self.verify(self._factor_id, challenge.id, code)

    def _attempt_failed(self, reason: str) -> None:
        self.attempt_count += 1
        self.entered_code = ""
        self._transition(StepUpState.AWAITING_CODE)
        logger.warning(
            "Step-up verification failed",
            extra={"reason": reason, "attempt": self.attempt_count},
        )

    def code_expiring_soon(self, now: Optional[float] = None) -> bool:
        return code_expiring_soon(
            now,
            period=self._config.totp_period_seconds,
            warning=self._config.expiry_warning_seconds,
        )

    # Removal

    async def unenroll(self, factor_id: str) -> None:
        """Remove a factor. Requires a successful verification in this flow.

        Raises:
            FreshVerificationRequiredError: If no unused verification exists
        """
        if not self._fresh_verification:
            raise FreshVerificationRequiredError("Verify your authenticator before removing it")
        self._fresh_verification = False
        await self._call(self._mfa.unenroll(factor_id))
        if self._factor_id == factor_id:
            self._factor_id = None
        logger.info("Authenticator removed", extra={"factor_id": factor_id})

    # Teardown

    def cancel(self) -> None:
        """Abort the flow: pending debounce, in-flight attempt and flow token."""
        self._debouncer.cancel()
        self._flow.cancel("step-up cancelled")
        if self._state not in _TERMINAL:
            self._transition(StepUpState.CANCELLED)

    def reset(self) -> None:
        """Discard the current flow and start over from IDLE."""
        self._debouncer.cancel()
        self._flow.cancel("step-up reset")
        self._new_flow()

    # Helpers

    async def _call(self, awaitable):
        try:
            return await self._flow.run(awaitable)
        except OperationCancelledError:
            if StepUpState.CANCELLED in _TRANSITIONS[self._state]:
                self._transition(StepUpState.CANCELLED)
            raise

    async def _list_or_reset(self) -> List[MFAFactor]:
        try:
            return await self._call(self._mfa.list_factors())
        except OperationCancelledError:
            raise
        except Exception:
            self._transition(StepUpState.IDLE)
            raise

    def _is_reserved_name(self, name: str) -> bool:
        app = self._config.app_name
        return name == app or name.startswith(f"{app}-")

    def _new_factor_name(self, taken: Set[str]) -> str:
        while True:
            name = f"{self._config.app_name}-{secrets.token_hex(4)}"
            if name not in taken:
                return name

    def _consume(self, challenge_id: str) -> None:
        self._consumed.add(challenge_id)
        self._challenges.pop(challenge_id, None)

    def _require(self, *states: StepUpState) -> None:
        if self._state not in states:
            raise InvalidTransitionError(
                f"Operation not allowed in state {self._state.value}"
            )

    def _transition(self, target: StepUpState) -> None:
        if target not in _TRANSITIONS[self._state]:
            raise InvalidTransitionError(
                f"Illegal transition {self._state.value} -> {target.value}"
            )
        logger.debug("Step-up transition", extra={"from": self._state.value, "to": target.value})
        self._state = target


def _validate_code(code: str) -> None:
    if not isinstance(code, str) or not _CODE_PATTERN.fullmatch(code):
        raise InvalidCodeError("Code must be exactly 6 digits")
