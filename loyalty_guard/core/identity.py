"""
Identity collaborator contract.

Value types exchanged with the identity provider and the protocol the
controllers depend on. Concrete providers live in ``loyalty_guard.sdk``.
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Callable, List, Optional, Protocol


class AssuranceLevel(Enum):
    """Authenticator assurance level of a session."""
    AAL1 = "aal1"  # Password only
    AAL2 = "aal2"  # Password plus a verified second factor

    @property
    def rank(self) -> int:
        return 2 if self is AssuranceLevel.AAL2 else 1


class AuthEvent(Enum):
    """Auth-state change events pushed by the provider."""
    INITIAL_SESSION = "INITIAL_SESSION"
    SIGNED_IN = "SIGNED_IN"
    SIGNED_OUT = "SIGNED_OUT"
    TOKEN_REFRESHED = "TOKEN_REFRESHED"
    USER_UPDATED = "USER_UPDATED"
    MFA_CHALLENGE_VERIFIED = "MFA_CHALLENGE_VERIFIED"


@dataclass(frozen=True)
class Session:
    """Authenticated session. Either fully populated or absent."""
    user_id: str
    email: str
    access_token: str
    assurance_level: AssuranceLevel
    expires_at: datetime

    def __post_init__(self):
        """Reject partially populated sessions."""
        for name in ("user_id", "email", "access_token"):
            if not getattr(self, name):
                raise ValueError(f"Session.{name} is required")
        if not isinstance(self.assurance_level, AssuranceLevel):
            raise ValueError("Session.assurance_level must be an AssuranceLevel")
        if self.expires_at is None:
            raise ValueError("Session.expires_at is required")

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        now = now or datetime.now(timezone.utc)
        return now >= self.expires_at

    def __repr__(self) -> str:
        # Keep the credential out of logs and tracebacks
        return (
            f"Session(user_id={self.user_id!r}, email={self.email!r}, "
            f"assurance_level={self.assurance_level.value}, expires_at={self.expires_at.isoformat()})"
        )


@dataclass(frozen=True)
class AssuranceLevels:
    """Current and next-required assurance level."""
    current: AssuranceLevel
    next: AssuranceLevel

    @property
    def step_up_required(self) -> bool:
        return self.current is AssuranceLevel.AAL1 and self.next is AssuranceLevel.AAL2


@dataclass(frozen=True)
class MFAFactor:
    """Second factor registered with the provider."""
    id: str
    friendly_name: str
    factor_type: str = "totp"
    status: str = "verified"
    created_at: Optional[datetime] = None

    @property
    def verified(self) -> bool:
        return self.status == "verified"


@dataclass(frozen=True)
class EnrolledFactor:
    """Result of enrolling a TOTP factor."""
    id: str
    friendly_name: str
    secret: str
    qr_code: str
    uri: str


@dataclass(frozen=True)
class Challenge:
    """Single-use verification challenge for a factor."""
    id: str
    factor_id: str
    expires_at: datetime

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        now = now or datetime.now(timezone.utc)
        return now >= self.expires_at


AuthStateCallback = Callable[[AuthEvent, Optional[Session]], None]


class Subscription(Protocol):
    def unsubscribe(self) -> None: ...


class MFAApi(Protocol):
    async def enroll(self, friendly_name: str, issuer: str) -> EnrolledFactor: ...

    async def challenge(self, factor_id: str) -> Challenge: ...

    async def verify(self, factor_id: str, challenge_id: str, code: str) -> Session: ...

    async def unenroll(self, factor_id: str) -> None: ...

    async def list_factors(self) -> List[MFAFactor]: ...

    async def get_authenticator_assurance_level(self) -> AssuranceLevels: ...


class IdentityProvider(Protocol):
    """Call contract of the identity collaborator."""
    mfa: MFAApi

    async def get_session(self) -> Optional[Session]: ...

    def on_auth_state_change(self, callback: AuthStateCallback) -> Subscription: ...

    async def sign_in_with_password(self, email: str, password: str) -> Session: ...

    async def sign_up(self, email: str, password: str) -> Optional[Session]: ...

    async def sign_out(self) -> None: ...
