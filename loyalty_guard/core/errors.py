"""
Error taxonomy for the loyalty guard controllers.

Business-rule errors carry a machine-readable ``next_step`` so the caller can
offer the right affordance (top up, redeem, verify) instead of a dead end.
"""

from decimal import Decimal
from typing import Optional


class LoyaltyGuardError(Exception):
    """Base exception for all controller errors."""
    next_step: Optional[str] = None

    def to_dict(self) -> dict:
        """Convert to dictionary for display or logging."""
        return {
            "error": type(self).__name__,
            "message": str(self),
            "next_step": self.next_step,
        }


class OperationCancelledError(LoyaltyGuardError):
    """Raised when an operation is aborted by teardown or supersession."""


# Authentication

class AuthError(LoyaltyGuardError):
    """Raised on bad credentials or a missing session."""


class NotAuthenticatedError(AuthError):
    """Raised when a gated call is made without a session."""


class StepUpRequiredError(AuthError):
    """Raised when the session is password-only but a second factor is required."""
    next_step = "verify"


class IdentityProviderError(LoyaltyGuardError):
    """Provider failure passed through with its code and HTTP status."""

    def __init__(self, message: str, code: Optional[str] = None, status: Optional[int] = None):
        super().__init__(message)
        self.code = code
        self.status = status


# Multi-factor authentication

class MFAError(LoyaltyGuardError):
    """Base exception for step-up authentication errors."""


class MFAEnrollmentError(MFAError):
    """Raised when the provider rejects a factor enrollment."""


class MFAChallengeError(MFAError):
    """Raised when a challenge cannot be issued for a factor."""


class InvalidCodeError(MFAError):
    """Raised when a TOTP code is malformed or does not match."""


class ExpiredChallengeError(MFAError):
    """Raised when a challenge was already consumed or has expired."""


class VerificationTimeoutError(MFAError, TimeoutError):
    """Raised when a verification attempt does not finish in time."""


class FreshVerificationRequiredError(MFAError):
    """Raised when removing a factor without a fresh verification."""
    next_step = "verify"


class InvalidTransitionError(MFAError):
    """Raised on an illegal step-up state machine transition."""


# Entitlements

class EntitlementCheckError(LoyaltyGuardError):
    """Transient failure fetching the balance. Never authoritative."""


class InsufficientEntitlementError(LoyaltyGuardError):
    """Raised when the account lacks credit to use a gated feature."""
    next_step = "top_up"

    def __init__(
        self,
        message: str,
        credit_balance: Optional[Decimal] = None,
        required: Optional[Decimal] = None,
    ):
        super().__init__(message)
        self.credit_balance = credit_balance
        self.required = required

    def to_dict(self) -> dict:
        data = super().to_dict()
        data["credit_balance"] = str(self.credit_balance) if self.credit_balance is not None else None
        data["required"] = str(self.required) if self.required is not None else None
        return data


# Ledger

class LedgerError(LoyaltyGuardError):
    """Base exception for ledger mutations."""


class AccountNotFoundError(LedgerError):
    """Raised when a loyalty account does not exist for the owner."""


class DuplicatePhoneError(LedgerError):
    """Raised when a phone number is already registered for the owner."""


class LedgerPreconditionError(LedgerError):
    """Raised when a mutation is requested in the wrong counter state."""

    def __init__(self, message: str, next_step: Optional[str] = None):
        super().__init__(message)
        self.next_step = next_step


class LedgerConflictError(LedgerError):
    """Raised when a redemption lost the race for a threshold crossing."""


class LedgerMutationError(LedgerError):
    """Generic durable mutation failure, rolled back and reloaded."""


# Payments

class PaymentError(LoyaltyGuardError):
    """Base exception for payment errors."""


class PaymentInitiationError(PaymentError):
    """Raised when a top-up cannot be opened with the gateway."""


class PaymentCompletionError(PaymentError):
    """Raised when a top-up cannot be settled."""
