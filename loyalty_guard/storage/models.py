"""
Data models for storage layer.

Defines the records held by the data store, each scoped to an owning user.
"""

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Optional


class TransactionStatus(Enum):
    """Lifecycle of a top-up transaction."""
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def terminal(self) -> bool:
        return self is not TransactionStatus.PENDING


@dataclass(frozen=True)
class LoyaltyAccount:
    """Per-customer loyalty counter."""
    id: str
    owner_user_id: str
    name: str
    phone: str
    units_purchased: int
    created_at: datetime

    def __post_init__(self):
        if self.units_purchased < 0:
            raise ValueError("units_purchased cannot be negative")


@dataclass(frozen=True)
class RedemptionRecord:
    """Immutable record of a redeemed reward.

    Created in the same transaction that resets the counter and never
    modified afterwards.
    """
    id: str
    account_id: str
    owner_user_id: str
    redeemed_at: datetime


@dataclass(frozen=True)
class Settings:
    """Per-owner program settings and credit state."""
    owner_user_id: str
    redemption_threshold: int
    credit_balance: Decimal
    has_paid: bool
    total_units_purchased: int = 0
    last_reset_date: Optional[datetime] = None


@dataclass(frozen=True)
class PaymentStatus:
    """Credit state used for entitlement decisions."""
    credit_balance: Decimal
    has_paid: bool


@dataclass(frozen=True)
class PaymentTransaction:
    """Balance top-up. Completed and failed transactions are immutable."""
    id: str
    owner_user_id: str
    amount: Decimal
    status: TransactionStatus
    reference: str
    provider: str
    created_at: datetime
    provider_reference: Optional[str] = None
    completed_at: Optional[datetime] = None


@dataclass(frozen=True)
class CompletionResult:
    """Outcome of settling a transaction."""
    transaction: PaymentTransaction
    status: PaymentStatus
    newly_completed: bool
