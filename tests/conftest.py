"""
Shared fixtures.
"""

import os
from decimal import Decimal

import pytest

from loyalty_guard.config.loader import (
    EntitlementConfig,
    GuardConfig,
    LedgerConfig,
    PaymentConfig,
    StepUpConfig,
)
from loyalty_guard.core.session import SessionManager
from loyalty_guard.storage.repository import LedgerStore, initialize_schema

from fakes import FakeGateway, FakeIdentityProvider


@pytest.fixture
def db_path(tmp_path):
    path = os.path.join(tmp_path, "test.db")
    initialize_schema(path)
    return path


@pytest.fixture
def store(db_path):
    return LedgerStore(db_path)


@pytest.fixture
def provider():
    provider = FakeIdentityProvider()
    provider.add_user()
    return provider


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def fast_config():
    """Production rules with short timers."""
    return GuardConfig(
        entitlement=EntitlementConfig(refresh_debounce_seconds=0.01),
        step_up=StepUpConfig(verify_debounce_seconds=0.01, verify_timeout_seconds=0.2),
        ledger=LedgerConfig(),
        payments=PaymentConfig(public_key="pk_test_123", minimum_amount=Decimal("200")),
    )


@pytest.fixture
def sessions(provider):
    return SessionManager(provider)

