"""
Configuration management and loading.

Handles controller timing, thresholds and payment settings.
"""

import os
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any, Dict, Optional

import yaml


@dataclass(frozen=True)
class EntitlementConfig:
    """Cache timing and the credit rule for gated features."""
    cache_ttl_seconds: float = 120.0
    min_fetch_interval_seconds: float = 5.0
    refresh_debounce_seconds: float = 0.5
    credit_threshold: Decimal = Decimal("200")

    def __post_init__(self):
        """Validate timing values are positive."""
        if self.cache_ttl_seconds <= 0:
            raise ValueError("cache_ttl_seconds must be > 0")
        if self.min_fetch_interval_seconds < 0:
            raise ValueError("min_fetch_interval_seconds must be >= 0")
        if self.refresh_debounce_seconds < 0:
            raise ValueError("refresh_debounce_seconds must be >= 0")
        if self.credit_threshold < 0:
            raise ValueError("credit_threshold must be >= 0")


@dataclass(frozen=True)
class StepUpConfig:
    """TOTP step-up settings."""
    app_name: str = "LoyaltyBean"
    verify_timeout_seconds: float = 10.0
    verify_debounce_seconds: float = 0.3
    totp_period_seconds: int = 30
    expiry_warning_seconds: int = 5

    def __post_init__(self):
        if not self.app_name or not self.app_name.strip():
            raise ValueError("app_name cannot be empty")
        if self.verify_timeout_seconds <= 0:
            raise ValueError("verify_timeout_seconds must be > 0")
        if self.verify_debounce_seconds < 0:
            raise ValueError("verify_debounce_seconds must be >= 0")
        if self.totp_period_seconds <= 0:
            raise ValueError("totp_period_seconds must be > 0")
        if not 0 <= self.expiry_warning_seconds < self.totp_period_seconds:
            raise ValueError("expiry_warning_seconds must be between 0 and totp_period_seconds")


@dataclass(frozen=True)
class LedgerConfig:
    """Loyalty counter settings."""
    default_redemption_threshold: int = 10
    unit_charge: Decimal = Decimal("2.50")

    def __post_init__(self):
        if self.default_redemption_threshold < 1:
            raise ValueError("default_redemption_threshold must be >= 1")
        if self.unit_charge < 0:
            raise ValueError("unit_charge must be >= 0")


@dataclass(frozen=True)
class PaymentConfig:
    """Top-up settings handed to the payment gateway."""
    minimum_amount: Decimal = Decimal("200")
    currency: str = "ZAR"
    provider: str = "paystack"
    public_key: str = ""

    def __post_init__(self):
        if self.minimum_amount <= 0:
            raise ValueError("minimum_amount must be > 0")
        if len(self.currency) != 3:
            raise ValueError("currency must be a 3-letter ISO code")


@dataclass(frozen=True)
class GuardConfig:
    """Complete controller configuration."""
    entitlement: EntitlementConfig = field(default_factory=EntitlementConfig)
    step_up: StepUpConfig = field(default_factory=StepUpConfig)
    ledger: LedgerConfig = field(default_factory=LedgerConfig)
    payments: PaymentConfig = field(default_factory=PaymentConfig)


def default_config() -> GuardConfig:
    """Default configuration, with the gateway public key taken from the environment."""
    return GuardConfig(
        payments=PaymentConfig(public_key=os.getenv("PAYSTACK_PUBLIC_KEY", ""))
    )


_SECTION_KEYS = {
    'entitlement': {
        'cache_ttl_seconds': float,
        'min_fetch_interval_seconds': float,
        'refresh_debounce_seconds': float,
        'credit_threshold': Decimal,
    },
    'step_up': {
        'app_name': str,
        'verify_timeout_seconds': float,
        'verify_debounce_seconds': float,
        'totp_period_seconds': int,
        'expiry_warning_seconds': int,
    },
    'ledger': {
        'default_redemption_threshold': int,
        'unit_charge': Decimal,
    },
    'payments': {
        'minimum_amount': Decimal,
        'currency': str,
        'provider': str,
        'public_key': str,
    },
}

_SECTION_TYPES = {
    'entitlement': EntitlementConfig,
    'step_up': StepUpConfig,
    'ledger': LedgerConfig,
    'payments': PaymentConfig,
}


def load_config(path: str) -> GuardConfig:
    """Load and validate controller configuration from a YAML file.

    Every section is optional and falls back to defaults, but unknown keys
    and values of the wrong type are rejected so a typo cannot silently
    change a cache window or a payment minimum.

    Args:
        path: Path to YAML configuration file

    Returns:
        Validated GuardConfig object

    Raises:
        FileNotFoundError: If config file doesn't exist
        yaml.YAMLError: If YAML is invalid
        ValueError: If configuration is invalid
    """
    config_path = Path(path)
    if not config_path.exists():
        raise FileNotFoundError(f"Config file not found: {path}")

    with open(config_path, 'r', encoding='utf-8') as f:
        try:
            raw_config = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise yaml.YAMLError(f"Invalid YAML in config file {path}: {e}")

    if not raw_config:
        raise ValueError("Configuration file is empty")
    if not isinstance(raw_config, dict):
        raise ValueError("Configuration must be a mapping")

    unknown_keys = set(raw_config.keys()) - set(_SECTION_KEYS)
    if unknown_keys:
        raise ValueError(f"Unknown configuration keys: {unknown_keys}")

    sections: Dict[str, Any] = {}
    for section, data in raw_config.items():
        sections[section] = _parse_section(section, data)

    # The public key is a deploy-time secret; the environment wins over an empty file value
    payments: Optional[PaymentConfig] = sections.get('payments')
    env_key = os.getenv("PAYSTACK_PUBLIC_KEY", "")
    if env_key and (payments is None or not payments.public_key):
        base = payments or PaymentConfig()
        sections['payments'] = PaymentConfig(
            minimum_amount=base.minimum_amount,
            currency=base.currency,
            provider=base.provider,
            public_key=env_key,
        )

    return GuardConfig(**sections)


def _parse_section(section: str, data: Any):
    """Parse and validate one configuration section.

    Args:
        section: Section name
        data: Raw section mapping

    Returns:
        The section's config dataclass

    Raises:
        ValueError: If the section is invalid
    """
    if data is None:
        data = {}
    if not isinstance(data, dict):
        raise ValueError(f"'{section}' must be a dictionary")

    allowed = _SECTION_KEYS[section]
    unknown_keys = set(data.keys()) - set(allowed)
    if unknown_keys:
        raise ValueError(f"Unknown keys in {section}: {unknown_keys}")

    values = {}
    for key, raw in data.items():
        values[key] = _coerce(raw, allowed[key], f"{section}.{key}")

    return _SECTION_TYPES[section](**values)


def _coerce(value: Any, expected: type, path: str):
    """Convert a YAML scalar to the expected type."""
    if isinstance(value, bool):
        raise ValueError(f"'{path}' must be a {expected.__name__}, not a boolean")

    if expected is str:
        if not isinstance(value, str):
            raise ValueError(f"'{path}' must be a string")
        return value

    if expected is int:
        if not isinstance(value, int):
            raise ValueError(f"'{path}' must be an integer")
        return value

    if expected is float:
        if not isinstance(value, (int, float)):
            raise ValueError(f"'{path}' must be a number")
        return float(value)

    # Money is read through str() so 2.5 stays exactly 2.50
    if not isinstance(value, (int, float, str)):
        raise ValueError(f"'{path}' must be a decimal amount")
    try:
        return Decimal(str(value))
    except InvalidOperation:
        raise ValueError(f"'{path}' must be a decimal amount")
