"""
SDK for Loyalty Guard.

HTTP adapters for the identity provider and the payment gateway.
"""

from .gotrue_client import GoTrueIdentityProvider
from .paystack_gateway import PaystackGateway

__all__ = ["GoTrueIdentityProvider", "PaystackGateway"]
