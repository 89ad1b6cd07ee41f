"""
Paystack payment gateway adapter.

Initializes a transaction through the Paystack REST API, hands the hosted
checkout URL to a presenter (browser, QR code, terminal link) and polls the
verify endpoint until the customer pays or the checkout times out.

SECURITY:
- The secret key must be stored securely and never logged
"""

import asyncio
import inspect
import logging
import os
from decimal import Decimal
from typing import Any, Callable, Dict, Optional, Set

import httpx

from ..core.errors import PaymentInitiationError
from ..core.payments import GatewayRequest

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://api.paystack.co"
DEFAULT_TIMEOUT_SECONDS = 30.0
DEFAULT_POLL_INTERVAL_SECONDS = 3.0
DEFAULT_CHECKOUT_TIMEOUT_SECONDS = 900.0

_FAILED_STATUSES = {"failed", "reversed"}


def to_subunits(amount: Decimal) -> int:
    """Paystack amounts are integers in the currency's subunit (cents)."""
    return int((amount * 100).to_integral_value())


class PaystackGateway:
    """
    Payment gateway over Paystack's hosted checkout.

    ``open`` returns once the checkout URL was presented; success or closure
    is reported later through the callbacks, from a background watcher.
    """

    def __init__(
        self,
        presenter: Callable[[str], Any],
        secret_key: Optional[str] = None,
        base_url: str = DEFAULT_BASE_URL,
        poll_interval: float = DEFAULT_POLL_INTERVAL_SECONDS,
        checkout_timeout: float = DEFAULT_CHECKOUT_TIMEOUT_SECONDS,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        """
        Initialize the gateway.

        Args:
            presenter: Called with the checkout URL; may be a coroutine function
            secret_key: Paystack secret key (default: from PAYSTACK_SECRET_KEY env)
            base_url: API base URL
            poll_interval: Seconds between verification polls
            checkout_timeout: Seconds after which an unpaid checkout counts as closed
            http_client: Preconfigured client, mainly for tests
        """
        self.secret_key = secret_key or os.getenv("PAYSTACK_SECRET_KEY")
        if not self.secret_key:
            raise ValueError(
                "Paystack secret key is required. Set PAYSTACK_SECRET_KEY environment "
                "variable or pass secret_key parameter."
            )
        self.base_url = base_url.rstrip("/")
        self.poll_interval = poll_interval
        self.checkout_timeout = checkout_timeout
        self._presenter = presenter
        self._client = http_client or httpx.AsyncClient(timeout=DEFAULT_TIMEOUT_SECONDS)
        self._watchers: Set[asyncio.Task] = set()

    async def close(self) -> None:
        """Stop watching open checkouts and close the HTTP client."""
        for task in list(self._watchers):
            task.cancel()
        if self._watchers:
            await asyncio.gather(*list(self._watchers), return_exceptions=True)
        await self._client.aclose()

    async def __aenter__(self) -> "PaystackGateway":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    async def open(
        self,
        request: GatewayRequest,
        on_success: Callable[[str], None],
        on_close: Callable[[], None],
    ) -> None:
        """Initialize the transaction and present the checkout.

        Raises:
            PaymentInitiationError: If Paystack rejects the transaction
        """
        body = {
            "email": request.email,
            "amount": to_subunits(request.amount),
            "currency": request.currency,
            "reference": request.reference,
        }
        data = await self._request("POST", "/transaction/initialize", json=body)
        authorization_url = data["authorization_url"]

        presented = self._presenter(authorization_url)
        if inspect.isawaitable(presented):
            await presented

        task = asyncio.ensure_future(self._watch(request.reference, on_success, on_close))
        self._watchers.add(task)
        task.add_done_callback(self._watchers.discard)

    async def verify(self, reference: str) -> Dict[str, Any]:
        """Fetch the transaction as Paystack sees it."""
        return await self._request("GET", f"/transaction/verify/{reference}")

    async def _watch(
        self,
        reference: str,
        on_success: Callable[[str], None],
        on_close: Callable[[], None],
    ) -> None:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.checkout_timeout
        while loop.time() < deadline:
            await asyncio.sleep(self.poll_interval)
            try:
                data = await self.verify(reference)
            except PaymentInitiationError as e:
                logger.warning("Paystack verify failed; retrying", extra={"reference": reference, "error": str(e)})
                continue

            status = data.get("status")
            if status == "success":
                on_success(str(data.get("id") or data.get("reference") or reference))
                return
            if status in _FAILED_STATUSES:
                logger.info("Paystack checkout failed", extra={"reference": reference, "status": status})
                on_close()
                return

        logger.info("Paystack checkout timed out", extra={"reference": reference})
        on_close()

    async def _request(self, method: str, endpoint: str, json: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        headers = {
            "Authorization": f"Bearer {self.secret_key}",
            "Content-Type": "application/json",
        }
        try:
            response = await self._client.request(
                method, f"{self.base_url}{endpoint}", json=json, headers=headers
            )
        except httpx.TimeoutException as e:
            logger.error("Paystack request timeout", extra={"endpoint": endpoint, "error": str(e)})
            raise PaymentInitiationError(f"Request timeout: {e}") from e
        except httpx.RequestError as e:
            logger.error("Paystack connection error", extra={"endpoint": endpoint, "error": str(e)})
            raise PaymentInitiationError(f"Connection error: {e}") from e

        try:
            payload = response.json()
        except ValueError:
            payload = {}

        if response.status_code >= 400 or not payload.get("status"):
            message = payload.get("message") or f"Paystack API error: {response.status_code}"
            logger.error(
                "Paystack API error",
                extra={"status_code": response.status_code, "endpoint": endpoint},
            )
            raise PaymentInitiationError(message)
        return payload.get("data") or {}
