"""Provider adapter contract shared by every payment gateway variant.

Adapters translate a canonical `PaymentRequest` into one provider HTTP call
and translate that provider's callback vocabulary into a `CanonicalCallback`.
They never touch the order store.
"""

import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Mapping

import httpx

from digipay.common.metrics import provider_call_seconds


class CallbackStatus:
    PENDING = "PENDING"
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"
    EXPIRED = "EXPIRED"
    CANCELLED = "CANCELLED"
    DISCREPANCY = "DISCREPANCY"

    FAILURES = frozenset({FAILED, EXPIRED, CANCELLED})


@dataclass
class PaymentRequest:
    order_id: str
    amount: int
    currency: str
    customer_name: str
    callback_url: str
    customer_email: str | None = None
    customer_phone: str | None = None
    return_url: str | None = None
    cancel_url: str | None = None
    description: str | None = None


@dataclass
class PaymentSession:
    provider: str
    reference: str
    amount: int
    checkout_url: str | None = None
    qr_payload: str | None = None
    fee: int | None = None
    expiry_time: datetime | None = None
    raw: dict[str, Any] = field(default_factory=dict)


@dataclass
class CanonicalCallback:
    status: str
    order_id: str | None = None
    provider_ref: str | None = None
    amount: int | None = None


class ProviderError(Exception):
    """Provider call failed or returned an unusable response."""

    def __init__(self, provider: str, message: str) -> None:
        super().__init__(f"{provider}: {message}")
        self.provider = provider
        self.message = message


def parse_amount(value: Any, scale: int = 1) -> int | None:
    """Convert a provider amount (number or numeric string) to integer minor units."""

    if value is None or value == "":
        return None
    try:
        return int((Decimal(str(value)) * scale).to_integral_value())
    except (InvalidOperation, ValueError):
        return None


def parse_timestamp(value: Any) -> datetime | None:
    if value is None or value == "":
        return None
    if isinstance(value, (int, float)):
        return datetime.fromtimestamp(value, tz=timezone.utc)
    try:
        parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class ProviderAdapter(ABC):
    """One payment gateway.

    `signature_enforced` is True for providers that publish a callback
    signature scheme; a failed verification is then fatal (401). For the
    others verification is advisory.
    """

    name: str = ""
    signature_enforced: bool = False
    service_name = "provider-adapter"

    def __init__(self, client: httpx.AsyncClient | None = None, timeout: float = 5.0) -> None:
        self.client = client
        self.timeout = timeout

    async def _send(self, operation: str, method: str, url: str, **kwargs) -> httpx.Response:
        """Issue one bounded HTTP call to the provider."""

        start = time.perf_counter()
        try:
            if self.client is not None:
                return await self.client.request(method, url, timeout=self.timeout, **kwargs)
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                return await client.request(method, url, **kwargs)
        except httpx.HTTPError as exc:
            raise ProviderError(self.name, f"{operation} failed: {exc.__class__.__name__}: {exc}") from exc
        finally:
            provider_call_seconds.labels(
                service=self.service_name, provider=self.name, operation=operation
            ).observe(time.perf_counter() - start)

    def _json(self, response: httpx.Response, operation: str) -> dict[str, Any]:
        try:
            data = response.json()
        except ValueError as exc:
            raise ProviderError(
                self.name, f"{operation} returned non-JSON body (HTTP {response.status_code})"
            ) from exc
        if not isinstance(data, dict):
            raise ProviderError(self.name, f"{operation} returned unexpected payload")
        return data

    @abstractmethod
    async def create_payment(self, request: PaymentRequest) -> PaymentSession:
        """Create a provider-side payment session; raise ProviderError on failure."""

    async def verify_callback(self, payload: dict[str, Any], headers: Mapping[str, str]) -> bool:
        return True

    @abstractmethod
    def parse_callback(self, payload: dict[str, Any]) -> CanonicalCallback:
        """Map a callback payload to the canonical shape; raise ValueError when malformed."""

    @abstractmethod
    async def check_status(self, reference: str, amount: int | None = None) -> CanonicalCallback:
        """Poll the provider for the current state of one payment."""

    def status_reference(self, order_id: str, provider_ref: str | None) -> str:
        """Identifier the provider's status endpoint is keyed by."""

        return provider_ref or order_id
