"""Pakasir QRIS payments.

Authentication is the project API key in the request body. Callbacks carry
no signature; the echoed project slug is the only thing checked.
"""

from typing import Any, Mapping

from digipay.common.logging import logger
from digipay.services.provider_adapter.base import (
    CallbackStatus,
    CanonicalCallback,
    PaymentRequest,
    PaymentSession,
    ProviderAdapter,
    ProviderError,
    parse_amount,
    parse_timestamp,
)


STATUSES = {
    "completed": CallbackStatus.SUCCESS,
    "paid": CallbackStatus.SUCCESS,
    "pending": CallbackStatus.PENDING,
    "expired": CallbackStatus.EXPIRED,
    "canceled": CallbackStatus.CANCELLED,
    "cancelled": CallbackStatus.CANCELLED,
    "failed": CallbackStatus.FAILED,
}


class PakasirAdapter(ProviderAdapter):
    name = "pakasir"
    signature_enforced = False

    def __init__(self, api_key: str, project: str, api_url: str = "https://app.pakasir.com/api", **kwargs) -> None:
        super().__init__(**kwargs)
        self.api_key = api_key
        self.project = project
        self.api_url = api_url.rstrip("/")

    async def create_payment(self, request: PaymentRequest) -> PaymentSession:
        if not self.api_key:
            raise ProviderError(self.name, "API key not configured")
        response = await self._send(
            "create_payment",
            "POST",
            f"{self.api_url}/transactioncreate/qris",
            json={
                "project": self.project,
                "order_id": request.order_id,
                "amount": request.amount,
                "api_key": self.api_key,
            },
        )
        data = self._json(response, "create_payment")
        payment = data.get("payment")
        if not isinstance(payment, dict):
            raise ProviderError(self.name, data.get("message") or "failed to create payment")
        return PaymentSession(
            provider=self.name,
            reference=str(payment.get("order_id") or request.order_id),
            amount=parse_amount(payment.get("amount")) or request.amount,
            qr_payload=payment.get("payment_number"),
            fee=parse_amount(payment.get("fee")),
            expiry_time=parse_timestamp(payment.get("expired_at")),
            raw=payment,
        )

    async def verify_callback(self, payload: dict[str, Any], headers: Mapping[str, str]) -> bool:
        if not payload.get("order_id"):
            return False
        if self.project and payload.get("project") != self.project:
            logger.warning("pakasir_project_mismatch project=%s", payload.get("project"))
            return False
        return True

    def parse_callback(self, payload: dict[str, Any]) -> CanonicalCallback:
        status = payload.get("status")
        if not status:
            raise ValueError("pakasir callback without status")
        order_id = payload.get("order_id") or None
        return CanonicalCallback(
            status=STATUSES.get(str(status).lower(), CallbackStatus.PENDING),
            order_id=order_id,
            provider_ref=order_id,
            amount=parse_amount(payload.get("amount")),
        )

    async def check_status(self, reference: str, amount: int | None = None) -> CanonicalCallback:
        params = {"project": self.project, "order_id": reference, "api_key": self.api_key}
        if amount is not None:
            params["amount"] = amount
        response = await self._send("check_status", "GET", f"{self.api_url}/transactiondetail", params=params)
        data = self._json(response, "check_status")
        transaction = data.get("transaction")
        if not isinstance(transaction, dict):
            raise ProviderError(self.name, data.get("message") or f"transaction {reference} not found")
        return CanonicalCallback(
            status=STATUSES.get(str(transaction.get("status") or "").lower(), CallbackStatus.PENDING),
            order_id=transaction.get("order_id") or reference,
            provider_ref=reference,
            amount=parse_amount(transaction.get("amount")),
        )

    def status_reference(self, order_id: str, provider_ref: str | None) -> str:
        return order_id
