"""Tokopay QRIS payments with MD5-signed requests and callbacks."""

import hashlib
import hmac
from datetime import datetime, timedelta, timezone
from typing import Any, Mapping

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
    "paid": CallbackStatus.SUCCESS,
    "success": CallbackStatus.SUCCESS,
    "completed": CallbackStatus.SUCCESS,
    "unpaid": CallbackStatus.PENDING,
    "pending": CallbackStatus.PENDING,
    "expired": CallbackStatus.EXPIRED,
    "failed": CallbackStatus.FAILED,
    "cancelled": CallbackStatus.CANCELLED,
}

SESSION_TTL = timedelta(hours=24)


def md5_hex(value: str) -> str:
    return hashlib.md5(value.encode()).hexdigest()


class TokopayAdapter(ProviderAdapter):
    name = "tokopay"
    signature_enforced = True

    def __init__(
        self, merchant_id: str, secret: str, api_url: str = "https://api.tokopay.id/v1", **kwargs
    ) -> None:
        super().__init__(**kwargs)
        self.merchant_id = merchant_id
        self.secret = secret
        self.api_url = api_url.rstrip("/")

    def callback_signature(self, reff_id: str) -> str:
        return md5_hex(f"{self.merchant_id}:{self.secret}:{reff_id}")

    async def create_payment(self, request: PaymentRequest) -> PaymentSession:
        if not self.merchant_id or not self.secret:
            raise ProviderError(self.name, "not configured: missing merchant ID or secret")
        expires_at = datetime.now(timezone.utc) + SESSION_TTL
        payload = {
            "merchant_id": self.merchant_id,
            "kode_channel": "QRIS",
            "reff_id": request.order_id,
            "amount": request.amount,
            "customer_name": request.customer_name,
            "customer_email": request.customer_email or "customer@example.com",
            "customer_phone": request.customer_phone or "081234567890",
            "redirect_url": request.return_url or request.callback_url,
            "expired_ts": int(expires_at.timestamp()),
            "signature": md5_hex(f"{self.merchant_id}:{request.order_id}:{request.amount}:{self.secret}"),
        }
        response = await self._send("create_payment", "POST", f"{self.api_url}/order", json=payload)
        data = self._json(response, "create_payment")
        session = data.get("data")
        if str(data.get("status", "")).lower() != "success" or not isinstance(session, dict):
            raise ProviderError(self.name, data.get("message") or "failed to create payment")
        reference = session.get("trx_id") or session.get("no_pembayaran") or request.order_id
        return PaymentSession(
            provider=self.name,
            reference=str(reference),
            amount=parse_amount(session.get("total_bayar")) or request.amount,
            checkout_url=session.get("pay_url") or session.get("qr_link"),
            qr_payload=session.get("qr_string"),
            expiry_time=parse_timestamp(payload["expired_ts"]),
            raw=session,
        )

    async def verify_callback(self, payload: dict[str, Any], headers: Mapping[str, str]) -> bool:
        reff_id = payload.get("reff_id")
        signature = payload.get("signature")
        if not reff_id or not signature or not self.secret:
            return False
        return hmac.compare_digest(str(signature).lower(), self.callback_signature(str(reff_id)))

    def parse_callback(self, payload: dict[str, Any]) -> CanonicalCallback:
        status = payload.get("status")
        if not status:
            raise ValueError("tokopay callback without status")
        detail = payload.get("data") if isinstance(payload.get("data"), dict) else {}
        reference = payload.get("reference") or detail.get("trx_id")
        return CanonicalCallback(
            status=STATUSES.get(str(status).lower(), CallbackStatus.PENDING),
            order_id=payload.get("reff_id") or None,
            provider_ref=str(reference) if reference else None,
            amount=parse_amount(detail.get("total_dibayar") or detail.get("total_bayar") or payload.get("amount")),
        )

    async def check_status(self, reference: str, amount: int | None = None) -> CanonicalCallback:
        params = {
            "merchant_id": self.merchant_id,
            "reff_id": reference,
            "signature": md5_hex(f"{self.merchant_id}{self.secret}{reference}"),
        }
        response = await self._send("check_status", "GET", f"{self.api_url}/order", params=params)
        data = self._json(response, "check_status")
        detail = data.get("data")
        if str(data.get("status", "")).lower() != "success" or not isinstance(detail, dict):
            return CanonicalCallback(status=CallbackStatus.PENDING, order_id=reference)
        return CanonicalCallback(
            status=STATUSES.get(str(detail.get("status") or "").lower(), CallbackStatus.PENDING),
            order_id=reference,
            provider_ref=str(detail["trx_id"]) if detail.get("trx_id") else None,
            amount=parse_amount(detail.get("total_bayar")),
        )

    def status_reference(self, order_id: str, provider_ref: str | None) -> str:
        return order_id
