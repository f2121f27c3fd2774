"""iPaymu QRIS direct payments.

Requests are signed with HMAC-SHA256(api_key, va + body). iPaymu does not
sign its notify callbacks, so verification only checks the payload shape.
"""

import hashlib
import hmac
import json
from datetime import datetime, timedelta, timezone
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
)


STATUS_CODES = {
    1: CallbackStatus.SUCCESS,
    0: CallbackStatus.PENDING,
    -1: CallbackStatus.CANCELLED,
    -2: CallbackStatus.EXPIRED,
}
STATUS_WORDS = {
    "berhasil": CallbackStatus.SUCCESS,
    "success": CallbackStatus.SUCCESS,
    "paid": CallbackStatus.SUCCESS,
    "pending": CallbackStatus.PENDING,
    "expired": CallbackStatus.EXPIRED,
    "gagal": CallbackStatus.FAILED,
    "failed": CallbackStatus.FAILED,
    "batal": CallbackStatus.CANCELLED,
}

SESSION_TTL = timedelta(hours=24)


class IpaymuAdapter(ProviderAdapter):
    name = "ipaymu"
    signature_enforced = False

    def __init__(self, api_key: str, va: str, api_url: str = "https://my.ipaymu.com/api/v2", **kwargs) -> None:
        super().__init__(**kwargs)
        self.api_key = api_key
        self.va = va
        self.api_url = api_url.rstrip("/")

    def _signature(self, body_json: str) -> str:
        return hmac.new(self.api_key.encode(), (self.va + body_json).encode(), hashlib.sha256).hexdigest()

    async def _signed_post(self, operation: str, path: str, body: dict[str, Any]) -> dict[str, Any]:
        body_json = json.dumps(body, separators=(",", ":"))
        response = await self._send(
            operation,
            "POST",
            f"{self.api_url}{path}",
            content=body_json,
            headers={"Content-Type": "application/json", "va": self.va, "signature": self._signature(body_json)},
        )
        return self._json(response, operation)

    async def create_payment(self, request: PaymentRequest) -> PaymentSession:
        if not self.api_key or not self.va:
            raise ProviderError(self.name, "not configured: missing API key or VA")
        body = {
            "product": [request.description or "Digital Product"],
            "qty": [1],
            "price": [request.amount],
            "returnUrl": request.return_url or request.callback_url,
            "cancelUrl": request.cancel_url or request.callback_url,
            "notifyUrl": request.callback_url,
            "referenceId": request.order_id,
            "buyerName": request.customer_name,
            "buyerEmail": request.customer_email or "customer@example.com",
            "buyerPhone": request.customer_phone or "081234567890",
            "paymentMethod": "qris",
            "paymentChannel": "qris",
        }
        data = await self._signed_post("create_payment", "/payment/direct", body)
        session = data.get("Data")
        if data.get("Status") != 200 or not isinstance(session, dict):
            raise ProviderError(self.name, data.get("Message") or "failed to create payment")
        reference = session.get("TransactionId") or session.get("SessionID") or request.order_id
        return PaymentSession(
            provider=self.name,
            reference=str(reference),
            amount=request.amount,
            checkout_url=session.get("Url") or session.get("QrImage") or session.get("QRImage"),
            qr_payload=session.get("QrString") or session.get("QRString"),
            fee=parse_amount(session.get("Fee")),
            expiry_time=datetime.now(timezone.utc) + SESSION_TTL,
            raw=session,
        )

    async def verify_callback(self, payload: dict[str, Any], headers: Mapping[str, str]) -> bool:
        return bool(payload.get("reference_id") or payload.get("trx_id")) and (
            "status" in payload or "status_code" in payload
        )

    def _map_status(self, code: Any, word: Any) -> str:
        if code is not None and code != "":
            try:
                return STATUS_CODES.get(int(code), CallbackStatus.PENDING)
            except (TypeError, ValueError):
                logger.warning("ipaymu_unknown_status_code status_code=%s", code)
        return STATUS_WORDS.get(str(word or "").lower(), CallbackStatus.PENDING)

    def parse_callback(self, payload: dict[str, Any]) -> CanonicalCallback:
        if "status" not in payload and "status_code" not in payload:
            raise ValueError("ipaymu callback without status")
        trx_id = payload.get("trx_id")
        return CanonicalCallback(
            status=self._map_status(payload.get("status_code"), payload.get("status")),
            order_id=payload.get("reference_id") or None,
            provider_ref=str(trx_id) if trx_id not in (None, "") else None,
            amount=parse_amount(payload.get("total") or payload.get("amount")),
        )

    async def check_status(self, reference: str, amount: int | None = None) -> CanonicalCallback:
        data = await self._signed_post("check_status", "/transaction", {"transactionId": reference})
        detail = data.get("Data")
        if data.get("Status") != 200 or not isinstance(detail, dict):
            raise ProviderError(self.name, data.get("Message") or f"transaction {reference} not found")
        return CanonicalCallback(
            status=self._map_status(detail.get("Status"), detail.get("StatusDesc")),
            order_id=detail.get("ReferenceId") or None,
            provider_ref=str(detail.get("TransactionId") or reference),
            amount=parse_amount(detail.get("Total") or detail.get("Amount")),
        )
