"""PayPal Checkout (Orders v2) for USD payments.

Amounts are held in cents and sent to PayPal as dollar strings. Webhooks are
verified through PayPal's verify-webhook-signature API when a webhook id is
configured; otherwise only the event structure is checked.
"""

from decimal import Decimal
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


EVENT_STATUSES = {
    "CHECKOUT.ORDER.APPROVED": CallbackStatus.PENDING,
    "CHECKOUT.ORDER.COMPLETED": CallbackStatus.SUCCESS,
    "CHECKOUT.ORDER.VOIDED": CallbackStatus.CANCELLED,
    "PAYMENT.CAPTURE.PENDING": CallbackStatus.PENDING,
    "PAYMENT.CAPTURE.COMPLETED": CallbackStatus.SUCCESS,
    "PAYMENT.CAPTURE.DENIED": CallbackStatus.FAILED,
    "PAYMENT.CAPTURE.DECLINED": CallbackStatus.FAILED,
}
ORDER_STATUSES = {
    "CREATED": CallbackStatus.PENDING,
    "SAVED": CallbackStatus.PENDING,
    "APPROVED": CallbackStatus.PENDING,
    "PAYER_ACTION_REQUIRED": CallbackStatus.PENDING,
    "VOIDED": CallbackStatus.CANCELLED,
    "COMPLETED": CallbackStatus.SUCCESS,
}
TRANSMISSION_HEADERS = {
    "auth_algo": "paypal-auth-algo",
    "cert_url": "paypal-cert-url",
    "transmission_id": "paypal-transmission-id",
    "transmission_sig": "paypal-transmission-sig",
    "transmission_time": "paypal-transmission-time",
}


def cents_to_dollars(amount: int) -> str:
    return str((Decimal(amount) / 100).quantize(Decimal("0.01")))


class PayPalAdapter(ProviderAdapter):
    name = "paypal"
    signature_enforced = True

    def __init__(
        self,
        client_id: str,
        secret: str,
        mode: str = "sandbox",
        webhook_id: str = "",
        brand_name: str = "Digital Store",
        **kwargs,
    ) -> None:
        super().__init__(**kwargs)
        self.client_id = client_id
        self.secret = secret
        self.webhook_id = webhook_id
        self.brand_name = brand_name
        self.api_url = "https://api-m.paypal.com" if mode == "live" else "https://api-m.sandbox.paypal.com"

    async def _access_token(self) -> str:
        response = await self._send(
            "oauth_token",
            "POST",
            f"{self.api_url}/v1/oauth2/token",
            auth=(self.client_id, self.secret),
            data={"grant_type": "client_credentials"},
        )
        if response.status_code != 200:
            raise ProviderError(self.name, f"authentication failed: HTTP {response.status_code}")
        token = self._json(response, "oauth_token").get("access_token")
        if not token:
            raise ProviderError(self.name, "authentication returned no access token")
        return token

    async def create_payment(self, request: PaymentRequest) -> PaymentSession:
        if not self.client_id or not self.secret:
            raise ProviderError(self.name, "credentials not configured")
        token = await self._access_token()
        body = {
            "intent": "CAPTURE",
            "purchase_units": [
                {
                    "reference_id": request.order_id,
                    "custom_id": request.order_id,
                    "amount": {"currency_code": "USD", "value": cents_to_dollars(request.amount)},
                    "description": request.description or f"Order {request.order_id}",
                }
            ],
            "application_context": {
                "brand_name": self.brand_name,
                "landing_page": "NO_PREFERENCE",
                "user_action": "PAY_NOW",
                "return_url": request.return_url or request.callback_url,
                "cancel_url": request.cancel_url or request.callback_url,
            },
        }
        response = await self._send(
            "create_payment",
            "POST",
            f"{self.api_url}/v2/checkout/orders",
            json=body,
            headers={"Authorization": f"Bearer {token}"},
        )
        data = self._json(response, "create_payment")
        if response.status_code >= 300 or not data.get("id"):
            raise ProviderError(self.name, data.get("message") or f"order creation failed: HTTP {response.status_code}")
        approve = next((link.get("href") for link in data.get("links", []) if link.get("rel") == "approve"), None)
        return PaymentSession(
            provider=self.name,
            reference=str(data["id"]),
            amount=request.amount,
            checkout_url=approve,
            raw=data,
        )

    async def verify_callback(self, payload: dict[str, Any], headers: Mapping[str, str]) -> bool:
        if not payload.get("event_type") or not isinstance(payload.get("resource"), dict):
            return False
        if not self.webhook_id:
            logger.warning("paypal_webhook_id_missing structural validation only")
            return True
        body = {key: headers.get(header, "") for key, header in TRANSMISSION_HEADERS.items()}
        if not all(body.values()):
            return False
        body["webhook_id"] = self.webhook_id
        body["webhook_event"] = payload
        token = await self._access_token()
        response = await self._send(
            "verify_webhook",
            "POST",
            f"{self.api_url}/v1/notifications/verify-webhook-signature",
            json=body,
            headers={"Authorization": f"Bearer {token}"},
        )
        if response.status_code != 200:
            return False
        return self._json(response, "verify_webhook").get("verification_status") == "SUCCESS"

    def parse_callback(self, payload: dict[str, Any]) -> CanonicalCallback:
        event_type = payload.get("event_type")
        resource = payload.get("resource")
        if not event_type or not isinstance(resource, dict):
            raise ValueError("paypal webhook without event_type/resource")
        status = EVENT_STATUSES.get(event_type, CallbackStatus.PENDING)
        units = resource.get("purchase_units") or []
        if units:
            # Order resource: the resource id is the PayPal order id.
            unit = units[0]
            return CanonicalCallback(
                status=status,
                order_id=unit.get("reference_id") or unit.get("custom_id") or None,
                provider_ref=resource.get("id"),
                amount=parse_amount((unit.get("amount") or {}).get("value"), scale=100),
            )
        # Capture resource: the PayPal order id is under related_ids.
        related = (resource.get("supplementary_data") or {}).get("related_ids") or {}
        return CanonicalCallback(
            status=status,
            order_id=resource.get("custom_id") or resource.get("invoice_id") or None,
            provider_ref=related.get("order_id") or resource.get("id"),
            amount=parse_amount((resource.get("amount") or {}).get("value"), scale=100),
        )

    async def check_status(self, reference: str, amount: int | None = None) -> CanonicalCallback:
        token = await self._access_token()
        response = await self._send(
            "check_status",
            "GET",
            f"{self.api_url}/v2/checkout/orders/{reference}",
            headers={"Authorization": f"Bearer {token}"},
        )
        if response.status_code != 200:
            raise ProviderError(self.name, f"status check failed: HTTP {response.status_code}")
        data = self._json(response, "check_status")
        units = data.get("purchase_units") or [{}]
        return CanonicalCallback(
            status=ORDER_STATUSES.get(str(data.get("status")), CallbackStatus.PENDING),
            order_id=units[0].get("reference_id") or None,
            provider_ref=reference,
            amount=parse_amount((units[0].get("amount") or {}).get("value"), scale=100),
        )
