"""API request/response schemas for engine endpoints."""

from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, model_validator


class SessionCreateRequest(BaseModel):
    """Checkout request for a payment session on an existing order."""

    order_id: str = Field(min_length=1)
    currency: str | None = Field(default=None, min_length=3, max_length=3)


class SessionResponse(BaseModel):
    order_id: str
    provider: str
    reference: str
    amount: int
    currency: str
    checkout_url: str | None = None
    qr_payload: str | None = None
    fee: int | None = None
    expiry_time: datetime | None = None
    reused: bool = False


class AccountCredentials(BaseModel):
    username: str = Field(min_length=1)
    password: str = Field(min_length=1)


class ManualDeliveryRequest(BaseModel):
    """Admin-supplied fulfilment content; at least one of account/code/content."""

    account: AccountCredentials | None = None
    code: str | None = None
    content: str | None = None
    notes: str | None = None

    @model_validator(mode="after")
    def require_payload(self) -> "ManualDeliveryRequest":
        if self.account is None and not self.code and not self.content:
            raise ValueError("one of account, code or content is required")
        return self

    def delivery_content(self) -> dict[str, Any]:
        content: dict[str, Any] = {}
        if self.account is not None:
            content["account"] = self.account.model_dump()
        if self.code:
            content["code"] = self.code
        if self.content:
            content["content"] = self.content
        if self.notes:
            content["notes"] = self.notes
        return content

    def masked(self) -> dict[str, Any]:
        """Audit-safe view: credentials are never written to the audit log."""

        masked: dict[str, Any] = {}
        if self.account is not None:
            masked["account"] = {"username": self.account.username, "password": "********"}
        if self.code:
            masked["code"] = f"{self.code[:4]}****" if len(self.code) > 4 else "****"
        if self.content:
            masked["content_length"] = len(self.content)
        if self.notes:
            masked["notes"] = self.notes
        return masked


class RejectRequest(BaseModel):
    reason: str = ""


class DeliveryResponse(BaseModel):
    success: bool
    status: str
    message: str
    delivered_data: dict[str, Any] | None = None
    error: str | None = None


class OrderView(BaseModel):
    """Read model for one order; never exposes delivered content."""

    model_config = ConfigDict(from_attributes=True)

    order_id: str
    status: str
    locked: bool
    product_slug: str
    plan_id: str | None = None
    currency: str
    selling_price: int | None = None
    quantity: int
    payment_status: str | None = None
    payment_provider: str | None = None
    payment_provider_ref: str | None = None
    payment_amount: int | None = None
    payment_checkout_url: str | None = None
    payment_qr_payload: str | None = None
    payment_expiry_time: datetime | None = None
    payment_paid_at: datetime | None = None
    delivery_type: str | None = None
    delivery_status: str | None = None
    delivered_at: datetime | None = None
    delivered_by: str | None = None
    delivery_error: str | None = None
    delivery_error_message: str | None = None
    final_profit: int | None = None
    margin: float | None = None
    rejection_reason: str | None = None
    updated_at: datetime | None = None


class AuditEntryView(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    entry_id: str
    event: str
    actor: dict[str, Any]
    payload: dict[str, Any]
    timestamp: datetime | None = None
