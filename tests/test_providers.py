"""Provider adapters: request shapes, callback parsing and signature checks."""

import asyncio
import hashlib
import json

import httpx
import pytest

from digipay.services.provider_adapter.base import PaymentRequest, ProviderError, parse_amount
from digipay.services.provider_adapter.ipaymu import IpaymuAdapter
from digipay.services.provider_adapter.pakasir import PakasirAdapter
from digipay.services.provider_adapter.paypal import PayPalAdapter, cents_to_dollars
from digipay.services.provider_adapter.registry import ProviderRegistry, UnknownProviderError
from digipay.services.provider_adapter.tokopay import TokopayAdapter


def mock_client(handler):
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


def payment_request(**fields):
    values = {
        "order_id": "ORD-1",
        "amount": 150000,
        "currency": "IDR",
        "customer_name": "Budi",
        "callback_url": "https://shop.example/webhooks/pakasir",
    }
    values.update(fields)
    return PaymentRequest(**values)


def test_parse_amount_handles_strings_and_scale():
    assert parse_amount("150000") == 150000
    assert parse_amount("10.00", scale=100) == 1000
    assert parse_amount(None) is None
    assert parse_amount("n/a") is None


def test_tokopay_callback_signature():
    adapter = TokopayAdapter("M1", "s3cret")
    good = hashlib.md5(b"M1:s3cret:ORD-1").hexdigest()

    assert asyncio.run(adapter.verify_callback({"reff_id": "ORD-1", "signature": good}, {}))
    assert not asyncio.run(adapter.verify_callback({"reff_id": "ORD-1", "signature": "0" * 32}, {}))
    assert not asyncio.run(adapter.verify_callback({"reff_id": "ORD-1"}, {}))
    assert adapter.signature_enforced


def test_tokopay_callback_parsing():
    canonical = TokopayAdapter("M1", "s3cret").parse_callback(
        {"status": "Success", "reff_id": "ORD-1", "reference": "TP-77", "data": {"total_dibayar": 150000}}
    )

    assert canonical.status == "SUCCESS"
    assert canonical.order_id == "ORD-1"
    assert canonical.provider_ref == "TP-77"
    assert canonical.amount == 150000


def test_pakasir_create_payment():
    seen = []

    def handler(request):
        seen.append(request)
        return httpx.Response(
            200,
            json={
                "payment": {
                    "order_id": "ORD-1",
                    "amount": 150000,
                    "fee": 1050,
                    "payment_number": "00020101021226...",
                    "expired_at": "2026-10-20T10:00:00Z",
                }
            },
        )

    adapter = PakasirAdapter("key", "shop", "https://pakasir.test/api", client=mock_client(handler))
    session = asyncio.run(adapter.create_payment(payment_request()))

    assert str(seen[0].url) == "https://pakasir.test/api/transactioncreate/qris"
    assert json.loads(seen[0].content)["project"] == "shop"
    assert session.reference == "ORD-1"
    assert session.fee == 1050
    assert session.qr_payload.startswith("0002")
    assert session.expiry_time.year == 2026


def test_pakasir_project_mismatch_is_unverified():
    adapter = PakasirAdapter("key", "shop")

    assert asyncio.run(adapter.verify_callback({"order_id": "ORD-1", "project": "shop"}, {}))
    assert not asyncio.run(adapter.verify_callback({"order_id": "ORD-1", "project": "other"}, {}))
    assert not adapter.signature_enforced


def test_provider_transport_error_becomes_provider_error():
    def handler(request):
        raise httpx.ConnectTimeout("timed out", request=request)

    adapter = PakasirAdapter("key", "shop", client=mock_client(handler))

    with pytest.raises(ProviderError):
        asyncio.run(adapter.create_payment(payment_request()))


def test_ipaymu_callback_status_codes():
    adapter = IpaymuAdapter("key", "0000001234")

    paid = adapter.parse_callback({"reference_id": "ORD-1", "trx_id": 991, "status_code": "1", "total": "150000"})
    expired = adapter.parse_callback({"reference_id": "ORD-1", "status_code": -2})
    worded = adapter.parse_callback({"reference_id": "ORD-1", "status": "berhasil"})

    assert (paid.status, paid.provider_ref, paid.amount) == ("SUCCESS", "991", 150000)
    assert expired.status == "EXPIRED"
    assert worded.status == "SUCCESS"
    with pytest.raises(ValueError):
        adapter.parse_callback({"reference_id": "ORD-1"})


def test_ipaymu_signs_requests():
    seen = []

    def handler(request):
        seen.append(request)
        return httpx.Response(200, json={"Status": 200, "Data": {"TransactionId": 5521, "QrString": "000201"}})

    adapter = IpaymuAdapter("key", "0000001234", "https://ipaymu.test/api/v2", client=mock_client(handler))
    session = asyncio.run(adapter.create_payment(payment_request()))

    assert session.reference == "5521"
    assert seen[0].headers["va"] == "0000001234"
    assert seen[0].headers["signature"] == adapter._signature(seen[0].content.decode())


def test_paypal_order_and_capture_callbacks():
    adapter = PayPalAdapter("id", "secret")

    order_event = adapter.parse_callback(
        {
            "event_type": "CHECKOUT.ORDER.COMPLETED",
            "resource": {
                "id": "PP-1",
                "purchase_units": [{"reference_id": "ORD-9", "amount": {"value": "10.00"}}],
            },
        }
    )
    capture_event = adapter.parse_callback(
        {
            "event_type": "PAYMENT.CAPTURE.DENIED",
            "resource": {
                "id": "CAP-1",
                "custom_id": "ORD-9",
                "amount": {"value": "10.00"},
                "supplementary_data": {"related_ids": {"order_id": "PP-1"}},
            },
        }
    )

    assert (order_event.status, order_event.order_id, order_event.provider_ref, order_event.amount) == (
        "SUCCESS",
        "ORD-9",
        "PP-1",
        1000,
    )
    assert (capture_event.status, capture_event.order_id, capture_event.provider_ref) == ("FAILED", "ORD-9", "PP-1")


def test_paypal_structural_verification_without_webhook_id():
    adapter = PayPalAdapter("id", "secret")

    assert asyncio.run(adapter.verify_callback({"event_type": "X", "resource": {}}, {}))
    assert not asyncio.run(adapter.verify_callback({"resource": {}}, {}))


def test_paypal_create_payment_returns_approve_link():
    def handler(request):
        if request.url.path == "/v1/oauth2/token":
            return httpx.Response(200, json={"access_token": "tok"})
        assert request.headers["Authorization"] == "Bearer tok"
        assert json.loads(request.content)["purchase_units"][0]["amount"]["value"] == "10.00"
        return httpx.Response(
            201,
            json={"id": "PP-5", "links": [{"rel": "approve", "href": "https://paypal.test/approve/PP-5"}]},
        )

    adapter = PayPalAdapter("id", "secret", client=mock_client(handler))
    session = asyncio.run(adapter.create_payment(payment_request(amount=1000, currency="USD")))

    assert session.reference == "PP-5"
    assert session.checkout_url == "https://paypal.test/approve/PP-5"
    assert cents_to_dollars(1999) == "19.99"


def test_registry_lookup_is_case_insensitive():
    registry = ProviderRegistry([PakasirAdapter("key", "shop"), PayPalAdapter("id", "secret")])

    assert registry.get("PayPal").name == "paypal"
    assert "pakasir" in registry
    assert registry.names() == ["pakasir", "paypal"]
    with pytest.raises(UnknownProviderError):
        registry.get("stripe")
