"""
Gateway payload mapping and the Stripe client over a mocked transport.
"""
from datetime import datetime
from decimal import Decimal
from urllib.parse import parse_qs

import httpx
import pytest

from engine.errors import UpstreamError
from engine.payment_gateway import (
    GatewayInvoice, StripeGateway, map_gateway_status, resolve_due_date
)

PAID_PAYLOAD = {
    "id": "in_123",
    "status": "paid",
    "customer": {"id": "cus_9", "email": "billing@acme.test"},
    "currency": "usd",
    "subtotal": 150000,
    "tax": 12000,
    "total": 162000,
    "amount_paid": 162000,
    "status_transitions": {"paid_at": 1780000000},
    "hosted_invoice_url": "https://pay.example.test/in_123",
    "payment_intent": "pi_1",
    "lines": {"data": [{"description": "Retainer", "quantity": 1, "amount": 150000}]},
}


class TestGatewayInvoice:
    """Stripe-shaped payloads"""

    def test_from_payload_converts_minor_units(self):
        invoice = GatewayInvoice.from_payload(PAID_PAYLOAD)
        assert invoice.customer_id == "cus_9"
        assert invoice.customer_email == "billing@acme.test"
        assert invoice.subtotal == Decimal("1500.00")
        assert invoice.tax == Decimal("120.00")
        assert invoice.paid_at == datetime.utcfromtimestamp(1780000000)
        assert invoice.lines[0].amount == Decimal("1500.00")
        assert invoice.local_status == "paid"

    def test_malformed_payload(self):
        with pytest.raises(UpstreamError):
            GatewayInvoice.from_payload({"status": "open"})

    @pytest.mark.parametrize("remote,local", [
        ("draft", "sent"), ("open", "sent"), ("paid", "paid"),
        ("void", "cancelled"), ("uncollectible", "overdue"), (None, "sent"),
    ])
    def test_status_map(self, remote, local):
        assert map_gateway_status(remote) == local


class TestResolveDueDate:
    """Due date sent to the gateway"""

    def test_default_is_thirty_days(self):
        now = datetime(2026, 1, 1)
        assert resolve_due_date(None, now) == datetime(2026, 1, 31)

    def test_past_date_is_pushed_forward(self):
        now = datetime(2026, 1, 1)
        assert resolve_due_date("2025-06-01", now) == datetime(2026, 1, 2)

    def test_future_date_kept(self):
        now = datetime(2026, 1, 1)
        assert resolve_due_date("2026-03-15", now) == datetime(2026, 3, 15)


class TestStripeGateway:
    """HTTP behaviour against a mocked transport"""

    @pytest.mark.asyncio
    async def test_retrieve_sends_bearer_key(self):
        seen = {}

        def handler(request):
            seen["auth"] = request.headers["Authorization"]
            seen["path"] = request.url.path
            return httpx.Response(200, json=PAID_PAYLOAD)

        gateway = StripeGateway("sk_test", transport=httpx.MockTransport(handler))
        invoice = await gateway.retrieve_invoice("in_123")

        assert invoice.id == "in_123"
        assert seen == {"auth": "Bearer sk_test", "path": "/v1/invoices/in_123"}

    @pytest.mark.asyncio
    async def test_error_status_is_upstream_error(self):
        gateway = StripeGateway(
            "sk_test", transport=httpx.MockTransport(lambda request: httpx.Response(404, json={}))
        )
        with pytest.raises(UpstreamError):
            await gateway.retrieve_invoice("in_missing")

    @pytest.mark.asyncio
    async def test_timeout_is_upstream_error(self):
        def handler(request):
            raise httpx.ReadTimeout("timed out", request=request)

        gateway = StripeGateway("sk_test", transport=httpx.MockTransport(handler))
        with pytest.raises(UpstreamError) as exc_info:
            await gateway.void_invoice("in_123")
        assert "timed out" in exc_info.value.message

    @pytest.mark.asyncio
    async def test_non_json_body(self):
        gateway = StripeGateway(
            "sk_test", transport=httpx.MockTransport(lambda request: httpx.Response(200, text="<html>"))
        )
        with pytest.raises(UpstreamError):
            await gateway.retrieve_invoice("in_123")

    @pytest.mark.asyncio
    async def test_unconfigured_key(self):
        with pytest.raises(UpstreamError):
            await StripeGateway("").retrieve_invoice("in_123")

    @pytest.mark.asyncio
    async def test_create_and_send_posts_items_in_minor_units(self):
        calls = []

        def handler(request):
            form = {k: v[0] for k, v in parse_qs(request.content.decode()).items()}
            calls.append((request.url.path, form))
            if request.url.path == "/v1/invoices":
                return httpx.Response(200, json={"id": "in_new", "status": "draft"})
            if request.url.path.endswith("/send"):
                return httpx.Response(200, json={"id": "in_new", "status": "open", "customer": "cus_9"})
            return httpx.Response(200, json={"id": "x"})

        gateway = StripeGateway("sk_test", transport=httpx.MockTransport(handler))
        invoice = {
            "_id": "abc", "invoice_number": "INV-0007", "project_id": None, "currency": "usd",
            "amount": 100.0, "tax_amount": 8.5,
            "line_items": [{"description": "Design", "quantity": 2, "unit_price": 50.0}],
        }
        sent = await gateway.create_and_send_invoice("cus_9", invoice, datetime(2026, 2, 1))

        assert sent.status == "open"
        paths = [path for path, _ in calls]
        assert paths == [
            "/v1/invoices", "/v1/invoiceitems", "/v1/invoiceitems",
            "/v1/invoices/in_new/finalize", "/v1/invoices/in_new/send",
        ]
        assert calls[1][1]["unit_amount"] == "5000"
        assert calls[2][1] == {
            "customer": "cus_9", "invoice": "in_new", "description": "Tax",
            "quantity": "1", "unit_amount": "850", "currency": "usd",
        }
