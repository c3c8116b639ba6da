"""
PAYMENT GATEWAY BOUNDARY

Implements:
- Gateway-neutral invoice snapshot (GatewayInvoice / GatewayLine)
- Status vocabulary mapping (gateway -> local invoice status)
- Stripe-compatible REST client over httpx with a bounded timeout

RULES:
- Every gateway failure (timeout, transport error, non-2xx, malformed body)
  surfaces as UpstreamError
- Callers perform gateway calls BEFORE local writes, so a failed call never
  leaves partial local state
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Dict, List, Optional
import logging

import httpx

from .errors import UpstreamError
from .financial_precision import from_minor_units, to_minor_units

logger = logging.getLogger(__name__)

GATEWAY_STATUS_MAP: Dict[str, str] = {
    "draft": "sent",
    "open": "sent",
    "paid": "paid",
    "void": "cancelled",
    "uncollectible": "overdue",
}

DEFAULT_DUE_DAYS = 30


def map_gateway_status(gateway_status: Optional[str]) -> str:
    """Translate a gateway invoice status into the local vocabulary."""
    return GATEWAY_STATUS_MAP.get(gateway_status or "open", "sent")


def _timestamp(value: Any) -> Optional[datetime]:
    if value in (None, 0, ""):
        return None
    return datetime.utcfromtimestamp(int(value))


@dataclass
class GatewayLine:
    description: Optional[str]
    quantity: int
    amount: Decimal


@dataclass
class GatewayInvoice:
    """Snapshot of an invoice as the gateway of record sees it."""
    id: str
    status: Optional[str]
    customer_id: Optional[str] = None
    customer_email: Optional[str] = None
    currency: str = "usd"
    subtotal: Decimal = Decimal("0.00")
    tax: Decimal = Decimal("0.00")
    total: Decimal = Decimal("0.00")
    amount_paid: Decimal = Decimal("0.00")
    paid_at: Optional[datetime] = None
    due_date: Optional[datetime] = None
    hosted_url: Optional[str] = None
    payment_intent_id: Optional[str] = None
    description: Optional[str] = None
    lines: List[GatewayLine] = field(default_factory=list)

    @property
    def local_status(self) -> str:
        return map_gateway_status(self.status)

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> "GatewayInvoice":
        """Build from a Stripe-shaped invoice object; raises UpstreamError when malformed."""
        try:
            customer = payload.get("customer")
            customer_email = payload.get("customer_email")
            if isinstance(customer, dict):
                customer_email = customer.get("email") or customer_email
                customer = customer.get("id")

            payment_intent = payload.get("payment_intent")
            if isinstance(payment_intent, dict):
                payment_intent = payment_intent.get("id")

            lines = [
                GatewayLine(
                    description=line.get("description"),
                    quantity=line.get("quantity") or 1,
                    amount=from_minor_units(line.get("amount") or 0)
                )
                for line in (payload.get("lines") or {}).get("data", [])
            ]

            return cls(
                id=payload["id"],
                status=payload.get("status"),
                customer_id=customer,
                customer_email=customer_email,
                currency=payload.get("currency") or "usd",
                subtotal=from_minor_units(payload.get("subtotal")),
                tax=from_minor_units(payload.get("tax")),
                total=from_minor_units(payload.get("total")),
                amount_paid=from_minor_units(payload.get("amount_paid")),
                paid_at=_timestamp((payload.get("status_transitions") or {}).get("paid_at")),
                due_date=_timestamp(payload.get("due_date")),
                hosted_url=payload.get("hosted_invoice_url"),
                payment_intent_id=payment_intent,
                description=payload.get("description"),
                lines=lines,
            )
        except (KeyError, TypeError, ValueError, AttributeError) as e:
            raise UpstreamError(f"Malformed gateway invoice payload: {e}")


# =============================================================================
# PROVIDER ABSTRACTION
# =============================================================================

class PaymentGateway(ABC):
    """Abstract base class for the external payment gateway of record"""

    @abstractmethod
    async def retrieve_invoice(self, external_id: str) -> GatewayInvoice:
        """Fetch the gateway's current view of an invoice"""
        pass

    @abstractmethod
    async def void_invoice(self, external_id: str) -> GatewayInvoice:
        """Void an open gateway invoice"""
        pass

    @abstractmethod
    async def ensure_customer(self, client: Dict[str, Any]) -> str:
        """Return the client's gateway customer id, creating the customer when missing"""
        pass

    @abstractmethod
    async def create_and_send_invoice(
        self,
        customer_id: str,
        invoice: Dict[str, Any],
        due_date: datetime
    ) -> GatewayInvoice:
        """Create, itemize, finalize and send a gateway invoice for a local invoice"""
        pass


class StripeGateway(PaymentGateway):
    """
    Stripe REST integration.
    Form-encoded requests, bearer secret key, bounded timeout per call.
    """

    def __init__(
        self,
        api_key: str,
        base_url: str = "https://api.stripe.com",
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None
    ):
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.transport = transport

    async def _request(self, method: str, path: str, data: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        if not self.api_key:
            raise UpstreamError("Payment gateway is not configured")
        try:
            async with httpx.AsyncClient(
                base_url=self.base_url, timeout=self.timeout, transport=self.transport
            ) as client:
                response = await client.request(
                    method,
                    path,
                    data=data,
                    headers={"Authorization": f"Bearer {self.api_key}"},
                )
        except httpx.TimeoutException:
            logger.error(f"[GATEWAY] Timeout calling {method} {path}")
            raise UpstreamError("Payment gateway timed out")
        except httpx.HTTPError as e:
            logger.error(f"[GATEWAY] Transport error calling {method} {path}: {e}")
            raise UpstreamError(f"Payment gateway unreachable: {e}")

        if response.status_code >= 400:
            logger.error(f"[GATEWAY] {method} {path} failed: {response.status_code} - {response.text}")
            raise UpstreamError(f"Payment gateway returned {response.status_code}")

        try:
            return response.json()
        except ValueError:
            raise UpstreamError("Payment gateway returned a non-JSON response")

    async def retrieve_invoice(self, external_id: str) -> GatewayInvoice:
        payload = await self._request("GET", f"/v1/invoices/{external_id}")
        return GatewayInvoice.from_payload(payload)

    async def void_invoice(self, external_id: str) -> GatewayInvoice:
        payload = await self._request("POST", f"/v1/invoices/{external_id}/void")
        logger.info(f"[GATEWAY] Voided invoice {external_id}")
        return GatewayInvoice.from_payload(payload)

    async def ensure_customer(self, client: Dict[str, Any]) -> str:
        if client.get("gateway_customer_id"):
            return client["gateway_customer_id"]

        data = {"name": client.get("name") or "", "metadata[client_id]": str(client["_id"])}
        if client.get("email"):
            data["email"] = client["email"]
        payload = await self._request("POST", "/v1/customers", data)
        logger.info(f"[GATEWAY] Created customer {payload.get('id')} for client {client['_id']}")
        return payload["id"]

    async def create_and_send_invoice(
        self,
        customer_id: str,
        invoice: Dict[str, Any],
        due_date: datetime
    ) -> GatewayInvoice:
        currency = invoice.get("currency") or "usd"

        created = await self._request("POST", "/v1/invoices", {
            "customer": customer_id,
            "collection_method": "send_invoice",
            "due_date": int(due_date.timestamp()),
            "auto_advance": "true",
            "metadata[local_invoice_id]": str(invoice["_id"]),
            "metadata[project_id]": invoice.get("project_id") or "",
            "metadata[invoice_number]": invoice.get("invoice_number") or "",
        })
        external_id = created["id"]

        items = [
            (item.get("description") or "Services", item.get("quantity") or 1, item.get("unit_price") or 0)
            for item in invoice.get("line_items") or []
        ]
        if not items:
            items = [(f"Invoice {invoice.get('invoice_number')}", 1, invoice.get("amount") or 0)]
        if (invoice.get("tax_amount") or 0) > 0:
            items.append(("Tax", 1, invoice["tax_amount"]))

        for description, quantity, unit_price in items:
            await self._request("POST", "/v1/invoiceitems", {
                "customer": customer_id,
                "invoice": external_id,
                "description": description,
                "quantity": quantity,
                "unit_amount": to_minor_units(unit_price),
                "currency": currency,
            })

        await self._request("POST", f"/v1/invoices/{external_id}/finalize")
        sent = await self._request("POST", f"/v1/invoices/{external_id}/send")
        logger.info(f"[GATEWAY] Sent invoice {external_id} for {invoice.get('invoice_number')}")
        return GatewayInvoice.from_payload(sent)


def resolve_due_date(due_date: Optional[str], now: Optional[datetime] = None) -> datetime:
    """Gateway due date: the invoice's due date, but at least one day ahead (default 30 days)."""
    now = now or datetime.utcnow()
    earliest = now + timedelta(days=1)
    if not due_date:
        return now + timedelta(days=DEFAULT_DUE_DAYS)
    parsed = datetime.fromisoformat(due_date)
    return parsed if parsed > earliest else earliest
