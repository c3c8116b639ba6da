"""
Shared fixtures: in-memory Motor database, actors for each role, a scripted
payment gateway, and a seeded client / project.
"""
from datetime import datetime
from decimal import Decimal
from typing import Dict, List, Optional

import pytest
import pytest_asyncio
from bson import ObjectId
from mongomock_motor import AsyncMongoMockClient

from engine.errors import UpstreamError
from engine.indexes import ensure_indexes
from engine.payment_gateway import GatewayInvoice, PaymentGateway


class FakeGateway(PaymentGateway):
    """Scripted gateway: invoices live in a dict, failures are opt-in per id."""

    def __init__(self):
        self.invoices: Dict[str, GatewayInvoice] = {}
        self.failing: set = set()
        self.voided: List[str] = []
        self.sent: List[dict] = []
        self.customers_created = 0
        self._next = 1

    def add_invoice(self, external_id: str, status: str = "open", **fields) -> GatewayInvoice:
        invoice = GatewayInvoice(id=external_id, status=status, **fields)
        self.invoices[external_id] = invoice
        return invoice

    def _check(self, external_id: str):
        if external_id in self.failing:
            raise UpstreamError("Payment gateway timed out")

    async def retrieve_invoice(self, external_id: str) -> GatewayInvoice:
        self._check(external_id)
        if external_id not in self.invoices:
            raise UpstreamError("Payment gateway returned 404")
        return self.invoices[external_id]

    async def void_invoice(self, external_id: str) -> GatewayInvoice:
        self._check(external_id)
        self.voided.append(external_id)
        invoice = self.invoices.get(external_id) or self.add_invoice(external_id)
        invoice.status = "void"
        return invoice

    async def ensure_customer(self, client: dict) -> str:
        if client.get("gateway_customer_id"):
            return client["gateway_customer_id"]
        self.customers_created += 1
        return f"cus_{self.customers_created}"

    async def create_and_send_invoice(self, customer_id: str, invoice: dict, due_date: datetime) -> GatewayInvoice:
        external_id = f"in_{self._next}"
        self._next += 1
        self._check(external_id)
        self.sent.append({"customer_id": customer_id, "invoice_number": invoice["invoice_number"], "due_date": due_date})
        return self.add_invoice(
            external_id,
            status="open",
            customer_id=customer_id,
            hosted_url=f"https://pay.example.test/{external_id}",
            total=Decimal(str(invoice["total_amount"])),
        )


@pytest_asyncio.fixture
async def db():
    database = AsyncMongoMockClient()["agency_workflow_test"]
    await ensure_indexes(database)
    return database


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest_asyncio.fixture
async def client_record(db):
    doc = {
        "name": "Acme Studio",
        "email": "billing@acme.test",
        "created_at": datetime.utcnow(),
    }
    result = await db.clients.insert_one(doc)
    doc["_id"] = result.inserted_id
    return doc


@pytest_asyncio.fixture
async def other_client_record(db):
    doc = {"name": "Globex", "email": "ap@globex.test", "created_at": datetime.utcnow()}
    result = await db.clients.insert_one(doc)
    doc["_id"] = result.inserted_id
    return doc


@pytest_asyncio.fixture
async def project(db, client_record):
    doc = {
        "name": "Brand Refresh",
        "client_id": str(client_record["_id"]),
        "budget": 10000,
        "deposit_percentage": 50,
        "created_at": datetime.utcnow(),
    }
    result = await db.projects.insert_one(doc)
    doc["_id"] = result.inserted_id
    return doc


@pytest_asyncio.fixture
async def other_project(db, other_client_record):
    doc = {
        "name": "Globex Launch",
        "client_id": str(other_client_record["_id"]),
        "budget": 5000,
        "created_at": datetime.utcnow(),
    }
    result = await db.projects.insert_one(doc)
    doc["_id"] = result.inserted_id
    return doc


def make_actor(role: str, client_id: Optional[str] = None) -> dict:
    actor = {"user_id": str(ObjectId()), "role": role, "name": f"{role} user"}
    if client_id is not None:
        actor["client_id"] = client_id
    return actor


@pytest.fixture
def admin():
    return make_actor("admin")


@pytest.fixture
def member():
    return make_actor("member")


@pytest.fixture
def client_actor(client_record):
    return make_actor("client", str(client_record["_id"]))


@pytest.fixture
def other_client_actor(other_client_record):
    return make_actor("client", str(other_client_record["_id"]))


