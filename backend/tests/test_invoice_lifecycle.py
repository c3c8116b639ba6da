"""
Invoice lifecycle: creation, draft editing, gateway send / void, generation
from a project budget and import from the gateway.
"""
from datetime import datetime
from decimal import Decimal

import pytest

from engine.errors import (
    Conflict, Forbidden, InvalidTransition, LifecycleViolation, NotFound,
    UpstreamError, ValidationError
)
from engine.invoice_lifecycle import InvoiceLifecycleManager, build_line_items
from engine.payment_gateway import GatewayLine


@pytest.fixture
def manager(db, gateway):
    return InvoiceLifecycleManager(db, gateway)


async def _draft(manager, client_record, admin, **fields):
    data = {"client_id": str(client_record["_id"]), "amount": 100, "tax_amount": 8}
    data.update(fields)
    return await manager.create(data, admin)


class TestCreateInvoice:
    """Validated creation"""

    @pytest.mark.asyncio
    async def test_total_is_amount_plus_tax(self, manager, client_record, admin):
        invoice = await _draft(manager, client_record, admin, amount="100.10", tax_amount="8.25")
        assert invoice["status"] == "draft"
        assert invoice["invoice_number"] == "INV-0001"
        assert invoice["total_amount"] == 108.35
        assert "external_gateway_id" not in invoice

    @pytest.mark.asyncio
    async def test_default_line_item(self, manager, client_record, admin):
        invoice = await _draft(manager, client_record, admin)
        assert len(invoice["line_items"]) == 1
        assert invoice["line_items"][0]["total"] == 100.0

    @pytest.mark.asyncio
    @pytest.mark.parametrize("amount", [0, -5, "abc", "NaN", "Infinity"])
    async def test_rejects_bad_amount(self, manager, client_record, admin, amount):
        with pytest.raises(ValidationError):
            await _draft(manager, client_record, admin, amount=amount)

    @pytest.mark.asyncio
    async def test_rejects_negative_tax(self, manager, client_record, admin):
        with pytest.raises(ValidationError) as exc_info:
            await _draft(manager, client_record, admin, tax_amount=-1)
        assert exc_info.value.field == "tax_amount"

    @pytest.mark.asyncio
    async def test_rejects_bad_due_date(self, manager, client_record, admin):
        with pytest.raises(ValidationError):
            await _draft(manager, client_record, admin, due_date="31/12/2026")

    @pytest.mark.asyncio
    async def test_line_items_must_sum_to_amount(self, manager, client_record, admin):
        items = [{"description": "Design", "quantity": 2, "unit_price": 30}]
        with pytest.raises(ValidationError):
            await _draft(manager, client_record, admin, line_items=items)

    @pytest.mark.asyncio
    async def test_unknown_client(self, manager, admin):
        with pytest.raises(NotFound):
            await manager.create({"client_id": "507f1f77bcf86cd799439011", "amount": 10}, admin)

    @pytest.mark.asyncio
    async def test_client_cannot_create(self, manager, client_record, client_actor):
        with pytest.raises(Forbidden):
            await _draft(manager, client_record, client_actor)

    @pytest.mark.asyncio
    async def test_failed_validation_allocates_no_number(self, manager, client_record, admin):
        with pytest.raises(ValidationError):
            await _draft(manager, client_record, admin, amount=-1)
        invoice = await _draft(manager, client_record, admin)
        assert invoice["invoice_number"] == "INV-0001"


class TestLineItems:
    """Server-side line item totals"""

    def test_recomputes_totals(self):
        items = build_line_items([
            {"description": "Logo", "quantity": 2, "unit_price": "12.50"},
            {"description": "Copy", "quantity": 1, "unit_price": 75, "total": 75},
        ], Decimal("100"))
        assert [item["total"] for item in items] == [25.0, 75.0]
        assert all(item["id"] for item in items)

    def test_mismatched_line_total(self):
        with pytest.raises(ValidationError) as exc_info:
            build_line_items([{"description": "Logo", "quantity": 2, "unit_price": 10, "total": 25}])
        assert exc_info.value.field == "line_items[0].total"

    def test_missing_description(self):
        with pytest.raises(ValidationError):
            build_line_items([{"quantity": 1, "unit_price": 10}])


class TestDraftEditing:
    """Draft-only updates and deletes"""

    @pytest.mark.asyncio
    async def test_tax_change_recomputes_total(self, manager, client_record, admin):
        invoice = await _draft(manager, client_record, admin)
        updated = await manager.update(invoice["_id"], {"tax_amount": 20}, admin)
        assert updated["amount"] == 100.0
        assert updated["total_amount"] == 120.0

    @pytest.mark.asyncio
    async def test_amount_change_keeps_stored_tax(self, manager, client_record, admin):
        invoice = await _draft(manager, client_record, admin)
        updated = await manager.update(str(invoice["_id"]), {"amount": "250.5"}, admin)
        assert updated["total_amount"] == 258.5

    @pytest.mark.asyncio
    async def test_ignores_status_and_total(self, manager, client_record, admin):
        invoice = await _draft(manager, client_record, admin)
        updated = await manager.update(invoice["_id"], {"status": "paid", "total_amount": 1}, admin)
        assert updated["status"] == "draft"
        assert updated["total_amount"] == 108.0

    @pytest.mark.asyncio
    async def test_sent_invoice_cannot_be_edited(self, manager, client_record, admin):
        invoice = await _draft(manager, client_record, admin)
        await manager.send(invoice["_id"], admin)
        with pytest.raises(LifecycleViolation):
            await manager.update(invoice["_id"], {"amount": 5}, admin)
        with pytest.raises(LifecycleViolation):
            await manager.delete(invoice["_id"], admin)

    @pytest.mark.asyncio
    async def test_delete_draft(self, manager, client_record, admin, db):
        invoice = await _draft(manager, client_record, admin)
        await manager.delete(invoice["_id"], admin)
        assert await db.invoices.find_one({"_id": invoice["_id"]}) is None


class TestGatewayTransitions:
    """Send and void through the gateway"""

    @pytest.mark.asyncio
    async def test_send_records_gateway_identity(self, manager, client_record, admin, gateway, db):
        invoice = await _draft(manager, client_record, admin)
        sent = await manager.send(invoice["_id"], admin)

        assert sent["status"] == "sent"
        assert sent["external_gateway_id"] == "in_1"
        assert sent["external_gateway_url"].endswith("in_1")
        client = await db.clients.find_one({"_id": client_record["_id"]})
        assert client["gateway_customer_id"] == "cus_1"

    @pytest.mark.asyncio
    async def test_send_twice_is_invalid(self, manager, client_record, admin):
        invoice = await _draft(manager, client_record, admin)
        await manager.send(invoice["_id"], admin)
        with pytest.raises(InvalidTransition):
            await manager.send(invoice["_id"], admin)

    @pytest.mark.asyncio
    async def test_send_failure_leaves_draft(self, manager, client_record, admin, gateway, db):
        invoice = await _draft(manager, client_record, admin)
        gateway.failing.add("in_1")
        with pytest.raises(UpstreamError):
            await manager.send(invoice["_id"], admin)
        stored = await db.invoices.find_one({"_id": invoice["_id"]})
        assert stored["status"] == "draft"
        assert "external_gateway_id" not in stored

    @pytest.mark.asyncio
    async def test_void_sent_invoice(self, manager, client_record, admin, gateway):
        invoice = await _draft(manager, client_record, admin)
        await manager.send(invoice["_id"], admin)
        voided = await manager.void(invoice["_id"], admin)
        assert voided["status"] == "cancelled"
        assert gateway.voided == ["in_1"]

    @pytest.mark.asyncio
    async def test_void_gateway_failure_leaves_state(self, manager, client_record, admin, gateway, db):
        invoice = await _draft(manager, client_record, admin)
        await manager.send(invoice["_id"], admin)
        gateway.failing.add("in_1")
        with pytest.raises(UpstreamError):
            await manager.void(invoice["_id"], admin)
        stored = await db.invoices.find_one({"_id": invoice["_id"]})
        assert stored["status"] == "sent"

    @pytest.mark.asyncio
    async def test_void_draft_is_invalid(self, manager, client_record, admin):
        invoice = await _draft(manager, client_record, admin)
        with pytest.raises(InvalidTransition):
            await manager.void(invoice["_id"], admin)


class TestClientAccess:
    """Client actors see only their own invoices"""

    @pytest.mark.asyncio
    async def test_scoped_list_and_get(
        self, manager, client_record, other_client_record, admin, client_actor
    ):
        own = await _draft(manager, client_record, admin)
        foreign = await _draft(manager, other_client_record, admin)

        listed = await manager.list(client_actor)
        assert [inv["_id"] for inv in listed] == [own["_id"]]

        assert (await manager.get(own["_id"], client_actor))["_id"] == own["_id"]
        with pytest.raises(Forbidden):
            await manager.get(foreign["_id"], client_actor)

    @pytest.mark.asyncio
    async def test_client_filter_cannot_be_widened(
        self, manager, client_record, other_client_record, admin, client_actor
    ):
        await _draft(manager, other_client_record, admin)
        listed = await manager.list(client_actor, client_id=str(other_client_record["_id"]))
        assert listed == []


class TestGenerateFromProject:
    """Deposit, milestone and remainder invoices"""

    @pytest.mark.asyncio
    async def test_deposit_and_remainder(self, manager, project, admin):
        invoices = await manager.generate_from_project(project["_id"], admin)
        assert [(inv["invoice_type"], inv["total_amount"]) for inv in invoices] == [
            ("deposit", 5000.0), ("custom", 5000.0)
        ]
        assert invoices[0]["invoice_number"] != invoices[1]["invoice_number"]
        assert all(inv["status"] == "draft" for inv in invoices)

    @pytest.mark.asyncio
    async def test_milestones_replace_remainder(self, manager, project, admin, db):
        project_id = str(project["_id"])
        await db.milestones.insert_many([
            {"project_id": project_id, "title": "Concepts", "payment_amount": 2000, "created_at": datetime(2026, 1, 1)},
            {"project_id": project_id, "title": "Kickoff", "payment_amount": 0, "created_at": datetime(2026, 1, 2)},
        ])
        invoices = await manager.generate_from_project(project_id, admin)
        assert [inv["invoice_type"] for inv in invoices] == ["deposit", "milestone"]
        assert invoices[1]["milestone_id"] is not None
        assert invoices[1]["amount"] == 2000.0

    @pytest.mark.asyncio
    async def test_project_without_budget(self, manager, client_record, admin, db):
        result = await db.projects.insert_one({"name": "Empty", "client_id": str(client_record["_id"]), "budget": 0})
        with pytest.raises(ValidationError):
            await manager.generate_from_project(result.inserted_id, admin)

    @pytest.mark.asyncio
    async def test_project_without_client(self, manager, admin, db):
        result = await db.projects.insert_one({"name": "Orphan", "budget": 100})
        with pytest.raises(ValidationError):
            await manager.generate_from_project(result.inserted_id, admin)


class TestImportFromGateway:
    """Mirroring invoices that already exist at the gateway"""

    @pytest.mark.asyncio
    async def test_import_resolves_client_by_email(self, manager, client_record, admin, gateway, db):
        gateway.add_invoice(
            "in_ext_1", status="paid",
            customer_id="cus_ext", customer_email="billing@acme.test",
            subtotal=Decimal("200.00"), tax=Decimal("16.00"), total=Decimal("216.00"),
            paid_at=datetime(2026, 3, 1),
            lines=[GatewayLine("Retainer", 2, Decimal("200.00"))],
        )
        invoice = await manager.import_from_gateway("in_ext_1", admin)

        assert invoice["status"] == "paid"
        assert invoice["client_id"] == str(client_record["_id"])
        assert invoice["total_amount"] == 216.0
        assert invoice["line_items"][0]["unit_price"] == 100.0
        client = await db.clients.find_one({"_id": client_record["_id"]})
        assert client["gateway_customer_id"] == "cus_ext"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("remote_status,local_status", [
        ("open", "sent"), ("draft", "sent"), ("void", "cancelled"), ("uncollectible", "overdue")
    ])
    async def test_status_mapping(self, manager, client_record, admin, gateway, remote_status, local_status):
        gateway.add_invoice("in_map", status=remote_status, customer_id="cus_x", customer_email="billing@acme.test")
        invoice = await manager.import_from_gateway("in_map", admin)
        assert invoice["status"] == local_status

    @pytest.mark.asyncio
    async def test_duplicate_import_conflicts(self, manager, client_record, admin, gateway):
        gateway.add_invoice("in_dup", customer_id="cus_x", customer_email="billing@acme.test")
        await manager.import_from_gateway("in_dup", admin)
        with pytest.raises(Conflict):
            await manager.import_from_gateway("in_dup", admin)

    @pytest.mark.asyncio
    async def test_unknown_customer(self, manager, client_record, admin, gateway):
        gateway.add_invoice("in_orphan", customer_id="cus_none", customer_email="nobody@example.test")
        with pytest.raises(NotFound):
            await manager.import_from_gateway("in_orphan", admin)
