"""
Reconciliation against the payment gateway.
"""
import asyncio
from datetime import datetime
from decimal import Decimal

import pytest

from engine.errors import Forbidden
from engine.reconciliation_job import ReconciliationJob


@pytest.fixture
def job(db, gateway):
    return ReconciliationJob(db, gateway)


async def _sent_invoice(db, client_record, external_id, number, status="sent", **fields):
    doc = {
        "client_id": str(client_record["_id"]),
        "project_id": None,
        "milestone_id": None,
        "invoice_number": number,
        "invoice_type": "custom",
        "amount": 500.0,
        "tax_amount": 0.0,
        "total_amount": 500.0,
        "currency": "usd",
        "status": status,
        "external_gateway_id": external_id,
        "state_history": [],
        "created_at": datetime.utcnow(),
    }
    doc.update(fields)
    result = await db.invoices.insert_one(doc)
    doc["_id"] = result.inserted_id
    return doc


def _paid(gateway, external_id, amount="500.00"):
    gateway.add_invoice(
        external_id, status="paid",
        amount_paid=Decimal(amount), paid_at=datetime(2026, 6, 1, 12, 0),
        payment_intent_id=f"pi_{external_id}",
    )


class TestReconciliationJob:
    """Gateway-paid invoices become paid locally, exactly once"""

    @pytest.mark.asyncio
    async def test_settles_paid_invoice(self, job, db, gateway, client_record, admin):
        invoice = await _sent_invoice(db, client_record, "in_a", "INV-0001")
        _paid(gateway, "in_a")

        report = await job.run(admin)

        assert report["summary"] == {"total_checked": 1, "updated_to_paid": 1, "payments_created": 1}
        assert report["synced"][0]["action"] == "status_updated_and_payment_created"
        stored = await db.invoices.find_one({"_id": invoice["_id"]})
        assert stored["status"] == "paid"
        assert stored["paid_at"] == datetime(2026, 6, 1, 12, 0)
        payment = await db.payments.find_one({"invoice_id": str(invoice["_id"])})
        assert payment["amount"] == 500.0
        assert payment["external_payment_intent_id"] == "pi_in_a"

    @pytest.mark.asyncio
    async def test_second_run_is_a_no_op(self, job, db, gateway, client_record, admin):
        await _sent_invoice(db, client_record, "in_a", "INV-0001")
        _paid(gateway, "in_a")

        await job.run(admin)
        report = await job.run(admin)

        assert report["summary"]["total_checked"] == 0
        assert await db.payments.count_documents({}) == 1

    @pytest.mark.asyncio
    async def test_concurrent_runs_create_one_payment(self, job, db, gateway, client_record, admin):
        invoice = await _sent_invoice(db, client_record, "in_a", "INV-0001")
        _paid(gateway, "in_a")

        reports = await asyncio.gather(job.run(admin), job.run(admin))

        assert sum(r["summary"]["payments_created"] for r in reports) == 1
        assert all(r["errors"] == 0 for r in reports)
        assert await db.payments.count_documents({"invoice_id": str(invoice["_id"])}) == 1
        stored = await db.invoices.find_one({"_id": invoice["_id"]})
        assert stored["status"] == "paid"

    @pytest.mark.asyncio
    async def test_existing_payment_is_not_duplicated(self, job, db, gateway, client_record, admin):
        invoice = await _sent_invoice(db, client_record, "in_a", "INV-0001", status="overdue")
        await db.payments.insert_one({
            "invoice_id": str(invoice["_id"]), "status": "succeeded", "settlement_key": str(invoice["_id"])
        })
        _paid(gateway, "in_a")

        report = await job.run(admin)

        assert report["synced"][0]["action"] == "status_updated_to_paid"
        assert report["summary"]["payments_created"] == 0
        assert await db.payments.count_documents({}) == 1

    @pytest.mark.asyncio
    async def test_open_invoice_unchanged(self, job, db, gateway, client_record, admin):
        invoice = await _sent_invoice(db, client_record, "in_a", "INV-0001")
        gateway.add_invoice("in_a", status="open")

        report = await job.run(admin)

        assert report["synced"][0]["action"] == "unchanged"
        assert (await db.invoices.find_one({"_id": invoice["_id"]}))["status"] == "sent"

    @pytest.mark.asyncio
    async def test_one_failure_does_not_stop_the_run(self, job, db, gateway, client_record, admin):
        broken = await _sent_invoice(db, client_record, "in_broken", "INV-0001")
        healthy = await _sent_invoice(db, client_record, "in_ok", "INV-0002")
        gateway.failing.add("in_broken")
        _paid(gateway, "in_ok")

        report = await job.run(admin)

        assert report["errors"] == 1
        actions = {o["invoice_id"]: o["action"] for o in report["synced"]}
        assert actions[str(broken["_id"])] == "error"
        assert actions[str(healthy["_id"])] == "status_updated_and_payment_created"

    @pytest.mark.asyncio
    async def test_marks_milestone_paid(self, job, db, gateway, client_record, admin):
        milestone = await db.milestones.insert_one({"title": "Concepts", "is_paid": False})
        await _sent_invoice(
            db, client_record, "in_a", "INV-0001",
            invoice_type="milestone", milestone_id=str(milestone.inserted_id)
        )
        _paid(gateway, "in_a")

        await job.run(admin)

        assert (await db.milestones.find_one({"_id": milestone.inserted_id}))["is_paid"] is True

    @pytest.mark.asyncio
    async def test_skips_invoices_without_gateway_id(self, job, db, gateway, client_record, admin):
        await db.invoices.insert_one({"invoice_number": "INV-0001", "status": "sent"})
        report = await job.run(admin)
        assert report["summary"]["total_checked"] == 0

    @pytest.mark.asyncio
    async def test_admin_only(self, job, member, client_actor):
        for actor in (member, client_actor):
            with pytest.raises(Forbidden):
                await job.run(actor)
