"""
INVOICE RECONCILIATION JOB

Brings local invoice / payment / milestone records in line with the payment
gateway of record.

For each invoice in `sent` or `overdue` with an external gateway id:
1. Query the gateway for its current state
2. If the gateway reports `paid`:
   a. Create the succeeded Payment unless one already exists
   b. Move the invoice to `paid` with the gateway's paid timestamp
   c. Flag the linked milestone `is_paid`
3. Any failure is recorded as an `error` outcome for that invoice only

Safe to run repeatedly and concurrently: the payment insert carries
`settlement_key = invoice_id` under a unique index, so at most one succeeded
payment can exist per invoice whatever the interleaving. The existence check
before the insert only saves a round trip.

Usage:
    job = ReconciliationJob(db, gateway)
    report = await job.run(actor)
"""

from datetime import datetime
from typing import Any, Dict, Optional
import logging

from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo.errors import DuplicateKeyError

from .activity_recorder import ActivityRecorder
from .documents import parse_object_id
from .errors import Conflict
from .financial_precision import to_float
from .payment_gateway import GatewayInvoice, PaymentGateway
from .policy import require
from .state_machine import apply_transition, transition_guards

logger = logging.getLogger(__name__)

OUTSTANDING_STATUSES = ["sent", "overdue"]


class ReconciliationJob:
    """
    On-demand reconciliation against the payment gateway.

    Restricted to the most privileged role ("invoice.sync").
    """

    def __init__(
        self,
        db: AsyncIOMotorDatabase,
        gateway: PaymentGateway,
        activity: Optional[ActivityRecorder] = None
    ):
        self.db = db
        self.gateway = gateway
        self.activity = activity or ActivityRecorder(db)
        self.guard = transition_guards.get("invoice")

    async def run(self, actor: Dict[str, Any]) -> Dict[str, Any]:
        """
        Run one reconciliation pass.

        Returns:
            Report with per-invoice outcomes and a summary
            (total_checked, updated_to_paid, payments_created)
        """
        require(actor, "invoice.sync")

        start_time = datetime.utcnow()
        synced = []
        updated_to_paid = 0
        payments_created = 0
        errors = 0

        logger.info("[RECONCILE] Starting invoice reconciliation...")

        invoices = await self.db.invoices.find({
            "status": {"$in": OUTSTANDING_STATUSES},
            "external_gateway_id": {"$ne": None}
        }).to_list(length=None)

        for invoice in invoices:
            outcome = {
                "invoice_id": str(invoice["_id"]),
                "invoice_number": invoice.get("invoice_number"),
                "external_gateway_id": invoice["external_gateway_id"],
            }
            try:
                remote = await self.gateway.retrieve_invoice(invoice["external_gateway_id"])
                if remote.status != "paid":
                    outcome.update({"action": "unchanged", "gateway_status": remote.status})
                else:
                    created = await self._settle(invoice, remote, actor)
                    updated_to_paid += 1
                    payments_created += 1 if created else 0
                    outcome["action"] = (
                        "status_updated_and_payment_created" if created else "status_updated_to_paid"
                    )
            except Exception as e:
                errors += 1
                logger.error(
                    f"[RECONCILE] Sync failed for invoice {invoice['_id']} "
                    f"(gateway: {invoice['external_gateway_id']}): {str(e)}"
                )
                outcome.update({"action": "error", "error": str(e)})
            synced.append(outcome)

        end_time = datetime.utcnow()
        report = {
            "job_name": "ReconciliationJob",
            "status": "completed",
            "started_at": start_time.isoformat(),
            "completed_at": end_time.isoformat(),
            "duration_ms": round((end_time - start_time).total_seconds() * 1000, 2),
            "synced": synced,
            "errors": errors,
            "summary": {
                "total_checked": len(invoices),
                "updated_to_paid": updated_to_paid,
                "payments_created": payments_created,
            },
        }

        logger.info(
            f"[RECONCILE] Completed: checked={len(invoices)} paid={updated_to_paid} "
            f"payments_created={payments_created} errors={errors}"
        )
        return report

    async def _settle(self, invoice: Dict[str, Any], remote: GatewayInvoice, actor: Dict[str, Any]) -> bool:
        """Apply a gateway-paid invoice locally. Returns True if a payment was created."""
        paid_at = remote.paid_at or datetime.utcnow()

        created = await self._ensure_payment(invoice, remote, paid_at)
        await self._mark_paid(invoice, paid_at, actor)

        if invoice.get("milestone_id"):
            await self.db.milestones.update_one(
                {"_id": parse_object_id(invoice["milestone_id"], "Milestone")},
                {"$set": {"is_paid": True, "updated_at": datetime.utcnow()}}
            )
            logger.info(f"[RECONCILE] Milestone {invoice['milestone_id']} marked paid")

        if created:
            await self.activity.record(
                invoice.get("project_id"), actor.get("user_id"), "payment_received", "invoice", invoice["_id"],
                {"invoice_number": invoice.get("invoice_number"), "amount": to_float(remote.amount_paid)},
                is_client_visible=True
            )
        return created

    async def _ensure_payment(self, invoice: Dict[str, Any], remote: GatewayInvoice, paid_at: datetime) -> bool:
        invoice_key = str(invoice["_id"])

        existing = await self.db.payments.find_one({"invoice_id": invoice_key, "status": "succeeded"})
        if existing:
            return False

        payment = {
            "invoice_id": invoice_key,
            "project_id": invoice.get("project_id"),
            "client_id": invoice.get("client_id"),
            "amount": to_float(remote.amount_paid),
            "currency": remote.currency or invoice.get("currency") or "usd",
            "status": "succeeded",
            "external_payment_intent_id": remote.payment_intent_id,
            "payment_method": "gateway_invoice",
            "paid_at": paid_at,
            "settlement_key": invoice_key,
            "created_at": datetime.utcnow(),
        }
        try:
            await self.db.payments.insert_one(payment)
        except DuplicateKeyError:
            logger.info(f"[RECONCILE] Payment for invoice {invoice_key} already recorded by a concurrent run")
            return False

        logger.info(f"[RECONCILE] Payment created for invoice {invoice_key}: {payment['amount']}")
        return True

    async def _mark_paid(self, invoice: Dict[str, Any], paid_at: datetime, actor: Dict[str, Any]) -> None:
        try:
            await apply_transition(
                self.db.invoices, invoice, "paid", self.guard,
                extra_fields={"paid_at": paid_at},
                actor_id=actor.get("user_id"),
                metadata={"source": "reconciliation"}
            )
        except Conflict:
            current = await self.db.invoices.find_one({"_id": invoice["_id"]}, {"status": 1})
            if not current or current.get("status") != "paid":
                raise
            logger.info(f"[RECONCILE] Invoice {invoice['_id']} already marked paid by a concurrent run")
