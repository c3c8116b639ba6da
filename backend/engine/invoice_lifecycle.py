"""
INVOICE LIFECYCLE MANAGER

Owns:
- Creation with validated money fields and an atomically allocated number
- Draft-only editing and deletion
- Sending to and voiding at the payment gateway
- Generation of deposit / milestone / remainder invoices from a project
- Import of invoices that already exist at the gateway

INVARIANT: total_amount == amount + tax_amount after every write.
"""

from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional
import logging
import uuid

from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError

from .activity_recorder import ActivityRecorder
from .atomic_numbering import SequenceAllocator
from .documents import parse_calendar_date, parse_object_id
from .errors import Conflict, LifecycleViolation, NotFound, ValidationError
from .financial_precision import (
    amounts_match, calculate_percentage, round_financial, safe_add,
    safe_multiply, safe_subtract, to_decimal, to_float, validate_non_negative,
    validate_positive
)
from .payment_gateway import PaymentGateway, resolve_due_date
from .policy import is_client, require
from .state_machine import apply_transition, transition_guards

logger = logging.getLogger(__name__)

INVOICE_TYPES = ("deposit", "milestone", "custom")
UPDATABLE_FIELDS = ("amount", "tax_amount", "due_date", "line_items", "notes")
DEFAULT_DEPOSIT_PERCENTAGE = 50


def _line_item(description: str, quantity: Any, unit_price: Any, total: Any = None) -> Dict[str, Any]:
    return {
        "id": str(uuid.uuid4()),
        "description": description,
        "quantity": float(quantity),
        "unit_price": to_float(unit_price),
        "total": to_float(total if total is not None else safe_multiply(quantity, unit_price)),
    }


def build_line_items(raw_items: List[Dict[str, Any]], amount: Optional[Decimal] = None) -> List[Dict[str, Any]]:
    """
    Validate caller line items and recompute their totals server-side.

    A supplied `total` must agree with quantity * unit_price within one cent;
    when `amount` is given the line totals must sum to it.
    """
    items = []
    running = Decimal("0")
    for index, raw in enumerate(raw_items):
        field = f"line_items[{index}]"
        description = (raw.get("description") or "").strip()
        if not description:
            raise ValidationError(f"Line item {index + 1} needs a description", field=f"{field}.description")
        quantity = validate_non_negative(raw.get("quantity", 1), f"{field}.quantity")
        unit_price = validate_non_negative(raw.get("unit_price"), f"{field}.unit_price")
        expected = safe_multiply(quantity, unit_price)

        if raw.get("total") is not None and not amounts_match(expected, to_decimal(raw["total"], f"{field}.total")):
            raise ValidationError(
                f'Line item "{description}" total does not match quantity * unit_price',
                field=f"{field}.total"
            )

        running += expected
        items.append(_line_item(description, quantity, unit_price, expected))

    if amount is not None and items and not amounts_match(running, amount):
        raise ValidationError("Sum of line item totals does not match invoice amount", field="line_items")
    return items


class InvoiceLifecycleManager:
    """
    Invoice service. Every status change goes through the invoice transition
    guard and a status-predicated write.
    """

    def __init__(
        self,
        db: AsyncIOMotorDatabase,
        gateway: PaymentGateway,
        sequence_allocator: Optional[SequenceAllocator] = None,
        activity: Optional[ActivityRecorder] = None,
        default_currency: str = "usd"
    ):
        self.db = db
        self.gateway = gateway
        self.sequences = sequence_allocator or SequenceAllocator(db)
        self.activity = activity or ActivityRecorder(db)
        self.default_currency = default_currency
        self.guard = transition_guards.get("invoice")

    # =========================================================================
    # READS
    # =========================================================================

    async def _load(self, invoice_id: Any) -> Dict[str, Any]:
        invoice = await self.db.invoices.find_one({"_id": parse_object_id(invoice_id, "Invoice")})
        if not invoice:
            raise NotFound("Invoice not found")
        return invoice

    async def get(self, invoice_id: Any, actor: Dict[str, Any]) -> Dict[str, Any]:
        invoice = await self._load(invoice_id)
        require(actor, "invoice.read", invoice)
        return invoice

    async def list(
        self,
        actor: Dict[str, Any],
        project_id: Optional[str] = None,
        client_id: Optional[str] = None,
        status: Optional[str] = None,
        invoice_type: Optional[str] = None
    ) -> List[Dict[str, Any]]:
        """List invoices newest first; client actors only ever see their own."""
        require(actor, "invoice.read")
        query: Dict[str, Any] = {}
        if project_id:
            query["project_id"] = project_id
        if client_id:
            query["client_id"] = client_id
        if status:
            query["status"] = status
        if invoice_type:
            query["invoice_type"] = invoice_type
        if is_client(actor):
            query["client_id"] = actor.get("client_id")

        return await self.db.invoices.find(query).sort("created_at", -1).to_list(length=None)

    # =========================================================================
    # CREATE
    # =========================================================================

    async def _insert_invoice(
        self,
        actor: Dict[str, Any],
        client_id: str,
        amount: Decimal,
        tax_amount: Decimal,
        line_items: List[Dict[str, Any]],
        invoice_type: str = "custom",
        project_id: Optional[str] = None,
        milestone_id: Optional[str] = None,
        **fields: Any
    ) -> Dict[str, Any]:
        """Allocate a number and insert; total is always derived here."""
        now = datetime.utcnow()
        invoice = {
            "client_id": client_id,
            "project_id": project_id,
            "milestone_id": milestone_id,
            "invoice_type": invoice_type,
            "invoice_number": await self.sequences.next("invoice_number"),
            "amount": to_float(amount),
            "tax_amount": to_float(tax_amount),
            "total_amount": to_float(safe_add(amount, tax_amount)),
            "currency": fields.pop("currency", None) or self.default_currency,
            "status": fields.pop("status", "draft"),
            "due_date": fields.pop("due_date", None),
            "paid_at": fields.pop("paid_at", None),
            "external_gateway_url": fields.pop("external_gateway_url", None),
            "line_items": line_items,
            "notes": fields.pop("notes", None),
            "state_history": [],
            "created_by": actor.get("user_id"),
            "created_at": now,
            "updated_at": now,
        }
        # Sparse unique index: absent, never null
        external_id = fields.pop("external_gateway_id", None)
        if external_id:
            invoice["external_gateway_id"] = external_id

        result = await self.db.invoices.insert_one(invoice)
        invoice["_id"] = result.inserted_id
        logger.info(f"[INVOICE] Created {invoice['invoice_number']} ({invoice_type}) status={invoice['status']}")
        return invoice

    async def create(self, data: Dict[str, Any], actor: Dict[str, Any]) -> Dict[str, Any]:
        """Create a draft invoice. Money and date fields are validated before a number is allocated."""
        require(actor, "invoice.create")

        client_id = data.get("client_id")
        if not client_id:
            raise ValidationError("client_id is required", field="client_id")
        if data.get("amount") is None:
            raise ValidationError("amount is required", field="amount")

        amount = validate_positive(data["amount"], "amount")
        tax_amount = validate_non_negative(data.get("tax_amount") or 0, "tax_amount")
        due_date = parse_calendar_date(data.get("due_date"), "due_date")

        invoice_type = data.get("invoice_type") or "custom"
        if invoice_type not in INVOICE_TYPES:
            raise ValidationError(f"invoice_type must be one of {list(INVOICE_TYPES)}", field="invoice_type")

        client = await self.db.clients.find_one({"_id": parse_object_id(client_id, "Client")})
        if not client:
            raise NotFound("Client not found")
        if data.get("project_id"):
            project = await self.db.projects.find_one({"_id": parse_object_id(data["project_id"], "Project")})
            if not project:
                raise NotFound("Project not found")

        line_items = build_line_items(data.get("line_items") or [], amount) or [
            _line_item("Services", 1, amount)
        ]

        invoice = await self._insert_invoice(
            actor,
            client_id=str(client["_id"]),
            amount=amount,
            tax_amount=tax_amount,
            line_items=line_items,
            invoice_type=invoice_type,
            project_id=data.get("project_id"),
            milestone_id=data.get("milestone_id"),
            currency=data.get("currency"),
            due_date=due_date,
            notes=data.get("notes"),
        )

        await self.activity.record(
            invoice["project_id"], actor.get("user_id"), "invoice_created", "invoice", invoice["_id"],
            {"invoice_number": invoice["invoice_number"], "total_amount": invoice["total_amount"]}
        )
        return invoice

    # =========================================================================
    # DRAFT EDITING
    # =========================================================================

    async def update(self, invoice_id: Any, data: Dict[str, Any], actor: Dict[str, Any]) -> Dict[str, Any]:
        """
        Edit a draft invoice.

        Only whitelisted fields are applied. total_amount is recomputed whenever
        amount or tax_amount changes, taking the other from the stored invoice.
        """
        invoice = await self._load(invoice_id)
        require(actor, "invoice.update", invoice)
        if invoice["status"] != "draft":
            raise LifecycleViolation("Only draft invoices can be edited", current_status=invoice["status"])

        changes = {key: data[key] for key in UPDATABLE_FIELDS if key in data}
        updates: Dict[str, Any] = {}

        amount = None
        if changes.get("amount") is not None:
            amount = validate_positive(changes["amount"], "amount")
            updates["amount"] = to_float(amount)

        tax_amount = None
        if changes.get("tax_amount") is not None:
            tax_amount = validate_non_negative(changes["tax_amount"], "tax_amount")
            updates["tax_amount"] = to_float(tax_amount)

        if "due_date" in changes:
            updates["due_date"] = parse_calendar_date(changes["due_date"], "due_date")

        if changes.get("line_items") is not None:
            updates["line_items"] = build_line_items(changes["line_items"], amount)

        if "notes" in changes:
            updates["notes"] = changes["notes"]

        if amount is not None or tax_amount is not None:
            final_amount = amount if amount is not None else to_decimal(invoice.get("amount") or 0)
            final_tax = tax_amount if tax_amount is not None else to_decimal(invoice.get("tax_amount") or 0)
            updates["total_amount"] = to_float(safe_add(final_amount, final_tax))

        if not updates:
            return invoice

        updates["updated_at"] = datetime.utcnow()
        updated = await self.db.invoices.find_one_and_update(
            {"_id": invoice["_id"], "status": "draft"},
            {"$set": updates},
            return_document=ReturnDocument.AFTER
        )
        if updated is None:
            raise Conflict("Invoice left draft while the edit was processed")

        logger.info(f"[INVOICE] Updated {invoice['invoice_number']}: {sorted(updates)}")
        await self.activity.record(
            invoice.get("project_id"), actor.get("user_id"), "invoice_updated", "invoice", invoice["_id"],
            {"fields": sorted(k for k in updates if k != "updated_at")}
        )
        return updated

    async def delete(self, invoice_id: Any, actor: Dict[str, Any]) -> None:
        invoice = await self._load(invoice_id)
        require(actor, "invoice.delete", invoice)
        if invoice["status"] != "draft":
            raise LifecycleViolation("Only draft invoices can be deleted", current_status=invoice["status"])

        result = await self.db.invoices.delete_one({"_id": invoice["_id"], "status": "draft"})
        if not result.deleted_count:
            raise Conflict("Invoice left draft while the delete was processed")

        logger.info(f"[INVOICE] Deleted draft {invoice['invoice_number']}")
        await self.activity.record(
            invoice.get("project_id"), actor.get("user_id"), "invoice_deleted", "invoice", invoice["_id"],
            {"invoice_number": invoice["invoice_number"]}
        )

    # =========================================================================
    # GATEWAY-BACKED TRANSITIONS
    # =========================================================================

    async def send(self, invoice_id: Any, actor: Dict[str, Any]) -> Dict[str, Any]:
        """Create the invoice at the gateway, send it, then mark it sent locally."""
        invoice = await self._load(invoice_id)
        require(actor, "invoice.send", invoice)
        self.guard.validate_transition(invoice["status"], "sent")

        if not invoice.get("client_id"):
            raise ValidationError("Invoice must have a client to send", field="client_id")
        client = await self.db.clients.find_one({"_id": parse_object_id(invoice["client_id"], "Client")})
        if not client:
            raise NotFound("Client not found")

        customer_id = await self.gateway.ensure_customer(client)
        if client.get("gateway_customer_id") != customer_id:
            await self.db.clients.update_one(
                {"_id": client["_id"]},
                {"$set": {"gateway_customer_id": customer_id, "updated_at": datetime.utcnow()}}
            )

        sent = await self.gateway.create_and_send_invoice(
            customer_id, invoice, resolve_due_date(invoice.get("due_date"))
        )

        updated = await apply_transition(
            self.db.invoices, invoice, "sent", self.guard,
            extra_fields={"external_gateway_id": sent.id, "external_gateway_url": sent.hosted_url},
            actor_id=actor.get("user_id"),
        )
        await self.activity.record(
            invoice.get("project_id"), actor.get("user_id"), "invoice_sent", "invoice", invoice["_id"],
            {"invoice_number": invoice["invoice_number"], "total_amount": invoice["total_amount"]},
            is_client_visible=True
        )
        return updated

    async def void(self, invoice_id: Any, actor: Dict[str, Any]) -> Dict[str, Any]:
        """
        Cancel a sent or overdue invoice.

        The gateway copy is voided first; if that fails the local invoice is
        left exactly as it was.
        """
        invoice = await self._load(invoice_id)
        require(actor, "invoice.void", invoice)
        self.guard.validate_transition(invoice["status"], "cancelled")

        if invoice.get("external_gateway_id"):
            await self.gateway.void_invoice(invoice["external_gateway_id"])

        updated = await apply_transition(
            self.db.invoices, invoice, "cancelled", self.guard, actor_id=actor.get("user_id")
        )
        await self.activity.record(
            invoice.get("project_id"), actor.get("user_id"), "invoice_voided", "invoice", invoice["_id"],
            {"invoice_number": invoice["invoice_number"]},
            is_client_visible=True
        )
        return updated

    # =========================================================================
    # GENERATION FROM PROJECT
    # =========================================================================

    async def generate_from_project(self, project_id: Any, actor: Dict[str, Any]) -> List[Dict[str, Any]]:
        """
        Derive draft invoices from a project's budget:
        - deposit: budget * deposit_percentage / 100 (default 50%)
        - one per milestone with a positive payment_amount
        - remainder (budget - deposit - milestones), only when the project has no milestones
        Zero or negative amounts are skipped.
        """
        require(actor, "invoice.generate")
        project = await self.db.projects.find_one({"_id": parse_object_id(project_id, "Project")})
        if not project:
            raise NotFound("Project not found")

        budget = to_decimal(project.get("budget") or 0, "budget")
        if budget <= 0:
            raise ValidationError("Project must have a budget greater than 0", field="budget")
        if not project.get("client_id"):
            raise ValidationError("Project must have a client assigned", field="client_id")

        project_key = str(project["_id"])
        name = project.get("name") or "project"
        percentage = project.get("deposit_percentage")
        if percentage is None:
            percentage = DEFAULT_DEPOSIT_PERCENTAGE
        milestones = await self.db.milestones.find({"project_id": project_key}).sort("created_at", 1).to_list(length=None)

        planned = []
        deposit = round_financial(calculate_percentage(budget, percentage))
        if deposit > 0:
            planned.append(("deposit", None, deposit, f"Deposit for {name} ({percentage}%)"))

        milestone_total = Decimal("0")
        for milestone in milestones:
            payment = to_decimal(milestone.get("payment_amount") or 0, "payment_amount")
            if payment > 0:
                milestone_total += payment
                planned.append(("milestone", str(milestone["_id"]), payment, f"Milestone: {milestone.get('title')}"))

        remaining = safe_subtract(safe_subtract(budget, deposit), milestone_total)
        if remaining > 0 and not milestones:
            planned.append(("custom", None, remaining, f"Remaining Balance for {name}"))

        if not planned:
            raise ValidationError("No invoices to generate")

        invoices = []
        for invoice_type, milestone_id, amount, description in planned:
            invoices.append(await self._insert_invoice(
                actor,
                client_id=project["client_id"],
                amount=amount,
                tax_amount=Decimal("0"),
                line_items=[_line_item(description, 1, amount)],
                invoice_type=invoice_type,
                project_id=project_key,
                milestone_id=milestone_id,
            ))

        await self.activity.record(
            project_key, actor.get("user_id"), "invoices_generated", "project", project_key,
            {"invoice_numbers": [inv["invoice_number"] for inv in invoices]}
        )
        return invoices

    # =========================================================================
    # IMPORT FROM GATEWAY
    # =========================================================================

    async def _resolve_client(self, customer_id: str, customer_email: Optional[str]) -> Dict[str, Any]:
        client = await self.db.clients.find_one({"gateway_customer_id": customer_id})
        if client:
            return client

        if customer_email:
            client = await self.db.clients.find_one({"email": customer_email})
            if client:
                # Link for future lookups
                await self.db.clients.update_one(
                    {"_id": client["_id"]},
                    {"$set": {"gateway_customer_id": customer_id, "updated_at": datetime.utcnow()}}
                )
                logger.info(f"[INVOICE] Linked gateway customer {customer_id} to client {client['_id']} by email")
                return client

        raise NotFound("No client matches this gateway customer's id or email")

    async def import_from_gateway(
        self,
        external_id: str,
        actor: Dict[str, Any],
        project_id: Optional[str] = None
    ) -> Dict[str, Any]:
        """Create a local invoice mirroring one that already exists at the gateway."""
        require(actor, "invoice.import")
        if not external_id:
            raise ValidationError("external_gateway_id is required", field="external_gateway_id")

        if await self.db.invoices.find_one({"external_gateway_id": external_id}):
            raise Conflict("This gateway invoice has already been imported", external_gateway_id=external_id)

        if project_id:
            project = await self.db.projects.find_one({"_id": parse_object_id(project_id, "Project")})
            if not project:
                raise NotFound("Project not found")

        remote = await self.gateway.retrieve_invoice(external_id)
        if not remote.customer_id:
            raise ValidationError("Gateway invoice has no customer associated", field="external_gateway_id")
        client = await self._resolve_client(remote.customer_id, remote.customer_email)

        line_items = [
            _line_item(
                line.description or "Line item",
                line.quantity,
                round_financial(line.amount / line.quantity) if line.quantity > 0 else line.amount,
                line.amount,
            )
            for line in remote.lines
        ] or [_line_item("Imported invoice", 1, remote.subtotal)]

        status = remote.local_status
        try:
            invoice = await self._insert_invoice(
                actor,
                client_id=str(client["_id"]),
                amount=remote.subtotal,
                tax_amount=remote.tax,
                line_items=line_items,
                invoice_type="custom",
                project_id=project_id,
                currency=remote.currency,
                status=status,
                due_date=remote.due_date.date().isoformat() if remote.due_date else None,
                paid_at=remote.paid_at if status == "paid" else None,
                external_gateway_id=remote.id,
                external_gateway_url=remote.hosted_url,
                notes=remote.description,
            )
        except DuplicateKeyError:
            raise Conflict("This gateway invoice has already been imported", external_gateway_id=external_id)

        await self.activity.record(
            project_id, actor.get("user_id"), "invoice_imported", "invoice", invoice["_id"],
            {"invoice_number": invoice["invoice_number"], "external_gateway_id": external_id}
        )
        return invoice
