"""
REIMBURSEMENT & RETURN LEDGER

Two small guarded ledgers sharing one pattern:
1. PATCH applies a whitelist of mutable fields; unknown fields are ignored
2. The effective requested status is computed from the whitelisted input
   BEFORE the transition guard is consulted
3. Derived side effects (approval/payment/completion dates) are stamped by the
   ledger, never taken from the caller

Reimbursements: pending -> approved | rejected; approved -> paid | rejected;
rejected -> pending; paid is terminal. approved/paid need "ledger.settle".

Returns: pending -> in_progress | cancelled; in_progress -> completed | cancelled.
A refund_received_date on an in_progress return completes it. Only pending
returns can be deleted.
"""

from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple
import logging
import re

from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo import ReturnDocument

from .activity_recorder import ActivityRecorder
from .documents import parse_calendar_date, parse_object_id, today_iso
from .errors import LifecycleViolation, NotFound, ValidationError
from .financial_precision import (
    safe_subtract, to_decimal, to_float, validate_non_negative, validate_positive
)
from .policy import require
from .state_machine import apply_transition, transition_guards

logger = logging.getLogger(__name__)


class StatusLedger:
    """Base for a guarded ledger collection"""

    entity = "entry"
    collection_name = ""
    updatable_fields: Tuple[str, ...] = ()
    date_fields: Tuple[str, ...] = ()
    settling_statuses: Tuple[str, ...] = ()
    sort_field = "created_at"

    def __init__(self, db: AsyncIOMotorDatabase, activity: Optional[ActivityRecorder] = None):
        self.db = db
        self.collection = db[self.collection_name]
        self.activity = activity or ActivityRecorder(db)
        self.guard = transition_guards.get(self.entity)

    @property
    def label(self) -> str:
        return self.entity.capitalize()

    async def _load(self, entry_id: Any) -> Dict[str, Any]:
        entry = await self.collection.find_one({"_id": parse_object_id(entry_id, self.label)})
        if not entry:
            raise NotFound(f"{self.label} not found")
        return entry

    async def get(self, entry_id: Any, actor: Dict[str, Any]) -> Dict[str, Any]:
        require(actor, "ledger.read")
        return await self._load(entry_id)

    def _list_query(self, filters: Dict[str, Any]) -> Dict[str, Any]:
        query: Dict[str, Any] = {}
        if filters.get("project_id"):
            query["project_id"] = filters["project_id"]
        if filters.get("status"):
            query["status"] = filters["status"]
        return query

    async def list(self, actor: Dict[str, Any], **filters: Any) -> List[Dict[str, Any]]:
        require(actor, "ledger.read")
        query = self._list_query(filters)
        return await self.collection.find(query).sort(self.sort_field, -1).to_list(length=None)

    def _parse_dates(self, values: Dict[str, Any]) -> Dict[str, Any]:
        for field in self.date_fields:
            if field in values:
                values[field] = parse_calendar_date(values[field], field)
        return values

    def _prepare_create(self, data: Dict[str, Any], actor: Dict[str, Any]) -> Dict[str, Any]:
        raise NotImplementedError

    def _prepare_update(
        self,
        entry: Dict[str, Any],
        changes: Dict[str, Any],
        actor: Dict[str, Any]
    ) -> Tuple[Dict[str, Any], Optional[str]]:
        """Return (field updates, effective requested status or None)."""
        raise NotImplementedError

    async def create(self, data: Dict[str, Any], actor: Dict[str, Any]) -> Dict[str, Any]:
        require(actor, "ledger.write")
        entry = self._prepare_create(data, actor)
        if entry.get("project_id"):
            if not await self.db.projects.find_one({"_id": parse_object_id(entry["project_id"], "Project")}):
                raise NotFound("Project not found")

        now = datetime.utcnow()
        entry.update({
            "status": "pending",
            "state_history": [],
            "created_by": actor.get("user_id"),
            "created_at": now,
            "updated_at": now,
        })
        result = await self.collection.insert_one(entry)
        entry["_id"] = result.inserted_id

        logger.info(f"[LEDGER] Created {self.entity} {entry['_id']}")
        await self.activity.record(
            entry.get("project_id"), actor.get("user_id"), f"{self.entity}_created", self.entity, entry["_id"]
        )
        return entry

    async def update(self, entry_id: Any, data: Dict[str, Any], actor: Dict[str, Any]) -> Dict[str, Any]:
        """
        Apply a partial update. Unlisted fields are dropped silently; a status
        change (explicit or derived) goes through the transition guard and a
        status-predicated write.
        """
        require(actor, "ledger.write")
        entry = await self._load(entry_id)

        changes = {key: data[key] for key in self.updatable_fields if key in data}
        updates, requested_status = self._prepare_update(entry, changes, actor)

        if requested_status and requested_status != entry["status"]:
            if requested_status in self.settling_statuses:
                require(actor, "ledger.settle")
            updated = await apply_transition(
                self.collection, entry, requested_status, self.guard,
                extra_fields=updates, actor_id=actor.get("user_id")
            )
            await self.activity.record(
                entry.get("project_id"), actor.get("user_id"), f"{self.entity}_{requested_status}",
                self.entity, entry["_id"], {"from_status": entry["status"], "to_status": requested_status}
            )
            return updated

        if not updates:
            return entry

        updates["updated_at"] = datetime.utcnow()
        updated = await self.collection.find_one_and_update(
            {"_id": entry["_id"]},
            {"$set": updates},
            return_document=ReturnDocument.AFTER
        )
        if updated is None:
            raise NotFound(f"{self.label} not found")
        logger.info(f"[LEDGER] Updated {self.entity} {entry['_id']}: {sorted(updates)}")
        return updated

    def _check_delete(self, entry: Dict[str, Any]) -> None:
        pass

    async def delete(self, entry_id: Any, actor: Dict[str, Any]) -> None:
        require(actor, "ledger.write")
        entry = await self._load(entry_id)
        self._check_delete(entry)

        result = await self.collection.delete_one({"_id": entry["_id"], "status": entry["status"]})
        if not result.deleted_count:
            raise NotFound(f"{self.label} not found")

        logger.info(f"[LEDGER] Deleted {self.entity} {entry['_id']} (status={entry['status']})")
        await self.activity.record(
            entry.get("project_id"), actor.get("user_id"), f"{self.entity}_deleted", self.entity, entry["_id"]
        )


# =============================================================================
# REIMBURSEMENTS
# =============================================================================

class ReimbursementLedger(StatusLedger):
    entity = "reimbursement"
    collection_name = "reimbursements"
    updatable_fields = (
        "person_name", "person_email", "description", "category", "vendor", "amount",
        "date_incurred", "date_requested", "date_paid", "payment_method",
        "payment_reference", "receipt_url", "notes", "status",
    )
    date_fields = ("date_incurred", "date_requested", "date_paid")
    settling_statuses = ("approved", "paid")
    sort_field = "date_incurred"

    def _list_query(self, filters: Dict[str, Any]) -> Dict[str, Any]:
        query = super()._list_query(filters)
        if filters.get("person_name"):
            query["person_name"] = {"$regex": re.escape(filters["person_name"]), "$options": "i"}
        return query

    def _prepare_create(self, data: Dict[str, Any], actor: Dict[str, Any]) -> Dict[str, Any]:
        person_name = (data.get("person_name") or "").strip()
        if not person_name:
            raise ValidationError("person_name is required", field="person_name")
        description = (data.get("description") or "").strip()
        if not description:
            raise ValidationError("description is required", field="description")
        if data.get("amount") is None:
            raise ValidationError("amount is required", field="amount")

        entry = {
            "project_id": data.get("project_id"),
            "expense_id": data.get("expense_id"),
            "person_name": person_name,
            "person_email": data.get("person_email"),
            "description": description,
            "category": data.get("category") or "other",
            "vendor": data.get("vendor"),
            "amount": to_float(validate_positive(data["amount"], "amount")),
            "date_incurred": data.get("date_incurred") or today_iso(),
            "date_requested": data.get("date_requested"),
            "payment_method": data.get("payment_method"),
            "payment_reference": data.get("payment_reference"),
            "receipt_url": data.get("receipt_url"),
            "notes": data.get("notes"),
            "approved_by": None,
            "date_approved": None,
            "date_paid": None,
        }
        return self._parse_dates(entry)

    def _prepare_update(self, entry, changes, actor):
        requested_status = changes.pop("status", None)
        updates = self._parse_dates(changes)

        if "amount" in updates:
            updates["amount"] = to_float(validate_positive(updates["amount"], "amount"))
        for field in ("person_name", "description"):
            if field in updates and not (updates[field] or "").strip():
                raise ValidationError(f"{field} cannot be empty", field=field)

        if requested_status == "approved" and entry["status"] != "approved":
            updates["approved_by"] = actor.get("user_id")
            updates["date_approved"] = today_iso()
        if requested_status == "paid" and not updates.get("date_paid") and not entry.get("date_paid"):
            updates["date_paid"] = today_iso()
        return updates, requested_status


# =============================================================================
# RETURNS
# =============================================================================

class ReturnLedger(StatusLedger):
    entity = "return"
    collection_name = "returns"
    updatable_fields = (
        "item_description", "vendor", "category", "original_cost", "return_amount",
        "restocking_fee", "purchase_date", "return_initiated_date", "return_completed_date",
        "refund_received_date", "refund_method", "refund_reference", "return_window_days",
        "return_policy_notes", "tracking_number", "notes", "status",
    )
    date_fields = (
        "purchase_date", "return_initiated_date", "return_completed_date", "refund_received_date",
    )
    sort_field = "return_initiated_date"

    def _list_query(self, filters: Dict[str, Any]) -> Dict[str, Any]:
        query = super()._list_query(filters)
        if filters.get("vendor"):
            query["vendor"] = {"$regex": re.escape(filters["vendor"]), "$options": "i"}
        return query

    @staticmethod
    def _net_return(return_amount: Any, restocking_fee: Any) -> float:
        if to_decimal(restocking_fee, "restocking_fee") > to_decimal(return_amount, "return_amount"):
            raise ValidationError("restocking_fee cannot exceed return_amount", field="restocking_fee")
        return to_float(safe_subtract(return_amount, restocking_fee))

    def _prepare_create(self, data: Dict[str, Any], actor: Dict[str, Any]) -> Dict[str, Any]:
        item_description = (data.get("item_description") or "").strip()
        if not item_description:
            raise ValidationError("item_description is required", field="item_description")
        vendor = (data.get("vendor") or "").strip()
        if not vendor:
            raise ValidationError("vendor is required", field="vendor")

        original_cost = validate_non_negative(data.get("original_cost") or 0, "original_cost")
        return_amount = validate_non_negative(
            data["return_amount"] if data.get("return_amount") is not None else original_cost, "return_amount"
        )
        restocking_fee = validate_non_negative(data.get("restocking_fee") or 0, "restocking_fee")

        entry = {
            "project_id": data.get("project_id"),
            "expense_id": data.get("expense_id"),
            "item_description": item_description,
            "vendor": vendor,
            "category": data.get("category") or "other",
            "original_cost": to_float(original_cost),
            "return_amount": to_float(return_amount),
            "restocking_fee": to_float(restocking_fee),
            "net_return": self._net_return(return_amount, restocking_fee),
            "purchase_date": data.get("purchase_date"),
            "return_initiated_date": data.get("return_initiated_date") or today_iso(),
            "return_completed_date": None,
            "refund_received_date": None,
            "refund_method": data.get("refund_method"),
            "refund_reference": data.get("refund_reference"),
            "return_window_days": data.get("return_window_days"),
            "return_policy_notes": data.get("return_policy_notes"),
            "tracking_number": data.get("tracking_number"),
            "notes": data.get("notes"),
        }
        return self._parse_dates(entry)

    def _prepare_update(self, entry, changes, actor):
        requested_status = changes.pop("status", None)
        updates = self._parse_dates(changes)

        for field in ("original_cost", "return_amount", "restocking_fee"):
            if field in updates:
                updates[field] = to_float(validate_non_negative(updates[field], field))
        if "return_amount" in updates or "restocking_fee" in updates:
            updates["net_return"] = self._net_return(
                updates.get("return_amount", entry.get("return_amount") or 0),
                updates.get("restocking_fee", entry.get("restocking_fee") or 0),
            )

        # A refund can only be received once the return is under way
        if requested_status is None and updates.get("refund_received_date") and entry["status"] == "in_progress":
            requested_status = "completed"

        if requested_status == "completed" and not updates.get("return_completed_date") \
                and not entry.get("return_completed_date"):
            updates["return_completed_date"] = today_iso()
        return updates, requested_status

    def _check_delete(self, entry: Dict[str, Any]) -> None:
        if entry["status"] != "pending":
            raise LifecycleViolation(
                "Only pending returns can be deleted", current_status=entry["status"]
            )


class ReimbursementReturnLedger:
    """Facade over both ledgers sharing one activity recorder."""

    def __init__(self, db: AsyncIOMotorDatabase, activity: Optional[ActivityRecorder] = None):
        activity = activity or ActivityRecorder(db)
        self.reimbursements = ReimbursementLedger(db, activity)
        self.returns = ReturnLedger(db, activity)
