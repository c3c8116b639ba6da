"""
Project financial summary.

Read-only roll-up of a project's invoices, reimbursements and returns.
All sums are computed in Decimal and converted to float once, at the end.
"""

from decimal import Decimal
from typing import Any, Dict, Iterable, List
import logging

from motor.motor_asyncio import AsyncIOMotorDatabase

from .financial_precision import sum_amounts, to_decimal, to_float
from .policy import require
from .projects import load_project

logger = logging.getLogger(__name__)


def _total(docs: Iterable[Dict[str, Any]], field: str, statuses: Iterable[str] = None) -> Decimal:
    wanted = set(statuses) if statuses is not None else None
    return sum_amounts(
        doc.get(field) for doc in docs if wanted is None or doc.get("status") in wanted
    )


class ProjectFinancialSummary:

    def __init__(self, db: AsyncIOMotorDatabase):
        self.db = db

    async def _fetch(self, collection: str, project_id: str) -> List[Dict[str, Any]]:
        return await self.db[collection].find({"project_id": project_id}).to_list(length=None)

    async def summarize(self, project_id: Any, actor: Dict[str, Any]) -> Dict[str, Any]:
        require(actor, "project.financials")
        project = await load_project(self.db, project_id, actor)
        key = str(project["_id"])

        invoices = await self._fetch("invoices", key)
        reimbursements = await self._fetch("reimbursements", key)
        returns = await self._fetch("returns", key)

        budget = to_decimal(project.get("budget") or 0, "budget")
        total_invoiced = _total(invoices, "total_amount", ["draft", "sent", "paid", "overdue"])

        summary = {
            "invoices": {
                "outstanding": _total(invoices, "total_amount", ["sent", "overdue"]),
                "paid": _total(invoices, "total_amount", ["paid"]),
                "total_invoiced": total_invoiced,
                "count": len(invoices),
            },
            "reimbursements": {
                "pending": _total(reimbursements, "amount", ["pending"]),
                "approved": _total(reimbursements, "amount", ["approved"]),
                "paid": _total(reimbursements, "amount", ["paid"]),
                "total": _total(reimbursements, "amount"),
                "count": len(reimbursements),
            },
            "returns": {
                "pending": _total(returns, "net_return", ["pending", "in_progress"]),
                "completed": _total(returns, "net_return", ["completed"]),
                "expected": _total(returns, "net_return", ["pending", "in_progress", "completed"]),
                "restocking_fees": _total(returns, "restocking_fee"),
                "count": len(returns),
            },
        }

        result: Dict[str, Any] = {
            "project_id": key,
            "budget": to_float(budget),
            "remaining_budget": to_float(budget - total_invoiced),
        }
        for group, values in summary.items():
            result[group] = {
                name: (to_float(value) if isinstance(value, Decimal) else value)
                for name, value in values.items()
            }

        logger.info(f"[FINANCIALS] Summary computed for project {key}")
        return result
