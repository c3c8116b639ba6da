"""
PROJECT-SCOPED API ROUTES

- invoice generation (deposit + milestones + remainder)
- deliverables list / create
- activity feed
- financial summary
"""

from fastapi import APIRouter, Depends, Query
from motor.motor_asyncio import AsyncIOMotorDatabase
from typing import Optional

from database import get_db
from dependencies import (
    get_activity, get_actor, get_deliverable_workflow, get_financial_summary,
    get_invoice_manager
)
from engine.activity_recorder import ActivityRecorder
from engine.deliverable_workflow import DeliverableReviewWorkflow
from engine.documents import serialize_doc
from engine.financial_summary import ProjectFinancialSummary
from engine.invoice_lifecycle import InvoiceLifecycleManager
from engine.policy import require
from engine.projects import load_project
from models import DeliverableCreate

project_router = APIRouter(prefix="/api/projects", tags=["Projects"])


@project_router.post("/{project_id}/invoices/generate", status_code=201)
async def generate_project_invoices(
    project_id: str,
    actor: dict = Depends(get_actor),
    manager: InvoiceLifecycleManager = Depends(get_invoice_manager)
):
    invoices = await manager.generate_from_project(project_id, actor)
    return {
        "invoices": [serialize_doc(inv) for inv in invoices],
        "message": f"Generated {len(invoices)} invoice(s)"
    }


@project_router.get("/{project_id}/deliverables")
async def list_project_deliverables(
    project_id: str,
    status: Optional[str] = Query(None),
    actor: dict = Depends(get_actor),
    workflow: DeliverableReviewWorkflow = Depends(get_deliverable_workflow)
):
    deliverables = await workflow.list_for_project(project_id, actor, status=status)
    return {"deliverables": [serialize_doc(d) for d in deliverables]}


@project_router.post("/{project_id}/deliverables", status_code=201)
async def create_project_deliverable(
    project_id: str,
    payload: DeliverableCreate,
    actor: dict = Depends(get_actor),
    workflow: DeliverableReviewWorkflow = Depends(get_deliverable_workflow)
):
    deliverable = await workflow.create(project_id, payload.dict(exclude_unset=True), actor)
    return {"deliverable": serialize_doc(deliverable)}


@project_router.get("/{project_id}/activity")
async def get_project_activity(
    project_id: str,
    limit: int = Query(20, ge=1, le=100),
    offset: int = Query(0, ge=0),
    actor: dict = Depends(get_actor),
    db: AsyncIOMotorDatabase = Depends(get_db),
    activity: ActivityRecorder = Depends(get_activity)
):
    require(actor, "activity.read")
    project = await load_project(db, project_id, actor)
    entries, total = await activity.list_for_project(str(project["_id"]), actor, limit=limit, offset=offset)
    return {
        "activities": [serialize_doc(entry) for entry in entries],
        "total": total,
        "has_more": offset + limit < total
    }


@project_router.get("/{project_id}/financials")
async def get_project_financials(
    project_id: str,
    actor: dict = Depends(get_actor),
    summary: ProjectFinancialSummary = Depends(get_financial_summary)
):
    return {"financials": await summary.summarize(project_id, actor)}
