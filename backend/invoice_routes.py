"""
INVOICE API ROUTES

- list / create / get / patch (draft-only) / delete (draft-only)
- send, void, import from gateway
- sync (reconciliation, admin-only)

All routes require authentication. Invoice creation is rate-limited per user.
"""

from fastapi import APIRouter, Depends, Query
from typing import Optional
import logging

import config
from dependencies import (
    enforce_rate_limit, get_actor, get_invoice_manager, get_rate_limiter,
    get_reconciliation_job
)
from engine.documents import serialize_doc
from engine.invoice_lifecycle import InvoiceLifecycleManager
from engine.rate_limiter import RateLimiter
from engine.reconciliation_job import ReconciliationJob
from models import InvoiceCreate, InvoiceImport, InvoiceUpdate

logger = logging.getLogger(__name__)

invoice_router = APIRouter(prefix="/api/invoices", tags=["Invoices"])


@invoice_router.get("")
async def list_invoices(
    project_id: Optional[str] = Query(None),
    client_id: Optional[str] = Query(None),
    status: Optional[str] = Query(None),
    invoice_type: Optional[str] = Query(None),
    actor: dict = Depends(get_actor),
    manager: InvoiceLifecycleManager = Depends(get_invoice_manager)
):
    invoices = await manager.list(
        actor, project_id=project_id, client_id=client_id, status=status, invoice_type=invoice_type
    )
    return {"invoices": [serialize_doc(inv) for inv in invoices]}


@invoice_router.post("", status_code=201)
async def create_invoice(
    payload: InvoiceCreate,
    actor: dict = Depends(get_actor),
    manager: InvoiceLifecycleManager = Depends(get_invoice_manager),
    limiter: RateLimiter = Depends(get_rate_limiter)
):
    await enforce_rate_limit(limiter, actor, "invoice.create", config.INVOICE_CREATE_LIMIT_PER_MINUTE)
    invoice = await manager.create(payload.dict(exclude_unset=True), actor)
    return {"invoice": serialize_doc(invoice)}


@invoice_router.post("/import", status_code=201)
async def import_invoice(
    payload: InvoiceImport,
    actor: dict = Depends(get_actor),
    manager: InvoiceLifecycleManager = Depends(get_invoice_manager)
):
    invoice = await manager.import_from_gateway(payload.external_gateway_id, actor, payload.project_id)
    return {"invoice": serialize_doc(invoice)}


@invoice_router.post("/sync")
async def sync_invoices(
    actor: dict = Depends(get_actor),
    job: ReconciliationJob = Depends(get_reconciliation_job)
):
    report = await job.run(actor)
    return report


@invoice_router.get("/{invoice_id}")
async def get_invoice(
    invoice_id: str,
    actor: dict = Depends(get_actor),
    manager: InvoiceLifecycleManager = Depends(get_invoice_manager)
):
    invoice = await manager.get(invoice_id, actor)
    return {"invoice": serialize_doc(invoice)}


@invoice_router.patch("/{invoice_id}")
async def update_invoice(
    invoice_id: str,
    payload: InvoiceUpdate,
    actor: dict = Depends(get_actor),
    manager: InvoiceLifecycleManager = Depends(get_invoice_manager)
):
    invoice = await manager.update(invoice_id, payload.dict(exclude_unset=True), actor)
    return {"invoice": serialize_doc(invoice)}


@invoice_router.delete("/{invoice_id}")
async def delete_invoice(
    invoice_id: str,
    actor: dict = Depends(get_actor),
    manager: InvoiceLifecycleManager = Depends(get_invoice_manager)
):
    await manager.delete(invoice_id, actor)
    return {"success": True}


@invoice_router.post("/{invoice_id}/send")
async def send_invoice(
    invoice_id: str,
    actor: dict = Depends(get_actor),
    manager: InvoiceLifecycleManager = Depends(get_invoice_manager)
):
    invoice = await manager.send(invoice_id, actor)
    return {"invoice": serialize_doc(invoice)}


@invoice_router.post("/{invoice_id}/void")
async def void_invoice(
    invoice_id: str,
    actor: dict = Depends(get_actor),
    manager: InvoiceLifecycleManager = Depends(get_invoice_manager)
):
    invoice = await manager.void(invoice_id, actor)
    return {"invoice": serialize_doc(invoice)}
