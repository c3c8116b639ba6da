"""
REIMBURSEMENT & RETURN API ROUTES

PATCH bodies are filtered to each ledger's whitelist; status changes are
checked against the ledger's transition table.
"""

from fastapi import APIRouter, Depends, Query
from typing import Optional

from dependencies import get_actor, get_ledger
from engine.documents import serialize_doc
from engine.reimbursement_ledger import ReimbursementReturnLedger
from models import ReimbursementCreate, ReimbursementUpdate, ReturnCreate, ReturnUpdate

reimbursement_router = APIRouter(prefix="/api/reimbursements", tags=["Reimbursements"])
return_router = APIRouter(prefix="/api/returns", tags=["Returns"])


# =============================================================================
# REIMBURSEMENTS
# =============================================================================

@reimbursement_router.get("")
async def list_reimbursements(
    project_id: Optional[str] = Query(None),
    status: Optional[str] = Query(None),
    person_name: Optional[str] = Query(None),
    actor: dict = Depends(get_actor),
    ledger: ReimbursementReturnLedger = Depends(get_ledger)
):
    entries = await ledger.reimbursements.list(
        actor, project_id=project_id, status=status, person_name=person_name
    )
    return {"reimbursements": [serialize_doc(e) for e in entries]}


@reimbursement_router.post("", status_code=201)
async def create_reimbursement(
    payload: ReimbursementCreate,
    actor: dict = Depends(get_actor),
    ledger: ReimbursementReturnLedger = Depends(get_ledger)
):
    entry = await ledger.reimbursements.create(payload.dict(exclude_unset=True), actor)
    return {"reimbursement": serialize_doc(entry)}


@reimbursement_router.get("/{reimbursement_id}")
async def get_reimbursement(
    reimbursement_id: str,
    actor: dict = Depends(get_actor),
    ledger: ReimbursementReturnLedger = Depends(get_ledger)
):
    entry = await ledger.reimbursements.get(reimbursement_id, actor)
    return {"reimbursement": serialize_doc(entry)}


@reimbursement_router.patch("/{reimbursement_id}")
async def update_reimbursement(
    reimbursement_id: str,
    payload: ReimbursementUpdate,
    actor: dict = Depends(get_actor),
    ledger: ReimbursementReturnLedger = Depends(get_ledger)
):
    entry = await ledger.reimbursements.update(reimbursement_id, payload.dict(exclude_unset=True), actor)
    return {"reimbursement": serialize_doc(entry)}


@reimbursement_router.delete("/{reimbursement_id}")
async def delete_reimbursement(
    reimbursement_id: str,
    actor: dict = Depends(get_actor),
    ledger: ReimbursementReturnLedger = Depends(get_ledger)
):
    await ledger.reimbursements.delete(reimbursement_id, actor)
    return {"success": True}


# =============================================================================
# RETURNS
# =============================================================================

@return_router.get("")
async def list_returns(
    project_id: Optional[str] = Query(None),
    status: Optional[str] = Query(None),
    vendor: Optional[str] = Query(None),
    actor: dict = Depends(get_actor),
    ledger: ReimbursementReturnLedger = Depends(get_ledger)
):
    entries = await ledger.returns.list(actor, project_id=project_id, status=status, vendor=vendor)
    return {"returns": [serialize_doc(e) for e in entries]}


@return_router.post("", status_code=201)
async def create_return(
    payload: ReturnCreate,
    actor: dict = Depends(get_actor),
    ledger: ReimbursementReturnLedger = Depends(get_ledger)
):
    entry = await ledger.returns.create(payload.dict(exclude_unset=True), actor)
    return {"return": serialize_doc(entry)}


@return_router.get("/{return_id}")
async def get_return(
    return_id: str,
    actor: dict = Depends(get_actor),
    ledger: ReimbursementReturnLedger = Depends(get_ledger)
):
    entry = await ledger.returns.get(return_id, actor)
    return {"return": serialize_doc(entry)}


@return_router.patch("/{return_id}")
async def update_return(
    return_id: str,
    payload: ReturnUpdate,
    actor: dict = Depends(get_actor),
    ledger: ReimbursementReturnLedger = Depends(get_ledger)
):
    entry = await ledger.returns.update(return_id, payload.dict(exclude_unset=True), actor)
    return {"return": serialize_doc(entry)}


@return_router.delete("/{return_id}")
async def delete_return(
    return_id: str,
    actor: dict = Depends(get_actor),
    ledger: ReimbursementReturnLedger = Depends(get_ledger)
):
    await ledger.returns.delete(return_id, actor)
    return {"success": True}
