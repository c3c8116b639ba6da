"""
DELIVERABLE API ROUTES

- get / patch / delete
- submit, approve (or mark final), reject (feedback required)
- versions (list / create), comments (list / create), approval history

Client users only ever reach deliverables in review or later of their own
projects; the workflow enforces this.
"""

from fastapi import APIRouter, Depends

from dependencies import get_actor, get_deliverable_workflow
from engine.deliverable_workflow import DeliverableReviewWorkflow
from engine.documents import serialize_doc
from models import ApproveRequest, CommentCreate, DeliverableUpdate, RejectRequest, VersionCreate

deliverable_router = APIRouter(prefix="/api/deliverables", tags=["Deliverables"])


@deliverable_router.get("/{deliverable_id}")
async def get_deliverable(
    deliverable_id: str,
    actor: dict = Depends(get_actor),
    workflow: DeliverableReviewWorkflow = Depends(get_deliverable_workflow)
):
    deliverable = await workflow.get(deliverable_id, actor)
    return {"deliverable": serialize_doc(deliverable)}


@deliverable_router.patch("/{deliverable_id}")
async def update_deliverable(
    deliverable_id: str,
    payload: DeliverableUpdate,
    actor: dict = Depends(get_actor),
    workflow: DeliverableReviewWorkflow = Depends(get_deliverable_workflow)
):
    deliverable = await workflow.update(deliverable_id, payload.dict(exclude_unset=True), actor)
    return {"deliverable": serialize_doc(deliverable)}


@deliverable_router.delete("/{deliverable_id}")
async def delete_deliverable(
    deliverable_id: str,
    actor: dict = Depends(get_actor),
    workflow: DeliverableReviewWorkflow = Depends(get_deliverable_workflow)
):
    await workflow.delete(deliverable_id, actor)
    return {"success": True}


@deliverable_router.post("/{deliverable_id}/submit")
async def submit_deliverable(
    deliverable_id: str,
    actor: dict = Depends(get_actor),
    workflow: DeliverableReviewWorkflow = Depends(get_deliverable_workflow)
):
    deliverable = await workflow.submit(deliverable_id, actor)
    return {
        "success": True,
        "deliverable": serialize_doc(deliverable),
        "message": "Deliverable submitted for review"
    }


@deliverable_router.post("/{deliverable_id}/approve")
async def approve_deliverable(
    deliverable_id: str,
    payload: ApproveRequest,
    actor: dict = Depends(get_actor),
    workflow: DeliverableReviewWorkflow = Depends(get_deliverable_workflow)
):
    deliverable = await workflow.approve(
        deliverable_id, actor, feedback=payload.feedback, mark_final=payload.mark_final
    )
    return {
        "success": True,
        "deliverable": serialize_doc(deliverable),
        "message": "Deliverable marked as final" if payload.mark_final else "Deliverable approved"
    }


@deliverable_router.post("/{deliverable_id}/reject")
async def reject_deliverable(
    deliverable_id: str,
    payload: RejectRequest,
    actor: dict = Depends(get_actor),
    workflow: DeliverableReviewWorkflow = Depends(get_deliverable_workflow)
):
    deliverable = await workflow.reject(
        deliverable_id, actor, payload.feedback, request_changes=payload.request_changes
    )
    return {
        "success": True,
        "deliverable": serialize_doc(deliverable),
        "message": "Changes requested" if payload.request_changes else "Deliverable rejected"
    }


@deliverable_router.get("/{deliverable_id}/versions")
async def list_versions(
    deliverable_id: str,
    actor: dict = Depends(get_actor),
    workflow: DeliverableReviewWorkflow = Depends(get_deliverable_workflow)
):
    versions = await workflow.list_versions(deliverable_id, actor)
    return {"versions": [serialize_doc(v) for v in versions]}


@deliverable_router.post("/{deliverable_id}/versions", status_code=201)
async def create_version(
    deliverable_id: str,
    payload: VersionCreate,
    actor: dict = Depends(get_actor),
    workflow: DeliverableReviewWorkflow = Depends(get_deliverable_workflow)
):
    version = await workflow.create_version(
        deliverable_id, payload.file_url, actor, notes=payload.notes, thumbnail_url=payload.thumbnail_url
    )
    return {"success": True, "version": serialize_doc(version), "message": "New version created"}


@deliverable_router.get("/{deliverable_id}/comments")
async def list_comments(
    deliverable_id: str,
    actor: dict = Depends(get_actor),
    workflow: DeliverableReviewWorkflow = Depends(get_deliverable_workflow)
):
    comments = await workflow.list_comments(deliverable_id, actor)
    return {"comments": [serialize_doc(c) for c in comments]}


@deliverable_router.post("/{deliverable_id}/comments", status_code=201)
async def create_comment(
    deliverable_id: str,
    payload: CommentCreate,
    actor: dict = Depends(get_actor),
    workflow: DeliverableReviewWorkflow = Depends(get_deliverable_workflow)
):
    comment = await workflow.add_comment(
        deliverable_id, actor, payload.content, parent_id=payload.parent_id, is_internal=payload.is_internal
    )
    return {"comment": serialize_doc(comment)}


@deliverable_router.get("/{deliverable_id}/approvals")
async def list_approvals(
    deliverable_id: str,
    actor: dict = Depends(get_actor),
    workflow: DeliverableReviewWorkflow = Depends(get_deliverable_workflow)
):
    records = await workflow.list_approvals(deliverable_id, actor)
    return {"approvals": [serialize_doc(r) for r in records]}
