"""
DELIVERABLE REVIEW WORKFLOW

Lifecycle: draft -> in_review -> approved | rejected -> final
- submit:          draft -> in_review (agency)
- approve:         in_review -> approved (review policy); approved -> final with mark_final (agency)
- reject:          in_review -> rejected, feedback mandatory; request_changes flags a soft rejection
- create_version:  uploads a new file, resets to draft (never from approved/final)

Client visibility is enforced here, not by callers:
- only deliverables in CLIENT_VISIBLE_STATUSES of the client's own projects
- internal comments are never returned to client actors
Anything a client may not see is reported as NotFound.
"""

from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple
import logging

from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError

from .activity_recorder import ActivityRecorder
from .documents import parse_object_id
from .errors import Conflict, NotFound, ValidationError
from .policy import can, is_agency, is_client, require
from .projects import load_project
from .state_machine import apply_transition, transition_guards

logger = logging.getLogger(__name__)

DELIVERABLE_TYPES = ("image", "video", "audio", "document", "text")
CLIENT_VISIBLE_STATUSES = frozenset({"in_review", "approved", "rejected", "final"})

UPDATABLE_FIELDS = (
    "title", "description", "file_url", "thumbnail_url",
    "draft_url", "draft_platform", "final_url", "final_platform", "notes",
)

VERSION_INSERT_ATTEMPTS = 5


class DeliverableReviewWorkflow:
    """Deliverable CRUD, review transitions, versions and comments"""

    def __init__(self, db: AsyncIOMotorDatabase, activity: Optional[ActivityRecorder] = None):
        self.db = db
        self.activity = activity or ActivityRecorder(db)
        self.guard = transition_guards.get("deliverable")

    # =========================================================================
    # VISIBILITY
    # =========================================================================

    async def _load(self, deliverable_id: Any, actor: Dict[str, Any]) -> Tuple[Dict[str, Any], Dict[str, Any]]:
        """Fetch a deliverable and its project, hiding what the actor may not see."""
        deliverable = await self.db.deliverables.find_one(
            {"_id": parse_object_id(deliverable_id, "Deliverable")}
        )
        if not deliverable:
            raise NotFound("Deliverable not found")

        try:
            project = await load_project(self.db, deliverable["project_id"], actor)
        except NotFound:
            raise NotFound("Deliverable not found")

        if is_client(actor) and deliverable.get("status") not in CLIENT_VISIBLE_STATUSES:
            raise NotFound("Deliverable not found")
        return deliverable, project

    async def _record(
        self,
        deliverable: Dict[str, Any],
        actor: Dict[str, Any],
        activity_type: str,
        metadata: Optional[Dict[str, Any]] = None,
        is_client_visible: bool = True
    ):
        payload = {"title": deliverable.get("title")}
        payload.update(metadata or {})
        await self.activity.record(
            deliverable["project_id"], actor.get("user_id"), activity_type,
            "deliverable", deliverable["_id"], payload, is_client_visible
        )

    # =========================================================================
    # CRUD
    # =========================================================================

    async def create(self, project_id: Any, data: Dict[str, Any], actor: Dict[str, Any]) -> Dict[str, Any]:
        require(actor, "deliverable.create")
        project = await load_project(self.db, project_id, actor)

        title = (data.get("title") or "").strip()
        if not title:
            raise ValidationError("title is required", field="title")
        deliverable_type = data.get("type")
        if deliverable_type not in DELIVERABLE_TYPES:
            raise ValidationError(f"type must be one of {list(DELIVERABLE_TYPES)}", field="type")

        now = datetime.utcnow()
        file_url = data.get("file_url")
        deliverable = {
            "project_id": str(project["_id"]),
            "title": title,
            "description": data.get("description"),
            "type": deliverable_type,
            "file_url": file_url,
            "thumbnail_url": data.get("thumbnail_url"),
            "status": "draft",
            "requested_changes": False,
            "current_version": 1 if file_url else 0,
            "state_history": [],
            "created_by": actor.get("user_id"),
            "created_at": now,
            "updated_at": now,
        }
        result = await self.db.deliverables.insert_one(deliverable)
        deliverable["_id"] = result.inserted_id

        if file_url:
            await self.db.deliverable_versions.insert_one({
                "deliverable_id": str(deliverable["_id"]),
                "version_number": 1,
                "file_url": file_url,
                "thumbnail_url": data.get("thumbnail_url"),
                "notes": "Initial version",
                "created_by": actor.get("user_id"),
                "created_at": now,
            })

        logger.info(f"[DELIVERABLE] Created {deliverable['_id']} '{title}' in project {deliverable['project_id']}")
        await self._record(deliverable, actor, "deliverable_created", {"type": deliverable_type}, is_client_visible=False)
        return deliverable

    async def get(self, deliverable_id: Any, actor: Dict[str, Any]) -> Dict[str, Any]:
        require(actor, "deliverable.read")
        deliverable, _ = await self._load(deliverable_id, actor)
        return deliverable

    async def list_for_project(
        self,
        project_id: Any,
        actor: Dict[str, Any],
        status: Optional[str] = None
    ) -> List[Dict[str, Any]]:
        require(actor, "deliverable.read")
        project = await load_project(self.db, project_id, actor)

        query: Dict[str, Any] = {"project_id": str(project["_id"])}
        if is_client(actor):
            visible = sorted(CLIENT_VISIBLE_STATUSES)
            if status and status not in CLIENT_VISIBLE_STATUSES:
                return []
            query["status"] = status if status else {"$in": visible}
        elif status:
            query["status"] = status

        return await self.db.deliverables.find(query).sort("created_at", -1).to_list(length=None)

    async def update(self, deliverable_id: Any, data: Dict[str, Any], actor: Dict[str, Any]) -> Dict[str, Any]:
        """
        Patch whitelisted fields. A `status` in the patch goes through the
        transition guard; unknown fields are ignored.
        """
        require(actor, "deliverable.update")
        deliverable, _ = await self._load(deliverable_id, actor)

        updates = {key: data[key] for key in UPDATABLE_FIELDS if key in data}
        if "title" in updates and not (updates["title"] or "").strip():
            raise ValidationError("title cannot be empty", field="title")

        requested_status = data.get("status")
        if requested_status and requested_status != deliverable["status"]:
            updated = await apply_transition(
                self.db.deliverables, deliverable, requested_status, self.guard,
                extra_fields=updates, actor_id=actor.get("user_id")
            )
            await self._record(
                deliverable, actor, "deliverable_updated",
                {"status": requested_status}, is_client_visible=requested_status in CLIENT_VISIBLE_STATUSES
            )
            return updated

        if not updates:
            return deliverable

        updates["updated_at"] = datetime.utcnow()
        updated = await self.db.deliverables.find_one_and_update(
            {"_id": deliverable["_id"]},
            {"$set": updates},
            return_document=ReturnDocument.AFTER
        )
        if updated is None:
            raise NotFound("Deliverable not found")
        logger.info(f"[DELIVERABLE] Updated {deliverable['_id']}: {sorted(updates)}")
        return updated

    async def delete(self, deliverable_id: Any, actor: Dict[str, Any]) -> None:
        """Delete a deliverable together with its versions, comments and approval records."""
        require(actor, "deliverable.delete")
        deliverable, _ = await self._load(deliverable_id, actor)
        key = str(deliverable["_id"])

        await self.db.deliverable_versions.delete_many({"deliverable_id": key})
        await self.db.comments.delete_many({"deliverable_id": key})
        await self.db.approval_records.delete_many({"deliverable_id": key})
        await self.db.deliverables.delete_one({"_id": deliverable["_id"]})

        logger.info(f"[DELIVERABLE] Deleted {key} '{deliverable.get('title')}'")
        await self._record(deliverable, actor, "deliverable_deleted", is_client_visible=False)

    # =========================================================================
    # REVIEW TRANSITIONS
    # =========================================================================

    async def submit(self, deliverable_id: Any, actor: Dict[str, Any]) -> Dict[str, Any]:
        require(actor, "deliverable.submit")
        deliverable, _ = await self._load(deliverable_id, actor)

        updated = await apply_transition(
            self.db.deliverables, deliverable, "in_review", self.guard,
            extra_fields={"requested_changes": False},
            actor_id=actor.get("user_id")
        )
        await self._record(deliverable, actor, "deliverable_submitted", {"version": deliverable.get("current_version")})
        return updated

    async def _record_review(
        self,
        deliverable: Dict[str, Any],
        actor: Dict[str, Any],
        action: str,
        feedback: Optional[str]
    ):
        """Approval record (always) plus a feedback comment (when feedback was given)."""
        now = datetime.utcnow()
        key = str(deliverable["_id"])
        await self.db.approval_records.insert_one({
            "deliverable_id": key,
            "user_id": actor.get("user_id"),
            "action": action,
            "feedback": feedback,
            "version_number": deliverable.get("current_version"),
            "created_at": now,
        })
        if feedback:
            await self.db.comments.insert_one({
                "deliverable_id": key,
                "user_id": actor.get("user_id"),
                "parent_id": None,
                "content": feedback,
                "is_internal": False,
                "kind": "review_feedback",
                "review_action": action,
                "created_at": now,
            })

    async def approve(
        self,
        deliverable_id: Any,
        actor: Dict[str, Any],
        feedback: Optional[str] = None,
        mark_final: bool = False
    ) -> Dict[str, Any]:
        """
        Approve a deliverable in review, or with mark_final promote an approved
        deliverable to final (agency only).
        """
        deliverable, _ = await self._load(deliverable_id, actor)

        if mark_final:
            require(actor, "deliverable.finalize")
            updated = await apply_transition(
                self.db.deliverables, deliverable, "final", self.guard, actor_id=actor.get("user_id")
            )
            await self._record(deliverable, actor, "deliverable_finalized", {"status": "final"})
            return updated

        require(actor, "deliverable.review")
        updated = await apply_transition(
            self.db.deliverables, deliverable, "approved", self.guard,
            extra_fields={"requested_changes": False},
            actor_id=actor.get("user_id"),
            metadata={"feedback": feedback} if feedback else None
        )
        await self._record_review(deliverable, actor, "approved", feedback)
        await self._record(deliverable, actor, "deliverable_approved", {"action": "approved", "feedback": feedback})
        return updated

    async def reject(
        self,
        deliverable_id: Any,
        actor: Dict[str, Any],
        feedback: Optional[str],
        request_changes: bool = False
    ) -> Dict[str, Any]:
        """Reject a deliverable in review. Feedback is mandatory for every role."""
        if not feedback or not str(feedback).strip():
            raise ValidationError("Feedback is required when rejecting a deliverable", field="feedback")
        feedback = str(feedback).strip()

        deliverable, _ = await self._load(deliverable_id, actor)
        require(actor, "deliverable.review")

        action = "requested_changes" if request_changes else "rejected"
        updated = await apply_transition(
            self.db.deliverables, deliverable, "rejected", self.guard,
            extra_fields={"requested_changes": bool(request_changes)},
            actor_id=actor.get("user_id"),
            metadata={"feedback": feedback, "action": action}
        )
        await self._record_review(deliverable, actor, action, feedback)
        await self._record(
            deliverable, actor,
            "deliverable_changes_requested" if request_changes else "deliverable_rejected",
            {"action": action, "feedback": feedback}
        )
        return updated

    async def list_approvals(self, deliverable_id: Any, actor: Dict[str, Any]) -> List[Dict[str, Any]]:
        require(actor, "deliverable.read")
        deliverable, _ = await self._load(deliverable_id, actor)
        return await self.db.approval_records.find(
            {"deliverable_id": str(deliverable["_id"])}
        ).sort("created_at", 1).to_list(length=None)

    # =========================================================================
    # VERSIONS
    # =========================================================================

    async def _insert_next_version(self, deliverable_key: str, version: Dict[str, Any]) -> Dict[str, Any]:
        """Insert at max(version_number) + 1; the unique index turns a race into a retry."""
        for _ in range(VERSION_INSERT_ATTEMPTS):
            latest = await self.db.deliverable_versions.find_one(
                {"deliverable_id": deliverable_key}, sort=[("version_number", -1)]
            )
            doc = dict(version)
            doc["version_number"] = (latest["version_number"] if latest else 0) + 1
            try:
                result = await self.db.deliverable_versions.insert_one(doc)
            except DuplicateKeyError:
                logger.warning(f"[DELIVERABLE] Version number race on {deliverable_key}, retrying")
                continue
            doc["_id"] = result.inserted_id
            return doc
        raise Conflict("Could not allocate a version number; retry")

    async def create_version(
        self,
        deliverable_id: Any,
        file_url: Optional[str],
        actor: Dict[str, Any],
        notes: Optional[str] = None,
        thumbnail_url: Optional[str] = None
    ) -> Dict[str, Any]:
        """Upload a new version. The deliverable returns to draft for another review round."""
        require(actor, "deliverable.version")
        if not file_url:
            raise ValidationError("File URL is required", field="file_url")
        deliverable, _ = await self._load(deliverable_id, actor)

        status = deliverable["status"]
        if status != "draft":
            self.guard.validate_transition(status, "draft")

        key = str(deliverable["_id"])
        version = await self._insert_next_version(key, {
            "deliverable_id": key,
            "file_url": file_url,
            "thumbnail_url": thumbnail_url,
            "notes": notes,
            "created_by": actor.get("user_id"),
            "created_at": datetime.utcnow(),
        })

        fields = {
            "current_version": version["version_number"],
            "file_url": file_url,
            "thumbnail_url": thumbnail_url,
            "requested_changes": False,
        }
        try:
            if status == "draft":
                fields["updated_at"] = datetime.utcnow()
                updated = await self.db.deliverables.find_one_and_update(
                    {"_id": deliverable["_id"], "status": "draft"}, {"$set": fields}
                )
                if updated is None:
                    raise Conflict("Deliverable status changed while the version was uploaded; retry")
            else:
                await apply_transition(
                    self.db.deliverables, deliverable, "draft", self.guard,
                    extra_fields=fields, actor_id=actor.get("user_id"),
                    metadata={"version": version["version_number"]}
                )
        except Conflict:
            await self.db.deliverable_versions.delete_one({"_id": version["_id"]})
            raise

        logger.info(f"[DELIVERABLE] {key} now at version {version['version_number']}")
        await self._record(
            deliverable, actor, "deliverable_version_uploaded",
            {"version": version["version_number"]}, is_client_visible=False
        )
        return version

    async def list_versions(self, deliverable_id: Any, actor: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Versions newest first."""
        require(actor, "deliverable.read")
        deliverable, _ = await self._load(deliverable_id, actor)
        return await self.db.deliverable_versions.find(
            {"deliverable_id": str(deliverable["_id"])}
        ).sort("version_number", -1).to_list(length=None)

    # =========================================================================
    # COMMENTS
    # =========================================================================

    async def add_comment(
        self,
        deliverable_id: Any,
        actor: Dict[str, Any],
        content: Optional[str],
        parent_id: Optional[str] = None,
        is_internal: bool = False
    ) -> Dict[str, Any]:
        """
        Add a comment or a reply to a top-level comment. Only agency actors can
        mark a comment internal; for anyone else the flag is dropped.
        """
        require(actor, "comment.create")
        if not content or not content.strip():
            raise ValidationError("Content is required", field="content")
        deliverable, _ = await self._load(deliverable_id, actor)
        key = str(deliverable["_id"])

        internal = bool(is_internal) and can(actor, "comment.internal")

        if parent_id:
            parent = await self.db.comments.find_one({"_id": parse_object_id(parent_id, "Parent comment")})
            if not parent or parent.get("deliverable_id") != key or (parent.get("is_internal") and not is_agency(actor)):
                raise NotFound("Parent comment not found")
            if parent.get("parent_id"):
                raise ValidationError("Replies can only be added to top-level comments", field="parent_id")

        comment = {
            "deliverable_id": key,
            "user_id": actor.get("user_id"),
            "parent_id": parent_id or None,
            "content": content.strip(),
            "is_internal": internal,
            "kind": "comment",
            "created_at": datetime.utcnow(),
        }
        result = await self.db.comments.insert_one(comment)
        comment["_id"] = result.inserted_id

        await self.activity.record(
            deliverable["project_id"], actor.get("user_id"), "comment_added", "comment", comment["_id"],
            {"deliverable_id": key, "deliverable_title": deliverable.get("title"), "is_internal": internal},
            is_client_visible=not internal
        )
        return comment

    async def list_comments(self, deliverable_id: Any, actor: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Comments oldest first; internal comments are removed for client actors."""
        require(actor, "deliverable.read")
        deliverable, _ = await self._load(deliverable_id, actor)

        query: Dict[str, Any] = {"deliverable_id": str(deliverable["_id"])}
        if not is_agency(actor):
            query["is_internal"] = False
        return await self.db.comments.find(query).sort("created_at", 1).to_list(length=None)
