from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple
import logging

from motor.motor_asyncio import AsyncIOMotorDatabase

from .policy import is_client

logger = logging.getLogger(__name__)


class ActivityRecorder:
    """Append-only activity feed shared by every workflow component"""

    def __init__(self, db: AsyncIOMotorDatabase):
        self.db = db
        self.collection = db.activity_feed

    async def record(
        self,
        project_id: Optional[str],
        actor_id: Optional[str],
        activity_type: str,
        entity_type: str,
        entity_id: Any,
        metadata: Optional[Dict[str, Any]] = None,
        is_client_visible: bool = False
    ):
        """
        Append an activity entry (INSERT ONLY).

        A failing feed write is logged and does not undo the mutation that
        produced it.
        """
        try:
            entry = {
                "project_id": project_id,
                "user_id": actor_id,
                "activity_type": activity_type,
                "entity_type": entity_type,
                "entity_id": str(entity_id) if entity_id is not None else None,
                "metadata": metadata or {},
                "is_client_visible": is_client_visible,
                "created_at": datetime.utcnow()
            }

            await self.collection.insert_one(entry)
            logger.info(f"[ACTIVITY] {activity_type} on {entity_type}:{entity_id} by user:{actor_id}")
        except Exception as e:
            logger.error(f"[ACTIVITY] Failed to record {activity_type} on {entity_type}:{entity_id}: {str(e)}")

    async def list_for_project(
        self,
        project_id: str,
        actor: Dict[str, Any],
        limit: int = 20,
        offset: int = 0
    ) -> Tuple[List[Dict[str, Any]], int]:
        """
        Newest-first page of a project's feed plus the total entry count.
        Client actors only ever see client-visible entries.
        """
        query: Dict[str, Any] = {"project_id": project_id}
        if is_client(actor):
            query["is_client_visible"] = True

        cursor = self.collection.find(query).sort("created_at", -1).skip(offset).limit(limit)
        entries = await cursor.to_list(length=limit)
        total = await self.collection.count_documents(query)
        return entries, total
