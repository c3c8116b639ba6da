from typing import Any, Dict

from motor.motor_asyncio import AsyncIOMotorDatabase

from .documents import parse_object_id
from .errors import NotFound
from .policy import owns


async def load_project(db: AsyncIOMotorDatabase, project_id: Any, actor: Dict[str, Any]) -> Dict[str, Any]:
    """
    Fetch a project the actor may see.

    A client actor asking for another client's project gets NotFound, so the
    response does not reveal that the project exists.
    """
    project = await db.projects.find_one({"_id": parse_object_id(project_id, "Project")})
    if not project or not owns(actor, project):
        raise NotFound("Project not found")
    return project
