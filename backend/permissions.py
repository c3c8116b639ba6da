from motor.motor_asyncio import AsyncIOMotorDatabase
from bson import ObjectId
import logging

from engine.errors import Forbidden, Unauthenticated
from engine.policy import ALL_ROLES, CLIENT

logger = logging.getLogger(__name__)

class PermissionChecker:
    """
    Resolves the acting user for a request.

    RULES:
    1. User must be authenticated
    2. User must have active_status = TRUE
    3. Role must be one of admin / member / client
    4. A client user must be linked to a client record

    What the actor may do is decided by engine.policy, not here.
    """

    def __init__(self, db: AsyncIOMotorDatabase):
        self.db = db

    async def get_authenticated_user(self, current_user: dict) -> dict:
        """Get and validate authenticated user"""
        user_id = current_user.get("user_id")

        if not user_id or not ObjectId.is_valid(str(user_id)):
            raise Unauthenticated("Invalid authentication credentials")

        # Fetch user from database
        user = await self.db.users.find_one({"_id": ObjectId(user_id)})

        if not user:
            raise Unauthenticated("User not found")

        # Check active status
        if not user.get("active_status", False):
            raise Forbidden("User account is inactive")

        if user.get("role") not in ALL_ROLES:
            logger.warning(f"[AUTH] User {user_id} has unknown role '{user.get('role')}'")
            raise Forbidden("User role is not permitted")

        if user["role"] == CLIENT and not user.get("client_id"):
            raise Forbidden("Client user is not linked to a client")

        # Convert _id to user_id for consistency
        user["user_id"] = str(user.pop("_id"))
        if user.get("client_id") is not None:
            user["client_id"] = str(user["client_id"])

        return user
