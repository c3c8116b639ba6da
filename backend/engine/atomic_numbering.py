"""
ATOMIC SEQUENCE ALLOCATION

Provides:
1. Datastore-side atomic increment-and-read (findOneAndUpdate + $inc)
2. Human-readable identifiers with a fixed prefix (INV-0001, INV-0002, ...)
3. Numbers are never reused, even if the consuming document is deleted

The counter is never computed client-side from the last stored document, so
concurrent callers always receive distinct values.
"""

from datetime import datetime
import logging

from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo import ReturnDocument

logger = logging.getLogger(__name__)


class SequenceAllocator:
    """
    Atomic sequence generator backed by the `document_sequences` collection.

    One counter document per sequence name; the increment is performed by the
    datastore in a single operation.
    """

    def __init__(self, db: AsyncIOMotorDatabase, prefix: str = "INV", width: int = 4):
        self.db = db
        self.prefix = prefix
        self.width = width

    async def next_value(self, sequence_name: str) -> int:
        """
        Increment the named counter and return the NEW value.

        The first call for a sequence creates the counter and returns 1.
        """
        result = await self.db.document_sequences.find_one_and_update(
            {"_id": sequence_name},
            {
                "$inc": {"current_sequence": 1},
                "$set": {"updated_at": datetime.utcnow()},
                "$setOnInsert": {"created_at": datetime.utcnow()}
            },
            upsert=True,
            return_document=ReturnDocument.AFTER
        )
        return result["current_sequence"]

    def format_identifier(self, sequence: int) -> str:
        return f"{self.prefix}-{sequence:0{self.width}d}"

    async def next(self, sequence_name: str = "invoice_number") -> str:
        """Allocate the next identifier, e.g. INV-0011."""
        sequence = await self.next_value(sequence_name)
        identifier = self.format_identifier(sequence)
        logger.info(f"[SEQUENCE] Allocated {identifier} from '{sequence_name}'")
        return identifier

    async def current_value(self, sequence_name: str = "invoice_number") -> int:
        """Last allocated value (0 when nothing was allocated yet)."""
        doc = await self.db.document_sequences.find_one({"_id": sequence_name})
        return doc["current_sequence"] if doc else 0
