"""
Invoice number allocation.
"""
import asyncio

import pytest

from engine.atomic_numbering import SequenceAllocator


class TestSequenceAllocator:
    """Datastore-side counters"""

    @pytest.mark.asyncio
    async def test_first_number(self, db):
        allocator = SequenceAllocator(db)
        assert await allocator.next() == "INV-0001"
        assert await allocator.current_value() == 1

    @pytest.mark.asyncio
    async def test_continues_from_existing_counter(self, db):
        await db.document_sequences.insert_one({"_id": "invoice_number", "current_sequence": 10})
        allocator = SequenceAllocator(db)
        assert await allocator.next() == "INV-0011"

    @pytest.mark.asyncio
    async def test_concurrent_allocations_are_distinct(self, db):
        allocator = SequenceAllocator(db)
        numbers = await asyncio.gather(*[allocator.next() for _ in range(25)])
        assert len(set(numbers)) == 25
        assert await allocator.current_value() == 25

    @pytest.mark.asyncio
    async def test_numbers_not_reused_after_delete(self, db):
        """Deleting the invoice that consumed a number does not free it"""
        allocator = SequenceAllocator(db)
        first = await allocator.next()
        result = await db.invoices.insert_one({"invoice_number": first})
        await db.invoices.delete_one({"_id": result.inserted_id})
        assert await allocator.next() == "INV-0002"

    @pytest.mark.asyncio
    async def test_independent_sequences_and_format(self, db):
        allocator = SequenceAllocator(db, prefix="CN", width=6)
        assert await allocator.next("credit_note") == "CN-000001"
        assert await allocator.next("invoice_number") == "CN-000001"
        assert allocator.format_identifier(12345) == "CN-012345"
