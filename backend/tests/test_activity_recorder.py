"""
Activity feed recording and paging.
"""
from datetime import datetime, timedelta

import pytest

from engine.activity_recorder import ActivityRecorder


class BrokenCollection:
    async def insert_one(self, doc):
        raise RuntimeError("write concern timeout")


class TestActivityRecorder:

    @pytest.mark.asyncio
    async def test_client_sees_only_visible_entries(self, db, admin, client_actor):
        recorder = ActivityRecorder(db)
        await recorder.record("p1", admin["user_id"], "invoice_created", "invoice", "i1")
        await recorder.record("p1", admin["user_id"], "invoice_sent", "invoice", "i1", is_client_visible=True)
        await recorder.record("p2", admin["user_id"], "invoice_sent", "invoice", "i2", is_client_visible=True)

        entries, total = await recorder.list_for_project("p1", client_actor)
        assert total == 1
        assert entries[0]["activity_type"] == "invoice_sent"

        entries, total = await recorder.list_for_project("p1", admin)
        assert total == 2

    @pytest.mark.asyncio
    async def test_newest_first_paging(self, db, admin):
        base = datetime(2026, 1, 1)
        await db.activity_feed.insert_many([
            {"project_id": "p1", "activity_type": f"event_{n}", "is_client_visible": True,
             "created_at": base + timedelta(minutes=n)}
            for n in range(5)
        ])
        recorder = ActivityRecorder(db)

        entries, total = await recorder.list_for_project("p1", admin, limit=2, offset=1)

        assert total == 5
        assert [e["activity_type"] for e in entries] == ["event_3", "event_2"]

    @pytest.mark.asyncio
    async def test_failed_write_does_not_raise(self, db, admin):
        recorder = ActivityRecorder(db)
        recorder.collection = BrokenCollection()
        await recorder.record("p1", admin["user_id"], "invoice_created", "invoice", "i1")
