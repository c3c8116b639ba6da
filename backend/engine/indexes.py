"""
Index bootstrap.

The unique indexes here are the datastore-side half of several guarantees:
- invoices.invoice_number            one invoice per allocated number
- invoices.external_gateway_id       one local invoice per gateway invoice (sparse)
- payments.settlement_key            one succeeded payment per invoice (sparse)
- deliverable_versions               one row per (deliverable_id, version_number)
"""

import logging

from motor.motor_asyncio import AsyncIOMotorDatabase

logger = logging.getLogger(__name__)


async def ensure_indexes(db: AsyncIOMotorDatabase):
    """Create all indexes; safe to call on every startup."""
    await db.invoices.create_index("invoice_number", unique=True, name="uniq_invoice_number")
    await db.invoices.create_index(
        "external_gateway_id", unique=True, sparse=True, name="uniq_invoice_external_gateway_id"
    )
    await db.invoices.create_index([("status", 1), ("created_at", -1)])
    await db.invoices.create_index("client_id")
    await db.invoices.create_index("project_id")

    await db.payments.create_index("settlement_key", unique=True, sparse=True, name="uniq_payment_settlement")
    await db.payments.create_index([("invoice_id", 1), ("status", 1)])

    await db.deliverables.create_index([("project_id", 1), ("status", 1)])
    await db.deliverable_versions.create_index(
        [("deliverable_id", 1), ("version_number", 1)], unique=True, name="uniq_deliverable_version"
    )
    await db.comments.create_index([("deliverable_id", 1), ("created_at", 1)])
    await db.approval_records.create_index("deliverable_id")

    await db.reimbursements.create_index([("project_id", 1), ("status", 1)])
    await db.returns.create_index([("project_id", 1), ("status", 1)])

    await db.milestones.create_index("project_id")
    await db.clients.create_index("gateway_customer_id", sparse=True)
    await db.activity_feed.create_index([("project_id", 1), ("created_at", -1)])

    logger.info("[INDEXES] Workflow indexes ensured")
