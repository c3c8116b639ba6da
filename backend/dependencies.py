"""FastAPI dependency providers for the workflow services."""

from fastapi import Depends
from motor.motor_asyncio import AsyncIOMotorDatabase

import config
from auth import get_current_user
from database import get_db
from engine.activity_recorder import ActivityRecorder
from engine.atomic_numbering import SequenceAllocator
from engine.deliverable_workflow import DeliverableReviewWorkflow
from engine.errors import RateLimited
from engine.financial_summary import ProjectFinancialSummary
from engine.invoice_lifecycle import InvoiceLifecycleManager
from engine.payment_gateway import PaymentGateway, StripeGateway
from engine.rate_limiter import InMemoryCounterStore, MongoCounterStore, RateLimiter
from engine.reconciliation_job import ReconciliationJob
from engine.reimbursement_ledger import ReimbursementReturnLedger
from permissions import PermissionChecker

# Process-wide limiter for the in-memory backend
_memory_rate_limiter = RateLimiter(InMemoryCounterStore())


async def get_actor(
    current_user: dict = Depends(get_current_user),
    db: AsyncIOMotorDatabase = Depends(get_db)
) -> dict:
    return await PermissionChecker(db).get_authenticated_user(current_user)


def get_gateway() -> PaymentGateway:
    return StripeGateway(
        api_key=config.GATEWAY_API_KEY,
        base_url=config.GATEWAY_BASE_URL,
        timeout=config.GATEWAY_TIMEOUT_SECONDS
    )


def get_rate_limiter(db: AsyncIOMotorDatabase = Depends(get_db)) -> RateLimiter:
    if config.RATE_LIMIT_BACKEND == "mongo":
        return RateLimiter(MongoCounterStore(db))
    return _memory_rate_limiter


async def enforce_rate_limit(limiter: RateLimiter, actor: dict, action_class: str, limit: int):
    if not await limiter.allow(actor["user_id"], action_class, limit):
        raise RateLimited(
            "Too many requests. Please wait before trying again.",
            action=action_class,
            retry_after_seconds=int(limiter.window_seconds)
        )


def get_invoice_manager(
    db: AsyncIOMotorDatabase = Depends(get_db),
    gateway: PaymentGateway = Depends(get_gateway)
) -> InvoiceLifecycleManager:
    return InvoiceLifecycleManager(
        db,
        gateway,
        sequence_allocator=SequenceAllocator(db, prefix=config.INVOICE_NUMBER_PREFIX),
        activity=ActivityRecorder(db),
        default_currency=config.DEFAULT_CURRENCY
    )


def get_reconciliation_job(
    db: AsyncIOMotorDatabase = Depends(get_db),
    gateway: PaymentGateway = Depends(get_gateway)
) -> ReconciliationJob:
    return ReconciliationJob(db, gateway, ActivityRecorder(db))


def get_deliverable_workflow(db: AsyncIOMotorDatabase = Depends(get_db)) -> DeliverableReviewWorkflow:
    return DeliverableReviewWorkflow(db, ActivityRecorder(db))


def get_ledger(db: AsyncIOMotorDatabase = Depends(get_db)) -> ReimbursementReturnLedger:
    return ReimbursementReturnLedger(db, ActivityRecorder(db))


def get_activity(db: AsyncIOMotorDatabase = Depends(get_db)) -> ActivityRecorder:
    return ActivityRecorder(db)


def get_financial_summary(db: AsyncIOMotorDatabase = Depends(get_db)) -> ProjectFinancialSummary:
    return ProjectFinancialSummary(db)
