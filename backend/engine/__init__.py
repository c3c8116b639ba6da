"""
Agency workflow engine: guarded status lifecycles, money arithmetic and
gateway reconciliation for invoices, deliverables, reimbursements and returns.
"""
from .errors import (
    WorkflowError,
    ValidationError,
    Unauthenticated,
    Forbidden,
    NotFound,
    LifecycleViolation,
    InvalidTransition,
    Conflict,
    RateLimited,
    UpstreamError
)

from .state_machine import (
    StatusTransitionGuard,
    TransitionDecision,
    transition_guards,
    apply_transition
)

from .atomic_numbering import SequenceAllocator

from .activity_recorder import ActivityRecorder

from .payment_gateway import (
    PaymentGateway,
    StripeGateway,
    GatewayInvoice,
    GatewayLine
)

from .invoice_lifecycle import InvoiceLifecycleManager

from .deliverable_workflow import DeliverableReviewWorkflow

from .reimbursement_ledger import (
    ReimbursementReturnLedger,
    ReimbursementLedger,
    ReturnLedger
)

from .reconciliation_job import ReconciliationJob

from .rate_limiter import (
    RateLimiter,
    CounterStore,
    InMemoryCounterStore,
    MongoCounterStore
)

from .financial_summary import ProjectFinancialSummary

from .indexes import ensure_indexes

__all__ = [
    # Errors
    'WorkflowError',
    'ValidationError',
    'Unauthenticated',
    'Forbidden',
    'NotFound',
    'LifecycleViolation',
    'InvalidTransition',
    'Conflict',
    'RateLimited',
    'UpstreamError',
    # Transition guard
    'StatusTransitionGuard',
    'TransitionDecision',
    'transition_guards',
    'apply_transition',
    # Numbering
    'SequenceAllocator',
    # Activity
    'ActivityRecorder',
    # Gateway
    'PaymentGateway',
    'StripeGateway',
    'GatewayInvoice',
    'GatewayLine',
    # Workflows
    'InvoiceLifecycleManager',
    'DeliverableReviewWorkflow',
    'ReimbursementReturnLedger',
    'ReimbursementLedger',
    'ReturnLedger',
    'ReconciliationJob',
    'ProjectFinancialSummary',
    # Rate limiting
    'RateLimiter',
    'CounterStore',
    'InMemoryCounterStore',
    'MongoCounterStore',
    # Bootstrap
    'ensure_indexes',
]
