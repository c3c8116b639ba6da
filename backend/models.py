from pydantic import BaseModel
from typing import Optional, List

# Request bodies only. Business validation (amount ranges, dates, line-item
# arithmetic, lifecycle rules) lives in the engine so every caller gets it.

# ============================================
# INVOICE MODELS
# ============================================
class LineItemInput(BaseModel):
    description: Optional[str] = None
    quantity: float = 1
    unit_price: Optional[float] = None
    total: Optional[float] = None

class InvoiceCreate(BaseModel):
    client_id: Optional[str] = None
    project_id: Optional[str] = None
    milestone_id: Optional[str] = None
    invoice_type: str = "custom"
    amount: Optional[float] = None
    tax_amount: float = 0
    currency: Optional[str] = None
    due_date: Optional[str] = None
    line_items: List[LineItemInput] = []
    notes: Optional[str] = None

class InvoiceUpdate(BaseModel):
    amount: Optional[float] = None
    tax_amount: Optional[float] = None
    due_date: Optional[str] = None
    line_items: Optional[List[LineItemInput]] = None
    notes: Optional[str] = None

class InvoiceImport(BaseModel):
    external_gateway_id: Optional[str] = None
    project_id: Optional[str] = None

# ============================================
# DELIVERABLE MODELS
# ============================================
class DeliverableCreate(BaseModel):
    title: Optional[str] = None
    description: Optional[str] = None
    type: Optional[str] = None
    file_url: Optional[str] = None
    thumbnail_url: Optional[str] = None

class DeliverableUpdate(BaseModel):
    title: Optional[str] = None
    description: Optional[str] = None
    file_url: Optional[str] = None
    thumbnail_url: Optional[str] = None
    draft_url: Optional[str] = None
    draft_platform: Optional[str] = None
    final_url: Optional[str] = None
    final_platform: Optional[str] = None
    notes: Optional[str] = None
    status: Optional[str] = None

class ApproveRequest(BaseModel):
    feedback: Optional[str] = None
    mark_final: bool = False

class RejectRequest(BaseModel):
    feedback: Optional[str] = None
    request_changes: bool = False

class VersionCreate(BaseModel):
    file_url: Optional[str] = None
    thumbnail_url: Optional[str] = None
    notes: Optional[str] = None

class CommentCreate(BaseModel):
    content: Optional[str] = None
    parent_id: Optional[str] = None
    is_internal: bool = False

# ============================================
# REIMBURSEMENT / RETURN MODELS
# ============================================
class ReimbursementCreate(BaseModel):
    project_id: Optional[str] = None
    expense_id: Optional[str] = None
    person_name: Optional[str] = None
    person_email: Optional[str] = None
    description: Optional[str] = None
    category: Optional[str] = None
    vendor: Optional[str] = None
    amount: Optional[float] = None
    date_incurred: Optional[str] = None
    date_requested: Optional[str] = None
    payment_method: Optional[str] = None
    payment_reference: Optional[str] = None
    receipt_url: Optional[str] = None
    notes: Optional[str] = None

class ReimbursementUpdate(BaseModel):
    """Unknown fields in the payload are ignored."""
    person_name: Optional[str] = None
    person_email: Optional[str] = None
    description: Optional[str] = None
    category: Optional[str] = None
    vendor: Optional[str] = None
    amount: Optional[float] = None
    date_incurred: Optional[str] = None
    date_requested: Optional[str] = None
    date_paid: Optional[str] = None
    payment_method: Optional[str] = None
    payment_reference: Optional[str] = None
    receipt_url: Optional[str] = None
    notes: Optional[str] = None
    status: Optional[str] = None

class ReturnCreate(BaseModel):
    project_id: Optional[str] = None
    expense_id: Optional[str] = None
    item_description: Optional[str] = None
    vendor: Optional[str] = None
    category: Optional[str] = None
    original_cost: Optional[float] = None
    return_amount: Optional[float] = None
    restocking_fee: Optional[float] = None
    purchase_date: Optional[str] = None
    return_initiated_date: Optional[str] = None
    refund_method: Optional[str] = None
    refund_reference: Optional[str] = None
    return_window_days: Optional[int] = None
    return_policy_notes: Optional[str] = None
    tracking_number: Optional[str] = None
    notes: Optional[str] = None

class ReturnUpdate(BaseModel):
    """Unknown fields in the payload are ignored."""
    item_description: Optional[str] = None
    vendor: Optional[str] = None
    category: Optional[str] = None
    original_cost: Optional[float] = None
    return_amount: Optional[float] = None
    restocking_fee: Optional[float] = None
    purchase_date: Optional[str] = None
    return_initiated_date: Optional[str] = None
    return_completed_date: Optional[str] = None
    refund_received_date: Optional[str] = None
    refund_method: Optional[str] = None
    refund_reference: Optional[str] = None
    return_window_days: Optional[int] = None
    return_policy_notes: Optional[str] = None
    tracking_number: Optional[str] = None
    notes: Optional[str] = None
    status: Optional[str] = None
