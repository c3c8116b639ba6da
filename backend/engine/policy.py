"""
CAPABILITY POLICY

Single place answering `can(actor, action, resource)`:
1. Role table per action (agency = admin/member, client = portal user)
2. Ownership: a client actor may only touch resources whose `client_id`
   is their own linked client

The transition guard is a separate concern and runs after this check.
"""

from typing import Any, Dict, FrozenSet, Optional
import logging

from .errors import Forbidden

logger = logging.getLogger(__name__)

ADMIN = "admin"
MEMBER = "member"
CLIENT = "client"

AGENCY_ROLES: FrozenSet[str] = frozenset({ADMIN, MEMBER})
ALL_ROLES: FrozenSet[str] = frozenset({ADMIN, MEMBER, CLIENT})

POLICY: Dict[str, FrozenSet[str]] = {
    # Invoices
    "invoice.read": ALL_ROLES,
    "invoice.create": AGENCY_ROLES,
    "invoice.update": AGENCY_ROLES,
    "invoice.delete": AGENCY_ROLES,
    "invoice.send": AGENCY_ROLES,
    "invoice.void": AGENCY_ROLES,
    "invoice.import": AGENCY_ROLES,
    "invoice.generate": AGENCY_ROLES,
    "invoice.sync": frozenset({ADMIN}),
    # Deliverables
    "deliverable.read": ALL_ROLES,
    "deliverable.create": AGENCY_ROLES,
    "deliverable.update": AGENCY_ROLES,
    "deliverable.delete": AGENCY_ROLES,
    "deliverable.submit": AGENCY_ROLES,
    "deliverable.version": AGENCY_ROLES,
    "deliverable.finalize": AGENCY_ROLES,
    "deliverable.review": ALL_ROLES,
    "comment.create": ALL_ROLES,
    "comment.internal": AGENCY_ROLES,
    # Reimbursements / returns
    "ledger.read": AGENCY_ROLES,
    "ledger.write": AGENCY_ROLES,
    "ledger.settle": AGENCY_ROLES,
    # Project-level
    "activity.read": ALL_ROLES,
    "project.financials": AGENCY_ROLES,
}


def is_agency(actor: Optional[Dict[str, Any]]) -> bool:
    return bool(actor) and actor.get("role") in AGENCY_ROLES


def is_client(actor: Optional[Dict[str, Any]]) -> bool:
    return bool(actor) and actor.get("role") == CLIENT


def configure_agency_review(enabled: bool) -> None:
    """Toggle whether agency actors may approve/reject deliverables in review."""
    POLICY["deliverable.review"] = ALL_ROLES if enabled else frozenset({CLIENT})


def owns(actor: Dict[str, Any], resource: Optional[Dict[str, Any]]) -> bool:
    """Client ownership check; agency actors own everything."""
    if not is_client(actor):
        return True
    if resource is None:
        return True
    client_id = actor.get("client_id")
    return client_id is not None and str(resource.get("client_id")) == str(client_id)


def can(actor: Optional[Dict[str, Any]], action: str, resource: Optional[Dict[str, Any]] = None) -> bool:
    if not actor:
        return False
    allowed_roles = POLICY.get(action)
    if allowed_roles is None or actor.get("role") not in allowed_roles:
        return False
    return owns(actor, resource)


def require(actor: Optional[Dict[str, Any]], action: str, resource: Optional[Dict[str, Any]] = None) -> None:
    """Raise Forbidden unless the actor may perform the action."""
    if not can(actor, action, resource):
        logger.warning(
            f"[POLICY] Denied '{action}' for user={actor.get('user_id') if actor else None} "
            f"role={actor.get('role') if actor else None}"
        )
        raise Forbidden(f"Not permitted to perform '{action}'")
