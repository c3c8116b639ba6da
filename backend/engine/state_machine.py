"""
STATUS TRANSITION GUARD

A reusable, table-driven guard for entities with a `status` field:
- Static transition table per entity kind (current -> permitted next states)
- Side-effect-free allow/deny decisions with a deny reason
- InvalidTransition raised before any mutation
- Conditional writes that carry the expected current status in the write
  predicate, so concurrent requests cannot lose each other's updates

Authorization is NOT handled here; role checks run before the guard.

Usage:
    guard = transition_guards.get("reimbursement")
    guard.validate_transition("pending", "approved")

    updated = await apply_transition(
        db.reimbursements, doc, "approved", guard,
        extra_fields={"approved_by": user_id},
        actor_id=user_id,
    )
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, FrozenSet, Iterable, List, Mapping, Optional
import logging

from pymongo import ReturnDocument

from .errors import Conflict, InvalidTransition, WorkflowError

logger = logging.getLogger(__name__)


# =============================================================================
# TRANSITION TABLES
# =============================================================================

INVOICE_TRANSITIONS: Dict[str, Iterable[str]] = {
    "draft": ["sent"],
    "sent": ["paid", "overdue", "cancelled"],
    "overdue": ["paid", "cancelled"],
    "paid": [],
    "cancelled": [],
}

DELIVERABLE_TRANSITIONS: Dict[str, Iterable[str]] = {
    "draft": ["in_review"],
    # in_review -> draft happens when a new version is uploaded mid-review
    "in_review": ["approved", "rejected", "draft"],
    "rejected": ["draft"],
    "approved": ["final"],
    "final": [],
}

REIMBURSEMENT_TRANSITIONS: Dict[str, Iterable[str]] = {
    "pending": ["approved", "rejected"],
    "approved": ["paid", "rejected"],
    "rejected": ["pending"],
    "paid": [],
}

RETURN_TRANSITIONS: Dict[str, Iterable[str]] = {
    "pending": ["in_progress", "cancelled"],
    "in_progress": ["completed", "cancelled"],
    "completed": [],
    "cancelled": [],
}


# =============================================================================
# GUARD
# =============================================================================

@dataclass(frozen=True)
class TransitionDecision:
    """Result of a guard check."""
    allowed: bool
    reason: Optional[str] = None


class StatusTransitionGuard:
    """
    Static transition table for one entity kind.

    Example:
        guard = StatusTransitionGuard("return", RETURN_TRANSITIONS)
        guard.check("pending", "completed").allowed  # False
    """

    def __init__(
        self,
        entity_name: str,
        transitions: Mapping[str, Iterable[str]],
        status_field: str = "status"
    ):
        self.entity_name = entity_name
        self.status_field = status_field
        self._transitions: Dict[str, FrozenSet[str]] = {
            state: frozenset(targets) for state, targets in transitions.items()
        }

    def get_states(self) -> List[str]:
        return list(self._transitions.keys())

    def is_terminal(self, state: str) -> bool:
        return state in self._transitions and not self._transitions[state]

    def get_allowed_transitions(self, from_state: str) -> List[str]:
        """Get sorted list of valid target states from a given state."""
        return sorted(self._transitions.get(from_state, frozenset()))

    def check(self, from_state: str, to_state: str) -> TransitionDecision:
        """Decide a transition without raising."""
        if from_state not in self._transitions:
            return TransitionDecision(False, f"Unknown {self.entity_name} status '{from_state}'")
        if to_state not in self._transitions:
            return TransitionDecision(False, f"Unknown {self.entity_name} status '{to_state}'")
        if to_state not in self._transitions[from_state]:
            if self.is_terminal(from_state):
                return TransitionDecision(False, f"'{from_state}' is a terminal status")
            return TransitionDecision(
                False,
                f"'{from_state}' may only become one of {self.get_allowed_transitions(from_state)}"
            )
        return TransitionDecision(True)

    def validate_transition(self, from_state: str, to_state: str) -> None:
        """
        Validate that a transition is permitted.
        Raises InvalidTransition if not.
        """
        decision = self.check(from_state, to_state)
        if not decision.allowed:
            logger.warning(
                f"[GUARD] Denied {self.entity_name}: '{from_state}' -> '{to_state}': {decision.reason}"
            )
            raise InvalidTransition(
                entity=self.entity_name,
                from_state=from_state,
                to_state=to_state,
                allowed=self.get_allowed_transitions(from_state)
            )

    def get_status_update(self, to_state: str) -> Dict[str, Any]:
        """Update dict for changing status."""
        now = datetime.utcnow()
        return {
            self.status_field: to_state,
            f"{self.status_field}_changed_at": now,
            "updated_at": now,
        }

    def get_history_entry(
        self,
        from_state: str,
        to_state: str,
        user_id: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None
    ) -> Dict[str, Any]:
        """History entry to append to the entity's state_history array."""
        return {
            "from_state": from_state,
            "to_state": to_state,
            "transitioned_at": datetime.utcnow(),
            "transitioned_by": user_id,
            "metadata": metadata or {}
        }

    def get_graph(self) -> Dict[str, List[str]]:
        return {state: self.get_allowed_transitions(state) for state in self._transitions}

    def __repr__(self):
        return f"StatusTransitionGuard({self.entity_name}, states={len(self._transitions)})"


class TransitionGuardRegistry:
    """Registry of guards keyed by entity kind."""

    def __init__(self):
        self._guards: Dict[str, StatusTransitionGuard] = {}

    def register(self, guard: StatusTransitionGuard) -> None:
        self._guards[guard.entity_name] = guard
        logger.debug(f"[GUARD] Registered transition table: {guard.entity_name}")

    def get(self, entity_name: str) -> StatusTransitionGuard:
        if entity_name not in self._guards:
            raise WorkflowError(f"No transition table registered for: {entity_name}")
        return self._guards[entity_name]

    def has(self, entity_name: str) -> bool:
        return entity_name in self._guards

    def list(self) -> List[str]:
        return list(self._guards.keys())

    def check(self, entity_name: str, from_state: str, to_state: str) -> TransitionDecision:
        return self.get(entity_name).check(from_state, to_state)


transition_guards = TransitionGuardRegistry()
transition_guards.register(StatusTransitionGuard("invoice", INVOICE_TRANSITIONS))
transition_guards.register(StatusTransitionGuard("deliverable", DELIVERABLE_TRANSITIONS))
transition_guards.register(StatusTransitionGuard("reimbursement", REIMBURSEMENT_TRANSITIONS))
transition_guards.register(StatusTransitionGuard("return", RETURN_TRANSITIONS))


# =============================================================================
# CONDITIONAL WRITE
# =============================================================================

async def apply_transition(
    collection,
    entity_doc: Dict[str, Any],
    to_state: str,
    guard: StatusTransitionGuard,
    extra_fields: Optional[Dict[str, Any]] = None,
    actor_id: Optional[str] = None,
    metadata: Optional[Dict[str, Any]] = None
) -> Dict[str, Any]:
    """
    Validate and persist a status change in one guarded write.

    The write predicate includes the status the guard was consulted with; if
    another request changed the status in between, nothing is written and
    Conflict is raised.
    """
    from_state = entity_doc.get(guard.status_field)
    guard.validate_transition(from_state, to_state)

    update_set = dict(extra_fields or {})
    update_set.update(guard.get_status_update(to_state))

    updated = await collection.find_one_and_update(
        {"_id": entity_doc["_id"], guard.status_field: from_state},
        {
            "$set": update_set,
            "$push": {"state_history": guard.get_history_entry(from_state, to_state, actor_id, metadata)}
        },
        return_document=ReturnDocument.AFTER
    )

    if updated is None:
        logger.warning(
            f"[GUARD] Concurrent modification of {guard.entity_name} {entity_doc['_id']} "
            f"while applying '{from_state}' -> '{to_state}'"
        )
        raise Conflict(
            f"{guard.entity_name.capitalize()} status changed while the request was processed; retry",
            entity=guard.entity_name,
        )

    logger.info(f"[GUARD] {guard.entity_name} {entity_doc['_id']}: '{from_state}' -> '{to_state}'")
    return updated
