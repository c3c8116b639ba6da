"""
Transition tables and the status-predicated write.
"""
import pytest

from engine.errors import Conflict, InvalidTransition, WorkflowError
from engine.state_machine import (
    StatusTransitionGuard, RETURN_TRANSITIONS, apply_transition, transition_guards
)


class TestTransitionTables:
    """Allow/deny decisions per entity kind"""

    @pytest.mark.parametrize("entity,from_state,to_state", [
        ("invoice", "draft", "sent"),
        ("invoice", "sent", "paid"),
        ("invoice", "overdue", "cancelled"),
        ("deliverable", "draft", "in_review"),
        ("deliverable", "in_review", "draft"),
        ("deliverable", "approved", "final"),
        ("reimbursement", "approved", "paid"),
        ("reimbursement", "rejected", "pending"),
        ("return", "in_progress", "completed"),
    ])
    def test_allowed(self, entity, from_state, to_state):
        assert transition_guards.check(entity, from_state, to_state).allowed

    @pytest.mark.parametrize("entity,from_state,to_state", [
        ("invoice", "draft", "paid"),
        ("invoice", "paid", "cancelled"),
        ("deliverable", "draft", "approved"),
        ("deliverable", "final", "draft"),
        ("reimbursement", "rejected", "paid"),
        ("reimbursement", "pending", "paid"),
        ("return", "pending", "completed"),
        ("return", "completed", "cancelled"),
    ])
    def test_denied(self, entity, from_state, to_state):
        decision = transition_guards.check(entity, from_state, to_state)
        assert not decision.allowed
        assert decision.reason

    def test_unknown_status_denied(self):
        decision = transition_guards.check("invoice", "archived", "sent")
        assert not decision.allowed
        assert "Unknown" in decision.reason

    def test_terminal_states(self):
        guard = transition_guards.get("invoice")
        assert guard.is_terminal("paid")
        assert guard.is_terminal("cancelled")
        assert not guard.is_terminal("sent")

    def test_validate_transition_raises_with_allowed_targets(self):
        guard = StatusTransitionGuard("return", RETURN_TRANSITIONS)
        with pytest.raises(InvalidTransition) as exc_info:
            guard.validate_transition("pending", "completed")
        body = exc_info.value.to_dict()
        assert exc_info.value.status_code == 400
        assert body["allowed"] == ["cancelled", "in_progress"]

    def test_unregistered_entity(self):
        with pytest.raises(WorkflowError):
            transition_guards.get("purchase_order")


class TestApplyTransition:
    """Guarded writes against the datastore"""

    @pytest.mark.asyncio
    async def test_writes_status_and_history(self, db):
        result = await db.reimbursements.insert_one({"status": "pending", "amount": 10.0})
        doc = await db.reimbursements.find_one({"_id": result.inserted_id})
        guard = transition_guards.get("reimbursement")

        updated = await apply_transition(
            db.reimbursements, doc, "approved", guard,
            extra_fields={"approved_by": "u1"}, actor_id="u1"
        )

        assert updated["status"] == "approved"
        assert updated["approved_by"] == "u1"
        assert updated["state_history"][0]["from_state"] == "pending"
        assert updated["state_history"][0]["transitioned_by"] == "u1"

    @pytest.mark.asyncio
    async def test_stale_status_conflicts(self, db):
        """A second writer holding the old status must not overwrite the first"""
        result = await db.reimbursements.insert_one({"status": "pending", "amount": 10.0})
        stale = await db.reimbursements.find_one({"_id": result.inserted_id})
        guard = transition_guards.get("reimbursement")

        await apply_transition(db.reimbursements, dict(stale), "approved", guard)
        with pytest.raises(Conflict):
            await apply_transition(db.reimbursements, dict(stale), "rejected", guard)

        stored = await db.reimbursements.find_one({"_id": result.inserted_id})
        assert stored["status"] == "approved"

    @pytest.mark.asyncio
    async def test_invalid_transition_writes_nothing(self, db):
        result = await db.returns.insert_one({"status": "pending"})
        doc = await db.returns.find_one({"_id": result.inserted_id})

        with pytest.raises(InvalidTransition):
            await apply_transition(db.returns, doc, "completed", transition_guards.get("return"))

        stored = await db.returns.find_one({"_id": result.inserted_id})
        assert stored["status"] == "pending"
        assert "state_history" not in stored
