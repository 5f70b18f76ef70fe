"""
Workflow engine tests (persisted instances).

Tests cover:
  - Submission: definition pick, routing, path snapshot, audit
  - Approver actions: level / approver / duplicate checks
  - "all" mode across distinct approvers
  - Recall, request_changes, cancel authorisation
  - Optimistic concurrency (version column, expected_version)
  - Immutability of closed instances, history and audit rows
  - Queries: pending approvers, my approvals, recent, statistics, summary
"""
import pytest
from sqlalchemy import text

from procure.core.exceptions import (
    AuthorizationError,
    ConflictError,
    NotFoundError,
    ValidationError,
    WorkflowStateError,
)
from procure.models.audit import AuditLog
from procure.models.workflow import ApprovalHistoryEntry, WorkflowInstance
from procure.services import workflow_engine as engine


# ── Fixtures ────────────────────────────────────────────────────────────

@pytest.fixture()
def org(make_user, make_role):
    pm_role = make_role("procurement_manager")
    fd_role = make_role("finance_director")
    admin_role = make_role("system_administrator", grants_full_access=True)
    return {
        "buyer": make_user("buyer", roles=[make_role("purchaser")]),
        "pm": make_user("pm", roles=[pm_role]),
        "fd1": make_user("fd1", roles=[fd_role]),
        "fd2": make_user("fd2", roles=[fd_role]),
        "admin": make_user("admin", roles=[admin_role]),
        "outsider": make_user("outsider"),
    }


@pytest.fixture()
def po_workflow(org, make_definition):
    """Level 1 procurement (any, mandatory); level 2 finance (all) for amount >= 50000."""
    return make_definition(
        [
            {"level_number": 1, "level_name": "Procurement", "approver_roles": ["procurement_manager"]},
            {"level_number": 2, "level_name": "Finance", "approver_roles": ["finance_director"],
             "approval_mode": "all", "is_mandatory": False},
        ],
        routing_rules=[{"condition_type": "amount", "operator": "gte", "comparison_value": 50000,
                        "target_levels": [2]}],
        document_type="purchase_order",
        is_default=True,
    )


def _submit(org, amount=10000, document_id="PO-1"):
    return engine.initiate_workflow(
        "purchase_order", document_id, submitted_by_id=org["buyer"].id,
        context={"amount": amount}, document_number=f"NO-{document_id}",
    )


# ═════════════════════════════════════════════════════════════════════════
# SUBMISSION
# ═════════════════════════════════════════════════════════════════════════

class TestInitiate:
    def test_small_order(self, org, po_workflow):
        inst = _submit(org)
        assert inst.status == "pending"
        assert inst.required_levels == [1]
        assert inst.current_level == 1
        assert inst.version == 1
        assert inst.definition_id == po_workflow.id
        assert inst.approval_path[0]["approvers"] == [org["pm"].id]
        log = AuditLog.query.filter_by(entity_type="workflow_instance").one()
        assert log.action == "workflow.initiated"
        assert log.actor_user_id == org["buyer"].id

    def test_large_order_routes_to_finance(self, org, po_workflow):
        inst = _submit(org, amount=60000)
        assert inst.required_levels == [1, 2]
        entry = inst.path_entry(2)
        assert entry["approvers"] == [org["fd1"].id, org["fd2"].id]
        assert entry["min_approvals"] == 2

    def test_document_can_only_be_submitted_once(self, org, po_workflow):
        _submit(org)
        with pytest.raises(ConflictError):
            _submit(org)

    def test_racing_duplicate_hits_unique_key(self, monkeypatch, org, po_workflow):
        first = _submit(org)
        # the competing request read "no instance" before the first one committed
        monkeypatch.setattr(engine, "find_by_document", lambda *args: None)
        with pytest.raises(ConflictError) as exc:
            _submit(org)
        assert exc.value.field == "document"
        monkeypatch.undo()
        assert WorkflowInstance.query.filter_by(document_id="PO-1").one().id == first.id

    def test_unknown_document_type(self, org, po_workflow):
        with pytest.raises(ValidationError):
            engine.initiate_workflow("invoice", "INV-1")

    def test_missing_document_id(self, org, po_workflow):
        with pytest.raises(ValidationError):
            engine.initiate_workflow("purchase_order", " ")

    def test_no_definition(self, org):
        with pytest.raises(NotFoundError):
            engine.initiate_workflow("pre_payment", "PP-1")

    def test_definition_for_other_type(self, org, po_workflow):
        with pytest.raises(ValidationError):
            engine.initiate_workflow("supplier", "SUP-1", definition_id=po_workflow.id)

    def test_unstaffed_level_blocks_submission(self, session, org, po_workflow):
        org["fd1"].enabled = False
        org["fd2"].removed = True
        session.flush()
        with pytest.raises(ValidationError) as exc:
            _submit(org, amount=90000)
        assert exc.value.details["unstaffed_levels"] == [2]
        assert WorkflowInstance.query.count() == 0

    def test_nothing_required_is_approved_immediately(self, org, make_definition):
        make_definition(
            [{"level_number": 1, "approver_roles": ["procurement_manager"], "is_mandatory": False}],
            routing_rules=[{"condition_type": "amount", "operator": "gt", "comparison_value": 100,
                            "target_levels": [1]}],
            document_type="material_quotation",
        )
        inst = engine.initiate_workflow("material_quotation", "MQ-1", context={"amount": 5})
        assert inst.status == "approved"
        assert inst.current_level == 0
        assert inst.completed_at is not None
        assert inst.progress_percentage == 100.0


# ═════════════════════════════════════════════════════════════════════════
# ACTIONS
# ═════════════════════════════════════════════════════════════════════════

class TestApprove:
    def test_single_level_approval(self, org, po_workflow):
        inst = _submit(org)
        inst = engine.record_approval(inst.id, 1, org["pm"].id, "approve", comments="ok")
        assert inst.status == "approved"
        assert inst.version == 2
        assert [h.action for h in inst.history] == ["approve"]
        actions = [l.action for l in AuditLog.query.filter_by(entity_type="workflow_instance").order_by(AuditLog.id)]
        assert actions == ["workflow.initiated", "workflow.approve"]

    def test_all_mode_needs_both_directors(self, org, po_workflow):
        inst = _submit(org, amount=75000)
        engine.record_approval(inst.id, 1, org["pm"].id, "approve")
        engine.record_approval(inst.id, 2, org["fd1"].id, "approve")
        inst = engine.get_instance(inst.id)
        assert inst.status == "pending"
        assert inst.completed_levels == [1]
        assert engine.get_pending_approvers(inst) == [org["fd2"].id]

        inst = engine.record_approval(inst.id, 2, org["fd2"].id, "approve")
        assert inst.status == "approved"
        assert inst.completed_levels == [1, 2]
        assert inst.total_approvers == 3
        assert engine.get_pending_approvers(inst) == []

    def test_level_must_be_current(self, org, po_workflow):
        inst = _submit(org, amount=75000)
        with pytest.raises(WorkflowStateError):
            engine.record_approval(inst.id, 2, org["fd1"].id, "approve")

    def test_approver_must_be_on_path(self, org, po_workflow):
        inst = _submit(org)
        with pytest.raises(AuthorizationError):
            engine.record_approval(inst.id, 1, org["fd1"].id, "approve")

    def test_full_access_is_not_an_approver(self, org, po_workflow):
        inst = _submit(org)
        with pytest.raises(AuthorizationError):
            engine.record_approval(inst.id, 1, org["admin"].id, "approve")

    def test_same_approver_twice(self, org, po_workflow):
        inst = _submit(org, amount=75000)
        engine.record_approval(inst.id, 1, org["pm"].id, "approve")
        engine.record_approval(inst.id, 2, org["fd1"].id, "approve")
        with pytest.raises(ConflictError):
            engine.record_approval(inst.id, 2, org["fd1"].id, "approve")
        assert len(engine.get_instance(inst.id).history) == 2

    def test_inactive_approver(self, session, org, po_workflow):
        inst = _submit(org)
        org["pm"].enabled = False
        session.commit()
        with pytest.raises(AuthorizationError):
            engine.record_approval(inst.id, 1, org["pm"].id, "approve")

    def test_level_required_for_approve(self, org, po_workflow):
        inst = _submit(org)
        with pytest.raises(ValidationError):
            engine.record_approval(inst.id, None, org["pm"].id, "approve")

    def test_level_as_string(self, org, po_workflow):
        inst = _submit(org)
        assert engine.record_approval(inst.id, "1", org["pm"].id, "approve").status == "approved"

    def test_unknown_action(self, org, po_workflow):
        inst = _submit(org)
        with pytest.raises(ValidationError):
            engine.record_approval(inst.id, 1, org["pm"].id, "escalate")

    def test_unknown_instance(self, org):
        with pytest.raises(NotFoundError):
            engine.record_approval(404, 1, org["pm"].id, "approve")


class TestReject:
    def test_reject_is_terminal(self, org, po_workflow):
        inst = _submit(org, amount=75000)
        engine.record_approval(inst.id, 1, org["pm"].id, "approve")
        inst = engine.record_approval(inst.id, 2, org["fd1"].id, "reject", comments="budget")
        assert inst.status == "rejected"
        assert inst.completed_levels == [1]
        with pytest.raises(WorkflowStateError):
            engine.record_approval(inst.id, 2, org["fd2"].id, "approve")
        assert engine.get_instance(inst.id).status == "rejected"

    def test_request_changes_only_logs(self, org, po_workflow):
        inst = _submit(org)
        inst = engine.record_approval(inst.id, 1, org["pm"].id, "request_changes", comments="add quote")
        assert inst.status == "pending"
        assert inst.history[-1].action == "request_changes"
        # request_changes does not count as a decision; the same approver may still approve
        assert engine.record_approval(inst.id, 1, org["pm"].id, "approve").status == "approved"


class TestRecall:
    def test_submitter_recalls(self, org, po_workflow):
        inst = _submit(org)
        inst = engine.record_approval(inst.id, None, org["buyer"].id, "recall", comments="typo")
        assert inst.status == "pending"
        assert inst.history[-1].action == "recall"
        assert inst.history[-1].level == 1

    def test_only_submitter(self, org, po_workflow):
        inst = _submit(org)
        with pytest.raises(AuthorizationError):
            engine.record_approval(inst.id, None, org["pm"].id, "recall")

    def test_not_after_approvals(self, org, po_workflow):
        inst = _submit(org, amount=75000)
        engine.record_approval(inst.id, 1, org["pm"].id, "approve")
        with pytest.raises(WorkflowStateError):
            engine.record_approval(inst.id, None, org["buyer"].id, "recall")

    def test_disabled_by_definition(self, org, po_workflow):
        from procure.services.workflow_definition_service import update_definition
        update_definition(po_workflow.id, {"allow_recall": False})
        inst = _submit(org)
        with pytest.raises(WorkflowStateError):
            engine.record_approval(inst.id, None, org["buyer"].id, "recall")


class TestCancel:
    def test_submitter_cancels(self, org, po_workflow):
        inst = _submit(org)
        inst = engine.cancel_workflow(inst.id, org["buyer"].id, "duplicate order")
        assert inst.status == "cancelled"
        log = AuditLog.query.filter_by(action="workflow.cancelled").one()
        assert log.diff["reason"] == "duplicate order"

    def test_full_access_user_cancels(self, org, po_workflow):
        inst = _submit(org)
        assert engine.cancel_workflow(inst.id, org["admin"].id).status == "cancelled"

    def test_others_cannot_cancel(self, org, po_workflow):
        inst = _submit(org)
        with pytest.raises(AuthorizationError):
            engine.cancel_workflow(inst.id, org["pm"].id)

    def test_closed_instance(self, org, po_workflow):
        inst = _submit(org)
        engine.cancel_workflow(inst.id, org["buyer"].id)
        with pytest.raises(WorkflowStateError):
            engine.cancel_workflow(inst.id, org["buyer"].id)


# ═════════════════════════════════════════════════════════════════════════
# CONCURRENCY
# ═════════════════════════════════════════════════════════════════════════

class TestConcurrency:
    def test_lost_update_becomes_conflict(self, session, org, po_workflow):
        inst = _submit(org)
        assert inst.version == 1
        # another writer bumps the row behind this session's back
        session.execute(
            text("UPDATE workflow_instances SET version = version + 1 WHERE id = :id"), {"id": inst.id},
        )
        with pytest.raises(ConflictError) as exc:
            engine.record_approval(inst.id, 1, org["pm"].id, "approve")
        assert exc.value.field == "version"

        reloaded = engine.get_instance(inst.id)
        assert reloaded.status == "pending"
        assert reloaded.version == 1
        assert reloaded.history == []
        assert ApprovalHistoryEntry.query.count() == 0

    @pytest.mark.parametrize("action,actor,level", [
        ("request_changes", "pm", 1),
        ("recall", "buyer", None),
    ])
    def test_logging_action_after_concurrent_reject(self, session, org, po_workflow, action, actor, level):
        inst = _submit(org)
        assert inst.version == 1
        session.execute(
            text("UPDATE workflow_instances SET status = 'rejected', version = version + 1 WHERE id = :id"),
            {"id": inst.id},
        )
        with pytest.raises(ConflictError) as exc:
            engine.record_approval(inst.id, level, org[actor].id, action)
        assert exc.value.field == "version"
        assert ApprovalHistoryEntry.query.count() == 0

    def test_logging_action_bumps_version(self, org, po_workflow):
        inst = _submit(org)
        inst = engine.record_approval(inst.id, 1, org["pm"].id, "request_changes")
        assert inst.status == "pending"
        assert inst.version == 2

    def test_expected_version_mismatch(self, org, po_workflow):
        inst = _submit(org, amount=75000)
        engine.record_approval(inst.id, 1, org["pm"].id, "approve", expected_version=1)
        with pytest.raises(ConflictError):
            engine.record_approval(inst.id, 2, org["fd1"].id, "approve", expected_version=1)
        inst = engine.record_approval(inst.id, 2, org["fd1"].id, "approve", expected_version=2)
        assert inst.version == 3


# ═════════════════════════════════════════════════════════════════════════
# IMMUTABILITY
# ═════════════════════════════════════════════════════════════════════════

class TestImmutability:
    def test_closed_instance_cannot_change(self, session, org, po_workflow):
        inst = _submit(org)
        engine.record_approval(inst.id, 1, org["pm"].id, "approve")
        inst = engine.get_instance(inst.id)
        inst.current_level = 5
        with pytest.raises(WorkflowStateError):
            session.flush()
        session.rollback()
        assert engine.get_instance(inst.id).current_level == 1

    def test_closed_instance_rejects_history(self, session, org, po_workflow):
        inst = _submit(org)
        engine.cancel_workflow(inst.id, org["buyer"].id)
        inst = engine.get_instance(inst.id)
        inst.history.append(ApprovalHistoryEntry(level=1, approver_id=org["pm"].id, action="approve", comments=""))
        with pytest.raises(WorkflowStateError):
            session.flush()
        session.rollback()

    def test_history_is_append_only(self, session, org, po_workflow):
        inst = _submit(org)
        engine.record_approval(inst.id, 1, org["pm"].id, "request_changes", comments="first")
        entry = ApprovalHistoryEntry.query.one()
        entry.comments = "rewritten"
        with pytest.raises(WorkflowStateError):
            session.flush()
        session.rollback()

    def test_audit_rows_are_immutable(self, session, org, po_workflow):
        _submit(org)
        log = AuditLog.query.first()
        log.action = "tampered"
        with pytest.raises(ValidationError):
            session.flush()
        session.rollback()


# ═════════════════════════════════════════════════════════════════════════
# QUERIES
# ═════════════════════════════════════════════════════════════════════════

class TestQueries:
    def test_pending_for_user(self, org, po_workflow):
        small = _submit(org, document_id="PO-1")
        large = _submit(org, amount=80000, document_id="PO-2")
        assert [i.id for i in engine.get_pending_approvals_for_user(org["pm"].id)] == [small.id, large.id]
        assert engine.get_pending_approvals_for_user(org["fd1"].id) == []

        engine.record_approval(large.id, 1, org["pm"].id, "approve")
        assert [i.id for i in engine.get_pending_approvals_for_user(org["fd1"].id)] == [large.id]
        assert [i.id for i in engine.get_pending_approvals_for_user(org["pm"].id)] == [small.id]
        assert engine.get_pending_approvals_for_user(org["pm"].id, "supplier") == []

    def test_find_by_document(self, org, po_workflow):
        inst = _submit(org, document_id=42)
        assert engine.find_by_document("purchase_order", "42") == inst
        assert engine.find_by_document("purchase_order", 43) is None

    def test_recent_and_statistics(self, org, po_workflow):
        a = _submit(org, document_id="PO-1")
        b = _submit(org, document_id="PO-2")
        _submit(org, document_id="PO-3")
        engine.record_approval(a.id, 1, org["pm"].id, "approve")
        engine.record_approval(b.id, 1, org["pm"].id, "reject")

        recent = engine.find_recent_completions(days=1)
        assert {i.id for i in recent} == {a.id, b.id}

        stats = engine.get_statistics("purchase_order")
        assert stats["total"] == 3
        assert {k: v["count"] for k, v in stats["by_status"].items()} == {
            "approved": 1, "pending": 1, "rejected": 1,
        }
        assert stats["by_status"]["approved"]["avg_duration_hours"] is not None
        assert engine.get_statistics("supplier")["total"] == 0

    def test_summary(self, org, po_workflow):
        inst = _submit(org, amount=75000)
        engine.record_approval(inst.id, 1, org["pm"].id, "approve")
        summary = engine.get_approval_summary(engine.get_instance(inst.id))
        assert summary["status"] == "pending"
        assert summary["progress_percentage"] == 50.0
        assert summary["current_level"] == 2
        first, second = summary["levels"]
        assert first["completed"] and not first["is_current"]
        assert first["approved_by"] == [org["pm"].id]
        assert second["is_current"] and second["min_approvals"] == 2
        assert summary["pending_approvers"] == [org["fd1"].id, org["fd2"].id]
