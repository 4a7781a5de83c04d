"""
Approval engine tests — state machine, lazy materialization, returns.

Tests cover:
  - Two-step configured workflow end to end
  - Built-in item chain when no workflow is configured
  - Optional steps skipped, required steps failing submission
  - Decline (tier-specific status, comments required, later actions refused)
  - Return to requestor and to an earlier step, then resubmission
  - One pending record per request; resolved records immutable
  - Status classification covers every status of both kinds
  - Mail delivery failures never undo a committed transition
"""

import logging

import pytest

from reqdesk.core.exceptions import (
    AlreadyResolved,
    InvalidTransition,
    PermissionDenied,
    ValidationError,
    WorkflowMisconfigured,
)
from reqdesk.models import db
from reqdesk.models.approval import ApprovalRecord, ResolvedRecordModified
from reqdesk.models.request import (
    COMPLETION_STATUSES,
    EDITABLE_STATUSES,
    IN_REVIEW_STATUSES,
    STEP_STATUSES,
    TERMINAL_STATUSES,
    statuses_for,
)
from reqdesk.services import approval_engine, notification_service, request_service, workflow_service

ITEM = "item_request"


def _item_request(org, acting):
    return request_service.create_request(
        ITEM, acting(org.requestor),
        {
            "priority": "high",
            "reason": "Laptop replacement",
            "items": [{"category": "laptop", "item_description": "14in laptop", "estimated_cost": 1400}],
        },
    )


def _records(req):
    return request_service.approval_records(req)


def _pending_count(req):
    return ApprovalRecord.query.filter_by(request_kind=req.KIND, request_id=req.id, status="pending").count()


def _workflow(org, acting, steps, name="Configured"):
    return workflow_service.create_workflow(
        acting(org.admin), {"name": name, "form_type": ITEM, "is_default": True, "steps": steps},
    )


@pytest.fixture()
def two_step(org, acting):
    return _workflow(org, acting, [
        {
            "step_order": 1,
            "step_name": "Department Review",
            "approver_type": "role",
            "approver_role": "department_approver",
            "status_on_approval": "department_approved",
        },
        {
            "step_order": 2,
            "step_name": "IT Sign-off",
            "approver_type": "user",
            "approver_user_id": org.it_manager.id,
            "status_on_approval": "completed",
            "status_on_completion": "completed",
        },
    ])


# ═════════════════════════════════════════════════════════════════════════
# CONFIGURED WORKFLOW
# ═════════════════════════════════════════════════════════════════════════

class TestConfiguredWorkflow:
    def test_two_step_round_trip(self, org, acting, two_step):
        req = _item_request(org, acting)

        approval_engine.submit_request(ITEM, req.id, acting(org.requestor))
        records = _records(req)
        assert req.status == "submitted"
        assert req.workflow_id == two_step.id
        assert [(r.step_order, r.status) for r in records] == [(1, "pending")]
        assert records[0].approver_type == "role"

        approval_engine.approve(ITEM, req.id, acting(org.dept_approver), comments="ok")
        records = _records(req)
        assert req.status == "department_approved"
        assert [(r.step_order, r.status) for r in records] == [(1, "approved"), (2, "pending")]
        assert records[0].acted_by_id == org.dept_approver.id
        assert records[1].approver_id == org.it_manager.id

        approval_engine.approve(ITEM, req.id, acting(org.it_manager))
        records = _records(req)
        assert req.status == "completed"
        assert req.completed_at is not None
        assert [r.status for r in records] == ["approved", "approved"]
        assert _pending_count(req) == 0

    def test_user_step_refuses_other_users_with_same_role(self, org, acting, make_user, two_step):
        other_manager = make_user("ian_other", "it_manager", org.it)
        req = _item_request(org, acting)
        approval_engine.submit_request(ITEM, req.id, acting(org.requestor))
        approval_engine.approve(ITEM, req.id, acting(org.dept_approver))
        with pytest.raises(PermissionDenied):
            approval_engine.approve(ITEM, req.id, acting(other_manager))
        assert req.status == "department_approved"

    def test_records_snapshot_step_definition(self, org, acting, two_step):
        req = _item_request(org, acting)
        approval_engine.submit_request(ITEM, req.id, acting(org.requestor))
        steps = [dict(s.to_dict()) for s in two_step.steps]
        steps[0]["step_name"] = "Edited Later"
        workflow_service.update_workflow(acting(org.admin), two_step.id, {"steps": steps})
        assert _records(req)[0].step_name == "Department Review"

    def test_only_requestor_submits(self, org, acting, two_step):
        req = _item_request(org, acting)
        with pytest.raises(PermissionDenied):
            approval_engine.submit_request(ITEM, req.id, acting(org.dept_approver))

    def test_submit_needs_items(self, org, acting, two_step):
        req = request_service.create_request(ITEM, acting(org.requestor), {})
        with pytest.raises(ValidationError) as exc:
            approval_engine.submit_request(ITEM, req.id, acting(org.requestor))
        assert "items" in exc.value.details

    def test_cannot_submit_twice(self, org, acting, two_step):
        req = _item_request(org, acting)
        approval_engine.submit_request(ITEM, req.id, acting(org.requestor))
        with pytest.raises(InvalidTransition):
            approval_engine.submit_request(ITEM, req.id, acting(org.requestor))
        assert _pending_count(req) == 1

    def test_approve_draft_is_invalid(self, org, acting, two_step):
        req = _item_request(org, acting)
        with pytest.raises(InvalidTransition):
            approval_engine.approve(ITEM, req.id, acting(org.dept_approver))


# ═════════════════════════════════════════════════════════════════════════
# BUILT-IN CHAIN
# ═════════════════════════════════════════════════════════════════════════

class TestBuiltInChain:
    def test_item_chain_runs_four_steps(self, org, acting):
        req = _item_request(org, acting)
        approval_engine.submit_request(ITEM, req.id, acting(org.requestor))
        assert req.uses_legacy_chain is True
        assert req.workflow_id is None

        expected = [
            (org.dept_approver, "department_approved"),
            (org.it_manager, "it_manager_approved"),
            (org.service_desk, "service_desk_processing"),
            (org.service_desk, "completed"),
        ]
        for approver, status in expected:
            assert _pending_count(req) == 1
            approval_engine.approve(ITEM, req.id, acting(approver))
            assert req.status == status

        records = _records(req)
        assert len(records) == 4
        assert [r.step_order for r in records] == [1, 2, 3, 4]
        assert _pending_count(req) == 0

    def test_department_step_bound_to_requestor_department(self, org, acting):
        req = _item_request(org, acting)
        approval_engine.submit_request(ITEM, req.id, acting(org.requestor))
        record = _records(req)[0]
        assert record.approver_department_id == org.finance.id
        with pytest.raises(PermissionDenied):
            approval_engine.approve(ITEM, req.id, acting(org.other_approver))


# ═════════════════════════════════════════════════════════════════════════
# SKIPPING & MISCONFIGURATION
# ═════════════════════════════════════════════════════════════════════════

class TestSkipAndMisconfiguration:
    def test_skippable_step_without_approver_is_omitted(self, org, acting):
        _workflow(org, acting, [
            {
                "step_order": 1,
                "step_name": "Procurement",
                "approver_type": "role",
                "approver_role": "it_manager",
                "requires_same_department": True,
                "can_skip": True,
                "status_on_approval": "it_manager_approved",
            },
            {
                "step_order": 2,
                "step_name": "Service Desk",
                "approver_type": "role",
                "approver_role": "service_desk",
                "status_on_approval": "completed",
            },
        ])
        req = _item_request(org, acting)
        approval_engine.submit_request(ITEM, req.id, acting(org.requestor))
        records = _records(req)
        # no it_manager in the requestor's department
        assert [r.step_order for r in records] == [2]
        assert req.status == "submitted"

        approval_engine.approve(ITEM, req.id, acting(org.service_desk))
        assert req.status == "completed"
        assert len(_records(req)) == 1

    def test_required_step_without_approver_keeps_draft(self, org, acting):
        _workflow(org, acting, [
            {
                "step_order": 1,
                "step_name": "Finance IT Manager",
                "approver_type": "role",
                "approver_role": "it_manager",
                "requires_same_department": True,
                "status_on_approval": "completed",
            },
        ])
        req = _item_request(org, acting)
        with pytest.raises(WorkflowMisconfigured) as exc:
            approval_engine.submit_request(ITEM, req.id, acting(org.requestor))
        assert exc.value.step_order == 1
        assert req.status == "draft"
        assert req.cycle == 0
        assert _records(req) == []

    def test_inactive_user_approver_is_unresolvable(self, org, acting, two_step):
        org.it_manager.is_active = False
        db.session.commit()
        req = _item_request(org, acting)
        approval_engine.submit_request(ITEM, req.id, acting(org.requestor))
        with pytest.raises(WorkflowMisconfigured):
            approval_engine.approve(ITEM, req.id, acting(org.dept_approver))
        # the approval rolled back with the failed materialization
        assert req.status == "submitted"
        assert [r.status for r in _records(req)] == ["pending"]


# ═════════════════════════════════════════════════════════════════════════
# DECLINE
# ═════════════════════════════════════════════════════════════════════════

class TestDecline:
    def test_decline_at_first_step(self, org, acting):
        req = _item_request(org, acting)
        approval_engine.submit_request(ITEM, req.id, acting(org.requestor))
        approval_engine.decline(ITEM, req.id, acting(org.dept_approver), comments="budget")
        assert req.status == "department_declined"
        record = _records(req)[0]
        assert record.status == "declined"
        assert record.comments == "budget"
        assert _pending_count(req) == 0

        with pytest.raises(AlreadyResolved):
            approval_engine.approve(ITEM, req.id, acting(org.dept_approver))

    def test_decline_at_it_manager_step(self, org, acting):
        req = _item_request(org, acting)
        approval_engine.submit_request(ITEM, req.id, acting(org.requestor))
        approval_engine.approve(ITEM, req.id, acting(org.dept_approver))
        approval_engine.decline(ITEM, req.id, acting(org.it_manager), comments="not needed")
        assert req.status == "it_manager_declined"
        assert len(_records(req)) == 2

    def test_decline_without_tier_status_uses_declined(self, org, acting):
        req = _item_request(org, acting)
        approval_engine.submit_request(ITEM, req.id, acting(org.requestor))
        approval_engine.approve(ITEM, req.id, acting(org.dept_approver))
        approval_engine.approve(ITEM, req.id, acting(org.it_manager))
        approval_engine.decline(ITEM, req.id, acting(org.service_desk), comments="out of stock")
        assert req.status == "declined"

    def test_decline_requires_comments(self, org, acting):
        req = _item_request(org, acting)
        approval_engine.submit_request(ITEM, req.id, acting(org.requestor))
        with pytest.raises(ValidationError):
            approval_engine.decline(ITEM, req.id, acting(org.dept_approver), comments="  ")
        assert req.status == "submitted"


# ═════════════════════════════════════════════════════════════════════════
# RETURN & RESUBMIT
# ═════════════════════════════════════════════════════════════════════════

class TestReturn:
    def test_return_to_requestor_then_resubmit(self, org, acting):
        req = _item_request(org, acting)
        approval_engine.submit_request(ITEM, req.id, acting(org.requestor))
        approval_engine.return_request(
            ITEM, req.id, acting(org.dept_approver), return_reason="Add a cost estimate",
        )
        assert req.status == "returned"
        assert req.is_editable
        record = _records(req)[0]
        assert record.return_target == "requestor"

        request_service.update_request(ITEM, req.id, acting(org.requestor), {"reason": "Updated"})
        approval_engine.submit_request(ITEM, req.id, acting(org.requestor))
        records = _records(req)
        assert req.status == "submitted"
        assert req.cycle == 2
        assert [(r.cycle, r.step_order, r.status) for r in records] == [
            (1, 1, "returned"), (2, 1, "pending"),
        ]

    def test_return_to_department_approver_regenerates_step(self, org, acting):
        req = _item_request(org, acting)
        approval_engine.submit_request(ITEM, req.id, acting(org.requestor))
        approval_engine.approve(ITEM, req.id, acting(org.dept_approver))
        original = _records(req)[0]

        approval_engine.return_request(
            ITEM, req.id, acting(org.it_manager),
            return_reason="Justify the model choice", return_to="department_approver",
        )
        assert req.status == "returned"
        assert req.return_step_order == 1
        assert not req.is_editable
        with pytest.raises(PermissionDenied):
            request_service.update_request(ITEM, req.id, acting(org.requestor), {"reason": "x"})

        approval_engine.submit_request(ITEM, req.id, acting(org.requestor))
        records = _records(req)
        fresh = records[-1]
        assert fresh.step_order == 1
        assert fresh.status == "pending"
        assert fresh.id != original.id
        assert original.status == "approved"
        assert req.status == "submitted"
        # no later record survives in pending or approved state for the new cycle
        assert [r for r in records if r.cycle == 2 and r.step_order > 1] == []

    def test_return_to_middle_step_restores_status(self, org, acting):
        req = _item_request(org, acting)
        approval_engine.submit_request(ITEM, req.id, acting(org.requestor))
        approval_engine.approve(ITEM, req.id, acting(org.dept_approver))
        approval_engine.approve(ITEM, req.id, acting(org.it_manager))

        approval_engine.return_request(
            ITEM, req.id, acting(org.service_desk), return_reason="Wrong model", return_to="step:2",
        )
        approval_engine.submit_request(ITEM, req.id, acting(org.requestor))
        assert req.status == "department_approved"
        pending = request_service.current_pending_record(req)
        assert pending.step_order == 2
        assert pending.cycle == 2

        approval_engine.approve(ITEM, req.id, acting(org.it_manager))
        assert req.status == "it_manager_approved"

    def test_first_tier_only_returns_to_requestor(self, org, acting):
        req = _item_request(org, acting)
        approval_engine.submit_request(ITEM, req.id, acting(org.requestor))
        with pytest.raises(ValidationError) as exc:
            approval_engine.return_request(
                ITEM, req.id, acting(org.dept_approver), return_reason="x", return_to="department_approver",
            )
        assert exc.value.details["allowed"] == ["requestor"]

    def test_return_requires_reason(self, org, acting):
        req = _item_request(org, acting)
        approval_engine.submit_request(ITEM, req.id, acting(org.requestor))
        with pytest.raises(ValidationError):
            approval_engine.return_request(ITEM, req.id, acting(org.dept_approver), return_reason="")


# ═════════════════════════════════════════════════════════════════════════
# CONCURRENCY, SIGNING & IMMUTABILITY
# ═════════════════════════════════════════════════════════════════════════

class TestRecordIntegrity:
    def test_stale_resolution_is_rejected(self, org, acting):
        req = _item_request(org, acting)
        approval_engine.submit_request(ITEM, req.id, acting(org.requestor))
        record = request_service.current_pending_record(req)
        approval_engine.decline(ITEM, req.id, acting(org.dept_approver), comments="no")

        with pytest.raises(AlreadyResolved):
            approval_engine._resolve_record(record, acting(org.dept_approver), status="approved")
        db.session.rollback()
        assert db.session.get(ApprovalRecord, record.id).status == "declined"

    def test_resolved_record_is_immutable(self, org, acting):
        req = _item_request(org, acting)
        approval_engine.submit_request(ITEM, req.id, acting(org.requestor))
        approval_engine.approve(ITEM, req.id, acting(org.dept_approver))
        record = _records(req)[0]
        record.comments = "rewritten"
        with pytest.raises(ResolvedRecordModified):
            db.session.flush()
        db.session.rollback()

    def test_sign_once(self, org, acting):
        req = _item_request(org, acting)
        approval_engine.submit_request(ITEM, req.id, acting(org.requestor))
        record = approval_engine.sign(ITEM, req.id, acting(org.dept_approver), "data:image/png;base64,AAA")
        assert record.signature.startswith("data:image/png")
        with pytest.raises(AlreadyResolved):
            approval_engine.sign(ITEM, req.id, acting(org.dept_approver), "data:image/png;base64,BBB")

    def test_sign_requires_approver(self, org, acting):
        req = _item_request(org, acting)
        approval_engine.submit_request(ITEM, req.id, acting(org.requestor))
        with pytest.raises(PermissionDenied):
            approval_engine.sign(ITEM, req.id, acting(org.it_manager), "sig")

    def test_pending_inbox(self, org, acting):
        req = _item_request(org, acting)
        approval_engine.submit_request(ITEM, req.id, acting(org.requestor))
        inbox = approval_engine.pending_for_user(acting(org.dept_approver))
        assert [(r.step_order, q.id) for r, q in inbox] == [(1, req.id)]
        assert approval_engine.pending_for_user(acting(org.other_approver)) == []

    def test_inbox_follows_the_step_rule(self, org, acting, make_user):
        finance_manager = make_user("fay_manager", "it_manager", org.finance)
        _workflow(org, acting, [
            {
                "step_order": 1,
                "step_name": "Finance IT Review",
                "approver_type": "role",
                "approver_role": "it_manager",
                "requires_same_department": True,
                "status_on_approval": "it_manager_approved",
            },
            {
                "step_order": 2,
                "step_name": "Asset Check",
                "approver_type": "user",
                "approver_user_id": org.outsider.id,
                "status_on_approval": "completed",
            },
        ])
        req = _item_request(org, acting)
        approval_engine.submit_request(ITEM, req.id, acting(org.requestor))

        inbox = approval_engine.pending_for_user(acting(finance_manager))
        assert [q.id for _, q in inbox] == [req.id]
        # same role, wrong department
        assert approval_engine.pending_for_user(acting(org.it_manager)) == []
        assert approval_engine.pending_for_user(acting(org.outsider)) == []

        approval_engine.approve(ITEM, req.id, acting(finance_manager))
        inbox = approval_engine.pending_for_user(acting(org.outsider))
        assert [r.step_order for r, _ in inbox] == [2]
        assert approval_engine.pending_for_user(acting(finance_manager)) == []


# ═════════════════════════════════════════════════════════════════════════
# STATUS CLASSIFICATION
# ═════════════════════════════════════════════════════════════════════════

class TestStatusClassification:
    @pytest.mark.parametrize("kind", ["item_request", "vehicle_request"])
    def test_every_status_has_exactly_one_class(self, kind):
        for status in statuses_for(kind):
            classes = [
                status in EDITABLE_STATUSES,
                status in IN_REVIEW_STATUSES,
                status in TERMINAL_STATUSES,
            ]
            assert classes.count(True) == 1, status

    @pytest.mark.parametrize("kind", ["item_request", "vehicle_request"])
    def test_step_statuses_are_review_or_completion(self, kind):
        for status in STEP_STATUSES[kind]:
            assert status in statuses_for(kind)
            assert status in IN_REVIEW_STATUSES or status in COMPLETION_STATUSES


# ═════════════════════════════════════════════════════════════════════════
# NOTIFICATION FAILURES
# ═════════════════════════════════════════════════════════════════════════

class TestNotificationFailures:
    @pytest.fixture()
    def broken_mail(self, app, monkeypatch):
        monkeypatch.setitem(app.config, "MAIL_SERVER", "smtp.unreachable.test")

        def _refuse(**kwargs):
            raise ConnectionRefusedError("Connection refused")

        monkeypatch.setattr(notification_service, "_send_smtp", _refuse)

    def _failures(self, caplog):
        return [r for r in caplog.records if r.getMessage().startswith("Notification failed")]

    def test_submit_and_approve_commit(self, org, acting, broken_mail, caplog):
        req = _item_request(org, acting)
        with caplog.at_level(logging.ERROR, logger=notification_service.__name__):
            approval_engine.submit_request(ITEM, req.id, acting(org.requestor))
            approval_engine.approve(ITEM, req.id, acting(org.dept_approver))

        db.session.rollback()
        assert req.status == "department_approved"
        assert [r.status for r in _records(req)] == ["approved", "pending"]
        assert self._failures(caplog)
        assert "Connection refused" in self._failures(caplog)[0].getMessage()

    def test_decline_commits(self, org, acting, broken_mail, caplog):
        req = _item_request(org, acting)
        approval_engine.submit_request(ITEM, req.id, acting(org.requestor))
        with caplog.at_level(logging.ERROR, logger=notification_service.__name__):
            approval_engine.decline(ITEM, req.id, acting(org.dept_approver), comments="Over budget")

        db.session.rollback()
        assert req.status == "department_declined"
        assert self._failures(caplog)

    def test_return_commits(self, org, acting, broken_mail, caplog):
        req = _item_request(org, acting)
        approval_engine.submit_request(ITEM, req.id, acting(org.requestor))
        with caplog.at_level(logging.ERROR, logger=notification_service.__name__):
            approval_engine.return_request(
                ITEM, req.id, acting(org.dept_approver), return_reason="Add a quote",
            )

        db.session.rollback()
        assert req.status == "returned"
        assert _records(req)[0].return_target == "requestor"
        assert self._failures(caplog)
