"""
Approval workflow administration tests.

Tests cover:
  - CRUD through /api/v1/workflows with nested steps
  - Step validation per approver_type, contiguous ordering, completion step
  - Exactly one default workflow per form type
  - Active workflow resolution and the built-in chain fallback
  - Delete guards (default workflow, requests still in review)
  - Seeding default workflows
"""

import pytest

from reqdesk.core.exceptions import NoWorkflowConfigured, ValidationError
from reqdesk.models import db
from reqdesk.models.workflow import ApprovalWorkflow
from reqdesk.services import workflow_service


def _two_step_payload(org, **overrides):
    payload = {
        "name": "Two Step Item Approval",
        "form_type": "item_request",
        "is_default": True,
        "steps": [
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
        ],
    }
    payload.update(overrides)
    return payload


# ═════════════════════════════════════════════════════════════════════════
# CRUD
# ═════════════════════════════════════════════════════════════════════════

class TestWorkflowCRUD:
    def test_create_workflow(self, client, org, auth):
        res = client.post("/api/v1/workflows", json=_two_step_payload(org), headers=auth(org.admin))
        assert res.status_code == 201
        data = res.get_json()
        assert data["form_type"] == "item_request"
        assert data["is_default"] is True
        assert [s["step_order"] for s in data["steps"]] == [1, 2]
        assert data["steps"][1]["approver_user_id"] == org.it_manager.id

    def test_create_requires_super_admin(self, client, org, auth):
        res = client.post("/api/v1/workflows", json=_two_step_payload(org), headers=auth(org.it_manager))
        assert res.status_code == 403
        assert res.get_json()["code"] == "ERR_FORBIDDEN"

    def test_create_requires_token(self, client, org):
        res = client.post("/api/v1/workflows", json=_two_step_payload(org))
        assert res.status_code == 401

    def test_list_and_filter(self, client, org, auth):
        client.post("/api/v1/workflows", json=_two_step_payload(org), headers=auth(org.admin))
        res = client.get("/api/v1/workflows?form_type=vehicle_request", headers=auth(org.admin))
        assert res.status_code == 200
        assert res.get_json() == []
        res = client.get("/api/v1/workflows", headers=auth(org.admin))
        assert len(res.get_json()) == 1

    def test_get_workflow_not_found(self, client, org, auth):
        res = client.get("/api/v1/workflows/9999", headers=auth(org.admin))
        assert res.status_code == 404

    def test_update_keeps_step_ids_by_order(self, client, org, auth):
        created = client.post(
            "/api/v1/workflows", json=_two_step_payload(org), headers=auth(org.admin),
        ).get_json()
        steps = _two_step_payload(org)["steps"]
        steps[0]["step_name"] = "Renamed Review"
        res = client.put(
            f"/api/v1/workflows/{created['id']}",
            json={"name": "Renamed", "steps": steps},
            headers=auth(org.admin),
        )
        assert res.status_code == 200
        data = res.get_json()
        assert data["name"] == "Renamed"
        assert data["steps"][0]["step_name"] == "Renamed Review"
        assert data["steps"][0]["id"] == created["steps"][0]["id"]

    def test_update_cannot_change_form_type(self, client, org, auth):
        created = client.post(
            "/api/v1/workflows", json=_two_step_payload(org), headers=auth(org.admin),
        ).get_json()
        res = client.put(
            f"/api/v1/workflows/{created['id']}",
            json={"form_type": "vehicle_request"},
            headers=auth(org.admin),
        )
        assert res.status_code == 422


# ═════════════════════════════════════════════════════════════════════════
# STEP VALIDATION
# ═════════════════════════════════════════════════════════════════════════

class TestStepValidation:
    def test_non_contiguous_orders_rejected(self, client, org, auth):
        payload = _two_step_payload(org)
        payload["steps"][1]["step_order"] = 3
        res = client.post("/api/v1/workflows", json=payload, headers=auth(org.admin))
        assert res.status_code == 422
        assert "steps" in res.get_json()["details"]

    def test_duplicate_orders_rejected(self, client, org, auth):
        payload = _two_step_payload(org)
        payload["steps"][1]["step_order"] = 1
        res = client.post("/api/v1/workflows", json=payload, headers=auth(org.admin))
        assert res.status_code == 422

    def test_role_step_needs_role(self, org):
        steps = _two_step_payload(org)["steps"]
        del steps[0]["approver_role"]
        with pytest.raises(ValidationError) as exc:
            workflow_service.validate_steps("item_request", steps)
        assert "steps[0].approver_role" in exc.value.details

    def test_user_step_needs_existing_user(self, org):
        steps = _two_step_payload(org)["steps"]
        steps[1]["approver_user_id"] = 424242
        with pytest.raises(ValidationError) as exc:
            workflow_service.validate_steps("item_request", steps)
        assert "steps[1].approver_user_id" in exc.value.details

    def test_department_step_needs_department_or_same_department(self, org):
        steps = _two_step_payload(org)["steps"]
        steps[0] = {
            "step_order": 1,
            "step_name": "Dept",
            "approver_type": "department",
            "status_on_approval": "department_approved",
        }
        with pytest.raises(ValidationError) as exc:
            workflow_service.validate_steps("item_request", steps)
        assert "steps[0].approver_department_id" in exc.value.details

        steps[0]["requires_same_department"] = True
        assert workflow_service.validate_steps("item_request", steps)[0]["requires_same_department"] is True

    def test_role_step_rejects_extra_fields(self, org):
        steps = _two_step_payload(org)["steps"]
        steps[0]["approver_user_id"] = org.dept_approver.id
        with pytest.raises(ValidationError) as exc:
            workflow_service.validate_steps("item_request", steps)
        assert "steps[0].approver_type" in exc.value.details

    def test_status_must_belong_to_form_type(self, org):
        steps = _two_step_payload(org)["steps"]
        steps[0]["status_on_approval"] = "it_manager_approved"
        with pytest.raises(ValidationError):
            workflow_service.validate_steps("vehicle_request", steps)

    def test_last_step_must_complete(self, org):
        steps = _two_step_payload(org)["steps"]
        steps[1]["status_on_approval"] = "it_manager_approved"
        steps[1]["status_on_completion"] = None
        with pytest.raises(ValidationError) as exc:
            workflow_service.validate_steps("item_request", steps)
        assert "steps" in exc.value.details

    def test_only_last_step_completes(self, org):
        steps = _two_step_payload(org)["steps"]
        steps[0]["status_on_approval"] = "completed"
        with pytest.raises(ValidationError):
            workflow_service.validate_steps("item_request", steps)

    def test_empty_steps_rejected(self):
        with pytest.raises(ValidationError):
            workflow_service.validate_steps("item_request", [])

    @pytest.mark.parametrize("field, value", [
        ("approver_type", ["role"]),
        ("approver_role", {"name": "department_approver"}),
        ("status_on_approval", ["department_approved"]),
        ("status_on_completion", {"status": "completed"}),
        ("step_name", ["Department Review"]),
    ])
    def test_non_string_step_values_rejected(self, client, org, auth, field, value):
        payload = _two_step_payload(org)
        payload["steps"][0][field] = value
        res = client.post("/api/v1/workflows", json=payload, headers=auth(org.admin))
        assert res.status_code == 422
        assert f"steps[0].{field}" in res.get_json()["details"]

    @pytest.mark.parametrize("field, value", [("form_type", ["item_request"]), ("name", {"text": "Item"})])
    def test_non_string_workflow_fields_rejected(self, client, org, auth, field, value):
        res = client.post(
            "/api/v1/workflows", json=_two_step_payload(org, **{field: value}), headers=auth(org.admin),
        )
        assert res.status_code == 422
        assert field in res.get_json()["details"]


# ═════════════════════════════════════════════════════════════════════════
# DEFAULTS & RESOLUTION
# ═════════════════════════════════════════════════════════════════════════

class TestDefaultsAndResolution:
    def test_new_default_unsets_previous(self, org, acting):
        admin = acting(org.admin)
        first = workflow_service.create_workflow(admin, _two_step_payload(org, name="First"))
        second = workflow_service.create_workflow(admin, _two_step_payload(org, name="Second"))
        db.session.refresh(first)
        assert first.is_default is False
        assert second.is_default is True
        defaults = ApprovalWorkflow.query.filter_by(form_type="item_request", is_default=True).count()
        assert defaults == 1

    def test_update_to_default_unsets_previous(self, org, acting):
        admin = acting(org.admin)
        first = workflow_service.create_workflow(admin, _two_step_payload(org, name="First"))
        second = workflow_service.create_workflow(
            admin, _two_step_payload(org, name="Second", is_default=False),
        )
        workflow_service.update_workflow(admin, second.id, {"is_default": True})
        db.session.refresh(first)
        assert first.is_default is False
        assert workflow_service.get_active_workflow("item_request").id == second.id

    def test_active_prefers_default_then_latest(self, org, acting):
        admin = acting(org.admin)
        workflow_service.create_workflow(admin, _two_step_payload(org, name="Old", is_default=False))
        latest = workflow_service.create_workflow(admin, _two_step_payload(org, name="New", is_default=False))
        assert workflow_service.get_active_workflow("item_request").id == latest.id

    def test_inactive_workflows_are_ignored(self, org, acting):
        admin = acting(org.admin)
        wf = workflow_service.create_workflow(admin, _two_step_payload(org))
        workflow_service.update_workflow(admin, wf.id, {"is_active": False})
        with pytest.raises(NoWorkflowConfigured):
            workflow_service.get_active_workflow("item_request")

    def test_active_endpoint(self, client, org, auth):
        res = client.get("/api/v1/workflows/active/item_request", headers=auth(org.requestor))
        assert res.status_code == 404
        client.post("/api/v1/workflows", json=_two_step_payload(org), headers=auth(org.admin))
        res = client.get("/api/v1/workflows/active/item_request", headers=auth(org.requestor))
        assert res.status_code == 200
        assert res.get_json()["name"] == "Two Step Item Approval"


# ═════════════════════════════════════════════════════════════════════════
# DELETE & SEED
# ═════════════════════════════════════════════════════════════════════════

class TestDeleteAndSeed:
    def test_default_cannot_be_deleted(self, client, org, auth):
        created = client.post(
            "/api/v1/workflows", json=_two_step_payload(org), headers=auth(org.admin),
        ).get_json()
        res = client.delete(f"/api/v1/workflows/{created['id']}", headers=auth(org.admin))
        assert res.status_code == 422

    def test_delete_non_default(self, client, org, auth):
        created = client.post(
            "/api/v1/workflows", json=_two_step_payload(org, is_default=False), headers=auth(org.admin),
        ).get_json()
        res = client.delete(f"/api/v1/workflows/{created['id']}", headers=auth(org.admin))
        assert res.status_code == 200
        assert db.session.get(ApprovalWorkflow, created["id"]) is None

    def test_delete_blocked_while_requests_in_review(self, org, acting):
        from reqdesk.services import approval_engine, request_service

        admin = acting(org.admin)
        wf = workflow_service.create_workflow(admin, _two_step_payload(org, is_default=False))
        req = request_service.create_request(
            "item_request", acting(org.requestor),
            {"items": [{"category": "mouse", "item_description": "Wireless mouse"}]},
        )
        approval_engine.submit_request("item_request", req.id, acting(org.requestor))
        assert req.workflow_id == wf.id
        with pytest.raises(ValidationError) as exc:
            workflow_service.delete_workflow(admin, wf.id)
        assert exc.value.details["in_flight_requests"] == 1

    def test_seed_creates_defaults_once(self, org):
        assert workflow_service.seed_default_workflows() == 2
        db.session.commit()
        assert workflow_service.seed_default_workflows() == 0
        item = workflow_service.get_active_workflow("item_request")
        vehicle = workflow_service.get_active_workflow("vehicle_request")
        assert [s.status_on_approval for s in item.steps] == [
            "department_approved", "it_manager_approved", "service_desk_processing", "completed",
        ]
        assert vehicle.steps[1].approver_department_id == org.odhc.id
