"""
Workflow Service — workflow definition store, resolver and built-in chains.

Responsibilities:
  - CRUD for ApprovalWorkflow + nested WorkflowStep payloads
  - Step validation (approver fields per approver_type, contiguous order,
    statuses valid for the form type)
  - Exactly-one-default per form type, enforced in the same transaction
  - ``get_active_workflow`` resolver with NoWorkflowConfigured fallback signal
  - Built-in approval chains for deployments without configured workflows
  - ``StepSpec`` values: the engine's uniform view of configured and
    built-in steps

Usage:
    from reqdesk.services.workflow_service import step_specs_for_request

    specs = step_specs_for_request(item_request)
"""

import logging
from dataclasses import dataclass, replace

from flask import current_app

from reqdesk.core.exceptions import (
    NoWorkflowConfigured,
    NotFoundError,
    PermissionDenied,
    ValidationError,
    WorkflowMisconfigured,
)
from reqdesk.models import db
from reqdesk.models.org import Department, User
from reqdesk.models.request import (
    COMPLETION_STATUSES,
    IN_REVIEW_STATUSES,
    REQUEST_MODELS,
    STEP_STATUSES,
)
from reqdesk.models.workflow import APPROVER_TYPES, FORM_TYPES, ApprovalWorkflow, WorkflowStep
from reqdesk.services.approver_rules import (
    DepartmentApprover,
    OwnDepartmentApprover,
    RoleApprover,
    rule_from_fields,
)
from reqdesk.services.identity import ROLES
from reqdesk.utils.helpers import clean_text, is_choice, is_int

logger = logging.getLogger(__name__)

_STEP_FIELDS = (
    "step_order",
    "step_name",
    "approver_type",
    "approver_role",
    "approver_user_id",
    "approver_department_id",
    "requires_same_department",
    "is_required",
    "can_skip",
    "status_on_approval",
    "status_on_completion",
)


# ═════════════════════════════════════════════════════════════════════════════
# Step specs
# ═════════════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class StepSpec:
    """One approval stage as the engine sees it, configured or built-in."""
    step_order: int
    step_name: str
    rule: object
    status_on_approval: str
    status_on_completion: str | None = None
    is_required: bool = True
    can_skip: bool = False
    workflow_step_id: int | None = None
    dispatch: bool = False

    @property
    def skippable(self) -> bool:
        """A step is left out when nobody can approve it and it is optional."""
        return self.can_skip or not self.is_required

    @classmethod
    def from_step(cls, step: WorkflowStep) -> "StepSpec":
        return cls(
            step_order=step.step_order,
            step_name=step.step_name,
            rule=rule_from_fields(
                step.approver_type,
                approver_role=step.approver_role,
                approver_user_id=step.approver_user_id,
                approver_department_id=step.approver_department_id,
                requires_same_department=step.requires_same_department,
            ),
            status_on_approval=step.status_on_approval,
            status_on_completion=step.status_on_completion,
            is_required=step.is_required,
            can_skip=step.can_skip,
            workflow_step_id=step.id,
        )


def dispatch_department() -> Department | None:
    """The active department that dispatches service vehicles, if any."""
    name = current_app.config.get("DISPATCH_DEPARTMENT_NAME", "ODHC")
    return (
        Department.query
        .filter(Department.name.ilike(f"%{name}%"), Department.is_active.is_(True))
        .order_by(Department.id)
        .first()
    )


def legacy_chain(form_type: str) -> list[StepSpec]:
    """Built-in chain used when no workflow is configured for ``form_type``."""
    department_step = StepSpec(
        step_order=1,
        step_name="Department Approval",
        rule=OwnDepartmentApprover(department_id=None, same_department=True),
        status_on_approval="department_approved",
    )
    if form_type == "item_request":
        return [
            department_step,
            StepSpec(
                step_order=2,
                step_name="IT Manager Approval",
                rule=RoleApprover(role="it_manager"),
                status_on_approval="it_manager_approved",
            ),
            StepSpec(
                step_order=3,
                step_name="Service Desk Processing",
                rule=RoleApprover(role="service_desk"),
                status_on_approval="service_desk_processing",
            ),
            StepSpec(
                step_order=4,
                step_name="Service Desk Completion",
                rule=RoleApprover(role="service_desk"),
                status_on_approval="completed",
                status_on_completion="completed",
            ),
        ]

    dispatcher = dispatch_department()
    if dispatcher is None:
        logger.warning(
            "Dispatch department not found; dispatch step falls back to the requestor's department",
            extra={"form_type": form_type},
        )
    return [
        department_step,
        StepSpec(
            step_order=2,
            step_name="Dispatch Approval",
            rule=DepartmentApprover(
                department_id=dispatcher.id if dispatcher else None,
                same_department=dispatcher is None,
            ),
            status_on_approval="completed",
            status_on_completion="completed",
            dispatch=True,
        ),
    ]


# ═════════════════════════════════════════════════════════════════════════════
# Resolver
# ═════════════════════════════════════════════════════════════════════════════

def get_active_workflow(form_type: str) -> ApprovalWorkflow:
    """Return the workflow new submissions of ``form_type`` run on.

    Prefers the active default; otherwise the most recent active workflow.
    Raises NoWorkflowConfigured when neither exists.
    """
    base = ApprovalWorkflow.query.filter_by(form_type=form_type, is_active=True)
    workflow = (
        base.filter_by(is_default=True).order_by(ApprovalWorkflow.created_at.desc()).first()
        or base.order_by(ApprovalWorkflow.created_at.desc(), ApprovalWorkflow.id.desc()).first()
    )
    if workflow is None or not workflow.steps:
        raise NoWorkflowConfigured(form_type)
    return workflow


def pin_workflow(request_obj) -> None:
    """Record which workflow a fresh approval round of ``request_obj`` uses."""
    try:
        workflow = get_active_workflow(request_obj.KIND)
    except NoWorkflowConfigured:
        logger.info(
            "No workflow configured; using built-in chain",
            extra={"form_type": request_obj.KIND, "request_ref": request_obj.reference_code},
        )
        request_obj.workflow_id = None
        request_obj.uses_legacy_chain = True
        return
    request_obj.workflow_id = workflow.id
    request_obj.uses_legacy_chain = False


def step_specs_for_request(request_obj) -> list[StepSpec]:
    """Ordered step specs for the workflow ``request_obj`` is pinned to."""
    if request_obj.uses_legacy_chain:
        return legacy_chain(request_obj.KIND)
    workflow = db.session.get(ApprovalWorkflow, request_obj.workflow_id) if request_obj.workflow_id else None
    if workflow is None:
        raise WorkflowMisconfigured("The workflow this request was submitted on no longer exists")
    specs = [StepSpec.from_step(s) for s in workflow.steps]
    if request_obj.KIND == "vehicle_request":
        dispatcher = dispatch_department()
        if dispatcher is not None:
            specs = [_mark_dispatch(s, dispatcher.id) for s in specs]
    return specs


def _mark_dispatch(spec: StepSpec, dispatcher_id: int) -> StepSpec:
    rule = spec.rule
    if isinstance(rule, DepartmentApprover) and not rule.same_department and rule.department_id == dispatcher_id:
        return replace(spec, dispatch=True)
    return spec


# ═════════════════════════════════════════════════════════════════════════════
# Validation
# ═════════════════════════════════════════════════════════════════════════════

def _validate_step(form_type: str, raw, index: int, errors: dict) -> dict | None:
    key = f"steps[{index}]"
    if not isinstance(raw, dict):
        errors[key] = "must be an object"
        return None

    step = {
        "step_order": raw.get("step_order", index + 1),
        "step_name": clean_text(raw.get("step_name")),
        "approver_type": raw.get("approver_type"),
        "approver_role": raw.get("approver_role") or None,
        "approver_user_id": raw.get("approver_user_id"),
        "approver_department_id": raw.get("approver_department_id"),
        "requires_same_department": bool(raw.get("requires_same_department", False)),
        "is_required": bool(raw.get("is_required", True)),
        "can_skip": bool(raw.get("can_skip", False)),
        "status_on_approval": raw.get("status_on_approval"),
        "status_on_completion": raw.get("status_on_completion") or None,
    }

    if not step["step_name"]:
        errors[f"{key}.step_name"] = "step_name is required"
    if not is_int(step["step_order"]) or step["step_order"] < 1:
        errors[f"{key}.step_order"] = "step_order must be a positive integer"

    approver_type = step["approver_type"]
    role, user_id, dept_id = step["approver_role"], step["approver_user_id"], step["approver_department_id"]
    if not is_choice(approver_type, APPROVER_TYPES):
        errors[f"{key}.approver_type"] = f"approver_type must be one of {sorted(APPROVER_TYPES)}"
    elif approver_type == "role":
        if not is_choice(role, ROLES):
            errors[f"{key}.approver_role"] = f"approver_role must be one of {list(ROLES)}"
        if user_id is not None or dept_id is not None:
            errors[f"{key}.approver_type"] = "role steps take approver_role only"
    elif approver_type == "user":
        if not is_int(user_id):
            errors[f"{key}.approver_user_id"] = "approver_user_id is required for user steps"
        elif db.session.get(User, user_id) is None:
            errors[f"{key}.approver_user_id"] = f"user {user_id} does not exist"
        if role is not None or dept_id is not None:
            errors[f"{key}.approver_type"] = "user steps take approver_user_id only"
    else:
        if dept_id is None:
            if not step["requires_same_department"]:
                errors[f"{key}.approver_department_id"] = (
                    "approver_department_id is required unless requires_same_department is set"
                )
        elif not is_int(dept_id) or db.session.get(Department, dept_id) is None:
            errors[f"{key}.approver_department_id"] = f"department {dept_id} does not exist"
        if role is not None or user_id is not None:
            errors[f"{key}.approver_type"] = f"{approver_type} steps take approver_department_id only"

    if not is_choice(step["status_on_approval"], STEP_STATUSES[form_type]):
        errors[f"{key}.status_on_approval"] = (
            f"status_on_approval must be one of {sorted(STEP_STATUSES[form_type])}"
        )
    if step["status_on_completion"] is not None and not is_choice(step["status_on_completion"], COMPLETION_STATUSES):
        errors[f"{key}.status_on_completion"] = (
            f"status_on_completion must be one of {sorted(COMPLETION_STATUSES)}"
        )
    return step


def validate_steps(form_type: str, steps) -> list[dict]:
    """Validate a nested steps payload; returns normalised step dicts.

    Raises ValidationError with a per-field ``details`` map.
    """
    errors: dict = {}
    if not isinstance(steps, list) or not steps:
        raise ValidationError("At least one step is required", details={"steps": "must be a non-empty array"})

    normalised = []
    for index, raw in enumerate(steps):
        step = _validate_step(form_type, raw, index, errors)
        if step is not None:
            normalised.append(step)

    orders = [s["step_order"] for s in normalised if is_int(s["step_order"])]
    if sorted(orders) != list(range(1, len(steps) + 1)):
        errors["steps"] = "step_order values must be unique and contiguous starting at 1"
    elif not errors:
        last = max(normalised, key=lambda s: s["step_order"])
        final_status = last["status_on_completion"] or last["status_on_approval"]
        if final_status not in COMPLETION_STATUSES:
            errors["steps"] = "the last step must complete the request (status 'completed')"
        early = [s["step_order"] for s in normalised if s is not last and s["status_on_approval"] in COMPLETION_STATUSES]
        if early:
            errors["steps"] = f"only the last step may complete the request (steps {early})"

    if errors:
        raise ValidationError("Invalid workflow steps", details=errors)
    return sorted(normalised, key=lambda s: s["step_order"])


def _require_admin(actor, action: str) -> None:
    if not actor.is_super_admin:
        raise PermissionDenied("Only super administrators can manage workflows", user_id=actor.id, action=action)


def _unset_other_defaults(form_type: str, keep_id: int | None = None) -> None:
    q = ApprovalWorkflow.query.filter(
        ApprovalWorkflow.form_type == form_type,
        ApprovalWorkflow.is_default.is_(True),
    )
    if keep_id is not None:
        q = q.filter(ApprovalWorkflow.id != keep_id)
    for other in q.all():
        other.is_default = False
        logger.info("Workflow %s is no longer default", other.id, extra={"workflow_id": other.id})
    # flushed before the new default is written so the partial unique index holds
    db.session.flush()


# ═════════════════════════════════════════════════════════════════════════════
# CRUD
# ═════════════════════════════════════════════════════════════════════════════

def list_workflows(actor, form_type: str | None = None) -> list[ApprovalWorkflow]:
    _require_admin(actor, "list_workflows")
    q = ApprovalWorkflow.query
    if form_type:
        q = q.filter_by(form_type=form_type)
    return q.order_by(ApprovalWorkflow.form_type, ApprovalWorkflow.id).all()


def get_workflow(workflow_id: int) -> ApprovalWorkflow:
    workflow = db.session.get(ApprovalWorkflow, workflow_id)
    if workflow is None:
        raise NotFoundError(resource="ApprovalWorkflow", resource_id=workflow_id)
    return workflow


def create_workflow(actor, data: dict) -> ApprovalWorkflow:
    """Create a workflow with its steps.

    Body: { name, form_type, description?, is_active?, is_default?, steps: [...] }
    """
    _require_admin(actor, "create_workflow")
    name = clean_text(data.get("name"))
    form_type = data.get("form_type")
    errors = {}
    if not name:
        errors["name"] = "name is required"
    if not is_choice(form_type, FORM_TYPES):
        errors["form_type"] = f"form_type must be one of {sorted(FORM_TYPES)}"
    if errors:
        raise ValidationError("Invalid workflow", details=errors)
    steps = validate_steps(form_type, data.get("steps"))

    is_default = bool(data.get("is_default", False))
    try:
        if is_default:
            _unset_other_defaults(form_type)
        workflow = ApprovalWorkflow(
            name=name,
            description=data.get("description"),
            form_type=form_type,
            is_active=bool(data.get("is_active", True)),
            is_default=is_default,
            created_by_id=actor.id,
            updated_by_id=actor.id,
        )
        workflow.steps = [WorkflowStep(**step) for step in steps]
        db.session.add(workflow)
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise

    logger.info(
        "Workflow created: %s (%d steps)", workflow.name, len(steps),
        extra={"workflow_id": workflow.id, "form_type": form_type, "user_id": actor.id, "action": "create"},
    )
    return workflow


def update_workflow(actor, workflow_id: int, data: dict) -> ApprovalWorkflow:
    """Update workflow fields; a ``steps`` array replaces the step list.

    Steps are matched by step_order and edited in place, so approval records
    that point at a surviving step keep pointing at it.
    """
    _require_admin(actor, "update_workflow")
    workflow = get_workflow(workflow_id)

    if "form_type" in data and data["form_type"] != workflow.form_type:
        raise ValidationError("form_type cannot be changed", details={"form_type": "immutable"})
    if "name" in data and not clean_text(data.get("name")):
        raise ValidationError("name cannot be empty", details={"name": "required"})
    steps = validate_steps(workflow.form_type, data["steps"]) if "steps" in data else None

    try:
        if "name" in data:
            workflow.name = clean_text(data["name"])
        if "description" in data:
            workflow.description = data["description"]
        if "is_active" in data:
            workflow.is_active = bool(data["is_active"])
        if steps is not None:
            _replace_steps(workflow, steps)
        if "is_default" in data:
            make_default = bool(data["is_default"])
            if make_default and not workflow.is_default:
                _unset_other_defaults(workflow.form_type, keep_id=workflow.id)
            workflow.is_default = make_default
        workflow.updated_by_id = actor.id
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise

    logger.info(
        "Workflow updated: %s", workflow.name,
        extra={"workflow_id": workflow.id, "form_type": workflow.form_type, "user_id": actor.id, "action": "update"},
    )
    return workflow


def _replace_steps(workflow: ApprovalWorkflow, steps: list[dict]) -> None:
    existing = {s.step_order: s for s in workflow.steps}
    wanted = {s["step_order"] for s in steps}
    for order, step in existing.items():
        if order not in wanted:
            workflow.steps.remove(step)
    for spec in steps:
        step = existing.get(spec["step_order"])
        if step is None:
            workflow.steps.append(WorkflowStep(**spec))
            continue
        for field in _STEP_FIELDS:
            setattr(step, field, spec[field])


def count_in_flight(workflow_id: int) -> int:
    """Requests pinned to a workflow that are still in review or returned."""
    live = IN_REVIEW_STATUSES | {"returned"}
    return sum(
        model.query.filter(model.workflow_id == workflow_id, model.status.in_(live)).count()
        for model in REQUEST_MODELS.values()
    )


def delete_workflow(actor, workflow_id: int) -> None:
    _require_admin(actor, "delete_workflow")
    workflow = get_workflow(workflow_id)
    if workflow.is_default:
        raise ValidationError(
            "Cannot delete the default workflow; make another workflow default first",
            details={"is_default": True},
        )
    in_flight = count_in_flight(workflow.id)
    if in_flight:
        raise ValidationError(
            "Cannot delete a workflow with requests still in review; deactivate it first",
            details={"in_flight_requests": in_flight},
        )
    try:
        db.session.delete(workflow)
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise
    logger.info(
        "Workflow deleted", extra={"workflow_id": workflow_id, "user_id": actor.id, "action": "delete"},
    )


# ═════════════════════════════════════════════════════════════════════════════
# Seeding
# ═════════════════════════════════════════════════════════════════════════════

def seed_default_workflows() -> int:
    """Create default workflows mirroring the built-in chains.

    Only form types without any workflow are seeded. Returns the number of
    workflows created; the caller commits.
    """
    created = 0
    for form_type in sorted(FORM_TYPES):
        if ApprovalWorkflow.query.filter_by(form_type=form_type).first():
            continue
        workflow = ApprovalWorkflow(
            name=f"Default {form_type.replace('_', ' ').title()} Workflow",
            form_type=form_type,
            is_active=True,
            is_default=True,
        )
        for spec in legacy_chain(form_type):
            rule = spec.rule
            step = WorkflowStep(
                step_order=spec.step_order,
                step_name=spec.step_name,
                approver_type=rule.approver_type,
                status_on_approval=spec.status_on_approval,
                status_on_completion=spec.status_on_completion,
            )
            if isinstance(rule, RoleApprover):
                step.approver_role = rule.role
            else:
                step.approver_department_id = rule.department_id
                step.requires_same_department = rule.same_department
            workflow.steps.append(step)
        db.session.add(workflow)
        created += 1
        logger.info("Seeded default workflow", extra={"form_type": form_type, "action": "seed"})
    return created
