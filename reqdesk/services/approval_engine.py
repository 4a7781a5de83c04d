"""
Approval Engine — request state machine and step materialization.

Every transition is one transaction:

    submit   draft/returned  → first pending record of a new cycle
    approve  pending record  → approved; next record materialized (or completion)
    decline  pending record  → declined; request in a terminal declined status
    return   pending record  → returned; request ``returned`` to the requestor
                               or to an earlier approved step
    sign     pending record  → signature attached, status unchanged

Records are created lazily: ``materialize_next_step`` creates only the next
record, inside the transaction that resolved the previous one, so a request
in review always has exactly one pending record.

The resolving write is a conditional UPDATE (``WHERE status = 'pending'``);
zero affected rows means another actor got there first and the caller gets
AlreadyResolved. Notifications go out after commit and never fail a
transition.
"""

import logging
from datetime import datetime, timezone

from sqlalchemy import update

from reqdesk.core.exceptions import (
    AlreadyResolved,
    InvalidTransition,
    PermissionDenied,
    ValidationError,
    WorkflowMisconfigured,
)
from reqdesk.models import db
from reqdesk.models.approval import ApprovalRecord
from reqdesk.models.org import User
from reqdesk.models.request import (
    COMPLETION_STATUSES,
    IN_REVIEW_STATUSES,
    REQUEST_MODELS,
    statuses_for,
    validate_request_transition,
)
from reqdesk.services import notification_service
from reqdesk.services.approver_rules import (
    DEPARTMENT_APPROVER_ROLE,
    resolve_approver,
    rule_from_record,
    snapshot_fields,
)
from reqdesk.services.authorization import can_act
from reqdesk.services.request_service import (
    approval_records,
    current_pending_record,
    get_request,
    validate_for_submission,
)
from reqdesk.services.transactions import atomic
from reqdesk.services.workflow_service import pin_workflow, step_specs_for_request
from reqdesk.utils.helpers import clean_text

logger = logging.getLogger(__name__)

DISPATCH_FIELDS = ("assigned_driver", "assigned_vehicle", "approval_date")


def _now():
    return datetime.now(timezone.utc)


def _log(message, request_obj, actor, action, record=None):
    extra = {
        "request_kind": request_obj.KIND,
        "request_ref": request_obj.reference_code,
        "user_id": actor.id if actor else None,
        "action": action,
    }
    if record is not None:
        extra["step_order"] = record.step_order
    logger.info(message, extra=extra)


# ═════════════════════════════════════════════════════════════════════════════
# Materialization
# ═════════════════════════════════════════════════════════════════════════════

def materialize_next_step(request_obj, after_step_order: int, cycle: int) -> ApprovalRecord | None:
    """Create the pending record for the first resolvable step after ``after_step_order``.

    Optional steps nobody can approve are left out. A required step nobody
    can approve raises WorkflowMisconfigured; the caller's transaction rolls
    back. Returns None when no steps remain.
    """
    for spec in step_specs_for_request(request_obj):
        if spec.step_order <= after_step_order:
            continue
        bound, assignee = resolve_approver(spec.rule, request_obj.department_id)
        if assignee is None:
            if spec.skippable:
                logger.info(
                    "Step %d (%s) skipped: no approver", spec.step_order, spec.step_name,
                    extra={
                        "request_kind": request_obj.KIND,
                        "request_ref": request_obj.reference_code,
                        "step_order": spec.step_order,
                    },
                )
                continue
            raise WorkflowMisconfigured(
                f"No active approver for required step {spec.step_order} ({spec.step_name})",
                step_order=spec.step_order,
                step_name=spec.step_name,
            )

        record = ApprovalRecord(
            request_kind=request_obj.KIND,
            request_id=request_obj.id,
            cycle=cycle,
            workflow_step_id=spec.workflow_step_id,
            step_order=spec.step_order,
            step_name=spec.step_name,
            status_on_approval=spec.status_on_approval,
            status_on_completion=spec.status_on_completion,
            is_dispatch_step=spec.dispatch,
            approver_id=assignee.id,
            status="pending",
            **snapshot_fields(bound),
        )
        db.session.add(record)
        db.session.flush()
        return record
    return None


def _status_before(request_obj, step_order: int) -> str:
    """Status the request had when ``step_order`` last became the active step."""
    approved = [
        r for r in approval_records(request_obj)
        if r.status == "approved" and r.step_order < step_order
    ]
    if not approved:
        return "submitted"
    latest = max(approved, key=lambda r: (r.step_order, r.cycle))
    return latest.status_on_approval


def _completion_status(record: ApprovalRecord) -> str:
    if record.status_on_completion:
        return record.status_on_completion
    if record.status_on_approval in COMPLETION_STATUSES:
        return record.status_on_approval
    return "completed"


def _declined_status(request_obj, record: ApprovalRecord) -> str:
    tier_status = record.status_on_approval or ""
    if tier_status.endswith("_approved"):
        candidate = tier_status[: -len("_approved")] + "_declined"
        if candidate in statuses_for(request_obj.KIND):
            return candidate
    return "declined"


def _resolve_record(record: ApprovalRecord, actor, **values) -> None:
    """Conditionally move ``record`` out of ``pending``; AlreadyResolved if it already left."""
    result = db.session.execute(
        update(ApprovalRecord)
        .where(ApprovalRecord.id == record.id, ApprovalRecord.status == "pending")
        .values(acted_by_id=actor.id, **values)
        .execution_options(synchronize_session="fetch")
    )
    if result.rowcount != 1:
        raise AlreadyResolved()


def _pending_record_for(request_obj, action: str) -> ApprovalRecord:
    record = current_pending_record(request_obj)
    if record is None:
        if request_obj.status == "draft" and not request_obj.cycle:
            raise InvalidTransition(action, request_obj.status, "the request has not been submitted")
        raise AlreadyResolved()
    return record


def _authorize(actor, request_obj, record, action: str):
    perms = can_act(actor, request_obj, record)
    if not perms.any:
        raise PermissionDenied(
            f"You are not an approver for step {record.step_order} ({record.step_name})",
            user_id=actor.id, action=action,
        )
    return perms


def _signature_values(record: ApprovalRecord, signature: str | None) -> dict:
    if isinstance(signature, str) and signature and record.signature is None:
        return {"signature": signature}
    return {}


def _user(actor) -> User | None:
    return db.session.get(User, actor.id) if actor else None


# ═════════════════════════════════════════════════════════════════════════════
# Transitions
# ═════════════════════════════════════════════════════════════════════════════

def submit_request(kind: str, request_id: int, actor):
    """Submit a draft, or resubmit a returned request.

    A fresh round (draft, or returned to the requestor) pins the active
    workflow and starts at step 1 with status ``submitted``. A request
    returned to an earlier step resumes at that step on the workflow it is
    already pinned to.
    """
    request_obj = get_request(kind, request_id)
    if request_obj.requestor_id != actor.id:
        raise PermissionDenied("Only the requestor can submit this request", user_id=actor.id, action="submit")
    if not validate_request_transition(kind, request_obj.status, "submit"):
        raise InvalidTransition("submit", request_obj.status)
    validate_for_submission(request_obj)

    resume_at = request_obj.return_step_order if request_obj.status == "returned" else None
    with atomic(integrity_is_conflict=True):
        if resume_at is None:
            pin_workflow(request_obj)
            status = "submitted"
            after = 0
        else:
            status = _status_before(request_obj, resume_at)
            after = resume_at - 1
        request_obj.cycle = (request_obj.cycle or 0) + 1
        record = materialize_next_step(request_obj, after, request_obj.cycle)
        if record is None:
            raise WorkflowMisconfigured("The workflow has no step left to approve this request")
        request_obj.status = status
        request_obj.return_step_order = None
        request_obj.submitted_at = _now()
        request_obj.completed_at = None

    _log("Request submitted", request_obj, actor, "submit", record)
    notification_service.notify("submitted", request_obj, [request_obj.requestor], step_name=record.step_name)
    notification_service.notify("approval_required", request_obj, [record.approver], step_name=record.step_name)
    return request_obj


def approve(kind: str, request_id: int, actor, comments: str | None = None, signature: str | None = None):
    """Approve the current step and advance the request."""
    request_obj = get_request(kind, request_id)
    record = _pending_record_for(request_obj, "approve")
    _authorize(actor, request_obj, record, "approve")
    if record.is_dispatch_step:
        missing = [f for f in DISPATCH_FIELDS if not getattr(request_obj, f, None)]
        if missing:
            raise ValidationError(
                "Driver, vehicle and approval date must be set before dispatch approval",
                details={f: "required" for f in missing},
            )

    now = _now()
    with atomic(integrity_is_conflict=True):
        _resolve_record(
            record, actor,
            status="approved", approved_at=now, comments=clean_text(comments) or None,
            **_signature_values(record, signature),
        )
        next_record = materialize_next_step(request_obj, record.step_order, record.cycle)
        if next_record is not None:
            request_obj.status = record.status_on_approval
        else:
            request_obj.status = _completion_status(record)
            request_obj.completed_at = now

    _log("Step approved", request_obj, actor, "approve", record)
    acting = _user(actor)
    notification_service.notify(
        "approved", request_obj, [request_obj.requestor],
        step_name=record.step_name, actor_name=acting.full_name if acting else "",
    )
    if next_record is not None:
        notification_service.notify(
            "approval_required", request_obj, [next_record.approver], step_name=next_record.step_name,
        )
    return request_obj


def decline(kind: str, request_id: int, actor, comments: str | None = None, signature: str | None = None):
    """Decline the current step; the request ends in a declined status."""
    request_obj = get_request(kind, request_id)
    record = _pending_record_for(request_obj, "decline")
    _authorize(actor, request_obj, record, "decline")
    comments = clean_text(comments)
    if not comments:
        raise ValidationError("Comments are required to decline", details={"comments": "required"})

    with atomic(integrity_is_conflict=True):
        _resolve_record(
            record, actor,
            status="declined", declined_at=_now(), comments=comments,
            **_signature_values(record, signature),
        )
        request_obj.status = _declined_status(request_obj, record)

    _log("Request declined", request_obj, actor, "decline", record)
    acting = _user(actor)
    notification_service.notify(
        "declined", request_obj, [request_obj.requestor],
        step_name=record.step_name, comments=comments, actor_name=acting.full_name if acting else "",
    )
    return request_obj


def returnable_steps(request_obj, record: ApprovalRecord) -> list[int]:
    """Step orders ``record``'s approver may send the request back to.

    A step qualifies when it comes before ``record`` and its latest record
    (across rounds) is approved.
    """
    latest = {}
    for r in approval_records(request_obj):
        if r.step_order < record.step_order:
            latest[r.step_order] = r
    return sorted(order for order, r in latest.items() if r.status == "approved")


def _return_target(request_obj, record: ApprovalRecord, return_to) -> int | None:
    if return_to in (None, "", "requestor"):
        return None
    allowed = returnable_steps(request_obj, record)
    target = None
    if return_to == "department_approver":
        target = allowed[0] if allowed else None
    elif isinstance(return_to, int) and not isinstance(return_to, bool):
        target = return_to
    elif isinstance(return_to, str) and return_to.startswith("step:") and return_to[5:].isdigit():
        target = int(return_to[5:])
    if target is None or target not in allowed:
        raise ValidationError(
            "A request can only be returned to the requestor or to an earlier approved step",
            details={"return_to": return_to, "allowed": ["requestor"] + [f"step:{o}" for o in allowed]},
        )
    return target


def return_request(
    kind: str,
    request_id: int,
    actor,
    return_reason: str | None = None,
    return_to="requestor",
    comments: str | None = None,
    signature: str | None = None,
):
    """Return the request to its requestor or to an earlier approved step."""
    request_obj = get_request(kind, request_id)
    record = _pending_record_for(request_obj, "return")
    _authorize(actor, request_obj, record, "return")
    return_reason = clean_text(return_reason)
    if not return_reason:
        raise ValidationError("A return reason is required", details={"return_reason": "required"})
    target = _return_target(request_obj, record, return_to)

    with atomic(integrity_is_conflict=True):
        _resolve_record(
            record, actor,
            status="returned",
            returned_at=_now(),
            comments=clean_text(comments) or None,
            return_reason=return_reason,
            return_target="requestor" if target is None else "step",
            return_step_order=target,
            **_signature_values(record, signature),
        )
        request_obj.status = "returned"
        request_obj.return_step_order = target

    _log("Request returned", request_obj, actor, "return", record)
    acting = _user(actor)
    notification_service.notify(
        "returned", request_obj, [request_obj.requestor],
        step_name=record.step_name, return_reason=return_reason,
        actor_name=acting.full_name if acting else "",
    )
    return request_obj


def sign(kind: str, request_id: int, actor, signature: str | None):
    """Attach the acting approver's signature to the current step."""
    request_obj = get_request(kind, request_id)
    if not isinstance(signature, str) or not signature:
        raise ValidationError("A signature is required", details={"signature": "required"})
    record = _pending_record_for(request_obj, "sign")
    perms = _authorize(actor, request_obj, record, "sign")
    if not perms.can_sign:
        raise AlreadyResolved("This step has already been signed")

    with atomic(integrity_is_conflict=True):
        result = db.session.execute(
            update(ApprovalRecord)
            .where(
                ApprovalRecord.id == record.id,
                ApprovalRecord.status == "pending",
                ApprovalRecord.signature.is_(None),
            )
            .values(signature=signature)
            .execution_options(synchronize_session="fetch")
        )
        if result.rowcount != 1:
            raise AlreadyResolved("This step has already been signed")

    _log("Step signed", request_obj, actor, "sign", record)
    return record


# ═════════════════════════════════════════════════════════════════════════════
# Queries
# ═════════════════════════════════════════════════════════════════════════════

def _inbox_filter(actor):
    clauses = [ApprovalRecord.approver_user_id == actor.id]
    if actor.role:
        clauses.append(ApprovalRecord.approver_role == actor.role)
    if actor.role == DEPARTMENT_APPROVER_ROLE and actor.department_id is not None:
        clauses.append(db.and_(
            ApprovalRecord.approver_type.in_(("department", "department_approver")),
            ApprovalRecord.approver_department_id == actor.department_id,
        ))
    return db.or_(*clauses)


def pending_for_user(actor) -> list[tuple[ApprovalRecord, object]]:
    """Pending records (with their requests) that ``actor`` can act on now.

    The query keeps only records whose approver columns could match the
    actor; ``permits`` then applies the exact rule.
    """
    results = []
    records = (
        ApprovalRecord.query
        .filter(ApprovalRecord.status == "pending", _inbox_filter(actor))
        .order_by(ApprovalRecord.created_at, ApprovalRecord.id)
        .all()
    )
    for record in records:
        if not rule_from_record(record).permits(actor):
            continue
        request_obj = db.session.get(REQUEST_MODELS[record.request_kind], record.request_id)
        if request_obj is None or request_obj.status not in IN_REVIEW_STATUSES:
            continue
        results.append((record, request_obj))
    return results
