"""
Authorization resolver for workflow actions.

``can_act`` is a pure predicate over (acting user, request, pending record):
it reads the approver rule snapshotted on the record and never touches the
database. Blueprints expose its result as advisory ``permissions``; the
engine calls it again before every write, and that check is the one that
counts.
"""

from dataclasses import dataclass

from reqdesk.models.request import (
    EDITABLE_STATUSES,
    FINAL_VERIFICATION_STATUSES,
    IN_REVIEW_STATUSES,
)
from reqdesk.services.approver_rules import DEPARTMENT_APPROVER_ROLE, rule_from_record

# Roles that see every submitted request
_OVERSIGHT_ROLES = frozenset({"super_administrator", "it_manager", "service_desk"})

VERIFIER_ASSIGNABLE_STATUSES = frozenset({"submitted", "department_approved"})


@dataclass(frozen=True)
class Permissions:
    can_approve: bool = False
    can_decline: bool = False
    can_return: bool = False
    can_sign: bool = False

    @property
    def any(self) -> bool:
        return self.can_approve or self.can_decline or self.can_return or self.can_sign

    def to_dict(self) -> dict:
        return {
            "canApprove": self.can_approve,
            "canDecline": self.can_decline,
            "canReturn": self.can_return,
            "canSign": self.can_sign,
        }


NO_PERMISSIONS = Permissions()


def can_act(user, request_obj, record) -> Permissions:
    """What ``user`` may do on ``record``, the request's pending approval.

    All-false when there is no record, the record is resolved or belongs to
    another request, the request is not in review, or the record's approver
    rule does not admit the user.
    """
    if record is None or record.status != "pending":
        return NO_PERMISSIONS
    if record.request_kind != request_obj.KIND or record.request_id != request_obj.id:
        return NO_PERMISSIONS
    if request_obj.status not in IN_REVIEW_STATUSES:
        return NO_PERMISSIONS
    if not rule_from_record(record).permits(user):
        return NO_PERMISSIONS
    return Permissions(
        can_approve=True,
        can_decline=True,
        can_return=True,
        can_sign=record.signature is None,
    )


def is_dispatcher(user, dispatch_department_id: int | None) -> bool:
    return (
        dispatch_department_id is not None
        and user.role == DEPARTMENT_APPROVER_ROLE
        and user.department_id == dispatch_department_id
    )


def can_view(user, request_obj, records=(), dispatch_department_id: int | None = None) -> bool:
    """Whether ``user`` may read ``request_obj``.

    Drafts are private to the requestor. Submitted requests are visible to
    oversight roles, approvers of the request's department, anyone named on
    its approval trail, and (vehicle requests) dispatchers and the verifier.
    """
    if request_obj.requestor_id == user.id:
        return True
    if request_obj.status == "draft":
        return False
    if user.role in _OVERSIGHT_ROLES:
        return True
    if user.role == DEPARTMENT_APPROVER_ROLE and user.department_id == request_obj.department_id:
        return True
    if request_obj.KIND == "vehicle_request":
        if request_obj.verifier_id == user.id or is_dispatcher(user, dispatch_department_id):
            return True
    for record in records:
        if user.id in (record.approver_id, record.acted_by_id):
            return True
        if record.status == "pending" and rule_from_record(record).permits(user):
            return True
    return False


def can_assign_verifier(user, request_obj, dispatch_department_id: int | None) -> bool:
    if request_obj.KIND != "vehicle_request":
        return False
    if request_obj.status not in VERIFIER_ASSIGNABLE_STATUSES:
        return False
    if request_obj.verification_status in FINAL_VERIFICATION_STATUSES:
        return False
    return user.is_super_admin or is_dispatcher(user, dispatch_department_id)


def can_verify(user, request_obj) -> bool:
    return (
        request_obj.KIND == "vehicle_request"
        and request_obj.verifier_id == user.id
        and request_obj.verification_status == "pending"
    )


def request_permissions(user, request_obj, record, dispatch_department_id: int | None = None) -> dict:
    """Full advisory permission map returned with a request."""
    acting = can_act(user, request_obj, record)
    is_requestor = request_obj.requestor_id == user.id
    perms = acting.to_dict()
    perms.update({
        "canEdit": is_requestor and request_obj.is_editable,
        "canSubmit": is_requestor and request_obj.status in EDITABLE_STATUSES,
        "canDelete": is_requestor and request_obj.status == "draft",
    })
    if request_obj.KIND == "vehicle_request":
        perms.update({
            "canAssignVerifier": can_assign_verifier(user, request_obj, dispatch_department_id),
            "canVerify": can_verify(user, request_obj),
            "canEditDispatch": acting.can_approve and record.is_dispatch_step,
        })
    return perms
