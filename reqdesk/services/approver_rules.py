"""
Approver rules — who may act on a workflow step.

A step's approver is one of four closed variants:

    RoleApprover               any active user holding ``role``
    UserApprover               exactly one named user
    DepartmentApprover         a department_approver of a given department
    OwnDepartmentApprover      same, defaulting to the requestor's department

Every variant supports the same three operations:

    bind(requestor_department_id)   fix same-department scoping to a request
    permits(acting_user)            set-membership / identity check
    candidates()                    query of active users satisfying the rule

``resolve_approver`` is the single entry point used by the materializer;
``rule_from_record`` rebuilds the bound rule from an ApprovalRecord
snapshot for authorization.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from typing import ClassVar

from reqdesk.models.org import User

DEPARTMENT_APPROVER_ROLE = "department_approver"


@dataclass(frozen=True)
class RoleApprover:
    role: str
    same_department: bool = False
    department_id: int | None = None

    approver_type: ClassVar[str] = "role"

    def bind(self, requestor_department_id: int | None) -> RoleApprover:
        if self.same_department:
            return replace(self, department_id=requestor_department_id, same_department=False)
        return self

    def permits(self, user) -> bool:
        if user.role != self.role:
            return False
        return self.department_id is None or user.department_id == self.department_id

    def candidates(self):
        q = User.query.filter_by(role=self.role, is_active=True)
        if self.department_id is not None:
            q = q.filter_by(department_id=self.department_id)
        return q


@dataclass(frozen=True)
class UserApprover:
    user_id: int

    approver_type: ClassVar[str] = "user"

    def bind(self, requestor_department_id: int | None) -> UserApprover:
        return self

    def permits(self, user) -> bool:
        return user.id == self.user_id

    def candidates(self):
        return User.query.filter_by(id=self.user_id, is_active=True)


@dataclass(frozen=True)
class DepartmentApprover:
    department_id: int | None
    same_department: bool = False

    approver_type: ClassVar[str] = "department"

    def bind(self, requestor_department_id: int | None) -> DepartmentApprover:
        # same-department scoping wins over a configured department
        if self.same_department or self.department_id is None:
            return replace(self, department_id=requestor_department_id, same_department=False)
        return self

    def permits(self, user) -> bool:
        return (
            self.department_id is not None
            and user.role == DEPARTMENT_APPROVER_ROLE
            and user.department_id == self.department_id
        )

    def candidates(self):
        return User.query.filter_by(
            role=DEPARTMENT_APPROVER_ROLE, department_id=self.department_id, is_active=True,
        )


@dataclass(frozen=True)
class OwnDepartmentApprover(DepartmentApprover):
    approver_type: ClassVar[str] = "department_approver"


ApproverRule = RoleApprover | UserApprover | DepartmentApprover | OwnDepartmentApprover

_DEPARTMENT_RULES = {
    "department": DepartmentApprover,
    "department_approver": OwnDepartmentApprover,
}


def rule_from_fields(
    approver_type: str,
    *,
    approver_role: str | None = None,
    approver_user_id: int | None = None,
    approver_department_id: int | None = None,
    requires_same_department: bool = False,
) -> ApproverRule:
    """Build the rule variant for a step definition's approver fields."""
    if approver_type == "role":
        return RoleApprover(role=approver_role, same_department=requires_same_department)
    if approver_type == "user":
        return UserApprover(user_id=approver_user_id)
    if approver_type in _DEPARTMENT_RULES:
        return _DEPARTMENT_RULES[approver_type](
            department_id=approver_department_id, same_department=requires_same_department,
        )
    raise ValueError(f"Unknown approver_type: {approver_type!r}")


def rule_from_record(record) -> ApproverRule:
    """Rebuild the already-bound rule captured on an ApprovalRecord."""
    if record.approver_type == "role":
        return RoleApprover(role=record.approver_role, department_id=record.approver_department_id)
    if record.approver_type == "user":
        return UserApprover(user_id=record.approver_user_id)
    return _DEPARTMENT_RULES[record.approver_type](department_id=record.approver_department_id)


def resolve_approver(rule: ApproverRule, requestor_department_id: int | None):
    """Bind ``rule`` to a request and pick its assignee.

    Returns ``(bound_rule, user)``; ``user`` is None when nobody active
    satisfies the rule. The lowest-id match is the assignee; for role and
    department rules any other match may still act.
    """
    bound = rule.bind(requestor_department_id)
    if isinstance(bound, DepartmentApprover) and bound.department_id is None:
        return bound, None
    return bound, bound.candidates().order_by(User.id).first()


def snapshot_fields(bound: ApproverRule) -> dict:
    """Columns an ApprovalRecord stores for a bound rule."""
    fields = {
        "approver_type": bound.approver_type,
        "approver_role": None,
        "approver_user_id": None,
        "approver_department_id": None,
    }
    if isinstance(bound, RoleApprover):
        fields["approver_role"] = bound.role
        fields["approver_department_id"] = bound.department_id
    elif isinstance(bound, UserApprover):
        fields["approver_user_id"] = bound.user_id
    else:
        fields["approver_department_id"] = bound.department_id
    return fields
