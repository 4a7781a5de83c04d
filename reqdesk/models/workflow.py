"""
Configurable approval workflows.

An ApprovalWorkflow is an ordered list of WorkflowStep rows for one form
type. Steps are edited in place; approval records already materialized for
in-flight requests keep their own snapshot of step name, order and approver
rule, so editing a workflow never rewrites history.

At most one workflow per form type carries ``is_default``; the partial
unique index below backs the service-level rule.
"""

from datetime import datetime, timezone

from reqdesk.models import db

FORM_TYPES = frozenset({"item_request", "vehicle_request"})

APPROVER_TYPES = frozenset({"role", "user", "department", "department_approver"})


class ApprovalWorkflow(db.Model):
    __tablename__ = "approval_workflows"

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(200), nullable=False)
    description = db.Column(db.Text)
    form_type = db.Column(db.String(30), nullable=False, comment="item_request | vehicle_request")
    is_active = db.Column(db.Boolean, nullable=False, default=True)
    is_default = db.Column(db.Boolean, nullable=False, default=False)
    created_by_id = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"))
    updated_by_id = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"))
    created_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))
    updated_at = db.Column(
        db.DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    __table_args__ = (
        db.Index("ix_approval_workflows_form_active", "form_type", "is_active"),
        db.Index(
            "uq_approval_workflows_default_per_form",
            "form_type",
            unique=True,
            sqlite_where=db.text("is_default = 1"),
            postgresql_where=db.text("is_default IS TRUE"),
        ),
    )

    steps = db.relationship(
        "WorkflowStep",
        back_populates="workflow",
        order_by="WorkflowStep.step_order",
        cascade="all, delete-orphan",
    )
    created_by = db.relationship("User", foreign_keys=[created_by_id])
    updated_by = db.relationship("User", foreign_keys=[updated_by_id])

    def to_dict(self, include_steps=True):
        d = {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "form_type": self.form_type,
            "is_active": self.is_active,
            "is_default": self.is_default,
            "created_by": self.created_by.to_summary() if self.created_by else None,
            "updated_by": self.updated_by.to_summary() if self.updated_by else None,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }
        if include_steps:
            d["steps"] = [s.to_dict() for s in self.steps]
        return d

    def __repr__(self):
        return f"<ApprovalWorkflow {self.id}: {self.name} [{self.form_type}]>"


class WorkflowStep(db.Model):
    __tablename__ = "workflow_steps"

    id = db.Column(db.Integer, primary_key=True)
    workflow_id = db.Column(
        db.Integer, db.ForeignKey("approval_workflows.id", ondelete="CASCADE"), nullable=False,
    )
    step_order = db.Column(db.Integer, nullable=False)
    step_name = db.Column(db.String(200), nullable=False)
    approver_type = db.Column(
        db.String(30), nullable=False, comment="role | user | department | department_approver",
    )
    approver_role = db.Column(db.String(30))
    approver_user_id = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"))
    approver_department_id = db.Column(db.Integer, db.ForeignKey("departments.id", ondelete="SET NULL"))
    requires_same_department = db.Column(db.Boolean, nullable=False, default=False)
    is_required = db.Column(db.Boolean, nullable=False, default=True)
    can_skip = db.Column(db.Boolean, nullable=False, default=False)
    status_on_approval = db.Column(db.String(40), nullable=False)
    status_on_completion = db.Column(db.String(40))
    created_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))
    updated_at = db.Column(
        db.DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    __table_args__ = (
        db.UniqueConstraint("workflow_id", "step_order", name="uq_workflow_steps_order"),
    )

    workflow = db.relationship("ApprovalWorkflow", back_populates="steps")
    approver_user = db.relationship("User", foreign_keys=[approver_user_id])
    approver_department = db.relationship("Department", foreign_keys=[approver_department_id])

    def to_dict(self):
        return {
            "id": self.id,
            "workflow_id": self.workflow_id,
            "step_order": self.step_order,
            "step_name": self.step_name,
            "approver_type": self.approver_type,
            "approver_role": self.approver_role,
            "approver_user_id": self.approver_user_id,
            "approver_user": self.approver_user.to_summary() if self.approver_user else None,
            "approver_department_id": self.approver_department_id,
            "approver_department": self.approver_department.name if self.approver_department else None,
            "requires_same_department": self.requires_same_department,
            "is_required": self.is_required,
            "can_skip": self.can_skip,
            "status_on_approval": self.status_on_approval,
            "status_on_completion": self.status_on_completion,
        }

    def __repr__(self):
        return f"<WorkflowStep {self.workflow_id}#{self.step_order}: {self.step_name}>"
