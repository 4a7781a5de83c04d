"""
ApprovalRecord — per-request, per-step audit row.

Polymorphic reference:
    request_kind + request_id identify the parent (item or vehicle request).

Business rules:
- Records are materialized one at a time: the next step's record is created
  only when the previous one is approved.
- At most one record per request is ``pending`` (partial unique index).
- Once a record leaves ``pending`` it is never modified again; a
  ``before_update`` hook rejects any ORM write to a resolved record.
- step_name, step_order and the approver rule are snapshots taken at
  materialization, so later workflow edits don't touch the trail.
- ``cycle`` is the submission round; a resubmission after a return starts a
  new cycle and leaves earlier rows intact.
"""

from datetime import datetime, timezone

from sqlalchemy import event, inspect

from reqdesk.models import db

RECORD_STATUSES = frozenset({"pending", "approved", "declined", "returned"})
RESOLVED_STATUSES = frozenset({"approved", "declined", "returned"})
RETURN_TARGETS = frozenset({"requestor", "step"})


class ApprovalRecord(db.Model):
    __tablename__ = "approval_records"

    id = db.Column(db.Integer, primary_key=True)

    request_kind = db.Column(db.String(30), nullable=False, comment="item_request | vehicle_request")
    request_id = db.Column(db.Integer, nullable=False)
    cycle = db.Column(db.Integer, nullable=False, default=1)

    # Step snapshot
    workflow_step_id = db.Column(
        db.Integer,
        db.ForeignKey("workflow_steps.id", ondelete="SET NULL"),
        nullable=True,
        comment="NULL for built-in chains or when the step was later removed",
    )
    step_order = db.Column(db.Integer, nullable=False)
    step_name = db.Column(db.String(200), nullable=False)
    approver_type = db.Column(db.String(30), nullable=False)
    approver_role = db.Column(db.String(30))
    approver_user_id = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"))
    approver_department_id = db.Column(
        db.Integer,
        db.ForeignKey("departments.id", ondelete="SET NULL"),
        comment="Effective department after same-department binding",
    )
    status_on_approval = db.Column(db.String(40), nullable=False)
    status_on_completion = db.Column(db.String(40))
    is_dispatch_step = db.Column(db.Boolean, nullable=False, default=False)

    # Assignee resolved at materialization (notification target / display)
    approver_id = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"))
    # Whoever actually resolved the record
    acted_by_id = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"))

    status = db.Column(db.String(20), nullable=False, default="pending")
    comments = db.Column(db.Text)
    signature = db.Column(db.Text)
    return_reason = db.Column(db.Text)
    return_target = db.Column(db.String(20), comment="requestor | step")
    return_step_order = db.Column(db.Integer)

    approved_at = db.Column(db.DateTime(timezone=True))
    declined_at = db.Column(db.DateTime(timezone=True))
    returned_at = db.Column(db.DateTime(timezone=True))
    created_at = db.Column(
        db.DateTime(timezone=True), nullable=False, default=lambda: datetime.now(timezone.utc),
    )

    __table_args__ = (
        db.UniqueConstraint(
            "request_kind", "request_id", "cycle", "step_order", name="uq_approval_records_step",
        ),
        db.Index("ix_approval_records_request", "request_kind", "request_id"),
        db.Index(
            "uq_approval_records_one_pending",
            "request_kind",
            "request_id",
            unique=True,
            sqlite_where=db.text("status = 'pending'"),
            postgresql_where=db.text("status = 'pending'"),
        ),
    )

    approver = db.relationship("User", foreign_keys=[approver_id])
    acted_by = db.relationship("User", foreign_keys=[acted_by_id])
    approver_user = db.relationship("User", foreign_keys=[approver_user_id])
    approver_department = db.relationship("Department", foreign_keys=[approver_department_id])

    @property
    def is_pending(self):
        return self.status == "pending"

    @property
    def resolved_at(self):
        return self.approved_at or self.declined_at or self.returned_at

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "request_kind": self.request_kind,
            "request_id": self.request_id,
            "cycle": self.cycle,
            "workflow_step_id": self.workflow_step_id,
            "step_order": self.step_order,
            "step_name": self.step_name,
            "approver_type": self.approver_type,
            "approver_role": self.approver_role,
            "approver_user_id": self.approver_user_id,
            "approver_department_id": self.approver_department_id,
            "approver_department": self.approver_department.name if self.approver_department else None,
            "status_on_approval": self.status_on_approval,
            "status_on_completion": self.status_on_completion,
            "is_dispatch_step": self.is_dispatch_step,
            "approver": self.approver.to_summary() if self.approver else None,
            "acted_by": self.acted_by.to_summary() if self.acted_by else None,
            "status": self.status,
            "comments": self.comments,
            "signature": self.signature,
            "return_reason": self.return_reason,
            "return_target": self.return_target,
            "return_step_order": self.return_step_order,
            "approved_at": self.approved_at.isoformat() if self.approved_at else None,
            "declined_at": self.declined_at.isoformat() if self.declined_at else None,
            "returned_at": self.returned_at.isoformat() if self.returned_at else None,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }

    def __repr__(self):
        return (
            f"<ApprovalRecord {self.request_kind}:{self.request_id} "
            f"c{self.cycle}#{self.step_order} {self.status}>"
        )


class ResolvedRecordModified(Exception):
    """Raised when code tries to change an approval record that left ``pending``."""


@event.listens_for(ApprovalRecord, "before_update")
def _reject_resolved_record_update(mapper, connection, target):
    history = inspect(target).attrs.status.history
    previous = history.deleted[0] if history.deleted else target.status
    if previous in RESOLVED_STATUSES:
        raise ResolvedRecordModified(f"{target!r} is resolved and immutable")
