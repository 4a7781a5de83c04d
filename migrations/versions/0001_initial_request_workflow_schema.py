"""initial request and approval workflow schema

Creates the request desk tables:
  - departments, users          — organisation data for approver resolution
  - approval_workflows          — configurable workflows per form type
  - workflow_steps              — ordered steps with approver rules
  - item_requests, request_items
  - vehicle_requests
  - approval_records            — per-request, per-step audit rows

Tables are created conditionally so the revision also applies to databases
that already received them via db.create_all() in development.

Revision ID: 0001
Revises:
Create Date: 2026-10-18 09:00:00.000000
"""
from alembic import op
import sqlalchemy as sa
from sqlalchemy import inspect as sa_inspect


# revision identifiers, used by Alembic.
revision = '0001'
down_revision = None
branch_labels = None
depends_on = None


def _timestamps():
    return [
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
    ]


def _request_columns():
    return [
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("reference_code", sa.String(length=30), nullable=False),
        sa.Column("requestor_id", sa.Integer(), nullable=False),
        sa.Column("department_id", sa.Integer(), nullable=True),
        sa.Column("status", sa.String(length=40), nullable=False),
        sa.Column("workflow_id", sa.Integer(), nullable=True),
        sa.Column("uses_legacy_chain", sa.Boolean(), nullable=False),
        sa.Column("cycle", sa.Integer(), nullable=False),
        sa.Column("return_step_order", sa.Integer(), nullable=True),
        sa.Column("comments", sa.Text(), nullable=True),
        sa.Column("requestor_signature", sa.Text(), nullable=True),
        sa.Column("attachments", sa.JSON(), nullable=False),
        sa.Column("submitted_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.Column("version_id", sa.Integer(), nullable=False),
    ]


def _request_constraints():
    return [
        sa.ForeignKeyConstraint(["requestor_id"], ["users.id"]),
        sa.ForeignKeyConstraint(["department_id"], ["departments.id"]),
        sa.ForeignKeyConstraint(["workflow_id"], ["approval_workflows.id"], ondelete="SET NULL"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("reference_code"),
    ]


def upgrade():
    bind = op.get_bind()
    existing = set(sa_inspect(bind).get_table_names())

    # ── Organisation ─────────────────────────────────────────────────────
    if "departments" not in existing:
        op.create_table(
            "departments",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("name", sa.String(length=120), nullable=False),
            sa.Column("description", sa.Text(), nullable=True),
            sa.Column("is_active", sa.Boolean(), nullable=False),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("name"),
        )

    if "users" not in existing:
        op.create_table(
            "users",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("username", sa.String(length=80), nullable=False),
            sa.Column("email", sa.String(length=200), nullable=False),
            sa.Column("first_name", sa.String(length=100), nullable=True),
            sa.Column("last_name", sa.String(length=100), nullable=True),
            sa.Column("title", sa.String(length=150), nullable=True),
            sa.Column("role", sa.String(length=30), nullable=False),
            sa.Column("department_id", sa.Integer(), nullable=True),
            sa.Column("is_active", sa.Boolean(), nullable=False),
            *_timestamps(),
            sa.ForeignKeyConstraint(["department_id"], ["departments.id"], ondelete="SET NULL"),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("username"),
        )
        op.create_index("ix_users_role_department", "users", ["role", "department_id", "is_active"])

    # ── Workflows ────────────────────────────────────────────────────────
    if "approval_workflows" not in existing:
        op.create_table(
            "approval_workflows",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("name", sa.String(length=200), nullable=False),
            sa.Column("description", sa.Text(), nullable=True),
            sa.Column("form_type", sa.String(length=30), nullable=False),
            sa.Column("is_active", sa.Boolean(), nullable=False),
            sa.Column("is_default", sa.Boolean(), nullable=False),
            sa.Column("created_by_id", sa.Integer(), nullable=True),
            sa.Column("updated_by_id", sa.Integer(), nullable=True),
            *_timestamps(),
            sa.ForeignKeyConstraint(["created_by_id"], ["users.id"], ondelete="SET NULL"),
            sa.ForeignKeyConstraint(["updated_by_id"], ["users.id"], ondelete="SET NULL"),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index(
            "ix_approval_workflows_form_active", "approval_workflows", ["form_type", "is_active"],
        )
        op.create_index(
            "uq_approval_workflows_default_per_form",
            "approval_workflows",
            ["form_type"],
            unique=True,
            sqlite_where=sa.text("is_default = 1"),
            postgresql_where=sa.text("is_default IS TRUE"),
        )

    if "workflow_steps" not in existing:
        op.create_table(
            "workflow_steps",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("workflow_id", sa.Integer(), nullable=False),
            sa.Column("step_order", sa.Integer(), nullable=False),
            sa.Column("step_name", sa.String(length=200), nullable=False),
            sa.Column("approver_type", sa.String(length=30), nullable=False),
            sa.Column("approver_role", sa.String(length=30), nullable=True),
            sa.Column("approver_user_id", sa.Integer(), nullable=True),
            sa.Column("approver_department_id", sa.Integer(), nullable=True),
            sa.Column("requires_same_department", sa.Boolean(), nullable=False),
            sa.Column("is_required", sa.Boolean(), nullable=False),
            sa.Column("can_skip", sa.Boolean(), nullable=False),
            sa.Column("status_on_approval", sa.String(length=40), nullable=False),
            sa.Column("status_on_completion", sa.String(length=40), nullable=True),
            *_timestamps(),
            sa.ForeignKeyConstraint(["workflow_id"], ["approval_workflows.id"], ondelete="CASCADE"),
            sa.ForeignKeyConstraint(["approver_user_id"], ["users.id"], ondelete="SET NULL"),
            sa.ForeignKeyConstraint(["approver_department_id"], ["departments.id"], ondelete="SET NULL"),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("workflow_id", "step_order", name="uq_workflow_steps_order"),
        )

    # ── Requests ─────────────────────────────────────────────────────────
    if "item_requests" not in existing:
        op.create_table(
            "item_requests",
            *_request_columns(),
            sa.Column("user_name", sa.String(length=150), nullable=True),
            sa.Column("user_position", sa.String(length=150), nullable=True),
            sa.Column("priority", sa.String(length=10), nullable=False),
            sa.Column("date_required", sa.Date(), nullable=True),
            sa.Column("reason", sa.Text(), nullable=True),
            *_request_constraints(),
        )
        for col in ("requestor_id", "department_id", "status"):
            op.create_index(f"ix_item_requests_{col}", "item_requests", [col])

    if "request_items" not in existing:
        op.create_table(
            "request_items",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("request_id", sa.Integer(), nullable=False),
            sa.Column("position", sa.Integer(), nullable=False),
            sa.Column("category", sa.String(length=50), nullable=False),
            sa.Column("item_description", sa.Text(), nullable=False),
            sa.Column("quantity", sa.Integer(), nullable=False),
            sa.Column("inventory_number", sa.String(length=100), nullable=True),
            sa.Column("proposed_specs", sa.Text(), nullable=True),
            sa.Column("purpose", sa.Text(), nullable=True),
            sa.Column("estimated_cost", sa.Numeric(precision=12, scale=2), nullable=True),
            sa.Column("vendor_info", sa.Text(), nullable=True),
            sa.Column("is_replacement", sa.Boolean(), nullable=False),
            sa.Column("replaced_item_info", sa.Text(), nullable=True),
            sa.Column("urgency_reason", sa.Text(), nullable=True),
            sa.ForeignKeyConstraint(["request_id"], ["item_requests.id"], ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_request_items_request_id", "request_items", ["request_id"])

    if "vehicle_requests" not in existing:
        op.create_table(
            "vehicle_requests",
            *_request_columns(),
            sa.Column("request_type", sa.String(length=40), nullable=False),
            sa.Column("requestor_name", sa.String(length=150), nullable=True),
            sa.Column("contact_number", sa.String(length=50), nullable=True),
            sa.Column("date_prepared", sa.Date(), nullable=True),
            sa.Column("purpose", sa.Text(), nullable=True),
            sa.Column("passengers", sa.JSON(), nullable=False),
            sa.Column("travel_date_from", sa.Date(), nullable=True),
            sa.Column("travel_date_to", sa.Date(), nullable=True),
            sa.Column("pick_up_location", sa.String(length=255), nullable=True),
            sa.Column("pick_up_time", sa.String(length=10), nullable=True),
            sa.Column("drop_off_location", sa.String(length=255), nullable=True),
            sa.Column("drop_off_time", sa.String(length=10), nullable=True),
            sa.Column("destination", sa.String(length=255), nullable=True),
            sa.Column("departure_time", sa.String(length=10), nullable=True),
            sa.Column("destination_car", sa.String(length=255), nullable=True),
            sa.Column("has_valid_license", sa.Boolean(), nullable=True),
            sa.Column("license_number", sa.String(length=100), nullable=True),
            sa.Column("expiration_date", sa.Date(), nullable=True),
            sa.Column("urgency_justification", sa.Text(), nullable=True),
            sa.Column("assigned_driver", sa.String(length=150), nullable=True),
            sa.Column("assigned_vehicle", sa.String(length=150), nullable=True),
            sa.Column("approval_date", sa.Date(), nullable=True),
            sa.Column("verifier_id", sa.Integer(), nullable=True),
            sa.Column("verifier_assigned_by_id", sa.Integer(), nullable=True),
            sa.Column("verifier_assigned_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("verification_status", sa.String(length=20), nullable=False),
            sa.Column("verified_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("verifier_comments", sa.Text(), nullable=True),
            sa.ForeignKeyConstraint(["verifier_id"], ["users.id"], ondelete="SET NULL"),
            sa.ForeignKeyConstraint(["verifier_assigned_by_id"], ["users.id"], ondelete="SET NULL"),
            *_request_constraints(),
        )
        for col in ("requestor_id", "department_id", "status"):
            op.create_index(f"ix_vehicle_requests_{col}", "vehicle_requests", [col])

    # ── Approval records ─────────────────────────────────────────────────
    if "approval_records" not in existing:
        op.create_table(
            "approval_records",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("request_kind", sa.String(length=30), nullable=False),
            sa.Column("request_id", sa.Integer(), nullable=False),
            sa.Column("cycle", sa.Integer(), nullable=False),
            sa.Column("workflow_step_id", sa.Integer(), nullable=True),
            sa.Column("step_order", sa.Integer(), nullable=False),
            sa.Column("step_name", sa.String(length=200), nullable=False),
            sa.Column("approver_type", sa.String(length=30), nullable=False),
            sa.Column("approver_role", sa.String(length=30), nullable=True),
            sa.Column("approver_user_id", sa.Integer(), nullable=True),
            sa.Column("approver_department_id", sa.Integer(), nullable=True),
            sa.Column("status_on_approval", sa.String(length=40), nullable=False),
            sa.Column("status_on_completion", sa.String(length=40), nullable=True),
            sa.Column("is_dispatch_step", sa.Boolean(), nullable=False),
            sa.Column("approver_id", sa.Integer(), nullable=True),
            sa.Column("acted_by_id", sa.Integer(), nullable=True),
            sa.Column("status", sa.String(length=20), nullable=False),
            sa.Column("comments", sa.Text(), nullable=True),
            sa.Column("signature", sa.Text(), nullable=True),
            sa.Column("return_reason", sa.Text(), nullable=True),
            sa.Column("return_target", sa.String(length=20), nullable=True),
            sa.Column("return_step_order", sa.Integer(), nullable=True),
            sa.Column("approved_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("declined_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("returned_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
            sa.ForeignKeyConstraint(["workflow_step_id"], ["workflow_steps.id"], ondelete="SET NULL"),
            sa.ForeignKeyConstraint(["approver_user_id"], ["users.id"], ondelete="SET NULL"),
            sa.ForeignKeyConstraint(["approver_department_id"], ["departments.id"], ondelete="SET NULL"),
            sa.ForeignKeyConstraint(["approver_id"], ["users.id"], ondelete="SET NULL"),
            sa.ForeignKeyConstraint(["acted_by_id"], ["users.id"], ondelete="SET NULL"),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint(
                "request_kind", "request_id", "cycle", "step_order", name="uq_approval_records_step",
            ),
        )
        op.create_index("ix_approval_records_request", "approval_records", ["request_kind", "request_id"])
        op.create_index(
            "uq_approval_records_one_pending",
            "approval_records",
            ["request_kind", "request_id"],
            unique=True,
            sqlite_where=sa.text("status = 'pending'"),
            postgresql_where=sa.text("status = 'pending'"),
        )


def downgrade():
    for table in (
        "approval_records",
        "vehicle_requests",
        "request_items",
        "item_requests",
        "workflow_steps",
        "approval_workflows",
        "users",
        "departments",
    ):
        op.drop_table(table)
