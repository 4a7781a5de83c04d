"""
Request models: IT item requests and service vehicle requests.

Both kinds share one shape (``RequestBase``) and one status machine; they
differ in their line entries (items vs passengers), in the fields each form
collects, and in the vehicle-only dispatch and verification data.

Status values are explicit per-kind enums. Every value belongs to exactly
one of EDITABLE_STATUSES, IN_REVIEW_STATUSES or TERMINAL_STATUSES.
"""

from datetime import datetime, timezone
from enum import Enum

from reqdesk.models import db


# ═════════════════════════════════════════════════════════════════════════════
# Status enums & classification
# ═════════════════════════════════════════════════════════════════════════════

class ItemRequestStatus(str, Enum):
    DRAFT = "draft"
    SUBMITTED = "submitted"
    DEPARTMENT_APPROVED = "department_approved"
    IT_MANAGER_APPROVED = "it_manager_approved"
    SERVICE_DESK_PROCESSING = "service_desk_processing"
    COMPLETED = "completed"
    RETURNED = "returned"
    DEPARTMENT_DECLINED = "department_declined"
    IT_MANAGER_DECLINED = "it_manager_declined"
    DECLINED = "declined"


class VehicleRequestStatus(str, Enum):
    DRAFT = "draft"
    SUBMITTED = "submitted"
    DEPARTMENT_APPROVED = "department_approved"
    COMPLETED = "completed"
    RETURNED = "returned"
    DECLINED = "declined"


STATUS_ENUMS = {
    "item_request": ItemRequestStatus,
    "vehicle_request": VehicleRequestStatus,
}

EDITABLE_STATUSES = frozenset({"draft", "returned"})
IN_REVIEW_STATUSES = frozenset({
    "submitted",
    "department_approved",
    "it_manager_approved",
    "service_desk_processing",
})
TERMINAL_STATUSES = frozenset({
    "completed",
    "department_declined",
    "it_manager_declined",
    "declined",
})
COMPLETION_STATUSES = frozenset({"completed"})

# Values a workflow step may assign when it is approved
STEP_STATUSES = {
    "item_request": frozenset({
        "department_approved",
        "it_manager_approved",
        "service_desk_processing",
        "completed",
    }),
    "vehicle_request": frozenset({"department_approved", "completed"}),
}

# Request-level transition table; target statuses for submit / approve come
# from the approval record being materialized or resolved.
REQUEST_TRANSITIONS = {
    "edit": {"from": EDITABLE_STATUSES},
    "submit": {"from": EDITABLE_STATUSES},
    "approve": {"from": IN_REVIEW_STATUSES},
    "decline": {"from": IN_REVIEW_STATUSES},
    "return": {"from": IN_REVIEW_STATUSES, "to": "returned"},
    "delete": {"from": frozenset({"draft"})},
}

VERIFICATION_STATUSES = frozenset({"none", "pending", "verified", "declined"})
FINAL_VERIFICATION_STATUSES = frozenset({"verified", "declined"})

PRIORITIES = frozenset({"low", "medium", "high", "urgent"})

VEHICLE_REQUEST_TYPES = frozenset({
    "drop_passenger_only",
    "point_to_point_service",
    "passenger_pickup_only",
    "item_pickup",
    "item_delivery",
    "car_only",
})


def statuses_for(kind: str) -> frozenset:
    """All status values defined for a request kind."""
    return frozenset(s.value for s in STATUS_ENUMS[kind])


def validate_request_transition(kind: str, status: str, action: str) -> bool:
    """Return True if ``action`` is allowed from ``status`` for this kind."""
    rule = REQUEST_TRANSITIONS.get(action)
    if rule is None:
        return False
    return status in statuses_for(kind) and status in rule["from"]


def _iso(value):
    return value.isoformat() if value else None


# ═════════════════════════════════════════════════════════════════════════════
# Shared request shape
# ═════════════════════════════════════════════════════════════════════════════

class RequestBase(db.Model):
    """Columns common to both request kinds."""
    __abstract__ = True

    KIND = None
    REFERENCE_PREFIX = None

    id = db.Column(db.Integer, primary_key=True)
    reference_code = db.Column(db.String(30), nullable=False, unique=True)
    requestor_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)
    department_id = db.Column(db.Integer, db.ForeignKey("departments.id"), nullable=True, index=True)
    status = db.Column(db.String(40), nullable=False, default="draft", index=True)

    # Workflow the current approval round runs on; NULL with uses_legacy_chain
    workflow_id = db.Column(
        db.Integer, db.ForeignKey("approval_workflows.id", ondelete="SET NULL"), nullable=True,
    )
    uses_legacy_chain = db.Column(db.Boolean, nullable=False, default=False)
    cycle = db.Column(db.Integer, nullable=False, default=0, comment="Submission round, +1 per (re)submit")
    return_step_order = db.Column(
        db.Integer, nullable=True,
        comment="Step a tier-targeted return resumes at; NULL when returned to the requestor",
    )

    comments = db.Column(db.Text)
    requestor_signature = db.Column(db.Text, comment="Opaque signature reference (data URL or store key)")
    attachments = db.Column(db.JSON, nullable=False, default=list)

    submitted_at = db.Column(db.DateTime(timezone=True))
    completed_at = db.Column(db.DateTime(timezone=True))
    created_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))
    updated_at = db.Column(
        db.DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    @property
    def is_editable(self):
        return self.status == "draft" or (self.status == "returned" and self.return_step_order is None)

    @property
    def is_terminal(self):
        return self.status in TERMINAL_STATUSES

    def _base_dict(self):
        return {
            "id": self.id,
            "kind": self.KIND,
            "reference_code": self.reference_code,
            "status": self.status,
            "requestor_id": self.requestor_id,
            "requestor": self.requestor.to_summary() if self.requestor else None,
            "department_id": self.department_id,
            "department": self.department.name if self.department else None,
            "workflow_id": self.workflow_id,
            "uses_legacy_chain": self.uses_legacy_chain,
            "cycle": self.cycle,
            "return_step_order": self.return_step_order,
            "comments": self.comments,
            "requestor_signature": self.requestor_signature,
            "attachments": list(self.attachments or []),
            "submitted_at": _iso(self.submitted_at),
            "completed_at": _iso(self.completed_at),
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }


# ═════════════════════════════════════════════════════════════════════════════
# Item requests
# ═════════════════════════════════════════════════════════════════════════════

class ItemRequest(RequestBase):
    __tablename__ = "item_requests"

    KIND = "item_request"
    REFERENCE_PREFIX = "REQ"
    Status = ItemRequestStatus

    user_name = db.Column(db.String(150))
    user_position = db.Column(db.String(150))
    priority = db.Column(db.String(10), nullable=False, default="medium")
    date_required = db.Column(db.Date)
    reason = db.Column(db.Text)

    version_id = db.Column(db.Integer, nullable=False)
    __mapper_args__ = {"version_id_col": version_id}

    requestor = db.relationship("User", foreign_keys="ItemRequest.requestor_id")
    department = db.relationship("Department", foreign_keys="ItemRequest.department_id")
    workflow = db.relationship("ApprovalWorkflow", foreign_keys="ItemRequest.workflow_id")
    items = db.relationship(
        "RequestItem",
        back_populates="request",
        order_by="RequestItem.position",
        cascade="all, delete-orphan",
    )

    @property
    def total_estimated_cost(self):
        return sum(
            (item.quantity or 0) * float(item.estimated_cost or 0)
            for item in self.items
        )

    def to_dict(self):
        d = self._base_dict()
        d.update({
            "user_name": self.user_name,
            "user_position": self.user_position,
            "priority": self.priority,
            "date_required": _iso(self.date_required),
            "reason": self.reason,
            "items": [i.to_dict() for i in self.items],
            "total_estimated_cost": round(self.total_estimated_cost, 2),
        })
        return d

    def __repr__(self):
        return f"<ItemRequest {self.reference_code} [{self.status}]>"


class RequestItem(db.Model):
    __tablename__ = "request_items"

    id = db.Column(db.Integer, primary_key=True)
    request_id = db.Column(
        db.Integer, db.ForeignKey("item_requests.id", ondelete="CASCADE"), nullable=False, index=True,
    )
    position = db.Column(db.Integer, nullable=False, default=1)
    category = db.Column(db.String(50), nullable=False)
    item_description = db.Column(db.Text, nullable=False)
    quantity = db.Column(db.Integer, nullable=False, default=1)
    inventory_number = db.Column(db.String(100))
    proposed_specs = db.Column(db.Text)
    purpose = db.Column(db.Text)
    estimated_cost = db.Column(db.Numeric(12, 2))
    vendor_info = db.Column(db.Text)
    is_replacement = db.Column(db.Boolean, nullable=False, default=False)
    replaced_item_info = db.Column(db.Text)
    urgency_reason = db.Column(db.Text)

    request = db.relationship("ItemRequest", back_populates="items")

    def to_dict(self):
        return {
            "id": self.id,
            "position": self.position,
            "category": self.category,
            "item_description": self.item_description,
            "quantity": self.quantity,
            "inventory_number": self.inventory_number,
            "proposed_specs": self.proposed_specs,
            "purpose": self.purpose,
            "estimated_cost": float(self.estimated_cost) if self.estimated_cost is not None else None,
            "vendor_info": self.vendor_info,
            "is_replacement": self.is_replacement,
            "replaced_item_info": self.replaced_item_info,
            "urgency_reason": self.urgency_reason,
        }


# ═════════════════════════════════════════════════════════════════════════════
# Service vehicle requests
# ═════════════════════════════════════════════════════════════════════════════

class VehicleRequest(RequestBase):
    __tablename__ = "vehicle_requests"

    KIND = "vehicle_request"
    REFERENCE_PREFIX = "SVR"
    Status = VehicleRequestStatus

    request_type = db.Column(db.String(40), nullable=False, comment=" | ".join(sorted(VEHICLE_REQUEST_TYPES)))
    requestor_name = db.Column(db.String(150))
    contact_number = db.Column(db.String(50))
    date_prepared = db.Column(db.Date)
    purpose = db.Column(db.Text)
    passengers = db.Column(db.JSON, nullable=False, default=list)

    travel_date_from = db.Column(db.Date)
    travel_date_to = db.Column(db.Date)
    pick_up_location = db.Column(db.String(255))
    pick_up_time = db.Column(db.String(10))
    drop_off_location = db.Column(db.String(255))
    drop_off_time = db.Column(db.String(10))
    destination = db.Column(db.String(255))
    departure_time = db.Column(db.String(10))
    destination_car = db.Column(db.String(255))
    has_valid_license = db.Column(db.Boolean)
    license_number = db.Column(db.String(100))
    expiration_date = db.Column(db.Date)
    urgency_justification = db.Column(db.Text)

    # Dispatch section, filled by the dispatching department during its step
    assigned_driver = db.Column(db.String(150))
    assigned_vehicle = db.Column(db.String(150))
    approval_date = db.Column(db.Date)

    # Verification sub-flow; never affects status
    verifier_id = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"))
    verifier_assigned_by_id = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"))
    verifier_assigned_at = db.Column(db.DateTime(timezone=True))
    verification_status = db.Column(db.String(20), nullable=False, default="none")
    verified_at = db.Column(db.DateTime(timezone=True))
    verifier_comments = db.Column(db.Text)

    version_id = db.Column(db.Integer, nullable=False)
    __mapper_args__ = {"version_id_col": version_id}

    requestor = db.relationship("User", foreign_keys="VehicleRequest.requestor_id")
    department = db.relationship("Department", foreign_keys="VehicleRequest.department_id")
    workflow = db.relationship("ApprovalWorkflow", foreign_keys="VehicleRequest.workflow_id")
    verifier = db.relationship("User", foreign_keys="VehicleRequest.verifier_id")

    @property
    def dispatch_complete(self):
        return bool(self.assigned_driver and self.assigned_vehicle and self.approval_date)

    def to_dict(self):
        d = self._base_dict()
        d.update({
            "request_type": self.request_type,
            "requestor_name": self.requestor_name,
            "contact_number": self.contact_number,
            "date_prepared": _iso(self.date_prepared),
            "purpose": self.purpose,
            "passengers": list(self.passengers or []),
            "travel_date_from": _iso(self.travel_date_from),
            "travel_date_to": _iso(self.travel_date_to),
            "pick_up_location": self.pick_up_location,
            "pick_up_time": self.pick_up_time,
            "drop_off_location": self.drop_off_location,
            "drop_off_time": self.drop_off_time,
            "destination": self.destination,
            "departure_time": self.departure_time,
            "destination_car": self.destination_car,
            "has_valid_license": self.has_valid_license,
            "license_number": self.license_number,
            "expiration_date": _iso(self.expiration_date),
            "urgency_justification": self.urgency_justification,
            "assigned_driver": self.assigned_driver,
            "assigned_vehicle": self.assigned_vehicle,
            "approval_date": _iso(self.approval_date),
            "verifier": self.verifier.to_summary() if self.verifier else None,
            "verification_status": self.verification_status,
            "verified_at": _iso(self.verified_at),
            "verifier_comments": self.verifier_comments,
        })
        return d

    def __repr__(self):
        return f"<VehicleRequest {self.reference_code} [{self.status}]>"


REQUEST_MODELS = {
    ItemRequest.KIND: ItemRequest,
    VehicleRequest.KIND: VehicleRequest,
}
