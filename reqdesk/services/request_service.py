"""
Request Service — drafts, field validation, attachments and dispatch data.

Owns everything about a request except its approval transitions (those live
in ``approval_engine``):

  - create / update / delete drafts (requestor only, editable statuses only)
  - reference codes (REQ-YYYYMMDD-NNNNNN, SVR-YYYYMMDD-NNNNNN)
  - submission checks per kind, including the vehicle conditional sections
    and the same-day urgency rule
  - attachment metadata (files themselves live in an external store)
  - the vehicle dispatch section, editable only by the dispatch step approver
  - approval-trail lookups shared by the engine and the blueprints
"""

import logging
import re
import time
from datetime import date, datetime, timezone

from reqdesk.core.exceptions import (
    ConflictError,
    NotFoundError,
    PermissionDenied,
    ValidationError,
)
from reqdesk.models import db
from reqdesk.models.approval import ApprovalRecord
from reqdesk.models.org import Department
from reqdesk.models.request import (
    PRIORITIES,
    REQUEST_MODELS,
    VEHICLE_REQUEST_TYPES,
    ItemRequest,
    RequestItem,
    VehicleRequest,
)
from reqdesk.services.authorization import can_act
from reqdesk.services.transactions import atomic
from reqdesk.utils.helpers import is_choice, is_int

logger = logging.getLogger(__name__)

ITEM_CATEGORIES = frozenset({
    "laptop", "desktop", "monitor", "keyboard", "mouse", "ups", "printer",
    "software", "other_accessory", "other_equipment",
})

# Vehicle conditional sections, keyed by request_type
LOCATION_TYPES = frozenset({"drop_passenger_only", "passenger_pickup_only", "item_pickup", "item_delivery"})
DROP_OFF_TIME_TYPES = frozenset({"drop_passenger_only", "item_pickup", "item_delivery"})
PASSENGER_TYPES = frozenset({"drop_passenger_only", "point_to_point_service", "passenger_pickup_only"})

_ITEM_TEXT_FIELDS = ("user_name", "user_position", "reason", "comments", "requestor_signature")
_VEHICLE_TEXT_FIELDS = (
    "requestor_name", "contact_number", "purpose", "pick_up_location", "drop_off_location",
    "destination", "destination_car", "license_number", "urgency_justification",
    "comments", "requestor_signature",
)
_VEHICLE_DATE_FIELDS = ("date_prepared", "travel_date_from", "travel_date_to", "expiration_date")
_VEHICLE_TIME_FIELDS = ("pick_up_time", "drop_off_time", "departure_time")

_TIME_RE = re.compile(r"^([01]\d|2[0-3]):[0-5]\d$")

MAX_ATTACHMENTS = 20


# ═════════════════════════════════════════════════════════════════════════════
# Lookups
# ═════════════════════════════════════════════════════════════════════════════

def model_for(kind: str):
    model = REQUEST_MODELS.get(kind)
    if model is None:
        raise NotFoundError(resource="RequestKind", resource_id=kind)
    return model


def get_request(kind: str, request_id: int):
    model = model_for(kind)
    obj = db.session.get(model, request_id)
    if obj is None:
        raise NotFoundError(resource=model.__name__, resource_id=request_id)
    return obj


def find_by_reference(code: str):
    """Look a request up by reference code; the prefix selects the kind."""
    prefix = (code or "").split("-", 1)[0].upper()
    for model in REQUEST_MODELS.values():
        if model.REFERENCE_PREFIX == prefix:
            obj = model.query.filter_by(reference_code=code.upper()).first()
            if obj is not None:
                return obj
    raise NotFoundError(resource="Request", resource_id=code)


def approval_records(request_obj) -> list[ApprovalRecord]:
    """Full approval trail ordered by (cycle, step_order)."""
    return (
        ApprovalRecord.query
        .filter_by(request_kind=request_obj.KIND, request_id=request_obj.id)
        .order_by(ApprovalRecord.cycle, ApprovalRecord.step_order)
        .all()
    )


def current_pending_record(request_obj) -> ApprovalRecord | None:
    return ApprovalRecord.query.filter_by(
        request_kind=request_obj.KIND, request_id=request_obj.id, status="pending",
    ).first()


def generate_reference_code(model, today: date | None = None) -> str:
    """``<PREFIX>-YYYYMMDD-<last 6 digits of the ms clock>``, bumped on collision."""
    today = today or date.today()
    stamp = int(time.time() * 1000)
    code = None
    for offset in range(1000):
        code = f"{model.REFERENCE_PREFIX}-{today:%Y%m%d}-{str(stamp + offset)[-6:]}"
        if model.query.filter_by(reference_code=code).first() is None:
            return code
    raise ConflictError(model.__name__, "reference_code", code)


# ═════════════════════════════════════════════════════════════════════════════
# Field parsing
# ═════════════════════════════════════════════════════════════════════════════

def _clean_str(value):
    if value is None:
        return None
    if not isinstance(value, str):
        value = str(value)
    value = value.strip()
    return value or None


def _parse_date(value, field: str, errors: dict):
    if value in (None, ""):
        return None
    if isinstance(value, date):
        return value
    try:
        return date.fromisoformat(str(value)[:10])
    except ValueError:
        errors[field] = "must be a date in YYYY-MM-DD format"
        return None


def _parse_time(value, field: str, errors: dict):
    value = _clean_str(value)
    if value is None:
        return None
    if not _TIME_RE.match(value):
        errors[field] = "must be a time in HH:MM format"
        return None
    return value


def _parse_items(raw_items, errors: dict) -> list[RequestItem]:
    if not isinstance(raw_items, list):
        errors["items"] = "must be an array"
        return []
    items = []
    for index, raw in enumerate(raw_items):
        key = f"items[{index}]"
        if not isinstance(raw, dict):
            errors[key] = "must be an object"
            continue
        category = raw.get("category")
        description = _clean_str(raw.get("item_description"))
        quantity = raw.get("quantity", 1)
        cost = raw.get("estimated_cost")
        if not is_choice(category, ITEM_CATEGORIES):
            errors[f"{key}.category"] = f"category must be one of {sorted(ITEM_CATEGORIES)}"
        if description is None:
            errors[f"{key}.item_description"] = "item_description is required"
        if isinstance(quantity, bool) or not isinstance(quantity, int) or not 1 <= quantity <= 999:
            errors[f"{key}.quantity"] = "quantity must be an integer between 1 and 999"
        if cost is not None and (isinstance(cost, bool) or not isinstance(cost, (int, float)) or cost < 0):
            errors[f"{key}.estimated_cost"] = "estimated_cost must be a non-negative number"
        items.append(RequestItem(
            position=index + 1,
            category=category,
            item_description=description,
            quantity=quantity,
            inventory_number=_clean_str(raw.get("inventory_number")),
            proposed_specs=_clean_str(raw.get("proposed_specs")),
            purpose=_clean_str(raw.get("purpose")),
            estimated_cost=cost,
            vendor_info=_clean_str(raw.get("vendor_info")),
            is_replacement=bool(raw.get("is_replacement", False)),
            replaced_item_info=_clean_str(raw.get("replaced_item_info")),
            urgency_reason=_clean_str(raw.get("urgency_reason")),
        ))
    return items


def _parse_passengers(raw, errors: dict) -> list[dict]:
    if not isinstance(raw, list):
        errors["passengers"] = "must be an array"
        return []
    passengers = []
    for index, entry in enumerate(raw):
        name = _clean_str(entry.get("name")) if isinstance(entry, dict) else _clean_str(entry)
        if name is None:
            errors[f"passengers[{index}].name"] = "passenger name is required"
            continue
        passengers.append({"name": name})
    return passengers


def _apply_item_fields(obj: ItemRequest, data: dict, errors: dict) -> None:
    for field in _ITEM_TEXT_FIELDS:
        if field in data:
            setattr(obj, field, _clean_str(data[field]))
    if "priority" in data:
        if not is_choice(data["priority"], PRIORITIES):
            errors["priority"] = f"priority must be one of {sorted(PRIORITIES)}"
        else:
            obj.priority = data["priority"]
    if "date_required" in data:
        obj.date_required = _parse_date(data["date_required"], "date_required", errors)
    if "items" in data:
        items = _parse_items(data["items"], errors)
        if not errors:
            obj.items = items


def _apply_vehicle_fields(obj: VehicleRequest, data: dict, errors: dict) -> None:
    if "request_type" in data:
        if not is_choice(data["request_type"], VEHICLE_REQUEST_TYPES):
            errors["request_type"] = f"request_type must be one of {sorted(VEHICLE_REQUEST_TYPES)}"
        else:
            obj.request_type = data["request_type"]
    for field in _VEHICLE_TEXT_FIELDS:
        if field in data:
            setattr(obj, field, _clean_str(data[field]))
    for field in _VEHICLE_DATE_FIELDS:
        if field in data:
            setattr(obj, field, _parse_date(data[field], field, errors))
    for field in _VEHICLE_TIME_FIELDS:
        if field in data:
            setattr(obj, field, _parse_time(data[field], field, errors))
    if "has_valid_license" in data:
        value = data["has_valid_license"]
        if value is not None and not isinstance(value, bool):
            errors["has_valid_license"] = "must be true or false"
        else:
            obj.has_valid_license = value
    if "passengers" in data:
        obj.passengers = _parse_passengers(data["passengers"], errors)


_FIELD_APPLIERS = {
    "item_request": _apply_item_fields,
    "vehicle_request": _apply_vehicle_fields,
}


# ═════════════════════════════════════════════════════════════════════════════
# Drafts
# ═════════════════════════════════════════════════════════════════════════════

def _require_requestor(obj, actor, action: str) -> None:
    if obj.requestor_id != actor.id:
        raise PermissionDenied(
            f"Only the requestor can {action} this request", user_id=actor.id, action=action,
        )


def create_request(kind: str, actor, data: dict):
    """Create a draft owned by ``actor`` in the actor's department."""
    model = model_for(kind)
    department_id = data.get("department_id", actor.department_id)
    if department_id != actor.department_id and not actor.is_super_admin:
        raise ValidationError(
            "Requests can only be filed for your own department",
            details={"department_id": "must be your department"},
        )
    if department_id is not None and (not is_int(department_id) or db.session.get(Department, department_id) is None):
        raise ValidationError("Unknown department", details={"department_id": f"{department_id} does not exist"})
    if kind == "vehicle_request" and "request_type" not in data:
        raise ValidationError("request_type is required", details={"request_type": "required"})

    obj = model(
        requestor_id=actor.id,
        department_id=department_id,
        status="draft",
        attachments=[],
    )
    if kind == "vehicle_request":
        obj.passengers = []
        obj.verification_status = "none"
        obj.date_prepared = date.today()

    errors: dict = {}
    _FIELD_APPLIERS[kind](obj, data, errors)
    if errors:
        raise ValidationError("Invalid request fields", details=errors)

    with atomic():
        obj.reference_code = generate_reference_code(model)
        db.session.add(obj)

    logger.info(
        "Draft created", extra={
            "request_kind": kind, "request_ref": obj.reference_code,
            "user_id": actor.id, "action": "create",
        },
    )
    return obj


def update_request(kind: str, request_id: int, actor, data: dict):
    """Update a draft, or a request returned to its requestor."""
    obj = get_request(kind, request_id)
    _require_requestor(obj, actor, "edit")
    if not obj.is_editable:
        raise PermissionDenied(
            f"Request {obj.reference_code} is not editable in status '{obj.status}'",
            user_id=actor.id, action="edit",
        )

    with atomic():
        errors: dict = {}
        _FIELD_APPLIERS[kind](obj, data, errors)
        if errors:
            raise ValidationError("Invalid request fields", details=errors)

    logger.info(
        "Request updated", extra={
            "request_kind": kind, "request_ref": obj.reference_code,
            "user_id": actor.id, "action": "update",
        },
    )
    return obj


def delete_request(kind: str, request_id: int, actor) -> None:
    """Delete a draft; items and any approval records go with it."""
    obj = get_request(kind, request_id)
    _require_requestor(obj, actor, "delete")
    if obj.status != "draft":
        raise PermissionDenied(
            f"Only drafts can be deleted (status is '{obj.status}')", user_id=actor.id, action="delete",
        )
    reference = obj.reference_code
    with atomic():
        ApprovalRecord.query.filter_by(request_kind=obj.KIND, request_id=obj.id).delete()
        db.session.delete(obj)
    logger.info(
        "Draft deleted", extra={
            "request_kind": kind, "request_ref": reference, "user_id": actor.id, "action": "delete",
        },
    )


# ═════════════════════════════════════════════════════════════════════════════
# Submission checks
# ═════════════════════════════════════════════════════════════════════════════

def _item_submission_errors(obj: ItemRequest) -> dict:
    errors = {}
    if not obj.items:
        errors["items"] = "at least one item is required"
    return errors


def _vehicle_submission_errors(obj: VehicleRequest) -> dict:
    errors = {}
    request_type = obj.request_type
    if not obj.purpose:
        errors["purpose"] = "purpose is required"
    if obj.travel_date_from is None:
        errors["travel_date_from"] = "travel_date_from is required"
    if obj.travel_date_to is None:
        errors["travel_date_to"] = "travel_date_to is required"
    elif obj.travel_date_from and obj.travel_date_to < obj.travel_date_from:
        errors["travel_date_to"] = "travel_date_to cannot be before travel_date_from"
    if obj.date_prepared is None:
        errors["date_prepared"] = "date_prepared is required"
    elif obj.date_prepared == obj.travel_date_from and not obj.urgency_justification:
        errors["urgency_justification"] = "same-day requests need an urgency justification"

    if request_type in LOCATION_TYPES:
        for field in ("pick_up_location", "pick_up_time", "drop_off_location"):
            if not getattr(obj, field):
                errors[field] = f"{field} is required for {request_type}"
    if request_type in DROP_OFF_TIME_TYPES and not obj.drop_off_time:
        errors["drop_off_time"] = f"drop_off_time is required for {request_type}"
    if request_type == "point_to_point_service":
        for field in ("destination", "departure_time"):
            if not getattr(obj, field):
                errors[field] = f"{field} is required for {request_type}"
    if request_type == "car_only":
        if not obj.destination_car:
            errors["destination_car"] = "destination_car is required for car_only"
        if obj.has_valid_license is not True:
            errors["has_valid_license"] = "a valid driver's license is required for car_only"
        if not obj.license_number:
            errors["license_number"] = "license_number is required for car_only"
        if obj.expiration_date is None:
            errors["expiration_date"] = "expiration_date is required for car_only"
        elif obj.expiration_date < (obj.travel_date_to or obj.travel_date_from or date.today()):
            errors["expiration_date"] = "the license expires before the trip ends"
    if request_type in PASSENGER_TYPES and not obj.passengers:
        errors["passengers"] = "at least one passenger is required"
    return errors


def validate_for_submission(obj) -> None:
    """Raise ValidationError unless ``obj`` has everything submission needs."""
    errors = (
        _item_submission_errors(obj) if obj.KIND == "item_request" else _vehicle_submission_errors(obj)
    )
    if obj.department_id is None:
        errors["department_id"] = "the request must belong to a department"
    if errors:
        raise ValidationError("Request is incomplete", details=errors)


# ═════════════════════════════════════════════════════════════════════════════
# Attachments
# ═════════════════════════════════════════════════════════════════════════════

def _may_attach(obj, actor) -> bool:
    if obj.requestor_id == actor.id and obj.is_editable:
        return True
    return can_act(actor, obj, current_pending_record(obj)).can_approve


def add_attachment(kind: str, request_id: int, actor, data: dict) -> dict:
    """Append attachment metadata for a file already stored elsewhere.

    Body: { file_name, file_path, file_size?, mime_type? }
    """
    obj = get_request(kind, request_id)
    if not _may_attach(obj, actor):
        raise PermissionDenied("You cannot add attachments to this request", user_id=actor.id, action="attach")

    errors = {}
    file_name = _clean_str(data.get("file_name"))
    file_path = _clean_str(data.get("file_path"))
    file_size = data.get("file_size")
    if file_name is None:
        errors["file_name"] = "file_name is required"
    if file_path is None:
        errors["file_path"] = "file_path is required"
    if file_size is not None and (isinstance(file_size, bool) or not isinstance(file_size, int) or file_size < 0):
        errors["file_size"] = "file_size must be a non-negative integer"
    if len(obj.attachments or []) >= MAX_ATTACHMENTS:
        errors["attachments"] = f"at most {MAX_ATTACHMENTS} attachments per request"
    if errors:
        raise ValidationError("Invalid attachment", details=errors)

    entry = {
        "file_name": file_name,
        "file_path": file_path,
        "file_size": file_size,
        "mime_type": _clean_str(data.get("mime_type")),
        "uploaded_by": actor.id,
        "uploaded_at": datetime.now(timezone.utc).isoformat(),
    }
    with atomic():
        # JSON columns only persist on reassignment
        obj.attachments = list(obj.attachments or []) + [entry]

    logger.info(
        "Attachment added: %s", file_name,
        extra={"request_kind": kind, "request_ref": obj.reference_code, "user_id": actor.id, "action": "attach"},
    )
    return entry


def remove_attachment(kind: str, request_id: int, actor, index: int) -> None:
    obj = get_request(kind, request_id)
    if not _may_attach(obj, actor):
        raise PermissionDenied("You cannot remove attachments from this request", user_id=actor.id, action="detach")
    current = list(obj.attachments or [])
    if not 0 <= index < len(current):
        raise NotFoundError(resource="Attachment", resource_id=index)
    removed = current.pop(index)
    with atomic():
        obj.attachments = current
    logger.info(
        "Attachment removed: %s", removed.get("file_name"),
        extra={"request_kind": kind, "request_ref": obj.reference_code, "user_id": actor.id, "action": "detach"},
    )


# ═════════════════════════════════════════════════════════════════════════════
# Vehicle dispatch section
# ═════════════════════════════════════════════════════════════════════════════

def update_dispatch(request_id: int, actor, data: dict) -> VehicleRequest:
    """Set driver, vehicle and approval date while the dispatch step is pending."""
    obj = get_request("vehicle_request", request_id)
    record = current_pending_record(obj)
    if record is None or not record.is_dispatch_step or not can_act(actor, obj, record).can_approve:
        raise PermissionDenied(
            "Only the dispatch approver can edit driver and vehicle assignment",
            user_id=actor.id, action="dispatch",
        )

    errors: dict = {}
    with atomic():
        if "assigned_driver" in data:
            obj.assigned_driver = _clean_str(data["assigned_driver"])
        if "assigned_vehicle" in data:
            obj.assigned_vehicle = _clean_str(data["assigned_vehicle"])
        if "approval_date" in data:
            obj.approval_date = _parse_date(data["approval_date"], "approval_date", errors)
        if errors:
            raise ValidationError("Invalid dispatch fields", details=errors)

    logger.info(
        "Dispatch details updated",
        extra={"request_kind": obj.KIND, "request_ref": obj.reference_code, "user_id": actor.id, "action": "dispatch"},
    )
    return obj
