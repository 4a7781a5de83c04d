"""
Public tracking projection.

Anyone holding a reference code can follow a request's progress. The
projection carries status and a timeline only: no comments, signatures,
attachments or form contents.
"""

from reqdesk.core.exceptions import NotFoundError
from reqdesk.models.request import REQUEST_MODELS
from reqdesk.services.request_service import approval_records

_MODELS_BY_PREFIX = {model.REFERENCE_PREFIX: model for model in REQUEST_MODELS.values()}


def _iso(value):
    return value.isoformat() if value else None


def _approver_name(record):
    user = record.acted_by or record.approver
    if user is not None:
        return user.full_name
    if record.approver_department is not None:
        return record.approver_department.name
    return record.approver_role


def track(code: str) -> dict:
    """Return the public projection of the request with reference ``code``.

    The code prefix selects the request kind; unknown prefixes, unknown
    codes and drafts all answer NotFound.
    """
    code = (code or "").strip().upper()
    model = _MODELS_BY_PREFIX.get(code.split("-", 1)[0])
    if model is None:
        raise NotFoundError(resource="Request", resource_id=code)
    request_obj = model.query.filter_by(reference_code=code).first()
    if request_obj is None or request_obj.status == "draft":
        raise NotFoundError(resource="Request", resource_id=code)

    timeline = [{
        "event": "submitted",
        "step_name": None,
        "status": "submitted",
        "actor": request_obj.requestor.full_name if request_obj.requestor else None,
        "timestamp": _iso(request_obj.submitted_at or request_obj.created_at),
    }]
    for record in approval_records(request_obj):
        timeline.append({
            "event": "step",
            "cycle": record.cycle,
            "step_order": record.step_order,
            "step_name": record.step_name,
            "status": record.status,
            "actor": _approver_name(record),
            "timestamp": _iso(record.resolved_at or record.created_at),
        })

    projection = {
        "reference_code": request_obj.reference_code,
        "kind": request_obj.KIND,
        "status": request_obj.status,
        "department": request_obj.department.name if request_obj.department else None,
        "submitted_at": _iso(request_obj.submitted_at),
        "completed_at": _iso(request_obj.completed_at),
        "timeline": timeline,
    }
    if request_obj.KIND == "vehicle_request":
        projection["verification_status"] = request_obj.verification_status
    return projection
