"""
Approval Blueprint — the caller's approval inbox.

Routes:
  GET /api/v1/approvals/pending   – pending steps the caller can act on now
"""

from flask import Blueprint, jsonify

from reqdesk.middleware.jwt_auth import require_acting_user
from reqdesk.services.approval_engine import pending_for_user

approval_bp = Blueprint("approval_bp", __name__, url_prefix="/api/v1/approvals")


@approval_bp.route("/pending", methods=["GET"])
def my_pending_approvals():
    actor = require_acting_user()
    items = []
    for record, request_obj in pending_for_user(actor):
        items.append({
            "record": record.to_dict(),
            "request": {
                "id": request_obj.id,
                "kind": request_obj.KIND,
                "reference_code": request_obj.reference_code,
                "status": request_obj.status,
                "requestor": request_obj.requestor.to_summary() if request_obj.requestor else None,
                "department": request_obj.department.name if request_obj.department else None,
                "submitted_at": request_obj.submitted_at.isoformat() if request_obj.submitted_at else None,
            },
        })
    return jsonify({"items": items, "total": len(items)})
