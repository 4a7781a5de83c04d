"""
Request Blueprint — item requests, plus the route set shared with vehicle requests.

Routes (mounted at /api/v1/requests and /api/v1/vehicle-requests):
  GET    /                               – requests visible to the caller
  POST   /                               – create draft
  GET    /<id>                           – request + approval trail + permissions
  PUT    /<id>                           – update draft / returned request
  DELETE /<id>                           – delete draft
  POST   /<id>/submit                    – submit or resubmit
  POST   /<id>/approve                   – approve current step
  POST   /<id>/decline                   – decline (comments required)
  POST   /<id>/return                    – return to requestor or earlier step
  POST   /<id>/sign                      – sign current step
  POST   /<id>/attachments               – add attachment metadata
  DELETE /<id>/attachments/<index>       – remove attachment
"""

from flask import Blueprint, jsonify, request

from reqdesk.blueprints import json_body, paginate_query
from reqdesk.core.exceptions import NotFoundError
from reqdesk.middleware.jwt_auth import require_acting_user
from reqdesk.models import db
from reqdesk.services import approval_engine, request_service
from reqdesk.services.authorization import can_view, is_dispatcher, request_permissions
from reqdesk.services.workflow_service import dispatch_department

request_bp = Blueprint("request_bp", __name__, url_prefix="/api/v1/requests")

_OVERSIGHT_ROLES = ("it_manager", "service_desk", "super_administrator")


def _dispatch_department_id(kind):
    if kind != "vehicle_request":
        return None
    dept = dispatch_department()
    return dept.id if dept else None


def serialize_request(request_obj, actor) -> dict:
    """Request payload with its approval trail and the caller's permissions."""
    records = request_service.approval_records(request_obj)
    pending = next((r for r in records if r.status == "pending"), None)
    data = request_obj.to_dict()
    data["approval_records"] = [r.to_dict() for r in records]
    data["current_step"] = pending.to_dict() if pending else None
    data["permissions"] = request_permissions(
        actor, request_obj, pending, _dispatch_department_id(request_obj.KIND),
    )
    return data


def _visible_request(kind, request_id, actor):
    request_obj = request_service.get_request(kind, request_id)
    records = request_service.approval_records(request_obj)
    if not can_view(actor, request_obj, records, _dispatch_department_id(kind)):
        raise NotFoundError(resource=type(request_obj).__name__, resource_id=request_id)
    return request_obj


def register_request_routes(bp: Blueprint, kind: str) -> None:
    """Attach the shared request routes for ``kind`` to ``bp``."""

    @bp.route("", methods=["GET"])
    def list_requests():
        actor = require_acting_user()
        model = request_service.model_for(kind)
        visible = [model.requestor_id == actor.id]
        if actor.role in _OVERSIGHT_ROLES or is_dispatcher(actor, _dispatch_department_id(kind)):
            visible.append(model.status != "draft")
        elif actor.role == "department_approver":
            visible.append(db.and_(model.department_id == actor.department_id, model.status != "draft"))
        if kind == "vehicle_request":
            visible.append(model.verifier_id == actor.id)
        q = model.query.filter(db.or_(*visible))
        status = request.args.get("status")
        if status:
            q = q.filter(model.status == status)
        items, total = paginate_query(q.order_by(model.created_at.desc(), model.id.desc()))
        return jsonify({"items": [i.to_dict() for i in items], "total": total})

    @bp.route("", methods=["POST"])
    def create_request():
        actor = require_acting_user()
        request_obj = request_service.create_request(kind, actor, json_body())
        return jsonify(serialize_request(request_obj, actor)), 201

    @bp.route("/<int:request_id>", methods=["GET"])
    def get_request(request_id):
        actor = require_acting_user()
        request_obj = _visible_request(kind, request_id, actor)
        return jsonify(serialize_request(request_obj, actor))

    @bp.route("/<int:request_id>", methods=["PUT"])
    def update_request(request_id):
        actor = require_acting_user()
        request_obj = request_service.update_request(kind, request_id, actor, json_body())
        return jsonify(serialize_request(request_obj, actor))

    @bp.route("/<int:request_id>", methods=["DELETE"])
    def delete_request(request_id):
        actor = require_acting_user()
        request_service.delete_request(kind, request_id, actor)
        return jsonify({"deleted": True, "id": request_id})

    @bp.route("/<int:request_id>/submit", methods=["POST"])
    def submit_request(request_id):
        actor = require_acting_user()
        request_obj = approval_engine.submit_request(kind, request_id, actor)
        return jsonify(serialize_request(request_obj, actor))

    @bp.route("/<int:request_id>/approve", methods=["POST"])
    def approve_request(request_id):
        actor = require_acting_user()
        data = json_body()
        request_obj = approval_engine.approve(
            kind, request_id, actor, comments=data.get("comments"), signature=data.get("signature"),
        )
        return jsonify(serialize_request(request_obj, actor))

    @bp.route("/<int:request_id>/decline", methods=["POST"])
    def decline_request(request_id):
        actor = require_acting_user()
        data = json_body()
        request_obj = approval_engine.decline(
            kind, request_id, actor, comments=data.get("comments"), signature=data.get("signature"),
        )
        return jsonify(serialize_request(request_obj, actor))

    @bp.route("/<int:request_id>/return", methods=["POST"])
    def return_request(request_id):
        actor = require_acting_user()
        data = json_body()
        request_obj = approval_engine.return_request(
            kind, request_id, actor,
            return_reason=data.get("return_reason"),
            return_to=data.get("return_to", data.get("returnTo", "requestor")),
            comments=data.get("comments"),
            signature=data.get("signature"),
        )
        return jsonify(serialize_request(request_obj, actor))

    @bp.route("/<int:request_id>/sign", methods=["POST"])
    def sign_request(request_id):
        actor = require_acting_user()
        record = approval_engine.sign(kind, request_id, actor, json_body().get("signature"))
        return jsonify(record.to_dict())

    @bp.route("/<int:request_id>/attachments", methods=["POST"])
    def add_attachment(request_id):
        actor = require_acting_user()
        entry = request_service.add_attachment(kind, request_id, actor, json_body())
        return jsonify(entry), 201

    @bp.route("/<int:request_id>/attachments/<int:index>", methods=["DELETE"])
    def remove_attachment(request_id, index):
        actor = require_acting_user()
        request_service.remove_attachment(kind, request_id, actor, index)
        return jsonify({"deleted": True, "index": index})


register_request_routes(request_bp, "item_request")
