"""
Vehicle Request Blueprint.

Shares the request route set (see request_bp) and adds:
  PUT    /api/v1/vehicle-requests/<id>/dispatch          – driver / vehicle / approval date
  POST   /api/v1/vehicle-requests/<id>/assign-verifier   – assign verifier
  POST   /api/v1/vehicle-requests/<id>/verify            – verifier decision
"""

from flask import Blueprint, jsonify

from reqdesk.blueprints import json_body
from reqdesk.blueprints.request_bp import register_request_routes, serialize_request
from reqdesk.middleware.jwt_auth import require_acting_user
from reqdesk.services import request_service, verification_service

vehicle_request_bp = Blueprint("vehicle_request_bp", __name__, url_prefix="/api/v1/vehicle-requests")

register_request_routes(vehicle_request_bp, "vehicle_request")


@vehicle_request_bp.route("/<int:request_id>/dispatch", methods=["PUT"])
def update_dispatch(request_id):
    """Body: { assigned_driver?, assigned_vehicle?, approval_date? }"""
    actor = require_acting_user()
    request_obj = request_service.update_dispatch(request_id, actor, json_body())
    return jsonify(serialize_request(request_obj, actor))


@vehicle_request_bp.route("/<int:request_id>/assign-verifier", methods=["POST"])
def assign_verifier(request_id):
    """Body: { verifier_id }"""
    actor = require_acting_user()
    data = json_body()
    request_obj = verification_service.assign_verifier(
        request_id, actor, data.get("verifier_id", data.get("verifierId")),
    )
    return jsonify(serialize_request(request_obj, actor))


@vehicle_request_bp.route("/<int:request_id>/verify", methods=["POST"])
def verify(request_id):
    """Body: { status: verified | declined, comments? }"""
    actor = require_acting_user()
    data = json_body()
    request_obj = verification_service.verify(
        request_id, actor, data.get("status"), data.get("comments"),
    )
    return jsonify(serialize_request(request_obj, actor))
