"""
Organisation Blueprint — departments and users.

Routes:
  GET  /api/v1/departments   – list active departments
  POST /api/v1/departments   – create department (super administrator)
  GET  /api/v1/users         – list users (super administrator)
  POST /api/v1/users         – create user (super administrator)
"""

from flask import Blueprint, jsonify, request

from reqdesk.blueprints import json_body, paginate_query
from reqdesk.core.exceptions import PermissionDenied
from reqdesk.middleware.jwt_auth import require_acting_user
from reqdesk.services import org_service

org_bp = Blueprint("org_bp", __name__, url_prefix="/api/v1")


@org_bp.route("/departments", methods=["GET"])
def list_departments():
    require_acting_user()
    include_inactive = request.args.get("include_inactive") == "true"
    return jsonify([d.to_dict() for d in org_service.list_departments(include_inactive)])


@org_bp.route("/departments", methods=["POST"])
def create_department():
    actor = require_acting_user()
    dept = org_service.create_department(actor, json_body())
    return jsonify(dept.to_dict()), 201


@org_bp.route("/users", methods=["GET"])
def list_users():
    actor = require_acting_user()
    if not actor.is_super_admin:
        raise PermissionDenied("Only super administrators can list users", user_id=actor.id)
    department_id = request.args.get("department_id", type=int)
    q = org_service.list_users(role=request.args.get("role"), department_id=department_id)
    items, total = paginate_query(q)
    return jsonify({"items": [u.to_dict() for u in items], "total": total})


@org_bp.route("/users", methods=["POST"])
def create_user():
    actor = require_acting_user()
    user = org_service.create_user(actor, json_body())
    return jsonify(user.to_dict()), 201
