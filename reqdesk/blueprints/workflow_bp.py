"""
Workflow Blueprint — approval workflow administration.

Routes:
  GET    /api/v1/workflows?form_type=          – list workflows
  GET    /api/v1/workflows/active/<form_type>  – workflow new submissions use
  GET    /api/v1/workflows/<id>                – workflow with steps
  POST   /api/v1/workflows                     – create (steps nested)
  PUT    /api/v1/workflows/<id>                – update (steps replace the list)
  DELETE /api/v1/workflows/<id>                – delete
"""

from flask import Blueprint, jsonify, request

from reqdesk.blueprints import json_body
from reqdesk.core.exceptions import NoWorkflowConfigured, NotFoundError, PermissionDenied
from reqdesk.middleware.jwt_auth import require_acting_user
from reqdesk.models.workflow import FORM_TYPES
from reqdesk.services import workflow_service

workflow_bp = Blueprint("workflow_bp", __name__, url_prefix="/api/v1/workflows")


@workflow_bp.route("", methods=["GET"])
def list_workflows():
    actor = require_acting_user()
    workflows = workflow_service.list_workflows(actor, request.args.get("form_type"))
    return jsonify([w.to_dict(include_steps=True) for w in workflows])


@workflow_bp.route("/active/<form_type>", methods=["GET"])
def active_workflow(form_type):
    """Active workflow for a form type; 404 when the built-in chain applies."""
    require_acting_user()
    if form_type not in FORM_TYPES:
        raise NotFoundError(resource="FormType", resource_id=form_type)
    try:
        workflow = workflow_service.get_active_workflow(form_type)
    except NoWorkflowConfigured:
        raise NotFoundError(resource="ApprovalWorkflow", resource_id=form_type)
    return jsonify(workflow.to_dict(include_steps=True))


@workflow_bp.route("/<int:workflow_id>", methods=["GET"])
def get_workflow(workflow_id):
    actor = require_acting_user()
    if not actor.is_super_admin:
        raise PermissionDenied("Only super administrators can manage workflows", user_id=actor.id)
    return jsonify(workflow_service.get_workflow(workflow_id).to_dict(include_steps=True))


@workflow_bp.route("", methods=["POST"])
def create_workflow():
    actor = require_acting_user()
    workflow = workflow_service.create_workflow(actor, json_body())
    return jsonify(workflow.to_dict(include_steps=True)), 201


@workflow_bp.route("/<int:workflow_id>", methods=["PUT"])
def update_workflow(workflow_id):
    actor = require_acting_user()
    workflow = workflow_service.update_workflow(actor, workflow_id, json_body())
    return jsonify(workflow.to_dict(include_steps=True))


@workflow_bp.route("/<int:workflow_id>", methods=["DELETE"])
def delete_workflow(workflow_id):
    actor = require_acting_user()
    workflow_service.delete_workflow(actor, workflow_id)
    return jsonify({"deleted": True, "id": workflow_id})
