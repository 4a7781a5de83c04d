"""
Public tracking blueprint.

Routes:
  GET /api/v1/track/<code>   – status + timeline by reference code (no auth)
"""

from flask import Blueprint, jsonify

from reqdesk.services.tracking_service import track

tracking_bp = Blueprint("tracking_bp", __name__, url_prefix="/api/v1/track")


@tracking_bp.route("/<string:code>", methods=["GET"])
def track_request(code):
    return jsonify(track(code))
