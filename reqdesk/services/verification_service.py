"""
Vehicle request verification.

A dispatcher (department approver of the dispatch department) or a super
administrator assigns a verifier while the request is early in review; the
verifier then marks it verified or declined. Verification is an audit
signal shown next to the approval chain and never changes request.status.
"""

import logging
from datetime import datetime, timezone

from reqdesk.core.exceptions import PermissionDenied, ValidationError
from reqdesk.models import db
from reqdesk.models.org import User
from reqdesk.services import notification_service
from reqdesk.services.authorization import can_assign_verifier, can_verify
from reqdesk.services.request_service import get_request
from reqdesk.services.transactions import atomic
from reqdesk.services.workflow_service import dispatch_department
from reqdesk.utils.helpers import clean_text, is_choice

logger = logging.getLogger(__name__)

VERIFICATION_RESULTS = frozenset({"verified", "declined"})


def _dispatch_department_id():
    dept = dispatch_department()
    return dept.id if dept else None


def assign_verifier(request_id: int, actor, verifier_id):
    request_obj = get_request("vehicle_request", request_id)
    if not can_assign_verifier(actor, request_obj, _dispatch_department_id()):
        raise PermissionDenied(
            "You cannot assign a verifier to this request", user_id=actor.id, action="assign_verifier",
        )
    if isinstance(verifier_id, bool) or not isinstance(verifier_id, int):
        raise ValidationError("verifier_id is required", details={"verifier_id": "must be a user id"})
    verifier = db.session.get(User, verifier_id)
    if verifier is None or not verifier.is_active:
        raise ValidationError("Verifier must be an active user", details={"verifier_id": verifier_id})
    if verifier.id == request_obj.requestor_id:
        raise ValidationError("The requestor cannot verify their own request", details={"verifier_id": verifier_id})

    with atomic():
        request_obj.verifier_id = verifier.id
        request_obj.verifier_assigned_by_id = actor.id
        request_obj.verifier_assigned_at = datetime.now(timezone.utc)
        request_obj.verification_status = "pending"
        request_obj.verified_at = None
        request_obj.verifier_comments = None

    logger.info(
        "Verifier %s assigned", verifier.id,
        extra={
            "request_kind": request_obj.KIND, "request_ref": request_obj.reference_code,
            "user_id": actor.id, "action": "assign_verifier",
        },
    )
    assigner = db.session.get(User, actor.id)
    notification_service.notify(
        "verifier_assigned", request_obj, [verifier], actor_name=assigner.full_name if assigner else "",
    )
    return request_obj


def verify(request_id: int, actor, status: str | None, comments: str | None = None):
    request_obj = get_request("vehicle_request", request_id)
    if not can_verify(actor, request_obj):
        raise PermissionDenied(
            "Only the assigned verifier can verify this request", user_id=actor.id, action="verify",
        )
    if not is_choice(status, VERIFICATION_RESULTS):
        raise ValidationError(
            "status must be 'verified' or 'declined'", details={"status": sorted(VERIFICATION_RESULTS)},
        )
    comments = clean_text(comments) or None
    if status == "declined" and comments is None:
        raise ValidationError("Comments are required to decline verification", details={"comments": "required"})

    with atomic():
        request_obj.verification_status = status
        request_obj.verifier_comments = comments
        request_obj.verified_at = datetime.now(timezone.utc)

    logger.info(
        "Verification %s", status,
        extra={
            "request_kind": request_obj.KIND, "request_ref": request_obj.reference_code,
            "user_id": actor.id, "action": "verify",
        },
    )
    verifier = db.session.get(User, actor.id)
    recipients = [request_obj.requestor]
    if request_obj.verifier_assigned_by_id:
        recipients.append(db.session.get(User, request_obj.verifier_assigned_by_id))
    notification_service.notify(
        "verification_result", request_obj, recipients,
        verification_status=status, actor_name=verifier.full_name if verifier else "",
    )
    return request_obj
