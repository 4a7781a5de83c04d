"""
Notification Service — workflow event mails.

Sends one mail per workflow event to the people who need to act or who own
the request. When SMTP is not configured (MAIL_SERVER unset) mails are
logged instead of sent (dev/test mode).

Notifications are fire-and-forget: callers invoke ``notify`` after the
state transition has committed, and any delivery failure is logged and
dropped so it can never undo or block the transition.

Configuration (app.config):
    MAIL_SERVER     SMTP host (default: None → log-only mode)
    MAIL_PORT       SMTP port (default: 587)
    MAIL_USE_TLS    Use TLS (default: true)
    MAIL_USERNAME   SMTP username
    MAIL_PASSWORD   SMTP password
    MAIL_DEFAULT_SENDER  Default from address
    FRONTEND_URL    Base URL used for request links
"""

from __future__ import annotations

import logging
import smtplib
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Any

from flask import current_app

from reqdesk.models.org import User

logger = logging.getLogger(__name__)


# ═══════════════════════════════════════════════════════════════════════════
#  Templates
# ═══════════════════════════════════════════════════════════════════════════

_LAYOUT = """
<div style="font-family: Arial, sans-serif; max-width: 600px; margin: 0 auto;">
    <div style="background: #1e293b; color: white; padding: 16px 24px; border-radius: 8px 8px 0 0;">
        <h2 style="margin: 0; font-size: 18px;">Request Desk</h2>
    </div>
    <div style="background: #f8fafc; padding: 24px; border: 1px solid #e2e8f0; border-top: none;">
        <h3 style="margin: 0 0 8px; color: #1e293b;">{reference_code}</h3>
        <p style="color: #475569; line-height: 1.6;">{body}</p>
        <p><a href="{link}">Open the request</a></p>
    </div>
</div>
"""

_TEMPLATES: dict[str, dict[str, str]] = {
    "submitted": {
        "subject": "[Request Desk] {reference_code} submitted",
        "body": "Your request {reference_code} was submitted and is waiting for {step_name}.",
    },
    "approval_required": {
        "subject": "[Request Desk] Approval required: {reference_code}",
        "body": "{requestor_name} submitted {reference_code}. It is waiting for your action at {step_name}.",
    },
    "approved": {
        "subject": "[Request Desk] {reference_code} is now {status}",
        "body": "{actor_name} approved {step_name}. The request is now {status}.",
    },
    "declined": {
        "subject": "[Request Desk] {reference_code} declined",
        "body": "{actor_name} declined {reference_code} at {step_name}: {comments}",
    },
    "returned": {
        "subject": "[Request Desk] {reference_code} returned",
        "body": "{actor_name} returned {reference_code} at {step_name}: {return_reason}",
    },
    "verifier_assigned": {
        "subject": "[Request Desk] Verification requested: {reference_code}",
        "body": "{actor_name} asked you to verify vehicle request {reference_code}.",
    },
    "verification_result": {
        "subject": "[Request Desk] {reference_code} verification {verification_status}",
        "body": "{actor_name} marked the verification of {reference_code} as {verification_status}.",
    },
}

EVENTS = frozenset(_TEMPLATES)


class _SafeDict(dict):
    """Dict that returns {key} for missing keys instead of raising."""

    def __missing__(self, key):
        return f"{{{key}}}"


def is_configured() -> bool:
    return bool(current_app.config.get("MAIL_SERVER"))


def request_link(request_obj) -> str:
    base = (current_app.config.get("FRONTEND_URL") or "").rstrip("/")
    section = "requests" if request_obj.KIND == "item_request" else "vehicle-requests"
    return f"{base}/{section}/{request_obj.id}"


def render(event: str, context: dict[str, Any]) -> tuple[str, str]:
    """Return ``(subject, html)`` for an event."""
    template = _TEMPLATES[event]
    values = _SafeDict(context)
    body = template["body"].format_map(values)
    html = _LAYOUT.format_map(_SafeDict({**context, "body": body}))
    return template["subject"].format_map(values), html


def _send_smtp(*, to_email: str, to_name: str | None, subject: str, html_body: str) -> None:
    cfg = current_app.config
    server = cfg.get("MAIL_SERVER")
    port = cfg.get("MAIL_PORT", 587)
    use_tls = cfg.get("MAIL_USE_TLS", True)
    username = cfg.get("MAIL_USERNAME")
    password = cfg.get("MAIL_PASSWORD")
    sender = cfg.get("MAIL_DEFAULT_SENDER") or f"noreply@{server}"

    msg = MIMEMultipart("alternative")
    msg["Subject"] = subject
    msg["From"] = sender
    msg["To"] = f"{to_name} <{to_email}>" if to_name else to_email
    msg.attach(MIMEText(html_body, "html"))

    with smtplib.SMTP(server, port, timeout=30) as smtp:
        if use_tls:
            smtp.starttls()
        if username and password:
            smtp.login(username, password)
        smtp.send_message(msg)


def send(user: User | None, event: str, context: dict[str, Any]) -> bool:
    """Send one event mail to ``user``. Returns True if it was sent or logged."""
    if user is None or not user.email or not user.is_active:
        return False
    subject, html = render(event, context)
    if not is_configured():
        logger.info("Email (dev mode): to=%s subject='%s' event=%s", user.email, subject, event)
        return True
    _send_smtp(to_email=user.email, to_name=user.full_name, subject=subject, html_body=html)
    logger.info("Email sent: to=%s subject='%s'", user.email, subject)
    return True


def notify(event: str, request_obj, recipients, **context) -> int:
    """Mail ``recipients`` about ``event`` on ``request_obj``; never raises.

    Returns the number of recipients reached.
    """
    base = {
        "reference_code": request_obj.reference_code,
        "status": request_obj.status,
        "requestor_name": request_obj.requestor.full_name if request_obj.requestor else "",
        "link": request_link(request_obj),
    }
    base.update({k: ("" if v is None else v) for k, v in context.items()})

    sent = 0
    seen = set()
    for user in recipients:
        if user is None or user.id in seen:
            continue
        seen.add(user.id)
        try:
            if send(user, event, base):
                sent += 1
        except Exception as exc:
            logger.error(
                "Notification failed: event=%s to=%s error=%s", event, user.email, exc,
                extra={"request_ref": request_obj.reference_code, "action": event},
            )
    return sent
