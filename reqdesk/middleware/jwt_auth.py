"""
JWT Auth Middleware — parses the Bearer token and sets ``g.acting_user``.

The token is verified here but endpoints decide whether an identity is
mandatory: protected views call ``require_acting_user()``; the public
tracking endpoint never does.
"""

import logging

import jwt as pyjwt
from flask import g, request

from reqdesk.core.exceptions import AuthenticationRequired
from reqdesk.models import db
from reqdesk.models.org import User
from reqdesk.services.identity import ActingUser
from reqdesk.services.jwt_service import decode_access_token

logger = logging.getLogger(__name__)

# Paths that never look at the Authorization header
JWT_SKIP_PREFIXES = (
    "/api/v1/health",
    "/api/v1/track/",
)


def init_jwt_middleware(app):
    """Register JWT parsing as a before_request hook."""

    @app.before_request
    def _jwt_auth():
        g.acting_user = None

        path = request.path
        if not path.startswith("/api/v1/"):
            return
        if path.startswith(JWT_SKIP_PREFIXES):
            return

        auth_header = request.headers.get("Authorization", "")
        if not auth_header.startswith("Bearer "):
            return

        try:
            payload = decode_access_token(auth_header[7:])
            g.acting_user = ActingUser.from_claims(payload)
        except pyjwt.ExpiredSignatureError:
            logger.info("Expired access token presented", extra={"path": path})
        except (pyjwt.InvalidTokenError, KeyError, ValueError) as exc:
            logger.warning("Rejected access token: %s", exc, extra={"path": path})


def require_acting_user() -> ActingUser:
    """Return the caller's identity or raise ``AuthenticationRequired``.

    The token must name an existing, active user; role and department are
    taken from the token as issued by the identity provider.
    """
    acting = getattr(g, "acting_user", None)
    if acting is None:
        raise AuthenticationRequired()
    user = db.session.get(User, acting.id)
    if user is None or not user.is_active:
        raise AuthenticationRequired("Account is unknown or inactive")
    return acting
