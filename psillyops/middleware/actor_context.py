"""
Actor Context Middleware — builds the acting user for each API request.

Authentication belongs to the host in front of this service. The host
forwards the authenticated identity as request headers:

    X-User-Id    required for any mutating endpoint
    X-User-Role  e.g. ADMIN, PRODUCTION, WAREHOUSE

The resolved ``Actor`` is stored on ``g.actor`` (None when the headers are
absent). Views that need an identity use ``@require_actor``.
"""

import functools
import logging

from flask import current_app, g, request

from psillyops.core.actor import DEFAULT_ADMIN_ROLES, Actor
from psillyops.utils.errors import E, api_error

logger = logging.getLogger(__name__)

USER_ID_HEADER = "X-User-Id"
USER_ROLE_HEADER = "X-User-Role"


def init_actor_context(app):
    """Register the actor resolution hook."""

    @app.before_request
    def _resolve_actor():
        g.actor = None
        user_id = (request.headers.get(USER_ID_HEADER) or "").strip()
        if not user_id:
            return None
        role = request.headers.get(USER_ROLE_HEADER)
        admin_roles = current_app.config.get("ADMIN_ROLES", DEFAULT_ADMIN_ROLES)
        g.actor = Actor.for_role(user_id, role, admin_roles=admin_roles)
        return None


def require_actor(f):
    """Decorator: reject the request with 401 when no acting user was supplied."""

    @functools.wraps(f)
    def decorated(*args, **kwargs):
        if getattr(g, "actor", None) is None:
            logger.info("Rejected %s %s: no %s header", request.method, request.path, USER_ID_HEADER)
            return api_error(E.UNAUTHORIZED, f"{USER_ID_HEADER} header is required")
        return f(*args, **kwargs)

    return decorated
