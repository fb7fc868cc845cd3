"""
CRA Request Tracker
Caller identity for the workflow API.

Login and sessions belong to the front-end gateway; it forwards the
authenticated user on every API call:

    X-Actor-Id     stable user id (required)
    X-Actor-Role   sales | design | costing | admin (required)
    X-Actor-Name   display name (optional, recorded in history)
    X-Edit-Mode    "true" to act in admin edit mode (ignored for non-admins)

Provides:
    - Actor: frozen caller identity
    - require_actor: decorator that parses the headers into g.actor
    - require_admin: decorator for admin-only endpoints
    - init_auth: Content-Type guard for state-changing API calls
"""

import functools
import logging
from dataclasses import dataclass

from flask import g, request

from cra_tracker.models.request import Role, parse_role
from cra_tracker.utils.errors import E, api_error
from cra_tracker.utils.helpers import parse_bool

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Actor:
    id: str
    role: Role
    name: str = ""
    edit_mode: bool = False

    @property
    def is_admin(self) -> bool:
        return self.role == Role.ADMIN

    @property
    def in_edit_mode(self) -> bool:
        return self.edit_mode and self.is_admin


def actor_from_headers(headers) -> Actor | None:
    """Build an Actor from request headers.

    Returns None when the id or role header is missing.

    Raises:
        ValueError: role header holds an unknown role.
    """
    actor_id = (headers.get("X-Actor-Id") or "").strip()
    raw_role = (headers.get("X-Actor-Role") or "").strip()
    if not actor_id or not raw_role:
        return None
    role = parse_role(raw_role)
    edit_mode = parse_bool(headers.get("X-Edit-Mode"))
    return Actor(
        id=actor_id,
        role=role,
        name=(headers.get("X-Actor-Name") or "").strip(),
        edit_mode=edit_mode and role == Role.ADMIN,
    )


# ── Decorators ───────────────────────────────────────────────────────────────

def require_actor(f):
    """Decorator: require caller identity headers; sets g.actor."""
    @functools.wraps(f)
    def decorated(*args, **kwargs):
        try:
            actor = actor_from_headers(request.headers)
        except ValueError as e:
            return api_error(E.VALIDATION_INVALID, str(e))
        if actor is None:
            return api_error(E.UNAUTHENTICATED, "Caller identity required (X-Actor-Id, X-Actor-Role)")
        g.actor = actor
        return f(*args, **kwargs)

    return decorated


def require_admin(f):
    """
    Decorator: admin-only endpoint.

    Usage:
        @require_actor
        @require_admin
        def delete_request(request_id): ...
    """
    @functools.wraps(f)
    def decorated(*args, **kwargs):
        actor = getattr(g, "actor", None)
        if actor is None:
            return api_error(E.UNAUTHENTICATED, "Authentication required")
        if not actor.is_admin:
            logger.warning(
                "Access denied: role '%s' tried to access admin endpoint %s",
                actor.role.value, request.path,
            )
            return api_error(E.FORBIDDEN, "Insufficient permissions")
        return f(*args, **kwargs)

    return decorated


# ── CSRF protection for API ──────────────────────────────────────────────────

def _check_content_type():
    """
    For state-changing requests (POST/PUT/PATCH/DELETE), require
    Content-Type: application/json. HTML forms cannot send that content
    type, which keeps cross-site form posts out.
    """
    if request.method in ("POST", "PUT", "PATCH", "DELETE"):
        ct = request.content_type or ""
        if "application/json" not in ct and request.content_length and request.content_length > 0:
            return api_error(
                E.VALIDATION_INVALID,
                "Content-Type must be application/json for state-changing requests",
                status=415,
            )
    return None


def init_auth(app):
    """Install the Content-Type guard on /api/v1/* routes."""
    @app.before_request
    def _before_request_auth():
        if not request.path.startswith("/api/v1/"):
            return None
        if request.method == "OPTIONS":
            return None
        return _check_content_type()
