# Overview: Request and permission decorators for API routes.

from functools import wraps
from flask import request, jsonify, g

from .services import session_service, permission_service
from .services.permission_service import PermissionDeniedError
from .validation import ValidationError, coerce_int


def _is_authenticated() -> bool:
    return hasattr(g, "current_user") and hasattr(g, "org_id")


def _requested_org_id():
    """orgId from the JSON body (POST) or the query string (GET)."""
    payload = request.get_json(silent=True) if request.is_json else None
    raw = None
    if isinstance(payload, dict):
        raw = payload.get("orgId")
    if raw is None:
        raw = request.args.get("orgId")
    if raw is None or raw == "":
        raise ValidationError("Missing required fields: orgId")
    return coerce_int(raw, "orgId")


def require_auth(f):
    """
    Require a verified identity and establish tenant context.

    Sets on Flask g:
    - g.current_user: the User behind the token
    - g.org_id: the session's organization (tenant context)
    - g.session_context: the full SessionContext

    Returns 401 (UNAUTHORIZED) if the Authorization header is missing or
    the token is invalid, expired, revoked or belongs to a deactivated
    user/organization.
    """
    @wraps(f)
    def decorated_function(*args, **kwargs):
        auth_header = request.headers.get("Authorization")

        if not auth_header or not auth_header.startswith("Bearer "):
            return jsonify({"success": False, "error": "Authentication required", "code": "UNAUTHORIZED"}), 401

        token = auth_header.split(" ", 1)[1]
        context = session_service.validate_session(token)

        if not context:
            return jsonify({"success": False, "error": "Invalid or expired token", "code": "UNAUTHORIZED"}), 401

        g.current_user = context.user
        g.org_id = context.org_id
        g.session_context = context

        return f(*args, **kwargs)

    return decorated_function


def require_org_admin(f):
    """
    Require the caller to be an admin of the organization named in the request.

    Must be stacked under @require_auth. A different orgId than the
    session's yields 403 NOT_MEMBER; a non-admin role yields 403 NOT_ADMIN.
    Both are written to security_events.
    """
    @wraps(f)
    def decorated_function(*args, **kwargs):
        if not _is_authenticated():
            return jsonify({"success": False, "error": "Authentication required", "code": "UNAUTHORIZED"}), 401

        try:
            requested_org_id = _requested_org_id()
        except ValidationError as e:
            return jsonify({"success": False, "error": str(e), "code": e.code}), 400

        try:
            permission_service.require_org_admin(
                g.current_user,
                g.org_id,
                requested_org_id,
                resource=request.path,
                action=request.method,
                ip_address=request.remote_addr,
                user_agent=request.headers.get("User-Agent"),
            )
        except PermissionDeniedError as e:
            return jsonify({"success": False, "error": str(e), "code": e.code}), 403

        return f(*args, **kwargs)

    return decorated_function
