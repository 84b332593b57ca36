# Overview: Org-admin authorization for remittance operations and the security event trail.

"""
Remittance Authorization and Security Events

WHY: Splitting, undoing or repairing a bank movement rewrites the books of
an organization, so only admins of that same organization may do it.

DESIGN PRINCIPLES:
- Fail closed: anything that is not "active admin of this org" is denied
- Log denials only: allowed calls are not logged
- Tenant isolation: the org in the request must equal the session's org
"""

from __future__ import annotations

from ..extensions import db
from ..models import SecurityEvent, User
from remitcore.time_utils import utcnow

NOT_MEMBER = "NOT_MEMBER"
NOT_ADMIN = "NOT_ADMIN"
CROSS_TENANT_ACCESS_DENIED = "CROSS_TENANT_ACCESS_DENIED"


class PermissionDeniedError(Exception):
    """Raised when the caller may not act on the requested organization."""

    def __init__(self, message: str, *, code: str):
        super().__init__(message)
        self.code = code


def log_security_event(
    user_id: int | None,
    event_type: str,
    success: bool,
    resource: str | None = None,
    action: str | None = None,
    reason: str | None = None,
    ip_address: str | None = None,
    user_agent: str | None = None,
    org_id: int | None = None,
) -> SecurityEvent:
    """
    Append one row to the security audit trail.

    event_type examples:
    - NOT_ADMIN
    - NOT_MEMBER
    - CROSS_TENANT_ACCESS_DENIED
    - TENANT_CONTEXT_MISSING
    """
    event = SecurityEvent(
        user_id=user_id,
        org_id=org_id,
        event_type=event_type,
        resource=resource,
        action=action,
        success=success,
        reason=reason,
        ip_address=ip_address,
        user_agent=user_agent,
        occurred_at=utcnow(),
    )
    db.session.add(event)
    db.session.commit()
    return event


def is_org_admin(user: User | None, org_id: int) -> bool:
    return bool(user and user.is_active and user.org_id == org_id and user.is_admin)


def require_org_admin(
    user: User,
    session_org_id: int,
    requested_org_id: int,
    *,
    resource: str | None = None,
    action: str | None = None,
    ip_address: str | None = None,
    user_agent: str | None = None,
) -> None:
    """
    Assert the caller is an admin of requested_org_id.

    Raises PermissionDeniedError (logged to security_events) if:
    - the requested org differs from the session's org (NOT_MEMBER)
    - the caller's role is not admin (NOT_ADMIN)
    """
    if requested_org_id != session_org_id or user.org_id != requested_org_id:
        log_security_event(
            user_id=user.id,
            event_type=CROSS_TENANT_ACCESS_DENIED,
            success=False,
            resource=resource,
            action=action,
            reason=f"Session org {session_org_id} requested org {requested_org_id}",
            ip_address=ip_address,
            user_agent=user_agent,
            org_id=session_org_id,
        )
        raise PermissionDeniedError("Not a member of this organization", code=NOT_MEMBER)

    if not is_org_admin(user, requested_org_id):
        log_security_event(
            user_id=user.id,
            event_type=NOT_ADMIN,
            success=False,
            resource=resource,
            action=action,
            reason=f"Role {user.role!r} cannot run remittance operations",
            ip_address=ip_address,
            user_agent=user_agent,
            org_id=session_org_id,
        )
        raise PermissionDeniedError("Organization admin role required", code=NOT_ADMIN)
