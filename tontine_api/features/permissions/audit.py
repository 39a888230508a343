"""
Audit trail for role, permission and admin changes.

Entries are added to the caller's session so they commit (or roll back)
together with the change they describe.
"""
from typing import Any, Dict, Optional
from fastapi import Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from tontine_api.features.permissions.models import AuditLog
from tontine_api.features.users.dependencies import get_current_user
from tontine_api.features.users.models import User
from tontine_api.utils import get_logger


log = get_logger(__name__)


class AuditTrail:
    """Who is acting, and from where. One per request."""

    def __init__(
        self,
        user_id: Optional[str] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None
    ):
        self.user_id = user_id
        self.ip_address = ip_address
        self.user_agent = user_agent

    def add(
        self,
        db: AsyncSession,
        action: str,
        resource_type: str,
        resource_id: Optional[str] = None,
        association_id: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None
    ) -> AuditLog:
        """
        Stage an audit entry in `db` without committing.

        Args:
            action: e.g. "create", "update", "delete", "assign_roles", "transfer_admin"
            resource_type: e.g. "role", "member", "association"
        """
        entry = AuditLog(
            user_id=self.user_id,
            action=action,
            resource_type=resource_type,
            resource_id=resource_id,
            association_id=association_id,
            details=details,
            ip_address=self.ip_address,
            user_agent=(self.user_agent or "")[:255] or None,
        )
        db.add(entry)
        log.info(
            "Audit: user=%s action=%s resource=%s:%s association=%s",
            self.user_id, action, resource_type, resource_id, association_id
        )
        return entry


async def get_audit_trail(
    request: Request,
    current_user: User = Depends(get_current_user)
) -> AuditTrail:
    return AuditTrail(
        user_id=current_user.id,
        ip_address=request.client.host if request.client else None,
        user_agent=request.headers.get("user-agent"),
    )
