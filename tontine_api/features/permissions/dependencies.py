"""
Access-control dependencies for association-scoped routes.

Implements:
- require_membership: resolves the caller's active membership and the
  association's permission resolver once per request
- require_permission: any-of permission guard
- require_association_admin / require_admin_or_self

Usage:
    @router.post("/{id}/roles")
    async def create_role(
        access: AccessContext = Depends(require_association_admin),
    ):
        ...
"""
from dataclasses import dataclass
from typing import List, Optional

from fastapi import Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession
from ulid import ULID

from tontine_api.core.database.engine import get_db
from tontine_api.core.errors import (
    AccessDenied,
    AdminOnly,
    InsufficientPermissions,
    InvalidAssociationId,
    MissingAssociationId,
    PermissionRevoked,
)
from tontine_api.features.associations.models import Association, AssociationMember
from tontine_api.features.permissions import services
from tontine_api.features.permissions.catalog import catalog_ids
from tontine_api.features.permissions.resolver import PermissionResolver, build_resolver
from tontine_api.features.users.dependencies import get_current_user
from tontine_api.features.users.models import User
from tontine_api.utils import get_logger


log = get_logger(__name__)

ASSOCIATION_ID_PARAMS = ("id", "association_id", "associationId")


@dataclass
class AccessContext:
    """Everything a guarded route knows about the caller."""
    user: User
    association: Association
    membership: AssociationMember
    resolver: PermissionResolver

    @property
    def is_admin(self) -> bool:
        return bool(self.membership.is_admin)

    def has_permission(self, permission_id: str) -> bool:
        return self.resolver.has_permission(self.membership, permission_id)

    def effective_permissions(self) -> List[str]:
        return sorted(self.resolver.effective_permissions(self.membership))

    def effective_roles(self) -> List[str]:
        return self.resolver.effective_roles(self.membership)


def _association_id_from(request: Request) -> Optional[str]:
    for source in (request.path_params, request.query_params):
        for name in ASSOCIATION_ID_PARAMS:
            value = source.get(name)
            if value:
                return value
    return None


def _check_ulid(value: str) -> str:
    try:
        ULID.from_str(value)
    except ValueError:
        raise InvalidAssociationId(details={"associationId": value})
    return value


async def load_resolver(
    db: AsyncSession,
    association: Association,
    platform_role: Optional[str] = None
) -> PermissionResolver:
    """Resolver for `association`, loaded with its roles and catalog."""
    roles = await services.list_roles(db, association.id)
    catalog = await catalog_ids(db, association.id)
    return build_resolver(
        association.permission_model,
        roles=roles,
        catalog=catalog,
        permissions_matrix=association.permissions_matrix,
        platform_role=platform_role,
    )


async def require_membership(
    request: Request,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user)
) -> AccessContext:
    """
    Resolve the caller's active membership in the association named by the
    request (path `id` / `association_id`, or the query string).

    Raises:
        MissingAssociationId, InvalidAssociationId, NotAssociationMember
    """
    association_id = _association_id_from(request)
    if not association_id:
        raise MissingAssociationId()
    _check_ulid(association_id)

    membership = await services.get_active_membership(db, current_user.id, association_id)
    association = await services.get_association(db, association_id)
    resolver = await load_resolver(db, association, current_user.platform_role)

    log.debug(
        "User %s is member %s of association %s (admin=%s)",
        current_user.id, membership.id, association_id, membership.is_admin
    )
    return AccessContext(
        user=current_user,
        association=association,
        membership=membership,
        resolver=resolver,
    )


def require_permission(*permission_ids: str):
    """
    Dependency factory: the caller needs at least one of `permission_ids`.

    Usage:
        access: AccessContext = Depends(require_permission("finances.view_treasury"))

    Raises:
        PermissionRevoked: a single permission was required and it is
            explicitly revoked for the caller
        InsufficientPermissions: otherwise, with the required ids and the
            caller's own roles
    """
    required = list(permission_ids)

    async def permission_dependency(
        access: AccessContext = Depends(require_membership)
    ) -> AccessContext:
        decisions = [access.resolver.explain(access.membership, p) for p in required]
        for permission_id, decision in zip(required, decisions):
            if decision.allowed:
                log.debug(
                    "Member %s granted %s via %s",
                    access.membership.id, permission_id, decision.rule
                )
                return access

        if len(required) == 1 and decisions[0].revoked:
            log.debug("Member %s denied %s: revoked", access.membership.id, required[0])
            raise PermissionRevoked(details={"permission": required[0]})

        log.debug("Member %s denied %s", access.membership.id, required)
        raise InsufficientPermissions(
            details={"required": required, "yourRoles": access.effective_roles()}
        )

    return permission_dependency


async def require_association_admin(
    access: AccessContext = Depends(require_membership)
) -> AccessContext:
    if not access.is_admin:
        log.debug("Member %s is not admin of %s", access.membership.id, access.association.id)
        raise AdminOnly()
    return access


async def require_admin_or_self(
    request: Request,
    access: AccessContext = Depends(require_membership)
) -> AccessContext:
    """The association admin, or the member named by the `member_id` path parameter."""
    member_id = request.path_params.get("member_id")
    if access.is_admin or (member_id and member_id == access.membership.id):
        return access
    raise AccessDenied()
