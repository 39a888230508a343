"""
Permission resolution.

Pure, synchronous functions over already-loaded data. Nothing here touches
the database: callers load the membership, the association's roles and its
catalog, then ask.

Two strategies share the PermissionResolver interface:

- CatalogPermissionResolver: dynamic roles. Rules are evaluated in order and
  the first match decides:
    1. membership.is_admin            -> allow (revocations ignored)
    2. id in granted_permissions      -> allow
    3. id in revoked_permissions      -> deny
    4. id in any assigned role        -> allow
    5.                                -> deny

- LegacyHierarchyResolver: associations not yet migrated. Role *names* are
  expanded through ROLE_HIERARCHY and matched against the association's
  permissions_matrix. Platform super admins pass everywhere.

build_resolver() picks one from Association.permission_model.
"""
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Mapping, Optional, Protocol, Sequence, Set

from tontine_api.features.associations.models import PermissionModel
from tontine_api.features.users.models import PLATFORM_SUPER_ADMIN


GRANTED_BY_ADMIN = "admin"
GRANTED_BY_CUSTOM = "custom_granted"
DENIED_BY_REVOKE = "custom_revoked"
GRANTED_BY_SUPER_ADMIN = "super_admin"
NO_MATCH = "none"


class MembershipLike(Protocol):
    is_admin: bool
    assigned_roles: Sequence[str]
    granted_permissions: Sequence[str]
    revoked_permissions: Sequence[str]


class RoleLike(Protocol):
    id: str
    name: str
    permissions: Sequence[str]


@dataclass(frozen=True)
class Decision:
    """Outcome of a permission check and the rule that produced it."""
    allowed: bool
    rule: str

    @property
    def revoked(self) -> bool:
        return self.rule == DENIED_BY_REVOKE


# ============================================================================
# Catalog (dynamic roles)
# ============================================================================

def explain_permission(
    membership: Optional[MembershipLike],
    permission_id: str,
    roles: Mapping[str, RoleLike]
) -> Decision:
    """
    Decide `permission_id` for `membership` and report which rule decided.

    `roles` maps role id to role for the membership's association. Assigned
    ids missing from it (e.g. a role deleted concurrently) are ignored.
    """
    if membership is None:
        return Decision(False, NO_MATCH)

    if membership.is_admin:
        return Decision(True, GRANTED_BY_ADMIN)

    if permission_id in (membership.granted_permissions or ()):
        return Decision(True, GRANTED_BY_CUSTOM)

    # Before role lookup: a revoke beats any role
    if permission_id in (membership.revoked_permissions or ()):
        return Decision(False, DENIED_BY_REVOKE)

    for role_id in membership.assigned_roles or ():
        role = roles.get(role_id)
        if role is not None and permission_id in (role.permissions or ()):
            return Decision(True, f"role:{role.name}")

    return Decision(False, NO_MATCH)


def has_permission(
    membership: Optional[MembershipLike],
    permission_id: str,
    roles: Mapping[str, RoleLike]
) -> bool:
    return explain_permission(membership, permission_id, roles).allowed


def effective_permissions(
    membership: Optional[MembershipLike],
    roles: Mapping[str, RoleLike],
    catalog: Iterable[str]
) -> Set[str]:
    """
    Every permission the membership holds.

    Admins hold the whole catalog, including permissions no role carries.
    Everyone else: union of role permissions, plus granted, minus revoked.
    """
    if membership is None:
        return set()

    if membership.is_admin:
        return set(catalog)

    permissions: Set[str] = set()
    for role_id in membership.assigned_roles or ():
        role = roles.get(role_id)
        if role is not None:
            permissions.update(role.permissions or ())

    permissions.update(membership.granted_permissions or ())
    permissions.difference_update(membership.revoked_permissions or ())
    return permissions


class PermissionResolver(Protocol):
    """What the access-control dependencies need from a strategy."""

    def explain(self, membership: MembershipLike, permission_id: str) -> Decision:
        ...

    def has_permission(self, membership: MembershipLike, permission_id: str) -> bool:
        ...

    def effective_permissions(self, membership: MembershipLike) -> Set[str]:
        ...

    def effective_roles(self, membership: MembershipLike) -> List[str]:
        ...


class CatalogPermissionResolver:
    """Resolver for associations on the dynamic role catalog."""

    def __init__(self, roles: Iterable[RoleLike], catalog: Iterable[str]):
        self.roles: Dict[str, RoleLike] = {role.id: role for role in roles}
        self.catalog: List[str] = list(catalog)

    def explain(self, membership: MembershipLike, permission_id: str) -> Decision:
        return explain_permission(membership, permission_id, self.roles)

    def has_permission(self, membership: MembershipLike, permission_id: str) -> bool:
        return self.explain(membership, permission_id).allowed

    def effective_permissions(self, membership: MembershipLike) -> Set[str]:
        return effective_permissions(membership, self.roles, self.catalog)

    def effective_roles(self, membership: MembershipLike) -> List[str]:
        return [role_id for role_id in membership.assigned_roles or () if role_id in self.roles]


# ============================================================================
# Legacy (role-name hierarchy)
# ============================================================================

LEGACY_ADMIN_ROLE = "admin_association"

# Office roles imply the roles listed with them
ROLE_HIERARCHY: Dict[str, List[str]] = {
    "admin_association": ["admin_association", "president", "secretaire", "tresorier", "member"],
    "president": ["president", "member"],
    "secretaire": ["secretaire", "member"],
    "tresorier": ["tresorier", "member"],
    "responsable_section": ["responsable_section", "member"],
    "secretaire_section": ["secretaire_section", "member"],
    "tresorier_section": ["tresorier_section", "member"],
}

# Used for permissions an association never configured in its matrix
DEFAULT_LEGACY_MATRIX: Dict[str, List[str]] = {
    "view_member_list": ["president", "central_board", "secretaire", "responsable_section"],
    "view_finances": ["president", "central_board", "tresorier", "tresorier_section"],
    "manage_members": ["president", "central_board", "secretaire"],
    "approve_aids": ["president", "central_board", "tresorier"],
}


def expand_roles(role_names: Iterable[str]) -> List[str]:
    """Role names plus everything they imply, deduplicated, order kept."""
    expanded: List[str] = []
    for name in role_names:
        for implied in [name, *ROLE_HIERARCHY.get(name, [])]:
            if implied not in expanded:
                expanded.append(implied)
    return expanded


def _allowed_roles(entry: Any) -> List[str]:
    # Matrix entries are stored as {"allowed_roles": [...]}; bare lists are accepted too
    if isinstance(entry, Mapping):
        return list(entry.get("allowed_roles") or [])
    if isinstance(entry, (list, tuple)):
        return list(entry)
    return []


class LegacyHierarchyResolver:
    """
    Resolver for associations still on role names and a permissions matrix.

    Custom grants and revocations do not exist in this model and are ignored.
    """

    def __init__(
        self,
        permissions_matrix: Optional[Mapping[str, Any]] = None,
        platform_role: Optional[str] = None,
        catalog: Iterable[str] = ()
    ):
        self.matrix: Dict[str, List[str]] = dict(DEFAULT_LEGACY_MATRIX)
        for permission_id, entry in (permissions_matrix or {}).items():
            self.matrix[permission_id] = _allowed_roles(entry)
        self.platform_role = platform_role
        self.catalog = list(catalog)

    def _is_admin(self, membership: MembershipLike, roles: Sequence[str]) -> bool:
        return bool(membership.is_admin) or LEGACY_ADMIN_ROLE in roles

    def explain(self, membership: MembershipLike, permission_id: str) -> Decision:
        roles = self.effective_roles(membership)
        if self._is_admin(membership, roles):
            return Decision(True, GRANTED_BY_ADMIN)
        if self.platform_role == PLATFORM_SUPER_ADMIN:
            return Decision(True, GRANTED_BY_SUPER_ADMIN)
        for role in self.matrix.get(permission_id, []):
            if role in roles:
                return Decision(True, f"role:{role}")
        return Decision(False, NO_MATCH)

    def has_permission(self, membership: MembershipLike, permission_id: str) -> bool:
        return self.explain(membership, permission_id).allowed

    def effective_permissions(self, membership: MembershipLike) -> Set[str]:
        roles = self.effective_roles(membership)
        if self._is_admin(membership, roles) or self.platform_role == PLATFORM_SUPER_ADMIN:
            return set(self.catalog) | set(self.matrix)
        return {
            permission_id
            for permission_id, allowed in self.matrix.items()
            if any(role in roles for role in allowed)
        }

    def effective_roles(self, membership: MembershipLike) -> List[str]:
        return expand_roles(membership.assigned_roles or ())


def build_resolver(
    permission_model: str,
    roles: Iterable[RoleLike] = (),
    catalog: Iterable[str] = (),
    permissions_matrix: Optional[Mapping[str, Any]] = None,
    platform_role: Optional[str] = None
) -> PermissionResolver:
    """Strategy for an association, chosen by its permission_model flag."""
    if permission_model == PermissionModel.LEGACY.value:
        return LegacyHierarchyResolver(permissions_matrix, platform_role, catalog)
    return CatalogPermissionResolver(roles, catalog)
