from types import SimpleNamespace

import pytest

from tontine_api.features.associations.models import PermissionModel
from tontine_api.features.permissions.resolver import (
    DENIED_BY_REVOKE,
    GRANTED_BY_ADMIN,
    GRANTED_BY_CUSTOM,
    GRANTED_BY_SUPER_ADMIN,
    NO_MATCH,
    CatalogPermissionResolver,
    LegacyHierarchyResolver,
    build_resolver,
    effective_permissions,
    expand_roles,
    explain_permission,
    has_permission,
)
from tontine_api.features.users.models import PLATFORM_SUPER_ADMIN


CATALOG = [
    "finances.view_treasury",
    "finances.manage_budgets",
    "members.manage_members",
    "members.view_list",
    "events.create",
]


def membership(is_admin=False, roles=(), granted=(), revoked=()):
    return SimpleNamespace(
        is_admin=is_admin,
        assigned_roles=list(roles),
        granted_permissions=list(granted),
        revoked_permissions=list(revoked),
    )


def role(role_id, name, permissions):
    return SimpleNamespace(id=role_id, name=name, permissions=list(permissions))


TREASURER = role("r-treasurer", "Treasurer", ["finances.view_treasury", "finances.manage_budgets"])
SECRETARY = role("r-secretary", "Secretary", ["members.view_list"])
ROLES = {r.id: r for r in (TREASURER, SECRETARY)}


class TestCatalogResolution:
    @pytest.mark.parametrize("permission_id", CATALOG)
    def test_admin_holds_every_catalog_permission_even_when_revoked(self, permission_id):
        admin = membership(is_admin=True, revoked=CATALOG)

        decision = explain_permission(admin, permission_id, ROLES)

        assert decision.allowed
        assert decision.rule == GRANTED_BY_ADMIN

    def test_role_grants_its_permissions_only(self):
        member = membership(roles=[TREASURER.id])

        assert has_permission(member, "finances.view_treasury", ROLES)
        assert not has_permission(member, "members.manage_members", ROLES)
        assert explain_permission(member, "finances.view_treasury", ROLES).rule == "role:Treasurer"

    def test_revoke_beats_role(self):
        member = membership(roles=[TREASURER.id], revoked=["finances.view_treasury"])

        decision = explain_permission(member, "finances.view_treasury", ROLES)

        assert not decision.allowed
        assert decision.revoked
        assert decision.rule == DENIED_BY_REVOKE

    def test_custom_grant_without_role(self):
        member = membership(granted=["events.create"])

        decision = explain_permission(member, "events.create", ROLES)

        assert decision.allowed
        assert decision.rule == GRANTED_BY_CUSTOM

    def test_no_match_is_denied(self):
        decision = explain_permission(membership(), "events.create", ROLES)

        assert not decision.allowed
        assert decision.rule == NO_MATCH
        assert not decision.revoked

    def test_missing_membership_is_denied(self):
        assert not has_permission(None, "events.create", ROLES)
        assert effective_permissions(None, ROLES, CATALOG) == set()

    def test_unknown_role_ids_are_ignored(self):
        member = membership(roles=["r-deleted", SECRETARY.id])

        assert has_permission(member, "members.view_list", ROLES)
        assert effective_permissions(member, ROLES, CATALOG) == {"members.view_list"}


class TestEffectivePermissions:
    def test_admin_gets_whole_catalog(self):
        admin = membership(is_admin=True, revoked=["events.create"])

        assert effective_permissions(admin, ROLES, CATALOG) == set(CATALOG)

    @pytest.mark.parametrize(
        "roles, granted, revoked",
        [
            ([], [], []),
            ([TREASURER.id], [], []),
            ([TREASURER.id, SECRETARY.id], ["events.create"], []),
            ([TREASURER.id], [], ["finances.manage_budgets"]),
            ([SECRETARY.id], ["events.create"], ["members.view_list", "events.create"]),
        ],
    )
    def test_union_of_roles_and_grants_minus_revokes(self, roles, granted, revoked):
        member = membership(roles=roles, granted=granted, revoked=revoked)

        expected = set()
        for role_id in roles:
            expected.update(ROLES[role_id].permissions)
        expected.update(granted)
        expected.difference_update(revoked)

        assert effective_permissions(member, ROLES, CATALOG) == expected

    def test_revoked_role_permission_with_grant_of_another(self):
        member = membership(
            roles=[TREASURER.id],
            granted=["members.manage_members"],
            revoked=["finances.view_treasury", "finances.manage_budgets"],
        )

        assert effective_permissions(member, ROLES, CATALOG) == {"members.manage_members"}

    def test_resolver_object_matches_functions(self):
        resolver = CatalogPermissionResolver(ROLES.values(), CATALOG)
        member = membership(roles=[TREASURER.id, "r-deleted"], granted=["events.create"])

        assert resolver.has_permission(member, "finances.view_treasury")
        assert resolver.effective_permissions(member) == effective_permissions(member, ROLES, CATALOG)
        assert resolver.effective_roles(member) == [TREASURER.id]


class TestLegacyResolution:
    MATRIX = {
        "view_finances": {"allowed_roles": ["tresorier"]},
        "manage_members": ["secretaire"],
    }

    def test_expand_roles_follows_hierarchy(self):
        assert expand_roles(["president"]) == ["president", "member"]
        assert expand_roles(["admin_association"]) == [
            "admin_association", "president", "secretaire", "tresorier", "member"
        ]
        assert expand_roles(["central_board"]) == ["central_board"]

    def test_matrix_roles_are_allowed(self):
        resolver = LegacyHierarchyResolver(self.MATRIX)
        member = membership(roles=["tresorier"])

        assert resolver.has_permission(member, "view_finances")
        assert not resolver.has_permission(member, "manage_members")

    def test_admin_role_name_allows_everything(self):
        resolver = LegacyHierarchyResolver(self.MATRIX)
        member = membership(roles=["admin_association"])

        assert resolver.explain(member, "anything").rule == GRANTED_BY_ADMIN

    def test_super_admin_allows_everything(self):
        resolver = LegacyHierarchyResolver(self.MATRIX, platform_role=PLATFORM_SUPER_ADMIN)

        assert resolver.explain(membership(), "manage_members").rule == GRANTED_BY_SUPER_ADMIN

    def test_default_matrix_fills_unconfigured_permissions(self):
        resolver = LegacyHierarchyResolver(self.MATRIX)
        member = membership(roles=["president"])

        assert resolver.has_permission(member, "view_member_list")
        assert "approve_aids" in resolver.effective_permissions(member)

    def test_custom_overrides_do_not_exist_in_legacy_model(self):
        resolver = LegacyHierarchyResolver(self.MATRIX)
        member = membership(roles=["tresorier"], granted=["manage_members"], revoked=["view_finances"])

        assert resolver.has_permission(member, "view_finances")
        assert not resolver.has_permission(member, "manage_members")


def test_build_resolver_selects_by_permission_model():
    assert isinstance(build_resolver(PermissionModel.CATALOG.value, ROLES.values(), CATALOG), CatalogPermissionResolver)
    assert isinstance(build_resolver(PermissionModel.LEGACY.value), LegacyHierarchyResolver)
