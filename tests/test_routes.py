from tontine_api.core.database.base import generate_ulid
from tontine_api.features.associations.models import AssociationMember, MemberStatus
from tontine_api.features.permissions.models import Role


PREFIX = "/api/v1/associations"


async def my_permissions(client, auth, user, association_id):
    response = await client.get(f"{PREFIX}/{association_id}/me/permissions", headers=auth(user))
    assert response.status_code == 200, response.text
    return set(response.json()["permissions"])


# ============================================================================
# End-to-end scenarios
# ============================================================================

async def test_role_assignment_revoke_and_grant(client, seed, auth):
    association, admin = await seed.association()
    admin_user = admin.user
    member = await seed.member(association)
    member_user = member.user

    created = await client.post(
        f"{PREFIX}/{association.id}/roles",
        json={"name": "treasurer", "permissions": ["finances.view_treasury"]},
        headers=auth(admin_user),
    )
    assert created.status_code == 201, created.text
    role_id = created.json()["id"]

    assigned = await client.post(
        f"{PREFIX}/{association.id}/members/{member.id}/roles",
        json={"roleIds": [role_id]},
        headers=auth(admin_user),
    )
    assert assigned.status_code == 200, assigned.text
    assert assigned.json()["assignedRoles"] == [role_id]

    permissions = await my_permissions(client, auth, member_user, association.id)
    assert "finances.view_treasury" in permissions
    assert "members.manage_members" not in permissions

    revoked = await client.post(
        f"{PREFIX}/{association.id}/members/{member.id}/permissions/revoke",
        json={"permissionId": "finances.view_treasury"},
        headers=auth(admin_user),
    )
    assert revoked.status_code == 200, revoked.text
    assert "finances.view_treasury" not in await my_permissions(client, auth, member_user, association.id)

    granted = await client.post(
        f"{PREFIX}/{association.id}/members/{member.id}/permissions/grant",
        json={"permissionId": "members.manage_members"},
        headers=auth(admin_user),
    )
    assert granted.status_code == 200, granted.text
    assert granted.json()["customPermissions"] == {
        "granted": ["members.manage_members"],
        "revoked": ["finances.view_treasury"],
    }
    assert await my_permissions(client, auth, member_user, association.id) == {"members.manage_members"}


async def test_create_role_with_unknown_permission(client, seed, auth):
    association, admin = await seed.association()

    response = await client.post(
        f"{PREFIX}/{association.id}/roles",
        json={"name": "ghost", "permissions": ["nonexistent_permission"]},
        headers=auth(admin.user),
    )

    assert response.status_code == 400
    assert response.json()["code"] == "INVALID_PERMISSION"
    assert response.json()["details"] == {"invalid": ["nonexistent_permission"]}

    listed = await client.get(f"{PREFIX}/{association.id}/roles", headers=auth(admin.user))
    assert listed.json()["totalRoles"] == 0


async def test_transfer_admin_then_retry(client, seed, auth, fresh):
    association, admin = await seed.association()
    member = await seed.member(association)

    response = await client.post(
        f"{PREFIX}/{association.id}/transfer-admin",
        json={"newAdminMemberId": member.id},
        headers=auth(admin.user),
    )
    assert response.status_code == 200, response.text
    assert response.json() == {"previousAdminMemberId": admin.id, "newAdminMemberId": member.id}

    assert (await fresh(AssociationMember, admin.id)).is_admin is False
    assert (await fresh(AssociationMember, member.id)).is_admin is True

    retry = await client.post(
        f"{PREFIX}/{association.id}/transfer-admin",
        json={"newAdminMemberId": member.id},
        headers=auth(admin.user),
    )
    assert retry.status_code == 403
    assert retry.json()["code"] == "NOT_CURRENT_ADMIN"


async def test_delete_role_in_use(client, seed, auth, fresh):
    association, admin = await seed.association()
    role = await seed.role(association)
    member = await seed.member(association, roles=[role.id])

    refused = await client.delete(f"{PREFIX}/{association.id}/roles/{role.id}", headers=auth(admin.user))
    assert refused.status_code == 409
    assert refused.json()["code"] == "ROLE_IN_USE"
    assert refused.json()["details"]["membersCount"] == 1

    forced = await client.delete(
        f"{PREFIX}/{association.id}/roles/{role.id}", params={"force": "true"}, headers=auth(admin.user)
    )
    assert forced.status_code == 200, forced.text
    assert forced.json() == {"deletedRoleId": role.id, "membersAffected": 1}

    assert await fresh(Role, role.id) is None
    assert (await fresh(AssociationMember, member.id)).assigned_roles == []


# ============================================================================
# Access control
# ============================================================================

async def test_unauthenticated_request(client, seed):
    association, _ = await seed.association()

    response = await client.get(f"{PREFIX}/{association.id}/permissions")

    assert response.status_code == 401
    assert response.json()["code"] == "NOT_AUTHENTICATED"


async def test_malformed_association_id(client, seed, auth):
    user = await seed.user()

    response = await client.get(f"{PREFIX}/not-a-ulid/permissions", headers=auth(user))

    assert response.status_code == 400
    assert response.json()["code"] == "INVALID_ASSOCIATION_ID"


async def test_non_member_and_pending_member_are_refused(client, seed, auth):
    association, _ = await seed.association()
    outsider = await seed.user("Cheikh", "Ndiaye")
    pending = await seed.member(association, status=MemberStatus.PENDING.value)

    for user in (outsider, pending.user):
        response = await client.get(f"{PREFIX}/{association.id}/permissions", headers=auth(user))
        assert response.status_code == 403
        assert response.json()["code"] == "NOT_ASSOCIATION_MEMBER"


async def test_member_sees_catalog_but_cannot_manage_roles(client, seed, auth):
    association, _ = await seed.association()
    member = await seed.member(association)

    catalog = await client.get(f"{PREFIX}/{association.id}/permissions", headers=auth(member.user))
    assert catalog.status_code == 200
    body = catalog.json()
    assert body["total"] == len(body["permissions"])
    assert "finances" in body["grouped"]

    roles = await client.get(f"{PREFIX}/{association.id}/roles", headers=auth(member.user))
    assert roles.status_code == 403
    assert roles.json()["code"] == "ADMIN_ONLY"


async def test_permission_guard_reports_revocation(client, seed, auth):
    association, admin = await seed.association()
    approver = await seed.role(association, name="Secretary", permissions=["members.approve_members"])
    member = await seed.member(association, roles=[approver.id], revoked=["members.approve_members"])
    pending = await seed.member(association, status=MemberStatus.PENDING.value)

    response = await client.post(
        f"{PREFIX}/{association.id}/members/{pending.id}/validate",
        json={"approve": True},
        headers=auth(member.user),
    )

    assert response.status_code == 403
    assert response.json()["code"] == "PERMISSION_REVOKED"


async def test_permission_guard_reports_required_and_roles(client, seed, auth):
    association, _ = await seed.association()
    role = await seed.role(association)
    member = await seed.member(association, roles=[role.id])
    pending = await seed.member(association, status=MemberStatus.PENDING.value)

    response = await client.post(
        f"{PREFIX}/{association.id}/members/{pending.id}/validate",
        json={"approve": True},
        headers=auth(member.user),
    )

    assert response.status_code == 403
    body = response.json()
    assert body["code"] == "INSUFFICIENT_PERMISSIONS"
    assert body["details"] == {"required": ["members.approve_members"], "yourRoles": [role.id]}


async def test_member_with_approval_permission_validates_request(client, seed, auth):
    association, _ = await seed.association()
    approver = await seed.member(association, granted=["members.approve_members"])
    pending = await seed.member(association, status=MemberStatus.PENDING.value)

    response = await client.post(
        f"{PREFIX}/{association.id}/members/{pending.id}/validate",
        json={"approve": True},
        headers=auth(approver.user),
    )

    assert response.status_code == 200, response.text
    assert response.json()["status"] == "active"


async def test_member_roles_visible_to_self_only(client, seed, auth):
    association, admin = await seed.association()
    role = await seed.role(association)
    member = await seed.member(association, roles=[role.id])
    other = await seed.member(association)

    own = await client.get(f"{PREFIX}/{association.id}/members/{member.id}/roles", headers=auth(member.user))
    assert own.status_code == 200
    assert own.json()["effectivePermissions"] == ["finances.view_treasury"]
    assert [r["id"] for r in own.json()["assignedRoles"]] == [role.id]

    by_admin = await client.get(f"{PREFIX}/{association.id}/members/{member.id}/roles", headers=auth(admin.user))
    assert by_admin.status_code == 200

    foreign = await client.get(f"{PREFIX}/{association.id}/members/{member.id}/roles", headers=auth(other.user))
    assert foreign.status_code == 403
    assert foreign.json()["code"] == "ACCESS_DENIED"


# ============================================================================
# Validation and conflicts
# ============================================================================

async def test_request_validation_uses_error_envelope(client, seed, auth):
    association, admin = await seed.association()

    response = await client.post(
        f"{PREFIX}/{association.id}/roles",
        json={"name": "x", "permissions": [], "color": "red"},
        headers=auth(admin.user),
    )

    assert response.status_code == 400
    body = response.json()
    assert body["code"] == "VALIDATION_ERROR"
    assert {"name", "color"} <= set(body["details"])


async def test_duplicate_role_name_conflict(client, seed, auth):
    association, admin = await seed.association()
    await seed.role(association, name="Treasurer")

    response = await client.post(
        f"{PREFIX}/{association.id}/roles",
        json={"name": "Treasurer", "permissions": []},
        headers=auth(admin.user),
    )

    assert response.status_code == 409
    assert response.json()["code"] == "DUPLICATE_ROLE_NAME"


async def test_unknown_member_and_role(client, seed, auth):
    association, admin = await seed.association()
    missing = generate_ulid()

    member = await client.post(
        f"{PREFIX}/{association.id}/members/{missing}/roles", json={"roleIds": []}, headers=auth(admin.user)
    )
    role = await client.get(f"{PREFIX}/{association.id}/roles/{missing}", headers=auth(admin.user))

    assert member.status_code == 404
    assert member.json()["code"] == "MEMBER_NOT_FOUND"
    assert role.status_code == 404
    assert role.json()["code"] == "ROLE_NOT_FOUND"


# ============================================================================
# Association lifecycle
# ============================================================================

async def test_create_join_and_extend_catalog(client, seed, auth):
    founder = await seed.user("Aminata", "Traore")
    applicant = await seed.user("Ousmane", "Diop")

    created = await client.post(f"{PREFIX}/", json={"name": "Diaspora Marseille"}, headers=auth(founder))
    assert created.status_code == 201, created.text
    association_id = created.json()["association"]["id"]
    assert created.json()["membership"]["isAdmin"] is True

    joined = await client.post(f"{PREFIX}/{association_id}/join", headers=auth(applicant))
    assert joined.status_code == 201
    assert joined.json()["status"] == "pending"

    again = await client.post(f"{PREFIX}/{association_id}/join", headers=auth(applicant))
    assert again.status_code == 409
    assert again.json()["code"] == "ALREADY_MEMBER"

    extended = await client.post(
        f"{PREFIX}/{association_id}/permissions",
        json={"permissions": [{"id": "tontines.manage", "name": "Manage tontines", "category": "tontines"}]},
        headers=auth(founder),
    )
    assert extended.status_code == 201, extended.text
    assert "tontines" in extended.json()["grouped"]

    summary = await client.get(f"{PREFIX}/{association_id}", headers=auth(founder))
    assert summary.status_code == 200
    assert summary.json()["membersCount"] == 1
    assert summary.json()["permissionsCount"] == extended.json()["total"]

    # Admins hold catalog entries added after they became admin
    assert "tontines.manage" in await my_permissions(client, auth, founder, association_id)


async def test_role_changes_are_audited(client, seed, auth):
    association, admin = await seed.association()

    created = await client.post(
        f"{PREFIX}/{association.id}/roles",
        json={"name": "Secretary", "permissions": ["members.view_list"]},
        headers=auth(admin.user),
    )
    role_id = created.json()["id"]
    await client.put(
        f"{PREFIX}/{association.id}/roles/{role_id}",
        json={"description": "Keeps the minutes"},
        headers=auth(admin.user),
    )

    response = await client.get(
        f"{PREFIX}/{association.id}/audit-logs", params={"resource_type": "role"}, headers=auth(admin.user)
    )

    assert response.status_code == 200, response.text
    body = response.json()
    assert body["total"] == 2
    assert {item["action"] for item in body["items"]} == {"create", "update"}
    assert all(item["userId"] == admin.user_id for item in body["items"])
