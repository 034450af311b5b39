"""User and role administration through the service layer."""

import pytest

from tenantguard.service.authorization import USERS_DELETE, USERS_EDIT, USERS_VIEW, authorize
from tenantguard.service.errors import ConflictError, NotFoundError, ValidationError
from tenantguard.service.passwords import verify_password
from tenantguard.storage.common import RoleFilter, UserFilter

from conftest import DEFAULT_PASSWORD

_MISSING_ID = "00000000-0000-0000-0000-000000000000"


class TestUsers:
    async def test_create_user_starts_without_password(self, user_service, make_role):
        role = await make_role("viewers", ["users:view"])

        user = await user_service.create_user(
            name="Bob Builder",
            username="bob0001",
            email="bob@example.com",
            role_ids=[role.id],
        )

        assert user.is_new is True
        assert user.credential.token is None
        assert user.role_ids == [role.id]

    async def test_duplicate_email_is_conflict(self, user_service, make_user):
        await make_user("alice01", email="alice@example.com")

        with pytest.raises(ConflictError) as excinfo:
            await user_service.create_user(
                name="Other Alice", username="alice02", email="alice@example.com"
            )
        assert excinfo.value.detail == {"field": "email"}

    async def test_duplicate_username_is_conflict(self, user_service, make_user):
        await make_user("alice01")

        with pytest.raises(ConflictError):
            await user_service.create_user(
                name="Other Alice", username="alice01", email="other@example.com"
            )

    async def test_unknown_role_is_rejected(self, user_service):
        with pytest.raises(ValidationError) as excinfo:
            await user_service.create_user(
                name="Bob Builder",
                username="bob0001",
                email="bob@example.com",
                role_ids=[_MISSING_ID],
            )
        assert excinfo.value.detail["field"] == "role_ids"

    @pytest.mark.parametrize(
        "fields, bad_field",
        [
            ({"name": "Bob", "username": "bob0001", "email": "bob@example.com"}, "name"),
            ({"name": "Bob Builder", "username": "bob", "email": "bob@example.com"}, "username"),
            ({"name": "Bob Builder", "username": "bob0001", "email": "not-an-email"}, "email"),
        ],
    )
    async def test_field_rules(self, user_service, fields, bad_field):
        with pytest.raises(ValidationError) as excinfo:
            await user_service.create_user(**fields)
        assert bad_field in excinfo.value.detail

    async def test_malformed_id_is_validation_error(self, user_service):
        with pytest.raises(ValidationError):
            await user_service.get_user("not-a-uuid")

    async def test_missing_user_is_not_found(self, user_service):
        with pytest.raises(NotFoundError):
            await user_service.get_user(_MISSING_ID)

    async def test_update_replaces_roles(self, user_service, make_role, make_user):
        viewers = await make_role("viewers", ["users:view"])
        editors = await make_role("editors", ["users:edit"])
        user = await make_user("alice01", roles=[viewers])

        updated = await user_service.update_user(
            user.id, name="Alice Kingsleigh", role_ids=[editors.id]
        )

        assert updated.name == "Alice Kingsleigh"
        assert updated.role_ids == [editors.id]
        assert updated.credential.has_password

    async def test_update_to_taken_username_is_conflict(self, user_service, make_user):
        await make_user("alice01")
        bob = await make_user("bob0001")

        with pytest.raises(ConflictError):
            await user_service.update_user(bob.id, username="alice01")

    async def test_update_keeping_own_email_is_allowed(self, user_service, make_user):
        user = await make_user("alice01")

        updated = await user_service.update_user(user.id, email=user.email, name="Alice Again")

        assert updated.email == user.email

    async def test_delete_users(self, user_service, make_user):
        alice = await make_user("alice01")
        bob = await make_user("bob0001")

        removed = await user_service.delete_users([alice.id, bob.id, _MISSING_ID])

        assert removed == 2
        with pytest.raises(NotFoundError):
            await user_service.get_user(alice.id)

    async def test_list_filters_and_pages(self, user_service, make_role, make_user):
        viewers = await make_role("viewers", ["users:view"])
        await make_user("alice01", name="Alice Liddell", roles=[viewers])
        await make_user("bobby01", name="Bob Builder")
        await make_user("carol01", name="Carol Danvers", status=False)

        page = await user_service.list_users(UserFilter(page=1, limit=2))
        assert [u.username for u in page.items] == ["alice01", "bobby01"]
        assert (page.total_items, page.total_pages, page.limit) == (3, 2, 2)

        disabled = await user_service.list_users(UserFilter(status=False))
        assert [u.username for u in disabled.items] == ["carol01"]

        by_role = await user_service.list_users(UserFilter(role_id=viewers.id))
        assert [u.username for u in by_role.items] == ["alice01"]

        searched = await user_service.list_users(UserFilter(search="BUILDER"))
        assert [u.username for u in searched.items] == ["bobby01"]

    async def test_list_sorts_descending(self, user_service, make_user):
        await make_user("alice01", name="Alice Liddell")
        await make_user("bobby01", name="Bob Builder")

        page = await user_service.list_users(UserFilter(sort="username", order="desc"))

        assert [u.username for u in page.items] == ["bobby01", "alice01"]


class TestPasswords:
    async def test_set_password_provisions_once(self, user_service, make_user):
        user = await make_user("alice01", password=None)

        await user_service.set_password(user.email, DEFAULT_PASSWORD, DEFAULT_PASSWORD)
        stored = await user_service.get_user(user.id)

        assert verify_password(stored.credential.password_hash, DEFAULT_PASSWORD)
        assert stored.credential.token
        with pytest.raises(ConflictError):
            await user_service.set_password(user.email, "another-pass", "another-pass")

    async def test_set_password_requires_matching_confirmation(self, user_service, make_user):
        user = await make_user("alice01", password=None)

        with pytest.raises(ValidationError):
            await user_service.set_password(user.email, DEFAULT_PASSWORD, "different")

    @pytest.mark.parametrize("password", ["short", "x" * 129])
    async def test_set_password_length(self, user_service, make_user, password):
        user = await make_user("alice01", password=None)

        with pytest.raises(ValidationError):
            await user_service.set_password(user.email, password, password)

    async def test_set_password_unknown_email(self, user_service):
        with pytest.raises(NotFoundError):
            await user_service.set_password("ghost@example.com", DEFAULT_PASSWORD, DEFAULT_PASSWORD)

    async def test_reset_clears_password_and_session(self, user_service, make_user):
        user = await make_user("alice01")

        await user_service.reset_password(user.email)
        stored = await user_service.get_user(user.id)

        assert stored.is_new is True
        assert stored.credential.token is None
        await user_service.set_password(user.email, "fresh-pass", "fresh-pass")

    async def test_reset_unknown_email_is_silent(self, user_service):
        assert await user_service.reset_password("ghost@example.com") is None


class TestRoles:
    async def test_duplicate_name_is_conflict(self, role_service, make_role):
        await make_role("viewers")

        with pytest.raises(ConflictError):
            await role_service.create_role(name="viewers", permissions=[])

    async def test_short_name_is_rejected(self, role_service):
        with pytest.raises(ValidationError):
            await role_service.create_role(name="abc")

    async def test_update_deduplicates_permissions(self, role_service, make_role):
        role = await make_role("viewers", ["users:view"])

        updated = await role_service.update_role(
            role.id, permissions=["users:view", "roles:view", "users:view"], enabled=False
        )

        assert updated.permissions == ["users:view", "roles:view"]
        assert updated.enabled is False

    async def test_role_edit_reaches_authenticated_principal(
        self, role_service, auth_service, make_role, make_user
    ):
        role = await make_role("deleters", [USERS_DELETE])
        await make_user("alice01", roles=[role])
        result = await auth_service.login("alice01", DEFAULT_PASSWORD)
        ctx = await auth_service.authenticate(result.tokens.access_token)
        await auth_service.users.drain()
        assert authorize(ctx.user, USERS_DELETE)

        await role_service.update_role(role.id, enabled=False)
        ctx = await auth_service.authenticate(result.tokens.access_token)

        assert ctx.user.roles[0].enabled is False
        assert not authorize(ctx.user, USERS_DELETE)

    async def test_permission_change_reaches_authenticated_principal(
        self, role_service, auth_service, make_role, make_user
    ):
        role = await make_role("viewers", [USERS_VIEW])
        await make_user("alice01", roles=[role])
        result = await auth_service.login("alice01", DEFAULT_PASSWORD)
        await auth_service.authenticate(result.tokens.access_token)
        await auth_service.users.drain()

        await role_service.update_role(role.id, permissions=[USERS_VIEW, USERS_EDIT])
        ctx = await auth_service.authenticate(result.tokens.access_token)

        assert authorize(ctx.user, USERS_EDIT)

    async def test_delete_assigned_role_is_conflict(
        self, role_service, user_service, make_role, make_user
    ):
        role = await make_role("viewers", ["users:view"])
        spare = await make_role("spares")
        user = await make_user("alice01", roles=[role])

        with pytest.raises(ConflictError):
            await role_service.delete_roles([spare.id, role.id])

        assert (await role_service.get_role(role.id)).name == "viewers"
        assert (await role_service.get_role(spare.id)).name == "spares"
        assert (await user_service.get_user(user.id)).role_ids == [role.id]

    async def test_delete_unassigned_roles(self, role_service, make_role):
        role = await make_role("viewers")

        assert await role_service.delete_roles([role.id]) == 1
        with pytest.raises(NotFoundError):
            await role_service.get_role(role.id)

    async def test_list_roles_and_items(self, role_service, make_role):
        await make_role("viewers")
        await make_role("editors", enabled=False)

        page = await role_service.list_roles(RoleFilter(enabled=True))
        items = await role_service.list_items()

        assert [r.name for r in page.items] == ["viewers"]
        assert [item.name for item in items] == ["editors", "viewers"]
