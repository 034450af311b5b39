import pytest

from tenantguard.storage.common import RoleFilter, UserFilter
from tenantguard.storage.errors import FOREIGN_KEY, UNIQUE, ConstraintViolation
from tenantguard.storage.memory import MemoryRoleStore
from tenantguard.storage.models import Role, User


def _user(username, *, email=None, roles=()):
    return User.new("Some Person", username, email or f"{username}@example.com", roles=list(roles))


@pytest.fixture
def roles(memory_store):
    return MemoryRoleStore(memory_store)


async def test_reads_return_copies(memory_store):
    created = await memory_store.create(_user("alice01"))

    created.name = "Mutated Name"
    stored = await memory_store.find_by_id(created.id)

    assert stored.name == "Some Person"


async def test_credential_written_with_user(memory_store):
    user = _user("alice01")
    user.credential.set_token("ref-1")
    await memory_store.create(user)

    found = await memory_store.find_by_token("ref-1")

    assert found.id == user.id
    assert await memory_store.find_by_token("") is None
    assert await memory_store.find_by_token("ref-2") is None


@pytest.mark.parametrize(
    "clash",
    [
        {"username": "alice01", "email": "other@example.com"},
        {"username": "alice02", "email": "alice01@example.com"},
    ],
)
async def test_unique_username_and_email(memory_store, clash):
    await memory_store.create(_user("alice01"))

    with pytest.raises(ConstraintViolation) as excinfo:
        await memory_store.create(_user(clash["username"], email=clash["email"]))
    assert excinfo.value.kind == UNIQUE


async def test_unknown_role_link_is_foreign_key(memory_store):
    with pytest.raises(ConstraintViolation) as excinfo:
        await memory_store.create(_user("alice01", roles=[Role.new("ghosts")]))
    assert excinfo.value.kind == FOREIGN_KEY
    assert memory_store.users == {}


async def test_role_edit_visible_through_user(memory_store, roles):
    role = await roles.create(Role.new("viewers", ["users:view"]))
    user = await memory_store.create(_user("alice01", roles=[role]))

    role.permissions = ["users:view", "users:edit"]
    await roles.update(role)

    assert (await memory_store.find_by_id(user.id)).roles[0].permissions == [
        "users:view",
        "users:edit",
    ]


async def test_role_delete_is_all_or_nothing(memory_store, roles):
    used = await roles.create(Role.new("viewers"))
    spare = await roles.create(Role.new("spares"))
    await memory_store.create(_user("alice01", roles=[used]))

    with pytest.raises(ConstraintViolation) as excinfo:
        await roles.delete([spare.id, used.id])

    assert excinfo.value.kind == FOREIGN_KEY
    assert await roles.find_by_id(spare.id) is not None
    assert await roles.delete([spare.id]) == 1


async def test_delete_users_counts_existing_only(memory_store):
    alice = await memory_store.create(_user("alice01"))

    assert await memory_store.delete([alice.id, "missing"]) == 1
    assert memory_store.credentials == {}


async def test_search_ignores_case_and_accents(memory_store):
    await memory_store.create(User.new("José Álvarez", "jalvarez", "jose@example.com"))
    await memory_store.create(User.new("Mary Major", "mmajor", "mary@example.com"))

    found = await memory_store.find_all(UserFilter(search="jose alv"))

    assert [u.username for u in found] == ["jalvarez"]


async def test_pagination_and_count(memory_store, roles):
    for name in ("delta", "alpha", "charlie", "bravo"):
        await roles.create(Role.new(name + "s"))

    page = await roles.find_all(RoleFilter(page=2, limit=3))

    assert [r.name for r in page] == ["deltas"]
    assert await roles.count(RoleFilter()) == 4
    assert len(await roles.find_all(RoleFilter(limit=0))) == 4
