"""Association tests: foreign-key wiring and instance accessors."""

import pytest

from sequel_core.exceptions import AssociationError, NotNullViolationError
from sequel_core.orm.associations import AssociationKind, Cardinality, ManyToManyAccessor, OneToOneAccessor
from sequel_core.orm.model import Model
from sequel_core.orm.registry import Registry
from sequel_core.orm.types import BIGINT, STRING


def _define_pair(registry: Registry) -> tuple[Model, Model]:
    company = registry.define(
        "company",
        {
            "id": {"type": BIGINT, "allow_null": False, "primary_key": True},
            "name": {"type": STRING, "allow_null": False},
        },
    )
    user = registry.define(
        "user",
        {
            "id": {"type": BIGINT, "allow_null": False, "primary_key": True},
            "name": {"type": STRING, "allow_null": False},
        },
    )
    return company, user


@pytest.mark.asyncio
async def test_belongs_to(registry: Registry):
    company, user = _define_pair(registry)
    edge = user.belongs_to(company)
    await registry.sync()

    assert edge.foreign_key == "companyId"
    assert edge.cardinality is Cardinality.ONE_TO_ONE
    assert user.definition.fields["companyId"].references == ("companies", "id")

    company_instance = await company.create({"id": 1, "name": "Company"})
    user_instance = await user.create({"id": 1, "name": "User"})
    await user_instance.set_company(company_instance)

    result = await user.find_one(where={"companyId": company_instance.id})
    assert result.name == user_instance.name
    assert (await result.get_company()).name == "Company"
    assert isinstance(result.association("company"), OneToOneAccessor)

    await user_instance.set_company(None)
    assert await user_instance.get_company() is None


@pytest.mark.asyncio
async def test_has_one_overwrites_previous_holder(registry: Registry):
    company, user = _define_pair(registry)
    company.has_one(user)
    await registry.sync()

    company_instance = await company.create({"id": 1, "name": "Company"})
    first = await user.create({"id": 1, "name": "First"})
    second = await user.create({"id": 2, "name": "Second"})

    await company_instance.set_user(first)
    assert (await user.find_one(where={"companyId": 1})).name == "First"

    await company_instance.set_user(second)
    holders = await user.find_all(where={"companyId": 1})
    assert [holder.name for holder in holders] == ["Second"]
    assert (await user.find_by_pk(1)).companyId is None
    assert (await company_instance.get_user()).name == "Second"


@pytest.mark.asyncio
async def test_has_many_set_replaces_members(registry: Registry):
    company, user = _define_pair(registry)
    company.has_many(user)
    await registry.sync()

    company_instance = await company.create({"id": 1, "name": "Company"})
    user1 = await user.create({"id": 1, "name": "User1"})
    user2 = await user.create({"id": 2, "name": "User2"})
    user3 = await user.create({"id": 3, "name": "User3"})

    await company_instance.set_users([user1, user2])
    users = await user.find_all(where={"companyId": company_instance.id})
    assert len(users) == 2
    assert not hasattr(users[0], "get_company")

    await company_instance.set_users([user2, user3])
    members = await company_instance.get_users(order=["id"])
    assert [member.name for member in members] == ["User2", "User3"]
    assert (await user.find_by_pk(1)).companyId is None
    assert await company_instance.count_users() == 2


@pytest.mark.asyncio
async def test_has_many_add_remove(registry: Registry):
    company, user = _define_pair(registry)
    company.has_many(user)
    await registry.sync()

    company_instance = await company.create({"id": 1, "name": "Company"})
    user1 = await user.create({"id": 1, "name": "User1"})
    await user.create({"id": 2, "name": "User2"})

    await company_instance.add_user(user1)
    await company_instance.add_users([2])
    assert await company_instance.count_users() == 2
    assert await company_instance.has_user(2)

    await company_instance.remove_user(user1)
    assert user1.companyId is None
    assert [member.name for member in await company_instance.get_users()] == ["User2"]
    assert await company_instance.get_users(where={"name": "User1"}) == []


@pytest.mark.asyncio
async def test_has_many_with_unsaved_instances(registry: Registry):
    team = registry.define("team", {"name": STRING})
    player = registry.define("player", {"name": STRING})
    team.has_many(player)
    await registry.sync()

    team_instance = await team.create({"name": "Team"})
    old = await player.create({"name": "Old"})
    await team_instance.set_players([old])

    await team_instance.set_players([player.build({"name": "New"})])
    assert [member.name for member in await team_instance.get_players()] == ["New"]
    assert (await player.find_by_pk(old.id)).teamId is None

    late = player.build({"name": "Late"})
    await team_instance.add_player(late)
    assert not late.is_new_record
    assert [member.name for member in await team_instance.get_players(order=["id"])] == ["New", "Late"]


@pytest.mark.asyncio
async def test_has_many_set_rolls_back_on_failure(registry: Registry):
    company, user = _define_pair(registry)
    company.has_many(user)
    await registry.sync()

    company_instance = await company.create({"id": 1, "name": "Company"})
    user1 = await user.create({"id": 1, "name": "User1"})
    user2 = await user.create({"id": 2, "name": "User2"})
    await company_instance.set_users([user1])

    with pytest.raises(NotNullViolationError):
        await company_instance.set_users([user2, user.build({"id": 3})])

    assert [member.name for member in await company_instance.get_users()] == ["User1"]
    assert (await user.find_by_pk(2)).companyId is None
    assert await user.count() == 2


@pytest.mark.asyncio
async def test_bidirectional_one_to_many(registry: Registry):
    company, user = _define_pair(registry)
    company.has_many(user)
    user.belongs_to(company)
    await registry.sync()

    assert list(user.definition.fields).count("companyId") == 1

    company_instance = await company.create({"id": 1, "name": "Company"})
    user1 = await user.create({"id": 1, "name": "User1"})
    user2 = await user.create({"id": 2, "name": "User2"})

    await user1.set_company(company_instance)
    await user2.set_company(company_instance)

    users = await user.find_all(where={"companyId": company_instance.id})
    assert len(users) == 2
    assert callable(users[0].get_company)
    assert callable(company_instance.get_users)
    assert [member.id for member in await company_instance.get_users(order=["id"])] == [1, 2]


@pytest.mark.asyncio
async def test_belongs_to_many_creates_join_model(registry: Registry):
    company, user = _define_pair(registry)
    company.belongs_to_many(user, through="company_users")
    user.belongs_to_many(company, through="company_users")
    await registry.sync()

    through = registry.get_model("company_users")
    assert through.table_name == "company_users"
    assert through.definition.primary_keys == ["companyId", "userId"]
    assert "userId" not in company.definition.fields
    assert "companyId" not in user.definition.fields

    company_instance = await company.create({"id": 1, "name": "Company"})
    user1 = await user.create({"id": 1, "name": "User1"})
    user2 = await user.create({"id": 2, "name": "User2"})

    await company_instance.add_user(user1)
    await company_instance.add_user(user2)
    await company_instance.add_user(user2)

    links = await through.find_all(where={"companyId": company_instance.id})
    assert sorted(link.userId for link in links) == [user1.id, user2.id]
    assert [member.name for member in await company_instance.get_users(order=["id"])] == ["User1", "User2"]
    assert await company_instance.count_users() == 2
    assert [owner.name for owner in await user1.get_companies()] == ["Company"]

    assert callable(company_instance.set_users)
    assert callable(company_instance.add_user)
    assert callable(user1.add_company)
    assert isinstance(user1.association("companies"), ManyToManyAccessor)


@pytest.mark.asyncio
async def test_belongs_to_many_set_and_remove(registry: Registry):
    company, user = _define_pair(registry)
    company.belongs_to_many(user, through="company_users")
    await registry.sync()

    company_instance = await company.create({"id": 1, "name": "Company"})
    users = [await user.create({"id": i, "name": f"User{i}"}) for i in (1, 2, 3)]

    await company_instance.set_users(users[:2])
    await company_instance.set_users(users[1:])
    assert [member.id for member in await company_instance.get_users(order=["id"])] == [2, 3]

    await company_instance.remove_user(users[1])
    assert [member.id for member in await company_instance.get_users()] == [3]
    assert not await company_instance.has_user(users[1])

    newcomer = user.build({"id": 4, "name": "User4"})
    await company_instance.set_users([users[2], newcomer])
    assert not newcomer.is_new_record
    assert [member.id for member in await company_instance.get_users(order=["id"])] == [3, 4]


@pytest.mark.asyncio
async def test_belongs_to_many_with_existing_through_model(registry: Registry):
    company, user = _define_pair(registry)
    membership = registry.define("membership", {"role": STRING})
    company.belongs_to_many(user, through=membership)
    await registry.sync()

    assert {"companyId", "userId"} <= set(membership.definition.fields)

    company_instance = await company.create({"id": 1, "name": "Company"})
    user1 = await user.create({"id": 1, "name": "User1"})
    await company_instance.add_user(user1)

    assert await membership.count(where={"companyId": 1, "userId": 1}) == 1


def test_alias_and_foreign_key_options(db_url: str):
    registry = Registry(db_url)
    company, user = _define_pair(registry)
    edge = user.belongs_to(company, as_="employer", foreign_key="employerId")

    assert edge.kind is AssociationKind.BELONGS_TO
    assert "employerId" in user.definition.fields
    assert "get_employer" in user.accessor_names

    with pytest.raises(AssociationError):
        user.has_one(company, as_="employer")


def test_undeclared_accessor_raises_attribute_error(db_url: str):
    registry = Registry(db_url)
    company, _ = _define_pair(registry)
    instance = company.build({"id": 1, "name": "Company"})

    with pytest.raises(AttributeError):
        _ = instance.get_users
    with pytest.raises(AttributeError):
        instance.association("users")
