import logging

import pytest
import sqlalchemy as sa

from sequel_core.exceptions import ModelNotFoundError, PrimaryKeyRequiredError, SchemaError, UnknownDataTypeError
from sequel_core.orm.registry import Registry
from sequel_core.orm.schema import Field, ModelDefinition
from sequel_core.orm.types import BIGINT, DATE, INTEGER, STRING


def test_id_field_must_be_primary_key():
    with pytest.raises(SchemaError, match="^primary key required") as exc_info:
        ModelDefinition("user", {"id": {"type": BIGINT, "allow_null": False}, "username": STRING})

    assert isinstance(exc_info.value, PrimaryKeyRequiredError)
    assert "'id'" in str(exc_info.value)
    assert "primary_key" in str(exc_info.value)


def test_explicit_primary_key_is_kept():
    definition = ModelDefinition("book", {"id": Field(BIGINT, primary_key=True), "title": STRING})

    assert definition.primary_keys == ["id"]
    assert definition.fields["id"].auto_increment is False


def test_implicit_primary_key():
    definition = ModelDefinition("user", {"username": STRING})

    assert list(definition.fields)[0] == "id"
    assert definition.fields["id"].primary_key
    assert definition.fields["id"].auto_increment


def test_composite_primary_key():
    definition = ModelDefinition(
        "membership",
        {"userId": Field(INTEGER, primary_key=True), "groupId": Field(INTEGER, primary_key=True)},
    )

    assert definition.primary_keys == ["userId", "groupId"]
    assert "id" not in definition.fields


@pytest.mark.parametrize(
    ("name", "options", "table_name"),
    [
        ("user", {}, "users"),
        ("company", {}, "companies"),
        ("box", {}, "boxes"),
        ("user", {"table_name": "user"}, "user"),
    ],
)
def test_table_name_resolution(name: str, options: dict, table_name: str):
    assert ModelDefinition(name, {"label": STRING}, options).table_name == table_name


def test_timestamp_and_paranoid_fields():
    plain = ModelDefinition("book", {"title": STRING})
    assert list(plain.fields) == ["id", "title", "createdAt", "updatedAt"]
    assert plain.fields["createdAt"].type == DATE
    assert "deletedAt" not in plain.fields

    paranoid = ModelDefinition("book", {"title": STRING}, {"paranoid": True, "timestamps": False})
    assert list(paranoid.fields) == ["id", "title", "deletedAt"]
    assert paranoid.fields["deletedAt"].allow_null
    assert paranoid.managed_fields == {"deletedAt"}


def test_invalid_field_types_and_options():
    with pytest.raises(UnknownDataTypeError):
        ModelDefinition("user", {"username": "VARCHAR"})
    with pytest.raises(UnknownDataTypeError):
        ModelDefinition("user", {"username": {"allow_null": False}})
    with pytest.raises(SchemaError, match="Unknown options"):
        ModelDefinition("user", {"username": {"type": STRING, "allowNull": False}})
    with pytest.raises(SchemaError, match="Invalid options"):
        ModelDefinition("user", {"username": STRING}, {"tableName": "user"})
    with pytest.raises(SchemaError, match="Invalid options"):
        ModelDefinition("user", {"username": STRING}, {"table_name": "  "})


def test_add_field_is_idempotent():
    definition = ModelDefinition("user", {"username": STRING})
    first = definition.add_field("companyId", Field(BIGINT))
    second = definition.add_field("companyId", Field(BIGINT, references=("companies", "id")))

    assert first is second
    assert list(definition.fields).count("companyId") == 1
    assert first.references == ("companies", "id")


def test_to_table_emits_known_foreign_keys():
    definition = ModelDefinition("user", {"username": {"type": STRING, "allow_null": False, "unique": True}})
    definition.add_field("companyId", Field(BIGINT, references=("companies", "id")))

    table = definition.to_table(sa.MetaData(), known_tables={"users", "companies"})
    assert table.name == "users"
    assert not table.c.username.nullable
    assert table.c.username.unique
    assert [fk.target_fullname for fk in table.c.companyId.foreign_keys] == ["companies.id"]

    without_target = definition.to_table(sa.MetaData(), known_tables={"users"})
    assert not without_target.c.companyId.foreign_keys


def test_registry_define_and_lookup(db_url: str):
    registry = Registry(db_url)
    user = registry.define("user", {"username": STRING})

    assert registry.is_defined("user")
    assert registry.get_model("user") is user
    assert registry.models == {"user": user}
    with pytest.raises(ModelNotFoundError):
        registry.get_model("company")


def test_registry_rejects_unknown_validation_rule(db_url: str):
    registry = Registry(db_url)

    with pytest.raises(SchemaError, match="Unknown validation rule"):
        registry.define("user", {"email": {"type": STRING, "validate": {"isEmail": True}}})


def test_redefinition_replaces_and_warns(db_url: str, caplog: pytest.LogCaptureFixture):
    registry = Registry(db_url)
    registry.define("user", {"username": STRING})

    with caplog.at_level(logging.WARNING, logger="Sequel-Core"):
        replacement = registry.define("user", {"email": STRING})

    assert registry.get_model("user") is replacement
    assert "already defined" in caplog.text


def test_independent_registries_do_not_share_models(db_url: str):
    first = Registry(db_url)
    second = Registry(db_url)
    first.define("user", {"username": STRING})

    assert not second.is_defined("user")
