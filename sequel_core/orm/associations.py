"""Associations between models.

Declaring an association adds the foreign-key field to the owning model
(or to the join model for many-to-many) and registers an `AssociationEdge`
on the declaring model. Instances reach the association through accessor
objects: `OneToOneAccessor` for belongs_to / has_one, `ToManyAccessor`
for has_many and `ManyToManyAccessor` for belongs_to_many.

    User.belongs_to(Company)    # users.companyId
    Company.has_many(User)      # same column, no duplicate
    Company.belongs_to_many(User, through="company_users")
"""

import logging
from collections.abc import Iterable
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Any

from sequel_core.exceptions import AssociationError
from sequel_core.orm.connection import Transaction, may_make_transaction
from sequel_core.orm.instance import Instance
from sequel_core.orm.query import FindOptions, Leaf, Op, ThroughJoin, conjoin, parse_where
from sequel_core.orm.schema import Field
from sequel_core.orm.util import pluralize, singularize, to_snake

if TYPE_CHECKING:
    from sequel_core.orm.model import Model

logger = logging.getLogger("Sequel-Core")


class Cardinality(Enum):
    ONE_TO_ONE = "one-to-one"
    ONE_TO_MANY = "one-to-many"
    MANY_TO_MANY = "many-to-many"


class AssociationKind(Enum):
    BELONGS_TO = "belongs_to"
    HAS_ONE = "has_one"
    HAS_MANY = "has_many"
    BELONGS_TO_MANY = "belongs_to_many"

    @property
    def cardinality(self) -> Cardinality:
        if self in (AssociationKind.BELONGS_TO, AssociationKind.HAS_ONE):
            return Cardinality.ONE_TO_ONE
        if self is AssociationKind.HAS_MANY:
            return Cardinality.ONE_TO_MANY
        return Cardinality.MANY_TO_MANY


@dataclass
class AssociationEdge:
    """A declared association, seen from its source model.

    Attributes:
        source: Model the association was declared on.
        target: Associated model.
        kind: Association kind.
        foreign_key: For belongs_to the field on `source`, for has_one / has_many
            the field on `target`, for belongs_to_many the source-side field on `through`.
        alias: Name the association is registered under on `source`.
        through: Join model of a belongs_to_many association.
        other_key: Target-side field on `through`.
    """

    source: "Model"
    target: "Model"
    kind: AssociationKind
    foreign_key: str
    alias: str
    through: "Model | None" = None
    other_key: str | None = None

    @property
    def cardinality(self) -> Cardinality:
        return self.kind.cardinality

    def accessor_names(self) -> dict[str, str]:
        """Conventional instance method names mapped to accessor methods."""
        if self.kind.cardinality is Cardinality.ONE_TO_ONE:
            name = to_snake(self.alias)
            return {f"get_{name}": "get", f"set_{name}": "set"}
        plural = to_snake(self.alias)
        single = to_snake(singularize(self.alias))
        return {
            f"get_{plural}": "get",
            f"set_{plural}": "set",
            f"count_{plural}": "count",
            f"add_{plural}": "add",
            f"remove_{plural}": "remove",
            f"add_{single}": "add",
            f"remove_{single}": "remove",
            f"has_{single}": "has",
        }

    def accessor(self, instance: Instance) -> "OneToOneAccessor | ToManyAccessor | ManyToManyAccessor":
        if self.kind.cardinality is Cardinality.ONE_TO_ONE:
            return OneToOneAccessor(self, instance)
        if self.kind is AssociationKind.HAS_MANY:
            return ToManyAccessor(self, instance)
        return ManyToManyAccessor(self, instance)


def _key_name(prefix: str, primary_key: str) -> str:
    return f"{prefix}{primary_key[:1].upper()}{primary_key[1:]}"


def _single_primary_key(source: "Model", model: "Model") -> str:
    keys = model.definition.primary_keys
    if len(keys) != 1:
        raise AssociationError(source.name, model.name, f"'{model.name}' has a composite primary key.")
    return keys[0]


def _foreign_key_field(model: "Model", allow_null: bool = True, primary_key: bool = False) -> Field:
    pk = model.definition.primary_key
    return Field(
        type=model.definition.fields[pk].type,
        allow_null=allow_null,
        primary_key=primary_key,
        references=(model.table_name, pk),
    )


def _pk_of(item: Any) -> Any:
    if isinstance(item, Instance):
        return item.primary_key_value()
    return item


def _saved_keys(items: list[Any]) -> list[Any]:
    """Primary keys of the items that already have a row."""
    return [_pk_of(item) for item in items if not (isinstance(item, Instance) and item.is_new_record)]


def _flatten(items: Any) -> list[Any]:
    if isinstance(items, Instance) or isinstance(items, str | bytes) or not isinstance(items, Iterable):
        return [items]
    return list(items)


# Declaration


def belongs_to(
    source: "Model", target: "Model", foreign_key: str | None = None, as_: str | None = None
) -> AssociationEdge:
    """Add `<target>Id` to `source`."""
    target_pk = _single_primary_key(source, target)
    alias = as_ or target.name
    key = foreign_key or _key_name(alias, target_pk)
    source.definition.add_field(key, _foreign_key_field(target))
    return source.add_association(AssociationEdge(source, target, AssociationKind.BELONGS_TO, key, alias))


def has_one(
    source: "Model", target: "Model", foreign_key: str | None = None, as_: str | None = None
) -> AssociationEdge:
    """Add `<source>Id` to `target`."""
    source_pk = _single_primary_key(source, source)
    _single_primary_key(source, target)
    key = foreign_key or _key_name(source.name, source_pk)
    target.definition.add_field(key, _foreign_key_field(source))
    alias = as_ or target.name
    return source.add_association(AssociationEdge(source, target, AssociationKind.HAS_ONE, key, alias))


def has_many(
    source: "Model", target: "Model", foreign_key: str | None = None, as_: str | None = None
) -> AssociationEdge:
    """Add `<source>Id` to `target`."""
    source_pk = _single_primary_key(source, source)
    _single_primary_key(source, target)
    key = foreign_key or _key_name(source.name, source_pk)
    target.definition.add_field(key, _foreign_key_field(source))
    alias = as_ or pluralize(target.name)
    return source.add_association(AssociationEdge(source, target, AssociationKind.HAS_MANY, key, alias))


def belongs_to_many(
    source: "Model",
    target: "Model",
    through: "Model | str",
    foreign_key: str | None = None,
    other_key: str | None = None,
    as_: str | None = None,
) -> AssociationEdge:
    """Link `source` and `target` through a join model.

    When `through` names a model that is not defined yet, a join model is
    defined with that exact table name and a composite primary key made of
    the two foreign keys. An existing join model gets the keys added.
    """
    source_pk = _single_primary_key(source, source)
    target_pk = _single_primary_key(source, target)
    source_key = foreign_key or _key_name(source.name, source_pk)
    target_key = other_key or _key_name(target.name, target_pk)
    if source_key == target_key:
        raise AssociationError(source.name, target.name, "foreign_key and other_key must differ.")

    registry = source.registry
    if isinstance(through, str):
        if registry.is_defined(through):
            through_model = registry.get_model(through)
        else:
            through_model = registry.define(
                through,
                {
                    source_key: _foreign_key_field(source, allow_null=False, primary_key=True),
                    target_key: _foreign_key_field(target, allow_null=False, primary_key=True),
                },
                table_name=through,
            )
            logger.info(f"Defined join model '{through}' for '{source.name}' <-> '{target.name}'")
    else:
        through_model = through
    through_model.definition.add_field(source_key, _foreign_key_field(source, allow_null=False))
    through_model.definition.add_field(target_key, _foreign_key_field(target, allow_null=False))

    alias = as_ or pluralize(target.name)
    edge = AssociationEdge(
        source, target, AssociationKind.BELONGS_TO_MANY, source_key, alias, through=through_model, other_key=target_key
    )
    return source.add_association(edge)


# Accessors


class _Accessor:
    def __init__(self, edge: AssociationEdge, instance: Instance):
        self.edge = edge
        self.instance = instance

    @property
    def source_pk(self) -> Any:
        value = self.instance.primary_key_value()
        if value is None:
            raise AssociationError(self.edge.source.name, self.edge.target.name, "the instance has no primary key yet.")
        return value


class OneToOneAccessor(_Accessor):
    """get / set of a belongs_to or has_one association."""

    async def get(self, *, transaction: Transaction | None = None) -> Instance | None:
        edge = self.edge
        if edge.kind is AssociationKind.BELONGS_TO:
            key = self.instance.get(edge.foreign_key)
            if key is None:
                return None
            return await edge.target.find_by_pk(key, transaction=transaction)
        return await edge.target.find_one(where={edge.foreign_key: self.source_pk}, transaction=transaction)

    async def set(self, value: Any, *, transaction: Transaction | None = None) -> None:
        """Point the association at `value` (an instance, a primary key, or None)."""
        edge = self.edge
        if edge.kind is AssociationKind.BELONGS_TO:
            self.instance.set(edge.foreign_key, _pk_of(value))
            await self.instance.save(fields=[edge.foreign_key], transaction=transaction)
            return

        source_pk = self.source_pk
        target = edge.target
        async with may_make_transaction(target.connection, transaction) as tx:
            new_pk = _pk_of(value)
            previous = {edge.foreign_key: source_pk}
            if new_pk is not None:
                previous[target.definition.primary_key] = {Op.NE: new_pk}
            await target.update({edge.foreign_key: None}, previous, transaction=tx)
            if isinstance(value, Instance):
                value.set(edge.foreign_key, source_pk)
                await value.save(fields=[edge.foreign_key], transaction=tx)
            elif value is not None:
                await target.update(
                    {edge.foreign_key: source_pk}, {target.definition.primary_key: value}, transaction=tx
                )


class ToManyAccessor(_Accessor):
    """get / set / add / remove / count / has of a has_many association."""

    def _scope(self, where: Any = None):
        return conjoin(parse_where(where), Leaf(self.edge.foreign_key, Op.EQ, self.source_pk))

    async def get(self, where: Any = None, *, transaction: Transaction | None = None, **options: Any) -> list[Instance]:
        return await self.edge.target.find_all(where=self._scope(where), transaction=transaction, **options)

    async def count(self, where: Any = None, *, transaction: Transaction | None = None) -> int:
        return await self.edge.target.count(where=self._scope(where), transaction=transaction)

    async def has(self, item: Any, *, transaction: Transaction | None = None) -> bool:
        target_pk = self.edge.target.definition.primary_key
        return await self.count({target_pk: _pk_of(item)}, transaction=transaction) > 0

    async def add(self, items: Any, *, transaction: Transaction | None = None) -> None:
        edge = self.edge
        source_pk = self.source_pk
        async with may_make_transaction(edge.target.connection, transaction) as tx:
            keys = []
            for item in _flatten(items):
                if isinstance(item, Instance):
                    item.set(edge.foreign_key, source_pk)
                    await item.save(fields=[edge.foreign_key], transaction=tx)
                else:
                    keys.append(item)
            if keys:
                target_pk = edge.target.definition.primary_key
                await edge.target.update({edge.foreign_key: source_pk}, {target_pk: keys}, transaction=tx)

    async def remove(self, items: Any, *, transaction: Transaction | None = None) -> None:
        edge = self.edge
        items = _flatten(items)
        target_pk = edge.target.definition.primary_key
        where = {target_pk: _saved_keys(items), edge.foreign_key: self.source_pk}
        await edge.target.update({edge.foreign_key: None}, where, transaction=transaction)
        for item in items:
            if isinstance(item, Instance) and item.get(edge.foreign_key) == self.source_pk:
                item.sync_values({edge.foreign_key: None})

    async def set(self, items: Any, *, transaction: Transaction | None = None) -> None:
        """Replace the associated set: members missing from `items` lose their foreign key."""
        edge = self.edge
        items = [] if items is None else _flatten(items)
        target_pk = edge.target.definition.primary_key
        async with may_make_transaction(edge.target.connection, transaction) as tx:
            stale = {edge.foreign_key: self.source_pk, target_pk: {Op.NOT_IN: _saved_keys(items)}}
            await edge.target.update({edge.foreign_key: None}, stale, transaction=tx)
            if items:
                await self.add(items, transaction=tx)


class ManyToManyAccessor(_Accessor):
    """get / set / add / remove / count / has of a belongs_to_many association."""

    def _join(self) -> ThroughJoin:
        edge = self.edge
        return ThroughJoin(edge.through.definition, edge.foreign_key, edge.other_key, self.source_pk)

    async def get(self, where: Any = None, *, transaction: Transaction | None = None, **options: Any) -> list[Instance]:
        options = FindOptions(where=where, **options)
        return await self.edge.target.select(options, join=self._join(), transaction=transaction)

    async def count(self, where: Any = None, *, transaction: Transaction | None = None) -> int:
        return await self.edge.target.count(where=where, join=self._join(), transaction=transaction)

    async def has(self, item: Any, *, transaction: Transaction | None = None) -> bool:
        edge = self.edge
        where = {edge.foreign_key: self.source_pk, edge.other_key: _pk_of(item)}
        return await edge.through.count(where=where, transaction=transaction) > 0

    async def add(self, items: Any, *, transaction: Transaction | None = None) -> None:
        edge = self.edge
        source_pk = self.source_pk
        async with may_make_transaction(edge.through.connection, transaction) as tx:
            for item in _flatten(items):
                if isinstance(item, Instance) and item.is_new_record:
                    await item.save(transaction=tx)
                link = {edge.foreign_key: source_pk, edge.other_key: _pk_of(item)}
                if await edge.through.count(where=link, transaction=tx) == 0:
                    await edge.through.create(link, transaction=tx)

    async def remove(self, items: Any, *, transaction: Transaction | None = None) -> None:
        edge = self.edge
        where = {edge.foreign_key: self.source_pk, edge.other_key: _saved_keys(_flatten(items))}
        await edge.through.destroy(where, force=True, transaction=transaction)

    async def set(self, items: Any, *, transaction: Transaction | None = None) -> None:
        edge = self.edge
        items = [] if items is None else _flatten(items)
        async with may_make_transaction(edge.through.connection, transaction) as tx:
            stale = {edge.foreign_key: self.source_pk, edge.other_key: {Op.NOT_IN: _saved_keys(items)}}
            await edge.through.destroy(stale, force=True, transaction=tx)
            if items:
                await self.add(items, transaction=tx)
