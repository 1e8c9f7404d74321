"""Model handle: the execution facade of one model definition.

A `Model` is returned by `Registry.define`. It builds and hydrates
instances, runs finders and bulk operations through the registry's
connection, and declares associations.
"""

import logging
from collections.abc import Mapping, Sequence
from typing import TYPE_CHECKING, Any

import sqlalchemy as sa

from sequel_core.config import CREATED_AT, DELETED_AT, UPDATED_AT
from sequel_core.exceptions import (
    AssociationError,
    EmptyResultError,
    MissingPrimaryKeyError,
    QueryError,
    ValidationError,
)
from sequel_core.orm import associations
from sequel_core.orm.associations import AssociationEdge
from sequel_core.orm.connection import Connection, Transaction
from sequel_core.orm.instance import Instance, next_timestamp, utc_now
from sequel_core.orm.query import FindOptions, Leaf, Op, QueryCompiler, SelectItem, ThroughJoin, conjoin, parse_where
from sequel_core.orm.schema import ModelDefinition
from sequel_core.orm.validation import validate_values

if TYPE_CHECKING:
    from sequel_core.orm.registry import Registry

logger = logging.getLogger("Sequel-Core")


class Model:
    """Handle of a defined model.

    All database operations are coroutines. Every operation accepts an
    optional `transaction` (see `Registry.transaction`); without one each
    statement runs in its own transaction.

    Example:
        >>> User = registry.define("user", {"username": STRING, "email": STRING})
        >>> await User.sync()
        >>> user = await User.create({"username": "user", "email": "user@company.com"})
        >>> await User.find_all(where={Op.OR: {"username": "user", "email": "other@company.com"}})
    """

    def __init__(self, registry: "Registry", definition: ModelDefinition):
        """Initialize the handle.

        Args:
            registry: Registry owning the model and its connection.
            definition: The model definition.
        """
        self.registry = registry
        self.definition = definition
        self.associations: dict[str, AssociationEdge] = {}
        self.accessor_names: dict[str, tuple[str, str]] = {}

    @property
    def name(self) -> str:
        return self.definition.name

    @property
    def table_name(self) -> str:
        return self.definition.table_name

    @property
    def connection(self) -> Connection:
        return self.registry.connection

    def compiler(self) -> QueryCompiler:
        return QueryCompiler(self.definition)

    def __repr__(self) -> str:
        return f"Model({self.name!r}, table={self.table_name!r})"

    # Instances

    def build(self, values: Mapping[str, Any] | None = None) -> Instance:
        """Create an unsaved instance with field defaults applied.

        Timestamp fields in `values` are dropped; they are assigned on save.

        Raises:
            ValidationError: If `values` names a field the model does not define.
        """
        values = dict(values or {})
        managed = self.definition.managed_fields
        for key in list(values):
            if key in managed:
                values.pop(key)
            elif key not in self.definition.fields:
                raise ValidationError(f"'{self.name}' has no field '{key}'.", self.name, key, "unknown_field")

        instance = Instance(self)
        for name, field_def in self.definition.fields.items():
            if name in values:
                instance.set(name, values[name])
            elif name not in managed and field_def.default is not None:
                instance.set(name, field_def.default_value())
        return instance

    async def create(
        self, values: Mapping[str, Any] | None = None, *, transaction: Transaction | None = None
    ) -> Instance:
        """Build and save an instance.

        Args:
            values: Field values.
            transaction: Run inside this transaction.

        Returns:
            The saved instance, with generated keys and timestamps set.

        Raises:
            ValidationError: If validation fails. Nothing is written.
            DatabaseError: If the INSERT fails.
        """
        instance = self.build(values)
        return await instance.save(transaction=transaction)

    def hydrate(self, row: Mapping[str, Any]) -> Instance:
        """Wrap a result row as a persisted instance. Only the columns in `row` are set."""
        fields = self.definition.fields
        values = {key: fields[key].type.parse(value) if key in fields else value for key, value in row.items()}
        return Instance(self, values, persisted=True)

    # Finders

    async def select(
        self,
        options: FindOptions,
        *,
        join: ThroughJoin | None = None,
        transaction: Transaction | None = None,
    ) -> list[Instance]:
        """Run a compiled SELECT and hydrate the rows."""
        statement, items = self.compiler().select(options, join)
        result = await self.connection.execute(statement, transaction)
        return [self.hydrate(self._row_by_items(row, items)) for row in result.rows]

    @staticmethod
    def _row_by_items(row: Mapping[str, Any], items: list[SelectItem]) -> dict[str, Any]:
        if len(row) != len(items):
            return dict(row)
        return {item.key: value for item, value in zip(items, row.values(), strict=True)}

    async def find_all(
        self,
        where: Any = None,
        *,
        attributes: Sequence[Any] | Mapping[str, Sequence[Any]] | None = None,
        group: Sequence[str] | None = None,
        order: Sequence[str | tuple[str, str]] | None = None,
        limit: int | None = None,
        offset: int | None = None,
        paranoid: bool = True,
        transaction: Transaction | None = None,
    ) -> list[Instance]:
        """Find all rows matching `where`.

        Args:
            where: Where mapping, e.g. ``{"username": "user", Op.OR: {...}}``.
            attributes: Field names and ``(expression, alias)`` pairs to select, or
                ``{"include": [...], "exclude": [...]}`` relative to all fields.
            group: Fields to group by.
            order: Field names or ``(field, "ASC" | "DESC")`` pairs.
            limit: Maximum number of rows.
            offset: Number of rows to skip.
            paranoid: Hide soft-deleted rows of paranoid models.
            transaction: Run inside this transaction.

        Returns:
            Instances holding the selected columns only.
        """
        options = FindOptions(where, attributes, group, order, limit, offset, paranoid)
        return await self.select(options, transaction=transaction)

    async def find_one(
        self,
        where: Any = None,
        *,
        attributes: Sequence[Any] | Mapping[str, Sequence[Any]] | None = None,
        order: Sequence[str | tuple[str, str]] | None = None,
        paranoid: bool = True,
        reject_on_empty: bool = False,
        transaction: Transaction | None = None,
    ) -> Instance | None:
        """Find the first row matching `where`.

        Raises:
            EmptyResultError: If nothing matches and `reject_on_empty` is set.
        """
        options = FindOptions(where, attributes, order=order, limit=1, paranoid=paranoid)
        rows = await self.select(options, transaction=transaction)
        if rows:
            return rows[0]
        if reject_on_empty:
            raise EmptyResultError(self.name)
        return None

    async def find_by_pk(
        self,
        pk: Any,
        *,
        attributes: Sequence[Any] | Mapping[str, Sequence[Any]] | None = None,
        paranoid: bool = True,
        transaction: Transaction | None = None,
    ) -> Instance | None:
        """Find a row by primary key. Composite keys are passed as a mapping."""
        keys = self.definition.primary_keys
        if isinstance(pk, Mapping):
            if set(pk) != set(keys):
                raise MissingPrimaryKeyError(self.name)
            where = conjoin(*(Leaf(key, Op.EQ, pk[key]) for key in keys))
        else:
            if len(keys) != 1:
                raise QueryError(f"'{self.name}' has a composite primary key; pass a mapping of {keys}.")  # noqa: TRY003
            where = Leaf(keys[0], Op.EQ, pk)
        return await self.find_one(where, attributes=attributes, paranoid=paranoid, transaction=transaction)

    find_by_id = find_by_pk

    async def count(
        self,
        where: Any = None,
        *,
        paranoid: bool = True,
        join: ThroughJoin | None = None,
        transaction: Transaction | None = None,
    ) -> int:
        """Count rows matching `where`."""
        statement = self.compiler().count(where, paranoid, join)
        result = await self.connection.execute(statement, transaction)
        return int(next(iter(result.rows[0].values()))) if result.rows else 0

    # Bulk operations

    async def update(
        self,
        values: Mapping[str, Any],
        where: Any,
        *,
        paranoid: bool = True,
        silent: bool = False,
        transaction: Transaction | None = None,
    ) -> int:
        """Update every row matching `where`.

        Field rules and not-null checks apply to `values`; model-level
        validators do not, since no full row is available.

        Returns:
            Number of affected rows.
        """
        values = {key: value for key, value in values.items() if key not in (CREATED_AT, UPDATED_AT)}
        unknown = [key for key in values if key not in self.definition.fields]
        if unknown:
            raise ValidationError(f"'{self.name}' has no field '{unknown[0]}'.", self.name, unknown[0], "unknown_field")
        validate_values(self.definition, values, is_new=False, only=set(values), run_model_validators=False)
        if self.definition.timestamps and not silent:
            values[UPDATED_AT] = utc_now()
        if not values:
            return 0

        expression = self.compiler().scoped_where(where, paranoid)
        result = await self.connection.execute(self.compiler().update(values, expression), transaction)
        return max(result.rowcount, 0)

    async def destroy(self, where: Any, *, force: bool = False, transaction: Transaction | None = None) -> int:
        """Delete every row matching `where`. An empty mapping matches all rows.

        Paranoid models are soft deleted (`deletedAt` set) unless `force` is given.

        Returns:
            Number of affected rows.
        """
        compiler = self.compiler()
        if self.definition.paranoid and not force:
            expression = compiler.scoped_where(where, paranoid=True)
            statement = compiler.update({DELETED_AT: next_timestamp(None)}, expression)
        else:
            statement = compiler.delete(parse_where(where))
        result = await self.connection.execute(statement, transaction)
        return max(result.rowcount, 0)

    async def restore(self, where: Any = None, *, transaction: Transaction | None = None) -> int:
        """Clear `deletedAt` on soft-deleted rows matching `where`.

        Returns:
            Number of restored rows.
        """
        if not self.definition.paranoid:
            raise QueryError(f"Model '{self.name}' is not paranoid; there is nothing to restore.")  # noqa: TRY003
        expression = conjoin(parse_where(where), Leaf(DELETED_AT, Op.NOT, None))
        result = await self.connection.execute(self.compiler().update({DELETED_AT: None}, expression), transaction)
        return max(result.rowcount, 0)

    # DDL

    def table(self) -> sa.Table:
        """The model's table, with foreign keys to every table of the registry."""
        return self.registry.build_metadata().tables[self.table_name]

    async def sync(self, force: bool = False) -> None:
        """Create the table if it does not exist. `force` drops it first."""
        table = self.table()
        if force:
            await self.connection.drop_table(table, checkfirst=True)
        await self.connection.create_table(table, checkfirst=True)

    async def drop(self) -> None:
        """Drop the table if it exists."""
        await self.connection.drop_table(self.table(), checkfirst=True)

    # Associations

    def add_association(self, edge: AssociationEdge) -> AssociationEdge:
        existing = self.associations.get(edge.alias)
        if existing is not None:
            if (existing.kind, existing.target, existing.foreign_key) == (edge.kind, edge.target, edge.foreign_key):
                return existing
            raise AssociationError(self.name, edge.target.name, f"alias '{edge.alias}' is already in use.")
        self.associations[edge.alias] = edge
        for method_name, accessor_method in edge.accessor_names().items():
            self.accessor_names[method_name] = (edge.alias, accessor_method)
        logger.debug(f"Associated '{self.name}' {edge.kind.value} '{edge.target.name}' as '{edge.alias}'")
        return edge

    def belongs_to(self, target: "Model", *, foreign_key: str | None = None, as_: str | None = None) -> AssociationEdge:
        return associations.belongs_to(self, target, foreign_key, as_)

    def has_one(self, target: "Model", *, foreign_key: str | None = None, as_: str | None = None) -> AssociationEdge:
        return associations.has_one(self, target, foreign_key, as_)

    def has_many(self, target: "Model", *, foreign_key: str | None = None, as_: str | None = None) -> AssociationEdge:
        return associations.has_many(self, target, foreign_key, as_)

    def belongs_to_many(
        self,
        target: "Model",
        *,
        through: "Model | str",
        foreign_key: str | None = None,
        other_key: str | None = None,
        as_: str | None = None,
    ) -> AssociationEdge:
        return associations.belongs_to_many(self, target, through, foreign_key, other_key, as_)
