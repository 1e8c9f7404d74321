"""Instances: one bound row of a model.

An `Instance` keeps the loaded values of a row, the set of fields changed
since the last load or save, and the primary-key values it was loaded with
(so a changed primary key still addresses the original row).
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING, Any

from sequel_core.config import CREATED_AT, DELETED_AT, UPDATED_AT
from sequel_core.exceptions import EmptyResultError, MissingPrimaryKeyError, QueryError, ValidationError
from sequel_core.orm.query import FindOptions, Leaf, Op, conjoin
from sequel_core.orm.validation import validate_values

if TYPE_CHECKING:
    from sequel_core.orm.associations import OneToOneAccessor, ToManyAccessor
    from sequel_core.orm.connection import Transaction
    from sequel_core.orm.model import Model

logger = logging.getLogger("Sequel-Core")


def utc_now() -> datetime:
    """Naive UTC timestamp with microsecond precision."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def next_timestamp(previous: datetime | None) -> datetime:
    """Current time, moved forward when needed so it is strictly after `previous`."""
    now = utc_now()
    if isinstance(previous, datetime) and now <= previous:
        now = previous + timedelta(microseconds=1)
    return now


class Instance:
    """One row of a model.

    Field values are read as attributes (``user.username``) or with
    `get`. Reading a field that belongs to the model but was not loaded
    (see projections in `Model.find_all`) raises AttributeError, while
    `get` returns None. Association accessors resolve by name, e.g.
    ``await user.get_company()`` or ``await company.add_user(user)``.
    """

    def __init__(self, model: "Model", values: dict[str, Any] | None = None, *, persisted: bool = False):
        object.__setattr__(self, "_model", model)
        object.__setattr__(self, "_values", dict(values or {}))
        object.__setattr__(self, "_changed", set())
        object.__setattr__(self, "_persisted", persisted)
        object.__setattr__(self, "_previous_pk", self._current_pk() if persisted else None)

    @property
    def model(self) -> "Model":
        return self._model

    @property
    def is_new_record(self) -> bool:
        return not self._persisted

    def __getattr__(self, name: str) -> Any:
        if name.startswith("_"):
            raise AttributeError(name)
        values = self.__dict__["_values"]
        if name in values:
            return values[name]
        model = self.__dict__["_model"]
        if name in model.definition.fields:
            raise AttributeError(f"Field '{name}' was not loaded on this '{model.name}' instance.")
        accessor = model.accessor_names.get(name)
        if accessor is not None:
            alias, method = accessor
            return getattr(self.association(alias), method)
        raise AttributeError(f"'{model.name}' instance has no attribute '{name}'.")

    def __setattr__(self, name: str, value: Any) -> None:
        if name.startswith("_"):
            object.__setattr__(self, name, value)
        elif name in self._model.definition.fields:
            self.set(name, value)
        else:
            raise AttributeError(f"'{self._model.name}' has no field '{name}'.")

    def __repr__(self) -> str:
        return f"<{self._model.name} {self._values!r}>"

    def get(self, key: str, default: Any = None) -> Any:
        return self._values.get(key, default)

    def set(self, key: str, value: Any) -> None:
        """Assign a field value and mark it changed when it differs.

        ORM-managed timestamp fields are ignored.

        Raises:
            ValidationError: If the model has no such field.
        """
        definition = self._model.definition
        if key not in definition.fields:
            raise ValidationError(f"'{self._model.name}' has no field '{key}'.", self._model.name, key, "unknown_field")
        if key in definition.managed_fields:
            logger.debug(f"Ignoring value for managed field '{self._model.name}.{key}'")
            return
        if key not in self._values or self._values[key] != value:
            self._changed.add(key)
        self._values[key] = value

    def changed(self, key: str | None = None) -> list[str] | bool:
        """Names of fields changed since the last load or save, or whether `key` changed."""
        if key is not None:
            return key in self._changed
        return [name for name in self._model.definition.fields if name in self._changed]

    def to_dict(self) -> dict[str, Any]:
        return dict(self._values)

    def association(self, alias: str) -> "OneToOneAccessor | ToManyAccessor":
        """Accessor object for the association declared under `alias`.

        Raises:
            AttributeError: If the model declares no such association.
        """
        edge = self._model.associations.get(alias)
        if edge is None:
            raise AttributeError(f"'{self._model.name}' has no association '{alias}'.")
        return edge.accessor(self)

    def _current_pk(self) -> dict[str, Any] | None:
        keys = self._model.definition.primary_keys
        if any(self._values.get(key) is None for key in keys):
            return None
        return {key: self._values[key] for key in keys}

    def primary_key_value(self) -> Any:
        """The primary key value, a dict for composite keys, or None when unset."""
        pk = self._current_pk()
        if pk is None or len(pk) > 1:
            return pk
        return next(iter(pk.values()))

    def _where_self(self):
        if self._previous_pk is None:
            raise MissingPrimaryKeyError(self._model.name)
        return conjoin(*(Leaf(key, Op.EQ, value) for key, value in self._previous_pk.items()))

    def sync_values(self, values: dict[str, Any]) -> None:
        """Overwrite loaded values with what the database holds, without marking them changed."""
        self._values.update(values)
        for key in values:
            self._changed.discard(key)

    def _mark_saved(self) -> None:
        self._persisted = True
        self._changed.clear()
        self._previous_pk = self._current_pk()

    # Persistence

    async def save(
        self,
        *,
        fields: list[str] | None = None,
        silent: bool = False,
        transaction: "Transaction | None" = None,
    ) -> "Instance":
        """Insert the instance, or write its changed fields.

        Args:
            fields: Restrict the UPDATE of a persisted instance to these fields.
            silent: Do not refresh `updatedAt` on update.
            transaction: Run inside this transaction.

        Returns:
            The instance itself.

        Raises:
            ValidationError: If validation fails. Nothing is sent to the database.
            DatabaseError: If the statement fails.
        """
        if self._persisted:
            await self._update(fields, silent, transaction)
        else:
            await self._insert(transaction)
        return self

    async def _insert(self, transaction: "Transaction | None") -> None:
        model = self._model
        definition = model.definition
        validate_values(definition, self._values, is_new=True)

        values = {
            name: self._values[name]
            for name, field_def in definition.fields.items()
            if name in self._values and not (field_def.auto_increment and self._values[name] is None)
        }
        if definition.timestamps:
            now = utc_now()
            values[CREATED_AT] = now
            values[UPDATED_AT] = now

        generated = [
            name for name, f in definition.fields.items() if f.auto_increment and values.get(name) is None
        ]
        returning = generated if generated and model.connection.supports_returning else []
        statement = model.compiler().insert(values, returning)
        result = await model.connection.execute(statement, transaction)

        self._values.update(values)
        if result.rows:
            for name, value in result.rows[0].items():
                self._values[name] = definition.fields[name].type.parse(value)
        elif len(generated) == 1 and result.lastrowid is not None:
            self._values[generated[0]] = result.lastrowid
        self._mark_saved()
        logger.debug(f"Inserted '{model.name}' {self.primary_key_value()!r}")

    async def _update(self, fields: list[str] | None, silent: bool, transaction: "Transaction | None") -> None:
        model = self._model
        definition = model.definition
        changed = set(self._changed) if fields is None else set(fields) & self._changed
        if not changed:
            return
        where = self._where_self()
        validate_values(definition, self._values, is_new=False, only=changed)

        values = {name: self._values[name] for name in definition.fields if name in changed}
        if definition.timestamps and not silent:
            values[UPDATED_AT] = next_timestamp(self._values.get(UPDATED_AT))
        await model.connection.execute(model.compiler().update(values, where), transaction)

        self._values.update(values)
        self._changed.difference_update(changed)
        self._previous_pk = self._current_pk()

    async def update(self, values: dict[str, Any], *, transaction: "Transaction | None" = None) -> "Instance":
        """Set several fields and save them."""
        for key, value in values.items():
            self.set(key, value)
        return await self.save(fields=list(values), transaction=transaction)

    async def destroy(self, *, force: bool = False, transaction: "Transaction | None" = None) -> None:
        """Delete the row.

        Paranoid models only set `deletedAt` unless `force` is given; a
        forced destroy always issues a DELETE.
        """
        model = self._model
        where = self._where_self()
        if model.definition.paranoid and not force:
            deleted_at = next_timestamp(self._values.get(DELETED_AT))
            await model.connection.execute(model.compiler().update({DELETED_AT: deleted_at}, where), transaction)
            self._values[DELETED_AT] = deleted_at
            return
        await model.connection.execute(model.compiler().delete(where), transaction)
        self._persisted = False
        self._previous_pk = None

    async def restore(self, *, transaction: "Transaction | None" = None) -> None:
        """Undo a soft delete.

        Raises:
            QueryError: If the model is not paranoid.
        """
        model = self._model
        if not model.definition.paranoid:
            raise QueryError(f"Model '{model.name}' is not paranoid; there is nothing to restore.")  # noqa: TRY003
        await model.connection.execute(model.compiler().update({DELETED_AT: None}, self._where_self()), transaction)
        self._values[DELETED_AT] = None

    async def reload(self, *, transaction: "Transaction | None" = None) -> "Instance":
        """Re-read every field from the database, discarding unsaved changes.

        Raises:
            EmptyResultError: If the row no longer exists.
        """
        model = self._model
        options = FindOptions(where=self._where_self(), limit=1, paranoid=False)
        rows = await model.select(options, transaction=transaction)
        if not rows:
            raise EmptyResultError(model.name)
        self._values = {}
        self.sync_values(rows[0].to_dict())
        self._mark_saved()
        return self
