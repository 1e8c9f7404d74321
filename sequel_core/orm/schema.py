"""Model definitions for sequel-core.

A `ModelDefinition` is the static description of a model: its ordered
fields, its options and the table it maps to. Definitions are built by
`Registry.define` and extended by associations (foreign-key fields). They
can be rendered as SQLAlchemy `Table` objects for DDL.
"""

import logging
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass, field, replace
from typing import Any

import sqlalchemy as sa
from pydantic import ValidationError as PydanticValidationError

from sequel_core.config import CREATED_AT, DELETED_AT, UPDATED_AT, ModelOptions
from sequel_core.exceptions import PrimaryKeyRequiredError, SchemaError, UnknownDataTypeError
from sequel_core.orm.types import BIGINT, DATE, DataType
from sequel_core.orm.util import pluralize

logger = logging.getLogger("Sequel-Core")

_FIELD_KEYS = {"type", "allow_null", "primary_key", "auto_increment", "default", "unique", "validate", "references"}


@dataclass
class Field:
    """A single model attribute.

    Attributes:
        type: Column data type.
        allow_null: Whether None is an acceptable value.
        primary_key: Part of the primary key.
        auto_increment: The database assigns the value on insert.
        default: Value, or zero-argument callable, applied when the field is absent on build.
        unique: Adds a unique constraint in DDL.
        validate: Validation rules, rule name -> argument (or a callable for custom rules).
        references: (table, column) pair for a foreign key.
    """

    type: DataType
    allow_null: bool = True
    primary_key: bool = False
    auto_increment: bool = False
    default: Any = None
    unique: bool = False
    validate: dict[str, Any] = field(default_factory=dict)
    references: tuple[str, str] | None = None

    def default_value(self) -> Any:
        if callable(self.default):
            return self.default()
        return self.default

    def to_column(self, name: str, known_tables: Iterable[str] = ()) -> sa.Column:
        """Build the SQLAlchemy column for this field."""
        column_type = self.type.sa_type()
        if self.auto_increment:
            # SQLite only auto-assigns keys for INTEGER PRIMARY KEY columns
            column_type = column_type.with_variant(sa.Integer(), "sqlite")
        args: list[Any] = [name, column_type]
        if self.references is not None and self.references[0] in known_tables:
            table, column = self.references
            ondelete = "SET NULL" if self.allow_null else "CASCADE"
            args.append(sa.ForeignKey(f"{table}.{column}", ondelete=ondelete))
        return sa.Column(
            *args,
            primary_key=self.primary_key,
            nullable=self.allow_null and not self.primary_key,
            unique=self.unique or None,
            autoincrement=True if self.auto_increment else False,
        )


FieldLike = Field | DataType | Mapping[str, Any]


def normalize_field(model_name: str, name: str, spec: FieldLike) -> Field:
    """Turn the shorthand forms accepted by `define` into a `Field`.

    Raises:
        SchemaError: If the spec is not a Field, a DataType or a mapping of Field options.
    """
    if isinstance(spec, Field):
        result = replace(spec, validate=dict(spec.validate))
    elif isinstance(spec, DataType):
        result = Field(type=spec)
    elif isinstance(spec, Mapping):
        unknown = set(spec) - _FIELD_KEYS
        if unknown:
            raise SchemaError(f"Unknown options {sorted(unknown)} for field '{model_name}.{name}'.", model_name)
        if "type" not in spec:
            raise UnknownDataTypeError(model_name, name, "None")
        result = Field(**spec)
    else:
        raise UnknownDataTypeError(model_name, name, repr(spec))

    if not isinstance(result.type, DataType):
        raise UnknownDataTypeError(model_name, name, repr(result.type))
    return result


class ModelDefinition:
    """Ordered field mapping plus options and table metadata of a model."""

    def __init__(self, name: str, fields: Mapping[str, FieldLike], options: Mapping[str, Any] | None = None):
        if not name:
            raise SchemaError("Model name must not be empty.")
        self.name = name
        try:
            self.options = ModelOptions(**(options or {}))
        except PydanticValidationError as e:
            raise SchemaError(f"Invalid options for model '{name}': {e}", name) from e

        self.fields: dict[str, Field] = {}
        for field_name, spec in fields.items():
            if not field_name:
                raise SchemaError(f"Model '{name}' has a field with an empty name.", name)
            self.fields[field_name] = normalize_field(name, field_name, spec)

        if "id" in self.fields and not self.fields["id"].primary_key:
            raise PrimaryKeyRequiredError(name)
        if not any(f.primary_key for f in self.fields.values()):
            self.fields = {"id": Field(BIGINT, allow_null=False, primary_key=True, auto_increment=True), **self.fields}

        if self.options.timestamps:
            self.fields.setdefault(CREATED_AT, Field(DATE, allow_null=False))
            self.fields.setdefault(UPDATED_AT, Field(DATE, allow_null=False))
        if self.options.paranoid:
            self.fields.setdefault(DELETED_AT, Field(DATE))

        self.table_name = self.options.table_name or pluralize(name)

    @property
    def primary_keys(self) -> list[str]:
        return [name for name, f in self.fields.items() if f.primary_key]

    @property
    def primary_key(self) -> str:
        """The single primary key column. Composite keys use `primary_keys`."""
        return self.primary_keys[0]

    @property
    def timestamps(self) -> bool:
        return self.options.timestamps

    @property
    def paranoid(self) -> bool:
        return self.options.paranoid

    @property
    def validators(self) -> dict[str, Callable[[Mapping[str, Any]], Any]]:
        return self.options.validators

    @property
    def managed_fields(self) -> set[str]:
        """Fields whose values are assigned by the ORM, never by the caller."""
        managed = set()
        if self.timestamps:
            managed.update((CREATED_AT, UPDATED_AT))
        if self.paranoid:
            managed.add(DELETED_AT)
        return managed

    def add_field(self, name: str, spec: FieldLike) -> Field:
        """Add a field after definition (used for foreign keys).

        Adding a field that already exists keeps the existing field, so
        declaring the same association from both sides never duplicates a
        column. A reference is filled in when the existing field had none.
        """
        new_field = normalize_field(self.name, name, spec)
        existing = self.fields.get(name)
        if existing is not None:
            if existing.references is None and new_field.references is not None:
                existing.references = new_field.references
            return existing
        self.fields[name] = new_field
        logger.debug(f"Added field '{name}' to model '{self.name}'")
        return new_field

    def to_table(self, metadata: sa.MetaData, known_tables: Iterable[str] | None = None) -> sa.Table:
        """Render the definition as a SQLAlchemy table bound to `metadata`.

        Foreign keys are only emitted towards `known_tables` (defaults to the
        tables already present in `metadata`).
        """
        known = set(metadata.tables if known_tables is None else known_tables)
        columns = [f.to_column(name, known) for name, f in self.fields.items()]
        return sa.Table(self.table_name, metadata, *columns)

    def __repr__(self) -> str:
        return f"ModelDefinition(name={self.name!r}, table_name={self.table_name!r}, fields={list(self.fields)})"
