"""Registry of model definitions bound to one database connection.

The registry is the context object threaded through every model
operation. Independent registries share nothing, so several schemas can
live side by side in one process (or one test session).
"""

import logging
from collections.abc import Mapping, Sequence
from typing import Any

import sqlalchemy as sa
from typing_extensions import Self

from sequel_core.exceptions import ModelNotFoundError, QueryError
from sequel_core.orm.connection import Connection, DBConnection, Transaction
from sequel_core.orm.model import Model
from sequel_core.orm.query import Statement
from sequel_core.orm.schema import FieldLike, ModelDefinition
from sequel_core.orm.types import QueryType
from sequel_core.orm.util import bind_raw_parameters
from sequel_core.orm.validation import check_rules

logger = logging.getLogger("Sequel-Core")


class Registry:
    """Holds model definitions and the connection they run on.

    Args:
        connection: A `DBConnection`, a SQLAlchemy async database URL, or any object
            implementing the `Connection` protocol.

    Example:
        ```python
        registry = Registry("sqlite+aiosqlite:///app.db")
        User = registry.define("user", {"username": STRING}, paranoid=True)
        await registry.sync()
        rows = await registry.query("SELECT * FROM users WHERE id = ?", [1], query_type=QueryType.SELECT)
        ```
    """

    def __init__(self, connection: Connection | str):
        self.connection: Connection = DBConnection(connection) if isinstance(connection, str) else connection
        self._models: dict[str, Model] = {}

    async def __aenter__(self) -> Self:
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.close()

    # Definitions

    def define(self, name: str, fields: Mapping[str, FieldLike], **options: Any) -> Model:
        """Define a model.

        Args:
            name: Model name, unique inside the registry.
            fields: Field name to `Field`, `DataType` or mapping of field options.
            **options: `ModelOptions` (table_name, timestamps, paranoid, validators).

        Returns:
            The model handle.

        Raises:
            SchemaError: If a field type, a validation rule, an option or the
                primary-key declaration is invalid.
        """
        definition = ModelDefinition(name, fields, options)
        check_rules(name, definition.fields)
        if name in self._models:
            logger.warning(f"Model '{name}' is already defined; replacing the previous definition.")
        model = Model(self, definition)
        self._models[name] = model
        logger.debug(f"Defined model {definition!r}")
        return model

    @property
    def models(self) -> dict[str, Model]:
        return dict(self._models)

    def get_model(self, name: str) -> Model:
        """Return the model defined under `name`.

        Raises:
            ModelNotFoundError: If no such model is defined.
        """
        try:
            return self._models[name]
        except KeyError:
            raise ModelNotFoundError(name) from None

    def is_defined(self, name: str) -> bool:
        return name in self._models

    def build_metadata(self) -> sa.MetaData:
        """Render every definition as SQLAlchemy tables in a fresh `MetaData`."""
        metadata = sa.MetaData()
        known_tables = {model.table_name for model in self._models.values()}
        for model in self._models.values():
            if model.table_name not in metadata.tables:
                model.definition.to_table(metadata, known_tables)
        return metadata

    # DDL

    async def sync(self, force: bool = False) -> None:
        """Create every missing table. `force` drops all tables first."""
        metadata = self.build_metadata()
        if force:
            await self.connection.drop_all(metadata)
        await self.connection.create_all(metadata)
        logger.info(f"Synced {len(metadata.tables)} tables")

    async def drop_all(self) -> None:
        await self.connection.drop_all(self.build_metadata())

    # Raw statements

    async def query(
        self,
        sql: str,
        values: Sequence[Any] | Mapping[str, Any] | None = None,
        *,
        query_type: QueryType | None = None,
        transaction: Transaction | None = None,
    ) -> Any:
        """Run a raw statement.

        `values` is a sequence for ``?`` placeholders or a mapping for
        ``:name`` placeholders. The result shape depends on `query_type`:

        - ``SELECT``: list of row dicts.
        - ``INSERT``: ``(first returned row or None, affected count)``.
        - ``UPDATE`` / ``DELETE``: ``(returned rows, affected count)`` when the
          statement returns rows, ``([], [])`` otherwise.
        - None: ``(rows, affected count)``; for statements returning rows the
          count is the number of rows.

        Raises:
            QueryError: If the positional values do not match the placeholders.
            DatabaseError: If the statement fails.
        """
        try:
            text, params = bind_raw_parameters(sql, values)
        except ValueError as e:
            raise QueryError(str(e)) from e
        result = await self.connection.execute(Statement(sa.text(text), params, query_type=query_type), transaction)

        affected = len(result.rows) if result.returns_rows and result.rowcount < 0 else result.rowcount
        if query_type is QueryType.SELECT:
            return result.rows
        if query_type is QueryType.INSERT:
            return (result.rows[0] if result.rows else None), affected
        if query_type in (QueryType.UPDATE, QueryType.DELETE):
            if result.returns_rows:
                return result.rows, affected
            return [], []
        if result.returns_rows:
            return result.rows, len(result.rows)
        return result.rows, result.rowcount

    # Connection

    def transaction(self) -> Transaction:
        """Open a transaction; use it as ``async with registry.transaction() as tx``."""
        return self.connection.transaction()

    async def close(self) -> None:
        await self.connection.close()
