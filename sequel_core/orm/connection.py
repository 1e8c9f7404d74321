import logging
import os
import re
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Protocol

import sqlalchemy as sa
from sqlalchemy.exc import DBAPIError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine, create_async_engine
from typing_extensions import Self

from sequel_core.exceptions import DatabaseError, TableNotFoundError, TransactionNotActiveError
from sequel_core.orm.query import Statement

logger = logging.getLogger("Sequel-Core")

_MISSING_TABLE = re.compile(
    r"no such table|invalid object name|relation .* does not exist|table .* doesn't exist|undefined table",
    re.IGNORECASE,
)


@dataclass
class QueryResult:
    """Outcome of one statement.

    Attributes:
        rows: Returned rows as dictionaries (empty for statements without a result set).
        rowcount: Affected row count reported by the driver (-1 when unknown).
        lastrowid: Driver-reported id of the last inserted row, when available.
        returns_rows: Whether the statement produced a result set.
    """

    rows: list[dict[str, Any]] = field(default_factory=list)
    rowcount: int = -1
    lastrowid: Any = None
    returns_rows: bool = False


class Connection(Protocol):
    """What the ORM needs from a database connection."""

    @property
    def supports_returning(self) -> bool: ...

    async def execute(self, statement: Statement, transaction: "Transaction | None" = None) -> QueryResult: ...

    def transaction(self) -> "Transaction": ...

    async def create_table(self, table: sa.Table, checkfirst: bool = True) -> None: ...

    async def drop_table(self, table: sa.Table, checkfirst: bool = True) -> None: ...

    async def create_all(self, metadata: sa.MetaData) -> None: ...

    async def drop_all(self, metadata: sa.MetaData) -> None: ...

    async def close(self) -> None: ...


def _translate_error(error: SQLAlchemyError, sql: str | None) -> DatabaseError:
    """Wrap a SQLAlchemy error, keeping the driver message verbatim."""
    message = str(error.orig) if isinstance(error, DBAPIError) and error.orig is not None else str(error)
    if _MISSING_TABLE.search(message):
        return TableNotFoundError(message, sql)
    return DatabaseError(message, sql)


async def _run(conn: AsyncConnection, statement: Statement) -> QueryResult:
    logger.debug(f"Executing: {statement.sql} {statement.params}")
    result = await conn.execute(statement.clause, statement.params or None)
    rows = [dict(row._mapping) for row in result] if result.returns_rows else []
    try:
        lastrowid = result.lastrowid
    except (AttributeError, SQLAlchemyError):
        lastrowid = None
    return QueryResult(rows=rows, rowcount=result.rowcount, lastrowid=lastrowid, returns_rows=result.returns_rows)


class Transaction:
    """A database transaction pinned to one connection.

    Use as an async context manager: the transaction commits on a clean
    exit and rolls back when the block raises.

    Example:
        >>> async with registry.transaction() as tx:
        ...     await user.save(transaction=tx)
        ...     await company.save(transaction=tx)
    """

    def __init__(self, engine: AsyncEngine):
        self.engine = engine
        self.connection: AsyncConnection | None = None
        self._transaction: Any = None

    @property
    def is_active(self) -> bool:
        return self._transaction is not None and self._transaction.is_active

    async def __aenter__(self) -> Self:
        try:
            self.connection = await self.engine.connect()
        except SQLAlchemyError as e:
            raise _translate_error(e, None) from e
        try:
            self._transaction = await self.connection.begin()
        except SQLAlchemyError as e:
            await self.connection.close()
            self.connection = None
            raise _translate_error(e, None) from e
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        try:
            if exc_type is not None:
                await self.rollback()
            elif self.is_active:
                await self.commit()
        finally:
            if self.connection is not None:
                await self.connection.close()

    async def execute(self, statement: Statement) -> QueryResult:
        if not self.is_active or self.connection is None:
            raise TransactionNotActiveError
        try:
            return await _run(self.connection, statement)
        except SQLAlchemyError as e:
            logger.exception(f"Statement failed inside transaction: {statement.sql}")
            raise _translate_error(e, statement.sql) from e

    async def commit(self) -> None:
        if self.is_active:
            await self._transaction.commit()

    async def rollback(self) -> None:
        if self.is_active:
            await self._transaction.rollback()


@asynccontextmanager
async def may_make_transaction(connection: Connection, transaction: Transaction | None) -> AsyncIterator[Transaction]:
    """Yield `transaction` when given, otherwise open (and finish) a new one.

    Lets operations that touch several rows join the caller's transaction
    instead of nesting a second one.
    """
    if transaction is not None:
        yield transaction
        return
    async with connection.transaction() as new_transaction:
        yield new_transaction


@dataclass
class DBConnection:
    """Database connection configuration backed by a SQLAlchemy async engine.

    Args:
        url: SQLAlchemy database URL with an async driver, e.g.
            ``sqlite+aiosqlite:///app.db`` or ``postgresql+psycopg://user:pw@host/db``.
        echo: Forward to SQLAlchemy's statement echo.
    """

    url: str
    echo: bool = False
    _engine: AsyncEngine | None = field(default=None, init=False, repr=False)

    @property
    def engine(self) -> AsyncEngine:
        """Lazily create the async engine."""
        if self._engine is None:
            self._engine = create_async_engine(self.url, echo=self.echo)
        return self._engine

    @property
    def supports_returning(self) -> bool:
        return bool(getattr(self.engine.dialect, "insert_returning", False))

    async def execute(self, statement: Statement, transaction: Transaction | None = None) -> QueryResult:
        """Run one statement, inside `transaction` when given, otherwise in its own transaction."""
        if transaction is not None:
            return await transaction.execute(statement)
        try:
            async with self.engine.begin() as conn:
                return await _run(conn, statement)
        except SQLAlchemyError as e:
            logger.exception(f"Statement failed: {statement.sql}")
            raise _translate_error(e, statement.sql) from e

    def transaction(self) -> Transaction:
        return Transaction(self.engine)

    async def create_table(self, table: sa.Table, checkfirst: bool = True) -> None:
        try:
            async with self.engine.begin() as conn:
                await conn.run_sync(table.create, checkfirst=checkfirst)
        except SQLAlchemyError as e:
            raise _translate_error(e, None) from e
        logger.info(f"Synced table '{table.name}'")

    async def drop_table(self, table: sa.Table, checkfirst: bool = True) -> None:
        try:
            async with self.engine.begin() as conn:
                await conn.run_sync(table.drop, checkfirst=checkfirst)
        except SQLAlchemyError as e:
            raise _translate_error(e, None) from e
        logger.info(f"Dropped table '{table.name}'")

    async def create_all(self, metadata: sa.MetaData) -> None:
        try:
            async with self.engine.begin() as conn:
                await conn.run_sync(metadata.create_all)
        except SQLAlchemyError as e:
            raise _translate_error(e, None) from e

    async def drop_all(self, metadata: sa.MetaData) -> None:
        try:
            async with self.engine.begin() as conn:
                await conn.run_sync(metadata.drop_all)
        except SQLAlchemyError as e:
            raise _translate_error(e, None) from e

    async def close(self) -> None:
        """Dispose the engine. A later statement recreates it."""
        if self._engine is not None:
            await self._engine.dispose()
            self._engine = None

    @classmethod
    def from_config(cls, config_path: Path | str) -> "DBConnection":
        """Load the connection configuration from ``db.yaml`` inside `config_path`.

        The file holds either a ``url`` or PostgreSQL ``host``/``port``/``user``/
        ``password``/``database`` keys, and optionally ``echo``. The
        ``POSTGRES_PASSWORD`` environment variable overrides the password.

        Returns:
            DBConnection instance with loaded configuration.
        """
        from omegaconf import DictConfig, OmegaConf

        cfg = OmegaConf.load(Path(config_path) / "db.yaml")
        if not isinstance(cfg, DictConfig):
            raise TypeError("db.yaml must be a YAML mapping.")  # noqa: TRY003

        echo = bool(cfg.get("echo", False))
        if cfg.get("url"):
            return cls(url=str(cfg.url), echo=echo)

        password = os.environ.get("POSTGRES_PASSWORD", cfg.get("password"))
        if password is None:
            raise ValueError("Database password not found in config or POSTGRES_PASSWORD env variable.")  # noqa: TRY003
        return cls(
            url=_postgres_url(cfg.get("host", "localhost"), cfg.get("port", 5432), cfg.user, password, cfg.database),
            echo=echo,
        )

    @classmethod
    def from_env(cls) -> "DBConnection":
        """Load the connection configuration from environment variables.

        ``SEQUEL_DB_URL`` wins when set; otherwise ``POSTGRES_HOST``,
        ``POSTGRES_PORT``, ``POSTGRES_USER``, ``POSTGRES_PASSWORD`` and
        ``POSTGRES_DB`` describe a PostgreSQL database.
        """
        url = os.getenv("SEQUEL_DB_URL")
        if url:
            return cls(url=url, echo=os.getenv("SEQUEL_DB_ECHO", "").lower() in ("1", "true", "yes"))

        host = os.getenv("POSTGRES_HOST", "localhost")
        port = int(os.getenv("POSTGRES_PORT", "5432"))
        username = os.getenv("POSTGRES_USER")
        password = os.getenv("POSTGRES_PASSWORD")
        database = os.getenv("POSTGRES_DB")

        if not all([host, port, username, password, database]):
            raise ValueError("Missing required database environment variables.")  # noqa: TRY003
        return cls(url=_postgres_url(host, port, str(username), str(password), str(database)))


def _postgres_url(host: str, port: int, user: str, password: str, database: str) -> str:
    return f"postgresql+psycopg://{user}:{password}@{host}:{port}/{database}"
