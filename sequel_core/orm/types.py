"""Data types for sequel-core models.

Each DataType couples a SQLAlchemy column type (used for DDL and for
binding parameters) with the Python-side coercion applied before a value
is validated and written, and the parsing applied to values read back.
"""

from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any

import sqlalchemy as sa
from sqlalchemy.types import TypeEngine


class QueryType(Enum):
    """Declared kind of a raw statement. Controls the shape of the raw query result."""

    SELECT = "select"
    INSERT = "insert"
    UPDATE = "update"
    DELETE = "delete"


class DataType:
    """Base class for column data types."""

    key: str = "ABSTRACT"

    def sa_type(self) -> TypeEngine:
        """Return the SQLAlchemy type used for DDL and parameter binding."""
        raise NotImplementedError

    def coerce(self, value: Any) -> Any:
        """Normalize a user supplied value.

        Raises:
            ValueError: If the value cannot be represented by this type.
        """
        return value

    def parse(self, value: Any) -> Any:
        """Convert a value returned by the driver into its Python representation."""
        return value

    def __repr__(self) -> str:
        return self.key

    def __eq__(self, other: object) -> bool:
        return type(self) is type(other) and vars(self) == vars(other)

    def __hash__(self) -> int:
        return hash((type(self), tuple(sorted(vars(self).items()))))


class String(DataType):
    key = "STRING"

    def __init__(self, length: int = 255):
        self.length = length

    def sa_type(self) -> TypeEngine:
        return sa.String(self.length)

    def __repr__(self) -> str:
        return f"STRING({self.length})"


class Text(DataType):
    key = "TEXT"

    def sa_type(self) -> TypeEngine:
        return sa.Text()


class Integer(DataType):
    key = "INTEGER"

    def sa_type(self) -> TypeEngine:
        return sa.Integer()

    def coerce(self, value: Any) -> Any:
        if isinstance(value, bool):
            raise ValueError(f"{value!r} is not an integer")
        if isinstance(value, str):
            return int(value)
        return value

    def parse(self, value: Any) -> Any:
        if isinstance(value, str | Decimal):
            return int(value)
        return value


class BigInt(Integer):
    key = "BIGINT"

    def sa_type(self) -> TypeEngine:
        return sa.BigInteger()


class Float(DataType):
    key = "FLOAT"

    def sa_type(self) -> TypeEngine:
        return sa.Float()

    def coerce(self, value: Any) -> Any:
        if isinstance(value, str):
            return float(value)
        return value

    def parse(self, value: Any) -> Any:
        if isinstance(value, Decimal):
            return float(value)
        return value


class Boolean(DataType):
    key = "BOOLEAN"

    def sa_type(self) -> TypeEngine:
        return sa.Boolean()

    def coerce(self, value: Any) -> Any:
        if isinstance(value, bool) or value is None:
            return value
        if value in (0, 1):
            return bool(value)
        raise ValueError(f"{value!r} is not a boolean")

    def parse(self, value: Any) -> Any:
        if isinstance(value, int):
            return bool(value)
        return value


class Date(DataType):
    """Calendar date without time."""

    key = "DATEONLY"

    def sa_type(self) -> TypeEngine:
        return sa.Date()

    def coerce(self, value: Any) -> Any:
        if isinstance(value, datetime):
            return value.date()
        if isinstance(value, str):
            return date.fromisoformat(value)
        return value

    def parse(self, value: Any) -> Any:
        return self.coerce(value)


class DateTime(DataType):
    """Date and time. ISO formatted strings are accepted on input."""

    key = "DATE"

    def sa_type(self) -> TypeEngine:
        return sa.DateTime()

    def coerce(self, value: Any) -> Any:
        if isinstance(value, str):
            return datetime.fromisoformat(value)
        if isinstance(value, date) and not isinstance(value, datetime):
            return datetime(value.year, value.month, value.day)
        return value

    def parse(self, value: Any) -> Any:
        if isinstance(value, str):
            return datetime.fromisoformat(value)
        return value


STRING = String()
TEXT = Text()
INTEGER = Integer()
BIGINT = BigInt()
FLOAT = Float()
BOOLEAN = Boolean()
DATEONLY = Date()
DATE = DateTime()
