"""Query builder for sequel-core.

Translates structured find options (where trees, projections, grouping,
ordering) into `Statement` objects wrapping SQLAlchemy Core constructs
built over the model's table.

Where clauses are written as mappings and parsed into a small tagged
expression tree before compilation:

    {"username": "user", "email": "user@company.com"}
        -> And((Leaf("username", Op.EQ, "user"), Leaf("email", Op.EQ, "user@company.com")))
    {Op.OR: {"username": "user", "email": "other@company.com"}}
        -> Or((Leaf("username", Op.EQ, "user"), Leaf("email", Op.EQ, "other@company.com")))
    {"username": {Op.OR: {Op.IS: None, Op.EQ: "user"}}}
        -> Or((Leaf("username", Op.IS, None), Leaf("username", Op.EQ, "user")))
"""

import operator
import re
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Union

import sqlalchemy as sa

from sequel_core.config import DELETED_AT
from sequel_core.exceptions import QueryError, UnknownFieldError, UnsupportedOperatorError
from sequel_core.orm.schema import ModelDefinition
from sequel_core.orm.types import QueryType

_FUNCTION_NAME = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


class Op(Enum):
    """Operators usable as keys in where mappings."""

    EQ = "eq"
    NE = "ne"
    IS = "is"
    NOT = "not"
    GT = "gt"
    GTE = "gte"
    LT = "lt"
    LTE = "lte"
    IN = "in"
    NOT_IN = "not_in"
    LIKE = "like"
    NOT_LIKE = "not_like"
    BETWEEN = "between"
    NOT_BETWEEN = "not_between"
    AND = "and"
    OR = "or"


_COMPARISONS = {
    Op.EQ: operator.eq,
    Op.NE: operator.ne,
    Op.GT: operator.gt,
    Op.GTE: operator.ge,
    Op.LT: operator.lt,
    Op.LTE: operator.le,
}


@dataclass(frozen=True)
class Leaf:
    field: str
    op: Op
    value: Any


@dataclass(frozen=True)
class And:
    children: tuple["Expression", ...]


@dataclass(frozen=True)
class Or:
    children: tuple["Expression", ...]


@dataclass(frozen=True)
class Not:
    child: "Expression"


Expression = Union[Leaf, And, Or, Not]
_EXPRESSION_TYPES = (Leaf, And, Or, Not)


@dataclass(frozen=True)
class Col:
    """Reference to a column inside a projection expression. `col("*")` selects all."""

    name: str


@dataclass(frozen=True)
class Fn:
    """SQL function call inside a projection, e.g. `fn("COUNT", col("username"))`."""

    name: str
    args: tuple[Any, ...] = ()


@dataclass(frozen=True)
class Literal:
    """Raw SQL fragment inserted into a projection as-is."""

    sql: str


def col(name: str) -> Col:
    return Col(name)


def fn(name: str, *args: Any) -> Fn:
    return Fn(name, args)


def literal(sql: str) -> Literal:
    return Literal(sql)


def _combine(kind: type[And] | type[Or], children: Iterable[Expression | None]) -> Expression | None:
    kept = tuple(child for child in children if child is not None)
    if not kept:
        return None
    if len(kept) == 1:
        return kept[0]
    return kind(kept)


def conjoin(*expressions: Expression | None) -> Expression | None:
    """AND together the given expressions, ignoring None."""
    return _combine(And, expressions)


def parse_where(where: Mapping[Any, Any] | Expression | None) -> Expression | None:
    """Parse a where mapping into an expression tree.

    Top-level keys are AND-ed. `Op.AND`, `Op.OR` and `Op.NOT` keys combine
    their children. A field mapped to None compiles to IS NULL, a field
    mapped to a list/tuple/set compiles to IN, and a field mapped to a
    mapping of operators applies each operator to that field.

    Returns:
        The expression, or None when the mapping is empty.

    Raises:
        QueryError: If the mapping is malformed.
    """
    if where is None or isinstance(where, _EXPRESSION_TYPES):
        return where
    if not isinstance(where, Mapping):
        raise QueryError(f"A where clause must be a mapping, got {type(where).__name__}.")  # noqa: TRY003

    children: list[Expression | None] = []
    for key, value in where.items():
        if isinstance(key, Op):
            children.append(_parse_operator(key, value))
        elif isinstance(key, str):
            children.append(_parse_field(key, value))
        else:
            raise QueryError(f"Where keys must be field names or Op members, got {key!r}.")  # noqa: TRY003
    return _combine(And, children)


def _parse_operator(op: Op, value: Any) -> Expression | None:
    if op is Op.NOT:
        inner = parse_where(value)
        return Not(inner) if inner is not None else None
    if op in (Op.AND, Op.OR):
        kind = And if op is Op.AND else Or
        if isinstance(value, Mapping):
            return _combine(kind, (parse_where({k: v}) for k, v in value.items()))
        if isinstance(value, Sequence) and not isinstance(value, str):
            return _combine(kind, (parse_where(item) for item in value))
        raise QueryError(f"{op} expects a mapping or a list of mappings.")  # noqa: TRY003
    raise UnsupportedOperatorError(op)


def _parse_field(name: str, value: Any) -> Expression | None:
    if isinstance(value, Mapping):
        if not value or not all(isinstance(key, Op) for key in value):
            raise QueryError(f"Nested conditions on field '{name}' must be keyed by Op members.")  # noqa: TRY003
        return _combine(And, (_parse_field_operator(name, op, v) for op, v in value.items()))
    if value is None:
        return Leaf(name, Op.IS, None)
    if isinstance(value, list | tuple | set | frozenset):
        return Leaf(name, Op.IN, list(value))
    return Leaf(name, Op.EQ, value)


def _parse_field_operator(name: str, op: Op, value: Any) -> Expression | None:
    if op in (Op.AND, Op.OR):
        kind = And if op is Op.AND else Or
        if isinstance(value, Mapping):
            return _combine(kind, (_parse_field(name, {k: v}) for k, v in value.items()))
        if isinstance(value, Sequence) and not isinstance(value, str):
            return _combine(kind, (_parse_field(name, item) for item in value))
        raise QueryError(f"{op} on field '{name}' expects a mapping or a list.")  # noqa: TRY003
    if op is Op.NOT and isinstance(value, Mapping):
        inner = _parse_field(name, value)
        return Not(inner) if inner is not None else None
    return Leaf(name, op, value)


@dataclass
class Statement:
    """A statement ready to be handed to a connection.

    `clause` is a SQLAlchemy Core construct (or a `text()` clause for raw
    statements, whose named values travel in `params`).
    """

    clause: sa.Executable
    params: dict[str, Any] = field(default_factory=dict)
    query_type: QueryType | None = None

    @property
    def sql(self) -> str:
        return str(self.clause)

    def __str__(self) -> str:
        return self.sql


@dataclass(frozen=True)
class SelectItem:
    """One projected column: its expression and the key it is read back under."""

    expression: sa.ColumnElement
    key: str


@dataclass
class FindOptions:
    """Options shared by find_all / find_one / count."""

    where: Mapping[Any, Any] | Expression | None = None
    attributes: Sequence[Any] | Mapping[str, Sequence[Any]] | None = None
    group: Sequence[str] | None = None
    order: Sequence[str | tuple[str, str]] | None = None
    limit: int | None = None
    offset: int | None = None
    paranoid: bool = True


@dataclass(frozen=True)
class ThroughJoin:
    """Join of a target model with a join (through) model, filtered on the source side key."""

    through: ModelDefinition
    source_key: str
    target_key: str
    source_value: Any


def _all_of(*clauses: sa.ColumnElement | None) -> sa.ColumnElement | None:
    kept = [clause for clause in clauses if clause is not None]
    if not kept:
        return None
    return kept[0] if len(kept) == 1 else sa.and_(*kept)


class QueryCompiler:
    """Builds SQLAlchemy Core statements against one model definition.

    The model is rendered as a standalone `sa.Table`; the engine's dialect
    decides the final SQL text when the statement is executed.
    """

    def __init__(self, definition: ModelDefinition):
        self.definition = definition
        self.table = definition.to_table(sa.MetaData(), ())

    def column(self, name: str) -> sa.Column:
        if name not in self.definition.fields:
            raise UnknownFieldError(self.definition.name, name)
        return self.table.c[name]

    def _value(self, name: str, value: Any) -> Any:
        try:
            return self.definition.fields[name].type.coerce(value)
        except (TypeError, ValueError) as e:
            msg = f"Invalid value {value!r} for {self.definition.name}.{name}: {e}"
            raise QueryError(msg) from e

    # Where

    def compile_where(self, expression: Expression | None) -> sa.ColumnElement | None:
        if expression is None:
            return None
        if isinstance(expression, Leaf):
            return self._compile_leaf(expression)
        if isinstance(expression, Not):
            return sa.not_(self.compile_where(expression.child))
        if isinstance(expression, And):
            return sa.and_(*(self.compile_where(child) for child in expression.children))
        if isinstance(expression, Or):
            return sa.or_(*(self.compile_where(child) for child in expression.children))
        raise QueryError(f"Cannot compile {expression!r}.")  # noqa: TRY003

    def _compile_leaf(self, leaf: Leaf) -> sa.ColumnElement:  # noqa: C901
        column = self.column(leaf.field)
        op, value = leaf.op, leaf.value

        if op in (Op.EQ, Op.IS) and value is None:
            return column.is_(None)
        if op in (Op.NE, Op.NOT) and value is None:
            return column.is_not(None)
        if op in (Op.IS, Op.NOT) and isinstance(value, bool):
            return column.is_(value) if op is Op.IS else column.is_not(value)
        if op is Op.IS:
            raise QueryError(f"Op.IS on '{leaf.field}' only accepts None, True or False.")  # noqa: TRY003
        if op is Op.NOT:
            op = Op.NE

        if op in _COMPARISONS:
            return _COMPARISONS[op](column, self._value(leaf.field, value))

        if op in (Op.IN, Op.NOT_IN):
            if isinstance(value, str | bytes) or not isinstance(value, Iterable):
                raise QueryError(f"{op} on '{leaf.field}' expects a list of values.")  # noqa: TRY003
            values = [self._value(leaf.field, v) for v in value]
            return column.in_(values) if op is Op.IN else column.not_in(values)

        if op in (Op.LIKE, Op.NOT_LIKE):
            return column.like(value) if op is Op.LIKE else column.not_like(value)

        if op in (Op.BETWEEN, Op.NOT_BETWEEN):
            if not isinstance(value, Sequence) or isinstance(value, str) or len(value) != 2:
                raise QueryError(f"{op} on '{leaf.field}' expects a pair of bounds.")  # noqa: TRY003
            between = column.between(self._value(leaf.field, value[0]), self._value(leaf.field, value[1]))
            return between if op is Op.BETWEEN else sa.not_(between)

        raise UnsupportedOperatorError(op)

    def scoped_where(self, where: Any, paranoid: bool) -> Expression | None:
        expression = parse_where(where)
        if paranoid and self.definition.paranoid:
            expression = conjoin(expression, Leaf(DELETED_AT, Op.IS, None))
        return expression

    # Projection

    def _expression(self, expression: Any) -> sa.ColumnElement:
        if isinstance(expression, str):
            return self.column(expression)
        if isinstance(expression, Col):
            return sa.literal_column("*") if expression.name == "*" else self.column(expression.name)
        if isinstance(expression, Fn):
            if not _FUNCTION_NAME.match(expression.name):
                raise QueryError(f"Invalid function name {expression.name!r}.")  # noqa: TRY003
            function = getattr(sa.func, expression.name.lower())
            return function(*(self._expression(arg) for arg in expression.args))
        if isinstance(expression, Literal):
            return sa.literal_column(expression.sql)
        return sa.literal(expression)

    def _projection_item(self, entry: Any) -> SelectItem:
        if isinstance(entry, str):
            return SelectItem(self.column(entry), entry)
        if isinstance(entry, Col) and entry.name != "*":
            return SelectItem(self.column(entry.name), entry.name)
        if isinstance(entry, list | tuple) and len(entry) == 2 and isinstance(entry[1], str):
            expression, alias = entry
            return SelectItem(self._expression(expression).label(alias), alias)
        raise QueryError(f"Invalid attribute {entry!r}; computed attributes need an (expression, alias) pair.")  # noqa: TRY003

    def projection(self, attributes: Any) -> list[SelectItem]:
        """Resolve an attributes option into select items.

        Accepts None (all fields), a list of field names and (expression,
        alias) pairs, or a mapping with `include` / `exclude` lists applied
        to the full field list.
        """
        defaults: list[Any] = list(self.definition.fields)
        if attributes is None:
            entries = defaults
        elif isinstance(attributes, Mapping):
            unknown = set(attributes) - {"include", "exclude"}
            if unknown:
                raise QueryError(f"Unknown attribute options {sorted(unknown)}.")  # noqa: TRY003
            excluded = list(attributes.get("exclude", ()))
            for name in excluded:
                self.column(name)
            entries = [name for name in defaults if name not in excluded] + list(attributes.get("include", ()))
        elif isinstance(attributes, Sequence) and not isinstance(attributes, str):
            entries = list(attributes)
        else:
            raise QueryError("attributes must be a list or a mapping with include/exclude.")  # noqa: TRY003

        if not entries:
            raise QueryError("attributes must select at least one column.")  # noqa: TRY003
        return [self._projection_item(entry) for entry in entries]

    def _order_term(self, term: Any, labels: Mapping[str, sa.ColumnElement]) -> sa.ColumnElement:
        direction = "ASC"
        if isinstance(term, list | tuple):
            if len(term) != 2:
                raise QueryError(f"Invalid order term {term!r}.")  # noqa: TRY003
            term, direction = term[0], str(term[1]).upper()
            if direction not in ("ASC", "DESC"):
                raise QueryError(f"Invalid order direction {direction!r}.")  # noqa: TRY003
        if isinstance(term, str) and term in labels and term not in self.definition.fields:
            expression = labels[term]
        else:
            expression = self.column(term)
        return expression.desc() if direction == "DESC" else expression.asc()

    # Statements

    def _source(self, join: ThroughJoin | None) -> tuple[sa.FromClause, sa.ColumnElement | None]:
        """The FROM clause and, for a through join, the condition on the source key."""
        if join is None:
            return self.table, None
        through = QueryCompiler(join.through)
        onclause = through.column(join.target_key) == self.column(self.definition.primary_key)
        condition = through.compile_where(Leaf(join.source_key, Op.EQ, join.source_value))
        return self.table.join(through.table, onclause), condition

    def select(self, options: FindOptions, join: ThroughJoin | None = None) -> tuple[Statement, list[SelectItem]]:
        """Build a SELECT for `options`.

        Returns:
            The statement and the projected items, in select order.
        """
        items = self.projection(options.attributes)
        source, condition = self._source(join)
        query = sa.select(*(item.expression for item in items)).select_from(source)

        where = _all_of(condition, self.compile_where(self.scoped_where(options.where, options.paranoid)))
        if where is not None:
            query = query.where(where)
        if options.group:
            query = query.group_by(*(self.column(name) for name in options.group))
        if options.order:
            labels = {item.key: item.expression for item in items}
            query = query.order_by(*(self._order_term(term, labels) for term in options.order))
        if options.limit is not None:
            query = query.limit(int(options.limit))
        if options.offset is not None:
            query = query.offset(int(options.offset))
        return Statement(query, query_type=QueryType.SELECT), items

    def count(self, where: Any = None, paranoid: bool = True, join: ThroughJoin | None = None) -> Statement:
        source, condition = self._source(join)
        query = sa.select(sa.func.count().label("count")).select_from(source)
        clause = _all_of(condition, self.compile_where(self.scoped_where(where, paranoid)))
        if clause is not None:
            query = query.where(clause)
        return Statement(query, query_type=QueryType.SELECT)

    def insert(self, values: Mapping[str, Any], returning: Sequence[str] = ()) -> Statement:
        query = sa.insert(self.table)
        if values:
            query = query.values({self.column(name).key: self._value(name, value) for name, value in values.items()})
        if returning:
            query = query.returning(*(self.column(name) for name in returning))
        return Statement(query, query_type=QueryType.INSERT)

    def update(self, values: Mapping[str, Any], where: Expression | None) -> Statement:
        if not values:
            raise QueryError("An UPDATE needs at least one value.")  # noqa: TRY003
        query = sa.update(self.table).values(
            {self.column(name).key: self._value(name, value) for name, value in values.items()}
        )
        clause = self.compile_where(where)
        if clause is not None:
            query = query.where(clause)
        return Statement(query, query_type=QueryType.UPDATE)

    def delete(self, where: Expression | None) -> Statement:
        query = sa.delete(self.table)
        clause = self.compile_where(where)
        if clause is not None:
            query = query.where(clause)
        return Statement(query, query_type=QueryType.DELETE)
