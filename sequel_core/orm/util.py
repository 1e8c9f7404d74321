"""Naming and SQL text helpers shared by the ORM modules."""

import re
from collections.abc import Mapping, Sequence
from typing import Any

_CAMEL_BOUNDARY = re.compile(r"(?<=[a-z0-9])([A-Z])")


def pluralize(name: str) -> str:
    """Return a deterministic English plural of a model name.

    Example:
        >>> pluralize("user"), pluralize("company"), pluralize("box")
        ('users', 'companies', 'boxes')
    """
    if not name:
        return name
    lower = name.lower()
    if lower.endswith(("s", "x", "z", "ch", "sh")):
        return name + "es"
    if lower.endswith("y") and len(lower) > 1 and lower[-2] not in "aeiou":
        return name[:-1] + "ies"
    return name + "s"


def singularize(name: str) -> str:
    """Reverse `pluralize` for the regular cases it produces."""
    lower = name.lower()
    if lower.endswith("ies") and len(lower) > 3:
        return name[:-3] + "y"
    if lower.endswith(("ses", "xes", "zes", "ches", "shes")):
        return name[:-2]
    if lower.endswith("s") and not lower.endswith("ss"):
        return name[:-1]
    return name


def to_snake(name: str) -> str:
    """Convert a camelCase or PascalCase name to snake_case."""
    return _CAMEL_BOUNDARY.sub(r"_\1", name).lower()


def bind_raw_parameters(sql: str, values: Sequence[Any] | Mapping[str, Any] | None) -> tuple[str, dict[str, Any]]:
    """Turn a raw statement and its values into named-parameter form.

    Positional values replace ``?`` placeholders in order and become
    ``:p1``, ``:p2``, ... Mapping values are used as-is for ``:name``
    placeholders. Colons inside quoted literals are escaped so they are not
    mistaken for parameters.

    Args:
        sql: Statement text.
        values: Positional sequence, mapping, or None.

    Returns:
        The rewritten statement and the parameter mapping.

    Raises:
        ValueError: If the number of positional values does not match the placeholders.
    """
    positional = values is not None and not isinstance(values, Mapping)
    params: dict[str, Any] = {} if positional or values is None else dict(values)  # type: ignore[arg-type]
    pending = list(values) if positional else []  # type: ignore[arg-type]

    out: list[str] = []
    quote: str | None = None
    for char in sql:
        if quote is not None:
            if char == quote:
                quote = None
            out.append("\\:" if char == ":" else char)
            continue
        if char in ("'", '"'):
            quote = char
            out.append(char)
        elif char == "?" and positional:
            if not pending:
                raise ValueError("Not enough values for the '?' placeholders in the statement.")  # noqa: TRY003
            name = f"p{len(params) + 1}"
            params[name] = pending.pop(0)
            out.append(f":{name}")
        else:
            out.append(char)

    if pending:
        raise ValueError("Too many values for the '?' placeholders in the statement.")  # noqa: TRY003
    return "".join(out), params
