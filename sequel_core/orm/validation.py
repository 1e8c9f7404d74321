"""Field and model validation.

Field rules are declared on `Field.validate` as ``{rule_name: argument}``.
Built-in rules follow the usual validator vocabulary (``is``, ``not``,
``is_email``, ``len``, ...); any rule whose argument is callable is a
custom rule called with the value. Model-level validators receive a
read-only mapping of all pending values.

Validation runs before any statement is built, so a failing instance never
causes a partial write.
"""

import re
from collections.abc import Callable, Mapping
from types import MappingProxyType
from typing import TYPE_CHECKING, Any

from pydantic import AnyUrl, EmailStr, TypeAdapter
from pydantic import ValidationError as PydanticValidationError

from sequel_core.exceptions import NotNullViolationError, SchemaError, ValidationError

if TYPE_CHECKING:
    from sequel_core.orm.schema import Field, ModelDefinition

_EMAIL = TypeAdapter(EmailStr)
_URL = TypeAdapter(AnyUrl)


def _pattern(argument: Any) -> re.Pattern:
    if isinstance(argument, re.Pattern):
        return argument
    if isinstance(argument, list | tuple):
        pattern, flags = argument
        return re.compile(pattern, _flags(flags))
    return re.compile(argument)


def _flags(flags: str | int) -> int:
    if isinstance(flags, int):
        return flags
    mapping = {"i": re.IGNORECASE, "m": re.MULTILINE, "s": re.DOTALL}
    result = 0
    for char in flags:
        result |= mapping.get(char, 0)
    return result


def _accepts(adapter: TypeAdapter, value: Any) -> bool:
    try:
        adapter.validate_python(str(value))
    except PydanticValidationError:
        return False
    return True


def _length_between(value: Any, bounds: Any) -> bool:
    low, high = bounds
    return low <= len(value) <= high


def _is_int(value: Any) -> bool:
    if isinstance(value, bool):
        return False
    if isinstance(value, int):
        return True
    return isinstance(value, str) and re.fullmatch(r"[-+]?\d+", value) is not None


def _is_numeric(value: Any) -> bool:
    if isinstance(value, bool):
        return False
    if isinstance(value, int | float):
        return True
    return isinstance(value, str) and re.fullmatch(r"[-+]?\d+(\.\d+)?", value) is not None


RULES: dict[str, Callable[[Any, Any], bool]] = {
    "is": lambda value, arg: _pattern(arg).search(str(value)) is not None,
    "not": lambda value, arg: _pattern(arg).search(str(value)) is None,
    "is_email": lambda value, arg: _accepts(_EMAIL, value),
    "is_url": lambda value, arg: _accepts(_URL, value),
    "is_int": lambda value, arg: _is_int(value),
    "is_numeric": lambda value, arg: _is_numeric(value),
    "is_alpha": lambda value, arg: str(value).isalpha(),
    "is_alphanumeric": lambda value, arg: str(value).isalnum(),
    "is_lowercase": lambda value, arg: str(value) == str(value).lower(),
    "is_uppercase": lambda value, arg: str(value) == str(value).upper(),
    "not_empty": lambda value, arg: str(value).strip() != "",
    "len": _length_between,
    "min": lambda value, arg: value >= arg,
    "max": lambda value, arg: value <= arg,
    "is_in": lambda value, arg: value in arg,
    "not_in": lambda value, arg: value not in arg,
    "contains": lambda value, arg: arg in str(value),
}

# Rules taking no argument are switched on with True and off with False.
_FLAG_RULES = {"is_email", "is_url", "is_int", "is_numeric", "is_alpha", "is_alphanumeric",
               "is_lowercase", "is_uppercase", "not_empty"}


def check_rules(model_name: str, fields: Mapping[str, "Field"]) -> None:
    """Reject unknown rule names at define time.

    Raises:
        SchemaError: If a field declares a rule that is neither built in nor callable.
    """
    for name, field_def in fields.items():
        for rule, argument in field_def.validate.items():
            if rule not in RULES and not callable(argument):
                raise SchemaError(f"Unknown validation rule '{rule}' on field '{model_name}.{name}'.", model_name)


def validate_field(model_name: str, name: str, field_def: "Field", value: Any) -> None:
    """Run the rules of one field against a non-null value in declaration order.

    Raises:
        ValidationError: On the first failing rule.
    """
    for rule, argument in field_def.validate.items():
        if callable(argument):
            try:
                argument(value)
            except Exception as e:
                raise ValidationError(str(e), model_name, name, rule) from e
            continue
        if rule in _FLAG_RULES and argument is False:
            continue
        try:
            passed = RULES[rule](value, argument)
        except (TypeError, ValueError):
            passed = False
        if not passed:
            raise ValidationError(f"Validation {rule} on {name} failed", model_name, name, rule)


def validate_values(
    definition: "ModelDefinition",
    values: dict[str, Any],
    *,
    is_new: bool,
    only: set[str] | None = None,
    run_model_validators: bool = True,
) -> dict[str, Any]:
    """Validate (and coerce) pending values of an instance.

    Field-level checks run in field declaration order, model-level
    validators afterwards.

    Args:
        definition: Model definition of the instance.
        values: Current instance values. Coerced values are written back.
        is_new: The instance has not been inserted yet; absent non-null fields fail.
        only: Restrict field checks to these fields (model validators still run).
        run_model_validators: Run model-level validators after the field checks.

    Returns:
        The values mapping, with coerced values.

    Raises:
        ValidationError: On the first failure.
    """
    managed = definition.managed_fields
    for name, field_def in definition.fields.items():
        if only is not None and name not in only:
            continue
        if name in managed:
            continue
        present = name in values
        if not present and not is_new:
            continue
        value = values.get(name)

        if value is None:
            if field_def.allow_null and not field_def.primary_key:
                continue
            if field_def.auto_increment:
                continue
            raise NotNullViolationError(definition.name, name)

        try:
            value = field_def.type.coerce(value)
        except (TypeError, ValueError) as e:
            msg = f"Invalid value {value!r} for {definition.name}.{name}: {e}"
            raise ValidationError(msg, definition.name, name, "type") from e
        values[name] = value
        validate_field(definition.name, name, field_def, value)

    if run_model_validators and definition.validators:
        snapshot = MappingProxyType(dict(values))
        for validator_name, validator in definition.validators.items():
            try:
                validator(snapshot)
            except ValidationError:
                raise
            except Exception as e:
                raise ValidationError(str(e), definition.name, None, validator_name) from e
    return values
