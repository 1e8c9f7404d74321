class SequelError(Exception):
    """Base class for every error raised by sequel-core."""


class SchemaError(SequelError):
    """Raised when a model definition is invalid."""

    def __init__(self, message: str, model_name: str | None = None):
        self.model_name = model_name
        super().__init__(message)


class PrimaryKeyRequiredError(SchemaError):
    """Raised when a field called 'id' is defined without being marked as primary key."""

    def __init__(self, model_name: str):
        super().__init__(
            f"primary key required: a field called 'id' was added to the attributes of '{model_name}' "
            "but it is not marked with 'primary_key: True'.",
            model_name,
        )


class UnknownDataTypeError(SchemaError):
    """Raised when a field is declared with a type that is not a DataType."""

    def __init__(self, model_name: str, field_name: str, type_repr: str):
        super().__init__(f"Unrecognized data type {type_repr} for field '{model_name}.{field_name}'.", model_name)


class AssociationError(SchemaError):
    """Raised when an association cannot be wired between two models."""

    def __init__(self, source: str, target: str, reason: str):
        super().__init__(f"Cannot associate '{source}' with '{target}': {reason}", source)


class ValidationError(SequelError):
    """Raised when instance data fails validation. Nothing has been written when this is raised."""

    def __init__(self, message: str, model: str | None = None, field: str | None = None, rule: str | None = None):
        self.model = model
        self.field = field
        self.rule = rule
        super().__init__(message)


class NotNullViolationError(ValidationError):
    """Raised when a non-nullable field holds no value."""

    def __init__(self, model: str, field: str):
        super().__init__(f"notNull violation: {model}.{field} cannot be null", model, field, "not_null")


class QueryError(SequelError):
    """Raised when a filter, projection or ordering specification is malformed."""


class UnknownFieldError(QueryError):
    """Raised when a query refers to a field the model does not define."""

    def __init__(self, model_name: str, field_name: str):
        self.model_name = model_name
        self.field_name = field_name
        super().__init__(f"Model '{model_name}' has no field '{field_name}'.")


class UnsupportedOperatorError(QueryError):
    """Raised when a where clause uses an operator outside the supported set."""

    def __init__(self, operator: object):
        super().__init__(f"Operator {operator!r} is not supported.")


class DatabaseError(SequelError):
    """Raised when the database connection reports a failure. The driver message is kept verbatim."""

    def __init__(self, message: str, sql: str | None = None):
        self.sql = sql
        super().__init__(message)


class NotFoundError(SequelError):
    """Base class for 'object not found' conditions."""


class TableNotFoundError(DatabaseError, NotFoundError):
    """Raised when a statement refers to a table that does not exist in the database."""


class EmptyResultError(NotFoundError):
    """Raised when a query expecting exactly one row found none."""

    def __init__(self, model_name: str):
        self.model_name = model_name
        super().__init__(f"No '{model_name}' row matched the query.")


class TransactionNotActiveError(SequelError):
    """Raised when a statement is issued on a transaction that is closed or was never opened."""

    def __init__(self):
        super().__init__("Transaction is not active.")


class MissingPrimaryKeyError(QueryError):
    """Raised when an instance without primary key values is saved, destroyed or reloaded."""

    def __init__(self, model_name: str):
        self.model_name = model_name
        super().__init__(f"Instance of '{model_name}' has no primary key value to address its row.")


class ModelNotFoundError(NotFoundError):
    """Raised when a registry is asked for a model that was never defined."""

    def __init__(self, model_name: str):
        self.model_name = model_name
        super().__init__(f"Model '{model_name}' is not defined.")
