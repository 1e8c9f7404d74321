"""Configuration objects for model definitions.

`ModelOptions` holds the per-model options accepted by `Registry.define`.
It is a pydantic model so that misspelled option names and wrong value
types are rejected when the model is defined rather than at query time.
"""

from collections.abc import Callable, Mapping
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

CREATED_AT = "createdAt"
UPDATED_AT = "updatedAt"
DELETED_AT = "deletedAt"

ModelValidator = Callable[[Mapping[str, Any]], Any]


class ModelOptions(BaseModel):
    """Options of a model definition.

    Attributes:
        table_name: Explicit table name. When None the pluralized model name is used.
        timestamps: Inject and maintain `createdAt` / `updatedAt`.
        paranoid: Inject `deletedAt` and turn `destroy()` into a soft delete.
        validators: Model-level validators. Each receives a read-only mapping of the
            pending field values and signals failure by raising.

    Example:
        ```python
        registry.define(
            "user",
            {"id": Field(BIGINT, primary_key=True), "username": STRING},
            table_name="user",
            timestamps=False,
            validators={"username_is_set": lambda values: ...},
        )
        ```
    """

    model_config = ConfigDict(extra="forbid", frozen=True, arbitrary_types_allowed=True)

    table_name: str | None = None
    timestamps: bool = True
    paranoid: bool = False
    validators: dict[str, ModelValidator] = Field(default_factory=dict)

    @field_validator("table_name")
    @classmethod
    def _table_name_not_blank(cls, value: str | None) -> str | None:
        if value is not None and not value.strip():
            raise ValueError("table_name must not be blank")  # noqa: TRY003
        return value

    @field_validator("validators")
    @classmethod
    def _validators_callable(cls, value: dict[str, ModelValidator]) -> dict[str, ModelValidator]:
        for name, validator in value.items():
            if not callable(validator):
                raise ValueError(f"model validator '{name}' is not callable")  # noqa: TRY003
        return value
