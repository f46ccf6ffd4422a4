"""Pydantic models describing the REST provider payloads."""

from __future__ import annotations

from typing import cast

from pydantic import BaseModel, ConfigDict, Field, field_validator


class HttpBaseModel(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)


class ResourcePayload(HttpBaseModel):
    """Object representation returned by create, read and update.

    Everything besides ``id`` is treated as provider-computed output.
    """

    model_config = ConfigDict(extra="allow", populate_by_name=True)

    id: str = Field(min_length=1)

    @field_validator("id", mode="before")
    @classmethod
    def _coerce_id(cls, value: object) -> object:
        if isinstance(value, int) and not isinstance(value, bool):
            return str(value)
        return value

    def outputs(self) -> dict[str, object]:
        extra = cast(dict[str, object], self.model_extra or {})
        return {"id": self.id, **extra}


class ErrorResponse(HttpBaseModel):
    error: str | None = None
    message: str | None = None

    def describe(self) -> str | None:
        if self.error and self.message:
            return f"{self.error}: {self.message}"
        return self.message or self.error
