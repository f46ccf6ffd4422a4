"""Pydantic models describing the declaration file (TOML or JSON)."""

from __future__ import annotations

from typing import Literal, cast

from pydantic import BaseModel, ConfigDict, Field, PositiveFloat, model_validator

RESERVED_RESOURCE_KEYS = frozenset({"provider", "for_each", "depends_on", "lifecycle"})


class DeclarationBaseModel(BaseModel):
    model_config = ConfigDict(extra="forbid", populate_by_name=True)


class SchemaPolicyModel(DeclarationBaseModel):
    force_new: list[str] = Field(default_factory=list)
    immutable: list[str] = Field(default_factory=list)


class ProviderModel(DeclarationBaseModel):
    kind: Literal["memory", "http"] = Field(default="memory", alias="type")
    region: str | None = None
    endpoint: str | None = None
    timeout_seconds: PositiveFloat = 30.0
    rate_limit: PositiveFloat | None = None
    token_env: str | None = None
    schemas: dict[str, SchemaPolicyModel] = Field(default_factory=dict)

    @model_validator(mode="after")
    def _http_needs_endpoint(self) -> ProviderModel:
        if self.kind == "http" and not self.endpoint:
            raise ValueError("http providers need an endpoint")
        return self


class LifecycleModel(DeclarationBaseModel):
    create_before_destroy: bool = False
    prevent_destroy: bool = False
    ignore_changes: list[str] = Field(default_factory=list)


class ResourceModel(BaseModel):
    """One resource table; every key that is not reserved is an attribute."""

    model_config = ConfigDict(extra="allow")

    provider: str | None = None
    for_each: list[str | int] | dict[str, object] | str | None = None
    depends_on: list[str] = Field(default_factory=list)
    lifecycle: LifecycleModel = Field(default_factory=LifecycleModel)

    def attributes(self) -> dict[str, object]:
        return dict(cast(dict[str, object], self.model_extra or {}))


class DeclarationFileModel(DeclarationBaseModel):
    provider: dict[str, ProviderModel] = Field(default_factory=dict)
    resource: dict[str, dict[str, ResourceModel]] = Field(default_factory=dict)
