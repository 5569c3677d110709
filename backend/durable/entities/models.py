"""Durable entity identities, persisted records and the entity base class."""

from __future__ import annotations

import inspect
from typing import Any
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field

from ..schemas import iso_timestamp


class EntityId(BaseModel):
    """Entity type name plus key; rendered as `@type@key`."""

    model_config = ConfigDict(frozen=True)

    entity_type: str
    key: str

    def __str__(self) -> str:
        return f"@{self.entity_type}@{self.key}"

    @classmethod
    def parse(cls, value: str) -> "EntityId":
        if not value.startswith("@"):
            raise ValueError(f"entity id must look like @type@key, got {value!r}")
        entity_type, sep, key = value[1:].partition("@")
        if not sep or not entity_type or not key:
            raise ValueError(f"entity id must look like @type@key, got {value!r}")
        return cls(entity_type=entity_type, key=key)

    @classmethod
    def coerce(cls, value: "EntityId | str") -> "EntityId":
        if isinstance(value, EntityId):
            return value
        return cls.parse(value)


class EntityOperation(BaseModel):
    """A queued operation waiting for the entity's single writer."""

    model_config = ConfigDict(extra="forbid")

    operation_id: str = Field(default_factory=lambda: uuid4().hex)
    operation: str
    input: Any = None
    enqueued_at: str = Field(default_factory=iso_timestamp)


class EntityRecord(BaseModel):
    """Last committed state of one entity key."""

    model_config = ConfigDict(extra="forbid")

    entity_id: str
    entity_type: str
    key: str
    exists: bool = False
    state: Any = None
    version: int = 0
    last_error: dict[str, Any] | None = None
    updated_at: str = Field(default_factory=iso_timestamp)

    @classmethod
    def empty(cls, entity_id: EntityId) -> "EntityRecord":
        return cls(
            entity_id=str(entity_id),
            entity_type=entity_id.entity_type,
            key=entity_id.key,
        )


class DurableEntity(BaseModel):
    """Base class for entity state.

    Fields are the persisted state; public methods declared on subclasses are
    the operations. An operation takes at most one argument (the signal input).
    """

    model_config = ConfigDict(populate_by_name=True, validate_assignment=True)

    @classmethod
    def operations(cls) -> list[str]:
        names: set[str] = set()
        for klass in cls.__mro__:
            if klass is DurableEntity:
                break
            for name, member in vars(klass).items():
                if not name.startswith("_") and inspect.isfunction(member):
                    names.add(name)
        return sorted(names)

    def dispatch(self, operation: str, input: Any = None) -> Any:
        if operation not in self.operations():
            raise AttributeError(f"{type(self).__name__} has no operation {operation!r}")
        method = getattr(self, operation)
        if inspect.signature(method).parameters:
            return method(input)
        if input is not None:
            raise TypeError(f"operation {operation!r} takes no input")
        return method()

    def snapshot(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)
