"""Name-based registry for orchestrators, activities and entity types."""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, TypeVar

from .exceptions import UnknownFunctionError
from .retries import RetryPolicy

if TYPE_CHECKING:
    from ..entities.models import DurableEntity

F = TypeVar("F", bound=Callable[..., Any])

OrchestratorFunc = Callable[..., Any]
ActivityFunc = Callable[..., Any]


@dataclass(frozen=True)
class ActivityDefinition:
    name: str
    func: ActivityFunc
    retry_policy: RetryPolicy | None = None


class FunctionRegistry:
    """Holds the functions the engine, scheduler and entity store dispatch to."""

    def __init__(self) -> None:
        self._orchestrators: dict[str, OrchestratorFunc] = {}
        self._activities: dict[str, ActivityDefinition] = {}
        self._entities: dict[str, type[DurableEntity]] = {}

    def add_orchestrator(self, name: str, func: OrchestratorFunc) -> None:
        """Register (or replace) an orchestrator function."""
        self._orchestrators[name] = func

    def add_activity(
        self,
        name: str,
        func: ActivityFunc,
        *,
        retry_policy: RetryPolicy | None = None,
    ) -> None:
        """Register (or replace) an activity function."""
        self._activities[name] = ActivityDefinition(name, func, retry_policy)

    def add_entity(self, name: str, entity_cls: type[DurableEntity]) -> None:
        """Register (or replace) a durable entity class."""
        self._entities[name] = entity_cls

    def orchestrator(self, name: str) -> Callable[[F], F]:
        def decorator(func: F) -> F:
            self.add_orchestrator(name, func)
            return func

        return decorator

    def activity(
        self, name: str, *, retry_policy: RetryPolicy | None = None
    ) -> Callable[[F], F]:
        def decorator(func: F) -> F:
            self.add_activity(name, func, retry_policy=retry_policy)
            return func

        return decorator

    def get_orchestrator(self, name: str) -> OrchestratorFunc:
        func = self._orchestrators.get(name)
        if func is None:
            raise UnknownFunctionError("orchestrator", name)
        return func

    def get_activity(self, name: str) -> ActivityDefinition:
        definition = self._activities.get(name)
        if definition is None:
            raise UnknownFunctionError("activity", name)
        return definition

    def get_entity(self, name: str) -> type[DurableEntity]:
        entity_cls = self._entities.get(name)
        if entity_cls is None:
            raise UnknownFunctionError("entity", name)
        return entity_cls

    def has_orchestrator(self, name: str) -> bool:
        return name in self._orchestrators

    def orchestrator_names(self) -> list[str]:
        return sorted(self._orchestrators)

    def activity_names(self) -> list[str]:
        return sorted(self._activities)

    def entity_names(self) -> list[str]:
        return sorted(self._entities)
