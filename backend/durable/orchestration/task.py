"""Awaitable task objects yielded by orchestrator generators.

Tasks are plain state holders. They are completed by the replay executor while
it walks the history log; orchestrator code only ever sees them through
`yield`, which returns the result or raises the recorded failure.
"""

from __future__ import annotations

from collections.abc import Sequence
from typing import Any

from .models import OrchestratorAction


class Task:
    """Base class for anything an orchestrator may yield."""

    def __init__(self) -> None:
        self._complete = False
        self._result: Any = None
        self._exception: BaseException | None = None
        self._parent: CompositeTask | None = None
        self.completed_seq: int | None = None

    @property
    def is_complete(self) -> bool:
        return self._complete

    @property
    def is_failed(self) -> bool:
        return self._exception is not None

    @property
    def result(self) -> Any:
        if self._exception is not None:
            raise self._exception
        return self._result

    @property
    def exception(self) -> BaseException | None:
        return self._exception

    def complete(self, result: Any, seq: int | None = None) -> None:
        if self._complete:
            return
        self._complete = True
        self._result = result
        self.completed_seq = seq
        if self._parent is not None:
            self._parent.on_child_completed(self)

    def fail(self, exception: BaseException, seq: int | None = None) -> None:
        if self._complete:
            return
        self._complete = True
        self._exception = exception
        self.completed_seq = seq
        if self._parent is not None:
            self._parent.on_child_completed(self)


class DurableTask(Task):
    """A task backed by a scheduling decision recorded in history."""

    def __init__(self, action: OrchestratorAction) -> None:
        super().__init__()
        self.action = action

    @property
    def task_id(self) -> int:
        return self.action.task_id

    def __repr__(self) -> str:
        return f"DurableTask(kind={self.action.kind.value}, task_id={self.task_id}, name={self.action.name!r})"


class ExternalEventTask(Task):
    """Completes when an event with a matching name is raised."""

    def __init__(self, name: str) -> None:
        super().__init__()
        self.name = name

    def __repr__(self) -> str:
        return f"ExternalEventTask(name={self.name!r})"


class CompositeTask(Task):
    """A task whose completion depends on a group of child tasks."""

    def __init__(self, tasks: Sequence[Task]) -> None:
        super().__init__()
        if not tasks:
            raise ValueError("composite tasks require at least one child task")
        self.children = list(tasks)
        for child in self.children:
            if child._parent is not None:
                raise ValueError(f"{child!r} already belongs to another composite task")
            child._parent = self
        done = [child for child in self.children if child.is_complete]
        for child in sorted(done, key=lambda task: task.completed_seq or 0):
            self.on_child_completed(child)

    def on_child_completed(self, child: Task) -> None:
        raise NotImplementedError


class WhenAllTask(CompositeTask):
    """Fan-in: completes with child results in submission order."""

    def __init__(self, tasks: Sequence[Task], *, fail_fast: bool = True) -> None:
        self.fail_fast = fail_fast
        super().__init__(tasks)

    def on_child_completed(self, child: Task) -> None:
        if self.is_complete:
            return
        if child.is_failed and self.fail_fast:
            self.fail(child.exception, child.completed_seq)  # type: ignore[arg-type]
            return
        if not all(task.is_complete for task in self.children):
            return
        failed = [task for task in self.children if task.is_failed]
        if failed:
            first = min(failed, key=lambda task: task.completed_seq or 0)
            self.fail(first.exception, child.completed_seq)  # type: ignore[arg-type]
            return
        self.complete([task._result for task in self.children], child.completed_seq)


class WhenAnyTask(CompositeTask):
    """Completes with the first child task to finish in history order."""

    def on_child_completed(self, child: Task) -> None:
        if self.is_complete:
            return
        self.complete(child, child.completed_seq)
