"""Activity worker pool with retry handling."""

from __future__ import annotations

import asyncio
import inspect
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any

from .exceptions import UnknownFunctionError
from .executor import error_details
from .models import ActivityTask
from .registry import FunctionRegistry
from .retries import RetryPolicy

logger = logging.getLogger(__name__)

CompletionHandler = Callable[[ActivityTask, Any], Awaitable[None]]
FailureHandler = Callable[[ActivityTask, dict[str, Any]], Awaitable[None]]


@dataclass
class ActivityContext:
    """Per-invocation information handed to activity functions."""

    instance_id: str
    task_id: int
    name: str
    attempt: int
    services: Any = None


@dataclass
class ActivityHandle:
    """Handle returned by `ActivityScheduler.schedule`."""

    task: ActivityTask
    done: asyncio.Future = field(repr=False)
    error: dict[str, Any] | None = None


class ActivityScheduler:
    """Executes activities on a pool of worker coroutines.

    Delivery to workers is at-least-once (tasks are re-dispatched on recovery);
    the engine records only the first completion per task id.
    """

    def __init__(
        self,
        registry: FunctionRegistry,
        *,
        worker_count: int = 4,
        default_retry_policy: RetryPolicy | None = None,
        services: Any = None,
    ):
        self.registry = registry
        self.worker_count = max(1, worker_count)
        self.default_retry_policy = default_retry_policy or RetryPolicy(max_attempts=1)
        self.services = services
        self._queue: asyncio.Queue[ActivityHandle] | None = None
        self._workers: list[asyncio.Task[None]] = []
        self._cancelled_instances: set[str] = set()
        self._on_completed: CompletionHandler | None = None
        self._on_failed: FailureHandler | None = None

    def set_handlers(self, on_completed: CompletionHandler, on_failed: FailureHandler) -> None:
        self._on_completed = on_completed
        self._on_failed = on_failed

    @property
    def queue(self) -> asyncio.Queue[ActivityHandle]:
        if self._queue is None:
            self._queue = asyncio.Queue()
        return self._queue

    @property
    def running(self) -> bool:
        return bool(self._workers)

    def start(self) -> None:
        if self._workers:
            return
        for index in range(self.worker_count):
            self._workers.append(
                asyncio.create_task(self._worker(index), name=f"activity-worker-{index}")
            )
        logger.info(
            "activity scheduler started workers=%s",
            self.worker_count,
            extra={"instance_id": "system"},
        )

    async def shutdown(self) -> None:
        workers, self._workers = self._workers, []
        for worker in workers:
            worker.cancel()
        for worker in workers:
            try:
                await worker
            except asyncio.CancelledError:
                pass

    def schedule(self, task: ActivityTask) -> ActivityHandle:
        """Queue an activity for execution and return its handle."""
        loop = asyncio.get_running_loop()
        handle = ActivityHandle(task=task, done=loop.create_future())
        self.queue.put_nowait(handle)
        logger.info(
            "activity scheduled name=%s task_id=%s",
            task.name,
            task.task_id,
            extra={"instance_id": task.instance_id},
        )
        return handle

    def cancel_instance(self, instance_id: str) -> None:
        """Skip queued tasks of `instance_id`; running attempts are not interrupted."""
        self._cancelled_instances.add(instance_id)

    def allow_instance(self, instance_id: str) -> None:
        """Undo `cancel_instance` when an instance id is started again."""
        self._cancelled_instances.discard(instance_id)

    async def _worker(self, index: int) -> None:
        while True:
            handle = await self.queue.get()
            try:
                await self._execute(handle)
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception(
                    "activity worker crashed worker=%s name=%s",
                    index,
                    handle.task.name,
                    extra={"instance_id": handle.task.instance_id},
                )
                if not handle.done.done():
                    handle.done.cancel()
            finally:
                self.queue.task_done()

    async def _execute(self, handle: ActivityHandle) -> None:
        task = handle.task
        if task.instance_id in self._cancelled_instances:
            logger.info(
                "skipping activity for terminated instance name=%s task_id=%s",
                task.name,
                task.task_id,
                extra={"instance_id": task.instance_id},
            )
            handle.done.cancel()
            return
        try:
            definition = self.registry.get_activity(task.name)
        except UnknownFunctionError as exc:
            await self._report_failure(handle, {**error_details(exc), "attempts": 0})
            return

        policy = task.retry_policy or definition.retry_policy or self.default_retry_policy
        attempt = 0
        while True:
            attempt += 1
            ctx = ActivityContext(
                instance_id=task.instance_id,
                task_id=task.task_id,
                name=task.name,
                attempt=attempt,
                services=self.services,
            )
            try:
                result = await self._invoke(definition.func, ctx, task.input)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                payload = {**error_details(exc), "attempts": attempt}
                if not policy.allows(attempt):
                    logger.error(
                        "activity failed name=%s task_id=%s attempts=%s error=%s",
                        task.name,
                        task.task_id,
                        attempt,
                        exc,
                        extra={"instance_id": task.instance_id},
                    )
                    await self._report_failure(handle, payload)
                    return
                delay = policy.delay_for(attempt)
                logger.warning(
                    "activity retrying name=%s task_id=%s attempt=%s backoff=%s",
                    task.name,
                    task.task_id,
                    attempt,
                    delay,
                    extra={"instance_id": task.instance_id},
                )
                if delay:
                    await asyncio.sleep(delay)
                if task.instance_id in self._cancelled_instances:
                    handle.done.cancel()
                    return
                continue

            logger.info(
                "activity completed name=%s task_id=%s attempt=%s",
                task.name,
                task.task_id,
                attempt,
                extra={"instance_id": task.instance_id},
            )
            if not handle.done.done():
                handle.done.set_result(result)
            if self._on_completed:
                await self._on_completed(task, result)
            return

    async def _report_failure(self, handle: ActivityHandle, payload: dict[str, Any]) -> None:
        handle.error = payload
        if not handle.done.done():
            handle.done.set_result(None)
        if self._on_failed:
            await self._on_failed(handle.task, payload)

    @staticmethod
    async def _invoke(func: Callable[..., Any], ctx: ActivityContext, payload: Any) -> Any:
        if inspect.iscoroutinefunction(func):
            return await func(ctx, payload)
        return await asyncio.to_thread(func, ctx, payload)
