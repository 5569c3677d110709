"""Single-writer execution of entity operations."""

from __future__ import annotations

import asyncio
import inspect
import logging
from collections.abc import Coroutine
from dataclasses import dataclass
from typing import Any

from pydantic_core import to_jsonable_python

from ..lease import InstanceLease, NoopInstanceLease, entity_lease_key
from ..orchestration.exceptions import EntityOperationError
from ..orchestration.executor import error_details
from ..orchestration.registry import FunctionRegistry
from ..schemas import iso_timestamp
from .models import DurableEntity, EntityId, EntityOperation, EntityRecord
from .store import EntityRecordStore

logger = logging.getLogger(__name__)


@dataclass
class EntityWorker:
    """The one coroutine allowed to mutate a given entity key."""

    entity_id: EntityId
    task: asyncio.Task[None] | None = None


class EntityStore:
    """Queues signals per entity key and applies them one at a time.

    Signals are persisted before they are acknowledged to the caller and are
    applied in FIFO order by a per-key worker. Reads return the last committed
    state and never wait for queued operations, so a read that follows a
    signal may not observe it.
    """

    def __init__(
        self,
        registry: FunctionRegistry,
        records: EntityRecordStore,
        *,
        lease: InstanceLease | None = None,
    ):
        self.registry = registry
        self.records = records
        self.lease = lease or NoopInstanceLease()
        self._workers: dict[str, EntityWorker] = {}
        self._waiters: dict[str, asyncio.Future[Any]] = {}
        self._lock = asyncio.Lock()
        self._background: set[asyncio.Task[Any]] = set()
        self._closing = False

    def entity_class(self, entity_id: EntityId) -> type[DurableEntity]:
        return self.registry.get_entity(entity_id.entity_type)

    async def signal(
        self, entity_id: EntityId | str, operation: str, input: Any = None
    ) -> str:
        """Queue `operation` for the entity and return the operation id."""
        eid = EntityId.coerce(entity_id)
        entity_cls = self.entity_class(eid)
        if operation not in entity_cls.operations():
            raise EntityOperationError(str(eid), operation, "unknown operation")
        queued = EntityOperation(operation=operation, input=to_jsonable_python(input))
        self.records.append_operation(str(eid), queued)
        logger.info(
            "entity operation queued operation=%s operation_id=%s",
            operation,
            queued.operation_id,
            extra={"instance_id": str(eid)},
        )
        await self._ensure_worker(eid)
        return queued.operation_id

    async def call(
        self,
        entity_id: EntityId | str,
        operation: str,
        input: Any = None,
        *,
        timeout: float | None = None,
    ) -> Any:
        """Queue `operation` and wait for its result.

        Only operations applied by a worker in this process resolve the call.
        """
        eid = EntityId.coerce(entity_id)
        entity_cls = self.entity_class(eid)
        if operation not in entity_cls.operations():
            raise EntityOperationError(str(eid), operation, "unknown operation")
        queued = EntityOperation(operation=operation, input=to_jsonable_python(input))
        future: asyncio.Future[Any] = asyncio.get_running_loop().create_future()
        self._waiters[queued.operation_id] = future
        self.records.append_operation(str(eid), queued)
        await self._ensure_worker(eid)
        try:
            return await asyncio.wait_for(future, timeout=timeout)
        finally:
            self._waiters.pop(queued.operation_id, None)

    def read_state(self, entity_id: EntityId | str) -> EntityRecord:
        """Return the last committed record (an empty one if never written)."""
        eid = EntityId.coerce(entity_id)
        self.entity_class(eid)
        return self.records.load(str(eid)) or EntityRecord.empty(eid)

    def pending_operations(self, entity_id: EntityId | str) -> int:
        return len(self.records.peek_operations(str(EntityId.coerce(entity_id))))

    async def start(self) -> int:
        """Resume workers for every entity with queued operations."""
        resumed = 0
        for raw_id in self.records.list_entity_ids():
            if not self.records.peek_operations(raw_id):
                continue
            try:
                eid = EntityId.parse(raw_id)
            except ValueError:
                logger.warning("skipping malformed entity id", extra={"instance_id": raw_id})
                continue
            await self._ensure_worker(eid)
            resumed += 1
        return resumed

    async def shutdown(self) -> None:
        self._closing = True
        tasks = [worker.task for worker in self._workers.values() if worker.task]
        tasks.extend(self._background)
        for task in tasks:
            task.cancel()
        for task in tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
            except Exception:
                logger.exception("entity worker failed during shutdown")
        self._workers.clear()
        self._background.clear()
        for future in self._waiters.values():
            if not future.done():
                future.cancel()

    async def _ensure_worker(self, eid: EntityId) -> None:
        key = str(eid)
        async with self._lock:
            if key in self._workers:
                return
            if not await self.lease.acquire(entity_lease_key(key)):
                logger.info(
                    "entity lease unavailable; another worker owns it",
                    extra={"instance_id": key},
                )
                return
            worker = EntityWorker(entity_id=eid)
            self._workers[key] = worker
            worker.task = asyncio.create_task(self._run_worker(worker), name=f"entity-{key}")

    async def _run_worker(self, worker: EntityWorker) -> None:
        eid = worker.entity_id
        key = str(eid)
        try:
            while True:
                if not await self.lease.refresh(entity_lease_key(key)):
                    return
                pending = self.records.peek_operations(key)
                if not pending:
                    return
                await self._apply(eid, pending[0])
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("entity worker crashed", extra={"instance_id": key})
        finally:
            async with self._lock:
                if self._workers.get(key) is worker:
                    self._workers.pop(key, None)
                await self.lease.release(entity_lease_key(key))
            if not self._closing and self.records.peek_operations(key):
                self._spawn(self._ensure_worker(eid))

    async def _apply(self, eid: EntityId, queued: EntityOperation) -> None:
        key = str(eid)
        record = self.records.load(key) or EntityRecord.empty(eid)
        entity_cls = self.entity_class(eid)
        waiter = self._waiters.get(queued.operation_id)
        try:
            entity = entity_cls.model_validate(record.state) if record.exists else entity_cls()
            result = entity.dispatch(queued.operation, queued.input)
            if inspect.isawaitable(result):
                result = await result
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            record.last_error = {
                **error_details(exc),
                "operation": queued.operation,
                "operation_id": queued.operation_id,
            }
            logger.warning(
                "entity operation failed operation=%s error=%s",
                queued.operation,
                exc,
                extra={"instance_id": key},
            )
            outcome: BaseException | None = EntityOperationError(key, queued.operation, str(exc))
            result = None
        else:
            record.state = entity.snapshot()
            record.exists = True
            record.version += 1
            outcome = None
            logger.info(
                "entity operation applied operation=%s version=%s",
                queued.operation,
                record.version,
                extra={"instance_id": key},
            )
        record.updated_at = iso_timestamp()
        self.records.save(record)
        self.records.ack_operations(key, 1)
        if waiter is not None and not waiter.done():
            if outcome is not None:
                waiter.set_exception(outcome)
            else:
                waiter.set_result(result)

    def _spawn(self, coro: Coroutine[Any, Any, Any]) -> None:
        task = asyncio.create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)
