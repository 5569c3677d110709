"""HTTP routes for orchestrations, callbacks and entities.

This module is safe to import: it does not construct runtime singletons or
perform filesystem/network side effects.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

from fastapi import APIRouter, Body, HTTPException, Query, Request, status
from fastapi.responses import JSONResponse

from .approval.counter import COUNTER_ID
from .entities.models import EntityId
from .orchestration.exceptions import (
    AlreadyConsumedError,
    CorrelationExpiredError,
    DuplicateInstanceError,
    EntityOperationError,
    InstanceNotFoundError,
    UnknownFunctionError,
    UnknownTokenError,
)
from .orchestration.models import OrchestrationInstance
from .schemas import (
    ApprovalResult,
    CheckStatusResponse,
    EntityStateResponse,
    InstanceStatusResponse,
    TerminateRequest,
)

if TYPE_CHECKING:
    from .container import DurableContainer

logger = logging.getLogger(__name__)


def _log(message: str, instance_id: str, *args: object) -> None:
    logger.info(message, *args, extra={"instance_id": instance_id})


def _check_status(request: Request, instance_id: str) -> CheckStatusResponse:
    base = str(request.base_url).rstrip("/")
    return CheckStatusResponse(
        id=instance_id,
        status_query_uri=f"{base}/orchestrations/{instance_id}",
        send_event_uri=f"{base}/instances/{instance_id}/raiseEvent/{{eventName}}",
        terminate_uri=f"{base}/instances/{instance_id}/terminate",
    )


def _status_view(instance: OrchestrationInstance, *, show_history: bool) -> dict[str, Any]:
    view = InstanceStatusResponse(
        instance_id=instance.instance_id,
        name=instance.name,
        status=instance.status.value,
        input=instance.input,
        output=instance.output,
        custom_status=instance.custom_status,
        error=instance.error,
        created_at=instance.created_at,
        last_updated_at=instance.updated_at,
        history=[event.model_dump(mode="json") for event in instance.history]
        if show_history
        else None,
    )
    if show_history:
        return view.model_dump(by_alias=True)
    return view.model_dump(by_alias=True, exclude={"history"})


def _entity_id(entity_type: str, key: str) -> EntityId:
    return EntityId(entity_type=entity_type, key=key)


def get_router(container: "DurableContainer") -> APIRouter:
    """Build API routes using the provided dependency container."""

    router = APIRouter()
    engine = container.engine
    entities = container.entity_store
    gateway = container.gateway

    async def _start(request: Request, name: str, instance_id: str | None, payload: Any) -> JSONResponse:
        try:
            started = await engine.start_instance(name, payload, instance_id)
        except UnknownFunctionError as exc:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
        except DuplicateInstanceError as exc:
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
        _log("orchestration accepted name=%s", started, name)
        body = _check_status(request, started).model_dump(by_alias=True)
        return JSONResponse(
            body,
            status_code=status.HTTP_202_ACCEPTED,
            headers={"Location": body["statusQueryGetUri"]},
        )

    @router.post("/orchestrations/{name}")
    async def start_orchestration(
        request: Request, name: str, payload: Any = Body(default=None)
    ) -> JSONResponse:
        """Start a new instance with a generated id."""
        return await _start(request, name, None, payload)

    @router.post("/orchestrations/{name}/{instance_id}")
    async def start_singleton(
        request: Request, name: str, instance_id: str, payload: Any = Body(default=None)
    ) -> JSONResponse:
        """Start an instance under a caller-chosen id; 409 while one is still active."""
        return await _start(request, name, instance_id, payload)

    @router.get("/orchestrations/{instance_id}")
    async def orchestration_status(
        instance_id: str, show_history: bool = Query(default=False)
    ) -> JSONResponse:
        instance = engine.get_status(instance_id)
        if instance is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="instance not found")
        return JSONResponse(_status_view(instance, show_history=show_history))

    @router.post("/instances/{instance_id}/raiseEvent/{event_name}")
    async def raise_event(
        instance_id: str, event_name: str, payload: Any = Body(default=None)
    ) -> JSONResponse:
        try:
            accepted = await engine.raise_event(instance_id, event_name, payload)
        except InstanceNotFoundError as exc:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
        if not accepted:
            raise HTTPException(status_code=status.HTTP_410_GONE, detail="instance already finished")
        return JSONResponse({"status": "accepted"}, status_code=status.HTTP_202_ACCEPTED)

    @router.post("/instances/{instance_id}/terminate")
    async def terminate(instance_id: str, payload: TerminateRequest | None = None) -> JSONResponse:
        reason = payload.reason if payload else None
        try:
            accepted = await engine.terminate(instance_id, reason)
        except InstanceNotFoundError as exc:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
        if not accepted:
            raise HTTPException(status_code=status.HTTP_410_GONE, detail="instance already finished")
        _log("termination requested reason=%s", instance_id, reason)
        return JSONResponse({"status": "accepted"}, status_code=status.HTTP_202_ACCEPTED)

    @router.get("/callback/{token}")
    async def approval_callback(token: str, result: str | None = Query(default=None)) -> JSONResponse:
        """One-shot approval link; the `result` query value becomes the event payload."""
        allowed = {item.value for item in ApprovalResult}
        if not result or result not in allowed:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail=f"result must be one of {sorted(allowed)}",
            )
        try:
            record = await gateway.deliver(token, result)
        except UnknownTokenError as exc:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
        except (AlreadyConsumedError, CorrelationExpiredError) as exc:
            raise HTTPException(status_code=status.HTTP_410_GONE, detail=str(exc)) from exc
        except InstanceNotFoundError as exc:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
        return JSONResponse({"status": "delivered", "instanceId": record.instance_id, "result": result})

    def _entity_state(eid: EntityId) -> EntityStateResponse:
        try:
            record = entities.read_state(eid)
        except UnknownFunctionError as exc:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
        return EntityStateResponse(
            entity_id=record.entity_id,
            exists=record.exists,
            state=record.state,
            version=record.version,
            pending_operations=entities.pending_operations(eid),
            last_error=record.last_error,
        )

    @router.get("/entities/{entity_type}/{key}")
    async def entity_state(entity_type: str, key: str) -> JSONResponse:
        """Last committed state; queued operations are not reflected."""
        view = _entity_state(_entity_id(entity_type, key))
        return JSONResponse(view.model_dump(by_alias=True))

    @router.post("/entities/{entity_type}/{key}/{operation}")
    async def signal_entity(
        entity_type: str, key: str, operation: str, payload: Any = Body(default=None)
    ) -> JSONResponse:
        eid = _entity_id(entity_type, key)
        try:
            operation_id = await entities.signal(eid, operation, payload)
        except UnknownFunctionError as exc:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
        except EntityOperationError as exc:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
        return JSONResponse(
            {"status": "accepted", "entityId": str(eid), "operationId": operation_id},
            status_code=status.HTTP_202_ACCEPTED,
        )

    @router.get("/counter/increment")
    async def increment_counter() -> JSONResponse:
        """Read the counter, signal an increment and return the state read before it."""
        view = _entity_state(COUNTER_ID)
        await entities.signal(COUNTER_ID, "increment")
        return JSONResponse(view.state or {"requestNumber": 0})

    return router
