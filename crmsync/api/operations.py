"""
Operator endpoints: component status, sync triggers, resets, and the dead-letter queue.

Guarded by the X-Operations-Token header when OPERATIONS_API_TOKEN is set.
"""

from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Body, Depends, HTTPException, Query, status
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse
from sqlmodel import Session

from crmsync.api.deps import current_services, require_operator
from crmsync.core.entities import SYNCABLE_ENTITY_TYPES, normalize_entity_type
from crmsync.core.error_classifier import ErrorKind
from crmsync.core.exceptions import SyncValidationError
from crmsync.db import get_session
from crmsync.models.sync_task import SyncTask, TaskKind
from crmsync.services.container import RESET_COMPONENTS, SyncServices
from crmsync.services.execution import enqueue_sync, run_inline
from crmsync.services.task_queue import list_dead_letter, retry_dead_letter

router = APIRouter(dependencies=[Depends(require_operator)])


@router.get("/rate")
def rate_status(
    endpoint_class: Optional[str] = Query(default=None),
    services: SyncServices = Depends(current_services),
) -> Dict[str, Any]:
    return services.get_rate_status(endpoint_class)


@router.get("/circuits")
def circuit_status(services: SyncServices = Depends(current_services)) -> Dict[str, Any]:
    return services.get_circuit_status()


@router.get("/memory")
def memory_stats(services: SyncServices = Depends(current_services)) -> Dict[str, Any]:
    return services.get_memory_stats()


@router.get("/health")
def upstream_health(services: SyncServices = Depends(current_services)) -> Dict[str, Any]:
    return services.get_health_status()


@router.get("/report")
def health_report(
    services: SyncServices = Depends(current_services),
    session: Session = Depends(get_session),
):
    """Aggregated report; 503 when any component is critical."""
    report = services.health_report(session)
    code = status.HTTP_503_SERVICE_UNAVAILABLE if report["status"] == "critical" else status.HTTP_200_OK
    return JSONResponse(content=report, status_code=code)


@router.post("/sync/{entity_type}", status_code=status.HTTP_202_ACCEPTED)
def trigger_sync(
    entity_type: str,
    options: Optional[Dict[str, Any]] = Body(default=None),
    inline: bool = Query(default=False, description="Run in this request instead of queueing"),
    services: SyncServices = Depends(current_services),
    session: Session = Depends(get_session),
):
    """
    Start a sync run.

    - **inline=false** (default): queue an async run for the worker; returns the task id
    - **inline=true**: run now and return the SyncResult (200, or 502 when the run failed)
    """
    if normalize_entity_type(entity_type) not in SYNCABLE_ENTITY_TYPES:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Unknown entity type {entity_type!r}")

    if inline:
        result = run_inline(services, entity_type, {**(options or {}), "context": "api"})
        if not result.success and result.error is not None and result.error.kind is ErrorKind.VALIDATION:
            raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=result.error_message)
        code = status.HTTP_200_OK if result.success or result.deferred else status.HTTP_502_BAD_GATEWAY
        return JSONResponse(content=jsonable_encoder(result.to_dict()), status_code=code)

    try:
        task = enqueue_sync(session, entity_type, {**(options or {}), "context": "job"})
    except SyncValidationError as e:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=e.errors)
    return {"status": "queued", "task_id": task.id, "entity_type": task.entity_type}


@router.post("/reset/{component}")
def reset_component(component: str, services: SyncServices = Depends(current_services)) -> Dict[str, Any]:
    if component not in RESET_COMPONENTS:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Unknown component {component!r}; expected one of {', '.join(RESET_COMPONENTS)}",
        )
    return services.reset(component)


@router.get("/dead-letter", response_model=List[SyncTask])
def dead_letter(
    kind: Optional[TaskKind] = Query(default=None),
    limit: int = Query(default=100, ge=1, le=1000),
    session: Session = Depends(get_session),
) -> List[SyncTask]:
    return list_dead_letter(session, kind=kind, limit=limit)


@router.post("/dead-letter/{task_id}/retry", response_model=SyncTask)
def retry_task(task_id: int, session: Session = Depends(get_session)) -> SyncTask:
    task = retry_dead_letter(session, task_id)
    if task is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Task not in dead-letter queue")
    return task
