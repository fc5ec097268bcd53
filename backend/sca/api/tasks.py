# backend/sca/api/tasks.py
import logging
from typing import Optional

from fastapi import APIRouter, BackgroundTasks, Depends, Query

from ..core.security import get_current_principal
from ..models.resource import Principal
from ..models.task import TaskCreate
from ..services.container import Services
from ..services.progress import ProgressStatus
from .deps import get_services, parse_where

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/task", tags=["Tasks"])


@router.get("")
async def list_tasks(
    where: Optional[str] = Query(None, description="JSON query document"),
    sort: Optional[str] = Query(None, description='e.g. "-request_date"'),
    limit: Optional[int] = Query(None, ge=1),
    principal: Principal = Depends(get_current_principal),
    services: Services = Depends(get_services),
):
    """Tasks owned by the caller"""
    tasks = await services.tasks.list_tasks(principal.id, parse_where(where), sort=sort, limit=limit)
    return [task.to_response() for task in tasks]


@router.post("")
async def submit_task(
    request: TaskCreate,
    background_tasks: BackgroundTasks,
    principal: Principal = Depends(get_current_principal),
    services: Services = Depends(get_services),
):
    """Register a task for the poller to pick up"""
    task = await services.tasks.create_task(principal, request)

    background_tasks.add_task(
        services.progress.update,
        task.progress_key,
        status=ProgressStatus.WAITING,
        msg=f"{task.service} service requested",
        name=task.name or task.service,
    )
    return {"message": "Task successfully registered", "task": task.to_response()}


@router.put("/rerun/{task_id}")
async def rerun_task(
    task_id: str,
    principal: Principal = Depends(get_current_principal),
    services: Services = Depends(get_services),
):
    task = await services.tasks.rerun(principal, task_id)
    await services.progress.update(task.progress_key, status=ProgressStatus.WAITING, msg="Task Re-requested")
    return {"message": "Task successfully re-requested", "task": task.to_response()}


@router.put("/stop/{task_id}")
async def stop_task(
    task_id: str,
    principal: Principal = Depends(get_current_principal),
    services: Services = Depends(get_services),
):
    task = await services.tasks.stop(principal, task_id)
    await services.progress.update(task.progress_key, msg="Stop Requested")
    return {"message": "Task successfully requested to stop", "task": task.to_response()}
