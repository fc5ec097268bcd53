# backend/sca/services/task_manager.py
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from motor.motor_asyncio import AsyncIOMotorDatabase

from ..core.exceptions import NotFoundError, SCAError, UnauthorizedError, ValidationError
from ..models.resource import Principal
from ..models.task import Task, TaskCreate, TaskStatus, new_id, progress_key_for
from .access import check_access
from .resource_manager import ResourceManager

logger = logging.getLogger(__name__)


def parse_sort(sort: Optional[str]) -> List[Tuple[str, int]]:
    """Turn "-request_date name" into a motor sort list"""
    keys = []
    for part in (sort or "").replace(",", " ").split():
        if part.startswith("-"):
            keys.append((part[1:], -1))
        else:
            keys.append((part.lstrip("+"), 1))
    return keys


class TaskManager:
    """Task Store: persistence and user-driven lifecycle of tasks"""

    def __init__(self, db: AsyncIOMotorDatabase, resource_manager: Optional[ResourceManager] = None):
        self.db = db
        self.tasks_collection = db.tasks
        self.resource_manager = resource_manager

    async def create_task(self, principal: Principal, request: TaskCreate) -> Task:
        """Register a task in "requested" state for pickup by the poller"""
        await self._check_resources(principal, request.config.get("resource_ids") or {})

        task_id = new_id()
        now = datetime.utcnow()
        task = Task(
            _id=task_id,
            user_id=principal.id,
            instance_id=request.instance_id,
            service=request.service,
            name=request.name,
            desc=request.desc,
            preferred_resource_id=request.preferred_resource_id,
            config=request.config,
            status=TaskStatus.REQUESTED,
            status_msg="Waiting to be processed by SCA task handler",
            progress_key=progress_key_for(request.instance_id, task_id),
            request_date=now,
            create_date=now,
            updated=now,
        )
        await self.tasks_collection.insert_one(task.to_document())
        logger.info(f"Task {task_id} requested by user {principal.id} for service {request.service}")
        return task

    async def _check_resources(self, principal: Principal, resource_ids: Dict[str, str]):
        """Every resource referenced by role must exist and be accessible"""
        if not isinstance(resource_ids, dict):
            raise ValidationError("config.resource_ids must be a mapping of role to resource id", field="config")
        if self.resource_manager is None:
            return
        for role, resource_id in resource_ids.items():
            resource = await self.resource_manager.get(resource_id)
            if resource is None:
                raise NotFoundError(f"Couldn't find the {role} resource specified: {resource_id}")
            if not check_access(principal, resource):
                raise UnauthorizedError(f"You don't have access to the {role} resource {resource_id}")

    async def get_task(self, task_id: str) -> Optional[Task]:
        task_data = await self.tasks_collection.find_one({"_id": task_id})
        if task_data:
            return Task(**task_data)
        return None

    async def get_owned_task(self, principal: Principal, task_id: str) -> Task:
        task = await self.get_task(task_id)
        if task is None:
            raise NotFoundError("Couldn't find such task id")
        if task.user_id != principal.id:
            raise UnauthorizedError(f"user_id mismatch .. req.user.sub:{principal.id}")
        return task

    async def list_tasks(self, user_id: str, where: Optional[Dict[str, Any]] = None,
                         sort: Optional[str] = None, limit: Optional[int] = None) -> List[Task]:
        """Tasks owned by user_id, optionally narrowed by a query document"""
        query = dict(where or {})
        query["user_id"] = user_id
        cursor = self.tasks_collection.find(query)
        sort_keys = parse_sort(sort)
        if sort_keys:
            cursor = cursor.sort(sort_keys)
        if limit:
            cursor = cursor.limit(int(limit))
        tasks = []
        async for task_data in cursor:
            tasks.append(Task(**task_data))
        return tasks

    async def list_requested(self) -> List[Task]:
        """All tasks waiting for the poller, oldest request first"""
        cursor = self.tasks_collection.find({"status": TaskStatus.REQUESTED.value}).sort(
            [("request_date", 1), ("_id", 1)]
        )
        return [Task(**task_data) async for task_data in cursor]

    async def claim(self, task: Task) -> bool:
        """Move a task from requested to running; False if its status changed meanwhile"""
        result = await self.tasks_collection.update_one(
            {"_id": task.id, "status": TaskStatus.REQUESTED.value},
            {"$set": {
                "status": TaskStatus.RUNNING.value,
                "status_msg": "Processing by SCA task handler",
                "updated": datetime.utcnow(),
            }},
        )
        return result.modified_count == 1

    async def update_task_status(self, task_id: str, status: TaskStatus, status_msg: Optional[str] = None):
        update_data: Dict[str, Any] = {"status": TaskStatus(status).value, "updated": datetime.utcnow()}
        if status_msg is not None:
            update_data["status_msg"] = status_msg
        await self.tasks_collection.update_one({"_id": task_id}, {"$set": update_data})

    async def rerun(self, principal: Principal, task_id: str) -> Task:
        """Reset a task so the next poll cycle picks it up again"""
        task = await self.get_owned_task(principal, task_id)
        now = datetime.utcnow()
        update_data = {
            "status": TaskStatus.REQUESTED.value,
            "status_msg": "",
            "request_date": now,
            "updated": now,
        }
        await self.tasks_collection.update_one({"_id": task.id}, {"$set": update_data})
        logger.info(f"Task {task.id} re-requested (was {task.status})")
        return task.model_copy(update=update_data)

    async def stop(self, principal: Principal, task_id: str) -> Task:
        """Request a stop: running tasks become stop_requested, others stopped"""
        task = await self.get_owned_task(principal, task_id)
        if task.handled:
            raise SCAError("The task is currently handled by the SCA task handler. Please wait..")

        if task.status == TaskStatus.RUNNING.value:
            new_status = TaskStatus.STOP_REQUESTED
        else:
            new_status = TaskStatus.STOPPED
        update_data = {"status": new_status.value, "status_msg": "", "updated": datetime.utcnow()}
        await self.tasks_collection.update_one({"_id": task.id}, {"$set": update_data})
        logger.info(f"Task {task.id} {task.status} -> {new_status.value}")
        return task.model_copy(update=update_data)
