# backend/sca/models/task.py
import uuid
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field


class TaskStatus(str, Enum):
    REQUESTED = "requested"
    RUNNING = "running"
    STOP_REQUESTED = "stop_requested"
    STOPPED = "stopped"
    FINISHED = "finished"
    FAILED = "failed"


TERMINAL_STATUSES = (TaskStatus.STOPPED, TaskStatus.FINISHED, TaskStatus.FAILED)


def new_id() -> str:
    return str(uuid.uuid4())


def progress_key_for(instance_id: str, task_id: str) -> str:
    return f"_sca.{instance_id}.{task_id}"


class Task(BaseModel):
    model_config = ConfigDict(populate_by_name=True, use_enum_values=True)

    id: str = Field(default_factory=new_id, alias="_id")
    user_id: str
    instance_id: str
    service: str
    name: Optional[str] = None
    desc: Optional[str] = None
    preferred_resource_id: Optional[str] = None
    config: Dict[str, Any] = Field(default_factory=dict)
    status: TaskStatus = TaskStatus.REQUESTED
    status_msg: str = ""
    progress_key: Optional[str] = None
    request_date: datetime = Field(default_factory=datetime.utcnow)
    create_date: datetime = Field(default_factory=datetime.utcnow)
    updated: datetime = Field(default_factory=datetime.utcnow)
    # Advisory only; nothing in the core sets it
    handled: bool = Field(default=False, alias="_handled")

    @property
    def resource_ids(self) -> Dict[str, str]:
        return self.config.get("resource_ids") or {}

    def to_document(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True)

    def to_response(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, mode="json")


class TaskCreate(BaseModel):
    """Body of POST /task"""
    instance_id: str = Field(min_length=1)
    service: str = Field(min_length=1)
    name: Optional[str] = None
    desc: Optional[str] = None
    preferred_resource_id: Optional[str] = None
    config: Dict[str, Any] = Field(default_factory=dict)
