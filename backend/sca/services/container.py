# backend/sca/services/container.py
from dataclasses import dataclass

from motor.motor_asyncio import AsyncIOMotorDatabase

from ..catalog import Catalog
from ..config import Settings
from ..core.crypto import SecretCipher
from .file_transfer import FileTransferService
from .pipeline import TaskPipeline
from .poller import TaskPoller
from .progress import ProgressReporter
from .remote_session import SessionManager
from .resource_manager import ResourceManager
from .resource_selector import ResourceSelector
from .task_manager import TaskManager


@dataclass
class Services:
    db: AsyncIOMotorDatabase
    catalog: Catalog
    cipher: SecretCipher
    sessions: SessionManager
    resources: ResourceManager
    tasks: TaskManager
    selector: ResourceSelector
    files: FileTransferService
    progress: ProgressReporter
    pipeline: TaskPipeline
    poller: TaskPoller


def build_services(db: AsyncIOMotorDatabase, catalog: Catalog, settings: Settings,
                   sessions: SessionManager = None, progress: ProgressReporter = None) -> Services:
    """Wire every service around one database handle and one catalog"""
    cipher = SecretCipher(settings.ENCRYPTION_KEY)
    if sessions is None:
        sessions = SessionManager(catalog, cipher, known_hosts=settings.SSH_KNOWN_HOSTS)
    resources = ResourceManager(db, cipher, catalog, session_manager=sessions)
    tasks = TaskManager(db, resource_manager=resources)
    if progress is None:
        progress = ProgressReporter(settings.PROGRESS_API_URL, settings.PROGRESS_API_TOKEN)
    pipeline = TaskPipeline(tasks, resources, sessions, catalog, cipher, progress)
    return Services(
        db=db,
        catalog=catalog,
        cipher=cipher,
        sessions=sessions,
        resources=resources,
        tasks=tasks,
        selector=ResourceSelector(resources, catalog),
        files=FileTransferService(sessions, catalog, ls_timeout=settings.LS_TIMEOUT_SECONDS),
        progress=progress,
        pipeline=pipeline,
        poller=TaskPoller(tasks, pipeline, interval=settings.POLL_INTERVAL_SECONDS),
    )
