# backend/sca/services/pipeline.py
"""Provisioning and execution of one task on its compute resource.

Each step is idempotent, so a failed task can simply be re-run; nothing that
an earlier step changed on the remote host is rolled back.
"""
import base64
import binascii
import json
import logging
import shlex
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional

from ..catalog import Catalog
from ..core.crypto import SecretCipher
from ..core.exceptions import NotFoundError, RemoteStepFailure, SCAError, ValidationError
from ..models.resource import Resource
from ..models.task import Task, TaskStatus
from .progress import ProgressReporter, ProgressStatus
from .remote_session import ExecResult, Session, SessionManager
from .resource_manager import ResourceManager
from .task_manager import TaskManager

logger = logging.getLogger(__name__)

SERVICES_ROOT = ".sca/services"
KEYS_DIR = ".sca/keys"
CONFIG_FILENAME = "config.json"
ENTRY_POINT = "run.sh"
HOME_PREFIX = "$HOME/"


def shell_value(value: str) -> str:
    """Quote a value for the remote shell, leaving a leading $HOME expandable"""
    value = str(value)
    if value.startswith(HOME_PREFIX):
        return '"$HOME"/' + shlex.quote(value[len(HOME_PREFIX):])
    return shlex.quote(value)


def env_prefix(env: Dict[str, str]) -> str:
    # Inline assignments: many hosts disable AcceptEnv, so the SSH env request is never used
    return " ".join(f"{k}={shell_value(v)}" for k, v in env.items())


@dataclass
class PipelineContext:
    task: Task
    resource: Resource
    session: Session
    workdir: str
    taskdir: str
    env: Dict[str, str] = field(default_factory=dict)

    @property
    def service_dir(self) -> str:
        return f"{SERVICES_ROOT}/{self.task.service}"

    async def exec(self, command: str, input: Optional[bytes] = None) -> ExecResult:
        result = await self.session.exec(command, input=input)
        if result.exit_status:
            logger.debug(f"task {self.task.id}: '{command}' exited with {result.exit_status}: {result.stderr.strip()}")
        return result


class Step:
    """One remote provisioning step"""
    name = "step"

    async def run(self, ctx: PipelineContext) -> None:
        raise NotImplementedError


class EnsureServiceRoot(Step):
    name = "ensure_service_root"

    async def run(self, ctx: PipelineContext) -> None:
        logger.debug(f"making sure ~/{SERVICES_ROOT} exists")
        await ctx.exec(f"mkdir -p {SERVICES_ROOT}")


class SyncServicePayload(Step):
    """Clone the service if it is absent, otherwise pull the latest revision"""
    name = "sync_service_payload"

    def __init__(self, catalog: Catalog):
        self.catalog = catalog

    async def run(self, ctx: PipelineContext) -> None:
        service = self.catalog.service(ctx.task.service)
        if service is None or not service.giturl:
            raise SCAError(f"Service {ctx.task.service} has no registered source")

        service_dir = shlex.quote(ctx.service_dir)
        logger.debug(f"syncing service {ctx.task.service} from {service.giturl}")
        await ctx.exec(
            f"if [ -d {service_dir}/.git ]; then cd {service_dir} && git pull; "
            f"else git clone {shlex.quote(service.giturl)} {service_dir}; fi"
        )


class EnsureTaskDir(Step):
    name = "ensure_task_dir"

    async def run(self, ctx: PipelineContext) -> None:
        logger.debug(f"making sure taskdir({ctx.taskdir}) exists")
        await ctx.exec(f"mkdir -p {shlex.quote(ctx.taskdir)}")


class InstallSecondaryCredential(Step):
    """Install the keytab of an auxiliary identity (e.g. HPSS) if the task names one"""

    def __init__(self, resource_manager: ResourceManager, cipher: SecretCipher,
                 role: str = "hpss", env_name: str = "HPSS"):
        self.resource_manager = resource_manager
        self.cipher = cipher
        self.role = role
        self.env_name = env_name
        self.name = f"install_{role}_credential"

    async def run(self, ctx: PipelineContext) -> None:
        resource_id = ctx.task.resource_ids.get(self.role)
        if not resource_id:
            return

        resource = await self.resource_manager.get(resource_id)
        if resource is None:
            raise NotFoundError(f"Couldn't find the {self.role} resource specified: {resource_id}")
        config = self.cipher.decrypt_config(resource.config)
        try:
            keytab = base64.b64decode(config.get("enc_keytab") or "", validate=True)
        except binascii.Error as e:
            raise ValidationError(f"{self.role} resource {resource_id} has a malformed keytab", field="enc_keytab") from e
        if not keytab:
            raise ValidationError(f"{self.role} resource {resource_id} has no keytab", field="enc_keytab")

        key_path = f"{KEYS_DIR}/{resource.id}.keytab"
        logger.debug(f"installing {self.role} key for task {ctx.task.id}")
        await ctx.exec(f"mkdir -p {KEYS_DIR} && chmod 700 {KEYS_DIR}")
        await ctx.exec(
            f"umask 077 && cat > {shlex.quote(key_path)} && chmod 600 {shlex.quote(key_path)}",
            input=keytab,
        )

        ctx.env[f"{self.env_name}_PRINCIPAL"] = config.get("username") or ""
        ctx.env[f"{self.env_name}_AUTH_METHOD"] = config.get("auth_method") or "keytab"
        ctx.env[f"{self.env_name}_KEYTAB_PATH"] = HOME_PREFIX + key_path


class WriteTaskConfig(Step):
    name = "write_task_config"

    async def run(self, ctx: PipelineContext) -> None:
        logger.debug(f"installing {CONFIG_FILENAME}")
        path = f"{ctx.taskdir}/{CONFIG_FILENAME}"
        payload = json.dumps(ctx.task.config, indent=4, default=str).encode("utf-8")
        await ctx.exec(f"cat > {shlex.quote(path)}", input=payload)


class RunService(Step):
    name = "run_service"

    async def run(self, ctx: PipelineContext) -> None:
        entry_point = shell_value(f"{HOME_PREFIX}{ctx.service_dir}/{ENTRY_POINT}")
        command = f"cd {shlex.quote(ctx.taskdir)} && {env_prefix(ctx.env)} {entry_point}"
        logger.info(f"running service {ctx.task.service} for task {ctx.task.id}")
        result = await ctx.exec(command)
        # Completion is the channel closing; the exit status is not a verdict
        logger.info(f"service {ctx.task.service} for task {ctx.task.id} exited with {result.exit_status}")


class StepRunner:
    """Runs steps in order and stops at the first failure"""

    def __init__(self, steps: Iterable[Step]):
        self.steps: List[Step] = list(steps)

    async def run(self, ctx: PipelineContext) -> None:
        for step in self.steps:
            logger.debug(f"task {ctx.task.id}: step {step.name}")
            try:
                await step.run(ctx)
            except RemoteStepFailure:
                raise
            except Exception as e:
                raise RemoteStepFailure(step.name, e) from e


class TaskPipeline:
    """Prepares the compute resource for a task and runs its service"""

    def __init__(self, task_manager: TaskManager, resource_manager: ResourceManager,
                 session_manager: SessionManager, catalog: Catalog, cipher: SecretCipher,
                 progress: ProgressReporter, steps: Optional[List[Step]] = None):
        self.task_manager = task_manager
        self.resource_manager = resource_manager
        self.session_manager = session_manager
        self.catalog = catalog
        self.progress = progress
        if steps is None:
            steps = [
                EnsureServiceRoot(),
                SyncServicePayload(catalog),
                EnsureTaskDir(),
                InstallSecondaryCredential(resource_manager, cipher, role="hpss", env_name="HPSS"),
                WriteTaskConfig(),
                RunService(),
            ]
        self.runner = StepRunner(steps)

    @staticmethod
    def base_env(task: Task, workdir: str, taskdir: str) -> Dict[str, str]:
        return {
            "SCA_WORKFLOW_ID": task.instance_id,
            "SCA_WORKFLOW_DIR": workdir,
            "SCA_TASK_ID": task.id,
            "SCA_TASK_DIR": taskdir,
            "SCA_SERVICE_ID": task.service,
            "SCA_SERVICE_DIR": f"{HOME_PREFIX}{SERVICES_ROOT}/{task.service}",
            "SCA_PROGRESS_ID": task.progress_key or "",
        }

    async def process(self, task: Task) -> bool:
        """Run the task and record its terminal status; True on success"""
        try:
            await self.progress.update(f"{task.progress_key}.prep", status=ProgressStatus.RUNNING,
                                       progress=0, msg="Preparing compute resource")
            await self.run(task)
        except Exception as e:
            logger.error(f"Task {task.id} failed: {str(e)}", exc_info=not isinstance(e, SCAError))
            await self._failed(task, e)
            return False

        await self._completed(task)
        return True

    async def run(self, task: Task) -> None:
        compute_id = task.resource_ids.get("compute")
        if not compute_id:
            raise ValidationError("Task has no compute resource", field="config.resource_ids.compute")
        resource = await self.resource_manager.get(compute_id)
        if resource is None:
            raise NotFoundError(f"Couldn't find the compute resource specified: {compute_id}")

        detail = self.catalog.resource_type(resource.resource_id)
        workdir = detail.render_workdir(resource.username, task.instance_id)
        taskdir = f"{workdir}/{task.id}"

        async with self.session_manager.open(resource) as session:
            ctx = PipelineContext(
                task=task,
                resource=resource,
                session=session,
                workdir=workdir,
                taskdir=taskdir,
                env=self.base_env(task, workdir, taskdir),
            )
            await self.runner.run(ctx)

    async def _failed(self, task: Task, error: Exception):
        await self.task_manager.update_task_status(task.id, TaskStatus.FAILED, str(error))
        await self.progress.update(task.progress_key, status=ProgressStatus.FAILED, msg=str(error))

    async def _completed(self, task: Task):
        await self.task_manager.update_task_status(task.id, TaskStatus.FINISHED, "Task Completed")
        await self.progress.update(task.progress_key, status=ProgressStatus.FINISHED, msg="Task Completed")
