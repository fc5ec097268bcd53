# backend/tests/conftest.py - Pytest Configuration
import asyncio
import os
from contextlib import asynccontextmanager
from datetime import datetime, timedelta
from typing import Dict, List, Optional
from unittest.mock import AsyncMock

import pytest
from fastapi.testclient import TestClient
from mongomock_motor import AsyncMongoMockClient

from sca.catalog import Catalog
from sca.config import settings
from sca.core.crypto import SecretCipher
from sca.core.security import create_access_token
from sca.models.resource import Principal, Resource
from sca.models.task import Task, TaskStatus, progress_key_for
from sca.services.container import build_services
from sca.services.remote_session import DirEntry, ExecResult, FileAttrs
from sca.services.resource_manager import ResourceManager
from sca.services.task_manager import TaskManager

TEST_DATABASE_NAME = "test_sca"

CATALOG_DATA = {
    "resources": {
        "karst": {
            "name": "Karst",
            "type": "pbs",
            "hostname": "karst.example.edu",
            "workdir": "/home/__username__/run/__workflowid__",
            "services": ["demo", "soichih/sca-product-raw"],
        },
        "carbonate": {
            "name": "Carbonate",
            "type": "pbs",
            "hostname": "carbonate.example.edu",
            "workdir": "/scratch/__username__/sca/__workflowid__",
            "services": ["demo"],
        },
        "archive": {
            "name": "Archive",
            "type": "hpss",
            "hostname": "hpss.example.edu",
            "workdir": "/hpss/__username__",
            "services": [],
        },
    },
    "services": {
        "demo": {"giturl": "https://github.com/example/sca-service-demo.git"},
        "nosource": {},
    },
}


class FakeFileChannel:
    """In-memory stand-in for the SFTP channel"""

    def __init__(self, fs: Dict[str, bytes], list_delay: float = 0.0, chunk_size: int = 4):
        self.fs = fs
        self.list_delay = list_delay
        self.chunk_size = chunk_size

    async def stat(self, path: str) -> FileAttrs:
        if path not in self.fs:
            raise FileNotFoundError(path)
        return FileAttrs(size=len(self.fs[path]), mode=0o100644, uid=1000, gid=1000, atime=0, mtime=0)

    async def listdir(self, path: str) -> List[DirEntry]:
        await asyncio.sleep(self.list_delay)
        prefix = path.rstrip("/") + "/"
        names = sorted({p[len(prefix):].split("/")[0] for p in self.fs if p.startswith(prefix)})
        if not names:
            raise FileNotFoundError(path)
        entries = []
        for name in names:
            full = prefix + name
            if full in self.fs:
                attrs = FileAttrs(size=len(self.fs[full]), mode=0o100644, uid=1000, gid=1000, atime=0, mtime=0)
            else:
                attrs = FileAttrs(size=4096, mode=0o040755, uid=1000, gid=1000, atime=0, mtime=0)
            entries.append(DirEntry(filename=name, longname=f"{attrs.mode_string} {name}", attrs=attrs))
        return entries

    async def read(self, path: str, chunk_size: Optional[int] = None):
        if path not in self.fs:
            raise FileNotFoundError(path)
        data = self.fs[path]
        size = chunk_size or self.chunk_size
        for i in range(0, len(data), size):
            yield data[i:i + size]

    async def write(self, path: str, chunks) -> int:
        data = b""
        async for chunk in chunks:
            data += chunk
        self.fs[path] = data
        return len(data)

    async def remove(self, path: str) -> None:
        if path not in self.fs:
            raise FileNotFoundError(path)
        del self.fs[path]


class FakeSession:
    """Records every command; results can be scripted by command substring"""

    def __init__(self, fs: Optional[Dict[str, bytes]] = None, list_delay: float = 0.0):
        self.commands: List[str] = []
        self.inputs: List[Optional[bytes]] = []
        self.results: Dict[str, object] = {}
        self.fs = fs if fs is not None else {}
        self.list_delay = list_delay
        self.open_channels = 0
        self.aborted = False

    async def exec(self, command: str, input: Optional[bytes] = None) -> ExecResult:
        self.commands.append(command)
        self.inputs.append(input)
        for marker, result in self.results.items():
            if marker in command:
                if isinstance(result, Exception):
                    raise result
                return result
        return ExecResult(exit_status=0)

    def abort(self):
        self.aborted = True

    @asynccontextmanager
    async def files(self):
        self.open_channels += 1
        try:
            yield FakeFileChannel(self.fs, self.list_delay)
        finally:
            self.open_channels -= 1


class FakeSessionManager:
    """Hands out one FakeSession and counts open/close pairs"""

    def __init__(self, session: Optional[FakeSession] = None, error: Optional[Exception] = None):
        self.session = session or FakeSession()
        self.error = error
        self.opened = 0
        self.closed = 0
        self.hosts: List[str] = []
        self.logins: List[tuple] = []

    @asynccontextmanager
    async def open(self, resource: Resource):
        if self.error is not None:
            raise self.error
        self.opened += 1
        self.hosts.append(resource.resource_id)
        try:
            yield self.session
        finally:
            self.closed += 1

    @asynccontextmanager
    async def open_with_password(self, host: str, username: str, password: str, port: int = 22):
        if self.error is not None:
            raise self.error
        self.opened += 1
        self.hosts.append(host)
        self.logins.append((username, password, port))
        try:
            yield self.session
        finally:
            self.closed += 1


class LocalSession:
    """Runs commands with the local shell, starting in a scratch HOME like an SSH login"""

    def __init__(self, home):
        self.home = home
        self.commands: List[str] = []

    async def exec(self, command: str, input: Optional[bytes] = None) -> ExecResult:
        self.commands.append(command)
        proc = await asyncio.create_subprocess_shell(
            command,
            cwd=str(self.home),
            env={**os.environ, "HOME": str(self.home)},
            stdin=asyncio.subprocess.PIPE if input is not None else asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        stdout, stderr = await proc.communicate(input)
        return ExecResult(proc.returncode, stdout.decode(), stderr.decode())


@pytest.fixture
def catalog():
    return Catalog.from_dict(CATALOG_DATA)

@pytest.fixture
def cipher():
    return SecretCipher(settings.ENCRYPTION_KEY)

@pytest.fixture
def db():
    """Fresh in-memory database per test"""
    client = AsyncMongoMockClient()
    return client[TEST_DATABASE_NAME]

@pytest.fixture
def fake_session():
    return FakeSession()

@pytest.fixture
def session_manager(fake_session):
    return FakeSessionManager(fake_session)

@pytest.fixture
def resource_manager(db, cipher, catalog, session_manager):
    return ResourceManager(db, cipher, catalog, session_manager=session_manager)

@pytest.fixture
def task_manager(db, resource_manager):
    return TaskManager(db, resource_manager=resource_manager)

@pytest.fixture
def progress():
    """Progress reporter double; inspect progress.update.await_args_list"""
    reporter = AsyncMock()
    reporter.update = AsyncMock(return_value=None)
    return reporter

@pytest.fixture
def alice():
    return Principal(id="1", gids=[1, 2, 5])

@pytest.fixture
def bob():
    return Principal(id="2", gids=[2, 3, 5])

@pytest.fixture
def mallory():
    return Principal(id="3", gids=[3, 4])


@pytest.fixture
def add_resource(db, cipher):
    """Insert a resource document directly, encrypting its secrets"""
    async def _add(user_id="1", resource_id="karst", gids=None, username="u1", active=True,
                   status=None, created=None, config=None, **fields):
        resource_config = {"username": username, "enc_ssh_private": "-----BEGIN KEY-----"}
        resource_config.update(config or {})
        resource = Resource(
            user_id=user_id,
            resource_id=resource_id,
            gids=gids or [],
            config=cipher.encrypt_config(resource_config),
            active=active,
            status=status,
            create_date=created or datetime(2024, 1, 1),
            **fields,
        )
        await db.resources.insert_one(resource.to_document())
        return resource
    return _add

@pytest.fixture
def add_task(db):
    """Insert a task document directly"""
    async def _add(user_id="1", service="demo", status=TaskStatus.REQUESTED, resource_ids=None,
                   requested_minutes_ago=0, config=None, **fields):
        task_config = dict(config or {})
        if resource_ids is not None:
            task_config["resource_ids"] = resource_ids
        task = Task(
            user_id=user_id,
            instance_id="inst1",
            service=service,
            config=task_config,
            status=status,
            request_date=datetime.utcnow() - timedelta(minutes=requested_minutes_ago),
            **fields,
        )
        task.progress_key = progress_key_for(task.instance_id, task.id)
        await db.tasks.insert_one(task.to_document())
        return task
    return _add


@pytest.fixture
def auth_headers():
    """Build an Authorization header for a user"""
    def _headers(user_id: str = "1", gids=None) -> Dict[str, str]:
        return {"Authorization": f"Bearer {create_access_token(user_id, gids=gids)}"}
    return _headers

@pytest.fixture
def services(db, catalog, session_manager, progress):
    return build_services(db, catalog, settings, sessions=session_manager, progress=progress)

@pytest.fixture
def client(services):
    """TestClient over the app with in-memory services; the lifespan is not run"""
    from sca.main import app

    app.state.services = services
    yield TestClient(app)
    del app.state.services

@pytest.fixture
def run():
    """Drive a coroutine from a synchronous test"""
    return asyncio.run
