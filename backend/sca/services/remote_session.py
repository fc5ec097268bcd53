# backend/sca/services/remote_session.py
import asyncio
import logging
import stat
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Any, AsyncIterable, AsyncIterator, Dict, List, Optional

import asyncssh

from ..catalog import Catalog
from ..core.crypto import SecretCipher
from ..core.exceptions import RemoteConnectionError
from ..models.resource import Resource

logger = logging.getLogger(__name__)

CHUNK_SIZE = 32 * 1024
CLOSE_TIMEOUT = 5.0


@dataclass
class ExecResult:
    """Outcome of one remote command, available once the channel closed"""
    exit_status: Optional[int]
    stdout: str = ""
    stderr: str = ""


@dataclass
class FileAttrs:
    size: Optional[int] = None
    mode: Optional[int] = None
    uid: Optional[int] = None
    gid: Optional[int] = None
    atime: Optional[int] = None
    mtime: Optional[int] = None

    @property
    def mode_string(self) -> str:
        if self.mode is None:
            return ""
        return stat.filemode(self.mode)

    @classmethod
    def from_sftp(cls, attrs: asyncssh.SFTPAttrs) -> "FileAttrs":
        return cls(
            size=attrs.size,
            mode=attrs.permissions,
            uid=attrs.uid,
            gid=attrs.gid,
            atime=attrs.atime,
            mtime=attrs.mtime,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "size": self.size,
            "mode": self.mode,
            "mode_string": self.mode_string,
            "uid": self.uid,
            "gid": self.gid,
            "atime": self.atime,
            "mtime": self.mtime,
        }


@dataclass
class DirEntry:
    filename: str
    longname: str = ""
    attrs: FileAttrs = field(default_factory=FileAttrs)

    def to_dict(self) -> Dict[str, Any]:
        return {"filename": self.filename, "longname": self.longname, "attrs": self.attrs.to_dict()}


class FileChannel:
    """File sub-protocol of an open session (SFTP)"""

    def __init__(self, sftp: asyncssh.SFTPClient):
        self._sftp = sftp

    async def stat(self, path: str) -> FileAttrs:
        return FileAttrs.from_sftp(await self._sftp.stat(path))

    async def listdir(self, path: str) -> List[DirEntry]:
        names = await self._sftp.readdir(path)
        return [
            DirEntry(filename=n.filename, longname=n.longname or "", attrs=FileAttrs.from_sftp(n.attrs))
            for n in names
            if n.filename not in (".", "..")
        ]

    async def read(self, path: str, chunk_size: int = CHUNK_SIZE) -> AsyncIterator[bytes]:
        async with self._sftp.open(path, "rb") as f:
            while True:
                chunk = await f.read(chunk_size)
                if not chunk:
                    break
                yield chunk

    async def write(self, path: str, chunks: AsyncIterable[bytes]) -> int:
        written = 0
        async with self._sftp.open(path, "wb") as f:
            async for chunk in chunks:
                if chunk:
                    await f.write(chunk)
                    written += len(chunk)
        return written

    async def remove(self, path: str) -> None:
        await self._sftp.remove(path)


class Session:
    """One authenticated SSH connection to a resource host"""

    def __init__(self, conn: asyncssh.SSHClientConnection, host: str = "",
                 close_timeout: float = CLOSE_TIMEOUT):
        self._conn = conn
        self.host = host
        self.close_timeout = close_timeout
        self.aborted = False

    async def exec(self, command: str, input: Optional[bytes] = None) -> ExecResult:
        """Run command and wait for its channel to close.

        The exit status is reported but never turned into an exception.
        """
        logger.debug(f"exec on {self.host}: {command}")
        result = await self._conn.run(command, input=input, encoding=None, check=False)
        return ExecResult(
            exit_status=result.exit_status,
            stdout=_decode(result.stdout),
            stderr=_decode(result.stderr),
        )

    @asynccontextmanager
    async def files(self) -> AsyncIterator[FileChannel]:
        sftp = await self._conn.start_sftp_client()
        try:
            yield FileChannel(sftp)
        finally:
            if not self.aborted:
                sftp.exit()
                try:
                    await asyncio.wait_for(sftp.wait_closed(), timeout=self.close_timeout)
                except asyncio.TimeoutError:
                    logger.warning(f"SFTP channel to {self.host} did not close, dropping the connection")
                    self.abort()

    def abort(self):
        """Drop the connection at once, without waiting for the peer"""
        self.aborted = True
        self._conn.abort()

    async def close(self):
        if self.aborted:
            return
        self._conn.close()
        try:
            await asyncio.wait_for(self._conn.wait_closed(), timeout=self.close_timeout)
        except asyncio.TimeoutError:
            logger.warning(f"SSH connection to {self.host} did not close, dropping it")
            self.abort()


class SessionManager:
    """Opens one session per logical operation; sessions are never pooled"""

    def __init__(self, catalog: Catalog, cipher: SecretCipher, known_hosts: Optional[str] = None,
                 close_timeout: float = CLOSE_TIMEOUT):
        self.catalog = catalog
        self.cipher = cipher
        self.known_hosts = known_hosts
        self.close_timeout = close_timeout

    @asynccontextmanager
    async def open(self, resource: Resource) -> AsyncIterator[Session]:
        detail = self.catalog.resource_type(resource.resource_id)
        config = self.cipher.decrypt_config(resource.config)
        username = config.get("username")
        private_key = config.get("enc_ssh_private")
        if not username or not private_key:
            raise RemoteConnectionError(f"Resource {resource.id} has no SSH credentials configured")

        try:
            client_key = asyncssh.import_private_key(private_key)
        except asyncssh.KeyImportError as e:
            raise RemoteConnectionError(f"Resource {resource.id} has an unreadable SSH key: {str(e)}") from e

        logger.debug(f"Opening SSH connection to {username}@{detail.hostname}")
        conn = await self._connect(detail.hostname, detail.port, username=username,
                                   client_keys=[client_key])
        async with self._session(conn, detail.hostname) as session:
            yield session

    @asynccontextmanager
    async def open_with_password(self, host: str, username: str, password: str,
                                 port: int = 22) -> AsyncIterator[Session]:
        """Password login, used once to install a key pair on a new resource"""
        logger.debug(f"Opening SSH password login to {username}@{host}")
        conn = await self._connect(host, port, username=username, password=password,
                                   client_keys=None, agent_path=None)
        async with self._session(conn, host) as session:
            yield session

    async def _connect(self, host: str, port: int, **credentials) -> asyncssh.SSHClientConnection:
        try:
            return await asyncssh.connect(host, port=port, known_hosts=self.known_hosts, **credentials)
        except (asyncssh.Error, OSError) as e:
            logger.error(f"SSH connection to {host} failed: {str(e)}")
            raise RemoteConnectionError(f"SSH connection to {host} failed: {str(e)}") from e

    @asynccontextmanager
    async def _session(self, conn: asyncssh.SSHClientConnection, host: str) -> AsyncIterator[Session]:
        session = Session(conn, host=host, close_timeout=self.close_timeout)
        try:
            yield session
        finally:
            await session.close()


def _decode(data: Any) -> str:
    if data is None:
        return ""
    if isinstance(data, bytes):
        return data.decode("utf-8", errors="replace")
    return str(data)
