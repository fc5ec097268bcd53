# backend/sca/services/file_transfer.py
import asyncio
import logging
import mimetypes
import posixpath
import shlex
from contextlib import AsyncExitStack, contextmanager
from dataclasses import dataclass
from typing import Any, AsyncIterable, AsyncIterator, Dict, List
from urllib.parse import quote

import asyncssh

from ..catalog import Catalog
from ..core.exceptions import NotFoundError, RemoteTimeoutError, SCAError, ValidationError
from ..models.resource import Resource
from .remote_session import FileChannel, SessionManager

logger = logging.getLogger(__name__)

DEFAULT_CONTENT_TYPE = "application/octet-stream"


def escape_path(path: str) -> str:
    """Escape a path for use inside a double-quoted remote shell word.

    The escaped set is exactly what the shell interprets inside double
    quotes: backslash, double quote, dollar and backtick. Each gets a
    backslash so the path stays one literal word. A single quote is not in
    the set because inside double quotes `\\'` would keep its backslash and
    change the name. NUL cannot be part of a path and is rejected.
    """
    if "\0" in path:
        raise ValidationError("path must not contain NUL bytes", field="path")
    for ch in ("\\", '"', "$", "`"):
        path = path.replace(ch, "\\" + ch)
    return path


def sanitize_filename(filename: str) -> str:
    """Keep only the last component of a client supplied file name"""
    safe_name = posixpath.basename((filename or "").replace("\\", "/"))
    if safe_name in ("", ".", ".."):
        raise ValidationError("invalid file name", field="filename")
    return safe_name


def content_disposition(filename: str) -> str:
    """Attachment header; names outside printable ASCII go in filename* (RFC 6266)"""
    quoted = quote(filename)
    if quoted == filename:
        return f'attachment; filename="{filename}"'
    fallback = "".join(c if 32 <= ord(c) < 127 and c not in '"\\' else "_" for c in filename)
    return f"attachment; filename=\"{fallback}\"; filename*=UTF-8''{quoted}"


def _discard_result(task: "asyncio.Future"):
    if not task.cancelled():
        task.exception()


@contextmanager
def _remote_file_errors(path: str):
    try:
        yield
    except (asyncssh.SFTPNoSuchFile, FileNotFoundError) as e:
        raise NotFoundError(f"No such file or directory: {path}") from e
    except asyncssh.SFTPError as e:
        raise SCAError(f"{path}: {e.reason}") from e


@dataclass
class Download:
    """An open remote file; the session is released once content is consumed or closed"""
    filename: str
    path: str
    size: int
    content_type: str
    _files: FileChannel
    _stack: AsyncExitStack

    @property
    def headers(self) -> Dict[str, str]:
        return {
            "Content-Disposition": content_disposition(self.filename),
            "Content-Length": str(self.size),
        }

    async def iter_content(self) -> AsyncIterator[bytes]:
        try:
            with _remote_file_errors(self.path):
                async for chunk in self._files.read(self.path):
                    yield chunk
        finally:
            await self.aclose()

    async def aclose(self):
        await self._stack.aclose()


class FileTransferService:
    """List, remove, upload and download files on a resource"""

    def __init__(self, session_manager: SessionManager, catalog: Catalog, ls_timeout: float = 4.0):
        self.session_manager = session_manager
        self.catalog = catalog
        self.ls_timeout = ls_timeout

    def workdir(self, resource: Resource) -> str:
        detail = self.catalog.resource_type(resource.resource_id)
        return detail.render_workdir(resource.username)

    def resolve_path(self, resource: Resource, path: str) -> str:
        """Absolute paths are used as given, relative ones join the resource workdir"""
        if not path:
            raise ValidationError("path is required", field="path")
        if path.startswith("/"):
            return path
        return posixpath.join(self.workdir(resource), path)

    async def list(self, resource: Resource, path: str) -> List[Dict[str, Any]]:
        path = self.resolve_path(resource, path)
        async with self.session_manager.open(resource) as session:
            async with session.files() as files:
                logger.debug(f"reading directory: {path}")
                listing = asyncio.ensure_future(files.listdir(path))
                try:
                    done, _ = await asyncio.wait({listing}, timeout=self.ls_timeout)
                finally:
                    if not listing.done():
                        # a stalled peer never answers the handle close either
                        session.abort()
                        listing.cancel()
                        listing.add_done_callback(_discard_result)
                if not done:
                    logger.warning(f"Timed out reading {path} on resource {resource.id}")
                    raise RemoteTimeoutError("Timed out while reading directory")
                with _remote_file_errors(path):
                    entries = listing.result()
        return [entry.to_dict() for entry in entries]

    async def remove(self, resource: Resource, path: str) -> None:
        path = self.resolve_path(resource, path)
        command = f'rm "{escape_path(path)}"'
        async with self.session_manager.open(resource) as session:
            logger.debug(f"removing {path} on resource {resource.id}")
            result = await session.exec(command)
        if result.exit_status:
            raise SCAError(result.stderr.strip() or f"Failed to remove {path}")

    async def upload(self, resource: Resource, path: str, chunks: AsyncIterable[bytes]) -> Dict[str, Any]:
        """Stream chunks to path, creating its parent directory first"""
        path = self.resolve_path(resource, path)
        parent = posixpath.dirname(path) or "/"
        async with self.session_manager.open(resource) as session:
            logger.debug(f"mkdirp: {parent}")
            await session.exec(f"mkdir -p {shlex.quote(parent)}")
            async with session.files() as files:
                logger.debug(f"streaming file to {path}")
                with _remote_file_errors(path):
                    await files.write(path, chunks)
                    attrs = await files.stat(path)
        logger.info(f"Uploaded {attrs.size} bytes to {path} on resource {resource.id}")
        return {"filename": posixpath.basename(path), "path": path, "attrs": attrs.to_dict()}

    async def download(self, resource: Resource, path: str) -> Download:
        """Stat the file and hand back a streaming download that owns the session"""
        path = self.resolve_path(resource, path)
        stack = AsyncExitStack()
        try:
            session = await stack.enter_async_context(self.session_manager.open(resource))
            files = await stack.enter_async_context(session.files())
            with _remote_file_errors(path):
                attrs = await files.stat(path)
        except BaseException:
            await stack.aclose()
            raise

        content_type = mimetypes.guess_type(path)[0] or DEFAULT_CONTENT_TYPE
        logger.debug(f"downloading: {path} from resource {resource.id}")
        return Download(
            filename=posixpath.basename(path),
            path=path,
            size=attrs.size or 0,
            content_type=content_type,
            _files=files,
            _stack=stack,
        )
