# backend/sca/api/resources.py
import base64
import binascii
import logging
import posixpath
from typing import AsyncIterator, Optional

from fastapi import APIRouter, Depends, File, Form, Query, Request, UploadFile
from fastapi.responses import StreamingResponse

from ..core.exceptions import ValidationError
from ..core.security import get_current_principal, get_download_principal
from ..models.resource import Principal, ResourceCreate, ResourceUpdate, SSHKeyInstall
from ..services.container import Services
from ..services.file_transfer import sanitize_filename
from ..services.remote_session import CHUNK_SIZE
from .deps import get_services, parse_where

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/resource", tags=["Resources"])


async def _upload_chunks(upload: UploadFile) -> AsyncIterator[bytes]:
    while True:
        chunk = await upload.read(CHUNK_SIZE)
        if not chunk:
            break
        yield chunk


def _decode_path(path_b64: str) -> str:
    try:
        return base64.b64decode(path_b64, validate=True).decode("utf-8")
    except (binascii.Error, UnicodeDecodeError):
        raise ValidationError("path must be base64 encoded", field="path", value=path_b64)


@router.get("")
async def list_resources(
    where: Optional[str] = Query(None, description="JSON query document"),
    principal: Principal = Depends(get_current_principal),
    services: Services = Depends(get_services),
):
    """Resources registered by the caller, secrets masked"""
    resources = await services.resources.list_owned(principal.id, parse_where(where))
    return [services.resources.serialize(r) for r in resources]


@router.get("/ls")
async def list_directory(
    resource_id: str = Query(...),
    path: str = Query(...),
    principal: Principal = Depends(get_current_principal),
    services: Services = Depends(get_services),
):
    resource = await services.resources.get_accessible(principal, resource_id)
    files = await services.files.list(resource, path)
    return {"files": files}


@router.delete("/file")
async def remove_file(
    resource_id: str = Query(...),
    path: str = Query(...),
    principal: Principal = Depends(get_current_principal),
    services: Services = Depends(get_services),
):
    resource = await services.resources.get_accessible(principal, resource_id)
    await services.files.remove(resource, path)
    return {"msg": "file removed"}


@router.get("/best")
async def best_resource(
    service: Optional[str] = Query(None),
    principal: Principal = Depends(get_current_principal),
    services: Services = Depends(get_services),
):
    """Pick the resource the caller should use to run service"""
    logger.debug(f"choosing best resource for service: {service}")
    selection = await services.selector.select(principal, service)
    if selection is None:
        return {"nomatch": True}

    resource = selection.resource
    detail = services.catalog.resource_type(resource.resource_id)
    return {
        "score": selection.score,
        "resource": services.resources.serialize(resource, with_detail=False),
        "detail": detail.to_dict(),
        "workdir": services.resources.workdir(resource),
    }


@router.get("/gensshkey")
def generate_ssh_key(services: Services = Depends(get_services)):
    """New key pair for a resource being set up; the pair is not stored"""
    return services.resources.generate_ssh_key()


@router.post("/installsshkey")
async def install_ssh_key(
    request: SSHKeyInstall,
    principal: Principal = Depends(get_current_principal),
    services: Services = Depends(get_services),
):
    """Append a public key to authorized_keys using a one-time password login"""
    logger.info(f"user {principal.id} installing a public key for {request.username}@{request.host}")
    await services.resources.install_ssh_key(request)
    return {"message": "ok"}


@router.post("/upload")
async def upload_form(
    resource_id: str = Form(...),
    path: str = Form(..., description="Directory to place the file in"),
    file: UploadFile = File(...),
    principal: Principal = Depends(get_current_principal),
    services: Services = Depends(get_services),
):
    """Multipart upload into a directory on the resource"""
    resource = await services.resources.get_accessible(principal, resource_id)
    filename = sanitize_filename(file.filename)
    try:
        result = await services.files.upload(resource, posixpath.join(path, filename), _upload_chunks(file))
    finally:
        await file.close()
    return {"file": {"filename": filename, "attrs": result["attrs"]}}


@router.post("/upload/{resource_id}/{path_b64}")
async def upload_stream(
    resource_id: str,
    path_b64: str,
    request: Request,
    principal: Principal = Depends(get_current_principal),
    services: Services = Depends(get_services),
):
    """Stream the raw request body to a base64 encoded path"""
    path = _decode_path(path_b64)
    resource = await services.resources.get_accessible(principal, resource_id)
    result = await services.files.upload(resource, path, request.stream())
    return {"filename": result["filename"], "attrs": result["attrs"]}


@router.get("/download")
async def download_file(
    r: str = Query(..., description="Resource id"),
    p: str = Query(..., description="Path of the file"),
    principal: Principal = Depends(get_download_principal),
    services: Services = Depends(get_services),
):
    resource = await services.resources.get_accessible(principal, r)
    download = await services.files.download(resource, p)
    return StreamingResponse(
        download.iter_content(),
        media_type=download.content_type,
        headers=download.headers,
    )


@router.put("/test/{resource_id}")
async def test_resource(
    resource_id: str,
    principal: Principal = Depends(get_current_principal),
    services: Services = Depends(get_services),
):
    """Check that the resource accepts an SSH login"""
    resource = await services.resources.get_accessible(principal, resource_id)
    return await services.resources.test(resource)


@router.put("/{resource_id}")
async def update_resource(
    resource_id: str,
    request: ResourceUpdate,
    principal: Principal = Depends(get_current_principal),
    services: Services = Depends(get_services),
):
    resource = await services.resources.update(principal, resource_id, request)
    return services.resources.serialize(resource, with_detail=False)


@router.post("")
async def register_resource(
    request: ResourceCreate,
    principal: Principal = Depends(get_current_principal),
    services: Services = Depends(get_services),
):
    """Store a new resource; no connectivity test is made"""
    resource = await services.resources.create(principal, request)
    return services.resources.serialize(resource, with_detail=False)


@router.delete("/{resource_id}")
async def remove_resource(
    resource_id: str,
    principal: Principal = Depends(get_current_principal),
    services: Services = Depends(get_services),
):
    await services.resources.delete(principal, resource_id)
    return {"status": "ok"}
