# backend/sca/services/resource_manager.py
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

import asyncssh
from motor.motor_asyncio import AsyncIOMotorDatabase

from ..catalog import Catalog
from ..core.crypto import SecretCipher, is_secret, mask_secrets
from ..core.exceptions import NotFoundError, RemoteConnectionError, SCAError, ValidationError
from ..models.resource import Principal, Resource, ResourceCreate, ResourceUpdate, SSHKeyInstall
from .access import authorize, require_owner
from .remote_session import SessionManager

logger = logging.getLogger(__name__)

INSTALL_KEY_COMMAND = (
    "mkdir -p .ssh && chmod 700 .ssh && "
    "cat >> .ssh/authorized_keys && chmod 600 .ssh/authorized_keys"
)


class ResourceManager:
    """Resource Store: registration, ownership and masking of resources"""

    def __init__(self, db: AsyncIOMotorDatabase, cipher: SecretCipher, catalog: Catalog,
                 session_manager: Optional[SessionManager] = None):
        self.db = db
        self.resources_collection = db.resources
        self.cipher = cipher
        self.catalog = catalog
        self.session_manager = session_manager

    async def get(self, resource_id: str) -> Optional[Resource]:
        resource_data = await self.resources_collection.find_one({"_id": resource_id})
        if resource_data:
            return Resource(**resource_data)
        return None

    async def get_or_404(self, resource_id: str) -> Resource:
        resource = await self.get(resource_id)
        if resource is None:
            raise NotFoundError("Couldn't find the resource specified")
        return resource

    async def get_accessible(self, principal: Principal, resource_id: str) -> Resource:
        """Load a resource the principal owns or shares a group with"""
        return authorize(principal, await self.get_or_404(resource_id))

    async def list_owned(self, user_id: str, where: Optional[Dict[str, Any]] = None) -> List[Resource]:
        """Resources registered by user_id (group-shared ones are not included)"""
        query = dict(where or {})
        query["user_id"] = user_id
        return [Resource(**r) async for r in self.resources_collection.find(query)]

    async def list_visible(self, principal: Principal) -> List[Resource]:
        """Active resources owned by, or shared through a group with, the principal"""
        visibility = [{"user_id": principal.id}]
        if principal.gids:
            visibility.append({"gids": {"$in": list(principal.gids)}})
        query = {"active": True, "$or": visibility}
        return [Resource(**r) async for r in self.resources_collection.find(query)]

    async def create(self, principal: Principal, request: ResourceCreate) -> Resource:
        now = datetime.utcnow()
        resource = Resource(
            user_id=principal.id,
            resource_id=request.resource_id,
            name=request.name,
            type=request.type,
            gids=request.gids,
            config=self.cipher.encrypt_config(request.config),
            active=request.active,
            create_date=now,
            update_date=now,
        )
        await self.resources_collection.insert_one(resource.to_document())
        logger.info(f"Resource {resource.id} ({resource.resource_id}) registered by user {principal.id}")
        return resource

    async def update(self, principal: Principal, resource_id: str, request: ResourceUpdate) -> Resource:
        """Owner-only update; enc_* values sent back as True keep the stored secret"""
        resource = require_owner(principal, await self.get_or_404(resource_id))

        # null means "leave as is", same as an absent field
        update_data = request.model_dump(exclude_none=True)
        if "config" in update_data:
            stored = self.cipher.decrypt_config(resource.config)
            config = {}
            for k, v in update_data["config"].items():
                if is_secret(k) and v is True:
                    v = stored.get(k)
                if v is not None:
                    config[k] = v
            update_data["config"] = self.cipher.encrypt_config(config)
        update_data["update_date"] = datetime.utcnow()

        updated = Resource(**{**resource.to_document(), **update_data})
        await self.resources_collection.update_one({"_id": resource.id}, {"$set": update_data})
        return updated

    async def delete(self, principal: Principal, resource_id: str) -> None:
        resource = require_owner(principal, await self.get_or_404(resource_id))
        await self.resources_collection.delete_one({"_id": resource.id})
        logger.info(f"Resource {resource.id} removed by user {principal.id}")

    async def test(self, resource: Resource) -> Dict[str, str]:
        """Check connectivity and record the outcome on the resource"""
        try:
            async with self.session_manager.open(resource) as session:
                result = await session.exec("whoami")
        except RemoteConnectionError as e:
            await self._set_status(resource.id, "failed", e.message)
            raise

        status_msg = f"Connected as {result.stdout.strip()}" if result.stdout else "Connected"
        await self._set_status(resource.id, "ok", status_msg)
        return {"status": "ok", "message": status_msg}

    @staticmethod
    def generate_ssh_key(comment: Optional[str] = None) -> Dict[str, str]:
        """Fresh RSA key pair for the resource editor; nothing is stored"""
        key = asyncssh.generate_private_key("ssh-rsa", comment=comment, key_size=2048)
        return {
            "pubkey": key.export_public_key().decode().strip(),
            "key": key.export_private_key("pkcs1-pem").decode(),
        }

    async def install_ssh_key(self, request: SSHKeyInstall) -> None:
        """Log in with a password once and append pubkey to authorized_keys.

        Only hosts listed in the catalog are accepted. The password is used
        for this single connection and never stored.
        """
        detail = self.catalog.by_hostname(request.host)
        if detail is None:
            raise ValidationError(f"Unknown host: {request.host}", field="host")
        try:
            key = asyncssh.import_public_key(request.pubkey)
        except asyncssh.KeyImportError as e:
            raise ValidationError(f"Invalid public key: {str(e)}", field="pubkey") from e

        line = " ".join(key.export_public_key().decode().split()[:2])
        if request.comment:
            line = f"{line} {' '.join(request.comment.split())}"

        async with self.session_manager.open_with_password(
            detail.hostname, request.username, request.password, port=detail.port
        ) as session:
            result = await session.exec(INSTALL_KEY_COMMAND, input=f"{line}\n".encode())
        if result.exit_status:
            raise SCAError(result.stderr.strip() or "Failed to install the public key")
        logger.info(f"Installed public key for {request.username}@{detail.hostname}")

    async def _set_status(self, resource_id: str, status: str, status_msg: str):
        await self.resources_collection.update_one(
            {"_id": resource_id},
            {"$set": {"status": status, "status_msg": status_msg, "update_date": datetime.utcnow()}},
        )

    def workdir(self, resource: Resource, workflow_id: Optional[str] = None) -> str:
        detail = self.catalog.resource_type(resource.resource_id)
        return detail.render_workdir(resource.username, workflow_id)

    def serialize(self, resource: Resource, with_detail: bool = True) -> Dict[str, Any]:
        """JSON-ready resource with every secret masked"""
        data = resource.model_dump(by_alias=True, mode="json")
        data["config"] = mask_secrets(data.get("config") or {})
        if with_detail:
            detail = self.catalog.resources.get(resource.resource_id)
            data["detail"] = detail.to_dict() if detail else None
        return data
