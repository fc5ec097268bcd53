# backend/sca/catalog.py
"""Static, read-only catalog of resource types and installable services.

Loaded once at startup and handed to every component that needs hostname or
working-directory lookups, instead of being read from a global.
"""
import json
import logging
import posixpath
from dataclasses import dataclass, field
from pathlib import Path
from types import MappingProxyType
from typing import Any, Dict, Mapping, Optional, Tuple

from .core.exceptions import NotFoundError

logger = logging.getLogger(__name__)

USERNAME_PLACEHOLDER = "__username__"
WORKFLOW_PLACEHOLDER = "__workflowid__"


@dataclass(frozen=True)
class ResourceType:
    """One resource-type entry (e.g. a cluster login node or archive)"""
    resource_id: str
    hostname: str
    workdir: str
    name: str = ""
    type: str = ""
    services: Tuple[str, ...] = ()
    port: int = 22

    def supports(self, service: str) -> bool:
        return service in self.services

    def render_workdir(self, username: str, workflow_id: Optional[str] = None) -> str:
        """Substitute the placeholders of the workdir template.

        Without a workflow id the workflow segment is dropped, which yields the
        user's root directory on the resource.
        """
        workdir = self.workdir.replace(USERNAME_PLACEHOLDER, username or "")
        workdir = workdir.replace(WORKFLOW_PLACEHOLDER, workflow_id or "")
        return posixpath.normpath(workdir)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "type": self.type,
            "hostname": self.hostname,
            "workdir": self.workdir,
            "services": list(self.services),
        }


@dataclass(frozen=True)
class ServiceEntry:
    service_id: str
    giturl: Optional[str] = None


@dataclass(frozen=True)
class Catalog:
    resources: Mapping[str, ResourceType] = field(default_factory=dict)
    services: Mapping[str, ServiceEntry] = field(default_factory=dict)

    def resource_type(self, resource_id: str) -> ResourceType:
        detail = self.resources.get(resource_id)
        if detail is None:
            raise NotFoundError(f"Unknown resource type: {resource_id}")
        return detail

    def service(self, service_id: str) -> Optional[ServiceEntry]:
        return self.services.get(service_id)

    def by_hostname(self, hostname: str) -> Optional[ResourceType]:
        for detail in self.resources.values():
            if detail.hostname == hostname:
                return detail
        return None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Catalog":
        resources = {}
        for resource_id, detail in (data.get("resources") or {}).items():
            resources[resource_id] = ResourceType(
                resource_id=resource_id,
                hostname=detail["hostname"],
                workdir=detail.get("workdir", "/tmp"),
                name=detail.get("name", resource_id),
                type=detail.get("type", ""),
                services=tuple(detail.get("services", [])),
                port=int(detail.get("port", 22)),
            )
        services = {}
        for service_id, detail in (data.get("services") or {}).items():
            services[service_id] = ServiceEntry(service_id=service_id, giturl=detail.get("giturl"))
        return cls(resources=MappingProxyType(resources), services=MappingProxyType(services))


def load_catalog(path: Path) -> Catalog:
    """Load the catalog JSON file; an absent file yields an empty catalog"""
    path = Path(path)
    if not path.exists():
        logger.warning(f"Catalog file {path} not found, starting with an empty catalog")
        return Catalog()

    with open(path, "r") as f:
        data = json.load(f)

    catalog = Catalog.from_dict(data)
    logger.info(f"Loaded catalog: {len(catalog.resources)} resource types, {len(catalog.services)} services")
    return catalog
