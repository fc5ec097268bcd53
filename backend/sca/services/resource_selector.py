# backend/sca/services/resource_selector.py
import logging
from dataclasses import dataclass
from typing import List, Optional

from ..catalog import Catalog
from ..models.resource import Principal, Resource
from .access import check_access
from .resource_manager import ResourceManager

logger = logging.getLogger(__name__)

SCORE_SERVICE_MATCH = 10
SCORE_OWNED = 5
SCORE_TESTED_OK = 1


@dataclass
class Selection:
    resource: Resource
    score: int


class ResourceSelector:
    """Picks the resource a principal should use for a service.

    Score: 10 for declaring the service in the catalog, +5 when the principal
    owns the resource, +1 when its last connectivity test passed. Ties go to
    the earliest registered resource, then the smallest id.
    """

    def __init__(self, resource_manager: ResourceManager, catalog: Catalog):
        self.resource_manager = resource_manager
        self.catalog = catalog

    def score(self, principal: Principal, resource: Resource, service: Optional[str]) -> Optional[int]:
        """Score one candidate, or None if it cannot run the service"""
        detail = self.catalog.resources.get(resource.resource_id)
        if detail is None:
            return None
        if service and not detail.supports(service):
            return None
        score = SCORE_SERVICE_MATCH if service else 0
        if resource.user_id == principal.id:
            score += SCORE_OWNED
        if resource.status == "ok":
            score += SCORE_TESTED_OK
        return score

    def rank(self, principal: Principal, resources: List[Resource], service: Optional[str]) -> List[Selection]:
        candidates = []
        for resource in resources:
            if not resource.active or not check_access(principal, resource):
                continue
            score = self.score(principal, resource, service)
            if score is not None:
                candidates.append(Selection(resource=resource, score=score))
        candidates.sort(key=lambda s: (-s.score, s.resource.create_date, s.resource.id))
        return candidates

    async def select(self, principal: Principal, service: Optional[str]) -> Optional[Selection]:
        """Best resource for service, or None when nothing matches"""
        resources = await self.resource_manager.list_visible(principal)
        ranked = self.rank(principal, resources, service)
        if not ranked:
            logger.info(f"No resource matches service {service} for user {principal.id}")
            return None
        best = ranked[0]
        logger.debug(f"Selected resource {best.resource.id} (score {best.score}) for service {service}")
        return best
