# backend/sca/services/access.py
import logging
from typing import List, Sequence

from ..core.exceptions import UnauthorizedError
from ..models.resource import Principal, Resource

logger = logging.getLogger(__name__)


def intersect_sorted(a: Sequence[int], b: Sequence[int]) -> List[int]:
    """Return the common elements of two ascending sequences.

    Both inputs must already be sorted; this walks them once with two
    pointers and does not sort, so unsorted input gives a wrong answer.
    """
    ai, bi = 0, 0
    result = []
    while ai < len(a) and bi < len(b):
        if a[ai] < b[bi]:
            ai += 1
        elif a[ai] > b[bi]:
            bi += 1
        else:
            result.append(a[ai])
            ai += 1
            bi += 1
    return result


def check_access(principal: Principal, resource: Resource) -> bool:
    """True if the principal owns the resource or shares one of its groups"""
    if resource.user_id == principal.id:
        return True
    if resource.gids and principal.gids:
        return len(intersect_sorted(resource.gids, principal.gids)) > 0
    return False


def authorize(principal: Principal, resource: Resource) -> Resource:
    if not check_access(principal, resource):
        logger.info(f"Access denied: user {principal.id} on resource {resource.id}")
        raise UnauthorizedError("You don't have access to this resource")
    return resource


def require_owner(principal: Principal, resource: Resource) -> Resource:
    if resource.user_id != principal.id:
        raise UnauthorizedError("You don't own this resource")
    return resource
