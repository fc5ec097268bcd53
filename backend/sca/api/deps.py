# backend/sca/api/deps.py
import json
from typing import Any, Dict, Optional

from fastapi import Request

from ..core.exceptions import ValidationError
from ..services.container import Services


def get_services(request: Request) -> Services:
    """Services built in the application lifespan"""
    return request.app.state.services


def parse_where(where: Optional[str]) -> Dict[str, Any]:
    """Decode the JSON `where` query parameter into a query document"""
    if not where:
        return {}
    try:
        query = json.loads(where)
    except json.JSONDecodeError as e:
        raise ValidationError(f"where is not valid JSON: {e.msg}", field="where", value=where)
    if not isinstance(query, dict):
        raise ValidationError("where must be a JSON object", field="where", value=where)
    return query
