# backend/sca/services/progress.py
import logging
from enum import Enum
from typing import Any, Dict, Optional
from urllib.parse import quote

import httpx

logger = logging.getLogger(__name__)


class ProgressStatus(str, Enum):
    WAITING = "waiting"
    RUNNING = "running"
    FINISHED = "finished"
    FAILED = "failed"


class ProgressReporter:
    """Publishes task status to the external progress service.

    Updates are fire-and-forget: callers may await them, but a failed post is
    logged and never propagated to the operation that triggered it.
    """

    def __init__(self, api_url: Optional[str] = None, token: Optional[str] = None,
                 client: Optional[httpx.AsyncClient] = None, timeout: float = 10.0):
        self.api_url = api_url.rstrip("/") if api_url else None
        self.token = token
        self.timeout = timeout
        self._client = client

    def _headers(self) -> Dict[str, str]:
        if not self.token:
            return {}
        return {"Authorization": f"Bearer {self.token}"}

    async def update(self, progress_key: str, status: Optional[str] = None, msg: Optional[str] = None,
                     progress: Optional[float] = None, **extra: Any) -> None:
        """Post a status update for progress_key"""
        payload: Dict[str, Any] = {}
        if status is not None:
            payload["status"] = status.value if isinstance(status, Enum) else status
        if msg is not None:
            payload["msg"] = msg
        if progress is not None:
            payload["progress"] = progress
        payload.update({k: v for k, v in extra.items() if v is not None})

        if not self.api_url:
            logger.debug(f"progress {progress_key}: {payload}")
            return

        url = f"{self.api_url}/status/{quote(progress_key, safe='')}"
        try:
            if self._client is not None:
                response = await self._client.post(url, json=payload, headers=self._headers())
            else:
                async with httpx.AsyncClient(timeout=self.timeout) as client:
                    response = await client.post(url, json=payload, headers=self._headers())
            response.raise_for_status()
        except Exception as e:
            logger.warning(f"Failed to post progress update for {progress_key}: {str(e)}")
