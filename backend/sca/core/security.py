# backend/sca/core/security.py
import logging
from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, Optional

from fastapi import Depends, Query
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt
from pydantic import ValidationError as PydanticValidationError

from ..config import settings
from ..models.resource import Principal
from .exceptions import UnauthorizedError

logger = logging.getLogger(__name__)

bearer_scheme = HTTPBearer(auto_error=False)


def create_access_token(subject: str, gids: Optional[Iterable[int]] = None,
                        expires_delta: Optional[timedelta] = None) -> str:
    """Issue a token for subject; used by tooling and tests, the API only verifies"""
    to_encode: Dict[str, Any] = {"sub": str(subject)}
    if gids is not None:
        to_encode["gids"] = list(gids)
    if expires_delta:
        to_encode["exp"] = datetime.utcnow() + expires_delta
    return jwt.encode(to_encode, settings.JWT_SECRET_KEY, algorithm=settings.JWT_ALGORITHM)


def decode_token(token: str) -> Principal:
    """Verify a JWT and turn its claims into a Principal"""
    try:
        payload = jwt.decode(token, settings.JWT_SECRET_KEY, algorithms=[settings.JWT_ALGORITHM])
    except JWTError as e:
        logger.info(f"Rejected token: {str(e)}")
        raise UnauthorizedError("Could not validate credentials")

    user_id = payload.get("sub")
    if user_id is None:
        raise UnauthorizedError("Could not validate credentials")
    try:
        return Principal(id=str(user_id), gids=payload.get("gids") or [])
    except PydanticValidationError as e:
        logger.info(f"Rejected token claims: {str(e)}")
        raise UnauthorizedError("Could not validate credentials")


def get_current_principal(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
) -> Principal:
    if credentials is None:
        raise UnauthorizedError("No authorization token was found")
    return decode_token(credentials.credentials)


def get_download_principal(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
    at: Optional[str] = Query(None, description="Access token, for links opened outside the app"),
) -> Principal:
    """Like get_current_principal, but also takes the token from ?at="""
    if credentials is not None:
        return decode_token(credentials.credentials)
    if at:
        return decode_token(at)
    raise UnauthorizedError("No authorization token was found")
