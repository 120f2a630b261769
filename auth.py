"""
Auth context

Resolves `Authorization: Bearer <token>` to a user document. Tokens are issued
elsewhere and stored on the user as `api_token`.
"""
import logging
from typing import Any, Dict, Optional

from fastapi import Depends, Header
from pymongo.database import Database

from database import get_db
from errors import AuthenticationError, PermissionDeniedError

logger = logging.getLogger(__name__)


def _bearer_token(authorization: Optional[str]) -> Optional[str]:
    if not authorization:
        return None
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


def optional_user(
    authorization: Optional[str] = Header(None),
    db: Database = Depends(get_db),
) -> Optional[Dict[str, Any]]:
    """The requesting user, or None for guests and unrecognised tokens."""
    token = _bearer_token(authorization)
    if token is None:
        return None
    user = db["user"].find_one({"api_token": token, "is_active": {"$ne": False}})
    if user is None:
        logger.info("Unrecognised token, proceeding as guest")
    return user


def require_user(user: Optional[Dict[str, Any]] = Depends(optional_user)) -> Dict[str, Any]:
    if user is None:
        raise AuthenticationError()
    return user


def require_admin(user: Dict[str, Any] = Depends(require_user)) -> Dict[str, Any]:
    if user.get("role") != "admin":
        raise PermissionDeniedError("Not authorized as admin")
    return user
