"""
Bearer-token authentication for the HTTP routes.
"""

import logging
from typing import Annotated, Optional

from fastapi import Depends, Header
from sqlalchemy.orm import Session

from pigeon import users
from pigeon.config import settings
from pigeon.errors import Unauthorized, UserNotFound
from pigeon.models import User
from pigeon.storage import get_db
from pigeon.utils import decode_token, issue_token

logger = logging.getLogger(__name__)


def create_access_token(user: User) -> str:
    return issue_token(user.id, user.phone_number, settings.JWT_SECRET, settings.JWT_EXPIRE_DAYS)


def user_id_from_token(token: str) -> int:
    claims = decode_token(token, settings.JWT_SECRET)
    try:
        return int(claims["userId"])
    except (KeyError, TypeError, ValueError):
        raise Unauthorized("Invalid token", code="invalid_token")


def get_current_user(
    authorization: Annotated[Optional[str], Header(alias="Authorization")] = None,
    db: Session = Depends(get_db),
) -> User:
    """
    Resolve the Authorization: Bearer header to a user row.

    A valid token for an account that no longer exists is a 404, so clients
    can tell a deleted account apart from a bad token.
    """
    if not authorization or not authorization.startswith("Bearer "):
        raise Unauthorized("Authentication required", code="auth_required")

    user_id = user_id_from_token(authorization[len("Bearer "):].strip())
    user = users.get_user(db, user_id)
    if user is None:
        logger.info(f"Token refers to missing user {user_id}")
        raise UserNotFound("User not found or deleted")
    return user


CurrentUser = Annotated[User, Depends(get_current_user)]
