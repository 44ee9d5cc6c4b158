"""
User store: registration, authentication and profile lookups.
"""

import logging
from typing import Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from pigeon.errors import Conflict, Unauthorized, UserNotFound, ValidationFailed
from pigeon.models import User
from pigeon.utils import hash_password, utc_now_iso, validate_phone, verify_password

logger = logging.getLogger(__name__)


def register(db: Session, phone_number: str, username: Optional[str], password: str) -> User:
    """
    Create a new account.

    Raises:
        ValidationFailed: bad phone format or empty password
        Conflict: the phone number is already registered
    """
    validate_phone(phone_number)
    if not password:
        raise ValidationFailed("Password is required")

    if find_by_phone(db, phone_number) is not None:
        logger.info(f"Registration rejected, phone already registered: {phone_number}")
        raise Conflict("User with this phone number already exists", code="user_exists")

    user = User(
        phone_number=phone_number,
        username=username,
        password_hash=hash_password(password),
        created_at=utc_now_iso(),
    )
    try:
        db.add(user)
        db.commit()
    except IntegrityError:
        db.rollback()
        logger.info(f"Registration lost race on phone: {phone_number}")
        raise Conflict("User with this phone number already exists", code="user_exists")

    db.refresh(user)
    logger.info(f"User registered: id={user.id}")
    return user


def authenticate(db: Session, phone_number: str, password: str) -> User:
    validate_phone(phone_number)
    user = find_by_phone(db, phone_number)
    if user is None:
        raise Unauthorized("User not found", code="user_not_found")
    if not verify_password(password, user.password_hash):
        raise Unauthorized("Invalid password", code="invalid_password")
    return user


def get_user(db: Session, user_id) -> Optional[User]:
    try:
        user_id = int(user_id)
    except (TypeError, ValueError):
        return None
    return db.query(User).filter(User.id == user_id).first()


def require_user(db: Session, user_id) -> User:
    """Like get_user, but a missing row raises UserNotFound."""
    user = get_user(db, user_id)
    if user is None:
        raise UserNotFound(f"User with ID {user_id} not found")
    return user


def find_by_phone(db: Session, phone_number: str) -> Optional[User]:
    validate_phone(phone_number)
    return db.query(User).filter(User.phone_number == phone_number).first()


def is_phone_available(db: Session, phone_number: str) -> bool:
    return find_by_phone(db, phone_number) is None


def update_profile(db: Session, user_id: int, username: Optional[str]) -> User:
    user = require_user(db, user_id)
    if username is not None:
        if not username.strip():
            raise ValidationFailed("Username cannot be empty")
        user.username = username
        db.commit()
        db.refresh(user)
    return user


def set_avatar(db: Session, user_id: int, avatar: bytes) -> User:
    if not avatar:
        raise ValidationFailed("No avatar image provided")
    user = require_user(db, user_id)
    user.avatar = avatar
    db.commit()
    return user


def get_avatar(db: Session, user_id: int) -> Optional[bytes]:
    return require_user(db, user_id).avatar
