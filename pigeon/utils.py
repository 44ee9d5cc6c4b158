"""
Utility functions for the messaging API.
"""

import hashlib
import hmac
import logging
import os
import re
from datetime import datetime, timedelta, timezone
from typing import Optional

import jwt

from pigeon.errors import Unauthorized, ValidationFailed

logger = logging.getLogger(__name__)

PHONE_RE = re.compile(r"^0\d{9}$")
PHONE_FORMAT_MESSAGE = "Phone number must be 0 followed by 9 digits"

JWT_ALGORITHM = "HS256"
PBKDF2_ITERATIONS = 200_000


def is_valid_phone(phone_number: Optional[str]) -> bool:
    """Check the leading-zero + 9 digits phone format."""
    return bool(phone_number) and PHONE_RE.match(phone_number) is not None


def validate_phone(phone_number: Optional[str]) -> str:
    """Return the phone number, or raise ValidationFailed if it is malformed."""
    if not is_valid_phone(phone_number):
        raise ValidationFailed(PHONE_FORMAT_MESSAGE, code="invalid_phone")
    return phone_number


# =============================================================================
# Timestamps
# =============================================================================

def utc_now_iso() -> str:
    """Current server time as ISO-8601 UTC with millisecond precision."""
    return format_timestamp(datetime.now(timezone.utc))


def format_timestamp(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    value = value.astimezone(timezone.utc)
    return value.strftime("%Y-%m-%dT%H:%M:%S.") + f"{value.microsecond // 1000:03d}Z"


def parse_timestamp(value: str) -> datetime:
    """
    Parse an ISO-8601 timestamp. Naive values are taken as UTC.

    Raises:
        ValueError: if the string is not ISO-8601
    """
    parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def normalize_timestamp(value: Optional[str]) -> str:
    """Canonical storage form, so string ordering matches time ordering."""
    if not value:
        return utc_now_iso()
    return format_timestamp(parse_timestamp(value))


# =============================================================================
# Passwords
# =============================================================================

def hash_password(password: str) -> str:
    """Hash a password with PBKDF2-SHA256 and a random salt."""
    salt = os.urandom(16)
    digest = hashlib.pbkdf2_hmac("sha256", password.encode("utf-8"), salt, PBKDF2_ITERATIONS)
    return f"pbkdf2_sha256${PBKDF2_ITERATIONS}${salt.hex()}${digest.hex()}"


def verify_password(password: str, password_hash: str) -> bool:
    try:
        scheme, iterations, salt_hex, digest_hex = password_hash.split("$")
    except ValueError:
        logger.warning("Malformed password hash")
        return False
    if scheme != "pbkdf2_sha256":
        return False

    candidate = hashlib.pbkdf2_hmac(
        "sha256", password.encode("utf-8"), bytes.fromhex(salt_hex), int(iterations)
    )
    # Use constant-time comparison to prevent timing attacks
    return hmac.compare_digest(candidate.hex(), digest_hex)


# =============================================================================
# Tokens
# =============================================================================

def issue_token(user_id: int, phone_number: str, secret: str, expire_days: int) -> str:
    expires = datetime.now(timezone.utc) + timedelta(days=expire_days)
    payload = {"userId": user_id, "phone_number": phone_number, "exp": expires}
    return jwt.encode(payload, secret, algorithm=JWT_ALGORITHM)


def decode_token(token: str, secret: str) -> dict:
    """
    Verify a bearer token and return its claims.

    Raises:
        Unauthorized: if the token is expired or invalid
    """
    try:
        return jwt.decode(token, secret, algorithms=[JWT_ALGORITHM])
    except jwt.ExpiredSignatureError:
        logger.info("Rejected expired token")
        raise Unauthorized("Token expired", code="token_expired")
    except jwt.InvalidTokenError:
        logger.info("Rejected invalid token")
        raise Unauthorized("Invalid token", code="invalid_token")
