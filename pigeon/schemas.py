"""
Pydantic schemas for request/response validation.

This module contains:
- Request models for incoming HTTP bodies
- Payload models for real-time channel frames
- Response models for API responses

Phone number format is checked by the services, not here, so a malformed
number is reported as a 400 validation error like every other input error.
"""

from typing import Optional

from pydantic import BaseModel, Field, field_validator

from pigeon.utils import normalize_timestamp


# =============================================================================
# Pydantic Request Models
# =============================================================================

class RegisterRequest(BaseModel):
    phone_number: str = Field(..., description="Phone number: 0 followed by 9 digits")
    username: Optional[str] = Field(None, max_length=64, description="Display name")
    password: str = Field(..., min_length=1, description="Account password")


class LoginRequest(BaseModel):
    phone_number: str
    password: str = Field(..., min_length=1)


class UpdateProfileRequest(BaseModel):
    username: Optional[str] = Field(None, max_length=64)


class ContactCreateRequest(BaseModel):
    phone_number: str = Field(..., description="Phone number of a registered user")
    nickname: Optional[str] = Field(None, max_length=64, description="Defaults to the phone number")


class ContactUpdateRequest(BaseModel):
    """
    Partial update. Only fields present in the body are applied, so an
    explicit null nickname is rejected while an absent one is left alone.
    """
    nickname: Optional[str] = Field(None, max_length=64)
    avatar: Optional[str] = Field(None, description="Base64-encoded image")


class SendMessageRequest(BaseModel):
    """
    Body of POST /api/messages/send.

    tempId is the client's temporary id for the optimistic copy; sending it
    lets a retry or a parallel real-time send collapse into the same row.
    """
    receiver_id: int = Field(..., alias="receiverId")
    content: str = Field(..., min_length=1, max_length=4096)
    temp_id: Optional[str] = Field(None, alias="tempId", max_length=128)
    timestamp: Optional[str] = Field(None, description="ISO-8601 UTC send time")

    model_config = {"populate_by_name": True}

    @field_validator("timestamp")
    @classmethod
    def validate_timestamp(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return v
        try:
            return normalize_timestamp(v)
        except ValueError:
            raise ValueError("timestamp must be a valid ISO-8601 timestamp")


# =============================================================================
# Real-time Payload Models
# =============================================================================

class RegisterPayload(BaseModel):
    user_id: int = Field(..., alias="userId")

    model_config = {"populate_by_name": True}


class PrivateMessagePayload(BaseModel):
    """
    privateMessage frame data. Older clients send the text as 'message'
    instead of 'content'; both are accepted.
    """
    sender_id: int = Field(..., alias="senderId")
    receiver_id: int = Field(..., alias="receiverId")
    content: Optional[str] = Field(None, max_length=4096)
    message: Optional[str] = Field(None, max_length=4096)
    timestamp: str
    temp_id: Optional[str] = Field(None, alias="tempId", max_length=128)

    model_config = {"populate_by_name": True}

    @field_validator("timestamp")
    @classmethod
    def validate_timestamp(cls, v: str) -> str:
        try:
            return normalize_timestamp(v)
        except ValueError:
            raise ValueError("timestamp must be a valid ISO-8601 timestamp")

    @property
    def text(self) -> Optional[str]:
        return self.content or self.message


class ContactAddedPayload(BaseModel):
    """
    message{type: CONTACT_ADDED} data. An optional first message is sent to
    the new contact through the normal send path.
    """
    sender_id: int = Field(..., alias="senderId")
    phone_number: str = Field(..., alias="phoneNumber")
    nickname: Optional[str] = Field(None, max_length=64)
    message: Optional[str] = Field(None, max_length=4096)
    timestamp: Optional[str] = None
    temp_id: Optional[str] = Field(None, alias="tempId", max_length=128)

    model_config = {"populate_by_name": True}

    @field_validator("timestamp")
    @classmethod
    def validate_timestamp(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return v
        try:
            return normalize_timestamp(v)
        except ValueError:
            raise ValueError("timestamp must be a valid ISO-8601 timestamp")


class ContactUpdatedPayload(BaseModel):
    sender_id: int = Field(..., alias="senderId")
    contact_id: int = Field(..., alias="contactId")
    updates: ContactUpdateRequest

    model_config = {"populate_by_name": True}


class ContactDeletedPayload(BaseModel):
    sender_id: int = Field(..., alias="senderId")
    contact_id: int = Field(..., alias="contactId")

    model_config = {"populate_by_name": True}


# =============================================================================
# Pydantic Response Models
# =============================================================================

class ErrorResponse(BaseModel):
    detail: str = Field(..., description="Error description")
    code: Optional[str] = Field(None, description="Machine-readable error code")


class UserResponse(BaseModel):
    id: int
    phone_number: str
    username: Optional[str] = None
    created_at: str
    has_avatar: bool = False

    model_config = {"from_attributes": True}


class LoginResponse(BaseModel):
    token: str
    user: UserResponse


class PhoneAvailabilityResponse(BaseModel):
    phone_number: str
    available: bool


class MessageResponse(BaseModel):
    id: int
    sender_id: int
    receiver_id: int
    content: str
    timestamp: str
    is_read: bool

    model_config = {"from_attributes": True}


class ContactResponse(BaseModel):
    id: int
    user_id: int
    contact_user_id: Optional[int] = None
    phone_number: str
    nickname: Optional[str] = None
    created_at: str
    contact_username: Optional[str] = None
    has_avatar: bool = False
    last_message: Optional[MessageResponse] = Field(None, serialization_alias="lastMessage")

    model_config = {"from_attributes": True, "populate_by_name": True}


class SendMessageResponse(MessageResponse):
    """
    A persisted message as returned to the sender over REST.

    contact_id is the sender's own contact entry for the receiver, if any.
    """
    auto_created_contact: Optional[ContactResponse] = None
    sender_phone_number: Optional[str] = None
    sender_username: Optional[str] = None
    contact_id: Optional[int] = Field(None, serialization_alias="contactId")
    temp_id: Optional[str] = Field(None, serialization_alias="tempId")
    duplicate: bool = False


class UnreadCountResponse(BaseModel):
    count: int = Field(..., ge=0)


class DeleteResponse(BaseModel):
    success: bool
    message: str
    deleted_messages: int = 0


class HealthResponse(BaseModel):
    """Response model for health check endpoints."""
    status: str = Field(..., description="Health status")
    reason: Optional[str] = Field(None, description="Reason if not ready")
    realtime_connections: Optional[int] = None
