"""
SQLAlchemy ORM models for database tables.

This module contains database table definitions using SQLAlchemy.
For Pydantic request/response schemas, see schemas.py.
"""

from sqlalchemy import (
    Boolean,
    Column,
    ForeignKey,
    Index,
    Integer,
    LargeBinary,
    String,
    Text,
    UniqueConstraint,
)

from pigeon.storage import Base


class User(Base):
    """
    Registered account.

    Table: users
    Unique: phone_number
    """
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    phone_number = Column(String(10), unique=True, index=True, nullable=False)
    username = Column(String, nullable=True)
    password_hash = Column(String, nullable=False)
    avatar = Column(LargeBinary, nullable=True)
    created_at = Column(String, nullable=False)  # Server time ISO-8601


class Contact(Base):
    """
    Address-book entry owned by one user.

    contact_user_id stays NULL until a registered user with the same phone
    number is found; it is backfilled on the next resolution.
    """
    __tablename__ = "contacts"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    contact_user_id = Column(Integer, ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    phone_number = Column(String(10), nullable=False)
    nickname = Column(String, nullable=True)
    avatar = Column(LargeBinary, nullable=True)
    created_at = Column(String, nullable=False)

    # Guards the auto-create race between two concurrent senders
    __table_args__ = (
        UniqueConstraint("user_id", "phone_number", name="uq_contacts_owner_phone"),
        Index("idx_contacts_owner_linked", "user_id", "contact_user_id"),
    )


class Message(Base):
    """
    Directed message between two users.

    client_id is the sender's temporary id; together with sender_id it makes
    a resend of the same logical message a duplicate instead of a new row.
    """
    __tablename__ = "messages"

    id = Column(Integer, primary_key=True, index=True)
    sender_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    receiver_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    content = Column(Text, nullable=False)
    timestamp = Column(String, nullable=False, index=True)  # ISO-8601 UTC string
    is_read = Column(Boolean, nullable=False, default=False)
    client_id = Column(String, nullable=True)

    __table_args__ = (
        UniqueConstraint("sender_id", "client_id", name="uq_messages_sender_client"),
        Index("idx_messages_pair", "sender_id", "receiver_id"),
    )
