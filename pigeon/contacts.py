"""
Contact directory: per-user address book entries.

A contact may exist before its phone number is registered. Its link to the
registered user (contact_user_id) is filled in lazily, whenever the contact
is resolved again, so a contact never has to be deleted and re-added to
become usable.
"""

import logging
from typing import List, Optional, Tuple

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from pigeon import storage, users
from pigeon.errors import Conflict, ContactNotFound, NotFound, ValidationFailed
from pigeon.models import Contact
from pigeon.schemas import ContactResponse, MessageResponse
from pigeon.utils import utc_now_iso, validate_phone

logger = logging.getLogger(__name__)

_UNSET = object()


def list_contacts(db: Session, owner_id: int) -> List[Tuple[Contact, Optional[object]]]:
    """
    All contacts of a user, newest first, each paired with its last message.
    """
    contacts = (
        db.query(Contact)
        .filter(Contact.user_id == owner_id)
        .order_by(Contact.created_at.desc(), Contact.id.desc())
        .all()
    )
    return [
        (contact, storage.get_last_message(db, owner_id, contact.contact_user_id))
        for contact in contacts
    ]


def get_contact(db: Session, owner_id: int, contact_id) -> Contact:
    """
    Raises:
        ContactNotFound: no such contact for this owner
    """
    try:
        contact_id = int(contact_id)
    except (TypeError, ValueError):
        raise ContactNotFound("Contact not found")
    contact = (
        db.query(Contact)
        .filter(Contact.id == contact_id, Contact.user_id == owner_id)
        .first()
    )
    if contact is None:
        raise ContactNotFound("Contact not found")
    return contact


def find_contact_for_sender(db: Session, owner_id: int, sender_id: int) -> Optional[Contact]:
    """The owner's contact entry linked to sender_id, if any."""
    return (
        db.query(Contact)
        .filter(Contact.user_id == owner_id, Contact.contact_user_id == sender_id)
        .order_by(Contact.id.asc())
        .first()
    )


def create_contact(db: Session, owner_id: int, phone_number: str, nickname: Optional[str] = None) -> Contact:
    """
    Explicitly add a registered user to the owner's address book.

    Raises:
        ValidationFailed: bad phone format, or the owner's own number
        Conflict: the phone number is already in the owner's contacts
        NotFound: no registered user has this phone number
    """
    validate_phone(phone_number)
    owner = users.require_user(db, owner_id)

    if owner.phone_number == phone_number:
        raise ValidationFailed("You cannot add your own number as a contact", code="own_number")

    existing = _find_by_phone(db, owner_id, phone_number)
    if existing is not None:
        raise Conflict("Contact already exists in your contacts list", code="contact_exists")

    contact_user = users.find_by_phone(db, phone_number)
    if contact_user is None:
        raise NotFound("No registered user found with this phone number", code="user_not_registered")

    contact = Contact(
        user_id=owner_id,
        contact_user_id=contact_user.id,
        phone_number=phone_number,
        nickname=nickname or phone_number,
        created_at=utc_now_iso(),
    )
    try:
        db.add(contact)
        db.commit()
    except IntegrityError:
        db.rollback()
        raise Conflict("Contact already exists in your contacts list", code="contact_exists")

    db.refresh(contact)
    logger.info(f"Contact created: id={contact.id}, owner={owner_id}")
    return contact


def update_contact(db: Session, owner_id: int, contact_id, nickname=_UNSET, avatar=_UNSET) -> Contact:
    contact = get_contact(db, owner_id, contact_id)

    if nickname is not _UNSET:
        if nickname is None or not str(nickname).strip():
            raise ValidationFailed("Nickname cannot be empty", code="empty_nickname")
        contact.nickname = nickname
    if avatar is not _UNSET:
        contact.avatar = avatar

    db.commit()
    db.refresh(contact)
    return contact


def delete_contact(db: Session, owner_id: int, contact_id) -> dict:
    """
    Delete a contact together with the message history between the owner
    and the contact's user.

    Deleting a contact that does not exist is treated as already done.
    """
    try:
        contact = get_contact(db, owner_id, contact_id)
    except ContactNotFound:
        logger.info(f"Contact {contact_id} not found for user {owner_id}, considering it already deleted")
        return {"success": True, "message": "Contact already deleted or does not exist", "deleted_messages": 0}

    # An unlinked contact has no user on the other side, so no messages
    deleted = 0
    if contact.contact_user_id is not None:
        deleted = storage.delete_conversation(db, owner_id, contact.contact_user_id, commit=False)
    db.delete(contact)
    db.commit()

    logger.info(f"Contact {contact.id} deleted with {deleted} messages")
    return {
        "success": True,
        "message": "Contact and associated messages deleted successfully",
        "deleted_messages": deleted,
    }


def resolve_contact(db: Session, owner_id: int, phone_number: str) -> Tuple[Contact, bool]:
    """
    Find or create the owner's contact for a phone number.

    The format is validated before any lookup. An existing contact with no
    linked user is backfilled when a registered user now has that number.
    A unique-constraint conflict on insert means another request created the
    row first; that row is returned instead.

    Returns:
        Tuple of (contact, created)
    """
    validate_phone(phone_number)

    contact = _find_by_phone(db, owner_id, phone_number)
    if contact is not None:
        if contact.contact_user_id is None:
            backfill_link(db, contact)
        return contact, False

    contact_user = users.find_by_phone(db, phone_number)
    contact = Contact(
        user_id=owner_id,
        contact_user_id=contact_user.id if contact_user else None,
        phone_number=phone_number,
        nickname=phone_number,
        created_at=utc_now_iso(),
    )
    try:
        db.add(contact)
        db.commit()
    except IntegrityError:
        db.rollback()
        logger.info(f"Concurrent contact creation for owner={owner_id}, phone={phone_number}; using existing row")
        contact = _find_by_phone(db, owner_id, phone_number)
        if contact is None:
            raise
        return contact, False

    db.refresh(contact)
    logger.info(f"Contact resolved by creation: id={contact.id}, linked={contact.contact_user_id}")
    return contact, True


def backfill_link(db: Session, contact: Contact) -> bool:
    """
    Link an unlinked contact to the registered user with its phone number.

    Returns:
        True if the link was filled in
    """
    contact_user = users.find_by_phone(db, contact.phone_number)
    if contact_user is None:
        logger.debug(f"No registered user yet for contact {contact.id}")
        return False
    contact.contact_user_id = contact_user.id
    db.commit()
    db.refresh(contact)
    logger.info(f"Backfilled contact {contact.id} with user {contact_user.id}")
    return True


def to_response(db: Session, contact: Contact, last_message=None) -> ContactResponse:
    username = None
    if contact.contact_user_id is not None:
        linked = users.get_user(db, contact.contact_user_id)
        username = linked.username if linked else None
    return ContactResponse(
        id=contact.id,
        user_id=contact.user_id,
        contact_user_id=contact.contact_user_id,
        phone_number=contact.phone_number,
        nickname=contact.nickname,
        created_at=contact.created_at,
        contact_username=username,
        has_avatar=contact.avatar is not None,
        last_message=MessageResponse.model_validate(last_message) if last_message is not None else None,
    )


def _find_by_phone(db: Session, owner_id: int, phone_number: str) -> Optional[Contact]:
    return (
        db.query(Contact)
        .filter(Contact.user_id == owner_id, Contact.phone_number == phone_number)
        .first()
    )
