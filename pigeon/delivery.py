"""
Delivery router: the single path every user-initiated send goes through,
whether it arrives on the real-time channel or on the REST endpoint.

One send is handled as:

1. both users must exist, otherwise UserNotFound and nothing is stored;
2. exactly one Message row is persisted (a repeat of the same logical send
   returns the stored row);
3. the receiver gets a Contact pointing at the sender, auto-created from the
   sender's phone number if missing;
4. an online receiver is sent ``newMessage``;
5. an online sender is sent ``message_sent``, distinct from the forward so
   the sender's client never re-appends its own message.

Forwarding is fire-and-forget. An offline receiver finds the message on its
next conversation fetch.

Contact changes made over the real-time channel (add, update, delete) go
through the router too and are acknowledged to the owner with
``contact_added`` / ``contact_updated`` / ``contact_deleted``.
"""

import logging
from dataclasses import dataclass
from typing import Any, Optional

from sqlalchemy.orm import Session

from pigeon import contacts, storage, users
from pigeon.errors import PigeonError, UserNotFound
from pigeon.metrics import record_auto_created_contact, record_send_outcome
from pigeon.models import Contact, Message, User
from pigeon.registry import SessionRegistry
from pigeon.schemas import MessageResponse
from pigeon.utils import normalize_timestamp

logger = logging.getLogger(__name__)

# Real-time event names
EVENT_REGISTER_SUCCESS = "register_success"
EVENT_SOCKET_ERROR = "socket_error"
EVENT_NEW_MESSAGE = "newMessage"
EVENT_MESSAGE_SENT = "message_sent"
EVENT_MESSAGE_ERROR = "message_error"
EVENT_CONTACT_ADDED = "contact_added"
EVENT_CONTACT_UPDATED = "contact_updated"
EVENT_CONTACT_DELETED = "contact_deleted"

# message{type} values
PRIVATE_MESSAGE = "PRIVATE_MESSAGE"
CONTACT_ADDED = "CONTACT_ADDED"
CONTACT_UPDATED = "CONTACT_UPDATED"
CONTACT_DELETED = "CONTACT_DELETED"


@dataclass
class SendResult:
    message: Message
    sender: User
    receiver: User
    duplicate: bool = False
    auto_created_contact: Optional[Contact] = None
    sender_contact: Optional[Contact] = None
    temp_id: Optional[str] = None
    forwarded: bool = False
    acknowledged: bool = False


def contact_payload(db: Session, contact: Contact) -> dict:
    return contacts.to_response(db, contact).model_dump(by_alias=True)


def message_payload(message: Message) -> dict:
    return MessageResponse.model_validate(message).model_dump()


class DeliveryRouter:
    def __init__(self, registry: SessionRegistry, dedup_window_ms: int = 1000):
        self.registry = registry
        self.dedup_window_ms = dedup_window_ms

    # -------------------------------------------------------------------------
    # Sessions
    # -------------------------------------------------------------------------

    async def register(self, db: Session, user_id: Any, session_id: str, socket: Any) -> bool:
        """
        Bind a real-time session to a user id that exists in the user store.

        A stale client of a deleted account is refused, so it cannot take
        over a session slot.
        """
        user = users.get_user(db, user_id)
        if user is None:
            logger.warning(f"Refusing registration of unknown user {user_id}")
            await socket.send_json({
                "event": EVENT_SOCKET_ERROR,
                "data": {"type": "auth_error", "message": "User not found in database"},
            })
            return False

        self.registry.register(user.id, session_id, socket)
        await socket.send_json({"event": EVENT_REGISTER_SUCCESS, "data": {"userId": user.id}})
        return True

    def disconnect(self, session_id: str) -> Optional[int]:
        user_id = self.registry.remove_session(session_id)
        if user_id is not None:
            logger.info(f"User {user_id} disconnected")
        return user_id

    # -------------------------------------------------------------------------
    # Sending
    # -------------------------------------------------------------------------

    def persist(
        self,
        db: Session,
        sender_id: Any,
        receiver_id: Any,
        content: str,
        timestamp: Optional[str] = None,
        temp_id: Optional[str] = None,
    ) -> SendResult:
        """
        Steps 1-3: validate, store once, resolve the receiver's contact.
        """
        sender = users.get_user(db, sender_id)
        if sender is None:
            raise UserNotFound(f"User with ID {sender_id} not found")
        receiver = users.get_user(db, receiver_id)
        if receiver is None:
            raise UserNotFound(f"User with ID {receiver_id} not found")

        message, duplicate = storage.create_message(
            db,
            sender_id=sender.id,
            receiver_id=receiver.id,
            content=content,
            timestamp=normalize_timestamp(timestamp),
            client_id=temp_id,
            dedup_window_ms=self.dedup_window_ms,
        )
        result = SendResult(
            message=message,
            sender=sender,
            receiver=receiver,
            duplicate=duplicate,
            temp_id=temp_id,
        )

        if not duplicate:
            result.auto_created_contact = self._ensure_receiver_contact(db, receiver, sender)
        result.sender_contact = contacts.find_contact_for_sender(db, sender.id, receiver.id)
        return result

    def _ensure_receiver_contact(self, db: Session, receiver: User, sender: User) -> Optional[Contact]:
        if contacts.find_contact_for_sender(db, receiver.id, sender.id) is not None:
            return None
        try:
            contact, created = contacts.resolve_contact(db, receiver.id, sender.phone_number)
        except PigeonError as e:
            # The message is already stored; a contact failure must not undo it
            logger.error(f"Failed to auto-create contact for receiver {receiver.id}: {e.message}")
            return None
        if not created:
            return None
        record_auto_created_contact()
        logger.info(f"Auto-created contact {contact.id} for receiver {receiver.id} from sender {sender.id}")
        return contact

    async def send(
        self,
        db: Session,
        sender_id: Any,
        receiver_id: Any,
        content: str,
        timestamp: Optional[str] = None,
        temp_id: Optional[str] = None,
        channel: str = "realtime",
    ) -> SendResult:
        """
        Run the whole send: persist, then forward and acknowledge.

        Raises:
            UserNotFound: sender or receiver does not exist
        """
        try:
            result = self.persist(db, sender_id, receiver_id, content, timestamp, temp_id)
        except UserNotFound:
            record_send_outcome(channel, "user_not_found")
            raise
        except Exception:
            record_send_outcome(channel, "error")
            raise

        record_send_outcome(channel, "duplicate" if result.duplicate else "created")

        # A repeat of an already forwarded send is acknowledged but not forwarded again
        if not result.duplicate:
            result.forwarded = await self.registry.send(
                result.receiver.id, EVENT_NEW_MESSAGE, self.forward_payload(db, result)
            )
            if not result.forwarded:
                logger.info(f"Receiver {result.receiver.id} offline, message {result.message.id} left for next fetch")

        result.acknowledged = await self.registry.send(
            result.sender.id, EVENT_MESSAGE_SENT, self.ack_payload(result)
        )
        return result

    # -------------------------------------------------------------------------
    # Contact changes
    # -------------------------------------------------------------------------

    async def add_contact(self, db: Session, owner_id: int, phone_number: str, nickname: Optional[str] = None) -> Contact:
        """
        Create a contact and acknowledge it to the owner.

        Raises:
            ValidationFailed, Conflict, NotFound: see contacts.create_contact
        """
        contact = contacts.create_contact(db, owner_id, phone_number, nickname)
        await self.registry.send(owner_id, EVENT_CONTACT_ADDED, {
            "contactId": contact.id,
            "success": True,
            "contact": contact_payload(db, contact),
        })
        return contact

    async def update_contact(self, db: Session, owner_id: int, contact_id: int, **changes) -> Contact:
        contact = contacts.update_contact(db, owner_id, contact_id, **changes)
        await self.registry.send(owner_id, EVENT_CONTACT_UPDATED, {
            "contactId": contact.id,
            "success": True,
            "contact": contact_payload(db, contact),
        })
        return contact

    async def delete_contact(self, db: Session, owner_id: int, contact_id: int) -> dict:
        """Deleting a missing contact is acknowledged like a real deletion."""
        outcome = contacts.delete_contact(db, owner_id, contact_id)
        await self.registry.send(owner_id, EVENT_CONTACT_DELETED, {
            "contactId": contact_id,
            "success": True,
            "deletedMessages": outcome["deleted_messages"],
        })
        return outcome

    def forward_payload(self, db: Session, result: SendResult) -> dict:
        """
        newMessage data. Sender phone and name are included because the
        receiver may not have a contact to resolve them from yet.
        """
        payload = message_payload(result.message)
        payload.update({
            "type": PRIVATE_MESSAGE,
            "auto_created_contact": (
                contact_payload(db, result.auto_created_contact) if result.auto_created_contact else None
            ),
            "sender_phone_number": result.sender.phone_number,
            "sender_username": result.sender.username,
        })
        return payload

    def ack_payload(self, result: SendResult) -> dict:
        message = result.message
        return {
            "id": message.id,
            "contactId": result.sender_contact.id if result.sender_contact else None,
            "senderId": message.sender_id,
            "receiverId": message.receiver_id,
            "content": message.content,
            "timestamp": message.timestamp,
            "tempId": result.temp_id,
            "duplicate": result.duplicate,
        }


def error_frame(error: str, original: Any, temp_id: Optional[str] = None, code: Optional[str] = None) -> dict:
    """message_error frame reported back on the channel the send came from."""
    return {
        "event": EVENT_MESSAGE_ERROR,
        "data": {
            "error": error,
            "code": code,
            "tempId": temp_id,
            "originalMessage": original,
        },
    }


def contact_error_frame(event: str, error: str, contact_id: Any = None, code: Optional[str] = None) -> dict:
    """Failed contact change, reported under the event a success would use."""
    return {
        "event": event,
        "data": {
            "contactId": contact_id,
            "success": False,
            "error": error,
            "code": code,
        },
    }
