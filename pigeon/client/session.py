"""
Client session: one signed-in user talking to a Pigeon server.

ChatClient ties together the REST API (an ``httpx.Client``), an optional
real-time emitter, the conversation cache and the deleted-contact tombstones.
Every operation returns a list of Signal objects describing what changed;
the UI layer observes those instead of a global event bus.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional, Protocol

import httpx

from pigeon.client.cache import (
    STATUS_DELIVERED,
    STATUS_RECEIVED,
    CachedMessage,
    ConversationCache,
    MergeResult,
)
from pigeon.client.tombstones import DeletedContactsCache
from pigeon.utils import format_timestamp

logger = logging.getLogger(__name__)

DEFAULT_SEND_TIMEOUT = 10.0

# Signal kinds
MESSAGE_ADDED = "message_added"
MESSAGE_DELIVERED = "message_delivered"
MESSAGE_FAILED = "message_failed"
MESSAGE_RETRYING = "message_retrying"
MESSAGE_RECEIVED = "message_received"
CONVERSATION_LOADED = "conversation_loaded"
CONTACT_ADDED = "contact_added"
CONTACT_UPDATED = "contact_updated"
CONTACT_DELETED = "contact_deleted"
CONTACT_MISSING = "contact_missing"
CONTACTS_LOADED = "contacts_loaded"
CONTACTS_STALE = "contacts_stale"
REQUEST_FAILED = "request_failed"
REGISTERED = "registered"
SOCKET_ERROR = "socket_error"


@dataclass
class Signal:
    kind: str
    contact_id: Optional[int] = None
    data: Dict[str, Any] = field(default_factory=dict)


class RealtimeEmitter(Protocol):
    """Anything that can push a frame on the real-time channel."""

    connected: bool

    def emit(self, event: str, data: dict) -> None:
        ...


def _error_data(response: httpx.Response) -> dict:
    try:
        body = response.json()
    except ValueError:
        body = {"detail": response.text}
    if not isinstance(body, dict):
        body = {"detail": body}
    body["status"] = response.status_code
    return body


class ChatClient:
    def __init__(
        self,
        http: httpx.Client,
        user_id: int,
        token: str,
        *,
        cache: Optional[ConversationCache] = None,
        tombstones: Optional[DeletedContactsCache] = None,
        realtime: Optional[RealtimeEmitter] = None,
        send_timeout: float = DEFAULT_SEND_TIMEOUT,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.http = http
        self.user_id = user_id
        self.token = token
        self.cache = cache or ConversationCache()
        self.tombstones = tombstones
        self.realtime = realtime
        self.send_timeout = timedelta(seconds=send_timeout)
        self.clock = clock or (lambda: datetime.now(timezone.utc))
        self.registered = False
        # contact id -> contact as returned by the server
        self.contacts: Dict[int, dict] = {}

    @classmethod
    def login(cls, http: httpx.Client, phone_number: str, password: str, **kwargs) -> "ChatClient":
        """
        Sign in and build a client for the returned user.

        Raises:
            httpx.HTTPStatusError: bad credentials or unknown user
        """
        response = http.post("/api/users/login", json={"phone_number": phone_number, "password": password})
        response.raise_for_status()
        body = response.json()
        return cls(http, body["user"]["id"], body["token"], **kwargs)

    @property
    def headers(self) -> dict:
        return {"Authorization": f"Bearer {self.token}"}

    def register_payload(self) -> dict:
        """Data for the real-time ``register`` event."""
        return {"userId": self.user_id, "token": self.token}

    # =========================================================================
    # Contacts
    # =========================================================================

    def load_contacts(self) -> List[Signal]:
        try:
            response = self.http.get("/api/contacts", headers=self.headers)
            response.raise_for_status()
        except httpx.HTTPError as e:
            logger.warning(f"Loading contacts failed: {e}")
            return [Signal(REQUEST_FAILED, data={"error": str(e)})]

        self.contacts = {}
        for contact in response.json():
            if self._is_tombstoned(contact["id"]):
                continue
            self.contacts[contact["id"]] = contact
        return [Signal(CONTACTS_LOADED, data={"contacts": list(self.contacts.values())})]

    def add_contact(self, phone_number: str, nickname: Optional[str] = None) -> List[Signal]:
        """Create a contact; a fresh contact lifts any tombstone on its id or phone."""
        try:
            response = self.http.post(
                "/api/contacts",
                json={"phone_number": phone_number, "nickname": nickname},
                headers=self.headers,
            )
        except httpx.HTTPError as e:
            return [Signal(REQUEST_FAILED, data={"error": str(e)})]
        if response.is_error:
            return [Signal(REQUEST_FAILED, data=_error_data(response))]

        contact = response.json()
        self._remember_contact(contact)
        return [Signal(CONTACT_ADDED, contact["id"], {"contact": contact})]

    def delete_contact(self, contact_id: int) -> List[Signal]:
        try:
            response = self.http.delete(f"/api/contacts/{contact_id}", headers=self.headers)
        except httpx.HTTPError as e:
            return [Signal(REQUEST_FAILED, contact_id, {"error": str(e)})]
        if response.is_error and response.status_code != 404:
            return [Signal(REQUEST_FAILED, contact_id, _error_data(response))]

        self._forget_contact(contact_id)
        return [Signal(CONTACT_DELETED, contact_id)]

    def announce_contact_change(self, message_type: str, data: dict) -> bool:
        """
        Ask the server to apply a contact change (CONTACT_ADDED, CONTACT_UPDATED
        or CONTACT_DELETED) over the real-time channel. The outcome comes back
        as a contact_added / contact_updated / contact_deleted event.

        Returns:
            False if the real-time channel is not connected
        """
        if self.realtime is None or not self.realtime.connected:
            return False
        self.realtime.emit("message", {"type": message_type, "payload": dict(data, senderId=self.user_id)})
        return True

    def contact_for_user(self, user_id: int) -> Optional[int]:
        for contact_id, contact in self.contacts.items():
            if contact.get("contact_user_id") == user_id:
                return contact_id
        return None

    def _remember_contact(self, contact: dict) -> None:
        if self.tombstones is not None:
            self.tombstones.unmark(contact_id=contact["id"], phone_number=contact.get("phone_number"))
        self.contacts[contact["id"]] = contact

    def _forget_contact(self, contact_id: int) -> None:
        contact = self.contacts.pop(contact_id, None) or {}
        if self.tombstones is not None:
            self.tombstones.mark_deleted(contact_id, contact.get("phone_number"))
        self.cache.clear_conversation(contact_id)

    def _is_tombstoned(self, contact_id: int) -> bool:
        return self.tombstones is not None and self.tombstones.is_deleted(contact_id)

    # =========================================================================
    # Conversations
    # =========================================================================

    def fetch_conversation(self, contact_id: int) -> List[Signal]:
        """
        Load a conversation from the server and merge it into the cache.

        A tombstoned contact is answered without a request. A 404 tombstones
        the contact so later fetches are skipped too.
        """
        if self._is_tombstoned(contact_id):
            return [Signal(CONTACT_MISSING, contact_id)]

        try:
            response = self.http.get(f"/api/messages/conversation/{contact_id}", headers=self.headers)
        except httpx.HTTPError as e:
            logger.warning(f"Fetching conversation {contact_id} failed: {e}")
            return [Signal(REQUEST_FAILED, contact_id, {"error": str(e)})]

        if response.status_code == 404:
            logger.info(f"Contact {contact_id} no longer exists, adding tombstone")
            self._forget_contact(contact_id)
            return [Signal(CONTACT_MISSING, contact_id)]
        if response.is_error:
            return [Signal(REQUEST_FAILED, contact_id, _error_data(response))]

        fetched = [
            CachedMessage.from_server(
                row, status=STATUS_DELIVERED if row["sender_id"] == self.user_id else STATUS_RECEIVED
            )
            for row in response.json()
        ]
        messages = self.cache.replace_all(contact_id, fetched)
        # The fetch itself marked the other party's messages read on the server
        self.cache.mark_read(contact_id, self.user_id)
        return [Signal(CONVERSATION_LOADED, contact_id, {"messages": messages})]

    def unread_count(self, contact_id: Optional[int] = None) -> int:
        return self.cache.unread_count(self.user_id, contact_id)

    # =========================================================================
    # Sending
    # =========================================================================

    def send_message(self, contact_id: int, receiver_id: int, content: str) -> List[Signal]:
        """
        Optimistically show the message, then send it over the real-time
        channel when connected, otherwise over REST.
        """
        now = self.clock()
        message = self.cache.add_pending(
            contact_id,
            sender_id=self.user_id,
            receiver_id=receiver_id,
            content=content,
            timestamp=format_timestamp(now),
            now=now,
        )
        signals = [Signal(MESSAGE_ADDED, contact_id, {"message": message})]
        signals.extend(self._dispatch(contact_id, message))
        return signals

    def retry(self, contact_id: int, temp_id: str) -> List[Signal]:
        """Send a failed message again under the same temporary id."""
        message = self.cache.mark_retrying(contact_id, temp_id, now=self.clock())
        if message is None:
            return []
        signals = [Signal(MESSAGE_RETRYING, contact_id, {"temp_id": temp_id})]
        signals.extend(self._dispatch(contact_id, message))
        return signals

    def expire_pending(self, now: Optional[datetime] = None) -> List[Signal]:
        """
        Fail every message still pending after send_timeout.

        The server is not told; if it does deliver later, the ack or the next
        fetch brings the message back as delivered.
        """
        now = now or self.clock()
        expired = [
            (contact_id, message)
            for contact_id, message in self.cache.pending()
            if message.sent_at is not None and now - message.sent_at >= self.send_timeout
        ]
        signals = []
        for contact_id, message in expired:
            if self.cache.mark_failed(contact_id, message.temp_id):
                logger.info(f"Message {message.temp_id} timed out")
                signals.append(Signal(MESSAGE_FAILED, contact_id, {"temp_id": message.temp_id, "error": "timeout"}))
        return signals

    def _dispatch(self, contact_id: int, message: CachedMessage) -> List[Signal]:
        if self.realtime is not None and self.realtime.connected:
            self.realtime.emit("privateMessage", {
                "senderId": message.sender_id,
                "receiverId": message.receiver_id,
                "content": message.content,
                "timestamp": message.timestamp,
                "tempId": message.temp_id,
            })
            return []
        return self._send_rest(contact_id, message)

    def _send_rest(self, contact_id: int, message: CachedMessage) -> List[Signal]:
        try:
            response = self.http.post(
                "/api/messages/send",
                json={
                    "receiverId": message.receiver_id,
                    "content": message.content,
                    "timestamp": message.timestamp,
                    "tempId": message.temp_id,
                },
                headers=self.headers,
            )
            response.raise_for_status()
        except httpx.HTTPError as e:
            logger.warning(f"REST send of {message.temp_id} failed: {e}")
            self.cache.mark_failed(contact_id, message.temp_id)
            return [Signal(MESSAGE_FAILED, contact_id, {"temp_id": message.temp_id, "error": str(e)})]

        delivered = CachedMessage.from_server(response.json())
        self.cache.mark_delivered(contact_id, message.temp_id, delivered)
        return [Signal(MESSAGE_DELIVERED, contact_id, {"temp_id": message.temp_id, "message": delivered})]

    # =========================================================================
    # Real-time events
    # =========================================================================

    def handle_event(self, event: str, data: Any) -> List[Signal]:
        """Apply one server frame to local state."""
        if event == "register_success":
            self.registered = True
            return [Signal(REGISTERED, data=data)]
        if event == "socket_error":
            logger.warning(f"Socket error: {data}")
            return [Signal(SOCKET_ERROR, data=data)]
        if event == "newMessage":
            return self._on_new_message(data)
        if event == "message_sent":
            return self._on_message_sent(data)
        if event == "message_error":
            return self._on_message_error(data)
        if event in ("contact_added", "contact_updated", "contact_deleted"):
            return self._on_contact_change(event, data)

        logger.debug(f"Ignoring unknown event {event}")
        return []

    def _on_new_message(self, data: dict) -> List[Signal]:
        sender_id = data.get("sender_id", data.get("senderId"))
        if sender_id == self.user_id:
            # Own sends are confirmed by message_sent
            return []

        signals = []
        contact = data.get("auto_created_contact")
        if contact:
            self._remember_contact(contact)
            contact_id = contact["id"]
            signals.append(Signal(CONTACT_ADDED, contact_id, {"contact": contact}))
        else:
            contact_id = self.contact_for_user(sender_id)

        if contact_id is None:
            # Picked up by the next contacts load and conversation fetch
            signals.append(Signal(CONTACTS_STALE, data={
                "sender_id": sender_id,
                "sender_phone_number": data.get("sender_phone_number"),
            }))
            return signals

        message = CachedMessage.from_server(data, status=STATUS_RECEIVED)
        if self.cache.merge(contact_id, message) is MergeResult.APPENDED:
            signals.append(Signal(MESSAGE_RECEIVED, contact_id, {"message": message}))
        return signals

    def _on_message_sent(self, data: dict) -> List[Signal]:
        temp_id = data.get("tempId")
        contact_id = self.cache.locate(temp_id) if temp_id else None
        if contact_id is None:
            contact_id = data.get("contactId")
        if contact_id is None:
            logger.debug(f"Acknowledgment for unknown message {data.get('id')}")
            return []

        delivered = CachedMessage.from_server(data)
        self.cache.mark_delivered(contact_id, temp_id, delivered)
        return [Signal(MESSAGE_DELIVERED, contact_id, {"temp_id": temp_id, "message": delivered})]

    def _on_message_error(self, data: dict) -> List[Signal]:
        temp_id = data.get("tempId")
        contact_id = self.cache.locate(temp_id) if temp_id else None
        if contact_id is None:
            return [Signal(MESSAGE_FAILED, data=data)]
        self.cache.mark_failed(contact_id, temp_id)
        return [Signal(MESSAGE_FAILED, contact_id, {"temp_id": temp_id, "error": data.get("error")})]

    def _on_contact_change(self, event: str, data: dict) -> List[Signal]:
        contact_id = data.get("contactId")
        if not data.get("success"):
            logger.warning(f"{event} failed for contact {contact_id}: {data.get('error')}")
            return [Signal(REQUEST_FAILED, contact_id, data)]

        if event == "contact_deleted":
            self._forget_contact(contact_id)
            return [Signal(CONTACT_DELETED, contact_id)]

        contact = data["contact"]
        self._remember_contact(contact)
        kind = CONTACT_ADDED if event == "contact_added" else CONTACT_UPDATED
        return [Signal(kind, contact["id"], {"contact": contact})]
