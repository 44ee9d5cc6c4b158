"""
Per-contact message cache kept by a client.

The same server message can reach a client twice: once as the answer to its
own send (REST response or ``message_sent``) and once more from a later
conversation fetch, in either order. Every single insert therefore goes
through ``merge``, which is idempotent, and each conversation is re-sorted by
timestamp after every merge. A fetch installs the server rows as they are.

Message lifecycle on the sending side::

    pending --(ack / REST response)--> delivered
    pending --(error event / timeout)--> failed
    failed  --(explicit retry)--------> pending

Messages from the other party are stored as ``received``.
"""

import enum
import logging
import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from typing import Dict, Iterator, List, Optional, Tuple, Union

from pigeon.utils import parse_timestamp, utc_now_iso

logger = logging.getLogger(__name__)

STATUS_PENDING = "pending"
STATUS_DELIVERED = "delivered"
STATUS_FAILED = "failed"
STATUS_RECEIVED = "received"

TEMP_ID_PREFIX = "temp-"


class MergeResult(str, enum.Enum):
    APPENDED = "appended"
    REPLACED = "replaced"
    DUPLICATE = "duplicate"


@dataclass
class CachedMessage:
    id: Union[int, str]
    sender_id: int
    receiver_id: int
    content: str
    timestamp: str
    status: str = STATUS_DELIVERED
    is_read: bool = False
    temp_id: Optional[str] = None
    # When the current delivery attempt started; only set while pending
    sent_at: Optional[datetime] = field(default=None, compare=False)

    @property
    def is_local(self) -> bool:
        """Not yet confirmed by the server."""
        return self.status in (STATUS_PENDING, STATUS_FAILED)

    @property
    def sort_key(self) -> datetime:
        return parse_timestamp(self.timestamp)

    @classmethod
    def from_server(cls, data: dict, status: str = STATUS_DELIVERED) -> "CachedMessage":
        """
        Build a record from any server message shape: REST rows use
        snake_case, ``message_sent`` acks use camelCase.
        """
        return cls(
            id=data["id"],
            sender_id=data.get("sender_id", data.get("senderId")),
            receiver_id=data.get("receiver_id", data.get("receiverId")),
            content=data.get("content") or data.get("message") or "",
            timestamp=data["timestamp"],
            status=status,
            is_read=bool(data.get("is_read", False)),
            temp_id=data.get("temp_id", data.get("tempId")),
        )


def new_temp_id() -> str:
    return f"{TEMP_ID_PREFIX}{uuid.uuid4().hex}"


class ConversationCache:
    """
    contact id -> list of CachedMessage, ascending by timestamp.

    Args:
        dedup_window: two records from the same sender with the same content
            closer than this are one logical message
    """

    def __init__(self, dedup_window: timedelta = timedelta(seconds=1)):
        self.dedup_window = dedup_window
        self._conversations: Dict[int, List[CachedMessage]] = {}

    def messages(self, contact_id: int) -> List[CachedMessage]:
        return list(self._conversations.get(contact_id, []))

    def contact_ids(self) -> List[int]:
        return list(self._conversations)

    def __len__(self) -> int:
        return sum(len(messages) for messages in self._conversations.values())

    # -------------------------------------------------------------------------
    # Merging
    # -------------------------------------------------------------------------

    def merge(self, contact_id: int, message: CachedMessage, temp_id: Optional[str] = None) -> MergeResult:
        """
        Insert a message into a conversation without ever duplicating it.

        Rules, first match wins:
        1. the temporary id (argument or ``message.temp_id``) matches an entry's
           id: that entry is replaced in place;
        2. the id matches an existing entry: that entry is replaced;
        3. an entry from the same sender with the same content lies within the
           dedup window: nothing is added, but a server record takes over a
           local entry's slot;
        4. otherwise the message is appended.
        """
        conversation = self._conversations.setdefault(contact_id, [])
        temp_id = temp_id or message.temp_id

        index = self._index_of(conversation, temp_id) if temp_id else None
        if index is None:
            index = self._index_of(conversation, message.id)
        if index is not None:
            conversation[index] = self._carry_over(conversation[index], message)
            self._sort(conversation)
            return MergeResult.REPLACED

        index = self._near_duplicate(conversation, message)
        if index is not None:
            existing = conversation[index]
            if existing.is_local and not message.is_local:
                conversation[index] = self._carry_over(existing, message)
                self._sort(conversation)
            else:
                logger.debug(f"Dropping duplicate of message {existing.id} in conversation {contact_id}")
            return MergeResult.DUPLICATE

        conversation.append(message)
        self._sort(conversation)
        return MergeResult.APPENDED

    def add_pending(
        self,
        contact_id: int,
        sender_id: int,
        receiver_id: int,
        content: str,
        timestamp: Optional[str] = None,
        temp_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> CachedMessage:
        """
        Optimistic insert of an outgoing message under a temporary id.

        Pending entries are never deduplicated against each other: sending
        the same text twice on purpose shows two bubbles.
        """
        timestamp = timestamp or utc_now_iso()
        message = CachedMessage(
            id=temp_id or new_temp_id(),
            sender_id=sender_id,
            receiver_id=receiver_id,
            content=content,
            timestamp=timestamp,
            status=STATUS_PENDING,
            sent_at=now or parse_timestamp(timestamp),
        )
        message.temp_id = message.id
        conversation = self._conversations.setdefault(contact_id, [])
        conversation.append(message)
        self._sort(conversation)
        return message

    def mark_delivered(self, contact_id: int, temp_id: str, server_message: CachedMessage) -> bool:
        """
        Swap the pending entry for the server's record.

        Returns:
            True if a pending entry with this temporary id was found
        """
        found = self._index_of(self._conversations.get(contact_id, []), temp_id) is not None
        server_message.status = STATUS_DELIVERED
        self.merge(contact_id, server_message, temp_id=temp_id)
        return found

    def mark_failed(self, contact_id: int, temp_id: str) -> bool:
        """Returns True if a pending entry was moved to failed."""
        message = self.get(contact_id, temp_id)
        if message is None or message.status != STATUS_PENDING:
            return False
        message.status = STATUS_FAILED
        message.sent_at = None
        return True

    def mark_retrying(self, contact_id: int, temp_id: str, now: datetime) -> Optional[CachedMessage]:
        """
        Move a failed entry back to pending for a manual retry.

        Returns:
            The entry, or None if there is no failed entry with this id
        """
        message = self.get(contact_id, temp_id)
        if message is None or message.status != STATUS_FAILED:
            return None
        message.status = STATUS_PENDING
        message.sent_at = now
        return message

    def replace_all(self, contact_id: int, server_messages: List[CachedMessage]) -> List[CachedMessage]:
        """
        Install a fresh conversation fetch.

        The server's rows are taken as they are, one entry per id: two stored
        rows are two messages even when they look alike. Local entries the
        server does not know yet (pending, failed) survive unless the fetch
        already contains them.
        """
        local = [m for m in self._conversations.get(contact_id, []) if m.is_local]
        conversation = []
        seen = set()
        for message in server_messages:
            if message.id in seen:
                continue
            seen.add(message.id)
            conversation.append(message)
        self._sort(conversation)
        self._conversations[contact_id] = conversation
        for message in local:
            self.merge(contact_id, message)
        return self.messages(contact_id)

    # -------------------------------------------------------------------------
    # Lookups
    # -------------------------------------------------------------------------

    def get(self, contact_id: int, message_id: Union[int, str]) -> Optional[CachedMessage]:
        conversation = self._conversations.get(contact_id, [])
        index = self._index_of(conversation, message_id)
        return conversation[index] if index is not None else None

    def locate(self, message_id: Union[int, str]) -> Optional[int]:
        """Contact id of the conversation holding message_id, if any."""
        for contact_id, conversation in self._conversations.items():
            if self._index_of(conversation, message_id) is not None:
                return contact_id
        return None

    def pending(self) -> Iterator[Tuple[int, CachedMessage]]:
        for contact_id, conversation in self._conversations.items():
            for message in conversation:
                if message.status == STATUS_PENDING:
                    yield contact_id, message

    # -------------------------------------------------------------------------
    # Read state
    # -------------------------------------------------------------------------

    def mark_read(self, contact_id: int, reader_id: int) -> int:
        """Mark everything addressed to reader_id as read. Returns how many changed."""
        changed = 0
        for message in self._conversations.get(contact_id, []):
            if message.receiver_id == reader_id and not message.is_read:
                message.is_read = True
                changed += 1
        return changed

    def unread_count(self, reader_id: int, contact_id: Optional[int] = None) -> int:
        if contact_id is not None:
            conversations = [self._conversations.get(contact_id, [])]
        else:
            conversations = self._conversations.values()
        return sum(
            1
            for conversation in conversations
            for message in conversation
            if message.receiver_id == reader_id and not message.is_read
        )

    def clear_conversation(self, contact_id: int) -> None:
        self._conversations.pop(contact_id, None)

    def clear(self) -> None:
        self._conversations.clear()

    # -------------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------------

    @staticmethod
    def _index_of(conversation: List[CachedMessage], message_id) -> Optional[int]:
        if message_id is None:
            return None
        for index, message in enumerate(conversation):
            if message.id == message_id:
                return index
        return None

    def _near_duplicate(self, conversation: List[CachedMessage], message: CachedMessage) -> Optional[int]:
        when = message.sort_key
        for index, existing in enumerate(conversation):
            if existing.sender_id != message.sender_id or existing.content != message.content:
                continue
            if abs(existing.sort_key - when) < self.dedup_window:
                return index
        return None

    @staticmethod
    def _carry_over(existing: CachedMessage, incoming: CachedMessage) -> CachedMessage:
        """
        incoming replaces existing, keeping the temporary id so a late ack
        for the same send still finds its slot.
        """
        merged = replace(incoming, temp_id=incoming.temp_id or existing.temp_id)
        if not merged.is_local:
            merged.sent_at = None
        return merged

    @staticmethod
    def _sort(conversation: List[CachedMessage]) -> None:
        # Stable, so equal timestamps keep arrival order
        conversation.sort(key=lambda m: m.sort_key)
