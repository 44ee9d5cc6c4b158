"""
Client-side state for a Pigeon user: the conversation cache, deleted-contact
tombstones and the session object that ties them to the server.
"""

from pigeon.client.cache import CachedMessage, ConversationCache, MergeResult
from pigeon.client.session import ChatClient, Signal
from pigeon.client.tombstones import DeletedContactsCache

__all__ = [
    "CachedMessage",
    "ChatClient",
    "ConversationCache",
    "DeletedContactsCache",
    "MergeResult",
    "Signal",
]
