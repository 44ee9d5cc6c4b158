"""
Locally persisted record of contacts known to be deleted.

A fetch for a tombstoned contact id is answered "not found" without a network
call. Tombstones are lifted when a contact with the same id or phone number is
created again, so deleting and re-adding a number never blocks it for good.

File format::

    {"contact_ids": [3, 7], "phones": {"0612345678": 3}}
"""

import json
import logging
from pathlib import Path
from typing import Dict, Iterable, Optional, Set, Union

logger = logging.getLogger(__name__)


class DeletedContactsCache:
    def __init__(self, path: Union[str, Path]):
        self.path = Path(path)
        self._contact_ids: Set[int] = set()
        self._phones: Dict[str, int] = {}
        self._loaded = False

    def _ensure_loaded(self) -> None:
        if self._loaded:
            return
        self._loaded = True
        if not self.path.exists():
            return
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
            self._contact_ids = {int(contact_id) for contact_id in data.get("contact_ids", [])}
            self._phones = {str(phone): int(contact_id) for phone, contact_id in data.get("phones", {}).items()}
        except (OSError, ValueError, TypeError, AttributeError) as e:
            logger.error(f"Ignoring unreadable deleted-contacts file {self.path}: {e}")
            self._contact_ids = set()
            self._phones = {}

    def _persist(self) -> None:
        data = {"contact_ids": sorted(self._contact_ids), "phones": self._phones}
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.path.write_text(json.dumps(data), encoding="utf-8")

    def is_deleted(self, contact_id: int) -> bool:
        self._ensure_loaded()
        return int(contact_id) in self._contact_ids

    def is_phone_deleted(self, phone_number: str) -> bool:
        self._ensure_loaded()
        return phone_number in self._phones

    def mark_deleted(self, contact_id: int, phone_number: Optional[str] = None) -> None:
        self._ensure_loaded()
        self._contact_ids.add(int(contact_id))
        if phone_number:
            self._phones[phone_number] = int(contact_id)
        self._persist()
        logger.debug(f"Contact {contact_id} marked as deleted")

    def mark_many_deleted(self, contact_ids: Iterable[int]) -> None:
        self._ensure_loaded()
        self._contact_ids.update(int(contact_id) for contact_id in contact_ids)
        self._persist()

    def unmark(self, contact_id: Optional[int] = None, phone_number: Optional[str] = None) -> bool:
        """
        Lift the tombstone for a re-created contact.

        A phone number also lifts the tombstone of the contact id it was
        recorded with, and a contact id lifts the phone numbers recorded
        with it.

        Returns:
            True if anything was removed
        """
        self._ensure_loaded()
        removed = False
        if phone_number and phone_number in self._phones:
            old_id = self._phones.pop(phone_number)
            self._contact_ids.discard(old_id)
            removed = True
        if contact_id is not None:
            contact_id = int(contact_id)
            if contact_id in self._contact_ids:
                self._contact_ids.discard(contact_id)
                removed = True
            for phone, recorded_id in list(self._phones.items()):
                if recorded_id == contact_id:
                    del self._phones[phone]
                    removed = True
        if removed:
            self._persist()
        return removed

    def clear(self) -> None:
        self._contact_ids = set()
        self._phones = {}
        self._loaded = True
        self._persist()

    def all(self) -> Set[int]:
        self._ensure_loaded()
        return set(self._contact_ids)
