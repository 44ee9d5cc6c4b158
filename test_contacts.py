"""
Tests for the contact directory.

Tests cover:
- Explicit contact creation and its validation
- Listing with last message, updates and avatars
- Deletion cascading to the pair's messages only
- Lazy linking of contacts whose phone registers later
- The (owner, phone) uniqueness guard
"""

import base64

import pytest
from sqlalchemy.exc import IntegrityError

from pigeon import contacts
from pigeon.errors import ValidationFailed
from pigeon.models import Contact, Message
from pigeon.storage import SessionLocal
from pigeon.utils import utc_now_iso


def add_contact(client, owner, phone, nickname=None):
    return client.post(
        "/api/contacts",
        json={"phone_number": phone, "nickname": nickname},
        headers=owner["headers"],
    )


def send(client, sender, receiver, content, timestamp=None, temp_id=None):
    body = {"receiverId": receiver["id"], "content": content}
    if timestamp is not None:
        body["timestamp"] = timestamp
    if temp_id is not None:
        body["tempId"] = temp_id
    response = client.post("/api/messages/send", json=body, headers=sender["headers"])
    assert response.status_code == 201, response.text
    return response.json()


class TestCreateContact:
    """Test POST /api/contacts."""

    def test_create_contact(self, client, alice, bob):
        """Test adding a registered user links the contact to them."""
        response = add_contact(client, alice, bob["phone_number"], "Bobby")

        assert response.status_code == 201
        data = response.json()
        assert data["user_id"] == alice["id"]
        assert data["contact_user_id"] == bob["id"]
        assert data["nickname"] == "Bobby"
        assert data["contact_username"] == "bob"

    def test_nickname_defaults_to_phone(self, client, alice, bob):
        """Test a missing nickname defaults to the phone number."""
        response = add_contact(client, alice, bob["phone_number"])

        assert response.json()["nickname"] == bob["phone_number"]

    def test_own_number(self, client, alice):
        """Test adding your own number is a validation error."""
        response = add_contact(client, alice, alice["phone_number"])

        assert response.status_code == 400
        assert response.json()["code"] == "own_number"

    def test_duplicate_contact(self, client, alice, bob):
        """Test adding the same phone twice is a conflict."""
        assert add_contact(client, alice, bob["phone_number"]).status_code == 201

        response = add_contact(client, alice, bob["phone_number"])

        assert response.status_code == 409
        assert response.json()["code"] == "contact_exists"

    def test_unregistered_phone(self, client, alice):
        """Test adding a phone nobody registered returns 404."""
        response = add_contact(client, alice, "0699999999")

        assert response.status_code == 404
        assert response.json()["code"] == "user_not_registered"

    def test_invalid_phone(self, client, alice):
        """Test the phone format is validated before any lookup."""
        response = add_contact(client, alice, "12345")

        assert response.status_code == 400
        assert response.json()["code"] == "invalid_phone"


class TestReadUpdateContact:
    """Test listing, reading and updating contacts."""

    def test_list_with_last_message(self, client, alice, bob, carol):
        """Test each listed contact carries the latest message of its conversation."""
        add_contact(client, alice, bob["phone_number"])
        add_contact(client, alice, carol["phone_number"])
        send(client, alice, bob, "first", "2025-01-15T10:00:00.000Z")
        send(client, bob, alice, "second", "2025-01-15T10:05:00.000Z")

        response = client.get("/api/contacts", headers=alice["headers"])

        assert response.status_code == 200
        by_user = {c["contact_user_id"]: c for c in response.json()}
        assert by_user[bob["id"]]["lastMessage"]["content"] == "second"
        assert by_user[carol["id"]]["lastMessage"] is None

    def test_get_other_users_contact(self, client, alice, bob, carol):
        """Test a contact owned by someone else is not found."""
        contact = add_contact(client, alice, bob["phone_number"]).json()

        response = client.get(f"/api/contacts/{contact['id']}", headers=carol["headers"])

        assert response.status_code == 404
        assert response.json()["code"] == "contact_not_found"

    def test_update_nickname(self, client, alice, bob):
        """Test renaming a contact."""
        contact = add_contact(client, alice, bob["phone_number"]).json()

        response = client.put(f"/api/contacts/{contact['id']}", json={"nickname": "B"}, headers=alice["headers"])

        assert response.status_code == 200
        assert response.json()["nickname"] == "B"

    @pytest.mark.parametrize("nickname", ["", "   ", None])
    def test_update_empty_nickname(self, client, alice, bob, nickname):
        """Test an empty or null nickname is rejected."""
        contact = add_contact(client, alice, bob["phone_number"]).json()

        response = client.put(
            f"/api/contacts/{contact['id']}", json={"nickname": nickname}, headers=alice["headers"]
        )

        assert response.status_code == 400
        assert response.json()["code"] == "empty_nickname"

    def test_contact_avatar(self, client, alice, bob):
        """Test a base64 avatar set on a contact is served as bytes."""
        contact = add_contact(client, alice, bob["phone_number"]).json()
        image = b"\xff\xd8\xffcontact"

        response = client.put(
            f"/api/contacts/{contact['id']}",
            json={"avatar": base64.b64encode(image).decode()},
            headers=alice["headers"],
        )
        assert response.status_code == 200
        assert response.json()["has_avatar"] is True

        response = client.get(f"/api/contacts/{contact['id']}/avatar", headers=alice["headers"])
        assert response.status_code == 200
        assert response.content == image

    def test_contact_avatar_falls_back_to_user(self, client, alice, bob):
        """Test a contact without its own avatar serves the linked user's."""
        client.put("/api/users/me/avatar", content=b"bob-face", headers=bob["headers"])
        contact = add_contact(client, alice, bob["phone_number"]).json()

        response = client.get(f"/api/contacts/{contact['id']}/avatar", headers=alice["headers"])

        assert response.status_code == 200
        assert response.content == b"bob-face"

    def test_invalid_avatar_encoding(self, client, alice, bob):
        """Test a non-base64 avatar is a validation error."""
        contact = add_contact(client, alice, bob["phone_number"]).json()

        response = client.put(
            f"/api/contacts/{contact['id']}", json={"avatar": "***"}, headers=alice["headers"]
        )

        assert response.status_code == 400


class TestDeleteContact:
    """Test DELETE /api/contacts/{id}."""

    def test_delete_cascades_pair_messages_only(self, client, alice, bob, carol):
        """Test deleting a contact removes only the messages between the two users."""
        contact = add_contact(client, alice, bob["phone_number"]).json()
        send(client, alice, bob, "a->b", "2025-01-15T10:00:00.000Z")
        send(client, bob, alice, "b->a", "2025-01-15T10:01:00.000Z")
        send(client, alice, carol, "a->c", "2025-01-15T10:02:00.000Z")
        send(client, bob, carol, "b->c", "2025-01-15T10:03:00.000Z")

        response = client.delete(f"/api/contacts/{contact['id']}", headers=alice["headers"])

        assert response.status_code == 200
        assert response.json()["success"] is True
        assert response.json()["deleted_messages"] == 2

        with SessionLocal() as db:
            remaining = sorted(m.content for m in db.query(Message).all())
        assert remaining == ["a->c", "b->c"]

        assert client.get(f"/api/contacts/{contact['id']}", headers=alice["headers"]).status_code == 404

    def test_delete_missing_contact(self, client, alice):
        """Test deleting a contact that does not exist counts as already deleted."""
        response = client.delete("/api/contacts/9999", headers=alice["headers"])

        assert response.status_code == 200
        assert response.json()["success"] is True
        assert response.json()["deleted_messages"] == 0

    def test_readd_after_delete(self, client, alice, bob):
        """Test a deleted phone number can be added again."""
        contact = add_contact(client, alice, bob["phone_number"]).json()
        client.delete(f"/api/contacts/{contact['id']}", headers=alice["headers"])

        response = add_contact(client, alice, bob["phone_number"])

        assert response.status_code == 201
        assert response.json()["contact_user_id"] == bob["id"]


class TestContactResolution:
    """Test lazy linking and the uniqueness guard at the service level."""

    def test_resolve_creates_unlinked_contact(self, client, alice):
        """Test resolving an unregistered phone creates an unlinked contact."""
        with SessionLocal() as db:
            contact, created = contacts.resolve_contact(db, alice["id"], "0655555555")

            assert created is True
            assert contact.contact_user_id is None
            assert contact.nickname == "0655555555"

    def test_resolve_backfills_link(self, client, alice, make_user):
        """Test an unlinked contact is linked once the phone registers."""
        with SessionLocal() as db:
            contact, _ = contacts.resolve_contact(db, alice["id"], "0655555555")
            contact_id = contact.id

        dave = make_user("0655555555", "dave")

        with SessionLocal() as db:
            contact, created = contacts.resolve_contact(db, alice["id"], "0655555555")

            assert created is False
            assert contact.id == contact_id
            assert contact.contact_user_id == dave["id"]

    def test_conversation_backfills_link(self, client, alice, make_user):
        """Test fetching the conversation of an unlinked contact links it first."""
        with SessionLocal() as db:
            contact, _ = contacts.resolve_contact(db, alice["id"], "0655555555")
            contact_id = contact.id

        response = client.get(f"/api/messages/conversation/{contact_id}", headers=alice["headers"])
        assert response.status_code == 200
        assert response.json() == []

        dave = make_user("0655555555", "dave")
        send(client, dave, alice, "hello from dave")

        response = client.get(f"/api/messages/conversation/{contact_id}", headers=alice["headers"])
        assert [m["content"] for m in response.json()] == ["hello from dave"]

    def test_resolve_validates_phone(self, client, alice):
        """Test a malformed phone is rejected before any lookup."""
        with SessionLocal() as db:
            with pytest.raises(ValidationFailed) as exc_info:
                contacts.resolve_contact(db, alice["id"], "bad")

        assert exc_info.value.code == "invalid_phone"

    def test_unique_owner_phone(self, client, alice, bob):
        """Test the database refuses a second row for the same owner and phone."""
        with SessionLocal() as db:
            for _ in range(2):
                db.add(Contact(
                    user_id=alice["id"],
                    contact_user_id=bob["id"],
                    phone_number=bob["phone_number"],
                    nickname="dup",
                    created_at=utc_now_iso(),
                ))
            with pytest.raises(IntegrityError):
                db.commit()

    def test_resolve_recovers_from_concurrent_insert(self, client, alice, bob, monkeypatch):
        """Test losing the insert race returns the winner's row and keeps the session usable."""
        find_by_phone = contacts._find_by_phone
        calls = []

        def find_after_competing_insert(db, owner_id, phone_number):
            calls.append(phone_number)
            if len(calls) == 1:
                # Another request commits the same contact after this lookup missed it
                with SessionLocal() as other:
                    other.add(Contact(
                        user_id=owner_id,
                        contact_user_id=bob["id"],
                        phone_number=phone_number,
                        nickname="winner",
                        created_at=utc_now_iso(),
                    ))
                    other.commit()
                return None
            return find_by_phone(db, owner_id, phone_number)

        monkeypatch.setattr(contacts, "_find_by_phone", find_after_competing_insert)

        with SessionLocal() as db:
            contact, created = contacts.resolve_contact(db, alice["id"], bob["phone_number"])

            assert created is False
            assert contact.nickname == "winner"
            assert contact.contact_user_id == bob["id"]
            assert db.query(Contact).filter(Contact.user_id == alice["id"]).count() == 1

        assert len(calls) == 2
