"""
Tests for the /api/messages endpoints and the message store.

Tests cover:
- REST send and the receiver's auto-created contact
- One stored row per logical send (temp id and near-duplicate window)
- Conversation fetch ordering and read marking
- Unread listing and counts
- Conversation deletion
"""

from pigeon.models import Contact, Message
from pigeon.storage import SessionLocal


def add_contact(client, owner, phone):
    response = client.post("/api/contacts", json={"phone_number": phone}, headers=owner["headers"])
    assert response.status_code == 201, response.text
    return response.json()


def send(client, sender, receiver_id, content, timestamp=None, temp_id=None):
    body = {"receiverId": receiver_id, "content": content}
    if timestamp is not None:
        body["timestamp"] = timestamp
    if temp_id is not None:
        body["tempId"] = temp_id
    return client.post("/api/messages/send", json=body, headers=sender["headers"])


def count_messages():
    with SessionLocal() as db:
        return db.query(Message).count()


def contacts_of(user_id):
    with SessionLocal() as db:
        return db.query(Contact).filter(Contact.user_id == user_id).all()


class TestSendMessage:
    """Test POST /api/messages/send."""

    def test_send_success(self, client, alice, bob):
        """Test a send returns the persisted message with sender details."""
        response = send(client, alice, bob["id"], "hi", "2025-01-15T10:00:00Z", temp_id="temp-1")

        assert response.status_code == 201
        data = response.json()
        assert data["sender_id"] == alice["id"]
        assert data["receiver_id"] == bob["id"]
        assert data["content"] == "hi"
        assert data["timestamp"] == "2025-01-15T10:00:00.000Z"
        assert data["is_read"] is False
        assert data["tempId"] == "temp-1"
        assert data["duplicate"] is False
        assert data["sender_phone_number"] == alice["phone_number"]
        assert data["sender_username"] == "alice"

    def test_send_auto_creates_receiver_contact(self, client, alice, bob):
        """Test the receiver gets exactly one contact for an unknown sender."""
        first = send(client, alice, bob["id"], "hi", "2025-01-15T10:00:00Z").json()
        send(client, alice, bob["id"], "again", "2025-01-15T10:01:00Z")

        created = first["auto_created_contact"]
        assert created["user_id"] == bob["id"]
        assert created["contact_user_id"] == alice["id"]
        assert created["phone_number"] == alice["phone_number"]
        assert created["nickname"] == alice["phone_number"]

        bob_contacts = contacts_of(bob["id"])
        assert len(bob_contacts) == 1
        assert bob_contacts[0].contact_user_id == alice["id"]

    def test_send_no_auto_create_when_contact_exists(self, client, alice, bob):
        """Test an existing contact is reused, not duplicated."""
        add_contact(client, bob, alice["phone_number"])

        data = send(client, alice, bob["id"], "hi").json()

        assert data["auto_created_contact"] is None
        assert len(contacts_of(bob["id"])) == 1

    def test_send_reports_sender_contact(self, client, alice, bob):
        """Test contactId is the sender's own contact entry for the receiver."""
        contact = add_contact(client, alice, bob["phone_number"])

        data = send(client, alice, bob["id"], "hi").json()

        assert data["contactId"] == contact["id"]

    def test_send_to_unknown_user(self, client, alice):
        """Test sending to a missing user is a not-found error and stores nothing."""
        response = send(client, alice, 9999, "hello?")

        assert response.status_code == 404
        assert response.json()["code"] == "user_not_found"
        assert count_messages() == 0

    def test_send_empty_content(self, client, alice, bob):
        """Test empty content is rejected by request validation."""
        response = send(client, alice, bob["id"], "")

        assert response.status_code == 422
        assert count_messages() == 0

    def test_send_requires_auth(self, client, bob):
        """Test sending without a token returns 401."""
        response = client.post("/api/messages/send", json={"receiverId": bob["id"], "content": "x"})

        assert response.status_code == 401


class TestSendIdempotency:
    """Test that one logical send never yields two rows."""

    def test_same_temp_id_twice(self, client, alice, bob):
        """Test a resend with the same temp id returns the stored row."""
        first = send(client, alice, bob["id"], "hi", "2025-01-15T10:00:00Z", temp_id="temp-1").json()
        second = send(client, alice, bob["id"], "hi", "2025-01-15T10:00:05Z", temp_id="temp-1").json()

        assert second["id"] == first["id"]
        assert second["duplicate"] is True
        assert second["auto_created_contact"] is None
        assert count_messages() == 1

    def test_near_duplicate_without_temp_id(self, client, alice, bob):
        """Test same content within the window collapses into one row."""
        first = send(client, alice, bob["id"], "hi", "2025-01-15T10:00:00.000Z").json()
        second = send(client, alice, bob["id"], "hi", "2025-01-15T10:00:00.400Z").json()

        assert second["id"] == first["id"]
        assert second["duplicate"] is True
        assert count_messages() == 1

    def test_near_duplicate_adopts_temp_id(self, client, alice, bob):
        """Test a later send with a temp id matches a row stored without one."""
        first = send(client, alice, bob["id"], "hi", "2025-01-15T10:00:00.000Z").json()
        send(client, alice, bob["id"], "hi", "2025-01-15T10:00:00.200Z", temp_id="temp-9")
        third = send(client, alice, bob["id"], "hi", "2025-01-15T10:00:30.000Z", temp_id="temp-9").json()

        assert third["id"] == first["id"]
        assert count_messages() == 1

    def test_outside_window_is_new_message(self, client, alice, bob):
        """Test the same content outside the window is a new message."""
        send(client, alice, bob["id"], "hi", "2025-01-15T10:00:00.000Z")
        response = send(client, alice, bob["id"], "hi", "2025-01-15T10:00:02.000Z")

        assert response.json()["duplicate"] is False
        assert count_messages() == 2

    def test_distinct_temp_ids_are_distinct_sends(self, client, alice, bob):
        """Test two deliberate sends of the same text are both stored."""
        send(client, alice, bob["id"], "ok", "2025-01-15T10:00:00.000Z", temp_id="temp-a")
        response = send(client, alice, bob["id"], "ok", "2025-01-15T10:00:00.100Z", temp_id="temp-b")

        assert response.json()["duplicate"] is False
        assert count_messages() == 2

    def test_different_receivers_not_duplicates(self, client, alice, bob, carol):
        """Test the same text to two receivers is two messages."""
        send(client, alice, bob["id"], "hi", "2025-01-15T10:00:00.000Z")
        send(client, alice, carol["id"], "hi", "2025-01-15T10:00:00.000Z")

        assert count_messages() == 2


class TestConversation:
    """Test GET /api/messages/conversation/{contact_id}."""

    def test_conversation_ascending(self, client, alice, bob):
        """Test messages come back oldest first regardless of send order."""
        contact = add_contact(client, alice, bob["phone_number"])
        send(client, alice, bob["id"], "third", "2025-01-15T10:02:00Z")
        send(client, bob, alice["id"], "first", "2025-01-15T10:00:00Z")
        send(client, alice, bob["id"], "second", "2025-01-15T10:01:00Z")

        response = client.get(f"/api/messages/conversation/{contact['id']}", headers=alice["headers"])

        assert response.status_code == 200
        data = response.json()
        assert [m["content"] for m in data] == ["first", "second", "third"]
        timestamps = [m["timestamp"] for m in data]
        assert timestamps == sorted(timestamps)

    def test_conversation_excludes_other_pairs(self, client, alice, bob, carol):
        """Test only the two users' messages are returned."""
        contact = add_contact(client, alice, bob["phone_number"])
        send(client, alice, bob["id"], "to bob", "2025-01-15T10:00:00Z")
        send(client, alice, carol["id"], "to carol", "2025-01-15T10:01:00Z")
        send(client, carol, bob["id"], "carol to bob", "2025-01-15T10:02:00Z")

        response = client.get(f"/api/messages/conversation/{contact['id']}", headers=alice["headers"])

        assert [m["content"] for m in response.json()] == ["to bob"]

    def test_conversation_marks_read(self, client, alice, bob):
        """Test fetching marks the counterpart's messages as read."""
        contact = add_contact(client, alice, bob["phone_number"])
        send(client, bob, alice["id"], "one", "2025-01-15T10:00:00Z")
        send(client, bob, alice["id"], "two", "2025-01-15T10:01:00Z")
        send(client, alice, bob["id"], "mine", "2025-01-15T10:02:00Z")

        assert client.get("/api/messages/unread/count", headers=alice["headers"]).json() == {"count": 2}

        response = client.get(f"/api/messages/conversation/{contact['id']}", headers=alice["headers"])

        by_content = {m["content"]: m for m in response.json()}
        assert by_content["one"]["is_read"] is True
        assert by_content["two"]["is_read"] is True
        # Alice's own message is read only when Bob fetches
        assert by_content["mine"]["is_read"] is False
        assert client.get("/api/messages/unread/count", headers=alice["headers"]).json() == {"count": 0}
        assert client.get("/api/messages/unread/count", headers=bob["headers"]).json() == {"count": 1}

    def test_conversation_unknown_contact(self, client, alice):
        """Test a missing contact is a not-found error."""
        response = client.get("/api/messages/conversation/9999", headers=alice["headers"])

        assert response.status_code == 404
        assert response.json()["code"] == "contact_not_found"

    def test_conversation_via_auto_created_contact(self, client, alice, bob):
        """Test the receiver can open the conversation through the auto-created contact."""
        data = send(client, alice, bob["id"], "hi", "2025-01-15T10:00:00Z").json()
        contact_id = data["auto_created_contact"]["id"]

        response = client.get(f"/api/messages/conversation/{contact_id}", headers=bob["headers"])

        assert [m["content"] for m in response.json()] == ["hi"]


class TestUnreadAndDelete:
    """Test unread endpoints and conversation deletion."""

    def test_unread_messages(self, client, alice, bob, carol):
        """Test unread lists every unread message addressed to the caller."""
        send(client, bob, alice["id"], "from bob", "2025-01-15T10:00:00Z")
        send(client, carol, alice["id"], "from carol", "2025-01-15T10:01:00Z")
        send(client, alice, bob["id"], "to bob", "2025-01-15T10:02:00Z")

        response = client.get("/api/messages/unread", headers=alice["headers"])

        assert [m["content"] for m in response.json()] == ["from bob", "from carol"]

    def test_delete_conversation_keeps_contact(self, client, alice, bob):
        """Test deleting a conversation removes messages but not the contact."""
        contact = add_contact(client, alice, bob["phone_number"])
        send(client, alice, bob["id"], "a", "2025-01-15T10:00:00Z")
        send(client, bob, alice["id"], "b", "2025-01-15T10:01:00Z")

        response = client.delete(f"/api/messages/conversation/{contact['id']}", headers=alice["headers"])

        assert response.status_code == 200
        assert response.json()["deleted_messages"] == 2
        assert count_messages() == 0
        assert client.get(f"/api/contacts/{contact['id']}", headers=alice["headers"]).status_code == 200
