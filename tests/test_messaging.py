import io
from pathlib import Path

import pytest

from conftest import add_user, login, make_item, post, user_id
from app.laft.db import session_scope
from app.laft.models import User
from app.laft.modules.items.models import Item
from app.laft.modules.messaging.models import Conversation, Message, MessageAttachment
from app.laft.modules.messaging.service import (
    conversations_for_user,
    delete_conversation,
    first_security_user,
    get_or_create_conversation,
    is_participant,
    mark_read,
    messages_since,
    partner_for,
    send_message,
    unread_in_conversation,
    validate_attachments,
)
from app.laft.modules.notifications.models import Notification
from app.laft.utils import UploadedFile


def _user(s, email):
    return s.query(User).filter(User.email == email).one()


def _conversation(app, item_id, email, type="user-to-poster"):
    with app.app_context(), session_scope(app) as s:
        conv, _ = get_or_create_conversation(s, s.get(Item, item_id), _user(s, email), type)
        return conv.id


def _send(app, conv_id, email, body, attachments=None):
    with app.app_context(), session_scope(app) as s:
        msg = send_message(s, s.get(Conversation, conv_id), _user(s, email), body, attachments)
        return msg.id


def test_get_or_create_is_idempotent(app):
    item_id = make_item(app, "owner@example.com")
    with app.app_context(), session_scope(app) as s:
        item, alice = s.get(Item, item_id), _user(s, "alice@example.com")
        first, created = get_or_create_conversation(s, item, alice, "user-to-poster")
        again, created_again = get_or_create_conversation(s, item, alice, "user-to-poster")
        security, _ = get_or_create_conversation(s, item, alice, "user-to-security")
        assert created and not created_again
        assert first.id == again.id
        assert security.id != first.id


def test_cannot_chat_with_self_about_own_item(app):
    item_id = make_item(app, "owner@example.com")
    with app.app_context(), session_scope(app) as s:
        item, owner = s.get(Item, item_id), _user(s, "owner@example.com")
        with pytest.raises(ValueError, match="cannot start a chat with yourself"):
            get_or_create_conversation(s, item, owner, "user-to-poster")
        with pytest.raises(ValueError, match="Invalid conversation type"):
            get_or_create_conversation(s, item, owner, "group")
        # the poster may still contact security about their own item
        conv, created = get_or_create_conversation(s, item, owner, "user-to-security")
        assert created


def test_partner_and_participants(app):
    item_id = make_item(app, "owner@example.com")
    poster_conv = _conversation(app, item_id, "alice@example.com")
    security_conv = _conversation(app, item_id, "alice@example.com", "user-to-security")

    with app.app_context(), session_scope(app) as s:
        alice, owner, bob, guard = (
            _user(s, e) for e in ("alice@example.com", "owner@example.com", "bob@example.com", "guard@example.com")
        )
        pc, sc = s.get(Conversation, poster_conv), s.get(Conversation, security_conv)

        assert partner_for(s, pc, alice).id == owner.id
        assert partner_for(s, pc, owner).id == alice.id
        assert partner_for(s, sc, alice).id == guard.id
        assert partner_for(s, sc, guard).id == alice.id

        assert is_participant(alice, pc) and is_participant(owner, pc)
        assert not is_participant(bob, pc)
        assert not is_participant(guard, pc)
        assert is_participant(guard, sc)
        assert not is_participant(owner, sc)


def test_first_security_user_falls_back_to_admin(app):
    with session_scope(app) as s:
        assert first_security_user(s).email == "guard@example.com"
        _user(s, "guard@example.com").is_active = False
        s.flush()
        assert first_security_user(s).email == "admin@example.com"


def test_send_message_notifies_partner(app):
    item_id = make_item(app, "owner@example.com")
    conv_id = _conversation(app, item_id, "alice@example.com")
    msg_id = _send(app, conv_id, "alice@example.com", "  Hi, I think that backpack is mine.  ")

    owner_id = user_id(app, "owner@example.com")
    with session_scope(app) as s:
        msg = s.get(Message, msg_id)
        assert msg.body == "Hi, I think that backpack is mine."
        assert msg.recipient_id == owner_id
        note = s.query(Notification).filter(Notification.type == "new_message").one()
        assert note.user_id == owner_id
        assert note.title == "New message"
        assert note.conversation_id == conv_id
        assert "Alice Claimer" in note.message
        assert s.get(Conversation, conv_id).updated_at >= msg.created_at


def test_send_message_rejects_empty_and_outsiders(app):
    item_id = make_item(app, "owner@example.com")
    conv_id = _conversation(app, item_id, "alice@example.com")
    with app.app_context(), session_scope(app) as s:
        conv = s.get(Conversation, conv_id)
        with pytest.raises(ValueError, match="Message cannot be empty."):
            send_message(s, conv, _user(s, "alice@example.com"), "   ")
        with pytest.raises(PermissionError):
            send_message(s, conv, _user(s, "bob@example.com"), "Let me in")


def test_attachments_stored_and_limited(app, tmp_path):
    item_id = make_item(app, "owner@example.com")
    conv_id = _conversation(app, item_id, "alice@example.com")
    receipt = UploadedFile("receipt.pdf", "application/pdf", b"%PDF-1.4 receipt")
    msg_id = _send(app, conv_id, "alice@example.com", "", [receipt])

    with session_scope(app) as s:
        att = s.query(MessageAttachment).filter(MessageAttachment.message_id == msg_id).one()
        assert att.storage_key.startswith(f"chat-attachments/{conv_id}/{msg_id}/")
        assert not att.is_image
    assert (Path(tmp_path) / "storage" / att.storage_key).read_bytes() == b"%PDF-1.4 receipt"

    assert validate_attachments([receipt] * 6) == ["You can attach at most 5 files per message."]
    big = UploadedFile("video.mp4", "video/mp4", b"\x00" * (5 * 1024 * 1024 + 1))
    assert validate_attachments([big]) == ["video.mp4: max file size is 5MB."]


def test_messages_since_and_mark_read(app):
    item_id = make_item(app, "owner@example.com")
    conv_id = _conversation(app, item_id, "alice@example.com")
    first = _send(app, conv_id, "alice@example.com", "Hello there")
    second = _send(app, conv_id, "owner@example.com", "Hi, can you describe it?")
    third = _send(app, conv_id, "alice@example.com", "It has a red keychain")

    with session_scope(app) as s:
        conv = s.get(Conversation, conv_id)
        owner, alice = _user(s, "owner@example.com"), _user(s, "alice@example.com")
        assert [m.id for m in messages_since(s, conv)] == [first, second, third]
        assert [m.id for m in messages_since(s, conv, first)] == [second, third]
        assert messages_since(s, conv, third) == []

        assert unread_in_conversation(s, conv, owner) == 2
        assert mark_read(s, conv, owner) == 2
        s.flush()
        assert unread_in_conversation(s, conv, owner) == 0
        # the owner's own message stays unread for alice
        assert unread_in_conversation(s, conv, alice) == 1


def test_inbox_scoping(app):
    item_id = make_item(app, "owner@example.com")
    _conversation(app, item_id, "alice@example.com")
    _conversation(app, item_id, "bob@example.com", "user-to-security")

    with session_scope(app) as s:
        assert len(conversations_for_user(s, _user(s, "owner@example.com"))) == 1
        assert len(conversations_for_user(s, _user(s, "alice@example.com"))) == 1
        assert len(conversations_for_user(s, _user(s, "bob@example.com"))) == 1
        guard_convs = conversations_for_user(s, _user(s, "guard@example.com"))
        assert [c.type for c in guard_convs] == ["user-to-security"]
        add_user(s, "carol@example.com")
        assert conversations_for_user(s, _user(s, "carol@example.com")) == []


def test_chat_routes_start_send_and_poll(app, client):
    item_id = make_item(app, "owner@example.com")
    login(client, "alice@example.com")

    r = post(client, f"/items/{item_id}/chat", {"type": "user-to-poster"})
    assert r.status_code == 302
    with session_scope(app) as s:
        conv_id = s.query(Conversation).one().id
    assert r.headers["Location"].endswith(f"/chat/{conv_id}")

    # starting again reuses the same conversation
    r = post(client, f"/items/{item_id}/chat", {"type": "user-to-poster"})
    assert r.headers["Location"].endswith(f"/chat/{conv_id}")

    r = post(client, f"/chat/{conv_id}", {"body": "Is it still there?"}, headers={"Accept": "application/json"})
    assert r.status_code == 200
    assert r.json["ok"] is True
    first_id = r.json["message"]["id"]
    assert r.json["message"]["mine"] is True

    r = post(client, f"/chat/{conv_id}", {"body": ""}, headers={"Accept": "application/json"})
    assert r.status_code == 400
    assert r.json["error"] == "Message cannot be empty."

    r = client.get(f"/chat/{conv_id}/poll?after=0")
    assert r.json["ok"] is True
    assert [m["id"] for m in r.json["messages"]] == [first_id]
    assert r.json["last_id"] == first_id

    r = client.get(f"/chat/{conv_id}/poll?after={first_id}")
    assert r.json["messages"] == []
    assert r.json["last_id"] == first_id

    assert client.get(f"/chat/{conv_id}/poll?after=abc").status_code == 400

    r = client.get(f"/chat/{conv_id}")
    assert r.status_code == 200
    assert b"Is it still there?" in r.data


def test_owner_cannot_open_chat_with_self(app, client):
    item_id = make_item(app, "owner@example.com")
    login(client, "owner@example.com")
    r = post(client, f"/items/{item_id}/chat", {"type": "user-to-poster"}, follow_redirects=True)
    assert b"You cannot start a chat with yourself about your own item." in r.data


def test_chat_attachment_route(app, client):
    item_id = make_item(app, "owner@example.com")
    conv_id = _conversation(app, item_id, "alice@example.com")
    login(client, "alice@example.com")

    data = {"body": "Photo attached", "attachments": [(io.BytesIO(b"\x89PNG fake"), "proof.png", "image/png")]}
    r = post(client, f"/chat/{conv_id}", data, content_type="multipart/form-data")
    assert r.status_code == 302

    with session_scope(app) as s:
        att_id = s.query(MessageAttachment).one().id
    r = client.get(f"/chat/{conv_id}/attachments/{att_id}")
    assert r.status_code == 200
    assert r.data == b"\x89PNG fake"
    client.get("/auth/logout")

    login(client, "bob@example.com")
    assert client.get(f"/chat/{conv_id}/attachments/{att_id}").status_code == 403


def test_non_participant_forbidden(app, client):
    item_id = make_item(app, "owner@example.com")
    conv_id = _conversation(app, item_id, "alice@example.com")

    login(client, "bob@example.com")
    assert client.get(f"/chat/{conv_id}").status_code == 403
    assert client.get(f"/chat/{conv_id}/poll").status_code == 403
    assert post(client, f"/chat/{conv_id}", {"body": "hi"}).status_code == 403
    assert post(client, f"/chat/{conv_id}/delete").status_code == 403
    assert client.get("/chat/9999").status_code == 404


def test_security_staff_sees_security_chats(app, client):
    item_id = make_item(app, "owner@example.com")
    conv_id = _conversation(app, item_id, "alice@example.com", "user-to-security")
    _send(app, conv_id, "alice@example.com", "I lost this near the gym")

    login(client, "guard@example.com")
    r = client.get("/messages")
    assert r.status_code == 200
    assert b"Blue backpack" in r.data
    assert client.get(f"/chat/{conv_id}").status_code == 200


def test_delete_conversation(app, client):
    item_id = make_item(app, "owner@example.com")
    conv_id = _conversation(app, item_id, "alice@example.com")
    _send(app, conv_id, "alice@example.com", "Hello about the backpack")

    login(client, "owner@example.com")
    r = post(client, f"/chat/{conv_id}/delete")
    assert r.status_code == 302
    assert r.headers["Location"].endswith("/messages")

    with session_scope(app) as s:
        assert s.get(Conversation, conv_id) is None
        assert s.query(Message).count() == 0
        # notifications outlive the conversation
        assert s.query(Notification).filter(Notification.type == "new_message").one().conversation_id is None


def test_delete_conversation_removes_attachments_after_commit(app, client, tmp_path):
    item_id = make_item(app, "owner@example.com")
    conv_id = _conversation(app, item_id, "alice@example.com")
    receipt = UploadedFile("receipt.pdf", "application/pdf", b"%PDF-1.4 receipt")
    msg_id = _send(app, conv_id, "alice@example.com", "Proof of purchase", [receipt])
    with session_scope(app) as s:
        key = s.query(MessageAttachment).filter(MessageAttachment.message_id == msg_id).one().storage_key
    blob = Path(tmp_path) / "storage" / key

    with app.app_context(), session_scope(app) as s:
        keys = delete_conversation(s, s.get(Conversation, conv_id), _user(s, "alice@example.com"))
        assert keys == [key]
        s.rollback()
    assert blob.exists()

    login(client, "alice@example.com")
    assert post(client, f"/chat/{conv_id}/delete").status_code == 302
    with session_scope(app) as s:
        assert s.get(Conversation, conv_id) is None
    assert not blob.exists()
