import pytest

from conftest import add_user, login, make_item, post
from app.laft.db import session_scope
from app.laft.models import AuditEvent, User
from app.laft.modules.notifications.models import Notification
from app.laft.modules.notifications.service import (
    broadcast_announcement,
    list_for_user,
    mark_all_read,
    mark_read,
    notify,
    unread_count,
)


def _user(s, email):
    return s.query(User).filter(User.email == email).one()


def _notes(s, email, type=None):
    q = s.query(Notification).filter(Notification.user_id == _user(s, email).id)
    if type:
        q = q.filter(Notification.type == type)
    return q.all()


def test_notify_truncates_and_validates(app):
    with session_scope(app) as s:
        uid = _user(s, "alice@example.com").id
        n = notify(s, user_id=uid, type="claim_update", title="T" * 150, message="M" * 800)
        assert len(n.title) == 99
        assert n.title.endswith("…")
        assert len(n.message) == 499
        assert n.status == "sent" and n.via == "in_app" and n.is_read is False

        with pytest.raises(ValueError, match="Invalid notification type"):
            notify(s, user_id=uid, type="carrier_pigeon", title="Hello", message="Hello there")
        with pytest.raises(ValueError, match="title is too short"):
            notify(s, user_id=uid, type="claim_update", title="Hi", message="Hello there")
        with pytest.raises(ValueError, match="message is too short"):
            notify(s, user_id=uid, type="claim_update", title="Hello", message="  ok ")


def test_match_alerts_one_per_user(app):
    # alice has two lost items in the category, bob one, and an inactive user one
    make_item(app, "alice@example.com", title="Black wallet", category="accessories")
    make_item(app, "alice@example.com", title="Brown wallet", category="accessories")
    make_item(app, "bob@example.com", title="Leather wallet", category="accessories")
    make_item(app, "bob@example.com", title="Laptop charger", category="electronics")
    with session_scope(app) as s:
        add_user(s, "gone@example.com", full_name="Gone User", is_active=False)
    make_item(app, "gone@example.com", title="Green wallet", category="accessories")
    # the finder's own lost items never trigger an alert to themselves
    make_item(app, "owner@example.com", title="Old wallet", category="accessories")

    found_id = make_item(app, "owner@example.com", title="Found wallet", category="accessories", status="found")

    with session_scope(app) as s:
        alerts = s.query(Notification).filter(Notification.type == "match_alert").all()
        assert sorted(n.user_id for n in alerts) == sorted(
            [_user(s, "alice@example.com").id, _user(s, "bob@example.com").id]
        )
        assert all(n.item_id == found_id for n in alerts)
        assert "Found wallet" in alerts[0].message
        assert "Accessories" in alerts[0].message


def test_lost_report_sends_no_alerts(app):
    make_item(app, "alice@example.com", category="keys")
    make_item(app, "bob@example.com", category="keys")
    with session_scope(app) as s:
        assert s.query(Notification).count() == 0


def test_broadcast_to_active_users(app):
    with session_scope(app) as s:
        add_user(s, "gone@example.com", is_active=False)

    with app.app_context(), session_scope(app) as s:
        admin = _user(s, "admin@example.com")
        count = broadcast_announcement(s, admin, "Office hours", "The lost and found desk closes at 4pm today.")
        # admin + four seeded users; the inactive account is skipped
        assert count == 5

    with session_scope(app) as s:
        assert len(_notes(s, "alice@example.com", "general_announcement")) == 1
        assert _notes(s, "gone@example.com") == []
        ev = s.query(AuditEvent).filter(AuditEvent.action == "announcement.send").one()
        assert '"recipients": 5' in ev.metadata_json

    with app.app_context(), session_scope(app) as s:
        with pytest.raises(ValueError, match="Title must be at least 4 characters."):
            broadcast_announcement(s, _user(s, "admin@example.com"), "Hi", "Long enough message")


def test_mark_read_and_unread_count(app):
    with session_scope(app) as s:
        alice = _user(s, "alice@example.com")
        for i in range(3):
            notify(s, user_id=alice.id, type="claim_update", title=f"Update {i}", message="Something happened")
        s.flush()
        assert unread_count(s, alice) == 3

        first = list_for_user(s, alice)[0]
        with pytest.raises(PermissionError):
            mark_read(s, first, _user(s, "bob@example.com"))

        mark_read(s, first, alice)
        assert first.is_read and first.status == "read" and first.read_at is not None
        s.flush()
        assert unread_count(s, alice) == 2
        assert mark_all_read(s, alice) == 2
        s.flush()
        assert unread_count(s, alice) == 0
        assert mark_all_read(s, alice) == 0


def test_notification_routes(app, client):
    item_id = make_item(app, "owner@example.com")
    with session_scope(app) as s:
        owner_id = _user(s, "owner@example.com").id
        n = notify(
            s,
            user_id=owner_id,
            type="new_claim",
            title="New Claim Submitted",
            message="Someone claimed your backpack",
            item_id=item_id,
        )
        notify(s, user_id=owner_id, type="claim_update", title="Another one", message="Second notification")
        s.flush()
        note_id = n.id

    login(client, "alice@example.com")
    assert post(client, f"/notifications/{note_id}/read").status_code == 403
    client.get("/auth/logout")

    login(client, "owner@example.com")
    r = client.get("/notifications")
    assert r.status_code == 200
    assert b"New Claim Submitted" in r.data

    r = post(client, f"/notifications/{note_id}/read", {"open": "1"})
    assert r.status_code == 302
    assert r.headers["Location"].endswith(f"/items/{item_id}")

    r = post(client, "/notifications/read-all", follow_redirects=True)
    assert b"Marked 1 notification(s) as read." in r.data

    assert post(client, "/notifications/9999/read").status_code == 404
    with session_scope(app) as s:
        assert unread_count(s, _user(s, "owner@example.com")) == 0
