"""
Notification service layer.
In-app notifications for claims, chat messages, match alerts and announcements.
"""
from __future__ import annotations

import logging
from datetime import datetime
from typing import TYPE_CHECKING

from sqlalchemy import func
from sqlalchemy.orm import Session

from app.laft.audit import record_event
from app.laft.constants import NOTIFICATION_TYPES

from .models import Notification

if TYPE_CHECKING:
    from app.laft.models import User
    from app.laft.modules.items.models import Item

logger = logging.getLogger(__name__)

TITLE_MIN, TITLE_MAX = 4, 99
MESSAGE_MIN, MESSAGE_MAX = 6, 499


def _fit(text: str, max_len: int) -> str:
    text = " ".join((text or "").split())
    if len(text) <= max_len:
        return text
    return text[: max_len - 1].rstrip() + "…"


def notify(
    s: Session,
    *,
    user_id: int,
    type: str,
    title: str,
    message: str,
    item_id: int | None = None,
    claim_id: int | None = None,
    conversation_id: int | None = None,
) -> Notification:
    """Queue an in-app notification. Title/message are truncated to the column limits."""
    if type not in NOTIFICATION_TYPES:
        raise ValueError(f"Invalid notification type: {type}")
    title = _fit(title, TITLE_MAX)
    message = _fit(message, MESSAGE_MAX)
    if len(title) < TITLE_MIN:
        raise ValueError("Notification title is too short.")
    if len(message) < MESSAGE_MIN:
        raise ValueError("Notification message is too short.")

    n = Notification(
        user_id=user_id,
        type=type,
        title=title,
        message=message,
        item_id=item_id,
        claim_id=claim_id,
        conversation_id=conversation_id,
        status="sent",
        via="in_app",
        is_read=False,
    )
    s.add(n)
    return n


def list_for_user(s: Session, user: "User", *, limit: int = 200) -> list[Notification]:
    return (
        s.query(Notification)
        .filter(Notification.user_id == user.id)
        .order_by(Notification.created_at.desc(), Notification.id.desc())
        .limit(limit)
        .all()
    )


def unread_count(s: Session, user: "User") -> int:
    return (
        s.query(func.count(Notification.id))
        .filter(Notification.user_id == user.id, Notification.is_read.is_(False))
        .scalar()
        or 0
    )


def mark_read(s: Session, notification: Notification, user: "User") -> None:
    if notification.user_id != user.id:
        raise PermissionError("Not your notification.")
    if notification.is_read:
        return
    notification.is_read = True
    notification.status = "read"
    notification.read_at = datetime.utcnow()


def mark_all_read(s: Session, user: "User") -> int:
    now = datetime.utcnow()
    unread = (
        s.query(Notification)
        .filter(Notification.user_id == user.id, Notification.is_read.is_(False))
        .all()
    )
    for n in unread:
        n.is_read = True
        n.status = "read"
        n.read_at = now
    return len(unread)


def send_match_alerts(s: Session, found_item: "Item") -> int:
    """
    Tell owners of open lost items in the same category that something matching was found.
    One alert per user, regardless of how many lost items they have in that category.
    """
    from app.laft.models import User
    from app.laft.modules.items.models import Item

    if found_item.status != "found" or found_item.category_id is None:
        return 0

    rows = (
        s.query(Item.user_id)
        .join(User, User.id == Item.user_id)
        .filter(
            Item.status == "lost",
            Item.category_id == found_item.category_id,
            Item.user_id.isnot(None),
            Item.user_id != found_item.user_id,
            User.is_active.is_(True),
        )
        .distinct()
        .all()
    )
    recipients = sorted({r[0] for r in rows})
    for user_id in recipients:
        notify(
            s,
            user_id=user_id,
            type="match_alert",
            title="Possible match found",
            message=(
                f'A found item "{found_item.title}" was reported in {found_item.category_name} '
                f"at {found_item.location_description}. It may be yours."
            ),
            item_id=found_item.id,
        )
    if recipients:
        logger.info("Match alerts sent for item %s to %d user(s)", found_item.id, len(recipients))
    return len(recipients)


def broadcast_announcement(s: Session, actor: "User", title: str, message: str) -> int:
    """Send a general announcement to every active user. Returns recipient count."""
    from app.laft.models import User

    title = (title or "").strip()
    message = (message or "").strip()
    if len(title) < TITLE_MIN:
        raise ValueError(f"Title must be at least {TITLE_MIN} characters.")
    if len(message) < MESSAGE_MIN:
        raise ValueError(f"Message must be at least {MESSAGE_MIN} characters.")

    user_ids = [row[0] for row in s.query(User.id).filter(User.is_active.is_(True)).all()]
    for user_id in user_ids:
        notify(s, user_id=user_id, type="general_announcement", title=title, message=message)

    record_event(
        s,
        actor=actor,
        action="announcement.send",
        entity_type="Notification",
        metadata={"title": _fit(title, TITLE_MAX), "recipients": len(user_ids)},
    )
    return len(user_ids)
