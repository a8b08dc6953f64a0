"""
Messaging service layer.
Conversations between a user and an item poster, or between a user and campus security.

Clients poll `messages_since` for new rows; message ids are monotonically
increasing so the client can skip any id it has already rendered.
"""
from __future__ import annotations

import logging
from datetime import datetime
from typing import TYPE_CHECKING

from flask import current_app
from sqlalchemy import or_, select
from sqlalchemy.orm import Session
from werkzeug.utils import secure_filename

from app.laft.audit import record_event
from app.laft.constants import CONVERSATION_TYPES, MAX_ATTACHMENTS_PER_MESSAGE
from app.laft.models import Role, User
from app.laft.modules.notifications.service import notify
from app.laft.rbac import user_has_permission
from app.laft.storage import storage_from_config
from app.laft.utils import UploadedFile, build_storage_key, validate_upload

from .models import Conversation, Message, MessageAttachment

if TYPE_CHECKING:
    from app.laft.modules.items.models import Item

logger = logging.getLogger(__name__)

ATTACHMENT_PREFIX = "chat-attachments"


def _is_security_staff(user: User | None) -> bool:
    return user_has_permission(user, "chat.security")


def get_or_create_conversation(s: Session, item: "Item", user: User, type: str) -> tuple[Conversation, bool]:
    """
    Return the conversation for (item, user, type), creating it on first use.
    The second element is True when a new conversation was created.
    """
    if type not in CONVERSATION_TYPES:
        raise ValueError(f"Invalid conversation type: {type}")
    if type == "user-to-poster":
        if item.user_id is None:
            raise ValueError("This item has no poster to contact.")
        if item.user_id == user.id:
            raise ValueError("You cannot start a chat with yourself about your own item.")

    conv = (
        s.query(Conversation)
        .filter(Conversation.item_id == item.id, Conversation.creator_id == user.id, Conversation.type == type)
        .one_or_none()
    )
    if conv:
        return conv, False

    now = datetime.utcnow()
    conv = Conversation(item_id=item.id, creator_id=user.id, type=type, created_at=now, updated_at=now)
    conv.item = item
    conv.creator = user
    s.add(conv)
    s.flush()
    record_event(
        s,
        actor=user,
        action="conversation.create",
        entity_type="Conversation",
        entity_id=str(conv.id),
        metadata={"item_id": item.id, "type": type},
    )
    return conv, True


def is_participant(user: User | None, conv: Conversation) -> bool:
    if not user or not user.is_active:
        return False
    if conv.creator_id == user.id:
        return True
    if conv.type == "user-to-poster":
        return conv.item is not None and conv.item.user_id == user.id
    return _is_security_staff(user)


def first_security_user(s: Session) -> User | None:
    """Default security contact: the oldest active security account, else the oldest admin."""
    for role_key in ("security", "admin"):
        user = (
            s.query(User)
            .join(User.roles)
            .filter(Role.key == role_key, User.is_active.is_(True))
            .order_by(User.id.asc())
            .first()
        )
        if user:
            return user
    return None


def partner_for(s: Session, conv: Conversation, user: User) -> User | None:
    """The other side of the conversation from `user`'s point of view."""
    if conv.creator_id != user.id:
        return conv.creator
    if conv.type == "user-to-poster":
        return conv.item.reporter if conv.item else None
    return first_security_user(s)


def validate_attachments(attachments: list[UploadedFile]) -> list[str]:
    errors = []
    if len(attachments) > MAX_ATTACHMENTS_PER_MESSAGE:
        errors.append(f"You can attach at most {MAX_ATTACHMENTS_PER_MESSAGE} files per message.")
    for upload in attachments:
        errors.extend(validate_upload(upload, images_only=False))
    return errors


def send_message(
    s: Session,
    conv: Conversation,
    user: User,
    body: str | None,
    attachments: list[UploadedFile] | None = None,
) -> Message:
    """Store a message (text and/or attachments) and notify the recipient."""
    if not is_participant(user, conv):
        raise PermissionError("You are not part of this conversation.")
    attachments = attachments or []
    text = (body or "").strip()
    if not text and not attachments:
        raise ValueError("Message cannot be empty.")
    errors = validate_attachments(attachments)
    if errors:
        raise ValueError(errors[0])

    recipient = partner_for(s, conv, user)
    now = datetime.utcnow()
    msg = Message(
        conversation_id=conv.id,
        sender_id=user.id,
        recipient_id=recipient.id if recipient else None,
        body=text or None,
        created_at=now,
    )
    s.add(msg)
    s.flush()

    if attachments:
        storage = storage_from_config(current_app.config)
        for upload in attachments:
            key = build_storage_key(ATTACHMENT_PREFIX, conv.id, msg.id, filename=upload.filename)
            storage.put_bytes(key, upload.data, content_type=upload.content_type)
            msg.attachments.append(
                MessageAttachment(
                    storage_key=key,
                    original_filename=secure_filename(upload.filename) or "attachment.bin",
                    content_type=upload.content_type,
                    size_bytes=len(upload.data),
                )
            )

    conv.updated_at = now

    if recipient and recipient.id != user.id:
        item_title = conv.item.title if conv.item else "an item"
        notify(
            s,
            user_id=recipient.id,
            type="new_message",
            title="New message",
            message=f"{user.display_name} sent you a message about: {item_title}",
            item_id=conv.item_id,
            conversation_id=conv.id,
        )

    record_event(
        s,
        actor=user,
        action="message.send",
        entity_type="Conversation",
        entity_id=str(conv.id),
        metadata={"message_id": msg.id, "attachments": len(attachments)},
    )
    return msg


def messages_since(s: Session, conv: Conversation, after_id: int = 0) -> list[Message]:
    return (
        s.query(Message)
        .filter(Message.conversation_id == conv.id, Message.id > after_id)
        .order_by(Message.id.asc())
        .all()
    )


def mark_read(s: Session, conv: Conversation, user: User) -> int:
    """Mark every unread message sent by the other side as read. Returns count."""
    now = datetime.utcnow()
    unread = (
        s.query(Message)
        .filter(
            Message.conversation_id == conv.id,
            Message.sender_id != user.id,
            Message.read_at.is_(None),
        )
        .all()
    )
    for msg in unread:
        msg.read_at = now
    return len(unread)


def unread_in_conversation(s: Session, conv: Conversation, user: User) -> int:
    return (
        s.query(Message)
        .filter(
            Message.conversation_id == conv.id,
            Message.sender_id != user.id,
            Message.read_at.is_(None),
        )
        .count()
    )


def conversations_for_user(s: Session, user: User) -> list[Conversation]:
    """Inbox: chats the user started, chats about the user's items, and (for staff) security chats."""
    from app.laft.modules.items.models import Item

    conditions = [
        Conversation.creator_id == user.id,
        (Conversation.type == "user-to-poster") & Conversation.item_id.in_(
            select(Item.id).where(Item.user_id == user.id)
        ),
    ]
    if _is_security_staff(user):
        conditions.append(Conversation.type == "user-to-security")

    return (
        s.query(Conversation)
        .filter(or_(*conditions))
        .order_by(Conversation.updated_at.desc(), Conversation.id.desc())
        .all()
    )


def last_message(s: Session, conv: Conversation) -> Message | None:
    return (
        s.query(Message)
        .filter(Message.conversation_id == conv.id)
        .order_by(Message.id.desc())
        .first()
    )


def delete_conversation(s: Session, conv: Conversation, user: User) -> list[str]:
    """Delete the conversation row. Returns the attachment keys for the caller to remove after commit."""
    if not is_participant(user, conv):
        raise PermissionError("You are not part of this conversation.")
    keys = [att.storage_key for msg in conv.messages for att in msg.attachments]
    record_event(
        s,
        actor=user,
        action="conversation.delete",
        entity_type="Conversation",
        entity_id=str(conv.id),
        metadata={"item_id": conv.item_id, "type": conv.type, "messages": len(conv.messages)},
    )
    s.delete(conv)
    logger.info("Conversation %s deleted by user %s", conv.id, user.id)
    return keys


def message_to_dict(msg: Message, viewer: User) -> dict:
    """JSON shape returned by the poll endpoint."""
    return {
        "id": msg.id,
        "sender_id": msg.sender_id,
        "sender_name": msg.sender.display_name if msg.sender else "Deleted user",
        "mine": msg.sender_id == viewer.id,
        "body": msg.body or "",
        "created_at": msg.created_at.isoformat(),
        "read": msg.read_at is not None,
        "attachments": [
            {
                "id": att.id,
                "filename": att.original_filename,
                "content_type": att.content_type,
                "is_image": att.is_image,
            }
            for att in msg.attachments
        ],
    }
