from __future__ import annotations

from flask import Blueprint, abort, current_app, flash, g, jsonify, redirect, render_template, request, send_file, url_for

from app.laft.db import db_session
from app.laft.models import User
from app.laft.modules.items.models import Item
from app.laft.modules.messaging.models import Conversation, MessageAttachment
from app.laft.modules.messaging.service import (
    conversations_for_user,
    delete_conversation,
    get_or_create_conversation,
    is_participant,
    last_message,
    mark_read,
    message_to_dict,
    messages_since,
    partner_for,
    send_message,
    unread_in_conversation,
)
from app.laft.rbac import require_permission
from app.laft.storage import StorageError, delete_blobs, storage_from_config
from app.laft.utils import uploads_from_request

bp = Blueprint("messaging", __name__)


def _current_user() -> User:
    u = getattr(g, "current_user", None)
    if not u:
        raise RuntimeError("No current user")
    return u


def _wants_json() -> bool:
    return request.accept_mimetypes.best == "application/json" or request.is_json


def _conversation_for_viewer(conv_id: int) -> Conversation:
    conv = db_session().get(Conversation, conv_id)
    if not conv:
        abort(404)
    if not is_participant(_current_user(), conv):
        abort(403)
    return conv


def _serialize(msg, viewer: User) -> dict:
    data = message_to_dict(msg, viewer)
    for att in data["attachments"]:
        att["url"] = url_for("messaging.chat_attachment", conv_id=msg.conversation_id, att_id=att["id"])
    return data


@bp.get("/messages")
@require_permission("chat.use")
def inbox():
    s = db_session()
    u = _current_user()
    rows = []
    for conv in conversations_for_user(s, u):
        rows.append(
            {
                "conversation": conv,
                "partner": partner_for(s, conv, u),
                "last_message": last_message(s, conv),
                "unread": unread_in_conversation(s, conv, u),
            }
        )
    return render_template("messages/list.html", rows=rows)


@bp.post("/items/<int:item_id>/chat")
@require_permission("chat.use")
def chat_start(item_id: int):
    s = db_session()
    u = _current_user()
    item = s.get(Item, item_id)
    if not item:
        abort(404)

    conv_type = (request.form.get("type") or "user-to-poster").strip()
    try:
        conv, _created = get_or_create_conversation(s, item, u, conv_type)
    except ValueError as e:
        flash(str(e), "danger")
        return redirect(url_for("items.item_detail", item_id=item_id))
    s.commit()
    return redirect(url_for("messaging.chat_view", conv_id=conv.id))


@bp.get("/chat/<int:conv_id>")
@require_permission("chat.use")
def chat_view(conv_id: int):
    s = db_session()
    u = _current_user()
    conv = _conversation_for_viewer(conv_id)

    messages = messages_since(s, conv, 0)
    if mark_read(s, conv, u):
        s.commit()

    return render_template(
        "messages/chat.html",
        conversation=conv,
        partner=partner_for(s, conv, u),
        messages=messages,
        last_id=messages[-1].id if messages else 0,
        poll_interval_ms=current_app.config.get("CHAT_POLL_INTERVAL_MS", 2000),
    )


@bp.post("/chat/<int:conv_id>")
@require_permission("chat.use")
def chat_send(conv_id: int):
    s = db_session()
    u = _current_user()
    conv = _conversation_for_viewer(conv_id)
    attachments = uploads_from_request(request.files, "attachments")

    try:
        msg = send_message(s, conv, u, request.form.get("body"), attachments)
        s.commit()
    except ValueError as e:
        s.rollback()
        if _wants_json():
            return jsonify({"ok": False, "error": str(e)}), 400
        flash(str(e), "danger")
        return redirect(url_for("messaging.chat_view", conv_id=conv_id))
    except StorageError as e:
        s.rollback()
        current_app.logger.error("Attachment upload failed (conversation=%s): %s", conv_id, e)
        if _wants_json():
            return jsonify({"ok": False, "error": "Could not store attachment."}), 500
        flash("Could not store attachment. Please try again.", "danger")
        return redirect(url_for("messaging.chat_view", conv_id=conv_id))

    if _wants_json():
        return jsonify({"ok": True, "message": _serialize(msg, u)})
    return redirect(url_for("messaging.chat_view", conv_id=conv_id))


@bp.get("/chat/<int:conv_id>/poll")
@require_permission("chat.use")
def chat_poll(conv_id: int):
    s = db_session()
    u = _current_user()
    conv = _conversation_for_viewer(conv_id)
    try:
        after = int(request.args.get("after") or 0)
    except ValueError:
        return jsonify({"ok": False, "error": "after must be an integer"}), 400

    messages = messages_since(s, conv, after)
    if mark_read(s, conv, u):
        s.commit()
    return jsonify(
        {
            "ok": True,
            "messages": [_serialize(m, u) for m in messages],
            "last_id": messages[-1].id if messages else after,
        }
    )


@bp.post("/chat/<int:conv_id>/delete")
@require_permission("chat.use")
def chat_delete(conv_id: int):
    s = db_session()
    u = _current_user()
    conv = _conversation_for_viewer(conv_id)
    keys = delete_conversation(s, conv, u)
    s.commit()
    delete_blobs(current_app.config, keys)
    flash("Conversation deleted.", "success")
    return redirect(url_for("messaging.inbox"))


@bp.get("/chat/<int:conv_id>/attachments/<int:att_id>")
@require_permission("chat.use")
def chat_attachment(conv_id: int, att_id: int):
    s = db_session()
    _conversation_for_viewer(conv_id)
    att = s.get(MessageAttachment, att_id)
    if not att or att.message.conversation_id != conv_id:
        abort(404)
    storage = storage_from_config(current_app.config)
    try:
        fobj = storage.open(att.storage_key)
    except FileNotFoundError:
        abort(404)
    return send_file(
        fobj,
        mimetype=att.content_type,
        as_attachment=not att.is_image,
        download_name=att.original_filename,
        max_age=0,
    )
