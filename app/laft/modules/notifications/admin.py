from __future__ import annotations

from flask import Blueprint, abort, flash, g, redirect, render_template, request, url_for

from app.laft.db import db_session
from app.laft.models import User
from app.laft.modules.notifications.models import Notification
from app.laft.modules.notifications.service import list_for_user, mark_all_read, mark_read
from app.laft.rbac import require_login

bp = Blueprint("notifications", __name__)


def _current_user() -> User:
    u = getattr(g, "current_user", None)
    if not u:
        raise RuntimeError("No current user")
    return u


def _target_url(n: Notification) -> str:
    if n.conversation_id:
        return url_for("messaging.chat_view", conv_id=n.conversation_id)
    if n.item_id:
        return url_for("items.item_detail", item_id=n.item_id)
    return url_for("notifications.notifications_list")


@bp.get("/notifications")
@require_login
def notifications_list():
    s = db_session()
    notes = list_for_user(s, _current_user())
    return render_template("notifications/list.html", notifications=notes)


@bp.post("/notifications/<int:notification_id>/read")
@require_login
def notification_read(notification_id: int):
    s = db_session()
    n = s.get(Notification, notification_id)
    if not n:
        abort(404)
    try:
        mark_read(s, n, _current_user())
    except PermissionError:
        abort(403)
    s.commit()
    if request.form.get("open") == "1":
        return redirect(_target_url(n))
    return redirect(url_for("notifications.notifications_list"))


@bp.post("/notifications/read-all")
@require_login
def notifications_read_all():
    s = db_session()
    count = mark_all_read(s, _current_user())
    s.commit()
    flash(f"Marked {count} notification(s) as read.", "success")
    return redirect(url_for("notifications.notifications_list"))
