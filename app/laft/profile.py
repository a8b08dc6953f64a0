from __future__ import annotations

import re
from datetime import datetime

from flask import Blueprint, flash, g, redirect, render_template, request, url_for
from sqlalchemy.orm import Session
from werkzeug.security import check_password_hash, generate_password_hash

from app.laft.audit import record_event
from app.laft.auth import validate_new_password
from app.laft.db import db_session
from app.laft.models import User
from app.laft.modules.items.models import Item
from app.laft.modules.items.service import user_item_stats
from app.laft.rbac import require_login

bp = Blueprint("profile", __name__)

_MOBILE_RE = re.compile(r"^\+?\d{7,15}$")


def _current_user() -> User:
    u = getattr(g, "current_user", None)
    if not u:
        raise RuntimeError("No current user")
    return u


def normalize_mobile(raw: str | None) -> str | None:
    """Drop spaces, dashes and brackets; empty input becomes None."""
    v = re.sub(r"[\s\-()]", "", raw or "")
    return v or None


def validate_profile(s: Session, user: User, full_name: str, mobile: str | None) -> list[str]:
    errors = []
    if not full_name:
        errors.append("Full name is required.")
    elif len(full_name) > 255:
        errors.append("Full name cannot exceed 255 characters.")
    if mobile:
        if not _MOBILE_RE.match(mobile):
            errors.append("Mobile number must be 7 to 15 digits, optionally starting with +.")
        else:
            taken = s.query(User).filter(User.mobile_number == mobile, User.id != user.id).first()
            if taken:
                errors.append("That mobile number is already in use.")
    return errors


def needs_completion(user: User | None) -> bool:
    return bool(user and not (user.full_name or "").strip())


@bp.get("")
@require_login
def index():
    s = db_session()
    u = _current_user()
    recent_items = (
        s.query(Item)
        .filter(Item.user_id == u.id)
        .order_by(Item.created_at.desc(), Item.id.desc())
        .limit(10)
        .all()
    )
    return render_template("profile/index.html", user=u, stats=user_item_stats(s, u), recent_items=recent_items)


@bp.post("")
@require_login
def update():
    s = db_session()
    u = _current_user()

    full_name = (request.form.get("full_name") or "").strip()
    mobile = normalize_mobile(request.form.get("mobile_number"))
    errors = validate_profile(s, u, full_name, mobile)

    new_password = request.form.get("new_password") or ""
    changing_password = bool(new_password)
    if changing_password:
        if not check_password_hash(u.password_hash, request.form.get("current_password") or ""):
            errors.append("Current password is incorrect.")
        errors.extend(validate_new_password(new_password, request.form.get("new_password_confirm") or ""))

    if errors:
        for e in errors:
            flash(e, "danger")
        return redirect(url_for("profile.index"))

    before = {
        "full_name": u.full_name,
        "mobile_number": u.mobile_number,
        "allow_email_notifications": u.allow_email_notifications,
        "allow_sms_notifications": u.allow_sms_notifications,
    }
    u.full_name = full_name
    u.mobile_number = mobile
    u.physical_address = (request.form.get("physical_address") or "").strip() or None
    u.allow_email_notifications = request.form.get("allow_email_notifications") == "1"
    u.allow_sms_notifications = request.form.get("allow_sms_notifications") == "1"
    if changing_password:
        u.password_hash = generate_password_hash(new_password)
    u.updated_at = datetime.utcnow()

    after = {
        "full_name": u.full_name,
        "mobile_number": u.mobile_number,
        "allow_email_notifications": u.allow_email_notifications,
        "allow_sms_notifications": u.allow_sms_notifications,
    }
    record_event(
        s,
        actor=u,
        action="user.update_profile",
        entity_type="User",
        entity_id=str(u.id),
        metadata={"before": before, "after": after, "password_changed": changing_password},
    )
    s.commit()
    flash("Profile updated.", "success")
    return redirect(url_for("profile.index"))


@bp.get("/complete")
@require_login
def complete_get():
    u = _current_user()
    if not needs_completion(u):
        return redirect(url_for("items.index"))
    return render_template("profile/complete.html", user=u)


@bp.post("/complete")
@require_login
def complete_post():
    s = db_session()
    u = _current_user()
    full_name = (request.form.get("full_name") or "").strip()
    mobile = normalize_mobile(request.form.get("mobile_number"))

    errors = validate_profile(s, u, full_name, mobile)
    if errors:
        for e in errors:
            flash(e, "danger")
        return redirect(url_for("profile.complete_get"))

    u.full_name = full_name
    u.mobile_number = mobile
    u.physical_address = (request.form.get("physical_address") or "").strip() or None
    u.updated_at = datetime.utcnow()
    record_event(s, actor=u, action="user.complete_profile", entity_type="User", entity_id=str(u.id))
    s.commit()
    flash("Profile completed. Welcome!", "success")
    return redirect(url_for("items.index"))
