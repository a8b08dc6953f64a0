from datetime import date, datetime, time, timedelta

from flask import Blueprint, abort, flash, g, redirect, render_template, request, url_for
from sqlalchemy import func

from app.laft.audit import record_event
from app.laft.constants import CLAIM_STATUSES, CLAIMABLE_ITEM_STATUSES, ITEM_STATUSES
from app.laft.db import db_session
from app.laft.models import AuditEvent, Role, User
from app.laft.modules.claims.models import Claim
from app.laft.modules.claims.service import pending_claims
from app.laft.modules.items.models import Category, Item
from app.laft.modules.items.service import create_category, list_categories
from app.laft.modules.messaging.models import Conversation
from app.laft.modules.notifications.service import broadcast_announcement
from app.laft.rbac import require_permission

bp = Blueprint("admin", __name__)


def _parse_date(s: str) -> date | None:
    s = (s or "").strip()
    if not s:
        return None
    try:
        return date.fromisoformat(s)
    except ValueError:
        return None


def _current_user() -> User:
    u = getattr(g, "current_user", None)
    if not u:
        raise RuntimeError("No current user")
    return u


def dashboard_stats(s) -> dict:
    items_by_status = {st: 0 for st in ITEM_STATUSES}
    for st, cnt in s.query(Item.status, func.count(Item.id)).group_by(Item.status).all():
        items_by_status[st] = int(cnt)

    claims_by_status = {st: 0 for st in CLAIM_STATUSES}
    for st, cnt in s.query(Claim.status, func.count(Claim.id)).group_by(Claim.status).all():
        claims_by_status[st] = int(cnt)

    items_by_category = [
        (name, int(cnt))
        for name, cnt in (
            s.query(Category.name, func.count(Item.id))
            .outerjoin(Item, Item.category_id == Category.id)
            .group_by(Category.id, Category.name)
            .order_by(func.count(Item.id).desc(), Category.name.asc())
            .all()
        )
    ]

    week_ago = datetime.utcnow() - timedelta(days=7)
    return {
        "items_total": sum(items_by_status.values()),
        "items_by_status": items_by_status,
        "claims_by_status": claims_by_status,
        "items_by_category": items_by_category,
        "users_total": s.query(func.count(User.id)).scalar() or 0,
        # a conversation is open while its item can still be claimed
        "conversations_open": (
            s.query(func.count(Conversation.id))
            .join(Item, Item.id == Conversation.item_id)
            .filter(Item.status.in_(CLAIMABLE_ITEM_STATUSES))
            .scalar()
            or 0
        ),
        "items_last_7_days": s.query(func.count(Item.id)).filter(Item.date_reported >= week_ago).scalar() or 0,
    }


@bp.get("/")
@require_permission("admin.view")
def index():
    s = db_session()
    return render_template("admin/index.html", stats=dashboard_stats(s))


# ---------- Claims review queue ----------
@bp.get("/claims")
@require_permission("claims.review")
def claims_queue():
    s = db_session()
    return render_template("admin/claims.html", claims=pending_claims(s))


# ---------- Audit ----------
@bp.get("/audit")
@require_permission("audit.view")
def audit_list():
    """
    Audit trail UI (last 200 events) with simple filters:
    - action (contains)
    - actor_email (contains)
    - date range (YYYY-MM-DD)
    """
    s = db_session()
    action = (request.args.get("action") or "").strip()
    actor_email = (request.args.get("actor_email") or "").strip()
    date_from = _parse_date(request.args.get("date_from") or "")
    date_to = _parse_date(request.args.get("date_to") or "")

    if (request.args.get("date_from") or "").strip() and not date_from:
        flash("date_from must be YYYY-MM-DD", "danger")
    if (request.args.get("date_to") or "").strip() and not date_to:
        flash("date_to must be YYYY-MM-DD", "danger")

    q = s.query(AuditEvent)
    if action:
        q = q.filter(AuditEvent.action.like(f"%{action}%"))
    if actor_email:
        q = q.filter(AuditEvent.actor_user_email.like(f"%{actor_email.lower()}%"))
    if date_from:
        q = q.filter(AuditEvent.created_at >= datetime.combine(date_from, time.min))
    if date_to:
        # inclusive end-date (treat as whole day)
        q = q.filter(AuditEvent.created_at < datetime.combine(date_to + timedelta(days=1), time.min))

    events = q.order_by(AuditEvent.created_at.desc(), AuditEvent.id.desc()).limit(200).all()
    return render_template(
        "admin/audit.html",
        events=events,
        action=action,
        actor_email=actor_email,
        date_from=(request.args.get("date_from") or "").strip(),
        date_to=(request.args.get("date_to") or "").strip(),
    )


# ---------- Categories ----------
@bp.get("/categories")
@require_permission("categories.manage")
def categories_get():
    s = db_session()
    counts = dict(
        s.query(Item.category_id, func.count(Item.id)).group_by(Item.category_id).all()
    )
    return render_template("admin/categories.html", categories=list_categories(s), counts=counts)


@bp.post("/categories")
@require_permission("categories.manage")
def categories_post():
    s = db_session()
    try:
        cat = create_category(s, key=request.form.get("key"), name=request.form.get("name"), user=_current_user())
    except ValueError as e:
        flash(str(e), "danger")
        return redirect(url_for("admin.categories_get"))
    s.commit()
    flash(f"Category '{cat.name}' added.", "success")
    return redirect(url_for("admin.categories_get"))


# ---------- Announcements ----------
@bp.get("/announcements")
@require_permission("announcements.send")
def announcements_get():
    s = db_session()
    recent = (
        s.query(AuditEvent)
        .filter(AuditEvent.action == "announcement.send")
        .order_by(AuditEvent.created_at.desc(), AuditEvent.id.desc())
        .limit(20)
        .all()
    )
    return render_template("admin/announcements.html", recent=recent)


@bp.post("/announcements")
@require_permission("announcements.send")
def announcements_post():
    s = db_session()
    try:
        count = broadcast_announcement(
            s, _current_user(), request.form.get("title") or "", request.form.get("message") or ""
        )
    except ValueError as e:
        flash(str(e), "danger")
        return redirect(url_for("admin.announcements_get"))
    s.commit()
    flash(f"Announcement sent to {count} user(s).", "success")
    return redirect(url_for("admin.announcements_get"))


# ============================================================================
# ACCOUNT MANAGEMENT (Admin Only)
# ============================================================================

@bp.get("/accounts")
@require_permission("accounts.manage")
def accounts_list():
    s = db_session()
    q = (request.args.get("q") or "").strip().lower()
    query = s.query(User)
    if q:
        like = f"%{q}%"
        query = query.filter(func.lower(User.email).like(like) | func.lower(User.full_name).like(like))
    users = query.order_by(User.email.asc()).all()
    roles = s.query(Role).order_by(Role.name.asc()).all()
    return render_template("admin/accounts.html", users=users, roles=roles, q=q)


@bp.post("/accounts/<int:user_id>")
@require_permission("accounts.manage")
def accounts_update(user_id: int):
    s = db_session()
    u = _current_user()
    user = s.get(User, user_id)
    if not user:
        abort(404)

    if user.id == u.id:
        flash("You cannot modify your own account from this page.", "danger")
        return redirect(url_for("admin.accounts_list"))

    role_key = (request.form.get("role") or "").strip()
    role = s.query(Role).filter(Role.key == role_key).one_or_none()
    if not role:
        flash("Please choose a valid role.", "danger")
        return redirect(url_for("admin.accounts_list"))

    before = {"is_active": user.is_active, "roles": sorted(user.role_keys)}
    user.is_active = request.form.get("is_active") == "1"
    user.roles.clear()
    user.roles.append(role)
    user.updated_at = datetime.utcnow()
    after = {"is_active": user.is_active, "roles": sorted(user.role_keys)}

    record_event(
        s,
        actor=u,
        action="user.update",
        entity_type="User",
        entity_id=str(user.id),
        metadata={"before": before, "after": after},
    )
    s.commit()
    flash(f"Account updated for {user.email}.", "success")
    return redirect(url_for("admin.accounts_list"))
