from __future__ import annotations

from flask import Blueprint, abort, flash, g, redirect, render_template, request, url_for

from app.laft.db import db_session
from app.laft.models import User
from app.laft.modules.claims.models import Claim
from app.laft.modules.claims.service import ClaimError, claims_by_user, resolve_claim, retract_claim, submit_claim
from app.laft.modules.items.models import Item
from app.laft.rbac import require_login, require_permission

bp = Blueprint("claims", __name__)


def _current_user() -> User:
    u = getattr(g, "current_user", None)
    if not u:
        raise RuntimeError("No current user")
    return u


def _back_to(default: str):
    """Redirect to a local `next` form field, falling back to `default`."""
    nxt = (request.form.get("next") or "").strip()
    if nxt.startswith("/") and not nxt.startswith("//"):
        return redirect(nxt)
    return redirect(default)


@bp.post("/items/<int:item_id>/claims")
@require_permission("claims.submit")
def claim_submit(item_id: int):
    s = db_session()
    u = _current_user()
    item = s.get(Item, item_id)
    if not item:
        abort(404)

    try:
        submit_claim(
            s,
            item,
            u,
            request.form.get("claim_description"),
            turn_in_to_security=request.form.get("turn_in_to_security") == "1",
        )
    except ClaimError as e:
        s.rollback()
        flash(str(e), "danger")
        return redirect(url_for("items.item_detail", item_id=item_id))

    s.commit()
    flash("Claim submitted. The item owner has been notified.", "success")
    return redirect(url_for("items.item_detail", item_id=item_id))


@bp.post("/claims/<int:claim_id>/retract")
@require_login
def claim_retract(claim_id: int):
    s = db_session()
    u = _current_user()
    claim = s.get(Claim, claim_id)
    if not claim:
        abort(404)
    try:
        retract_claim(s, claim, u)
    except PermissionError:
        abort(403)
    except ClaimError as e:
        flash(str(e), "danger")
        return _back_to(url_for("claims.my_claims"))

    s.commit()
    flash("Claim retracted.", "success")
    return _back_to(url_for("claims.my_claims"))


def _resolve(claim_id: int, action: str):
    s = db_session()
    u = _current_user()
    claim = s.get(Claim, claim_id)
    if not claim:
        abort(404)

    try:
        changed = resolve_claim(s, claim, u, action)
    except PermissionError:
        abort(403)
    except ClaimError as e:
        s.rollback()
        flash(str(e), "danger")
        return _back_to(url_for("items.item_detail", item_id=claim.item_id))

    s.commit()
    if action == "approve":
        msg = "Claim approved. The item is now marked as claimed."
        if len(changed) > 1:
            msg += f" {len(changed) - 1} other pending claim(s) were rejected."
    else:
        msg = "Claim rejected."
    flash(msg, "success")
    return _back_to(url_for("items.item_detail", item_id=claim.item_id))


@bp.post("/claims/<int:claim_id>/approve")
@require_login
def claim_approve(claim_id: int):
    return _resolve(claim_id, "approve")


@bp.post("/claims/<int:claim_id>/reject")
@require_login
def claim_reject(claim_id: int):
    return _resolve(claim_id, "reject")


@bp.get("/claims/mine")
@require_login
def my_claims():
    s = db_session()
    return render_template("claims/mine.html", claims=claims_by_user(s, _current_user()))
