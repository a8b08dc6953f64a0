from __future__ import annotations

import math
from datetime import date

from flask import Blueprint, abort, current_app, flash, g, redirect, render_template, request, send_file, url_for

from app.laft.db import db_session
from app.laft.models import User
from app.laft.modules.claims.service import can_resolve_claim, claims_for_item, latest_claim_for_user
from app.laft.modules.items.models import Item, ItemImage
from app.laft.modules.items.service import (
    can_edit_item,
    create_item,
    delete_item,
    filters_from_args,
    list_categories,
    remove_item_image,
    search_items,
    update_item,
    validate_item_images,
    validate_item_payload,
)
from app.laft.rbac import require_login, require_permission, user_has_permission
from app.laft.storage import StorageError, delete_blobs, storage_from_config
from app.laft.utils import uploads_from_request

bp = Blueprint("items", __name__)

ITEM_FIELDS = ("status", "title", "description", "category", "location_description", "date_lost_or_found", "lat", "lng", "is_urgent")


def _current_user() -> User:
    u = getattr(g, "current_user", None)
    if not u:
        raise RuntimeError("No current user")
    return u


def _payload_from_form() -> dict:
    return {k: request.form.get(k) for k in ITEM_FIELDS}


def _get_item_or_404(item_id: int) -> Item:
    item = db_session().get(Item, item_id)
    if not item:
        abort(404)
    return item


def _payload_from_item(item: Item) -> dict:
    return {
        "status": item.status,
        "title": item.title,
        "description": item.description or "",
        "category": item.category_key or "",
        "location_description": item.location_description,
        "date_lost_or_found": item.date_lost_or_found.isoformat() if item.date_lost_or_found else "",
        "lat": "" if item.lat is None else str(item.lat),
        "lng": "" if item.lng is None else str(item.lng),
        "is_urgent": "1" if item.is_urgent else "",
    }


# ---------- List ----------
@bp.get("/")
def index():
    s = db_session()
    filters, errors = filters_from_args(request.args)
    for e in errors:
        flash(e, "danger")

    try:
        page = int(request.args.get("page") or 1)
    except ValueError:
        page = 1
    per_page = current_app.config.get("ITEMS_PER_PAGE", 10)

    page = max(1, page)
    items, total = search_items(s, filters, page=page, per_page=per_page)
    pages = max(1, math.ceil(total / per_page))
    if page > pages:
        # past the end: serve the last page instead of an empty one
        page = pages
        items, total = search_items(s, filters, page=page, per_page=per_page)

    # query string without "page" so pagination links keep the active filters
    base_args = [(k, v) for k, v in request.args.items(multi=True) if k != "page"]

    return render_template(
        "items/list.html",
        items=items,
        total=total,
        page=page,
        pages=pages,
        filters=filters,
        base_args=base_args,
        categories=list_categories(s),
    )


# ---------- Report ----------
@bp.get("/items/report")
@require_permission("items.report")
def report_get():
    s = db_session()
    return render_template(
        "items/report.html",
        form={"status": request.args.get("status") or "lost", "date_lost_or_found": date.today().isoformat()},
        categories=list_categories(s),
        today=date.today().isoformat(),
    )


@bp.post("/items/report")
@require_permission("items.report")
def report_post():
    s = db_session()
    u = _current_user()
    payload = _payload_from_form()
    images = uploads_from_request(request.files, "images")

    errors = validate_item_payload(s, payload) + validate_item_images(images)
    if errors:
        for e in errors:
            flash(e, "danger")
        return render_template(
            "items/report.html",
            form=payload,
            categories=list_categories(s),
            today=date.today().isoformat(),
        ), 400

    try:
        item = create_item(s, payload, u, images)
        s.commit()
    except StorageError as e:
        s.rollback()
        current_app.logger.error("Image upload failed for new item (request_id=%s): %s", getattr(g, "request_id", None), e)
        flash("Could not store the uploaded images. Please try again.", "danger")
        return redirect(url_for("items.report_get"))

    flash("Item reported successfully.", "success")
    return redirect(url_for("items.item_detail", item_id=item.id))


# ---------- Detail ----------
@bp.get("/items/<int:item_id>")
def item_detail(item_id: int):
    s = db_session()
    item = _get_item_or_404(item_id)
    user = getattr(g, "current_user", None)

    is_owner = bool(user and item.user_id == user.id)
    can_review = bool(user and (is_owner or user_has_permission(user, "claims.review")))
    my_claim = latest_claim_for_user(s, item, user)

    return render_template(
        "items/detail.html",
        item=item,
        is_owner=is_owner,
        can_edit=can_edit_item(user, item),
        can_review=can_review,
        claims=claims_for_item(s, item) if can_review else [],
        my_claim=my_claim,
        can_resolve=lambda c: can_resolve_claim(user, c),
    )


# ---------- Edit ----------
@bp.get("/items/<int:item_id>/edit")
@require_login
def item_edit_get(item_id: int):
    s = db_session()
    item = _get_item_or_404(item_id)
    if not can_edit_item(_current_user(), item):
        abort(403)
    return render_template(
        "items/edit.html",
        item=item,
        form=_payload_from_item(item),
        categories=list_categories(s),
        today=date.today().isoformat(),
    )


@bp.post("/items/<int:item_id>/edit")
@require_login
def item_edit_post(item_id: int):
    s = db_session()
    u = _current_user()
    item = _get_item_or_404(item_id)
    if not can_edit_item(u, item):
        abort(403)

    payload = _payload_from_form()
    images = uploads_from_request(request.files, "images")
    errors = validate_item_payload(s, payload, editing=True) + validate_item_images(images, existing=len(item.images))
    if errors:
        for e in errors:
            flash(e, "danger")
        return render_template(
            "items/edit.html",
            item=item,
            form=payload,
            categories=list_categories(s),
            today=date.today().isoformat(),
        ), 400

    try:
        update_item(s, item, payload, u, images)
        s.commit()
    except StorageError as e:
        s.rollback()
        current_app.logger.error(
            "Image upload failed for item %s (request_id=%s): %s", item_id, getattr(g, "request_id", None), e
        )
        flash("Could not store the uploaded images. Please try again.", "danger")
        return redirect(url_for("items.item_edit_get", item_id=item_id))

    flash("Item updated.", "success")
    return redirect(url_for("items.item_detail", item_id=item.id))


# ---------- Delete ----------
@bp.post("/items/<int:item_id>/delete")
@require_login
def item_delete(item_id: int):
    s = db_session()
    u = _current_user()
    item = _get_item_or_404(item_id)
    try:
        keys = delete_item(s, item, u)
    except PermissionError:
        abort(403)
    s.commit()
    delete_blobs(current_app.config, keys)
    flash("Item deleted.", "success")
    return redirect(url_for("items.index"))


# ---------- Images ----------
@bp.post("/items/<int:item_id>/images/<int:image_id>/delete")
@require_login
def item_image_delete(item_id: int, image_id: int):
    s = db_session()
    u = _current_user()
    item = _get_item_or_404(item_id)
    image = s.get(ItemImage, image_id)
    if not image or image.item_id != item.id:
        abort(404)
    try:
        key = remove_item_image(s, item, image, u)
    except PermissionError:
        abort(403)
    s.commit()
    delete_blobs(current_app.config, [key])
    flash("Image removed.", "success")
    return redirect(url_for("items.item_edit_get", item_id=item.id))


@bp.get("/items/<int:item_id>/images/<int:image_id>")
def item_image(item_id: int, image_id: int):
    s = db_session()
    image = s.get(ItemImage, image_id)
    if not image or image.item_id != item_id:
        abort(404)
    storage = storage_from_config(current_app.config)
    try:
        fobj = storage.open(image.storage_key)
    except FileNotFoundError:
        current_app.logger.warning("Missing blob for item image %s (%s)", image.id, image.storage_key)
        abort(404)
    return send_file(
        fobj,
        mimetype=image.content_type,
        as_attachment=False,
        download_name=image.original_filename,
        max_age=3600,
    )
