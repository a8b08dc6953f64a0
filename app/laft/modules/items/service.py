"""
Items service layer.
Handles lost/found item reporting, editing, images, search and pagination.
"""
from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta
from typing import TYPE_CHECKING

from flask import current_app
from sqlalchemy import func, or_
from sqlalchemy.orm import Session
from werkzeug.utils import secure_filename

from app.laft.audit import record_event
from app.laft.constants import (
    DEFAULT_CATEGORY_KEY,
    ITEM_STATUSES,
    MAX_IMAGES_PER_ITEM,
    REPORTABLE_ITEM_STATUSES,
)
from app.laft.rbac import user_has_permission
from app.laft.storage import storage_from_config
from app.laft.utils import (
    UploadedFile,
    build_storage_key,
    clean,
    file_digest_and_bytes,
    parse_date,
    parse_optional_float,
    validate_upload,
)

from .models import Category, Item, ItemImage

if TYPE_CHECKING:
    from app.laft.models import User

logger = logging.getLogger(__name__)

IMAGE_PREFIX = "item-images"


# ---------- Categories ----------
def list_categories(s: Session) -> list[Category]:
    return s.query(Category).order_by(Category.name.asc()).all()


def get_category_by_key(s: Session, key: str | None) -> Category | None:
    key = (key or "").strip().lower()
    if not key:
        return None
    return s.query(Category).filter(Category.key == key).one_or_none()


def default_category(s: Session) -> Category | None:
    return get_category_by_key(s, DEFAULT_CATEGORY_KEY)


def category_display_name(s: Session, key: str | None) -> str:
    """Friendly category name; unknown keys are title-cased."""
    if not key:
        return "Unknown"
    cat = get_category_by_key(s, key)
    if cat:
        return cat.name
    return key[:1].upper() + key[1:].replace("_", " ")


def normalize_category_key(raw: str | None) -> str:
    key = re.sub(r"[^a-z0-9]+", "_", (raw or "").strip().lower())
    return key.strip("_")


def create_category(s: Session, *, key: str | None, name: str | None, user: "User") -> Category:
    name = (name or "").strip()
    norm_key = normalize_category_key(key or name)
    if not name:
        raise ValueError("Category name is required.")
    if not norm_key:
        raise ValueError("Category key is required.")
    if get_category_by_key(s, norm_key):
        raise ValueError(f"Category '{norm_key}' already exists.")
    cat = Category(key=norm_key, name=name)
    s.add(cat)
    s.flush()
    record_event(
        s,
        actor=user,
        action="category.create",
        entity_type="Category",
        entity_id=str(cat.id),
        metadata={"key": cat.key, "name": cat.name},
    )
    return cat


# ---------- Validation ----------
def validate_item_payload(s: Session, payload: dict, *, editing: bool = False) -> list[str]:
    """Validate item report/edit payload. Returns list of errors."""
    errors = []

    status = (payload.get("status") or "").strip().lower()
    allowed = ITEM_STATUSES if editing else REPORTABLE_ITEM_STATUSES
    if status not in allowed:
        errors.append("Please select if the item is lost or found." if not editing else "Invalid status.")

    title = (payload.get("title") or "").strip()
    if not title:
        errors.append("Title is required.")
    elif len(title) <= 3:
        errors.append("Title must be at least 4 characters long.")
    elif len(title) >= 150:
        errors.append("Title cannot exceed 149 characters.")

    description = (payload.get("description") or "").strip()
    if len(description) < 10:
        errors.append("Description must be at least 10 characters long.")
    elif len(description) > 1000:
        errors.append("Description cannot exceed 1000 characters.")

    if not get_category_by_key(s, payload.get("category")):
        errors.append("Please select a valid category.")

    location = (payload.get("location_description") or "").strip()
    if len(location) <= 5:
        errors.append("Location description must be at least 6 characters long.")
    elif len(location) >= 255:
        errors.append("Location description cannot exceed 254 characters.")

    try:
        when = parse_date(payload.get("date_lost_or_found"))
    except ValueError:
        errors.append("Please select a valid date.")
    else:
        if when is None:
            errors.append("Please select a valid date.")
        elif when > date.today():
            errors.append("Date lost or found cannot be in the future.")

    for key, bound in (("lat", 90.0), ("lng", 180.0)):
        try:
            value = parse_optional_float(payload.get(key))
        except ValueError:
            errors.append(f"{key} must be a number.")
            continue
        if value is not None and not (-bound <= value <= bound):
            errors.append(f"{key} must be between -{bound:g} and {bound:g}.")

    return errors


def validate_item_images(images: list[UploadedFile], *, existing: int = 0) -> list[str]:
    errors = []
    if existing + len(images) > MAX_IMAGES_PER_ITEM:
        errors.append(f"An item can have at most {MAX_IMAGES_PER_ITEM} images.")
    for img in images:
        errors.extend(validate_upload(img, images_only=True))
    return errors


def _truthy(value) -> bool:
    return str(value or "").strip().lower() in ("1", "true", "on", "yes")


# ---------- Permissions ----------
def can_edit_item(user: "User | None", item: Item) -> bool:
    if not user or not user.is_active:
        return False
    if item.user_id == user.id:
        return True
    return user_has_permission(user, "items.moderate")


# ---------- Images ----------
def _store_images(s: Session, item: Item, images: list[UploadedFile], user: "User") -> list[ItemImage]:
    storage = storage_from_config(current_app.config)
    start = max((img.position for img in item.images), default=-1) + 1
    stored = []
    for offset, upload in enumerate(images):
        sha256, size_bytes = file_digest_and_bytes(upload.data)
        key = build_storage_key(IMAGE_PREFIX, user.id, item.id, filename=upload.filename)
        storage.put_bytes(key, upload.data, content_type=upload.content_type)
        img = ItemImage(
            storage_key=key,
            original_filename=secure_filename(upload.filename) or "image.bin",
            content_type=upload.content_type,
            sha256=sha256,
            size_bytes=size_bytes,
            position=start + offset,
        )
        item.images.append(img)
        stored.append(img)
    return stored


def remove_item_image(s: Session, item: Item, image: ItemImage, user: "User") -> str:
    """Detach an image row. Returns its storage key; the caller deletes the blob after commit."""
    if not can_edit_item(user, item):
        raise PermissionError("You cannot edit this item.")
    if image.item_id != item.id:
        raise ValueError("Image does not belong to this item.")
    key = image.storage_key
    item.images.remove(image)
    item.updated_at = datetime.utcnow()
    record_event(
        s,
        actor=user,
        action="item.image_delete",
        entity_type="Item",
        entity_id=str(item.id),
        metadata={"filename": image.original_filename},
    )
    return key


# ---------- CRUD ----------
def create_item(s: Session, payload: dict, user: "User", images: list[UploadedFile] | None = None) -> Item:
    """Create a new lost/found report. Caller validates payload and images first."""
    from app.laft.modules.notifications.service import send_match_alerts

    category = get_category_by_key(s, payload.get("category")) or default_category(s)
    status = (payload.get("status") or "lost").strip().lower()
    now = datetime.utcnow()
    item = Item(
        user_id=user.id,
        title=(payload.get("title") or "").strip(),
        description=clean(payload.get("description")),
        category_id=category.id if category else None,
        location_description=(payload.get("location_description") or "").strip(),
        lat=parse_optional_float(payload.get("lat")),
        lng=parse_optional_float(payload.get("lng")),
        status=status,
        date_reported=now,
        date_lost_or_found=parse_date(payload.get("date_lost_or_found")),
        found_by_user_id=user.id if status == "found" else None,
        is_urgent=_truthy(payload.get("is_urgent")),
        created_at=now,
        updated_at=now,
    )
    s.add(item)
    s.flush()

    if images:
        _store_images(s, item, images, user)

    record_event(
        s,
        actor=user,
        action="item.create",
        entity_type="Item",
        entity_id=str(item.id),
        metadata={"title": item.title, "status": item.status, "images": len(images or [])},
    )

    if item.status == "found":
        send_match_alerts(s, item)
    return item


def update_item(
    s: Session,
    item: Item,
    payload: dict,
    user: "User",
    new_images: list[UploadedFile] | None = None,
) -> Item:
    """Update an existing item. Only the reporter or a moderator may edit."""
    if not can_edit_item(user, item):
        raise PermissionError("You cannot edit this item.")

    changes = {}

    def _set(attr: str, new_value) -> None:
        old_value = getattr(item, attr)
        if new_value != old_value:
            changes[attr] = {
                "old": str(old_value) if old_value is not None else None,
                "new": str(new_value) if new_value is not None else None,
            }
            setattr(item, attr, new_value)

    _set("title", (payload.get("title") or "").strip())
    _set("description", clean(payload.get("description")))
    _set("location_description", (payload.get("location_description") or "").strip())
    _set("status", (payload.get("status") or item.status).strip().lower())
    _set("date_lost_or_found", parse_date(payload.get("date_lost_or_found")))
    _set("lat", parse_optional_float(payload.get("lat")))
    _set("lng", parse_optional_float(payload.get("lng")))
    _set("is_urgent", _truthy(payload.get("is_urgent")))

    category = get_category_by_key(s, payload.get("category"))
    if category and category.id != item.category_id:
        changes["category"] = {"old": item.category_key, "new": category.key}
        item.category_id = category.id
        item.category = category

    if item.status == "found" and item.found_by_user_id is None:
        item.found_by_user_id = item.user_id

    if new_images:
        _store_images(s, item, new_images, user)
        changes["images_added"] = len(new_images)

    item.updated_at = datetime.utcnow()

    if changes:
        record_event(
            s,
            actor=user,
            action="item.edit",
            entity_type="Item",
            entity_id=str(item.id),
            metadata={"title": item.title, "changes": changes},
        )
    return item


def delete_item(s: Session, item: Item, user: "User") -> list[str]:
    """
    Delete an item with its images; claims and conversations cascade in the database.
    Returns the storage keys of every blob the item owned (images and chat attachments)
    so the caller can remove them once the delete is committed.
    """
    from app.laft.modules.messaging.models import Conversation

    if not can_edit_item(user, item):
        raise PermissionError("You cannot delete this item.")

    keys = [img.storage_key for img in item.images]
    for conv in s.query(Conversation).filter(Conversation.item_id == item.id).all():
        keys.extend(att.storage_key for msg in conv.messages for att in msg.attachments)

    record_event(
        s,
        actor=user,
        action="item.delete",
        entity_type="Item",
        entity_id=str(item.id),
        metadata={"title": item.title, "status": item.status},
    )
    s.delete(item)
    return keys


# ---------- Search ----------
@dataclass
class ItemFilters:
    q: str = ""
    status: list[str] = field(default_factory=list)
    category: list[str] = field(default_factory=list)
    date_from: date | None = None
    date_to: date | None = None

    @property
    def active(self) -> bool:
        return bool(self.q or self.status or self.category or self.date_from or self.date_to)


def filters_from_args(args) -> tuple[ItemFilters, list[str]]:
    """Build filters from a query-string MultiDict. Invalid dates are dropped and reported."""
    errors = []
    f = ItemFilters(
        q=(args.get("q") or "").strip(),
        status=[v.strip().lower() for v in args.getlist("status") if v.strip()],
        category=[v.strip().lower() for v in args.getlist("category") if v.strip()],
    )
    for attr in ("date_from", "date_to"):
        raw = args.get(attr) or ""
        try:
            setattr(f, attr, parse_date(raw))
        except ValueError:
            errors.append(f"{attr} must be YYYY-MM-DD")
    return f, errors


def search_items(s: Session, filters: ItemFilters, *, page: int = 1, per_page: int = 10) -> tuple[list[Item], int]:
    """
    Filter and paginate items, newest first.
    Status/category are equality matches (any of the selected values); q is a
    case-insensitive substring over title, description, location and category name.
    """
    q = s.query(Item).outerjoin(Category, Category.id == Item.category_id)

    statuses = [st.lower() for st in filters.status if st.lower() in ITEM_STATUSES]
    if filters.status:
        q = q.filter(func.lower(Item.status).in_(statuses or ["__none__"]))

    if filters.category:
        q = q.filter(Category.key.in_(filters.category))

    if filters.date_from:
        q = q.filter(Item.date_reported >= datetime.combine(filters.date_from, time.min))
    if filters.date_to:
        # inclusive end-date (treat as whole day)
        q = q.filter(Item.date_reported < datetime.combine(filters.date_to + timedelta(days=1), time.min))

    term = filters.q.strip().lower()
    if term:
        # % and _ in user input are literal characters, not wildcards
        escaped = term.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
        like = f"%{escaped}%"
        q = q.filter(
            or_(
                func.lower(Item.title).like(like, escape="\\"),
                func.lower(Item.description).like(like, escape="\\"),
                func.lower(Item.location_description).like(like, escape="\\"),
                func.lower(Category.name).like(like, escape="\\"),
            )
        )

    total = q.count()
    page = max(1, page)
    per_page = max(1, per_page)
    items = (
        q.order_by(Item.created_at.desc(), Item.id.desc())
        .offset((page - 1) * per_page)
        .limit(per_page)
        .all()
    )
    return items, total


def user_item_stats(s: Session, user: "User") -> dict[str, int]:
    """Counts of a user's reports plus points (5 per found item)."""
    from app.laft.constants import POINTS_PER_FOUND_ITEM

    rows = s.query(Item.status, func.count(Item.id)).filter(Item.user_id == user.id).group_by(Item.status).all()
    by_status = {status: int(cnt) for status, cnt in rows}
    found = by_status.get("found", 0)
    return {
        "total": sum(by_status.values()),
        "found": found,
        "lost": by_status.get("lost", 0),
        "points": found * POINTS_PER_FOUND_ITEM,
    }
