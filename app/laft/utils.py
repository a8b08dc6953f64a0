from __future__ import annotations

import hashlib
import uuid
from dataclasses import dataclass
from datetime import date

from werkzeug.utils import secure_filename

from app.laft.constants import ACCEPTED_IMAGE_TYPES, MAX_UPLOAD_BYTES


@dataclass(frozen=True)
class UploadedFile:
    """Bytes read from a multipart upload, detached from the request."""

    filename: str
    content_type: str
    data: bytes


def clean(value: str | None) -> str | None:
    """Strip form input; empty strings become None."""
    v = (value or "").strip()
    return v or None


def parse_date(s: str | None) -> date | None:
    """Parse YYYY-MM-DD date string. Raises ValueError on bad input."""
    if not s:
        return None
    s = s.strip()
    if not s:
        return None
    return date.fromisoformat(s)


def parse_optional_float(raw: str | None) -> float | None:
    v = clean(raw)
    if v is None:
        return None
    return float(v)


def file_digest_and_bytes(file_bytes: bytes) -> tuple[str, int]:
    """Compute SHA256 digest and size."""
    h = hashlib.sha256()
    h.update(file_bytes)
    return (h.hexdigest(), len(file_bytes))


def build_storage_key(prefix: str, *parts: object, filename: str) -> str:
    """
    Build a collision-free storage key, e.g. item-images/3/17/<hex>-photo.jpg
    """
    safe_filename = secure_filename(filename) or "upload.bin"
    segments = [prefix, *(str(p) for p in parts), f"{uuid.uuid4().hex[:12]}-{safe_filename}"]
    return "/".join(segments)


def validate_upload(upload: UploadedFile, *, images_only: bool) -> list[str]:
    errors = []
    if len(upload.data) > MAX_UPLOAD_BYTES:
        errors.append(f"{upload.filename}: max file size is 5MB.")
    if images_only and upload.content_type.lower() not in ACCEPTED_IMAGE_TYPES:
        errors.append(f"{upload.filename}: only .jpg, .jpeg, .png and .webp formats are supported.")
    return errors


def uploads_from_request(files, field: str = "files") -> list[UploadedFile]:
    """Collect non-empty uploads for a multi-file input."""
    out: list[UploadedFile] = []
    for f in files.getlist(field):
        if not f or not f.filename:
            continue
        out.append(
            UploadedFile(
                filename=f.filename,
                content_type=(f.mimetype or "application/octet-stream").strip(),
                data=f.read(),
            )
        )
    return out
