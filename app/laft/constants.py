"""
Central constants for the Campus LAFT application.
"""
from __future__ import annotations

ITEM_STATUSES = ("lost", "found", "claimed", "archived")
# Statuses a reporter can choose on the report form.
REPORTABLE_ITEM_STATUSES = ("lost", "found")
# Items in these statuses still accept claims.
CLAIMABLE_ITEM_STATUSES = frozenset({"lost", "found"})

CLAIM_STATUSES = ("pending", "approved", "rejected", "retracted")
# A claim in one of these statuses blocks the same user from claiming again.
BLOCKING_CLAIM_STATUSES = frozenset({"pending", "approved"})

CONVERSATION_TYPES = ("user-to-poster", "user-to-security")

NOTIFICATION_TYPES = ("new_claim", "claim_update", "match_alert", "general_announcement", "new_message")
NOTIFICATION_STATUSES = ("pending", "sent", "failed", "read")

# Seed categories: key -> display name
DEFAULT_CATEGORIES = {
    "electronics": "Electronics",
    "apparel": "Clothing",
    "books": "Books",
    "stationery": "Stationery",
    "accessories": "Accessories",
    "documents": "Documents",
    "ids_cards": "IDs & Cards",
    "keys": "Keys",
    "other": "Other",
}
DEFAULT_CATEGORY_KEY = "other"

MAX_IMAGES_PER_ITEM = 5
MAX_ATTACHMENTS_PER_MESSAGE = 5
MAX_UPLOAD_BYTES = 5 * 1024 * 1024
ACCEPTED_IMAGE_TYPES = frozenset({"image/jpeg", "image/jpg", "image/png", "image/webp"})

POINTS_PER_FOUND_ITEM = 5

# role key -> (display name, permission keys)
ROLE_PERMISSIONS: dict[str, tuple[str, tuple[str, ...]]] = {
    "user": ("Campus user", ("items.report", "claims.submit", "chat.use")),
    "security": (
        "Campus security",
        ("items.report", "claims.submit", "chat.use", "chat.security", "claims.review", "admin.view"),
    ),
    "admin": (
        "Administrator",
        (
            "items.report",
            "claims.submit",
            "chat.use",
            "chat.security",
            "claims.review",
            "admin.view",
            "items.moderate",
            "categories.manage",
            "announcements.send",
            "audit.view",
            "accounts.manage",
        ),
    ),
}

PERMISSION_NAMES = {
    "items.report": "Items: report and edit own",
    "claims.submit": "Claims: submit",
    "chat.use": "Chat: use",
    "chat.security": "Chat: answer security conversations",
    "claims.review": "Claims: review any claim",
    "admin.view": "Admin: view dashboard",
    "items.moderate": "Items: edit/delete any item",
    "categories.manage": "Categories: manage",
    "announcements.send": "Announcements: send",
    "audit.view": "Audit: view trail",
    "accounts.manage": "Accounts: manage",
}
