"""
Claims service layer.
Handles claim submission, retraction and resolution (approve/reject).

Resolution is a single unit of work: the claim, sibling claims, the item
status, notifications and audit events are all written to the same session
and committed once by the caller.
"""
from __future__ import annotations

import logging
from datetime import datetime
from typing import TYPE_CHECKING

from sqlalchemy.orm import Session

from app.laft.audit import record_event
from app.laft.constants import BLOCKING_CLAIM_STATUSES, CLAIMABLE_ITEM_STATUSES
from app.laft.modules.notifications.service import notify
from app.laft.rbac import user_has_permission

from .models import Claim

if TYPE_CHECKING:
    from app.laft.models import User
    from app.laft.modules.items.models import Item

logger = logging.getLogger(__name__)

VALID_ACTIONS = {"approve": "approved", "reject": "rejected"}


class ClaimError(ValueError):
    """Business-rule violation; message is safe to show to the user."""


def validate_claim_description(description: str | None) -> list[str]:
    errors = []
    text = (description or "").strip()
    if len(text) <= 10:
        errors.append("Please provide a reason (at least 11 characters).")
    elif len(text) >= 1000:
        errors.append("Claim description cannot exceed 999 characters.")
    return errors


def claims_for_item(s: Session, item: "Item") -> list[Claim]:
    return (
        s.query(Claim)
        .filter(Claim.item_id == item.id)
        .order_by(Claim.date_claimed.desc(), Claim.id.desc())
        .all()
    )


def latest_claim_for_user(s: Session, item: "Item", user: "User | None") -> Claim | None:
    if not user:
        return None
    return (
        s.query(Claim)
        .filter(Claim.item_id == item.id, Claim.claimer_id == user.id)
        .order_by(Claim.created_at.desc(), Claim.id.desc())
        .first()
    )


def claims_by_user(s: Session, user: "User") -> list[Claim]:
    return (
        s.query(Claim)
        .filter(Claim.claimer_id == user.id)
        .order_by(Claim.date_claimed.desc(), Claim.id.desc())
        .all()
    )


def pending_claims(s: Session) -> list[Claim]:
    return (
        s.query(Claim)
        .filter(Claim.status == "pending")
        .order_by(Claim.date_claimed.desc(), Claim.id.desc())
        .all()
    )


def can_resolve_claim(user: "User | None", claim: Claim) -> bool:
    if not user or not user.is_active:
        return False
    if claim.item and claim.item.user_id == user.id:
        return True
    return user_has_permission(user, "claims.review")


def submit_claim(
    s: Session,
    item: "Item",
    user: "User",
    description: str | None,
    *,
    turn_in_to_security: bool = False,
) -> Claim:
    """Create a pending claim and notify the item owner."""
    errors = validate_claim_description(description)
    if errors:
        raise ClaimError(errors[0])
    if item.user_id == user.id:
        raise ClaimError("You cannot claim an item you reported.")
    if item.status not in CLAIMABLE_ITEM_STATUSES:
        raise ClaimError(f"This item is {item.status} and no longer accepts claims.")

    existing = (
        s.query(Claim)
        .filter(
            Claim.item_id == item.id,
            Claim.claimer_id == user.id,
            Claim.status.in_(BLOCKING_CLAIM_STATUSES),
        )
        .first()
    )
    if existing:
        raise ClaimError("You have already submitted a claim for this item.")

    now = datetime.utcnow()
    claim = Claim(
        item_id=item.id,
        claimer_id=user.id,
        claim_description=(description or "").strip(),
        status="pending",
        turn_in_to_security=bool(turn_in_to_security),
        date_claimed=now,
        created_at=now,
        updated_at=now,
    )
    s.add(claim)
    s.flush()

    if item.user_id is not None:
        notify(
            s,
            user_id=item.user_id,
            type="new_claim",
            title="New Claim Submitted",
            message=f"{user.display_name or 'A user'} submitted a claim for your item: {item.title}",
            item_id=item.id,
            claim_id=claim.id,
        )

    record_event(
        s,
        actor=user,
        action="claim.submit",
        entity_type="Claim",
        entity_id=str(claim.id),
        metadata={"item_id": item.id, "turn_in_to_security": claim.turn_in_to_security},
    )
    return claim


def retract_claim(s: Session, claim: Claim, user: "User") -> Claim:
    """Claimers may withdraw their own claim while it is still pending."""
    if claim.claimer_id != user.id:
        raise PermissionError("Only the claimer can retract this claim.")
    if claim.status != "pending":
        raise ClaimError("Only pending claims can be retracted.")

    now = datetime.utcnow()
    claim.status = "retracted"
    claim.date_resolved = now
    claim.updated_at = now
    record_event(
        s,
        actor=user,
        action="claim.retract",
        entity_type="Claim",
        entity_id=str(claim.id),
        metadata={"item_id": claim.item_id},
    )
    return claim


def resolve_claim(s: Session, claim: Claim, user: "User", action: str) -> list[Claim]:
    """
    Approve or reject a pending claim.

    Approving marks the item claimed and rejects every other pending claim on
    the same item. Each affected claimer gets a claim_update notification.
    Returns all claims whose status changed (the resolved claim first).
    """
    if action not in VALID_ACTIONS:
        raise ValueError(f"Invalid action: {action}")
    if not can_resolve_claim(user, claim):
        raise PermissionError("You cannot resolve claims on this item.")
    if claim.status != "pending":
        raise ClaimError(f"This claim is already {claim.status}.")

    item = claim.item
    if action == "approve" and item.status == "claimed":
        raise ClaimError("This item has already been marked as claimed.")

    now = datetime.utcnow()
    new_status = VALID_ACTIONS[action]
    changed = [claim]
    _set_resolution(claim, new_status, user, now)
    _notify_claimer(s, claim, item)

    if action == "approve":
        old_item_status = item.status
        item.status = "claimed"
        item.updated_at = now
        siblings = (
            s.query(Claim)
            .filter(Claim.item_id == item.id, Claim.id != claim.id, Claim.status == "pending")
            .all()
        )
        for other in siblings:
            _set_resolution(other, "rejected", user, now)
            _notify_claimer(s, other, item)
            changed.append(other)
        record_event(
            s,
            actor=user,
            action="item.status_change",
            entity_type="Item",
            entity_id=str(item.id),
            reason=f"Claim {claim.id} approved",
            metadata={"old": old_item_status, "new": "claimed"},
        )

    record_event(
        s,
        actor=user,
        action=f"claim.{action}",
        entity_type="Claim",
        entity_id=str(claim.id),
        metadata={
            "item_id": item.id,
            "cascade_rejected": [c.id for c in changed[1:]],
        },
    )
    logger.info(
        "Claim %s %s by user %s (item %s, %d sibling(s) rejected)",
        claim.id, new_status, user.id, item.id, len(changed) - 1,
    )
    return changed


def _set_resolution(claim: Claim, status: str, user: "User", when: datetime) -> None:
    claim.status = status
    claim.date_resolved = when
    claim.resolved_by_user_id = user.id
    claim.updated_at = when


def _notify_claimer(s: Session, claim: Claim, item: "Item") -> None:
    notify(
        s,
        user_id=claim.claimer_id,
        type="claim_update",
        title=f"Your claim was {claim.status}",
        message=f'Your claim for item "{item.title}" was {claim.status}.',
        item_id=item.id,
        claim_id=claim.id,
    )
