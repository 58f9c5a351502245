"""
Personalization Snapshot Service.

Freezes a cart line's personalization at cart commit and carries it into
fulfillment:

    create_snapshot    — submissions + point-in-time config copy → one immutable row,
                         contributing submissions locked ("snapshot_created")
    transfer_to_order  — re-points linkage to booking / production order, stamps
                         finalized_at, adds the personalization fee to the order
    lock_for_order     — idempotent re-lock at the order_received / proof_approved
                         checkpoints
    get_personalization_for_proof — provider view: snapshot values joined with
                                    the frozen config

Snapshot creation is at-most-once per cart line: an existing snapshot is
returned as-is, and a concurrent creator losing the unique(cart_item_id)
race re-reads and returns the winner's row.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from decimal import Decimal

from sqlalchemy import or_, select
from sqlalchemy.exc import IntegrityError

from orderflow.core.exceptions import (
    ConcurrencyConflict,
    ConflictError,
    InvalidPersonalizationInput,
    NoPersonalizationToSnapshot,
    NotFoundError,
    PersonalizationLocked,
    ValidationError,
)
from orderflow.models import db
from orderflow.models.audit import write_audit
from orderflow.models.marketplace import CartItem
from orderflow.models.personalization import (
    LOCK_STAGES,
    PersonalizationSnapshot,
    PersonalizationSubmission,
    ReusableSetup,
)
from orderflow.models.production import ProductionOrder
from orderflow.services import order_lifecycle, personalization_service
from orderflow.services.permission import guard_order, guard_owner
from orderflow.services.personalization_types import PersonalizationValue
from orderflow.utils.helpers import commit_or_conflict

logger = logging.getLogger(__name__)


def _now():
    return datetime.now(timezone.utc)


# Checkpoint → lock_after_stage values frozen by it
_CHECKPOINT_STAGES = {
    "add_to_cart": LOCK_STAGES[:1],
    "checkout": LOCK_STAGES[:2],
    "order_received": LOCK_STAGES[:3],
    "proof_approved": LOCK_STAGES,
}


def _snapshot_for_cart(cart_item_id: str) -> PersonalizationSnapshot | None:
    return db.session.execute(
        select(PersonalizationSnapshot).where(PersonalizationSnapshot.cart_item_id == cart_item_id)
    ).scalar_one_or_none()


def _cart_submissions(cart_item_id: str, customer_id: str, unlocked_only: bool = True):
    stmt = select(PersonalizationSubmission).where(
        PersonalizationSubmission.cart_item_id == cart_item_id,
        PersonalizationSubmission.customer_id == customer_id,
    )
    if unlocked_only:
        stmt = stmt.where(PersonalizationSubmission.is_locked.is_(False))
    return list(db.session.execute(stmt.order_by(PersonalizationSubmission.created_at)).scalars())


def _lock(submission: PersonalizationSubmission, reason: str) -> bool:
    if submission.is_locked:
        return False
    submission.is_locked = True
    submission.locked_at = _now()
    submission.locked_reason = reason
    return True


def missing_required_configs(listing_id: str, submissions) -> list[str]:
    submitted = {s.config_id for s in submissions}
    return [
        c.id for c in personalization_service.list_configs(listing_id)
        if c.is_required and c.id not in submitted
    ]


def check_checkout_ready(cart_item_id: str, customer_id: str, listing_id: str) -> None:
    """Raise NoPersonalizationToSnapshot if a required input is missing."""
    submissions = _cart_submissions(cart_item_id, customer_id, unlocked_only=False)
    missing = missing_required_configs(listing_id, submissions)
    if missing:
        raise NoPersonalizationToSnapshot(cart_item_id, missing)


# ═════════════════════════════════════════════════════════════════════════════
# create_snapshot
# ═════════════════════════════════════════════════════════════════════════════


def create_snapshot(cart_item_id: str, customer_id: str, listing_id: str,
                    provider_id: str) -> PersonalizationSnapshot | None:
    """Freeze the cart line's personalization.

    Returns the existing snapshot unchanged if the cart line already has one.
    Returns None when there is nothing to snapshot and nothing is required.
    Raises NoPersonalizationToSnapshot when a required input is missing.
    """
    cart_item = db.session.get(CartItem, cart_item_id)
    if cart_item is None or cart_item.customer_id != customer_id or cart_item.listing_id != listing_id:
        raise NotFoundError(resource="CartItem", resource_id=cart_item_id)

    existing = _snapshot_for_cart(cart_item_id)
    if existing is not None:
        return existing

    submissions = _cart_submissions(cart_item_id, customer_id)
    missing = missing_required_configs(listing_id, submissions)
    if missing:
        raise NoPersonalizationToSnapshot(cart_item_id, missing)
    if not submissions:
        return None

    configs = personalization_service.list_configs(listing_id)
    config_snapshot = {c.id: c.to_dict() for c in configs}

    snapshot_data = []
    uploaded_images = []
    total = Decimal("0.00")
    for sub in submissions:
        value = PersonalizationValue.from_submission(sub)
        # Config may have been disabled after the value was submitted
        frozen = config_snapshot.get(sub.config_id) or sub.config.to_dict()
        config_snapshot.setdefault(sub.config_id, frozen)
        impact = personalization_service.compute_price_impact(frozen, value)
        total += impact
        uploaded_images.extend(img.url for img in value.images)
        snapshot_data.append({
            "submission_id": sub.id,
            "config_id": sub.config_id,
            "personalization_type": frozen["personalization_type"],
            "label": frozen["label"],
            "value": value.to_dict(),
            "price_impact": str(impact),
        })

    snapshot = PersonalizationSnapshot(
        cart_item_id=cart_item_id,
        customer_id=customer_id,
        listing_id=listing_id,
        provider_id=provider_id,
        snapshot_data=snapshot_data,
        config_snapshot=config_snapshot,
        uploaded_images=uploaded_images,
        preview_renders=[],
        total_price_impact=total,
    )
    db.session.add(snapshot)
    try:
        db.session.flush()
    except IntegrityError:
        db.session.rollback()
        winner = _snapshot_for_cart(cart_item_id)
        if winner is not None:
            logger.info("Snapshot for cart item %s created concurrently; returning existing", cart_item_id)
            return winner
        raise ConcurrencyConflict("PersonalizationSnapshot", cart_item_id)

    for sub in submissions:
        _lock(sub, "snapshot_created")
    cart_item.personalization_snapshot_id = snapshot.id
    cart_item.has_advanced_personalization = True

    write_audit(entity_type="personalization_snapshot", entity_id=snapshot.id,
                action="snapshot.create", actor=customer_id,
                diff={"cart_item_id": cart_item_id, "submissions": len(submissions),
                      "total_price_impact": total})
    try:
        db.session.commit()
    except IntegrityError:
        db.session.rollback()
        winner = _snapshot_for_cart(cart_item_id)
        if winner is not None:
            return winner
        raise ConcurrencyConflict("PersonalizationSnapshot", cart_item_id)

    logger.info("Personalization snapshot created",
                extra={"actor_id": customer_id, "event_type": "snapshot_created"})
    return snapshot


# ═════════════════════════════════════════════════════════════════════════════
# transfer_to_order
# ═════════════════════════════════════════════════════════════════════════════


def _personalization_fee(snapshot: PersonalizationSnapshot, order: ProductionOrder) -> Decimal:
    """Snapshot total plus deferred percentage rules on the order subtotal."""
    subtotal = Decimal(order.base_price or 0) * order.quantity
    fee = Decimal(snapshot.total_price_impact or 0)
    for entry in snapshot.snapshot_data or []:
        frozen = (snapshot.config_snapshot or {}).get(entry["config_id"])
        if frozen:
            fee += personalization_service.compute_percentage_impact(frozen, subtotal)
    return fee


def transfer_to_order(cart_item_id: str, booking_id: str | None = None,
                      production_order_id: str | None = None,
                      actor_id: str | None = None) -> PersonalizationSnapshot:
    """Hand the cart line's snapshot over to fulfillment.

    Only linkage and finalized_at change; the payload is never rewritten.
    Calling again with the production order id later is fine — the fee is
    added to the order once.
    """
    if not booking_id and not production_order_id:
        raise ValidationError("booking_id or production_order_id is required")

    snapshot = _snapshot_for_cart(cart_item_id)
    if snapshot is None:
        raise NotFoundError(resource="PersonalizationSnapshot", resource_id=cart_item_id)
    if actor_id is not None:
        guard_owner(snapshot.customer_id, actor_id, "PersonalizationSnapshot", cart_item_id)

    order = None
    if production_order_id:
        order = order_lifecycle.load_order_for_update(production_order_id, None, "order_view")
        if order.customer_id != snapshot.customer_id:
            raise NotFoundError(resource="ProductionOrder", resource_id=production_order_id)
        if snapshot.production_order_id not in (None, order.id):
            raise ValidationError(
                "Snapshot is already attached to another production order",
                details={"production_order_id": snapshot.production_order_id},
            )

    if booking_id:
        snapshot.booking_id = booking_id
    if snapshot.finalized_at is None:
        snapshot.finalized_at = _now()

    fee_added = None
    if order is not None and snapshot.production_order_id is None:
        snapshot.production_order_id = order.id
        order.has_advanced_personalization = True
        fee_added = _personalization_fee(snapshot, order)
        order.personalization_fees = Decimal(order.personalization_fees or 0) + fee_added
        order.total_price = Decimal(order.total_price or 0) + fee_added
        for sub in _cart_submissions(cart_item_id, snapshot.customer_id, unlocked_only=False):
            sub.production_order_id = order.id

    write_audit(entity_type="personalization_snapshot", entity_id=snapshot.id,
                action="snapshot.transfer", actor=snapshot.customer_id,
                diff={"booking_id": booking_id, "production_order_id": production_order_id,
                      "fee_added": fee_added})
    commit_or_conflict("PersonalizationSnapshot", snapshot.id)
    return snapshot


# ═════════════════════════════════════════════════════════════════════════════
# lock_for_order
# ═════════════════════════════════════════════════════════════════════════════


def _order_submissions(order: ProductionOrder) -> list[PersonalizationSubmission]:
    conditions = [PersonalizationSubmission.production_order_id == order.id]
    if order.cart_item_id:
        conditions.append(PersonalizationSubmission.cart_item_id == order.cart_item_id)
    stmt = select(PersonalizationSubmission).where(
        PersonalizationSubmission.customer_id == order.customer_id,
        or_(*conditions),
    )
    return list(db.session.execute(stmt).scalars())


def lock_for_order(order, reason: str) -> int:
    """Freeze every still-unlocked submission of the order at a checkpoint.

    ``order`` is a ProductionOrder or its id.  Only configs whose
    lock_after_stage is at or before the checkpoint are locked.  Already
    locked rows are left alone, so calling twice is a no-op.  Flushes only;
    returns the number of newly locked submissions.
    """
    if reason not in _CHECKPOINT_STAGES:
        raise ValidationError(f"Unknown lock checkpoint '{reason}'",
                              details={"valid": list(_CHECKPOINT_STAGES)})
    if not isinstance(order, ProductionOrder):
        order_id = order
        order = db.session.get(ProductionOrder, order_id)
        if order is None:
            raise NotFoundError(resource="ProductionOrder", resource_id=order_id)

    stages = _CHECKPOINT_STAGES[reason]
    locked = 0
    for sub in _order_submissions(order):
        if sub.config.lock_after_stage in stages and _lock(sub, reason):
            locked += 1
            write_audit(entity_type="personalization_submission", entity_id=sub.id,
                        action="personalization.lock", diff={"reason": reason, "order_id": order.id})
    if locked:
        db.session.flush()
        logger.info("Locked %d personalization submission(s) for order %s (%s)",
                    locked, order.order_number, reason,
                    extra={"order_id": order.id, "event_type": "personalization_locked"})
    return locked


# ═════════════════════════════════════════════════════════════════════════════
# Provider view
# ═════════════════════════════════════════════════════════════════════════════


def get_snapshot_for_order(order: ProductionOrder) -> PersonalizationSnapshot | None:
    snapshot = db.session.execute(
        select(PersonalizationSnapshot).where(PersonalizationSnapshot.production_order_id == order.id)
    ).scalar_one_or_none()
    if snapshot is None and order.cart_item_id:
        snapshot = _snapshot_for_cart(order.cart_item_id)
    return snapshot


def get_personalization_for_proof(order_id: str, actor_id: str) -> dict:
    """Snapshot values joined with the config they were validated against."""
    order = db.session.get(ProductionOrder, order_id)
    if order is None:
        raise NotFoundError(resource="ProductionOrder", resource_id=order_id)
    guard_order(order, actor_id, "personalization_view")

    snapshot = get_snapshot_for_order(order)
    if snapshot is None:
        return {"order_id": order.id, "has_personalization": False, "items": []}

    configs = snapshot.config_snapshot or {}
    items = []
    for entry in snapshot.snapshot_data or []:
        frozen = configs.get(entry["config_id"], {})
        items.append({
            "config_id": entry["config_id"],
            "label": frozen.get("label", entry.get("label")),
            "personalization_type": entry["personalization_type"],
            "help_text": frozen.get("help_text"),
            "live_preview_mode": frozen.get("live_preview_mode"),
            "constraints": {
                key: frozen.get(key)
                for key in ("text_config", "image_upload_config", "font_config",
                            "color_config", "choice_config")
                if frozen.get(key) is not None
            },
            "value": entry["value"],
            "price_impact": entry["price_impact"],
        })
    items.sort(key=lambda i: configs.get(i["config_id"], {}).get("display_order", 0))

    return {
        "order_id": order.id,
        "has_personalization": True,
        "snapshot_id": snapshot.id,
        "snapshot_version": snapshot.snapshot_version,
        "finalized_at": snapshot.finalized_at.isoformat() if snapshot.finalized_at else None,
        "uploaded_images": snapshot.uploaded_images or [],
        "total_price_impact": str(snapshot.total_price_impact),
        "items": items,
    }


# ═════════════════════════════════════════════════════════════════════════════
# Reusable setups
# ═════════════════════════════════════════════════════════════════════════════


def save_reusable_setup(snapshot_id: str, customer_id: str, name: str,
                        is_favorite: bool = False) -> ReusableSetup:
    snapshot = db.session.get(PersonalizationSnapshot, snapshot_id)
    if snapshot is None:
        raise NotFoundError(resource="PersonalizationSnapshot", resource_id=snapshot_id)
    guard_owner(snapshot.customer_id, customer_id, "PersonalizationSnapshot", snapshot_id)
    if not (name or "").strip():
        raise ValidationError("name is required")

    setup = ReusableSetup(
        customer_id=customer_id,
        name=name.strip(),
        listing_id=snapshot.listing_id,
        setup_data=[
            {"config_id": e["config_id"], "personalization_type": e["personalization_type"],
             "value": e["value"]}
            for e in snapshot.snapshot_data or []
        ],
        source_snapshot_id=snapshot.id,
        source_booking_id=snapshot.booking_id,
        is_favorite=is_favorite,
    )
    db.session.add(setup)
    try:
        db.session.flush()
    except IntegrityError as exc:
        db.session.rollback()
        raise ConflictError("ReusableSetup", "name", name) from exc

    write_audit(entity_type="reusable_setup", entity_id=setup.id, action="setup.save",
                actor=customer_id, diff={"source_snapshot_id": snapshot.id})
    db.session.commit()
    return setup


def list_reusable_setups(customer_id: str) -> list[ReusableSetup]:
    stmt = (
        select(ReusableSetup)
        .where(ReusableSetup.customer_id == customer_id)
        .order_by(ReusableSetup.is_favorite.desc(), ReusableSetup.last_used_at.desc(),
                  ReusableSetup.created_at.desc())
    )
    return list(db.session.execute(stmt).scalars())


def apply_reusable_setup(setup_id: str, customer_id: str, cart_item_id: str) -> dict:
    """Prefill a cart line from a saved setup.

    Each saved value is re-validated against the config as it is *now*;
    values that no longer fit (or whose config is gone) are skipped and
    reported instead of failing the whole prefill.
    """
    setup = db.session.get(ReusableSetup, setup_id)
    if setup is None:
        raise NotFoundError(resource="ReusableSetup", resource_id=setup_id)
    guard_owner(setup.customer_id, customer_id, "ReusableSetup", setup_id)

    cart_item = db.session.get(CartItem, cart_item_id)
    if cart_item is None or cart_item.customer_id != customer_id:
        raise NotFoundError(resource="CartItem", resource_id=cart_item_id)

    active = {c.id: c for c in personalization_service.list_configs(cart_item.listing_id)}
    applied, skipped = [], []
    for entry in setup.setup_data or []:
        config = active.get(entry["config_id"])
        if config is None:
            skipped.append({"config_id": entry["config_id"], "reason": "config_unavailable"})
            continue
        try:
            personalization_service.parse_and_validate(config, entry["value"])
        except InvalidPersonalizationInput as exc:
            skipped.append({"config_id": config.id, "reason": "invalid", "violations": exc.violations})
            continue
        try:
            sub = personalization_service.submit_personalization(
                config.id, customer_id, entry["value"], cart_item_id=cart_item_id,
            )
        except PersonalizationLocked:
            skipped.append({"config_id": config.id, "reason": "locked"})
            continue
        applied.append(sub.id)

    setup.use_count = (setup.use_count or 0) + 1
    setup.last_used_at = _now()
    write_audit(entity_type="reusable_setup", entity_id=setup.id, action="setup.apply",
                actor=customer_id, diff={"cart_item_id": cart_item_id,
                                         "applied": len(applied), "skipped": len(skipped)})
    commit_or_conflict("ReusableSetup", setup.id)
    return {"setup": setup.to_dict(), "applied_submission_ids": applied, "skipped": skipped}


def delete_reusable_setup(setup_id: str, customer_id: str) -> None:
    setup = db.session.get(ReusableSetup, setup_id)
    if setup is None:
        raise NotFoundError(resource="ReusableSetup", resource_id=setup_id)
    guard_owner(setup.customer_id, customer_id, "ReusableSetup", setup_id)
    write_audit(entity_type="reusable_setup", entity_id=setup.id, action="delete", actor=customer_id)
    db.session.delete(setup)
    db.session.commit()
