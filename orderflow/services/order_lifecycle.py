"""
Order Lifecycle Service.

Owns the ProductionOrder state machine:
  - Order creation (order number, initial status, revision allowance, capacity)
  - Status transition validation (ORDER_TRANSITIONS)
  - Ownership checks (customer / provider of the order only)
  - First-entry stage timestamps
  - Side effects as explicit steps:
      design_in_progress → lock personalization (order_received checkpoint)
      proof_approved     → lock remaining personalization
      completed          → synthesize a virtual booking when none exists
      cancelled          → close open consultation sessions
  - Timeline + audit trail

Consultation and proof edges are driven by consultation_service and
proofing_service through ``apply_transition``; the public
``transition_status`` only accepts the manual edges.

Usage:
    from orderflow.services import order_lifecycle

    order = order_lifecycle.create_order(customer_id, provider_id, listing_id,
                                         product_type_id, {"size": "A4"}, 1)
    result = order_lifecycle.transition_status(order.id, "quality_check", provider_id)
"""

from __future__ import annotations

import logging
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal

from flask import current_app
from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError

from orderflow.core.exceptions import (
    ConcurrencyConflict,
    InvalidSpecification,
    NotFoundError,
    ProviderCapacityExceeded,
    TransitionError,
    ValidationError,
)
from orderflow.integrations.marketplace_gateway import BookingGateway, CatalogGateway
from orderflow.models import db
from orderflow.models.audit import write_audit
from orderflow.models.production import (
    ORDER_STATUSES,
    ORDER_TRANSITIONS,
    PROGRESS_LADDER,
    STATUS_TIMESTAMPS,
    TERMINAL_ORDER_STATUSES,
    ProductionOrder,
    ProductionTimelineEvent,
)
from orderflow.services import snapshot_service
from orderflow.services.permission import guard_order
from orderflow.services.sequence import SequenceGenerator, format_order_number, get_sequence_generator
from orderflow.utils.helpers import commit_or_conflict

logger = logging.getLogger(__name__)

# Targets a participant may request directly; everything else is reached
# through the consultation or proofing engines.
PUBLIC_TARGETS = frozenset({"in_production", "quality_check", "completed", "cancelled"})

_STATUS_TITLES = {
    "consultation_pending": "Awaiting consultation",
    "consultation_scheduled": "Consultation scheduled",
    "consultation_completed": "Consultation completed",
    "design_in_progress": "Design in progress",
    "proof_submitted": "Proof submitted for review",
    "proof_approved": "Proof approved",
    "in_production": "Production started",
    "quality_check": "Quality check",
    "completed": "Order completed",
    "cancelled": "Order cancelled",
}


def _now():
    return datetime.now(timezone.utc)


# ═════════════════════════════════════════════════════════════════════════════
# Pure helpers
# ═════════════════════════════════════════════════════════════════════════════


def compute_progress(order_or_status) -> int:
    """Status → percentage ladder (5/10/20/30/50/65/80/90/100, 0 cancelled).

    Display only; never used for business decisions.
    """
    status = getattr(order_or_status, "status", order_or_status)
    return PROGRESS_LADDER.get(status, 0)


def is_overdue(order, now: datetime | None = None) -> bool:
    """True iff a deadline is set, the order is still open and the deadline has passed.

    ``deadline_date`` is a calendar date: the order is overdue from the day
    after it.
    """
    if order.deadline_date is None or order.status in TERMINAL_ORDER_STATUSES:
        return False
    today = (now or _now()).date()
    deadline = order.deadline_date
    if isinstance(deadline, datetime):
        deadline = deadline.date()
    return today > deadline


def validate_transition(current: str, new: str) -> dict:
    """
    Validate a status change against ORDER_TRANSITIONS.

    Returns:
        {"valid": bool, "from": str, "to": str, "reason": str|None}
    """
    if new not in ORDER_STATUSES:
        return {"valid": False, "from": current, "to": new,
                "reason": f"Unknown status: {new}"}
    if current in TERMINAL_ORDER_STATUSES:
        return {"valid": False, "from": current, "to": new,
                "reason": f"Order is {current}"}
    if new not in ORDER_TRANSITIONS.get(current, []):
        return {"valid": False, "from": current, "to": new,
                "reason": f"'{new}' is not reachable from '{current}'"}
    return {"valid": True, "from": current, "to": new, "reason": None}


def get_available_transitions(order) -> list[str]:
    """Targets a participant can request right now via transition_status."""
    return [s for s in ORDER_TRANSITIONS.get(order.status, []) if s in PUBLIC_TARGETS]


def describe_order(order) -> dict:
    d = order.to_dict()
    d["progress"] = compute_progress(order)
    d["is_overdue"] = is_overdue(order)
    d["available_transitions"] = get_available_transitions(order)
    return d


# ═════════════════════════════════════════════════════════════════════════════
# Loading & locking
# ═════════════════════════════════════════════════════════════════════════════


def load_order_for_update(order_id: str, actor_id: str | None, action: str) -> ProductionOrder:
    """Read the order row FOR UPDATE and check the actor may perform ``action``.

    populate_existing refreshes an instance already in the identity map, so
    the status check always sees the locked row's current value.
    """
    order = db.session.execute(
        select(ProductionOrder)
        .where(ProductionOrder.id == order_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    ).scalar_one_or_none()
    if order is None:
        raise NotFoundError(resource="ProductionOrder", resource_id=order_id)
    if actor_id is not None:
        guard_order(order, actor_id, action)
    return order


def get_order(order_id: str, actor_id: str) -> ProductionOrder:
    order = db.session.get(ProductionOrder, order_id)
    if order is None:
        raise NotFoundError(resource="ProductionOrder", resource_id=order_id)
    guard_order(order, actor_id, "order_view")
    return order


def list_orders(actor_id: str, role: str | None = None, status: str | None = None) -> list[ProductionOrder]:
    if role == "customer":
        cond = ProductionOrder.customer_id == actor_id
    elif role == "provider":
        cond = ProductionOrder.provider_id == actor_id
    elif role is None:
        cond = (ProductionOrder.customer_id == actor_id) | (ProductionOrder.provider_id == actor_id)
    else:
        raise ValidationError("role must be 'customer' or 'provider'")
    stmt = select(ProductionOrder).where(cond)
    if status:
        stmt = stmt.where(ProductionOrder.status == status)
    return list(db.session.execute(stmt.order_by(ProductionOrder.created_at.desc())).scalars())


def get_timeline(order_id: str, actor_id: str) -> list[ProductionTimelineEvent]:
    order = get_order(order_id, actor_id)
    return list(order.timeline_events)


# ═════════════════════════════════════════════════════════════════════════════
# Timeline
# ═════════════════════════════════════════════════════════════════════════════


def add_timeline_event(order, event_type: str, *, title: str | None = None,
                       previous_status: str | None = None, new_status: str | None = None,
                       actor_id: str | None = None, note: str | None = None,
                       metadata: dict | None = None) -> ProductionTimelineEvent:
    """Append an immutable timeline event (flush only)."""
    last = db.session.execute(
        select(func.max(ProductionTimelineEvent.sequence))
        .where(ProductionTimelineEvent.order_id == order.id)
    ).scalar()
    event = ProductionTimelineEvent(
        order_id=order.id,
        sequence=(last or 0) + 1,
        event_type=event_type,
        event_title=title or _STATUS_TITLES.get(new_status, event_type.replace("_", " ").capitalize()),
        previous_status=previous_status,
        new_status=new_status,
        triggered_by=actor_id,
        note=note,
        event_metadata=metadata or {},
    )
    db.session.add(event)
    db.session.flush()
    return event


# ═════════════════════════════════════════════════════════════════════════════
# create_order
# ═════════════════════════════════════════════════════════════════════════════


def _check_specification(specification, quantity, terms) -> dict:
    errors = {}
    if specification is None:
        specification = {}
    if not isinstance(specification, dict):
        raise InvalidSpecification("specification must be an object",
                                   details={"specification": "expected key/value pairs"})
    if not isinstance(quantity, int) or isinstance(quantity, bool) or quantity < 1:
        errors["quantity"] = "quantity must be a positive integer"

    missing = [
        f for f in terms.required_specification_fields
        if specification.get(f) in (None, "", [], {})
    ]
    if missing:
        errors["missing_fields"] = missing
    if errors:
        raise InvalidSpecification("Order specification is incomplete", details=errors)
    return specification


def _active_order_count(provider_id: str) -> int:
    return db.session.execute(
        select(func.count(ProductionOrder.id)).where(
            ProductionOrder.provider_id == provider_id,
            ProductionOrder.status.notin_(TERMINAL_ORDER_STATUSES),
        )
    ).scalar() or 0


def create_order(
    customer_id: str,
    provider_id: str,
    listing_id: str,
    product_type_id: str | None,
    specification: dict | None,
    quantity: int = 1,
    *,
    title: str | None = None,
    description: str | None = None,
    special_instructions: str | None = None,
    deadline_date: date | None = None,
    is_rush_order: bool = False,
    rush_fee: Decimal | None = None,
    delivery_method: str | None = None,
    delivery_address: dict | None = None,
    cart_item_id: str | None = None,
    booking_id: str | None = None,
    metadata: dict | None = None,
    sequence: SequenceGenerator | None = None,
    catalog: CatalogGateway | None = None,
) -> ProductionOrder:
    """
    Place a custom production order.

    Raises:
        InvalidSpecification: quantity < 1, required specification fields missing,
            or listing / provider / product type disagree.
        ProviderCapacityExceeded: provider at its concurrent-order limit.
        NotFoundError: unknown listing.
        ConcurrencyConflict: order number collided (retry).
    """
    if not customer_id or not provider_id:
        raise ValidationError("customer_id and provider_id are required")
    if customer_id == provider_id:
        raise ValidationError("A provider cannot order from themselves")

    catalog = catalog or CatalogGateway()
    terms = catalog.resolve_terms(listing_id)
    if terms.provider_id != provider_id:
        raise InvalidSpecification("Listing does not belong to this provider",
                                   details={"listing_id": listing_id})
    if product_type_id and product_type_id != terms.product_type_id:
        raise InvalidSpecification("Product type does not match the listing",
                                   details={"product_type_id": product_type_id})
    specification = _check_specification(specification, quantity, terms)

    limit = catalog.provider_capacity(provider_id)
    active = _active_order_count(provider_id)
    if active >= limit:
        raise ProviderCapacityExceeded(provider_id, active, limit)

    now = _now()
    generator = sequence or get_sequence_generator()
    order_number = format_order_number(
        current_app.config["ORDER_NUMBER_PREFIX"], now.year, generator.next_value(str(now.year)),
    )

    rush = Decimal(rush_fee or 0) if is_rush_order else Decimal("0")
    base = terms.base_price
    initial = "consultation_pending" if terms.requires_consultation else "design_in_progress"

    order = ProductionOrder(
        order_number=order_number,
        customer_id=customer_id,
        provider_id=provider_id,
        listing_id=listing_id,
        product_type_id=terms.product_type_id,
        booking_id=booking_id,
        cart_item_id=cart_item_id,
        title=title,
        description=description,
        quantity=quantity,
        specifications=specification,
        special_instructions=special_instructions,
        status=initial,
        deadline_date=deadline_date,
        estimated_completion_date=(
            now.date() + timedelta(days=terms.typical_turnaround_days)
            if terms.typical_turnaround_days else None
        ),
        max_revisions_allowed=terms.max_revisions_allowed,
        revision_fee_per_additional=terms.revision_fee,
        base_price=base,
        rush_fee=rush,
        total_price=base * quantity + rush,
        is_rush_order=bool(is_rush_order),
        requires_approval=terms.requires_proof_approval,
        delivery_method=delivery_method,
        delivery_address=delivery_address,
        order_metadata=metadata or {},
    )
    if initial == "design_in_progress":
        order.design_started_at = now

    db.session.add(order)
    try:
        db.session.flush()
    except IntegrityError as exc:
        db.session.rollback()
        logger.warning("Order number %s collided", order_number)
        raise ConcurrencyConflict("ProductionOrder", order_number) from exc

    add_timeline_event(order, "created", title="Order created", new_status=initial,
                       actor_id=customer_id, metadata={"order_number": order_number})
    if initial == "design_in_progress":
        snapshot_service.lock_for_order(order, "order_received")

    write_audit(entity_type="production_order", entity_id=order.id, action="order.create",
                actor=customer_id,
                diff={"order_number": order_number, "status": initial,
                      "total_price": order.total_price})
    commit_or_conflict("ProductionOrder", order_number)

    logger.info(
        "Production order created",
        extra={"order_id": order.id, "actor_id": customer_id, "event_type": "order_created"},
    )
    return order


# ═════════════════════════════════════════════════════════════════════════════
# Transitions
# ═════════════════════════════════════════════════════════════════════════════


def _ensure_booking(order, actor_id) -> str | None:
    if order.booking_id:
        return None
    booking = BookingGateway().synthesize_virtual_booking(order)
    order.booking_id = booking.id
    add_timeline_event(
        order, "virtual_booking_created", title="Booking created for review",
        actor_id=actor_id, metadata={"booking_id": booking.id, "total_price": str(booking.total_price)},
    )
    write_audit(entity_type="booking", entity_id=booking.id, action="order.virtual_booking",
                actor=actor_id, diff={"order_id": order.id})
    return booking.id


def _close_open_sessions(order, reason: str | None) -> None:
    now = _now()
    for session in order.consultation_sessions:
        if session.status in ("scheduled", "in_progress"):
            session.status = "cancelled"
            session.cancelled_at = now
            session.cancellation_reason = reason or "Order cancelled"


def apply_transition(order, new_status: str, actor_id: str | None, *,
                     note: str | None = None, event_type: str = "status_changed",
                     metadata: dict | None = None) -> dict:
    """
    Move an already-locked order to ``new_status`` and run its side effects.

    Used by transition_status and by the consultation / proofing engines.
    Does not commit.

    Returns:
        {"order_id", "order_number", "previous_status", "new_status",
         "progress", "event_id", "booking_id"}
    """
    check = validate_transition(order.status, new_status)
    if not check["valid"]:
        raise TransitionError("ProductionOrder", order.id, order.status, new_status, check["reason"])
    if order.status == "design_in_progress" and new_status == "proof_approved" and order.requires_approval:
        raise TransitionError("ProductionOrder", order.id, order.status, new_status,
                              "this order requires an approved proof")

    previous = order.status
    order.status = new_status
    stamp = STATUS_TIMESTAMPS.get(new_status)
    if stamp and getattr(order, stamp) is None:
        setattr(order, stamp, _now())

    if new_status == "cancelled":
        order.cancellation_reason = note
        _close_open_sessions(order, note)

    event = add_timeline_event(
        order, event_type, previous_status=previous, new_status=new_status,
        actor_id=actor_id, note=note, metadata=metadata,
    )

    booking_id = None
    if new_status == "design_in_progress":
        snapshot_service.lock_for_order(order, "order_received")
    elif new_status == "proof_approved":
        order.customer_approved = not order.proofing_bypassed
        snapshot_service.lock_for_order(order, "proof_approved")
    elif new_status == "in_production":
        order.provider_accepted = True
    elif new_status == "completed":
        booking_id = _ensure_booking(order, actor_id)

    write_audit(entity_type="production_order", entity_id=order.id, action="order.transition",
                actor=actor_id, diff={"status": {"old": previous, "new": new_status}, "note": note})

    logger.info(
        "Order %s: %s → %s", order.order_number, previous, new_status,
        extra={"order_id": order.id, "actor_id": actor_id, "event_type": "status_changed"},
    )
    return {
        "order_id": order.id,
        "order_number": order.order_number,
        "previous_status": previous,
        "new_status": new_status,
        "progress": compute_progress(new_status),
        "event_id": event.id,
        "booking_id": booking_id or order.booking_id,
    }


def transition_status(order_id: str, new_status: str, actor_id: str, note: str | None = None) -> dict:
    """
    Participant-requested status change.

    Only the manual edges (PUBLIC_TARGETS) are accepted here; consultation
    and proof edges must go through their engines.
    """
    order = load_order_for_update(order_id, actor_id, "order_transition")
    if new_status not in PUBLIC_TARGETS:
        raise TransitionError(
            "ProductionOrder", order.id, order.status, new_status,
            "this status is set by the consultation or proofing workflow",
        )
    result = apply_transition(order, new_status, actor_id, note=note)
    commit_or_conflict("ProductionOrder", order.id)
    return result


def cancel_order(order_id: str, actor_id: str, reason: str | None = None) -> dict:
    return transition_status(order_id, "cancelled", actor_id, note=reason)
