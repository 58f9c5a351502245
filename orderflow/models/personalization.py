"""
Orderflow — personalization models.

Models:
    - PersonalizationConfig:     provider-declared input rules per listing
    - PersonalizationSubmission: the customer's value for one config (mutable until locked)
    - PersonalizationSnapshot:   immutable freeze of submissions + configs at cart commit
    - ReusableSetup:             customer-named copy of a past snapshot, never locked

Kind-specific constraint payloads are stored as JSON and parsed into the
dataclasses in ``orderflow.services.personalization_types``.
"""

import uuid
from datetime import datetime, timezone

from sqlalchemy import event as _sa_event
from sqlalchemy import inspect as _sa_inspect
from sqlalchemy import select as _sa_select

from orderflow.core.exceptions import PersonalizationLocked, SnapshotImmutable
from orderflow.models import db


def _uuid():
    return str(uuid.uuid4())


def _utcnow():
    return datetime.now(timezone.utc)


def _iso(value):
    return value.isoformat() if value else None


PERSONALIZATION_TYPES = (
    "text",
    "image_upload",
    "image_selection",
    "font_selection",
    "color_selection",
    "placement_selection",
    "template_selection",
    "combined",
)

LIVE_PREVIEW_MODES = ("enabled", "constrained", "downgraded", "disabled")

# Ordered: a config locks at its stage and every later one
LOCK_STAGES = ("add_to_cart", "checkout", "order_received", "proof_approved")

PRICE_IMPACT_TYPES = ("none", "fixed", "percentage", "per_character", "per_image")

LOCK_REASONS = {"snapshot_created", "order_received", "proof_approved", "manual"}


def _in_check(column, values, name):
    quoted = ",".join(f"'{v}'" for v in values)
    return db.CheckConstraint(f"{column} IN ({quoted})", name=name)


# ═════════════════════════════════════════════════════════════════════════════
# 1. PersonalizationConfig
# ═════════════════════════════════════════════════════════════════════════════

class PersonalizationConfig(db.Model):
    """
    Which personalization input a listing offers and how it is constrained.

    Authored by the provider, read-only to customers.  Snapshots copy the
    config at cart-commit time, so edits here never reach existing orders.
    """

    __tablename__ = "personalization_configs"
    __table_args__ = (
        _in_check("personalization_type", PERSONALIZATION_TYPES, "ck_pc_type"),
        _in_check("live_preview_mode", LIVE_PREVIEW_MODES, "ck_pc_preview_mode"),
        _in_check("lock_after_stage", LOCK_STAGES, "ck_pc_lock_stage"),
        db.Index("idx_pc_listing_order", "listing_id", "display_order"),
    )

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    listing_id = db.Column(
        db.String(36), db.ForeignKey("service_listings.id", ondelete="CASCADE"),
        nullable=False,
    )
    customization_option_id = db.Column(db.String(36), nullable=True)
    personalization_type = db.Column(db.String(30), nullable=False)
    label = db.Column(db.String(120), nullable=False)
    help_text = db.Column(db.Text, nullable=True)
    is_enabled = db.Column(db.Boolean, nullable=False, default=True)
    is_required = db.Column(db.Boolean, nullable=False, default=False)

    # Kind-specific constraint payloads
    text_config = db.Column(db.JSON, nullable=True)
    image_upload_config = db.Column(db.JSON, nullable=True)
    font_config = db.Column(db.JSON, nullable=True)
    color_config = db.Column(db.JSON, nullable=True)
    choice_config = db.Column(
        db.JSON, nullable=True,
        comment="Allowed option ids for image/placement/template selection",
    )

    live_preview_mode = db.Column(db.String(20), nullable=False, default="enabled")
    price_impact = db.Column(db.JSON, nullable=False, default=lambda: {"type": "none"})
    lock_after_stage = db.Column(db.String(20), nullable=False, default="order_received")
    display_order = db.Column(db.Integer, nullable=False, default=0)

    created_by = db.Column(db.String(36), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at = db.Column(
        db.DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow,
    )

    def to_dict(self):
        return {
            "id": self.id,
            "listing_id": self.listing_id,
            "customization_option_id": self.customization_option_id,
            "personalization_type": self.personalization_type,
            "label": self.label,
            "help_text": self.help_text,
            "is_enabled": self.is_enabled,
            "is_required": self.is_required,
            "text_config": self.text_config,
            "image_upload_config": self.image_upload_config,
            "font_config": self.font_config,
            "color_config": self.color_config,
            "choice_config": self.choice_config,
            "live_preview_mode": self.live_preview_mode,
            "price_impact": self.price_impact or {"type": "none"},
            "lock_after_stage": self.lock_after_stage,
            "display_order": self.display_order,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }


# ═════════════════════════════════════════════════════════════════════════════
# 2. PersonalizationSubmission
# ═════════════════════════════════════════════════════════════════════════════

# Columns a locked submission may still change (relinking to the order)
_SUBMISSION_LINK_COLUMNS = frozenset({"production_order_id", "updated_at"})


class PersonalizationSubmission(db.Model):
    """
    One customer value for one config, on a cart line or production order.

    Business rules:
    - Only stored when valid (validation happens at submit time).
    - Once is_locked is True every write to the value is rejected with
      PersonalizationLocked; only the order linkage may still move.
    """

    __tablename__ = "personalization_submissions"
    __table_args__ = (
        db.Index("idx_ps_cart_customer", "cart_item_id", "customer_id"),
        db.Index("idx_ps_order", "production_order_id"),
    )

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    config_id = db.Column(
        db.String(36), db.ForeignKey("personalization_configs.id", ondelete="RESTRICT"),
        nullable=False,
    )
    customer_id = db.Column(db.String(36), nullable=False)
    cart_item_id = db.Column(
        db.String(36), db.ForeignKey("cart_items.id", ondelete="SET NULL"),
        nullable=True,
    )
    production_order_id = db.Column(
        db.String(36), db.ForeignKey("production_orders.id", ondelete="SET NULL"),
        nullable=True,
    )

    # Typed value columns
    text_value = db.Column(db.Text, nullable=True)
    image_data = db.Column(db.JSON, nullable=True)
    font_data = db.Column(db.JSON, nullable=True)
    color_data = db.Column(db.JSON, nullable=True)
    placement_data = db.Column(db.JSON, nullable=True)
    template_data = db.Column(db.JSON, nullable=True)

    calculated_price_impact = db.Column(db.Numeric(12, 2), nullable=False, default=0)
    validation_status = db.Column(db.String(20), nullable=False, default="valid")
    validated_at = db.Column(db.DateTime(timezone=True), nullable=True)

    is_locked = db.Column(db.Boolean, nullable=False, default=False)
    locked_at = db.Column(db.DateTime(timezone=True), nullable=True)
    locked_reason = db.Column(db.String(30), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at = db.Column(
        db.DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow,
    )

    config = db.relationship("PersonalizationConfig", lazy="joined")

    def to_dict(self):
        return {
            "id": self.id,
            "config_id": self.config_id,
            "customer_id": self.customer_id,
            "cart_item_id": self.cart_item_id,
            "production_order_id": self.production_order_id,
            "text_value": self.text_value,
            "image_data": self.image_data,
            "font_data": self.font_data,
            "color_data": self.color_data,
            "placement_data": self.placement_data,
            "template_data": self.template_data,
            "calculated_price_impact": str(self.calculated_price_impact or 0),
            "validation_status": self.validation_status,
            "is_locked": self.is_locked,
            "locked_at": _iso(self.locked_at),
            "locked_reason": self.locked_reason,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }


# ═════════════════════════════════════════════════════════════════════════════
# 3. PersonalizationSnapshot
# ═════════════════════════════════════════════════════════════════════════════

# Only the linkage and finalized_at may ever change after insert
_SNAPSHOT_MUTABLE_COLUMNS = frozenset({"booking_id", "production_order_id", "finalized_at"})


class PersonalizationSnapshot(db.Model):
    """
    Immutable freeze of a cart line's personalization.

    cart_item_id is unique: at most one snapshot per cart line, which is
    what makes concurrent checkout attempts collapse to a single row.
    """

    __tablename__ = "personalization_snapshots"

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    cart_item_id = db.Column(db.String(36), nullable=True, unique=True)
    booking_id = db.Column(db.String(36), nullable=True, index=True)
    production_order_id = db.Column(
        db.String(36), db.ForeignKey("production_orders.id", ondelete="SET NULL"),
        nullable=True, index=True,
    )
    customer_id = db.Column(db.String(36), nullable=False, index=True)
    listing_id = db.Column(db.String(36), nullable=False)
    provider_id = db.Column(db.String(36), nullable=False)

    snapshot_data = db.Column(db.JSON, nullable=False, default=list)
    config_snapshot = db.Column(db.JSON, nullable=False, default=dict)
    uploaded_images = db.Column(db.JSON, nullable=False, default=list)
    preview_renders = db.Column(db.JSON, nullable=False, default=list)
    total_price_impact = db.Column(db.Numeric(12, 2), nullable=False, default=0)
    snapshot_version = db.Column(db.Integer, nullable=False, default=1)

    finalized_at = db.Column(db.DateTime(timezone=True), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow)

    def to_dict(self):
        return {
            "id": self.id,
            "cart_item_id": self.cart_item_id,
            "booking_id": self.booking_id,
            "production_order_id": self.production_order_id,
            "customer_id": self.customer_id,
            "listing_id": self.listing_id,
            "provider_id": self.provider_id,
            "snapshot_data": self.snapshot_data or [],
            "config_snapshot": self.config_snapshot or {},
            "uploaded_images": self.uploaded_images or [],
            "preview_renders": self.preview_renders or [],
            "total_price_impact": str(self.total_price_impact or 0),
            "snapshot_version": self.snapshot_version,
            "finalized_at": _iso(self.finalized_at),
            "created_at": _iso(self.created_at),
        }


# ═════════════════════════════════════════════════════════════════════════════
# 4. ReusableSetup
# ═════════════════════════════════════════════════════════════════════════════

class ReusableSetup(db.Model):
    __tablename__ = "reusable_setups"
    __table_args__ = (
        db.UniqueConstraint("customer_id", "name", name="uq_setup_customer_name"),
    )

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    customer_id = db.Column(db.String(36), nullable=False, index=True)
    name = db.Column(db.String(120), nullable=False)
    listing_id = db.Column(db.String(36), nullable=True)
    setup_data = db.Column(db.JSON, nullable=False, default=list)
    source_snapshot_id = db.Column(
        db.String(36), db.ForeignKey("personalization_snapshots.id", ondelete="SET NULL"),
        nullable=True,
    )
    source_booking_id = db.Column(db.String(36), nullable=True)
    use_count = db.Column(db.Integer, nullable=False, default=0)
    last_used_at = db.Column(db.DateTime(timezone=True), nullable=True)
    is_favorite = db.Column(db.Boolean, nullable=False, default=False)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow)

    def to_dict(self):
        return {
            "id": self.id,
            "customer_id": self.customer_id,
            "name": self.name,
            "listing_id": self.listing_id,
            "setup_data": self.setup_data or [],
            "source_snapshot_id": self.source_snapshot_id,
            "source_booking_id": self.source_booking_id,
            "use_count": self.use_count,
            "last_used_at": _iso(self.last_used_at),
            "is_favorite": self.is_favorite,
            "created_at": _iso(self.created_at),
        }


# ── Write guards ────────────────────────────────────────────────────────────


def _changed_columns(target) -> set[str]:
    state = _sa_inspect(target)
    return {
        attr.key for attr in state.mapper.column_attrs
        if state.attrs[attr.key].history.has_changes()
    }


def _stored_lock(connection, target):
    """(is_locked, locked_reason) as stored, read on the flushing connection."""
    table = PersonalizationSubmission.__table__
    row = connection.execute(
        _sa_select(table.c.is_locked, table.c.locked_reason).where(table.c.id == target.id)
    ).first()
    return (bool(row[0]), row[1]) if row is not None else (False, None)


@_sa_event.listens_for(PersonalizationSubmission, "before_update")
def _block_locked_submission_update(mapper, connection, target) -> None:  # noqa: ANN001
    """Reject value changes on a submission that was already locked."""
    locked, reason = _stored_lock(connection, target)
    if locked and _changed_columns(target) - _SUBMISSION_LINK_COLUMNS:
        raise PersonalizationLocked(target.id, reason)


@_sa_event.listens_for(PersonalizationSubmission, "before_delete")
def _block_locked_submission_delete(mapper, connection, target) -> None:  # noqa: ANN001
    locked, reason = _stored_lock(connection, target)
    if locked:
        raise PersonalizationLocked(target.id, reason)


@_sa_event.listens_for(PersonalizationSnapshot, "before_update")
def _block_snapshot_payload_update(mapper, connection, target) -> None:  # noqa: ANN001
    """Snapshot payloads are write-once; only linkage and finalized_at move."""
    changed = _changed_columns(target) - _SNAPSHOT_MUTABLE_COLUMNS
    if changed:
        raise SnapshotImmutable(target.id, sorted(changed))
