"""
Orderflow — production pipeline models.

Models:
    - ProductionOrder:         the workflow unit (state machine, pricing, stage timestamps)
    - ProductionTimelineEvent: append-only history of everything that happened to an order
    - ConsultationSession:     pre-design consultation, one or more per order (reschedules)
    - Proof:                   one design iteration submitted for customer review
    - ProofVersion:            append-only change history for a Proof
    - ProofComment:            threaded, independently resolvable feedback on a Proof
    - OrderNumberCounter:      per-year counter row backing order-number allocation

State machines:
    ORDER_TRANSITIONS     — 10 statuses, cancel from every non-terminal state
    PROOF_TRANSITIONS     — pending_review → approved | rejected | revision_requested
    CONSULTATION_TRANSITIONS — scheduled → in_progress → completed, cancel/no-show
"""

import uuid
from datetime import datetime, timezone

from sqlalchemy import event as _sa_event
from sqlalchemy.orm import object_session

from orderflow.models import db


def _uuid():
    return str(uuid.uuid4())


def _utcnow():
    return datetime.now(timezone.utc)


def _money(value):
    return str(value) if value is not None else None


def _iso(value):
    return value.isoformat() if value else None


# ═════════════════════════════════════════════════════════════════════════════
# State machines
# ═════════════════════════════════════════════════════════════════════════════

ORDER_STATUSES = (
    "consultation_pending",
    "consultation_scheduled",
    "consultation_completed",
    "design_in_progress",
    "proof_submitted",
    "proof_approved",
    "in_production",
    "quality_check",
    "completed",
    "cancelled",
)

TERMINAL_ORDER_STATUSES = frozenset({"completed", "cancelled"})

ORDER_TRANSITIONS = {
    "consultation_pending":   ["consultation_scheduled", "cancelled"],
    # back to pending when the session is cancelled or a no-show
    "consultation_scheduled": ["consultation_completed", "consultation_pending", "cancelled"],
    "consultation_completed": ["design_in_progress", "cancelled"],
    # proof_approved directly only when the order skips proofing
    "design_in_progress":     ["proof_submitted", "proof_approved", "cancelled"],
    # back to design on reject / revision request
    "proof_submitted":        ["proof_approved", "design_in_progress", "cancelled"],
    "proof_approved":         ["in_production", "cancelled"],
    "in_production":          ["quality_check", "cancelled"],
    "quality_check":          ["completed", "cancelled"],
    "completed":              [],
    "cancelled":              [],
}

# First-entry timestamp stamped when a status is reached (never cleared)
STATUS_TIMESTAMPS = {
    "consultation_scheduled": "consultation_scheduled_at",
    "consultation_completed": "consultation_completed_at",
    "design_in_progress": "design_started_at",
    "proof_submitted": "first_proof_submitted_at",
    "proof_approved": "approved_at",
    "in_production": "production_started_at",
    "quality_check": "quality_check_at",
    "completed": "actual_completion_date",
    "cancelled": "cancelled_at",
}

PROGRESS_LADDER = {
    "consultation_pending": 5,
    "consultation_scheduled": 10,
    "consultation_completed": 20,
    "design_in_progress": 30,
    "proof_submitted": 50,
    "proof_approved": 65,
    "in_production": 80,
    "quality_check": 90,
    "completed": 100,
    "cancelled": 0,
}

PROOF_STATUSES = ("pending_review", "approved", "rejected", "revision_requested")

PROOF_TRANSITIONS = {
    "pending_review":     ["approved", "rejected", "revision_requested"],
    "approved":           [],
    "rejected":           [],
    "revision_requested": [],
}

CONSULTATION_STATUSES = ("scheduled", "in_progress", "completed", "cancelled", "no_show")

CONSULTATION_TRANSITIONS = {
    "scheduled":   ["in_progress", "completed", "cancelled", "no_show"],
    "in_progress": ["completed", "cancelled"],
    "completed":   [],
    "cancelled":   [],
    "no_show":     [],
}

SESSION_TYPES = {"video_call", "phone_call", "chat", "in_person"}
COMMENT_TYPES = {"general", "change_request", "question", "approval_note"}


def validate_order_transition(old_status, new_status):
    """Return True if ProductionOrder status transition is valid."""
    return new_status in ORDER_TRANSITIONS.get(old_status, [])


def validate_proof_transition(old_status, new_status):
    """Return True if Proof status transition is valid."""
    return new_status in PROOF_TRANSITIONS.get(old_status, [])


def validate_consultation_transition(old_status, new_status):
    """Return True if ConsultationSession status transition is valid."""
    return new_status in CONSULTATION_TRANSITIONS.get(old_status, [])


def _status_check(column, values, name):
    quoted = ",".join(f"'{v}'" for v in values)
    return db.CheckConstraint(f"{column} IN ({quoted})", name=name)


# ═════════════════════════════════════════════════════════════════════════════
# 1. ProductionOrder
# ═════════════════════════════════════════════════════════════════════════════

class ProductionOrder(db.Model):
    """
    A custom product tracked from consultation to delivery.

    Business rules:
    - status only moves along ORDER_TRANSITIONS.
    - Stage timestamps are stamped on first entry and never cleared.
    - Never deleted; completed/cancelled rows are kept for audit and billing.
    - lock_version is checked on every UPDATE (optimistic concurrency).
    """

    __tablename__ = "production_orders"
    __table_args__ = (
        _status_check("status", ORDER_STATUSES, "ck_production_order_status"),
        db.CheckConstraint("quantity >= 1", name="ck_production_order_quantity"),
        db.Index("idx_po_provider_status", "provider_id", "status"),
        db.Index("idx_po_customer_status", "customer_id", "status"),
    )

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    order_number = db.Column(db.String(16), nullable=False, unique=True)

    # Parties & catalog references
    customer_id = db.Column(db.String(36), nullable=False)
    provider_id = db.Column(db.String(36), nullable=False)
    listing_id = db.Column(
        db.String(36), db.ForeignKey("service_listings.id", ondelete="RESTRICT"),
        nullable=False, index=True,
    )
    product_type_id = db.Column(
        db.String(36), db.ForeignKey("product_types.id", ondelete="SET NULL"),
        nullable=True,
    )
    booking_id = db.Column(
        db.String(36), db.ForeignKey("bookings.id", ondelete="SET NULL"),
        nullable=True, index=True,
    )
    cart_item_id = db.Column(db.String(36), nullable=True, index=True)

    # What is being made
    title = db.Column(db.String(255), nullable=True)
    description = db.Column(db.Text, nullable=True)
    quantity = db.Column(db.Integer, nullable=False, default=1)
    specifications = db.Column(db.JSON, default=dict)
    special_instructions = db.Column(db.Text, nullable=True)

    status = db.Column(db.String(30), nullable=False, default="consultation_pending")

    # Stage timestamps (first entry only)
    consultation_scheduled_at = db.Column(db.DateTime(timezone=True), nullable=True)
    consultation_completed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    design_started_at = db.Column(db.DateTime(timezone=True), nullable=True)
    first_proof_submitted_at = db.Column(db.DateTime(timezone=True), nullable=True)
    approved_at = db.Column(db.DateTime(timezone=True), nullable=True)
    production_started_at = db.Column(db.DateTime(timezone=True), nullable=True)
    quality_check_at = db.Column(db.DateTime(timezone=True), nullable=True)
    actual_completion_date = db.Column(db.DateTime(timezone=True), nullable=True)
    cancelled_at = db.Column(db.DateTime(timezone=True), nullable=True)
    cancellation_reason = db.Column(db.Text, nullable=True)

    estimated_completion_date = db.Column(db.Date, nullable=True)
    deadline_date = db.Column(db.Date, nullable=True)

    # Revisions
    revision_count = db.Column(db.Integer, nullable=False, default=0)
    max_revisions_allowed = db.Column(db.Integer, nullable=False, default=2)
    additional_revisions_charged = db.Column(db.Integer, nullable=False, default=0)
    revision_fee_per_additional = db.Column(
        db.Numeric(12, 2), nullable=False, default=0,
        comment="Fee unit captured from the listing when the order was created",
    )

    # Pricing
    base_price = db.Column(db.Numeric(12, 2), nullable=False, default=0)
    revision_fees = db.Column(db.Numeric(12, 2), nullable=False, default=0)
    rush_fee = db.Column(db.Numeric(12, 2), nullable=False, default=0)
    personalization_fees = db.Column(db.Numeric(12, 2), nullable=False, default=0)
    total_price = db.Column(db.Numeric(12, 2), nullable=False, default=0)

    # Delivery
    delivery_method = db.Column(db.String(30), nullable=True)
    delivery_address = db.Column(db.JSON, nullable=True)
    tracking_info = db.Column(db.JSON, nullable=True)

    # Flags
    is_rush_order = db.Column(db.Boolean, nullable=False, default=False)
    requires_approval = db.Column(db.Boolean, nullable=False, default=True)
    proofing_bypassed = db.Column(db.Boolean, nullable=False, default=False)
    proofing_bypass_reason = db.Column(db.Text, nullable=True)
    customer_approved = db.Column(db.Boolean, nullable=False, default=False)
    provider_accepted = db.Column(db.Boolean, nullable=False, default=False)
    has_advanced_personalization = db.Column(db.Boolean, nullable=False, default=False)

    notes = db.Column(db.Text, nullable=True)
    order_metadata = db.Column("metadata", db.JSON, default=dict)

    lock_version = db.Column(db.Integer, nullable=False)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at = db.Column(
        db.DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow,
    )

    proofs = db.relationship(
        "Proof", back_populates="order", order_by="Proof.version_number",
        lazy="select",
    )
    timeline_events = db.relationship(
        "ProductionTimelineEvent", back_populates="order",
        order_by="ProductionTimelineEvent.sequence", lazy="select",
    )
    consultation_sessions = db.relationship(
        "ConsultationSession", back_populates="order",
        order_by="ConsultationSession.created_at", lazy="select",
    )

    __mapper_args__ = {"version_id_col": lock_version}

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_ORDER_STATUSES

    def is_participant(self, actor_id) -> bool:
        return actor_id is not None and actor_id in (self.customer_id, self.provider_id)

    def to_dict(self):
        return {
            "id": self.id,
            "order_number": self.order_number,
            "customer_id": self.customer_id,
            "provider_id": self.provider_id,
            "listing_id": self.listing_id,
            "product_type_id": self.product_type_id,
            "booking_id": self.booking_id,
            "cart_item_id": self.cart_item_id,
            "title": self.title,
            "description": self.description,
            "quantity": self.quantity,
            "specifications": self.specifications or {},
            "special_instructions": self.special_instructions,
            "status": self.status,
            "consultation_scheduled_at": _iso(self.consultation_scheduled_at),
            "consultation_completed_at": _iso(self.consultation_completed_at),
            "design_started_at": _iso(self.design_started_at),
            "first_proof_submitted_at": _iso(self.first_proof_submitted_at),
            "approved_at": _iso(self.approved_at),
            "production_started_at": _iso(self.production_started_at),
            "quality_check_at": _iso(self.quality_check_at),
            "actual_completion_date": _iso(self.actual_completion_date),
            "cancelled_at": _iso(self.cancelled_at),
            "cancellation_reason": self.cancellation_reason,
            "estimated_completion_date": _iso(self.estimated_completion_date),
            "deadline_date": _iso(self.deadline_date),
            "revision_count": self.revision_count,
            "max_revisions_allowed": self.max_revisions_allowed,
            "additional_revisions_charged": self.additional_revisions_charged,
            "revision_fee_per_additional": _money(self.revision_fee_per_additional),
            "base_price": _money(self.base_price),
            "revision_fees": _money(self.revision_fees),
            "rush_fee": _money(self.rush_fee),
            "personalization_fees": _money(self.personalization_fees),
            "total_price": _money(self.total_price),
            "delivery_method": self.delivery_method,
            "delivery_address": self.delivery_address,
            "tracking_info": self.tracking_info,
            "is_rush_order": self.is_rush_order,
            "requires_approval": self.requires_approval,
            "proofing_bypassed": self.proofing_bypassed,
            "proofing_bypass_reason": self.proofing_bypass_reason,
            "customer_approved": self.customer_approved,
            "provider_accepted": self.provider_accepted,
            "has_advanced_personalization": self.has_advanced_personalization,
            "notes": self.notes,
            "metadata": self.order_metadata or {},
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }

    def __repr__(self):
        return f"<ProductionOrder {self.order_number} [{self.status}]>"


# ═════════════════════════════════════════════════════════════════════════════
# 2. ProductionTimelineEvent (append-only)
# ═════════════════════════════════════════════════════════════════════════════

class ProductionTimelineEvent(db.Model):
    __tablename__ = "production_timeline_events"
    __table_args__ = (
        db.Index("idx_pte_order_seq", "order_id", "sequence"),
    )

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    order_id = db.Column(
        db.String(36), db.ForeignKey("production_orders.id", ondelete="CASCADE"),
        nullable=False,
    )
    sequence = db.Column(db.Integer, nullable=False, default=0)
    event_type = db.Column(
        db.String(50), nullable=False,
        comment="created | status_changed | proof_submitted | virtual_booking_created | …",
    )
    event_title = db.Column(db.String(255), nullable=False)
    previous_status = db.Column(db.String(30), nullable=True)
    new_status = db.Column(db.String(30), nullable=True)
    triggered_by = db.Column(db.String(36), nullable=True)
    note = db.Column(db.Text, nullable=True)
    event_metadata = db.Column("metadata", db.JSON, default=dict)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow)

    order = db.relationship("ProductionOrder", back_populates="timeline_events")

    def to_dict(self):
        return {
            "id": self.id,
            "order_id": self.order_id,
            "sequence": self.sequence,
            "event_type": self.event_type,
            "event_title": self.event_title,
            "previous_status": self.previous_status,
            "new_status": self.new_status,
            "triggered_by": self.triggered_by,
            "note": self.note,
            "metadata": self.event_metadata or {},
            "created_at": _iso(self.created_at),
        }


# ═════════════════════════════════════════════════════════════════════════════
# 3. ConsultationSession
# ═════════════════════════════════════════════════════════════════════════════

class ConsultationSession(db.Model):
    """Pre-design consultation.  Immutable once completed, cancelled or no-show."""

    __tablename__ = "consultation_sessions"
    __table_args__ = (
        _status_check("status", CONSULTATION_STATUSES, "ck_consultation_status"),
        db.CheckConstraint("duration_minutes > 0", name="ck_consultation_duration"),
    )

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    order_id = db.Column(
        db.String(36), db.ForeignKey("production_orders.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    session_type = db.Column(db.String(20), nullable=False, default="video_call")
    scheduled_at = db.Column(db.DateTime(timezone=True), nullable=False)
    duration_minutes = db.Column(db.Integer, nullable=False, default=30)
    status = db.Column(db.String(20), nullable=False, default="scheduled")

    # Channel descriptor from the external video provider
    meeting_url = db.Column(db.String(500), nullable=True)
    meeting_id = db.Column(db.String(100), nullable=True)
    meeting_password = db.Column(db.String(100), nullable=True)

    notes = db.Column(db.Text, nullable=True)
    consultation_summary = db.Column(db.Text, nullable=True)
    key_decisions = db.Column(db.JSON, nullable=True)
    cancellation_reason = db.Column(db.Text, nullable=True)

    scheduled_by = db.Column(db.String(36), nullable=True)
    started_at = db.Column(db.DateTime(timezone=True), nullable=True)
    ended_at = db.Column(db.DateTime(timezone=True), nullable=True)
    completed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    cancelled_at = db.Column(db.DateTime(timezone=True), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at = db.Column(
        db.DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow,
    )

    order = db.relationship("ProductionOrder", back_populates="consultation_sessions")

    @property
    def is_closed(self) -> bool:
        return not CONSULTATION_TRANSITIONS.get(self.status)

    def to_dict(self, include_credentials=False):
        d = {
            "id": self.id,
            "order_id": self.order_id,
            "session_type": self.session_type,
            "scheduled_at": _iso(self.scheduled_at),
            "duration_minutes": self.duration_minutes,
            "status": self.status,
            "meeting_url": self.meeting_url,
            "notes": self.notes,
            "consultation_summary": self.consultation_summary,
            "key_decisions": self.key_decisions,
            "cancellation_reason": self.cancellation_reason,
            "started_at": _iso(self.started_at),
            "ended_at": _iso(self.ended_at),
            "completed_at": _iso(self.completed_at),
            "cancelled_at": _iso(self.cancelled_at),
            "created_at": _iso(self.created_at),
        }
        if include_credentials:
            d["meeting_id"] = self.meeting_id
            d["meeting_password"] = self.meeting_password
        return d


# ═════════════════════════════════════════════════════════════════════════════
# 4. Proof / ProofVersion / ProofComment
# ═════════════════════════════════════════════════════════════════════════════

class Proof(db.Model):
    """
    One design iteration.  The row holds current state; ProofVersion holds
    the immutable history.

    Business rules:
    - version_number strictly increasing per order (unique constraint).
    - At most one pending_review proof per order (checked under the order
      row lock in proofing_service).
    - Review is a single decision: once out of pending_review the status
      never changes again.
    """

    __tablename__ = "proofs"
    __table_args__ = (
        db.UniqueConstraint("order_id", "version_number", name="uq_proof_order_version"),
        _status_check("status", PROOF_STATUSES, "ck_proof_status"),
        db.CheckConstraint(
            "customer_rating IS NULL OR (customer_rating >= 1 AND customer_rating <= 5)",
            name="ck_proof_rating",
        ),
    )

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    order_id = db.Column(
        db.String(36), db.ForeignKey("production_orders.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    version_number = db.Column(db.Integer, nullable=False)
    title = db.Column(db.String(255), nullable=True)
    description = db.Column(db.Text, nullable=True)
    proof_images = db.Column(db.JSON, nullable=False, default=list)
    design_file_ids = db.Column(db.JSON, default=list)
    status = db.Column(db.String(20), nullable=False, default="pending_review")
    provider_notes = db.Column(db.Text, nullable=True)
    estimated_production_time = db.Column(db.String(50), nullable=True)

    customer_feedback = db.Column(db.Text, nullable=True)
    customer_rating = db.Column(db.Integer, nullable=True)
    change_requests = db.Column(db.JSON, nullable=True)

    submitted_by = db.Column(db.String(36), nullable=True)
    reviewed_by = db.Column(db.String(36), nullable=True)
    submitted_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow)
    reviewed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    approved_at = db.Column(db.DateTime(timezone=True), nullable=True)
    rejected_at = db.Column(db.DateTime(timezone=True), nullable=True)
    is_final = db.Column(db.Boolean, nullable=False, default=False)

    lock_version = db.Column(db.Integer, nullable=False)

    order = db.relationship("ProductionOrder", back_populates="proofs")
    versions = db.relationship(
        "ProofVersion", back_populates="proof",
        order_by="ProofVersion.created_at", lazy="select",
    )
    comments = db.relationship(
        "ProofComment", back_populates="proof",
        order_by="ProofComment.created_at", lazy="select",
    )

    __mapper_args__ = {"version_id_col": lock_version}

    def to_dict(self, include_children=False):
        d = {
            "id": self.id,
            "order_id": self.order_id,
            "version_number": self.version_number,
            "title": self.title,
            "description": self.description,
            "proof_images": self.proof_images or [],
            "design_file_ids": self.design_file_ids or [],
            "status": self.status,
            "provider_notes": self.provider_notes,
            "estimated_production_time": self.estimated_production_time,
            "customer_feedback": self.customer_feedback,
            "customer_rating": self.customer_rating,
            "change_requests": self.change_requests,
            "submitted_by": self.submitted_by,
            "reviewed_by": self.reviewed_by,
            "submitted_at": _iso(self.submitted_at),
            "reviewed_at": _iso(self.reviewed_at),
            "approved_at": _iso(self.approved_at),
            "rejected_at": _iso(self.rejected_at),
            "is_final": self.is_final,
        }
        if include_children:
            d["versions"] = [v.to_dict() for v in self.versions]
            d["comments"] = [c.to_dict() for c in self.comments]
        return d


class ProofVersion(db.Model):
    """Append-only history entry: what changed in a proof and why."""

    __tablename__ = "proof_versions"

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    proof_id = db.Column(
        db.String(36), db.ForeignKey("proofs.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    version_number = db.Column(db.Integer, nullable=False)
    changes_made = db.Column(db.Text, nullable=True)
    proof_images = db.Column(db.JSON, nullable=False, default=list)
    modified_by = db.Column(db.String(36), nullable=True)
    modification_reason = db.Column(db.Text, nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow)

    proof = db.relationship("Proof", back_populates="versions")

    def to_dict(self):
        return {
            "id": self.id,
            "proof_id": self.proof_id,
            "version_number": self.version_number,
            "changes_made": self.changes_made,
            "proof_images": self.proof_images or [],
            "modified_by": self.modified_by,
            "modification_reason": self.modification_reason,
            "created_at": _iso(self.created_at),
        }


class ProofComment(db.Model):
    __tablename__ = "proof_comments"

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    proof_id = db.Column(
        db.String(36), db.ForeignKey("proofs.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    author_id = db.Column(db.String(36), nullable=False)
    comment_text = db.Column(db.Text, nullable=False)
    comment_type = db.Column(db.String(30), nullable=False, default="general")
    reference_image_url = db.Column(db.String(500), nullable=True)
    reference_coordinates = db.Column(db.JSON, nullable=True, comment="{x, y, width, height}")
    is_resolved = db.Column(db.Boolean, nullable=False, default=False)
    resolved_at = db.Column(db.DateTime(timezone=True), nullable=True)
    resolved_by = db.Column(db.String(36), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow)

    proof = db.relationship("Proof", back_populates="comments")

    def to_dict(self):
        return {
            "id": self.id,
            "proof_id": self.proof_id,
            "author_id": self.author_id,
            "comment_text": self.comment_text,
            "comment_type": self.comment_type,
            "reference_image_url": self.reference_image_url,
            "reference_coordinates": self.reference_coordinates,
            "is_resolved": self.is_resolved,
            "resolved_at": _iso(self.resolved_at),
            "resolved_by": self.resolved_by,
            "created_at": _iso(self.created_at),
        }


# ═════════════════════════════════════════════════════════════════════════════
# 5. OrderNumberCounter
# ═════════════════════════════════════════════════════════════════════════════

class OrderNumberCounter(db.Model):
    """One row per allocation scope (the 4-digit year).  Read FOR UPDATE."""

    __tablename__ = "order_number_counters"

    scope = db.Column(db.String(16), primary_key=True)
    last_value = db.Column(db.Integer, nullable=False, default=0)


# ── Append-only guards ──────────────────────────────────────────────────────


@_sa_event.listens_for(ProofVersion, "before_update")
@_sa_event.listens_for(ProductionTimelineEvent, "before_update")
def _block_history_update(mapper, connection, target) -> None:  # noqa: ANN001
    """Raise RuntimeError on any ORM UPDATE of a history row."""
    session = object_session(target)
    if session is not None and not session.is_modified(target, include_collections=False):
        return
    raise RuntimeError(
        f"{type(target).__name__} rows are append-only and cannot be modified"
    )
