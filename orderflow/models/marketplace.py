"""
Orderflow — marketplace reference tables.

These rows belong to the surrounding marketplace (catalog, provider
profiles, cart, bookings).  The pipeline reads and writes them only through
``orderflow.integrations.marketplace_gateway`` so the rest of the code never
depends on their layout.

Models:
    - ProductType:     declared product kind (consultation / proof flags, revision allowance)
    - ServiceListing:  provider's purchasable listing, price and revision terms
    - ProviderProfile: per-provider capacity limit
    - CartItem:        a customer's cart line (snapshot linkage lives here)
    - Booking:         native or virtual booking used by the review flow
"""

import uuid
from datetime import datetime, timezone
from decimal import Decimal

from orderflow.models import db


def _uuid():
    return str(uuid.uuid4())


def _utcnow():
    return datetime.now(timezone.utc)


BOOKING_STATUSES = {"pending", "confirmed", "completed", "cancelled"}
BOOKING_TYPES = {"standard", "custom_service"}


class ProductType(db.Model):
    __tablename__ = "product_types"

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    name = db.Column(db.String(120), nullable=False)
    slug = db.Column(db.String(120), nullable=False, unique=True)
    requires_consultation = db.Column(db.Boolean, nullable=False, default=False)
    requires_proof_approval = db.Column(db.Boolean, nullable=False, default=True)
    max_revisions = db.Column(db.Integer, nullable=True)
    typical_turnaround_days = db.Column(db.Integer, nullable=True)
    required_specification_fields = db.Column(
        db.JSON, default=list,
        comment="Keys that must be present and non-empty in an order's specification",
    )
    is_active = db.Column(db.Boolean, nullable=False, default=True)
    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)

    def to_dict(self):
        return {
            "id": self.id,
            "name": self.name,
            "slug": self.slug,
            "requires_consultation": self.requires_consultation,
            "requires_proof_approval": self.requires_proof_approval,
            "max_revisions": self.max_revisions,
            "typical_turnaround_days": self.typical_turnaround_days,
            "required_specification_fields": self.required_specification_fields or [],
        }


class ServiceListing(db.Model):
    __tablename__ = "service_listings"

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    provider_id = db.Column(db.String(36), nullable=False, index=True)
    product_type_id = db.Column(
        db.String(36), db.ForeignKey("product_types.id", ondelete="SET NULL"),
        nullable=True, index=True,
    )
    title = db.Column(db.String(255), nullable=False)
    base_price = db.Column(db.Numeric(12, 2), nullable=False, default=Decimal("0.00"))
    max_revisions_included = db.Column(db.Integer, nullable=True)
    revision_fee_per_additional = db.Column(db.Numeric(12, 2), nullable=True)
    is_active = db.Column(db.Boolean, nullable=False, default=True)
    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)

    product_type = db.relationship("ProductType", lazy="joined")

    def to_dict(self):
        return {
            "id": self.id,
            "provider_id": self.provider_id,
            "product_type_id": self.product_type_id,
            "title": self.title,
            "base_price": str(self.base_price) if self.base_price is not None else None,
            "max_revisions_included": self.max_revisions_included,
            "revision_fee_per_additional": (
                str(self.revision_fee_per_additional)
                if self.revision_fee_per_additional is not None else None
            ),
            "is_active": self.is_active,
        }


class ProviderProfile(db.Model):
    __tablename__ = "provider_profiles"

    id = db.Column(db.String(36), primary_key=True, comment="Same id as the provider's user")
    display_name = db.Column(db.String(255), nullable=True)
    max_concurrent_orders = db.Column(db.Integer, nullable=False, default=5)
    accepts_custom_orders = db.Column(db.Boolean, nullable=False, default=True)


class CartItem(db.Model):
    __tablename__ = "cart_items"

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    customer_id = db.Column(db.String(36), nullable=False, index=True)
    listing_id = db.Column(
        db.String(36), db.ForeignKey("service_listings.id", ondelete="CASCADE"),
        nullable=False,
    )
    quantity = db.Column(db.Integer, nullable=False, default=1)
    # Plain reference: snapshots also point at the cart line
    personalization_snapshot_id = db.Column(db.String(36), nullable=True, index=True)
    has_advanced_personalization = db.Column(db.Boolean, nullable=False, default=False)
    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)


class Booking(db.Model):
    __tablename__ = "bookings"
    __table_args__ = (
        db.CheckConstraint(
            "status IN ('pending','confirmed','completed','cancelled')",
            name="ck_booking_status",
        ),
    )

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    customer_id = db.Column(db.String(36), nullable=False, index=True)
    provider_id = db.Column(db.String(36), nullable=False, index=True)
    listing_id = db.Column(db.String(36), nullable=True)
    production_order_id = db.Column(db.String(36), nullable=True, index=True)
    status = db.Column(db.String(20), nullable=False, default="pending")
    booking_type = db.Column(db.String(30), nullable=False, default="standard")
    total_price = db.Column(db.Numeric(12, 2), nullable=True)
    can_review = db.Column(db.Boolean, nullable=False, default=False)
    is_virtual = db.Column(db.Boolean, nullable=False, default=False)
    completed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)

    def to_dict(self):
        return {
            "id": self.id,
            "customer_id": self.customer_id,
            "provider_id": self.provider_id,
            "listing_id": self.listing_id,
            "production_order_id": self.production_order_id,
            "status": self.status,
            "booking_type": self.booking_type,
            "total_price": str(self.total_price) if self.total_price is not None else None,
            "can_review": self.can_review,
            "is_virtual": self.is_virtual,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
        }
