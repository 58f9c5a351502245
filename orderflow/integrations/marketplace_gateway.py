"""Marketplace collaborator gateways.

The pipeline depends on three marketplace services it does not own:

    CatalogGateway  — listing → product type, revision allowance and fee,
                      consultation requirement, provider capacity
    BookingGateway  — synthesizes the virtual booking at order completion
    EscrowGateway   — final price / escrow amount used for that booking

In this deployment they are backed by the marketplace tables in
``orderflow.models.marketplace``.  Services call the gateways and never
query those tables directly.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal

from flask import current_app

from orderflow.core.exceptions import NotFoundError
from orderflow.models import db
from orderflow.models.marketplace import Booking, ProductType, ProviderProfile, ServiceListing

logger = logging.getLogger(__name__)


# ── Value objects ─────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class ListingTerms:
    """Everything order creation needs to know about a listing."""

    listing_id: str
    provider_id: str
    product_type_id: str | None
    requires_consultation: bool
    requires_proof_approval: bool
    max_revisions_allowed: int
    revision_fee: Decimal
    base_price: Decimal
    typical_turnaround_days: int | None = None
    required_specification_fields: tuple = field(default_factory=tuple)


# ── Catalog ───────────────────────────────────────────────────────────────────


class CatalogGateway:
    def resolve_terms(self, listing_id: str) -> ListingTerms:
        """Resolve a listing's production terms.

        Revision allowance precedence: listing → product type → app default.
        Raises NotFoundError for unknown or inactive listings.
        """
        listing = db.session.get(ServiceListing, listing_id)
        if listing is None or not listing.is_active:
            raise NotFoundError(resource="ServiceListing", resource_id=listing_id)

        product_type = listing.product_type
        if listing.product_type_id and product_type is None:
            product_type = db.session.get(ProductType, listing.product_type_id)

        max_revisions = listing.max_revisions_included
        if max_revisions is None and product_type is not None:
            max_revisions = product_type.max_revisions
        if max_revisions is None:
            max_revisions = current_app.config["DEFAULT_MAX_REVISIONS"]

        fee = listing.revision_fee_per_additional
        if fee is None:
            fee = Decimal(current_app.config["DEFAULT_REVISION_FEE"])

        return ListingTerms(
            listing_id=listing.id,
            provider_id=listing.provider_id,
            product_type_id=product_type.id if product_type else None,
            requires_consultation=bool(product_type and product_type.requires_consultation),
            requires_proof_approval=bool(product_type.requires_proof_approval) if product_type else True,
            max_revisions_allowed=int(max_revisions),
            revision_fee=Decimal(fee),
            base_price=Decimal(listing.base_price or 0),
            typical_turnaround_days=product_type.typical_turnaround_days if product_type else None,
            required_specification_fields=tuple(
                (product_type.required_specification_fields or []) if product_type else []
            ),
        )

    def provider_capacity(self, provider_id: str) -> int:
        profile = db.session.get(ProviderProfile, provider_id)
        if profile is None or profile.max_concurrent_orders is None:
            return current_app.config["DEFAULT_PROVIDER_CAPACITY"]
        return profile.max_concurrent_orders


# ── Escrow ────────────────────────────────────────────────────────────────────


class EscrowGateway:
    def final_price(self, order) -> Decimal:
        """Amount the customer actually paid: final_price, escrow_amount, then total."""
        meta = order.order_metadata or {}
        for key in ("final_price", "escrow_amount"):
            if meta.get(key) is not None:
                return Decimal(str(meta[key]))
        return Decimal(order.total_price or 0)


# ── Booking ───────────────────────────────────────────────────────────────────


class BookingGateway:
    def __init__(self, escrow: EscrowGateway | None = None) -> None:
        self.escrow = escrow or EscrowGateway()

    def synthesize_virtual_booking(self, order) -> Booking:
        """Create the completed, reviewable booking a custom order lacks.

        Flushes only; the caller owns the transaction.
        """
        booking = Booking(
            customer_id=order.customer_id,
            provider_id=order.provider_id,
            listing_id=order.listing_id,
            production_order_id=order.id,
            status="completed",
            booking_type="custom_service",
            total_price=self.escrow.final_price(order),
            can_review=True,
            is_virtual=True,
            completed_at=datetime.now(timezone.utc),
        )
        db.session.add(booking)
        db.session.flush()
        logger.info(
            "Virtual booking synthesized",
            extra={"order_id": order.id, "event_type": "virtual_booking_created"},
        )
        return booking
