"""
Shared pytest fixtures for the Orderflow test suite.

Provides:
    - app: Flask application (session-scoped)
    - _setup_db: Database table creation/teardown (session-scoped)
    - session: Per-test DB cleanup w/ rollback + recreate (autouse)
    - client: Flask test client (function-scoped)
    - product_type / consult_type: catalog product kinds
    - listing / consult_listing: the provider's listings for each kind
    - cart_item: the customer's cart line on ``listing``
    - make_order: factory placing an order through the lifecycle service
"""

from decimal import Decimal

import pytest

from orderflow import create_app
from orderflow.models import db as _db
from orderflow.models.marketplace import CartItem, ProductType, ProviderProfile, ServiceListing
from orderflow.services import order_lifecycle

CUSTOMER = "cust-0001"
PROVIDER = "prov-0001"
STRANGER = "user-9999"


def auth(actor_id):
    """Headers carrying the trusted actor identity."""
    return {"X-Actor-Id": actor_id}


# ── App & DB fixtures ────────────────────────────────────────────────────


@pytest.fixture(scope="session")
def app():
    """Create the Flask application once per test session."""
    return create_app("testing")


@pytest.fixture(scope="session")
def _setup_db(app):
    """Create all tables at session start, drop at end."""
    with app.app_context():
        _db.create_all()
    yield
    with app.app_context():
        _db.drop_all()


@pytest.fixture(autouse=True)
def session(app, _setup_db):
    """Per-test: open app context, rollback after test, recreate tables."""
    with app.app_context():
        yield
        _db.session.rollback()
        _db.drop_all()
        _db.create_all()


@pytest.fixture()
def client(app):
    """Flask test client."""
    return app.test_client()


# ── Catalog fixtures ─────────────────────────────────────────────────────


@pytest.fixture()
def product_type():
    """Proof-approved product without a consultation step."""
    pt = ProductType(
        name="Custom Mug",
        slug="custom-mug",
        requires_consultation=False,
        requires_proof_approval=True,
        max_revisions=3,
        typical_turnaround_days=7,
        required_specification_fields=["size"],
    )
    _db.session.add(pt)
    _db.session.flush()
    return pt


@pytest.fixture()
def consult_type():
    pt = ProductType(
        name="Wedding Invitation",
        slug="wedding-invitation",
        requires_consultation=True,
        requires_proof_approval=True,
        max_revisions=2,
        typical_turnaround_days=14,
        required_specification_fields=[],
    )
    _db.session.add(pt)
    _db.session.flush()
    return pt


@pytest.fixture()
def provider_profile():
    profile = ProviderProfile(id=PROVIDER, display_name="Print Studio", max_concurrent_orders=5)
    _db.session.add(profile)
    _db.session.flush()
    return profile


@pytest.fixture()
def listing(product_type, provider_profile):
    """Listing allowing 2 free revisions, 15.00 per extra revision."""
    sl = ServiceListing(
        provider_id=PROVIDER,
        product_type_id=product_type.id,
        title="Personalised mug",
        base_price=Decimal("100.00"),
        max_revisions_included=2,
        revision_fee_per_additional=Decimal("15.00"),
    )
    _db.session.add(sl)
    _db.session.flush()
    return sl


@pytest.fixture()
def consult_listing(consult_type, provider_profile):
    sl = ServiceListing(
        provider_id=PROVIDER,
        product_type_id=consult_type.id,
        title="Bespoke wedding invitations",
        base_price=Decimal("250.00"),
    )
    _db.session.add(sl)
    _db.session.flush()
    return sl


@pytest.fixture()
def cart_item(listing):
    item = CartItem(customer_id=CUSTOMER, listing_id=listing.id, quantity=1)
    _db.session.add(item)
    _db.session.flush()
    return item


@pytest.fixture()
def make_order(listing):
    """Factory: place an order through order_lifecycle.create_order.

    Defaults to the non-consultation ``listing``; pass ``listing=`` for another.
    """

    def _make(listing=listing, specification=None, quantity=1, **kwargs):
        if specification is None:
            specification = {"size": "11oz"}
        return order_lifecycle.create_order(
            CUSTOMER, PROVIDER, listing.id, listing.product_type_id,
            specification, quantity, **kwargs,
        )

    return _make
