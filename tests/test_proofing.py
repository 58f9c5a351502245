"""
Proofing & revision engine tests.

    - submit_proof: version numbering, single pending proof, order status
    - review_proof: approve / reject / request_revision and the order edges
      they drive
    - Revision allowance and overage fees
    - Comments and their resolution
    - Proof history is append-only

The ``listing`` fixture allows 2 free revisions at 15.00 per extra one.
"""

from decimal import Decimal

import pytest
from sqlalchemy import select

from orderflow.core.exceptions import (
    NotFoundError,
    ProofAlreadyPending,
    ProofFinalized,
    TransitionError,
    ValidationError,
)
from orderflow.models import db
from orderflow.models.audit import AuditLog
from orderflow.models.marketplace import ProductType, ServiceListing
from orderflow.models.production import (
    PROOF_TRANSITIONS,
    Proof,
    ProofVersion,
    validate_proof_transition,
)
from orderflow.services import order_lifecycle, personalization_service, proofing_service

CUSTOMER = "cust-0001"
PROVIDER = "prov-0001"
STRANGER = "user-9999"

IMAGE = "https://cdn.example.com/proofs/mug-front.png"


def _submit(order, images=None, **kwargs) -> Proof:
    return proofing_service.submit_proof(order.id, PROVIDER, images or [IMAGE], **kwargs)


def _revise(proof, decision="request_revision", **kwargs) -> dict:
    return proofing_service.review_proof(proof.id, CUSTOMER, decision,
                                         feedback=kwargs.pop("feedback", "Bigger font please"),
                                         **kwargs)


# ═════════════════════════════════════════════════════════════════════════════
# Submission
# ═════════════════════════════════════════════════════════════════════════════


class TestSubmitProof:

    def test_first_proof_moves_order_to_proof_submitted(self, make_order):
        order = make_order()

        proof = _submit(order, provider_notes=None, estimated_production_time="3 days")

        assert proof.version_number == 1
        assert proof.status == "pending_review"
        assert proof.title == "Proof v1"
        assert proof.proof_images == [IMAGE]
        assert proof.submitted_by == PROVIDER
        assert order.status == "proof_submitted"
        assert order.first_proof_submitted_at is not None

        versions = proof.versions
        assert len(versions) == 1
        assert versions[0].changes_made == "Initial design"
        assert versions[0].modification_reason == "initial_submission"

    def test_revision_cycle_and_second_version(self, make_order):
        """Submit v1, request a revision, submit v2."""
        order = make_order()
        v1 = _submit(order)

        result = _revise(v1)

        assert v1.status == "revision_requested"
        assert v1.customer_feedback == "Bigger font please"
        assert order.status == "design_in_progress"
        assert order.revision_count == 1
        assert result["order"]["status"] == "design_in_progress"
        assert result["revision"] == {"revision_count": 1, "charged": False, "fee": "0.00"}

        v2 = _submit(order, provider_notes="Font enlarged to 24pt")

        assert v2.version_number == 2
        assert order.status == "proof_submitted"
        assert v2.versions[0].changes_made == "Font enlarged to 24pt"
        assert v2.versions[0].modification_reason == "revision"
        assert [p.version_number for p in proofing_service.list_proofs(order.id, CUSTOMER)] == [1, 2]

    def test_first_submission_timestamp_is_kept_across_revisions(self, make_order):
        order = make_order()
        _revise(_submit(order))
        first_seen = order.first_proof_submitted_at

        _submit(order)

        assert order.first_proof_submitted_at == first_seen

    def test_only_one_pending_proof_per_order(self, make_order):
        order = make_order()
        pending = Proof(order_id=order.id, version_number=1, proof_images=[IMAGE])
        db.session.add(pending)
        db.session.flush()

        with pytest.raises(ProofAlreadyPending) as exc_info:
            _submit(order)
        assert exc_info.value.proof_id == pending.id

    def test_cannot_submit_while_proof_under_review(self, make_order):
        order = make_order()
        _submit(order)

        with pytest.raises(TransitionError):
            _submit(order)

    def test_cannot_submit_before_consultation(self, make_order, consult_listing):
        order = make_order(listing=consult_listing, specification={})

        with pytest.raises(TransitionError):
            _submit(order)

    def test_images_are_required(self, make_order):
        order = make_order()

        with pytest.raises(ValidationError):
            proofing_service.submit_proof(order.id, PROVIDER, [])
        assert order.status == "design_in_progress"

    @pytest.mark.parametrize("actor", [CUSTOMER, STRANGER])
    def test_only_the_provider_submits(self, make_order, actor):
        order = make_order()

        with pytest.raises(NotFoundError):
            proofing_service.submit_proof(order.id, actor, [IMAGE])


# ═════════════════════════════════════════════════════════════════════════════
# Review
# ═════════════════════════════════════════════════════════════════════════════


class TestReviewProof:

    def test_approval_goes_straight_into_production(self, make_order):
        order = make_order()
        proof = _submit(order)

        result = proofing_service.review_proof(proof.id, CUSTOMER, "approve",
                                               feedback="Perfect", rating=5)

        assert proof.status == "approved"
        assert proof.is_final is True
        assert proof.approved_at is not None
        assert proof.customer_rating == 5
        assert order.status == "in_production"
        assert order.approved_at is not None
        assert order.customer_approved is True
        assert order.provider_accepted is True
        assert result["revision"] is None

        path = [(e.previous_status, e.new_status)
                for e in order_lifecycle.get_timeline(order.id, CUSTOMER)][-2:]
        assert path == [("proof_submitted", "proof_approved"), ("proof_approved", "in_production")]

    def test_approval_can_leave_proof_non_final(self, make_order):
        order = make_order()
        proof = _submit(order)

        proofing_service.review_proof(proof.id, CUSTOMER, "approve", is_final=False)

        assert proof.is_final is False

    def test_reject_counts_as_a_revision(self, make_order):
        order = make_order()
        proof = _submit(order)

        _revise(proof, "reject", change_requests=[{"area": "logo", "request": "move left"}])

        assert proof.status == "rejected"
        assert proof.rejected_at is not None
        assert proof.change_requests == [{"area": "logo", "request": "move left"}]
        assert order.status == "design_in_progress"
        assert order.revision_count == 1

    def test_reviewed_proof_cannot_be_reviewed_again(self, make_order):
        order = make_order()
        proof = _submit(order)
        _revise(proof, "reject")

        with pytest.raises(TransitionError):
            proofing_service.review_proof(proof.id, CUSTOMER, "approve")
        assert order.status == "design_in_progress"

    def test_approved_proof_cannot_be_approved_twice(self, make_order):
        order = make_order()
        proof = _submit(order)
        proofing_service.review_proof(proof.id, CUSTOMER, "approve")

        with pytest.raises(TransitionError):
            proofing_service.review_proof(proof.id, CUSTOMER, "approve")

    def test_final_proof_cannot_be_sent_back(self, make_order):
        order = make_order()
        proof = _submit(order, is_final=True)

        with pytest.raises(ProofFinalized):
            _revise(proof)
        assert proof.status == "pending_review"
        assert order.revision_count == 0

        proofing_service.review_proof(proof.id, CUSTOMER, "approve")
        assert order.status == "in_production"

    @pytest.mark.parametrize("rating", [0, 6, "5", True])
    def test_rating_must_be_one_to_five(self, make_order, rating):
        proof = _submit(make_order())

        with pytest.raises(ValidationError):
            proofing_service.review_proof(proof.id, CUSTOMER, "approve", rating=rating)
        assert proof.status == "pending_review"

    def test_unknown_decision(self, make_order):
        proof = _submit(make_order())

        with pytest.raises(ValidationError):
            proofing_service.review_proof(proof.id, CUSTOMER, "maybe")

    @pytest.mark.parametrize("actor", [PROVIDER, STRANGER])
    def test_only_the_customer_reviews(self, make_order, actor):
        proof = _submit(make_order())

        with pytest.raises(NotFoundError):
            proofing_service.review_proof(proof.id, actor, "approve")

    def test_unknown_proof(self):
        with pytest.raises(NotFoundError):
            proofing_service.review_proof("missing", CUSTOMER, "approve")

    def test_proof_state_machine_is_single_decision(self):
        for decided in ("approved", "rejected", "revision_requested"):
            assert PROOF_TRANSITIONS[decided] == []
            assert validate_proof_transition("pending_review", decided)
        assert not validate_proof_transition("approved", "rejected")


# ═════════════════════════════════════════════════════════════════════════════
# Revision allowance
# ═════════════════════════════════════════════════════════════════════════════


class TestRevisionFees:

    def _cycle(self, order, times):
        results = []
        for _ in range(times):
            results.append(_revise(_submit(order)))
        return results

    def test_revisions_within_allowance_are_free(self, make_order):
        order = make_order()

        self._cycle(order, 2)

        assert order.revision_count == 2
        assert order.additional_revisions_charged == 0
        assert order.revision_fees == Decimal("0")
        assert order.total_price == Decimal("100.00")

    def test_third_revision_charges_exactly_one_fee(self, make_order):
        order = make_order()

        results = self._cycle(order, 3)

        assert order.revision_count == 3
        assert order.additional_revisions_charged == 1
        assert order.revision_fees == Decimal("15.00")
        assert order.total_price == Decimal("115.00")
        assert results[-1]["revision"] == {"revision_count": 3, "charged": True, "fee": "15.00"}

    def test_each_further_revision_adds_one_fee_unit(self, make_order):
        order = make_order()

        self._cycle(order, 5)

        assert order.additional_revisions_charged == 3
        assert order.revision_fees == Decimal("45.00")
        assert order.total_price == Decimal("145.00")

    def test_overage_recorded_on_timeline(self, make_order):
        order = make_order()
        self._cycle(order, 3)

        revisions = [e for e in order_lifecycle.get_timeline(order.id, PROVIDER)
                     if e.event_type == "revision_requested"]
        assert [e.event_metadata["charged"] for e in revisions] == [False, False, True]
        assert revisions[-1].event_metadata["fee"] == "15.00"

    def test_apply_revision_on_plain_order(self, make_order):
        order = make_order()
        order.revision_count = 2

        outcome = proofing_service.apply_revision(order)

        assert outcome == {"revision_count": 3, "charged": True, "fee": Decimal("15.00")}


# ═════════════════════════════════════════════════════════════════════════════
# Comments
# ═════════════════════════════════════════════════════════════════════════════


class TestComments:

    def test_both_parties_comment_without_touching_status(self, make_order):
        proof = _submit(make_order())

        c1 = proofing_service.add_comment(
            proof.id, CUSTOMER, "  Logo is too small ", comment_type="change_request",
            reference_image_url=IMAGE, reference_coordinates={"x": 120, "y": 40, "width": 60},
        )
        c2 = proofing_service.add_comment(proof.id, PROVIDER, "Will fix", comment_type="general")

        assert c1.comment_text == "Logo is too small"
        assert c1.reference_coordinates["x"] == 120
        assert c2.author_id == PROVIDER
        assert proof.status == "pending_review"
        assert [c.id for c in proof.comments] == [c1.id, c2.id]

    @pytest.mark.parametrize("kwargs", [
        {"text": "   "},
        {"text": "ok", "comment_type": "rant"},
        {"text": "ok", "reference_coordinates": {"x": 1}},
        {"text": "ok", "reference_coordinates": [1, 2]},
    ])
    def test_invalid_comments(self, make_order, kwargs):
        proof = _submit(make_order())

        with pytest.raises(ValidationError):
            proofing_service.add_comment(proof.id, CUSTOMER, **kwargs)

    def test_stranger_cannot_comment(self, make_order):
        proof = _submit(make_order())

        with pytest.raises(NotFoundError):
            proofing_service.add_comment(proof.id, STRANGER, "hello")

    def test_resolve_is_idempotent(self, make_order):
        proof = _submit(make_order())
        comment = proofing_service.add_comment(proof.id, CUSTOMER, "Typo in line 2")

        proofing_service.resolve_comment(comment.id, PROVIDER)
        first = comment.resolved_at
        again = proofing_service.resolve_comment(comment.id, CUSTOMER)

        assert again.is_resolved is True
        assert again.resolved_by == PROVIDER
        assert again.resolved_at == first
        resolves = db.session.execute(
            select(AuditLog).where(AuditLog.action == "proof.resolve_comment")
        ).scalars().all()
        assert len(resolves) == 1


# ═════════════════════════════════════════════════════════════════════════════
# Skipping the proof round
# ═════════════════════════════════════════════════════════════════════════════


@pytest.fixture()
def pen_listing(provider_profile):
    """Listing whose product type needs no proof approval."""
    pt = ProductType(
        name="Engraved Pen",
        slug="engraved-pen",
        requires_consultation=False,
        requires_proof_approval=False,
        max_revisions=0,
        typical_turnaround_days=3,
        required_specification_fields=[],
    )
    db.session.add(pt)
    db.session.flush()
    sl = ServiceListing(provider_id=PROVIDER, product_type_id=pt.id, title="Engraved pen",
                        base_price=Decimal("25.00"))
    db.session.add(sl)
    db.session.flush()
    return sl


class TestBypassProofing:

    def test_provider_starts_production_without_a_proof(self, make_order, pen_listing):
        order = make_order(listing=pen_listing)
        assert order.requires_approval is False

        result = proofing_service.bypass_proofing(order.id, PROVIDER, "Plain engraving")

        assert result["status"] == "in_production"
        assert result["proofing_bypassed"] is True
        assert order.proofing_bypass_reason == "Plain engraving"
        assert order.approved_at is not None
        assert order.production_started_at is not None
        assert order.customer_approved is False
        assert order.provider_accepted is True
        assert proofing_service.list_proofs(order.id, CUSTOMER) == []

        events = order_lifecycle.get_timeline(order.id, CUSTOMER)[-2:]
        assert [(e.previous_status, e.new_status) for e in events] == [
            ("design_in_progress", "proof_approved"), ("proof_approved", "in_production"),
        ]
        assert events[0].event_type == "proofing_bypassed"
        assert events[0].note == "Plain engraving"
        assert events[0].event_metadata["production_reference"] == "personalization_snapshot"

    def test_default_reason_and_audit(self, make_order, pen_listing):
        order = make_order(listing=pen_listing)

        proofing_service.bypass_proofing(order.id, PROVIDER)

        assert order.proofing_bypass_reason == proofing_service.DEFAULT_BYPASS_REASON
        row = db.session.execute(
            select(AuditLog).where(AuditLog.action == "order.bypass_proofing")
        ).scalar_one()
        assert row.entity_id == order.id
        assert row.actor == PROVIDER

    def test_remaining_personalization_is_locked(self, make_order, pen_listing):
        config = personalization_service.create_config(
            pen_listing.id, PROVIDER, personalization_type="color_selection", label="Ink",
            color_config={"allowed_colors": ["#000000", "#0000ff"]},
            lock_after_stage="proof_approved",
        )
        order = make_order(listing=pen_listing)
        ink = personalization_service.submit_personalization(
            config.id, CUSTOMER, {"color": "#0000ff"}, production_order_id=order.id,
        )
        assert ink.is_locked is False

        proofing_service.bypass_proofing(order.id, PROVIDER)

        assert ink.is_locked is True
        assert ink.locked_reason == "proof_approved"

    def test_refused_when_proof_approval_is_required(self, make_order):
        order = make_order()

        with pytest.raises(TransitionError):
            proofing_service.bypass_proofing(order.id, PROVIDER)
        assert order.status == "design_in_progress"
        assert order.proofing_bypassed is False

    def test_refused_outside_design(self, make_order, pen_listing):
        order = make_order(listing=pen_listing)
        proofing_service.bypass_proofing(order.id, PROVIDER)

        with pytest.raises(TransitionError):
            proofing_service.bypass_proofing(order.id, PROVIDER)

    def test_refused_once_a_proof_is_under_review(self, make_order, pen_listing):
        order = make_order(listing=pen_listing)
        _submit(order)

        with pytest.raises(TransitionError):
            proofing_service.bypass_proofing(order.id, PROVIDER)
        assert order.status == "proof_submitted"

    @pytest.mark.parametrize("actor", [CUSTOMER, STRANGER])
    def test_only_the_provider_bypasses(self, make_order, pen_listing, actor):
        order = make_order(listing=pen_listing)

        with pytest.raises(NotFoundError):
            proofing_service.bypass_proofing(order.id, actor)
        assert order.status == "design_in_progress"


# ═════════════════════════════════════════════════════════════════════════════
# History
# ═════════════════════════════════════════════════════════════════════════════


def test_proof_versions_are_append_only(make_order):
    proof = _submit(make_order())
    version = db.session.execute(
        select(ProofVersion).where(ProofVersion.proof_id == proof.id)
    ).scalar_one()

    version.changes_made = "edited later"
    with pytest.raises(RuntimeError):
        db.session.flush()


def test_review_writes_decision_audit(make_order):
    proof = _submit(make_order())
    _revise(proof)

    row = db.session.execute(
        select(AuditLog).where(AuditLog.action == "proof.request_revision")
    ).scalar_one()
    assert row.entity_id == proof.id
    assert row.actor == CUSTOMER
    assert row.diff["status"] == {"old": "pending_review", "new": "revision_requested"}
