"""
Proofing & Revision Service.

Proof state machine (PROOF_TRANSITIONS):
    pending_review → approved            order: proof_submitted → proof_approved → in_production
    pending_review → rejected            order: proof_submitted → design_in_progress
    pending_review → revision_requested  order: proof_submitted → design_in_progress

Orders whose product type skips proof approval can instead be moved by the
provider straight to production (bypass_proofing); the personalization
snapshot is then the production reference.

Revision rule: every reject / revision request bumps the order's
revision_count.  Once revision_count exceeds max_revisions_allowed the
revision is still accepted but monetized: additional_revisions_charged += 1
and one fee unit lands on revision_fees and total_price.

Review is one atomic decision per proof: the order row and the proof row
are both read FOR UPDATE and the proof must still be pending_review, so
two reviewers racing on the same proof cannot both win.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from decimal import Decimal

from sqlalchemy import func, select

from orderflow.core.exceptions import (
    NotFoundError,
    ProofAlreadyPending,
    ProofFinalized,
    TransitionError,
    ValidationError,
)
from orderflow.models import db
from orderflow.models.audit import write_audit
from orderflow.models.production import (
    COMMENT_TYPES,
    Proof,
    ProofComment,
    ProofVersion,
    validate_proof_transition,
)
from orderflow.services import order_lifecycle, snapshot_service
from orderflow.services.permission import guard_order
from orderflow.utils.helpers import commit_or_conflict

logger = logging.getLogger(__name__)

REVIEW_DECISIONS = {
    "approve": "approved",
    "reject": "rejected",
    "request_revision": "revision_requested",
}

DEFAULT_BYPASS_REASON = "Proofing not required for this listing"


def _now():
    return datetime.now(timezone.utc)


def _pending_proof(order_id: str) -> Proof | None:
    return db.session.execute(
        select(Proof).where(Proof.order_id == order_id, Proof.status == "pending_review")
    ).scalars().first()


def _load_proof(proof_id: str, *, for_update: bool = False) -> Proof:
    stmt = select(Proof).where(Proof.id == proof_id)
    if for_update:
        stmt = stmt.with_for_update().execution_options(populate_existing=True)
    proof = db.session.execute(stmt).scalar_one_or_none()
    if proof is None:
        raise NotFoundError(resource="Proof", resource_id=proof_id)
    return proof


def apply_revision(order) -> dict:
    """Count one revision against the order and charge it if over allowance.

    Returns {"revision_count", "charged", "fee"}.
    """
    order.revision_count = (order.revision_count or 0) + 1
    fee = Decimal("0.00")
    charged = order.revision_count > order.max_revisions_allowed
    if charged:
        fee = Decimal(order.revision_fee_per_additional or 0)
        order.additional_revisions_charged = (order.additional_revisions_charged or 0) + 1
        order.revision_fees = Decimal(order.revision_fees or 0) + fee
        order.total_price = Decimal(order.total_price or 0) + fee
    return {"revision_count": order.revision_count, "charged": charged, "fee": fee}


# ═════════════════════════════════════════════════════════════════════════════
# submit_proof
# ═════════════════════════════════════════════════════════════════════════════


def submit_proof(
    order_id: str,
    actor_id: str,
    images: list,
    design_file_ids: list | None = None,
    estimated_production_time: str | None = None,
    provider_notes: str | None = None,
    *,
    title: str | None = None,
    description: str | None = None,
    is_final: bool = False,
) -> Proof:
    """
    Provider submits the next design iteration.

    Raises:
        TransitionError: order is not in design_in_progress.
        ProofAlreadyPending: an earlier proof still awaits review.
        ValidationError: no proof images.
    """
    order = order_lifecycle.load_order_for_update(order_id, actor_id, "proof_submit")
    if order.status != "design_in_progress":
        raise TransitionError("ProductionOrder", order.id, order.status, "proof_submitted",
                              "proofs can only be submitted while design is in progress")
    pending = _pending_proof(order.id)
    if pending is not None:
        raise ProofAlreadyPending(order.id, pending.id)
    if not images:
        raise ValidationError("At least one proof image is required", details={"images": "required"})

    last = db.session.execute(
        select(func.max(Proof.version_number)).where(Proof.order_id == order.id)
    ).scalar()
    version = (last or 0) + 1

    proof = Proof(
        order_id=order.id,
        version_number=version,
        title=title or f"Proof v{version}",
        description=description,
        proof_images=list(images),
        design_file_ids=list(design_file_ids or []),
        provider_notes=provider_notes,
        estimated_production_time=estimated_production_time,
        submitted_by=actor_id,
        is_final=bool(is_final),
    )
    db.session.add(proof)
    db.session.flush()

    db.session.add(ProofVersion(
        proof_id=proof.id,
        version_number=version,
        changes_made=provider_notes or ("Initial design" if version == 1 else None),
        proof_images=list(images),
        modified_by=actor_id,
        modification_reason="initial_submission" if version == 1 else "revision",
    ))

    order_lifecycle.apply_transition(
        order, "proof_submitted", actor_id, event_type="proof_submitted",
        metadata={"proof_id": proof.id, "version_number": version},
    )
    write_audit(entity_type="proof", entity_id=proof.id, action="proof.submit",
                actor=actor_id, diff={"order_id": order.id, "version_number": version})
    commit_or_conflict("Proof", proof.id)

    logger.info("Proof v%d submitted for order %s", version, order.order_number,
                extra={"order_id": order.id, "actor_id": actor_id, "event_type": "proof_submitted"})
    return proof


# ═════════════════════════════════════════════════════════════════════════════
# review_proof
# ═════════════════════════════════════════════════════════════════════════════


def review_proof(
    proof_id: str,
    actor_id: str,
    decision: str,
    feedback: str | None = None,
    rating: int | None = None,
    change_requests: list | dict | None = None,
    *,
    is_final: bool = True,
) -> dict:
    """
    Customer decision on a pending proof.

    approve           → proof approved (is_final unless told otherwise),
                        order proof_approved → in_production
    reject /
    request_revision  → feedback recorded, revision counted (and charged past
                        the allowance), order back to design_in_progress

    Raises:
        ValidationError: unknown decision or rating outside 1-5.
        TransitionError: proof already reviewed.
        ProofFinalized: revision requested on a final proof.
    """
    new_status = REVIEW_DECISIONS.get(decision)
    if new_status is None:
        raise ValidationError(f"Unknown decision '{decision}'",
                              details={"valid_decisions": sorted(REVIEW_DECISIONS)})
    if rating is not None:
        if isinstance(rating, bool) or not isinstance(rating, int) or not 1 <= rating <= 5:
            raise ValidationError("rating must be an integer between 1 and 5", details={"rating": rating})

    proof = _load_proof(proof_id)
    order = order_lifecycle.load_order_for_update(proof.order_id, None, "proof_review")
    guard_order(order, actor_id, "proof_review", resource="Proof", resource_id=proof_id)
    proof = _load_proof(proof_id, for_update=True)

    if decision != "approve" and proof.is_final:
        raise ProofFinalized(proof.id)
    if not validate_proof_transition(proof.status, new_status):
        raise TransitionError("Proof", proof.id, proof.status, new_status, "proof has already been reviewed")

    now = _now()
    proof.status = new_status
    proof.reviewed_at = now
    proof.reviewed_by = actor_id
    if feedback is not None:
        proof.customer_feedback = feedback
    if rating is not None:
        proof.customer_rating = rating

    revision = None
    if decision == "approve":
        proof.approved_at = now
        proof.is_final = bool(is_final) or proof.is_final
        order_lifecycle.apply_transition(
            order, "proof_approved", actor_id, note=feedback, event_type="proof_approved",
            metadata={"proof_id": proof.id, "version_number": proof.version_number},
        )
        order_lifecycle.apply_transition(order, "in_production", actor_id)
    else:
        proof.rejected_at = now
        if change_requests is not None:
            proof.change_requests = change_requests
        revision = apply_revision(order)
        order_lifecycle.apply_transition(
            order, "design_in_progress", actor_id, note=feedback, event_type="revision_requested",
            metadata={
                "proof_id": proof.id,
                "version_number": proof.version_number,
                "revision_count": revision["revision_count"],
                "charged": revision["charged"],
                "fee": str(revision["fee"]),
            },
        )

    write_audit(entity_type="proof", entity_id=proof.id, action=f"proof.{decision}",
                actor=actor_id,
                diff={"status": {"old": "pending_review", "new": new_status},
                      "rating": rating, "revision": revision})
    commit_or_conflict("Proof", proof.id)

    logger.info("Proof %s reviewed: %s", proof.id, decision,
                extra={"order_id": order.id, "actor_id": actor_id, "event_type": "proof_reviewed"})
    return {
        "proof": proof.to_dict(),
        "order": order_lifecycle.describe_order(order),
        "revision": (
            {**revision, "fee": str(revision["fee"])} if revision else None
        ),
    }


# ═════════════════════════════════════════════════════════════════════════════
# bypass_proofing
# ═════════════════════════════════════════════════════════════════════════════


def bypass_proofing(order_id: str, actor_id: str, reason: str | None = None) -> dict:
    """
    Provider starts production without a proof round.

    Allowed only for orders whose product type does not require proof
    approval.  The personalization snapshot becomes the production
    reference; the order goes design_in_progress → proof_approved →
    in_production, which also locks the remaining personalization.

    Raises:
        TransitionError: proof approval is required, or the order is not in
            design_in_progress.
    """
    order = order_lifecycle.load_order_for_update(order_id, actor_id, "proofing_bypass")
    if order.requires_approval:
        raise TransitionError("ProductionOrder", order.id, order.status, "proof_approved",
                              "this order requires an approved proof")
    if order.status != "design_in_progress":
        raise TransitionError("ProductionOrder", order.id, order.status, "proof_approved",
                              "proofing can only be skipped while design is in progress")

    reason = (reason or "").strip() or DEFAULT_BYPASS_REASON
    snapshot = snapshot_service.get_snapshot_for_order(order)
    order.proofing_bypassed = True
    order.proofing_bypass_reason = reason
    order_lifecycle.apply_transition(
        order, "proof_approved", actor_id, note=reason, event_type="proofing_bypassed",
        metadata={
            "production_reference": "personalization_snapshot",
            "snapshot_id": snapshot.id if snapshot is not None else None,
        },
    )
    order_lifecycle.apply_transition(order, "in_production", actor_id)

    write_audit(entity_type="production_order", entity_id=order.id, action="order.bypass_proofing",
                actor=actor_id, diff={"reason": reason})
    commit_or_conflict("ProductionOrder", order.id)

    logger.info("Order %s proceeding without proofing", order.order_number,
                extra={"order_id": order.id, "actor_id": actor_id, "event_type": "proofing_bypassed"})
    return order_lifecycle.describe_order(order)


# ═════════════════════════════════════════════════════════════════════════════
# Comments
# ═════════════════════════════════════════════════════════════════════════════


def add_comment(
    proof_id: str,
    actor_id: str,
    text: str,
    comment_type: str = "general",
    reference_image_url: str | None = None,
    reference_coordinates: dict | None = None,
) -> ProofComment:
    """Attach feedback to a proof.  Never changes the proof's status."""
    proof = _load_proof(proof_id)
    guard_order(proof.order, actor_id, "proof_comment", resource="Proof", resource_id=proof_id)
    if not (text or "").strip():
        raise ValidationError("Comment text is required", details={"text": "required"})
    if comment_type not in COMMENT_TYPES:
        raise ValidationError(f"Unknown comment_type '{comment_type}'",
                              details={"valid_types": sorted(COMMENT_TYPES)})
    if reference_coordinates is not None:
        if not isinstance(reference_coordinates, dict) or not {"x", "y"} <= set(reference_coordinates):
            raise ValidationError("reference_coordinates needs at least x and y")

    comment = ProofComment(
        proof_id=proof.id,
        author_id=actor_id,
        comment_text=text.strip(),
        comment_type=comment_type,
        reference_image_url=reference_image_url,
        reference_coordinates=reference_coordinates,
    )
    db.session.add(comment)
    db.session.flush()
    write_audit(entity_type="proof_comment", entity_id=comment.id, action="proof.comment",
                actor=actor_id, diff={"proof_id": proof.id, "type": comment_type})
    commit_or_conflict("ProofComment", comment.id)
    return comment


def resolve_comment(comment_id: str, actor_id: str) -> ProofComment:
    comment = db.session.get(ProofComment, comment_id)
    if comment is None:
        raise NotFoundError(resource="ProofComment", resource_id=comment_id)
    guard_order(comment.proof.order, actor_id, "proof_comment",
                resource="ProofComment", resource_id=comment_id)
    if comment.is_resolved:
        return comment
    comment.is_resolved = True
    comment.resolved_at = _now()
    comment.resolved_by = actor_id
    write_audit(entity_type="proof_comment", entity_id=comment.id, action="proof.resolve_comment",
                actor=actor_id)
    commit_or_conflict("ProofComment", comment.id)
    return comment


def list_proofs(order_id: str, actor_id: str) -> list[Proof]:
    """Proof history for an order, oldest version first."""
    order = order_lifecycle.get_order(order_id, actor_id)
    return list(order.proofs)
