"""
Production Orders Blueprint.

HTTP surface for the order lifecycle, proofing and consultation engines.
The acting identity is ``g.actor_id`` (set by the actor_context middleware
from the X-Actor-Id header).

Endpoints (all under /api/v1):
    POST   /orders                                   create an order (actor = customer)
    GET    /orders                                   list the actor's orders (?role=&status=)
    GET    /orders/<order_id>                        order + progress + overdue flag
    POST   /orders/<order_id>/transition             body: { status, note }
    POST   /orders/<order_id>/cancel                 body: { reason }
    GET    /orders/<order_id>/timeline
    GET    /orders/<order_id>/personalization        provider view of the frozen inputs

    GET    /orders/<order_id>/proofs                 proof history
    POST   /orders/<order_id>/proofs                 submit next proof (provider)
    POST   /orders/<order_id>/bypass-proofing        start production without a proof (provider)
    POST   /proofs/<proof_id>/review                 body: { decision, feedback, rating, ... }
    POST   /proofs/<proof_id>/comments
    POST   /proof-comments/<comment_id>/resolve

    GET    /orders/<order_id>/consultations
    POST   /orders/<order_id>/consultations          schedule
    POST   /consultations/<session_id>/start
    POST   /consultations/<session_id>/complete
    POST   /consultations/<session_id>/cancel
    POST   /consultations/<session_id>/no-show

Layer contract:
    - Blueprint: parse + type-check input, call service, return JSON.
    - NO db.session calls here; writes and ownership guards live in services.
"""

import logging

from flask import Blueprint, g, jsonify, request

from orderflow.blueprints import paginate_list
from orderflow.services import (
    consultation_service,
    order_lifecycle,
    proofing_service,
    snapshot_service,
)
from orderflow.utils.errors import E, api_error, register_error_handlers
from orderflow.utils.helpers import parse_date, parse_datetime, parse_decimal

logger = logging.getLogger(__name__)

orders_bp = Blueprint("orders", __name__, url_prefix="/api/v1")
register_error_handlers(orders_bp)


# ── Orders ─────────────────────────────────────────────────────────────────────


@orders_bp.route("/orders", methods=["POST"])
def create_order():
    """Place a custom production order for the calling customer.

    Body: { provider_id, listing_id, product_type_id?, specification, quantity?,
            title?, description?, special_instructions?, deadline_date?,
            is_rush_order?, rush_fee?, delivery_method?, delivery_address?,
            cart_item_id?, booking_id?, metadata? }
    Returns: 201 with the order.
    """
    data = request.get_json(silent=True) or {}
    for field in ("provider_id", "listing_id"):
        if not data.get(field):
            return api_error(E.VALIDATION_REQUIRED, f"Field '{field}' is required.")
    try:
        deadline = parse_date(data.get("deadline_date"))
        rush_fee = parse_decimal(data.get("rush_fee"))
    except ValueError as e:
        return api_error(E.VALIDATION_INVALID, str(e))

    order = order_lifecycle.create_order(
        g.actor_id,
        data["provider_id"],
        data["listing_id"],
        data.get("product_type_id"),
        data.get("specification", data.get("specifications")),
        data.get("quantity", 1),
        title=data.get("title"),
        description=data.get("description"),
        special_instructions=data.get("special_instructions"),
        deadline_date=deadline,
        is_rush_order=bool(data.get("is_rush_order")),
        rush_fee=rush_fee,
        delivery_method=data.get("delivery_method"),
        delivery_address=data.get("delivery_address"),
        cart_item_id=data.get("cart_item_id"),
        booking_id=data.get("booking_id"),
        metadata=data.get("metadata"),
    )
    return jsonify(order_lifecycle.describe_order(order)), 201


@orders_bp.route("/orders", methods=["GET"])
def list_orders():
    orders = order_lifecycle.list_orders(
        g.actor_id,
        role=request.args.get("role") or None,
        status=request.args.get("status") or None,
    )
    page, total = paginate_list(orders)
    items = [order_lifecycle.describe_order(o) for o in page]
    return jsonify({"items": items, "total": total}), 200


@orders_bp.route("/orders/<order_id>", methods=["GET"])
def get_order(order_id):
    order = order_lifecycle.get_order(order_id, g.actor_id)
    return jsonify(order_lifecycle.describe_order(order)), 200


@orders_bp.route("/orders/<order_id>/transition", methods=["POST"])
def transition_order(order_id):
    """Manual status change (in_production, quality_check, completed, cancelled).

    Returns 409 ERR_INVALID_TRANSITION for edges not reachable from the
    current status or owned by the proofing / consultation workflow.
    """
    data = request.get_json(silent=True) or {}
    new_status = (data.get("status") or "").strip()
    if not new_status:
        return api_error(E.VALIDATION_REQUIRED, "Field 'status' is required.")
    result = order_lifecycle.transition_status(order_id, new_status, g.actor_id, data.get("note"))
    return jsonify(result), 200


@orders_bp.route("/orders/<order_id>/cancel", methods=["POST"])
def cancel_order(order_id):
    data = request.get_json(silent=True) or {}
    result = order_lifecycle.cancel_order(order_id, g.actor_id, data.get("reason"))
    return jsonify(result), 200


@orders_bp.route("/orders/<order_id>/timeline", methods=["GET"])
def get_timeline(order_id):
    events = order_lifecycle.get_timeline(order_id, g.actor_id)
    return jsonify({"items": [e.to_dict() for e in events], "total": len(events)}), 200


@orders_bp.route("/orders/<order_id>/personalization", methods=["GET"])
def get_order_personalization(order_id):
    return jsonify(snapshot_service.get_personalization_for_proof(order_id, g.actor_id)), 200


# ── Proofs ─────────────────────────────────────────────────────────────────────


@orders_bp.route("/orders/<order_id>/proofs", methods=["GET"])
def list_proofs(order_id):
    proofs = proofing_service.list_proofs(order_id, g.actor_id)
    items = [p.to_dict(include_children=True) for p in proofs]
    return jsonify({"items": items, "total": len(items)}), 200


@orders_bp.route("/orders/<order_id>/proofs", methods=["POST"])
def submit_proof(order_id):
    """Provider submits the next proof version.

    Body: { images: [url, ...], design_file_ids?, estimated_production_time?,
            provider_notes?, title?, description?, is_final? }
    """
    data = request.get_json(silent=True) or {}
    images = data.get("images", data.get("proof_images"))
    if images is not None and not isinstance(images, list):
        return api_error(E.VALIDATION_INVALID, "Field 'images' must be a list.")

    proof = proofing_service.submit_proof(
        order_id,
        g.actor_id,
        images or [],
        data.get("design_file_ids"),
        data.get("estimated_production_time"),
        data.get("provider_notes"),
        title=data.get("title"),
        description=data.get("description"),
        is_final=bool(data.get("is_final")),
    )
    return jsonify(proof.to_dict(include_children=True)), 201


@orders_bp.route("/orders/<order_id>/bypass-proofing", methods=["POST"])
def bypass_proofing(order_id):
    """Provider skips the proof round; only for orders that need no approval."""
    data = request.get_json(silent=True) or {}
    result = proofing_service.bypass_proofing(order_id, g.actor_id, data.get("reason"))
    return jsonify(result), 200


@orders_bp.route("/proofs/<proof_id>/review", methods=["POST"])
def review_proof(proof_id):
    """Customer decision: approve | reject | request_revision."""
    data = request.get_json(silent=True) or {}
    decision = (data.get("decision") or "").strip()
    if not decision:
        return api_error(E.VALIDATION_REQUIRED, "Field 'decision' is required.")

    result = proofing_service.review_proof(
        proof_id,
        g.actor_id,
        decision,
        feedback=data.get("feedback"),
        rating=data.get("rating"),
        change_requests=data.get("change_requests"),
        is_final=data.get("is_final", True) is not False,
    )
    return jsonify(result), 200


@orders_bp.route("/proofs/<proof_id>/comments", methods=["POST"])
def add_proof_comment(proof_id):
    data = request.get_json(silent=True) or {}
    comment = proofing_service.add_comment(
        proof_id,
        g.actor_id,
        data.get("text") or data.get("comment_text") or "",
        comment_type=data.get("comment_type") or "general",
        reference_image_url=data.get("reference_image_url"),
        reference_coordinates=data.get("reference_coordinates"),
    )
    return jsonify(comment.to_dict()), 201


@orders_bp.route("/proof-comments/<comment_id>/resolve", methods=["POST"])
def resolve_proof_comment(comment_id):
    comment = proofing_service.resolve_comment(comment_id, g.actor_id)
    return jsonify(comment.to_dict()), 200


# ── Consultations ──────────────────────────────────────────────────────────────


@orders_bp.route("/orders/<order_id>/consultations", methods=["GET"])
def list_consultations(order_id):
    sessions = consultation_service.list_sessions(order_id, g.actor_id)
    items = [s.to_dict(include_credentials=True) for s in sessions]
    return jsonify({"items": items, "total": len(items)}), 200


@orders_bp.route("/orders/<order_id>/consultations", methods=["POST"])
def schedule_consultation(order_id):
    """Book a consultation.

    Body: { scheduled_at (ISO-8601), duration_minutes?, session_type?,
            meeting_url?, meeting_id?, meeting_password?, notes? }
    """
    data = request.get_json(silent=True) or {}
    if not data.get("scheduled_at"):
        return api_error(E.VALIDATION_REQUIRED, "Field 'scheduled_at' is required.")
    try:
        scheduled_at = parse_datetime(data["scheduled_at"])
    except ValueError as e:
        return api_error(E.VALIDATION_INVALID, str(e))

    session = consultation_service.schedule(
        order_id,
        g.actor_id,
        scheduled_at,
        duration_minutes=data.get("duration_minutes", 30),
        session_type=data.get("session_type") or "video_call",
        meeting_url=data.get("meeting_url"),
        meeting_id=data.get("meeting_id"),
        meeting_password=data.get("meeting_password"),
        notes=data.get("notes"),
    )
    return jsonify(session.to_dict(include_credentials=True)), 201


@orders_bp.route("/consultations/<session_id>/start", methods=["POST"])
def start_consultation(session_id):
    session = consultation_service.start(session_id, g.actor_id)
    return jsonify(session.to_dict()), 200


@orders_bp.route("/consultations/<session_id>/complete", methods=["POST"])
def complete_consultation(session_id):
    data = request.get_json(silent=True) or {}
    session = consultation_service.complete(
        session_id, g.actor_id, data.get("summary"), data.get("key_decisions"),
    )
    return jsonify(session.to_dict()), 200


@orders_bp.route("/consultations/<session_id>/cancel", methods=["POST"])
def cancel_consultation(session_id):
    data = request.get_json(silent=True) or {}
    session = consultation_service.cancel(session_id, g.actor_id, data.get("reason"))
    return jsonify(session.to_dict()), 200


@orders_bp.route("/consultations/<session_id>/no-show", methods=["POST"])
def consultation_no_show(session_id):
    session = consultation_service.mark_no_show(session_id, g.actor_id)
    return jsonify(session.to_dict()), 200
