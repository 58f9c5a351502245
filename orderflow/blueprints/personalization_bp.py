"""
Personalization Blueprint.

Provider-declared personalization inputs, customer submissions, live price
preview, cart-line snapshots and reusable setups.

Endpoints (all under /api/v1):
    GET    /listings/<listing_id>/personalization-configs     ?include_disabled=1
    POST   /listings/<listing_id>/personalization-configs     provider only
    PUT    /personalization-configs/<config_id>               provider only
    POST   /listings/<listing_id>/personalization-preview     body: { values, subtotal? }

    GET    /personalization-submissions                       ?cart_item_id=&production_order_id=
    POST   /personalization-configs/<config_id>/submissions   body: { value, cart_item_id | production_order_id }
    PUT    /personalization-submissions/<submission_id>       body: { value }
    DELETE /personalization-submissions/<submission_id>

    GET    /cart-items/<cart_item_id>/checkout-ready          ?listing_id=
    POST   /cart-items/<cart_item_id>/snapshot                body: { listing_id, provider_id }
    POST   /cart-items/<cart_item_id>/transfer                body: { booking_id?, production_order_id? }

    GET    /personalization-setups
    POST   /personalization-setups                            body: { snapshot_id, name, is_favorite? }
    POST   /personalization-setups/<setup_id>/apply           body: { cart_item_id }
    DELETE /personalization-setups/<setup_id>
"""

import logging

from flask import Blueprint, g, jsonify, request

from orderflow.services import personalization_service, snapshot_service
from orderflow.utils.errors import E, api_error, register_error_handlers
from orderflow.utils.helpers import parse_decimal

logger = logging.getLogger(__name__)

personalization_bp = Blueprint("personalization", __name__, url_prefix="/api/v1")
register_error_handlers(personalization_bp)


def _require(data, *fields):
    """Return an error response for the first missing field, else None."""
    for field in fields:
        if not data.get(field):
            return api_error(E.VALIDATION_REQUIRED, f"Field '{field}' is required.")
    return None


# ── Configs ────────────────────────────────────────────────────────────────────


@personalization_bp.route("/listings/<listing_id>/personalization-configs", methods=["GET"])
def list_configs(listing_id):
    include_disabled = request.args.get("include_disabled", "").lower() in ("1", "true", "yes")
    configs = personalization_service.list_configs(listing_id, active_only=not include_disabled)
    return jsonify({"items": [c.to_dict() for c in configs], "total": len(configs)}), 200


@personalization_bp.route("/listings/<listing_id>/personalization-configs", methods=["POST"])
def create_config(listing_id):
    """Declare a personalization input on a listing.

    Body: { personalization_type, label, help_text?, is_required?, text_config?,
            image_upload_config?, font_config?, color_config?, choice_config?,
            live_preview_mode?, price_impact?, lock_after_stage?, display_order? }
    """
    data = request.get_json(silent=True) or {}
    err = _require(data, "personalization_type", "label")
    if err:
        return err
    fields = {k: v for k, v in data.items() if k not in ("personalization_type", "label")}
    config = personalization_service.create_config(
        listing_id,
        g.actor_id,
        personalization_type=data["personalization_type"],
        label=data["label"],
        **fields,
    )
    return jsonify(config.to_dict()), 201


@personalization_bp.route("/personalization-configs/<config_id>", methods=["PUT"])
def update_config(config_id):
    data = request.get_json(silent=True) or {}
    config = personalization_service.update_config(config_id, g.actor_id, **data)
    return jsonify(config.to_dict()), 200


@personalization_bp.route("/listings/<listing_id>/personalization-preview", methods=["POST"])
def preview_price(listing_id):
    data = request.get_json(silent=True) or {}
    values = data.get("values") or {}
    if not isinstance(values, dict):
        return api_error(E.VALIDATION_INVALID, "Field 'values' must map config ids to values.")
    try:
        subtotal = parse_decimal(data.get("subtotal"))
    except ValueError as e:
        return api_error(E.VALIDATION_INVALID, str(e))
    return jsonify(personalization_service.preview_price(listing_id, values, subtotal)), 200


# ── Submissions ────────────────────────────────────────────────────────────────


@personalization_bp.route("/personalization-submissions", methods=["GET"])
def list_submissions():
    submissions = personalization_service.list_submissions(
        g.actor_id,
        cart_item_id=request.args.get("cart_item_id") or None,
        production_order_id=request.args.get("production_order_id") or None,
    )
    return jsonify({"items": [s.to_dict() for s in submissions], "total": len(submissions)}), 200


@personalization_bp.route("/personalization-configs/<config_id>/submissions", methods=["POST"])
def submit_personalization(config_id):
    """Validate and store a value.

    Returns 422 ERR_INVALID_PERSONALIZATION with a ``violations`` list when
    the value breaks the config's constraints (nothing is stored).
    """
    data = request.get_json(silent=True) or {}
    if "value" not in data:
        return api_error(E.VALIDATION_REQUIRED, "Field 'value' is required.")
    submission = personalization_service.submit_personalization(
        config_id,
        g.actor_id,
        data["value"],
        cart_item_id=data.get("cart_item_id"),
        production_order_id=data.get("production_order_id"),
    )
    return jsonify(submission.to_dict()), 201


@personalization_bp.route("/personalization-submissions/<submission_id>", methods=["PUT"])
def update_submission(submission_id):
    data = request.get_json(silent=True) or {}
    if "value" not in data:
        return api_error(E.VALIDATION_REQUIRED, "Field 'value' is required.")
    submission = personalization_service.update_submission(submission_id, g.actor_id, data["value"])
    return jsonify(submission.to_dict()), 200


@personalization_bp.route("/personalization-submissions/<submission_id>", methods=["DELETE"])
def delete_submission(submission_id):
    personalization_service.delete_submission(submission_id, g.actor_id)
    return "", 204


# ── Cart line snapshot ─────────────────────────────────────────────────────────


@personalization_bp.route("/cart-items/<cart_item_id>/checkout-ready", methods=["GET"])
def checkout_ready(cart_item_id):
    listing_id = request.args.get("listing_id")
    if not listing_id:
        return api_error(E.VALIDATION_REQUIRED, "Query parameter 'listing_id' is required.")
    snapshot_service.check_checkout_ready(cart_item_id, g.actor_id, listing_id)
    return jsonify({"cart_item_id": cart_item_id, "ready": True}), 200


@personalization_bp.route("/cart-items/<cart_item_id>/snapshot", methods=["POST"])
def create_snapshot(cart_item_id):
    """Freeze the cart line's personalization (idempotent).

    Returns 201 with the snapshot, or 200 with ``snapshot: null`` when the
    line has no personalization and none is required.
    """
    data = request.get_json(silent=True) or {}
    err = _require(data, "listing_id", "provider_id")
    if err:
        return err
    snapshot = snapshot_service.create_snapshot(
        cart_item_id, g.actor_id, data["listing_id"], data["provider_id"],
    )
    if snapshot is None:
        return jsonify({"cart_item_id": cart_item_id, "snapshot": None}), 200
    return jsonify(snapshot.to_dict()), 201


@personalization_bp.route("/cart-items/<cart_item_id>/transfer", methods=["POST"])
def transfer_snapshot(cart_item_id):
    data = request.get_json(silent=True) or {}
    snapshot = snapshot_service.transfer_to_order(
        cart_item_id,
        booking_id=data.get("booking_id"),
        production_order_id=data.get("production_order_id"),
        actor_id=g.actor_id,
    )
    return jsonify(snapshot.to_dict()), 200


# ── Reusable setups ────────────────────────────────────────────────────────────


@personalization_bp.route("/personalization-setups", methods=["GET"])
def list_setups():
    setups = snapshot_service.list_reusable_setups(g.actor_id)
    return jsonify({"items": [s.to_dict() for s in setups], "total": len(setups)}), 200


@personalization_bp.route("/personalization-setups", methods=["POST"])
def save_setup():
    data = request.get_json(silent=True) or {}
    err = _require(data, "snapshot_id", "name")
    if err:
        return err
    setup = snapshot_service.save_reusable_setup(
        data["snapshot_id"], g.actor_id, data["name"], is_favorite=bool(data.get("is_favorite")),
    )
    return jsonify(setup.to_dict()), 201


@personalization_bp.route("/personalization-setups/<setup_id>/apply", methods=["POST"])
def apply_setup(setup_id):
    data = request.get_json(silent=True) or {}
    err = _require(data, "cart_item_id")
    if err:
        return err
    result = snapshot_service.apply_reusable_setup(setup_id, g.actor_id, data["cart_item_id"])
    return jsonify(result), 200


@personalization_bp.route("/personalization-setups/<setup_id>", methods=["DELETE"])
def delete_setup(setup_id):
    snapshot_service.delete_reusable_setup(setup_id, g.actor_id)
    return "", 204
