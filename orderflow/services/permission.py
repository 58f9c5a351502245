"""
Ownership-based authorization for pipeline operations.

Every mutating service call passes the acting identity (from the external
identity provider) through one of the guards below before it touches
state.  A failed guard raises NotFoundError, the same error a missing row
produces, so callers cannot discover orders they are not part of.

Usage:
    from orderflow.services.permission import guard_order

    guard_order(order, actor_id, "proof_review")   # raises NotFoundError
    if has_permission(order, actor_id, "order_view"):
        ...
"""

import logging

from orderflow.core.exceptions import NotFoundError

logger = logging.getLogger(__name__)


# Action → roles (relative to the order) that may perform it
PERMISSION_MATRIX = {
    "order_view":              {"customer", "provider"},
    "order_transition":        {"customer", "provider"},
    "proof_submit":            {"provider"},
    "proof_review":            {"customer"},
    "proofing_bypass":         {"provider"},
    "proof_comment":           {"customer", "provider"},
    "consultation_manage":     {"customer", "provider"},
    "personalization_view":    {"customer", "provider"},
}


def order_role(order, actor_id) -> str | None:
    """Return 'customer', 'provider' or None for the actor on this order."""
    if actor_id is None:
        return None
    if actor_id == order.customer_id:
        return "customer"
    if actor_id == order.provider_id:
        return "provider"
    return None


def has_permission(order, actor_id, action: str) -> bool:
    return order_role(order, actor_id) in PERMISSION_MATRIX.get(action, set())


def guard_order(order, actor_id, action: str, resource: str = "ProductionOrder", resource_id=None):
    """Raise NotFoundError unless the actor may perform ``action`` on ``order``.

    ``resource``/``resource_id`` let proof and session guards report the
    entity the caller actually asked for.
    """
    if has_permission(order, actor_id, action):
        return order_role(order, actor_id)
    logger.info(
        "Access denied: actor %s action %s on order %s", actor_id, action, order.id,
        extra={"actor_id": actor_id, "order_id": order.id},
    )
    raise NotFoundError(resource=resource, resource_id=resource_id or order.id)


def guard_owner(owner_id, actor_id, resource: str, resource_id=None):
    """Single-owner rows (listing configs, reusable setups, submissions)."""
    if actor_id is None or owner_id != actor_id:
        raise NotFoundError(resource=resource, resource_id=resource_id)
