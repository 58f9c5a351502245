"""
Pipeline-wide exception hierarchy.

Services raise these; blueprints register handlers against them once
(see ``orderflow.utils.errors.register_error_handlers``) and get the same
HTTP status codes everywhere.

Three families:
  - Validation (422): the caller's input is wrong.
  - State (409): the input is fine but the entity can't do that right now.
  - Not found (404): missing OR not owned by the actor. The two are
    deliberately indistinguishable to the caller.

Usage:
    from orderflow.core.exceptions import NotFoundError, TransitionError

    raise NotFoundError(resource="ProductionOrder", resource_id=order_id)
    raise TransitionError("ProductionOrder", order.id, "proof_submitted", "completed")
"""


class NotFoundError(Exception):
    """Raised when a resource does not exist or the actor may not see it.

    Used for BOTH genuinely missing records AND ownership failures. A 403
    would confirm the resource exists; a 404 does not.

    Args:
        resource: Human-readable entity name (e.g. "ProductionOrder", "Proof").
        resource_id: The PK that was looked up. Logged, not returned over HTTP.
        actor_id: Optional — the actor the lookup was scoped to. Debug only.
    """

    def __init__(
        self,
        resource: str,
        resource_id: str | None = None,
        actor_id: str | None = None,
    ) -> None:
        self.resource = resource
        self.resource_id = resource_id
        self.actor_id = actor_id
        msg = f"{resource}"
        if resource_id is not None:
            msg += f" id={resource_id}"
        msg += " not found"
        if actor_id is not None:
            msg += f" (actor={actor_id})"
        super().__init__(msg)


class ValidationError(Exception):
    """Raised when well-formed input violates a business rule.

    Maps to HTTP 422.

    Args:
        message: Human-readable explanation of what failed.
        details: Optional field-level breakdown for structured API responses.
    """

    def __init__(self, message: str, details: dict | None = None) -> None:
        self.details = details or {}
        super().__init__(message)


class InvalidSpecification(ValidationError):
    """Order specification payload is missing required fields or malformed."""


class InvalidPersonalizationInput(ValidationError):
    """A personalization value violates its config constraints.

    ``violations`` is a list of ``{"field", "constraint", "message"}`` dicts,
    one per violated rule, so the UI can highlight each problem.
    """

    def __init__(self, violations: list[dict], config_id: str | None = None) -> None:
        self.violations = violations
        self.config_id = config_id
        super().__init__(
            f"Personalization input violates {len(violations)} constraint(s)",
            details={"config_id": config_id, "violations": violations},
        )


class NoPersonalizationToSnapshot(ValidationError):
    """A listing requires personalization but the cart line has none."""

    def __init__(self, cart_item_id: str, missing_config_ids: list[str]) -> None:
        self.cart_item_id = cart_item_id
        self.missing_config_ids = missing_config_ids
        super().__init__(
            "Required personalization is missing for this cart item",
            details={"cart_item_id": cart_item_id, "missing_config_ids": missing_config_ids},
        )


class StateError(Exception):
    """Base for "can't do that right now" conditions. Maps to HTTP 409.

    Subclasses set ``code`` so API clients can branch on the condition
    without parsing the message.
    """

    code = "ERR_CONFLICT_STATE"

    def __init__(self, message: str, details: dict | None = None) -> None:
        self.details = details or {}
        super().__init__(message)


class TransitionError(StateError):
    """Raised when a status change is not allowed from the current status."""

    code = "ERR_INVALID_TRANSITION"

    def __init__(
        self,
        resource: str,
        resource_id: str,
        current: str,
        target: str,
        reason: str | None = None,
    ) -> None:
        msg = f"Cannot move {resource} {resource_id} from '{current}' to '{target}'"
        if reason:
            msg += f": {reason}"
        super().__init__(msg, details={"from": current, "to": target})
        self.resource = resource
        self.resource_id = resource_id
        self.current_status = current
        self.target_status = target
        self.reason = reason


class ProofAlreadyPending(StateError):
    """An order already has a proof awaiting customer review."""

    code = "ERR_PROOF_ALREADY_PENDING"

    def __init__(self, order_id: str, proof_id: str) -> None:
        super().__init__(
            f"Order {order_id} already has proof {proof_id} pending review",
            details={"pending_proof_id": proof_id},
        )
        self.order_id = order_id
        self.proof_id = proof_id


class ProofFinalized(StateError):
    """A proof flagged is_final cannot be sent back for revision."""

    code = "ERR_PROOF_FINALIZED"

    def __init__(self, proof_id: str) -> None:
        super().__init__(f"Proof {proof_id} is final and cannot be revised")
        self.proof_id = proof_id


class PersonalizationLocked(StateError):
    """Customization can no longer be changed for this order."""

    code = "ERR_PERSONALIZATION_LOCKED"

    def __init__(self, submission_id: str, locked_reason: str | None = None) -> None:
        super().__init__(
            "This order's customization can no longer be changed",
            details={"submission_id": submission_id, "locked_reason": locked_reason},
        )
        self.submission_id = submission_id
        self.locked_reason = locked_reason


class SnapshotImmutable(StateError):
    """A personalization snapshot's frozen payload cannot change."""

    code = "ERR_SNAPSHOT_IMMUTABLE"

    def __init__(self, snapshot_id: str, attempted: list[str]) -> None:
        super().__init__(
            f"PersonalizationSnapshot {snapshot_id} is immutable",
            details={"snapshot_id": snapshot_id, "attempted": attempted},
        )
        self.snapshot_id = snapshot_id
        self.attempted = attempted


class ProviderCapacityExceeded(StateError):
    """Provider is already working at its concurrent-order limit."""

    code = "ERR_PROVIDER_CAPACITY"

    def __init__(self, provider_id: str, active: int, limit: int) -> None:
        super().__init__(
            f"Provider {provider_id} has {active} active orders (limit {limit})",
            details={"active_orders": active, "max_concurrent_orders": limit},
        )
        self.provider_id = provider_id
        self.active = active
        self.limit = limit


class ConflictError(Exception):
    """Raised when an operation would violate a uniqueness constraint.

    Maps to HTTP 409.
    """

    retryable = False

    def __init__(self, resource: str, field: str, value: str | None = None) -> None:
        self.resource = resource
        self.field = field
        self.value = value
        msg = f"{resource} with {field}={value!r} already exists"
        super().__init__(msg)


class ConcurrencyConflict(ConflictError):
    """Lost a race against a concurrent writer. Safe to retry."""

    retryable = True

    def __init__(self, resource: str, resource_id: str | None = None) -> None:
        super().__init__(resource, "id", resource_id)
        self.args = (f"{resource} {resource_id} was modified concurrently; retry the request",)
