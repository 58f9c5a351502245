"""
Orderflow — audit domain model.

Models:
    - AuditLog: immutable, append-only audit trail for pipeline events.
"""

import json
from datetime import UTC, datetime

from orderflow.models import db

# ── Constants ────────────────────────────────────────────────────────────────

AUDIT_ENTITY_TYPES = {
    "production_order", "proof", "proof_comment",
    "consultation_session", "personalization_config",
    "personalization_submission", "personalization_snapshot",
    "reusable_setup", "booking",
}

AUDIT_ACTIONS = {
    # Order lifecycle
    "order.create",
    "order.transition",
    "order.cancel",
    "order.virtual_booking",
    # Proofing
    "proof.submit",
    "proof.approve",
    "proof.reject",
    "proof.request_revision",
    "proof.comment",
    "proof.resolve_comment",
    "order.bypass_proofing",
    # Consultation
    "consultation.schedule",
    "consultation.start",
    "consultation.complete",
    "consultation.cancel",
    "consultation.no_show",
    # Personalization
    "personalization.submit",
    "personalization.lock",
    "snapshot.create",
    "snapshot.transfer",
    "setup.save",
    "setup.apply",
    # Generic
    "create",
    "update",
    "delete",
}


class AuditLog(db.Model):
    """
    Immutable audit trail for every pipeline mutation.

    One row per action.  ``diff_json`` carries an old→new snapshot
    for field-level changes.
    """

    __tablename__ = "audit_logs"
    __table_args__ = (
        db.Index("idx_audit_entity", "entity_type", "entity_id"),
        db.Index("idx_audit_actor", "actor"),
        db.Index("idx_audit_action", "action"),
        db.Index("idx_audit_ts", "timestamp"),
    )

    id = db.Column(db.Integer, primary_key=True)

    # Polymorphic entity reference
    entity_type = db.Column(
        db.String(40), nullable=False,
        comment="production_order | proof | personalization_snapshot | …",
    )
    entity_id = db.Column(db.String(36), nullable=False)

    # What happened
    action = db.Column(
        db.String(60), nullable=False,
        comment="order.transition | proof.approve | snapshot.create | …",
    )
    actor = db.Column(db.String(64), nullable=False, default="system")
    request_id = db.Column(db.String(64), nullable=True)

    # Change payload
    diff_json = db.Column(db.Text, default="{}")

    # Timestamp (immutable)
    timestamp = db.Column(
        db.DateTime(timezone=True), nullable=False,
        default=lambda: datetime.now(UTC),
    )

    # ── Helpers ──────────────────────────────────────────────────────────

    @property
    def diff(self) -> dict:
        """Deserialise *diff_json* to a Python dict."""
        try:
            return json.loads(self.diff_json or "{}")
        except (json.JSONDecodeError, TypeError):
            return {}

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "action": self.action,
            "actor": self.actor,
            "request_id": self.request_id,
            "diff": self.diff,
            "timestamp": self.timestamp.isoformat() if self.timestamp else None,
        }

    def __repr__(self):
        return f"<AuditLog {self.id}: {self.action} on {self.entity_type}/{self.entity_id}>"


# ── Convenience writer ───────────────────────────────────────────────────────

def write_audit(
    *,
    entity_type: str,
    entity_id: str,
    action: str,
    actor: str | None = "system",
    diff: dict | None = None,
) -> AuditLog:
    """
    Append a single audit row.  Uses ``flush`` so callers keep
    transaction control.

    The request id is picked up from the Flask request context when one
    is active, so audit rows can be joined against access logs.
    """
    from flask import g, has_request_context

    request_id = getattr(g, "request_id", None) if has_request_context() else None

    log = AuditLog(
        entity_type=entity_type,
        entity_id=str(entity_id),
        action=action,
        actor=actor or "system",
        request_id=request_id,
        diff_json=json.dumps(diff or {}, default=str),
    )
    db.session.add(log)
    db.session.flush()
    return log
