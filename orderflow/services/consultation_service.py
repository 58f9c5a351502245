"""
Consultation Scheduler Service.

Session lifecycle (CONSULTATION_TRANSITIONS):
    scheduled → in_progress → completed
    scheduled | in_progress → cancelled
    scheduled → no_show
completed / cancelled / no_show are terminal and the row is frozen.

Order side effects:
    schedule  — consultation_pending   → consultation_scheduled
    complete  — consultation_scheduled → consultation_completed → design_in_progress
    cancel / no_show — consultation_scheduled → consultation_pending (reschedulable)
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone

from sqlalchemy import select

from orderflow.core.exceptions import NotFoundError, TransitionError, ValidationError
from orderflow.models import db
from orderflow.models.audit import write_audit
from orderflow.models.production import (
    SESSION_TYPES,
    ConsultationSession,
    validate_consultation_transition,
)
from orderflow.services import order_lifecycle
from orderflow.services.permission import guard_order
from orderflow.utils.helpers import commit_or_conflict

logger = logging.getLogger(__name__)


def _now():
    return datetime.now(timezone.utc)


def _load_session(session_id: str, actor_id: str):
    """Return (session, locked order) after the ownership check."""
    session = db.session.get(ConsultationSession, session_id)
    if session is None:
        raise NotFoundError(resource="ConsultationSession", resource_id=session_id)
    order = order_lifecycle.load_order_for_update(session.order_id, None, "consultation_manage")
    guard_order(order, actor_id, "consultation_manage",
                resource="ConsultationSession", resource_id=session_id)
    db.session.refresh(session)
    return session, order


def _move_session(session, new_status: str) -> str:
    if not validate_consultation_transition(session.status, new_status):
        raise TransitionError("ConsultationSession", session.id, session.status, new_status,
                              "session is closed" if session.is_closed else None)
    previous = session.status
    session.status = new_status
    return previous


def schedule(
    order_id: str,
    actor_id: str,
    scheduled_at: datetime,
    duration_minutes: int = 30,
    session_type: str = "video_call",
    meeting_url: str | None = None,
    meeting_id: str | None = None,
    meeting_password: str | None = None,
    notes: str | None = None,
) -> ConsultationSession:
    """Book a consultation; only while the order is consultation_pending."""
    if scheduled_at is None:
        raise ValidationError("scheduled_at is required", details={"scheduled_at": "required"})
    if isinstance(duration_minutes, bool) or not isinstance(duration_minutes, int) or duration_minutes <= 0:
        raise ValidationError("duration_minutes must be a positive integer")
    if session_type not in SESSION_TYPES:
        raise ValidationError(f"Unknown session_type '{session_type}'",
                              details={"valid_types": sorted(SESSION_TYPES)})

    order = order_lifecycle.load_order_for_update(order_id, actor_id, "consultation_manage")
    if order.status != "consultation_pending":
        raise TransitionError("ProductionOrder", order.id, order.status, "consultation_scheduled",
                              "consultations can only be scheduled while pending")

    session = ConsultationSession(
        order_id=order.id,
        session_type=session_type,
        scheduled_at=scheduled_at,
        duration_minutes=duration_minutes,
        meeting_url=meeting_url,
        meeting_id=meeting_id,
        meeting_password=meeting_password,
        notes=notes,
        scheduled_by=actor_id,
    )
    db.session.add(session)
    db.session.flush()

    order_lifecycle.apply_transition(
        order, "consultation_scheduled", actor_id, event_type="consultation_scheduled",
        metadata={"session_id": session.id, "scheduled_at": scheduled_at.isoformat()},
    )
    write_audit(entity_type="consultation_session", entity_id=session.id,
                action="consultation.schedule", actor=actor_id,
                diff={"order_id": order.id, "scheduled_at": scheduled_at,
                      "duration_minutes": duration_minutes})
    commit_or_conflict("ConsultationSession", session.id)
    return session


def start(session_id: str, actor_id: str) -> ConsultationSession:
    session, _order = _load_session(session_id, actor_id)
    _move_session(session, "in_progress")
    session.started_at = _now()
    write_audit(entity_type="consultation_session", entity_id=session.id,
                action="consultation.start", actor=actor_id)
    commit_or_conflict("ConsultationSession", session.id)
    return session


def complete(session_id: str, actor_id: str, summary: str | None,
             key_decisions: dict | list | None = None) -> ConsultationSession:
    """Close the session and move the order on to design."""
    session, order = _load_session(session_id, actor_id)
    _move_session(session, "completed")
    now = _now()
    session.completed_at = now
    session.ended_at = now
    session.consultation_summary = summary
    session.key_decisions = key_decisions

    order_lifecycle.apply_transition(
        order, "consultation_completed", actor_id, event_type="consultation_completed",
        note=summary, metadata={"session_id": session.id},
    )
    order_lifecycle.apply_transition(order, "design_in_progress", actor_id)

    write_audit(entity_type="consultation_session", entity_id=session.id,
                action="consultation.complete", actor=actor_id,
                diff={"key_decisions": key_decisions})
    commit_or_conflict("ConsultationSession", session.id)

    logger.info("Consultation %s completed for order %s", session.id, order.order_number,
                extra={"order_id": order.id, "actor_id": actor_id, "event_type": "consultation_completed"})
    return session


def _release_order(order, actor_id, session, reason, event_type):
    """Send the order back to consultation_pending so it can be rescheduled."""
    if order.status == "consultation_scheduled":
        order_lifecycle.apply_transition(
            order, "consultation_pending", actor_id, note=reason, event_type=event_type,
            metadata={"session_id": session.id},
        )


def cancel(session_id: str, actor_id: str, reason: str | None = None) -> ConsultationSession:
    session, order = _load_session(session_id, actor_id)
    _move_session(session, "cancelled")
    session.cancelled_at = _now()
    session.cancellation_reason = reason
    _release_order(order, actor_id, session, reason, "consultation_cancelled")
    write_audit(entity_type="consultation_session", entity_id=session.id,
                action="consultation.cancel", actor=actor_id, diff={"reason": reason})
    commit_or_conflict("ConsultationSession", session.id)
    return session


def mark_no_show(session_id: str, actor_id: str) -> ConsultationSession:
    session, order = _load_session(session_id, actor_id)
    _move_session(session, "no_show")
    session.ended_at = _now()
    _release_order(order, actor_id, session, "No-show", "consultation_no_show")
    write_audit(entity_type="consultation_session", entity_id=session.id,
                action="consultation.no_show", actor=actor_id)
    commit_or_conflict("ConsultationSession", session.id)
    return session


def list_sessions(order_id: str, actor_id: str) -> list[ConsultationSession]:
    order = order_lifecycle.get_order(order_id, actor_id)
    return list(db.session.execute(
        select(ConsultationSession)
        .where(ConsultationSession.order_id == order.id)
        .order_by(ConsultationSession.created_at)
    ).scalars())
