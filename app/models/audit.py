"""
Append-only audit trail of the log entry workflow.

One row per applied transition and per refused action. Rows are written by
EntryStateMachine only and are read back through `trail_for`.
"""
from datetime import datetime
from sqlalchemy import Column, String, Integer, DateTime, JSON
from app.database import Base


class AuditEvent(Base):
    """
    Who did what to which entry, and when.

    Invariants:
    - Never updated or deleted, not even when its entry is deleted
    - Refusals are recorded in their own transaction after the rollback
    """
    __tablename__ = "audit_events"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    event_type = Column(String, nullable=False, index=True)
    entity_type = Column(String, nullable=False)
    # Entry id as text; "-" when the refused action had no entry yet
    entity_id = Column(String, nullable=False, index=True)
    user_id = Column(String, nullable=True)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow, index=True)
    payload_json = Column(JSON, nullable=True)


def trail_for(db, entry_id: int):
    """Audit events of one entry, oldest first."""
    return (
        db.query(AuditEvent)
        .filter(AuditEvent.entity_type == "LogEntry", AuditEvent.entity_id == str(entry_id))
        .order_by(AuditEvent.id)
        .all()
    )


class AuditEventType:
    # Entry lifecycle
    ENTRY_CREATED = "entry_created"
    ENTRY_SENT_FOR_REVIEW = "entry_sent_for_review"
    ENTRY_REVIEW_SATISFIED = "entry_review_satisfied"
    ENTRY_APPROVED = "entry_approved"
    ENTRY_REJECTED = "entry_rejected"
    ENTRY_DELETED = "entry_deleted"

    # Review and signatures
    REVIEW_ACTION_RECORDED = "review_action_recorded"
    ENTRY_SIGNED = "entry_signed"
    ENTRY_SIGNATURE_COMPLETED = "entry_signature_completed"
    SIGNATORY_ADDED = "signatory_added"
    SIGNATORY_REMOVED = "signatory_removed"

    ACTION_REFUSED = "action_refused"
