"""
Thesis Pipeline
Audit domain model.

Models:
    - AuditEvent: immutable, append-only audit trail for workflow decisions.
"""

import json
from datetime import datetime, timezone

from thesis_pipeline.models import db

# ── Constants ────────────────────────────────────────────────────────────────

AUDIT_EVENT_TYPES = {
    # Project lifecycle
    "PROJECT_CREATED",
    "PROJECT_STATUS_CHANGED",
    "FINAL_DELIVERY_SUBMITTED",
    # Proposal
    "PROPOSAL_SUBMITTED",
    "PROPOSAL_EVALUATED",
    "ANTEPROYECTO_STAGE_CREATED",
    # Pre-project
    "ANTEPROYECTO_SUBMITTED",
    "ANTEPROYECTO_ENDORSED",
    "ANTEPROYECTO_EVALUATED",
    "ANTEPROYECTO_CONSOLIDATED",
    # Final report
    "INFORME_FINAL_SUBMITTED",
    "INFORME_FINAL_ENDORSED",
    "INFORME_FINAL_EVALUATED",
    "INFORME_FINAL_CONSOLIDATED",
    # Jury
    "JURORS_ASSIGNED",
    # Defense
    "SUSTENTACION_SUBMITTED",
    "DEFENSE_SCHEDULED",
    "DEFENSE_RESULT_RECORDED",
}


class AuditEvent(db.Model):
    """
    Immutable audit trail for every state-changing workflow operation.

    One row per operation.  ``metadata`` carries the raw inputs of the
    decision (evaluator verdicts, grade, deadline) as JSON.
    """

    __tablename__ = "audit_events"
    __table_args__ = (
        db.Index("idx_audit_events_project", "project_id"),
        db.Index("idx_audit_events_type", "event_type"),
        db.Index("idx_audit_events_decision", "decision_key"),
        db.Index("idx_audit_events_ts", "created_at"),
    )

    id = db.Column(db.Integer, primary_key=True)
    project_id = db.Column(
        db.Integer,
        db.ForeignKey("projects.id", ondelete="CASCADE"),
        nullable=False,
    )
    user_id = db.Column(
        db.String(64), nullable=False, default="system",
        comment="Acting user id or 'system'",
    )
    event_type = db.Column(
        db.String(60), nullable=False,
        comment="ANTEPROYECTO_CONSOLIDATED | DEFENSE_RESULT_RECORDED | …",
    )
    description = db.Column(db.String(1000), nullable=False)

    # "metadata" is reserved on declarative classes; the column keeps the name
    metadata_json = db.Column(
        "metadata", db.Text, default="{}",
        comment="JSON: raw inputs of the operation (verdicts, grade, due date, …)",
    )
    decision_key = db.Column(
        db.String(64), nullable=True,
        comment="Consolidation decision identity; NULL for non-consolidation events",
    )

    created_at = db.Column(
        db.DateTime(timezone=True), nullable=False,
        default=lambda: datetime.now(timezone.utc),
    )

    # ── Helpers ──────────────────────────────────────────────────────────

    @property
    def event_metadata(self) -> dict:
        """Deserialise *metadata_json* to a Python dict."""
        try:
            return json.loads(self.metadata_json or "{}")
        except (json.JSONDecodeError, TypeError):
            return {}

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "project_id": self.project_id,
            "user_id": self.user_id,
            "event_type": self.event_type,
            "description": self.description,
            "metadata": self.event_metadata,
            "decision_key": self.decision_key,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }

    def __repr__(self):
        return f"<AuditEvent {self.id}: {self.event_type} on project {self.project_id}>"


# ── Convenience writer ───────────────────────────────────────────────────────

def write_audit_event(
    *,
    project_id: int,
    event_type: str,
    description: str,
    user_id: str = "system",
    metadata: dict | None = None,
    decision_key: str | None = None,
    session=None,
) -> AuditEvent:
    """
    Append a single audit row.  Uses ``flush`` so callers keep
    transaction control.  Writes on *session* when given, else ``db.session``.

    Returns the (flushed) AuditEvent instance.
    """
    if event_type not in AUDIT_EVENT_TYPES:
        raise ValueError(f"Unknown audit event_type: {event_type}")

    event = AuditEvent(
        project_id=project_id,
        user_id=str(user_id or "system"),
        event_type=event_type,
        description=description,
        metadata_json=json.dumps(metadata or {}, default=str, ensure_ascii=False),
        decision_key=decision_key,
    )
    session = session or db.session
    session.add(event)
    session.flush()
    return event
