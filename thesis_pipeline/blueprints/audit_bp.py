"""
Thesis Pipeline
Audit trail blueprint.

Endpoints:
    GET  /api/v1/projects/<pid>/audit-events  — project audit trail, newest first
"""

from flask import Blueprint, jsonify, request

from thesis_pipeline.blueprints import paginate_query
from thesis_pipeline.models import db
from thesis_pipeline.models.audit import AuditEvent
from thesis_pipeline.models.thesis import Project
from thesis_pipeline.utils.errors import E, api_error

audit_bp = Blueprint("audit", __name__, url_prefix="/api/v1")


@audit_bp.route("/projects/<int:project_id>/audit-events", methods=["GET"])
def list_audit_events(project_id):
    """
    Return paginated audit events of a project.

    Query params:
        event_type    — exact event type filter
        decision_key  — events of one consolidation decision
        user_id       — filter by acting user
        limit/offset  — pagination (default 50, max 200)
    """
    if db.session.get(Project, project_id) is None:
        return api_error(E.NOT_FOUND, f"Project id={project_id} not found")

    q = AuditEvent.query.filter(AuditEvent.project_id == project_id)

    event_type = request.args.get("event_type")
    if event_type:
        q = q.filter(AuditEvent.event_type == event_type)

    decision_key = request.args.get("decision_key")
    if decision_key:
        q = q.filter(AuditEvent.decision_key == decision_key)

    user_id = request.args.get("user_id")
    if user_id:
        q = q.filter(AuditEvent.user_id == user_id)

    q = q.order_by(AuditEvent.created_at.desc(), AuditEvent.id.desc())
    items, total = paginate_query(q)

    return jsonify({
        "audit_events": [event.to_dict() for event in items],
        "total": total,
    })
