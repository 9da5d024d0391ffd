"""
Thesis workflow blueprint.

JSON API over the workflow and transition services.  The acting user is
sent by the caller in the ``X-User-Id`` header; role checks happen
upstream.

Endpoints:
    POST   /api/v1/projects                          — create project
    GET    /api/v1/projects/<pid>                    — project with stages
    POST   /api/v1/projects/<pid>/status             — administrative status override
    POST   /api/v1/projects/<pid>/pre-project        — assign director, open ANTEPROYECTO
    POST   /api/v1/projects/<pid>/final-delivery     — post-defense delivery

    GET    /api/v1/stages/<sid>                      — stage detail
    POST   /api/v1/stages/<sid>/submissions          — new version
    POST   /api/v1/stages/<sid>/endorsements         — director endorsement
    POST   /api/v1/stages/<sid>/jurors               — assign two jurors
    POST   /api/v1/stages/<sid>/evaluations          — jury verdict
    POST   /api/v1/stages/<sid>/proposal-verdict     — coordinator verdict (PROPUESTA)
    POST   /api/v1/stages/<sid>/defense-session      — schedule defense
    POST   /api/v1/stages/<sid>/defense-grade        — record defense grade
    GET    /api/v1/stages/<sid>/consolidation        — decision preview
    POST   /api/v1/stages/<sid>/consolidation        — apply decision (optional due_date)

Layer contract:
    - Blueprint: parse + validate input shape, call service, return JSON.
    - NO db.session calls here — all writes owned by the services.
"""

import logging

from flask import Blueprint, jsonify, request

from thesis_pipeline.blueprints import acting_user_id
from thesis_pipeline.core.exceptions import (
    AlreadyConsolidated,
    ConflictError,
    EndorsementMissing,
    InvalidGrade,
    LedgerWriteFailure,
    NotFoundError,
    ValidationError,
)
from thesis_pipeline.services import transition_service, workflow_service
from thesis_pipeline.utils.errors import E, api_error
from thesis_pipeline.utils.helpers import parse_date_input, parse_datetime_input

logger = logging.getLogger(__name__)

workflow_bp = Blueprint("workflow", __name__, url_prefix="/api/v1")


# ── Error handlers ────────────────────────────────────────────────────────────


@workflow_bp.errorhandler(NotFoundError)
def _handle_not_found(error: NotFoundError):
    return api_error(E.NOT_FOUND, str(error))


@workflow_bp.errorhandler(InvalidGrade)
def _handle_invalid_grade(error: InvalidGrade):
    return api_error(E.INVALID_GRADE, str(error), details=error.details)


@workflow_bp.errorhandler(EndorsementMissing)
def _handle_endorsement_missing(error: EndorsementMissing):
    return api_error(E.ENDORSEMENT_MISSING, str(error), details=error.details)


@workflow_bp.errorhandler(ValidationError)
def _handle_validation(error: ValidationError):
    return api_error(E.VALIDATION_INVALID, str(error), details=error.details)


@workflow_bp.errorhandler(AlreadyConsolidated)
def _handle_already_consolidated(error: AlreadyConsolidated):
    return api_error(
        E.ALREADY_CONSOLIDATED, str(error),
        details={"stage_id": error.stage_id, "official_state": error.official_state},
    )


@workflow_bp.errorhandler(ConflictError)
def _handle_conflict(error: ConflictError):
    return api_error(E.CONFLICT_DUPLICATE, str(error))


@workflow_bp.errorhandler(LedgerWriteFailure)
def _handle_ledger_failure(error: LedgerWriteFailure):
    logger.error("Ledger write failure endpoint=%s: %s", request.endpoint, error)
    return api_error(E.DATABASE, str(error))


# ── Helpers ───────────────────────────────────────────────────────────────────


def _actor():
    """Return (actor_id, error_response)."""
    actor_id = acting_user_id()
    if not actor_id:
        return None, api_error(E.VALIDATION_REQUIRED, "X-User-Id header is required")
    return actor_id, None


def _body() -> dict:
    return request.get_json(silent=True) or {}


# ═════════════════════════════════════════════════════════════════════════
# Projects
# ═════════════════════════════════════════════════════════════════════════


@workflow_bp.route("/projects", methods=["POST"])
def create_project():
    """Create a project.

    Body: { title, program, modality, description?, modality_implemented?, co_author_ids? }
    """
    actor_id, err = _actor()
    if err:
        return err
    data = _body()
    co_authors = data.get("co_author_ids") or []
    if not isinstance(co_authors, list):
        return api_error(E.VALIDATION_REQUIRED, "co_author_ids must be a list")

    project = workflow_service.create_project(
        data.get("title"),
        data.get("program"),
        data.get("modality"),
        actor_id,
        description=data.get("description"),
        modality_implemented=bool(data.get("modality_implemented", True)),
        co_author_ids=co_authors,
    )
    return jsonify(project), 201


@workflow_bp.route("/projects/<int:project_id>", methods=["GET"])
def get_project(project_id):
    return jsonify(workflow_service.get_project(project_id))


@workflow_bp.route("/projects/<int:project_id>/status", methods=["POST"])
def set_project_status(project_id):
    """Body: { status: VIGENTE|VENCIDO|CANCELADO, reason? }"""
    actor_id, err = _actor()
    if err:
        return err
    data = _body()
    status = (data.get("status") or "").strip().upper()
    if not status:
        return api_error(E.VALIDATION_REQUIRED, "status is required")
    project = workflow_service.set_global_status(
        project_id, status, actor_id, reason=data.get("reason"),
    )
    return jsonify(project)


@workflow_bp.route("/projects/<int:project_id>/pre-project", methods=["POST"])
def open_pre_project(project_id):
    """Body: { director_id }"""
    actor_id, err = _actor()
    if err:
        return err
    result = workflow_service.open_pre_project(project_id, _body().get("director_id"), actor_id)
    return jsonify(result), 201 if result["created"] else 200


@workflow_bp.route("/projects/<int:project_id>/final-delivery", methods=["POST"])
def submit_final_delivery(project_id):
    """Body: { external_url?, notes? }"""
    actor_id, err = _actor()
    if err:
        return err
    data = _body()
    result = workflow_service.submit_final_delivery(
        project_id, actor_id,
        external_url=data.get("external_url"),
        notes=data.get("notes"),
    )
    return jsonify(result), 201


# ═════════════════════════════════════════════════════════════════════════
# Stages
# ═════════════════════════════════════════════════════════════════════════


@workflow_bp.route("/stages/<int:stage_id>", methods=["GET"])
def get_stage(stage_id):
    return jsonify(workflow_service.get_stage_detail(stage_id))


@workflow_bp.route("/stages/<int:stage_id>/submissions", methods=["POST"])
def submit_version(stage_id):
    """Body: { external_url?, file_path?, notes? } — one of the first two is required."""
    actor_id, err = _actor()
    if err:
        return err
    data = _body()
    result = workflow_service.submit_version(
        stage_id, actor_id,
        external_url=data.get("external_url"),
        file_path=data.get("file_path"),
        notes=data.get("notes"),
    )
    return jsonify(result), 201


@workflow_bp.route("/stages/<int:stage_id>/endorsements", methods=["POST"])
def record_endorsement(stage_id):
    """Body: { approved: bool, comments? }"""
    actor_id, err = _actor()
    if err:
        return err
    data = _body()
    if "approved" not in data:
        return api_error(E.VALIDATION_REQUIRED, "approved is required")
    endorsement = workflow_service.record_endorsement(
        stage_id, actor_id, data.get("approved"), data.get("comments"),
    )
    return jsonify(endorsement), 201


@workflow_bp.route("/stages/<int:stage_id>/jurors", methods=["POST"])
def assign_jurors(stage_id):
    """Body: { juror_ids: [id1, id2] }"""
    actor_id, err = _actor()
    if err:
        return err
    juror_ids = _body().get("juror_ids")
    if not isinstance(juror_ids, list):
        return api_error(E.VALIDATION_REQUIRED, "juror_ids must be a list")
    result = workflow_service.assign_jurors(stage_id, juror_ids, actor_id)
    return jsonify(result), 201


@workflow_bp.route("/stages/<int:stage_id>/evaluations", methods=["POST"])
def record_evaluation(stage_id):
    """Body: { official_result, observations? } — the evaluator is the acting user."""
    actor_id, err = _actor()
    if err:
        return err
    data = _body()
    if not data.get("official_result"):
        return api_error(E.VALIDATION_REQUIRED, "official_result is required")
    evaluation = workflow_service.record_evaluation(
        stage_id, actor_id, data["official_result"], data.get("observations"),
    )
    return jsonify(evaluation), 201


@workflow_bp.route("/stages/<int:stage_id>/proposal-verdict", methods=["POST"])
def record_proposal_verdict(stage_id):
    """Body: { official_result, observations? }"""
    actor_id, err = _actor()
    if err:
        return err
    data = _body()
    if not data.get("official_result"):
        return api_error(E.VALIDATION_REQUIRED, "official_result is required")
    result = workflow_service.record_proposal_verdict(
        stage_id, actor_id, data["official_result"], data.get("observations"),
    )
    return jsonify(result)


@workflow_bp.route("/stages/<int:stage_id>/defense-session", methods=["POST"])
def schedule_defense(stage_id):
    """Body: { scheduled_at (ISO 8601), location, notes? }"""
    actor_id, err = _actor()
    if err:
        return err
    data = _body()
    try:
        scheduled_at = parse_datetime_input(data.get("scheduled_at"))
    except ValueError as exc:
        return api_error(E.VALIDATION_REQUIRED, str(exc))
    session = workflow_service.schedule_defense(
        stage_id, scheduled_at, data.get("location"), actor_id, notes=data.get("notes"),
    )
    return jsonify(session), 201


@workflow_bp.route("/stages/<int:stage_id>/defense-grade", methods=["POST"])
def record_defense_grade(stage_id):
    """Body: { grade: int 0–100, observations? }"""
    actor_id, err = _actor()
    if err:
        return err
    data = _body()
    if "grade" not in data:
        return api_error(E.VALIDATION_REQUIRED, "grade is required")
    result = workflow_service.record_defense_grade(
        stage_id, data.get("grade"), actor_id, observations=data.get("observations"),
    )
    return jsonify(result)


# ── Consolidation ─────────────────────────────────────────────────────────────


@workflow_bp.route("/stages/<int:stage_id>/consolidation", methods=["GET"])
def preview_consolidation(stage_id):
    """Decision the coordinator would apply now; nothing is written."""
    decision = transition_service.consolidate_stage(stage_id)
    return jsonify(decision.to_dict())


@workflow_bp.route("/stages/<int:stage_id>/consolidation", methods=["POST"])
def apply_consolidation(stage_id):
    """Body: { due_date? } — required for INFORME_FINAL approved with modifications."""
    actor_id, err = _actor()
    if err:
        return err
    try:
        due_date = parse_date_input(_body().get("due_date"))
    except ValueError as exc:
        return api_error(E.VALIDATION_REQUIRED, str(exc))
    result = transition_service.consolidate_and_apply(
        stage_id, actor_id=actor_id, due_date=due_date,
    )
    return jsonify(result)
