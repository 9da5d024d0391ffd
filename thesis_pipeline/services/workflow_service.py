"""
Thesis workflow service — the operations that feed the transition core.

Project creation, versioned submissions, director endorsement, jury
assignment and evaluation, proposal verdict, pre-project opening, defense
scheduling and grading, final delivery and administrative status changes.

Layer contract:
    - Every write runs in one unit of work and appends exactly one
      AuditEvent; a no-op (idempotent repeat) appends none.
    - Business rules live here; blueprints only parse input.
    - Consolidating decisions go through ``transition_service`` so the
      conditional update, deadline, successor stage and audit event stay
      in one transaction.
    - Role checks are done by the caller; ``actor_id`` is trusted.
"""

from __future__ import annotations

import logging
from datetime import date, datetime, timezone

from flask import current_app
from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from thesis_pipeline.core.exceptions import (
    AlreadyConsolidated,
    ConflictError,
    EndorsementMissing,
    LedgerWriteFailure,
    NotFoundError,
    ValidationError,
)
from thesis_pipeline.models import db
from thesis_pipeline.models.audit import write_audit_event
from thesis_pipeline.models.thesis import (
    ENDORSED_STAGES,
    EVALUATION_RESULTS,
    GLOBAL_STATUSES,
    DefenseSession,
    Deadline,
    Endorsement,
    Evaluation,
    JurorAssignment,
    Project,
    ProjectMember,
    ProjectStage,
    Submission,
)
from thesis_pipeline.services.classifier import add_calendar_days, validate_grade
from thesis_pipeline.services.ledger import SqlAlchemyLedger
from thesis_pipeline.services.transition_service import consolidate_and_apply

logger = logging.getLogger(__name__)

_STAGE_LABELS = {
    "PROPUESTA": "propuesta",
    "ANTEPROYECTO": "anteproyecto",
    "INFORME_FINAL": "informe final",
    "SUSTENTACION": "sustentación",
}

_SUBMITTED_DESCRIPTIONS = {
    "PROPUESTA": "Propuesta radicada",
    "ANTEPROYECTO": "Anteproyecto radicado",
    "INFORME_FINAL": "Informe final radicado",
    "SUSTENTACION": "Documento de sustentación radicado",
}

_SUBMITTED_EVENTS = {
    "PROPUESTA": "PROPOSAL_SUBMITTED",
    "ANTEPROYECTO": "ANTEPROYECTO_SUBMITTED",
    "INFORME_FINAL": "INFORME_FINAL_SUBMITTED",
    "SUSTENTACION": "SUSTENTACION_SUBMITTED",
}

REQUIRED_JURORS = 2


# ── Private helpers ────────────────────────────────────────────────────────────


def _today() -> date:
    return datetime.now(timezone.utc).date()


def _get_project(project_id: int) -> Project:
    project = db.session.get(Project, project_id)
    if project is None:
        raise NotFoundError(resource="Project", resource_id=project_id)
    return project


def _get_stage(stage_id: int) -> ProjectStage:
    stage = db.session.get(ProjectStage, stage_id)
    if stage is None:
        raise NotFoundError(resource="ProjectStage", resource_id=stage_id)
    return stage


def _require_active(project: Project) -> None:
    if project.global_status != "VIGENTE":
        raise ValidationError(
            f"El proyecto {project.id} no está vigente (estado: {project.global_status})",
            details={"global_status": project.global_status},
        )


def _require_pending(stage: ProjectStage) -> None:
    if stage.official_state != "PENDIENTE":
        raise AlreadyConsolidated(stage.id, stage.official_state)


def _require_stage_name(stage: ProjectStage, *allowed: str) -> None:
    if stage.stage_name not in allowed:
        raise ValidationError(
            f"Operación no permitida en la etapa {stage.stage_name}",
            details={"stage_name": f"must be one of {list(allowed)}"},
        )


def _latest_submission(stage_id: int) -> Submission | None:
    return db.session.execute(
        select(Submission)
        .where(Submission.stage_id == stage_id)
        .order_by(Submission.version.desc())
        .limit(1)
    ).scalar_one_or_none()


def _require_latest_submission(stage: ProjectStage) -> Submission:
    submission = _latest_submission(stage.id)
    if submission is None:
        raise ValidationError(
            f"La etapa {stage.stage_name} no tiene versiones radicadas",
            details={"submission": "required"},
        )
    return submission


def _next_version(stage_id: int) -> int:
    current = db.session.execute(
        select(func.max(Submission.version)).where(Submission.stage_id == stage_id)
    ).scalar()
    return (current or 0) + 1


def _is_endorsed(submission: Submission) -> bool:
    return any(e.approved for e in submission.endorsements)


def _find_evaluation(evaluator_id: str, submission_id: int) -> Evaluation | None:
    return Evaluation.query.filter_by(evaluator_id=evaluator_id, submission_id=submission_id).first()


def _find_stage(project_id: int, stage_name: str) -> ProjectStage | None:
    return ProjectStage.query.filter_by(project_id=project_id, stage_name=stage_name).first()


def _clean(value: str | None) -> str | None:
    return (value or "").strip() or None


def _unit_of_work(operation: str):
    return SqlAlchemyLedger().unit_of_work(operation)


def _record_and_consolidate(operation: str, stage: ProjectStage, actor_id: str,
                            today: date | None) -> dict:
    """Apply the stage decision together with the input flushed just before.

    The flushed row and the decision commit in the same transaction;
    any failure rolls both back.
    """
    try:
        db.session.flush()
        return consolidate_and_apply(stage.id, actor_id=actor_id, today=today)
    except SQLAlchemyError as exc:
        db.session.rollback()
        raise LedgerWriteFailure(operation, exc) from exc
    except Exception:
        db.session.rollback()
        raise


# ═════════════════════════════════════════════════════════════════════════════
# Project lifecycle
# ═════════════════════════════════════════════════════════════════════════════


def create_project(
    title: str,
    program: str,
    modality: str,
    created_by: str,
    *,
    description: str | None = None,
    modality_implemented: bool = True,
    co_author_ids: list[str] | None = None,
) -> dict:
    """Create a VIGENTE project with its authors.

    The PROPUESTA stage is opened only when the modality has a detailed
    workflow; otherwise the project is created as a placeholder record.
    """
    title, program, modality = _clean(title), _clean(program), _clean(modality)
    missing = [name for name, value in (("title", title), ("program", program),
                                        ("modality", modality)) if not value]
    if missing:
        raise ValidationError(
            f"Campos requeridos: {', '.join(missing)}",
            details={name: "required" for name in missing},
        )
    if not created_by:
        raise ValidationError("created_by is required", details={"created_by": "required"})

    authors = [str(created_by)]
    for user_id in co_author_ids or []:
        user_id = str(user_id).strip()
        if user_id and user_id not in authors:
            authors.append(user_id)

    with _unit_of_work("create_project"):
        project = Project(
            title=title,
            description=_clean(description),
            program=program,
            modality=modality,
            modality_implemented=bool(modality_implemented),
            created_by=str(created_by),
            global_status="VIGENTE",
        )
        db.session.add(project)
        db.session.flush()

        for user_id in authors:
            db.session.add(ProjectMember(project_id=project.id, user_id=user_id, role="AUTHOR"))

        if modality_implemented:
            db.session.add(ProjectStage(project_id=project.id, stage_name="PROPUESTA"))
            detail = f'Proyecto "{title}" creado bajo modalidad {modality}'
        else:
            detail = f'Proyecto "{title}" creado bajo modalidad {modality} (pendiente de implementación)'
        db.session.flush()

        write_audit_event(
            project_id=project.id,
            user_id=created_by,
            event_type="PROJECT_CREATED",
            description=detail,
            metadata={"authors": authors, "modality": modality,
                      "modality_implemented": bool(modality_implemented)},
        )

    logger.info(
        "Project created",
        extra={"project_id": project.id, "event_type": "PROJECT_CREATED", "actor_id": created_by},
    )
    return project.to_dict(include_stages=True)


def set_global_status(project_id: int, status: str, actor_id: str, *, reason: str | None = None) -> dict:
    """Administrative override of the project's global status.

    FINALIZADO is reached only through ``submit_final_delivery``.
    """
    project = _get_project(project_id)
    if status not in GLOBAL_STATUSES or status == "FINALIZADO":
        raise ValidationError(
            f"Estado global inválido: {status}",
            details={"status": "must be one of VIGENTE, VENCIDO, CANCELADO"},
        )
    if project.global_status == "FINALIZADO":
        raise ValidationError("El proyecto ya fue finalizado", details={"global_status": "FINALIZADO"})
    if project.global_status == status:
        raise ValidationError(
            f"El proyecto ya está en estado {status}",
            details={"status": "unchanged"},
        )
    reason = _clean(reason)
    if status != "VIGENTE" and not reason:
        raise ValidationError("Indica el motivo del cambio de estado", details={"reason": "required"})

    previous = project.global_status
    with _unit_of_work("set_global_status"):
        project.global_status = status
        write_audit_event(
            project_id=project.id,
            user_id=actor_id,
            event_type="PROJECT_STATUS_CHANGED",
            description=f"Estado del proyecto: {previous} → {status}",
            metadata={"from": previous, "to": status, "reason": reason},
        )

    logger.info(
        "Project status changed",
        extra={"project_id": project.id, "event_type": "PROJECT_STATUS_CHANGED", "actor_id": actor_id},
    )
    return project.to_dict()


def open_pre_project(project_id: int, director_id: str, opened_by: str) -> dict:
    """Assign the director and open the ANTEPROYECTO stage after an approved proposal."""
    project = _get_project(project_id)
    _require_active(project)
    director_id = _clean(director_id)
    if not director_id:
        raise ValidationError("Selecciona el director del proyecto", details={"director_id": "required"})

    proposal = _find_stage(project.id, "PROPUESTA")
    if proposal is None or proposal.official_state != "APROBADA":
        raise ValidationError(
            "La propuesta debe estar APROBADA para habilitar el anteproyecto",
            details={"PROPUESTA": proposal.official_state if proposal else None},
        )

    existing = _find_stage(project.id, "ANTEPROYECTO")
    if existing is not None and project.director_id == director_id:
        return {"project": project.to_dict(), "stage": existing.to_dict(), "created": False}

    ledger = SqlAlchemyLedger()
    with ledger.unit_of_work("open_pre_project"):
        project.director_id = director_id
        stage, created = ledger.insert_stage(project.id, "ANTEPROYECTO")
        write_audit_event(
            project_id=project.id,
            user_id=opened_by,
            event_type="ANTEPROYECTO_STAGE_CREATED",
            description=(
                "Etapa ANTEPROYECTO habilitada tras aprobación de propuesta"
                if created else "Director del proyecto actualizado"
            ),
            metadata={"director_id": director_id, "stage_id": stage.id, "created": created},
        )

    logger.info(
        "Pre-project opened",
        extra={"project_id": project.id, "stage_id": stage.id,
               "event_type": "ANTEPROYECTO_STAGE_CREATED", "actor_id": opened_by},
    )
    return {"project": project.to_dict(), "stage": stage.to_dict(), "created": created}


def submit_final_delivery(
    project_id: int,
    submitted_by: str,
    *,
    external_url: str | None = None,
    notes: str | None = None,
) -> dict:
    """Post-defense delivery: requires an approved SUSTENTACION and finalizes the project."""
    project = _get_project(project_id)
    _require_active(project)
    stage = _find_stage(project.id, "SUSTENTACION")
    if stage is None or stage.official_state != "APROBADA":
        raise ValidationError(
            "La sustentación debe estar APROBADA para realizar la entrega final",
            details={"SUSTENTACION": stage.official_state if stage else None},
        )

    with _unit_of_work("submit_final_delivery"):
        version = _next_version(stage.id)
        submission = Submission(
            stage_id=stage.id,
            submitted_by=str(submitted_by),
            version=version,
            external_url=_clean(external_url),
            notes=_clean(notes),
        )
        db.session.add(submission)
        project.global_status = "FINALIZADO"
        db.session.flush()
        write_audit_event(
            project_id=project.id,
            user_id=submitted_by,
            event_type="FINAL_DELIVERY_SUBMITTED",
            description="Entrega final post-sustentación completada. Proyecto FINALIZADO.",
            metadata={"version": version, "submission_id": submission.id},
        )

    logger.info(
        "Final delivery submitted",
        extra={"project_id": project.id, "stage_id": stage.id,
               "event_type": "FINAL_DELIVERY_SUBMITTED", "actor_id": submitted_by},
    )
    return {"project": project.to_dict(), "submission": submission.to_dict()}


# ═════════════════════════════════════════════════════════════════════════════
# Submissions & endorsements
# ═════════════════════════════════════════════════════════════════════════════


def submit_version(
    stage_id: int,
    submitted_by: str,
    *,
    external_url: str | None = None,
    file_path: str | None = None,
    notes: str | None = None,
) -> dict:
    """Deliver a new version of a stage document.

    A stage left CON_OBSERVACIONES goes back to PENDIENTE so the new
    version can be reviewed; approvals of the previous version carry over.
    """
    stage = _get_stage(stage_id)
    project = _get_project(stage.project_id)
    _require_active(project)

    if stage.system_state == "CERRADA":
        raise ValidationError(
            f"La etapa {stage.stage_name} está cerrada",
            details={"system_state": stage.system_state},
        )
    if stage.system_state == "EN_REVISION":
        raise ValidationError(
            f"La etapa {stage.stage_name} está en revisión por los jurados",
            details={"system_state": stage.system_state},
        )
    if not (_clean(external_url) or _clean(file_path)):
        raise ValidationError(
            "Adjunta el documento o un enlace externo",
            details={"external_url": "external_url or file_path required"},
        )

    reopened = stage.system_state == "CON_OBSERVACIONES"
    with _unit_of_work("submit_version"):
        version = _next_version(stage.id)
        submission = Submission(
            stage_id=stage.id,
            submitted_by=str(submitted_by),
            version=version,
            external_url=_clean(external_url),
            file_path=_clean(file_path),
            notes=_clean(notes),
        )
        db.session.add(submission)
        if reopened:
            stage.official_state = "PENDIENTE"
            stage.decision_key = None
        stage.system_state = "RADICADA"
        db.session.flush()
        event_type = _SUBMITTED_EVENTS[stage.stage_name]
        write_audit_event(
            project_id=project.id,
            user_id=submitted_by,
            event_type=event_type,
            description=f"{_SUBMITTED_DESCRIPTIONS[stage.stage_name]} (versión {version})",
            metadata={"version": version, "submission_id": submission.id, "reopened": reopened},
        )

    logger.info(
        "Stage version submitted",
        extra={"project_id": project.id, "stage_id": stage.id, "event_type": event_type},
    )
    return {"stage": stage.to_dict(), "submission": submission.to_dict()}


def record_endorsement(stage_id: int, endorsed_by: str, approved: bool, comments: str | None = None) -> dict:
    """Director sign-off on the latest version of a jury stage."""
    stage = _get_stage(stage_id)
    _require_stage_name(stage, *sorted(ENDORSED_STAGES))
    project = _get_project(stage.project_id)
    _require_active(project)
    _require_pending(stage)
    submission = _require_latest_submission(stage)
    if not isinstance(approved, bool):
        raise ValidationError("approved must be true or false", details={"approved": "boolean required"})

    event_type = f"{stage.stage_name}_ENDORSED"
    with _unit_of_work("record_endorsement"):
        endorsement = Endorsement(
            submission_id=submission.id,
            endorsed_by=str(endorsed_by),
            approved=approved,
            comments=_clean(comments),
        )
        db.session.add(endorsement)
        db.session.flush()
        write_audit_event(
            project_id=project.id,
            user_id=endorsed_by,
            event_type=event_type,
            description=(
                f"Director {'aprobó' if approved else 'rechazó'} el aval del "
                f"{_STAGE_LABELS[stage.stage_name]}"
            ),
            metadata={"approved": approved, "submission_id": submission.id,
                      "version": submission.version},
        )

    logger.info(
        "Endorsement recorded",
        extra={"project_id": project.id, "stage_id": stage.id, "event_type": event_type},
    )
    return endorsement.to_dict()


# ═════════════════════════════════════════════════════════════════════════════
# Jury
# ═════════════════════════════════════════════════════════════════════════════


def assign_jurors(stage_id: int, juror_ids: list[str], assigned_by: str, *, today: date | None = None) -> dict:
    """Assign the two jurors of a stage; evaluation due in JURY_EVALUATION_DAYS calendar days."""
    stage = _get_stage(stage_id)
    _require_stage_name(stage, *sorted(ENDORSED_STAGES))
    project = _get_project(stage.project_id)
    _require_active(project)
    _require_pending(stage)
    submission = _require_latest_submission(stage)
    if not _is_endorsed(submission):
        raise EndorsementMissing(stage.id, stage.stage_name)

    jurors = [str(j).strip() for j in juror_ids or [] if str(j).strip()]
    if len(jurors) != REQUIRED_JURORS or len(set(jurors)) != REQUIRED_JURORS:
        raise ValidationError("Selecciona dos jurados diferentes", details={"juror_ids": "two distinct users"})

    existing = JurorAssignment.query.filter_by(stage_id=stage.id).count()
    if existing:
        raise ConflictError("JurorAssignment", "stage_id", str(stage.id))

    today = today or _today()
    due_date = add_calendar_days(today, current_app.config.get("JURY_EVALUATION_DAYS", 15))

    with _unit_of_work("assign_jurors"):
        assignments = [
            JurorAssignment(
                project_id=project.id,
                stage_id=stage.id,
                stage_name=stage.stage_name,
                user_id=juror_id,
                due_date=due_date,
                assigned_by=str(assigned_by),
            )
            for juror_id in jurors
        ]
        db.session.add_all(assignments)
        stage.system_state = "EN_REVISION"
        db.session.flush()
        write_audit_event(
            project_id=project.id,
            user_id=assigned_by,
            event_type="JURORS_ASSIGNED",
            description=(
                f"Jurados asignados para {_STAGE_LABELS[stage.stage_name]}: "
                f"{', '.join(jurors)}. Plazo: {due_date.strftime('%d/%m/%Y')}"
            ),
            metadata={"jurors": jurors, "due_date": due_date.isoformat(), "stage_id": stage.id},
        )

    logger.info(
        "Jurors assigned",
        extra={"project_id": project.id, "stage_id": stage.id, "event_type": "JURORS_ASSIGNED"},
    )
    return {"stage": stage.to_dict(), "assignments": [a.to_dict() for a in assignments]}


def record_evaluation(stage_id: int, evaluator_id: str, official_result: str,
                      observations: str | None = None) -> dict:
    """One jury verdict on the latest version of a jury stage."""
    stage = _get_stage(stage_id)
    _require_stage_name(stage, *sorted(ENDORSED_STAGES))
    project = _get_project(stage.project_id)
    _require_active(project)
    _require_pending(stage)
    submission = _require_latest_submission(stage)
    if not _is_endorsed(submission):
        raise EndorsementMissing(stage.id, stage.stage_name)
    if official_result not in EVALUATION_RESULTS:
        raise ValidationError(
            f"Resultado inválido: {official_result}",
            details={"official_result": f"must be one of {list(EVALUATION_RESULTS)}"},
        )

    evaluator_id = str(evaluator_id)
    assigned = JurorAssignment.query.filter_by(stage_id=stage.id, user_id=evaluator_id).first()
    if assigned is None:
        raise ValidationError(
            f"El usuario {evaluator_id} no es jurado asignado de esta etapa",
            details={"evaluator_id": "must be an assigned juror"},
        )
    if _find_evaluation(evaluator_id, submission.id) is not None:
        raise ConflictError("Evaluation", "evaluator_id", evaluator_id)

    event_type = f"{stage.stage_name}_EVALUATED"
    with _unit_of_work("record_evaluation"):
        evaluation = Evaluation(
            submission_id=submission.id,
            stage_id=stage.id,
            evaluator_id=evaluator_id,
            official_result=official_result,
            observations=_clean(observations),
        )
        db.session.add(evaluation)
        if stage.system_state == "RADICADA":
            # re-review of a corrected version by the same jury
            stage.system_state = "EN_REVISION"
        try:
            db.session.flush()
        except IntegrityError as exc:
            # concurrent verdict by the same juror won the unique constraint
            raise ConflictError("Evaluation", "evaluator_id", evaluator_id) from exc
        write_audit_event(
            project_id=project.id,
            user_id=evaluator_id,
            event_type=event_type,
            description=f"Jurado evaluó {_STAGE_LABELS[stage.stage_name]}: {official_result}",
            metadata={"result": official_result, "submission_id": submission.id,
                      "version": submission.version},
        )

    logger.info(
        "Jury evaluation recorded",
        extra={"project_id": project.id, "stage_id": stage.id, "event_type": event_type},
    )
    return evaluation.to_dict()


def record_proposal_verdict(
    stage_id: int,
    coordinator_id: str,
    official_result: str,
    observations: str | None = None,
    *,
    today: date | None = None,
) -> dict:
    """Store the coordinator's verdict on the proposal and consolidate it."""
    stage = _get_stage(stage_id)
    _require_stage_name(stage, "PROPUESTA")
    project = _get_project(stage.project_id)
    _require_active(project)
    _require_pending(stage)
    submission = _require_latest_submission(stage)
    if official_result not in EVALUATION_RESULTS:
        raise ValidationError(
            f"Resultado inválido: {official_result}",
            details={"official_result": f"must be one of {list(EVALUATION_RESULTS)}"},
        )

    db.session.add(Evaluation(
        submission_id=submission.id,
        stage_id=stage.id,
        evaluator_id=str(coordinator_id),
        official_result=official_result,
        observations=_clean(observations),
    ))
    return _record_and_consolidate("record_proposal_verdict", stage, coordinator_id, today)


# ═════════════════════════════════════════════════════════════════════════════
# Defense
# ═════════════════════════════════════════════════════════════════════════════


def schedule_defense(
    stage_id: int,
    scheduled_at: datetime,
    location: str,
    created_by: str,
    *,
    notes: str | None = None,
) -> dict:
    stage = _get_stage(stage_id)
    _require_stage_name(stage, "SUSTENTACION")
    project = _get_project(stage.project_id)
    _require_active(project)
    _require_pending(stage)
    location = _clean(location)
    if scheduled_at is None or not location:
        raise ValidationError(
            "Fecha y lugar de la sustentación son requeridos",
            details={"scheduled_at": "required", "location": "required"},
        )
    if DefenseSession.query.filter_by(stage_id=stage.id).first() is not None:
        raise ConflictError("DefenseSession", "stage_id", str(stage.id))

    with _unit_of_work("schedule_defense"):
        session = DefenseSession(
            stage_id=stage.id,
            scheduled_at=scheduled_at,
            location=location,
            notes=_clean(notes),
            created_by=str(created_by),
        )
        db.session.add(session)
        stage.system_state = "RADICADA"
        db.session.flush()
        write_audit_event(
            project_id=project.id,
            user_id=created_by,
            event_type="DEFENSE_SCHEDULED",
            description=(
                f"Sustentación programada: {scheduled_at.strftime('%d/%m/%Y %H:%M')} en {location}"
            ),
            metadata={"scheduled_at": scheduled_at.isoformat(), "location": location},
        )

    logger.info(
        "Defense scheduled",
        extra={"project_id": project.id, "stage_id": stage.id, "event_type": "DEFENSE_SCHEDULED"},
    )
    return session.to_dict()


def record_defense_grade(
    stage_id: int,
    grade,
    recorded_by: str,
    *,
    observations: str | None = None,
    today: date | None = None,
) -> dict:
    """Record the single defense grade and consolidate SUSTENTACION.

    The grade is validated before anything is written.
    """
    grade = validate_grade(grade)
    stage = _get_stage(stage_id)
    _require_stage_name(stage, "SUSTENTACION")
    project = _get_project(stage.project_id)
    _require_active(project)
    _require_pending(stage)
    session = DefenseSession.query.filter_by(stage_id=stage.id).first()
    if session is None:
        raise ValidationError(
            "La sustentación aún no ha sido programada",
            details={"defense_session": "required"},
        )

    session.grade = grade
    session.grade_observations = _clean(observations)
    return _record_and_consolidate("record_defense_grade", stage, recorded_by, today)


# ═════════════════════════════════════════════════════════════════════════════
# Reads
# ═════════════════════════════════════════════════════════════════════════════


def get_project(project_id: int) -> dict:
    return _get_project(project_id).to_dict(include_stages=True)


def get_stage_detail(stage_id: int) -> dict:
    """Stage with its versions, endorsements, jury, evaluations, deadlines and defense."""
    stage = _get_stage(stage_id)
    d = stage.to_dict()
    d["submissions"] = [
        {**s.to_dict(), "endorsements": [e.to_dict() for e in s.endorsements]}
        for s in stage.submissions
    ]
    d["jurors"] = [
        a.to_dict()
        for a in JurorAssignment.query.filter_by(stage_id=stage.id).order_by(JurorAssignment.id)
    ]
    d["evaluations"] = [
        e.to_dict()
        for e in Evaluation.query.filter_by(stage_id=stage.id).order_by(Evaluation.id)
    ]
    d["deadlines"] = [
        dl.to_dict()
        for dl in Deadline.query.filter_by(stage_id=stage.id).order_by(Deadline.id)
    ]
    session = DefenseSession.query.filter_by(stage_id=stage.id).first()
    d["defense_session"] = session.to_dict() if session else None
    return d
