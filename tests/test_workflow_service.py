"""
Tests: Thesis workflow service.

Each operation writes one audit event and enforces its business rules
before any mutation.  The last test walks a project through the whole
pipeline, PROPUESTA to FINALIZADO, using only service calls.
"""

from datetime import date, datetime, timezone

import pytest

from conftest import (
    COORDINATOR,
    DIRECTOR,
    JUROR_A,
    JUROR_B,
    STUDENT,
    TODAY,
    add_submission,
    assign,
    defense_stage,
    endorse,
    jury_stage,
    make_project,
    make_stage,
)
from thesis_pipeline.core.exceptions import (
    AlreadyConsolidated,
    ConflictError,
    EndorsementMissing,
    InvalidGrade,
    NotFoundError,
    ValidationError,
)
from thesis_pipeline.models import db
from thesis_pipeline.models.audit import AuditEvent
from thesis_pipeline.models.thesis import (
    DefenseSession,
    Deadline,
    Evaluation,
    JurorAssignment,
    Project,
    ProjectStage,
)
from thesis_pipeline.services import workflow_service as svc

A = "APROBADO"
M = "APLAZADO_POR_MODIFICACIONES"
N = "NO_APROBADO"


def _event_types(project_id):
    return [
        e.event_type
        for e in AuditEvent.query.filter_by(project_id=project_id).order_by(AuditEvent.id)
    ]


# ═════════════════════════════════════════════════════════════════════════════
# Projects
# ═════════════════════════════════════════════════════════════════════════════


def test_create_project_opens_proposal():
    project = svc.create_project(
        "Análisis de sentimientos", "Ingeniería de Sistemas", "Monografía", STUDENT,
        co_author_ids=["stud-2", STUDENT],
    )

    assert project["global_status"] == "VIGENTE"
    assert project["authors"] == [STUDENT, "stud-2"]
    assert [s["stage_name"] for s in project["stages"]] == ["PROPUESTA"]
    assert project["stages"][0]["system_state"] == "BORRADOR"
    assert _event_types(project["id"]) == ["PROJECT_CREATED"]


def test_create_project_unimplemented_modality_has_no_stage():
    project = svc.create_project("Pasantía", "Ingeniería Civil", "Pasantía", STUDENT,
                                 modality_implemented=False)
    assert project["stages"] == []
    event = AuditEvent.query.filter_by(project_id=project["id"]).one()
    assert "pendiente de implementación" in event.description


def test_create_project_requires_title():
    with pytest.raises(ValidationError) as exc_info:
        svc.create_project("  ", "Ingeniería", "Monografía", STUDENT)
    assert "title" in exc_info.value.details
    assert Project.query.count() == 0


def test_set_global_status_cancel_and_freeze():
    project = make_project()
    stage = make_stage(project, "PROPUESTA")

    svc.set_global_status(project.id, "CANCELADO", COORDINATOR, reason="Retiro del estudiante")

    assert db.session.get(Project, project.id).global_status == "CANCELADO"
    assert _event_types(project.id) == ["PROJECT_STATUS_CHANGED"]
    with pytest.raises(ValidationError):
        svc.submit_version(stage.id, STUDENT, external_url="https://docs.example.org/p")


def test_set_global_status_rules():
    project = make_project()
    with pytest.raises(ValidationError):
        svc.set_global_status(project.id, "FINALIZADO", COORDINATOR, reason="x")
    with pytest.raises(ValidationError):
        svc.set_global_status(project.id, "VENCIDO", COORDINATOR)
    with pytest.raises(ValidationError):
        svc.set_global_status(project.id, "VIGENTE", COORDINATOR)
    with pytest.raises(NotFoundError):
        svc.set_global_status(9999, "VENCIDO", COORDINATOR, reason="x")


# ═════════════════════════════════════════════════════════════════════════════
# Submissions & endorsements
# ═════════════════════════════════════════════════════════════════════════════


def test_submit_version_numbers_versions():
    project = make_project()
    stage = make_stage(project, "ANTEPROYECTO")

    first = svc.submit_version(stage.id, STUDENT, external_url="https://docs.example.org/a1")
    second = svc.submit_version(stage.id, STUDENT, file_path="projects/1/a2.pdf")

    assert first["submission"]["version"] == 1
    assert second["submission"]["version"] == 2
    assert second["stage"]["system_state"] == "RADICADA"
    assert _event_types(project.id) == ["ANTEPROYECTO_SUBMITTED", "ANTEPROYECTO_SUBMITTED"]


def test_submit_version_requires_document():
    stage = make_stage(make_project(), "PROPUESTA")
    with pytest.raises(ValidationError):
        svc.submit_version(stage.id, STUDENT)


def test_submit_version_rejects_closed_stage():
    stage = make_stage(make_project(), "ANTEPROYECTO", system_state="CERRADA", official_state="NO_APROBADA")
    with pytest.raises(ValidationError):
        svc.submit_version(stage.id, STUDENT, external_url="https://docs.example.org/a")


def test_submit_version_rejects_stage_under_review():
    stage = make_stage(make_project(), "ANTEPROYECTO", system_state="EN_REVISION")
    with pytest.raises(ValidationError):
        svc.submit_version(stage.id, STUDENT, external_url="https://docs.example.org/a")


def test_resubmission_reopens_stage_with_observations():
    project = make_project()
    stage = make_stage(project, "INFORME_FINAL", system_state="CON_OBSERVACIONES",
                       official_state="APROBADA_CON_MODIFICACIONES", decision_key="k" * 64)
    add_submission(stage)

    result = svc.submit_version(stage.id, STUDENT, external_url="https://docs.example.org/if2")

    assert result["submission"]["version"] == 2
    assert result["stage"]["official_state"] == "PENDIENTE"
    assert result["stage"]["system_state"] == "RADICADA"
    assert result["stage"]["decision_key"] is None
    event = AuditEvent.query.filter_by(project_id=project.id).one()
    assert event.event_metadata["reopened"] is True


def test_record_endorsement():
    project = make_project()
    stage = make_stage(project, "ANTEPROYECTO", system_state="RADICADA")
    add_submission(stage)

    endorsement = svc.record_endorsement(stage.id, DIRECTOR, False, "Falta marco teórico")

    assert endorsement["approved"] is False
    assert db.session.get(ProjectStage, stage.id).system_state == "RADICADA"
    event = AuditEvent.query.filter_by(project_id=project.id).one()
    assert event.event_type == "ANTEPROYECTO_ENDORSED"
    assert event.description == "Director rechazó el aval del anteproyecto"


def test_record_endorsement_requires_submission():
    stage = make_stage(make_project(), "INFORME_FINAL")
    with pytest.raises(ValidationError):
        svc.record_endorsement(stage.id, DIRECTOR, True)


def test_record_endorsement_not_for_proposal():
    stage = make_stage(make_project(), "PROPUESTA", system_state="RADICADA")
    add_submission(stage)
    with pytest.raises(ValidationError):
        svc.record_endorsement(stage.id, DIRECTOR, True)


# ═════════════════════════════════════════════════════════════════════════════
# Jury
# ═════════════════════════════════════════════════════════════════════════════


def _endorsed_stage(stage_name="ANTEPROYECTO", approved=True):
    project = make_project()
    stage = make_stage(project, stage_name, system_state="RADICADA")
    endorse(add_submission(stage), approved=approved)
    return project, stage


def test_assign_jurors_sets_due_date_and_review_state():
    project, stage = _endorsed_stage()

    result = svc.assign_jurors(stage.id, [JUROR_A, JUROR_B], COORDINATOR, today=TODAY)

    assert result["stage"]["system_state"] == "EN_REVISION"
    assert {a["user_id"] for a in result["assignments"]} == {JUROR_A, JUROR_B}
    assert all(a["due_date"] == "2026-03-21" for a in result["assignments"])
    assert _event_types(project.id) == ["JURORS_ASSIGNED"]


def test_assign_jurors_requires_approved_endorsement():
    _, stage = _endorsed_stage(approved=False)
    with pytest.raises(EndorsementMissing):
        svc.assign_jurors(stage.id, [JUROR_A, JUROR_B], COORDINATOR, today=TODAY)
    assert JurorAssignment.query.count() == 0


@pytest.mark.parametrize("jurors", [[JUROR_A], [JUROR_A, JUROR_A], [JUROR_A, JUROR_B, "juror-c"], []])
def test_assign_jurors_requires_two_distinct(jurors):
    _, stage = _endorsed_stage()
    with pytest.raises(ValidationError):
        svc.assign_jurors(stage.id, jurors, COORDINATOR, today=TODAY)


def test_assign_jurors_twice_conflicts():
    _, stage = _endorsed_stage()
    svc.assign_jurors(stage.id, [JUROR_A, JUROR_B], COORDINATOR, today=TODAY)
    with pytest.raises(ConflictError):
        svc.assign_jurors(stage.id, ["juror-c", "juror-d"], COORDINATOR, today=TODAY)


def test_record_evaluation():
    project, stage = _endorsed_stage()
    assign(stage)

    evaluation = svc.record_evaluation(stage.id, JUROR_A, A, "Bien estructurado")

    assert evaluation["official_result"] == A
    assert _event_types(project.id) == ["ANTEPROYECTO_EVALUATED"]


def test_record_evaluation_only_by_assigned_juror():
    _, stage = _endorsed_stage()
    assign(stage)
    with pytest.raises(ValidationError):
        svc.record_evaluation(stage.id, "intruso", A)


def test_record_evaluation_duplicate_conflicts():
    _, stage = _endorsed_stage()
    assign(stage)
    svc.record_evaluation(stage.id, JUROR_A, A)
    with pytest.raises(ConflictError):
        svc.record_evaluation(stage.id, JUROR_A, N)
    assert Evaluation.query.count() == 1


def test_concurrent_duplicate_evaluation_conflicts(monkeypatch):
    """Both requests pass the lookup; the unique constraint decides."""
    project, stage = _endorsed_stage()
    assign(stage)
    svc.record_evaluation(stage.id, JUROR_A, A)
    monkeypatch.setattr(svc, "_find_evaluation", lambda evaluator_id, submission_id: None)

    with pytest.raises(ConflictError):
        svc.record_evaluation(stage.id, JUROR_A, N)

    assert Evaluation.query.count() == 1
    assert _event_types(project.id) == ["ANTEPROYECTO_EVALUATED"]


def test_record_evaluation_rejects_unknown_result():
    _, stage = _endorsed_stage()
    assign(stage)
    with pytest.raises(ValidationError):
        svc.record_evaluation(stage.id, JUROR_A, "EXCELENTE")


def test_record_evaluation_requires_endorsement():
    _, stage, _ = jury_stage("INFORME_FINAL", endorsed=False)
    with pytest.raises(EndorsementMissing):
        svc.record_evaluation(stage.id, JUROR_A, A)


def test_record_evaluation_on_consolidated_stage():
    _, stage, _ = jury_stage("ANTEPROYECTO", A, A)
    from thesis_pipeline.services.transition_service import consolidate_and_apply
    consolidate_and_apply(stage.id, actor_id=COORDINATOR, today=TODAY)
    with pytest.raises(AlreadyConsolidated):
        svc.record_evaluation(stage.id, JUROR_B, A)


# ═════════════════════════════════════════════════════════════════════════════
# Proposal
# ═════════════════════════════════════════════════════════════════════════════


def _submitted_proposal():
    project = make_project()
    stage = make_stage(project, "PROPUESTA", system_state="RADICADA")
    add_submission(stage)
    return project, stage


def test_proposal_verdict_consolidates():
    project, stage = _submitted_proposal()

    result = svc.record_proposal_verdict(stage.id, COORDINATOR, M, "Ajustar objetivos", today=TODAY)

    assert result["stage"]["official_state"] == "APROBADA_CON_MODIFICACIONES"
    assert result["stage"]["system_state"] == "CERRADA"
    assert result["deadline"]["due_date"] == "2026-03-13"
    assert _event_types(project.id) == ["PROPOSAL_EVALUATED"]
    assert Evaluation.query.filter_by(stage_id=stage.id).count() == 1


def test_proposal_verdict_requires_submission():
    stage = make_stage(make_project(), "PROPUESTA")
    with pytest.raises(ValidationError):
        svc.record_proposal_verdict(stage.id, COORDINATOR, A, today=TODAY)


def test_proposal_verdict_twice_rejected():
    _, stage = _submitted_proposal()
    svc.record_proposal_verdict(stage.id, COORDINATOR, A, today=TODAY)
    with pytest.raises(AlreadyConsolidated):
        svc.record_proposal_verdict(stage.id, "coord-2", N, today=TODAY)


def test_open_pre_project():
    project, stage = _submitted_proposal()
    svc.record_proposal_verdict(stage.id, COORDINATOR, A, today=TODAY)

    result = svc.open_pre_project(project.id, "dir-2", COORDINATOR)

    assert result["created"] is True
    assert result["stage"]["stage_name"] == "ANTEPROYECTO"
    assert result["project"]["director_id"] == "dir-2"
    assert _event_types(project.id) == ["PROPOSAL_EVALUATED", "ANTEPROYECTO_STAGE_CREATED"]

    again = svc.open_pre_project(project.id, "dir-2", COORDINATOR)
    assert again["created"] is False
    assert again["stage"]["id"] == result["stage"]["id"]
    assert len(_event_types(project.id)) == 2


def test_open_pre_project_requires_approved_proposal():
    project, stage = _submitted_proposal()
    svc.record_proposal_verdict(stage.id, COORDINATOR, N, today=TODAY)
    with pytest.raises(ValidationError):
        svc.open_pre_project(project.id, DIRECTOR, COORDINATOR)


# ═════════════════════════════════════════════════════════════════════════════
# Defense & final delivery
# ═════════════════════════════════════════════════════════════════════════════


def test_schedule_defense():
    project = make_project()
    stage = make_stage(project, "SUSTENTACION")
    when = datetime(2026, 3, 20, 15, 30, tzinfo=timezone.utc)

    session = svc.schedule_defense(stage.id, when, "Auditorio B", COORDINATOR)

    assert session["location"] == "Auditorio B"
    assert db.session.get(ProjectStage, stage.id).system_state == "RADICADA"
    event = AuditEvent.query.filter_by(project_id=project.id).one()
    assert event.description == "Sustentación programada: 20/03/2026 15:30 en Auditorio B"

    with pytest.raises(ConflictError):
        svc.schedule_defense(stage.id, when, "Sala 2", COORDINATOR)


def test_schedule_defense_only_for_defense_stage():
    stage = make_stage(make_project(), "INFORME_FINAL")
    with pytest.raises(ValidationError):
        svc.schedule_defense(stage.id, datetime(2026, 3, 20, tzinfo=timezone.utc), "Sala", COORDINATOR)


def test_record_defense_grade():
    project, stage = defense_stage()

    result = svc.record_defense_grade(stage.id, 96, COORDINATOR, observations="Muy buena", today=TODAY)

    assert result["stage"]["final_grade"] == 96
    assert result["decision"]["grade_label"] == "MERITORIA"
    assert result["deadline"]["due_date"] == "2026-03-14"
    assert DefenseSession.query.filter_by(stage_id=stage.id).one().grade == 96
    assert _event_types(project.id) == ["DEFENSE_RESULT_RECORDED"]
    assert db.session.get(Project, project.id).global_status == "VIGENTE"


@pytest.mark.parametrize("grade", [101, -5, "90", 88.5])
def test_record_defense_grade_invalid_writes_nothing(grade):
    project, stage = defense_stage()
    with pytest.raises(InvalidGrade):
        svc.record_defense_grade(stage.id, grade, COORDINATOR, today=TODAY)
    assert DefenseSession.query.filter_by(stage_id=stage.id).one().grade is None
    assert db.session.get(ProjectStage, stage.id).official_state == "PENDIENTE"
    assert _event_types(project.id) == []


def test_record_defense_grade_requires_session():
    stage = make_stage(make_project(), "SUSTENTACION")
    with pytest.raises(ValidationError):
        svc.record_defense_grade(stage.id, 80, COORDINATOR, today=TODAY)


def test_final_delivery_finalizes_project():
    project, stage = defense_stage()
    svc.record_defense_grade(stage.id, 100, COORDINATOR, today=TODAY)

    result = svc.submit_final_delivery(project.id, STUDENT, external_url="https://repo.example.org/final")

    assert result["project"]["global_status"] == "FINALIZADO"
    assert result["submission"]["stage_id"] == stage.id
    assert _event_types(project.id)[-1] == "FINAL_DELIVERY_SUBMITTED"


def test_final_delivery_requires_approved_defense():
    project, stage = defense_stage()
    svc.record_defense_grade(stage.id, 60, COORDINATOR, today=TODAY)
    with pytest.raises(ValidationError):
        svc.submit_final_delivery(project.id, STUDENT, external_url="https://repo.example.org/final")
    assert db.session.get(Project, project.id).global_status == "VIGENTE"


# ═════════════════════════════════════════════════════════════════════════════
# Full pipeline
# ═════════════════════════════════════════════════════════════════════════════


def test_full_pipeline():
    from thesis_pipeline.services.transition_service import consolidate_and_apply

    project = svc.create_project("Riego inteligente", "Ingeniería Agrícola", "Monografía", STUDENT)
    pid = project["id"]
    proposal_id = project["stages"][0]["id"]

    svc.submit_version(proposal_id, STUDENT, external_url="https://docs.example.org/p1")
    svc.record_proposal_verdict(proposal_id, COORDINATOR, A, today=TODAY)
    pre = svc.open_pre_project(pid, DIRECTOR, COORDINATOR)["stage"]

    svc.submit_version(pre["id"], STUDENT, external_url="https://docs.example.org/a1")
    svc.record_endorsement(pre["id"], DIRECTOR, True)
    svc.assign_jurors(pre["id"], [JUROR_A, JUROR_B], COORDINATOR, today=TODAY)
    svc.record_evaluation(pre["id"], JUROR_A, A)
    svc.record_evaluation(pre["id"], JUROR_B, A)
    report = consolidate_and_apply(pre["id"], actor_id=COORDINATOR, today=TODAY)["successor_stage"]

    # final report: split verdict, corrections, carry-over of juror A's approval
    svc.submit_version(report["id"], STUDENT, external_url="https://docs.example.org/if1")
    svc.record_endorsement(report["id"], DIRECTOR, True)
    svc.assign_jurors(report["id"], [JUROR_A, JUROR_B], COORDINATOR, today=TODAY)
    svc.record_evaluation(report["id"], JUROR_A, A)
    svc.record_evaluation(report["id"], JUROR_B, M)
    first = consolidate_and_apply(report["id"], actor_id=COORDINATOR, today=TODAY,
                                  due_date=date(2026, 4, 10))
    assert first["stage"]["system_state"] == "CON_OBSERVACIONES"

    svc.submit_version(report["id"], STUDENT, external_url="https://docs.example.org/if2")
    svc.record_endorsement(report["id"], DIRECTOR, True)
    svc.record_evaluation(report["id"], JUROR_B, A)
    second = consolidate_and_apply(report["id"], actor_id=COORDINATOR, today=TODAY)
    assert second["stage"]["official_state"] == "APROBADA"
    defense = second["successor_stage"]

    svc.schedule_defense(defense["id"], datetime(2026, 5, 4, 10, 0, tzinfo=timezone.utc),
                         "Auditorio Central", COORDINATOR)
    svc.record_defense_grade(defense["id"], 100, COORDINATOR, today=TODAY)
    final = svc.submit_final_delivery(pid, STUDENT, external_url="https://repo.example.org/final")

    assert final["project"]["global_status"] == "FINALIZADO"
    stages = {s.stage_name: s for s in ProjectStage.query.filter_by(project_id=pid)}
    assert [stages[n].official_state for n in ("PROPUESTA", "ANTEPROYECTO", "INFORME_FINAL", "SUSTENTACION")] \
        == ["APROBADA"] * 4
    assert Deadline.query.filter_by(stage_id=report["id"]).count() == 1
    assert _event_types(pid).count("INFORME_FINAL_CONSOLIDATED") == 2
