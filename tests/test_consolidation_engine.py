"""
Tests: Consolidation Engine decision table.

The engine is pure: stages and evaluations are built as records, no
database rows are involved.
"""

from datetime import date

import pytest

from thesis_pipeline.core.exceptions import (
    AlreadyConsolidated,
    EndorsementMissing,
    InvalidGrade,
    ValidationError,
)
from thesis_pipeline.services.consolidation_engine import (
    CONSOLIDATED,
    PENDING_SUBMISSION,
    UNDER_REVIEW,
    ConsolidationDecision,
    PendingDecision,
    RemediationDeadline,
    compute_decision_key,
    consolidate,
    review_phase,
)
from thesis_pipeline.services.records import EvaluationRecord, StageRecord

A = "APROBADO"
M = "APLAZADO_POR_MODIFICACIONES"
N = "NO_APROBADO"

FRIDAY = date(2026, 3, 6)


def _stage(stage_name, system_state="EN_REVISION", official_state="PENDIENTE", stage_id=10):
    return StageRecord(
        id=stage_id, project_id=1, stage_name=stage_name,
        system_state=system_state, official_state=official_state,
    )


def _evals(*results):
    return [
        EvaluationRecord(
            evaluator_id=f"j{i}", official_result=r, observations=f"obs {i}",
            evaluator_name=f"Jurado {i}", submission_id=5,
        )
        for i, r in enumerate(results, start=1)
    ]


# ═════════════════════════════════════════════════════════════════════════════
# ANTEPROYECTO
# ═════════════════════════════════════════════════════════════════════════════


def test_pre_project_approved_spawns_final_report():
    decision = consolidate(_stage("ANTEPROYECTO"), _evals(A, A))

    assert isinstance(decision, ConsolidationDecision)
    assert decision.official_state == "APROBADA"
    assert decision.next_system_state == "CERRADA"
    assert decision.spawn_successor_stage is True
    assert decision.successor_stage_name == "INFORME_FINAL"
    assert decision.remediation_deadline is None
    assert decision.audit_event_type == "ANTEPROYECTO_CONSOLIDATED"
    assert decision.audit_description == "Anteproyecto consolidado: APROBADA"


def test_pre_project_modifications_get_ten_calendar_days():
    decision = consolidate(_stage("ANTEPROYECTO"), _evals(A, M))

    assert decision.official_state == "APROBADA_CON_MODIFICACIONES"
    assert decision.next_system_state == "CERRADA"
    assert decision.spawn_successor_stage is False
    deadline = decision.remediation_deadline
    assert deadline.days_from_now == 10
    assert deadline.business_days is False
    assert deadline.resolve_due_date(FRIDAY) == date(2026, 3, 16)


def test_pre_project_single_veto_rejects():
    decision = consolidate(_stage("ANTEPROYECTO"), _evals(A, N))
    assert decision.official_state == "NO_APROBADA"
    assert decision.next_system_state == "CERRADA"
    assert decision.spawn_successor_stage is False
    assert decision.remediation_deadline is None


def test_pre_project_observations_list_each_evaluator():
    evaluations = _evals(A, M)
    evaluations[1] = EvaluationRecord(evaluator_id="j2", official_result=M, evaluator_name="Jurado 2")
    decision = consolidate(_stage("ANTEPROYECTO"), evaluations)

    assert decision.observations.splitlines() == [
        "Jurado 1: APROBADO - obs 1",
        "Jurado 2: APLAZADO_POR_MODIFICACIONES - Sin observaciones",
    ]


def test_one_evaluation_is_pending():
    result = consolidate(_stage("ANTEPROYECTO"), _evals(A))

    assert isinstance(result, PendingDecision)
    assert result.is_pending
    assert result.received == 1
    assert result.required == 2
    assert result.to_dict()["status"] == "pending"


# ═════════════════════════════════════════════════════════════════════════════
# INFORME_FINAL
# ═════════════════════════════════════════════════════════════════════════════


def test_final_report_unanimous_approval_spawns_defense():
    decision = consolidate(_stage("INFORME_FINAL"), _evals(A, A))
    assert decision.official_state == "APROBADA"
    assert decision.successor_stage_name == "SUSTENTACION"
    assert decision.audit_event_type == "INFORME_FINAL_CONSOLIDATED"


def test_final_report_split_stays_with_observations():
    decision = consolidate(_stage("INFORME_FINAL"), _evals(A, N))

    assert decision.official_state == "APROBADA_CON_MODIFICACIONES"
    assert decision.next_system_state == "CON_OBSERVACIONES"
    assert decision.spawn_successor_stage is False
    assert decision.remediation_deadline.requires_due_date is True


def test_final_report_unanimous_rejection():
    decision = consolidate(_stage("INFORME_FINAL"), _evals(N, N))
    assert decision.official_state == "NO_APROBADA"
    assert decision.next_system_state == "CERRADA"


def test_coordinator_due_date_required():
    deadline = consolidate(_stage("INFORME_FINAL"), _evals(A, M)).remediation_deadline
    with pytest.raises(ValidationError):
        deadline.resolve_due_date(FRIDAY)
    with pytest.raises(ValidationError):
        deadline.resolve_due_date(FRIDAY, date(2026, 3, 1))
    assert deadline.resolve_due_date(FRIDAY, date(2026, 4, 1)) == date(2026, 4, 1)


# ═════════════════════════════════════════════════════════════════════════════
# PROPUESTA
# ═════════════════════════════════════════════════════════════════════════════


def test_proposal_modifications_get_five_business_days():
    decision = consolidate(_stage("PROPUESTA", system_state="RADICADA"), _evals(M))

    assert decision.official_state == "APROBADA_CON_MODIFICACIONES"
    assert decision.next_system_state == "CERRADA"
    assert decision.spawn_successor_stage is False
    assert decision.remediation_deadline.resolve_due_date(FRIDAY) == date(2026, 3, 13)
    assert decision.audit_event_type == "PROPOSAL_EVALUATED"


def test_proposal_approved_has_no_successor():
    decision = consolidate(_stage("PROPUESTA", system_state="RADICADA"), _evals(A))
    assert decision.official_state == "APROBADA"
    assert decision.spawn_successor_stage is False
    assert decision.remediation_deadline is None


def test_proposal_without_verdict_is_pending():
    assert consolidate(_stage("PROPUESTA", system_state="RADICADA"), []).is_pending


def test_proposal_does_not_require_endorsement():
    decision = consolidate(_stage("PROPUESTA", system_state="RADICADA"), _evals(N), endorsed=False)
    assert decision.official_state == "NO_APROBADA"


# ═════════════════════════════════════════════════════════════════════════════
# SUSTENTACION
# ═════════════════════════════════════════════════════════════════════════════


@pytest.mark.parametrize("grade, label", [(70, "APROBADA"), (96, "MERITORIA"), (100, "LAUREADA")])
def test_passing_defense_gets_final_delivery_deadline(grade, label):
    decision = consolidate(_stage("SUSTENTACION", system_state="RADICADA"), grade=grade)

    assert decision.official_state == "APROBADA"
    assert decision.grade == grade
    assert decision.grade_label == label
    assert decision.next_system_state == "CERRADA"
    assert decision.spawn_successor_stage is False
    assert decision.remediation_deadline.resolve_due_date(FRIDAY) == date(2026, 3, 14)
    assert decision.audit_event_type == "DEFENSE_RESULT_RECORDED"
    assert decision.audit_description == f"Sustentación: {label} ({grade}/100)"


def test_failing_defense_has_no_deadline():
    decision = consolidate(_stage("SUSTENTACION", system_state="RADICADA"), grade=69)
    assert decision.official_state == "NO_APROBADA"
    assert decision.grade_label == "REPROBADA"
    assert decision.remediation_deadline is None


def test_defense_comment_appended_to_observations():
    decision = consolidate(
        _stage("SUSTENTACION", system_state="RADICADA"), grade=100, comment="Trabajo excepcional",
    )
    assert decision.observations == "LAUREADA (100/100). Trabajo excepcional"


def test_defense_without_grade_is_pending():
    assert consolidate(_stage("SUSTENTACION", system_state="RADICADA")).is_pending


def test_defense_invalid_grade():
    with pytest.raises(InvalidGrade):
        consolidate(_stage("SUSTENTACION", system_state="RADICADA"), grade=101)


# ═════════════════════════════════════════════════════════════════════════════
# Guards
# ═════════════════════════════════════════════════════════════════════════════


def test_consolidated_stage_rejected():
    stage = _stage("ANTEPROYECTO", system_state="CERRADA", official_state="APROBADA")
    with pytest.raises(AlreadyConsolidated):
        consolidate(stage, _evals(A, A))


def test_missing_endorsement_checked_before_pending():
    with pytest.raises(EndorsementMissing):
        consolidate(_stage("INFORME_FINAL"), _evals(A), endorsed=False)


def test_stage_type_must_match():
    with pytest.raises(ValidationError):
        consolidate(_stage("ANTEPROYECTO"), _evals(A, A), stage_type="INFORME_FINAL")


def test_inconsistent_stage_record_rejected():
    with pytest.raises(ValidationError):
        _stage("ANTEPROYECTO", system_state="EN_REVISION", official_state="APROBADA")


def test_review_phase():
    assert review_phase(_stage("ANTEPROYECTO", system_state="BORRADOR")) == PENDING_SUBMISSION
    assert review_phase(_stage("ANTEPROYECTO")) == UNDER_REVIEW
    closed = _stage("ANTEPROYECTO", system_state="CERRADA", official_state="NO_APROBADA")
    assert review_phase(closed) == CONSOLIDATED


# ═════════════════════════════════════════════════════════════════════════════
# Decision identity
# ═════════════════════════════════════════════════════════════════════════════


def test_same_inputs_same_decision_key():
    first = consolidate(_stage("ANTEPROYECTO"), _evals(A, M))
    second = consolidate(_stage("ANTEPROYECTO"), list(reversed(_evals(A, M))))
    assert first.decision_key == second.decision_key
    assert len(first.decision_key) == 64


def test_different_inputs_different_decision_key():
    assert (
        compute_decision_key(1, "APROBADA", _evals(A, A))
        != compute_decision_key(1, "APROBADA", _evals(A, A)[:1])
    )
    assert compute_decision_key(1, "APROBADA", grade=90) != compute_decision_key(2, "APROBADA", grade=90)


def test_remediation_deadline_business_days():
    deadline = RemediationDeadline(description="x", days_from_now=5, business_days=True)
    assert deadline.resolve_due_date(FRIDAY) == date(2026, 3, 13)
