"""
Consolidation Engine — pure decision phase.

Turns the jury verdicts (or the single defense grade) of a stage into one
ConsolidationDecision: the official state, the next system state, whether
a successor stage is spawned and whether a remediation deadline is
created.  Nothing here touches the database; ``transition_service``
applies the decision.

Per-stage rules (STAGE_RULES):

    Stage          Outcome                       System state       Successor      Deadline
    PROPUESTA      APROBADA_CON_MODIFICACIONES   CERRADA            —              +5 business days
    PROPUESTA      other                         CERRADA            —              —
    ANTEPROYECTO   APROBADA                      CERRADA            INFORME_FINAL  —
    ANTEPROYECTO   APROBADA_CON_MODIFICACIONES   CERRADA            —              +10 calendar days
    ANTEPROYECTO   NO_APROBADA                   CERRADA            —              —
    INFORME_FINAL  APROBADA                      CERRADA            SUSTENTACION   —
    INFORME_FINAL  APROBADA_CON_MODIFICACIONES   CON_OBSERVACIONES  —              coordinator date
    INFORME_FINAL  NO_APROBADA                   CERRADA            —              —
    SUSTENTACION   grade >= 70                   CERRADA            —              +8 calendar days
    SUSTENTACION   grade < 70                    CERRADA            —              —

Usage:
    from thesis_pipeline.services.consolidation_engine import consolidate

    decision = consolidate(stage, evaluations)
    if decision.is_pending:
        ...  # show "waiting for evaluations"
"""

from __future__ import annotations

import hashlib
import json
from dataclasses import dataclass, field
from datetime import date

from thesis_pipeline.core.exceptions import (
    AlreadyConsolidated,
    EndorsementMissing,
    ValidationError,
)
from thesis_pipeline.models.thesis import STAGE_SUCCESSORS
from thesis_pipeline.services.classifier import (
    ANY_VETO,
    MIN_JURY_EVALUATIONS,
    UNANIMITY,
    add_business_days,
    add_calendar_days,
    classify_defense_grade,
    classify_jury_consensus,
    verdict_to_official_state,
)
from thesis_pipeline.services.records import EvaluationRecord, StageRecord

# Engine view of a stage's workflow position
PENDING_SUBMISSION = "PENDING_SUBMISSION"
SUBMITTED = "SUBMITTED"
UNDER_REVIEW = "UNDER_REVIEW"
CONSOLIDATED = "CONSOLIDATED"

_PHASE_BY_SYSTEM_STATE = {
    "BORRADOR": PENDING_SUBMISSION,
    "RADICADA": SUBMITTED,
    "EN_REVISION": UNDER_REVIEW,
    "CON_OBSERVACIONES": UNDER_REVIEW,
    "CERRADA": UNDER_REVIEW,
}


def review_phase(stage: StageRecord) -> str:
    """Map a stage snapshot onto the engine's four review phases."""
    if not stage.is_pending:
        return CONSOLIDATED
    return _PHASE_BY_SYSTEM_STATE[stage.system_state]


# ═════════════════════════════════════════════════════════════════════════════
# Decision data classes
# ═════════════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class RemediationDeadline:
    """Deadline spawned by a decision.

    Either a fixed offset from the apply date (``days_from_now``, counted in
    business or calendar days) or a coordinator-chosen date supplied at
    apply time (``requires_due_date``).
    """
    description: str
    days_from_now: int | None = None
    business_days: bool = False
    requires_due_date: bool = False

    def resolve_due_date(self, today: date, due_date: date | None = None) -> date:
        if self.requires_due_date:
            if due_date is None:
                raise ValidationError(
                    "Selecciona una fecha límite para las correcciones",
                    details={"due_date": "required when the outcome is APROBADA_CON_MODIFICACIONES"},
                )
            if due_date < today:
                raise ValidationError(
                    "La fecha límite no puede estar en el pasado",
                    details={"due_date": "must not be before today"},
                )
            return due_date
        if self.business_days:
            return add_business_days(today, self.days_from_now)
        return add_calendar_days(today, self.days_from_now)

    def to_dict(self) -> dict:
        return {
            "description": self.description,
            "days_from_now": self.days_from_now,
            "business_days": self.business_days,
            "requires_due_date": self.requires_due_date,
        }


@dataclass(frozen=True)
class PendingDecision:
    """Not enough input to consolidate yet. A normal state, not an error."""
    stage_id: int
    stage_name: str
    reason: str
    received: int = 0
    required: int = 0

    is_pending = True

    def to_dict(self) -> dict:
        return {
            "status": "pending",
            "stage_id": self.stage_id,
            "stage_name": self.stage_name,
            "reason": self.reason,
            "received": self.received,
            "required": self.required,
        }


@dataclass(frozen=True)
class ConsolidationDecision:
    """Outcome of consolidating one stage; applied by transition_service."""
    stage_id: int
    project_id: int
    stage_name: str
    official_state: str
    next_system_state: str
    spawn_successor_stage: bool
    successor_stage_name: str | None
    remediation_deadline: RemediationDeadline | None
    audit_event_type: str
    audit_description: str
    observations: str
    grade: int | None = None
    grade_label: str | None = None
    evaluations: tuple[EvaluationRecord, ...] = field(default_factory=tuple)
    decision_key: str = ""

    is_pending = False

    def audit_metadata(self) -> dict:
        """Raw inputs of the decision, recorded with the audit event."""
        if self.grade is not None:
            return {
                "grade": self.grade,
                "label": self.grade_label,
                "official_state": self.official_state,
                "observations": self.observations,
            }
        return {
            "consolidated_result": self.official_state,
            "evaluations": [
                {
                    "evaluator": e.display_name,
                    "evaluator_id": e.evaluator_id,
                    "result": e.official_result,
                    "carried_over": e.carried_over,
                    "submission_id": e.submission_id,
                }
                for e in self.evaluations
            ],
        }

    def to_dict(self) -> dict:
        return {
            "status": "decided",
            "stage_id": self.stage_id,
            "project_id": self.project_id,
            "stage_name": self.stage_name,
            "official_state": self.official_state,
            "next_system_state": self.next_system_state,
            "spawn_successor_stage": self.spawn_successor_stage,
            "successor_stage_name": self.successor_stage_name,
            "remediation_deadline": (
                self.remediation_deadline.to_dict() if self.remediation_deadline else None
            ),
            "audit_event_type": self.audit_event_type,
            "audit_description": self.audit_description,
            "observations": self.observations,
            "grade": self.grade,
            "grade_label": self.grade_label,
            "evaluations": [e.to_dict() for e in self.evaluations],
            "decision_key": self.decision_key,
        }


def compute_decision_key(stage_id: int, official_state: str, evaluations=(), grade=None) -> str:
    """Stable identity of a decision: same stage + same inputs → same key."""
    payload = {
        "stage_id": stage_id,
        "official_state": official_state,
        "grade": grade,
        "evaluations": sorted(
            [e.evaluator_id, e.official_result, e.submission_id, e.carried_over]
            for e in evaluations
        ),
    }
    raw = json.dumps(payload, sort_keys=True, default=str)
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()


def format_observations(evaluations) -> str:
    """One line per evaluator, in evaluator order."""
    return "\n".join(
        f"{e.display_name}: {e.official_result} - {e.observations or 'Sin observaciones'}"
        for e in evaluations
    )


# ═════════════════════════════════════════════════════════════════════════════
# Stage rules
# ═════════════════════════════════════════════════════════════════════════════

class StageRule:
    """Base strategy: how one stage type turns its inputs into a decision."""

    stage_name: str = ""
    audit_event_type: str = ""
    audit_label: str = ""
    requires_endorsement: bool = False

    def decide(self, stage: StageRecord, evaluations, grade=None, comment=None):
        raise NotImplementedError

    def _decision(self, stage, official_state, *, next_system_state="CERRADA",
                  deadline=None, observations="", evaluations=(), grade=None,
                  grade_label=None, audit_description=None):
        successor = STAGE_SUCCESSORS[self.stage_name] if self.spawns_successor(official_state) else None
        return ConsolidationDecision(
            stage_id=stage.id,
            project_id=stage.project_id,
            stage_name=self.stage_name,
            official_state=official_state,
            next_system_state=next_system_state,
            spawn_successor_stage=successor is not None,
            successor_stage_name=successor,
            remediation_deadline=deadline,
            audit_event_type=self.audit_event_type,
            audit_description=audit_description or f"{self.audit_label}: {official_state}",
            observations=observations,
            grade=grade,
            grade_label=grade_label,
            evaluations=tuple(evaluations),
            decision_key=compute_decision_key(stage.id, official_state, evaluations, grade),
        )

    def spawns_successor(self, official_state: str) -> bool:
        return False


class ProposalRule(StageRule):
    """PROPUESTA: the coordinator's own verdict, no jury, no endorsement."""

    stage_name = "PROPUESTA"
    audit_event_type = "PROPOSAL_EVALUATED"
    audit_label = "Propuesta evaluada"

    def decide(self, stage, evaluations, grade=None, comment=None):
        if not evaluations:
            return PendingDecision(
                stage_id=stage.id,
                stage_name=self.stage_name,
                reason="La propuesta aún no tiene concepto del coordinador",
                received=0,
                required=1,
            )
        latest = evaluations[-1]
        official_state = verdict_to_official_state(latest.official_result)
        deadline = None
        if official_state == "APROBADA_CON_MODIFICACIONES":
            deadline = RemediationDeadline(
                description="Plazo para correcciones de propuesta (5 días hábiles)",
                days_from_now=5,
                business_days=True,
            )
        return self._decision(
            stage, official_state,
            deadline=deadline,
            observations=latest.observations or "",
            evaluations=[latest],
        )


class JuryRule(StageRule):
    """Stages consolidated from two or more jury verdicts."""

    policy: str = ""
    requires_endorsement = True
    modifications_system_state = "CERRADA"

    def modifications_deadline(self) -> RemediationDeadline:
        raise NotImplementedError

    def spawns_successor(self, official_state):
        return official_state == "APROBADA"

    def decide(self, stage, evaluations, grade=None, comment=None):
        evaluations = list(evaluations)
        official_state = classify_jury_consensus(
            [e.official_result for e in evaluations], self.policy,
        )
        if official_state is None:
            return PendingDecision(
                stage_id=stage.id,
                stage_name=self.stage_name,
                reason=(
                    f"Se requieren al menos {MIN_JURY_EVALUATIONS} evaluaciones "
                    f"(registradas: {len(evaluations)})"
                ),
                received=len(evaluations),
                required=MIN_JURY_EVALUATIONS,
            )
        with_modifications = official_state == "APROBADA_CON_MODIFICACIONES"
        return self._decision(
            stage, official_state,
            next_system_state=self.modifications_system_state if with_modifications else "CERRADA",
            deadline=self.modifications_deadline() if with_modifications else None,
            observations=format_observations(evaluations),
            evaluations=evaluations,
        )


class PreProjectRule(JuryRule):
    """ANTEPROYECTO: any single NO_APROBADO vetoes the stage."""

    stage_name = "ANTEPROYECTO"
    audit_event_type = "ANTEPROYECTO_CONSOLIDATED"
    audit_label = "Anteproyecto consolidado"
    policy = ANY_VETO

    def modifications_deadline(self):
        return RemediationDeadline(
            description="Plazo para correcciones del anteproyecto (10 días calendario)",
            days_from_now=10,
        )


class FinalReportRule(JuryRule):
    """INFORME_FINAL: only unanimous verdicts approve or reject.

    With modifications the stage stays CON_OBSERVACIONES so the student can
    submit version 2; the coordinator picks the due date.
    """

    stage_name = "INFORME_FINAL"
    audit_event_type = "INFORME_FINAL_CONSOLIDATED"
    audit_label = "Informe final consolidado"
    policy = UNANIMITY
    modifications_system_state = "CON_OBSERVACIONES"

    def modifications_deadline(self):
        return RemediationDeadline(
            description="Plazo para correcciones del informe final",
            requires_due_date=True,
        )


class DefenseRule(StageRule):
    """SUSTENTACION: one grade entered by the coordinator, no averaging."""

    stage_name = "SUSTENTACION"
    audit_event_type = "DEFENSE_RESULT_RECORDED"

    def decide(self, stage, evaluations, grade=None, comment=None):
        if grade is None:
            return PendingDecision(
                stage_id=stage.id,
                stage_name=self.stage_name,
                reason="La nota de la sustentación aún no ha sido registrada",
                received=0,
                required=1,
            )
        result = classify_defense_grade(grade)
        deadline = None
        if result.passed:
            deadline = RemediationDeadline(
                description="Plazo para entrega final post-sustentación (8 días calendario)",
                days_from_now=8,
            )
        observations = f"{result.label} ({result.grade}/100)."
        if comment:
            observations = f"{observations} {comment}"
        return self._decision(
            stage, result.official_state,
            deadline=deadline,
            observations=observations,
            grade=result.grade,
            grade_label=result.label,
            audit_description=f"Sustentación: {result.label} ({result.grade}/100)",
        )


STAGE_RULES: dict[str, StageRule] = {
    rule.stage_name: rule
    for rule in (ProposalRule(), PreProjectRule(), FinalReportRule(), DefenseRule())
}


def get_rule(stage_type: str) -> StageRule:
    rule = STAGE_RULES.get(stage_type)
    if rule is None:
        raise ValidationError(
            f"Unknown stage type '{stage_type}'",
            details={"stage_type": f"must be one of {sorted(STAGE_RULES)}"},
        )
    return rule


# ═════════════════════════════════════════════════════════════════════════════
# Public API
# ═════════════════════════════════════════════════════════════════════════════

def consolidate(
    stage: StageRecord,
    evaluations=(),
    stage_type: str | None = None,
    *,
    grade: int | None = None,
    comment: str | None = None,
    endorsed: bool = True,
) -> ConsolidationDecision | PendingDecision:
    """Decide the outcome of *stage* from its evaluations or grade.

    Args:
        stage: Snapshot of the stage being consolidated.
        evaluations: EvaluationRecords in evaluator order (carry-over already merged).
        stage_type: Rule to apply; defaults to ``stage.stage_name``.
        grade: Defense grade (SUSTENTACION only).
        comment: Free-text coordinator comment appended to defense observations.
        endorsed: Whether the latest submission has an approved endorsement.

    Returns:
        ConsolidationDecision, or PendingDecision when input is insufficient.

    Raises:
        AlreadyConsolidated, EndorsementMissing, InvalidGrade, ValidationError
    """
    stage_type = stage_type or stage.stage_name
    if stage_type != stage.stage_name:
        raise ValidationError(
            f"Stage {stage.id} is {stage.stage_name}, cannot consolidate it as {stage_type}",
            details={"stage_type": "must match the stage name"},
        )
    rule = get_rule(stage_type)

    if not stage.is_pending:
        raise AlreadyConsolidated(stage.id, stage.official_state)
    if rule.requires_endorsement and not endorsed:
        raise EndorsementMissing(stage.id, stage.stage_name)

    return rule.decide(stage, list(evaluations), grade=grade, comment=comment)
