"""
Transition Orchestrator — effectful phase of stage consolidation.

Reads the inputs of a stage through the Stage Ledger, asks the
consolidation engine for a decision and applies it atomically:

    1. conditional stage update (only while official_state = PENDIENTE)
    2. remediation deadline, idempotent per decision key
    3. successor stage, only if absent
    4. exactly one audit event carrying the decision key

Project.global_status is only read here: a project that is not VIGENTE
cannot be consolidated.  Only the final delivery (workflow_service) or
an administrative override changes it.

Design decisions:
    - The decision key is stored on the stage row, the deadline and the
      audit event.  A stage already carrying the same key but no audit
      event is a partially applied decision and is resumed, not rejected.
    - Every other non-PENDIENTE stage raises AlreadyConsolidated, so a
      second coordinator acting concurrently gets a clear conflict.
    - Remediation due dates are resolved before the first write, so a
      missing coordinator date never leaves a half-applied decision.
"""

from __future__ import annotations

import logging
from datetime import date, datetime, timezone

from thesis_pipeline.core.exceptions import AlreadyConsolidated, ValidationError
from thesis_pipeline.services.consolidation_engine import (
    ConsolidationDecision,
    PendingDecision,
    consolidate,
    get_rule,
)
from thesis_pipeline.services.ledger import SqlAlchemyLedger, StageLedger

logger = logging.getLogger(__name__)


def _today() -> date:
    return datetime.now(timezone.utc).date()


def _require_active_project(ledger: StageLedger, project_id: int) -> None:
    status = ledger.get_project_status(project_id)
    if status != "VIGENTE":
        raise ValidationError(
            f"El proyecto {project_id} no está vigente (estado: {status})",
            details={"global_status": status},
        )


def consolidate_stage(
    stage_id: int,
    stage_type: str | None = None,
    *,
    ledger: StageLedger | None = None,
) -> ConsolidationDecision | PendingDecision:
    """Compute the decision for a stage without mutating anything.

    Raises:
        NotFoundError: unknown stage.
        ValidationError: the project is not VIGENTE.
        AlreadyConsolidated: the stage already has an official outcome.
        EndorsementMissing: jury stage whose latest version lacks an approved endorsement.
    """
    ledger = ledger or SqlAlchemyLedger()
    stage = ledger.get_stage(stage_id)
    _require_active_project(ledger, stage.project_id)
    stage_type = stage_type or stage.stage_name
    rule = get_rule(stage_type)

    grade = comment = None
    evaluations = []
    if stage_type == "SUSTENTACION":
        grade = ledger.get_latest_grade(stage_id)
        comment = ledger.get_grade_observations(stage_id)
    else:
        evaluations = ledger.get_evaluations(stage_id)

    endorsed = ledger.has_approved_endorsement(stage_id) if rule.requires_endorsement else True

    return consolidate(
        stage, evaluations, stage_type,
        grade=grade, comment=comment, endorsed=endorsed,
    )


def apply_decision(
    stage_id: int,
    decision: ConsolidationDecision | PendingDecision,
    *,
    actor_id: str,
    due_date: date | None = None,
    ledger: StageLedger | None = None,
    today: date | None = None,
) -> dict:
    """Persist *decision* in one unit of work.

    Args:
        stage_id: Stage the decision belongs to.
        decision: Output of ``consolidate_stage``.  A PendingDecision is
            returned as-is; there is nothing to apply.
        actor_id: Coordinator applying the decision (recorded on the audit event).
        due_date: Coordinator-chosen remediation date (INFORME_FINAL with modifications).
        ledger: Store to write through; defaults to the SQLAlchemy ledger.
        today: Reference date for computed deadlines.

    Returns:
        dict with the applied decision, the updated stage, the deadline and
        successor stage (when created) and the audit event id.

    Raises:
        AlreadyConsolidated, ValidationError, LedgerWriteFailure
    """
    if decision.is_pending:
        return decision.to_dict()
    if decision.stage_id != stage_id:
        raise ValidationError(
            f"Decision for stage {decision.stage_id} cannot be applied to stage {stage_id}",
            details={"stage_id": "must match the decision"},
        )

    ledger = ledger or SqlAlchemyLedger()
    _require_active_project(ledger, decision.project_id)
    today = today or _today()

    remediation = decision.remediation_deadline
    resolved_due_date = remediation.resolve_due_date(today, due_date) if remediation else None

    deadline = successor = None
    successor_created = False
    resumed = False

    with ledger.unit_of_work(f"apply_decision(stage={stage_id})"):
        claimed = ledger.update_stage_if_pending(
            stage_id,
            official_state=decision.official_state,
            system_state=decision.next_system_state,
            observations=decision.observations,
            decision_key=decision.decision_key,
            final_grade=decision.grade,
        )
        if not claimed:
            current = ledger.get_stage(stage_id)
            resumed = (
                current.decision_key == decision.decision_key
                and not ledger.has_audit_event(decision.decision_key)
            )
            if not resumed:
                raise AlreadyConsolidated(stage_id, current.official_state)
            logger.warning(
                "Resuming partially applied decision",
                extra={
                    "project_id": decision.project_id,
                    "stage_id": stage_id,
                    "decision_key": decision.decision_key,
                },
            )

        if remediation is not None:
            deadline, _ = ledger.insert_deadline(
                stage_id,
                description=remediation.description,
                due_date=resolved_due_date,
                created_by=actor_id,
                decision_key=decision.decision_key,
            )

        if decision.spawn_successor_stage:
            successor, successor_created = ledger.insert_stage(
                decision.project_id, decision.successor_stage_name,
            )

        metadata = decision.audit_metadata()
        if deadline is not None:
            metadata["deadline"] = {
                "description": deadline.description,
                "due_date": deadline.due_date.isoformat(),
            }
        if successor is not None:
            metadata["successor_stage"] = {
                "id": successor.id,
                "stage_name": successor.stage_name,
                "created": successor_created,
            }

        audit_event_id = ledger.append_audit_event(
            project_id=decision.project_id,
            user_id=actor_id,
            event_type=decision.audit_event_type,
            description=decision.audit_description,
            metadata=metadata,
            decision_key=decision.decision_key,
        )

    logger.info(
        "Stage consolidated",
        extra={
            "project_id": decision.project_id,
            "stage_id": stage_id,
            "stage_name": decision.stage_name,
            "event_type": decision.audit_event_type,
            "decision_key": decision.decision_key,
            "actor_id": actor_id,
        },
    )

    return {
        "status": "applied",
        "resumed": resumed,
        "decision": decision.to_dict(),
        "stage": ledger.get_stage(stage_id).to_dict(),
        "deadline": deadline.to_dict() if deadline else None,
        "successor_stage": successor.to_dict() if successor else None,
        "audit_event_id": audit_event_id,
    }


def consolidate_and_apply(
    stage_id: int,
    *,
    actor_id: str,
    stage_type: str | None = None,
    due_date: date | None = None,
    ledger: StageLedger | None = None,
    today: date | None = None,
) -> dict:
    """Decide and apply in one call; a pending decision is returned unapplied."""
    ledger = ledger or SqlAlchemyLedger()
    decision = consolidate_stage(stage_id, stage_type, ledger=ledger)
    return apply_decision(
        stage_id, decision,
        actor_id=actor_id, due_date=due_date, ledger=ledger, today=today,
    )
